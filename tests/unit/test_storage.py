"""
Unit Tests: JsonFileStorage
===========================

Tests for stockmeta/utils/storage.py
"""

import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from stockmeta.core import config
from stockmeta.core.exceptions import BatchInProgressError, PersistenceError
from stockmeta.utils.storage import JsonFileStorage


class TestJsonFileStorage(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "nested" / "storage.json"

    def tearDown(self):
        self.tmp.cleanup()

    def test_set_get_remove_persist(self):
        storage = JsonFileStorage(self.path)
        storage.set("a", {"x": 1})
        storage.set("b", [1, 2])
        storage.remove("b")
        storage.remove("missing")

        reopened = JsonFileStorage(self.path)
        self.assertEqual(reopened.get("a"), {"x": 1})
        self.assertNotIn("b", reopened)
        self.assertEqual(reopened.get("b", "default"), "default")

    def test_capacity_rejection_keeps_previous_state(self):
        storage = JsonFileStorage(self.path, capacity_bytes=64)
        storage.set("small", "ok")

        with self.assertRaises(PersistenceError):
            storage.set("big", "x" * 200)

        self.assertNotIn("big", storage)
        self.assertEqual(json.loads(self.path.read_text(encoding="utf-8")), {"small": "ok"})

    def test_corrupt_file_is_ignored(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json", encoding="utf-8")
        storage = JsonFileStorage(self.path)
        self.assertIsNone(storage.get("anything"))
        storage.set("k", "v")
        self.assertEqual(JsonFileStorage(self.path).get("k"), "v")


class TestSharedStorageFile(unittest.TestCase):
    """Two stores opened on one file, as two CLI processes would."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "storage.json"
        self.first = JsonFileStorage(self.path)
        self.second = JsonFileStorage(self.path)

    def tearDown(self):
        self.first.batch_lock.release()
        self.second.batch_lock.release()
        self.tmp.cleanup()

    def test_writes_merge_instead_of_overwriting(self):
        self.first.set("rows", [1])
        self.second.set("api_key", "secret")
        self.first.set("rows", [1, 2])
        self.second.remove("missing")

        self.assertEqual(json.loads(self.path.read_text(encoding="utf-8")), {"rows": [1, 2], "api_key": "secret"})
        self.assertEqual(self.first.get("api_key"), "secret")
        self.assertIn("rows", self.second)

    def test_writer_lock_times_out(self):
        with patch.object(config, "STORAGE_LOCK_TIMEOUT_SECONDS", 0.1):
            with self.first.locked():
                with self.assertRaises(PersistenceError):
                    self.second.set("k", "v")
                # Re-entrant for the holder
                self.first.set("k", "v")
        self.second.set("k", "w")
        self.assertEqual(self.first.get("k"), "w")

    def test_batch_lock_is_visible_to_other_stores(self):
        self.assertFalse(self.second.batch_lock.held_elsewhere())

        self.first.batch_lock.acquire()
        self.assertTrue(self.first.batch_lock.held)
        self.assertFalse(self.first.batch_lock.held_elsewhere())
        self.assertTrue(self.second.batch_lock.held_elsewhere())
        with self.assertRaises(BatchInProgressError):
            self.second.batch_lock.acquire()
        with self.assertRaises(BatchInProgressError):
            self.first.batch_lock.acquire()

        self.first.batch_lock.release()
        self.assertFalse(self.second.batch_lock.held_elsewhere())
        self.second.batch_lock.acquire()
        self.assertTrue(self.first.batch_lock.held_elsewhere())


if __name__ == "__main__":
    unittest.main()
