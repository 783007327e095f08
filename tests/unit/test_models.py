"""
Unit Tests: Row model and state machine
=======================================

Tests for stockmeta/core/models.py
"""

import unittest

from stockmeta.core import models
from stockmeta.core.exceptions import InvalidTransitionError
from stockmeta.core.models import ResolvedModel, Row, RowStatus


class TestRowTransitions(unittest.TestCase):

    def setUp(self):
        self.row = Row(filename="a.jpg", file_size=10)

    def test_pending_to_success(self):
        models.begin_generating(self.row)
        self.assertIs(self.row.status, RowStatus.GENERATING)
        self.assertIsNotNone(self.row.generated_at)

        models.complete_success(self.row, "Title", "Description", "a, b", ["warn"])
        self.assertIs(self.row.status, RowStatus.SUCCESS)
        self.assertEqual(self.row.keywords, "a, b")
        self.assertEqual(self.row.warnings, ["warn"])
        self.assertIsNone(self.row.error)

    def test_error_can_be_resubmitted(self):
        models.begin_generating(self.row)
        models.complete_error(self.row, "boom")
        self.assertEqual(self.row.error, "boom")

        models.begin_generating(self.row)
        self.assertIs(self.row.status, RowStatus.GENERATING)
        self.assertIsNone(self.row.error)

    def test_success_is_final(self):
        models.begin_generating(self.row)
        models.complete_success(self.row, "T", "D", "k")
        with self.assertRaises(InvalidTransitionError):
            models.begin_generating(self.row)
        with self.assertRaises(InvalidTransitionError):
            models.complete_error(self.row, "late failure")

    def test_cannot_settle_without_generating(self):
        with self.assertRaises(InvalidTransitionError):
            models.complete_success(self.row, "T", "D", "k")
        with self.assertRaises(InvalidTransitionError):
            models.complete_error(self.row, "x")

    def test_exportable_only_for_complete_success(self):
        self.assertFalse(self.row.is_exportable)
        models.begin_generating(self.row)
        models.complete_success(self.row, "Title", "Description", "   ")
        self.assertFalse(self.row.is_exportable)

        other = Row(filename="b.jpg")
        models.begin_generating(other)
        models.complete_success(other, "Title", "Description", "a, b")
        self.assertTrue(other.is_exportable)


class TestSerialization(unittest.TestCase):

    def test_row_dict_round_trip(self):
        row = Row(filename="a.jpg", file_size=5, source_path="/tmp/a.jpg", selected=True)
        restored = Row.from_dict(row.to_dict())
        self.assertEqual(restored, row)
        self.assertEqual(row.to_dict()["status"], "pending")

    def test_ids_are_unique(self):
        self.assertNotEqual(Row(filename="a.jpg").id, Row(filename="a.jpg").id)

    def test_resolved_model_display_name_defaults_to_id(self):
        model = ResolvedModel.from_dict({"model_id": "gemini-2.5-flash", "api_variant": "v1beta"})
        self.assertEqual(model.display_name, "gemini-2.5-flash")


if __name__ == "__main__":
    unittest.main()
