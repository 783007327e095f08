"""
Unit Tests: BatchOrchestrator
=============================

Tests for stockmeta/core/processing.py

The remote client and model resolver are mocks; pacing uses a recording
sleep so no test waits on the wall clock.
"""

import threading
import unittest
from unittest.mock import MagicMock

from stockmeta.core import config
from stockmeta.core.csv_export import generate_csv
from stockmeta.core.exceptions import (
    ApiError,
    GenerationTimeoutError,
    MalformedResponseError,
    NoModelAvailableError,
    QuotaExceededError,
    ValidationError,
)
from stockmeta.core.models import GeneratedMetadata, ResolvedModel, Row, RowStatus
from stockmeta.core.processing import (
    CANCELLED_MESSAGE,
    NO_CREDENTIALS_NOTICE,
    NO_ROWS_NOTICE,
    BatchOrchestrator,
    BatchRunState,
    PacingPolicy,
)
from stockmeta.core.results import ResultStore

KEYS = [f"AIzaSyKey{i}xxxxxxxxxxxxxxxxxxxxxxxxxxxxx" for i in range(3)]
MODEL = ResolvedModel(model_id="gemini-2.5-flash", api_variant="v1beta")

GOOD_METADATA = GeneratedMetadata(
    title="Red Kayak, on a Mountain Lake",
    description="A bright red kayak floats on a calm alpine lake surrounded by pine forest "
                "and snowy peaks, photographed in soft morning light for travel themes.",
    keywords=["Kayak", "lake", "KAYAK", " mountains "] + [f"keyword{i}" for i in range(26)],
)


class MemoryStorage:

    def __init__(self, data=None):
        self.data = dict(data or {})

    def get(self, key, default=None):
        return self.data.get(key, default)

    def set(self, key, value):
        self.data[key] = value

    def remove(self, key):
        self.data.pop(key, None)


class RecordingSleep:

    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def _store_with_rows(*filenames):
    rows = [Row(filename=name, file_size=100, source_path=f"/photos/{name}") for name in filenames]
    storage = MemoryStorage({config.STORAGE_KEY_RESULTS: [row.to_dict() for row in rows]})
    return ResultStore(storage)


class OrchestratorTestCase(unittest.TestCase):

    def setUp(self):
        self.client = MagicMock()
        self.resolver = MagicMock()
        self.resolver.resolve.return_value = MODEL
        self.sleep = RecordingSleep()
        self.tried = []

    def make_orchestrator(self, store):
        return BatchOrchestrator(
            store,
            self.client,
            self.resolver,
            pacing=PacingPolicy(success_delay=2.0, failure_delay=5.0, sleep=self.sleep),
            image_loader=lambda row: (b"image-bytes", "image/jpeg"),
            reset_delay=0,
        )

    def script_keys(self, outcomes):
        """Per-key outcome: an exception to raise or metadata to return."""
        def generate(api_key, model, image_bytes, mime_type):
            self.tried.append(KEYS.index(api_key))
            outcome = outcomes[KEYS.index(api_key)]
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        self.client.generate.side_effect = generate


class TestKeyRotation(OrchestratorTestCase):

    def test_rotates_past_quota_errors(self):
        store = _store_with_rows("a.jpg")
        self.script_keys([QuotaExceededError("quota 0"), QuotaExceededError("quota 1"), GOOD_METADATA])
        state = BatchRunState()

        summary = self.make_orchestrator(store).run(store.rows(), KEYS, run_state=state)

        self.assertEqual(self.tried, [0, 1, 2])
        self.assertEqual(state.last_good_index, 2)
        self.assertEqual(summary.succeeded, 1)
        row = store.rows()[0]
        self.assertIs(row.status, RowStatus.SUCCESS)

    def test_next_row_starts_at_last_good_key(self):
        store = _store_with_rows("a.jpg", "b.jpg")
        self.script_keys([QuotaExceededError("q"), GOOD_METADATA, GOOD_METADATA])

        self.make_orchestrator(store).run(store.rows(), KEYS)

        self.assertEqual(self.tried, [0, 1, 1])

    def test_all_keys_exhausted(self):
        store = _store_with_rows("a.jpg")
        self.script_keys([QuotaExceededError(f"quota {i}") for i in range(3)])

        summary = self.make_orchestrator(store).run(store.rows(), KEYS)

        self.assertEqual(sorted(self.tried), [0, 1, 2])
        self.assertEqual(len(set(self.tried)), len(self.tried))
        row = store.rows()[0]
        self.assertIs(row.status, RowStatus.ERROR)
        self.assertIn("All 3 API key(s) exhausted", row.error)
        self.assertEqual(summary.quota_exhausted, 1)
        self.assertTrue(any("every API key hit its quota" in line for line in summary.messages()))

    def test_non_quota_error_does_not_rotate(self):
        for error in (ApiError("API key not valid", http_status=400),
                      GenerationTimeoutError("Request timeout after 30s"),
                      MalformedResponseError("Failed to parse JSON response")):
            with self.subTest(error=type(error).__name__):
                self.tried = []
                store = _store_with_rows("a.jpg")
                self.script_keys([error, GOOD_METADATA, GOOD_METADATA])

                summary = self.make_orchestrator(store).run(store.rows(), KEYS)

                self.assertEqual(self.tried, [0])
                self.assertEqual(store.rows()[0].error, str(error))
                self.assertEqual(summary.failed, 1)
                self.assertEqual(summary.quota_exhausted, 0)

    def test_comma_separated_credential_string(self):
        store = _store_with_rows("a.jpg")
        self.script_keys([QuotaExceededError("q"), GOOD_METADATA, GOOD_METADATA])

        summary = self.make_orchestrator(store).run(store.rows(), f"{KEYS[0]}, {KEYS[1]}\n{KEYS[2]}")

        self.assertEqual(summary.succeeded, 1)
        self.assertEqual(self.tried, [0, 1])

    def test_quota_error_while_listing_models_rotates(self):
        store = _store_with_rows("a.jpg")
        self.resolver.resolve.side_effect = [QuotaExceededError("listing quota"), MODEL]
        self.client.generate.return_value = GOOD_METADATA
        state = BatchRunState()

        summary = self.make_orchestrator(store).run(store.rows(), KEYS, run_state=state)

        self.assertEqual([c.args[0] for c in self.resolver.resolve.call_args_list], KEYS[:2])
        self.assertEqual(self.client.generate.call_args[0][0], KEYS[1])
        self.assertEqual(state.last_good_index, 1)
        self.assertEqual(summary.succeeded, 1)

    def test_resolver_failures_fail_row_without_rotating(self):
        for error in (NoModelAvailableError("No available Gemini models found for this API key."),
                      ApiError("Permission denied", http_status=403)):
            with self.subTest(error=type(error).__name__):
                self.resolver.resolve.reset_mock()
                self.resolver.resolve.side_effect = error
                store = _store_with_rows("a.jpg")

                summary = self.make_orchestrator(store).run(store.rows(), KEYS)

                self.resolver.resolve.assert_called_once_with(KEYS[0])
                self.client.generate.assert_not_called()
                row = store.rows()[0]
                self.assertIs(row.status, RowStatus.ERROR)
                self.assertEqual(row.error, str(error))
                self.assertEqual((summary.failed, summary.quota_exhausted), (1, 0))


class TestBatchFlow(OrchestratorTestCase):

    def test_success_normalizes_keywords_and_records_warnings(self):
        store = _store_with_rows("a.jpg")
        self.script_keys([GOOD_METADATA])

        self.make_orchestrator(store).run(store.rows(), KEYS[:1])

        row = store.rows()[0]
        self.assertTrue(row.keywords.startswith("kayak, lake, mountains, keyword0"))
        self.assertEqual(row.keywords.count("kayak"), 1)
        self.assertEqual(row.warnings, [])
        self.assertIsNotNone(row.generated_at)

    def test_counters_and_pacing(self):
        store = _store_with_rows("a.jpg", "b.jpg", "c.jpg")
        results = iter([GOOD_METADATA, ApiError("bad", http_status=400), GOOD_METADATA])

        def generate(*args):
            outcome = next(results)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        self.client.generate.side_effect = generate
        snapshots = []

        summary = self.make_orchestrator(store).run(store.rows(), KEYS[:1], on_progress=snapshots.append)

        self.assertEqual((summary.succeeded, summary.failed), (2, 1))
        self.assertEqual(summary.progress.completed + summary.progress.failed, summary.progress.total)
        self.assertEqual(summary.progress.in_progress, 0)
        self.assertEqual(snapshots[0].in_progress, 3)
        self.assertEqual(snapshots[-1].settled, 3)
        # Short wait after success, backoff after failure, nothing after the last row
        self.assertEqual(self.sleep.calls, [2.0, 5.0])

    def test_refused_without_credentials_or_rows(self):
        store = _store_with_rows("a.jpg")
        orchestrator = self.make_orchestrator(store)

        summary = orchestrator.run(store.rows(), "  \n ")
        self.assertEqual(summary.notice, NO_CREDENTIALS_NOTICE)
        self.assertFalse(summary.started)

        summary = orchestrator.run([], KEYS)
        self.assertEqual(summary.notice, NO_ROWS_NOTICE)
        self.client.generate.assert_not_called()
        self.assertIs(store.rows()[0].status, RowStatus.PENDING)

    def test_successful_rows_are_not_resubmitted(self):
        store = _store_with_rows("a.jpg")
        self.script_keys([GOOD_METADATA])
        orchestrator = self.make_orchestrator(store)
        orchestrator.run(store.rows(), KEYS[:1])

        summary = orchestrator.run(store.rows(), KEYS[:1])

        self.assertEqual(summary.notice, NO_ROWS_NOTICE)
        self.assertEqual(self.client.generate.call_count, 1)

    def test_retry_failed_rows(self):
        store = _store_with_rows("a.jpg")
        self.script_keys([ApiError("temporary", http_status=500)])
        orchestrator = self.make_orchestrator(store)
        orchestrator.run(store.rows(), KEYS[:1])
        self.assertIs(store.rows()[0].status, RowStatus.ERROR)

        self.script_keys([GOOD_METADATA])
        summary = orchestrator.run(store.failed_rows(), KEYS[:1])

        self.assertEqual(summary.succeeded, 1)
        self.assertIs(store.rows()[0].status, RowStatus.SUCCESS)
        self.assertIsNone(store.rows()[0].error)

    def test_missing_file_marks_row_failed(self):
        store = _store_with_rows("a.jpg")
        orchestrator = self.make_orchestrator(store)

        def loader(row):
            raise ValidationError("File missing")
        orchestrator.image_loader = loader

        summary = orchestrator.run(store.rows(), KEYS)

        self.assertEqual(store.rows()[0].error, "File missing")
        self.assertEqual(summary.failed, 1)
        self.client.generate.assert_not_called()

    def test_unexpected_exception_is_contained(self):
        store = _store_with_rows("a.jpg", "b.jpg")
        self.client.generate.side_effect = [RuntimeError("kaboom"), GOOD_METADATA]

        summary = self.make_orchestrator(store).run(store.rows(), KEYS[:1])

        a, b = store.rows()
        self.assertEqual(a.error, "Unexpected error: kaboom")
        self.assertIs(b.status, RowStatus.SUCCESS)
        self.assertEqual((summary.succeeded, summary.failed), (1, 1))

    def test_repeated_row_is_generated_once(self):
        store = _store_with_rows("a.jpg", "b.jpg")
        a, b = store.rows()
        self.client.generate.return_value = GOOD_METADATA

        summary = self.make_orchestrator(store).run([a, a, b], KEYS[:1])

        self.assertEqual(self.client.generate.call_count, 2)
        self.assertEqual((summary.succeeded, summary.failed), (2, 0))
        self.assertEqual(summary.progress.in_progress, 0)
        self.assertEqual(summary.progress.total, 2)

    def test_row_settled_after_queueing_is_skipped(self):
        store = _store_with_rows("a.jpg", "b.jpg")
        a, b = store.rows()
        self.client.generate.return_value = GOOD_METADATA
        orchestrator = self.make_orchestrator(store)
        eligible = orchestrator._eligible

        def settle_a_first(rows):
            queued = eligible(rows)
            store.begin_generating(a.id)
            store.complete_success(a.id, "Title", "Description", "k")
            return queued

        orchestrator._eligible = settle_a_first
        summary = orchestrator.run([a, b], KEYS[:1])

        self.assertEqual(self.client.generate.call_count, 1)
        self.assertIs(store.get(a.id).status, RowStatus.SUCCESS)
        self.assertEqual(store.get(a.id).title, "Title")
        self.assertIs(store.get(b.id).status, RowStatus.SUCCESS)
        self.assertEqual(summary.progress.in_progress, 0)
        self.assertEqual(summary.progress.completed + summary.progress.failed, 2)

    def test_batch_flag_released_after_run(self):
        store = _store_with_rows("a.jpg")
        self.script_keys([GOOD_METADATA])
        self.make_orchestrator(store).run(store.rows(), KEYS[:1])
        self.assertFalse(store.batch_running)


class TestCancellation(OrchestratorTestCase):

    def test_cancel_stops_before_next_row(self):
        store = _store_with_rows("a.jpg", "b.jpg", "c.jpg")
        cancel = threading.Event()

        def generate(*args):
            cancel.set()
            return GOOD_METADATA
        self.client.generate.side_effect = generate

        summary = self.make_orchestrator(store).run(store.rows(), KEYS[:1], cancel_event=cancel)

        self.assertTrue(summary.cancelled)
        statuses = [row.status for row in store.rows()]
        self.assertEqual(statuses, [RowStatus.SUCCESS, RowStatus.PENDING, RowStatus.PENDING])
        self.assertEqual(self.client.generate.call_count, 1)
        self.assertFalse(store.batch_running)

    def test_cancel_during_rotation_fails_in_flight_row(self):
        store = _store_with_rows("a.jpg")
        cancel = threading.Event()

        def generate(*args):
            cancel.set()
            raise QuotaExceededError("quota")
        self.client.generate.side_effect = generate

        summary = self.make_orchestrator(store).run(store.rows(), KEYS, cancel_event=cancel)

        self.assertEqual(store.rows()[0].error, CANCELLED_MESSAGE)
        self.assertEqual(self.client.generate.call_count, 1)
        self.assertTrue(summary.cancelled)

    def test_background_run_and_abort(self):
        store = _store_with_rows("a.jpg", "b.jpg")
        self.script_keys([GOOD_METADATA])
        orchestrator = self.make_orchestrator(store)
        orchestrator.pacing = PacingPolicy(success_delay=0, failure_delay=0)
        done = threading.Event()
        summaries = []

        def on_complete(summary):
            summaries.append(summary)
            done.set()

        orchestrator.start(store.rows(), KEYS[:1], on_complete=on_complete)
        self.assertTrue(done.wait(5))
        orchestrator.shutdown()

        self.assertEqual(summaries[0].succeeded, 2)
        self.assertFalse(orchestrator.is_running())


class TestScenario(OrchestratorTestCase):

    def test_two_images_one_credential_then_export(self):
        store = _store_with_rows("kayak.jpg", "broken.jpg")
        self.client.generate.side_effect = [GOOD_METADATA, MalformedResponseError("Failed to parse JSON response")]

        summary = self.make_orchestrator(store).run(store.rows(), KEYS[:1])

        kayak, broken = store.rows()
        self.assertIs(kayak.status, RowStatus.SUCCESS)
        self.assertIs(broken.status, RowStatus.ERROR)
        self.assertEqual(summary.messages()[0], "Done! 1 processed.")

        lines = generate_csv(store.rows()).split("\n")
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[1].startswith('kayak.jpg,"Red Kayak, on a Mountain Lake",'))


if __name__ == "__main__":
    unittest.main()
