"""
Batch Generation Pipeline
=========================

This module implements the batch orchestrator that drives metadata
generation for a queue of rows. It sequences the per-image Gemini calls,
paces them, rotates API keys on quota errors, tracks aggregate progress,
and writes each outcome back into the Result Store.

Key Components:
- PacingPolicy: delays between rows (short after success, long after failure)
- BatchRunState: the last-known-good key index carried between rows and runs
- BatchSummary: counts and notices reported when a batch ends
- BatchOrchestrator: the sequential generation loop, usable synchronously
  via ``run()`` or on a background thread via ``start()``

Per-row workflow:
1. Mark the row generating and stamp the attempt time
2. Try keys round-robin, starting at the last key that worked
3. On success: normalize keywords, check the stock rules, mark success
4. On a quota error: move on to the next key
5. On any other error: mark the row failed; another key cannot help
6. When every key is quota-exhausted: mark the row failed naming the count
7. Wait the pacing interval before the next row

Threading Model:
- One generation call in flight at a time; this is the rate limiter
- ``cancel_event`` is checked before each remote call and interrupts the
  pacing wait
- Row and progress mutations go through locked stores
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Union

from . import config
from .credentials import parse_credentials
from .exceptions import QuotaExceededError, StockMetaError
from .image_processing import load_image
from .keywords import process_keywords, validate_metadata
from .models import Row, RowStatus
from .progress import ProgressSnapshot, ProgressTracker
from stockmeta.utils.logger import mask_key

NO_CREDENTIALS_NOTICE = "Please configure at least one API key!"
NO_ROWS_NOTICE = "No images to generate"
CANCELLED_MESSAGE = "Generation cancelled"


# ============================================================================
# PACING
# ============================================================================

class PacingPolicy:
    """
    Fixed-interval pacing between sequential rows.

    Attributes:
        success_delay: Seconds to wait after a row succeeds
        failure_delay: Seconds to wait after a row fails (backoff)
        sleep: Blocking sleep used when no cancel event is supplied
    """

    def __init__(
        self,
        success_delay: float = config.PACING_SUCCESS_DELAY_SECONDS,
        failure_delay: float = config.PACING_FAILURE_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.success_delay = success_delay
        self.failure_delay = failure_delay
        self.sleep = sleep

    def delay_for(self, succeeded: bool) -> float:
        return self.success_delay if succeeded else self.failure_delay

    def wait(self, succeeded: bool, cancel_event: Optional[threading.Event] = None):
        delay = self.delay_for(succeeded)
        if delay <= 0:
            return
        if cancel_event is not None:
            cancel_event.wait(delay)
        else:
            self.sleep(delay)


# ============================================================================
# RUN STATE AND SUMMARY
# ============================================================================

@dataclass
class BatchRunState:
    """Index of the key that last succeeded; rotation starts here."""
    last_good_index: int = 0


@dataclass
class BatchSummary:
    """
    Outcome of one batch call.

    Attributes:
        succeeded: Rows that ended in success
        failed: Rows that ended in error
        quota_exhausted: Rows that failed because every key hit its quota
        cancelled: True when the run stopped on the cancel event
        notice: User-facing message when the batch was refused before starting
        progress: Final progress snapshot, captured before the reset
        run_state: Key rotation state to pass to the next run
    """
    succeeded: int = 0
    failed: int = 0
    quota_exhausted: int = 0
    cancelled: bool = False
    notice: Optional[str] = None
    progress: ProgressSnapshot = field(default_factory=ProgressSnapshot)
    run_state: Optional[BatchRunState] = None

    @property
    def started(self) -> bool:
        return self.notice is None

    def messages(self) -> List[str]:
        """User-facing batch report lines."""
        if self.notice:
            return [self.notice]
        lines = []
        if self.succeeded:
            lines.append(f"Done! {self.succeeded} processed.")
        if self.failed:
            lines.append(f"{self.failed} failed.")
        if self.quota_exhausted:
            lines.append(
                f"{self.quota_exhausted} image(s) failed because every API key hit its quota. "
                f"Add more keys or retry later."
            )
        if self.cancelled:
            lines.append("Batch cancelled.")
        return lines


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class BatchOrchestrator:
    """
    Sequential metadata generation over a queue of rows.

    Attributes:
        store: ResultStore receiving every row transition
        client: GoogleAIClient performing the generation call
        resolver: ModelResolver supplying the model for each key
        pacing: PacingPolicy applied between rows
        progress: ProgressTracker updated as rows settle
        image_loader: Callable returning (bytes, mime_type) for a row
        reset_delay: Seconds the final counters stay visible
    """

    def __init__(
        self,
        store,
        client,
        resolver,
        pacing: Optional[PacingPolicy] = None,
        progress: Optional[ProgressTracker] = None,
        image_loader: Callable[[Row], tuple] = load_image,
        reset_delay: float = config.PROGRESS_RESET_DELAY_SECONDS,
    ):
        self.store = store
        self.client = client
        self.resolver = resolver
        self.pacing = pacing or PacingPolicy()
        self.progress = progress or ProgressTracker()
        self.image_loader = image_loader
        self.reset_delay = reset_delay
        self.logger = logging.getLogger(__name__)

        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None
        self.last_summary: Optional[BatchSummary] = None

    # ------------------------------------------------------------------
    # Synchronous run
    # ------------------------------------------------------------------

    def run(
        self,
        rows: Sequence[Row],
        credentials: Union[str, Sequence[str], None],
        run_state: Optional[BatchRunState] = None,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[Callable[[ProgressSnapshot], None]] = None,
    ) -> BatchSummary:
        """
        Generate metadata for ``rows`` in order.

        Args:
            rows: Rows to process (pending, or failed for a retry)
            credentials: Ordered key list, or the raw stored key string
            run_state: Rotation state from a previous run
            cancel_event: Event that stops the batch at the next suspension point
            on_progress: Called with a snapshot after start and after each row

        Returns:
            BatchSummary; ``notice`` is set when the batch was refused.

        Raises:
            BatchInProgressError: If another batch is running on the store.
        """
        keys = parse_credentials(credentials) if isinstance(credentials, str) or credentials is None else [
            k.strip() for k in credentials if k and k.strip()
        ]
        run_state = run_state or BatchRunState()
        rows = self._eligible(rows)

        if not keys:
            self.logger.warning("Batch refused: no API key configured")
            return BatchSummary(notice=NO_CREDENTIALS_NOTICE, run_state=run_state)
        if not rows:
            self.logger.warning("Batch refused: no rows to generate")
            return BatchSummary(notice=NO_ROWS_NOTICE, run_state=run_state)

        summary = BatchSummary(run_state=run_state)
        with self.store.batch():
            self.logger.info(f"Starting batch: {len(rows)} rows, {len(keys)} API key(s)")
            self._notify(on_progress, self.progress.start(len(rows)))

            for position, row in enumerate(rows):
                if cancel_event is not None and cancel_event.is_set():
                    summary.cancelled = True
                    self.logger.warning(f"Batch cancelled with {len(rows) - position} rows not started")
                    break

                succeeded = self._process_row(row, keys, run_state, cancel_event, summary)
                if succeeded:
                    summary.succeeded += 1
                    snapshot = self.progress.record_success()
                else:
                    summary.failed += 1
                    snapshot = self.progress.record_failure()
                self._notify(on_progress, snapshot)

                if position < len(rows) - 1:
                    self.pacing.wait(succeeded, cancel_event)

            if cancel_event is not None and cancel_event.is_set():
                summary.cancelled = True

            summary.progress = self.progress.finish(self.reset_delay)

        self.logger.info(
            f"Batch finished: {summary.succeeded} succeeded, {summary.failed} failed"
            f"{' (cancelled)' if summary.cancelled else ''}"
        )
        self.last_summary = summary
        return summary

    def _eligible(self, rows: Sequence[Row]) -> List[Row]:
        """Current store state of the rows that may (re)enter generation, each id once."""
        eligible = []
        seen = set()
        for row in rows:
            if row.id in seen:
                self.logger.warning(f"Skipping repeated row {row.filename}")
                continue
            seen.add(row.id)
            current = self.store.get(row.id)
            if current is None:
                self.logger.warning(f"Skipping unknown row {row.id}")
            elif current.status not in (RowStatus.PENDING, RowStatus.ERROR):
                self.logger.warning(f"Skipping {current.filename}: status is {current.status.value}")
            else:
                eligible.append(current)
        return eligible

    def _notify(self, callback, snapshot: ProgressSnapshot):
        if callback is None:
            return
        try:
            callback(snapshot)
        except Exception as e:
            self.logger.error(f"Progress callback failed: {e}", exc_info=True)

    def _process_row(
        self,
        row: Row,
        keys: List[str],
        run_state: BatchRunState,
        cancel_event: Optional[threading.Event],
        summary: BatchSummary,
    ) -> bool:
        """Generate one row; returns True on success. Never raises for row-level failures."""
        try:
            self.store.begin_generating(row.id)
        except StockMetaError as e:
            # Settled or removed since the batch was queued
            self.logger.warning(f"Skipping {row.filename}: {e}")
            return False

        try:
            return self._generate_with_rotation(row, keys, run_state, cancel_event, summary)
        except Exception as e:
            # Unexpected failure: record it on the row, keep the batch alive
            self.logger.error(f"Unexpected error while generating {row.filename}: {e}", exc_info=True)
            self.store.complete_error(row.id, f"Unexpected error: {e}")
            return False

    def _generate_with_rotation(
        self,
        row: Row,
        keys: List[str],
        run_state: BatchRunState,
        cancel_event: Optional[threading.Event],
        summary: BatchSummary,
    ) -> bool:
        try:
            image_bytes, mime_type = self.image_loader(row)
        except StockMetaError as e:
            self.logger.warning(f"{row.filename}: {e}")
            self.store.complete_error(row.id, str(e))
            return False

        key_count = len(keys)
        start = run_state.last_good_index % key_count
        last_quota_error: Optional[QuotaExceededError] = None

        for offset in range(key_count):
            if cancel_event is not None and cancel_event.is_set():
                self.store.complete_error(row.id, CANCELLED_MESSAGE)
                return False

            index = (start + offset) % key_count
            api_key = keys[index]

            try:
                model = self.resolver.resolve(api_key)
                result = self.client.generate(api_key, model, image_bytes, mime_type)
            except QuotaExceededError as e:
                last_quota_error = e
                self.logger.warning(f"Key {mask_key(api_key)} exhausted. Switching to next key...")
                continue
            except StockMetaError as e:
                self.logger.warning(f"{row.filename} failed with key {mask_key(api_key)}: {e}")
                self.store.complete_error(row.id, str(e))
                return False

            processed = process_keywords(result.keywords)
            warnings = validate_metadata(result.title, result.description, processed.keywords)
            for warning in warnings:
                self.logger.info(f"{row.filename}: {warning}")

            self.store.complete_success(
                row.id,
                title=result.title,
                description=result.description,
                keywords=processed.normalized,
                warnings=warnings,
            )
            run_state.last_good_index = index
            self.logger.info(f"{row.filename}: metadata generated with key {mask_key(api_key)}")
            return True

        summary.quota_exhausted += 1
        detail = last_quota_error.message if last_quota_error else "Quota exceeded"
        self.store.complete_error(
            row.id, f"All {key_count} API key(s) exhausted by quota limits. {detail}"
        )
        return False

    # ------------------------------------------------------------------
    # Background mode
    # ------------------------------------------------------------------

    def start(
        self,
        rows: Sequence[Row],
        credentials: Union[str, Sequence[str], None],
        run_state: Optional[BatchRunState] = None,
        on_progress: Optional[Callable[[ProgressSnapshot], None]] = None,
        on_complete: Optional[Callable[[BatchSummary], None]] = None,
    ):
        """
        Run the batch on a daemon thread.

        The thread stops at the next suspension point after ``abort()``.
        """
        if self.is_running():
            raise RuntimeError("A batch is already running")

        self.stop_event.clear()

        def _job():
            try:
                summary = self.run(rows, credentials, run_state, self.stop_event, on_progress)
            except Exception as e:
                self.logger.critical(f"Batch thread crashed: {e}", exc_info=True)
                return
            if on_complete is not None:
                on_complete(summary)

        self.thread = threading.Thread(target=_job, name="BatchOrchestrator", daemon=True)
        self.thread.start()

    def is_running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def abort(self):
        """Request cancellation; the in-flight call, if any, finishes first."""
        if self.stop_event.is_set():
            return
        self.logger.warning("Batch abort requested")
        self.stop_event.set()

    def shutdown(self, timeout: float = 2.0):
        if self.is_running():
            self.logger.info("BatchOrchestrator shutdown initiated")
            self.abort()
            self.thread.join(timeout=timeout)
            if self.thread.is_alive():
                self.logger.warning(f"Batch thread did not terminate within {timeout}s - proceeding anyway")
