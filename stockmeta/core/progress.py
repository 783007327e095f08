"""
Batch Progress Tracking
=======================

Aggregate counters for a running batch: total, completed, failed, and
in-progress rows. The tracker is updated each time a row settles and hands
out immutable snapshots for display.

When a batch finishes, ``in_progress`` drops to zero straight away while
``completed`` and ``failed`` stay visible for a short delay; after that the
whole snapshot resets to zero.
"""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class ProgressSnapshot:
    """Immutable view of the batch counters."""
    total: int = 0
    completed: int = 0
    failed: int = 0
    in_progress: int = 0

    @property
    def settled(self) -> int:
        return self.completed + self.failed

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 0.0
        return 100.0 * self.settled / self.total


class ProgressTracker:
    """
    Thread-safe batch counter.

    All mutations happen under one lock so the tracker can be read from the
    caller's thread while a batch runs in the background.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._snapshot = ProgressSnapshot()
        self._reset_timer: Optional[threading.Timer] = None

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return self._snapshot

    def start(self, total: int) -> ProgressSnapshot:
        with self._lock:
            self._cancel_reset_timer()
            self._snapshot = ProgressSnapshot(total=total, in_progress=total)
            self.logger.info(f"Started tracking progress for {total} rows")
            return self._snapshot

    def record_success(self) -> ProgressSnapshot:
        with self._lock:
            s = self._snapshot
            self._snapshot = replace(s, completed=s.completed + 1, in_progress=max(0, s.in_progress - 1))
            return self._snapshot

    def record_failure(self) -> ProgressSnapshot:
        with self._lock:
            s = self._snapshot
            self._snapshot = replace(s, failed=s.failed + 1, in_progress=max(0, s.in_progress - 1))
            return self._snapshot

    def finish(self, reset_delay: float = 0.0) -> ProgressSnapshot:
        """
        Mark the batch finished and schedule the reset.

        Returns:
            The final snapshot, captured before any reset.
        """
        with self._lock:
            self._snapshot = replace(self._snapshot, in_progress=0)
            final = self._snapshot
            self._cancel_reset_timer()
            if reset_delay > 0:
                self._reset_timer = threading.Timer(reset_delay, self.reset)
                self._reset_timer.daemon = True
                self._reset_timer.start()

        if reset_delay <= 0:
            self.reset()
        return final

    def reset(self):
        with self._lock:
            self._snapshot = ProgressSnapshot()

    def _cancel_reset_timer(self):
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None
