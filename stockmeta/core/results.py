"""
Result Store
============

Ordered mapping from row id to row state, persisted to the local key-value
store after every change.

Responsibilities:
-----------------
- Intake: validates image files, rejects duplicate filenames, and creates
  pending rows with an embedded preview.
- State changes: row status moves only through the transition methods,
  which delegate to the state machine in ``models``; callers may toggle
  selection freely.
- Persistence: previews are stored only for successful rows. If the store
  rejects the write (capacity), the payload is retried without previews and
  then with essential fields only. A failure of the last attempt is logged
  and swallowed; the in-memory rows stay authoritative for the session.
- Batch exclusion: while a batch is running, in this process or in another
  one sharing the storage file, intake and removal are refused.
- Sharing: every change re-reads the stored rows first, so rows added or
  removed by another process survive this process's next write.
"""

import logging
import threading
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from . import config
from . import models
from .exceptions import BatchInProgressError, PersistenceError, StockMetaError
from .image_processing import make_preview, validate_image
from .models import Row, RowStatus

logger = logging.getLogger(__name__)

# Fields kept by the last-resort persistence payload
ESSENTIAL_FIELDS = (
    "id", "filename", "file_size", "title", "description",
    "keywords", "status", "error", "selected", "generated_at",
)

INTERRUPTED_MESSAGE = "Generation was interrupted before completion"

# Fields a degraded payload may blank out; the in-memory value wins then
LOCAL_FIELDS = ("preview", "source_path")


@dataclass
class IntakeResult:
    """Rows created by an intake call and the files it refused."""
    added: List[Row] = field(default_factory=list)
    rejected: List[Tuple[str, str]] = field(default_factory=list)


def _copy(row: Row) -> Row:
    return replace(row, warnings=list(row.warnings))


class ResultStore:
    """
    Thread-safe, persisted collection of rows.

    Attributes:
        storage: Key-value store the rows are serialized into
        storage_key: Key under which the row list is stored
    """

    def __init__(self, storage, storage_key: str = config.STORAGE_KEY_RESULTS, batch_lock=None):
        self.storage = storage
        self.storage_key = storage_key
        self.batch_lock = batch_lock if batch_lock is not None else getattr(storage, "batch_lock", None)
        self._lock = threading.RLock()
        self._rows: Dict[str, Row] = {}
        self._batch_running = False
        # False while the rows in memory are newer than anything stored
        self._persisted = True
        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _storage_locked(self):
        locked = getattr(self.storage, "locked", None)
        return locked() if locked is not None else nullcontext()

    def _load(self):
        with self._lock, self._storage_locked():
            for record in self.storage.get(self.storage_key) or []:
                try:
                    row = Row.from_dict(record)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping unreadable stored row: {e}")
                    continue
                self._rows[row.id] = row
            logger.info(f"Loaded {len(self._rows)} rows from storage")

            # A process that died mid-batch leaves rows in 'generating'
            if self._batch_elsewhere():
                return
            stale = [row for row in self._rows.values() if row.status is RowStatus.GENERATING]
            for row in stale:
                models.complete_error(row, INTERRUPTED_MESSAGE)
            if stale:
                logger.warning(f"{len(stale)} rows were left generating by a previous run and are now marked failed")
                self._sync()

    def _merge_record(self, record: dict) -> dict:
        current = self._rows.get(record.get("id"))
        if current is None:
            return record
        merged = current.to_dict()
        merged.update({name: value for name, value in record.items() if value or name not in LOCAL_FIELDS})
        return merged

    def _refresh(self):
        """Replace the in-memory rows with the stored ones, keeping local-only fields."""
        if not self._persisted:
            return
        stored = self.storage.get(self.storage_key)
        if stored is None:
            return
        refreshed: Dict[str, Row] = {}
        for record in stored:
            try:
                row = Row.from_dict(self._merge_record(record))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning(f"Skipping unreadable stored row: {e}")
                continue
            refreshed[row.id] = row
        self._rows = refreshed

    @contextmanager
    def _change(self):
        """Serialize a read-modify-write of the rows against every other writer."""
        with self._lock, self._storage_locked():
            self._refresh()
            yield

    def _serialize_full(self) -> List[dict]:
        records = []
        for row in self._rows.values():
            data = row.to_dict()
            if row.status is not RowStatus.SUCCESS:
                data["preview"] = ""
            records.append(data)
        return records

    def _serialize_without_previews(self) -> List[dict]:
        records = []
        for row in self._rows.values():
            data = row.to_dict()
            data["preview"] = ""
            records.append(data)
        return records

    def _serialize_minimal(self) -> List[dict]:
        return [
            {name: value for name, value in row.to_dict().items() if name in ESSENTIAL_FIELDS}
            for row in self._rows.values()
        ]

    def _sync(self):
        """Write rows to storage, shrinking the payload on rejection."""
        attempts = (
            ("full", self._serialize_full),
            ("without previews", self._serialize_without_previews),
            ("essential fields only", self._serialize_minimal),
        )
        for index, (label, serialize) in enumerate(attempts):
            try:
                self.storage.set(self.storage_key, serialize())
                if index:
                    logger.warning(f"Stored results {label} after storage rejected larger payloads")
                self._persisted = True
                return
            except PersistenceError as e:
                if index == len(attempts) - 1:
                    logger.error(f"Failed to save results to storage after retry: {e}")
                    self._persisted = False
                    return
                logger.debug(f"Storing results ({label}) failed: {e}")

    # ------------------------------------------------------------------
    # Batch exclusion
    # ------------------------------------------------------------------

    def _batch_elsewhere(self) -> bool:
        return self.batch_lock is not None and self.batch_lock.held_elsewhere()

    @property
    def batch_running(self) -> bool:
        """True while a batch runs in this process or in another one on the same storage."""
        with self._lock:
            return self._batch_running or self._batch_elsewhere()

    @contextmanager
    def batch(self):
        """Hold the batch flag (and the inter-process batch lock) for a generation run."""
        with self._lock:
            if self._batch_running:
                raise BatchInProgressError("A generation batch is already running")
            if self.batch_lock is not None:
                self.batch_lock.acquire()
            self._batch_running = True
        try:
            yield self
        finally:
            with self._lock:
                self._batch_running = False
                if self.batch_lock is not None:
                    self.batch_lock.release()

    def _ensure_idle(self, action: str):
        if self._batch_running or self._batch_elsewhere():
            raise BatchInProgressError(f"Cannot {action} while a generation batch is running")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def rows(self) -> List[Row]:
        with self._lock:
            self._refresh()
            return [_copy(row) for row in self._rows.values()]

    def get(self, row_id: str) -> Optional[Row]:
        with self._lock:
            self._refresh()
            row = self._rows.get(row_id)
            return _copy(row) if row else None

    def __len__(self) -> int:
        with self._lock:
            self._refresh()
            return len(self._rows)

    def _by_status(self, status: RowStatus) -> List[Row]:
        return [row for row in self.rows() if row.status is status]

    def pending_rows(self) -> List[Row]:
        return self._by_status(RowStatus.PENDING)

    def failed_rows(self) -> List[Row]:
        return self._by_status(RowStatus.ERROR)

    def successful_rows(self) -> List[Row]:
        return self._by_status(RowStatus.SUCCESS)

    def selected_pending_rows(self) -> List[Row]:
        return [row for row in self.pending_rows() if row.selected]

    def rows_to_generate(self) -> List[Row]:
        """Selected pending rows when any are selected, otherwise all pending rows."""
        selected = self.selected_pending_rows()
        return selected if selected else self.pending_rows()

    def counts(self) -> Dict[str, int]:
        result = {status.value: 0 for status in RowStatus}
        for row in self.rows():
            result[row.status.value] += 1
        return result

    # ------------------------------------------------------------------
    # Intake and user actions
    # ------------------------------------------------------------------

    def add_files(self, paths: Iterable[Path]) -> IntakeResult:
        """
        Validate image files and queue them as pending rows.

        Files with a filename already present (or repeated within the call),
        unsupported formats, oversize files, and anything beyond the
        per-call limit are rejected with a reason.
        """
        result = IntakeResult()
        with self._change():
            self._ensure_idle("add images")
            known = {row.filename for row in self._rows.values()}

            for raw_path in paths:
                path = Path(raw_path).expanduser().resolve()
                if len(result.added) >= config.MAX_FILES_PER_BATCH:
                    result.rejected.append((str(path), f"Maximum {config.MAX_FILES_PER_BATCH} files per batch"))
                    continue
                if path.name in known:
                    result.rejected.append((str(path), "Duplicate filename"))
                    continue

                valid, reason = validate_image(path)
                if not valid:
                    result.rejected.append((str(path), reason))
                    continue

                try:
                    preview = make_preview(path)
                except OSError as e:
                    result.rejected.append((str(path), f"Cannot build preview: {e}"))
                    continue

                row = Row(
                    filename=path.name,
                    file_size=path.stat().st_size,
                    source_path=str(path),
                    preview=preview,
                )
                self._rows[row.id] = row
                known.add(row.filename)
                result.added.append(_copy(row))

            if result.added:
                self._sync()

        for path, reason in result.rejected:
            logger.warning(f"Rejected {path}: {reason}")
        logger.info(f"Queued {len(result.added)} images, rejected {len(result.rejected)}")
        return result

    def remove(self, row_id: str) -> bool:
        with self._change():
            self._ensure_idle("remove images")
            if self._rows.pop(row_id, None) is None:
                return False
            self._sync()
            return True

    def clear_processed(self) -> int:
        """Drop every row that is no longer pending; returns how many were dropped."""
        with self._change():
            self._ensure_idle("clear processed images")
            before = len(self._rows)
            self._rows = {rid: row for rid, row in self._rows.items() if row.status is RowStatus.PENDING}
            removed = before - len(self._rows)
            if removed:
                self._sync()
            return removed

    def set_selected(self, row_id: str, selected: bool) -> bool:
        with self._change():
            row = self._rows.get(row_id)
            if row is None:
                return False
            row.selected = selected
            self._sync()
            return True

    def set_all_selected(self, selected: bool):
        with self._change():
            for row in self._rows.values():
                row.selected = selected
            self._sync()

    # ------------------------------------------------------------------
    # State transitions (batch pipeline only)
    # ------------------------------------------------------------------

    def _transition(self, row_id: str, apply) -> Row:
        with self._change():
            row = self._rows.get(row_id)
            if row is None:
                raise StockMetaError(f"Unknown row: {row_id}")
            apply(row)
            self._sync()
            return _copy(row)

    def begin_generating(self, row_id: str) -> Row:
        return self._transition(row_id, models.begin_generating)

    def complete_success(self, row_id: str, title: str, description: str, keywords: str, warnings=None) -> Row:
        return self._transition(
            row_id, lambda row: models.complete_success(row, title, description, keywords, warnings)
        )

    def complete_error(self, row_id: str, reason: str) -> Row:
        return self._transition(row_id, lambda row: models.complete_error(row, reason))
