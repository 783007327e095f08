"""
Local Key-Value Persistence
===========================

A small JSON-file key-value store that plays the role of browser local
storage: the API key string, the resolved-model cache, and the serialized
result rows all live in one file under ``~/.stockmeta``.

The store enforces a capacity limit on the serialized file. A write that
would exceed it, or that the file system rejects, raises
``PersistenceError`` and leaves the previous file contents untouched.

Several stockmeta processes may share the file (one terminal generating,
another adding images or changing keys). Every write therefore re-reads the
file and replaces only its own key while holding an exclusive lock on a
sibling ``.lock`` file, and reads always see the latest file contents.

``BatchLock`` guards generation runs across processes: the process that
holds it owns the running batch, every other process can see that it is
held.
"""

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Optional

import portalocker

from stockmeta.core import config
from stockmeta.core.exceptions import BatchInProgressError, PersistenceError

logger = logging.getLogger(__name__)


def _sibling(path: Path, suffix: str) -> Path:
    return path.with_name(path.name + suffix)


class BatchLock:
    """
    Inter-process flag for a running generation batch.

    Attributes:
        path: Lock file; the lock is an exclusive OS lock on it
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock: Optional[portalocker.Lock] = None

    def _new_lock(self) -> portalocker.Lock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return portalocker.Lock(str(self.path), mode="a", timeout=0, fail_when_locked=True)

    @property
    def held(self) -> bool:
        """True when this object owns the lock."""
        return self._lock is not None

    def acquire(self):
        """
        Take the batch lock without waiting.

        Raises:
            BatchInProgressError: If another process (or store) holds it.
        """
        if self._lock is not None:
            raise BatchInProgressError("A generation batch is already running")
        lock = self._new_lock()
        try:
            lock.acquire()
        except portalocker.exceptions.LockException as e:
            raise BatchInProgressError("A generation batch is already running in another process") from e
        self._lock = lock
        logger.debug(f"Acquired batch lock {self.path}")

    def release(self):
        if self._lock is None:
            return
        self._lock.release()
        self._lock = None
        logger.debug(f"Released batch lock {self.path}")

    def held_elsewhere(self) -> bool:
        """True when someone other than this object holds the batch lock."""
        if self._lock is not None:
            return False
        candidate = self._new_lock()
        try:
            candidate.acquire()
        except portalocker.exceptions.LockException:
            return True
        candidate.release()
        return False


class JsonFileStorage:
    """
    JSON-file backed key-value store with a capacity limit.

    Attributes:
        path: Location of the JSON file
        capacity_bytes: Largest serialized size accepted for the whole file
        lock_path: Lock file serializing writers across processes
        batch_lock: BatchLock shared by every store opened on ``path``
    """

    def __init__(self, path: Optional[Path] = None, capacity_bytes: int = config.STORAGE_CAPACITY_BYTES):
        self.path = Path(path) if path else config.APP_DATA_DIR / config.STORAGE_FILENAME
        self.capacity_bytes = capacity_bytes
        self.lock_path = _sibling(self.path, config.STORAGE_LOCK_SUFFIX)
        self.batch_lock = BatchLock(_sibling(self.path, config.BATCH_LOCK_SUFFIX))
        self._lock = threading.RLock()
        self._file_lock: Optional[portalocker.Lock] = None
        self._depth = 0
        self._data: Dict[str, Any] = self._read()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                logger.error(f"Storage file {self.path} does not hold an object, ignoring it")
                return {}
            return data
        except json.JSONDecodeError as e:
            logger.error(f"Storage file is corrupted: {e}")
            return {}
        except OSError as e:
            logger.error(f"Failed to read storage file {self.path}: {e}")
            return {}

    def _write(self, data: Dict[str, Any]):
        payload = json.dumps(data, ensure_ascii=False)
        size = len(payload.encode("utf-8"))
        if size > self.capacity_bytes:
            raise PersistenceError(
                f"Storage quota exceeded: {size} bytes requested, limit is {self.capacity_bytes} bytes"
            )

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=".storage-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to write storage file {self.path}: {e}") from e

    @contextmanager
    def locked(self):
        """
        Hold the inter-process write lock; re-entrant within this store.

        Raises:
            PersistenceError: If another process keeps the lock past the timeout.
        """
        with self._lock:
            if self._depth == 0:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                lock = portalocker.Lock(
                    str(self.lock_path),
                    mode="a",
                    timeout=config.STORAGE_LOCK_TIMEOUT_SECONDS,
                )
                try:
                    lock.acquire()
                except portalocker.exceptions.LockException as e:
                    raise PersistenceError(f"Storage file {self.path} is locked by another process") from e
                self._file_lock = lock
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
                if self._depth == 0:
                    self._file_lock.release()
                    self._file_lock = None

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            self._data = self._read()
            return self._data.get(key, default)

    def set(self, key: str, value: Any):
        """Store a JSON-serializable value; raises PersistenceError on rejection."""
        with self.locked():
            updated = self._read()
            updated[key] = value
            self._write(updated)
            self._data = updated

    def remove(self, key: str):
        with self.locked():
            updated = self._read()
            if key not in updated:
                self._data = updated
                return
            del updated[key]
            self._write(updated)
            self._data = updated

    def __contains__(self, key: str) -> bool:
        with self._lock:
            self._data = self._read()
            return key in self._data
