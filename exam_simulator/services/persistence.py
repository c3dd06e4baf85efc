"""
services/persistence.py

Storage of one serialized exam snapshot (a JSON-compatible dict).

Writes are fire-and-forget from the session's point of view: failures are
logged and never raised into the exam flow.
"""

import json
import logging
import os
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

Snapshot = Dict[str, Any]


@runtime_checkable
class PersistenceAdapter(Protocol):
    def load(self) -> Optional[Snapshot]:
        ...

    def save(self, snapshot: Snapshot) -> None:
        ...

    def clear(self) -> None:
        ...


class InMemoryStore:
    """Keeps the snapshot as a JSON string, so stored data cannot alias live state."""

    def __init__(self):
        self._blob: Optional[str] = None

    def load(self) -> Optional[Snapshot]:
        if self._blob is None:
            return None
        return json.loads(self._blob)

    def save(self, snapshot: Snapshot) -> None:
        self._blob = json.dumps(snapshot, ensure_ascii=False)

    def clear(self) -> None:
        self._blob = None


class JsonFileStore:
    """
    One snapshot per file.

    The file is replaced atomically. A file that cannot be parsed is removed
    and treated as absent.

    With `background=True` the snapshot is serialized on the caller's thread
    and written by a single worker thread, so saves return without touching
    the disk. Writes stay in submission order; load() and clear() wait for
    pending writes first.
    """

    def __init__(self, path: str, background: bool = False):
        self.path = path
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="snapshot") if background else None
        )
        self._futures: List[Future] = []

    def load(self) -> Optional[Snapshot]:
        self.wait()
        with self._lock:
            if not os.path.exists(self.path):
                return None
            try:
                with open(self.path, encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Snapshot {self.path} unreadable, discarding: {e}")
                self._remove()
                return None
        if not isinstance(data, dict):
            logger.error(f"Snapshot {self.path} is not an object, discarding")
            self.clear()
            return None
        return data

    def save(self, snapshot: Snapshot) -> None:
        try:
            blob = json.dumps(snapshot, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.error(f"Snapshot not serializable ({self.path}): {e}")
            return
        if self._executor is None:
            self._write(blob)
            return
        self._futures = [f for f in self._futures if not f.done()]
        self._futures.append(self._executor.submit(self._write, blob))

    def wait(self) -> None:
        """Block until queued writes are on disk."""
        pending, self._futures = self._futures, []
        for future in pending:
            future.result()

    def clear(self) -> None:
        self.wait()
        with self._lock:
            self._remove()

    def close(self) -> None:
        """Flush queued writes and stop the writer thread."""
        self.wait()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _write(self, blob: str) -> None:
        with self._lock:
            directory = os.path.dirname(os.path.abspath(self.path))
            tmp_path = None
            try:
                os.makedirs(directory, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(blob)
                os.replace(tmp_path, self.path)
                tmp_path = None
            except OSError as e:
                logger.error(f"Snapshot save failed ({self.path}): {e}")
            finally:
                if tmp_path and os.path.exists(tmp_path):
                    os.remove(tmp_path)

    def _remove(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Snapshot delete failed ({self.path}): {e}")
