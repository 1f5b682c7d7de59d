from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from .fswatch import StoreFileWatcher

logger = logging.getLogger(__name__)

RECONCILIATION_INTERVAL_S = 10 * 60


class ChangeDetector:
    """Decides which conversations need re-parsing on a pipeline run.

    A dirty flag is raised by file-change notifications (and by the activity
    watcher); a periodic timer forces a full reconciliation so that missed or
    coalesced notifications only delay a change, never hide it.
    """

    def __init__(self, *, reconciliation_interval_s: float = RECONCILIATION_INTERVAL_S) -> None:
        self.reconciliation_interval_s = reconciliation_interval_s
        self._lock = threading.Lock()
        self._dirty = False
        self._force_full = False
        self._index: dict[str, int] = {}
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._file_watcher: StoreFileWatcher | None = None

    @property
    def started(self) -> bool:
        return self._thread is not None

    @property
    def dirty(self) -> bool:
        with self._lock:
            return self._dirty

    def mark_dirty(self) -> None:
        with self._lock:
            self._dirty = True

    def consume_dirty(self) -> bool:
        with self._lock:
            value = self._dirty
            self._dirty = False
            return value

    def request_full_reconciliation(self) -> None:
        with self._lock:
            self._force_full = True

    def consume_full_reconciliation(self) -> bool:
        with self._lock:
            value = self._force_full
            if value:
                self._force_full = False
            return value

    def is_unchanged(self, conversation_id: str, stamp: int, *, dirty: bool, force: bool) -> bool:
        """True when the index already holds ``stamp`` and no flag is set.

        Otherwise the index is updated to ``stamp`` and the caller should
        re-parse.
        """
        with self._lock:
            known = self._index.get(conversation_id)
            if not dirty and not force and known is not None and known == stamp:
                return True
            self._index[conversation_id] = stamp
            return False

    def purge(self, seen_ids: Iterable[str]) -> int:
        seen = set(seen_ids)
        with self._lock:
            stale = [cid for cid in self._index if cid not in seen]
            for cid in stale:
                del self._index[cid]
        return len(stale)

    def index_snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._index)

    def start(self, file_watcher: StoreFileWatcher | None = None) -> None:
        if self._thread is not None:
            return
        if file_watcher is not None:
            file_watcher.subscribe(self.mark_dirty)
            file_watcher.start()
            self._file_watcher = file_watcher
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="cursor-usage-reconcile", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        if self._file_watcher is not None:
            self._file_watcher.unsubscribe(self.mark_dirty)
            self._file_watcher = None
        thread = self._thread
        self._thread = None
        self._stop.set()
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=2)
        with self._lock:
            self._dirty = False

    def _run(self) -> None:
        interval = max(0.01, float(self.reconciliation_interval_s))
        while not self._stop.wait(interval):
            self.request_full_reconciliation()
            logger.debug("full reconciliation scheduled")
