from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class _StoreEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: StoreFileWatcher) -> None:
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(self._watcher.matches(os.fsdecode(p)) for p in paths if p):
            self._watcher.notify()


class StoreFileWatcher:
    """Fans out change notifications for the state database and its WAL."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path).expanduser()
        self._names = {self.db_path.name, f"{self.db_path.name}-wal"}
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []
        self._observer: Observer | None = None

    def matches(self, path: str) -> bool:
        return Path(path).name in self._names

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> bool:
        with self._lock:
            if self._observer is not None:
                return True
            directory = self.db_path.parent
            if not directory.is_dir():
                logger.debug("state directory missing, file watch disabled")
                return False
            observer = Observer()
            try:
                observer.schedule(_StoreEventHandler(self), str(directory), recursive=False)
                observer.daemon = True
                observer.start()
            except OSError as exc:
                logger.warning("state database watch failed", exc_info=exc)
                return False
            self._observer = observer
            return True

    def stop(self) -> None:
        with self._lock:
            observer = self._observer
            self._observer = None
        if observer is None:
            return
        observer.stop()
        if observer.is_alive():
            observer.join(timeout=2)

    def notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception as exc:
                logger.exception("file change listener failed", exc_info=exc)
