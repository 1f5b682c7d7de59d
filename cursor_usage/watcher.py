from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable
from pathlib import Path

from .change_detector import ChangeDetector
from .fswatch import StoreFileWatcher
from .parser import turn_token_counts
from .store import ASSISTANT_ROLE, ActivityUpdate, Turn, decode_json, open_record_store
from .store.utils import TURN_PREFIX, now_ms, split_turn_key, to_epoch_ms

logger = logging.getLogger(__name__)

ActivityCallback = Callable[[ActivityUpdate], None]

STATE_IDLE = "idle"
STATE_INITIALIZED = "initialized"
STATE_WATCHING = "watching"

DEBOUNCE_MS = 150
POLL_INTERVAL_MS = 1000
PENDING_RECHECK_MS = 500
EMITTED_KEYS_MAX = 10_000
PENDING_MAX_ATTEMPTS = 20
PENDING_KEYS_MAX = 1000


class ActivityWatcher:
    """Reports new assistant turns with low latency.

    Progress is a row-id cursor over turn records. Turns that show up before
    the editor has written their content are parked in a pending set and
    re-read on every trigger until they resolve or run out of attempts;
    tool-call turns often never get text or counts. Stopping only detaches the
    callback; the cursor and timers keep their state so a later start picks
    up where the watcher left off.
    """

    def __init__(
        self,
        db_path: Path | str,
        *,
        change_detector: ChangeDetector | None = None,
        file_watcher: StoreFileWatcher | None = None,
        estimate: bool = True,
        debounce_ms: int = DEBOUNCE_MS,
        poll_ms: int = POLL_INTERVAL_MS,
        pending_recheck_ms: int = PENDING_RECHECK_MS,
        pending_max_attempts: int = PENDING_MAX_ATTEMPTS,
    ) -> None:
        self.db_path = Path(db_path).expanduser()
        self.change_detector = change_detector
        self.file_watcher = file_watcher
        self.estimate = estimate
        self.debounce_ms = debounce_ms
        self.poll_ms = poll_ms
        self.pending_recheck_ms = pending_recheck_ms
        self.pending_max_attempts = max(1, pending_max_attempts)

        self._lock = threading.Lock()
        self._check_lock = threading.Lock()
        self._state = STATE_IDLE
        self._callback: ActivityCallback | None = None
        self._cursor = 0
        self._pending: OrderedDict[tuple[str, str], int] = OrderedDict()
        self._emitted: OrderedDict[tuple[str, str], None] = OrderedDict()
        self._debounce_timer: threading.Timer | None = None
        self._recheck_timer: threading.Timer | None = None
        self._poll_thread: threading.Thread | None = None
        self._stop = threading.Event()

    @property
    def state(self) -> str:
        return self._state

    @property
    def cursor(self) -> int:
        with self._lock:
            return self._cursor

    @property
    def pending(self) -> set[tuple[str, str]]:
        with self._lock:
            return set(self._pending)

    @property
    def recheck_active(self) -> bool:
        with self._lock:
            return self._recheck_timer is not None

    @property
    def callback(self) -> ActivityCallback | None:
        return self._callback

    def initialize(self) -> None:
        """Move the cursor to the newest turn row; history is not replayed."""
        with open_record_store(self.db_path, see_uncommitted=True) as store:
            cursor = store.max_row_id(TURN_PREFIX) if store is not None else 0
        with self._lock:
            self._cursor = cursor
            self._state = STATE_INITIALIZED
        logger.debug("activity watcher initialized", extra={"cursor": cursor})

    def start(self, callback: ActivityCallback, *, timers: bool = True) -> None:
        self._callback = callback
        with self._lock:
            if self._state == STATE_WATCHING:
                return
            needs_init = self._state == STATE_IDLE
        if needs_init:
            self.initialize()
        if timers:
            if self.file_watcher is not None:
                self.file_watcher.subscribe(self.on_file_change)
                self.file_watcher.start()
            self._stop.clear()
            self._poll_thread = threading.Thread(
                target=self._run, name="cursor-usage-activity", daemon=True
            )
            self._poll_thread.start()
        with self._lock:
            self._state = STATE_WATCHING

    def stop(self) -> None:
        self._callback = None

    def shutdown(self) -> None:
        self._callback = None
        self._stop.set()
        if self.file_watcher is not None:
            self.file_watcher.unsubscribe(self.on_file_change)
        with self._lock:
            timers = [self._debounce_timer, self._recheck_timer]
            self._debounce_timer = None
            self._recheck_timer = None
            thread = self._poll_thread
            self._poll_thread = None
            self._pending.clear()
            self._emitted.clear()
            self._cursor = 0
            self._state = STATE_IDLE
        for timer in timers:
            if timer is not None:
                timer.cancel()
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=2)

    def on_file_change(self) -> None:
        delay = self.debounce_ms / 1000.0
        with self._lock:
            if self._state != STATE_WATCHING:
                return
            existing = self._debounce_timer
            timer = threading.Timer(delay, self._on_debounced)
            timer.daemon = True
            self._debounce_timer = timer
        if existing is not None:
            existing.cancel()
        timer.start()

    def check(self) -> int:
        """Process new turn rows and pending turns; return deltas emitted."""
        callback = self._callback
        if callback is None:
            return 0
        emitted = 0
        with self._check_lock:
            with open_record_store(self.db_path, see_uncommitted=True) as store:
                if store is None:
                    return 0
                for key in sorted(self.pending):
                    update = self._extract(key[0], store.read_turn(*key))
                    if update is None:
                        self._retry_pending(key)
                        continue
                    with self._lock:
                        self._pending.pop(key, None)
                    emitted += self._emit(callback, key, update)

                rows = store.scan_since(TURN_PREFIX, self.cursor)
                if rows and self.change_detector is not None:
                    self.change_detector.mark_dirty()
                for row_id, raw_key, value in rows:
                    with self._lock:
                        self._cursor = max(self._cursor, row_id)
                    key = split_turn_key(raw_key)
                    if key is None:
                        continue
                    with self._lock:
                        if key in self._emitted:
                            continue
                    turn = Turn.from_record(decode_json(value, raw_key))
                    if turn is None or turn.role != ASSISTANT_ROLE:
                        continue
                    update = self._extract(key[0], turn)
                    if update is None:
                        self._add_pending(key)
                        continue
                    with self._lock:
                        self._pending.pop(key, None)
                    emitted += self._emit(callback, key, update)
        self._sync_recheck_timer()
        return emitted

    def _add_pending(self, key: tuple[str, str]) -> None:
        with self._lock:
            if key in self._pending:
                return
            self._pending[key] = 0
            while len(self._pending) > PENDING_KEYS_MAX:
                dropped, _ = self._pending.popitem(last=False)
                logger.debug(
                    "pending turn evicted",
                    extra={"session_id": dropped[0], "message_id": dropped[1]},
                )

    def _retry_pending(self, key: tuple[str, str]) -> None:
        with self._lock:
            attempts = self._pending.get(key)
            if attempts is None:
                return
            attempts += 1
            if attempts < self.pending_max_attempts:
                self._pending[key] = attempts
                return
            del self._pending[key]
        logger.debug(
            "pending turn abandoned",
            extra={"session_id": key[0], "message_id": key[1], "attempts": attempts},
        )

    def _extract(self, conversation_id: str, turn: Turn | None) -> ActivityUpdate | None:
        if turn is None or turn.role != ASSISTANT_ROLE:
            return None
        tokens, estimated = turn_token_counts(turn, estimate=self.estimate)
        if tokens.input == 0 and tokens.output == 0:
            return None
        return ActivityUpdate(
            session_id=conversation_id,
            message_id=turn.turn_id,
            tokens=tokens,
            timestamp=to_epoch_ms(turn.created_at, now_ms()),
            is_estimated=estimated,
        )

    def _emit(
        self, callback: ActivityCallback, key: tuple[str, str], update: ActivityUpdate
    ) -> int:
        with self._lock:
            self._emitted[key] = None
            while len(self._emitted) > EMITTED_KEYS_MAX:
                self._emitted.popitem(last=False)
        try:
            callback(update)
        except Exception as exc:
            logger.exception(
                "activity callback failed",
                extra={"session_id": update.session_id, "message_id": update.message_id},
                exc_info=exc,
            )
        return 1

    def _sync_recheck_timer(self) -> None:
        with self._lock:
            if self._pending and self._state == STATE_WATCHING and not self._stop.is_set():
                if self._recheck_timer is not None:
                    return
                timer = threading.Timer(self.pending_recheck_ms / 1000.0, self._on_recheck)
                timer.daemon = True
                self._recheck_timer = timer
            else:
                timer = self._recheck_timer
                self._recheck_timer = None
                if timer is not None:
                    timer.cancel()
                return
        timer.start()

    def _on_recheck(self) -> None:
        with self._lock:
            self._recheck_timer = None
        self._safe_check()

    def _on_debounced(self) -> None:
        with self._lock:
            self._debounce_timer = None
        self._safe_check()

    def _safe_check(self) -> None:
        try:
            self.check()
        except Exception as exc:
            logger.exception("activity check failed", exc_info=exc)

    def _run(self) -> None:
        interval = max(0.01, self.poll_ms / 1000.0)
        while not self._stop.wait(interval):
            self._safe_check()
