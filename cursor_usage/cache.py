from __future__ import annotations

import threading
from dataclasses import dataclass, field

from .store import UsageRow
from .store.utils import now_ms

RESULT_CACHE_TTL_MS = 2000
AGGREGATE_CACHE_MAX = 10_000


@dataclass
class AggregateEntry:
    last_modified: int
    rows: list[UsageRow]
    last_accessed: int


@dataclass
class _ResultSlot:
    checked_at: int = 0
    rows: list[UsageRow] = field(default_factory=list)
    limit: int | None = None
    since: int | None = None


class ResultCache:
    """Single-slot cache of the last full pipeline result."""

    def __init__(self, ttl_ms: int = RESULT_CACHE_TTL_MS) -> None:
        self.ttl_ms = ttl_ms
        self._lock = threading.Lock()
        self._slot = _ResultSlot()

    def lookup(
        self, *, limit: int, since: int | None, now: int | None = None
    ) -> list[UsageRow] | None:
        now = now_ms() if now is None else now
        with self._lock:
            slot = self._slot
            if not slot.rows:
                return None
            if slot.limit != limit or slot.since != since:
                return None
            if now - slot.checked_at >= self.ttl_ms:
                return None
            return list(slot.rows)

    def store(
        self, rows: list[UsageRow], *, limit: int, since: int | None, now: int | None = None
    ) -> None:
        with self._lock:
            self._slot = _ResultSlot(
                checked_at=now_ms() if now is None else now,
                rows=list(rows),
                limit=limit,
                since=since,
            )

    def clear(self) -> None:
        with self._lock:
            self._slot = _ResultSlot()


class AggregateCache:
    """Per-conversation parsed rows, versioned by last-modified stamp.

    Bounded with strict least-recently-used eviction by ``last_accessed``.
    """

    def __init__(self, max_entries: int = AGGREGATE_CACHE_MAX) -> None:
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: dict[str, AggregateEntry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, conversation_id: object) -> bool:
        with self._lock:
            return conversation_id in self._entries

    def lookup(
        self, conversation_id: str, last_modified: int, *, now: int | None = None
    ) -> list[UsageRow] | None:
        """Return fresh rows and bump recency, or ``None`` when stale."""
        with self._lock:
            entry = self._entries.get(conversation_id)
            if entry is None:
                return None
            # An empty entry may predate the conversation's turns being written.
            if not entry.rows or entry.last_modified != last_modified:
                return None
            entry.last_accessed = now_ms() if now is None else now
            return list(entry.rows)

    def put(
        self,
        conversation_id: str,
        last_modified: int,
        rows: list[UsageRow],
        *,
        now: int | None = None,
    ) -> None:
        with self._lock:
            self._entries[conversation_id] = AggregateEntry(
                last_modified=last_modified,
                rows=list(rows),
                last_accessed=now_ms() if now is None else now,
            )

    def evict(self) -> int:
        with self._lock:
            overflow = len(self._entries) - self.max_entries
            if overflow <= 0:
                return 0
            # Stable sort keeps insertion order among equal access stamps.
            oldest = sorted(self._entries.items(), key=lambda item: item[1].last_accessed)
            for conversation_id, _ in oldest[:overflow]:
                del self._entries[conversation_id]
            return overflow

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
