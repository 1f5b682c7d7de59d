from __future__ import annotations

import dataclasses
import logging
import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures

from ..store import EnrichmentRecord, TokenCounts, UsageRow
from .persistence import KeyValueStore, load_enrichment_cache, save_enrichment_cache

logger = logging.getLogger(__name__)

MATCH_WINDOW_MS = 60_000


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def match_records(
    groups: dict[str, list[UsageRow]],
    records: list[EnrichmentRecord],
    *,
    window_ms: int = MATCH_WINDOW_MS,
) -> dict[str, EnrichmentRecord]:
    """Greedy time-proximity matching of conversations to export rows.

    Conversations are visited in ``groups`` order; each takes the nearest
    unused record within the window. Records are consumed at most once.
    """
    ordered = sorted(records, key=lambda r: r.timestamp)
    used: set[int] = set()
    matched: dict[str, EnrichmentRecord] = {}
    for session_id, rows in groups.items():
        updated_at = max((row.session_updated_at or row.timestamp for row in rows), default=0)
        best_idx = -1
        best_delta = math.inf
        for idx, record in enumerate(ordered):
            if idx in used:
                continue
            delta = abs(record.timestamp - updated_at)
            if delta > window_ms:
                continue
            if delta < best_delta:
                best_delta = delta
                best_idx = idx
        if best_idx != -1:
            used.add(best_idx)
            matched[session_id] = ordered[best_idx]
    return matched


def distribute(rows: list[UsageRow], record: EnrichmentRecord) -> list[UsageRow]:
    """Spread a record's totals over rows by share of estimated output."""
    total_output = sum(row.tokens.output for row in rows)
    cache_write = record.cache_write
    distributed: list[UsageRow] = []
    for row in rows:
        if total_output > 0:
            weight = row.tokens.output / total_output
        else:
            weight = 1 / len(rows)
        tokens = TokenCounts(
            input=_round_half_up(record.input_without_cache_write * weight),
            output=_round_half_up(record.output * weight),
            cache_read=(
                _round_half_up(record.cache_read * weight) if record.cache_read > 0 else None
            ),
            cache_write=_round_half_up(cache_write * weight) if cache_write > 0 else None,
        )
        distributed.append(
            dataclasses.replace(
                row,
                tokens=tokens,
                cost=round(record.cost * weight, 6) if record.cost > 0 else row.cost,
                is_estimated=False,
            )
        )
    return distributed


class EnrichmentMerger:
    """Overlays authoritative export totals onto locally parsed rows.

    Enriched rows are kept per conversation and mirrored to ``storage`` so
    that a later run without export data, or after a restart, replays them
    instead of falling back to estimates.
    """

    def __init__(
        self,
        *,
        storage: KeyValueStore | None = None,
        match_window_ms: int = MATCH_WINDOW_MS,
    ) -> None:
        self.storage = storage
        self.match_window_ms = match_window_ms
        self._lock = threading.Lock()
        self._cache: dict[str, list[UsageRow]] = {}
        self._hydrated = False
        self._executor: ThreadPoolExecutor | None = None
        self._pending_saves: list[Future[None]] = []

    def cached_rows(self, session_id: str) -> list[UsageRow] | None:
        with self._lock:
            rows = self._cache.get(session_id)
            return list(rows) if rows is not None else None

    def hydrate(self) -> None:
        with self._lock:
            if self._hydrated:
                return
            self._hydrated = True
        persisted = load_enrichment_cache(self.storage)
        with self._lock:
            for session_id, rows in persisted.items():
                self._cache.setdefault(session_id, rows)
        if persisted:
            logger.debug("enrichment cache hydrated", extra={"sessions": len(persisted)})

    def enrich(self, local_rows: list[UsageRow], records: list[EnrichmentRecord]) -> list[UsageRow]:
        self.hydrate()
        if not records:
            return [self._replay(row) for row in local_rows]

        groups: dict[str, list[UsageRow]] = {}
        for row in local_rows:
            groups.setdefault(row.session_id, []).append(row)

        matched = match_records(groups, records, window_ms=self.match_window_ms)
        enriched_groups = {sid: distribute(groups[sid], record) for sid, record in matched.items()}

        if enriched_groups:
            with self._lock:
                self._cache.update(enriched_groups)
                snapshot = dict(self._cache)
            self._save_async(snapshot)

        positions = {sid: 0 for sid in enriched_groups}
        result: list[UsageRow] = []
        for row in local_rows:
            enriched = enriched_groups.get(row.session_id)
            if enriched is None:
                result.append(self._replay(row))
                continue
            result.append(enriched[positions[row.session_id]])
            positions[row.session_id] += 1
        return result

    def flush(self, timeout: float | None = None) -> None:
        """Wait for background saves; used on shutdown and in tests."""
        with self._lock:
            pending = list(self._pending_saves)
        if pending:
            wait_futures(pending, timeout=timeout)

    def shutdown(self) -> None:
        self.flush(timeout=5)
        with self._lock:
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=False)

    def _replay(self, row: UsageRow) -> UsageRow:
        with self._lock:
            cached = self._cache.get(row.session_id)
            if not cached:
                return row
            match = next((c for c in cached if c.timestamp == row.timestamp), None)
        if match is None:
            return row
        return dataclasses.replace(
            row,
            tokens=match.tokens,
            cost=match.cost if match.cost is not None else row.cost,
            is_estimated=False,
        )

    def _save_async(self, snapshot: dict[str, list[UsageRow]]) -> None:
        storage = self.storage
        if storage is None or not snapshot:
            return
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="cursor-usage-persist"
                )
            future = self._executor.submit(self._save, storage, snapshot)
            self._pending_saves = [f for f in self._pending_saves if not f.done()]
            self._pending_saves.append(future)

    @staticmethod
    def _save(storage: KeyValueStore, snapshot: dict[str, list[UsageRow]]) -> None:
        try:
            save_enrichment_cache(storage, snapshot)
        except Exception as exc:
            logger.warning("enrichment cache persist failed", exc_info=exc)
