from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from functools import partial
from pathlib import Path

from .cache import AggregateCache, ResultCache
from .change_detector import ChangeDetector
from .config import UsageConfig, load_config
from .enrichment import (
    EnrichmentMerger,
    JsonFileKeyValueStore,
    KeyValueStore,
    RemoteFeed,
    build_session_cookie,
    fetch_usage_csv,
)
from .fswatch import StoreFileWatcher
from .parser import ConversationMeta, parse_conversation_turns
from .paths import state_db_path, workspace_dirs
from .store import Conversation, RecordStore, UsageRow, WorkspaceInfo, open_record_store
from .store.utils import now_ms
from .watcher import ActivityCallback, ActivityWatcher
from .workspaces import build_workspace_map

logger = logging.getLogger(__name__)

WorkspaceReader = Callable[[], dict[str, WorkspaceInfo]]


class UsageEngine:
    """Ingests editor conversations into token-usage rows.

    Owns every piece of mutable state (change detector, caches, enrichment
    cache, watcher) so several engines can live side by side. ``init`` starts
    the background machinery; ``shutdown`` tears it down.
    """

    def __init__(
        self,
        config: UsageConfig | None = None,
        *,
        db_path: Path | str | None = None,
        workspace_reader: WorkspaceReader | None = None,
        feed: RemoteFeed | None = None,
        storage: KeyValueStore | None = None,
        file_watch: bool = True,
    ) -> None:
        self.config = config or load_config()
        self.db_path = Path(db_path).expanduser() if db_path else state_db_path(self.config)
        self.workspace_reader = workspace_reader or (
            lambda: build_workspace_map(workspace_dirs(self.config))
        )
        self.file_watcher = StoreFileWatcher(self.db_path) if file_watch else None
        self.change_detector = ChangeDetector(
            reconciliation_interval_s=self.config.reconciliation_interval_s
        )
        self.result_cache = ResultCache(self.config.result_cache_ttl_ms)
        self.aggregate_cache = AggregateCache(self.config.aggregate_cache_max)
        self.feed = feed or RemoteFeed(
            fetch_text=partial(self._fetch_text, self.config.csv_url, self.config.http_timeout_s),
            header_builder=partial(build_session_cookie, self.db_path),
            ttl_ms=self.config.csv_ttl_ms,
            enabled=self.config.csv_enrichment,
        )
        if storage is None:
            storage = JsonFileKeyValueStore(self.config.enrichment_cache_path)
        self.merger = EnrichmentMerger(
            storage=storage, match_window_ms=self.config.match_window_ms
        )
        self.watcher = ActivityWatcher(
            self.db_path,
            change_detector=self.change_detector,
            file_watcher=self.file_watcher,
            estimate=self.config.estimate_tokens,
            debounce_ms=self.config.watch_debounce_ms,
            poll_ms=self.config.watch_poll_ms,
            pending_recheck_ms=self.config.watch_pending_recheck_ms,
            pending_max_attempts=self.config.watch_pending_max_attempts,
        )
        self._lock = threading.Lock()

    @staticmethod
    def _fetch_text(url: str, timeout_s: float, header: str) -> str | None:
        return fetch_usage_csv(url, header, timeout_s=timeout_s)

    def init(self) -> None:
        if self.change_detector.started:
            return
        self.change_detector.start(self.file_watcher)

    def shutdown(self) -> None:
        self.watcher.shutdown()
        self.change_detector.stop()
        if self.file_watcher is not None:
            self.file_watcher.stop()
        self.feed.shutdown()
        self.merger.shutdown()

    def __enter__(self) -> UsageEngine:
        self.init()
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()

    def start_watch(self, callback: ActivityCallback) -> None:
        self.init()
        self.watcher.start(callback)

    def stop_watch(self) -> None:
        self.watcher.stop()

    def parse(
        self,
        *,
        session_id: str | None = None,
        limit: int | None = None,
        since: int | None = None,
        cancel: threading.Event | None = None,
    ) -> list[UsageRow]:
        limit = self.config.default_limit if limit is None else limit
        if not self.db_path.is_file():
            logger.debug("no state database found", extra={"path": str(self.db_path)})
            return []

        self.init()

        if session_id is None:
            cached = self.result_cache.lookup(limit=limit, since=since)
            if cached is not None:
                logger.debug("using cached sessions", extra={"count": len(cached)})
                return cached

        with self._lock:
            rows = self._parse_locked(
                session_id=session_id, limit=limit, since=since, cancel=cancel
            )
        if rows is None:
            return []
        if session_id is None:
            self.result_cache.store(rows, limit=limit, since=since)
        return rows

    def _parse_locked(
        self,
        *,
        session_id: str | None,
        limit: int,
        since: int | None,
        cancel: threading.Event | None,
    ) -> list[UsageRow] | None:
        dirty = self.change_detector.consume_dirty()
        force = self.change_detector.consume_full_reconciliation()
        if force:
            logger.debug("full reconciliation sweep")
        now = now_ms()

        with open_record_store(self.db_path) as store:
            if store is None:
                logger.debug("failed to open state database")
                return None
            workspaces = self._read_workspaces()
            conversation_ids = [session_id] if session_id else store.conversation_ids()
            metas, stat_checks, stat_skips = self._collect_metas(
                store, conversation_ids, workspaces, dirty=dirty, force=force, since=since
            )
            if session_id is None:
                self.change_detector.purge(conversation_ids)

            metas.sort(key=lambda item: item[0].last_updated_at, reverse=True)
            if limit > 0:
                metas = metas[:limit]

            rows: list[UsageRow] = []
            hits = misses = 0
            for meta, conversation, unchanged in metas:
                if unchanged:
                    cached = self.aggregate_cache.lookup(
                        meta.conversation_id, meta.last_updated_at, now=now
                    )
                    if cached is not None:
                        hits += 1
                        rows.extend(cached)
                        continue
                misses += 1
                parsed = self._parse_conversation(store, meta, conversation)
                self.aggregate_cache.put(
                    meta.conversation_id, meta.last_updated_at, parsed, now=now
                )
                rows.extend(parsed)

        evicted = self.aggregate_cache.evict()

        records = self.feed.rows(cancel)
        enriched = self.merger.enrich(rows, records)

        logger.debug(
            "parsed sessions",
            extra={
                "count": len(enriched),
                "conversations": len(metas),
                "stat_checks": stat_checks,
                "stat_skips": stat_skips,
                "aggregate_cache_hits": hits,
                "aggregate_cache_misses": misses,
                "aggregate_cache_evicted": evicted,
                "metadata_index_size": len(self.change_detector.index_snapshot()),
                "aggregate_cache_size": len(self.aggregate_cache),
                "csv_enriched": bool(records),
            },
        )
        return enriched

    def _read_workspaces(self) -> dict[str, WorkspaceInfo]:
        try:
            return self.workspace_reader()
        except Exception as exc:
            logger.warning("workspace index read failed", exc_info=exc)
            return {}

    def _collect_metas(
        self,
        store: RecordStore,
        conversation_ids: Iterable[str],
        workspaces: dict[str, WorkspaceInfo],
        *,
        dirty: bool,
        force: bool,
        since: int | None,
    ) -> tuple[list[tuple[ConversationMeta, Conversation, bool]], int, int]:
        metas: list[tuple[ConversationMeta, Conversation, bool]] = []
        stat_checks = stat_skips = 0
        for conversation_id in conversation_ids:
            conversation = store.read_conversation(conversation_id)
            if conversation is None:
                continue
            stamp = conversation.stamp
            unchanged = self.change_detector.is_unchanged(
                conversation_id, stamp, dirty=dirty, force=force
            )
            if unchanged:
                stat_skips += 1
            else:
                stat_checks += 1
            if since is not None and stamp < since:
                continue
            workspace = workspaces.get(conversation_id)
            metas.append(
                (
                    ConversationMeta(
                        conversation_id=conversation_id,
                        last_updated_at=stamp,
                        project_path=workspace.project_path if workspace else None,
                        session_name=conversation.name,
                    ),
                    conversation,
                    unchanged,
                )
            )
        return metas, stat_checks, stat_skips

    def _parse_conversation(
        self, store: RecordStore, meta: ConversationMeta, conversation: Conversation
    ) -> list[UsageRow]:
        turns = (
            store.read_turn(meta.conversation_id, turn_id)
            for turn_id in store.turn_ids(meta.conversation_id)
        )
        return parse_conversation_turns(
            turns, meta, conversation, estimate=self.config.estimate_tokens
        )
