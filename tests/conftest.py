from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from cursor_usage.config import UsageConfig
from cursor_usage.engine import UsageEngine


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CURSOR_USAGE_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("CURSOR_USAGE_ENRICHMENT_CACHE", str(tmp_path / "enrichment.json"))
    monkeypatch.setenv("CURSOR_USAGE_WORKSPACE_STORAGE", str(tmp_path / "workspaceStorage"))
    monkeypatch.setenv("CURSOR_USAGE_CSV_ENRICHMENT", "0")


class StateDB:
    """Writes records in the editor's layout for tests."""

    def __init__(self, path: Path) -> None:
        self.path = path
        conn = sqlite3.connect(path)
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS cursorDiskKV (
                    key TEXT UNIQUE ON CONFLICT REPLACE,
                    value BLOB
                );
                CREATE TABLE IF NOT EXISTS ItemTable (
                    key TEXT UNIQUE ON CONFLICT REPLACE,
                    value BLOB
                );
                """
            )
            conn.commit()
        finally:
            conn.close()

    def put(self, key: str, value: Any, *, table: str = "cursorDiskKV") -> None:
        raw = value if isinstance(value, str) else json.dumps(value)
        conn = sqlite3.connect(self.path)
        try:
            conn.execute(f"INSERT INTO {table}(key, value) VALUES (?, ?)", (key, raw))
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = sqlite3.connect(self.path)
        try:
            conn.execute("DELETE FROM cursorDiskKV WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def add_conversation(
        self,
        conversation_id: str,
        *,
        last_updated_at: int,
        created_at: int = 1_700_000_000_000,
        name: str | None = None,
        model: str = "default",
        turn_ids: list[str] | None = None,
    ) -> None:
        data: dict[str, Any] = {
            "_v": 3,
            "composerId": conversation_id,
            "status": "completed",
            "modelConfig": {"modelName": model},
            "usageData": {},
            "fullConversationHeadersOnly": [
                {"bubbleId": tid, "type": 2} for tid in (turn_ids or [])
            ],
            "lastUpdatedAt": last_updated_at,
            "createdAt": created_at,
        }
        if name is not None:
            data["name"] = name
        self.put(f"composerData:{conversation_id}", data)

    def add_turn(
        self,
        conversation_id: str,
        turn_id: str,
        *,
        role: int = 2,
        text: str = "",
        input_tokens: int = 0,
        output_tokens: int = 0,
        model: str | None = None,
        created_at: str | None = "2024-01-01T00:00:00Z",
        bubble_id: str | None = None,
        key_suffix: str | None = None,
    ) -> None:
        data: dict[str, Any] = {
            "_v": 2,
            "type": role,
            "bubbleId": bubble_id or turn_id,
            "tokenCount": {"inputTokens": input_tokens, "outputTokens": output_tokens},
            "modelInfo": {"modelName": model} if model else None,
            "requestId": "req",
            "text": text,
        }
        if created_at is not None:
            data["createdAt"] = created_at
        self.put(f"bubbleId:{conversation_id}:{key_suffix or turn_id}", data)

    def set_item(self, key: str, value: str) -> None:
        self.put(key, value, table="ItemTable")


class MemoryKV:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.writes = 0

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.writes += 1
        self.data[key] = value


@pytest.fixture
def state_db(tmp_path: Path) -> StateDB:
    return StateDB(tmp_path / "state.vscdb")


@pytest.fixture
def state_db_factory() -> Callable[[Path], StateDB]:
    def _make(path: Path) -> StateDB:
        path.parent.mkdir(parents=True, exist_ok=True)
        return StateDB(path)

    return _make


@pytest.fixture
def memory_kv() -> MemoryKV:
    return MemoryKV()


@pytest.fixture
def make_engine(
    state_db: StateDB, memory_kv: MemoryKV
) -> Iterator[Callable[..., UsageEngine]]:
    engines: list[UsageEngine] = []

    def _make(**kwargs: Any) -> UsageEngine:
        feed = kwargs.pop("feed", None)
        workspace_reader = kwargs.pop("workspace_reader", lambda: {})
        config = UsageConfig(csv_enrichment=False, **kwargs)
        engine = UsageEngine(
            config,
            db_path=state_db.path,
            workspace_reader=workspace_reader,
            feed=feed,
            storage=memory_kv,
            file_watch=False,
        )
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.shutdown()
