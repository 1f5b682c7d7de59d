from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from . import utils as store_utils
from .types import Conversation, Turn

logger = logging.getLogger(__name__)

KV_TABLE = "cursorDiskKV"
ITEM_TABLE = "ItemTable"


def connect(db_path: Path | str, *, see_uncommitted: bool = False) -> sqlite3.Connection:
    """Open the editor's state database without ever creating it.

    Snapshot mode uses a read-only connection. Watcher mode opens read-write
    so that rows still sitting in the write-ahead log are visible; nothing is
    ever written through either connection.
    """
    path = Path(db_path).expanduser().resolve()
    mode = "rw" if see_uncommitted else "ro"
    conn = sqlite3.connect(f"{path.as_uri()}?mode={mode}", uri=True, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


class RecordStore:
    """Read interface over the editor's key-value table.

    Every read returns a value or ``None``. A failure while reading or
    decoding one record is logged and reported as absent for that record.
    """

    def __init__(self, db_path: Path | str, *, see_uncommitted: bool = False) -> None:
        self.db_path = Path(db_path).expanduser()
        self.see_uncommitted = see_uncommitted
        self.conn = connect(self.db_path, see_uncommitted=see_uncommitted)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> RecordStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def get(self, key: str) -> str | None:
        return self._get_from(KV_TABLE, key)

    def get_item(self, key: str) -> str | None:
        return self._get_from(ITEM_TABLE, key)

    def get_json(self, key: str) -> Any | None:
        raw = self.get(key)
        return decode_json(raw, key)

    def get_item_json(self, key: str) -> Any | None:
        raw = self.get_item(key)
        return decode_json(raw, key)

    def scan_keys(self, prefix: str) -> list[str]:
        try:
            rows = self.conn.execute(
                f"SELECT key FROM {KV_TABLE} WHERE key LIKE ? ESCAPE '\\' ORDER BY rowid",
                (f"{store_utils.escape_like(prefix)}%",),
            ).fetchall()
        except sqlite3.Error as exc:
            logger.debug("key scan failed", extra={"prefix": prefix, "error": str(exc)})
            return []
        return [str(row["key"]) for row in rows]

    def scan_since(self, prefix: str, cursor: int) -> list[tuple[int, str, str | None]]:
        try:
            rows = self.conn.execute(
                f"""
                SELECT rowid AS row_id, key, value FROM {KV_TABLE}
                WHERE rowid > ? AND key LIKE ? ESCAPE '\\'
                ORDER BY rowid
                """,
                (int(cursor), f"{store_utils.escape_like(prefix)}%"),
            ).fetchall()
        except sqlite3.Error as exc:
            logger.debug("cursor scan failed", extra={"prefix": prefix, "error": str(exc)})
            return []
        return [(int(row["row_id"]), str(row["key"]), _text(row["value"])) for row in rows]

    def max_row_id(self, prefix: str) -> int:
        try:
            row = self.conn.execute(
                f"SELECT MAX(rowid) AS max_id FROM {KV_TABLE} WHERE key LIKE ? ESCAPE '\\'",
                (f"{store_utils.escape_like(prefix)}%",),
            ).fetchone()
        except sqlite3.Error as exc:
            logger.debug("max rowid lookup failed", extra={"prefix": prefix, "error": str(exc)})
            return 0
        if row is None or row["max_id"] is None:
            return 0
        return int(row["max_id"])

    def conversation_ids(self) -> list[str]:
        prefix = store_utils.CONVERSATION_PREFIX
        return [key[len(prefix) :] for key in self.scan_keys(prefix)]

    def turn_ids(self, conversation_id: str) -> list[str]:
        prefix = store_utils.turn_prefix(conversation_id)
        return [key[len(prefix) :] for key in self.scan_keys(prefix)]

    def read_conversation(self, conversation_id: str) -> Conversation | None:
        data = self.get_json(store_utils.conversation_key(conversation_id))
        if data is None:
            return None
        return Conversation.from_record(conversation_id, data)

    def read_turn(self, conversation_id: str, turn_id: str) -> Turn | None:
        data = self.get_json(store_utils.turn_key(conversation_id, turn_id))
        if data is None:
            return None
        return Turn.from_record(data)

    def _get_from(self, table: str, key: str) -> str | None:
        try:
            row = self.conn.execute(f"SELECT value FROM {table} WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            logger.debug("record read failed", extra={"key": key, "error": str(exc)})
            return None
        if row is None:
            return None
        return _text(row["value"])


@contextlib.contextmanager
def open_record_store(
    db_path: Path | str, *, see_uncommitted: bool = False
) -> Iterator[RecordStore | None]:
    """Yield a store, or ``None`` when the database is missing or locked."""
    path = Path(db_path).expanduser()
    store: RecordStore | None = None
    if path.is_file():
        try:
            store = RecordStore(path, see_uncommitted=see_uncommitted)
        except sqlite3.Error as exc:
            logger.debug("state database unavailable", extra={"path": str(path), "error": str(exc)})
            store = None
    try:
        yield store
    finally:
        if store is not None:
            store.close()


def _text(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            return None
    return str(value)


def decode_json(raw: str | None, key: str) -> Any | None:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("record decode failed", extra={"key": key})
        return None
