from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from cursor_usage.store import RecordStore, open_record_store
from cursor_usage.store.utils import (
    TURN_PREFIX,
    escape_like,
    parse_workspace_folder_uri,
    split_turn_key,
    to_epoch_ms,
)


def test_open_record_store_yields_none_for_missing_database(tmp_path: Path) -> None:
    with open_record_store(tmp_path / "missing.vscdb") as store:
        assert store is None
    assert not (tmp_path / "missing.vscdb").exists()


def test_get_returns_none_for_absent_key(state_db) -> None:
    with open_record_store(state_db.path) as store:
        assert store is not None
        assert store.get("composerData:nope") is None
        assert store.read_conversation("nope") is None


def test_malformed_json_is_reported_absent(state_db) -> None:
    state_db.put("composerData:broken", "{not json")
    state_db.put("bubbleId:c1:t1", "[1, 2")

    with open_record_store(state_db.path) as store:
        assert store is not None
        assert store.get("composerData:broken") == "{not json"
        assert store.get_json("composerData:broken") is None
        assert store.read_conversation("broken") is None
        assert store.read_turn("c1", "t1") is None


def test_scan_keys_matches_literal_prefix(state_db) -> None:
    state_db.add_conversation("a_b", last_updated_at=1)
    state_db.add_conversation("axb", last_updated_at=2)
    state_db.add_turn("a_b", "t1", text="hi")
    state_db.add_turn("axb", "t2", text="hi")

    with open_record_store(state_db.path) as store:
        assert store is not None
        assert store.conversation_ids() == ["a_b", "axb"]
        assert store.turn_ids("a_b") == ["t1"]
        assert store.scan_keys("bubbleId:a_b:") == ["bubbleId:a_b:t1"]


def test_read_conversation_and_turn(state_db) -> None:
    state_db.add_conversation(
        "c1", last_updated_at=1_700_000_100_000, name="Refactor", model="claude-4-sonnet"
    )
    state_db.add_turn("c1", "t1", text="hello", input_tokens=12, output_tokens=34, model="gpt-5")

    with open_record_store(state_db.path) as store:
        assert store is not None
        conversation = store.read_conversation("c1")
        turn = store.read_turn("c1", "t1")

    assert conversation is not None
    assert conversation.name == "Refactor"
    assert conversation.default_model == "claude-4-sonnet"
    assert conversation.stamp == 1_700_000_100_000
    assert turn is not None
    assert turn.role == 2
    assert (turn.input_tokens, turn.output_tokens) == (12, 34)
    assert turn.model_name == "gpt-5"
    assert turn.has_text


def test_conversation_stamp_falls_back_to_created_at(state_db) -> None:
    state_db.add_conversation("c1", last_updated_at=0, created_at=1_650_000_000_000)

    with open_record_store(state_db.path) as store:
        assert store is not None
        conversation = store.read_conversation("c1")

    assert conversation is not None
    assert conversation.stamp == 1_650_000_000_000


def test_scan_since_returns_rows_after_cursor_in_rowid_order(state_db) -> None:
    state_db.add_turn("c1", "t1", text="one")
    state_db.add_conversation("c1", last_updated_at=1)
    state_db.add_turn("c1", "t2", text="two")

    with open_record_store(state_db.path, see_uncommitted=True) as store:
        assert store is not None
        everything = store.scan_since(TURN_PREFIX, 0)
        assert [key for _, key, _ in everything] == ["bubbleId:c1:t1", "bubbleId:c1:t2"]
        first_row_id = everything[0][0]
        later = store.scan_since(TURN_PREFIX, first_row_id)
        assert [key for _, key, _ in later] == ["bubbleId:c1:t2"]
        assert store.max_row_id(TURN_PREFIX) == everything[-1][0]


def test_replaced_turn_gets_new_row_id(state_db) -> None:
    state_db.add_turn("c1", "t1", text="")
    with open_record_store(state_db.path) as store:
        assert store is not None
        before = store.max_row_id(TURN_PREFIX)

    state_db.add_turn("c1", "t1", text="filled in")

    with open_record_store(state_db.path) as store:
        assert store is not None
        rows = store.scan_since(TURN_PREFIX, before)
    assert [key for _, key, _ in rows] == ["bubbleId:c1:t1"]


def test_max_row_id_is_zero_without_turns(state_db) -> None:
    with open_record_store(state_db.path) as store:
        assert store is not None
        assert store.max_row_id(TURN_PREFIX) == 0


def test_snapshot_connection_is_read_only(state_db) -> None:
    store = RecordStore(state_db.path)
    try:
        with pytest.raises(sqlite3.OperationalError):
            store.conn.execute("INSERT INTO cursorDiskKV(key, value) VALUES ('x', 'y')")
    finally:
        store.close()


def test_get_item_reads_item_table(state_db) -> None:
    state_db.set_item("cursorAuth/accessToken", "token-value")

    with open_record_store(state_db.path) as store:
        assert store is not None
        assert store.get_item("cursorAuth/accessToken") == "token-value"
        assert store.get("cursorAuth/accessToken") is None


def test_split_turn_key() -> None:
    assert split_turn_key("bubbleId:c1:t1") == ("c1", "t1")
    assert split_turn_key("bubbleId:c1:t1:extra") == ("c1", "t1:extra")
    assert split_turn_key("bubbleId:c1") is None
    assert split_turn_key("composerData:c1") is None


def test_to_epoch_ms_uses_fallback_for_bad_values() -> None:
    assert to_epoch_ms("2024-01-01T00:00:00Z", 5) == 1_704_067_200_000
    assert to_epoch_ms("2024-01-01T00:00:00.250Z", 5) == 1_704_067_200_250
    assert to_epoch_ms("yesterday", 5) == 5
    assert to_epoch_ms(None, 7) == 7


def test_escape_like_and_folder_uri() -> None:
    assert escape_like("a_b%c\\") == "a\\_b\\%c\\\\"
    assert parse_workspace_folder_uri("file:///Users/me/My%20Project") == "/Users/me/My Project"
    assert parse_workspace_folder_uri("/plain/path") == "/plain/path"
