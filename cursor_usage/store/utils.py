from __future__ import annotations

import datetime as dt
from urllib.parse import unquote

CONVERSATION_PREFIX = "composerData:"
TURN_PREFIX = "bubbleId:"


def conversation_key(conversation_id: str) -> str:
    return f"{CONVERSATION_PREFIX}{conversation_id}"


def turn_prefix(conversation_id: str) -> str:
    return f"{TURN_PREFIX}{conversation_id}:"


def turn_key(conversation_id: str, turn_id: str) -> str:
    return f"{turn_prefix(conversation_id)}{turn_id}"


def split_turn_key(key: str) -> tuple[str, str] | None:
    if not key.startswith(TURN_PREFIX):
        return None
    rest = key[len(TURN_PREFIX) :]
    if ":" not in rest:
        return None
    conversation_id, turn_id = rest.split(":", 1)
    if not conversation_id or not turn_id:
        return None
    return conversation_id, turn_id


def parse_iso8601(value: str) -> dt.datetime | None:
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed.astimezone(dt.UTC)


def to_epoch_ms(value: str | None, fallback: int) -> int:
    if not value:
        return fallback
    parsed = parse_iso8601(value)
    if parsed is None:
        return fallback
    return int(parsed.timestamp() * 1000)


def now_ms() -> int:
    return int(dt.datetime.now(dt.UTC).timestamp() * 1000)


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def parse_workspace_folder_uri(folder_uri: str) -> str:
    if folder_uri.startswith("file://"):
        return unquote(folder_uri[len("file://") :])
    return folder_uri
