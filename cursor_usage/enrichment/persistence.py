from __future__ import annotations

import datetime as dt
import json
import logging
import threading
from pathlib import Path
from typing import Any, Protocol

from ..store import UsageRow

logger = logging.getLogger(__name__)

ENRICHMENT_CACHE_KEY = "enrichment-cache"


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class JsonFileKeyValueStore:
    """String key-value storage kept in one JSON object on disk."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        raw = self.path.read_text(encoding="utf-8")
        if not raw.strip():
            return {}
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("key-value file must hold an object")
        return data

    def get(self, key: str) -> str | None:
        with self._lock:
            value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        with self._lock:
            try:
                data = self._read()
            except ValueError:
                data = {}
            data[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
            tmp_path.replace(self.path)


def load_enrichment_cache(storage: KeyValueStore | None) -> dict[str, list[UsageRow]]:
    if storage is None:
        return {}
    try:
        raw = storage.get(ENRICHMENT_CACHE_KEY)
        if not raw:
            return {}
        parsed = json.loads(raw)
    except (OSError, ValueError) as exc:
        logger.debug("enrichment cache load failed", extra={"error": str(exc)})
        return {}
    sessions = parsed.get("sessions") if isinstance(parsed, dict) else None
    if not isinstance(sessions, dict):
        return {}
    loaded: dict[str, list[UsageRow]] = {}
    for session_id, rows in sessions.items():
        if not isinstance(rows, list) or not rows:
            continue
        decoded: list[UsageRow] = []
        for row in rows:
            try:
                decoded.append(UsageRow.from_dict(row))
            except (KeyError, TypeError, ValueError):
                continue
        if decoded:
            loaded[str(session_id)] = decoded
    return loaded


def save_enrichment_cache(storage: KeyValueStore, cache: dict[str, list[UsageRow]]) -> None:
    payload = {
        "savedAt": dt.datetime.now(dt.UTC).isoformat(),
        "sessions": {sid: [row.to_dict() for row in rows] for sid, rows in cache.items()},
    }
    storage.set(ENRICHMENT_CACHE_KEY, json.dumps(payload, ensure_ascii=False))
