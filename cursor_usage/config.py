from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/cursor-usage/config.json").expanduser()

DEFAULT_CSV_URL = "https://cursor.com/api/dashboard/export-usage-events-csv?strategy=tokens"

CONFIG_ENV_OVERRIDES = {
    "state_db_path": "CURSOR_USAGE_STATE_DB",
    "workspace_storage_path": "CURSOR_USAGE_WORKSPACE_STORAGE",
    "estimate_tokens": "CURSOR_USAGE_ESTIMATE_TOKENS",
    "csv_enrichment": "CURSOR_USAGE_CSV_ENRICHMENT",
    "csv_refresh_minutes": "CURSOR_USAGE_CSV_REFRESH_MINUTES",
    "csv_url": "CURSOR_USAGE_CSV_URL",
    "http_timeout_s": "CURSOR_USAGE_HTTP_TIMEOUT_S",
    "result_cache_ttl_ms": "CURSOR_USAGE_RESULT_CACHE_TTL_MS",
    "aggregate_cache_max": "CURSOR_USAGE_AGGREGATE_CACHE_MAX",
    "reconciliation_interval_s": "CURSOR_USAGE_RECONCILIATION_INTERVAL_S",
    "watch_debounce_ms": "CURSOR_USAGE_WATCH_DEBOUNCE_MS",
    "watch_poll_ms": "CURSOR_USAGE_WATCH_POLL_MS",
    "watch_pending_recheck_ms": "CURSOR_USAGE_WATCH_PENDING_RECHECK_MS",
    "watch_pending_max_attempts": "CURSOR_USAGE_WATCH_PENDING_MAX_ATTEMPTS",
    "match_window_ms": "CURSOR_USAGE_MATCH_WINDOW_MS",
    "default_limit": "CURSOR_USAGE_DEFAULT_LIMIT",
    "enrichment_cache_path": "CURSOR_USAGE_ENRICHMENT_CACHE",
}

_INT_KEYS = {
    "csv_refresh_minutes",
    "result_cache_ttl_ms",
    "aggregate_cache_max",
    "reconciliation_interval_s",
    "watch_debounce_ms",
    "watch_poll_ms",
    "watch_pending_recheck_ms",
    "watch_pending_max_attempts",
    "match_window_ms",
    "default_limit",
}
_FLOAT_KEYS = {"http_timeout_s"}
_BOOL_KEYS = {"estimate_tokens", "csv_enrichment"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("CURSOR_USAGE_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class UsageConfig:
    state_db_path: str | None = None
    workspace_storage_path: str | None = None
    estimate_tokens: bool = True
    csv_enrichment: bool = True
    csv_refresh_minutes: int = 5
    csv_url: str = DEFAULT_CSV_URL
    http_timeout_s: float = 10.0
    result_cache_ttl_ms: int = 2000
    aggregate_cache_max: int = 10_000
    reconciliation_interval_s: int = 600
    watch_debounce_ms: int = 150
    watch_poll_ms: int = 1000
    watch_pending_recheck_ms: int = 500
    watch_pending_max_attempts: int = 20
    # Max distance between a conversation's last update and a billed export row.
    match_window_ms: int = 60_000
    default_limit: int = 100
    enrichment_cache_path: str = "~/.cursor-usage/enrichment-cache.json"

    @property
    def csv_ttl_ms(self) -> int:
        return self.csv_refresh_minutes * 60 * 1000


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def load_config(path: Path | None = None) -> UsageConfig:
    cfg = UsageConfig()
    try:
        data = read_config_file(path)
    except ValueError:
        data = {}
    cfg = _apply_dict(cfg, data)
    cfg = _apply_dict(cfg, get_env_overrides())
    return cfg


def _apply_dict(cfg: UsageConfig, data: dict[str, Any]) -> UsageConfig:
    for key, value in data.items():
        if not hasattr(cfg, key) or key == "csv_ttl_ms":
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in _FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if key in _BOOL_KEYS:
            setattr(cfg, key, _coerce_bool(value, getattr(cfg, key), key=key))
            continue
        if value is not None and not isinstance(value, str):
            warnings.warn(f"Invalid string for {key}: {value!r}", RuntimeWarning, stacklevel=2)
            continue
        setattr(cfg, key, value)
    return cfg
