from __future__ import annotations

from .auth import build_session_cookie
from .feed import RemoteFeed, fetch_usage_csv, parse_usage_csv
from .merge import EnrichmentMerger, distribute, match_records
from .persistence import JsonFileKeyValueStore, KeyValueStore

__all__ = [
    "EnrichmentMerger",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "RemoteFeed",
    "build_session_cookie",
    "distribute",
    "fetch_usage_csv",
    "match_records",
    "parse_usage_csv",
]
