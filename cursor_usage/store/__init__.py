from __future__ import annotations

from ._store import RecordStore, decode_json, open_record_store
from .types import (
    ASSISTANT_ROLE,
    ActivityUpdate,
    Conversation,
    EnrichmentRecord,
    TokenCounts,
    Turn,
    UsageRow,
    WorkspaceInfo,
)

__all__ = [
    "ASSISTANT_ROLE",
    "ActivityUpdate",
    "Conversation",
    "EnrichmentRecord",
    "RecordStore",
    "TokenCounts",
    "Turn",
    "UsageRow",
    "WorkspaceInfo",
    "decode_json",
    "open_record_store",
]
