from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

ASSISTANT_ROLE = 2


@dataclass(frozen=True)
class TokenCounts:
    input: int
    output: int
    cache_read: int | None = None
    cache_write: int | None = None

    def to_dict(self) -> dict[str, int]:
        data = {"input": self.input, "output": self.output}
        if self.cache_read is not None:
            data["cacheRead"] = self.cache_read
        if self.cache_write is not None:
            data["cacheWrite"] = self.cache_write
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenCounts:
        cache_read = data.get("cacheRead")
        cache_write = data.get("cacheWrite")
        return cls(
            input=int(data.get("input") or 0),
            output=int(data.get("output") or 0),
            cache_read=int(cache_read) if cache_read is not None else None,
            cache_write=int(cache_write) if cache_write is not None else None,
        )


@dataclass(frozen=True)
class UsageRow:
    """One assistant turn's token usage, normalized for the host."""

    session_id: str
    provider_id: str
    model_id: str
    tokens: TokenCounts
    timestamp: int
    session_updated_at: int
    cost: float | None = None
    session_name: str | None = None
    project_path: str | None = None
    is_estimated: bool = True

    @property
    def project_name(self) -> str | None:
        if not self.project_path:
            return None
        normalized = self.project_path.replace("\\", "/").rstrip("/")
        return normalized.split("/")[-1] or None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "providerId": self.provider_id,
            "modelId": self.model_id,
            "tokens": self.tokens.to_dict(),
            "timestamp": self.timestamp,
            "sessionUpdatedAt": self.session_updated_at,
            "metadata": {"isEstimated": self.is_estimated},
        }
        if self.cost is not None:
            data["cost"] = self.cost
        if self.session_name:
            data["sessionName"] = self.session_name
        if self.project_path:
            data["projectPath"] = self.project_path
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UsageRow:
        metadata = data.get("metadata") or {}
        cost = data.get("cost")
        return cls(
            session_id=str(data["sessionId"]),
            provider_id=str(data.get("providerId") or "cursor"),
            model_id=str(data.get("modelId") or "cursor-default"),
            tokens=TokenCounts.from_dict(data.get("tokens") or {}),
            timestamp=int(data["timestamp"]),
            session_updated_at=int(data.get("sessionUpdatedAt") or data["timestamp"]),
            cost=float(cost) if cost is not None else None,
            session_name=data.get("sessionName"),
            project_path=data.get("projectPath"),
            is_estimated=bool(metadata.get("isEstimated", True)),
        )


@dataclass(frozen=True)
class Conversation:
    conversation_id: str
    name: str | None
    created_at: int
    last_updated_at: int
    default_model: str | None

    @property
    def stamp(self) -> int:
        return self.last_updated_at or self.created_at or 0

    @classmethod
    def from_record(cls, conversation_id: str, data: object) -> Conversation | None:
        if not isinstance(data, dict):
            return None
        model_config = data.get("modelConfig")
        default_model = None
        if isinstance(model_config, dict) and isinstance(model_config.get("modelName"), str):
            default_model = model_config["modelName"]
        name = data.get("name")
        return cls(
            conversation_id=conversation_id,
            name=name if isinstance(name, str) and name else None,
            created_at=_as_int(data.get("createdAt")),
            last_updated_at=_as_int(data.get("lastUpdatedAt")),
            default_model=default_model,
        )


@dataclass(frozen=True)
class Turn:
    turn_id: str
    role: int
    input_tokens: int
    output_tokens: int
    has_token_counts: bool
    text: str
    model_name: str | None
    created_at: str | None

    @property
    def has_text(self) -> bool:
        return len(self.text) > 0

    @classmethod
    def from_record(cls, data: object) -> Turn | None:
        if not isinstance(data, dict):
            return None
        turn_id = data.get("bubbleId")
        role = data.get("type")
        if not isinstance(turn_id, str) or not turn_id:
            return None
        if not isinstance(role, int) or isinstance(role, bool):
            return None
        token_count = data.get("tokenCount")
        has_token_counts = (
            isinstance(token_count, dict)
            and _is_number(token_count.get("inputTokens"))
            and _is_number(token_count.get("outputTokens"))
        )
        input_tokens = int(token_count["inputTokens"]) if has_token_counts else 0
        output_tokens = int(token_count["outputTokens"]) if has_token_counts else 0
        model_info = data.get("modelInfo")
        model_name = None
        if isinstance(model_info, dict) and isinstance(model_info.get("modelName"), str):
            model_name = model_info["modelName"]
        text = data.get("text")
        created_at = data.get("createdAt")
        return cls(
            turn_id=turn_id,
            role=role,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            has_token_counts=has_token_counts,
            text=text if isinstance(text, str) else "",
            model_name=model_name,
            created_at=created_at if isinstance(created_at, str) else None,
        )


@dataclass(frozen=True)
class EnrichmentRecord:
    timestamp: int
    kind: str
    model: str
    max_mode: bool
    input_with_cache_write: int
    input_without_cache_write: int
    cache_read: int
    output: int
    total: int
    cost: float

    @property
    def cache_write(self) -> int:
        return self.input_with_cache_write - self.input_without_cache_write


@dataclass(frozen=True)
class ActivityUpdate:
    session_id: str
    message_id: str
    tokens: TokenCounts
    timestamp: int
    is_estimated: bool = False


@dataclass(frozen=True)
class WorkspaceInfo:
    workspace_hash: str
    project_path: str
    conversation_ids: list[str]


def _is_number(value: object) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    return isinstance(value, int) or math.isfinite(value)


def _as_int(value: object) -> int:
    if _is_number(value):
        return int(value)  # type: ignore[arg-type]
    return 0
