from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

from .store import ASSISTANT_ROLE, Conversation, TokenCounts, Turn, UsageRow
from .store.utils import to_epoch_ms

# Conservative chars-per-token ratio for mixed English/markdown.
ESTIMATED_CHARS_PER_TOKEN = 4

FALLBACK_MODEL = "cursor-default"
FALLBACK_PROVIDER = "cursor"

_TURN_MODEL_PLACEHOLDERS = {"default", "?"}
_CONVERSATION_MODEL_PLACEHOLDERS = {"default"}

_PROVIDER_PREFIXES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("anthropic", ("claude",)),
    ("openai", ("gpt", "o1", "o3", "o4", "chatgpt")),
    ("google", ("gemini",)),
    ("deepseek", ("deepseek",)),
)


@dataclass(frozen=True)
class ConversationMeta:
    conversation_id: str
    last_updated_at: int
    project_path: str | None = None
    session_name: str | None = None


def is_assistant_turn(turn: Turn | None) -> bool:
    """Assistant turns with either token counts or text are trackable.

    Token counts are filled asynchronously by the editor and often stay at
    zero, so text is kept around for estimation.
    """
    if turn is None or turn.role != ASSISTANT_ROLE:
        return False
    return turn.has_token_counts or turn.has_text


def estimate_output_tokens(text: str | None) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / ESTIMATED_CHARS_PER_TOKEN)


def resolve_model_name(turn: Turn, default_model: str | None) -> str:
    if turn.model_name and turn.model_name not in _TURN_MODEL_PLACEHOLDERS:
        return turn.model_name
    if default_model and default_model not in _CONVERSATION_MODEL_PLACEHOLDERS:
        return default_model
    return FALLBACK_MODEL


def resolve_provider_id(model_name: str) -> str:
    lower = model_name.lower()
    for provider, prefixes in _PROVIDER_PREFIXES:
        if lower.startswith(prefixes):
            return provider
    if "codex" in lower:
        return "openai"
    return FALLBACK_PROVIDER


def turn_token_counts(turn: Turn, *, estimate: bool = True) -> tuple[TokenCounts, bool]:
    """Return the turn's counts and whether they were estimated."""
    if turn.input_tokens > 0 or turn.output_tokens > 0:
        return TokenCounts(input=turn.input_tokens, output=turn.output_tokens), False
    output = estimate_output_tokens(turn.text) if estimate else 0
    return TokenCounts(input=0, output=output), True


def parse_conversation_turns(
    turns: Iterable[Turn | None],
    meta: ConversationMeta,
    conversation: Conversation,
    *,
    estimate: bool = True,
) -> list[UsageRow]:
    deduped: dict[str, UsageRow] = {}
    for turn in turns:
        if turn is None or not is_assistant_turn(turn):
            continue
        tokens, estimated = turn_token_counts(turn, estimate=estimate)
        if tokens.input == 0 and tokens.output == 0:
            continue
        model_id = resolve_model_name(turn, conversation.default_model)
        deduped[turn.turn_id] = UsageRow(
            session_id=meta.conversation_id,
            provider_id=resolve_provider_id(model_id),
            model_id=model_id,
            tokens=tokens,
            timestamp=to_epoch_ms(turn.created_at, meta.last_updated_at),
            session_updated_at=meta.last_updated_at,
            session_name=meta.session_name,
            project_path=meta.project_path,
            is_estimated=estimated,
        )
    return list(deduped.values())
