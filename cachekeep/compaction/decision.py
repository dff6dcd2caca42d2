"""Decide whether a request should become a compaction (summarization) turn."""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loguru import logger

from cachekeep.compaction.transcript import (
    DEFAULT_TRANSCRIPT_CHAR_LIMIT,
    ConversationSerialization,
    build_compaction_prompt_items,
    collect_system_messages,
    normalize_command_trigger,
    serialize_conversation,
)
from cachekeep.request.filters import filter_input
from cachekeep.utils.items import (
    clone_items,
    count_conversation_turns,
    extract_text,
    is_user_message,
)
from cachekeep.utils.tokens import approximate_token_count

if TYPE_CHECKING:
    from cachekeep.config.schema import Config

DEFAULT_AUTO_MIN_MESSAGES = 8
TOOL_FIELDS = ("tools", "tool_choice", "parallel_tool_calls")


@dataclass
class CompactionSettings:
    enabled: bool = True
    auto_limit_tokens: int | None = None
    auto_min_messages: int = DEFAULT_AUTO_MIN_MESSAGES
    transcript_char_limit: int = DEFAULT_TRANSCRIPT_CHAR_LIMIT

    @classmethod
    def from_config(cls, config: "Config") -> "CompactionSettings":
        compaction = config.compaction
        return cls(
            enabled=compaction.enabled,
            auto_limit_tokens=compaction.auto_limit_tokens,
            auto_min_messages=compaction.auto_min_messages,
            transcript_char_limit=compaction.transcript_char_limit,
        )


@dataclass
class CompactionDecision:
    """Why and how a request was turned into a compaction turn."""

    mode: str  # "command" or "auto"
    preserved_system: list[dict[str, Any]]
    serialization: ConversationSerialization
    reason: str | None = None
    approx_tokens: int | None = None


def remove_command_turn(items: list[dict[str, Any]], command_text: str | None) -> list[dict[str, Any]]:
    """Copy of ``items`` without the user turn that issued the command.

    Prefers the newest user turn whose text normalizes to ``command_text``;
    falls back to the newest user turn.
    """
    cloned = clone_items(items)
    user_indices = [i for i, item in enumerate(cloned) if is_user_message(item)]
    if not user_indices:
        return cloned
    target = user_indices[-1]
    if command_text:
        for i in reversed(user_indices):
            if normalize_command_trigger(extract_text(cloned[i])) == command_text:
                target = i
                break
    del cloned[target]
    return cloned


def decide(
    body: dict[str, Any],
    settings: CompactionSettings,
    command_text: str | None,
    original_input: list[dict[str, Any]] | None = None,
) -> CompactionDecision | None:
    """Return a decision when the request should be compacted, else None.

    ``original_input`` is the history as the host sent it (before any
    rehydration); it defaults to the body's current input.
    """
    if original_input is None:
        original_input = body.get("input")
    original = clone_items(original_input)
    reason = None
    approx_tokens = None

    if command_text:
        mode = "command"
        source = remove_command_turn(original, command_text)
    elif settings.enabled and settings.auto_limit_tokens and settings.auto_limit_tokens > 0:
        source = original
        approx_tokens = approximate_token_count(source)
        turns = count_conversation_turns(source)
        if approx_tokens <= settings.auto_limit_tokens or turns < settings.auto_min_messages:
            return None
        mode = "auto"
        reason = f"~{approx_tokens} tokens > limit {settings.auto_limit_tokens}"
    else:
        return None

    return CompactionDecision(
        mode=mode,
        reason=reason,
        approx_tokens=approx_tokens,
        preserved_system=collect_system_messages(original),
        serialization=serialize_conversation(source, settings.transcript_char_limit),
    )


def apply_compaction_if_needed(
    body: dict[str, Any],
    settings: CompactionSettings,
    command_text: str | None,
    original_input: list[dict[str, Any]] | None = None,
    preserve_ids: bool = False,
) -> CompactionDecision | None:
    """Rewrite ``body`` into a summarization request when compaction triggers.

    The new ``input`` is exactly the instruction turn and the transcript turn;
    tool fields are removed so the compaction turn cannot call tools.
    """
    decision = decide(body, settings, command_text, original_input)
    if decision is None:
        return None

    body["input"] = filter_input(
        build_compaction_prompt_items(decision.serialization.transcript),
        preserve_ids=preserve_ids,
    )
    for field_name in TOOL_FIELDS:
        body.pop(field_name, None)

    logger.info(
        f"Compaction triggered ({decision.mode}"
        f"{': ' + decision.reason if decision.reason else ''}): "
        f"{decision.serialization.total_turns} turns, "
        f"{decision.serialization.dropped_turns} dropped from transcript"
    )
    return decision
