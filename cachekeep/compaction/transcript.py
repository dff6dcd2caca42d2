"""Building blocks for compaction: transcripts, prompt items, summary turns."""

import copy
from dataclasses import dataclass
from typing import Any

from cachekeep.prompts.compaction import COMPACTION_PROMPT, EMPTY_TRANSCRIPT, SUMMARY_PREFIX
from cachekeep.utils.items import extract_text, is_system_message

DEFAULT_TRANSCRIPT_CHAR_LIMIT = 12_000
COMMAND_TRIGGERS = ("codex-compact", "compact", "codexcompact", "compactnow")
COMPACTION_METADATA = {"source": "cachekeep-compaction", "compaction": True}

_ROLE_LABELS = {"user": "User", "assistant": "Assistant"}


@dataclass
class ConversationSerialization:
    """Rendered history and how much of it fell outside the budget."""

    transcript: str
    total_turns: int
    dropped_turns: int


def normalize_command_trigger(text: str) -> str:
    """Lower-case and drop a leading ``/`` or ``?`` command prefix."""
    trimmed = text.strip().lower()
    if trimmed.startswith(("/", "?")):
        return trimmed[1:].lstrip()
    return trimmed


def is_command_trigger(normalized: str, triggers: tuple[str, ...]) -> bool:
    return any(normalized == t or normalized.startswith(f"{t} ") for t in triggers)


def detect_compaction_command(items: list[dict[str, Any]] | None) -> str | None:
    """Return the normalized command if the latest user turn asks for compaction."""
    if not isinstance(items, list):
        return None
    for item in reversed(items):
        if not isinstance(item, dict) or item.get("role") != "user":
            continue
        text = extract_text(item).strip()
        if not text:
            continue
        normalized = normalize_command_trigger(text)
        if is_command_trigger(normalized, COMMAND_TRIGGERS):
            return normalized
        break
    return None


def _format_entry(label: str, text: str) -> str:
    return f"## {label}\n{text.strip()}\n"


def serialize_conversation(
    items: list[dict[str, Any]] | None,
    limit: int = DEFAULT_TRANSCRIPT_CHAR_LIMIT,
) -> ConversationSerialization:
    """Render user/assistant turns as a transcript, newest turns first in line.

    Turns are taken from the newest backwards until the running size reaches
    ``limit``; the turn that crosses the limit is still included so the
    transcript is never empty when there is history.
    """
    if not isinstance(items, list) or not items:
        return ConversationSerialization(transcript="", total_turns=0, dropped_turns=0)

    conversation: list[str] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        label = _ROLE_LABELS.get(str(item.get("role") or "").lower())
        text = extract_text(item)
        if not label or not text:
            continue
        conversation.append(_format_entry(label, text))

    selected: list[str] = []
    total_chars = 0
    for entry in reversed(conversation):
        selected.append(entry)
        total_chars += len(entry)
        if total_chars >= limit:
            break
    selected.reverse()

    return ConversationSerialization(
        transcript="\n".join(selected),
        total_turns=len(conversation),
        dropped_turns=len(conversation) - len(selected),
    )


def build_compaction_prompt_items(transcript: str) -> list[dict[str, Any]]:
    """The two turns that replace the conversation: instructions + transcript."""
    return [
        {
            "type": "message",
            "role": "developer",
            "content": COMPACTION_PROMPT,
            "metadata": dict(COMPACTION_METADATA),
        },
        {
            "type": "message",
            "role": "user",
            "content": transcript or EMPTY_TRANSCRIPT,
            "metadata": dict(COMPACTION_METADATA),
        },
    ]


def collect_system_messages(items: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    """Copies of the system/developer turns, in order."""
    if not isinstance(items, list):
        return []
    return [copy.deepcopy(item) for item in items if is_system_message(item)]


def with_summary_prefix(summary_text: str | None) -> str:
    normalized = (summary_text or "").strip() or "(no summary available)"
    if normalized.startswith(SUMMARY_PREFIX):
        return normalized
    return f"{SUMMARY_PREFIX}\n\n{normalized}"


def create_summary_message(summary_text: str | None) -> dict[str, Any]:
    """User turn carrying a stored summary, framed by the summary prefix."""
    return {
        "type": "message",
        "role": "user",
        "content": with_summary_prefix(summary_text),
    }
