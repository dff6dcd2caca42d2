"""Helpers for Responses-API input items (conversation turns)."""

import copy
from typing import Any

TEXT_PART_TYPES = ("input_text", "output_text", "text")
SYSTEM_ROLES = ("system", "developer")


def extract_text(item: dict[str, Any]) -> str:
    """Return the text carried by a turn.

    Handles both plain-string content and lists of typed content parts.
    Anything else yields an empty string.
    """
    if not isinstance(item, dict):
        return ""
    content = item.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") in TEXT_PART_TYPES and isinstance(part.get("text"), str):
                if part["text"]:
                    texts.append(part["text"])
        return "\n".join(texts)
    return ""


def is_system_message(item: dict[str, Any]) -> bool:
    return isinstance(item, dict) and item.get("role") in SYSTEM_ROLES


def is_user_message(item: dict[str, Any]) -> bool:
    return isinstance(item, dict) and item.get("role") == "user"


def is_assistant_message(item: dict[str, Any]) -> bool:
    return isinstance(item, dict) and item.get("role") == "assistant"


def last_user_index(items: list[dict[str, Any]]) -> int | None:
    """Index of the newest user turn, or None."""
    for i in range(len(items) - 1, -1, -1):
        if is_user_message(items[i]):
            return i
    return None


def count_conversation_turns(items: list[dict[str, Any]]) -> int:
    """Count user + assistant turns."""
    return sum(1 for item in items if is_user_message(item) or is_assistant_message(item))


def clone_items(items: Any) -> list[dict[str, Any]]:
    """Deep-copy a list of turns; non-lists become an empty list."""
    if not isinstance(items, list) or not items:
        return []
    return [copy.deepcopy(item) for item in items]
