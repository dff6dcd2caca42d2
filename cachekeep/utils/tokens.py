"""Approximate token estimation for compaction thresholds."""

import math
from typing import Any

from cachekeep.utils.items import extract_text

CHARS_PER_TOKEN = 4  # Cross-model estimate (EN text/code/JSON)


def estimate_tokens(text: str) -> int:
    """Estimate token count from character count."""
    return len(text) // CHARS_PER_TOKEN


def approximate_token_count(items: list[dict[str, Any]] | None) -> int:
    """Estimate tokens for a list of turns from their extracted text.

    Rounds up so a non-empty conversation never counts as zero tokens.
    """
    if not isinstance(items, list) or not items:
        return 0
    chars = sum(len(extract_text(item)) for item in items)
    return math.ceil(chars / CHARS_PER_TOKEN)


def is_token_count(value: Any) -> bool:
    """Whether ``value`` is a usable token count from an upstream usage block."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)
