"""Structural fingerprints for conversation continuity checks.

A request continues a lineage when everything before its newest user turn is
unchanged. Turns are compared by role, type and content, never by ``id`` or
``metadata``, and with volatile blocks (environment listings that the host
rewrites every turn) stripped from their text first.
"""

import hashlib
import json
import re
from typing import Any

from cachekeep.utils.items import TEXT_PART_TYPES, last_user_index

# Regexes whose matches never count towards a turn's identity.
DEFAULT_VOLATILE_PATTERNS = [
    r"Here is some useful information about the environment you are running in:\s*",
    r"<env>[\s\S]*?</env>",
    r"<files>[\s\S]*?</files>",
]

IGNORED_FIELDS = ("id", "metadata")


class VolatileContentFilter:
    """Strips volatile blocks from turn text before hashing."""

    def __init__(self, patterns: list[str] | None = None):
        self.patterns = list(DEFAULT_VOLATILE_PATTERNS if patterns is None else patterns)
        self._compiled = [re.compile(p, re.IGNORECASE) for p in self.patterns]

    def strip(self, text: str) -> str:
        stripped = text
        for pattern in self._compiled:
            stripped = pattern.sub("", stripped)
        if stripped == text:
            return text
        return stripped.strip()

    def extend(self, pattern: str) -> None:
        """Register another volatile block pattern."""
        self.patterns.append(pattern)
        self._compiled.append(re.compile(pattern, re.IGNORECASE))


_DEFAULT_FILTER = VolatileContentFilter()


def _normalize_content(content: Any, volatile: VolatileContentFilter) -> Any:
    if isinstance(content, str):
        return volatile.strip(content)
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict) and part.get("type") in TEXT_PART_TYPES:
                text = part.get("text")
                if isinstance(text, str):
                    part = {**part, "text": volatile.strip(text)}
                parts.append({k: v for k, v in part.items() if k not in IGNORED_FIELDS})
            else:
                parts.append(part)
        return parts
    return content


def turn_signature(turn: Any, volatile: VolatileContentFilter | None = None) -> str:
    """Hash one turn's structural identity."""
    volatile = volatile or _DEFAULT_FILTER
    if isinstance(turn, dict):
        canonical = {k: v for k, v in turn.items() if k not in IGNORED_FIELDS}
        if "content" in canonical:
            canonical["content"] = _normalize_content(canonical["content"], volatile)
    else:
        canonical = turn
    raw = json.dumps(canonical, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def stable_prefix(turns: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """All turns except the newest user turn."""
    idx = last_user_index(turns)
    if idx is None:
        return list(turns)
    return turns[:idx] + turns[idx + 1:]


def fingerprint(
    turns: list[dict[str, Any]] | None,
    volatile: VolatileContentFilter | None = None,
) -> str:
    """Fingerprint the stable prefix of a turn sequence."""
    digest = hashlib.sha256()
    for turn in stable_prefix(turns if isinstance(turns, list) else []):
        digest.update(turn_signature(turn, volatile).encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()


def is_continuation(
    previous_input: list[dict[str, Any]],
    previous_hash: str | None,
    new_input: list[dict[str, Any]],
    volatile: VolatileContentFilter | None = None,
) -> bool:
    """Check whether ``new_input`` only appends turns to ``previous_input``.

    The prefix of ``new_input`` that lines up with ``previous_input`` must
    fingerprint to ``previous_hash``, and the previous newest user turn (which
    the fingerprint leaves out) must match its counterpart as well.
    """
    if not previous_input:
        return True
    if not isinstance(new_input, list) or len(new_input) < len(previous_input):
        return False

    window = new_input[: len(previous_input)]
    expected = previous_hash if previous_hash is not None else fingerprint(previous_input, volatile)
    if fingerprint(window, volatile) != expected:
        return False

    idx = last_user_index(previous_input)
    if idx is None:
        return True
    return turn_signature(previous_input[idx], volatile) == turn_signature(window[idx], volatile)
