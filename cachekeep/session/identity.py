"""Derive a lineage key from a request body."""

import uuid
from typing import Any

from cachekeep.session.store import SessionKey

CACHE_KEY_FIELDS = ("prompt_cache_key", "promptCacheKey")

CONVERSATION_ID_KEYS = (
    "conversation_id",
    "conversationId",
    "thread_id",
    "threadId",
    "session_id",
    "sessionId",
    "chat_id",
    "chatId",
)

FORK_ID_KEYS = ("forkId", "fork_id", "branchId", "branch_id")


def generate_cache_key() -> str:
    """Random prompt cache key for a lineage with no usable identity."""
    return f"cache_{uuid.uuid4().hex}"


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _first_hint(body: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    metadata = body.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    for key in keys:
        value = _clean(metadata.get(key)) or _clean(body.get(key))
        if value:
            return value
    return None


def extract_cache_key(body: dict[str, Any]) -> str | None:
    """Host-supplied prompt cache key, if any."""
    for key in CACHE_KEY_FIELDS:
        value = _clean(body.get(key))
        if value:
            return value
    return None


def extract_conversation_id(body: dict[str, Any]) -> str | None:
    return _first_hint(body, CONVERSATION_ID_KEYS)


def extract_fork_id(body: dict[str, Any]) -> str | None:
    return _first_hint(body, FORK_ID_KEYS)


def derive_session_key(body: Any) -> tuple[SessionKey, str]:
    """Work out which lineage a request belongs to.

    Returns:
        Tuple of (key, source) where source is ``"existing"`` (host prompt
        cache key), ``"metadata"`` (conversation id) or ``"generated"``.
    """
    if not isinstance(body, dict):
        return SessionKey(generate_cache_key()), "generated"

    base = extract_cache_key(body)
    source = "existing"
    if base is None:
        base = extract_conversation_id(body)
        source = "metadata"
    if base is None:
        return SessionKey(generate_cache_key()), "generated"

    return SessionKey(base, extract_fork_id(body)), source
