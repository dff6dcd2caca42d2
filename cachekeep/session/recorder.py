"""Feed upstream completion responses back into the session manager."""

import json
from typing import TYPE_CHECKING, Any

import httpx
from loguru import logger

from cachekeep.utils.tokens import is_token_count

if TYPE_CHECKING:
    from cachekeep.session.manager import SessionContext, SessionManager


def is_response_payload(payload: Any) -> bool:
    """Whether ``payload`` looks like a completion response worth recording."""
    if not isinstance(payload, dict):
        return False
    usage = payload.get("usage")
    if usage is None:
        return True
    if not isinstance(usage, dict):
        return False
    cached = usage.get("cached_tokens")
    return cached is None or is_token_count(cached)


def record_session_response(
    session_manager: "SessionManager | None",
    session_context: "SessionContext | None",
    response: httpx.Response,
) -> None:
    """Record a JSON completion response against its lineage.

    Streaming and other non-JSON responses are left alone; the body is read
    only when it is JSON.
    """
    if session_manager is None or session_context is None:
        return
    content_type = response.headers.get("content-type", "")
    if "application/json" not in content_type.lower():
        return

    try:
        payload = json.loads(response.read())
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.debug(f"Session {session_context.session_id}: response body not recorded: {e}")
        return

    if is_response_payload(payload):
        session_manager.record_response(session_context, payload)
