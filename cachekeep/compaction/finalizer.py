"""Post-process the upstream reply to a compaction request."""

import json
from typing import TYPE_CHECKING, Any

import httpx
from loguru import logger

from cachekeep.compaction.decision import CompactionDecision
from cachekeep.compaction.transcript import with_summary_prefix

if TYPE_CHECKING:
    from cachekeep.session.manager import SessionContext, SessionManager

NO_SUMMARY = "(no summary provided)"

# These describe the upstream body, not the rewritten one.
STALE_HEADERS = ("content-length", "content-encoding", "transfer-encoding")


def _first_assistant_turn(payload: dict[str, Any]) -> dict[str, Any] | None:
    output = payload.get("output")
    if not isinstance(output, list):
        return None
    for item in output:
        if isinstance(item, dict) and item.get("role") == "assistant":
            return item
    return None


def _first_text_part(turn: dict[str, Any]) -> dict[str, Any] | None:
    content = turn.get("content")
    if not isinstance(content, list):
        return None
    for part in content:
        if isinstance(part, dict) and part.get("type") == "output_text" and isinstance(part.get("text"), str):
            return part
    return None


def auto_note(decision: CompactionDecision) -> str:
    return (
        f"Auto compaction triggered ({decision.reason or 'context limit'}). "
        "Review the summary below, then resend your last instruction.\n\n"
    )


def finalize_compaction_response(
    response: httpx.Response,
    decision: CompactionDecision,
    session_manager: "SessionManager | None" = None,
    session_context: "SessionContext | None" = None,
) -> httpx.Response:
    """Frame the summary, annotate the payload and remember the summary.

    The returned response keeps the upstream status, reason phrase and
    headers; only the body changes. A body that is not a JSON object comes
    back untouched.
    """
    try:
        payload = json.loads(response.read())
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Compaction response is not JSON, leaving it as is: {e}")
        return response
    if not isinstance(payload, dict):
        logger.warning("Compaction response is not a JSON object, leaving it as is")
        return response

    turn = _first_assistant_turn(payload)
    part = _first_text_part(turn) if turn else None
    if part is not None:
        raw_text = part["text"]
    elif turn is not None and isinstance(turn.get("content"), str):
        raw_text = turn["content"]
    else:
        raw_text = None

    summary = with_summary_prefix(raw_text or NO_SUMMARY)
    note = auto_note(decision) if decision.mode == "auto" else ""
    final_text = f"{note}{summary}".strip()

    if part is not None:
        part["text"] = final_text
    elif raw_text is not None:
        turn["content"] = final_text

    metadata = payload.get("metadata")
    metadata = dict(metadata) if isinstance(metadata, dict) else {}
    compaction_meta: dict[str, Any] = {"mode": decision.mode}
    if decision.reason:
        compaction_meta["reason"] = decision.reason
    compaction_meta["total_turns"] = decision.serialization.total_turns
    compaction_meta["dropped_turns"] = decision.serialization.dropped_turns
    metadata["codex_compaction"] = compaction_meta
    payload["metadata"] = metadata

    if session_manager is not None and session_context is not None:
        session_manager.apply_compaction_summary(
            session_context,
            preserved_system=decision.preserved_system,
            summary=summary,
        )

    headers = httpx.Headers(response.headers)
    for name in STALE_HEADERS:
        if name in headers:
            del headers[name]

    try:
        request = response.request
    except RuntimeError:
        request = None

    return httpx.Response(
        response.status_code,
        headers=headers,
        content=json.dumps(payload).encode("utf-8"),
        request=request,
        extensions={"reason_phrase": response.reason_phrase.encode("ascii", errors="ignore")},
    )
