"""Slash commands answered locally instead of being sent upstream.

``/codex-metrics`` reports the tracked prompt cache sessions and
``/codex-inspect`` echoes how the proxy sees the current request. Both reply
with a one-event SSE stream shaped like a completed upstream response, so the
host renders them as an ordinary assistant turn.
"""

import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any

import httpx
from loguru import logger

from cachekeep.compaction.transcript import is_command_trigger, normalize_command_trigger
from cachekeep.session.manager import SessionManager, SessionMetricsSnapshot
from cachekeep.utils.items import extract_text, is_user_message
from cachekeep.utils.tokens import estimate_tokens

METRICS_COMMAND = "codex-metrics"
INSPECT_COMMAND = "codex-inspect"
METRICS_TRIGGERS = (METRICS_COMMAND, "codexmetrics")
INSPECT_TRIGGERS = (INSPECT_COMMAND, "codexinspect")

DEFAULT_MODEL = "gpt-5"
SSE_HEADERS = {
    "content-type": "text/event-stream; charset=utf-8",
    "cache-control": "no-cache",
    "connection": "keep-alive",
}


def _latest_user_text(body: dict[str, Any]) -> str | None:
    items = body.get("input")
    if not isinstance(items, list):
        return None
    for item in reversed(items):
        if not is_user_message(item):
            continue
        text = extract_text(item)
        if text:
            return text
    return None


def _timestamp(seconds: float | None = None) -> str:
    moment = datetime.fromtimestamp(time.time() if seconds is None else seconds, tz=timezone.utc)
    return moment.isoformat(timespec="seconds")


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def format_metrics_display(snapshot: SessionMetricsSnapshot) -> str:
    lines = [f"Codex Metrics -- {_timestamp()}", "", "Prompt Cache"]
    lines.append(f"- Enabled: {_yes_no(snapshot.enabled)}")
    lines.append(f"- Sessions tracked: {snapshot.total_sessions}")
    if not snapshot.recent_sessions:
        lines.append("- Recent sessions: none")
    else:
        lines.append("- Recent sessions:")
        for session in snapshot.recent_sessions:
            lines.append(
                f"  - {session.id} -> {session.prompt_cache_key} "
                f"(cached={session.last_cached_tokens or 0}, "
                f"updated={_timestamp(session.last_updated)})"
            )
    return "\n".join(lines)


def inspect_request(body: dict[str, Any]) -> dict[str, Any]:
    """What the proxy knows about a request, as command metadata."""
    tools = body.get("tools") if isinstance(body.get("tools"), list) else []
    reasoning = body.get("reasoning")
    has_reasoning = isinstance(reasoning, dict)
    text_config = body.get("text") if isinstance(body.get("text"), dict) else {}
    include = body.get("include")
    if isinstance(include, list):
        include = [value for value in include if isinstance(value, str)]
    else:
        include = None

    return {
        "command": INSPECT_COMMAND,
        "model": body.get("model"),
        "prompt_cache_key": body.get("prompt_cache_key") or body.get("promptCacheKey"),
        "has_tools": bool(tools),
        "tool_count": len(tools),
        "has_reasoning": has_reasoning,
        "reasoning_effort": reasoning.get("effort") if has_reasoning else None,
        "reasoning_summary": reasoning.get("summary") if has_reasoning else None,
        "text_verbosity": text_config.get("verbosity"),
        "include": include,
    }


def format_inspect_display(metadata: dict[str, Any], body: dict[str, Any]) -> str:
    unset = "(unset)"
    items = body.get("input")
    lines = [
        f"Codex Inspect -- {_timestamp()}",
        "",
        "Request",
        f"- Model: {metadata.get('model') or unset}",
        f"- Prompt cache key: {metadata.get('prompt_cache_key') or '(none)'}",
        f"- Input messages: {len(items) if isinstance(items, list) else 0}",
        "",
        "Tools",
        f"- Has tools: {_yes_no(metadata['has_tools'])}",
        f"- Tool count: {metadata['tool_count']}",
        "",
        "Reasoning",
        f"- Has reasoning: {_yes_no(metadata['has_reasoning'])}",
        f"- Effort: {metadata.get('reasoning_effort') or unset}",
        f"- Summary: {metadata.get('reasoning_summary') or unset}",
        "",
        "Text",
        f"- Verbosity: {metadata.get('text_verbosity') or unset}",
        "",
        "Include",
    ]
    include = metadata.get("include")
    if not include:
        lines.append("- Include: (none)")
    else:
        lines.append("- Include:")
        lines.extend(f"  - {value}" for value in include)
    return "\n".join(lines)


def build_command_payload(model: str | None, text: str, metadata: dict[str, Any]) -> dict[str, Any]:
    """A completed response carrying ``text`` as the only assistant turn."""
    output_tokens = max(1, estimate_tokens(text))
    return {
        "id": f"resp_cmd_{uuid.uuid4()}",
        "object": "response",
        "created": int(time.time()),
        "model": model or DEFAULT_MODEL,
        "status": "completed",
        "usage": {
            "input_tokens": 0,
            "output_tokens": output_tokens,
            "reasoning_tokens": 0,
            "total_tokens": output_tokens,
        },
        "output": [
            {
                "id": f"msg_cmd_{uuid.uuid4()}",
                "type": "message",
                "role": "assistant",
                "content": [{"type": "output_text", "text": text}],
                "metadata": {"source": metadata["command"]},
            }
        ],
        "metadata": metadata,
    }


def create_static_response(model: str | None, text: str, metadata: dict[str, Any]) -> httpx.Response:
    payload = build_command_payload(model, text, metadata)
    stream = f"data: {json.dumps(payload)}\n\ndata: [DONE]\n\n"
    return httpx.Response(200, headers=SSE_HEADERS, content=stream.encode("utf-8"))


def maybe_handle_command(
    body: dict[str, Any],
    session_manager: SessionManager | None = None,
) -> httpx.Response | None:
    """Answer ``/codex-metrics`` or ``/codex-inspect`` locally; None otherwise."""
    if not isinstance(body, dict):
        return None
    text = _latest_user_text(body)
    if not text:
        return None
    trigger = normalize_command_trigger(text)

    if is_command_trigger(trigger, METRICS_TRIGGERS):
        if session_manager is not None:
            snapshot = session_manager.get_metrics()
        else:
            snapshot = SessionMetricsSnapshot(enabled=False, total_sessions=0)
        metadata = {"command": METRICS_COMMAND, "prompt_cache": snapshot.to_dict()}
        logger.debug(f"Answering {METRICS_COMMAND} locally ({snapshot.total_sessions} sessions)")
        return create_static_response(body.get("model"), format_metrics_display(snapshot), metadata)

    if is_command_trigger(trigger, INSPECT_TRIGGERS):
        metadata = inspect_request(body)
        logger.debug(f"Answering {INSPECT_COMMAND} locally")
        return create_static_response(body.get("model"), format_inspect_display(metadata, body), metadata)

    return None
