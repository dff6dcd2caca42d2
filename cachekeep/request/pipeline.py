"""Request pipeline: everything between the host's request and the upstream.

Order per request:

1. ``/codex-metrics`` and ``/codex-inspect`` are answered locally.
2. An explicit compaction command is detected (when compaction is enabled).
3. The lineage context is looked up.
4. Without a command, a stored summary is rehydrated into the input.
5. Compaction may rewrite the request; otherwise the input is filtered.
6. The prompt cache key is stamped.

The caller dispatches the prepared body upstream and passes the reply back
through :meth:`RequestPipeline.handle_response`.
"""

import copy
import json
from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from cachekeep.commands.metrics import maybe_handle_command
from cachekeep.compaction.decision import CompactionDecision, CompactionSettings, apply_compaction_if_needed
from cachekeep.compaction.finalizer import finalize_compaction_response
from cachekeep.compaction.transcript import detect_compaction_command
from cachekeep.config.schema import Config
from cachekeep.request.filters import filter_input
from cachekeep.session.manager import SessionContext, SessionManager
from cachekeep.session.recorder import record_session_response
from cachekeep.utils.items import clone_items


@dataclass
class PreparedRequest:
    """A request ready for dispatch, or a locally produced reply."""

    body: dict[str, Any]
    session_context: SessionContext | None = None
    compaction_decision: CompactionDecision | None = None
    command_response: httpx.Response | None = None

    @property
    def handled_locally(self) -> bool:
        return self.command_response is not None


class RequestPipeline:
    """Wires the session manager and compaction around one upstream call."""

    def __init__(
        self,
        session_manager: SessionManager | None = None,
        compaction: CompactionSettings | None = None,
    ):
        self.session_manager = session_manager
        self.compaction = compaction or CompactionSettings()

    @classmethod
    def from_config(cls, config: Config) -> "RequestPipeline":
        return cls(
            session_manager=SessionManager.from_config(config),
            compaction=CompactionSettings.from_config(config),
        )

    def prepare(self, body: dict[str, Any] | str | bytes) -> PreparedRequest | None:
        """Transform a request body for dispatch.

        Returns None when the body is not a JSON object; the caller should
        forward the original request untouched.
        """
        if isinstance(body, (str, bytes)):
            try:
                body = json.loads(body)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning(f"Request body is not JSON, forwarding as is: {e}")
                return None
        if not isinstance(body, dict):
            logger.warning(f"Request body is a {type(body).__name__}, not an object; forwarding as is")
            return None

        body = copy.deepcopy(body)

        command_response = maybe_handle_command(body, self.session_manager)
        if command_response is not None:
            return PreparedRequest(body=body, command_response=command_response)

        original_input = clone_items(body.get("input"))
        command_text = detect_compaction_command(original_input) if self.compaction.enabled else None

        manager = self.session_manager
        context = manager.get_context(body) if manager else None
        if manager and not command_text:
            manager.apply_compacted_history(body, context)

        preserve_ids = context.preserve_ids if context else False
        decision = apply_compaction_if_needed(
            body,
            self.compaction,
            command_text,
            original_input=original_input,
            preserve_ids=preserve_ids,
        )
        if decision is None and "input" in body:
            body["input"] = filter_input(body["input"], preserve_ids=preserve_ids)

        if manager:
            context = manager.apply_request(body, context)

        return PreparedRequest(body=body, session_context=context, compaction_decision=decision)

    def handle_response(self, prepared: PreparedRequest, response: httpx.Response) -> httpx.Response:
        """Record the upstream reply and finalize it if it answers a compaction."""
        record_session_response(self.session_manager, prepared.session_context, response)
        if prepared.compaction_decision is None:
            return response
        return finalize_compaction_response(
            response,
            prepared.compaction_decision,
            session_manager=self.session_manager,
            session_context=prepared.session_context,
        )
