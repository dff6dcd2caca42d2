"""Session manager: prompt cache keys and compaction summaries per lineage."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loguru import logger

from cachekeep.compaction.transcript import create_summary_message
from cachekeep.session.fingerprint import VolatileContentFilter, fingerprint, is_continuation
from cachekeep.session.identity import derive_session_key, generate_cache_key
from cachekeep.session.store import (
    FORK_SEPARATOR,
    CompactionSummary,
    SessionKey,
    SessionState,
    SessionStore,
    SessionSummary,
)
from cachekeep.utils.items import clone_items
from cachekeep.utils.tokens import is_token_count

if TYPE_CHECKING:
    from cachekeep.config.schema import Config


@dataclass
class SessionContext:
    """Per-request view of a lineage, threaded from request to response."""

    session_id: str
    enabled: bool
    preserve_ids: bool
    is_new: bool
    state: SessionState
    key: SessionKey


@dataclass
class SessionMetricsSnapshot:
    enabled: bool
    total_sessions: int
    recent_sessions: list[SessionSummary] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "total_sessions": self.total_sessions,
            "recent_sessions": [s.to_dict() for s in self.recent_sessions],
        }


def _cached_tokens(usage: dict[str, Any]) -> int | None:
    """Pull ``cached_tokens`` from a usage block (flat or under input details)."""
    candidates = [usage.get("cached_tokens")]
    details = usage.get("input_tokens_details")
    if isinstance(details, dict):
        candidates.append(details.get("cached_tokens"))
    for value in candidates:
        if is_token_count(value):
            return int(value)
    return None


class SessionManager:
    """
    Keeps each conversation on a stable prompt cache key.

    A request continuing a lineage (same history plus appended turns) gets the
    lineage's key; a request whose history was rewritten gets a fresh random
    key so the upstream cache is never asked to reuse a prefix that no longer
    matches. Forks of a conversation live under separate keys and never see
    each other's state.
    """

    def __init__(
        self,
        enabled: bool = True,
        *,
        store: SessionStore | None = None,
        force_store: bool = False,
        volatile: VolatileContentFilter | None = None,
    ):
        self.enabled = enabled
        self.store = store or SessionStore(force_store=force_store)
        self.volatile = volatile or VolatileContentFilter()

    @classmethod
    def from_config(cls, config: "Config") -> "SessionManager":
        sessions = config.sessions
        store = SessionStore(
            max_entries=sessions.max_entries,
            idle_ttl=sessions.idle_ttl_seconds,
            force_store=sessions.force_store,
        )
        return cls(
            enabled=sessions.enabled,
            store=store,
            volatile=VolatileContentFilter(sessions.volatile_patterns),
        )

    # ── request path ────────────────────────────────────────────

    def get_context(self, body: Any) -> SessionContext | None:
        """Look up (or start) the lineage a request belongs to.

        Does not touch an existing lineage's state.
        """
        if not self.enabled:
            return None

        key, source = derive_session_key(body)
        state, is_new = self.store.create_or_reuse(key)
        if is_new and source == "generated":
            logger.info(f"No conversation identity on request; using generated cache key {key}")
        elif is_new:
            logger.debug(f"Started session {key} (from {source})")

        return SessionContext(
            session_id=str(key),
            enabled=True,
            preserve_ids=not is_new,
            is_new=is_new,
            state=state,
            key=key,
        )

    def apply_request(
        self, body: dict[str, Any], context: SessionContext | None
    ) -> SessionContext | None:
        """Stamp the prompt cache key and record the request's shape.

        Returns the context to use for the rest of the request; this is a new
        context when the history diverged from the lineage.
        """
        if context is None or not context.enabled:
            return context

        state = context.state
        body["prompt_cache_key"] = state.prompt_cache_key
        if state.store:
            body["store"] = True

        items = clone_items(body.get("input"))

        if not state.last_input:
            self._record_input(state, items)
            logger.debug(
                f"Session {context.session_id}: initialized with {len(items)} items "
                f"(key {state.prompt_cache_key})"
            )
            return context

        if is_continuation(state.last_input, state.last_prefix_hash, items, self.volatile):
            self._record_input(state, items)
            return context

        logger.warning(
            f"Session {context.session_id}: prefix mismatch "
            f"({len(state.last_input)} stored items, {len(items)} incoming), "
            f"regenerating cache key"
        )
        fresh = self.store.new_state(context.key, generate_cache_key())
        # Unlike a reset, divergence keeps the summary: the turn after a compaction always diverges.
        fresh.compaction = state.compaction
        self._record_input(fresh, items)
        self.store.replace(context.key, fresh)

        body["prompt_cache_key"] = fresh.prompt_cache_key
        if fresh.store:
            body["store"] = True

        return SessionContext(
            session_id=context.session_id,
            enabled=True,
            preserve_ids=False,
            is_new=True,
            state=fresh,
            key=context.key,
        )

    def _record_input(self, state: SessionState, items: list[dict[str, Any]]) -> None:
        state.last_input = items
        state.last_prefix_hash = fingerprint(items, self.volatile)
        state.last_updated = self.store.clock()

    def record_response(self, context: SessionContext | None, payload: Any) -> None:
        """Note the upstream's reported cache hit for this lineage."""
        if context is None or not context.enabled or not isinstance(payload, dict):
            return

        state = context.state
        usage = payload.get("usage")
        if isinstance(usage, dict):
            cached = _cached_tokens(usage)
            if cached is not None:
                state.last_cached_tokens = cached
                logger.debug(f"Session {context.session_id}: {cached} cached tokens")
        state.last_updated = self.store.clock()

    # ── compaction ──────────────────────────────────────────────

    def apply_compaction_summary(
        self,
        context: SessionContext | None,
        preserved_system: list[dict[str, Any]],
        summary: str,
    ) -> None:
        """Remember a compaction summary for this lineage only."""
        if context is None or not context.enabled:
            return
        context.state.compaction = CompactionSummary(
            preserved_system=clone_items(preserved_system),
            summary=summary,
        )
        logger.info(f"Session {context.session_id}: stored compaction summary ({len(summary)} chars)")

    def apply_compacted_history(self, body: dict[str, Any], context: SessionContext | None) -> None:
        """Prefix the request with the stored summary and preserved system turns."""
        if context is None or not context.enabled:
            return
        compaction = context.state.compaction
        if compaction is None:
            return
        current = body.get("input")
        if current is None:
            current = []
        elif isinstance(current, str):
            current = [{"type": "message", "role": "user", "content": current}]
        elif not isinstance(current, list):
            logger.debug(f"Session {context.session_id}: input is not a list, summary not rehydrated")
            return
        body["input"] = [
            *clone_items(compaction.preserved_system),
            create_summary_message(compaction.summary),
            *current,
        ]

    # ── housekeeping ────────────────────────────────────────────

    def get_metrics(self, limit: int = 5) -> SessionMetricsSnapshot:
        snapshot = self.store.metrics(limit)
        return SessionMetricsSnapshot(
            enabled=self.enabled,
            total_sessions=snapshot.total_sessions,
            recent_sessions=snapshot.recent_sessions,
        )

    def prune_idle_sessions(self, now: float | None = None) -> int:
        """Drop idle lineages. Meant to be called periodically by the host."""
        if not self.enabled:
            return 0
        return self.store.prune_expired(now)

    def reset_session(self, key: SessionKey | str) -> SessionState:
        """Start a lineage over with a fresh random cache key."""
        if isinstance(key, str):
            key = self._parse_key(key)
        state = self.store.new_state(key, generate_cache_key())
        self.store.replace(key, state)
        logger.info(f"Session {key}: reset (key {state.prompt_cache_key})")
        return state

    @staticmethod
    def _parse_key(session_id: str) -> SessionKey:
        base, sep, fork = session_id.partition(FORK_SEPARATOR)
        return SessionKey(base, fork if sep else None)
