"""Bounded in-memory store of session lineages."""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

SESSION_IDLE_TTL = 30 * 60  # seconds
SESSION_MAX_ENTRIES = 100

FORK_SEPARATOR = "::fork::"


@dataclass(frozen=True)
class SessionKey:
    """Identity of one lineage: a base conversation id plus an optional fork.

    Compared as a tuple; the ``base::fork::<fork>`` string form only exists at
    the boundary (prompt cache keys, logs, metrics).
    """

    base: str
    fork: str | None = None

    def __str__(self) -> str:
        if self.fork is None:
            return self.base
        return f"{self.base}{FORK_SEPARATOR}{self.fork}"


@dataclass
class CompactionSummary:
    """Summary produced by a compaction turn, with the system turns it replaces."""

    preserved_system: list[dict[str, Any]]
    summary: str


@dataclass
class SessionState:
    """Cache lineage state for one conversation (or fork)."""

    id: str
    prompt_cache_key: str
    store: bool = False
    last_input: list[dict[str, Any]] = field(default_factory=list)
    last_prefix_hash: str | None = None
    last_updated: float = field(default_factory=time.time)
    last_cached_tokens: int | None = None
    compaction: CompactionSummary | None = None


@dataclass
class SessionSummary:
    """Metrics view of a single session."""

    id: str
    prompt_cache_key: str
    last_cached_tokens: int | None
    last_updated: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt_cache_key": self.prompt_cache_key,
            "last_cached_tokens": self.last_cached_tokens,
            "last_updated": self.last_updated,
        }


@dataclass
class StoreMetrics:
    total_sessions: int
    recent_sessions: list[SessionSummary] = field(default_factory=list)


class SessionStore:
    """Lock-guarded map from :class:`SessionKey` to :class:`SessionState`.

    Two independent eviction paths exist: capacity eviction runs on insert
    (oldest ``last_updated`` first), idle pruning runs when an external
    scheduler calls :meth:`prune_expired`.
    """

    def __init__(
        self,
        max_entries: int = SESSION_MAX_ENTRIES,
        idle_ttl: float = SESSION_IDLE_TTL,
        force_store: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.idle_ttl = idle_ttl
        self.force_store = force_store
        self.clock = clock
        self._sessions: dict[SessionKey, SessionState] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: SessionKey) -> bool:
        return key in self._sessions

    def new_state(self, key: SessionKey, prompt_cache_key: str | None = None) -> SessionState:
        """Build a zero-value state for ``key`` without storing it."""
        return SessionState(
            id=str(key),
            prompt_cache_key=prompt_cache_key or str(key),
            store=self.force_store,
            last_updated=self.clock(),
        )

    def lookup(self, key: SessionKey) -> SessionState | None:
        with self._lock:
            return self._sessions.get(key)

    def create_or_reuse(self, key: SessionKey) -> tuple[SessionState, bool]:
        """Return the state for ``key``, creating it if absent.

        Returns:
            Tuple of (state, is_new).
        """
        with self._lock:
            existing = self._sessions.get(key)
            if existing is not None:
                return existing, False
            self._evict_oldest_locked()
            state = self.new_state(key)
            self._sessions[key] = state
        logger.debug(f"Session store: created session {key}")
        return state, True

    def replace(self, key: SessionKey, state: SessionState) -> None:
        """Store ``state`` under ``key``, discarding whatever was there."""
        with self._lock:
            if key not in self._sessions:
                self._evict_oldest_locked()
            self._sessions[key] = state

    def remove(self, key: SessionKey) -> bool:
        with self._lock:
            return self._sessions.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def evict_oldest_if_over_capacity(self) -> int:
        """Evict oldest sessions until there is room for one more.

        Returns:
            Number of sessions evicted.
        """
        with self._lock:
            return self._evict_oldest_locked()

    def _evict_oldest_locked(self) -> int:
        evicted = 0
        while len(self._sessions) >= self.max_entries:
            victim = min(self._sessions, key=lambda k: self._sessions[k].last_updated)
            del self._sessions[victim]
            evicted += 1
            logger.warning(f"Session store: evicted session {victim} to enforce capacity")
        return evicted

    def prune_expired(self, now: float | None = None) -> int:
        """Remove sessions idle for longer than the TTL.

        Returns:
            Number of sessions removed.
        """
        now = self.clock() if now is None else now
        with self._lock:
            expired = [
                key for key, state in self._sessions.items()
                if now - state.last_updated > self.idle_ttl
            ]
            for key in expired:
                del self._sessions[key]
        for key in expired:
            logger.debug(f"Session store: evicted idle session {key}")
        return len(expired)

    def metrics(self, limit: int = 5) -> StoreMetrics:
        """Snapshot of the store: size plus the most recently updated sessions."""
        with self._lock:
            states = list(self._sessions.values())
        recent = sorted(states, key=lambda s: s.last_updated, reverse=True)[: max(0, limit)]
        return StoreMetrics(
            total_sessions=len(states),
            recent_sessions=[
                SessionSummary(
                    id=s.id,
                    prompt_cache_key=s.prompt_cache_key,
                    last_cached_tokens=s.last_cached_tokens,
                    last_updated=s.last_updated,
                )
                for s in recent
            ],
        )
