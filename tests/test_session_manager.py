"""Tests for the session manager: cache keys, divergence, forks and summaries."""

import copy

from cachekeep.config.schema import Config
from cachekeep.session.identity import derive_session_key, extract_fork_id, generate_cache_key
from cachekeep.session.manager import SessionManager
from cachekeep.session.store import SessionKey, SessionStore


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def user(text, **extra):
    return {"type": "message", "role": "user", "content": text, **extra}


def assistant(text, **extra):
    return {"type": "message", "role": "assistant", "content": [{"type": "output_text", "text": text}], **extra}


def request(items, **metadata):
    return {"model": "gpt-5", "metadata": dict(metadata), "input": copy.deepcopy(items)}


def send(manager, body):
    """Run the request half of a turn and return (body, context)."""
    ctx = manager.get_context(body)
    ctx = manager.apply_request(body, ctx)
    return body, ctx


# ── identity ────────────────────────────────────────────────────


class TestDeriveSessionKey:
    def test_prompt_cache_key_wins(self):
        key, source = derive_session_key({"prompt_cache_key": "pk", "metadata": {"conversation_id": "c"}})
        assert key == SessionKey("pk")
        assert source == "existing"

    def test_conversation_id_from_metadata(self):
        key, source = derive_session_key({"metadata": {"threadId": " t-1 "}})
        assert key == SessionKey("t-1")
        assert source == "metadata"

    def test_conversation_id_from_top_level(self):
        key, _ = derive_session_key({"session_id": "s-1"})
        assert key == SessionKey("s-1")

    def test_fork_applied_to_base(self):
        key, _ = derive_session_key({"metadata": {"conversation_id": "c", "branch_id": "b2"}})
        assert key == SessionKey("c", "b2")

    def test_missing_identity_generates_key(self):
        key, source = derive_session_key({"input": []})
        assert source == "generated"
        assert key.base.startswith("cache_")
        assert key.fork is None

    def test_non_dict_body(self):
        _, source = derive_session_key(None)
        assert source == "generated"

    def test_blank_values_ignored(self):
        assert extract_fork_id({"forkId": "   "}) is None

    def test_generated_keys_are_unique(self):
        assert generate_cache_key() != generate_cache_key()


# ── continuity ──────────────────────────────────────────────────


class TestContinuity:
    def test_key_stable_across_appended_turns(self):
        manager = SessionManager()
        body1, ctx1 = send(manager, request([user("hello")], conversation_id="conv-1"))
        assert body1["prompt_cache_key"] == "conv-1"
        assert ctx1.is_new is True
        assert ctx1.preserve_ids is False

        body2, ctx2 = send(
            manager,
            request([user("hello"), assistant("hi"), user("next")], conversation_id="conv-1"),
        )
        assert body2["prompt_cache_key"] == "conv-1"
        assert ctx2.is_new is False
        assert ctx2.preserve_ids is True
        assert ctx2.state.last_input == body2["input"]

    def test_divergence_gets_fresh_key(self):
        manager = SessionManager()
        send(manager, request([user("hello")], conversation_id="conv-1"))
        send(manager, request([user("hello"), assistant("hi"), user("next")], conversation_id="conv-1"))

        body3, ctx3 = send(
            manager,
            request([user("something else"), assistant("hi"), user("next")], conversation_id="conv-1"),
        )
        assert body3["prompt_cache_key"] != "conv-1"
        assert body3["prompt_cache_key"].startswith("cache_")
        assert ctx3.is_new is True
        assert ctx3.preserve_ids is False

        # Later turns continue the new lineage
        body4, ctx4 = send(
            manager,
            request(
                [user("something else"), assistant("hi"), user("next"), assistant("ok"), user("more")],
                conversation_id="conv-1",
            ),
        )
        assert body4["prompt_cache_key"] == body3["prompt_cache_key"]
        assert ctx4.is_new is False

    def test_get_context_does_not_touch_state(self):
        clock = FakeClock()
        manager = SessionManager(store=SessionStore(clock=clock))
        send(manager, request([user("a"), assistant("b"), user("c")], conversation_id="conv-1"))
        state = manager.store.lookup(SessionKey("conv-1"))
        before = (state.last_updated, list(state.last_input), state.last_prefix_hash, state.prompt_cache_key)

        clock.now += 60
        body = request([user("a"), assistant("b"), user("c"), assistant("d"), user("e")], conversation_id="conv-1")
        first = manager.get_context(body)
        second = manager.get_context(body)

        assert first.state is second.state is state
        assert first.is_new is False
        after = (state.last_updated, state.last_input, state.last_prefix_hash, state.prompt_cache_key)
        assert after == before
        assert "prompt_cache_key" not in body

    def test_shorter_history_diverges(self):
        manager = SessionManager()
        send(manager, request([user("a"), assistant("b"), user("c")], conversation_id="conv-1"))
        body, ctx = send(manager, request([user("a")], conversation_id="conv-1"))
        assert body["prompt_cache_key"].startswith("cache_")
        assert ctx.is_new is True

    def test_volatile_env_block_keeps_key(self):
        manager = SessionManager()
        send(manager, request([user("<env>date: Mon</env>\nstart")], conversation_id="conv-1"))
        body, ctx = send(
            manager,
            request([user("<env>date: Tue</env>\nstart"), assistant("ok"), user("go")], conversation_id="conv-1"),
        )
        assert body["prompt_cache_key"] == "conv-1"
        assert ctx.is_new is False

    def test_repeated_request_is_idempotent(self):
        manager = SessionManager()
        items = [user("a"), assistant("b"), user("c")]
        body1, _ = send(manager, request(items, conversation_id="conv-1"))
        body2, ctx2 = send(manager, request(items, conversation_id="conv-1"))
        assert body1["prompt_cache_key"] == body2["prompt_cache_key"] == "conv-1"
        assert ctx2.is_new is False

    def test_force_store_stamps_store_flag(self):
        manager = SessionManager(force_store=True)
        body, _ = send(manager, request([user("a")], conversation_id="conv-1"))
        assert body["store"] is True

    def test_no_identity_logs_generated_key(self):
        manager = SessionManager()
        body, ctx = send(manager, {"input": [user("a")]})
        assert body["prompt_cache_key"].startswith("cache_")
        assert ctx.session_id == body["prompt_cache_key"]

    def test_disabled_manager_is_inert(self):
        manager = SessionManager(enabled=False)
        body = request([user("a")], conversation_id="conv-1")
        assert manager.get_context(body) is None
        assert manager.apply_request(body, None) is None
        assert "prompt_cache_key" not in body
        assert manager.prune_idle_sessions() == 0


# ── forks ───────────────────────────────────────────────────────


class TestForks:
    def test_forks_get_separate_keys(self):
        manager = SessionManager()
        base, _ = send(manager, request([user("a")], conversation_id="conv-1"))
        fork, fork_ctx = send(manager, request([user("a")], conversation_id="conv-1", forkId="f1"))
        assert base["prompt_cache_key"] == "conv-1"
        assert fork["prompt_cache_key"] == "conv-1::fork::f1"
        assert fork_ctx.key == SessionKey("conv-1", "f1")

    def test_fork_divergence_leaves_base_alone(self):
        manager = SessionManager()
        send(manager, request([user("a"), assistant("b"), user("c")], conversation_id="conv-1"))
        send(manager, request([user("a"), assistant("b"), user("c")], conversation_id="conv-1", forkId="f1"))
        send(manager, request([user("other")], conversation_id="conv-1", forkId="f1"))

        body, ctx = send(
            manager,
            request([user("a"), assistant("b"), user("c"), assistant("d"), user("e")], conversation_id="conv-1"),
        )
        assert body["prompt_cache_key"] == "conv-1"
        assert ctx.is_new is False

    def test_compaction_summary_is_per_fork(self):
        manager = SessionManager()
        _, fork_ctx = send(manager, request([user("a")], conversation_id="conv-1", forkId="f1"))
        manager.apply_compaction_summary(fork_ctx, [], "fork summary")

        base_body = request([user("a")], conversation_id="conv-1")
        base_ctx = manager.get_context(base_body)
        manager.apply_compacted_history(base_body, base_ctx)
        assert base_body["input"] == [user("a")]


# ── responses ───────────────────────────────────────────────────


class TestRecordResponse:
    def test_cached_tokens_recorded(self):
        manager = SessionManager()
        _, ctx = send(manager, request([user("a")], conversation_id="conv-1"))
        manager.record_response(ctx, {"usage": {"cached_tokens": 128}})
        assert ctx.state.last_cached_tokens == 128

    def test_cached_tokens_from_input_details(self):
        manager = SessionManager()
        _, ctx = send(manager, request([user("a")], conversation_id="conv-1"))
        manager.record_response(ctx, {"usage": {"input_tokens_details": {"cached_tokens": 64}}})
        assert ctx.state.last_cached_tokens == 64

    def test_missing_usage_refreshes_timestamp_only(self):
        clock = FakeClock()
        manager = SessionManager(store=SessionStore(clock=clock))
        _, ctx = send(manager, request([user("a")], conversation_id="conv-1"))
        clock.now += 5
        manager.record_response(ctx, {"output": []})
        assert ctx.state.last_cached_tokens is None
        assert ctx.state.last_updated == clock.now

    def test_non_finite_cached_tokens_ignored(self):
        manager = SessionManager()
        _, ctx = send(manager, request([user("a")], conversation_id="conv-1"))
        manager.record_response(ctx, {"usage": {"cached_tokens": float("nan")}})
        manager.record_response(ctx, {"usage": {"input_tokens_details": {"cached_tokens": float("-inf")}}})
        assert ctx.state.last_cached_tokens is None

    def test_non_dict_payload_ignored(self):
        manager = SessionManager()
        _, ctx = send(manager, request([user("a")], conversation_id="conv-1"))
        manager.record_response(ctx, ["not", "a", "response"])
        assert ctx.state.last_cached_tokens is None


# ── compaction summaries ────────────────────────────────────────


class TestCompactedHistory:
    def test_summary_rehydrated_before_input(self):
        manager = SessionManager()
        system = {"type": "message", "role": "developer", "content": "be terse"}
        _, ctx = send(manager, request([user("a")], conversation_id="conv-1"))
        manager.apply_compaction_summary(ctx, [system], "we fixed the parser")

        body = request([user("continue")], conversation_id="conv-1")
        ctx2 = manager.get_context(body)
        manager.apply_compacted_history(body, ctx2)

        assert body["input"][0] == system
        assert body["input"][1]["role"] == "user"
        assert "we fixed the parser" in body["input"][1]["content"]
        assert body["input"][2] == user("continue")

    def test_no_summary_leaves_input(self):
        manager = SessionManager()
        body = request([user("a")], conversation_id="conv-1")
        ctx = manager.get_context(body)
        manager.apply_compacted_history(body, ctx)
        assert body["input"] == [user("a")]

    def test_string_input_kept_after_summary(self):
        manager = SessionManager()
        _, ctx = send(manager, request([user("a")], conversation_id="conv-1"))
        manager.apply_compaction_summary(ctx, [], "summary")

        body = {"metadata": {"conversation_id": "conv-1"}, "input": "please continue"}
        manager.apply_compacted_history(body, manager.get_context(body))

        assert len(body["input"]) == 2
        assert body["input"][0]["content"].endswith("summary")
        assert body["input"][1] == {"type": "message", "role": "user", "content": "please continue"}

    def test_unexpected_input_type_left_alone(self):
        manager = SessionManager()
        _, ctx = send(manager, request([user("a")], conversation_id="conv-1"))
        manager.apply_compaction_summary(ctx, [], "summary")

        body = {"metadata": {"conversation_id": "conv-1"}, "input": {"odd": True}}
        manager.apply_compacted_history(body, manager.get_context(body))
        assert body["input"] == {"odd": True}

    def test_summary_survives_divergence(self):
        manager = SessionManager()
        _, ctx = send(manager, request([user("a"), assistant("b"), user("c")], conversation_id="conv-1"))
        manager.apply_compaction_summary(ctx, [], "summary")
        _, ctx2 = send(manager, request([user("rewritten")], conversation_id="conv-1"))
        assert ctx2.is_new is True
        assert ctx2.state.compaction.summary == "summary"


# ── housekeeping ────────────────────────────────────────────────


class TestHousekeeping:
    def test_metrics_snapshot(self):
        manager = SessionManager()
        send(manager, request([user("a")], conversation_id="conv-1"))
        send(manager, request([user("a")], conversation_id="conv-2"))
        snapshot = manager.get_metrics()
        data = snapshot.to_dict()
        assert data["enabled"] is True
        assert data["total_sessions"] == 2
        assert {s["id"] for s in data["recent_sessions"]} == {"conv-1", "conv-2"}

    def test_prune_idle_sessions(self):
        clock = FakeClock(0.0)
        manager = SessionManager(store=SessionStore(idle_ttl=10, clock=clock))
        send(manager, request([user("a")], conversation_id="conv-1"))
        clock.now = 11.0
        assert manager.prune_idle_sessions() == 1
        assert manager.get_metrics().total_sessions == 0

    def test_reset_session_from_string(self):
        manager = SessionManager()
        send(manager, request([user("a")], conversation_id="conv-1", forkId="f1"))
        state = manager.reset_session("conv-1::fork::f1")
        assert state.prompt_cache_key.startswith("cache_")
        assert manager.store.lookup(SessionKey("conv-1", "f1")) is state

    def test_from_config(self):
        config = Config()
        config.sessions.max_entries = 3
        config.sessions.force_store = True
        manager = SessionManager.from_config(config)
        assert manager.store.max_entries == 3
        assert manager.store.force_store is True
