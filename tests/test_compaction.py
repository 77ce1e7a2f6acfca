"""
Tests for the compaction state machine and the session commands built on it.
"""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock
from langchain_core.messages import AIMessage, SystemMessage

from langchain_compact.memory.compactor import (
    MIN_SNAPSHOT_TOKENS,
    Aborted,
    Anchoring,
    ArchiveHistory,
    Clustering,
    CompactionContext,
    CompactionReport,
    Compactor,
    Done,
    EmitReport,
    HeadroomCheck,
    Idle,
    PersistSnapshot,
    Replacing,
    RequestSynthesis,
    Start,
    StoreFailed,
    StoreSucceeded,
    SwapHistory,
    SynthesisFailed,
    Synthesizing,
    format_completion_message,
    transition,
)
from langchain_compact.memory.config import CompactionConfig, CompactOptions
from langchain_compact.memory.errors import (
    CompactionInProgress,
    HeadroomUnattainable,
    StoreIOError,
    SynthesisSchemaError,
)
from langchain_compact.memory.messages import History, Message, Role
from langchain_compact.memory.retention import RetentionPolicy
from langchain_compact.memory.session import CompactionSession
from langchain_compact.memory.snapshot import SummaryV1
from langchain_compact.memory.store import SnapshotStore
from langchain_compact.memory.summarizer import SnapshotSynthesizer
from langchain_compact.memory.tool_budget import ToolSummary


def _conversation(count: int) -> list[Message]:
    messages = []
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        messages.append(
            Message.create(role, f"message {i}: notes on module_{i} and helper_{i}", message_id=f"m{i}")
        )
    return messages


def _ctx(history, **overrides) -> CompactionContext:
    values = dict(
        history=History(history),
        pins=frozenset(),
        policy=RetentionPolicy(),
        max_tail=4,
        min_headroom=100,
        context_window=100_000,
        fixed_tokens=1000,
        timestamp="20261019T101500.000001Z",
        compacted_at="2026-10-19T10:15:00Z",
    )
    values.update(overrides)
    return CompactionContext(**values)


def _usage(tokens: int) -> AIMessage:
    return AIMessage(
        content="ok",
        usage_metadata={"input_tokens": tokens, "output_tokens": 0, "total_tokens": tokens},
    )


def _dump(messages) -> str:
    return json.dumps([m.to_dict() for m in messages])


# ── Transition Tests ──


class TestTransition:
    def test_start(self):
        assert transition(Idle(), Start(), _ctx(_conversation(4))) == (Anchoring(), [])

    def test_idle_ignores_other_events(self):
        state, effects = transition(Idle(), None, _ctx(_conversation(4)))
        assert state == Idle()
        assert effects == []

    def test_anchoring_resolves_keep_set(self):
        history = _conversation(4) + [Message.create("tool", "3 passed", message_id="t1")]
        state, _ = transition(Anchoring(), None, _ctx(history))
        assert state == Clustering(frozenset({"t1"}), 4, 8)

    def test_clustering_requests_synthesis(self):
        ctx = _ctx(_conversation(10))
        state, effects = transition(Clustering(frozenset(), 2, 8), None, ctx)
        assert isinstance(state, Synthesizing)
        assert len(effects) == 1
        request = effects[0]
        assert isinstance(request, RequestSynthesis)
        assert request.now == "2026-10-19T10:15:00Z"
        assert request.token_budget >= MIN_SNAPSHOT_TOKENS
        clustered = [mid for c in request.clusters for mid in c.ids]
        assert clustered == [f"m{i}" for i in range(8)]

    def test_nothing_to_summarize_skips_synthesis(self):
        prior = SummaryV1(task="Earlier work")
        ctx = _ctx(_conversation(3), prior=prior)
        state, effects = transition(Clustering(frozenset(), 4, 8), None, ctx)
        assert isinstance(state, HeadroomCheck)
        assert state.snapshot is prior
        assert effects == []

    def test_synthesis_failure_aborts(self):
        error = SynthesisSchemaError("bad json")
        state, effects = transition(
            Synthesizing(frozenset(), 4, 8, ()), SynthesisFailed(error), _ctx(_conversation(4))
        )
        assert state == Aborted(error)
        assert effects == []

    def test_headroom_shortfall_shrinks_tail_and_clusters(self):
        ctx = _ctx(_conversation(10), min_headroom=10**9)
        state, _ = transition(HeadroomCheck(frozenset(), 4, 8, (), None), None, ctx)
        assert state == Clustering(frozenset(), 2, 4)

    def test_headroom_unattainable_at_empty_tail(self):
        ctx = _ctx(_conversation(10), min_headroom=10**9)
        state, effects = transition(HeadroomCheck(frozenset(), 0, 1, (), None), None, ctx)
        assert isinstance(state, Aborted)
        assert isinstance(state.error, HeadroomUnattainable)
        assert state.error.report.headroom_met is False
        assert effects == []

    def test_best_effort_proceeds_below_minimum(self):
        ctx = _ctx(_conversation(10), min_headroom=10**9, best_effort=True)
        state, effects = transition(HeadroomCheck(frozenset(), 0, 1, (), None), None, ctx)
        assert isinstance(state, Replacing)
        assert state.report.headroom_met is False
        assert isinstance(effects[0], ArchiveHistory)

    def test_dry_run_never_replaces(self):
        ctx = _ctx(_conversation(10), dry_run=True)
        snapshot = SummaryV1(task="t", last_compact_at="2026-10-19T10:15:00Z")
        state, effects = transition(HeadroomCheck(frozenset(), 2, 8, (), snapshot), None, ctx)
        assert isinstance(state, Done)
        assert state.report.dry_run is True
        assert [type(e) for e in effects] == [EmitReport]

    def test_execute_archives_then_persists(self):
        ctx = _ctx(_conversation(10))
        snapshot = SummaryV1(task="t", last_compact_at="2026-10-19T10:15:00Z")
        state, effects = transition(HeadroomCheck(frozenset(), 2, 8, (), snapshot), None, ctx)
        assert isinstance(state, Replacing)
        assert [type(e) for e in effects] == [ArchiveHistory, PersistSnapshot]
        assert effects[0].timestamp == ctx.timestamp
        assert state.new_history[0].is_snapshot
        assert [m.id for m in state.new_history[1:]] == ["m8", "m9"]

    def test_store_failure_aborts(self):
        report = CompactionReport(100, 10, 2, 10, 5000, 100)
        replacing = Replacing((), None, report)
        error = StoreIOError("disk full")
        state, effects = transition(replacing, StoreFailed(error), _ctx(_conversation(2)))
        assert state == Aborted(error, report)
        assert effects == []

    def test_store_success_swaps_history(self):
        report = CompactionReport(100, 10, 2, 10, 5000, 100)
        new_history = tuple(_conversation(2))
        state, effects = transition(
            Replacing(new_history, None, report), StoreSucceeded(), _ctx(_conversation(2))
        )
        assert isinstance(state, Done)
        assert state.report.persisted is True
        assert [type(e) for e in effects] == [SwapHistory, EmitReport]
        assert effects[0].messages == new_history


# ── Compactor Driver Tests ──


class TestCompactor:
    def _synthesizer(self):
        synthesizer = MagicMock()
        synthesizer.synthesize.return_value = SummaryV1(
            task="Refactor helpers", last_compact_at="2026-10-19T10:15:00Z"
        )
        return synthesizer

    def test_execute_run(self, tmp_path):
        store = SnapshotStore(tmp_path)
        outcome = Compactor(self._synthesizer(), store).run(_ctx(_conversation(10)))
        assert outcome.ok
        assert outcome.phases == [
            "Anchoring", "Clustering", "Synthesizing", "HeadroomCheck", "Replacing", "Done",
        ]
        assert outcome.history[0].is_snapshot
        assert outcome.report.persisted is True
        assert store.load_snapshot().task == "Refactor helpers"
        assert store.list_archives() == ["20261019T101500.000001Z"]

    def test_dry_run_writes_nothing(self, tmp_path):
        store = SnapshotStore(tmp_path / "session")
        outcome = Compactor(self._synthesizer(), store).run(
            _ctx(_conversation(10), dry_run=True)
        )
        assert outcome.ok
        assert outcome.history is None
        assert outcome.report.dry_run is True
        assert not (tmp_path / "session").exists()

    def test_headroom_loop_then_abort(self, tmp_path):
        synthesizer = self._synthesizer()
        store = SnapshotStore(tmp_path / "session")
        outcome = Compactor(synthesizer, store).run(
            _ctx(_conversation(10), min_headroom=10**9)
        )
        assert not outcome.ok
        assert isinstance(outcome.state.error, HeadroomUnattainable)
        # tail 4 → 2 → 1 → 0
        assert outcome.phases.count("Clustering") == 4
        assert synthesizer.synthesize.call_count == 4
        assert not (tmp_path / "session").exists()

    def test_store_failure_stops_before_persist(self):
        store = MagicMock()
        store.archive.side_effect = StoreIOError("disk full")
        outcome = Compactor(self._synthesizer(), store).run(_ctx(_conversation(10)))
        assert not outcome.ok
        assert isinstance(outcome.state.error, StoreIOError)
        assert outcome.history is None
        store.persist_snapshot.assert_not_called()

    def test_arun(self, tmp_path):
        synthesizer = MagicMock()
        synthesizer.asynthesize = AsyncMock(
            return_value=SummaryV1(task="Async work", last_compact_at="2026-10-19T10:15:00Z")
        )
        outcome = asyncio.run(
            Compactor(synthesizer, SnapshotStore(tmp_path)).arun(_ctx(_conversation(10)))
        )
        assert outcome.ok
        assert outcome.snapshot.task == "Async work"


# ── Report Tests ──


class TestCompletionMessage:
    def test_executed(self):
        report = CompactionReport(
            before_tokens=50000,
            after_tokens=8000,
            kept_count=7,
            archived_count=50,
            headroom_tokens=180000,
            min_headroom=2048,
            context_window=200000,
            fixed_tokens=12000,
            persisted=True,
        )
        assert format_completion_message(report) == (
            "Compaction complete: ~50000 → ~8000 tokens; saved ~42000; kept 7; "
            "archived 50; headroom ~180000 tokens; remaining ~69% → ~90%; snapshot persisted"
        )

    def test_dry_run_below_minimum(self):
        report = CompactionReport(
            before_tokens=900,
            after_tokens=800,
            kept_count=3,
            archived_count=10,
            headroom_tokens=50,
            min_headroom=100,
            dry_run=True,
            headroom_met=False,
        )
        message = format_completion_message(report)
        assert message.startswith("Compaction dry run: ~900 → ~800 tokens")
        assert "below minimum 100" in message
        assert "persisted" not in message
        assert "remaining" not in message


# ── Session Tests ──


class TestCompactionSession:
    def _session(self, llm, session_dir, **config_overrides) -> CompactionSession:
        values = dict(context_window=200_000, max_tail=4)
        values.update(config_overrides)
        config = CompactionConfig(**values)
        return CompactionSession(
            config=config,
            synthesizer=SnapshotSynthesizer(llm),
            store=SnapshotStore(session_dir),
        )

    def _fill(self, session, count=10):
        for msg in _conversation(count):
            session.append_message(msg)

    def test_pins_and_tool_messages_survive(self, snapshot_llm, session_dir):
        session = self._session(snapshot_llm, session_dir)
        pinned, tools = [], []
        for i in range(50):
            if i in (5, 15, 25):
                tools.append(session.append("tool", f"tool run {i}: 12 passed in 0.4s"))
            elif i in (2, 10):
                session.append("user", f"message {i}: keep this request", provider_id=f"prov-{i}")
                pinned.append(session.pin_last())
            else:
                role = "user" if i % 2 == 0 else "assistant"
                session.append(role, f"message {i}: notes on module_{i}")
        assert len(session.history) == 50

        report = session.compact()

        history = session.history
        assert history[0].is_snapshot
        assert sum(1 for m in history if not m.is_snapshot) >= 5
        for msg in pinned + tools:
            assert msg in history
        assert session.pins == {m.id for m in pinned}
        assert report.archived_count == 50
        assert report.persisted is True
        assert session.snapshot.task == "Fix the failing login test"
        assert SnapshotStore(session_dir).load_snapshot() == session.snapshot
        assert len(SnapshotStore(session_dir).list_archives()) == 1

    def test_tool_messages_sharing_a_header_all_survive(self, snapshot_llm, session_dir):
        session = self._session(snapshot_llm, session_dir, max_tail=2)
        header = "$ pytest tests/ -q --maxfail=1 --disable-warnings\n==== test session starts ====\n"
        tools = []
        for i in range(20):
            if i in (4, 9, 14):
                tools.append(session.append("tool", header + f"{i} passed in 0.{i}s"))
            else:
                role = "user" if i % 2 == 0 else "assistant"
                session.append(role, f"message {i}: notes on module_{i}")

        session.compact()

        kept_tools = [m for m in session.history if m.role is Role.TOOL]
        assert kept_tools == tools

    def test_invalid_json_twice_leaves_history_unchanged(self, session_dir):
        llm = MagicMock()
        llm.invoke.return_value = MagicMock(content="I could not produce JSON, sorry.")
        session = self._session(llm, session_dir)
        self._fill(session, 30)
        before = _dump(session.history)

        with pytest.raises(SynthesisSchemaError):
            session.compact()

        assert llm.invoke.call_count == 2
        assert _dump(session.history) == before
        assert session.snapshot is None
        assert not session_dir.exists()

    def test_headroom_unattainable_leaves_history_unchanged(self, snapshot_llm, session_dir):
        session = self._session(snapshot_llm, session_dir)
        self._fill(session, 20)
        before = session.history
        with pytest.raises(HeadroomUnattainable) as exc_info:
            session.compact(CompactOptions(min_headroom=10**9))
        assert exc_info.value.report is not None
        assert session.history == before
        assert not session_dir.exists()

    def test_best_effort_policy(self, snapshot_llm, session_dir):
        session = self._session(snapshot_llm, session_dir, headroom_policy="best_effort")
        self._fill(session, 20)
        report = session.compact(CompactOptions(min_headroom=10**9))
        assert report.headroom_met is False
        assert report.tail_len == 0
        assert "below minimum" in format_completion_message(report)

    def test_dry_run_is_idempotent(self, snapshot_llm, session_dir):
        session = self._session(snapshot_llm, session_dir)
        self._fill(session, 20)
        before = session.history

        first = session.compact_dry_run()
        second = session.compact_dry_run()

        assert first.dry_run is True
        assert (first.before_tokens, first.after_tokens, first.kept_count) == (
            second.before_tokens, second.after_tokens, second.kept_count
        )
        assert session.history == before
        assert session.snapshot is None
        assert not session_dir.exists()

    def test_overrides_keep_extra_files(self, snapshot_llm, session_dir):
        session = self._session(snapshot_llm, session_dir, max_tail=0)
        self._fill(session, 10)
        readme = session.append("assistant", "Rewrote README.md intro")
        self._fill_more(session)
        session.compact(CompactOptions(keep_files=["*.md"]))
        assert readme in session.history

    def _fill_more(self, session):
        for i in range(10, 16):
            session.append("user", f"later message {i}: about parser_{i}")

    def test_prior_snapshot_feeds_next_compaction(self, snapshot_llm, session_dir):
        session = self._session(snapshot_llm, session_dir)
        self._fill(session, 20)
        session.compact()
        self._fill_more(session)
        session.compact()

        user_prompt = snapshot_llm.invoke.call_args_list[-1][0][0][1]["content"]
        assert "# Prior snapshot" in user_prompt
        assert sum(1 for m in session.history if m.is_snapshot) == 1
        assert len(SnapshotStore(session_dir).list_archives()) == 2

    def test_auto_compact_triggers_once_per_turn(self, snapshot_llm, session_dir):
        session = self._session(
            snapshot_llm, session_dir, context_window=10_000, baseline_tokens=0, max_tail=2
        )
        self._fill(session, 10)

        session.begin_turn()
        session.record_usage(_usage(8400))
        assert session.maybe_auto_compact() is None
        assert snapshot_llm.invoke.call_count == 0

        session.begin_turn()
        session.record_usage(_usage(8600))
        report = session.maybe_auto_compact()
        assert report is not None
        assert snapshot_llm.invoke.call_count == 1

        # Same turn, usage reported high again: no second run
        session.record_usage(_usage(8600))
        assert session.maybe_auto_compact() is None
        assert snapshot_llm.invoke.call_count == 1

    def test_auto_compact_disabled(self, snapshot_llm, session_dir):
        session = self._session(
            snapshot_llm, session_dir, context_window=10_000, baseline_tokens=0, auto_compact=False
        )
        self._fill(session, 10)
        session.begin_turn()
        session.record_usage(_usage(9900))
        assert session.maybe_auto_compact() is None

    def test_rejects_concurrent_compaction(self, snapshot_llm, session_dir):
        session = self._session(snapshot_llm, session_dir)
        self._fill(session, 10)
        session._run_lock.acquire()
        try:
            with pytest.raises(CompactionInProgress):
                session.compact()
        finally:
            session._run_lock.release()
        assert snapshot_llm.invoke.call_count == 0

    def test_pin_last_and_unpin_all(self, snapshot_llm, session_dir):
        session = self._session(snapshot_llm, session_dir)
        session.append("user", "no provider id")
        assert session.pin_last() is None

        first = session.append("assistant", "answer", provider_id="resp-1")
        session.append("user", "follow-up")
        assert session.pin_last() == first
        assert session.pins == {first.id}
        assert session.unpin_all() == 1
        assert session.pins == frozenset()

    def test_history_restore(self, snapshot_llm, session_dir):
        session = self._session(snapshot_llm, session_dir)
        self._fill(session, 20)
        original = session.history
        session.compact()
        assert session.history != original

        stamp = SnapshotStore(session_dir).list_archives()[0]
        assert session.history_restore(stamp) == 20
        assert session.history == original
        assert session.snapshot is None
        # The compacted history was archived before being replaced
        assert len(SnapshotStore(session_dir).list_archives()) == 2

    def test_budget_tracks_tool_summaries(self, snapshot_llm, session_dir):
        session = self._session(
            snapshot_llm, session_dir, context_window=10_000, baseline_tokens=0
        )
        session.begin_turn()
        before = session.budget()
        session.add_transient_tokens(3000)
        during = session.budget()
        assert during.this_turn_pct < during.next_turn_pct
        assert during.next_turn_pct == before.next_turn_pct

        summary = ToolSummary(tool="web_search", query="q", bullets=["one fact"])
        msg = session.append_tool_summary(summary, provider_id="call-9")
        assert msg.role is Role.TOOL
        assert msg.provider_id == "call-9"
        after = session.begin_turn()
        assert after.transient_tool_tokens == 0
        assert after.persisted_input_tokens == before.persisted_input_tokens + msg.tokens

    def test_to_langchain_messages(self, snapshot_llm, session_dir):
        session = CompactionSession(
            config=CompactionConfig(context_window=10_000),
            synthesizer=SnapshotSynthesizer(snapshot_llm),
            store=SnapshotStore(session_dir),
            system_prompt="You are a coding agent.",
        )
        session.append("user", "hi")
        messages = session.to_langchain_messages()
        assert isinstance(messages[0], SystemMessage)
        assert messages[1].content == "hi"

    def test_acompact(self, session_dir):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=MagicMock(content=(
            '{"task": "Async refactor", "todo": ["finish"]}'
        )))
        session = self._session(llm, session_dir)
        self._fill(session, 20)
        report = asyncio.run(session.acompact())
        assert report.persisted is True
        assert session.history[0].is_snapshot
        assert session.snapshot.task == "Async refactor"

    def test_cancelled_acompact_leaves_history(self, session_dir):
        async def hang(messages):
            await asyncio.sleep(10)

        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=hang)
        session = self._session(llm, session_dir)
        self._fill(session, 20)
        before = session.history

        async def main():
            task = asyncio.create_task(session.acompact())
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(main())
        assert session.history == before
        assert not session_dir.exists()
        # The run lock was released
        assert session._run_lock.acquire(blocking=False)
        session._run_lock.release()
