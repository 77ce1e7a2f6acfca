"""
Compaction orchestrator.

An explicit finite-state machine:

    Idle → Anchoring → Clustering → Synthesizing → HeadroomCheck → Replacing → Done
                            ↑                            │
                            └──── reduce tail / clusters ┘

    any phase failure → Aborted (history untouched)
    dry run: HeadroomCheck → Done, never Replacing

``transition(state, event, ctx)`` is pure: it returns the next state and the
side effects the driver must perform. The driver (Compactor) performs the
effects (LLM call, archive, persist) and feeds their outcome back as events.
Nothing is swapped into the session until the machine reaches Done.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Optional, Union

from .clustering import cluster_messages
from .errors import CompactionError, HeadroomUnattainable, StoreIOError, SynthesisError
from .messages import History, Message
from .retention import RetentionPolicy, rebuild_history, resolve_keep_set, select_tail
from .snapshot import SummaryV1, snapshot_message
from .token_budget import estimate_history_tokens

logger = logging.getLogger(__name__)

# Smallest snapshot budget we ask the model for
MIN_SNAPSHOT_TOKENS = 256


# ── Report ──


@dataclass(frozen=True)
class CompactionReport:
    before_tokens: int
    after_tokens: int
    kept_count: int
    archived_count: int
    headroom_tokens: int
    min_headroom: int
    context_window: int = 0
    fixed_tokens: int = 0
    tail_len: int = 0
    dry_run: bool = False
    persisted: bool = False
    headroom_met: bool = True

    @property
    def saved_tokens(self) -> int:
        return max(self.before_tokens - self.after_tokens, 0)

    def percent_remaining(self, tokens: int) -> int:
        if self.context_window <= 0:
            return 0
        remaining = 1 - (self.fixed_tokens + tokens) / self.context_window
        return round(min(max(remaining, 0.0), 1.0) * 100)


def format_completion_message(report: CompactionReport) -> str:
    """One-line summary for the UI. Dry runs omit the persisted confirmation."""
    head = "Compaction dry run" if report.dry_run else "Compaction complete"
    parts = [
        f"{head}: ~{report.before_tokens} → ~{report.after_tokens} tokens",
        f"saved ~{report.saved_tokens}",
        f"kept {report.kept_count}",
        f"archived {report.archived_count}",
        f"headroom ~{report.headroom_tokens} tokens",
    ]
    if not report.headroom_met:
        parts.append(f"below minimum {report.min_headroom}")
    if report.context_window > 0:
        parts.append(
            f"remaining ~{report.percent_remaining(report.before_tokens)}%"
            f" → ~{report.percent_remaining(report.after_tokens)}%"
        )
    if report.persisted:
        parts.append("snapshot persisted")
    return "; ".join(parts)


# ── Context ──


@dataclass(frozen=True)
class CompactionContext:
    """Everything a run reads. Captured once at Start; never mutated."""

    history: History
    pins: frozenset
    policy: RetentionPolicy
    max_tail: int
    min_headroom: int
    context_window: int
    fixed_tokens: int  # baseline + system prompt, outside history
    max_clusters: int = 8
    cluster_similarity: float = 0.2
    max_cluster_tokens: int = 4000
    prefix_chars: int = 64
    prior: Optional[SummaryV1] = None
    dry_run: bool = False
    best_effort: bool = False
    timestamp: str = ""  # archive name stamp
    compacted_at: str = ""  # ISO-8601, recorded in the snapshot


# ── States ──


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Anchoring:
    pass


@dataclass(frozen=True)
class Clustering:
    keep_ids: frozenset
    tail_len: int
    max_clusters: int


@dataclass(frozen=True)
class Synthesizing:
    keep_ids: frozenset
    tail_len: int
    max_clusters: int
    clusters: tuple


@dataclass(frozen=True)
class HeadroomCheck:
    keep_ids: frozenset
    tail_len: int
    max_clusters: int
    clusters: tuple
    snapshot: Optional[SummaryV1]


@dataclass(frozen=True)
class Replacing:
    new_history: tuple
    snapshot: Optional[SummaryV1]
    report: CompactionReport


@dataclass(frozen=True)
class Done:
    report: CompactionReport
    new_history: tuple = ()
    snapshot: Optional[SummaryV1] = None


@dataclass(frozen=True)
class Aborted:
    error: CompactionError
    report: Optional[CompactionReport] = None


State = Union[Idle, Anchoring, Clustering, Synthesizing, HeadroomCheck, Replacing, Done, Aborted]

TERMINAL = (Done, Aborted)


# ── Events ──


@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class SynthesisSucceeded:
    snapshot: SummaryV1


@dataclass(frozen=True)
class SynthesisFailed:
    error: CompactionError


@dataclass(frozen=True)
class StoreSucceeded:
    pass


@dataclass(frozen=True)
class StoreFailed:
    error: StoreIOError


# ── Effects ──


@dataclass(frozen=True)
class RequestSynthesis:
    clusters: tuple
    prior: Optional[SummaryV1]
    token_budget: int
    now: str


@dataclass(frozen=True)
class ArchiveHistory:
    messages: tuple
    timestamp: str


@dataclass(frozen=True)
class PersistSnapshot:
    snapshot: SummaryV1


@dataclass(frozen=True)
class SwapHistory:
    messages: tuple


@dataclass(frozen=True)
class EmitReport:
    report: CompactionReport


# ── Transition function ──


def _summarizable(ctx: CompactionContext, keep_ids: frozenset, tail_len: int) -> list[Message]:
    tail_ids = {m.id for m in select_tail(ctx.history, tail_len)}
    return [
        m
        for m in ctx.history
        if not m.is_snapshot and m.id not in keep_ids and m.id not in tail_ids
    ]


def _plan(ctx: CompactionContext, state: HeadroomCheck) -> tuple[list[Message], CompactionReport]:
    tail_ids = [m.id for m in select_tail(ctx.history, state.tail_len)]
    snap_msg = snapshot_message(state.snapshot) if state.snapshot is not None else None
    new_history = rebuild_history(
        ctx.history,
        state.keep_ids,
        tail_ids,
        snapshot_msg=snap_msg,
        pins=ctx.pins,
        prefix_chars=ctx.prefix_chars,
    )
    before = estimate_history_tokens(ctx.history)
    after = estimate_history_tokens(new_history)
    headroom = ctx.context_window - ctx.fixed_tokens - after
    kept = sum(1 for m in new_history if not m.is_snapshot)
    report = CompactionReport(
        before_tokens=before,
        after_tokens=after,
        kept_count=kept,
        archived_count=len(ctx.history),
        headroom_tokens=headroom,
        min_headroom=ctx.min_headroom,
        context_window=ctx.context_window,
        fixed_tokens=ctx.fixed_tokens,
        tail_len=state.tail_len,
        dry_run=ctx.dry_run,
        persisted=False,
        headroom_met=headroom >= ctx.min_headroom,
    )
    return new_history, report


def _snapshot_budget(ctx: CompactionContext, keep_ids: frozenset, tail_len: int) -> int:
    """Tokens left for the snapshot once fixed overhead, kept and tail are counted."""
    tail_ids = {m.id for m in select_tail(ctx.history, tail_len)}
    retained = [m for m in ctx.history if m.id in keep_ids or m.id in tail_ids]
    available = (
        ctx.context_window
        - ctx.fixed_tokens
        - ctx.min_headroom
        - estimate_history_tokens(retained)
    )
    return max(available, MIN_SNAPSHOT_TOKENS)


def transition(state: State, event, ctx: CompactionContext) -> tuple[State, list]:
    """Pure step function: (state, event) → (next state, effects)."""
    if isinstance(state, Idle):
        if isinstance(event, Start):
            return Anchoring(), []
        return state, []

    if isinstance(state, Anchoring):
        keep_ids = resolve_keep_set(ctx.history, ctx.pins, ctx.policy)
        return Clustering(keep_ids, max(ctx.max_tail, 0), max(ctx.max_clusters, 1)), []

    if isinstance(state, Clustering):
        remainder = _summarizable(ctx, state.keep_ids, state.tail_len)
        clusters = tuple(
            cluster_messages(
                remainder,
                max_clusters=state.max_clusters,
                similarity=ctx.cluster_similarity,
                max_cluster_tokens=ctx.max_cluster_tokens,
            )
        )
        if not clusters:
            # Nothing new to distill; the prior snapshot (if any) carries over.
            return HeadroomCheck(
                state.keep_ids, state.tail_len, state.max_clusters, clusters, ctx.prior
            ), []
        effect = RequestSynthesis(
            clusters=clusters,
            prior=ctx.prior,
            token_budget=_snapshot_budget(ctx, state.keep_ids, state.tail_len),
            now=ctx.compacted_at,
        )
        return Synthesizing(state.keep_ids, state.tail_len, state.max_clusters, clusters), [effect]

    if isinstance(state, Synthesizing):
        if isinstance(event, SynthesisSucceeded):
            return HeadroomCheck(
                state.keep_ids, state.tail_len, state.max_clusters, state.clusters, event.snapshot
            ), []
        if isinstance(event, SynthesisFailed):
            return Aborted(event.error), []
        return state, []

    if isinstance(state, HeadroomCheck):
        new_history, report = _plan(ctx, state)
        if not report.headroom_met:
            if state.tail_len > 0:
                return Clustering(
                    state.keep_ids,
                    state.tail_len // 2,
                    max(state.max_clusters // 2, 1),
                ), []
            if not ctx.best_effort:
                error = HeadroomUnattainable(
                    f"projected headroom ~{report.headroom_tokens} tokens is below "
                    f"the minimum {ctx.min_headroom} even with an empty tail",
                    report=report,
                )
                return Aborted(error, report), []
        if ctx.dry_run:
            return Done(report, tuple(new_history), state.snapshot), [EmitReport(report)]
        effects = [ArchiveHistory(ctx.history.messages(), ctx.timestamp)]
        if state.snapshot is not None:
            effects.append(PersistSnapshot(state.snapshot))
        return Replacing(tuple(new_history), state.snapshot, report), effects

    if isinstance(state, Replacing):
        if isinstance(event, StoreSucceeded):
            report = replace(state.report, persisted=True)
            return Done(report, state.new_history, state.snapshot), [
                SwapHistory(state.new_history),
                EmitReport(report),
            ]
        if isinstance(event, StoreFailed):
            return Aborted(event.error, state.report), []
        return state, []

    return state, []


# ── Driver ──


@dataclass
class CompactionOutcome:
    state: State
    history: Optional[tuple] = None  # set only when SwapHistory was emitted
    snapshot: Optional[SummaryV1] = None
    phases: list = field(default_factory=list)

    @property
    def report(self) -> Optional[CompactionReport]:
        return getattr(self.state, "report", None)

    @property
    def ok(self) -> bool:
        return isinstance(self.state, Done)


class Compactor:
    """Drives the state machine, performing effects with the given collaborators."""

    def __init__(self, synthesizer, store=None):
        self.synthesizer = synthesizer
        self.store = store

    def _start(self, ctx: CompactionContext):
        state, effects = transition(Idle(), Start(), ctx)
        return state, effects, CompactionOutcome(state=state, phases=[type(state).__name__])

    def _perform_local(self, effect, outcome: CompactionOutcome):
        """Effects that need no external call. Returns the resulting event or None."""
        if isinstance(effect, (ArchiveHistory, PersistSnapshot)):
            if self.store is None:
                return StoreFailed(StoreIOError("no snapshot store configured"))
            try:
                if isinstance(effect, ArchiveHistory):
                    self.store.archive(effect.messages, effect.timestamp)
                else:
                    self.store.persist_snapshot(effect.snapshot)
            except StoreIOError as e:
                return StoreFailed(e)
            return StoreSucceeded()
        if isinstance(effect, SwapHistory):
            outcome.history = effect.messages
        elif isinstance(effect, EmitReport):
            logger.info(format_completion_message(effect.report))
        return None

    def _advance(self, state, effects, events, ctx, outcome):
        event = None
        for e in events:
            event = e
            if isinstance(e, StoreFailed):
                break
        state, effects = transition(state, event, ctx)
        outcome.phases.append(type(state).__name__)
        return state, effects

    def _run_local_effects(self, effects, outcome) -> list:
        events = []
        for effect in effects:
            event = self._perform_local(effect, outcome)
            if event is not None:
                events.append(event)
                if isinstance(event, StoreFailed):
                    break
        return events

    def _finish(self, state, outcome: CompactionOutcome) -> CompactionOutcome:
        outcome.state = state
        if isinstance(state, Done):
            outcome.snapshot = state.snapshot
        else:
            logger.warning("Compaction aborted: %s", state.error)
        return outcome

    def run(self, ctx: CompactionContext) -> CompactionOutcome:
        state, effects, outcome = self._start(ctx)
        while True:
            events = []
            for effect in effects:
                if isinstance(effect, RequestSynthesis):
                    try:
                        snapshot = self.synthesizer.synthesize(
                            list(effect.clusters),
                            prior=effect.prior,
                            token_budget=effect.token_budget,
                            now=effect.now or None,
                        )
                        events.append(SynthesisSucceeded(snapshot))
                    except SynthesisError as e:
                        events.append(SynthesisFailed(e))
            events.extend(self._run_local_effects(
                [e for e in effects if not isinstance(e, RequestSynthesis)], outcome
            ))
            if isinstance(state, TERMINAL):
                return self._finish(state, outcome)
            state, effects = self._advance(state, effects, events, ctx, outcome)

    async def arun(self, ctx: CompactionContext) -> CompactionOutcome:
        """Async driver; cancellation during synthesis leaves nothing swapped."""
        state, effects, outcome = self._start(ctx)
        while True:
            events = []
            for effect in effects:
                if isinstance(effect, RequestSynthesis):
                    try:
                        snapshot = await self.synthesizer.asynthesize(
                            list(effect.clusters),
                            prior=effect.prior,
                            token_budget=effect.token_budget,
                            now=effect.now or None,
                        )
                        events.append(SynthesisSucceeded(snapshot))
                    except SynthesisError as e:
                        events.append(SynthesisFailed(e))
            events.extend(self._run_local_effects(
                [e for e in effects if not isinstance(e, RequestSynthesis)], outcome
            ))
            if isinstance(state, TERMINAL):
                return self._finish(state, outcome)
            state, effects = self._advance(state, effects, events, ctx, outcome)
