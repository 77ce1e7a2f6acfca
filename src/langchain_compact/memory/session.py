"""
Compaction session: the explicit context object for one agent session.

Owns the working history, the pin set and the budget tracker, and exposes
the commands the UI layer dispatches:

    compact(options)          compact_dry_run(options)
    pin_last()                unpin_all()
    history_restore(timestamp)

Usage:
    session = CompactionSession(config, synthesizer, store, system_prompt=...)
    session.begin_turn()
    session.append("user", "Fix the failing test in tests/test_api.py")
    ...
    report = session.maybe_auto_compact()
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from langchain_core.messages import SystemMessage

from .compactor import (
    CompactionContext,
    CompactionOutcome,
    CompactionReport,
    Compactor,
    format_completion_message,
)
from .config import CompactionConfig, CompactOptions
from .errors import CompactionError, CompactionInProgress, SynthesisSchemaError
from .messages import History, Message, to_langchain
from .retention import RetentionPolicy
from .snapshot import SummaryV1, parse_snapshot_message
from .store import SnapshotStore, archive_timestamp
from .summarizer import SnapshotSynthesizer
from .token_budget import ContextBudget, ContextBudgetTracker, estimate_tokens
from .tool_budget import ToolSummary

logger = logging.getLogger(__name__)


class CompactionSession:
    """Session-scoped history, pins and budget with compaction commands."""

    def __init__(
        self,
        config: Optional[CompactionConfig] = None,
        synthesizer: Optional[SnapshotSynthesizer] = None,
        store: Optional[SnapshotStore] = None,
        system_prompt: str = "",
        model_name: str = "",
        history=None,
        snapshot: Optional[SummaryV1] = None,
    ):
        self.config = config or CompactionConfig()
        self.synthesizer = synthesizer or SnapshotSynthesizer(
            None, timeout=self.config.synthesis_timeout
        )
        self.store = store or SnapshotStore(self.config.session_dir)
        self.model_name = model_name
        self.system_prompt = system_prompt
        self.system_prompt_tokens = estimate_tokens(system_prompt)
        self.context_window = self.config.get_context_window(model_name)
        self.policy = RetentionPolicy.from_config(self.config)
        self.snapshot = snapshot
        self.last_report: Optional[CompactionReport] = None

        self._history = History(history or ())
        self._pins: set[str] = set()
        self._compactor = Compactor(self.synthesizer, self.store)
        self.tracker = ContextBudgetTracker(self.context_window, self.config.baseline_tokens)
        self.tracker.set_persisted(self.persisted_estimate())

        # One run at a time; history writes are serialized.
        self._run_lock = threading.Lock()
        self._write_lock = threading.RLock()

        # Auto-compact debounce
        self._auto_turn: Optional[int] = None
        self._auto_persisted: Optional[int] = None

    # ── History ──

    @property
    def history(self) -> tuple[Message, ...]:
        return self._history.messages()

    @property
    def pins(self) -> frozenset:
        return frozenset(self._pins)

    def append_message(self, msg: Message) -> Message:
        with self._write_lock:
            return self._history.append(msg)

    def append(
        self,
        role,
        content: str,
        provider_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> Message:
        return self.append_message(
            Message.create(role, content, provider_id=provider_id, message_id=message_id)
        )

    def append_tool_summary(
        self, summary: ToolSummary, provider_id: Optional[str] = None
    ) -> Message:
        """Persist a tool's summary; raw payloads never come through here."""
        return self.append_message(summary.to_message(provider_id=provider_id))

    def to_langchain_messages(self) -> list:
        messages = [SystemMessage(content=self.system_prompt)] if self.system_prompt else []
        messages.extend(to_langchain(m) for m in self._history)
        return messages

    # ── Budget ──

    def persisted_estimate(self) -> int:
        """System prompt + persisted history, by the heuristic estimator."""
        return self.system_prompt_tokens + self._history.total_tokens()

    def begin_turn(self) -> ContextBudget:
        return self.tracker.begin_turn(self.persisted_estimate())

    def record_usage(self, response) -> int:
        return self.tracker.record_usage(response, fallback_tokens=self.persisted_estimate())

    def add_transient_tokens(self, tokens: int) -> int:
        return self.tracker.add_transient(tokens)

    def budget(self) -> ContextBudget:
        return self.tracker.current()

    # ── Pins ──

    def pin_last(self) -> Optional[Message]:
        """Pin the most recent message that has a provider id."""
        with self._write_lock:
            msg = self._history.last_with_provider_id()
            if msg is None:
                logger.info("pin_last: no message with a provider id to pin")
                return None
            self._pins.add(msg.id)
            return msg

    def unpin_all(self) -> int:
        with self._write_lock:
            count = len(self._pins)
            self._pins.clear()
            return count

    # ── Compaction ──

    def _context(self, options: Optional[CompactOptions], dry_run: bool) -> CompactionContext:
        options = options or CompactOptions()
        now = datetime.now(timezone.utc)
        with self._write_lock:
            history = History(self._history.messages())
            pins = frozenset(self._pins)
        return CompactionContext(
            history=history,
            pins=pins,
            policy=self.policy.with_overrides(options),
            max_tail=options.resolve_tail(self.config),
            min_headroom=options.resolve_headroom(self.config),
            context_window=self.context_window,
            fixed_tokens=self.config.baseline_tokens + self.system_prompt_tokens,
            max_clusters=self.config.max_clusters,
            cluster_similarity=self.config.cluster_similarity,
            max_cluster_tokens=self.config.max_cluster_tokens,
            prefix_chars=self.config.dedupe_prefix_chars,
            prior=self.snapshot,
            dry_run=dry_run,
            best_effort=self.config.headroom_policy == "best_effort",
            timestamp=archive_timestamp(now),
            compacted_at=now.strftime("%Y-%m-%dT%H:%M:%SZ"),
        )

    def _acquire(self):
        if not self._run_lock.acquire(blocking=False):
            raise CompactionInProgress("a compaction is already running for this session")

    def _conclude(self, ctx: CompactionContext, outcome: CompactionOutcome) -> CompactionReport:
        if not outcome.ok:
            raise outcome.state.error
        report = outcome.report
        self.last_report = report
        if ctx.dry_run:
            return report

        with self._write_lock:
            # Messages appended while the run was in flight follow the new history.
            extra = self._history.messages()[len(ctx.history):]
            self._history = History(tuple(outcome.history) + extra)
            self._pins &= set(self._history.ids())
            self.snapshot = outcome.snapshot
            self.tracker.set_persisted(self.persisted_estimate())
        return report

    def compact(self, options: Optional[CompactOptions] = None) -> CompactionReport:
        """Run compaction in execute mode. Raises on any structural failure."""
        return self._compact(options, dry_run=False)

    def compact_dry_run(self, options: Optional[CompactOptions] = None) -> CompactionReport:
        """Same computation as compact(); never touches history or files."""
        return self._compact(options, dry_run=True)

    def _compact(self, options, dry_run: bool) -> CompactionReport:
        self._acquire()
        try:
            ctx = self._context(options, dry_run)
            outcome = self._compactor.run(ctx)
            logger.debug("Compaction phases: %s", " → ".join(outcome.phases))
            return self._conclude(ctx, outcome)
        finally:
            self._run_lock.release()

    async def acompact(
        self, options: Optional[CompactOptions] = None, dry_run: bool = False
    ) -> CompactionReport:
        """Async compaction. Cancelling it leaves history as it was."""
        self._acquire()
        try:
            ctx = self._context(options, dry_run)
            outcome = await self._compactor.arun(ctx)
            return self._conclude(ctx, outcome)
        finally:
            self._run_lock.release()

    def maybe_auto_compact(self) -> Optional[CompactionReport]:
        """
        Compact when this turn's usage exceeds the threshold.

        Runs at most once per turn, and not again until a later turn has
        accrued new persisted tokens.
        """
        if not self.config.auto_compact:
            return None
        budget = self.budget()
        if budget.usage_fraction <= self.config.auto_compact_threshold:
            return None
        if self._auto_turn == self.tracker.turn:
            return None
        if (
            self._auto_persisted is not None
            and budget.persisted_input_tokens <= self._auto_persisted
        ):
            return None

        logger.info(
            "Auto-compact: usage %.2f above threshold %.2f",
            budget.usage_fraction,
            self.config.auto_compact_threshold,
        )
        self._auto_turn = self.tracker.turn
        try:
            report = self.compact()
        except CompactionInProgress:
            return None
        finally:
            self._auto_persisted = self.tracker.persisted_input_tokens
        logger.info(format_completion_message(report))
        return report

    # ── Restore ──

    def history_restore(self, timestamp: str) -> int:
        """Replace history with an archived one. The current history is archived first."""
        self._acquire()
        try:
            restored = self.store.load_archive(timestamp)
            snapshot = None
            for msg in restored:
                if msg.is_snapshot:
                    try:
                        snapshot = parse_snapshot_message(msg)
                    except SynthesisSchemaError as e:
                        raise CompactionError(
                            f"archived snapshot message {msg.id} is malformed: {e.message}",
                            phase="restore",
                        ) from e
            with self._write_lock:
                self.store.archive(self._history.messages())
                self._history = History(restored)
                self._pins &= set(self._history.ids())
                self.snapshot = snapshot
                self.tracker.set_persisted(self.persisted_estimate())
            logger.info("Restored %d messages from archive %s", len(restored), timestamp)
            return len(restored)
        finally:
            self._run_lock.release()
