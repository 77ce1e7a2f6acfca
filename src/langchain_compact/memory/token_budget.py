"""
Token estimation and dual budget accounting.

The estimator is a deterministic ~4 chars/token heuristic. It is only a
fallback: when the LLM reports authoritative usage for a turn, that number
wins. The tracker keeps two independent counters per turn:

- persisted_input_tokens: system + profile + persisted history
- transient_tool_tokens: raw tool payloads in flight this turn only

    next_turn_pct = 1 - (baseline + persisted) / window
    this_turn_pct = 1 - (baseline + persisted + transient) / window
"""

import json
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .errors import EstimationUnavailable

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4  # role markers etc.


def estimate_tokens(text: str) -> int:
    """Heuristic token count: ~4 chars per token, rounded up."""
    if not text:
        return 0
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


def estimate_message_tokens(msg) -> int:
    """Estimate tokens for a history Message, a LangChain message or plain text."""
    content = msg if isinstance(msg, str) else getattr(msg, "content", "")
    if isinstance(content, str):
        return estimate_tokens(content) + MESSAGE_OVERHEAD_TOKENS
    if isinstance(content, list):
        total = MESSAGE_OVERHEAD_TOKENS
        for block in content:
            if isinstance(block, str):
                total += estimate_tokens(block)
            elif isinstance(block, dict):
                btype = block.get("type", "")
                if btype in ("thinking", "reasoning"):
                    total += estimate_tokens(
                        block.get("thinking", "") or block.get("reasoning", "")
                    )
                elif btype == "text":
                    total += estimate_tokens(block.get("text", ""))
                elif btype in ("tool_use", "tool_call"):
                    args = block.get("input") or block.get("args") or {}
                    total += estimate_tokens(json.dumps(args, ensure_ascii=False)) + 10
        return total
    return MESSAGE_OVERHEAD_TOKENS


def estimate_history_tokens(messages: Iterable) -> int:
    total = 0
    for msg in messages:
        cached = getattr(msg, "tokens", None)
        total += cached if isinstance(cached, int) and cached > 0 else estimate_message_tokens(msg)
    return total


def usage_from_response(response) -> int:
    """
    Authoritative input token count from an LLM response.

    Reads ``usage_metadata["input_tokens"]`` (LangChain AIMessage) and falls
    back to ``response_metadata["token_usage"]["prompt_tokens"]``.
    Raises EstimationUnavailable if neither is present.
    """
    usage = getattr(response, "usage_metadata", None)
    if isinstance(usage, dict) and isinstance(usage.get("input_tokens"), int):
        return usage["input_tokens"]
    metadata = getattr(response, "response_metadata", None)
    if isinstance(metadata, dict):
        token_usage = metadata.get("token_usage") or metadata.get("usage") or {}
        for key in ("prompt_tokens", "input_tokens"):
            if isinstance(token_usage.get(key), int):
                return token_usage[key]
    raise EstimationUnavailable("response carries no token usage report")


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


@dataclass(frozen=True)
class ContextBudget:
    """Per-turn budget record. Percentages are derived, never stored."""

    window: int
    baseline: int
    persisted_input_tokens: int
    transient_tool_tokens: int = 0

    @property
    def next_turn_pct(self) -> float:
        if self.window <= 0:
            return 0.0
        return _clamp(1 - (self.baseline + self.persisted_input_tokens) / self.window)

    @property
    def this_turn_pct(self) -> float:
        if self.window <= 0:
            return 0.0
        used = self.baseline + self.persisted_input_tokens + self.transient_tool_tokens
        return _clamp(1 - used / self.window)

    @property
    def usage_fraction(self) -> float:
        """Fraction of the window used this turn (1 - this_turn_pct)."""
        return 1.0 - self.this_turn_pct

    @property
    def headroom_tokens(self) -> int:
        return max(self.window - self.baseline - self.persisted_input_tokens, 0)


class ContextBudgetTracker:
    """Keeps the persisted and transient counters for the current turn."""

    def __init__(self, window: int, baseline: int = 0):
        self.window = window
        self.baseline = baseline
        self.turn = 0
        self._persisted = 0
        self._transient = 0
        self._authoritative = False

    def begin_turn(self, persisted_tokens: int) -> ContextBudget:
        """Start a new turn: transient counter back to zero, persisted recomputed."""
        self.turn += 1
        self._transient = 0
        self._persisted = max(persisted_tokens, 0)
        self._authoritative = False
        return self.current()

    def record_usage(self, response, fallback_tokens: Optional[int] = None) -> int:
        """
        Prefer the LLM's usage report for persisted tokens; estimate otherwise.

        Returns the persisted token count now in effect.
        """
        try:
            self._persisted = usage_from_response(response)
            self._authoritative = True
        except EstimationUnavailable as e:
            logger.info("%s; using heuristic estimate", e)
            if fallback_tokens is not None and not self._authoritative:
                self._persisted = max(fallback_tokens, 0)
        return self._persisted

    def set_persisted(self, tokens: int):
        self._persisted = max(tokens, 0)
        self._authoritative = False

    def add_transient(self, tokens: int) -> int:
        if tokens < 0:
            raise ValueError("transient tokens must be non-negative")
        self._transient += tokens
        return self._transient

    @property
    def persisted_input_tokens(self) -> int:
        return self._persisted

    @property
    def transient_tool_tokens(self) -> int:
        return self._transient

    @property
    def authoritative(self) -> bool:
        return self._authoritative

    def current(self) -> ContextBudget:
        return ContextBudget(
            window=self.window,
            baseline=self.baseline,
            persisted_input_tokens=self._persisted,
            transient_tool_tokens=self._transient,
        )
