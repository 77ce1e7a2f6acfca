"""
Snapshot synthesizer.

Turns clusters of summarizable messages (plus the prior snapshot, if any)
into a SummaryV1 with one schema-constrained LLM call. Parsing is strict;
a malformed reply is retried exactly once with a stronger instruction and
then fails closed with SynthesisSchemaError.
"""

import asyncio
import concurrent.futures
import json
import logging
import re
from datetime import datetime, timezone
from typing import Optional

from .errors import SynthesisError, SynthesisSchemaError, SynthesisTimeout
from .messages import content_text
from .snapshot import JSON_SCHEMA, SummaryV1

logger = logging.getLogger(__name__)

SNAPSHOT_SYSTEM_PROMPT = """You distill a coding-agent conversation into a structured snapshot.
Output JSON only: a single object matching this schema, no prose, no markdown.

Schema:
{schema}

Rules:
- "task" is one sentence describing what the user is trying to accomplish.
- Record decisions, constraints, open questions and remaining todo items.
- List files and symbols that matter for continuing the work.
- Keep only facts stated in the conversation. Do not invent.
- If a prior snapshot is given, fold it in; drop items that are resolved."""

RETRY_SYSTEM_PROMPT = """Your previous reply was rejected: {error}
Reply again with ONLY a JSON object. The first character must be {{ and the
last character must be }}. Use exactly these keys and types, nothing else:
{schema}"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n(.*)\n```$", re.DOTALL)


def _schema_text() -> str:
    return json.dumps(JSON_SCHEMA, indent=2)


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_snapshot(raw: str) -> SummaryV1:
    """Strict parse: a bare JSON object, optionally inside one ```json fence."""
    text = (raw or "").strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1).strip()
    if not text.startswith("{") or not text.endswith("}"):
        raise SynthesisSchemaError("reply is not a bare JSON object")
    return SummaryV1.from_json(text)


class SnapshotSynthesizer:
    """Produces SummaryV1 snapshots with a LangChain chat model."""

    def __init__(self, llm=None, timeout: Optional[float] = None):
        self._llm = llm
        self.timeout = timeout if timeout and timeout > 0 else None
        self.last_response = None

    def build_messages(
        self,
        clusters: list,
        prior: Optional[SummaryV1] = None,
        token_budget: Optional[int] = None,
        error: Optional[str] = None,
    ) -> list[dict]:
        system = SNAPSHOT_SYSTEM_PROMPT.format(schema=_schema_text())
        if token_budget:
            system += f"\n- Keep the JSON under roughly {token_budget} tokens."
        if error:
            system += "\n\n" + RETRY_SYSTEM_PROMPT.format(error=error, schema=_schema_text())

        parts = []
        if prior is not None:
            parts.append("# Prior snapshot\n" + prior.to_json())
        parts.append("# Conversation")
        parts.extend(cluster.to_text() for cluster in clusters)
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": "\n\n".join(parts)},
        ]

    def _invoke(self, messages: list[dict]):
        if self.timeout is None:
            return self._llm.invoke(messages)
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        future = executor.submit(self._llm.invoke, messages)
        try:
            return future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError as e:
            future.cancel()
            raise SynthesisTimeout(
                f"snapshot generation timed out after {self.timeout:g}s"
            ) from e
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    async def _ainvoke(self, messages: list[dict]):
        try:
            return await asyncio.wait_for(self._llm.ainvoke(messages), self.timeout)
        except asyncio.TimeoutError as e:
            raise SynthesisTimeout(
                f"snapshot generation timed out after {self.timeout:g}s"
            ) from e

    def _finish(self, raw: str, now: Optional[str]) -> SummaryV1:
        snapshot = parse_snapshot(raw)
        snapshot.last_compact_at = now or _utc_now()
        return snapshot

    def synthesize(
        self,
        clusters: list,
        prior: Optional[SummaryV1] = None,
        token_budget: Optional[int] = None,
        now: Optional[str] = None,
    ) -> SummaryV1:
        """Generate a snapshot; one retry on a schema failure, then fail closed."""
        if self._llm is None:
            raise SynthesisError("no LLM configured for snapshot synthesis")

        error = None
        for attempt in (1, 2):
            messages = self.build_messages(clusters, prior, token_budget, error)
            try:
                response = self._invoke(messages)
            except SynthesisError:
                raise
            except Exception as e:
                raise SynthesisError(f"snapshot generation failed: {e}") from e
            self.last_response = response
            raw = content_text(getattr(response, "content", response))
            try:
                return self._finish(raw, now)
            except SynthesisSchemaError as e:
                error = e.message
                logger.warning("Snapshot attempt %d rejected: %s", attempt, error)

        raise SynthesisSchemaError(
            f"snapshot JSON invalid after retry: {error}"
        )

    async def asynthesize(
        self,
        clusters: list,
        prior: Optional[SummaryV1] = None,
        token_budget: Optional[int] = None,
        now: Optional[str] = None,
    ) -> SummaryV1:
        """Async variant of synthesize(); cancellation propagates unchanged."""
        if self._llm is None:
            raise SynthesisError("no LLM configured for snapshot synthesis")

        error = None
        for attempt in (1, 2):
            messages = self.build_messages(clusters, prior, token_budget, error)
            try:
                response = await self._ainvoke(messages)
            except SynthesisError:
                raise
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise SynthesisError(f"snapshot generation failed: {e}") from e
            self.last_response = response
            raw = content_text(getattr(response, "content", response))
            try:
                return self._finish(raw, now)
            except SynthesisSchemaError as e:
                error = e.message
                logger.warning("Snapshot attempt %d rejected: %s", attempt, error)

        raise SynthesisSchemaError(
            f"snapshot JSON invalid after retry: {error}"
        )
