"""
Tool payload budgeter.

Raw tool output (reference: web search results) never enters persisted
history. It is shaped into a ToolSummary:

  1. strip markup, keep visible text
  2. drop boilerplate lines
  3. excerpt windows around query-term matches (overlaps merged)
  4. dedupe by canonical URL, first occurrence wins
  5. one bullet and one citation per surviving source
  6. drop lowest match-density bullets until under max_total_tokens

Steps are deterministic and keep the backend's result order. Raw
intermediates only go to the diagnostics logger / callback.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .condenser import (
    canonical_url,
    extract_windows,
    html_to_text,
    query_terms,
    strip_boilerplate,
)
from .config import ToolBudgetConfig
from .errors import ToolPayloadParseError
from .messages import Message, Role
from .token_budget import CHARS_PER_TOKEN, estimate_tokens

logger = logging.getLogger(__name__)
diagnostics_logger = logging.getLogger(__name__ + ".diagnostics")

NOTE_CHARS = 160


@dataclass(frozen=True)
class Citation:
    title: str
    url: str
    note: str = ""


@dataclass
class ToolSummary:
    """The only tool artifact allowed into persisted history."""

    tool: str
    query: str = ""
    bullets: list[str] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)
    token_estimate: int = 0
    truncated: int = 0
    errors: list[str] = field(default_factory=list)

    def to_text(self) -> str:
        lines = [f"[{self.tool}] {self.query}".rstrip()]
        lines.extend(f"- {bullet}" for bullet in self.bullets)
        if self.citations:
            lines.append("Sources:")
            lines.extend(
                f"[{i}] {c.title} <{c.url}>" for i, c in enumerate(self.citations, 1)
            )
        if self.truncated:
            lines.append(f"({self.truncated} result(s) dropped to fit the token budget)")
        for error in self.errors:
            lines.append(f"(error: {error})")
        return "\n".join(lines)

    def refresh_estimate(self) -> int:
        self.token_estimate = estimate_tokens(self.to_text())
        return self.token_estimate

    def to_message(self, provider_id: Optional[str] = None) -> Message:
        return Message.create(Role.TOOL, self.to_text(), provider_id=provider_id)


@dataclass(frozen=True)
class _Source:
    title: str
    url: str
    text: str


@dataclass
class _Bullet:
    source: _Source
    text: str
    density: float
    order: int


def _parse_results(results) -> list[_Source]:
    """Normalize backend output; anything that is not text is a parse error."""
    if isinstance(results, dict):
        results = results.get("results", None)
    if not isinstance(results, (list, tuple)):
        raise ToolPayloadParseError(f"expected a list of results, got {type(results).__name__}")
    sources = []
    for i, item in enumerate(results):
        if isinstance(item, str):
            sources.append(_Source(title=f"Result {i + 1}", url="", text=item))
            continue
        if not isinstance(item, dict):
            raise ToolPayloadParseError(f"result {i} is {type(item).__name__}, not an object")
        raw = item.get("content") or item.get("raw_content") or item.get("snippet") or ""
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ToolPayloadParseError(f"result {i} is not valid UTF-8 text") from e
        if not isinstance(raw, str):
            raise ToolPayloadParseError(f"result {i} content is not text")
        url = str(item.get("url") or item.get("link") or "")
        title = str(item.get("title") or url or f"Result {i + 1}")
        sources.append(_Source(title=title.strip(), url=url.strip(), text=raw))
    return sources


def _first_sentence(text: str) -> str:
    for sep in (". ", "\n"):
        head, found, _ = text.partition(sep)
        if found:
            text = head + ("." if sep == ". " else "")
            break
    return text[:NOTE_CHARS].strip()


class ToolPayloadBudgeter:
    """Caps, condenses and deduplicates raw tool output into a ToolSummary."""

    def __init__(
        self,
        config: Optional[ToolBudgetConfig] = None,
        diagnostics: Optional[Callable[[str, str], None]] = None,
    ):
        self.config = config or ToolBudgetConfig()
        self._diagnostics = diagnostics

    def _diag(self, stage: str, payload: str):
        diagnostics_logger.debug("%s: %s", stage, payload)
        if self._diagnostics is not None:
            self._diagnostics(stage, payload)

    def empty(self, tool: str, query: str, error: Optional[str] = None) -> ToolSummary:
        summary = ToolSummary(tool=tool, query=query, errors=[error] if error else [])
        summary.refresh_estimate()
        return summary

    def budget(self, tool: str, query: str, results) -> ToolSummary:
        """Shape raw results into a ToolSummary. Never raises on bad payloads."""
        try:
            sources = _parse_results(results)
        except ToolPayloadParseError as e:
            logger.warning("Skipping %s output: %s", tool, e.message)
            return self.empty(tool, query, e.message)

        # Dedupe first so duplicates never take a result slot
        unique = []
        seen = set()
        errors: list[str] = []
        for source in sources:
            if not source.url:
                key = f"#{len(unique)}:{source.title}"
            else:
                try:
                    key = canonical_url(source.url)
                except ValueError as e:
                    logger.warning("Malformed result URL %r: %s", source.url, e)
                    errors.append(f"malformed url {source.url}")
                    key = source.url
            if key in seen:
                self._diag("duplicate", source.url)
                continue
            seen.add(key)
            unique.append(source)
        unique = unique[: self.config.max_results]

        terms = query_terms(query)
        cap_chars = self.config.max_tokens_per_result * CHARS_PER_TOKEN
        bullets: list[_Bullet] = []
        for order, source in enumerate(unique):
            self._diag("raw", source.text)
            try:
                visible = html_to_text(source.text)
            except Exception as e:  # HTMLParser on hostile input
                logger.warning("Could not parse result %s: %s", source.url, e)
                errors.append(f"unparseable result {source.url or order + 1}")
                continue
            clean = strip_boilerplate(visible)
            self._diag("visible", clean)
            excerpt = extract_windows(
                clean,
                terms,
                window_tokens=self.config.window_tokens,
                max_tokens=self.config.max_tokens_per_result,
            )
            if not excerpt.text:
                continue
            prefix = f"{source.title}: "
            body = excerpt.text[: max(cap_chars - len(prefix), 0)]
            bullets.append(
                _Bullet(source=source, text=prefix + body, density=excerpt.density, order=order)
            )

        summary = self._assemble(tool, query, bullets, errors)
        dropped = 0
        while summary.token_estimate > self.config.max_total_tokens and bullets:
            victim = min(bullets, key=lambda b: (b.density, -b.order))
            bullets.remove(victim)
            dropped += 1
            summary = self._assemble(tool, query, bullets, errors, dropped)

        if summary.token_estimate > self.config.max_total_tokens:
            # Header alone is over the cap; cut the query text.
            limit = self.config.max_total_tokens * CHARS_PER_TOKEN
            summary.query = summary.query[: max(limit - len(tool) - 200, 0)]
            summary.errors = [e[:80] for e in summary.errors[:1]]
            summary.refresh_estimate()

        if dropped:
            logger.info(
                "%s summary over budget: dropped %d of %d results",
                tool, dropped, dropped + len(bullets),
            )
        return summary

    def _assemble(self, tool, query, bullets, errors, dropped: int = 0) -> ToolSummary:
        summary = ToolSummary(
            tool=tool,
            query=query,
            bullets=[b.text for b in bullets],
            citations=[
                Citation(
                    title=b.source.title,
                    url=b.source.url,
                    note=_first_sentence(b.text[len(b.source.title) + 2:]),
                )
                for b in bullets
            ],
            truncated=dropped,
            errors=list(errors),
        )
        summary.refresh_estimate()
        return summary
