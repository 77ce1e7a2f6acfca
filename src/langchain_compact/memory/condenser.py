"""
Text condensing helpers for external tool payloads.

- html_to_text: visible text only (scripts, styles, nav chrome dropped)
- strip_boilerplate: drop navigation / footer / legal lines
- extract_windows: fixed-size excerpts centred on query-term matches,
  overlapping windows merged
- canonical_url: the identity used to deduplicate results
"""

import re
from dataclasses import dataclass
from html.parser import HTMLParser
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .token_budget import CHARS_PER_TOKEN, estimate_tokens

_SKIP_TAGS = {"script", "style", "head", "meta", "link", "noscript", "svg", "template"}
_CHROME_TAGS = {"nav", "footer", "header", "aside", "form"}
_BLOCK_TAGS = {
    "p", "div", "br", "li", "tr", "section", "article", "main",
    "h1", "h2", "h3", "h4", "h5", "h6", "pre", "blockquote", "table",
}

_BOILERPLATE_PATTERNS = [
    r"\ball rights reserved\b",
    r"^\s*(©|\(c\)|copyright\b)",
    r"\b(privacy policy|terms of (service|use)|cookie (policy|settings|preferences))\b",
    r"\b(we use cookies|accept (all )?cookies)\b",
    r"^\s*(skip to (main )?content|back to top|table of contents)\s*$",
    r"^\s*(sign in|log in|sign up|subscribe|newsletter|share this)\b.{0,40}$",
    r"^\s*(home|menu|search|next|previous|prev)\s*$",
    r"^(\s*[\w .&'-]{1,25}\s*\|){2,}",  # "Home | About | Contact"
    r"^\s*(advertisement|sponsored)\s*$",
]
_BOILERPLATE_RE = re.compile("|".join(_BOILERPLATE_PATTERNS), re.IGNORECASE)

_WORD_RE = re.compile(r"[A-Za-z0-9_][A-Za-z0-9_.+#-]*")

_QUERY_STOPWORDS = frozenset(
    "a an and are as at be by for from how in is it of on or the to what when where which who why with".split()
)

_TRACKING_PREFIXES = ("utm_",)
_TRACKING_PARAMS = frozenset({"fbclid", "gclid", "ref", "ref_src"})


class HTMLTextExtractor(HTMLParser):
    """Collects visible text, skipping non-content and page-chrome elements."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.text_parts = []
        self.skip_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in _SKIP_TAGS or tag in _CHROME_TAGS:
            self.skip_depth += 1
        elif tag in _BLOCK_TAGS:
            self.text_parts.append("\n")

    def handle_startendtag(self, tag, attrs):
        if tag == "br":
            self.text_parts.append("\n")

    def handle_endtag(self, tag):
        if tag in _SKIP_TAGS or tag in _CHROME_TAGS:
            self.skip_depth = max(self.skip_depth - 1, 0)
        elif tag in _BLOCK_TAGS:
            self.text_parts.append("\n")

    def handle_data(self, data):
        if not self.skip_depth:
            self.text_parts.append(data)

    def get_text(self) -> str:
        text = "".join(self.text_parts)
        text = re.sub(r"[ \t\r\f\v]+", " ", text)
        text = re.sub(r"\n\s*\n+", "\n\n", text)
        return "\n".join(line.strip() for line in text.splitlines()).strip()


def html_to_text(raw: str) -> str:
    """Visible text of an HTML (or plain text) document."""
    if "<" not in raw:
        return re.sub(r"[ \t]+", " ", raw).strip()
    parser = HTMLTextExtractor()
    parser.feed(raw)
    parser.close()
    return parser.get_text()


def strip_boilerplate(text: str) -> str:
    kept = [line for line in text.splitlines() if not _BOILERPLATE_RE.search(line)]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(kept)).strip()


def query_terms(query: str) -> list[str]:
    terms = []
    for word in _WORD_RE.findall(query.lower()):
        if word not in _QUERY_STOPWORDS and len(word) > 1 and word not in terms:
            terms.append(word)
    return terms


@dataclass(frozen=True)
class Excerpt:
    text: str
    matches: int

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.text)

    @property
    def density(self) -> float:
        """Query matches per 100 tokens of excerpt."""
        return 100.0 * self.matches / self.tokens if self.tokens else 0.0


def extract_windows(
    text: str,
    terms: list[str],
    window_tokens: int = 256,
    max_tokens: int = 2048,
) -> Excerpt:
    """
    Excerpts of ~window_tokens centred on each term match.

    Overlapping windows are merged; windows are taken in document order until
    ``max_tokens`` is reached. Without any match the leading window is used.
    """
    if not text:
        return Excerpt("", 0)
    window_chars = window_tokens * CHARS_PER_TOKEN
    budget_chars = max_tokens * CHARS_PER_TOKEN
    half = window_chars // 2

    positions = []
    if terms:
        pattern = re.compile(
            "|".join(r"(?<!\w)" + re.escape(t) + r"(?!\w)" for t in terms), re.IGNORECASE
        )
        positions = [m.start() for m in pattern.finditer(text)]

    if not positions:
        return Excerpt(text[: min(window_chars, budget_chars)].strip(), 0)

    spans: list[list[int]] = []
    for pos in positions:
        start = max(pos - half, 0)
        end = min(pos + half, len(text))
        if spans and start <= spans[-1][1]:
            spans[-1][1] = max(spans[-1][1], end)
        else:
            spans.append([start, end])

    pieces = []
    taken = []
    used = 0
    for start, end in spans:
        if used >= budget_chars:
            break
        end = min(end, start + budget_chars - used)
        pieces.append(text[start:end].strip())
        taken.append((start, end))
        used += end - start

    excerpt = " … ".join(p for p in pieces if p)
    matches = sum(1 for pos in positions if any(s <= pos < e for s, e in taken))
    return Excerpt(excerpt, matches)


def _is_tracking_param(key: str) -> bool:
    key = key.lower()
    return key in _TRACKING_PARAMS or key.startswith(_TRACKING_PREFIXES)


def canonical_url(url: str) -> str:
    """
    Lower-cased host without www, no fragment, no tracking params, no trailing slash.

    Raises ValueError for a URL urllib cannot split (bad port, broken IPv6 netloc).
    """
    parts = urlsplit(url.strip())
    port = parts.port
    host = (parts.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    if port and port not in (80, 443):
        host = f"{host}:{port}"
    path = parts.path.rstrip("/") or ""
    query = urlencode(
        [
            (k, v)
            for k, v in parse_qsl(parts.query, keep_blank_values=True)
            if not _is_tracking_param(k)
        ]
    )
    scheme = "https" if parts.scheme in ("http", "https") else parts.scheme.lower()
    return urlunsplit((scheme, host, path, query, ""))
