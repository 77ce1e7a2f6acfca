"""
Clustering engine for summarizable (non-kept) messages.

Strategy:
  - Walk messages in order (temporal adjacency).
  - A user message opens a new cluster when its salient terms share little
    with the running cluster (Jaccard below ``similarity``), and any message
    opens one when the running cluster would exceed ``max_cluster_tokens``.
  - While there are more than ``max_clusters`` clusters, merge the most
    similar adjacent pair (oldest pair on ties).

Every message lands in exactly one cluster and order is preserved.
"""

import re
from dataclasses import dataclass
from typing import Iterable

from .messages import Message, Role

# Identifiers, paths and words of 3+ chars
_TERM_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_./-]{2,}")

_STOPWORDS = frozenset(
    """
    the and for with that this from have has had are was were will would
    should could can not but you your yours our ours they them their there
    here what when where which who why how into onto about then than also
    just like some any all each more most other such only own same very
    let lets please thanks okay yes now get got use used using make made
    """.split()
)

# Per-message cap when rendering a cluster for the synthesis prompt
MAX_MESSAGE_CHARS = 2000


def salient_terms(text: str) -> frozenset:
    terms = set()
    for raw in _TERM_RE.findall(text or ""):
        term = raw.strip("./-").lower()
        if len(term) >= 3 and term not in _STOPWORDS:
            terms.add(term)
    return frozenset(terms)


def jaccard(a: frozenset, b: frozenset) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


@dataclass(frozen=True)
class Cluster:
    index: int
    messages: tuple
    terms: frozenset

    @property
    def tokens(self) -> int:
        return sum(m.tokens for m in self.messages)

    @property
    def ids(self) -> list[str]:
        return [m.id for m in self.messages]

    def to_text(self) -> str:
        lines = [f"## Cluster {self.index + 1}"]
        for msg in self.messages:
            content = msg.content
            if len(content) > MAX_MESSAGE_CHARS:
                content = content[:MAX_MESSAGE_CHARS] + "..."
            lines.append(f"{msg.role.value}: {content}")
        return "\n".join(lines)


def _merge(a: Cluster, b: Cluster) -> Cluster:
    return Cluster(index=a.index, messages=a.messages + b.messages, terms=a.terms | b.terms)


def cluster_messages(
    messages: Iterable[Message],
    max_clusters: int = 8,
    similarity: float = 0.2,
    max_cluster_tokens: int = 4000,
) -> list[Cluster]:
    """Partition messages into at most ``max_clusters`` ordered clusters."""
    groups: list[list[Message]] = []
    group_terms: list[set] = []
    group_tokens: list[int] = []

    for msg in messages:
        terms = salient_terms(msg.content)
        if groups:
            topic_shift = (
                msg.role is Role.USER
                and jaccard(frozenset(group_terms[-1]), terms) < similarity
            )
            too_big = group_tokens[-1] + msg.tokens > max_cluster_tokens
            if not topic_shift and not too_big:
                groups[-1].append(msg)
                group_terms[-1] |= terms
                group_tokens[-1] += msg.tokens
                continue
        groups.append([msg])
        group_terms.append(set(terms))
        group_tokens.append(msg.tokens)

    clusters = [
        Cluster(index=i, messages=tuple(group), terms=frozenset(terms))
        for i, (group, terms) in enumerate(zip(groups, group_terms))
    ]

    limit = max(max_clusters, 1)
    while len(clusters) > limit:
        best = 0
        best_score = -1.0
        for i in range(len(clusters) - 1):
            score = jaccard(clusters[i].terms, clusters[i + 1].terms)
            if score > best_score:
                best, best_score = i, score
        clusters[best : best + 2] = [_merge(clusters[best], clusters[best + 1])]

    return [
        Cluster(index=i, messages=c.messages, terms=c.terms)
        for i, c in enumerate(clusters)
    ]
