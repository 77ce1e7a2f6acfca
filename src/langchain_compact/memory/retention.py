"""
Retention resolver: which messages survive a compaction verbatim.

keep-set = pins ∪ {role in kept roles} ∪ {mentions a path matching a kept glob}

Any match in the union is enough; there is no exclusion list. The keep-set
is a set; rebuild_history restores chronological order from the history.
"""

import fnmatch
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Iterable, Optional

from .config import DEFAULT_KEEP_ROLES, CompactionConfig, CompactOptions
from .messages import History, Message, Role

# Path-like tokens: something/with/slashes or name.ext
_PATH_RE = re.compile(
    r"(?<![\w@:/.-])"
    r"((?:[\w.-]+/)+[\w.-]+|[\w-][\w.-]*\.[A-Za-z0-9]{1,8})"
    r"(?![\w/-])"
)


@dataclass(frozen=True)
class RetentionPolicy:
    keep_roles: frozenset = field(default_factory=lambda: frozenset(DEFAULT_KEEP_ROLES))
    keep_files: tuple = ()

    def __post_init__(self):
        object.__setattr__(
            self, "keep_roles", frozenset(Role(r).value for r in self.keep_roles)
        )
        object.__setattr__(self, "keep_files", tuple(self.keep_files))

    @classmethod
    def from_config(cls, config: CompactionConfig) -> "RetentionPolicy":
        return cls(keep_roles=frozenset(config.keep_roles), keep_files=tuple(config.keep_files))

    def with_overrides(self, options: Optional[CompactOptions]) -> "RetentionPolicy":
        """Per-invocation overrides replace the configured value when given."""
        if options is None:
            return self
        return RetentionPolicy(
            keep_roles=(
                frozenset(options.keep_roles)
                if options.keep_roles is not None
                else self.keep_roles
            ),
            keep_files=(
                tuple(options.keep_files)
                if options.keep_files is not None
                else self.keep_files
            ),
        )


def extract_paths(text: str) -> list[str]:
    """File paths mentioned in a message, in order of appearance."""
    paths = []
    for match in _PATH_RE.finditer(text or ""):
        path = match.group(1).rstrip(".")
        if path.startswith("./"):
            path = path[2:]
        if path and path not in paths:
            paths.append(path)
    return paths


def matches_globs(path: str, globs: Iterable[str]) -> bool:
    name = PurePosixPath(path).name
    for pattern in globs:
        if fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(name, pattern):
            return True
        # "src/**/*.py" should also match "src/a.py"
        if "**/" in pattern and fnmatch.fnmatch(path, pattern.replace("**/", "")):
            return True
    return False


def resolve_keep_set(
    history: Iterable[Message],
    pins: Iterable[str],
    policy: RetentionPolicy,
) -> frozenset:
    """Ids of messages exempt from compaction. Snapshot messages never qualify."""
    messages = list(history)
    present = {m.id for m in messages}
    keep = {pin for pin in pins if pin in present}
    for msg in messages:
        if msg.is_snapshot:
            keep.discard(msg.id)
            continue
        if msg.role.value in policy.keep_roles:
            keep.add(msg.id)
        elif policy.keep_files and any(
            matches_globs(path, policy.keep_files) for path in extract_paths(msg.content)
        ):
            keep.add(msg.id)
    return frozenset(keep)


def select_tail(history: Iterable[Message], n: int) -> list[Message]:
    """The n most recent non-snapshot messages, oldest first."""
    if n <= 0:
        return []
    candidates = [m for m in history if not m.is_snapshot]
    return candidates[-n:]


def rebuild_history(
    history: History,
    keep_ids: Iterable[str],
    tail_ids: Iterable[str],
    snapshot_msg: Optional[Message] = None,
    pins: Iterable[str] = (),
    prefix_chars: int = 64,
) -> list[Message]:
    """
    [snapshot] + retained messages in original chronological order.

    Each message appears once by id. Keep-set members are always retained;
    a tail-only message is dropped when its role and first ``prefix_chars``
    characters match a keep-set message. Pinned messages are never dropped.
    Old snapshot messages are superseded.
    """
    keep = set(keep_ids)
    retained = keep | set(tail_ids)
    pinned = set(pins)
    keep_prefixes = {
        (m.role.value, m.content[:prefix_chars])
        for m in history
        if m.id in keep and not m.is_snapshot
    }

    result: list[Message] = []
    seen_ids: set = set()
    if snapshot_msg is not None:
        result.append(snapshot_msg)
        seen_ids.add(snapshot_msg.id)

    for msg in history:
        if msg.id not in retained or msg.is_snapshot or msg.id in seen_ids:
            continue
        if (
            msg.id not in keep
            and msg.id not in pinned
            and (msg.role.value, msg.content[:prefix_chars]) in keep_prefixes
        ):
            continue
        seen_ids.add(msg.id)
        result.append(msg)
    return result
