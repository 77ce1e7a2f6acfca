"""
Compaction configuration and model context window mappings.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

# Model → context window size (tokens)
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # Anthropic
    "claude-sonnet-4-5-20250929": 200_000,
    "claude-sonnet-4-20250514": 200_000,
    "claude-opus-4-20250514": 200_000,
    "claude-opus-4-5-20251101": 200_000,
    "claude-3-5-sonnet": 200_000,
    "claude-3-haiku": 200_000,
    # OpenAI compatible
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-4.1": 1_047_576,
    "o3": 200_000,
    # DeepSeek
    "deepseek-chat": 64_000,
    "deepseek-reasoner": 64_000,
    # GLM
    "glm-4": 128_000,
    "glm-4-flash": 128_000,
}

DEFAULT_CONTEXT_WINDOW = 128_000

DEFAULT_KEEP_ROLES = ("tool", "diff", "decision")

HEADROOM_POLICIES = ("abort", "best_effort")

# Room for the summary header, the dropped-results note and one error line
MIN_TOOL_TOTAL_TOKENS = 64


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_list(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class CompactionConfig:
    """Configuration for budgeting and compaction of one session."""

    # Context window (0 = auto-detect from model name)
    context_window: int = 0

    # Fixed per-request overhead not visible in history (tool schemas, framing)
    baseline_tokens: int = 12_000

    # Retention
    keep_roles: list[str] = field(default_factory=lambda: list(DEFAULT_KEEP_ROLES))
    keep_files: list[str] = field(default_factory=list)
    max_tail: int = 12
    dedupe_prefix_chars: int = 64

    # Headroom
    min_headroom: int = 2048
    headroom_policy: str = "abort"  # or "best_effort"

    # Auto-compact
    auto_compact: bool = True
    auto_compact_threshold: float = 0.85

    # Clustering
    max_clusters: int = 8
    cluster_similarity: float = 0.2
    max_cluster_tokens: int = 4000

    # Synthesis call timeout in seconds (0 = no timeout)
    synthesis_timeout: float = 120.0

    # Where session.json and archive/ live
    session_dir: str = ".compact"

    def __post_init__(self):
        if self.headroom_policy not in HEADROOM_POLICIES:
            raise ValueError(
                f"headroom_policy must be one of {HEADROOM_POLICIES}, "
                f"got {self.headroom_policy!r}"
            )
        if not 0.0 < self.auto_compact_threshold <= 1.0:
            raise ValueError("auto_compact_threshold must be in (0, 1]")
        if self.max_tail < 0 or self.min_headroom < 0:
            raise ValueError("max_tail and min_headroom must be non-negative")
        if self.max_clusters < 1:
            raise ValueError("max_clusters must be at least 1")

    @classmethod
    def from_env(cls) -> "CompactionConfig":
        """Load configuration from environment variables."""
        keep_roles = _env_list("COMPACT_KEEP_ROLES", ",".join(DEFAULT_KEEP_ROLES))
        return cls(
            context_window=int(os.getenv("COMPACT_CONTEXT_WINDOW", "0")),
            baseline_tokens=int(os.getenv("COMPACT_BASELINE_TOKENS", "12000")),
            keep_roles=keep_roles,
            keep_files=_env_list("COMPACT_KEEP_FILES"),
            max_tail=int(os.getenv("COMPACT_MAX_TAIL", "12")),
            dedupe_prefix_chars=int(os.getenv("COMPACT_DEDUPE_PREFIX_CHARS", "64")),
            min_headroom=int(os.getenv("COMPACT_MIN_HEADROOM", "2048")),
            headroom_policy=os.getenv("COMPACT_HEADROOM_POLICY", "abort"),
            auto_compact=_env_bool("COMPACT_AUTO", "true"),
            auto_compact_threshold=float(
                os.getenv("COMPACT_AUTO_THRESHOLD", "0.85")
            ),
            max_clusters=int(os.getenv("COMPACT_MAX_CLUSTERS", "8")),
            cluster_similarity=float(os.getenv("COMPACT_CLUSTER_SIMILARITY", "0.2")),
            max_cluster_tokens=int(os.getenv("COMPACT_MAX_CLUSTER_TOKENS", "4000")),
            synthesis_timeout=float(os.getenv("COMPACT_SYNTHESIS_TIMEOUT", "120")),
            session_dir=os.getenv("COMPACT_SESSION_DIR", ".compact"),
        )

    def get_context_window(self, model_name: str) -> int:
        """Resolve context window size from config or model name."""
        if self.context_window > 0:
            return self.context_window
        if not model_name:
            return DEFAULT_CONTEXT_WINDOW
        # Try exact match first, then prefix match
        if model_name in MODEL_CONTEXT_WINDOWS:
            return MODEL_CONTEXT_WINDOWS[model_name]
        for key, size in MODEL_CONTEXT_WINDOWS.items():
            if model_name.startswith(key) or key.startswith(model_name):
                return size
        return DEFAULT_CONTEXT_WINDOW


@dataclass
class CompactOptions:
    """Per-invocation overrides for /compact. None means use the config value."""

    keep_files: Optional[list[str]] = None
    keep_roles: Optional[list[str]] = None
    max_tail: Optional[int] = None
    min_headroom: Optional[int] = None

    def resolve_tail(self, config: CompactionConfig) -> int:
        return config.max_tail if self.max_tail is None else max(self.max_tail, 0)

    def resolve_headroom(self, config: CompactionConfig) -> int:
        if self.min_headroom is None:
            return config.min_headroom
        return max(self.min_headroom, 0)


@dataclass
class ToolBudgetConfig:
    """Limits for external tool payloads (reference tool: web search)."""

    enabled: bool = True
    max_results: int = 3
    max_tokens_per_result: int = 2048
    max_total_tokens: int = 8192
    window_tokens: int = 256  # excerpt window centred on query matches
    persist_raw_pages: bool = False
    persist_tool_summary: bool = True
    timeout: float = 30.0

    def __post_init__(self):
        if self.persist_raw_pages:
            raise ValueError("persist_raw_pages must remain false")
        if not self.persist_tool_summary:
            raise ValueError("persist_tool_summary must remain true")
        if min(self.max_results, self.max_tokens_per_result) < 1:
            raise ValueError("tool budget limits must be positive")
        if self.max_total_tokens < MIN_TOOL_TOTAL_TOKENS:
            raise ValueError(
                f"max_total_tokens must be at least {MIN_TOOL_TOTAL_TOKENS}"
            )
        if self.window_tokens < 1:
            raise ValueError("window_tokens must be positive")

    @classmethod
    def from_env(cls) -> "ToolBudgetConfig":
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("WEB_SEARCH_ENABLED", "true"),
            max_results=int(os.getenv("WEB_SEARCH_MAX_RESULTS", "3")),
            max_tokens_per_result=int(
                os.getenv("WEB_SEARCH_MAX_TOKENS_PER_RESULT", "2048")
            ),
            max_total_tokens=int(os.getenv("WEB_SEARCH_MAX_TOTAL_TOKENS", "8192")),
            window_tokens=int(os.getenv("WEB_SEARCH_WINDOW_TOKENS", "256")),
            persist_raw_pages=_env_bool("WEB_SEARCH_PERSIST_RAW_PAGES", "false"),
            persist_tool_summary=_env_bool("WEB_SEARCH_PERSIST_TOOL_SUMMARY", "true"),
            timeout=float(os.getenv("WEB_SEARCH_TIMEOUT", "30")),
        )
