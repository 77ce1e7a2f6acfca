"""
Context compaction and budgeting engine.

Keeps a long-running agent session inside its model's context window:

- Token estimation and dual budget accounting (persisted vs transient)
- Tool payload budgeting: raw tool output is condensed into a ToolSummary
  before anything reaches persisted history
- Retention (pins ∪ kept roles ∪ kept file globs), clustering of the rest,
  schema-constrained snapshot synthesis, headroom check, atomic replace
- Atomic snapshot persistence and write-once archives of pre-compaction history
"""

from .clustering import Cluster, cluster_messages
from .compactor import (
    CompactionContext,
    CompactionReport,
    Compactor,
    format_completion_message,
    transition,
)
from .config import CompactionConfig, CompactOptions, ToolBudgetConfig
from .errors import (
    CompactionError,
    CompactionInProgress,
    EstimationUnavailable,
    HeadroomUnattainable,
    StoreIOError,
    SynthesisError,
    SynthesisSchemaError,
    SynthesisTimeout,
    ToolPayloadParseError,
)
from .messages import History, Message, Role, from_langchain, to_langchain
from .retention import RetentionPolicy, rebuild_history, resolve_keep_set
from .session import CompactionSession
from .snapshot import FileInScope, SummaryV1, Symbol, snapshot_message
from .store import SnapshotStore
from .summarizer import SnapshotSynthesizer
from .token_budget import (
    ContextBudget,
    ContextBudgetTracker,
    estimate_message_tokens,
    estimate_tokens,
)
from .tool_budget import Citation, ToolPayloadBudgeter, ToolSummary

__all__ = [
    "Citation",
    "Cluster",
    "CompactOptions",
    "CompactionConfig",
    "CompactionContext",
    "CompactionError",
    "CompactionInProgress",
    "CompactionReport",
    "CompactionSession",
    "Compactor",
    "ContextBudget",
    "ContextBudgetTracker",
    "EstimationUnavailable",
    "FileInScope",
    "HeadroomUnattainable",
    "History",
    "Message",
    "RetentionPolicy",
    "Role",
    "SnapshotStore",
    "SnapshotSynthesizer",
    "StoreIOError",
    "SummaryV1",
    "Symbol",
    "SynthesisError",
    "SynthesisSchemaError",
    "SynthesisTimeout",
    "ToolBudgetConfig",
    "ToolPayloadBudgeter",
    "ToolPayloadParseError",
    "ToolSummary",
    "cluster_messages",
    "estimate_message_tokens",
    "estimate_tokens",
    "format_completion_message",
    "from_langchain",
    "rebuild_history",
    "resolve_keep_set",
    "snapshot_message",
    "to_langchain",
    "transition",
]
