"""
Error taxonomy for the compaction engine.

CompactionError (base, carries the failing phase)
├── EstimationUnavailable: no authoritative usage report (absorbed, info log)
├── SynthesisError: the snapshot generation call failed
│   ├── SynthesisSchemaError: malformed snapshot JSON after the retry
│   └── SynthesisTimeout: the generation call exceeded its timeout
├── HeadroomUnattainable: min headroom not reachable even with tail(0)
├── StoreIOError: snapshot/archive write or read failed
├── ToolPayloadParseError: raw tool content is not text (absorbed)
└── CompactionInProgress: a run is already in flight for this session
"""

from typing import Optional


class CompactionError(Exception):
    """Base class. ``phase`` names the step that failed."""

    phase = "compaction"

    def __init__(self, message: str, phase: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if phase:
            self.phase = phase

    def __str__(self) -> str:
        return f"[{self.phase}] {self.message}"


class EstimationUnavailable(CompactionError):
    phase = "estimation"


class SynthesisError(CompactionError):
    phase = "synthesizing"


class SynthesisSchemaError(SynthesisError):
    pass


class SynthesisTimeout(SynthesisError):
    pass


class HeadroomUnattainable(CompactionError):
    """Raised with the report of the best attempt so callers can show it."""

    phase = "headroom_check"

    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report


class StoreIOError(CompactionError):
    phase = "store"

    def __init__(self, message: str, path=None):
        super().__init__(message)
        self.path = path


class ToolPayloadParseError(CompactionError):
    phase = "tool_payload"


class CompactionInProgress(CompactionError):
    phase = "compaction"
