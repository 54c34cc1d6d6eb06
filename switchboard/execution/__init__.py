"""Speculative execution and response quality scoring."""

from __future__ import annotations

from switchboard.execution.quality import (
    calculate_consensus,
    extract_keywords,
    score_response_quality,
)
from switchboard.execution.speculative import (
    SpeculativeConfig,
    SpeculativeExecutor,
    SpeculativeOutcome,
    SpeculativeResult,
    candidates_from_decision,
    should_use_speculative,
)

__all__ = [
    "SpeculativeConfig",
    "SpeculativeExecutor",
    "SpeculativeOutcome",
    "SpeculativeResult",
    "calculate_consensus",
    "candidates_from_decision",
    "extract_keywords",
    "score_response_quality",
    "should_use_speculative",
]
