"""
Orchestrator Module - Black Box Interface

Purpose: Answer prompts with a panel of models
Interface: Orchestrator.execute_mode(), ResultCache
Hidden: Fan-out, response selection, validation parsing, cache keys

Can be replaced with any strategy that returns an OrchestrationResult.
"""

from .cache import CacheEntry, ResultCache, fingerprint
from .orchestrator import (
    DEGRADED_CONTENT,
    ExecutionMode,
    OrchestrationResult,
    Orchestrator,
    ValidationVerdict,
    parse_verdict,
    select_best_response,
)

__all__ = [
    "CacheEntry",
    "DEGRADED_CONTENT",
    "ExecutionMode",
    "OrchestrationResult",
    "Orchestrator",
    "ResultCache",
    "ValidationVerdict",
    "fingerprint",
    "parse_verdict",
    "select_best_response",
]
