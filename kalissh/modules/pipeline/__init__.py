"""
Pipeline Module - Black Box Interface

Purpose: Drive one intent from generation through approval, execution and analysis
Interface: submit_intent(), submit_command(), approve(), reject(), cancel(), execute()
Hidden: State table, exclusivity slot, prompt construction

Depends only on the Orchestrator, RemoteChannel, CommandHistory and EventStream interfaces.
"""

from .pipeline import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    CommandPipeline,
    CommandSession,
    SessionState,
    extract_command,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATES",
    "CommandPipeline",
    "CommandSession",
    "SessionState",
    "extract_command",
]
