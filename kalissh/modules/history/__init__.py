"""
History Module - Black Box Interface

Purpose: Audit trail of completed command sessions
Interface: append(), list()
Hidden: Storage layout

The ledger lives for the process lifetime only.
"""

from .history import CommandHistory, HistoryEntry

__all__ = ["CommandHistory", "HistoryEntry"]
