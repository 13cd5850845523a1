from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List


@dataclass(frozen=True)
class HistoryEntry:
    """Snapshot of one completed command session."""

    timestamp: datetime
    intent: str
    generated_command: str
    output: str
    analysis: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class CommandHistory:
    """
    Append-only in-memory audit ledger.

    Entries are never mutated or removed. list() is a pure reversal of
    append order and never re-sorts by timestamp.
    """

    def __init__(self):
        self._entries: List[HistoryEntry] = []

    def append(self, entry: HistoryEntry) -> None:
        self._entries.append(entry)

    def list(self) -> List[HistoryEntry]:
        """All entries, most recent first."""
        return self._entries[::-1]

    def __len__(self) -> int:
        return len(self._entries)
