import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


def fingerprint(messages: List[Any], mode: str) -> str:
    """
    Deterministic cache key for a request.

    Same messages and mode always give the same key; key order inside each
    message does not matter.
    """
    canonical = json.dumps(messages, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    digest = hashlib.sha256()
    digest.update(canonical.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(mode.encode("utf-8"))
    return digest.hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    created_at: float


class ResultCache:
    def __init__(
        self,
        ttl_seconds: float = 600,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize result cache.

        Args:
            ttl_seconds: Age after which an entry is no longer served
            max_entries: Upper bound on stored entries (oldest evicted first)
            clock: Monotonic time source, injectable for tests
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def get(self, key: str) -> Optional[Any]:
        """Return the live value for key, evicting it if stale."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not self._is_live(entry):
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: Any) -> None:
        """Store value under key; last write wins."""
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(key=key, value=value, created_at=self._clock())
        self.sweep()
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted cache entry {evicted[:12]} (capacity {self.max_entries})")

    def sweep(self) -> int:
        """
        Drop every stale entry.

        Returns:
            Number of entries removed
        """
        stale = [key for key, entry in self._entries.items() if not self._is_live(entry)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def _is_live(self, entry: CacheEntry) -> bool:
        return (self._clock() - entry.created_at) < self.ttl_seconds
