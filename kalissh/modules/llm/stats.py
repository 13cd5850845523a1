import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass
class ModelCallStats:
    """Running counters for one model."""

    calls: int = 0
    successes: int = 0
    total_latency: float = 0.0
    last_error: Optional[str] = None
    last_called: Optional[float] = None

    @property
    def avg_response_time(self) -> float:
        """Mean latency in seconds over successful calls."""
        if not self.successes:
            return 0.0
        return self.total_latency / self.successes

    @property
    def success_rate(self) -> float:
        """Percentage of successful calls; 100 before the first call."""
        if not self.calls:
            return 100.0
        return 100.0 * self.successes / self.calls

    @property
    def status(self) -> str:
        if not self.calls or self.last_error is None:
            return "active"
        # A model that keeps failing is reported as errored
        return "error" if self.success_rate < 50.0 else "active"


class ModelStatsTracker:
    """Process-wide live statistics keyed by model id."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._stats: Dict[str, ModelCallStats] = {}

    def record_success(self, model_id: str, latency: float) -> None:
        stats = self._stats.setdefault(model_id, ModelCallStats())
        stats.calls += 1
        stats.successes += 1
        stats.total_latency += latency
        stats.last_error = None
        stats.last_called = self._clock()

    def record_failure(self, model_id: str, error: str) -> None:
        stats = self._stats.setdefault(model_id, ModelCallStats())
        stats.calls += 1
        stats.last_error = error
        stats.last_called = self._clock()

    def get(self, model_id: str) -> ModelCallStats:
        """Return a copy of the counters for a model (zeroed if never called)."""
        stats = self._stats.get(model_id)
        if stats is None:
            return ModelCallStats()
        return ModelCallStats(**vars(stats))
