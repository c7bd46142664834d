"""Internal sync counters and timing statistics."""

from collections import deque
from dataclasses import dataclass, field, fields


class TimingStats:
    """Rolling window of durations in milliseconds."""

    def __init__(self, window_size: int = 100):
        self._samples: deque[float] = deque(maxlen=window_size)
        self._total = 0

    def record(self, ms: float):
        self._samples.append(ms)
        self._total += 1

    @property
    def count(self) -> int:
        """Samples recorded since creation (not just in the window)."""
        return self._total

    def avg_ms(self) -> float:
        if not self._samples:
            return 0.0
        return sum(self._samples) / len(self._samples)

    def max_ms(self) -> float:
        return max(self._samples, default=0.0)

    def reset(self):
        self._samples.clear()
        self._total = 0

    def __str__(self) -> str:
        if not self._samples:
            return "n=0"
        return f"n={len(self._samples)} avg={self.avg_ms():.3f}ms max={self.max_ms():.3f}ms"


@dataclass
class SyncStats:
    """Per-instrument synchronizer counters."""

    deltas_applied: int = 0
    deltas_skipped: int = 0
    deltas_buffered: int = 0
    buffer_resets: int = 0
    gaps: int = 0
    resyncs: int = 0
    stale_snapshots: int = 0
    snapshot_failures: int = 0
    disconnects: int = 0
    apply_latency: TimingStats = field(default_factory=TimingStats, repr=False)

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "apply_latency"}
        data["apply_latency"] = str(self.apply_latency)
        data["apply_latency_avg_ms"] = self.apply_latency.avg_ms()
        return data
