"""Profiler: summarize per-run kernel execution times."""

from __future__ import annotations

import statistics
from dataclasses import dataclass, field


@dataclass
class ProfileResult:
    """Per-run timings of the kernel, in milliseconds, measured with backend events."""
    per_run_ms: list[float] = field(default_factory=list)

    @property
    def iterations(self) -> int:
        return len(self.per_run_ms)

    @property
    def total_ms(self) -> float:
        return sum(self.per_run_ms)

    @property
    def mean_ms(self) -> float:
        return statistics.mean(self.per_run_ms) if self.per_run_ms else 0.0

    @property
    def min_ms(self) -> float:
        return min(self.per_run_ms, default=0.0)

    @property
    def max_ms(self) -> float:
        return max(self.per_run_ms, default=0.0)

    def summary(self) -> str:
        return (
            f"{self.iterations} runs: mean {self.mean_ms:.3f} ms, "
            f"min {self.min_ms:.3f} ms, max {self.max_ms:.3f} ms"
        )


def profile(timings: list[float | None]) -> ProfileResult:
    """Collect the timings of the runs that were timed."""
    return ProfileResult(per_run_ms=[t for t in timings if t is not None])
