"""
Benchmark yield tracking.

The benchmark is a per-bin fee income rate: the position's five-minute fee
yield divided by how many bins the active bin sits from the range's upper
edge. It feeds the dynamic-profit recreation tiers and the recreation switch.

Rules:
- nothing is reported for the first 5 minutes of tracking
- leaving the range clears all samples (and reports nothing)
- an active bin at the upper edge (offset 0) reports all zeros
- 5/15/30 minute averages appear once 10/20/35 minutes have elapsed
- samples older than 75 minutes are discarded
- callers clear() the tracker after every rebuild
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional, Tuple

from lpbot.core.types import BinRange

MINUTE_MS = 60_000
RETENTION_MS = 75 * MINUTE_MS
WARMUP_MS = 5 * MINUTE_MS
YIELD_WINDOW_MS = 5 * MINUTE_MS

# average window (min) -> elapsed time (min) required before it is reported
AVERAGE_WINDOWS: Tuple[Tuple[int, int], ...] = ((5, 10), (15, 20), (30, 35))


@dataclass(frozen=True)
class BenchmarkYieldRates:
    """Benchmark values as fractions; multiply by 100 for percent."""
    current: float
    five_minute_yield_pct: float
    average_5m: Optional[float] = None
    average_15m: Optional[float] = None
    average_30m: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "five_minute_yield_pct": self.five_minute_yield_pct,
            "average_5m": self.average_5m,
            "average_15m": self.average_15m,
            "average_30m": self.average_30m,
        }


class BenchmarkYieldTracker:
    """One tracker per instance."""

    def __init__(self) -> None:
        self._started_ms: Optional[int] = None
        self._fee_samples: Deque[Tuple[int, float]] = deque()
        self._benchmarks: Deque[Tuple[int, float]] = deque()
        self._latest: Optional[BenchmarkYieldRates] = None

    @property
    def latest(self) -> Optional[BenchmarkYieldRates]:
        return self._latest

    def clear(self) -> None:
        self._started_ms = None
        self._fee_samples.clear()
        self._benchmarks.clear()
        self._latest = None

    def update(
        self,
        now_ms: int,
        active_bin: int,
        position_range: BinRange,
        fee_value_y: float,
        investment_y: float,
    ) -> Optional[BenchmarkYieldRates]:
        """Record one observation and return the current rates, if reportable."""
        if not position_range.contains(active_bin):
            self.clear()
            return None

        if self._started_ms is None:
            self._started_ms = now_ms
        self._fee_samples.append((now_ms, fee_value_y))
        self._evict(now_ms)

        elapsed = now_ms - self._started_ms
        if elapsed < WARMUP_MS or investment_y <= 0:
            self._latest = None
            return None

        bin_offset = abs(position_range.upper - active_bin)
        if bin_offset == 0:
            self._latest = BenchmarkYieldRates(0.0, 0.0, 0.0, 0.0, 0.0)
            return self._latest

        base_fee = self._fee_at(now_ms - YIELD_WINDOW_MS)
        five_min_pct = max(0.0, fee_value_y - base_fee) / investment_y * 100.0
        current = (five_min_pct / 100.0) / bin_offset
        self._benchmarks.append((now_ms, current))

        averages: Dict[int, Optional[float]] = {}
        for window_min, required_min in AVERAGE_WINDOWS:
            if elapsed >= required_min * MINUTE_MS:
                averages[window_min] = self._average_since(now_ms - window_min * MINUTE_MS)
            else:
                averages[window_min] = None

        self._latest = BenchmarkYieldRates(
            current=current,
            five_minute_yield_pct=five_min_pct,
            average_5m=averages[5],
            average_15m=averages[15],
            average_30m=averages[30],
        )
        return self._latest

    def _evict(self, now_ms: int) -> None:
        cutoff = now_ms - RETENTION_MS
        while self._fee_samples and self._fee_samples[0][0] < cutoff:
            self._fee_samples.popleft()
        while self._benchmarks and self._benchmarks[0][0] < cutoff:
            self._benchmarks.popleft()

    def _fee_at(self, ts_ms: int) -> float:
        """Fee value of the latest sample at or before ts_ms (earliest sample if none)."""
        value = self._fee_samples[0][1]
        for sample_ts, sample_value in self._fee_samples:
            if sample_ts > ts_ms:
                break
            value = sample_value
        return value

    def _average_since(self, since_ms: int) -> Optional[float]:
        values = [v for ts, v in self._benchmarks if ts >= since_ms]
        if not values:
            return None
        return sum(values) / len(values)
