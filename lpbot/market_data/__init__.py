"""
Market data package: cached pool snapshots and benchmark yield tracking.
"""

from lpbot.market_data.snapshot_provider import (
    CachedSnapshot,
    MarketSnapshotProvider,
    WindowStats,
)
from lpbot.market_data.yield_tracker import BenchmarkYieldRates, BenchmarkYieldTracker

__all__ = [
    "CachedSnapshot",
    "MarketSnapshotProvider",
    "WindowStats",
    "BenchmarkYieldRates",
    "BenchmarkYieldTracker",
]
