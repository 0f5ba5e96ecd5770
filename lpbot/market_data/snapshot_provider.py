"""
Market snapshot access with a short per-pool TTL cache.

The cache is shared, read-mostly, by every instance that targets the same
pool. It is guarded by TTL rather than a lock: two instances may race and
both fetch, which only costs one redundant read. Any caller about to commit
capital passes force_refresh=True to bypass the cache.

A bounded rolling history per pool backs the 5/15/30 minute trend stats.
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from lpbot.core.errors import RetryableTransportError
from lpbot.core.interfaces import PoolDataService
from lpbot.core.types import MarketSnapshot

log = logging.getLogger("lpbot")

TREND_WINDOWS_MIN = (5, 15, 30)


class CachedSnapshot:
    """Last snapshot of one pool plus the local time it was fetched."""
    __slots__ = ("_snapshot", "_fetched_ms", "_ttl_ms")

    def __init__(self, ttl_ms: int) -> None:
        self._snapshot: Optional[MarketSnapshot] = None
        self._fetched_ms: int = 0
        self._ttl_ms = ttl_ms

    def get(self, now_ms: int) -> Optional[MarketSnapshot]:
        """Return the cached snapshot if still within TTL, else None."""
        if self._snapshot is not None and (now_ms - self._fetched_ms) < self._ttl_ms:
            return self._snapshot
        return None

    def set(self, snapshot: MarketSnapshot, now_ms: int) -> None:
        self._snapshot = snapshot
        self._fetched_ms = now_ms

    def get_unchecked(self) -> Optional[MarketSnapshot]:
        """Last known snapshot regardless of age."""
        return self._snapshot

    def age_ms(self, now_ms: int) -> int:
        if self._fetched_ms == 0:
            return 0
        return now_ms - self._fetched_ms


@dataclass(frozen=True)
class WindowStats:
    """Trend statistics over one rolling window."""
    window_min: int
    samples: int
    first_bin: int
    last_bin: int
    min_bin: int
    max_bin: int
    first_price: float
    last_price: float
    mean_price: float

    @property
    def bin_change(self) -> int:
        return self.last_bin - self.first_bin

    @property
    def price_change_pct(self) -> float:
        if self.first_price <= 0:
            return 0.0
        return (self.last_price - self.first_price) / self.first_price * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window_min": self.window_min,
            "samples": self.samples,
            "bin_change": self.bin_change,
            "min_bin": self.min_bin,
            "max_bin": self.max_bin,
            "price_change_pct": self.price_change_pct,
            "mean_price": self.mean_price,
        }


class MarketSnapshotProvider:
    """
    Cached active-bin/price reads.

    Usage:
        provider = MarketSnapshotProvider(pool_data, ttl_ms=5000)
        snap = await provider.get_snapshot(pool)                       # may be cached
        snap = await provider.get_snapshot(pool, force_refresh=True)   # before opening positions
        stats = provider.trend(pool)                                   # {5: WindowStats, 15: ..., 30: ...}
    """

    def __init__(
        self,
        pool_data: PoolDataService,
        ttl_ms: int = 5000,
        history_minutes: int = max(TREND_WINDOWS_MIN),
        max_history: int = 2000,
        clock: Optional[Callable[[], int]] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._pool_data = pool_data
        self._ttl_ms = ttl_ms
        self._history_ms = history_minutes * 60_000
        self._max_history = max_history
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._log_event = log_event or self._default_log
        self._cache: Dict[str, CachedSnapshot] = {}
        self._history: Dict[str, Deque[MarketSnapshot]] = {}
        self._stats = {"hits": 0, "misses": 0, "forced": 0}

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(json.dumps({"event": event, **kwargs}))

    async def get_snapshot(self, pool: str, force_refresh: bool = False) -> MarketSnapshot:
        now = self._clock()
        entry = self._cache.get(pool)
        if entry is None:
            entry = CachedSnapshot(self._ttl_ms)
            self._cache[pool] = entry

        if not force_refresh:
            cached = entry.get(now)
            if cached is not None:
                self._stats["hits"] += 1
                return cached
            self._stats["misses"] += 1
        else:
            self._stats["forced"] += 1

        raw = await self._pool_data.get_active_bin_and_price(pool, force_refresh=force_refresh)
        snapshot = self._parse(pool, raw, self._clock())
        entry.set(snapshot, snapshot.timestamp_ms)
        self._record(pool, snapshot)
        self._log_event(
            "snapshot_fetched",
            pool=pool,
            active_bin=snapshot.active_bin,
            price=snapshot.price,
            forced=force_refresh,
        )
        return snapshot

    @staticmethod
    def _parse(pool: str, raw: Dict[str, Any], ts_ms: int) -> MarketSnapshot:
        try:
            active_bin = raw["active_bin"]
            price = float(raw["price"])
        except (KeyError, TypeError, ValueError) as exc:
            raise RetryableTransportError(f"malformed pool data for {pool}: {raw!r}") from exc
        if isinstance(active_bin, bool) or not float(active_bin).is_integer():
            raise RetryableTransportError(f"non-integral active bin for {pool}: {active_bin!r}")
        if price <= 0:
            raise RetryableTransportError(f"non-positive price for {pool}: {price}")
        return MarketSnapshot(active_bin=int(active_bin), price=price, timestamp_ms=ts_ms)

    def _record(self, pool: str, snapshot: MarketSnapshot) -> None:
        history = self._history.get(pool)
        if history is None:
            history = deque(maxlen=self._max_history)
            self._history[pool] = history
        history.append(snapshot)
        cutoff = snapshot.timestamp_ms - self._history_ms
        while history and history[0].timestamp_ms < cutoff:
            history.popleft()

    def invalidate(self, pool: str) -> None:
        """Drop the cached entry so the next read goes to the pool service."""
        self._cache.pop(pool, None)

    def last_known(self, pool: str) -> Optional[MarketSnapshot]:
        entry = self._cache.get(pool)
        return entry.get_unchecked() if entry else None

    def history(self, pool: str, minutes: Optional[int] = None) -> List[MarketSnapshot]:
        snaps = list(self._history.get(pool, ()))
        if minutes is None or not snaps:
            return snaps
        cutoff = snaps[-1].timestamp_ms - minutes * 60_000
        return [s for s in snaps if s.timestamp_ms >= cutoff]

    def window_stats(self, pool: str, minutes: int) -> Optional[WindowStats]:
        snaps = self.history(pool, minutes)
        if not snaps:
            return None
        bins = [s.active_bin for s in snaps]
        prices = [s.price for s in snaps]
        return WindowStats(
            window_min=minutes,
            samples=len(snaps),
            first_bin=bins[0],
            last_bin=bins[-1],
            min_bin=min(bins),
            max_bin=max(bins),
            first_price=prices[0],
            last_price=prices[-1],
            mean_price=sum(prices) / len(prices),
        )

    def trend(self, pool: str) -> Dict[int, WindowStats]:
        out: Dict[int, WindowStats] = {}
        for minutes in TREND_WINDOWS_MIN:
            stats = self.window_stats(pool, minutes)
            if stats is not None:
                out[minutes] = stats
        return out

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "pools": len(self._cache)}
