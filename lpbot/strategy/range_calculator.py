"""
RangeCalculator - bin range computation for single and chain positions.

Pure calculation module: no I/O, no state. Given the active bin and a per
position bin count it returns inclusive [lower, upper] ranges.

Single position:
    below side  -> [active - N, active - 1]
    above side  -> [active + 1, active + N]

Chain position (two adjacent legs ending at the active bin):
    leg A -> [active - N + 1, active]
    leg B -> [A.lower - N, A.lower - 1]
    so A.lower == B.upper + 1 and the pair spans exactly 2N bins.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List

from lpbot.config.strategy_config import MAX_BIN_COUNT
from lpbot.core.errors import InvalidRangeError
from lpbot.core.types import BinRange, RangeSide, StrategyKind


@dataclass(frozen=True)
class ChainRanges:
    """Leg A holds the active bin; leg B sits directly below it."""
    leg_a: BinRange
    leg_b: BinRange

    @property
    def combined(self) -> BinRange:
        return BinRange(self.leg_b.lower, self.leg_a.upper)

    def as_list(self) -> List[BinRange]:
        return [self.leg_a, self.leg_b]


def _require_bin_id(active_bin: Any) -> int:
    if isinstance(active_bin, bool):
        raise InvalidRangeError("active_bin", f"must be an integer, got {active_bin!r}")
    if isinstance(active_bin, int):
        return active_bin
    if isinstance(active_bin, float) and active_bin.is_integer():
        return int(active_bin)
    raise InvalidRangeError("active_bin", f"must be an integer, got {active_bin!r}")


def _require_bin_count(bin_count: Any) -> int:
    if isinstance(bin_count, bool) or not isinstance(bin_count, int):
        raise InvalidRangeError("bin_count", f"must be an integer, got {bin_count!r}")
    if not 1 <= bin_count <= MAX_BIN_COUNT:
        raise InvalidRangeError("bin_count", f"must be within [1, {MAX_BIN_COUNT}], got {bin_count}")
    return bin_count


class RangeCalculator:
    """
    Stateless range math. Methods are static; the class exists so callers can
    inject an alternative in tests.
    """

    @staticmethod
    def compute_range(active_bin: int, bin_count: int, side: RangeSide) -> BinRange:
        """Range for a single position on one side of the active bin."""
        active = _require_bin_id(active_bin)
        n = _require_bin_count(bin_count)
        if side == RangeSide.BELOW:
            return BinRange(active - n, active - 1)
        if side == RangeSide.ABOVE:
            return BinRange(active + 1, active + n)
        raise InvalidRangeError("side", f"unknown side {side!r}")

    @staticmethod
    def compute_chain_ranges(active_bin: int, bin_count: int) -> ChainRanges:
        """Two contiguous, non-overlapping legs of bin_count bins each."""
        active = _require_bin_id(active_bin)
        n = _require_bin_count(bin_count)
        leg_a = BinRange(active - n + 1, active)
        leg_b = BinRange(leg_a.lower - n, leg_a.lower - 1)
        return ChainRanges(leg_a=leg_a, leg_b=leg_b)

    @classmethod
    def ranges_for(
        cls,
        kind: StrategyKind,
        active_bin: int,
        bin_count: int,
        side: RangeSide = RangeSide.BELOW,
    ) -> List[BinRange]:
        """Ranges for a strategy kind, in opening order."""
        if kind == StrategyKind.CHAIN:
            return cls.compute_chain_ranges(active_bin, bin_count).as_list()
        if kind == StrategyKind.SIMPLE:
            return [cls.compute_range(active_bin, bin_count, side)]
        raise InvalidRangeError("kind", f"unknown strategy kind {kind!r}")

    @staticmethod
    def combined_range(ranges: List[BinRange]) -> BinRange:
        """Envelope of a set of ranges (the pair's combined range for chains)."""
        if not ranges:
            raise InvalidRangeError("ranges", "at least one range required")
        return BinRange(min(r.lower for r in ranges), max(r.upper for r in ranges))
