"""
DistributionPlanner - liquidity shape and funding split per sub-position.

The planner only decides *what* to ask for: which range, which shape and what
share of the funding amount. Per-bin liquidity math is left to the position
service, which knows the protocol's own distribution formulas.

Chain default (20/60/20):
    1. leg A          edge-weighted-far   20%   opens leg A
    2. leg B base     edge-weighted-near  60%   opens leg B
    3. leg B top-up   edge-weighted-far   20%   second funding call on leg B
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from lpbot.core.errors import ValidationError
from lpbot.core.types import BinRange, StrategyKind
from lpbot.strategy.range_calculator import ChainRanges


class LiquidityShape(str, Enum):
    UNIFORM = "uniform"
    EDGE_WEIGHTED_NEAR = "edge_weighted_near"  # weight decays away from the active bin
    EDGE_WEIGHTED_FAR = "edge_weighted_far"    # weight grows away from the active bin


class FundingStep(str, Enum):
    OPEN = "open"            # creates the position
    ADD = "add_liquidity"    # funds an already opened position


@dataclass(frozen=True)
class AllocationSlice:
    """One funding call: range + shape + share of the total amount."""
    leg: str
    bin_range: BinRange
    shape: LiquidityShape
    amount_fraction: float
    amount: float
    step: FundingStep = FundingStep.OPEN


DEFAULT_CHAIN_SPLIT: Tuple[float, float, float] = (0.2, 0.6, 0.2)


class DistributionPlanner:
    """Builds ordered funding plans. Slices must be executed in list order."""

    def __init__(
        self,
        chain_split: Sequence[float] = DEFAULT_CHAIN_SPLIT,
        default_shape: LiquidityShape = LiquidityShape.UNIFORM,
    ) -> None:
        if len(chain_split) != 3:
            raise ValidationError("chain_split", "expected three fractions (leg A, leg B base, leg B top-up)")
        if any(f < 0 for f in chain_split) or abs(sum(chain_split) - 1.0) > 1e-9:
            raise ValidationError("chain_split", f"fractions must be >= 0 and sum to 1, got {tuple(chain_split)}")
        self.chain_split = tuple(float(f) for f in chain_split)
        self.default_shape = default_shape

    def plan_single(
        self,
        bin_range: BinRange,
        amount: float,
        shape: Optional[LiquidityShape] = None,
    ) -> List[AllocationSlice]:
        self._require_amount(amount)
        return [
            AllocationSlice(
                leg="single",
                bin_range=bin_range,
                shape=shape or self.default_shape,
                amount_fraction=1.0,
                amount=amount,
            )
        ]

    def plan_chain(self, ranges: ChainRanges, amount: float) -> List[AllocationSlice]:
        self._require_amount(amount)
        leg_a_frac, base_frac, top_frac = self.chain_split
        slices = [
            AllocationSlice("leg_a", ranges.leg_a, LiquidityShape.EDGE_WEIGHTED_FAR, leg_a_frac, amount * leg_a_frac),
            AllocationSlice("leg_b", ranges.leg_b, LiquidityShape.EDGE_WEIGHTED_NEAR, base_frac, amount * base_frac),
            AllocationSlice(
                "leg_b", ranges.leg_b, LiquidityShape.EDGE_WEIGHTED_FAR, top_frac, amount * top_frac, FundingStep.ADD
            ),
        ]
        # a zero-share slice would be a no-op transaction
        return [s for s in slices if s.amount_fraction > 0 or s.step == FundingStep.OPEN]

    def plan(self, kind: StrategyKind, ranges: List[BinRange], amount: float) -> List[AllocationSlice]:
        if kind == StrategyKind.CHAIN:
            if len(ranges) != 2:
                raise ValidationError("ranges", "chain strategies need exactly two ranges")
            return self.plan_chain(ChainRanges(leg_a=ranges[0], leg_b=ranges[1]), amount)
        if kind == StrategyKind.SIMPLE:
            if len(ranges) != 1:
                raise ValidationError("ranges", "simple strategies need exactly one range")
            return self.plan_single(ranges[0], amount)
        raise ValidationError("kind", f"unknown strategy kind {kind!r}")

    @staticmethod
    def _require_amount(amount: float) -> None:
        if not amount > 0:
            raise ValidationError("amount", f"funding amount must be > 0, got {amount}")
