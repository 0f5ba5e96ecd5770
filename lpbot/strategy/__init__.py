"""
Strategy package: range math, funding plans and rebuild heuristics.
"""

from lpbot.strategy.distribution_planner import (
    AllocationSlice,
    DistributionPlanner,
    FundingStep,
    LiquidityShape,
)
from lpbot.strategy.range_calculator import ChainRanges, RangeCalculator
from lpbot.strategy.recreation import (
    LossRecoveryMark,
    RecreationEngine,
    RecreationInputs,
    RecreationIntent,
    RecreationReason,
    VetoReason,
    profit_threshold_for,
)

__all__ = [
    "AllocationSlice",
    "DistributionPlanner",
    "FundingStep",
    "LiquidityShape",
    "ChainRanges",
    "RangeCalculator",
    "LossRecoveryMark",
    "RecreationEngine",
    "RecreationInputs",
    "RecreationIntent",
    "RecreationReason",
    "VetoReason",
    "profit_threshold_for",
]
