"""
Risk package: the stop-loss decision engine.
"""

from lpbot.risk.stop_loss import (
    PositionState,
    StopLossAction,
    StopLossDecision,
    StopLossEngine,
    Urgency,
    active_bin_position_pct,
    estimate_pnl_pct,
    track_below_threshold,
)

__all__ = [
    "PositionState",
    "StopLossAction",
    "StopLossDecision",
    "StopLossEngine",
    "Urgency",
    "active_bin_position_pct",
    "estimate_pnl_pct",
    "track_below_threshold",
]
