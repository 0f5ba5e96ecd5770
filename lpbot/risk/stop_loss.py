"""
StopLossEngine - pure stop-loss decision function.

evaluate(snapshot, position_state) -> StopLossDecision

No hidden state: the only time-dependent input, when the position first went
below the safety threshold, is carried in PositionState and advanced by the
caller with `track_below_threshold`. Identical inputs always produce an
identical decision.

Trigger rule:
    active-bin position % < safety threshold
    for longer than the observation window
    and estimated loss > loss threshold
        -> CLOSE_AND_REBUILD while stop-loss rebuilds remain
        -> CLOSE with HIGH urgency once none remain

PnL is valued in Y at the pool's own price so it matches on-chain settlement.
Confidence and risk score come from the weights in StopLossSettings, which is
a tunable policy table rather than fixed law.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

from lpbot.config.strategy_config import StopLossSettings
from lpbot.core.types import MarketSnapshot, Position


class StopLossAction(str, Enum):
    HOLD = "HOLD"
    CLOSE = "CLOSE"
    CLOSE_AND_REBUILD = "CLOSE_AND_REBUILD"


class Urgency(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(frozen=True)
class PositionState:
    """Aggregated view of an instance's positions, as input to the decision."""
    lower_bin: int
    upper_bin: int
    initial_investment_y: float
    token_x_amount: float
    token_y_amount: float
    accrued_fee_x: float = 0.0
    accrued_fee_y: float = 0.0
    stop_loss_remaining: int = 0
    below_threshold_since_ms: Optional[int] = None

    @classmethod
    def from_positions(
        cls,
        positions: Iterable[Position],
        initial_investment_y: float,
        stop_loss_remaining: int,
        below_threshold_since_ms: Optional[int] = None,
    ) -> "PositionState":
        items = list(positions)
        if not items:
            raise ValueError("at least one position required")
        return cls(
            lower_bin=min(p.lower_bin for p in items),
            upper_bin=max(p.upper_bin for p in items),
            initial_investment_y=initial_investment_y,
            token_x_amount=sum(p.token_x_amount for p in items),
            token_y_amount=sum(p.token_y_amount for p in items),
            accrued_fee_x=sum(p.accrued_fee_x for p in items),
            accrued_fee_y=sum(p.accrued_fee_y for p in items),
            stop_loss_remaining=stop_loss_remaining,
            below_threshold_since_ms=below_threshold_since_ms,
        )


@dataclass(frozen=True)
class StopLossDecision:
    action: StopLossAction
    confidence: float  # [0, 1]
    risk_score: float  # [0, 100]
    urgency: Urgency
    active_bin_position_pct: float
    pnl_pct: float
    reasoning: Tuple[str, ...] = field(default_factory=tuple)
    evaluated_at_ms: int = 0

    @property
    def triggered(self) -> bool:
        return self.action != StopLossAction.HOLD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "confidence": self.confidence,
            "risk_score": self.risk_score,
            "urgency": self.urgency.value,
            "active_bin_position_pct": self.active_bin_position_pct,
            "pnl_pct": self.pnl_pct,
            "reasoning": list(self.reasoning),
            "evaluated_at_ms": self.evaluated_at_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StopLossDecision":
        return cls(
            action=StopLossAction(data["action"]),
            confidence=float(data["confidence"]),
            risk_score=float(data["risk_score"]),
            urgency=Urgency(data["urgency"]),
            active_bin_position_pct=float(data["active_bin_position_pct"]),
            pnl_pct=float(data["pnl_pct"]),
            reasoning=tuple(data.get("reasoning", ())),
            evaluated_at_ms=int(data.get("evaluated_at_ms", 0)),
        )


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def active_bin_position_pct(active_bin: int, lower_bin: int, upper_bin: int) -> float:
    """Where the active bin sits in [lower, upper], 0-100, clamped. Degenerate ranges give 50."""
    width = upper_bin - lower_bin
    if width <= 0:
        return 50.0
    return _clamp((active_bin - lower_bin) / width * 100.0, 0.0, 100.0)


def estimate_pnl_pct(state: PositionState, price: float) -> float:
    """Current value (liquidity + fees, in Y at pool price) vs. initial investment, in percent."""
    if state.initial_investment_y <= 0:
        return 0.0
    value = (state.token_x_amount + state.accrued_fee_x) * price + state.token_y_amount + state.accrued_fee_y
    return (value - state.initial_investment_y) / state.initial_investment_y * 100.0


def track_below_threshold(
    since_ms: Optional[int],
    position_pct: float,
    now_ms: int,
    safety_threshold_pct: float,
) -> Optional[int]:
    """Advance the below-threshold timestamp for the next evaluation."""
    if position_pct < safety_threshold_pct:
        return since_ms if since_ms is not None else now_ms
    return None


class StopLossEngine:
    """Stateless; holds only its settings."""

    def __init__(self, settings: Optional[StopLossSettings] = None) -> None:
        self.settings = settings or StopLossSettings()

    def evaluate(self, snapshot: MarketSnapshot, state: PositionState) -> StopLossDecision:
        s = self.settings
        now = snapshot.timestamp_ms
        pct = active_bin_position_pct(snapshot.active_bin, state.lower_bin, state.upper_bin)
        pnl = estimate_pnl_pct(state, snapshot.price)
        loss = max(0.0, -pnl)

        below = pct < s.safety_threshold_pct
        below_for_ms = now - state.below_threshold_since_ms if below and state.below_threshold_since_ms is not None else 0
        window_ms = s.observation_window_sec * 1000.0
        window_elapsed = below and state.below_threshold_since_ms is not None and below_for_ms > window_ms
        loss_exceeded = loss > s.loss_threshold_pct

        safety_sub = _clamp((s.safety_threshold_pct - pct) / s.safety_threshold_pct, 0.0, 1.0) * 100.0
        loss_sub = _clamp(loss / (2.0 * s.loss_threshold_pct), 0.0, 1.0) * 100.0
        score = (s.safety_weight * safety_sub + s.loss_weight * loss_sub) / (s.safety_weight + s.loss_weight)

        liquidity_risk = 80.0 if pct <= s.safety_threshold_pct else 20.0
        loss_risk = min(100.0, loss * s.loss_risk_multiplier)
        risk_weights = s.liquidity_risk_weight + s.loss_risk_weight
        risk = (
            (s.liquidity_risk_weight * liquidity_risk + s.loss_risk_weight * loss_risk) / risk_weights
            if risk_weights > 0
            else 0.0
        )

        reasoning = [
            f"active bin {snapshot.active_bin} at {pct:.1f}% of range "
            f"[{state.lower_bin}, {state.upper_bin}] (safety threshold {s.safety_threshold_pct:.1f}%)",
            f"estimated PnL {pnl:+.2f}% at pool price {snapshot.price:g} (loss threshold {s.loss_threshold_pct:.2f}%)",
        ]
        if below:
            reasoning.append(
                f"below safety threshold for {below_for_ms / 1000:.0f}s "
                f"of {s.observation_window_sec:.0f}s observation window"
            )

        if window_elapsed and loss_exceeded and not s.enabled:
            action = StopLossAction.HOLD
            urgency = Urgency.LOW if risk < 60.0 else Urgency.MEDIUM
            confidence = 1.0 - score / 100.0
            reasoning.append("stop-loss condition met but stop-loss is disabled")
        elif window_elapsed and loss_exceeded:
            if state.stop_loss_remaining > 0:
                action = StopLossAction.CLOSE_AND_REBUILD
                urgency = self._urgency_for(risk)
                reasoning.append(f"stop-loss triggered, {state.stop_loss_remaining} rebuild(s) remaining")
            else:
                action = StopLossAction.CLOSE
                urgency = Urgency.HIGH
                reasoning.append("stop-loss triggered, no rebuilds remaining: full exit")
            confidence = score / 100.0
        else:
            action = StopLossAction.HOLD
            urgency = Urgency.LOW if risk < 60.0 else Urgency.MEDIUM
            confidence = 1.0 - score / 100.0
            if below and loss_exceeded:
                reasoning.append("loss threshold exceeded, waiting for observation window")
            elif window_elapsed:
                reasoning.append("observation window elapsed but loss within threshold")

        return StopLossDecision(
            action=action,
            confidence=round(_clamp(confidence, 0.0, 1.0), 6),
            risk_score=round(_clamp(risk, 0.0, 100.0), 4),
            urgency=urgency,
            active_bin_position_pct=pct,
            pnl_pct=pnl,
            reasoning=tuple(reasoning),
            evaluated_at_ms=now,
        )

    @staticmethod
    def _urgency_for(risk: float) -> Urgency:
        if risk >= 80.0:
            return Urgency.HIGH
        if risk >= 60.0:
            return Urgency.MEDIUM
        return Urgency.LOW
