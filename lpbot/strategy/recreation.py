"""
RecreationEngine - rebuild heuristics for one strategy instance.

Heuristics, evaluated every tick in priority order (first match wins):

1. market opportunity  position % < threshold and unrealized profit > threshold
2. loss recovery       two-phase: mark when position % >= mark threshold while
                       showing a loss of at least the mark loss; while marked,
                       trigger once position % >= trigger threshold and profit
                       >= trigger profit. Dropping below the mark threshold
                       before triggering clears the mark.
3. dynamic profit      required profit scales with the 15-minute benchmark
                       yield, bucketed into tiers

A match can still be vetoed (nothing is rebuilt, the veto is reported):
    REBUILD_BUDGET_EXHAUSTED  no stop-loss rebuilds remain
    POSITION_TOO_LOW          position % under the global floor
    PRICE_CHECK_FAILED        price outside the configured recreation band
    DYNAMIC_SWITCH            15m benchmark yield under the switch threshold
    RECREATION_INTERVAL       last rebuild too recent

The engine only returns an intent. Closing, swapping and reopening are done
by the instance state machine through the RetryManager.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from lpbot.config.strategy_config import RecreationSettings
from lpbot.core.types import MarketSnapshot
from lpbot.market_data.yield_tracker import BenchmarkYieldRates

log = logging.getLogger("lpbot")


class RecreationReason(str, Enum):
    MARKET_OPPORTUNITY = "market_opportunity"
    LOSS_RECOVERY = "loss_recovery"
    DYNAMIC_PROFIT = "dynamic_profit"
    # set by the state machine, never by evaluate()
    OUT_OF_RANGE_TIMEOUT = "out_of_range_timeout"
    STOP_LOSS = "stop_loss"
    POSITION_MISSING = "position_missing"


class VetoReason(str, Enum):
    REBUILD_BUDGET_EXHAUSTED = "rebuild_budget_exhausted"
    POSITION_TOO_LOW = "position_too_low"
    PRICE_CHECK_FAILED = "price_check_failed"
    DYNAMIC_SWITCH = "dynamic_switch"
    RECREATION_INTERVAL = "recreation_interval"


HEURISTIC_CONFIDENCE: Dict[RecreationReason, float] = {
    RecreationReason.MARKET_OPPORTUNITY: 0.8,
    RecreationReason.LOSS_RECOVERY: 0.75,
    RecreationReason.DYNAMIC_PROFIT: 0.7,
}


@dataclass(frozen=True)
class RecreationInputs:
    snapshot: MarketSnapshot
    position_pct: float
    pnl_pct: float
    benchmark: Optional[BenchmarkYieldRates] = None
    rebuild_allowed: bool = True


@dataclass(frozen=True)
class RecreationIntent:
    should_recreate: bool
    reason: Optional[RecreationReason] = None
    close_existing: bool = False
    new_range_hint: Optional[int] = None  # active bin to build the new ranges around
    confidence: float = 0.0
    vetoed_by: Optional[VetoReason] = None
    reasoning: Tuple[str, ...] = field(default_factory=tuple)
    evaluated_at_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_recreate": self.should_recreate,
            "reason": self.reason.value if self.reason else None,
            "close_existing": self.close_existing,
            "new_range_hint": self.new_range_hint,
            "confidence": self.confidence,
            "vetoed_by": self.vetoed_by.value if self.vetoed_by else None,
            "reasoning": list(self.reasoning),
            "evaluated_at_ms": self.evaluated_at_ms,
        }


@dataclass
class LossRecoveryMark:
    marked: bool = False
    marked_at_ms: Optional[int] = None
    mark_position_pct: Optional[float] = None
    mark_loss_pct: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "marked": self.marked,
            "marked_at_ms": self.marked_at_ms,
            "mark_position_pct": self.mark_position_pct,
            "mark_loss_pct": self.mark_loss_pct,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LossRecoveryMark":
        if not data:
            return cls()
        return cls(
            marked=bool(data.get("marked", False)),
            marked_at_ms=data.get("marked_at_ms"),
            mark_position_pct=data.get("mark_position_pct"),
            mark_loss_pct=data.get("mark_loss_pct"),
        )


def profit_threshold_for(benchmark_pct: float, tiers: Tuple[Tuple[Optional[float], float], ...]) -> float:
    """Required profit % for a benchmark yield %. Tiers are (upper bound, threshold)."""
    for bound, threshold in tiers:
        if bound is None or benchmark_pct <= bound:
            return threshold
    return tiers[-1][1]


class RecreationEngine:
    """
    Per-instance engine. Holds the loss-recovery mark and the time of the
    last rebuild; both are exported into the instance record for persistence.
    """

    def __init__(
        self,
        instance_id: str,
        settings: Optional[RecreationSettings] = None,
        max_price: Optional[float] = None,
        min_price: Optional[float] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.instance_id = instance_id
        self.settings = settings or RecreationSettings()
        self.max_price = max_price
        self.min_price = min_price
        self._log_event = log_event or self._default_log
        self.mark = LossRecoveryMark()
        self.last_recreation_ms: Optional[int] = None

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, "instance_id": self.instance_id, **kwargs}))

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, inputs: RecreationInputs) -> RecreationIntent:
        s = self.settings
        now = inputs.snapshot.timestamp_ms
        pct = inputs.position_pct
        pnl = inputs.pnl_pct
        reasoning: List[str] = [f"position {pct:.1f}%, PnL {pnl:+.2f}%"]

        loss_recovery_ready = self._update_mark(pct, pnl, now, reasoning)

        reason: Optional[RecreationReason] = None
        if s.market_opportunity_enabled and pct < s.market_position_threshold and pnl > s.market_profit_threshold:
            reason = RecreationReason.MARKET_OPPORTUNITY
            reasoning.append(
                f"market opportunity: position < {s.market_position_threshold:.1f}% "
                f"and profit > {s.market_profit_threshold:.2f}%"
            )
        elif loss_recovery_ready:
            reason = RecreationReason.LOSS_RECOVERY
            reasoning.append(
                f"loss recovery: recovered to >= {s.trigger_position_threshold:.1f}% "
                f"with profit >= {s.trigger_profit_threshold:.2f}%"
            )
        else:
            reason = self._dynamic_profit(inputs, reasoning)

        if reason is None:
            return RecreationIntent(should_recreate=False, reasoning=tuple(reasoning), evaluated_at_ms=now)

        veto = self._veto(inputs, reasoning)
        if veto is not None:
            return RecreationIntent(
                should_recreate=False,
                reason=reason,
                vetoed_by=veto,
                reasoning=tuple(reasoning),
                evaluated_at_ms=now,
            )

        if reason == RecreationReason.LOSS_RECOVERY:
            self.mark = LossRecoveryMark()
        intent = RecreationIntent(
            should_recreate=True,
            reason=reason,
            close_existing=True,
            new_range_hint=inputs.snapshot.active_bin,
            confidence=HEURISTIC_CONFIDENCE[reason],
            reasoning=tuple(reasoning),
            evaluated_at_ms=now,
        )
        self._log_event("recreation_intent", reason=reason.value, position_pct=pct, pnl_pct=pnl)
        return intent

    def _update_mark(self, pct: float, pnl: float, now: int, reasoning: List[str]) -> bool:
        """Advance the loss-recovery mark. Returns True when the trigger condition holds."""
        s = self.settings
        if not s.loss_recovery_enabled:
            return False
        if self.mark.marked:
            if pct < s.mark_position_threshold:
                reasoning.append(
                    f"loss-recovery mark cleared: position fell below {s.mark_position_threshold:.1f}%"
                )
                self._log_event("loss_recovery_mark_cleared", position_pct=pct, pnl_pct=pnl)
                self.mark = LossRecoveryMark()
                return False
            return pct >= s.trigger_position_threshold and pnl >= s.trigger_profit_threshold
        if pct >= s.mark_position_threshold and pnl <= -s.mark_loss_threshold:
            self.mark = LossRecoveryMark(
                marked=True,
                marked_at_ms=now,
                mark_position_pct=pct,
                mark_loss_pct=-pnl,
            )
            reasoning.append(f"loss-recovery mark set at {pct:.1f}% with loss {-pnl:.2f}%")
            self._log_event("loss_recovery_marked", position_pct=pct, loss_pct=-pnl)
        return False

    def _dynamic_profit(self, inputs: RecreationInputs, reasoning: List[str]) -> Optional[RecreationReason]:
        s = self.settings
        if not s.dynamic_profit_enabled or inputs.benchmark is None:
            return None
        avg = inputs.benchmark.average_15m
        if avg is None or avg <= 0:
            return None
        benchmark_pct = avg * 100.0
        required = profit_threshold_for(benchmark_pct, s.profit_tiers)
        if inputs.position_pct <= s.dynamic_position_threshold and inputs.pnl_pct >= required:
            reasoning.append(
                f"dynamic profit: benchmark {benchmark_pct:.3f}% -> required profit {required:.2f}%"
            )
            return RecreationReason.DYNAMIC_PROFIT
        return None

    def _veto(self, inputs: RecreationInputs, reasoning: List[str]) -> Optional[VetoReason]:
        s = self.settings
        now = inputs.snapshot.timestamp_ms
        if not inputs.rebuild_allowed:
            reasoning.append("vetoed: rebuild budget exhausted")
            return VetoReason.REBUILD_BUDGET_EXHAUSTED
        if s.min_active_bin_position_threshold > 0 and inputs.position_pct < s.min_active_bin_position_threshold:
            reasoning.append(f"vetoed: position below floor {s.min_active_bin_position_threshold:.1f}%")
            return VetoReason.POSITION_TOO_LOW
        price_issue = self.check_price_bounds(inputs.snapshot.price)
        if price_issue is not None:
            reasoning.append(f"vetoed: {price_issue}")
            return VetoReason.PRICE_CHECK_FAILED
        if s.benchmark_yield_threshold is not None and inputs.benchmark is not None:
            avg = inputs.benchmark.average_15m
            if avg is not None and avg * 100.0 < s.benchmark_yield_threshold:
                reasoning.append(
                    f"vetoed: 15m benchmark {avg * 100.0:.3f}% below switch threshold {s.benchmark_yield_threshold:.3f}%"
                )
                return VetoReason.DYNAMIC_SWITCH
        if not self.can_recreate(now):
            reasoning.append(f"vetoed: last rebuild less than {s.min_interval_sec:.0f}s ago")
            return VetoReason.RECREATION_INTERVAL
        return None

    # ------------------------------------------------------------------
    # Helpers used by the state machine
    # ------------------------------------------------------------------

    def check_price_bounds(self, price: float) -> Optional[str]:
        if self.max_price is not None and price > self.max_price:
            return f"price {price:g} above max recreation price {self.max_price:g}"
        if self.min_price is not None and price < self.min_price:
            return f"price {price:g} below min recreation price {self.min_price:g}"
        return None

    def can_recreate(self, now_ms: int) -> bool:
        if self.last_recreation_ms is None:
            return True
        return now_ms - self.last_recreation_ms >= self.settings.min_interval_sec * 1000

    def record_recreation(self, now_ms: int) -> None:
        """Call after any rebuild: starts the interval and drops stale marks."""
        self.last_recreation_ms = now_ms
        self.mark = LossRecoveryMark()

    def reset(self) -> None:
        self.mark = LossRecoveryMark()
        self.last_recreation_ms = None

    def export_state(self) -> Dict[str, Any]:
        return {"mark": self.mark.to_dict(), "last_recreation_ms": self.last_recreation_ms}

    def restore_state(self, data: Optional[Dict[str, Any]]) -> None:
        if not data:
            return
        self.mark = LossRecoveryMark.from_dict(data.get("mark"))
        self.last_recreation_ms = data.get("last_recreation_ms")
