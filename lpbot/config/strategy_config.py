"""
Per-instance strategy configuration.

A StrategyConfig is validated before an instance is created and again after
every patch, so nothing downstream needs to re-check ranges. All percentage
thresholds are expressed in percent (0-100), not fractions.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, Optional, Tuple

from lpbot.core.errors import ValidationError
from lpbot.core.types import RangeSide, StrategyKind

MAX_BIN_COUNT = 69

# (benchmark yield % upper bound, required profit %). None bound = open-ended.
DEFAULT_PROFIT_TIERS: Tuple[Tuple[Optional[float], float], ...] = (
    (0.5, 0.5),
    (1.5, 1.5),
    (3.0, 3.0),
    (None, 5.0),
)


def _check_pct(name: str, value: float) -> None:
    if not 0.0 <= value <= 100.0:
        raise ValidationError(name, f"must be within [0, 100], got {value}")


@dataclass(frozen=True)
class StopLossSettings:
    """Thresholds and confidence policy for the stop-loss decision."""
    # False keeps evaluating (the decision trail stays inspectable) but never triggers.
    enabled: bool = True
    safety_threshold_pct: float = 50.0
    observation_window_sec: float = 900.0
    loss_threshold_pct: float = 5.0
    # Confidence policy table: weights of the safety and loss sub-scores.
    safety_weight: float = 0.6
    loss_weight: float = 0.4
    # Risk score policy table.
    liquidity_risk_weight: float = 0.6
    loss_risk_weight: float = 0.4
    loss_risk_multiplier: float = 3.0

    def validate(self) -> None:
        if not isinstance(self.enabled, bool):
            raise ValidationError("stop_loss.enabled", f"must be a boolean, got {self.enabled!r}")
        _check_pct("stop_loss.safety_threshold_pct", self.safety_threshold_pct)
        _check_pct("stop_loss.loss_threshold_pct", self.loss_threshold_pct)
        if self.safety_threshold_pct <= 0:
            raise ValidationError("stop_loss.safety_threshold_pct", "must be > 0")
        if self.loss_threshold_pct <= 0:
            raise ValidationError("stop_loss.loss_threshold_pct", "must be > 0")
        if self.observation_window_sec < 0:
            raise ValidationError("stop_loss.observation_window_sec", "must be >= 0")
        for name in ("safety_weight", "loss_weight", "liquidity_risk_weight", "loss_risk_weight"):
            if getattr(self, name) < 0:
                raise ValidationError(f"stop_loss.{name}", "must be >= 0")
        if self.safety_weight + self.loss_weight <= 0:
            raise ValidationError("stop_loss.safety_weight", "confidence weights must not both be zero")


@dataclass(frozen=True)
class RecreationSettings:
    """Rebuild heuristics. Each heuristic can be switched off independently."""
    # Global veto: below this position % nothing is rebuilt. 0 disables.
    min_active_bin_position_threshold: float = 0.0
    min_interval_sec: float = 600.0
    # Recreation switch: veto heuristics while the 15m benchmark yield % is below this.
    benchmark_yield_threshold: Optional[float] = None

    market_opportunity_enabled: bool = True
    market_position_threshold: float = 70.0
    market_profit_threshold: float = 1.0

    loss_recovery_enabled: bool = True
    mark_position_threshold: float = 65.0
    mark_loss_threshold: float = 0.5
    trigger_position_threshold: float = 70.0
    trigger_profit_threshold: float = 0.5

    dynamic_profit_enabled: bool = True
    dynamic_position_threshold: float = 70.0
    profit_tiers: Tuple[Tuple[Optional[float], float], ...] = DEFAULT_PROFIT_TIERS

    def validate(self) -> None:
        for name in (
            "min_active_bin_position_threshold",
            "market_position_threshold",
            "mark_position_threshold",
            "trigger_position_threshold",
            "dynamic_position_threshold",
        ):
            _check_pct(f"recreation.{name}", getattr(self, name))
        for name in ("market_profit_threshold", "mark_loss_threshold", "trigger_profit_threshold"):
            if getattr(self, name) < 0:
                raise ValidationError(f"recreation.{name}", "must be >= 0")
        if self.min_interval_sec < 0:
            raise ValidationError("recreation.min_interval_sec", "must be >= 0")
        if not self.profit_tiers:
            raise ValidationError("recreation.profit_tiers", "at least one tier required")
        last_bound = -math.inf
        for i, (bound, threshold) in enumerate(self.profit_tiers):
            is_last = i == len(self.profit_tiers) - 1
            if bound is None and not is_last:
                raise ValidationError("recreation.profit_tiers", "only the last tier may be open-ended")
            if bound is not None:
                if bound <= last_bound:
                    raise ValidationError("recreation.profit_tiers", "tier bounds must be ascending")
                last_bound = bound
            if threshold < 0:
                raise ValidationError("recreation.profit_tiers", "tier thresholds must be >= 0")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["profit_tiers"] = [[bound, threshold] for bound, threshold in self.profit_tiers]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecreationSettings":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        if "profit_tiers" in kwargs:
            kwargs["profit_tiers"] = tuple(
                (None if bound is None else float(bound), float(threshold))
                for bound, threshold in kwargs["profit_tiers"]
            )
        return cls(**kwargs)


@dataclass(frozen=True)
class StrategyConfig:
    pool_address: str
    position_amount: float
    kind: StrategyKind = StrategyKind.SIMPLE
    side: Optional[RangeSide] = None
    bin_count: int = MAX_BIN_COUNT
    name: Optional[str] = None
    token_x: str = "X"
    token_y: str = "Y"
    slippage_bps: int = 100
    tick_interval_sec: Optional[float] = None  # None = process default
    out_of_range_timeout_sec: float = 1800.0
    stop_loss_count: int = 1
    max_price_for_recreation: Optional[float] = None
    min_price_for_recreation: Optional[float] = None
    stop_loss: StopLossSettings = field(default_factory=StopLossSettings)
    recreation: RecreationSettings = field(default_factory=RecreationSettings)
    # operation class -> partial RetryConfig fields
    retry_overrides: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def effective_side(self) -> RangeSide:
        return self.side or RangeSide.BELOW

    @property
    def position_count(self) -> int:
        return 2 if self.kind == StrategyKind.CHAIN else 1

    def validate(self) -> "StrategyConfig":
        if not self.pool_address:
            raise ValidationError("pool_address", "required")
        if isinstance(self.bin_count, bool) or not isinstance(self.bin_count, int):
            raise ValidationError("bin_count", f"must be an integer, got {self.bin_count!r}")
        if not 1 <= self.bin_count <= MAX_BIN_COUNT:
            raise ValidationError("bin_count", f"must be within [1, {MAX_BIN_COUNT}], got {self.bin_count}")
        if not self.position_amount > 0:
            raise ValidationError("position_amount", "must be > 0")
        if self.kind == StrategyKind.CHAIN and self.side is not None:
            raise ValidationError("side", "not applicable to chain strategies")
        if not 0 <= self.slippage_bps <= 10_000:
            raise ValidationError("slippage_bps", "must be within [0, 10000]")
        if self.tick_interval_sec is not None and self.tick_interval_sec <= 0:
            raise ValidationError("tick_interval_sec", "must be > 0")
        if self.out_of_range_timeout_sec <= 0:
            raise ValidationError("out_of_range_timeout_sec", "must be > 0")
        if self.stop_loss_count < 0:
            raise ValidationError("stop_loss_count", "must be >= 0")
        if (
            self.max_price_for_recreation is not None
            and self.min_price_for_recreation is not None
            and self.min_price_for_recreation > self.max_price_for_recreation
        ):
            raise ValidationError("min_price_for_recreation", "must not exceed max_price_for_recreation")
        self.stop_loss.validate()
        self.recreation.validate()
        return self

    def merged(self, patch: Dict[str, Any]) -> "StrategyConfig":
        """Return a validated copy with `patch` applied. Nested sections merge key by key."""
        data = self.to_dict()
        for key, value in patch.items():
            if key in ("stop_loss", "recreation", "retry_overrides") and isinstance(value, dict):
                data[key] = {**data.get(key, {}), **value}
            else:
                data[key] = value
        return StrategyConfig.from_dict(data).validate()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pool_address": self.pool_address,
            "position_amount": self.position_amount,
            "kind": self.kind.value,
            "side": self.side.value if self.side else None,
            "bin_count": self.bin_count,
            "name": self.name,
            "token_x": self.token_x,
            "token_y": self.token_y,
            "slippage_bps": self.slippage_bps,
            "tick_interval_sec": self.tick_interval_sec,
            "out_of_range_timeout_sec": self.out_of_range_timeout_sec,
            "stop_loss_count": self.stop_loss_count,
            "max_price_for_recreation": self.max_price_for_recreation,
            "min_price_for_recreation": self.min_price_for_recreation,
            "stop_loss": asdict(self.stop_loss),
            "recreation": self.recreation.to_dict(),
            "retry_overrides": {k: dict(v) for k, v in self.retry_overrides.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrategyConfig":
        """Build from a plain dict. Raises ValidationError on unknown or malformed keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(unknown[0], "unknown configuration key")
        if "pool_address" not in data or "position_amount" not in data:
            raise ValidationError("pool_address" if "pool_address" not in data else "position_amount", "required")

        kwargs = dict(data)
        try:
            kwargs["kind"] = StrategyKind(kwargs.get("kind", StrategyKind.SIMPLE.value))
        except ValueError:
            raise ValidationError("kind", f"unknown strategy kind {data.get('kind')!r}") from None
        side = kwargs.get("side")
        if side is not None:
            try:
                kwargs["side"] = RangeSide(side)
            except ValueError:
                raise ValidationError("side", f"unknown side {side!r}") from None
        try:
            kwargs["position_amount"] = float(kwargs["position_amount"])
        except (TypeError, ValueError):
            raise ValidationError("position_amount", "must be a number") from None

        stop_loss = kwargs.get("stop_loss")
        if isinstance(stop_loss, dict):
            sl_known = {f.name for f in fields(StopLossSettings)}
            kwargs["stop_loss"] = StopLossSettings(**{k: v for k, v in stop_loss.items() if k in sl_known})
        elif stop_loss is None:
            kwargs.pop("stop_loss", None)
        recreation = kwargs.get("recreation")
        if isinstance(recreation, dict):
            kwargs["recreation"] = RecreationSettings.from_dict(recreation)
        elif recreation is None:
            kwargs.pop("recreation", None)
        if kwargs.get("retry_overrides") is None:
            kwargs.pop("retry_overrides", None)
        return cls(**kwargs)

    def with_defaults(self, tick_interval_sec: float) -> "StrategyConfig":
        """Fill process-level defaults that the user left unset."""
        if self.tick_interval_sec is not None:
            return self
        return replace(self, tick_interval_sec=tick_interval_sec)

