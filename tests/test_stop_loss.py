"""
Unit tests for StopLossEngine.

Tests cover:
- Position % and PnL helpers
- Trigger rule: threshold, observation window, loss threshold
- Action selection by remaining rebuild budget, disabled stop-loss
- Determinism and serialization of decisions
"""

import pytest

from lpbot.config.strategy_config import StopLossSettings
from lpbot.core.types import MarketSnapshot, Position
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

T0 = 1_700_000_000_000
WINDOW_MS = 900_000


def state(x=50.0, y=40.0, remaining=1, since=T0, lower=990, upper=999, invested=100.0):
    return PositionState(
        lower_bin=lower,
        upper_bin=upper,
        initial_investment_y=invested,
        token_x_amount=x,
        token_y_amount=y,
        stop_loss_remaining=remaining,
        below_threshold_since_ms=since,
    )


def snap(active_bin=992, price=1.0, ts=T0 + WINDOW_MS + 1):
    return MarketSnapshot(active_bin=active_bin, price=price, timestamp_ms=ts)


@pytest.fixture
def engine():
    return StopLossEngine()


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


class TestHelpers:

    @pytest.mark.parametrize("active,expected", [(990, 0.0), (999, 100.0), (985, 0.0), (1005, 100.0)])
    def test_position_pct_is_clamped(self, active, expected):
        assert active_bin_position_pct(active, 990, 999) == expected

    def test_position_pct_midpoint(self):
        assert active_bin_position_pct(995, 990, 1000) == 50.0

    def test_degenerate_range(self):
        assert active_bin_position_pct(7, 7, 7) == 50.0

    def test_pnl_includes_fees(self):
        s = PositionState(990, 999, 100.0, 10.0, 80.0, accrued_fee_x=1.0, accrued_fee_y=2.0)
        # (10 + 1) * 2 + 80 + 2 = 104
        assert estimate_pnl_pct(s, 2.0) == pytest.approx(4.0)

    def test_pnl_without_investment(self):
        assert estimate_pnl_pct(state(invested=0.0), 1.0) == 0.0

    def test_from_positions_aggregates(self):
        positions = [
            Position("a", "p", 991, 1000, token_x_amount=1.0, token_y_amount=2.0),
            Position("b", "p", 981, 990, token_x_amount=3.0, token_y_amount=4.0, accrued_fee_y=0.5),
        ]
        s = PositionState.from_positions(positions, 100.0, 2)
        assert (s.lower_bin, s.upper_bin) == (981, 1000)
        assert s.token_x_amount == 4.0
        assert s.token_y_amount == 6.0
        assert s.accrued_fee_y == 0.5

    def test_from_positions_requires_one(self):
        with pytest.raises(ValueError):
            PositionState.from_positions([], 100.0, 1)

    def test_track_below_threshold(self):
        assert track_below_threshold(None, 40.0, T0, 50.0) == T0
        assert track_below_threshold(T0, 40.0, T0 + 5, 50.0) == T0
        assert track_below_threshold(T0, 60.0, T0 + 5, 50.0) is None


# ─────────────────────────────────────────────────────────────────────────────
# Decisions
# ─────────────────────────────────────────────────────────────────────────────


class TestDecisions:

    def test_triggers_rebuild_with_budget(self, engine):
        decision = engine.evaluate(snap(), state(remaining=1))
        assert decision.action == StopLossAction.CLOSE_AND_REBUILD
        assert decision.triggered
        assert decision.pnl_pct == pytest.approx(-10.0)
        assert 0.0 < decision.confidence <= 1.0

    def test_full_exit_without_budget(self, engine):
        decision = engine.evaluate(snap(), state(remaining=0))
        assert decision.action == StopLossAction.CLOSE
        assert decision.urgency == Urgency.HIGH
        assert any("no rebuilds remaining" in r for r in decision.reasoning)

    def test_holds_inside_observation_window(self, engine):
        decision = engine.evaluate(snap(ts=T0 + WINDOW_MS), state())
        assert decision.action == StopLossAction.HOLD
        assert any("waiting for observation window" in r for r in decision.reasoning)

    def test_holds_when_loss_small(self, engine):
        decision = engine.evaluate(snap(), state(x=50.0, y=48.0))
        assert decision.action == StopLossAction.HOLD

    def test_holds_above_safety_threshold(self, engine):
        decision = engine.evaluate(snap(active_bin=997), state())
        assert decision.action == StopLossAction.HOLD

    def test_holds_without_below_timestamp(self, engine):
        decision = engine.evaluate(snap(), state(since=None))
        assert decision.action == StopLossAction.HOLD

    def test_policy_table(self, engine):
        # pct = 2/9 -> 22.2%; loss 10% (threshold 5%)
        decision = engine.evaluate(snap(), state())
        pct = 200.0 / 9.0
        safety = (50.0 - pct) / 50.0 * 100.0
        loss_sub = 100.0
        assert decision.confidence == pytest.approx((0.6 * safety + 0.4 * loss_sub) / 100.0, abs=1e-6)
        assert decision.risk_score == pytest.approx(0.6 * 80.0 + 0.4 * 30.0)
        assert decision.urgency == Urgency.MEDIUM

    def test_disabled_never_triggers(self):
        engine = StopLossEngine(StopLossSettings(enabled=False))
        decision = engine.evaluate(snap(), state(remaining=0))
        assert decision.action == StopLossAction.HOLD
        assert not decision.triggered
        assert decision.pnl_pct == pytest.approx(-10.0)
        assert any("stop-loss is disabled" in r for r in decision.reasoning)

    def test_custom_settings(self):
        engine = StopLossEngine(StopLossSettings(observation_window_sec=60.0, loss_threshold_pct=1.0))
        decision = engine.evaluate(snap(ts=T0 + 61_000), state(x=50.0, y=48.0))
        assert decision.action == StopLossAction.CLOSE_AND_REBUILD

    def test_deterministic(self, engine):
        assert engine.evaluate(snap(), state()) == engine.evaluate(snap(), state())

    def test_decision_dict_round_trip(self, engine):
        decision = engine.evaluate(snap(), state())
        assert StopLossDecision.from_dict(decision.to_dict()) == decision
