"""
Unit tests for position models.

Tests:
- Exit rule and scale-in plan validation
- Price tracking and trailing stop arming
- VWAP cost basis on scale-in buys
- Sell accounting and closing
- Persistence round trip of a traded position
"""

from datetime import timedelta

import pytest

from trader_tony.position.errors import InvalidInputError
from trader_tony.position.models import (
    Action,
    ActionType,
    ExitReason,
    ExitRules,
    PartialProfitLevel,
    Position,
    PositionStatus,
    ScaleInPhase,
    ScaleInPlan,
    TrailingStopRule,
)
from trader_tony.utils.time_utils import now_utc


# ============================================================================
# Fixtures
# ============================================================================

def make_position(**overrides) -> Position:
    fields = dict(
        position_id="pos_test",
        token_id="MINT",
        entry_price=100.0,
        entry_time=now_utc(),
        amount_total=10.0,
        amount_remaining=10.0,
    )
    fields.update(overrides)
    return Position(**fields)


@pytest.fixture
def position():
    return make_position(
        exit_rules=ExitRules(
            stop_loss_percent=5,
            trailing_stop=TrailingStopRule(enabled=True, trigger_percent=20, distance_percent=10),
        )
    )


# ============================================================================
# Exit Rules Validation
# ============================================================================

def test_partial_levels_sorted_by_threshold():
    """Levels are walked lowest first regardless of input order."""
    rules = ExitRules(partial_profit_levels=(
        PartialProfitLevel(50, 0.3),
        PartialProfitLevel(8, 0.25),
    ))

    assert [lvl.level_id for lvl in rules.partial_profit_levels] == ["tp_8", "tp_50"]
    assert rules.get_level("tp_50").sell_fraction == 0.3
    assert rules.get_level("tp_99") is None


def test_partial_fractions_over_one_rejected():
    with pytest.raises(InvalidInputError):
        ExitRules(partial_profit_levels=(
            PartialProfitLevel(10, 0.6),
            PartialProfitLevel(20, 0.6),
        ))


def test_duplicate_partial_thresholds_rejected():
    with pytest.raises(InvalidInputError):
        ExitRules(partial_profit_levels=(
            PartialProfitLevel(10, 0.2),
            PartialProfitLevel(10, 0.3),
        ))


@pytest.mark.parametrize("kwargs", [
    {"stop_loss_percent": 0},
    {"take_profit_percent": -5},
    {"max_hold_time_seconds": 0},
])
def test_non_positive_thresholds_rejected(kwargs):
    with pytest.raises(InvalidInputError):
        ExitRules(**kwargs)


def test_enabled_trailing_stop_needs_distance():
    with pytest.raises(InvalidInputError):
        TrailingStopRule(enabled=True, trigger_percent=10, distance_percent=0)


# ============================================================================
# Scale-In Plan Validation
# ============================================================================

def test_scale_in_plan_orders_phases():
    plan = ScaleInPlan(
        phases=[ScaleInPhase(2, 15, 0.3), ScaleInPhase(1, 5, 0.3)],
        budget=1.0,
    )

    assert [p.phase_number for p in plan.phases] == [1, 2]
    assert plan.pending_phase().phase_number == 1
    assert plan.phase_amount(plan.phases[0]) == pytest.approx(0.3)
    assert plan.initial_fraction == pytest.approx(0.4)


def test_scale_in_plan_rejects_decreasing_triggers():
    with pytest.raises(InvalidInputError):
        ScaleInPlan(
            phases=[ScaleInPhase(1, 15, 0.3), ScaleInPhase(2, 5, 0.3)],
            budget=1.0,
        )


def test_scale_in_plan_rejects_oversized_fractions():
    with pytest.raises(InvalidInputError):
        ScaleInPlan(
            phases=[ScaleInPhase(1, 5, 0.7), ScaleInPhase(2, 10, 0.7)],
            budget=1.0,
        )


def test_mark_executed_only_accepts_pending_phase():
    """Phase 2 cannot be marked before phase 1."""
    plan = ScaleInPlan(
        phases=[ScaleInPhase(1, 5, 0.3), ScaleInPhase(2, 15, 0.3)],
        budget=1.0,
    )

    with pytest.raises(InvalidInputError):
        plan.mark_executed(2, now_utc())

    plan.mark_executed(1, now_utc())
    assert plan.phases[0].executed
    assert plan.current_phase == 1
    assert plan.pending_phase().phase_number == 2

    plan.mark_executed(2, now_utc())
    assert plan.is_complete
    assert plan.pending_phase() is None


# ============================================================================
# Price Tracking
# ============================================================================

def test_update_price_tracks_peak(position):
    assert position.update_price(110.0) is True
    assert position.update_price(105.0) is False
    assert position.highest_price == 110.0
    assert position.current_price == 105.0


def test_trailing_stop_arms_once_trigger_crossed(position):
    """Arming is sticky: a later drop does not disarm."""
    position.update_price(115.0)
    assert not position.trailing_armed

    position.update_price(121.0)
    assert position.trailing_armed

    position.update_price(90.0)
    assert position.trailing_armed


def test_profit_and_drop_percent(position):
    assert position.profit_percent(110.0) == pytest.approx(10.0)
    assert position.drop_from_entry_percent(94.0) == pytest.approx(6.0)


# ============================================================================
# Trade Application
# ============================================================================

def test_apply_buy_recomputes_vwap_but_not_entry_price(position):
    position.apply_buy(amount=10.0, price=80.0, quote_amount=800.0, tx_ref="tx-1")

    assert position.amount_total == 20.0
    assert position.amount_remaining == 20.0
    assert position.cost_basis == pytest.approx(90.0)
    assert position.entry_price == 100.0
    assert position.invested_quote == pytest.approx(1800.0)


def test_apply_sell_partial_then_full(position):
    position.apply_sell(2.5, 110.0, 275.0, "tx-1", kind="partial_close")

    assert position.amount_remaining == pytest.approx(7.5)
    assert position.status == PositionStatus.PARTIALLY_CLOSED

    position.apply_sell(7.5, 110.0, 825.0, "tx-2", kind="full_close")
    assert position.amount_remaining == 0.0
    assert position.status == PositionStatus.CLOSED


def test_apply_sell_never_goes_negative(position):
    position.apply_sell(50.0, 100.0, 1000.0, None, kind="full_close")

    assert position.amount_remaining == 0.0
    assert 0 <= position.amount_remaining <= position.amount_total


def test_mark_as_closed_sets_realized_pnl(position):
    position.apply_sell(10.0, 110.0, 1100.0, "tx-1", kind="full_close")
    position.mark_as_closed(110.0, ExitReason.TAKE_PROFIT, now_utc())

    assert position.exit_reason == ExitReason.TAKE_PROFIT
    assert position.realized_profit == pytest.approx(100.0)
    assert position.realized_pnl_pct == pytest.approx(10.0)
    assert not position.is_active


def test_hold_seconds(position):
    later = position.entry_time + timedelta(minutes=5)
    assert position.hold_seconds(later) == pytest.approx(300.0)


# ============================================================================
# Actions
# ============================================================================

def test_action_keys():
    assert Action(ActionType.FULL_CLOSE, reason=ExitReason.STOP_LOSS).key == "full_close"
    assert Action(ActionType.PARTIAL_CLOSE, level_id="tp_8").key == "partial_close:tp_8"
    assert Action(ActionType.SCALE_IN, phase_number=2).key == "scale_in:2"


# ============================================================================
# Serialization
# ============================================================================

def test_position_dict_round_trip_keeps_executed_state():
    """Executed levels, plan progress and failure counters survive persistence."""
    position = make_position(
        exit_rules=ExitRules(
            stop_loss_percent=5,
            partial_profit_levels=(PartialProfitLevel(8, 0.25),),
        ),
        scale_in_plan=ScaleInPlan(
            phases=[ScaleInPhase(1, 5, 0.3), ScaleInPhase(2, 15, 0.3)],
            budget=1000.0,
        ),
        strategy_id="strat_1",
    )
    position.executed_levels["tp_8"] = now_utc()
    position.scale_in_plan.mark_executed(1, now_utc())
    position.failed_attempts["full_close"] = 2
    position.pending_action = "full_close"

    restored = Position.from_dict(position.to_dict())

    assert "tp_8" in restored.executed_levels
    assert restored.scale_in_plan.current_phase == 1
    assert restored.scale_in_plan.phases[0].executed
    assert restored.failed_attempts == {"full_close": 2}
    assert restored.exit_rules == position.exit_rules
    assert restored.strategy_id == "strat_1"
    assert restored.pending_action is None
