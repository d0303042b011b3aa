"""
Unit tests for the scale-in planner.

Tests:
- Triggers measured from the original entry price
- Strict phase ordering, one phase per evaluation
- Disabled / completed plans
"""

import pytest

from trader_tony.position import scale_in
from trader_tony.position.errors import InvalidInputError
from trader_tony.position.models import (
    ActionType,
    Position,
    PositionStatus,
    ScaleInPhase,
    ScaleInPlan,
)
from trader_tony.utils.time_utils import now_utc


@pytest.fixture
def position():
    """Entry 100 with phases at 5% and 15% drop, 30% of budget each."""
    return Position(
        position_id="pos_scale",
        token_id="MINT",
        entry_price=100.0,
        entry_time=now_utc(),
        amount_total=4.0,
        amount_remaining=4.0,
        scale_in_plan=ScaleInPlan(
            phases=[ScaleInPhase(1, 5, 0.3), ScaleInPhase(2, 15, 0.3)],
            budget=1000.0,
        ),
    )


def test_no_phase_above_first_trigger(position):
    assert scale_in.next_phase(position, 96.0) is None


def test_phases_fire_in_order(position):
    """94 fires phase 1; 85 on the next tick fires phase 2, not phase 1 again."""
    phase = scale_in.next_phase(position, 94.0)
    assert phase.phase_number == 1

    position.scale_in_plan.mark_executed(1, now_utc())

    phase = scale_in.next_phase(position, 85.0)
    assert phase.phase_number == 2


def test_gap_past_both_triggers_yields_first_phase_only(position):
    """A drop past phase 2's threshold still only returns phase 1."""
    phase = scale_in.next_phase(position, 80.0)
    assert phase.phase_number == 1

    # Unchanged state gives the same answer
    assert scale_in.next_phase(position, 80.0).phase_number == 1


def test_trigger_uses_entry_price_not_cost_basis(position):
    """Averaging down moves the cost basis but not the phase 2 threshold."""
    position.apply_buy(amount=3.0, price=94.0, quote_amount=282.0, tx_ref=None)
    position.scale_in_plan.mark_executed(1, now_utc())
    assert position.cost_basis < 100.0

    # 86 is 14% below entry: not yet phase 2, even though it is further below VWAP
    assert scale_in.next_phase(position, 86.0) is None
    assert scale_in.next_phase(position, 85.0).phase_number == 2


def test_completed_plan_returns_none(position):
    position.scale_in_plan.mark_executed(1, now_utc())
    position.scale_in_plan.mark_executed(2, now_utc())

    assert scale_in.next_phase(position, 50.0) is None


def test_disabled_plan_returns_none(position):
    position.scale_in_plan.enabled = False
    assert scale_in.next_phase(position, 50.0) is None


def test_position_without_plan_returns_none(position):
    position.scale_in_plan = None
    assert scale_in.next_phase(position, 50.0) is None


def test_closed_position_returns_none(position):
    position.status = PositionStatus.CLOSED
    assert scale_in.next_phase(position, 50.0) is None


def test_rejects_non_positive_price(position):
    with pytest.raises(InvalidInputError):
        scale_in.next_phase(position, 0)


def test_scale_in_action(position):
    phase = scale_in.next_phase(position, 94.0)
    action = scale_in.scale_in_action(phase, 94.0)

    assert action.action_type == ActionType.SCALE_IN
    assert action.phase_number == 1
    assert action.fraction == 0.3
    assert action.key == "scale_in:1"
