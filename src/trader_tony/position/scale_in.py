"""
Scale-In Planner

Picks the next averaging-down buy for a position. Triggers are measured from
the original entry price, never the VWAP cost basis, so the plan's own buys
cannot move its thresholds. Phases fire strictly in order, one per tick.
"""

from typing import Optional

from trader_tony.position.errors import InvalidInputError
from trader_tony.position.models import Action, ActionType, Position, ScaleInPhase


def next_phase(position: Position, current_price: float) -> Optional[ScaleInPhase]:
    """
    Return the pending phase if the price has dropped far enough, else None.

    Only the phase at current_phase is ever considered: a gap down past
    several thresholds still yields just the next one.
    """
    if current_price is None or current_price <= 0:
        raise InvalidInputError(f"current_price must be > 0, got {current_price!r}")

    plan = position.scale_in_plan
    if plan is None or not plan.enabled or not position.is_active:
        return None

    phase = plan.pending_phase()
    if phase is None:
        return None

    if position.drop_from_entry_percent(current_price) >= phase.trigger_drop_percent:
        return phase
    return None


def scale_in_action(phase: ScaleInPhase, current_price: float) -> Action:
    """Wrap a phase as an Action for the position manager."""
    return Action(
        ActionType.SCALE_IN,
        fraction=phase.size_fraction,
        phase_number=phase.phase_number,
        price=current_price,
    )
