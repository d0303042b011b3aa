"""
Exit Rule Evaluator

Decides which exit, if any, a position should take at a given price.
Conditions are checked in a fixed priority order and the first match wins:

    1. stop-loss
    2. max hold time
    3. take-profit
    4. trailing stop (only once the peak has crossed the trigger)
    5. partial profit-taking (lowest unexecuted level)

Profit is measured against the position's VWAP cost basis.
"""

import logging
import math
from datetime import datetime
from typing import Optional

from trader_tony.position.errors import InvalidInputError
from trader_tony.position.models import Action, ActionType, ExitReason, Position

logger = logging.getLogger(__name__)


def _check_inputs(position: Position, current_price: float) -> None:
    if current_price is None or not math.isfinite(current_price) or current_price <= 0:
        raise InvalidInputError(f"current_price must be > 0, got {current_price!r}")
    if not position.is_active:
        raise InvalidInputError(
            f"Position {position.position_id} is {position.status.value}, cannot evaluate exits"
        )


def trailing_stop_armed(position: Position, current_price: float) -> bool:
    """
    True once a price seen so far has crossed the trailing trigger.

    Arming is recorded by Position.update_price; past peaks are not
    re-measured against a cost basis that scale-ins have since lowered.
    """
    if not position.exit_rules.trailing_stop.enabled:
        return False
    return position.trailing_armed or position.reaches_trailing_trigger(current_price)


def retracement_percent(position: Position, current_price: float) -> float:
    """How far current_price sits below the peak, in percent of the peak."""
    peak = max(position.highest_price, current_price)
    return (peak - current_price) / peak * 100


def evaluate(position: Position, current_price: float, now: datetime) -> Optional[Action]:
    """
    Evaluate a position's exit rules at current_price.

    Args:
        position: OPEN or PARTIALLY_CLOSED position
        current_price: Latest price, must be > 0
        now: Evaluation time (timezone-aware)

    Returns:
        The highest-priority Action that applies, or None

    Raises:
        InvalidInputError: On a non-positive price or an inactive position
    """
    _check_inputs(position, current_price)

    rules = position.exit_rules
    profit_pct = position.profit_percent(current_price)

    if rules.stop_loss_percent is not None and profit_pct <= -rules.stop_loss_percent:
        return Action(ActionType.FULL_CLOSE, reason=ExitReason.STOP_LOSS, price=current_price)

    if (
        rules.max_hold_time_seconds is not None
        and position.hold_seconds(now) >= rules.max_hold_time_seconds
    ):
        return Action(ActionType.FULL_CLOSE, reason=ExitReason.MAX_HOLD_TIME, price=current_price)

    if rules.take_profit_percent is not None and profit_pct >= rules.take_profit_percent:
        return Action(ActionType.FULL_CLOSE, reason=ExitReason.TAKE_PROFIT, price=current_price)

    if trailing_stop_armed(position, current_price):
        if retracement_percent(position, current_price) >= rules.trailing_stop.distance_percent:
            return Action(
                ActionType.FULL_CLOSE, reason=ExitReason.TRAILING_STOP, price=current_price
            )

    for level in rules.partial_profit_levels:
        if level.threshold_percent > profit_pct:
            break
        if level.level_id in position.executed_levels:
            continue
        return Action(
            ActionType.PARTIAL_CLOSE,
            reason=ExitReason.PARTIAL_TAKE_PROFIT,
            fraction=level.sell_fraction,
            level_id=level.level_id,
            price=current_price,
        )

    return None
