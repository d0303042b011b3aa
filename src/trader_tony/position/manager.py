"""
Position Manager

Owns the set of active positions and is the only component that mutates
them after creation (apart from price tracking, which the monitoring loop
does). Every buy or sell goes through a per-position pending-action guard:
the guard is claimed before the executor is called and released on every
exit path, so a slow swap can never overlap a second action on the same
position.

Failed actions are not marked executed. Each action key keeps a failure
counter on the position; once it reaches max_action_retries an ActionFailed
event is emitted and the action is no longer attempted automatically.
"""

import logging
import math
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Union

from trader_tony.config.settings import ExecutionConfig
from trader_tony.core.event_bus import EventBus
from trader_tony.core.events import (
    ActionFailed,
    Event,
    PartialCloseExecuted,
    PositionClosed,
    PositionOpened,
    ScaleInExecuted,
)
from trader_tony.integrations.dex.aggregator_adapter import (
    TradeExecutor,
    TradeOptions,
    TradeResult,
)
from trader_tony.position.errors import (
    ConcurrencyViolation,
    InvalidInputError,
    StorageCorruptionError,
    TradeExecutionError,
)
from trader_tony.position.models import (
    SCHEMA_VERSION,
    Action,
    ActionType,
    ExitReason,
    ExitRules,
    Position,
    PositionStatus,
    ScaleInPhase,
    ScaleInPlan,
    TradeRecord,
)
from trader_tony.storage.duckdb_store import DuckDBStore
from trader_tony.utils.logger import get_trading_logger
from trader_tony.utils.time_utils import now_utc

logger = logging.getLogger(__name__)
trading_logger = get_trading_logger(__name__)


def _positive(value, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidInputError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(number) or number <= 0:
        raise InvalidInputError(f"{name} must be > 0, got {value!r}")
    return number


class PositionManager:
    """
    Creates positions and applies exit / scale-in actions to them.

    Usage:
        manager = PositionManager(executor, store=store, event_bus=bus)
        position = manager.create_position("MINT", 0.0001, 1000, exit_rules)
        await manager.apply_full_close(position.position_id, 0.00009, ExitReason.STOP_LOSS)
    """

    def __init__(
        self,
        executor: TradeExecutor,
        store: Optional[DuckDBStore] = None,
        event_bus: Optional[EventBus] = None,
        execution_config: Optional[ExecutionConfig] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.executor = executor
        self.store = store
        self.event_bus = event_bus
        self.config = execution_config or ExecutionConfig()
        self.clock = clock

        # Active positions in creation order
        self._positions: Dict[str, Position] = {}

        logger.info(
            f"PositionManager initialized (executor={executor.name}, "
            f"max_action_retries={self.config.max_action_retries})"
        )

    # ========================================================================
    # Creation & Access
    # ========================================================================

    def create_position(
        self,
        token_id: str,
        entry_price: float,
        amount: float,
        exit_rules: Optional[ExitRules] = None,
        scale_in_plan: Optional[ScaleInPlan] = None,
        strategy_id: Optional[str] = None,
        quote_amount: Optional[float] = None,
        tx_ref: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> Position:
        """
        Register a position after its entry buy has completed.

        Raises:
            InvalidInputError: On a missing token, non-positive price or amount
        """
        if not token_id or not isinstance(token_id, str):
            raise InvalidInputError("token_id is required")
        entry_price = _positive(entry_price, "entry_price")
        amount = _positive(amount, "amount")
        if exit_rules is None:
            exit_rules = ExitRules()
        if not isinstance(exit_rules, ExitRules):
            raise InvalidInputError("exit_rules must be an ExitRules instance")
        if scale_in_plan is not None and not isinstance(scale_in_plan, ScaleInPlan):
            raise InvalidInputError("scale_in_plan must be a ScaleInPlan instance")

        now = self.clock()
        quote = quote_amount if quote_amount and quote_amount > 0 else entry_price * amount

        position = Position(
            position_id=f"pos_{uuid.uuid4().hex[:12]}",
            token_id=token_id,
            entry_price=entry_price,
            entry_time=now,
            amount_total=amount,
            amount_remaining=amount,
            exit_rules=exit_rules,
            scale_in_plan=scale_in_plan,
            current_price=entry_price,
            invested_quote=quote,
            strategy_id=strategy_id,
            created_at=now,
            updated_at=now,
            metadata=dict(metadata or {}),
        )
        position.trades.append(
            TradeRecord("entry", amount, entry_price, quote, tx_ref, None, now)
        )

        self._positions[position.position_id] = position
        self.persist(position)

        trading_logger.position_event(
            position.position_id, "opened", token_id, entry_price,
            amount=amount, strategy_id=strategy_id,
        )
        self._emit(PositionOpened(
            timestamp=now,
            metadata={},
            position_id=position.position_id,
            token_id=token_id,
            entry_price=entry_price,
            amount=amount,
            quote_amount=quote,
            strategy_id=strategy_id,
            tx_ref=tx_ref,
        ))
        return position

    def get_position(self, position_id: str) -> Optional[Position]:
        """Active position by id, falling back to persisted history."""
        position = self._positions.get(position_id)
        if position is not None or self.store is None:
            return position

        raw = self.store.load(Position.RECORD_KIND, position_id)
        return self._decode(raw) if raw else None

    def get_open_positions(self) -> List[Position]:
        """Active positions in creation order."""
        return [p for p in self._positions.values() if p.is_active]

    def get_closed_positions(self) -> List[Position]:
        if self.store is None:
            return []
        return [
            position for position in
            (self._decode(raw) for raw in self.store.load_all(Position.RECORD_KIND))
            if position.status == PositionStatus.CLOSED
        ]

    def remove_position(self, position_id: str) -> Optional[Position]:
        """
        Drop a position from monitoring without trading.

        The position is persisted as CLOSED (manual). An action in flight for
        it completes against the executor but its result is not applied.
        """
        position = self._positions.pop(position_id, None)
        if position is None:
            return None

        price = position.current_price or position.entry_price
        position.mark_as_closed(price, ExitReason.MANUAL, self.clock())
        position.realized_pnl_pct = None
        self.persist(position)

        trading_logger.position_event(position_id, "removed", position.token_id, price)
        return position

    def reset_failures(self, position_id: str, action_key: Optional[str] = None) -> None:
        """Re-enable automatic retries after manual intervention."""
        position = self._require_active(position_id)
        if action_key is None:
            position.failed_attempts.clear()
        else:
            position.failed_attempts.pop(action_key, None)
        position.last_error = None
        self.persist(position)
        logger.info(f"Reset failure counters for {position_id} ({action_key or 'all'})")

    # ========================================================================
    # Persistence
    # ========================================================================

    def load_positions(self) -> int:
        """
        Restore active positions from the store.

        Returns:
            Number of active positions restored

        Raises:
            StorageCorruptionError: If any persisted position cannot be decoded
        """
        if self.store is None:
            return 0

        restored = 0
        for raw in self.store.load_all(Position.RECORD_KIND):
            position = self._decode(raw)
            if position.is_active:
                self._positions[position.position_id] = position
                restored += 1

        logger.info(f"Restored {restored} active positions from storage")
        return restored

    @staticmethod
    def _decode(raw: Dict) -> Position:
        record_id = str(raw.get("position_id", "<unknown>"))
        version = raw.get("schema_version", SCHEMA_VERSION)
        if not isinstance(version, int) or version > SCHEMA_VERSION:
            raise StorageCorruptionError(
                Position.RECORD_KIND, record_id, f"unsupported schema_version {version!r}"
            )
        try:
            return Position.from_dict(raw)
        except (KeyError, ValueError, TypeError, InvalidInputError) as e:
            raise StorageCorruptionError(Position.RECORD_KIND, record_id, str(e)) from e

    def persist(self, position: Position) -> None:
        if self.store is None:
            return
        try:
            self.store.save(position)
        except Exception as e:
            logger.error(
                f"Failed to persist position {position.position_id}: {e}",
                extra={"position_id": position.position_id},
            )

    # ========================================================================
    # Actions
    # ========================================================================

    async def apply_action(self, position_id: str, action: Action) -> bool:
        """Dispatch an evaluator / planner action to the matching operation."""
        if action.action_type == ActionType.FULL_CLOSE:
            return await self.apply_full_close(position_id, action.price, action.reason)
        if action.action_type == ActionType.PARTIAL_CLOSE:
            return await self.apply_partial_close(
                position_id, action.fraction, action.level_id, price=action.price
            )
        if action.action_type == ActionType.SCALE_IN:
            return await self.apply_scale_in(position_id, action.phase_number, price=action.price)
        raise InvalidInputError(f"Unknown action type: {action.action_type!r}")

    async def apply_full_close(
        self,
        position_id: str,
        exit_price: float,
        reason: Union[ExitReason, str],
    ) -> bool:
        """
        Sell everything that remains.

        Returns:
            True if the position was closed; False if the sell failed, the
            action is exhausted, another action is pending, or the position
            went away while the sell was in flight
        """
        position = self._require_active(position_id)
        exit_price = _positive(exit_price, "exit_price")
        try:
            reason = ExitReason(reason)
        except ValueError:
            raise InvalidInputError(f"Unknown exit reason: {reason!r}")

        action = Action(ActionType.FULL_CLOSE, reason=reason, price=exit_price)
        manual = reason == ExitReason.MANUAL
        if not manual and self.is_exhausted(position, action.key):
            return False

        amount = position.amount_remaining
        options = self.trade_options(action)

        try:
            with self._action_guard(position, action.key):
                try:
                    result = await self._execute("sell", position, amount, options)
                except TradeExecutionError as e:
                    self._record_failure(position, action, e, manual=manual)
                    return False

                if not self._still_active(position):
                    self._discard_result(position, action, result)
                    return False

                fill_price = result.amount_out / amount
                now = self.clock()
                position.apply_sell(
                    amount, fill_price, result.amount_out, result.tx_ref,
                    kind="full_close", reason=reason.value,
                )
                position.mark_as_closed(fill_price, reason, now)
                position.failed_attempts.pop(action.key, None)
                position.last_error = None
        except ConcurrencyViolation as e:
            logger.warning(str(e), extra={"position_id": position_id})
            return False

        self._finish_close(position, result.tx_ref)
        return True

    async def apply_partial_close(
        self,
        position_id: str,
        fraction: float,
        level_id: str,
        price: Optional[float] = None,
    ) -> bool:
        """
        Sell fraction * amount_total (capped at what remains) for a profit level.

        Idempotent per level_id: an already-executed level is a no-op.
        """
        position = self._require_active(position_id)
        fraction = _positive(fraction, "fraction")
        if fraction > 1:
            raise InvalidInputError(f"fraction must be <= 1, got {fraction}")
        if position.exit_rules.get_level(level_id) is None:
            raise InvalidInputError(f"Position {position_id} has no profit level {level_id!r}")

        if level_id in position.executed_levels:
            logger.debug(f"Level {level_id} already executed for {position_id}")
            return False

        action = Action(
            ActionType.PARTIAL_CLOSE,
            reason=ExitReason.PARTIAL_TAKE_PROFIT,
            fraction=fraction,
            level_id=level_id,
            price=price,
        )
        if self.is_exhausted(position, action.key):
            return False

        amount = min(fraction * position.amount_total, position.amount_remaining)
        options = self.trade_options(action)

        try:
            with self._action_guard(position, action.key):
                try:
                    result = await self._execute("sell", position, amount, options)
                except TradeExecutionError as e:
                    self._record_failure(position, action, e)
                    return False

                if not self._still_active(position) or level_id in position.executed_levels:
                    self._discard_result(position, action, result)
                    return False

                now = self.clock()
                fill_price = result.amount_out / amount
                position.apply_sell(
                    amount, fill_price, result.amount_out, result.tx_ref,
                    kind="partial_close", reason=level_id,
                )
                position.executed_levels[level_id] = now
                position.failed_attempts.pop(action.key, None)
                position.last_error = None

                closed = position.status == PositionStatus.CLOSED
                if closed:
                    position.mark_as_closed(fill_price, ExitReason.PARTIAL_TAKE_PROFIT, now)
        except ConcurrencyViolation as e:
            logger.warning(str(e), extra={"position_id": position_id})
            return False

        trading_logger.position_event(
            position_id, "partial_close", position.token_id, fill_price,
            amount=amount, reason=level_id, tx_ref=result.tx_ref,
        )
        self._emit(PartialCloseExecuted(
            timestamp=now,
            metadata={},
            position_id=position_id,
            token_id=position.token_id,
            level_id=level_id,
            amount_sold=amount,
            price=fill_price,
            quote_received=result.amount_out,
            amount_remaining=position.amount_remaining,
            strategy_id=position.strategy_id,
            tx_ref=result.tx_ref,
        ))

        if closed:
            self._finish_close(position, result.tx_ref)
        else:
            self.persist(position)
        return True

    async def apply_scale_in(
        self,
        position_id: str,
        phase: Union[ScaleInPhase, int],
        price: Optional[float] = None,
    ) -> bool:
        """
        Buy phase.size_fraction * budget more of the position's token.

        Only the plan's next pending phase may execute; an already-executed
        phase is a no-op.
        """
        position = self._require_active(position_id)
        plan = position.scale_in_plan
        if plan is None:
            raise InvalidInputError(f"Position {position_id} has no scale-in plan")

        phase_number = phase.phase_number if isinstance(phase, ScaleInPhase) else phase
        planned = next((p for p in plan.phases if p.phase_number == phase_number), None)
        if planned is None:
            raise InvalidInputError(f"Position {position_id} has no scale-in phase {phase_number}")
        if planned.executed:
            logger.debug(f"Scale-in phase {phase_number} already executed for {position_id}")
            return False
        if plan.pending_phase() is not planned:
            raise InvalidInputError(
                f"Scale-in phase {phase_number} cannot run before earlier phases"
            )

        action = Action(
            ActionType.SCALE_IN,
            fraction=planned.size_fraction,
            phase_number=phase_number,
            price=price,
        )
        if self.is_exhausted(position, action.key):
            return False

        quote = plan.phase_amount(planned)
        options = self.trade_options(action)

        try:
            with self._action_guard(position, action.key):
                try:
                    result = await self._execute("buy", position, quote, options)
                except TradeExecutionError as e:
                    self._record_failure(position, action, e)
                    return False

                if not self._still_active(position) or planned.executed:
                    self._discard_result(position, action, result)
                    return False

                now = self.clock()
                spent = result.amount_in or quote
                fill_price = spent / result.amount_out
                position.apply_buy(
                    result.amount_out, fill_price, spent, result.tx_ref,
                    kind="scale_in", reason=f"phase_{phase_number}",
                )
                plan.mark_executed(phase_number, now)
                position.failed_attempts.pop(action.key, None)
                position.last_error = None
        except ConcurrencyViolation as e:
            logger.warning(str(e), extra={"position_id": position_id})
            return False

        self.persist(position)
        trading_logger.position_event(
            position_id, "scale_in", position.token_id, fill_price,
            amount=result.amount_out, reason=f"phase_{phase_number}", tx_ref=result.tx_ref,
        )
        self._emit(ScaleInExecuted(
            timestamp=now,
            metadata={},
            position_id=position_id,
            token_id=position.token_id,
            phase_number=phase_number,
            amount_bought=result.amount_out,
            price=fill_price,
            quote_spent=spent,
            new_cost_basis=position.cost_basis,
            strategy_id=position.strategy_id,
            tx_ref=result.tx_ref,
        ))
        return True

    # ========================================================================
    # Retry accounting
    # ========================================================================

    def is_exhausted(self, position: Position, action_key: str) -> bool:
        """True once an action has failed max_action_retries times."""
        attempts = position.failed_attempts.get(action_key, 0)
        if attempts >= self.config.max_action_retries:
            logger.debug(
                f"Action {action_key} on {position.position_id} exhausted "
                f"({attempts} failures), waiting for manual intervention"
            )
            return True
        return False

    def _record_failure(
        self,
        position: Position,
        action: Action,
        error: TradeExecutionError,
        manual: bool = False,
    ) -> None:
        attempts = position.failed_attempts.get(action.key, 0) + 1
        position.failed_attempts[action.key] = attempts
        position.last_error = str(error)
        position.updated_at = self.clock()
        self.persist(position)

        logger.warning(
            f"Action {action.key} failed on {position.position_id} "
            f"(attempt {attempts}/{self.config.max_action_retries}): {error}",
            extra={
                "position_id": position.position_id,
                "token_id": position.token_id,
                "action": action.key,
                "attempts": attempts,
                "tx_ref": error.tx_ref,
            },
        )

        if not manual and attempts == self.config.max_action_retries:
            trading_logger.risk_alert(
                "action_failed", "critical",
                f"{action.key} on {position.position_id} failed {attempts} times, "
                "manual intervention required",
                position_id=position.position_id,
                token_id=position.token_id,
            )
            self._emit(ActionFailed(
                timestamp=self.clock(),
                metadata={"reason": action.reason.value if action.reason else None},
                position_id=position.position_id,
                token_id=position.token_id,
                action=action.key,
                attempts=attempts,
                error=str(error),
                strategy_id=position.strategy_id,
            ))

    # ========================================================================
    # Helpers
    # ========================================================================

    def trade_options(self, action: Action) -> TradeOptions:
        """Slippage / fee settings for an action."""
        cfg = self.config
        if action.action_type == ActionType.SCALE_IN:
            return TradeOptions(
                slippage_percent=cfg.buy_slippage_percent,
                max_retries=cfg.executor_max_retries,
                priority_fee_lamports=cfg.priority_fee_lamports,
            )
        if action.action_type == ActionType.PARTIAL_CLOSE:
            return TradeOptions(
                slippage_percent=cfg.partial_close_slippage_percent,
                max_retries=cfg.executor_max_retries,
                priority_fee_lamports=cfg.priority_fee_lamports,
            )
        if action.reason == ExitReason.STOP_LOSS:
            return TradeOptions(
                slippage_percent=cfg.stop_loss_slippage_percent,
                max_retries=cfg.executor_max_retries,
                priority_fee_lamports=cfg.urgent_priority_fee_lamports,
                skip_preflight=True,
            )
        return TradeOptions(
            slippage_percent=cfg.full_close_slippage_percent,
            max_retries=cfg.executor_max_retries,
            priority_fee_lamports=cfg.priority_fee_lamports,
        )

    @contextmanager
    def _action_guard(self, position: Position, action_key: str) -> Iterator[None]:
        """
        Claim the position's pending-action slot.

        Check and set happen without an await in between, so on a single
        event loop no other coroutine can claim the slot concurrently.
        """
        if position.pending_action is not None:
            raise ConcurrencyViolation(position.position_id, position.pending_action, action_key)
        position.pending_action = action_key
        try:
            yield
        finally:
            position.pending_action = None

    async def _execute(
        self, side: str, position: Position, amount: float, options: TradeOptions
    ) -> TradeResult:
        trading_logger.order_event(
            position.token_id, "submitted", side, amount,
            position_id=position.position_id,
        )
        call = self.executor.sell if side == "sell" else self.executor.buy
        try:
            result = await call(position.token_id, amount, options)
        except Exception as e:
            raise TradeExecutionError(f"{side} raised {e.__class__.__name__}: {e}") from e

        if result is None or not result.success:
            error = result.error if result is not None else "executor returned no result"
            raise TradeExecutionError(
                f"{side} failed: {error}", tx_ref=result.tx_ref if result else None
            )
        if result.amount_out <= 0:
            raise TradeExecutionError(f"{side} returned no output", tx_ref=result.tx_ref)

        trading_logger.order_event(
            position.token_id, "filled", side, amount,
            position_id=position.position_id, tx_ref=result.tx_ref,
        )
        return result

    def _require_active(self, position_id: str) -> Position:
        position = self._positions.get(position_id)
        if position is None or not position.is_active:
            raise InvalidInputError(f"No open position with id {position_id!r}")
        return position

    def _still_active(self, position: Position) -> bool:
        return self._positions.get(position.position_id) is position and position.is_active

    def _discard_result(self, position: Position, action: Action, result: TradeResult) -> None:
        logger.warning(
            f"Position {position.position_id} changed while {action.key} was in flight; "
            f"result not applied (tx={result.tx_ref})",
            extra={"position_id": position.position_id, "action": action.key, "tx_ref": result.tx_ref},
        )

    def _finish_close(self, position: Position, tx_ref: Optional[str]) -> None:
        self._positions.pop(position.position_id, None)
        self.persist(position)

        trading_logger.position_event(
            position.position_id, "closed", position.token_id, position.exit_price,
            reason=position.exit_reason.value, tx_ref=tx_ref,
        )
        self._emit(PositionClosed(
            timestamp=position.exit_time,
            metadata={},
            position_id=position.position_id,
            token_id=position.token_id,
            entry_price=position.entry_price,
            cost_basis=position.cost_basis,
            exit_price=position.exit_price,
            amount=position.amount_total,
            exit_reason=position.exit_reason.value,
            realized_pnl_pct=position.realized_pnl_pct,
            realized_profit=position.realized_profit,
            hold_duration_seconds=position.hold_seconds(position.exit_time),
            strategy_id=position.strategy_id,
            tx_ref=tx_ref,
        ))

    def _emit(self, event: Event) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(event)

    def get_stats(self) -> Dict[str, float]:
        open_positions = self.get_open_positions()
        return {
            "open_positions": len(open_positions),
            "pending_actions": sum(1 for p in open_positions if p.pending_action),
            "exhausted_actions": sum(
                1 for p in open_positions
                for attempts in p.failed_attempts.values()
                if attempts >= self.config.max_action_retries
            ),
            "invested_quote": sum(p.invested_quote for p in open_positions),
        }
