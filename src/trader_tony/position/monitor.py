"""
Position Monitor - fixed-period tick driver for open positions.

Every tick the monitor:
1. fetches one price per distinct token (bounded concurrency, short TTL cache)
2. updates each position's current and peak price
3. asks the scale-in planner, then the exit evaluator, for at most one action
4. starts the resulting actions in position order and waits for them

The monitor is IDLE or TICKING. A tick still running when the next period
comes around causes that period to be skipped, never queued.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from trader_tony.config.settings import MonitorConfig
from trader_tony.integrations.dex.aggregator_adapter import PriceOracle
from trader_tony.position import exit_rules, scale_in
from trader_tony.position.errors import PriceUnavailableError
from trader_tony.position.manager import PositionManager
from trader_tony.position.models import Action, Position
from trader_tony.utils.logger import PerformanceLogger
from trader_tony.utils.time_utils import format_timestamp, now_utc

logger = logging.getLogger(__name__)


class MonitorState(str, Enum):
    IDLE = "idle"
    TICKING = "ticking"


@dataclass
class TickReport:
    """What happened during one tick."""
    tick_number: int
    started_at: datetime
    positions_checked: int = 0
    positions_skipped_pending: int = 0
    prices_fetched: int = 0
    price_failures: List[str] = field(default_factory=list)
    actions: List[Tuple[str, str]] = field(default_factory=list)
    actions_succeeded: int = 0
    errors: int = 0
    duration_seconds: float = 0.0


class PositionMonitor:
    """
    Drives exit and scale-in evaluation for every open position.

    Usage:
        monitor = PositionMonitor(manager, oracle, MonitorConfig(tick_interval_seconds=8))
        await monitor.start()
        ...
        await monitor.stop()

    Tests call tick() directly instead of starting the loop.
    """

    def __init__(
        self,
        manager: PositionManager,
        oracle: PriceOracle,
        config: Optional[MonitorConfig] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.manager = manager
        self.oracle = oracle
        self.config = config or MonitorConfig()
        self.clock = clock
        self.performance = PerformanceLogger(logger)

        self.state = MonitorState.IDLE
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._current_tick: Optional[asyncio.Task] = None

        # token_id -> (price, loop time fetched)
        self._price_cache: Dict[str, Tuple[float, float]] = {}
        self._last_logged_price: Dict[str, float] = {}

        # Statistics
        self.ticks_completed = 0
        self.ticks_skipped = 0
        self.actions_executed = 0
        self.actions_failed = 0
        self.price_failures = 0
        self.last_report: Optional[TickReport] = None

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Start the periodic tick loop."""
        if self._running:
            logger.warning("PositionMonitor already running")
            return

        self._running = True
        self._loop_task = asyncio.create_task(self._run())
        logger.info(
            f"Position monitor started (tick every {self.config.tick_interval_seconds}s, "
            f"{self.config.max_concurrent_checks} concurrent price checks)"
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """
        Stop the loop, letting a tick in progress finish its actions.

        Args:
            timeout: Seconds to wait for the running tick before cancelling it
        """
        if not self._running:
            return

        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._current_tick and not self._current_tick.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._current_tick), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Tick still running at shutdown - cancelling")
                self._current_tick.cancel()
                try:
                    await self._current_tick
                except asyncio.CancelledError:
                    pass
            except Exception:
                # Already logged by _on_tick_done
                pass

        logger.info("Position monitor stopped")

    def _on_tick_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Monitoring tick failed", exc_info=error)

    @property
    def is_running(self) -> bool:
        return self._running

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.config.tick_interval_seconds
        next_tick = loop.time()

        while self._running:
            if self._current_tick is not None and not self._current_tick.done():
                self.ticks_skipped += 1
                logger.warning(
                    f"Previous tick still running after {interval}s - skipping this tick"
                )
            else:
                self._current_tick = asyncio.create_task(self.tick())
                self._current_tick.add_done_callback(self._on_tick_done)

            next_tick += interval
            now = loop.time()
            if next_tick < now:
                # Fell more than a period behind; realign instead of bursting
                next_tick = now + interval
            await asyncio.sleep(next_tick - now)

    # ========================================================================
    # Tick
    # ========================================================================

    async def tick(self) -> Optional[TickReport]:
        """
        Run one monitoring pass.

        Returns:
            TickReport, or None if a tick was already in progress
        """
        if self.state == MonitorState.TICKING:
            self.ticks_skipped += 1
            logger.warning("Tick requested while TICKING - skipped")
            return None

        self.state = MonitorState.TICKING
        try:
            with self.performance.timer("monitor_tick"):
                report = await self._run_tick()
            self.ticks_completed += 1
            self.last_report = report
            return report
        finally:
            self.state = MonitorState.IDLE

    async def _run_tick(self) -> TickReport:
        loop = asyncio.get_running_loop()
        started = loop.time()
        now = self.clock()
        report = TickReport(tick_number=self.ticks_completed + 1, started_at=now)

        open_positions = self.manager.get_open_positions()
        positions = [p for p in open_positions if p.pending_action is None]
        report.positions_skipped_pending = len(open_positions) - len(positions)
        report.positions_checked = len(positions)

        if not positions:
            report.duration_seconds = loop.time() - started
            return report

        tokens = list(dict.fromkeys(p.token_id for p in positions))
        prices = await self._fetch_prices(tokens)
        report.prices_fetched = sum(1 for value in prices.values() if not isinstance(value, Exception))

        planned: List[Tuple[Position, Action]] = []
        for position in positions:
            # Closed or claimed by an operator action while prices were fetched
            if not position.is_active or position.pending_action is not None:
                continue
            try:
                action = self._plan_position(position, prices.get(position.token_id), now)
            except PriceUnavailableError as e:
                self.price_failures += 1
                report.price_failures.append(position.position_id)
                logger.warning(
                    f"Skipping {position.position_id} this tick: {e}",
                    extra={"position_id": position.position_id, "token_id": position.token_id},
                )
                continue
            except Exception as e:
                report.errors += 1
                logger.exception(
                    f"Error evaluating {position.position_id}: {e}",
                    extra={"position_id": position.position_id},
                )
                continue

            if action is not None:
                planned.append((position, action))

        # Tasks start in creation order, so actions begin in position order
        tasks = [
            asyncio.create_task(self._execute(position, action))
            for position, action in planned
        ]
        report.actions = [(position.position_id, action.key) for position, action in planned]

        if tasks:
            outcomes = await asyncio.gather(*tasks)
            report.actions_succeeded = sum(1 for outcome in outcomes if outcome is True)
            report.errors += sum(1 for outcome in outcomes if outcome is None)

        report.duration_seconds = loop.time() - started
        if report.duration_seconds > self.config.tick_interval_seconds:
            logger.warning(
                f"Tick {report.tick_number} took {report.duration_seconds:.2f}s "
                f"(interval {self.config.tick_interval_seconds}s)"
            )
        return report

    def _plan_position(
        self,
        position: Position,
        price: Union[float, Exception, None],
        now: datetime,
    ) -> Optional[Action]:
        """Update price tracking and choose at most one action."""
        if price is None:
            raise PriceUnavailableError(position.token_id, "no price fetched")
        if isinstance(price, Exception):
            raise price

        if position.update_price(price):
            self.manager.persist(position)

        phase = scale_in.next_phase(position, price)
        if phase is not None:
            action = scale_in.scale_in_action(phase, price)
            if not self.manager.is_exhausted(position, action.key):
                return action

        action = exit_rules.evaluate(position, price, now)
        if action is not None and self.manager.is_exhausted(position, action.key):
            return None
        return action

    async def _execute(self, position: Position, action: Action) -> Optional[bool]:
        """Run one action; never raises. Returns None on an unexpected error."""
        try:
            success = await self.manager.apply_action(position.position_id, action)
        except Exception as e:
            self.actions_failed += 1
            logger.exception(
                f"Action {action.key} crashed for {position.position_id}: {e}",
                extra={"position_id": position.position_id, "action": action.key},
            )
            return None

        if success:
            self.actions_executed += 1
        else:
            self.actions_failed += 1
        return success

    # ========================================================================
    # Prices
    # ========================================================================

    async def _fetch_prices(self, tokens: List[str]) -> Dict[str, Union[float, Exception]]:
        """One lookup per token, at most max_concurrent_checks at a time."""
        semaphore = asyncio.Semaphore(self.config.max_concurrent_checks)

        async def fetch(token_id: str) -> Union[float, Exception]:
            cached = self._cached_price(token_id)
            if cached is not None:
                return cached

            async with semaphore:
                try:
                    price = await self.oracle.get_price(token_id)
                except PriceUnavailableError as e:
                    return e
                except Exception as e:
                    return PriceUnavailableError(token_id, f"oracle error: {e}")

            if not isinstance(price, (int, float)) or not math.isfinite(price) or price <= 0:
                return PriceUnavailableError(token_id, f"oracle returned unusable price {price!r}")

            price = float(price)
            self._price_cache[token_id] = (price, asyncio.get_running_loop().time())
            self._log_price_change(token_id, price)
            return price

        results = await asyncio.gather(*(fetch(token_id) for token_id in tokens))
        return dict(zip(tokens, results))

    def _cached_price(self, token_id: str) -> Optional[float]:
        entry = self._price_cache.get(token_id)
        if entry is None:
            return None
        price, fetched_at = entry
        if asyncio.get_running_loop().time() - fetched_at < self.config.price_cache_ttl_seconds:
            return price
        return None

    def _log_price_change(self, token_id: str, price: float) -> None:
        previous = self._last_logged_price.get(token_id)
        if previous is None:
            self._last_logged_price[token_id] = price
            return

        change_pct = (price - previous) / previous * 100
        if abs(change_pct) >= self.config.price_change_log_threshold_pct:
            logger.info(
                f"Price {token_id}: {previous:.10g} -> {price:.10g} ({change_pct:+.2f}%)",
                extra={"token_id": token_id, "price": price},
            )
            self._last_logged_price[token_id] = price

    # ========================================================================
    # Statistics
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        last = self.last_report
        return {
            "state": self.state.value,
            "running": self._running,
            "tick_interval_seconds": self.config.tick_interval_seconds,
            "ticks_completed": self.ticks_completed,
            "ticks_skipped": self.ticks_skipped,
            "actions_executed": self.actions_executed,
            "actions_failed": self.actions_failed,
            "price_failures": self.price_failures,
            "last_tick_at": format_timestamp(last.started_at) if last else None,
            "last_tick_duration_seconds": round(last.duration_seconds, 4) if last else None,
        }
