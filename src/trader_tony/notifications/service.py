"""
Notification Service - Main Orchestrator

Subscribes to position-engine events and routes them by priority: failures
that need an operator are emailed immediately, everything else is batched
into periodic summaries.
"""

import asyncio
import logging
import os
from typing import Any, Dict, Optional

from trader_tony.config.settings import NotificationConfig
from trader_tony.core.event_bus import EventBus
from trader_tony.core.events import (
    ActionFailed,
    EntryFailed,
    Event,
    PartialCloseExecuted,
    PositionClosed,
    PositionOpened,
    ScaleInExecuted,
)
from trader_tony.utils.time_utils import format_timestamp, now_utc

from .priority import NotificationPriority, PriorityHandler
from .sendgrid_client import SendGridNotificationService

logger = logging.getLogger(__name__)


class NotificationSystem:
    """
    Main notification orchestrator.

    - subscribes to position events on the event bus
    - sends CRITICAL notifications immediately
    - batches WARNING and INFO notifications
    - tracks notification statistics
    """

    def __init__(
        self,
        event_bus: EventBus,
        sendgrid_service: SendGridNotificationService,
        priority_handler: Optional[PriorityHandler] = None,
    ):
        self.event_bus = event_bus
        self.sendgrid = sendgrid_service
        self.priority_handler = priority_handler or PriorityHandler()

        self.is_running = False
        self.batch_processor_task: Optional[asyncio.Task] = None

        self._handlers = {
            ActionFailed: self._handle_action_failed,
            EntryFailed: self._handle_entry_failed,
            PositionOpened: self._handle_position_opened,
            PositionClosed: self._handle_position_closed,
            PartialCloseExecuted: self._handle_partial_close,
            ScaleInExecuted: self._handle_scale_in,
        }

        self.stats: Dict[str, Any] = {
            "notifications_sent": 0,
            "notifications_failed": 0,
            "notifications_rate_limited": 0,
            "critical_sent": 0,
            "warning_batched": 0,
            "info_batched": 0,
            "started_at": None,
        }

    @classmethod
    def from_config(cls, event_bus: EventBus, config: NotificationConfig) -> "NotificationSystem":
        """Build the SendGrid service and priority handler from configuration."""
        sendgrid = SendGridNotificationService(
            api_key=None if config.use_mock else os.getenv(config.api_key_env),
            from_email=config.from_email,
            to_emails=config.to_emails,
            mock_mode=config.use_mock,
        )
        handler = PriorityHandler.from_intervals(
            warning_seconds=config.warning_batch_interval_seconds,
            info_seconds=config.info_batch_interval_seconds,
            max_per_hour=config.max_per_hour,
        )
        return cls(event_bus, sendgrid, handler)

    async def start(self):
        """Subscribe to events and start the batch processor."""
        if self.is_running:
            logger.warning("NotificationSystem already running")
            return

        for event_type, handler in self._handlers.items():
            self.event_bus.subscribe(event_type, handler)

        self.batch_processor_task = asyncio.create_task(
            self.priority_handler.start_batch_processor(self._send_batch_notifications)
        )

        self.is_running = True
        self.stats["started_at"] = format_timestamp(now_utc())
        logger.info("NotificationSystem started")

    async def stop(self):
        """Unsubscribe, stop batching and send whatever is still queued."""
        if not self.is_running:
            return

        self.priority_handler.stop()
        if self.batch_processor_task:
            self.batch_processor_task.cancel()
            try:
                await self.batch_processor_task
            except asyncio.CancelledError:
                pass
            self.batch_processor_task = None

        for event_type, handler in self._handlers.items():
            self.event_bus.unsubscribe(event_type, handler)

        await self.priority_handler.flush_due(self._send_batch_notifications, force=True)

        self.is_running = False
        logger.info("NotificationSystem stopped")

    # ========================================================================
    # CRITICAL Event Handlers (send immediately)
    # ========================================================================

    async def _handle_action_failed(self, event: ActionFailed):
        logger.error(
            f"Action {event.action} on {event.position_id} failed {event.attempts} times: {event.error}",
            extra={"position_id": event.position_id, "action": event.action},
        )
        await self._send_critical(
            "action_failed",
            event,
            self.sendgrid.notify_action_failed,
        )

    async def _handle_entry_failed(self, event: EntryFailed):
        logger.error(
            f"Entry into {event.token_id} for {event.strategy_id} failed: {event.error}",
            extra={"strategy_id": event.strategy_id, "token_id": event.token_id},
        )
        await self._send_critical(
            "entry_failed",
            event,
            self.sendgrid.notify_entry_failed,
        )

    async def _send_critical(self, notification_type: str, event: Event, send) -> None:
        priority = NotificationPriority.CRITICAL
        if self.priority_handler.is_rate_limited(notification_type, priority):
            self.stats["notifications_rate_limited"] += 1
            return

        success = await send(
            event.to_dict(),
            max_retries=self.priority_handler.get_max_retries(priority),
        )
        if success:
            self.stats["notifications_sent"] += 1
            self.stats["critical_sent"] += 1
        else:
            self.stats["notifications_failed"] += 1

    # ========================================================================
    # Batched Event Handlers
    # ========================================================================

    async def _handle_position_opened(self, event: PositionOpened):
        self._batch(
            NotificationPriority.INFO,
            event,
            f"{event.token_id}: bought {event.amount:,.4f} @ {event.entry_price:.10g} SOL "
            f"({event.quote_amount:.4f} SOL)",
        )

    async def _handle_position_closed(self, event: PositionClosed):
        # Losses are batched as WARNING
        if event.realized_profit < 0:
            priority = NotificationPriority.WARNING
        else:
            priority = NotificationPriority.INFO
        self._batch(
            priority,
            event,
            f"{event.token_id}: closed ({event.exit_reason}) @ {event.exit_price:.10g} SOL, "
            f"P&L {event.realized_profit:+.4f} SOL ({event.realized_pnl_pct:+.2f}%)",
        )

    async def _handle_partial_close(self, event: PartialCloseExecuted):
        self._batch(
            NotificationPriority.INFO,
            event,
            f"{event.token_id}: {event.level_id} sold {event.amount_sold:,.4f} "
            f"@ {event.price:.10g} SOL, {event.amount_remaining:,.4f} left",
        )

    async def _handle_scale_in(self, event: ScaleInExecuted):
        self._batch(
            NotificationPriority.INFO,
            event,
            f"{event.token_id}: phase {event.phase_number} bought {event.amount_bought:,.4f} "
            f"@ {event.price:.10g} SOL, cost basis now {event.new_cost_basis:.10g}",
        )

    def _batch(self, priority: NotificationPriority, event: Event, message: str) -> None:
        notification = {
            "type": event.event_name,
            "message": message,
            "timestamp": format_timestamp(event.timestamp),
        }
        if self.priority_handler.add_to_batch(priority, notification):
            self.stats[f"{priority.value}_batched"] += 1

    async def _send_batch_notifications(self, priority: NotificationPriority, notifications: list):
        if self.priority_handler.is_rate_limited(f"{priority.value}_batch", priority):
            self.stats["notifications_rate_limited"] += 1
            return

        logger.info(f"Sending {priority.value} batch: {len(notifications)} notifications")
        success = await self.sendgrid.notify_batch_summary(
            priority,
            notifications,
            max_retries=self.priority_handler.get_max_retries(priority),
        )

        if success:
            self.stats["notifications_sent"] += 1
        else:
            self.stats["notifications_failed"] += 1
            logger.error(f"Failed to send batch notification: {priority.value}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "priority_handler": self.priority_handler.get_stats(),
        }
