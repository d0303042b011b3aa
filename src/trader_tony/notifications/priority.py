"""
Priority Handling for Notifications

Maps position-engine events to priority levels and batches everything that
is not urgent. CRITICAL notifications go out immediately; WARNING and INFO
notifications are collected and sent as periodic summaries.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from trader_tony.utils.time_utils import now_utc

logger = logging.getLogger(__name__)


class NotificationPriority(Enum):
    """Priority levels for notifications"""
    CRITICAL = "critical"  # Immediate email (action retries exhausted, entry failures)
    WARNING = "warning"    # Batched email (losing exits)
    INFO = "info"          # Batched email (opens, profitable exits, partials, scale-ins)


@dataclass
class PriorityConfig:
    """Configuration for a priority level"""
    send_immediately: bool
    batch_interval_seconds: int
    max_retries: int


BatchCallback = Callable[[NotificationPriority, List[dict]], Awaitable[None]]


class PriorityHandler:
    """
    Handles priority-based routing and batching of notifications.

    - CRITICAL: sent immediately with retries
    - WARNING: batched every 5 minutes by default
    - INFO: batched every 10 minutes by default
    - per-type hourly rate limits
    """

    DEFAULT_CONFIGS: Dict[NotificationPriority, PriorityConfig] = {
        NotificationPriority.CRITICAL: PriorityConfig(
            send_immediately=True,
            batch_interval_seconds=0,
            max_retries=5,
        ),
        NotificationPriority.WARNING: PriorityConfig(
            send_immediately=False,
            batch_interval_seconds=300,
            max_retries=2,
        ),
        NotificationPriority.INFO: PriorityConfig(
            send_immediately=False,
            batch_interval_seconds=600,
            max_retries=1,
        ),
    }

    # PositionClosed is INFO here; losing exits are promoted by the service
    EVENT_PRIORITY_MAP: Dict[str, NotificationPriority] = {
        "ActionFailed": NotificationPriority.CRITICAL,
        "EntryFailed": NotificationPriority.CRITICAL,
        "PositionOpened": NotificationPriority.INFO,
        "PositionClosed": NotificationPriority.INFO,
        "PartialCloseExecuted": NotificationPriority.INFO,
        "ScaleInExecuted": NotificationPriority.INFO,
    }

    def __init__(
        self,
        configs: Optional[Dict[NotificationPriority, PriorityConfig]] = None,
        max_per_hour: Optional[Dict[str, int]] = None,
        clock: Callable[[], datetime] = now_utc,
        check_interval_seconds: float = 10.0,
    ):
        """
        Args:
            configs: Optional custom priority configurations
            max_per_hour: Hourly cap per priority value ("critical", "warning", "info")
            clock: Time source, injectable for tests
            check_interval_seconds: How often the batch processor looks at the queues
        """
        self.configs = configs or dict(self.DEFAULT_CONFIGS)
        self.max_per_hour = max_per_hour or {"critical": 50, "warning": 20, "info": 10}
        self.clock = clock
        self.check_interval_seconds = check_interval_seconds

        now = self.clock()
        self.batched_notifications: Dict[NotificationPriority, List[dict]] = {
            NotificationPriority.WARNING: [],
            NotificationPriority.INFO: [],
        }
        self.last_batch_send: Dict[NotificationPriority, datetime] = {
            NotificationPriority.WARNING: now,
            NotificationPriority.INFO: now,
        }
        self.rate_limit_tracker: Dict[str, List[datetime]] = {}
        self.is_running = False

    @classmethod
    def from_intervals(
        cls,
        warning_seconds: int,
        info_seconds: int,
        max_per_hour: Optional[Dict[str, int]] = None,
    ) -> "PriorityHandler":
        """Default configs with custom batch intervals."""
        configs = dict(cls.DEFAULT_CONFIGS)
        configs[NotificationPriority.WARNING] = PriorityConfig(
            send_immediately=False, batch_interval_seconds=warning_seconds, max_retries=2
        )
        configs[NotificationPriority.INFO] = PriorityConfig(
            send_immediately=False, batch_interval_seconds=info_seconds, max_retries=1
        )
        return cls(configs=configs, max_per_hour=max_per_hour)

    def get_priority(self, event_type: str) -> NotificationPriority:
        return self.EVENT_PRIORITY_MAP.get(event_type, NotificationPriority.INFO)

    def should_send_immediately(self, priority: NotificationPriority) -> bool:
        return self.configs[priority].send_immediately

    def get_max_retries(self, priority: NotificationPriority) -> int:
        return self.configs[priority].max_retries

    def add_to_batch(self, priority: NotificationPriority, notification: dict) -> bool:
        """
        Queue a notification for the next batch.

        Returns:
            False if the priority is not batched
        """
        if priority not in self.batched_notifications:
            logger.warning(f"Cannot batch {priority.value} priority notifications")
            return False

        self.batched_notifications[priority].append(notification)
        logger.debug(
            f"Added notification to {priority.value} batch. "
            f"Queue size: {len(self.batched_notifications[priority])}"
        )
        return True

    def should_send_batch(self, priority: NotificationPriority) -> bool:
        if not self.batched_notifications.get(priority):
            return False

        elapsed = (self.clock() - self.last_batch_send[priority]).total_seconds()
        return elapsed >= self.configs[priority].batch_interval_seconds

    def get_batch(self, priority: NotificationPriority) -> List[dict]:
        """Get and clear the batch for a priority level."""
        if priority not in self.batched_notifications:
            return []

        batch = list(self.batched_notifications[priority])
        self.batched_notifications[priority].clear()
        self.last_batch_send[priority] = self.clock()

        logger.info(f"Retrieved {len(batch)} notifications from {priority.value} batch")
        return batch

    def is_rate_limited(self, notification_type: str, priority: NotificationPriority) -> bool:
        """
        Check and record one notification against its hourly limit.

        Returns:
            True if the notification should be dropped
        """
        now = self.clock()
        one_hour_ago = now - timedelta(hours=1)
        limit = self.max_per_hour.get(priority.value, 10)

        recent = [
            ts for ts in self.rate_limit_tracker.get(notification_type, [])
            if ts > one_hour_ago
        ]
        self.rate_limit_tracker[notification_type] = recent

        if len(recent) >= limit:
            logger.warning(
                f"Rate limit exceeded for {notification_type}: {len(recent)}/{limit} per hour"
            )
            return True

        recent.append(now)
        return False

    async def flush_due(self, send_callback: BatchCallback, force: bool = False) -> int:
        """
        Send every batch whose interval has elapsed (or all non-empty ones if force).

        Returns:
            Number of batches handed to send_callback
        """
        sent = 0
        for priority in (NotificationPriority.WARNING, NotificationPriority.INFO):
            if force:
                due = bool(self.batched_notifications[priority])
            else:
                due = self.should_send_batch(priority)
            if not due:
                continue

            batch = self.get_batch(priority)
            try:
                await send_callback(priority, batch)
                sent += 1
            except Exception as e:
                logger.error(f"Failed to send {priority.value} batch: {e}")
        return sent

    async def start_batch_processor(self, send_callback: BatchCallback) -> None:
        """Periodically send due batches until stop() is called."""
        self.is_running = True
        logger.info("Started notification batch processor")

        try:
            while self.is_running:
                await self.flush_due(send_callback)
                await asyncio.sleep(self.check_interval_seconds)
        except asyncio.CancelledError:
            logger.info("Batch processor cancelled")
            raise
        finally:
            self.is_running = False

    def stop(self) -> None:
        self.is_running = False
        logger.info("Stopped notification batch processor")

    def get_stats(self) -> dict:
        return {
            "batched_counts": {
                priority.value: len(notifications)
                for priority, notifications in self.batched_notifications.items()
            },
            "last_batch_send": {
                priority.value: timestamp.isoformat()
                for priority, timestamp in self.last_batch_send.items()
            },
            "rate_limit_tracker": {
                notification_type: len(timestamps)
                for notification_type, timestamps in self.rate_limit_tracker.items()
            },
        }
