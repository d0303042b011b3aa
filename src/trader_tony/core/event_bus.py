"""
Event Bus - fire-and-forget notifier for trade lifecycle events.

The position manager and strategy trader emit events without waiting on
whoever consumes them. Events are queued and dispatched from a background
task, so a slow email or a failing handler never holds up a monitoring tick.

Handlers are looked up along the event's class hierarchy: subscribing to
Event receives everything, subscribing to PositionClosed receives only
closes. Coroutine handlers run concurrently per event; plain functions run
inline on the loop, so bookkeeping handlers never race the engine.
"""

import asyncio
import inspect
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Type

from trader_tony.core.events import Event
from trader_tony.utils.time_utils import format_timestamp, now_utc

logger = logging.getLogger(__name__)

Handler = Callable[[Event], Any]


def _handler_name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", repr(handler))


# ============================================================================
# Event Bus Statistics
# ============================================================================

@dataclass
class EventBusStats:
    """Counters for the /stats endpoint."""
    events_published: int = 0
    events_processed: int = 0
    events_dropped: int = 0
    handlers_executed: int = 0
    handler_errors: int = 0
    processing_seconds: float = 0.0
    published_by_type: Counter = field(default_factory=Counter)
    dropped_by_type: Counter = field(default_factory=Counter)
    started_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None

    def to_dict(self, queue_size: int) -> Dict[str, Any]:
        processed = self.events_processed
        return {
            "events_published": self.events_published,
            "events_processed": processed,
            "events_dropped": self.events_dropped,
            "handlers_executed": self.handlers_executed,
            "handler_errors": self.handler_errors,
            "avg_processing_time_ms": (
                round(self.processing_seconds / processed * 1000, 3) if processed else 0.0
            ),
            "queue_size": queue_size,
            "published_by_type": dict(self.published_by_type),
            "dropped_by_type": dict(self.dropped_by_type),
            "started_at": format_timestamp(self.started_at),
            "last_event_at": format_timestamp(self.last_event_at),
        }


# ============================================================================
# Event Bus
# ============================================================================

class EventBus:
    """
    Queue-backed publish/subscribe for engine events.

    Usage:
        bus = EventBus()
        bus.subscribe(PositionClosed, on_closed)
        await bus.start()

        bus.emit(PositionClosed(...))          # never blocks, may drop
        await bus.publish(ActionFailed(...))   # waits briefly for queue space

        await bus.stop()                       # dispatches what is queued
    """

    def __init__(self, max_queue_size: int = 1000, publish_timeout: float = 1.0):
        """
        Args:
            max_queue_size: Queued events beyond this are dropped by emit()
            publish_timeout: Seconds publish() waits for queue space
        """
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.publish_timeout = publish_timeout

        # {EventClass: [handler, ...]}; Event itself holds the wildcard handlers
        self._handlers: Dict[Type[Event], List[Handler]] = defaultdict(list)

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stats = EventBusStats()

        logger.info(f"EventBus initialized (max queue size: {max_queue_size})")

    # ========================================================================
    # Subscription Management
    # ========================================================================

    def subscribe(self, event_type: Type[Event], handler: Handler) -> None:
        """Register handler for event_type and its subclasses."""
        handlers = self._handlers[event_type]
        if handler in handlers:
            logger.warning(f"{_handler_name(handler)} already subscribed to {event_type.__name__}")
            return
        handlers.append(handler)
        logger.debug(f"Subscribed {_handler_name(handler)} to {event_type.__name__}")

    def subscribe_to_all(self, handler: Handler) -> None:
        self.subscribe(Event, handler)

    def unsubscribe(self, event_type: Type[Event], handler: Handler) -> None:
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def unsubscribe_all(self, handler: Handler) -> None:
        for handlers in self._handlers.values():
            if handler in handlers:
                handlers.remove(handler)

    def get_subscriber_count(self, event_type: Optional[Type[Event]] = None) -> int:
        """Handlers registered for event_type, or for every concrete type (wildcards excluded)."""
        if event_type is not None:
            return len(self._handlers.get(event_type, ()))
        return sum(len(h) for t, h in self._handlers.items() if t is not Event)

    def _handlers_for(self, event: Event) -> List[Handler]:
        matched: List[Handler] = []
        for cls in type(event).__mro__:
            for handler in self._handlers.get(cls, ()):
                if handler not in matched:
                    matched.append(handler)
        return matched

    # ========================================================================
    # Event Publishing
    # ========================================================================

    def emit(self, event: Event) -> bool:
        """
        Queue an event without waiting.

        Returns:
            False if the queue was full and the event was dropped
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._record_drop(event)
            return False

        self._record_publish(event)
        return True

    async def publish(self, event: Event) -> None:
        """
        Queue an event, waiting up to publish_timeout for space.

        Raises:
            asyncio.QueueFull: If no space freed up in time
        """
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self.publish_timeout)
        except asyncio.TimeoutError:
            self._record_drop(event)
            raise asyncio.QueueFull(
                f"Event queue full (max: {self._queue.maxsize}), cannot publish {event.event_name}"
            )

        self._record_publish(event)

    def _record_publish(self, event: Event) -> None:
        self._stats.events_published += 1
        self._stats.published_by_type[event.event_name] += 1
        self._stats.last_event_at = now_utc()

    def _record_drop(self, event: Event) -> None:
        self._stats.events_dropped += 1
        self._stats.dropped_by_type[event.event_name] += 1
        logger.error(
            f"Event queue full, dropping {event.event_name}",
            extra={"position_id": getattr(event, "position_id", None)},
        )

    # ========================================================================
    # Dispatch Loop
    # ========================================================================

    async def start(self) -> None:
        """Start the background dispatch loop."""
        if self._running:
            logger.warning("EventBus already running")
            return

        self._running = True
        self._stats.started_at = now_utc()
        self._task = asyncio.create_task(self._run())
        logger.info("EventBus started")

    async def stop(self, timeout: float = 5.0) -> None:
        """
        Stop the dispatch loop once the queue is empty.

        Args:
            timeout: Seconds to wait for queued events before cancelling
        """
        if not self._running:
            return

        logger.info(f"Stopping EventBus ({self._queue.qsize()} events queued)")
        self._running = False

        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"EventBus did not drain within {timeout}s, "
                    f"abandoning {self._queue.qsize()} events"
                )
            self._task = None
        logger.info("EventBus stopped")

    async def drain(self) -> None:
        """Dispatch everything currently queued from the caller's task."""
        while not self._queue.empty():
            await self._handle(self._queue.get_nowait())

    async def _run(self) -> None:
        while self._running or not self._queue.empty():
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.1)
            except asyncio.TimeoutError:
                continue
            await self._handle(event)

    async def _handle(self, event: Event) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()

        pending = []
        for handler in self._handlers_for(event):
            if inspect.iscoroutinefunction(handler):
                pending.append(self._run_async_handler(handler, event))
            else:
                self._run_sync_handler(handler, event)
        if pending:
            await asyncio.gather(*pending)

        self._stats.events_processed += 1
        self._stats.processing_seconds += loop.time() - started

    def _run_sync_handler(self, handler: Handler, event: Event) -> None:
        try:
            handler(event)
        except Exception:
            self._handler_failed(handler, event)
        else:
            self._stats.handlers_executed += 1

    async def _run_async_handler(self, handler: Handler, event: Event) -> None:
        try:
            await handler(event)
        except Exception:
            self._handler_failed(handler, event)
        else:
            self._stats.handlers_executed += 1

    def _handler_failed(self, handler: Handler, event: Event) -> None:
        self._stats.handler_errors += 1
        logger.exception(
            f"Handler {_handler_name(handler)} failed on {event.event_name}",
            extra={"position_id": getattr(event, "position_id", None)},
        )

    # ========================================================================
    # Statistics & Monitoring
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        return self._stats.to_dict(self._queue.qsize())

    def reset_stats(self) -> None:
        self._stats = EventBusStats(started_at=now_utc())

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    def __repr__(self) -> str:
        return (
            f"EventBus(running={self._running}, queue_size={self._queue.qsize()}, "
            f"subscribers={self.get_subscriber_count()})"
        )
