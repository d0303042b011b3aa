"""
Unit tests for the EventBus.

Tests:
- Event publishing and subscription
- Non-blocking emit and queue overflow
- Handler execution (async and sync)
- Error isolation
- Statistics tracking
- Graceful shutdown and drain
"""

import asyncio
import pytest
from trader_tony.core.event_bus import EventBus
from trader_tony.core.events import (
    ActionFailed,
    Event,
    PositionClosed,
    PositionOpened,
)
from trader_tony.utils.time_utils import now_utc


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
async def event_bus():
    """Create and start an event bus for testing."""
    bus = EventBus(max_queue_size=100)
    await bus.start()
    yield bus
    await bus.stop()


@pytest.fixture
def sample_opened_event():
    """Create a sample position opened event."""
    return PositionOpened(
        timestamp=now_utc(),
        metadata={},
        position_id="pos_123",
        token_id="MINT",
        entry_price=0.0001,
        amount=1000.0,
        quote_amount=0.1,
        strategy_id="sniper",
    )


@pytest.fixture
def sample_failed_event():
    """Create a sample action failed event."""
    return ActionFailed(
        timestamp=now_utc(),
        metadata={"reason": "stop_loss"},
        position_id="pos_123",
        token_id="MINT",
        action="full_close",
        attempts=3,
        error="sell failed: slippage exceeded",
    )


# ============================================================================
# Basic Functionality Tests
# ============================================================================

@pytest.mark.asyncio
async def test_event_bus_initialization():
    """Test event bus can be initialized and started."""
    bus = EventBus(max_queue_size=50)

    assert not bus.is_running
    assert bus.queue_size == 0

    await bus.start()
    assert bus.is_running

    await bus.stop()
    assert not bus.is_running


@pytest.mark.asyncio
async def test_publish_and_subscribe(event_bus, sample_opened_event):
    """Test basic event publishing and subscription."""
    received_events = []

    async def handler(event: PositionOpened):
        received_events.append(event)

    event_bus.subscribe(PositionOpened, handler)
    await event_bus.publish(sample_opened_event)

    # Wait for processing
    await asyncio.sleep(0.2)

    assert len(received_events) == 1
    assert received_events[0] == sample_opened_event
    assert received_events[0].token_id == "MINT"


@pytest.mark.asyncio
async def test_emit_does_not_block(event_bus, sample_opened_event):
    """Test emit() queues synchronously and the loop dispatches later."""
    received_events = []

    async def handler(event: PositionOpened):
        received_events.append(event)

    event_bus.subscribe(PositionOpened, handler)

    assert event_bus.emit(sample_opened_event) is True
    assert received_events == []

    await asyncio.sleep(0.2)
    assert len(received_events) == 1


@pytest.mark.asyncio
async def test_emit_drops_when_queue_full(sample_opened_event):
    """Test a full queue drops the event instead of blocking the caller."""
    bus = EventBus(max_queue_size=2)

    assert bus.emit(sample_opened_event)
    assert bus.emit(sample_opened_event)
    assert bus.emit(sample_opened_event) is False

    assert bus.get_stats()["events_dropped"] == 1
    assert bus.queue_size == 2


@pytest.mark.asyncio
async def test_multiple_subscribers(event_bus, sample_opened_event):
    """Test multiple handlers can subscribe to same event type."""
    received_by_handler1 = []
    received_by_handler2 = []

    async def handler1(event: PositionOpened):
        received_by_handler1.append(event)

    async def handler2(event: PositionOpened):
        received_by_handler2.append(event)

    event_bus.subscribe(PositionOpened, handler1)
    event_bus.subscribe(PositionOpened, handler2)

    await event_bus.publish(sample_opened_event)
    await asyncio.sleep(0.2)

    assert len(received_by_handler1) == 1
    assert len(received_by_handler2) == 1


@pytest.mark.asyncio
async def test_wildcard_subscription(event_bus, sample_opened_event, sample_failed_event):
    """Test wildcard subscription receives all events."""
    all_events = []

    async def wildcard_handler(event: Event):
        all_events.append(event)

    event_bus.subscribe_to_all(wildcard_handler)

    await event_bus.publish(sample_opened_event)
    await event_bus.publish(sample_failed_event)
    await asyncio.sleep(0.2)

    assert len(all_events) == 2
    assert isinstance(all_events[0], PositionOpened)
    assert isinstance(all_events[1], ActionFailed)


@pytest.mark.asyncio
async def test_handlers_only_receive_their_type(event_bus, sample_opened_event):
    """Test handlers are keyed by event class."""
    closed_events = []

    async def handler(event: PositionClosed):
        closed_events.append(event)

    event_bus.subscribe(PositionClosed, handler)
    await event_bus.publish(sample_opened_event)
    await asyncio.sleep(0.2)

    assert closed_events == []


# ============================================================================
# Handler Execution Tests
# ============================================================================

@pytest.mark.asyncio
async def test_sync_handler_execution(event_bus, sample_opened_event):
    """Test sync handlers are executed correctly."""
    execution_order = []

    def sync_handler(event: PositionOpened):
        execution_order.append("sync_handler")

    event_bus.subscribe(PositionOpened, sync_handler)
    await event_bus.publish(sample_opened_event)

    await asyncio.sleep(0.2)

    assert "sync_handler" in execution_order


@pytest.mark.asyncio
async def test_mixed_async_sync_handlers(event_bus, sample_opened_event):
    """Test both async and sync handlers can coexist."""
    results = {"async": False, "sync": False}

    async def async_handler(event: PositionOpened):
        await asyncio.sleep(0.05)
        results["async"] = True

    def sync_handler(event: PositionOpened):
        results["sync"] = True

    event_bus.subscribe(PositionOpened, async_handler)
    event_bus.subscribe(PositionOpened, sync_handler)

    await event_bus.publish(sample_opened_event)
    await asyncio.sleep(0.2)

    assert results["async"]
    assert results["sync"]


# ============================================================================
# Error Handling Tests
# ============================================================================

@pytest.mark.asyncio
async def test_error_isolation(event_bus, sample_failed_event):
    """Test that one handler failure doesn't affect others."""
    successful_handlers = []

    async def failing_handler(event: ActionFailed):
        raise ValueError("Handler intentionally failed")

    async def successful_handler1(event: ActionFailed):
        successful_handlers.append("handler1")

    async def successful_handler2(event: ActionFailed):
        successful_handlers.append("handler2")

    event_bus.subscribe(ActionFailed, failing_handler)
    event_bus.subscribe(ActionFailed, successful_handler1)
    event_bus.subscribe(ActionFailed, successful_handler2)

    await event_bus.publish(sample_failed_event)
    await asyncio.sleep(0.2)

    assert len(successful_handlers) == 2
    assert "handler1" in successful_handlers
    assert "handler2" in successful_handlers

    stats = event_bus.get_stats()
    assert stats["handler_errors"] >= 1


# ============================================================================
# Unsubscribe Tests
# ============================================================================

@pytest.mark.asyncio
async def test_unsubscribe(event_bus, sample_opened_event):
    """Test unsubscribing from events."""
    received_events = []

    async def handler(event: PositionOpened):
        received_events.append(event)

    event_bus.subscribe(PositionOpened, handler)
    await event_bus.publish(sample_opened_event)
    await asyncio.sleep(0.1)

    assert len(received_events) == 1

    event_bus.unsubscribe(PositionOpened, handler)
    await event_bus.publish(sample_opened_event)
    await asyncio.sleep(0.1)

    # Still 1
    assert len(received_events) == 1


@pytest.mark.asyncio
async def test_unsubscribe_all(event_bus):
    """Test a handler can be removed from every subscription at once."""
    async def handler(event):
        pass

    event_bus.subscribe(PositionOpened, handler)
    event_bus.subscribe(PositionClosed, handler)
    event_bus.subscribe_to_all(handler)

    event_bus.unsubscribe_all(handler)

    assert event_bus.get_subscriber_count() == 0


# ============================================================================
# Statistics Tests
# ============================================================================

@pytest.mark.asyncio
async def test_statistics_tracking(event_bus, sample_opened_event):
    """Test event bus tracks statistics correctly."""
    async def handler(event: PositionOpened):
        await asyncio.sleep(0.01)

    event_bus.subscribe(PositionOpened, handler)

    for _ in range(5):
        await event_bus.publish(sample_opened_event)

    await asyncio.sleep(0.3)

    stats = event_bus.get_stats()
    assert stats["events_published"] == 5
    assert stats["events_processed"] == 5
    assert stats["handlers_executed"] >= 5
    assert stats["avg_processing_time_ms"] > 0


# ============================================================================
# Graceful Shutdown Tests
# ============================================================================

@pytest.mark.asyncio
async def test_graceful_shutdown(sample_opened_event):
    """Test event bus shuts down gracefully."""
    bus = EventBus()
    received = []

    async def handler(event):
        received.append(event)

    bus.subscribe(PositionOpened, handler)
    await bus.start()

    for _ in range(5):
        bus.emit(sample_opened_event)

    await bus.stop(timeout=2.0)

    assert not bus.is_running
    assert bus.queue_size == 0
    assert len(received) == 5


@pytest.mark.asyncio
async def test_drain_without_running_loop(sample_failed_event):
    """Test drain() dispatches queued events when the loop is not running."""
    bus = EventBus()
    received = []

    async def handler(event):
        received.append(event)

    bus.subscribe(ActionFailed, handler)
    bus.emit(sample_failed_event)
    bus.emit(sample_failed_event)

    await bus.drain()

    assert len(received) == 2
    assert bus.queue_size == 0


# ============================================================================
# Serialization Tests
# ============================================================================

def test_event_to_dict(sample_failed_event):
    """Test events flatten to plain dictionaries for notifications."""
    data = sample_failed_event.to_dict()

    assert data["event"] == "ActionFailed"
    assert data["position_id"] == "pos_123"
    assert data["attempts"] == 3
    assert data["metadata"] == {"reason": "stop_loss"}
    assert isinstance(data["timestamp"], str)


# ============================================================================
# Subscriber Count Tests
# ============================================================================

@pytest.mark.asyncio
async def test_subscriber_count(event_bus):
    """Test getting subscriber counts."""
    async def handler1(event): pass
    async def handler2(event): pass

    assert event_bus.get_subscriber_count(PositionOpened) == 0

    event_bus.subscribe(PositionOpened, handler1)
    assert event_bus.get_subscriber_count(PositionOpened) == 1

    event_bus.subscribe(PositionOpened, handler2)
    assert event_bus.get_subscriber_count(PositionOpened) == 2

    event_bus.subscribe(PositionClosed, handler1)
    assert event_bus.get_subscriber_count() == 3  # 2 for PositionOpened, 1 for PositionClosed


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
