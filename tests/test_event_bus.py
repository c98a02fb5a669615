import pytest

from agentbridge.event_bus import INTENT_APPROVED, BridgeEvent, EventBus


@pytest.mark.asyncio
async def test_event_bus_pub_sub():
    test_bus = EventBus()
    received_events: list[BridgeEvent] = []

    def dummy_subscriber(event: BridgeEvent):
        received_events.append(event)

    # Subscribe to the bus
    test_bus.subscribe(dummy_subscriber)

    # Emit an event
    await test_bus.emit(
        event_type="TEST_EVENT",
        actor="session-1",
        payload={"key": "value"}
    )

    # Verify the event was received and formatted correctly
    assert len(received_events) == 1

    event = received_events[0]
    assert event.event_type == "TEST_EVENT"
    assert event.actor == "session-1"
    assert event.payload == {"key": "value"}

    # Verify auto-generated fields
    assert event.event_id is not None
    assert isinstance(event.event_id, str)
    assert event.timestamp is not None


@pytest.mark.asyncio
async def test_typed_subscription_and_async_callbacks():
    bus = EventBus()
    approved: list[str] = []

    async def on_approved(event: BridgeEvent):
        approved.append(event.payload["intent_id"])

    bus.subscribe(on_approved, INTENT_APPROVED)

    await bus.emit("something-else", "s1", {"intent_id": "ignored"})
    await bus.emit(INTENT_APPROVED, "s1", {"intent_id": "abc"})

    assert approved == ["abc"]


@pytest.mark.asyncio
async def test_failing_subscriber_is_isolated():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    bus.subscribe(broken)
    bus.subscribe(seen.append)

    event = await bus.emit("E", "s1", {})

    assert seen == [event]


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    seen = []
    bus.subscribe(seen.append)
    bus.unsubscribe(seen.append)

    await bus.emit("E", "s1", {})
    assert seen == []
