import pytest

from autotrader.domain.events import EventBus, LifecycleEvent, LifecycleEventType


def _event(position_id="pos-1", event_type=LifecycleEventType.OPENED):
    return LifecycleEvent(event_type=event_type, position_id=position_id, asset_id="MINT_A", strategy_id="s1")


@pytest.mark.asyncio
async def test_every_subscriber_receives_events_in_order():
    bus = EventBus()
    first = bus.subscribe()
    second = bus.subscribe()

    bus.publish(_event("pos-1"))
    bus.publish(_event("pos-1", LifecycleEventType.CLOSING))

    for queue in (first, second):
        assert (await queue.get()).event_type == LifecycleEventType.OPENED
        assert (await queue.get()).event_type == LifecycleEventType.CLOSING
    assert bus.published_total == 2


@pytest.mark.asyncio
async def test_full_queue_drops_only_for_that_subscriber():
    bus = EventBus(queue_size=10)
    slow = bus.subscribe(queue_size=1)
    fast = bus.subscribe()

    bus.publish(_event("pos-1"))
    bus.publish(_event("pos-2"))

    assert slow.qsize() == 1
    assert fast.qsize() == 2
    assert bus.dropped_total == 1


def test_unsubscribe():
    bus = EventBus()
    queue = bus.subscribe()

    bus.unsubscribe(queue)
    bus.unsubscribe(queue)
    bus.publish(_event())

    assert bus.subscriber_count == 0
    assert queue.empty()


def test_event_serializes():
    data = _event().to_dict()

    assert data["type"] == "opened"
    assert data["position_id"] == "pos-1"
    assert "timestamp" in data
