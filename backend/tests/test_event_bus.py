import pytest

from shelter_sync.events.event_bus import EventBus
from shelter_sync.events.event_bus import EventType


@pytest.mark.asyncio
async def test_publish_reaches_subscribers():
    bus = EventBus()
    seen = []

    async def handler(data):
        seen.append(data)

    bus.subscribe(EventType.PULL_COMPLETED, handler)
    await bus.publish(EventType.PULL_COMPLETED, {"postsPulled": 2})
    await bus.publish(EventType.PUSH_COMPLETED, {"postsSynced": 1})

    assert seen == [{"postsPulled": 2}]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others():
    bus = EventBus()
    seen = []

    async def broken(data):
        raise RuntimeError("toast renderer crashed")

    async def healthy(data):
        seen.append(data)

    bus.subscribe(EventType.QUEUE_DRAINED, broken)
    bus.subscribe(EventType.QUEUE_DRAINED, healthy)

    await bus.publish(EventType.QUEUE_DRAINED, {"replayed": 3})

    assert seen == [{"replayed": 3}]


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    seen = []

    async def handler(data):
        seen.append(data)

    bus.subscribe(EventType.MEDIA_SYNCED, handler)
    bus.unsubscribe(EventType.MEDIA_SYNCED, handler)
    await bus.publish(EventType.MEDIA_SYNCED, {})

    assert seen == []
    assert EventType.MEDIA_SYNCED not in bus._subscribers
