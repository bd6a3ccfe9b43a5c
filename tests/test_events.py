"""Unit tests for events.py - Object event pub/sub."""

import asyncio
import json
from datetime import datetime

import pytest

from events import (
    EventBus,
    EventSubscription,
    EventType,
    ObjectEvent,
    utc_timestamp,
)


def service_event(event_type=EventType.CREATED, name="db", **kwargs):
    obj = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": "default", "uid": f"uid-{name}"},
    }
    return ObjectEvent(
        event_type=event_type, obj=obj, timestamp="2024-01-15T10:30:00Z", **kwargs
    )


def sse_payload(event):
    event_line, data_line, *_ = event.to_sse().split("\n")
    return event_line, json.loads(data_line[len("data: ") :])


async def next_event(subscription, timeout=1.0):
    return await asyncio.wait_for(subscription.__anext__(), timeout=timeout)


# ==================== ObjectEvent ====================


class TestObjectEvent:
    """Tests for the ObjectEvent dataclass."""

    def test_identity_of_stored_object(self, statefulset_manifest):
        statefulset_manifest["metadata"]["uid"] = "uid-1"

        event = ObjectEvent.from_object(EventType.CREATED, statefulset_manifest)

        assert (event.api_version, event.kind) == ("apps/v1", "StatefulSet")
        assert (event.namespace, event.name, event.uid) == ("default", "db", "uid-1")
        assert event.old_obj is None

    def test_identity_of_bare_object(self):
        event = ObjectEvent.from_object(EventType.DELETED, {"metadata": None})
        assert (event.kind, event.namespace, event.name) == ("", "", "")
        assert event.uid is None

    def test_modified_keeps_previous_version(self, statefulset_manifest):
        old = {**statefulset_manifest, "spec": {"replicas": 2}}

        event = ObjectEvent.from_object(EventType.MODIFIED, statefulset_manifest, old)

        assert event.obj is statefulset_manifest
        assert event.old_obj is old

    def test_timestamp(self, statefulset_manifest):
        event = ObjectEvent.from_object(EventType.CREATED, statefulset_manifest)
        assert event.timestamp.endswith("Z")
        datetime.fromisoformat(event.timestamp[:-1])

    def test_utc_timestamp_format(self):
        stamp = utc_timestamp()
        assert stamp.endswith("Z")
        assert datetime.fromisoformat(stamp[:-1]).year >= 2024

    @pytest.mark.parametrize("event_type", list(EventType))
    def test_sse_message(self, event_type):
        sse = service_event(event_type).to_sse()

        event_line, payload = sse_payload(service_event(event_type))

        assert sse.endswith("\n\n")
        assert event_line == f"event: {event_type.value}"
        assert payload["event_type"] == event_type.value

    def test_sse_payload(self):
        _, payload = sse_payload(service_event())

        assert payload == {
            "event_type": "CREATED",
            "api_version": "v1",
            "kind": "Service",
            "namespace": "default",
            "name": "db",
            "object": service_event().obj,
            "timestamp": "2024-01-15T10:30:00Z",
        }

    def test_sse_serializes_datetimes(self, statefulset_manifest):
        statefulset_manifest["metadata"]["creationTimestamp"] = datetime(
            2024, 1, 15, 10, 30
        )
        event = ObjectEvent.from_object(EventType.MODIFIED, statefulset_manifest)

        _, payload = sse_payload(event)

        assert payload["object"]["metadata"]["creationTimestamp"] == (
            "2024-01-15T10:30:00"
        )


# ==================== EventSubscription ====================


@pytest.mark.asyncio
class TestEventSubscription:
    """Tests for the EventSubscription async iterator."""

    async def test_iterates_until_sentinel(self):
        queue = asyncio.Queue()
        first, second = service_event(name="a"), service_event(name="b")
        for item in (first, second, None, service_event(name="c")):
            queue.put_nowait(item)

        assert [e async for e in EventSubscription(queue)] == [first, second]

    async def test_filter_skips_rejected_events(self):
        queue = asyncio.Queue()
        for item in (
            service_event(EventType.MODIFIED),
            service_event(EventType.DELETED),
            None,
        ):
            queue.put_nowait(item)
        subscription = EventSubscription(
            queue, filter_fn=lambda e: e.event_type == EventType.DELETED
        )

        received = [e async for e in subscription]

        assert [e.event_type for e in received] == [EventType.DELETED]


# ==================== EventBus ====================


@pytest.mark.asyncio
class TestEventBus:
    """Tests for the EventBus."""

    async def test_publish_without_subscribers(self):
        await EventBus().publish(service_event())

    async def test_every_subscriber_receives(self):
        bus = EventBus()
        _, first = await bus.subscribe()
        _, second = await bus.subscribe()
        event = service_event()

        await bus.publish(event)

        assert await next_event(first) is event
        assert await next_event(second) is event

    async def test_filtered_subscription(self):
        bus = EventBus()
        _, services = await bus.subscribe(filter_fn=lambda e: e.name == "b")

        await bus.publish(service_event(name="a"))
        await bus.publish(service_event(name="b"))

        assert (await next_event(services)).name == "b"

    async def test_full_queue_drops_newer_events(self):
        bus = EventBus(queue_size=1)
        _, subscription = await bus.subscribe()
        kept = service_event(name="a")

        await bus.publish(kept)
        await bus.publish(service_event(name="b"))

        assert await next_event(subscription) is kept
        with pytest.raises(asyncio.TimeoutError):
            await next_event(subscription, timeout=0.05)

    async def test_unsubscribe_ends_stream(self):
        bus = EventBus()
        subscriber_id, subscription = await bus.subscribe()
        assert bus.subscriber_count() == 1

        await bus.unsubscribe(subscriber_id)

        assert [e async for e in subscription] == []
        assert bus.subscriber_count() == 0

    async def test_unsubscribe_full_queue_still_ends_stream(self):
        bus = EventBus(queue_size=1)
        subscriber_id, subscription = await bus.subscribe()
        await bus.publish(service_event())

        await bus.unsubscribe(subscriber_id)

        assert [e async for e in subscription] == []

    async def test_unsubscribe_unknown_id(self):
        bus = EventBus()
        await bus.unsubscribe("nonexistent-id")
        assert bus.subscriber_count() == 0

    async def test_no_delivery_after_unsubscribe(self):
        bus = EventBus()
        subscriber_id, subscription = await bus.subscribe()
        await bus.unsubscribe(subscriber_id)

        await bus.publish(service_event())

        assert [e async for e in subscription] == []
