"""
Unit tests for the notification fan-out.

Tests cover:
- Delivery to every subscriber of a user
- No backlog for late subscribers
- Channel lifecycle (lazy creation, teardown on last unsubscribe)
- Bounded buffers dropping the oldest event
- Hub shutdown ending iteration
"""

import asyncio

import pytest

from backend.vaultsync_server.notify import InMemoryNotificationHub, NotificationEvent


def event(message="done", type_="report_status"):
    return NotificationEvent(type=type_, title="Report", message=message, data={"id": "r1"})


class TestInMemoryNotificationHub:
    """Tests for InMemoryNotificationHub."""

    @pytest.fixture
    def hub(self):
        hub = InMemoryNotificationHub(buffer_size=4)
        yield hub
        hub.close()

    @pytest.mark.asyncio
    async def test_publish_reaches_subscriber(self, hub):
        async with hub.subscribe("u1") as sub:
            reached = hub.publish("u1", event())

            received = await sub.get(timeout=1)

        assert reached == 1
        assert received.message == "done"
        assert received.timestamp is not None

    @pytest.mark.asyncio
    async def test_publish_fans_out(self, hub):
        async with hub.subscribe("u1") as a, hub.subscribe("u1") as b:
            assert hub.publish("u1", event()) == 2

            assert (await a.get(timeout=1)).type == "report_status"
            assert (await b.get(timeout=1)).type == "report_status"

    @pytest.mark.asyncio
    async def test_users_are_isolated(self, hub):
        async with hub.subscribe("u1") as sub:
            hub.publish("u2", event("other"))
            hub.publish("u1", event("mine"))

            assert (await sub.get(timeout=1)).message == "mine"

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self, hub):
        """Publishing with nobody listening is silently discarded."""
        assert hub.publish("u1", event()) == 0
        assert hub.channel_count == 0

    @pytest.mark.asyncio
    async def test_no_backlog_replay(self, hub):
        """A subscriber that connects later sees only future events."""
        hub.publish("u1", event("early"))

        async with hub.subscribe("u1") as sub:
            with pytest.raises(asyncio.TimeoutError):
                await sub.get(timeout=0.05)

            hub.publish("u1", event("late"))
            assert (await sub.get(timeout=1)).message == "late"

    @pytest.mark.asyncio
    async def test_channel_torn_down_on_last_unsubscribe(self, hub):
        a = hub.subscribe("u1")
        b = hub.subscribe("u1")
        assert hub.subscriber_count("u1") == 2

        a.close()
        assert hub.subscriber_count("u1") == 1
        assert hub.channel_count == 1

        b.close()
        assert hub.subscriber_count("u1") == 0
        assert hub.channel_count == 0

    @pytest.mark.asyncio
    async def test_full_buffer_drops_oldest(self, hub):
        async with hub.subscribe("u1") as sub:
            for i in range(6):
                hub.publish("u1", event(str(i)))

            received = [(await sub.get(timeout=1)).message for _ in range(4)]

        assert received == ["2", "3", "4", "5"]
        assert sub.dropped == 2

    @pytest.mark.asyncio
    async def test_iteration_preserves_order_and_ends_on_close(self, hub):
        sub = hub.subscribe("u1")
        hub.publish("u1", event("a"))
        hub.publish("u1", event("b"))
        sub.close()

        messages = [e.message async for e in sub]

        assert messages == ["a", "b"]

    @pytest.mark.asyncio
    async def test_close_wakes_waiting_reader(self, hub):
        sub = hub.subscribe("u1")
        reader = asyncio.create_task(sub.get())
        await asyncio.sleep(0)

        hub.close()

        assert await asyncio.wait_for(reader, 1) is None
        assert hub.channel_count == 0

    def test_invalid_buffer_size(self):
        with pytest.raises(ValueError):
            InMemoryNotificationHub(buffer_size=0)


class TestNotificationEvent:
    def test_to_dict(self):
        e = NotificationEvent(type="report_status", message="m", timestamp=5)

        assert e.to_dict() == {
            "type": "report_status",
            "title": None,
            "message": "m",
            "data": {},
            "timestamp": 5,
        }
