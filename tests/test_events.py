"""
Tests for event routing to subscription endpoints.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conduit.events.router import CustomEvent, EventRouter, StorageEvent


@pytest.fixture
def router(config_store, runner, metrics):
    return EventRouter(config_store, runner, metrics=metrics)


class Inbox:
    """Subscriber that records every outcome it receives."""

    def __init__(self):
        self.received = []

    async def __call__(self, outcome):
        self.received.append(outcome)


class TestSubscriptions:
    """Tests for the subscriber registry."""

    def test_subscribe_and_unsubscribe(self, router):
        handle = router.subscribe("messages", Inbox())
        router.subscribe("messages", Inbox())
        assert router.subscriber_count("messages") == 2

        handle.unsubscribe()
        assert router.subscriber_count("messages") == 1

    def test_unknown_endpoint(self, router):
        with pytest.raises(KeyError):
            router.subscribe("nope", Inbox())

    def test_matching_by_source(self, router):
        assert [ws.name for ws in router.matching(StorageEvent(table="message"))] == ["messages"]
        assert [ws.name for ws in router.matching(CustomEvent(name="announcement"))] == [
            "messages"
        ]
        assert router.matching(StorageEvent(table="team")) == []


class TestDispatch:
    """Tests for event fan-out."""

    @pytest.mark.asyncio
    async def test_each_subscriber_receives_outcome_once(self, router, metrics):
        inboxes = [Inbox() for _ in range(3)]
        for inbox in inboxes:
            router.subscribe("messages", inbox)

        event = StorageEvent(table="message", primary_key="m1", is_insert=True, user_id="u1")
        outcomes = await router.dispatch(event)

        outcome = outcomes["messages"]
        assert outcome.success
        assert outcome.body["primary_key"] == "m1"
        assert outcome.body["event"] == "insert"
        assert outcome.context.source == "event:message"
        for inbox in inboxes:
            assert inbox.received == [outcome]
        assert metrics.events_delivered == 3

    @pytest.mark.asyncio
    async def test_custom_event_payload(self, router):
        inbox = Inbox()
        router.subscribe("messages", inbox)

        await router.dispatch(CustomEvent(name="announcement", payload={"text": "hi"}))

        body = inbox.received[0].body
        assert body["text"] == "hi"
        assert body["event"] == "announcement"

    @pytest.mark.asyncio
    async def test_failing_subscriber_is_isolated(self, router, metrics):
        async def broken(outcome):
            raise RuntimeError("socket closed")

        inbox = Inbox()
        router.subscribe("messages", broken)
        router.subscribe("messages", inbox)

        await router.dispatch(StorageEvent(table="message", primary_key="m1", is_delete=True))

        assert len(inbox.received) == 1
        assert metrics.delivery_failures == 1
        assert metrics.events_delivered == 1

    @pytest.mark.asyncio
    async def test_unsubscribed_subscriber_not_called(self, router):
        inbox = Inbox()
        handle = router.subscribe("messages", inbox)
        handle.unsubscribe()

        await router.dispatch(StorageEvent(table="message", is_update=True))

        assert inbox.received == []

    @pytest.mark.asyncio
    async def test_unmatched_event_dropped(self, router):
        inbox = Inbox()
        router.subscribe("messages", inbox)

        assert await router.dispatch(StorageEvent(table="team", is_insert=True)) == {}
        assert inbox.received == []

    @pytest.mark.asyncio
    async def test_subscribers_run_concurrently(self, router):
        started = []
        gate = asyncio.Event()

        async def waiting(outcome):
            started.append("waiting")
            await gate.wait()

        async def releasing(outcome):
            started.append("releasing")
            gate.set()

        router.subscribe("messages", waiting)
        router.subscribe("messages", releasing)

        await asyncio.wait_for(router.dispatch(StorageEvent(table="message")), timeout=1.0)

        assert started == ["waiting", "releasing"]

    @pytest.mark.asyncio
    async def test_subscriber_awaited_with_outcome(self, router):
        subscriber = AsyncMock()
        router.subscribe("messages", subscriber)

        outcomes = await router.dispatch(StorageEvent(table="message", primary_key="m7"))

        subscriber.assert_awaited_once_with(outcomes["messages"])
