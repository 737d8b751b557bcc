"""
Event routing for subscription (websocket) endpoints.

Storage engines emit a StorageEvent after every committed row change;
applications may publish CustomEvents by name. For each event the router:

    1. finds subscription endpoints whose `sources` name the table/event
    2. runs each matching endpoint's pipeline once, with the event as payload
    3. delivers the outcome to every subscriber of that endpoint, exactly
       once each, concurrently

A subscriber that fails is logged and does not affect the others. Events
no endpoint listens to are dropped.

Usage:
    router = EventRouter(store, runner)
    handle = router.subscribe("messages", websocket_send)
    await router.dispatch(StorageEvent(table="message", primary_key="01H...", is_insert=True))
    handle.unsubscribe()
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from conduit.config.schemas import Document, Pipeline, SubscriptionEndpoint
from conduit.pipeline.context import ExecutionContext, PipelineOutcome
from conduit.pipeline.observability import PipelineMetrics, get_metrics

if TYPE_CHECKING:
    from conduit.config.store import ConfigStore
    from conduit.pipeline.runner import PipelineRunner

logger = logging.getLogger(__name__)

Subscriber = Callable[[PipelineOutcome], Awaitable[None]]


# =============================================================================
# Events
# =============================================================================


class StorageEvent(BaseModel):
    """A committed row change."""

    table: str
    primary_key: Any = None
    event_time: datetime = Field(default_factory=lambda: datetime.now(UTC))
    user_id: str | None = None
    is_insert: bool = False
    is_update: bool = False
    is_delete: bool = False

    @property
    def source(self) -> str:
        return self.table

    @property
    def kind(self) -> str:
        if self.is_insert:
            return "insert"
        if self.is_update:
            return "update"
        if self.is_delete:
            return "delete"
        return "unknown"

    def as_args(self) -> dict[str, Any]:
        return {**self.model_dump(mode="json"), "event": self.kind}


class CustomEvent(BaseModel):
    """An application-published event addressed by name."""

    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    event_time: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def source(self) -> str:
        return self.name

    def as_args(self) -> dict[str, Any]:
        return {
            **self.payload,
            "event": self.name,
            "event_time": self.event_time.isoformat(),
        }


Event = StorageEvent | CustomEvent


# =============================================================================
# Subscriptions
# =============================================================================


@dataclass(frozen=True)
class SubscriptionHandle:
    endpoint: str
    subscriber_id: int
    _router: "EventRouter"

    def unsubscribe(self) -> None:
        self._router.unsubscribe(self)


class EventRouter:
    """
    Routes events to subscription endpoints and fans outcomes out.

    The subscriber registry is the only mutable state; it is touched only
    from the event loop thread.
    """

    def __init__(
        self,
        store: "ConfigStore",
        runner: "PipelineRunner",
        *,
        metrics: PipelineMetrics | None = None,
    ):
        self.store = store
        self.runner = runner
        self.metrics = metrics or get_metrics()
        self._subscribers: dict[str, dict[int, Subscriber]] = {}
        self._ids = itertools.count(1)

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def subscribe(self, endpoint_name: str, subscriber: Subscriber) -> SubscriptionHandle:
        """
        Register a subscriber for an endpoint's outcomes.

        Raises:
            KeyError: If the current configuration has no such endpoint
        """
        if self.store.current().document.subscription(endpoint_name) is None:
            raise KeyError(f"Unknown subscription endpoint '{endpoint_name}'")
        subscriber_id = next(self._ids)
        self._subscribers.setdefault(endpoint_name, {})[subscriber_id] = subscriber
        logger.debug(f"Subscriber {subscriber_id} joined '{endpoint_name}'")
        return SubscriptionHandle(endpoint_name, subscriber_id, self)

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        subscribers = self._subscribers.get(handle.endpoint)
        if subscribers is not None:
            subscribers.pop(handle.subscriber_id, None)
            if not subscribers:
                del self._subscribers[handle.endpoint]
        logger.debug(f"Subscriber {handle.subscriber_id} left '{handle.endpoint}'")

    def subscriber_count(self, endpoint_name: str) -> int:
        return len(self._subscribers.get(endpoint_name, {}))

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def matching(
        self, event: Event, document: Document | None = None
    ) -> list[SubscriptionEndpoint]:
        document = document or self.store.current().document
        return [ws for ws in document.apis.websockets if event.source in ws.sources]

    async def dispatch(self, event: Event) -> dict[str, PipelineOutcome]:
        """
        Route one event.

        Returns:
            The outcome per matching endpoint name
        """
        snapshot = self.store.current()
        endpoints = self.matching(event, snapshot.document)
        if not endpoints:
            logger.debug(f"No subscription endpoint listens to '{event.source}', dropping event")
            return {}

        env = snapshot.document.env_map()
        outcomes: dict[str, PipelineOutcome] = {}
        for endpoint in endpoints:
            if not isinstance(endpoint.pipeline, Pipeline):
                logger.error(f"Subscription '{endpoint.name}' is not linked to a pipeline")
                continue
            ctx = ExecutionContext(
                args=event.as_args(),
                env=env,
                snapshot_epoch=snapshot.epoch,
                source=f"event:{event.source}",
            )
            outcome = await self.runner.run(endpoint.pipeline, ctx, event.as_args())
            outcomes[endpoint.name] = outcome
            await self._deliver(endpoint.name, outcome)
        return outcomes

    async def _deliver(self, endpoint_name: str, outcome: PipelineOutcome) -> None:
        # late joiners miss this outcome; subscribers leaving mid-delivery still get it
        subscribers = list(self._subscribers.get(endpoint_name, {}).items())
        if not subscribers:
            return

        results = await asyncio.gather(
            *(subscriber(outcome) for _, subscriber in subscribers),
            return_exceptions=True,
        )
        for (subscriber_id, _), result in zip(subscribers, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.warning(
                    f"Delivery to subscriber {subscriber_id} of '{endpoint_name}' failed: {result}"
                )
                self.metrics.record_delivery(False)
            else:
                self.metrics.record_delivery(True)
