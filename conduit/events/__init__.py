"""Event routing for subscription endpoints."""

from .router import CustomEvent, Event, EventRouter, StorageEvent, SubscriptionHandle

__all__ = ["CustomEvent", "Event", "EventRouter", "StorageEvent", "SubscriptionHandle"]
