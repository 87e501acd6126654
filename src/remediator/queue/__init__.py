"""Durable webhook event queue."""

from .models import EventStatus, EventType, QueueStats, WebhookEvent
from .store import (
    EventNotFoundError,
    EventStoreError,
    InvalidTransitionError,
    SQLiteEventStore,
)

__all__ = [
    "EventNotFoundError",
    "EventStatus",
    "EventStoreError",
    "EventType",
    "InvalidTransitionError",
    "QueueStats",
    "SQLiteEventStore",
    "WebhookEvent",
]
