"""Event bus and retry primitives shared by the backend components."""

from .backoff import BackoffPolicy, retry_with_backoff
from .event_bus import Event, EventBus

__all__ = ["BackoffPolicy", "Event", "EventBus", "retry_with_backoff"]
