"""Presence and request stores."""

from .base import Clock, PresenceStore, RequestStore, utc_now
from .changes import ChangeFeed, ChangeSubscription
from .memory import InMemoryPresenceStore, InMemoryRequestStore

__all__ = [
    "ChangeFeed",
    "ChangeSubscription",
    "Clock",
    "InMemoryPresenceStore",
    "InMemoryRequestStore",
    "PresenceStore",
    "RequestStore",
    "utc_now",
]
