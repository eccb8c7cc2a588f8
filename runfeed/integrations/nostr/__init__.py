"""Nostr relay access: filters and the relay pool."""

from runfeed.integrations.nostr.filters import EventKind, RecordFilter
from runfeed.integrations.nostr.pool import EventSource, RelayPool, Subscription

__all__ = [
    "EventKind",
    "EventSource",
    "RecordFilter",
    "RelayPool",
    "Subscription",
]
