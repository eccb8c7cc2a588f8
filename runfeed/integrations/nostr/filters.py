from __future__ import annotations

import hashlib
import json
from enum import IntEnum
from typing import Any

from pydantic import BaseModel, Field


class EventKind(IntEnum):
    PROFILE = 0
    POST = 1
    REPOST = 6
    REACTION = 7
    WORKOUT = 1301
    ZAP = 9735


class RecordFilter(BaseModel):
    """Relay query filter (NIP-01).

    ``tag_filters`` maps a single-letter tag name to accepted values and is
    rendered as ``#<name>`` on the wire.
    """

    kinds: list[int]
    authors: list[str] | None = None
    ids: list[str] | None = None
    tag_filters: dict[str, list[str]] = Field(default_factory=dict)
    since: int | None = None
    until: int | None = None
    limit: int | None = None
    search: str | None = None

    def to_relay_filter(self, default_limit: int = 50) -> dict[str, Any]:
        """Render the wire form sent in a REQ message. ``limit`` is always present."""
        wire: dict[str, Any] = {"kinds": list(self.kinds)}
        if self.authors:
            wire["authors"] = list(self.authors)
        if self.ids:
            wire["ids"] = list(self.ids)
        for name, values in self.tag_filters.items():
            if values:
                wire[f"#{name}"] = list(values)
        if self.since is not None:
            wire["since"] = self.since
        if self.until is not None:
            wire["until"] = self.until
        if self.search:
            wire["search"] = self.search
        wire["limit"] = self.limit if self.limit else default_limit
        return wire

    def signature(self) -> str:
        """Stable digest of the filter, independent of list ordering."""
        canonical = {
            "kinds": sorted(self.kinds),
            "authors": sorted(self.authors or []),
            "ids": sorted(self.ids or []),
            "tags": {name: sorted(values) for name, values in sorted(self.tag_filters.items())},
            "since": self.since,
            "until": self.until,
            "limit": self.limit,
            "search": self.search,
        }
        return hashlib.sha256(json.dumps(canonical, sort_keys=True).encode()).hexdigest()[:16]
