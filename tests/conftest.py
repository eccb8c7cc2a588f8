"""Root conftest for all tests.

Shared fakes for the relay source and record factories.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from runfeed.integrations.nostr.filters import EventKind, RecordFilter


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSubscription:
    def __init__(self) -> None:
        self.callbacks: list[Callable[[dict[str, Any]], None]] = []
        self.closed = False

    def on_record(self, callback: Callable[[dict[str, Any]], None]) -> FakeSubscription:
        self.callbacks.append(callback)
        return self

    async def close(self) -> None:
        self.closed = True


class FakeSource:
    """In-memory event source.

    ``responses`` maps an event kind to a list of raw records, an exception to
    raise, or a callable taking the filter and returning either.
    """

    def __init__(self, responses: dict[int, Any] | None = None, delay: float = 0.0) -> None:
        self.responses: dict[int, Any] = dict(responses or {})
        self.delay = delay
        self.calls: list[RecordFilter] = []

    def calls_for(self, kind: int) -> list[RecordFilter]:
        return [call for call in self.calls if kind in call.kinds]

    async def fetch(self, record_filter: RecordFilter, *, timeout: float | None = None) -> list[dict[str, Any]]:
        self.calls.append(record_filter)
        if self.delay:
            await asyncio.sleep(self.delay)

        kind = record_filter.kinds[0]
        response = self.responses.get(kind, [])
        if callable(response) and not isinstance(response, list):
            response = response(record_filter)
        if isinstance(response, BaseException):
            raise response
        return [dict(raw) for raw in response]

    def subscribe(self, record_filter: RecordFilter) -> FakeSubscription:
        return FakeSubscription()


def make_raw(
    record_id: str,
    *,
    author: str = "a" * 64,
    created_at: int = 1_700_000_000,
    kind: int = EventKind.WORKOUT,
    tags: list[list[str]] | None = None,
    content: str = "",
) -> dict[str, Any]:
    return {
        "id": record_id,
        "pubkey": author,
        "created_at": created_at,
        "kind": int(kind),
        "tags": tags if tags is not None else [],
        "content": content,
    }


def make_workout(
    record_id: str,
    *,
    author: str = "a" * 64,
    created_at: int = 1_700_000_000,
    distance: str | None = "5.00",
    unit: str = "km",
    duration: str | None = None,
    activity: str | None = None,
    content: str = "",
    extra_tags: list[list[str]] | None = None,
) -> dict[str, Any]:
    tags: list[list[str]] = []
    if distance is not None:
        tags.append(["distance", distance, unit])
    if duration is not None:
        tags.append(["duration", duration])
    if activity is not None:
        tags.append(["exercise", activity])
    tags.extend(extra_tags or [])
    return make_raw(record_id, author=author, created_at=created_at, tags=tags, content=content)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def source_factory() -> type[FakeSource]:
    return FakeSource


@pytest.fixture
def workout() -> Callable[..., dict[str, Any]]:
    return make_workout


@pytest.fixture
def raw_event() -> Callable[..., dict[str, Any]]:
    return make_raw
