"""Relay pool: parallel NIP-01 queries over a lazily opened connection set.

- One websocket per relay, opened on first use
- Subscriptions multiplexed on that socket by subscription id
- Every fetch is time-boxed; a relay that times out or fails contributes what it sent so far
- Only the lifecycle owner calls close()
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import httpx
import websockets
from loguru import logger

from runfeed.config.settings import settings
from runfeed.core.retry import retry_with_backoff
from runfeed.integrations.nostr.filters import RecordFilter

RawRecord = dict[str, Any]
RecordCallback = Callable[[RawRecord], None]
ConnectFactory = Callable[[str], Awaitable[Any]]


class Subscription(Protocol):
    def on_record(self, callback: RecordCallback) -> Subscription: ...

    async def close(self) -> None: ...


class EventSource(Protocol):
    """What the feed pipeline needs from a network event source."""

    async def fetch(self, record_filter: RecordFilter, *, timeout: float | None = None) -> list[RawRecord]: ...

    def subscribe(self, record_filter: RecordFilter) -> Subscription: ...


class RelayConnection:
    """One open websocket to a relay, dispatching messages to subscription queues."""

    def __init__(self, url: str, websocket: Any) -> None:
        self.url = url
        self._websocket = websocket
        self._queues: dict[str, asyncio.Queue[list[Any]]] = {}
        self._closed = False
        self._reader = asyncio.create_task(self._read_loop())

    @property
    def closed(self) -> bool:
        return self._closed

    async def _read_loop(self) -> None:
        try:
            async for raw in self._websocket:
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError):
                    logger.debug(f"[RELAY_POOL] Ignoring non-JSON frame from {self.url}")
                    continue

                if not isinstance(message, list) or len(message) < 2:
                    continue

                msg_type = message[0]
                if msg_type == "NOTICE":
                    logger.debug(f"[RELAY_POOL] NOTICE from {self.url}: {message[1]}")
                    continue

                if msg_type in {"EVENT", "EOSE", "CLOSED"}:
                    queue = self._queues.get(message[1])
                    if queue is not None:
                        queue.put_nowait(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[RELAY_POOL] Connection to {self.url} dropped: {e!s}")
        finally:
            self._closed = True
            for sub_id, queue in self._queues.items():
                queue.put_nowait(["CLOSED", sub_id, "connection closed"])

    async def open_subscription(self, wire_filter: dict[str, Any]) -> tuple[str, asyncio.Queue[list[Any]]]:
        sub_id = uuid.uuid4().hex[:16]
        queue: asyncio.Queue[list[Any]] = asyncio.Queue()
        self._queues[sub_id] = queue
        await self._websocket.send(json.dumps(["REQ", sub_id, wire_filter]))
        return sub_id, queue

    async def close_subscription(self, sub_id: str) -> None:
        self._queues.pop(sub_id, None)
        if self._closed:
            return
        try:
            await self._websocket.send(json.dumps(["CLOSE", sub_id]))
        except Exception as e:
            logger.debug(f"[RELAY_POOL] Failed to send CLOSE to {self.url}: {e!s}")

    async def close(self) -> None:
        self._closed = True
        self._reader.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._reader
        try:
            await self._websocket.close()
        except Exception as e:
            logger.debug(f"[RELAY_POOL] Error closing {self.url}: {e!s}")


class RelaySubscription:
    """Live stream of records from every relay, deduplicated by id.

    Closes itself after ``timeout`` seconds when one is given.
    """

    def __init__(self, pool: RelayPool, wire_filter: dict[str, Any], timeout: float | None) -> None:
        self._pool = pool
        self._wire_filter = wire_filter
        self._timeout = timeout
        self._callbacks: list[RecordCallback] = []
        self._seen: set[str] = set()
        self._tasks: list[asyncio.Task[None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def on_record(self, callback: RecordCallback) -> RelaySubscription:
        self._callbacks.append(callback)
        return self

    def start(self) -> None:
        self._tasks = [asyncio.create_task(self._pump(url)) for url in self._pool.relay_urls]
        if self._timeout:
            self._tasks.append(asyncio.create_task(self._auto_close(self._timeout)))

    def _dispatch(self, record: RawRecord) -> None:
        record_id = record.get("id")
        if not isinstance(record_id, str) or record_id in self._seen:
            return
        self._seen.add(record_id)
        for callback in self._callbacks:
            try:
                callback(record)
            except Exception as e:
                logger.warning(f"[RELAY_POOL] Subscription callback failed for record {record_id}: {e!s}")

    async def _pump(self, url: str) -> None:
        try:
            connection = await self._pool.ensure_connection(url)
            if connection is None:
                return
            sub_id, queue = await connection.open_subscription(self._wire_filter)
        except Exception as e:
            logger.warning(f"[RELAY_POOL] Failed to subscribe on {url}: {e!s}")
            return

        try:
            while not self._closed:
                message = await queue.get()
                if message[0] == "EVENT" and len(message) >= 3 and isinstance(message[2], dict):
                    self._dispatch(message[2])
                elif message[0] == "CLOSED":
                    logger.debug(f"[RELAY_POOL] Subscription closed by {url}")
                    break
        finally:
            await connection.close_subscription(sub_id)

    async def _auto_close(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        logger.debug("[RELAY_POOL] Subscription timeout reached, closing")
        await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._pool.forget_subscription(self)


async def _websocket_connect(url: str) -> Any:
    return await websockets.connect(url, ping_interval=None, open_timeout=settings.probe_timeout_seconds)


def _info_url(relay_url: str) -> str:
    if relay_url.startswith("wss://"):
        return "https://" + relay_url[len("wss://") :]
    if relay_url.startswith("ws://"):
        return "http://" + relay_url[len("ws://") :]
    return relay_url


class RelayPool:
    """Relay set queried in parallel for records matching a filter."""

    def __init__(
        self,
        relay_urls: list[str] | None = None,
        *,
        fetch_timeout: float | None = None,
        subscription_timeout: float | None = None,
        probe_timeout: float | None = None,
        default_limit: int | None = None,
        connect: ConnectFactory | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        max_connect_attempts: int | None = None,
        retry_base_delay: float | None = None,
    ) -> None:
        self._relay_urls = list(relay_urls) if relay_urls else settings.relay_urls
        self._fetch_timeout = fetch_timeout or settings.fetch_timeout_seconds
        self._subscription_timeout = subscription_timeout if subscription_timeout is not None else settings.subscription_timeout_seconds
        self._probe_timeout = probe_timeout or settings.probe_timeout_seconds
        self._default_limit = default_limit or settings.default_filter_limit
        self._connect = connect or _websocket_connect
        self._http_transport = http_transport
        self._max_connect_attempts = max_connect_attempts or settings.retry_max_attempts
        self._retry_base_delay = retry_base_delay if retry_base_delay is not None else settings.retry_base_delay_seconds

        self._connections: dict[str, RelayConnection] = {}
        self._connect_locks: dict[str, asyncio.Lock] = {}
        self._subscriptions: set[RelaySubscription] = set()

    @property
    def relay_urls(self) -> list[str]:
        return list(self._relay_urls)

    async def _open(self, url: str) -> Any:
        return await asyncio.wait_for(self._connect(url), timeout=self._probe_timeout)

    async def ensure_connection(self, url: str) -> RelayConnection | None:
        """Return the open connection for ``url``, connecting lazily. None if the relay is unreachable."""
        existing = self._connections.get(url)
        if existing is not None and not existing.closed:
            return existing

        lock = self._connect_locks.setdefault(url, asyncio.Lock())
        async with lock:
            existing = self._connections.get(url)
            if existing is not None and not existing.closed:
                return existing

            result = await retry_with_backoff(
                lambda: self._open(url),
                max_attempts=self._max_connect_attempts,
                base_delay=self._retry_base_delay,
                max_delay=settings.retry_max_delay_seconds,
                label=f"[RELAY_POOL] connect {url}",
            )
            if not result.ok:
                logger.warning(f"[RELAY_POOL] Relay unreachable: {url}")
                return None

            connection = RelayConnection(url, result.value)
            self._connections[url] = connection
            logger.debug(f"[RELAY_POOL] Connected to {url}")
            return connection

    async def _fetch_from_relay(self, url: str, wire_filter: dict[str, Any], timeout: float) -> list[RawRecord]:
        # The deadline covers connecting as well as reading
        records: list[RawRecord] = []
        try:
            async with asyncio.timeout(timeout):
                connection = await self.ensure_connection(url)
                if connection is None:
                    return records

                sub_id, queue = await connection.open_subscription(wire_filter)
                try:
                    while True:
                        message = await queue.get()
                        if message[0] == "EVENT" and len(message) >= 3 and isinstance(message[2], dict):
                            records.append(message[2])
                        elif message[0] in {"EOSE", "CLOSED"}:
                            break
                finally:
                    await connection.close_subscription(sub_id)
        except TimeoutError:
            logger.debug(f"[RELAY_POOL] {url} timed out after {timeout}s with {len(records)} records")
        return records

    async def fetch(self, record_filter: RecordFilter, *, timeout: float | None = None) -> list[RawRecord]:
        """Query every relay in parallel and merge results by record id (first seen wins).

        Never raises for relay failures; an unreachable pool yields an empty list.
        """
        wire_filter = record_filter.to_relay_filter(self._default_limit)
        effective_timeout = timeout or self._fetch_timeout

        results = await asyncio.gather(
            *(self._fetch_from_relay(url, wire_filter, effective_timeout) for url in self._relay_urls),
            return_exceptions=True,
        )

        seen: set[str] = set()
        merged: list[RawRecord] = []
        responded = 0
        for url, result in zip(self._relay_urls, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(f"[RELAY_POOL] Fetch from {url} failed: {result!s}")
                continue
            if result:
                responded += 1
            for record in result:
                record_id = record.get("id")
                if isinstance(record_id, str) and record_id and record_id not in seen:
                    seen.add(record_id)
                    merged.append(record)

        logger.info(
            f"[RELAY_POOL] Fetched {len(merged)} records from {responded}/{len(self._relay_urls)} relays",
            kinds=wire_filter["kinds"],
            limit=wire_filter["limit"],
        )
        return merged

    def subscribe(self, record_filter: RecordFilter) -> RelaySubscription:
        """Open a live subscription on every relay. Must be called with a running event loop."""
        subscription = RelaySubscription(
            self,
            record_filter.to_relay_filter(self._default_limit),
            self._subscription_timeout,
        )
        self._subscriptions.add(subscription)
        subscription.start()
        return subscription

    def forget_subscription(self, subscription: RelaySubscription) -> None:
        self._subscriptions.discard(subscription)

    async def probe(self, url: str) -> bool:
        """Check relay liveness with a NIP-11 information document request."""
        try:
            async with httpx.AsyncClient(timeout=self._probe_timeout, transport=self._http_transport) as client:
                resp = await client.get(_info_url(url), headers={"Accept": "application/nostr+json"})
        except httpx.HTTPError as e:
            logger.debug(f"[RELAY_POOL] Probe failed for {url}: {e!s}")
            return False

        if resp.status_code != 200:
            logger.debug(f"[RELAY_POOL] Probe for {url} returned HTTP {resp.status_code}")
            return False
        return True

    async def probe_all(self) -> dict[str, bool]:
        results = await asyncio.gather(*(self.probe(url) for url in self._relay_urls))
        return dict(zip(self._relay_urls, results, strict=True))

    async def close(self) -> None:
        """Tear down every subscription and connection."""
        for subscription in list(self._subscriptions):
            await subscription.close()
        connections = list(self._connections.values())
        self._connections.clear()
        for connection in connections:
            await connection.close()
        logger.info(f"[RELAY_POOL] Closed {len(connections)} relay connections")
