import asyncio
import time
import json

import httpx
import pytest

from runfeed.integrations.nostr.filters import EventKind, RecordFilter
from runfeed.integrations.nostr.pool import RelayPool

RELAY_ONE = "wss://relay.one"
RELAY_TWO = "wss://relay.two"


class FakeRelay:
    def __init__(self, records=None, *, eose=True, fail_connects=0, reject_requests=False):
        self.records = records or []
        self.eose = eose
        self.fail_connects = fail_connects
        self.reject_requests = reject_requests
        self.connects = 0
        self.sockets = []


class FakeWebSocket:
    def __init__(self, relay):
        self.relay = relay
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, raw):
        message = json.loads(raw)
        if message[0] == "REQ" and self.relay.reject_requests:
            raise ConnectionError("socket is closing")
        self.sent.append(message)
        if message[0] == "REQ":
            sub_id = message[1]
            for record in self.relay.records:
                self._incoming.put_nowait(json.dumps(["EVENT", sub_id, record]))
            if self.relay.eose:
                self._incoming.put_nowait(json.dumps(["EOSE", sub_id]))

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._incoming.get()
        if frame is None:
            raise StopAsyncIteration
        return frame

    async def close(self):
        self.closed = True
        self._incoming.put_nowait(None)


def _connector(relays):
    async def connect(url):
        relay = relays[url]
        relay.connects += 1
        if relay.connects <= relay.fail_connects:
            raise OSError(f"cannot reach {url}")
        socket = FakeWebSocket(relay)
        relay.sockets.append(socket)
        return socket

    return connect


def _pool(relays, **kwargs):
    options = {"fetch_timeout": 1, "subscription_timeout": 0, "max_connect_attempts": 2, "retry_base_delay": 0}
    options.update(kwargs)
    return RelayPool(list(relays), connect=_connector(relays), **options)


def _event(record_id, content=""):
    return {"id": record_id, "pubkey": "a" * 64, "created_at": 1, "kind": 1301, "tags": [], "content": content}


@pytest.mark.asyncio
async def test_fetch_merges_relays_by_id_first_seen_wins():
    relays = {
        RELAY_ONE: FakeRelay([_event("e1", "one"), _event("e2")]),
        RELAY_TWO: FakeRelay([_event("e1", "two"), _event("e3")]),
    }
    pool = _pool(relays)

    records = await pool.fetch(RecordFilter(kinds=[EventKind.WORKOUT], limit=21))
    await pool.close()

    assert [record["id"] for record in records] == ["e1", "e2", "e3"]
    assert records[0]["content"] == "one"


@pytest.mark.asyncio
async def test_fetch_sends_req_and_close():
    relays = {RELAY_ONE: FakeRelay([_event("e1")])}
    pool = _pool(relays)

    await pool.fetch(RecordFilter(kinds=[EventKind.WORKOUT], tag_filters={"t": ["runstr"]}))
    await pool.close()

    sent = relays[RELAY_ONE].sockets[0].sent
    assert sent[0][0] == "REQ"
    assert sent[0][2] == {"kinds": [1301], "#t": ["runstr"], "limit": 50}
    assert sent[1] == ["CLOSE", sent[0][1]]


@pytest.mark.asyncio
async def test_fetch_keeps_partial_results_when_a_relay_times_out():
    relays = {RELAY_ONE: FakeRelay([_event("e1"), _event("e2")], eose=False), RELAY_TWO: FakeRelay([_event("e3")])}
    pool = _pool(relays)

    records = await pool.fetch(RecordFilter(kinds=[EventKind.WORKOUT]), timeout=0.05)
    await pool.close()

    assert sorted(record["id"] for record in records) == ["e1", "e2", "e3"]


@pytest.mark.asyncio
async def test_unreachable_relay_is_retried_then_skipped():
    relays = {RELAY_ONE: FakeRelay([_event("e1")], fail_connects=5), RELAY_TWO: FakeRelay([_event("e2")])}
    pool = _pool(relays)

    records = await pool.fetch(RecordFilter(kinds=[EventKind.WORKOUT]))
    await pool.close()

    assert [record["id"] for record in records] == ["e2"]
    assert relays[RELAY_ONE].connects == 2


@pytest.mark.asyncio
async def test_transient_connect_failure_recovers():
    relays = {RELAY_ONE: FakeRelay([_event("e1")], fail_connects=1)}
    pool = _pool(relays)

    records = await pool.fetch(RecordFilter(kinds=[EventKind.WORKOUT]))
    await pool.close()

    assert [record["id"] for record in records] == ["e1"]


@pytest.mark.asyncio
async def test_fetch_deadline_includes_connecting():
    async def hanging_connect(url):
        await asyncio.sleep(100)

    pool = RelayPool(
        [RELAY_ONE],
        connect=hanging_connect,
        probe_timeout=0.5,
        max_connect_attempts=3,
        retry_base_delay=0.2,
    )

    started = time.monotonic()
    records = await pool.fetch(RecordFilter(kinds=[EventKind.WORKOUT]), timeout=0.3)
    elapsed = time.monotonic() - started
    await pool.close()

    assert records == []
    assert elapsed < 0.6


@pytest.mark.asyncio
async def test_subscription_request_failure_is_logged_not_raised():
    relays = {RELAY_ONE: FakeRelay([], reject_requests=True), RELAY_TWO: FakeRelay([_event("e2")], eose=False)}
    pool = _pool(relays)
    received = []

    subscription = pool.subscribe(RecordFilter(kinds=[EventKind.WORKOUT])).on_record(lambda record: received.append(record["id"]))
    await asyncio.sleep(0.05)
    failed_pump = subscription._tasks[0]

    assert failed_pump.done()
    assert failed_pump.exception() is None
    assert received == ["e2"]

    await subscription.close()
    await pool.close()


@pytest.mark.asyncio
async def test_connections_are_opened_lazily_and_reused():
    relays = {RELAY_ONE: FakeRelay([_event("e1")])}
    pool = _pool(relays)
    assert relays[RELAY_ONE].connects == 0

    await pool.fetch(RecordFilter(kinds=[EventKind.WORKOUT]))
    await pool.fetch(RecordFilter(kinds=[EventKind.POST]))
    await pool.close()

    assert relays[RELAY_ONE].connects == 1
    assert relays[RELAY_ONE].sockets[0].closed


@pytest.mark.asyncio
async def test_subscription_delivers_each_record_once():
    relays = {
        RELAY_ONE: FakeRelay([_event("e1"), _event("e2")], eose=False),
        RELAY_TWO: FakeRelay([_event("e2"), _event("e3")], eose=False),
    }
    pool = _pool(relays)
    received = []

    subscription = pool.subscribe(RecordFilter(kinds=[EventKind.WORKOUT])).on_record(lambda record: received.append(record["id"]))
    await asyncio.sleep(0.05)
    await subscription.close()
    await pool.close()

    assert sorted(received) == ["e1", "e2", "e3"]
    assert subscription.closed


@pytest.mark.asyncio
async def test_subscription_closes_itself_after_timeout():
    relays = {RELAY_ONE: FakeRelay([], eose=False)}
    pool = _pool(relays, subscription_timeout=0.02)

    subscription = pool.subscribe(RecordFilter(kinds=[EventKind.WORKOUT]))
    await asyncio.sleep(0.1)

    assert subscription.closed
    await pool.close()


@pytest.mark.asyncio
async def test_probe_uses_nip11_information_document():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.host == "relay.one":
            return httpx.Response(200, json={"name": "relay one", "supported_nips": [1, 11]})
        return httpx.Response(503)

    pool = RelayPool([RELAY_ONE, RELAY_TWO], http_transport=httpx.MockTransport(handler))

    results = await pool.probe_all()

    assert results == {RELAY_ONE: True, RELAY_TWO: False}
    assert all(request.url.scheme == "https" for request in requests)
    assert all(request.headers["accept"] == "application/nostr+json" for request in requests)


@pytest.mark.asyncio
async def test_probe_connection_error_is_not_alive():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    pool = RelayPool([RELAY_ONE], http_transport=httpx.MockTransport(handler))

    assert await pool.probe(RELAY_ONE) is False
