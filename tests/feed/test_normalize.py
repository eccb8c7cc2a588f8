from types import SimpleNamespace

from runfeed.feed.models import ActivityRecord
from runfeed.feed.normalize import normalize_record, normalize_records


def test_normalize_relay_json(raw_event):
    raw = raw_event("e1", tags=[["distance", "5", "km"], ["t", "runstr"]], content="Morning run")

    record = normalize_record(raw)

    assert record is not None
    assert record.id == "e1"
    assert record.author_id == "a" * 64
    assert record.created_at == 1_700_000_000
    assert record.kind == 1301
    assert record.tags == [["distance", "5", "km"], ["t", "runstr"]]
    assert record.content == "Morning run"


def test_normalize_accepts_objects_and_alternate_author_keys():
    event = SimpleNamespace(id="e2", author_id="bob", created_at=10, kind=1, tags=[], content="hi")
    record = normalize_record(event)
    assert record is not None
    assert record.author_id == "bob"

    record = normalize_record({"id": "e3", "authorId": "carol", "createdAt": "42"})
    assert record is not None
    assert record.author_id == "carol"
    assert record.created_at == 42


def test_normalize_excludes_records_without_id_or_author():
    assert normalize_record({"pubkey": "x", "created_at": 1}) is None
    assert normalize_record({"id": "e1", "created_at": 1}) is None
    assert normalize_record({"id": "   ", "pubkey": "x"}) is None
    assert normalize_record(None) is None
    assert normalize_record("not an event") is None


def test_normalize_defaults_bad_fields():
    record = normalize_record({"id": "e1", "pubkey": "x", "created_at": "yesterday", "tags": "distance=5", "content": 12})

    assert record is not None
    assert record.created_at == 0
    assert record.tags == []
    assert record.content == ""


def test_normalize_drops_malformed_tag_entries():
    record = normalize_record({"id": "e1", "pubkey": "x", "tags": [["distance", 5, "km"], [], "t", ["t", "run"]]})

    assert record is not None
    assert record.tags == [["distance", "5", "km"], ["t", "run"]]


def test_normalize_is_idempotent(raw_event):
    once = normalize_record(raw_event("e1", tags=[["duration", "1800"]]))
    assert once is not None

    twice = normalize_record(once)

    assert isinstance(twice, ActivityRecord)
    assert twice == once


def test_normalize_records_merges_identical_ids(raw_event):
    first = raw_event("same", content="from relay one")
    second = raw_event("same", content="from relay two")
    other = raw_event("other")

    records = normalize_records([first, {"bad": True}, second, other])

    assert [record.id for record in records] == ["same", "other"]
    assert records[0].content == "from relay one"
