from runfeed.feed.dedup import DedupPolicy, dedupe_records, is_duplicate
from runfeed.feed.normalize import normalize_record, normalize_records

T0 = 1_700_000_000


def _rec(workout, record_id, **kwargs):
    record = normalize_record(workout(record_id, **kwargs))
    assert record is not None
    return record


def test_same_id_from_two_relays_collapses_to_one(workout):
    raws = [workout("dup", content="relay one"), workout("dup", content="relay two")]

    accepted, duplicates = dedupe_records(normalize_records(raws))

    assert [record.id for record in accepted] == ["dup"]
    assert duplicates == 0


def test_close_distance_and_time_is_duplicate(workout):
    first = _rec(workout, "r1", created_at=T0, distance="5.00")
    second = _rec(workout, "r2", created_at=T0 + 200, distance="5.02")

    assert is_duplicate(second, [first])


def test_far_in_time_without_duration_or_content_is_not_duplicate(workout):
    first = _rec(workout, "r1", created_at=T0, distance="5.00")
    third = _rec(workout, "r3", created_at=T0 + 900, distance="5.00")

    assert not is_duplicate(third, [first])


def test_matching_duration_is_duplicate_regardless_of_time(workout):
    first = _rec(workout, "r1", created_at=T0, distance="5.00", duration="1800")
    later = _rec(workout, "r2", created_at=T0 + 7200, distance="5.08", duration="00:30:00")

    assert is_duplicate(later, [first])


def test_unparsable_durations_only_match_when_identical(workout):
    first = _rec(workout, "r1", created_at=T0, distance="5.00", duration="n/a")
    other = _rec(workout, "r2", created_at=T0 + 7200, distance="5.00", duration="unknown")
    same = _rec(workout, "r3", created_at=T0 + 7200, distance="5.00", duration="n/a")

    assert not is_duplicate(other, [first])
    assert is_duplicate(same, [first])


def test_matching_content_within_an_hour_is_duplicate(workout):
    first = _rec(workout, "r1", created_at=T0, distance="5.00", content="Easy 5k!")
    second = _rec(workout, "r2", created_at=T0 + 1800, distance="5.05", content="Easy 5k!")
    late = _rec(workout, "r3", created_at=T0 + 4000, distance="5.05", content="Easy 5k!")

    assert is_duplicate(second, [first])
    assert not is_duplicate(late, [first])


def test_different_authors_are_never_duplicates(workout):
    first = _rec(workout, "r1", author="alice", created_at=T0)
    second = _rec(workout, "r2", author="bob", created_at=T0)

    assert not is_duplicate(second, [first])


def test_scenario_three_records_same_author(workout):
    records = normalize_records(
        [
            workout("r1", created_at=T0, distance="5.00"),
            workout("r2", created_at=T0 + 200, distance="5.02"),
            workout("r3", created_at=T0 + 900, distance="5.00"),
        ]
    )

    accepted, duplicates = dedupe_records(records)

    assert [record.id for record in accepted] == ["r1", "r3"]
    assert duplicates == 1


def test_dedupe_is_a_fixed_point(workout):
    records = normalize_records(
        [
            workout("r1", created_at=T0, duration="1800"),
            workout("r2", created_at=T0 + 100),
            workout("r3", created_at=T0 + 5000, distance="10"),
            workout("r4", author="b", created_at=T0),
        ]
    )

    once, _ = dedupe_records(records)
    twice, duplicates = dedupe_records(once)

    assert twice == once
    assert duplicates == 0


def test_seen_records_are_not_returned(workout):
    previous = normalize_records([workout("old", created_at=T0)])
    fresh = normalize_records([workout("new", created_at=T0 + 60), workout("other", created_at=T0 + 9000, distance="12")])

    accepted, duplicates = dedupe_records(fresh, seen=previous)

    assert [record.id for record in accepted] == ["other"]
    assert duplicates == 1


def test_policy_thresholds_are_configurable(workout):
    first = _rec(workout, "r1", created_at=T0, distance="5.00")
    second = _rec(workout, "r2", created_at=T0 + 900, distance="5.00")

    assert not is_duplicate(second, [first])
    assert is_duplicate(second, [first], DedupPolicy(close_time_seconds=1000))


def test_posts_without_distance_only_match_by_id_or_content(raw_event):
    first = normalize_record(raw_event("p1", kind=1, created_at=T0, content="Great run this morning"))
    other = normalize_record(raw_event("p2", kind=1, created_at=T0 + 200, content="New running shoes arrived"))
    repeat = normalize_record(raw_event("p3", kind=1, created_at=T0 + 200, content="Great run this morning"))

    assert not is_duplicate(other, [first])
    assert is_duplicate(repeat, [first])
