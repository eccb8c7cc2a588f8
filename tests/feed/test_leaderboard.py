import pytest

from runfeed.feed.leaderboard import rollup_by_author
from runfeed.feed.normalize import normalize_records

T0 = 1_700_000_000


def test_rollup_sums_per_author_ordered_by_distance(workout):
    records = normalize_records(
        [
            workout("a1", author="alice", created_at=T0, distance="5", duration="1500"),
            workout("a2", author="alice", created_at=T0 + 86400, distance="10", duration="3000"),
            workout("b1", author="bob", created_at=T0, distance="21.1", duration="6000"),
        ]
    )

    totals = rollup_by_author(records)

    assert [t.author_id for t in totals] == ["bob", "alice"]
    alice = totals[1]
    assert alice.total_distance_km == pytest.approx(15.0)
    assert alice.total_duration_seconds == 4500
    assert alice.activity_count == 2
    assert alice.last_activity == T0 + 86400
    assert set(alice.record_ids) == {"a1", "a2"}


def test_rollup_skips_duplicates_and_invalid_distances(workout):
    records = normalize_records(
        [
            workout("a1", author="alice", created_at=T0, distance="5.00"),
            workout("a1-echo", author="alice", created_at=T0 + 120, distance="5.01"),
            workout("a2", author="alice", created_at=T0 + 86400, distance="1000"),
        ]
    )

    totals = rollup_by_author(records)

    assert len(totals) == 1
    assert totals[0].activity_count == 1
    assert totals[0].record_ids == ["a1-echo"]


def test_rollup_filters_by_activity_type(workout):
    records = normalize_records(
        [
            workout("r1", author="alice", created_at=T0, distance="5", activity="running"),
            workout("c1", author="alice", created_at=T0 + 86400, distance="40", activity="cycling"),
        ]
    )

    totals = rollup_by_author(records, activity_type="run")

    assert totals[0].total_distance_km == pytest.approx(5.0)
    assert totals[0].record_ids == ["r1"]
