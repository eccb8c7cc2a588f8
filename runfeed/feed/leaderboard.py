"""Per-author totals over workout records."""

from __future__ import annotations

from collections.abc import Iterable

from loguru import logger
from pydantic import BaseModel, Field

from runfeed.feed.dedup import DEFAULT_POLICY, DedupPolicy, dedupe_records
from runfeed.feed.metrics import extract_metrics, matches_activity_type
from runfeed.feed.models import ActivityRecord, EnrichedActivityRecord


class AuthorTotals(BaseModel):
    author_id: str
    total_distance_km: float = 0.0
    total_duration_seconds: int = 0
    activity_count: int = 0
    last_activity: int = 0
    record_ids: list[str] = Field(default_factory=list)


def _with_metrics(record: ActivityRecord) -> EnrichedActivityRecord:
    if isinstance(record, EnrichedActivityRecord):
        return record
    return EnrichedActivityRecord(**record.model_dump(), metrics=extract_metrics(record))


def rollup_by_author(
    records: Iterable[ActivityRecord],
    activity_type: str | None = None,
    policy: DedupPolicy = DEFAULT_POLICY,
) -> list[AuthorTotals]:
    """Sum distance, duration and count per author.

    Records are deduplicated first (newest copy kept). Records with no valid
    distance are skipped.

    Args:
        records: Workout records, enriched or not
        activity_type: Only count this canonical activity type (all when None)
        policy: Duplicate tolerances

    Returns:
        Totals ordered by distance descending, ties by activity count
    """
    measured = sorted((_with_metrics(record) for record in records), key=lambda r: r.created_at, reverse=True)
    unique, _ = dedupe_records(measured, policy)

    totals: dict[str, AuthorTotals] = {}
    skipped = 0
    for record in unique:
        metrics = record.metrics
        if not metrics.has_valid_distance:
            skipped += 1
            continue
        if activity_type and not matches_activity_type(record.tag_value("activity_type", "exercise"), activity_type):
            continue

        entry = totals.setdefault(record.author_id, AuthorTotals(author_id=record.author_id))
        entry.total_distance_km += metrics.distance_km
        entry.total_duration_seconds += metrics.duration_seconds
        entry.activity_count += 1
        entry.last_activity = max(entry.last_activity, record.created_at)
        entry.record_ids.append(record.id)

    if skipped:
        logger.debug(f"[LEADERBOARD] Skipped {skipped} records without a valid distance")

    return sorted(totals.values(), key=lambda t: (t.total_distance_km, t.activity_count), reverse=True)
