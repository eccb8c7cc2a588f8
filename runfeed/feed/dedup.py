"""Near-duplicate detection for records from the same author.

The same workout may reach the feed several times: echoed verbatim by
several relays, republished by a client retry under a new id, or re-posted
by hand with the same caption. Thresholds are policy, not protocol.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TypeVar

from loguru import logger

from runfeed.config.settings import settings
from runfeed.feed.metrics import distance_km_of, parse_duration_seconds
from runfeed.feed.models import ActivityRecord

R = TypeVar("R", bound=ActivityRecord)


@dataclass(frozen=True)
class DedupPolicy:
    """Duplicate tolerances.

    Attributes:
        close_distance_km: Distance tolerance for the time-boxed rule
        close_time_seconds: Time window for the time-boxed rule
        loose_distance_km: Distance tolerance for the duration and content rules
        content_time_seconds: Time window for the content rule
    """

    close_distance_km: float = 0.05
    close_time_seconds: int = 600
    loose_distance_km: float = 0.1
    content_time_seconds: int = 3600

    @classmethod
    def from_settings(cls) -> DedupPolicy:
        return cls(
            close_distance_km=settings.dedup_close_distance_km,
            close_time_seconds=settings.dedup_close_time_seconds,
            loose_distance_km=settings.dedup_loose_distance_km,
            content_time_seconds=settings.dedup_content_time_seconds,
        )


DEFAULT_POLICY = DedupPolicy()


def _same_workout(candidate: ActivityRecord, existing: ActivityRecord, policy: DedupPolicy) -> bool:
    if existing.id == candidate.id:
        return True

    if existing.author_id != candidate.author_id:
        return False

    existing_km = distance_km_of(existing)
    candidate_km = distance_km_of(candidate)
    distance_diff = abs(existing_km - candidate_km)
    time_diff = abs(existing.created_at - candidate.created_at)

    # Numeric rules need a measured distance on both sides; plain posts only match by id or content
    measured = existing_km > 0 and candidate_km > 0

    if measured and distance_diff < policy.close_distance_km and time_diff < policy.close_time_seconds:
        return True

    existing_duration = existing.tag_value("duration")
    candidate_duration = candidate.tag_value("duration")
    if measured and existing_duration and candidate_duration and distance_diff < policy.loose_distance_km:
        existing_seconds = parse_duration_seconds(existing_duration)
        # Unparsable durations only match when the raw values are identical
        if existing_seconds == parse_duration_seconds(candidate_duration) and (
            existing_seconds > 0 or existing_duration.strip() == candidate_duration.strip()
        ):
            return True

    return bool(
        existing.content
        and existing.content == candidate.content
        and distance_diff < policy.loose_distance_km
        and time_diff < policy.content_time_seconds
    )


def is_duplicate(
    candidate: ActivityRecord,
    already_accepted: Iterable[ActivityRecord],
    policy: DedupPolicy = DEFAULT_POLICY,
) -> bool:
    """Check whether ``candidate`` duplicates any already accepted record.

    Never raises; a comparison failure is logged and treated as not duplicate.
    """
    try:
        return any(_same_workout(candidate, existing, policy) for existing in already_accepted)
    except Exception as e:
        logger.warning(f"[DEDUP] Error checking duplicate for record {candidate.id}: {e!s}")
        return False


def dedupe_records(
    records: Sequence[R],
    policy: DedupPolicy = DEFAULT_POLICY,
    seen: Sequence[ActivityRecord] = (),
) -> tuple[list[R], int]:
    """Fold ``records`` into an accepted list, skipping duplicates.

    Args:
        records: Candidates in priority order (earlier wins)
        policy: Duplicate tolerances
        seen: Records accepted by earlier passes (e.g., previous pages); candidates
            duplicating them are dropped but ``seen`` itself is not returned

    Returns:
        Tuple of (accepted records, number of duplicates dropped)
    """
    accepted: list[R] = []
    duplicates = 0
    for record in records:
        if is_duplicate(record, seen, policy) or is_duplicate(record, accepted, policy):
            duplicates += 1
            continue
        accepted.append(record)

    if duplicates:
        logger.debug(f"[DEDUP] Dropped {duplicates} duplicate records, kept {len(accepted)}")
    return accepted, duplicates
