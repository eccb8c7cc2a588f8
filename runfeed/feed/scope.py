"""Feed scope: which records a feed shows and where it is cached."""

from __future__ import annotations

import datetime as dt
import hashlib
from dataclasses import dataclass, field

from runfeed.feed.metrics import matches_activity_type
from runfeed.feed.models import EnrichedActivityRecord
from runfeed.integrations.nostr.filters import EventKind, RecordFilter

RUNNING_HASHTAGS = ("runstr", "running", "run")
FALLBACK_KEYWORDS = ("run", "running", "runstr", "jog", "5k", "10k", "marathon")


@dataclass(frozen=True)
class FeedScope:
    """Selection criteria for one feed.

    Attributes:
        kinds: Primary record kinds
        participants: Author ids the feed is limited to (None = anyone)
        since: Inclusive lower timestamp bound
        until: Inclusive upper timestamp bound
        activity_type: Canonical activity type to keep (None = all)
        hashtags: ``t`` tag values for the primary query
        season_tag: Required ``season`` tag value, if any
        metrics_only: Drop records without a valid distance
    """

    kinds: tuple[int, ...] = (EventKind.WORKOUT,)
    participants: tuple[str, ...] | None = None
    since: int | None = None
    until: int | None = None
    activity_type: str | None = None
    hashtags: tuple[str, ...] = ()
    season_tag: str | None = None
    metrics_only: bool = False
    fallback_keywords: tuple[str, ...] = field(default=FALLBACK_KEYWORDS)

    @classmethod
    def for_event_day(
        cls,
        participants: list[str],
        event_date: str,
        activity_type: str = "run",
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> FeedScope:
        """Scope for a team event feed on ``event_date`` (YYYY-MM-DD, UTC).

        With both ``start_time`` and ``end_time`` (HH:MM) the window is that span;
        otherwise it is the whole UTC day.
        """
        day = dt.date.fromisoformat(event_date)
        if start_time and end_time:
            start = dt.datetime.combine(day, dt.time.fromisoformat(start_time), tzinfo=dt.UTC)
            end = dt.datetime.combine(day, dt.time.fromisoformat(end_time), tzinfo=dt.UTC)
        else:
            start = dt.datetime.combine(day, dt.time.min, tzinfo=dt.UTC)
            end = dt.datetime.combine(day, dt.time(23, 59, 59), tzinfo=dt.UTC)
        return cls(
            participants=tuple(p for p in participants if p),
            since=int(start.timestamp()),
            until=int(end.timestamp()),
            activity_type=activity_type,
            metrics_only=True,
        )

    @property
    def is_bounded(self) -> bool:
        """True for date-bound feeds (e.g. a team event day), which are cached longer."""
        return self.since is not None and self.until is not None

    def primary_filter(self, limit: int, until: int | None = None) -> RecordFilter:
        """Primary query; ``until`` overrides the scope bound for pagination."""
        effective_until = self.until
        if until is not None:
            effective_until = until if effective_until is None else min(until, effective_until)
        return RecordFilter(
            kinds=list(self.kinds),
            authors=list(self.participants) if self.participants else None,
            tag_filters={"t": list(self.hashtags)} if self.hashtags else {},
            since=self.since,
            until=effective_until,
            limit=limit,
        )

    def fallback_filter(self, limit: int, since: int) -> RecordFilter:
        """Broader content search used when the primary query returns nothing."""
        return RecordFilter(
            kinds=[EventKind.POST],
            authors=list(self.participants) if self.participants else None,
            since=max(since, self.since) if self.since is not None else since,
            until=self.until,
            limit=limit,
            search=" OR ".join(self.fallback_keywords) if self.fallback_keywords else None,
        )

    def matches_fallback_content(self, content: str) -> bool:
        text = content.lower()
        return any(keyword in text for keyword in self.fallback_keywords)

    def includes(self, record: EnrichedActivityRecord) -> bool:
        if self.participants is not None and record.author_id not in self.participants:
            return False
        if self.since is not None and record.created_at < self.since:
            return False
        if self.until is not None and record.created_at > self.until:
            return False
        if self.activity_type and not matches_activity_type(record.tag_value("activity_type", "exercise"), self.activity_type):
            return False
        if self.season_tag and record.tag_value("season") != self.season_tag:
            return False
        return not (self.metrics_only and not record.metrics.has_valid_distance)

    def cache_key_parts(self) -> tuple[str, ...]:
        """Key parts: activity and date discriminators followed by a digest of the rest."""
        participants = ",".join(sorted(self.participants)) if self.participants is not None else "*"
        raw = "|".join(
            [
                ",".join(str(kind) for kind in sorted(self.kinds)),
                participants,
                str(self.since),
                str(self.until),
                ",".join(sorted(self.hashtags)),
                self.season_tag or "",
                str(self.metrics_only),
            ]
        )
        digest = hashlib.sha256(raw.encode()).hexdigest()[:12]
        day = dt.datetime.fromtimestamp(self.since, tz=dt.UTC).date().isoformat() if self.since is not None else "open"
        return ("feed", self.activity_type or "all", day, digest)
