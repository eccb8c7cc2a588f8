"""Supplementary data joiner.

Given a batch of primary records, fetches profiles, comments, reactions,
reposts and zaps concurrently and joins them by reference id. A failure in
one kind never fails the join: that kind contributes nothing and a
diagnostic line is recorded.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Iterable, Sequence
from typing import Any

from loguru import logger

from runfeed.config.settings import settings
from runfeed.feed.errors import SupplementaryFetchError
from runfeed.feed.models import ActivityRecord, Comment, Profile, SupplementaryBundle, SupplementaryKind
from runfeed.feed.normalize import normalize_records
from runfeed.integrations.nostr.filters import EventKind, RecordFilter
from runfeed.integrations.nostr.pool import EventSource

MSATS_PER_SAT = 1000
DOWNVOTE_CONTENT = "-"

_URL_PATTERN = re.compile(r"https?://\S+\.(?:png|jpe?g|gif|webp|mp4|mov)(?:\?\S*)?", re.IGNORECASE)

_KIND_FOR: dict[SupplementaryKind, EventKind] = {
    SupplementaryKind.PROFILES: EventKind.PROFILE,
    SupplementaryKind.COMMENTS: EventKind.POST,
    SupplementaryKind.REACTIONS: EventKind.REACTION,
    SupplementaryKind.REPOSTS: EventKind.REPOST,
    SupplementaryKind.ZAPS: EventKind.ZAP,
}


def _reference_id(record: ActivityRecord, wanted: set[str]) -> str | None:
    """First ``e`` tag pointing at one of the wanted records."""
    for tag in record.tags:
        if len(tag) >= 2 and tag[0] == "e" and tag[1] in wanted:
            return tag[1]
    return None


def _parse_amount_msats(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        amount = int(value.strip())
    except (AttributeError, ValueError):
        return None
    return amount if amount >= 0 else None


def zap_amount_sats(record: ActivityRecord) -> float | None:
    """Tip amount in sats, or None when the receipt carries no amount.

    The amount tag holds millisats. Receipts that omit it usually embed the
    zap request JSON in a ``description`` tag, which carries its own amount tag.
    """
    amount = _parse_amount_msats(record.tag_value("amount"))
    if amount is None:
        description = record.tag_value("description")
        if description:
            try:
                request = json.loads(description)
            except ValueError:
                request = None
            if isinstance(request, dict):
                for tag in request.get("tags") or []:
                    if isinstance(tag, list) and len(tag) >= 2 and tag[0] == "amount":
                        amount = _parse_amount_msats(str(tag[1]))
                        break

    if amount is None:
        return None
    return amount / MSATS_PER_SAT


def _comment_attachments(record: ActivityRecord) -> list[str]:
    attachments: list[str] = []
    for tag in record.tags:
        if len(tag) >= 2 and tag[0] in {"r", "url"}:
            attachments.append(tag[1])
        elif tag and tag[0] == "imeta":
            attachments.extend(item[len("url ") :] for item in tag[1:] if item.startswith("url "))
    attachments.extend(_URL_PATTERN.findall(record.content))
    return list(dict.fromkeys(attachments))


def _parse_profile(record: ActivityRecord) -> Profile | None:
    try:
        data = json.loads(record.content) if record.content else {}
    except ValueError:
        logger.debug(f"[SUPPLEMENTARY] Unparsable profile content for {record.author_id[:8]}")
        return None
    if not isinstance(data, dict):
        return None

    def _text(key: str) -> str | None:
        value = data.get(key)
        return value if isinstance(value, str) and value else None

    return Profile(
        author_id=record.author_id,
        name=_text("name"),
        display_name=_text("display_name") or _text("displayName"),
        picture=_text("picture"),
        about=_text("about"),
        lud16=_text("lud16"),
        created_at=record.created_at,
    )


class SupplementaryJoiner:
    """Fetch and join secondary records for a batch of primary records."""

    def __init__(self, source: EventSource, *, timeout_seconds: float | None = None, limit: int | None = None) -> None:
        self._source = source
        self._timeout = timeout_seconds or settings.supplementary_timeout_seconds
        self._limit = limit

    def _filter_for(self, kind: SupplementaryKind, record_ids: list[str], author_ids: list[str]) -> RecordFilter:
        event_kind = _KIND_FOR[kind]
        if kind is SupplementaryKind.PROFILES:
            return RecordFilter(kinds=[event_kind], authors=author_ids, limit=self._limit or max(len(author_ids), 1))
        return RecordFilter(
            kinds=[event_kind],
            tag_filters={"e": record_ids},
            limit=self._limit or max(len(record_ids) * 20, 100),
        )

    async def _fetch_kind(self, kind: SupplementaryKind, record_ids: list[str], author_ids: list[str]) -> list[ActivityRecord]:
        record_filter = self._filter_for(kind, record_ids, author_ids)
        try:
            raws = await asyncio.wait_for(self._source.fetch(record_filter, timeout=self._timeout), timeout=self._timeout)
        except TimeoutError as e:
            raise SupplementaryFetchError(kind.value, f"timed out after {self._timeout}s") from e
        except Exception as e:
            raise SupplementaryFetchError(kind.value, str(e) or type(e).__name__) from e
        return normalize_records(raws)

    async def join(
        self,
        records: Sequence[ActivityRecord],
        viewer_id: str | None = None,
        kinds: Iterable[SupplementaryKind] | None = None,
    ) -> SupplementaryBundle:
        """Join secondary data onto ``records``.

        Args:
            records: Primary records
            viewer_id: Current viewer's id, for "already reacted/reposted" flags
            kinds: Subset of kinds to fetch (all when None)

        Returns:
            SupplementaryBundle; never raises
        """
        bundle = SupplementaryBundle()
        record_ids = list(dict.fromkeys(record.id for record in records))
        author_ids = list(dict.fromkeys(record.author_id for record in records))
        if not record_ids:
            return bundle

        wanted = list(dict.fromkeys(kinds)) if kinds is not None else list(SupplementaryKind)
        results = await asyncio.gather(
            *(self._fetch_kind(kind, record_ids, author_ids) for kind in wanted),
            return_exceptions=True,
        )

        id_set = set(record_ids)
        for kind, result in zip(wanted, results, strict=True):
            if isinstance(result, BaseException):
                bundle.failed_kinds.append(kind)
                bundle.diagnostics.append(str(result))
                logger.warning(f"[SUPPLEMENTARY] {kind.value} unavailable, continuing without it: {result!s}")
                continue
            try:
                self._apply(bundle, kind, result, id_set, viewer_id)
            except Exception as e:
                bundle.failed_kinds.append(kind)
                bundle.diagnostics.append(f"{kind.value}: {e!s}")
                logger.warning(f"[SUPPLEMENTARY] Failed to process {kind.value}: {e!s}")

        logger.info(
            f"[SUPPLEMENTARY] Joined data for {len(record_ids)} records",
            kinds=[kind.value for kind in wanted],
            failed=[kind.value for kind in bundle.failed_kinds],
        )
        return bundle

    def _apply(
        self,
        bundle: SupplementaryBundle,
        kind: SupplementaryKind,
        secondary: list[ActivityRecord],
        id_set: set[str],
        viewer_id: str | None,
    ) -> None:
        if kind is SupplementaryKind.PROFILES:
            for record in secondary:
                profile = _parse_profile(record)
                if profile is None:
                    continue
                current = bundle.profiles.get(profile.author_id)
                if current is None or profile.created_at > current.created_at:
                    bundle.profiles[profile.author_id] = profile
            return

        for record in secondary:
            ref_id = _reference_id(record, id_set)
            if ref_id is None:
                continue

            if kind is SupplementaryKind.COMMENTS:
                bundle.comments.setdefault(ref_id, []).append(
                    Comment(
                        id=record.id,
                        ref_id=ref_id,
                        author_id=record.author_id,
                        created_at=record.created_at,
                        content=record.content,
                        attachments=_comment_attachments(record),
                    )
                )
            elif kind is SupplementaryKind.REACTIONS:
                if record.content.strip() == DOWNVOTE_CONTENT:
                    continue
                bundle.reactions[ref_id] = bundle.reactions.get(ref_id, 0) + 1
                if viewer_id and record.author_id == viewer_id:
                    bundle.viewer_reactions.add(ref_id)
            elif kind is SupplementaryKind.REPOSTS:
                bundle.reposts[ref_id] = bundle.reposts.get(ref_id, 0) + 1
                if viewer_id and record.author_id == viewer_id:
                    bundle.viewer_reposts.add(ref_id)
            elif kind is SupplementaryKind.ZAPS:
                amount = zap_amount_sats(record)
                bundle.tip_counts[ref_id] = bundle.tip_counts.get(ref_id, 0) + 1
                bundle.tip_amounts[ref_id] = bundle.tip_amounts.get(ref_id, 0.0) + (amount if amount is not None else 1.0)


def _fallback_name(author_id: str) -> str:
    return f"Runner {author_id[:8]}"


def display_name_for(author_id: str, profiles: dict[str, Profile]) -> str:
    profile = profiles.get(author_id)
    return profile.label if profile is not None else _fallback_name(author_id)


def bundle_counts_for(bundle: SupplementaryBundle, record_id: str) -> dict[str, Any]:
    """Per-record aggregate fields of a bundle, as keyword arguments for EnrichedActivityRecord."""
    return {
        "likes": bundle.reactions.get(record_id, 0),
        "reposts": bundle.reposts.get(record_id, 0),
        "tip_count": bundle.tip_counts.get(record_id, 0),
        "tip_amount": bundle.tip_amounts.get(record_id, 0.0),
        "comments": list(bundle.comments.get(record_id, [])),
        "viewer_reacted": record_id in bundle.viewer_reactions,
        "viewer_reposted": record_id in bundle.viewer_reposts,
    }
