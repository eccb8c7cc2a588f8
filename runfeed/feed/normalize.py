"""Normalization layer for raw relay records.

Converts heterogeneous raw records (relay JSON, event objects, already
normalized records) into ActivityRecord. Pure function with no side effects.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from loguru import logger

from runfeed.feed.errors import MalformedRecordError
from runfeed.feed.models import ActivityRecord

_AUTHOR_KEYS = ("pubkey", "author_id", "authorId", "author")
_CREATED_AT_KEYS = ("created_at", "createdAt")


def _get(raw: Any, *keys: str) -> Any:
    for key in keys:
        if isinstance(raw, Mapping):
            if key in raw and raw[key] is not None:
                return raw[key]
        else:
            value = getattr(raw, key, None)
            if value is not None:
                return value
    return None


def _clean_identifier(value: Any) -> str | None:
    if isinstance(value, Mapping):
        # Some event wrappers carry the author as {"pubkey": ...}
        value = value.get("pubkey")
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _clean_timestamp(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int | float):
        return int(value) if value > 0 else 0
    if isinstance(value, str):
        try:
            parsed = int(float(value.strip()))
        except ValueError:
            return 0
        return max(parsed, 0)
    return 0


def _clean_tags(value: Any) -> list[list[str]]:
    if not isinstance(value, list | tuple):
        return []
    tags: list[list[str]] = []
    for tag in value:
        if not isinstance(tag, list | tuple) or not tag:
            continue
        tags.append([item if isinstance(item, str) else str(item) for item in tag])
    return tags


def _clean_kind(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _normalize(raw: Any) -> ActivityRecord:
    if isinstance(raw, ActivityRecord):
        raw = raw.model_dump()

    record_id = _clean_identifier(_get(raw, "id"))
    if record_id is None:
        raise MalformedRecordError("record has no id")

    author_id = _clean_identifier(_get(raw, *_AUTHOR_KEYS))
    if author_id is None:
        raise MalformedRecordError(f"record {record_id} has no author")

    content = _get(raw, "content")
    return ActivityRecord(
        id=record_id,
        author_id=author_id,
        created_at=_clean_timestamp(_get(raw, *_CREATED_AT_KEYS)),
        kind=_clean_kind(_get(raw, "kind")),
        tags=_clean_tags(_get(raw, "tags")),
        content=content if isinstance(content, str) else "",
    )


def normalize_record(raw: Any) -> ActivityRecord | None:
    """Normalize a raw record.

    Args:
        raw: Relay JSON event, object with the same attributes, or ActivityRecord

    Returns:
        ActivityRecord, or None when the record lacks a usable id or author
    """
    try:
        return _normalize(raw)
    except MalformedRecordError as e:
        logger.debug(f"[NORMALIZE] Excluding record: {e.message}")
    except Exception as e:
        logger.warning(f"[NORMALIZE] Unexpected error normalizing record: {e!s}")
    return None


def normalize_records(raws: Iterable[Any]) -> list[ActivityRecord]:
    """Normalize a batch, dropping invalid records and merging identical ids (first wins)."""
    records: list[ActivityRecord] = []
    seen: set[str] = set()
    excluded = 0
    for raw in raws:
        record = normalize_record(raw)
        if record is None:
            excluded += 1
            continue
        if record.id in seen:
            continue
        seen.add(record.id)
        records.append(record)

    if excluded:
        logger.debug(f"[NORMALIZE] Excluded {excluded} malformed records")
    return records
