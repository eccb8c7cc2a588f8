"""Derived workout metrics from record tags.

Tag data comes from many independent publishers, so every field is parsed
defensively: bad values fall back to zero instead of raising.
"""

from __future__ import annotations

import math

from loguru import logger

from runfeed.feed.models import ActivityRecord, DerivedMetrics

KM_PER_MILE = 1.609344
KM_PER_METER = 0.001
METERS_PER_FOOT = 0.3048

MIN_DISTANCE_KM = 0.01
MAX_DISTANCE_KM = 500.0
MAX_DURATION_SECONDS = 86400

CANONICAL_ACTIVITY_TYPES = ("run", "walk", "cycle")
PACED_ACTIVITY_TYPES = frozenset({"run", "walk"})
DEFAULT_ACTIVITY_TYPE = "run"

_ACTIVITY_SYNONYMS: dict[str, str] = {
    "run": "run",
    "running": "run",
    "jog": "run",
    "jogging": "run",
    "cycle": "cycle",
    "cycling": "cycle",
    "bike": "cycle",
    "biking": "cycle",
    "walk": "walk",
    "walking": "walk",
    "hike": "walk",
    "hiking": "walk",
}

_MILE_UNITS = {"mi", "mile", "miles"}
_METER_UNITS = {"m", "meter", "meters", "metre", "metres"}
_FOOT_UNITS = {"ft", "foot", "feet"}


def _parse_float(value: str | None) -> float:
    if value is None:
        return 0.0
    try:
        parsed = float(value.strip())
    except (AttributeError, ValueError):
        return 0.0
    if math.isnan(parsed) or math.isinf(parsed) or parsed < 0:
        return 0.0
    return parsed


def normalize_activity_type(value: str | None) -> str:
    """Collapse activity type synonyms to run/walk/cycle.

    Args:
        value: Raw activity tag value (e.g., 'Running', 'bike', 'yoga')

    Returns:
        Canonical type, the stripped input for unrecognized types, or 'run' when absent
    """
    if value is None or not value.strip():
        return DEFAULT_ACTIVITY_TYPE
    stripped = value.strip()
    return _ACTIVITY_SYNONYMS.get(stripped.lower(), stripped)


def matches_activity_type(value: str | None, wanted: str) -> bool:
    """True if a raw activity tag value belongs to ``wanted`` (synonym aware).

    Records without an activity tag match every type.
    """
    if value is None or not value.strip():
        return True
    return normalize_activity_type(value) == normalize_activity_type(wanted)


def convert_distance_to_km(value: float, unit: str | None) -> float:
    """Convert a distance to kilometers. Unknown units are treated as km."""
    unit_lower = (unit or "km").strip().lower()
    if unit_lower in _MILE_UNITS:
        return value * KM_PER_MILE
    if unit_lower in _METER_UNITS:
        return value * KM_PER_METER
    return value


def parse_duration_seconds(value: str | None) -> int:
    """Parse a duration tag value into seconds.

    Accepts plain seconds ("1800", "1800.5") and clock forms ("00:30:00", "30:00").
    Unparsable or negative values yield 0.
    """
    if value is None:
        return 0
    text = value.strip()
    if not text:
        return 0

    if ":" in text:
        parts = text.split(":")
        if len(parts) > 3:
            return 0
        total = 0
        for part in parts:
            if not part.strip().isdigit():
                return 0
            total = total * 60 + int(part.strip())
        return total

    return int(_parse_float(text))


def _extract_distance_km(record: ActivityRecord) -> float:
    tag = record.first_tag("distance")
    if tag is None or len(tag) < 2:
        return 0.0

    value = _parse_float(tag[1])
    if value <= 0:
        return 0.0

    unit = tag[2] if len(tag) > 2 else None
    distance_km = convert_distance_to_km(value, unit)
    if distance_km < MIN_DISTANCE_KM or distance_km > MAX_DISTANCE_KM:
        logger.debug(f"[METRICS] Implausible distance {value} {unit or 'km'} ({distance_km:.2f}km) on record {record.id}, zeroing")
        return 0.0
    return distance_km


def _extract_elevation_m(record: ActivityRecord) -> float:
    tag = record.first_tag("elevation_gain")
    if tag is None or len(tag) < 2:
        return 0.0
    value = _parse_float(tag[1])
    unit = tag[2].strip().lower() if len(tag) > 2 else "m"
    if unit in _FOOT_UNITS:
        return value * METERS_PER_FOOT
    return value


def distance_km_of(record: ActivityRecord) -> float:
    """Distance in km for a record, reusing already attached metrics when present."""
    metrics = getattr(record, "metrics", None)
    if isinstance(metrics, DerivedMetrics):
        return metrics.distance_km
    try:
        return _extract_distance_km(record)
    except Exception as e:
        logger.warning(f"[METRICS] Failed to extract distance for record {record.id}: {e!s}")
        return 0.0


def _extract(record: ActivityRecord) -> DerivedMetrics:
    distance_km = _extract_distance_km(record)

    duration = parse_duration_seconds(record.tag_value("duration"))
    duration = min(max(duration, 0), MAX_DURATION_SECONDS)

    activity_type = normalize_activity_type(record.tag_value("activity_type", "exercise"))

    speed_kmh: float | None = None
    pace_min_per_km: float | None = None
    if distance_km > 0 and duration > 0:
        speed_kmh = distance_km / (duration / 3600)
        if activity_type in PACED_ACTIVITY_TYPES:
            pace_min_per_km = (duration / 60) / distance_km

    return DerivedMetrics(
        distance_km=distance_km,
        duration_seconds=duration,
        activity_type=activity_type,
        calories=_parse_float(record.tag_value("calories")),
        elevation_gain_m=_extract_elevation_m(record),
        speed_kmh=speed_kmh,
        pace_min_per_km=pace_min_per_km,
    )


def extract_metrics(record: ActivityRecord) -> DerivedMetrics:
    """Extract derived metrics from a record's tags.

    Never raises: unexpected failures are logged and produce default metrics.

    Args:
        record: Normalized record

    Returns:
        DerivedMetrics with every numeric field in range and non-negative
    """
    try:
        return _extract(record)
    except Exception as e:
        logger.warning(f"[METRICS] Failed to extract metrics for record {record.id}: {e!s}")
        return DerivedMetrics()
