"""Feed pipeline - normalize, measure, dedupe, enrich and page activity records.

This module provides:
- Record normalization and metric extraction
- Duplicate detection for workouts posted more than once
- Supplementary joins (profiles, comments, reactions, reposts, zaps)
- The cached, paginated feed assembler
"""

from runfeed.feed.assembler import FeedAssembler, Identity, RefreshHandle
from runfeed.feed.cache import CacheEntry, FeedCache
from runfeed.feed.dedup import DedupPolicy, dedupe_records, is_duplicate
from runfeed.feed.leaderboard import AuthorTotals, rollup_by_author
from runfeed.feed.metrics import extract_metrics
from runfeed.feed.models import (
    ActivityRecord,
    DerivedMetrics,
    EnrichedActivityRecord,
    FeedPage,
    FeedPhase,
    SupplementaryBundle,
    SupplementaryKind,
)
from runfeed.feed.normalize import normalize_record, normalize_records
from runfeed.feed.scope import FeedScope
from runfeed.feed.supplementary import SupplementaryJoiner

__all__ = [
    "ActivityRecord",
    "AuthorTotals",
    "CacheEntry",
    "DedupPolicy",
    "DerivedMetrics",
    "EnrichedActivityRecord",
    "FeedAssembler",
    "FeedCache",
    "FeedPage",
    "FeedPhase",
    "FeedScope",
    "Identity",
    "RefreshHandle",
    "SupplementaryBundle",
    "SupplementaryJoiner",
    "SupplementaryKind",
    "dedupe_records",
    "extract_metrics",
    "is_duplicate",
    "normalize_record",
    "normalize_records",
    "rollup_by_author",
]
