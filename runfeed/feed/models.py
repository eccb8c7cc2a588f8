from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class ActivityRecord(BaseModel):
    """One normalized user-submitted record (workout or post)."""

    id: str
    author_id: str
    created_at: int = 0
    kind: int | None = None
    tags: list[list[str]] = Field(default_factory=list)
    content: str = ""

    def first_tag(self, *names: str) -> list[str] | None:
        """Return the first tag whose key is one of ``names`` (first-wins)."""
        for tag in self.tags:
            if tag and tag[0] in names:
                return tag
        return None

    def tag_value(self, *names: str) -> str | None:
        tag = self.first_tag(*names)
        if tag is None or len(tag) < 2:
            return None
        return tag[1]


class DerivedMetrics(BaseModel):
    distance_km: float = 0.0
    duration_seconds: int = 0
    activity_type: str = "run"
    calories: float = 0.0
    elevation_gain_m: float = 0.0
    speed_kmh: float | None = None
    pace_min_per_km: float | None = None

    @property
    def has_valid_distance(self) -> bool:
        return self.distance_km > 0


class Profile(BaseModel):
    author_id: str
    name: str | None = None
    display_name: str | None = None
    picture: str | None = None
    about: str | None = None
    lud16: str | None = None
    created_at: int = 0

    @property
    def label(self) -> str:
        return self.display_name or self.name or f"Runner {self.author_id[:8]}"


class Comment(BaseModel):
    id: str
    ref_id: str
    author_id: str
    created_at: int = 0
    content: str = ""
    attachments: list[str] = Field(default_factory=list)


class SupplementaryKind(str, Enum):
    PROFILES = "profiles"
    COMMENTS = "comments"
    REACTIONS = "reactions"
    REPOSTS = "reposts"
    ZAPS = "zaps"


class SupplementaryBundle(BaseModel):
    """Secondary data joined onto a batch of primary records, keyed by reference id."""

    reactions: dict[str, int] = Field(default_factory=dict)
    reposts: dict[str, int] = Field(default_factory=dict)
    tip_counts: dict[str, int] = Field(default_factory=dict)
    tip_amounts: dict[str, float] = Field(default_factory=dict)
    comments: dict[str, list[Comment]] = Field(default_factory=dict)
    profiles: dict[str, Profile] = Field(default_factory=dict)
    viewer_reactions: set[str] = Field(default_factory=set)
    viewer_reposts: set[str] = Field(default_factory=set)
    failed_kinds: list[SupplementaryKind] = Field(default_factory=list)
    diagnostics: list[str] = Field(default_factory=list)


class EnrichedActivityRecord(ActivityRecord):
    metrics: DerivedMetrics = Field(default_factory=DerivedMetrics)
    likes: int = 0
    reposts: int = 0
    tip_count: int = 0
    tip_amount: float = 0.0
    comments: list[Comment] = Field(default_factory=list)
    profile: Profile | None = None
    display_name: str = ""
    viewer_reacted: bool = False
    viewer_reposted: bool = False
    is_current_user: bool = False


class FeedPhase(str, Enum):
    IDLE = "idle"
    FETCHING_PRIMARY = "fetching_primary"
    PROCESSING_PRIMARY = "processing_primary"
    FETCHING_SUPPLEMENTARY = "fetching_supplementary"
    PROCESSING_SUPPLEMENTARY = "processing_supplementary"
    READY = "ready"
    BACKGROUND_REFRESHING = "background_refreshing"
    ERROR = "error"


class LoadingProgress(BaseModel):
    phase: FeedPhase = FeedPhase.IDLE
    message: str = ""


class FeedPage(BaseModel):
    records: list[EnrichedActivityRecord] = Field(default_factory=list)
    has_more: bool = False
    loading_progress: LoadingProgress = Field(default_factory=LoadingProgress)
    last_updated: float | None = None
    error: str | None = None
    diagnostics: list[str] = Field(default_factory=list)

    @property
    def phase(self) -> FeedPhase:
        return self.loading_progress.phase


class FeedSnapshot(BaseModel):
    """Cached form of an assembled feed: every fetched record plus the network cursor."""

    records: list[EnrichedActivityRecord] = Field(default_factory=list)
    network_pages: int = 1
    network_exhausted: bool = False
