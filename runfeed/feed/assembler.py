"""Feed assembler.

Orchestrates source fetch -> normalize -> extract metrics -> dedup ->
supplementary join -> sorted, paginated FeedPage, with a cache in front and
background refresh behind.

Phases:
    idle -> fetching_primary -> processing_primary -> fetching_supplementary
    -> processing_supplementary -> ready
    error is reachable from any fetch/processing phase;
    background_refreshing is reachable from ready and never hides displayed records.

Pagination keeps two counters: the network page count (records requested from
relays) and the display limit (fetched records shown). load_more() raises the
display limit first and only goes to the network once every fetched record is
visible.

Every assembly takes a sequence token when it starts. A completion whose token
is older than the last applied one is discarded.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger
from pydantic import ValidationError

from runfeed.config.settings import settings
from runfeed.feed.cache import CacheEntry, FeedCache
from runfeed.feed.dedup import DedupPolicy, dedupe_records
from runfeed.feed.errors import FeedError, SourceUnavailableError
from runfeed.feed.metrics import extract_metrics
from runfeed.feed.models import (
    ActivityRecord,
    EnrichedActivityRecord,
    FeedPage,
    FeedPhase,
    FeedSnapshot,
    LoadingProgress,
    SupplementaryBundle,
    SupplementaryKind,
)
from runfeed.feed.normalize import normalize_records
from runfeed.feed.scope import FeedScope
from runfeed.feed.supplementary import SupplementaryJoiner, bundle_counts_for, display_name_for
from runfeed.integrations.nostr.filters import EventKind
from runfeed.integrations.nostr.pool import EventSource, RawRecord

NO_RESULTS_MESSAGE = "No running posts found. Try again later."

FeedListener = Callable[[FeedPage], None]

_KINDS_AFTER_PUBLISH: dict[int, SupplementaryKind] = {
    EventKind.REACTION: SupplementaryKind.REACTIONS,
    EventKind.REPOST: SupplementaryKind.REPOSTS,
    EventKind.POST: SupplementaryKind.COMMENTS,
    EventKind.ZAP: SupplementaryKind.ZAPS,
}


class Identity(Protocol):
    """Current viewer identity and signing capability. The pipeline never signs itself."""

    async def get_viewer_id(self) -> str | None: ...

    async def publish(self, template: dict[str, Any]) -> dict[str, Any]: ...


@dataclass
class RefreshHandle:
    """Cancellable handle for a scheduled background refresh."""

    task: asyncio.Task[None]

    def cancel(self) -> None:
        if not self.task.done():
            self.task.cancel()

    @property
    def cancelled(self) -> bool:
        return self.task.cancelled()

    @property
    def active(self) -> bool:
        return not self.task.done()


class FeedAssembler:
    """Assembles and paginates one scoped feed."""

    def __init__(
        self,
        source: EventSource,
        *,
        cache: FeedCache,
        joiner: SupplementaryJoiner | None = None,
        identity: Identity | None = None,
        scope: FeedScope | None = None,
        fetch_limit: int | None = None,
        display_step: int | None = None,
        freshness_seconds: float | None = None,
        refresh_interval_seconds: float | None = None,
        cache_ttl_seconds: float | None = None,
        fallback_search_hours: int | None = None,
        dedup_policy: DedupPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._source = source
        self._cache = cache
        self._joiner = joiner
        self._identity = identity
        self._scope = scope or FeedScope()
        self._fetch_limit = fetch_limit or settings.fetch_limit
        self._display_step = display_step or settings.display_step
        self._freshness_seconds = freshness_seconds if freshness_seconds is not None else settings.freshness_seconds
        self._refresh_interval = refresh_interval_seconds or settings.background_refresh_interval_seconds
        if cache_ttl_seconds is None and self._scope.is_bounded:
            cache_ttl_seconds = settings.event_feed_cache_ttl_seconds
        self._cache_ttl = cache_ttl_seconds
        self._fallback_hours = fallback_search_hours or settings.fallback_search_hours
        self._dedup_policy = dedup_policy or DedupPolicy.from_settings()
        self._clock = clock

        self._cache_key = cache.make_key(*self._scope.cache_key_parts())

        self._records: list[EnrichedActivityRecord] = []
        self._display_limit = self._display_step
        self._network_pages = 0
        self._network_exhausted = False
        self._progress = LoadingProgress()
        self._error: str | None = None
        self._diagnostics: list[str] = []
        self._last_updated: float | None = None

        self._sequence = 0
        self._applied_sequence = 0
        self._loading_more = False
        self._background_task: asyncio.Task[None] | None = None
        self._handles: list[RefreshHandle] = []
        self._listeners: list[FeedListener] = []

    @property
    def phase(self) -> FeedPhase:
        return self._progress.phase

    @property
    def cache_key(self) -> str:
        return self._cache_key

    @property
    def scope(self) -> FeedScope:
        return self._scope

    @property
    def background_pending(self) -> bool:
        return self._background_task is not None and not self._background_task.done()

    def add_listener(self, listener: FeedListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: FeedListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def can_load_more(self) -> bool:
        return self._display_limit < len(self._records) or not self._network_exhausted

    def current_page(self) -> FeedPage:
        return FeedPage(
            records=list(self._records[: self._display_limit]),
            has_more=self.can_load_more(),
            loading_progress=self._progress.model_copy(),
            last_updated=self._last_updated,
            error=self._error,
            diagnostics=list(self._diagnostics),
        )

    # Public operations

    async def get_feed(self, *, force_refresh: bool = False) -> FeedPage:
        """Return the feed, from cache when possible.

        A cache hit returns without touching the source and schedules one
        background refresh if the entry is older than the freshness threshold.
        """
        if not force_refresh:
            entry = self._cache.get(self._cache_key)
            if entry is not None and self._restore(entry):
                age = entry.age(self._clock())
                if age > self._freshness_seconds:
                    logger.debug(f"[FEED] Cached feed is {age:.0f}s old, scheduling background refresh")
                    self._schedule_background_pass()
                return self.current_page()

        return await self._assemble(reset=True)

    async def refresh(self) -> FeedPage:
        """Bypass the cache and reload the first page."""
        logger.info("[FEED] Refreshing feed", cache_key=self._cache_key)
        return await self._assemble(reset=True)

    async def load_more(self) -> FeedPage:
        """Show more records, going to the network only when every fetched record is visible."""
        if self._loading_more:
            return self.current_page()

        if self._network_pages == 0:
            return await self.get_feed()

        if self._display_limit < len(self._records):
            self._display_limit += self._display_step
            logger.debug(f"[FEED] Display limit raised to {self._display_limit} ({len(self._records)} fetched)")
            page = self.current_page()
            self._notify(page)
            return page

        self._loading_more = True
        try:
            return await self._assemble(reset=False)
        finally:
            self._loading_more = False

    def invalidate(self) -> None:
        """Drop this feed's cache entry, e.g. after the viewer published something."""
        self._cache.clear(self._cache_key)

    async def publish(self, template: dict[str, Any]) -> dict[str, Any]:
        """Sign and publish through the identity collaborator, then invalidate the cache.

        Reactions, reposts, comments and zaps on a displayed record trigger a
        reload of that record's matching supplementary kind.
        """
        if self._identity is None:
            raise FeedError("No identity available to publish", code="NOT_AUTHENTICATED")

        event = await self._identity.publish(template)
        self.invalidate()

        kind = _KINDS_AFTER_PUBLISH.get(template.get("kind", -1))
        if kind is not None:
            ref_ids = [tag[1] for tag in template.get("tags") or [] if len(tag) >= 2 and tag[0] == "e"]
            known = [ref_id for ref_id in ref_ids if any(record.id == ref_id for record in self._records)]
            if known:
                await self.reload_supplementary(known, [kind])
        return event

    async def reload_supplementary(self, record_ids: Iterable[str], kinds: Sequence[SupplementaryKind]) -> FeedPage:
        """Re-join the given supplementary kinds for some displayed records, replacing their values."""
        wanted = set(record_ids)
        targets = [record for record in self._records if record.id in wanted]
        if not targets or self._joiner is None:
            return self.current_page()

        viewer_id = await self._viewer_id()
        bundle = await self._joiner.join(targets, viewer_id=viewer_id, kinds=kinds)
        succeeded = [kind for kind in kinds if kind not in bundle.failed_kinds]

        self._records = [
            self._apply_kinds(record, bundle, succeeded, viewer_id) if record.id in wanted else record for record in self._records
        ]
        self._diagnostics = list(bundle.diagnostics)
        self._store_snapshot()
        page = self.current_page()
        self._notify(page)
        return page

    def schedule_background_refresh(self, interval_seconds: float | None = None) -> RefreshHandle:
        """Start a periodic background refresh. Cancel the handle (or call close()) on teardown."""
        interval = interval_seconds or self._refresh_interval

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval)
                logger.debug("[FEED] Running background fetch")
                await self._assemble(reset=True, background=True)

        handle = RefreshHandle(task=asyncio.create_task(_loop()))
        self._handles.append(handle)
        logger.debug(f"[FEED] Background refresh scheduled every {interval}s")
        return handle

    async def wait_for_background(self) -> None:
        if self._background_task is not None:
            await self._background_task

    async def close(self) -> None:
        """Cancel every scheduled refresh and any pending background pass."""
        tasks = [handle.task for handle in self._handles]
        if self._background_task is not None:
            tasks.append(self._background_task)
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._handles.clear()
        self._background_task = None
        logger.debug(f"[FEED] Assembler closed, cancelled {len(tasks)} tasks")

    # Assembly

    def _next_token(self) -> int:
        self._sequence += 1
        return self._sequence

    def _set_phase(self, token: int, phase: FeedPhase, message: str, background: bool) -> None:
        if background or token != self._sequence:
            return
        self._progress = LoadingProgress(phase=phase, message=message)

    async def _assemble(self, *, reset: bool, background: bool = False) -> FeedPage:
        token = self._next_token()
        if background and self._progress.phase is FeedPhase.READY:
            self._progress = LoadingProgress(phase=FeedPhase.BACKGROUND_REFRESHING, message="Refreshing in background...")

        until = None if reset else self._oldest_created_at()
        try:
            self._set_phase(token, FeedPhase.FETCHING_PRIMARY, "Fetching activities...", background)
            raws = await self._fetch_primary(until)
            if not raws and reset:
                logger.info("[FEED] No records for primary query, trying content search")
                raws = await self._fetch_fallback()
                if not raws:
                    raise SourceUnavailableError(NO_RESULTS_MESSAGE)

            self._set_phase(token, FeedPhase.PROCESSING_PRIMARY, f"Processing {len(raws)} activities...", background)
            fresh = self._process_primary(raws, seen=[] if reset else self._records)

            self._set_phase(token, FeedPhase.FETCHING_SUPPLEMENTARY, "Loading likes, comments and zaps...", background)
            bundle, viewer_id = await self._fetch_supplementary(fresh)

            self._set_phase(token, FeedPhase.PROCESSING_SUPPLEMENTARY, "Preparing feed...", background)
            enriched = [self._apply_kinds(record, bundle, list(SupplementaryKind), viewer_id) for record in fresh]
        except SourceUnavailableError as e:
            return self._apply_failure(token, e.message, reset=reset, background=background)
        except Exception as e:
            logger.error(f"[FEED] Unexpected error assembling feed: {e!s}")
            return self._apply_failure(token, f"Failed to load posts: {e!s}", reset=reset, background=background)

        return self._apply_success(token, enriched, bundle.diagnostics, reset=reset, background=background)

    async def _fetch_primary(self, until: int | None) -> list[RawRecord]:
        record_filter = self._scope.primary_filter(self._fetch_limit, until=until)
        try:
            return await self._source.fetch(record_filter)
        except Exception as e:
            logger.warning(f"[FEED] Primary fetch failed: {e!s}")
            return []

    async def _fetch_fallback(self) -> list[RawRecord]:
        since = int(self._clock()) - self._fallback_hours * 3600
        record_filter = self._scope.fallback_filter(self._fetch_limit, since=since)
        try:
            raws = await self._source.fetch(record_filter)
        except Exception as e:
            logger.warning(f"[FEED] Fallback content search failed: {e!s}")
            return []
        matched = [raw for raw in raws if isinstance(raw.get("content"), str) and self._scope.matches_fallback_content(raw["content"])]
        logger.info(f"[FEED] Content search found {len(matched)} of {len(raws)} posts")
        return matched

    def _process_primary(self, raws: list[RawRecord], seen: Sequence[ActivityRecord]) -> list[EnrichedActivityRecord]:
        records = normalize_records(raws)
        measured = [EnrichedActivityRecord(**record.model_dump(), metrics=extract_metrics(record)) for record in records]
        scoped = [record for record in measured if self._scope.includes(record)]
        scoped.sort(key=lambda record: record.created_at, reverse=True)
        accepted, duplicates = dedupe_records(scoped, self._dedup_policy, seen=seen)

        logger.info(
            "[FEED] Processed primary records",
            total=len(raws),
            normalized=len(records),
            in_scope=len(scoped),
            duplicates=duplicates,
            accepted=len(accepted),
        )
        return accepted

    async def _viewer_id(self) -> str | None:
        if self._identity is None:
            return None
        try:
            return await self._identity.get_viewer_id()
        except Exception as e:
            logger.debug(f"[FEED] Viewer identity unavailable: {e!s}")
            return None

    async def _fetch_supplementary(self, records: list[EnrichedActivityRecord]) -> tuple[SupplementaryBundle, str | None]:
        viewer_id = await self._viewer_id()
        if not records or self._joiner is None:
            return SupplementaryBundle(), viewer_id
        try:
            return await self._joiner.join(records, viewer_id=viewer_id), viewer_id
        except Exception as e:
            logger.warning(f"[FEED] Supplementary join failed, showing records without it: {e!s}")
            return SupplementaryBundle(diagnostics=[str(e)]), viewer_id

    @staticmethod
    def _apply_kinds(
        record: EnrichedActivityRecord,
        bundle: SupplementaryBundle,
        kinds: Sequence[SupplementaryKind],
        viewer_id: str | None,
    ) -> EnrichedActivityRecord:
        counts = bundle_counts_for(bundle, record.id)
        update: dict[str, Any] = {"is_current_user": bool(viewer_id) and record.author_id == viewer_id}
        if SupplementaryKind.REACTIONS in kinds:
            update["likes"] = counts["likes"]
            update["viewer_reacted"] = counts["viewer_reacted"]
        if SupplementaryKind.REPOSTS in kinds:
            update["reposts"] = counts["reposts"]
            update["viewer_reposted"] = counts["viewer_reposted"]
        if SupplementaryKind.ZAPS in kinds:
            update["tip_count"] = counts["tip_count"]
            update["tip_amount"] = counts["tip_amount"]
        if SupplementaryKind.COMMENTS in kinds:
            update["comments"] = counts["comments"]
        if SupplementaryKind.PROFILES in kinds:
            update["profile"] = bundle.profiles.get(record.author_id)
            update["display_name"] = display_name_for(record.author_id, bundle.profiles)
        return record.model_copy(update=update)

    def _oldest_created_at(self) -> int | None:
        timestamps = [record.created_at for record in self._records if record.created_at > 0]
        return min(timestamps) if timestamps else None

    # Applying results

    def _is_stale(self, token: int) -> bool:
        if token <= self._applied_sequence:
            logger.info(f"[FEED] Discarding stale completion (token={token}, applied={self._applied_sequence})")
            return True
        return False

    def _apply_success(
        self,
        token: int,
        enriched: list[EnrichedActivityRecord],
        diagnostics: list[str],
        *,
        reset: bool,
        background: bool,
    ) -> FeedPage:
        if self._is_stale(token):
            return self.current_page()
        self._applied_sequence = token

        if reset:
            self._records = enriched
            self._network_pages = 1
            self._network_exhausted = False
            if not background:
                self._display_limit = self._display_step
        else:
            self._records = sorted(self._records + enriched, key=lambda record: record.created_at, reverse=True)
            self._network_pages += 1
            self._display_limit += self._display_step
            if not enriched:
                self._network_exhausted = True
                logger.debug("[FEED] Network page returned no new records, pagination exhausted")

        self._error = None
        self._diagnostics = list(diagnostics)
        self._last_updated = self._clock()
        message = "Feed loaded" if self._records else "No activities matched this feed"
        self._progress = LoadingProgress(phase=FeedPhase.READY, message=message)
        self._store_snapshot()

        page = self.current_page()
        self._notify(page)
        return page

    def _apply_failure(self, token: int, message: str, *, reset: bool, background: bool) -> FeedPage:
        if background:
            logger.warning(f"[FEED] Background refresh failed, keeping displayed records: {message}")
            if token == self._sequence and self._progress.phase is FeedPhase.BACKGROUND_REFRESHING:
                self._progress = LoadingProgress(phase=FeedPhase.READY, message="Feed loaded")
            return self.current_page()

        if self._is_stale(token):
            return self.current_page()
        self._applied_sequence = token

        if reset:
            self._records = []
            self._network_pages = 1
            self._display_limit = self._display_step
            self._error = message
            self._progress = LoadingProgress(phase=FeedPhase.ERROR, message=message)
        else:
            logger.warning(f"[FEED] Loading more failed: {message}")
            self._progress = LoadingProgress(phase=FeedPhase.READY, message=message)

        page = self.current_page()
        self._notify(page)
        return page

    def _restore(self, entry: CacheEntry) -> bool:
        try:
            snapshot = FeedSnapshot.model_validate(entry.payload)
        except ValidationError as e:
            logger.warning(f"[FEED] Discarding unreadable cached feed: {e!s}")
            self.invalidate()
            return False

        self._applied_sequence = self._next_token()
        self._records = snapshot.records
        self._network_pages = snapshot.network_pages
        self._network_exhausted = snapshot.network_exhausted
        self._display_limit = self._display_step
        self._error = None
        self._last_updated = entry.stored_at
        self._progress = LoadingProgress(phase=FeedPhase.READY, message="Using cached feed")
        logger.debug(f"[FEED] Restored {len(self._records)} records from cache")
        self._notify(self.current_page())
        return True

    def _store_snapshot(self) -> None:
        snapshot = FeedSnapshot(
            records=self._records,
            network_pages=self._network_pages,
            network_exhausted=self._network_exhausted,
        )
        self._cache.set(self._cache_key, snapshot.model_dump(mode="json"), ttl_seconds=self._cache_ttl)

    def _schedule_background_pass(self) -> None:
        if self.background_pending:
            return
        self._progress = LoadingProgress(phase=FeedPhase.BACKGROUND_REFRESHING, message="Refreshing in background...")
        self._background_task = asyncio.create_task(self._assemble_in_background())

    async def _assemble_in_background(self) -> None:
        await self._assemble(reset=True, background=True)

    def _notify(self, page: FeedPage) -> None:
        for listener in list(self._listeners):
            try:
                listener(page)
            except Exception as e:
                logger.warning(f"[FEED] Feed listener failed: {e!s}")
