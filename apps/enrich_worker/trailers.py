"""
Trailer Enrichment — finds a trailer URL for titles that have none.

Source order per title:
  1. series only: the latest season's catalog videos
  2. the catalog's own videos (type Trailer, site YouTube)
  3. YouTube keyword search, preferring official channels / titles

Every visited row gets `trailer_checked_at`, found or not, so it leaves
the selection. A quota error from the search API ends the batch early.
"""

from __future__ import annotations

import asyncio
import time
import traceback
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from viib.db.models import JobStatus, JobType, TitleType
from viib.pipeline.control import Clock, StopPoller, TimeBudget
from viib.pipeline.tmdb import find_tmdb_trailer
from viib.pipeline.youtube import (
    QuotaExceededError,
    pick_official_trailer,
    trailer_query,
    youtube_url,
)

if TYPE_CHECKING:
    from viib.config.settings import Settings
    from viib.db.models import Title
    from viib.db.repositories import Repositories
    from viib.pipeline.tmdb import CatalogClient
    from viib.pipeline.youtube import VideoSearchClient

logger = structlog.get_logger(__name__)

ERROR_OPERATION = "enrich-title-trailers-error"


@dataclass
class TrailerResult:
    processed: int = 0
    tmdb_trailers: int = 0
    youtube_trailers: int = 0
    not_found: int = 0
    errors: int = 0
    remaining: int = 0
    quota_exceeded: bool = False
    timed_out: bool = False
    stopped: bool = False
    message: str = ""
    duration: float = 0.0

    @property
    def found(self) -> int:
        return self.tmdb_trailers + self.youtube_trailers

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "processed": self.processed,
            "tmdbTrailers": self.tmdb_trailers,
            "youtubeTrailers": self.youtube_trailers,
            "notFound": self.not_found,
            "errors": self.errors,
            "remaining": self.remaining,
            "quotaExceeded": self.quota_exceeded,
            "timedOut": self.timed_out,
            "stoppedByUser": self.stopped,
            "message": self.message,
            "duration": round(self.duration, 2),
        }


class TrailerEnrichmentService:
    def __init__(
        self,
        repos: Repositories,
        catalog: CatalogClient,
        search: VideoSearchClient,
        settings: Settings,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self.repos = repos
        self.catalog = catalog
        self.search = search
        self.settings = settings
        self._clock = clock

    async def _catalog_trailer(self, title: Title) -> str | None:
        title_type = TitleType(title.title_type)
        tmdb_id = int(title.tmdb_id)  # type: ignore[arg-type]

        if title_type is TitleType.SERIES:
            details = await self.catalog.details(title_type, tmdb_id, append=())
            seasons = int((details or {}).get("number_of_seasons") or 0)
            if seasons > 0:
                key = find_tmdb_trailer(await self.catalog.season_videos(tmdb_id, seasons))
                if key:
                    return key

        return find_tmdb_trailer(await self.catalog.videos(title_type, tmdb_id))

    async def find_trailer(self, title: Title) -> tuple[str | None, bool]:
        """(url, is_catalog_trailer). Raises QuotaExceededError."""
        key = await self._catalog_trailer(title)
        if key:
            return youtube_url(key), True

        query = trailer_query(
            title.name, title.title_type == TitleType.SERIES.value, title.release_year
        )
        hit = pick_official_trailer(await self.search.search(query))
        if hit:
            return youtube_url(hit.video_id), False
        return None, False

    async def run(
        self,
        job_id: uuid.UUID | None = None,
        *,
        batch_size: int | None = None,
        budget_seconds: float | None = None,
    ) -> TrailerResult:
        start = self._clock()
        try:
            return await self._run_batch(start, job_id, batch_size, budget_seconds)
        except Exception as exc:
            await self.repos.rollback()
            logger.exception("trailer_batch_failed")
            if job_id is not None:
                await self.repos.jobs.mark_failed(
                    job_id, str(exc), duration_seconds=int(self._clock() - start)
                )
            await self.repos.logs.log(
                ERROR_OPERATION,
                str(exc),
                context={"job_id": str(job_id)} if job_id else None,
                error_stack=traceback.format_exc(),
            )
            await self.repos.commit()
            raise

    async def _run_batch(
        self,
        start: float,
        job_id: uuid.UUID | None,
        batch_size: int | None,
        budget_seconds: float | None,
    ) -> TrailerResult:
        budget = TimeBudget(
            budget_seconds if budget_seconds is not None else self.settings.enrich_trailers_budget_seconds,
            self._clock,
        )
        result = TrailerResult()

        job = await self.repos.jobs.get(JobType.ENRICH_TRAILERS)
        config = dict(job.configuration or {}) if job else {}
        limit = batch_size or int(config.get("batch_size") or self.settings.enrich_trailers_batch_size)

        if job_id is not None:
            current = await self.repos.jobs.get_by_id(job_id)
            if current is None or not current.is_active or current.status is JobStatus.IDLE:
                result.stopped = True
                result.message = "Job stopped by user"
                return result
            await self.repos.jobs.mark_running(job_id)
            await self.repos.commit()

        titles = await self.repos.titles.titles_missing_trailers(limit)
        poller = StopPoller(
            (lambda: self.repos.jobs.get_status(job_id)) if job_id else None,
            every=self.settings.dispatch_poll_every,
        )
        logger.info("trailer_batch_start", titles=len(titles))

        for title in titles:
            if budget.exhausted:
                result.timed_out = True
                break
            if await poller.should_stop(result.processed):
                result.stopped = True
                break

            title_id = title.id
            try:
                url, from_catalog = await self.find_trailer(title)
            except QuotaExceededError:
                logger.error("youtube_quota_exceeded", processed=result.processed)
                result.quota_exceeded = True
                break

            values: dict[str, Any] = {"trailer_checked_at": datetime.now(UTC)}
            if url:
                values.update(trailer_url=url, is_tmdb_trailer=from_catalog)
            try:
                async with self.repos.titles.savepoint():
                    await self.repos.titles.update_title(title_id, values)
                await self.repos.commit()
            except Exception as exc:
                logger.warning("trailer_update_failed", title_id=str(title_id), error=str(exc))
                result.errors += 1
                result.processed += 1
                continue

            if not url:
                result.not_found += 1
            elif from_catalog:
                result.tmdb_trailers += 1
            else:
                result.youtube_trailers += 1
            result.processed += 1

        result.remaining = await self.repos.titles.count_missing_trailers()
        result.duration = self._clock() - start
        result.message = (
            "YouTube quota exceeded" if result.quota_exceeded
            else f"Processed {result.processed}, found {result.found}"
        )

        if job_id is not None:
            if result.found:
                await self.repos.jobs.increment_processed(job_id, result.found)
            if not result.stopped:
                await self.repos.jobs.mark_completed(
                    job_id,
                    duration_seconds=int(result.duration),
                    status=JobStatus.RUNNING if result.remaining else JobStatus.COMPLETED,
                )
            await self.repos.commit()

        logger.info("trailer_batch_done", **result.to_dict())
        return result
