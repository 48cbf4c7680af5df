"""
Details Enrichment — backfills overview, poster, backdrop, runtime and the
catalog's own trailer for titles missing them.

Rows are taken most-popular first. Each row's update is computed in full
from one details call and written once (or not at all). The wall-clock
budget is checked before a row is started, never in the middle of one.
Fields the catalog has no value for get a placeholder so the row drops
out of the selection.
"""

from __future__ import annotations

import asyncio
import time
import traceback
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from viib.db.models import JobStatus, JobType, TitleType
from viib.pipeline.control import Clock, StopPoller, TimeBudget
from viib.pipeline.tmdb import find_tmdb_trailer
from viib.pipeline.youtube import youtube_url

if TYPE_CHECKING:
    from viib.config.settings import Settings
    from viib.db.models import Title
    from viib.db.repositories import Repositories
    from viib.pipeline.tmdb import CatalogClient

logger = structlog.get_logger(__name__)

NO_OVERVIEW = "[No overview available]"
NO_POSTER = "/no-poster"
ROW_DELAY_SECONDS = 0.1
ERROR_OPERATION = "enrich-title-details-batch-error"


def _is_empty(value: str | None) -> bool:
    return value is None or not value.strip()


def compute_details_update(title: Title, details: dict[str, Any]) -> dict[str, Any]:
    """Column changes for one title given its catalog details payload."""
    values: dict[str, Any] = {}

    if _is_empty(title.overview):
        values["overview"] = details.get("overview") or NO_OVERVIEW
    if _is_empty(title.poster_path):
        values["poster_path"] = details.get("poster_path") or NO_POSTER
    if _is_empty(title.backdrop_path) and details.get("backdrop_path"):
        values["backdrop_path"] = details["backdrop_path"]

    if title.title_type == TitleType.MOVIE.value:
        runtime = details.get("runtime")
        if runtime and runtime != title.runtime:
            values["runtime"] = int(runtime)
    else:
        episode = details.get("episode_run_time") or []
        if episode and episode[0] and episode[0] != title.episode_run_time:
            values["episode_run_time"] = int(episode[0])

    if _is_empty(title.trailer_url):
        key = find_tmdb_trailer((details.get("videos") or {}).get("results") or [])
        if key:
            values["trailer_url"] = youtube_url(key)
            values["is_tmdb_trailer"] = True

    return values


@dataclass
class EnrichResult:
    processed: int = 0
    updated: int = 0
    errors: int = 0
    remaining: int = 0
    timed_out: bool = False
    stopped: bool = False
    complete: bool = False
    message: str = ""
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "processed": self.processed,
            "updated": self.updated,
            "errors": self.errors,
            "remaining": self.remaining,
            "timedOut": self.timed_out,
            "stoppedByUser": self.stopped,
            "isComplete": self.complete,
            "message": self.message,
            "duration": round(self.duration, 2),
        }


class DetailsEnrichmentService:
    def __init__(
        self,
        repos: Repositories,
        catalog: CatalogClient,
        settings: Settings,
        *,
        clock: Clock = time.monotonic,
        sleep: Any = asyncio.sleep,
    ) -> None:
        self.repos = repos
        self.catalog = catalog
        self.settings = settings
        self._clock = clock
        self._sleep = sleep

    async def run(
        self,
        job_id: uuid.UUID | None = None,
        *,
        batch_size: int | None = None,
        budget_seconds: float | None = None,
    ) -> EnrichResult:
        start = self._clock()
        try:
            return await self._run_batch(start, job_id, batch_size, budget_seconds)
        except Exception as exc:
            await self.repos.rollback()
            logger.exception("details_batch_failed")
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
    ) -> EnrichResult:
        budget = TimeBudget(
            budget_seconds if budget_seconds is not None else self.settings.enrich_details_budget_seconds,
            self._clock,
        )
        result = EnrichResult()

        job = await self.repos.jobs.get(JobType.ENRICH_DETAILS)
        config = dict(job.configuration or {}) if job else {}
        limit = batch_size or int(config.get("batch_size") or self.settings.enrich_details_batch_size)

        if job_id is not None:
            current = await self.repos.jobs.get_by_id(job_id)
            if current is None or not current.is_active or current.status is JobStatus.IDLE:
                result.stopped = True
                result.message = "Job stopped by user"
                return result
            await self.repos.jobs.mark_running(job_id)
            await self.repos.commit()

        titles = await self.repos.titles.titles_missing_details(limit)
        if not titles:
            result.complete = True
            result.message = "All titles enriched - job complete"
            if job_id is not None:
                await self.repos.jobs.mark_completed(job_id, duration_seconds=0)
                await self.repos.commit()
            return result

        poller = StopPoller(
            (lambda: self.repos.jobs.get_status(job_id)) if job_id else None,
            every=self.settings.dispatch_poll_every,
        )
        logger.info("details_batch_start", titles=len(titles), budget_s=budget.seconds)

        for title in titles:
            if budget.exhausted:
                result.timed_out = True
                logger.info("details_budget_exhausted", processed=result.processed)
                break
            if await poller.should_stop(result.processed):
                result.stopped = True
                break

            title_id = title.id
            try:
                details = await self.catalog.details(
                    TitleType(title.title_type), int(title.tmdb_id)  # type: ignore[arg-type]
                )
                if details is None:
                    result.errors += 1
                else:
                    values = compute_details_update(title, details)
                    if values:
                        async with self.repos.titles.savepoint():
                            await self.repos.titles.update_title(title_id, values)
                        await self.repos.commit()
                        result.updated += 1
                        logger.debug("title_enriched", title_id=str(title_id), fields=sorted(values))
            except Exception as exc:
                logger.warning("title_enrich_failed", title_id=str(title_id), error=str(exc))
                result.errors += 1

            result.processed += 1
            await self._sleep(ROW_DELAY_SECONDS)

        result.remaining = await self.repos.titles.count_missing_details()
        result.duration = self._clock() - start
        result.complete = result.remaining == 0
        result.message = f"Processed {result.processed}, updated {result.updated}"

        if job_id is not None:
            if result.updated:
                await self.repos.jobs.increment_processed(job_id, result.updated)
            if not result.stopped:
                await self.repos.jobs.mark_completed(
                    job_id,
                    duration_seconds=int(result.duration),
                    status=JobStatus.RUNNING if result.remaining else JobStatus.COMPLETED,
                )
            await self.repos.commit()

        logger.info("details_batch_done", **result.to_dict())
        return result
