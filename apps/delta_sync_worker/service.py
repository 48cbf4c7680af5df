"""
Delta Sync Service — picks up recent releases.

Loops genre × language over a fixed lookback window (default 7 days),
discovering movies by primary release date and series by first air date,
newest first. Owns the sync_delta job row: running → completed | failed.
The next run is scheduled for tomorrow 02:00 UTC on both outcomes.
"""

from __future__ import annotations

import asyncio
import time
import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from viib.db.models import JobType, TitleType
from viib.pipeline.control import Clock, TimeBudget, next_daily_run
from viib.pipeline.ingest import ingest_discovered
from viib.pipeline.normalize import tv_genre_for
from viib.pipeline.tmdb import DiscoverFilter
from viib.pipeline.upsert import BatchReport, UpsertOutcome, UpsertStatus, UpsertWriter

if TYPE_CHECKING:
    from viib.config.settings import Settings
    from viib.db.repositories import Repositories
    from viib.pipeline.tmdb import CatalogClient

logger = structlog.get_logger(__name__)

ERROR_OPERATION = "sync-titles-delta-error"


@dataclass
class DeltaResult:
    report: BatchReport = field(default_factory=BatchReport)
    window_start: str = ""
    window_end: str = ""
    timed_out: bool = False
    duration: float = 0.0
    next_run_at: datetime | None = None

    @property
    def total_processed(self) -> int:
        return self.report.succeeded

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "totalProcessed": self.total_processed,
            "skipped": self.report.skipped,
            "failed": self.report.failed,
            "failures": self.report.failures[:20],
            "windowStart": self.window_start,
            "windowEnd": self.window_end,
            "timedOut": self.timed_out,
            "nextRunAt": self.next_run_at.isoformat() if self.next_run_at else None,
            "duration": round(self.duration, 2),
            "message": f"Sync completed successfully. {self.total_processed} new titles added.",
        }


class DeltaSyncService:
    def __init__(
        self,
        repos: Repositories,
        catalog: CatalogClient,
        settings: Settings,
        *,
        clock: Clock = time.monotonic,
        sleep: Any = asyncio.sleep,
        now: Any = None,
    ) -> None:
        self.repos = repos
        self.catalog = catalog
        self.settings = settings
        self._clock = clock
        self._sleep = sleep
        self._now = now or (lambda: datetime.now(UTC))

    def _filters(
        self, genre_id: int, language: str, start: Any, end: Any, min_rating: float
    ) -> list[DiscoverFilter]:
        filters = [
            DiscoverFilter(
                media_type=TitleType.MOVIE,
                genre_id=genre_id,
                original_language=language,
                date_from=start,
                date_to=end,
                min_rating=min_rating,
                min_vote_count=self.settings.default_min_vote_count,
                sort_by="release_date.desc",
            )
        ]
        tv_genre = tv_genre_for(genre_id)
        if tv_genre is not None:
            filters.append(
                DiscoverFilter(
                    media_type=TitleType.SERIES,
                    genre_id=tv_genre,
                    original_language=language,
                    date_from=start,
                    date_to=end,
                    min_rating=min_rating,
                    min_vote_count=self.settings.default_min_vote_count,
                    sort_by="first_air_date.desc",
                )
            )
        return filters

    async def run(self) -> DeltaResult:
        job = await self.repos.jobs.require(JobType.SYNC_DELTA)
        job_id = job.id
        start = self._clock()
        await self.repos.jobs.mark_running(job_id)
        await self.repos.commit()

        result = DeltaResult()
        processed = 0
        last_reported = 0

        async def report(outcome: UpsertOutcome) -> None:
            nonlocal processed, last_reported
            if outcome.status is not UpsertStatus.SUCCESS:
                return
            processed += 1
            if processed - last_reported >= self.settings.progress_every:
                await self.repos.jobs.set_progress(job_id, processed)
                await self.repos.commit()
                last_reported = processed
                logger.info("delta_sync_progress", processed=processed)

        try:
            config = dict(job.configuration or {})
            min_rating = float(config.get("min_rating") or self.settings.default_min_rating)
            lookback = int(config.get("lookback_days") or self.settings.delta_lookback_days)
            max_pages = int(config.get("max_pages") or 1)
            budget = TimeBudget(config.get("max_runtime_seconds"), self._clock)

            today = self._now().date()
            window_start = today - timedelta(days=lookback)
            result.window_start, result.window_end = window_start.isoformat(), today.isoformat()

            genre_ids = [int(g) for g in config.get("genre_ids") or []]
            if not genre_ids:
                genre_ids = await self.repos.reference.tmdb_genre_ids()
            languages = list(config.get("languages") or []) or await self.repos.reference.language_codes()
            writer = await UpsertWriter.create(self.repos, region=self.settings.catalog_region)

            logger.info(
                "delta_sync_start",
                window_start=result.window_start,
                window_end=result.window_end,
                genres=len(genre_ids),
                languages=len(languages),
            )

            for genre_id in genre_ids:
                for language in languages:
                    for flt in self._filters(genre_id, language, window_start, today, min_rating):
                        part = await ingest_discovered(
                            self.catalog,
                            writer,
                            flt,
                            max_pages=max_pages,
                            language_code=language,
                            budget=budget,
                            on_outcome=report,
                        )
                        result.report.extend(part)
                    await self._sleep(self.settings.request_delay_seconds)
                    if budget.exhausted:
                        result.timed_out = True
                        break
                if result.timed_out:
                    break

            result.duration = self._clock() - start
            result.next_run_at = next_daily_run(self._now(), self.settings.delta_next_run_hour)
            await self.repos.jobs.mark_completed(
                job_id,
                total=result.total_processed,
                duration_seconds=int(result.duration),
                next_run_at=result.next_run_at,
            )
            await self.repos.commit()
        except Exception as exc:
            await self.repos.rollback()
            logger.exception("delta_sync_failed")
            await self.repos.jobs.mark_failed(
                job_id,
                str(exc),
                duration_seconds=int(self._clock() - start),
                next_run_at=next_daily_run(self._now(), self.settings.delta_next_run_hour),
            )
            await self.repos.logs.log(ERROR_OPERATION, str(exc), error_stack=traceback.format_exc())
            await self.repos.commit()
            raise

        logger.info("delta_sync_done", total=result.total_processed, duration=result.duration)
        return result
