"""
Full Refresh Service — bulk catalog ingestion.

Two modes:
  - chunk       one (language, year range, genre) work unit, as dispatched
                by the orchestrator. Progress goes through the atomic
                increment; the job row's status is left to the orchestrator.
  - standalone  the whole genre × year × language grid in one invocation.
                Owns the job row: running → completed | failed, with
                absolute progress writes.

Per combination, movies and series are discovered separately (series via
the TV equivalent of the movie genre) and upserted through UpsertWriter.
"""

from __future__ import annotations

import asyncio
import time
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from viib.db.models import JobType, TitleType
from viib.pipeline.control import Clock, TimeBudget
from viib.pipeline.ingest import ingest_discovered
from viib.pipeline.normalize import tv_genre_for
from viib.pipeline.tmdb import DiscoverFilter
from viib.pipeline.upsert import BatchReport, UpsertOutcome, UpsertStatus, UpsertWriter

if TYPE_CHECKING:
    from viib.config.settings import Settings
    from viib.db.repositories import Repositories
    from viib.pipeline.tmdb import CatalogClient

logger = structlog.get_logger(__name__)

FUNCTION_NAME = "full-refresh-titles"
ERROR_OPERATION = "full-refresh-titles-error"
TIMEOUT_OPERATION = "full-refresh-titles-timeout"
STANDALONE_ERROR_OPERATION = "full-refresh-error"

DEFAULT_START_YEAR = 2020


@dataclass
class ChunkRequest:
    """Body of a full-refresh-titles invocation."""

    language_code: str
    start_year: int
    genre_id: int
    end_year: int | None = None
    job_id: uuid.UUID | None = None

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> ChunkRequest:
        language = body.get("languageCode")
        start_year = body.get("startYear") or body.get("year")
        genre_id = body.get("genreId")
        if not language or not start_year or not genre_id:
            raise ValueError("Missing required parameters: languageCode, startYear, genreId")
        job_id = body.get("jobId")
        return cls(
            language_code=str(language),
            start_year=int(start_year),
            end_year=int(body["endYear"]) if body.get("endYear") else None,
            genre_id=int(genre_id),
            job_id=uuid.UUID(str(job_id)) if job_id else None,
        )

    @property
    def years(self) -> range:
        return range(self.start_year, max(self.start_year, self.end_year or self.start_year) + 1)

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "languageCode": self.language_code,
            "startYear": self.start_year,
            "endYear": self.end_year or self.start_year,
            "genreId": self.genre_id,
        }
        if self.job_id:
            body["jobId"] = str(self.job_id)
        return body


@dataclass
class RefreshResult:
    movies: BatchReport = field(default_factory=BatchReport)
    series: BatchReport = field(default_factory=BatchReport)
    combinations: int = 0
    timed_out: bool = False
    duration: float = 0.0

    @property
    def titles_processed(self) -> int:
        return self.movies.succeeded + self.series.succeeded

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "titlesProcessed": self.titles_processed,
            "moviesProcessed": self.movies.succeeded,
            "seriesProcessed": self.series.succeeded,
            "skipped": self.movies.skipped + self.series.skipped,
            "failed": self.movies.failed + self.series.failed,
            "failures": (self.movies.failures + self.series.failures)[:20],
            "combinations": self.combinations,
            "timedOut": self.timed_out,
            "duration": round(self.duration, 2),
        }


class FullRefreshService:
    """Runs full-refresh ingestion against the catalog."""

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

    async def _config(self) -> dict[str, Any]:
        job = await self.repos.jobs.get(JobType.FULL_REFRESH)
        return dict(job.configuration or {}) if job else {}

    def _min_rating(self, config: dict[str, Any]) -> float:
        return float(config.get("min_rating") or self.settings.default_min_rating)

    async def _ingest_combination(
        self,
        writer: UpsertWriter,
        result: RefreshResult,
        *,
        language: str,
        year: int,
        genre_id: int,
        min_rating: float,
        budget: TimeBudget,
        on_outcome: Any = None,
    ) -> None:
        # New releases have few votes yet; no vote floor for the current year
        current_year = datetime.now(UTC).year
        rating = None if year >= current_year else min_rating
        vote_count = None if year >= current_year else self.settings.default_min_vote_count

        for media_type in (TitleType.MOVIE, TitleType.SERIES):
            if budget.exhausted:
                return
            if media_type is TitleType.MOVIE:
                genre: int | None = genre_id
            else:
                genre = tv_genre_for(genre_id)
                if genre is None:
                    continue
            flt = DiscoverFilter(
                media_type=media_type,
                genre_id=genre,
                original_language=language,
                year=year,
                min_rating=rating,
                min_vote_count=vote_count,
            )
            report = await ingest_discovered(
                self.catalog,
                writer,
                flt,
                max_pages=self.settings.discover_max_pages,
                language_code=language,
                budget=budget,
                on_outcome=on_outcome,
            )
            (result.movies if media_type is TitleType.MOVIE else result.series).extend(report)

        result.combinations += 1
        await self._sleep(self.settings.request_delay_seconds)

    # ── Chunk mode ───────────────────────────────────────────

    async def run_chunk(self, request: ChunkRequest) -> RefreshResult:
        """Ingest one work unit. Errors are logged with the request body and re-raised."""
        start = self._clock()
        log = logger.bind(
            language=request.language_code, year=request.start_year, genre_id=request.genre_id
        )
        log.info("full_refresh_chunk_start")

        result = RefreshResult()
        pending = 0

        async def count(outcome: UpsertOutcome) -> None:
            nonlocal pending
            if outcome.status is not UpsertStatus.SUCCESS or request.job_id is None:
                return
            pending += 1
            if pending >= self.settings.progress_every:
                await self.repos.jobs.increment_processed(request.job_id, pending)
                await self.repos.commit()
                pending = 0

        try:
            config = await self._config()
            budget = TimeBudget(config.get("max_runtime_seconds"), self._clock)
            writer = await UpsertWriter.create(self.repos, region=self.settings.catalog_region)

            for year in request.years:
                await self._ingest_combination(
                    writer,
                    result,
                    language=request.language_code,
                    year=year,
                    genre_id=request.genre_id,
                    min_rating=self._min_rating(config),
                    budget=budget,
                    on_outcome=count,
                )
                if budget.exhausted:
                    result.timed_out = True
                    break

            if request.job_id is not None and pending:
                await self.repos.jobs.increment_processed(request.job_id, pending)
            if result.timed_out:
                await self.repos.logs.log(
                    TIMEOUT_OPERATION,
                    "Chunk stopped at its runtime budget",
                    severity="warning",
                    context={"request_body": request.to_body(), "processed": result.titles_processed},
                )
            await self.repos.commit()
        except Exception as exc:
            await self.repos.rollback()
            log.exception("full_refresh_chunk_failed")
            await self.repos.logs.log(
                ERROR_OPERATION,
                str(exc),
                context={"request_body": request.to_body()},
                error_stack=traceback.format_exc(),
            )
            await self.repos.commit()
            raise

        result.duration = self._clock() - start
        log.info("full_refresh_chunk_done", **result.to_dict())
        return result

    # ── Standalone mode ──────────────────────────────────────

    async def _grid(self, config: dict[str, Any]) -> tuple[list[int], list[int], list[str]]:
        genre_ids = [int(g) for g in config.get("genre_ids") or []]
        if not genre_ids:
            genre_ids = await self.repos.reference.tmdb_genre_ids()
        languages = list(config.get("languages") or [])
        if not languages:
            languages = await self.repos.reference.language_codes()
        start_year = int(config.get("start_year") or DEFAULT_START_YEAR)
        end_year = int(config.get("end_year") or datetime.now(UTC).year)
        return genre_ids, list(range(start_year, end_year + 1)), languages

    async def run_all(self) -> RefreshResult:
        """Walk genre × year × language in one invocation."""
        job = await self.repos.jobs.require(JobType.FULL_REFRESH)
        job_id = job.id
        start = self._clock()
        await self.repos.jobs.mark_running(job_id)
        await self.repos.commit()

        result = RefreshResult()
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

        try:
            config = dict(job.configuration or {})
            budget = TimeBudget(config.get("max_runtime_seconds"), self._clock)
            genre_ids, years, languages = await self._grid(config)
            writer = await UpsertWriter.create(self.repos, region=self.settings.catalog_region)
            logger.info(
                "full_refresh_start",
                genres=len(genre_ids),
                years=len(years),
                languages=len(languages),
            )

            for genre_id in genre_ids:
                for year in years:
                    for language in languages:
                        await self._ingest_combination(
                            writer,
                            result,
                            language=language,
                            year=year,
                            genre_id=genre_id,
                            min_rating=self._min_rating(config),
                            budget=budget,
                            on_outcome=report,
                        )
                        if budget.exhausted:
                            result.timed_out = True
                            break
                    if result.timed_out:
                        break
                if result.timed_out:
                    break

            result.duration = self._clock() - start
            await self.repos.jobs.mark_completed(
                job_id,
                total=result.titles_processed,
                duration_seconds=int(result.duration),
            )
            await self.repos.commit()
        except Exception as exc:
            await self.repos.rollback()
            logger.exception("full_refresh_failed")
            await self.repos.jobs.mark_failed(
                job_id, str(exc), duration_seconds=int(self._clock() - start)
            )
            await self.repos.logs.log(
                STANDALONE_ERROR_OPERATION, str(exc), error_stack=traceback.format_exc()
            )
            await self.repos.commit()
            raise

        logger.info("full_refresh_done", **result.to_dict())
        return result
