"""
Orchestrator Service — dispatches full-refresh work units.

One full-refresh-titles invocation is issued per work unit with a fixed
delay between issuances. Dispatches are fire-and-forget tasks: the loop
never waits on a completion before issuing the next unit.

Every `dispatch_poll_every` dispatches the job status is re-read; an
`idle` or `failed` job halts the loop, so up to `poll_every - 1` units
may still go out after an operator stop.

Only this loop touches the DB session. Finished dispatch tasks are
drained between issuances and their outcomes recorded:
  - success → appended to configuration.completed_work_units
  - failure → appended to configuration.failed_work_units and logged as
              `full-refresh-thread-dispatch-failed` with retry parameters
"""

from __future__ import annotations

import asyncio
import time
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from apps.full_refresh_worker.service import DEFAULT_START_YEAR
from viib.db.repositories import JobNotFoundError
from viib.pipeline.control import Clock, StopPoller

if TYPE_CHECKING:
    from collections.abc import Iterable

    from viib.config.settings import Settings
    from viib.db.models import Job
    from viib.db.repositories import Repositories

logger = structlog.get_logger(__name__)

TARGET_FUNCTION = "full-refresh-titles"
DISPATCH_FAILED_OPERATION = "full-refresh-thread-dispatch-failed"
ORCHESTRATOR_ERROR_OPERATION = "full-refresh-orchestrator-error"


class Invoker(Protocol):
    async def invoke(self, name: str, body: dict[str, Any]) -> dict[str, Any]: ...


@dataclass(frozen=True)
class WorkUnit:
    """One (language, year, genre) chunk of the full refresh grid."""

    language_code: str
    year: int
    genre_id: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkUnit:
        return cls(
            language_code=str(data.get("languageCode") or data["language_code"]),
            year=int(data.get("year") or data.get("startYear") or data["start_year"]),
            genre_id=int(data.get("genreId") or data["genre_id"]),
        )

    @property
    def key(self) -> tuple[str, int, int]:
        return (self.language_code, self.year, self.genre_id)

    def to_dict(self) -> dict[str, Any]:
        return {"languageCode": self.language_code, "year": self.year, "genreId": self.genre_id}

    def request_body(self, job_id: uuid.UUID) -> dict[str, Any]:
        """Body for the full-refresh-titles invocation."""
        return {
            "languageCode": self.language_code,
            "startYear": self.year,
            "endYear": self.year,
            "genreId": self.genre_id,
            "jobId": str(job_id),
        }


def build_work_units(
    languages: Iterable[str], years: Iterable[int], genre_ids: Iterable[int]
) -> list[WorkUnit]:
    """Language-major grid of work units."""
    years = list(years)
    genre_ids = list(genre_ids)
    return [
        WorkUnit(language, year, genre_id)
        for language in languages
        for year in years
        for genre_id in genre_ids
    ]


async def work_units_for(repos: Repositories, job: Job) -> list[WorkUnit]:
    """Grid from the job configuration, falling back to seeded reference data."""
    config = job.configuration or {}
    languages = list(config.get("languages") or []) or await repos.reference.language_codes()
    genre_ids = [int(g) for g in config.get("genre_ids") or []] or await repos.reference.tmdb_genre_ids()
    start_year = int(config.get("start_year") or DEFAULT_START_YEAR)
    end_year = int(config.get("end_year") or datetime.now(UTC).year)
    return build_work_units(languages, range(start_year, end_year + 1), genre_ids)


def completed_keys(job: Job) -> set[tuple[str, int, int]]:
    keys: set[tuple[str, int, int]] = set()
    for entry in (job.configuration or {}).get("completed_work_units") or []:
        try:
            keys.add(WorkUnit.from_dict(entry).key)
        except (KeyError, TypeError, ValueError):
            continue
    return keys


@dataclass
class DispatchReport:
    total: int = 0
    skipped: int = 0
    dispatched: list[int] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
    stopped: bool = False
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "totalChunks": self.total,
            "skipped": self.skipped,
            "dispatched": len(self.dispatched),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "stopped": self.stopped,
            "duration": round(self.duration, 2),
        }


class OrchestratorService:
    """Rate-limited, cancellable dispatch of work units."""

    def __init__(
        self,
        repos: Repositories,
        invoker: Invoker,
        settings: Settings,
        *,
        clock: Clock = time.monotonic,
        sleep: Any = asyncio.sleep,
    ) -> None:
        self.repos = repos
        self.invoker = invoker
        self.settings = settings
        self._clock = clock
        self._sleep = sleep

    async def _dispatch(self, unit: WorkUnit, job_id: uuid.UUID) -> dict[str, Any]:
        return await self.invoker.invoke(TARGET_FUNCTION, unit.request_body(job_id))

    async def _record(
        self,
        task: asyncio.Task[dict[str, Any]],
        index: int,
        unit: WorkUnit,
        job_id: uuid.UUID,
        report: DispatchReport,
    ) -> None:
        now = datetime.now(UTC).isoformat()
        exc = task.exception()
        if exc is None:
            data = task.result() or {}
            await self.repos.jobs.append_work_unit(
                job_id,
                "completed_work_units",
                {
                    **unit.to_dict(),
                    "completedAt": now,
                    "titlesProcessed": data.get("titlesProcessed", 0),
                    "moviesProcessed": data.get("moviesProcessed", 0),
                    "seriesProcessed": data.get("seriesProcessed", 0),
                },
            )
            report.succeeded += 1
        else:
            logger.warning("chunk_dispatch_failed", index=index, **unit.to_dict(), error=str(exc))
            await self.repos.jobs.append_work_unit(
                job_id,
                "failed_work_units",
                {**unit.to_dict(), "failedAt": now, "error": str(exc)[:500], "attempts": 1},
            )
            await self.repos.logs.log(
                DISPATCH_FAILED_OPERATION,
                str(exc),
                context={
                    "job_id": str(job_id),
                    "chunk_index": index,
                    "retry_parameters": unit.request_body(job_id),
                },
            )
            report.failed += 1
        await self.repos.commit()

    async def _drain(
        self,
        tasks: dict[asyncio.Task[dict[str, Any]], tuple[int, WorkUnit]],
        job_id: uuid.UUID,
        report: DispatchReport,
        *,
        wait: bool = False,
    ) -> None:
        if wait and tasks:
            await asyncio.wait(list(tasks))
        for task in [t for t in tasks if t.done()]:
            index, unit = tasks.pop(task)
            await self._record(task, index, unit, job_id, report)

    async def run(
        self,
        job_id: uuid.UUID,
        units: list[WorkUnit],
        start_index: int = 0,
    ) -> DispatchReport:
        """Dispatch `units[start_index:]`, skipping already-completed ones."""
        start = self._clock()
        job = await self.repos.jobs.get_by_id(job_id)
        if job is None:
            raise JobNotFoundError(f"No job with id={job_id}")

        report = DispatchReport(total=len(units))
        done = completed_keys(job)
        pending = [
            (index, unit)
            for index, unit in enumerate(units)
            if index >= start_index and unit.key not in done
        ]
        report.skipped = len(units) - len(pending)

        poller = StopPoller(
            lambda: self.repos.jobs.get_status(job_id), every=self.settings.dispatch_poll_every
        )
        tasks: dict[asyncio.Task[dict[str, Any]], tuple[int, WorkUnit]] = {}
        logger.info("dispatch_start", total=report.total, pending=len(pending), skipped=report.skipped)

        try:
            for offset, (index, unit) in enumerate(pending):
                if await poller.should_stop(offset):
                    report.stopped = True
                    break
                await self._drain(tasks, job_id, report)

                task = asyncio.create_task(self._dispatch(unit, job_id))
                tasks[task] = (index, unit)
                report.dispatched.append(index)
                logger.info("chunk_dispatched", index=index, **unit.to_dict())

                if offset < len(pending) - 1:
                    await self._sleep(self.settings.dispatch_delay_seconds)

            await self._drain(tasks, job_id, report, wait=True)
            report.duration = self._clock() - start
            if not report.stopped:
                await self.repos.jobs.mark_completed(job_id, duration_seconds=int(report.duration))
            await self.repos.commit()
        except Exception as exc:
            for task in tasks:
                task.cancel()
            await self.repos.rollback()
            logger.exception("dispatch_loop_failed")
            await self.repos.jobs.mark_failed(job_id, str(exc))
            await self.repos.logs.log(
                ORCHESTRATOR_ERROR_OPERATION,
                str(exc),
                context={"job_id": str(job_id), "dispatched": len(report.dispatched)},
                error_stack=traceback.format_exc(),
            )
            await self.repos.commit()
            raise

        logger.info("dispatch_done", **report.to_dict())
        return report
