"""
Streaming Availability Repair — fix-streaming-availability.

A title linked to (almost) every active streaming service in a region was
almost certainly blanket-linked at ingest time and never verified. For
each such title the true flat-rate providers are fetched from the
catalog, mapped to internal services, and the title's rows for the
region are replaced by exactly that set.

Provider lookups run concurrently in small groups; DB writes stay
sequential on the single session. A failed lookup leaves the title's
rows untouched.
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
from viib.pipeline.control import Clock, TimeBudget
from viib.pipeline.tmdb import CatalogError

if TYPE_CHECKING:
    from viib.config.settings import Settings
    from viib.db.models import Title
    from viib.db.repositories import Repositories
    from viib.pipeline.tmdb import CatalogClient

logger = structlog.get_logger(__name__)

# TMDB watch-provider id → internal streaming service name (US)
TMDB_PROVIDER_MAP: dict[int, str] = {
    8: "Netflix",
    9: "Prime Video",
    119: "Prime Video",
    15: "Hulu",
    350: "Apple TV+",
    2: "Apple TV+",
    337: "Disney+",
    390: "Disney+",
    1899: "HBO Max",
    384: "HBO Max",
}

LOOKUP_GROUP_SIZE = 10
GROUP_DELAY_SECONDS = 0.25
ERROR_OPERATION = "fix-streaming-availability-error"


def corruption_threshold(active_services: int) -> int:
    """Link count at or above which a title counts as blanket-linked."""
    return max(active_services - 1, 2)


def map_providers(
    providers: list[dict[str, Any]], service_ids: dict[str, uuid.UUID]
) -> list[uuid.UUID]:
    """Internal service ids for catalog providers, de-duplicated in order."""
    by_name = {name.lower(): sid for name, sid in service_ids.items()}
    mapped: list[uuid.UUID] = []
    for provider in providers:
        name = TMDB_PROVIDER_MAP.get(provider.get("provider_id"))  # type: ignore[arg-type]
        sid = by_name.get(name.lower()) if name else None
        if sid is not None and sid not in mapped:
            mapped.append(sid)
    return mapped


@dataclass
class RepairResult:
    processed: int = 0
    fixed: int = 0
    no_providers: int = 0
    errors: int = 0
    remaining: int = 0
    dry_run: bool = False
    done: bool = False
    stopped: bool = False
    timed_out: bool = False
    message: str = ""
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "processed": self.processed,
            "fixed": self.fixed,
            "noProviders": self.no_providers,
            "errors": self.errors,
            "remaining": self.remaining,
            "dryRun": self.dry_run,
            "done": self.done,
            "stopped": self.stopped,
            "timedOut": self.timed_out,
            "message": self.message,
            "duration": round(self.duration, 2),
        }


class StreamingRepairService:
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

    async def _lookup(self, title: Title) -> list[dict[str, Any]] | None:
        try:
            return await self.catalog.watch_providers(
                TitleType(title.title_type),
                int(title.tmdb_id),  # type: ignore[arg-type]
                self.settings.catalog_region,
            )
        except CatalogError as exc:
            logger.warning("provider_lookup_failed", title_id=str(title.id), error=str(exc))
            return None

    async def _apply(
        self,
        title: Title,
        providers: list[dict[str, Any]] | None,
        services: dict[str, uuid.UUID],
        result: RepairResult,
    ) -> None:
        result.processed += 1
        if providers is None:
            result.errors += 1
            return
        confirmed = map_providers(providers, services)

        if result.dry_run:
            if confirmed:
                result.fixed += 1
            else:
                result.no_providers += 1
            return

        title_id = title.id
        try:
            async with self.repos.titles.savepoint():
                await self.repos.titles.replace_streaming(
                    title_id, self.settings.catalog_region, confirmed
                )
            await self.repos.commit()
        except Exception as exc:
            logger.warning("streaming_replace_failed", title_id=str(title_id), error=str(exc))
            result.errors += 1
            return

        if confirmed:
            result.fixed += 1
        else:
            result.no_providers += 1

    async def run(
        self,
        *,
        batch_size: int | None = None,
        dry_run: bool = False,
        budget_seconds: float | None = None,
    ) -> RepairResult:
        start = self._clock()
        job = await self.repos.jobs.get(JobType.FIX_STREAMING)
        if job is not None and not job.is_active:
            return RepairResult(dry_run=dry_run, stopped=True, message="Job is not active")
        job_id = job.id if job is not None else None

        try:
            return await self._repair(start, job_id, batch_size, dry_run, budget_seconds)
        except Exception as exc:
            await self.repos.rollback()
            logger.exception("repair_failed")
            if job_id is not None and not dry_run:
                await self.repos.jobs.mark_failed(
                    job_id, str(exc), duration_seconds=int(self._clock() - start)
                )
            await self.repos.logs.log(
                ERROR_OPERATION,
                str(exc),
                context={"dry_run": dry_run},
                error_stack=traceback.format_exc(),
            )
            await self.repos.commit()
            raise

    async def _repair(
        self,
        start: float,
        job_id: uuid.UUID | None,
        batch_size: int | None,
        dry_run: bool,
        budget_seconds: float | None,
    ) -> RepairResult:
        budget = TimeBudget(
            budget_seconds if budget_seconds is not None else self.settings.repair_budget_seconds,
            self._clock,
        )
        result = RepairResult(dry_run=dry_run)
        region = self.settings.catalog_region
        limit = batch_size or self.settings.repair_batch_size

        services = await self.repos.reference.active_services()
        threshold = corruption_threshold(len(services))
        seen: set[uuid.UUID] = set()

        while not budget.exhausted:
            batch = [
                t
                for t in await self.repos.titles.corrupted_streaming_titles(region, threshold, limit)
                if t.id not in seen
            ]
            if not batch:
                break
            logger.info("repair_batch_start", titles=len(batch), threshold=threshold, dry_run=dry_run)

            for i in range(0, len(batch), LOOKUP_GROUP_SIZE):
                if budget.exhausted:
                    result.timed_out = True
                    break
                group = batch[i : i + LOOKUP_GROUP_SIZE]
                lookups = await asyncio.gather(*(self._lookup(t) for t in group))
                for title, providers in zip(group, lookups, strict=True):
                    seen.add(title.id)
                    await self._apply(title, providers, services, result)
                await self._sleep(GROUP_DELAY_SECONDS)
            if result.timed_out:
                break

        result.remaining = await self.repos.titles.count_corrupted_streaming(region, threshold)
        result.done = result.remaining == 0
        result.duration = self._clock() - start
        result.message = (
            "All corrupted titles have been processed" if result.done
            else f"Fixed {result.fixed}, {result.remaining} remaining"
        )

        if job_id is not None and not dry_run:
            if result.fixed:
                await self.repos.jobs.increment_processed(job_id, result.fixed)
            await self.repos.jobs.mark_completed(
                job_id,
                duration_seconds=int(result.duration),
                status=JobStatus.COMPLETED if result.done else JobStatus.IDLE,
            )
            await self.repos.commit()

        logger.info("repair_done", **result.to_dict())
        return result
