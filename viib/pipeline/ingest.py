"""Discover → normalise → upsert for one filter combination."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog

from viib.pipeline.normalize import normalize
from viib.pipeline.upsert import BatchReport, UpsertOutcome, UpsertStatus

if TYPE_CHECKING:
    from viib.pipeline.control import TimeBudget
    from viib.pipeline.tmdb import CatalogClient, DiscoverFilter
    from viib.pipeline.upsert import UpsertWriter

logger = structlog.get_logger(__name__)

OutcomeHook = Callable[[UpsertOutcome], Awaitable[None]]


async def ingest_discovered(
    catalog: CatalogClient,
    writer: UpsertWriter,
    flt: DiscoverFilter,
    *,
    max_pages: int,
    language_code: str | None = None,
    budget: TimeBudget | None = None,
    on_outcome: OutcomeHook | None = None,
) -> BatchReport:
    """Page through one discover query and upsert every result.

    Stops early (without starting another record) once `budget` is
    exhausted; callers check `budget.exhausted` to tell.
    """
    report = BatchReport()
    async for page in catalog.iter_discover(flt, max_pages):
        for raw in page.results:
            if budget is not None and budget.exhausted:
                return report
            try:
                record = normalize(raw, flt.media_type)
            except (KeyError, TypeError, ValueError) as exc:
                outcome = UpsertOutcome(raw.get("id"), UpsertStatus.SKIPPED, reason=f"malformed: {exc}")
            else:
                outcome = await writer.write(record, language_code)
            report.add(outcome)
            if on_outcome is not None:
                await on_outcome(outcome)

    logger.debug(
        "combination_ingested",
        media_type=flt.media_type.value,
        genre_id=flt.genre_id,
        language=flt.original_language,
        succeeded=report.succeeded,
        failed=report.failed,
    )
    return report
