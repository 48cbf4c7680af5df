"""
Upsert writer — normalised catalog record → titles + join rows.

Per record:
1. Upsert the title (tmdb_id, else name + release_year) → internal id
2. Link genres and the original language (ON CONFLICT DO NOTHING)
3. Sync flows only: link every active streaming service in the region

Each record is written inside its own savepoint. A failing record rolls
back alone and comes back as a FAILED outcome; the batch continues.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterable

    from viib.db.repositories import Repositories, TitleRepo
    from viib.pipeline.normalize import TitleRecord

logger = structlog.get_logger(__name__)


class UpsertStatus(str, enum.Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class UpsertOutcome:
    tmdb_id: int | None
    status: UpsertStatus
    title_id: uuid.UUID | None = None
    reason: str | None = None


@dataclass
class BatchReport:
    """Aggregated per-record outcomes."""

    outcomes: list[UpsertOutcome] = field(default_factory=list)

    def add(self, outcome: UpsertOutcome) -> None:
        self.outcomes.append(outcome)

    def extend(self, other: BatchReport) -> None:
        self.outcomes.extend(other.outcomes)

    def _count(self, status: UpsertStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    @property
    def succeeded(self) -> int:
        return self._count(UpsertStatus.SUCCESS)

    @property
    def skipped(self) -> int:
        return self._count(UpsertStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(UpsertStatus.FAILED)

    @property
    def failures(self) -> list[dict[str, Any]]:
        return [
            {"tmdb_id": o.tmdb_id, "reason": o.reason}
            for o in self.outcomes
            if o.status is UpsertStatus.FAILED
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "failures": self.failures[:20],
        }


class UpsertWriter:
    """Writes TitleRecords through a TitleRepo."""

    def __init__(
        self,
        titles: TitleRepo,
        *,
        genre_ids: dict[str, uuid.UUID],
        service_ids: list[uuid.UUID],
        region: str = "US",
        link_all_services: bool = True,
    ) -> None:
        self.titles = titles
        self.genre_ids = genre_ids
        self.service_ids = service_ids
        self.region = region
        self.link_all_services = link_all_services

    @classmethod
    async def create(
        cls, repos: Repositories, *, region: str = "US", link_all_services: bool = True
    ) -> UpsertWriter:
        """Load reference data once and build a writer."""
        genre_ids = await repos.reference.genre_ids_by_name()
        services = await repos.reference.active_services()
        return cls(
            repos.titles,
            genre_ids=genre_ids,
            service_ids=list(services.values()),
            region=region,
            link_all_services=link_all_services,
        )

    async def write(self, record: TitleRecord, language_code: str | None = None) -> UpsertOutcome:
        if not record.name:
            return UpsertOutcome(record.tmdb_id, UpsertStatus.SKIPPED, reason="missing name")

        genre_ids = [
            self.genre_ids[name.lower()]
            for name in record.genre_names
            if name.lower() in self.genre_ids
        ]
        language = record.original_language or language_code

        try:
            async with self.titles.savepoint():
                title_id = await self.titles.upsert_title(record.to_row())
                await self.titles.link_genres(title_id, genre_ids)
                if language:
                    await self.titles.link_language(title_id, language, "original")
                if self.link_all_services:
                    await self.titles.link_services(title_id, self.service_ids, self.region)
        except Exception as exc:
            logger.warning("title_upsert_failed", tmdb_id=record.tmdb_id, error=str(exc))
            return UpsertOutcome(record.tmdb_id, UpsertStatus.FAILED, reason=str(exc)[:500])

        return UpsertOutcome(record.tmdb_id, UpsertStatus.SUCCESS, title_id=title_id)

    async def write_many(
        self, records: Iterable[TitleRecord], language_code: str | None = None
    ) -> BatchReport:
        report = BatchReport()
        for record in records:
            report.add(await self.write(record, language_code))
        return report
