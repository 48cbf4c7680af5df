"""
Database repository layer — async CRUD operations for all tables.

  - JobRepo        — job ledger: status transitions, progress counters,
                     work-unit bookkeeping inside `configuration`
  - SystemLogRepo  — failure log; dispatch-failure rows are the retry queue
  - ReferenceRepo  — genres, languages, streaming services (read-only here)
  - TitleRepo      — titles + join rows, enrichment / repair selections

Services receive a `Repositories` bundle instead of a raw session so the
same service code runs against the database and against in-memory fakes.

Two ways to move `jobs.total_titles_processed`:
  - set_progress()        absolute write, last writer wins
  - increment_processed() `SET x = x + n`, safe under concurrent callers
"""

from __future__ import annotations

import contextlib
import json
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import delete, func, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from viib.db.engine import retry_on_disconnect
from viib.db.models import (
    Genre,
    Job,
    JobStatus,
    JobType,
    Language,
    StreamingService,
    SystemLog,
    Title,
    TitleGenre,
    TitleLanguage,
    TitleStreamingAvailability,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger(__name__)

# Columns the sync writers never overwrite with NULL
_TITLE_MUTABLE = (
    "tmdb_id",
    "title_type",
    "original_name",
    "overview",
    "runtime",
    "episode_run_time",
    "original_language",
    "popularity",
    "vote_average",
    "poster_path",
    "backdrop_path",
)


class JobNotFoundError(LookupError):
    """No job row exists for the requested job_type / id."""


def _job_type_value(job_type: JobType | str) -> str:
    return job_type.value if isinstance(job_type, JobType) else job_type


class JobRepo:
    """CRUD for the jobs table (one row per job type, seeded)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, job_type: JobType | str) -> Job | None:
        result = await self.session.execute(
            select(Job).where(Job.job_type == _job_type_value(job_type))
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, job_id: uuid.UUID) -> Job | None:
        return await self.session.get(Job, job_id)

    async def require(self, job_type: JobType | str) -> Job:
        job = await self.get(job_type)
        if job is None:
            raise JobNotFoundError(f"No job row for job_type={_job_type_value(job_type)}")
        return job

    @retry_on_disconnect()
    async def get_status(self, job_id: uuid.UUID) -> JobStatus | None:
        """Fresh read of a job's status, bypassing the identity map."""
        result = await self.session.execute(
            select(Job.status).where(Job.id == job_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_all(self) -> list[Job]:
        result = await self.session.execute(select(Job).order_by(Job.job_type))
        return list(result.scalars().all())

    async def _update(self, job_id: uuid.UUID, **values: Any) -> None:
        await self.session.execute(update(Job).where(Job.id == job_id).values(**values))

    async def mark_running(self, job_id: uuid.UUID) -> None:
        await self._update(
            job_id,
            status=JobStatus.RUNNING,
            last_run_at=datetime.now(UTC),
            error_message=None,
        )

    async def set_status(self, job_id: uuid.UUID, status: JobStatus) -> None:
        await self._update(job_id, status=status)

    async def set_progress(self, job_id: uuid.UUID, total: int) -> None:
        """Absolute progress write (read-then-write semantics)."""
        await self._update(job_id, total_titles_processed=total)

    @retry_on_disconnect()
    async def increment_processed(self, job_id: uuid.UUID, n: int) -> None:
        """Atomic `total_titles_processed += n`."""
        if n <= 0:
            return
        await self.session.execute(
            update(Job)
            .where(Job.id == job_id)
            .values(total_titles_processed=Job.total_titles_processed + n)
        )

    async def mark_completed(
        self,
        job_id: uuid.UUID,
        *,
        duration_seconds: int,
        total: int | None = None,
        next_run_at: datetime | None = None,
        status: JobStatus = JobStatus.COMPLETED,
    ) -> None:
        values: dict[str, Any] = {
            "status": status,
            "last_run_duration_seconds": duration_seconds,
            "error_message": None,
        }
        if total is not None:
            values["total_titles_processed"] = total
        if next_run_at is not None:
            values["next_run_at"] = next_run_at
        await self._update(job_id, **values)

    async def mark_failed(
        self,
        job_id: uuid.UUID,
        error: str,
        *,
        duration_seconds: int | None = None,
        next_run_at: datetime | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "status": JobStatus.FAILED,
            "error_message": error[:2000],
        }
        if duration_seconds is not None:
            values["last_run_duration_seconds"] = duration_seconds
        if next_run_at is not None:
            values["next_run_at"] = next_run_at
        await self._update(job_id, **values)

    @retry_on_disconnect()
    async def append_work_unit(
        self, job_id: uuid.UUID, key: str, unit: dict[str, Any]
    ) -> None:
        """Append one entry to `configuration[key]` (a JSON array) in a single UPDATE."""
        await self.session.execute(
            text("""
                UPDATE jobs
                SET configuration = jsonb_set(
                        coalesce(configuration, '{}'::jsonb),
                        ARRAY[CAST(:key AS text)],
                        coalesce(configuration -> CAST(:key AS text), '[]'::jsonb)
                            || CAST(:unit AS jsonb)
                    ),
                    updated_at = now()
                WHERE id = :job_id
            """),
            {"job_id": job_id, "key": key, "unit": json.dumps([unit])},
        )


class SystemLogRepo:
    """Failure log rows. Dispatch-failure rows double as the retry queue."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def log(
        self,
        operation: str,
        error_message: str,
        *,
        severity: str = "error",
        context: dict[str, Any] | None = None,
        error_stack: str | None = None,
    ) -> SystemLog:
        row = SystemLog(
            severity=severity,
            operation=operation,
            error_message=error_message[:2000],
            error_stack=error_stack,
            context=context or {},
            resolved=False,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def list_unresolved(
        self, operations: Sequence[str], limit: int
    ) -> list[SystemLog]:
        """Oldest-first unresolved rows for the given operation tags."""
        result = await self.session.execute(
            select(SystemLog)
            .where(SystemLog.operation.in_(list(operations)), SystemLog.resolved.is_(False))
            .order_by(SystemLog.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def delete(self, log_id: uuid.UUID) -> bool:
        result = await self.session.execute(delete(SystemLog).where(SystemLog.id == log_id))
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


class ReferenceRepo:
    """Read access to seeded reference data."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def genre_ids_by_name(self) -> dict[str, uuid.UUID]:
        """Lower-cased genre name → internal genre id."""
        result = await self.session.execute(select(Genre.genre_name, Genre.id))
        return {name.lower(): gid for name, gid in result.all()}

    async def tmdb_genre_ids(self) -> list[int]:
        result = await self.session.execute(
            select(Genre.tmdb_genre_id)
            .where(Genre.tmdb_genre_id.is_not(None))
            .order_by(Genre.tmdb_genre_id)
        )
        return [row[0] for row in result.all()]

    async def language_codes(self) -> list[str]:
        result = await self.session.execute(
            select(Language.language_code).order_by(Language.language_code)
        )
        return [row[0] for row in result.all()]

    async def active_services(self) -> dict[str, uuid.UUID]:
        """Active streaming service name → id."""
        result = await self.session.execute(
            select(StreamingService.service_name, StreamingService.id).where(
                StreamingService.is_active.is_(True)
            )
        )
        return {name: sid for name, sid in result.all()}


def _blank(column: Any) -> Any:
    return or_(column.is_(None), column == "")


class TitleRepo:
    """Titles, their join rows, and the enrichment / repair selections."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @contextlib.asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        """Scope one record's writes; a failure rolls back only that record."""
        async with self.session.begin_nested():
            yield

    @retry_on_disconnect()
    async def upsert_title(self, row: dict[str, Any]) -> uuid.UUID:
        """Upsert by tmdb_id when known, else by (name, release_year). Returns the id."""
        tmdb_id = row.get("tmdb_id")
        if tmdb_id is not None:
            existing = await self.session.scalar(
                select(Title.id).where(Title.tmdb_id == tmdb_id)
            )
            if existing is not None:
                values = {k: v for k, v in row.items() if v is not None}
                await self.session.execute(
                    update(Title).where(Title.id == existing).values(**values)
                )
                return existing

        stmt = pg_insert(Title).values(**row)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_titles_name_year",
            set_={
                **{
                    col: func.coalesce(getattr(stmt.excluded, col), getattr(Title, col))
                    for col in _TITLE_MUTABLE
                    if col in row
                },
                "updated_at": func.now(),
            },
        ).returning(Title.id)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def link_genres(self, title_id: uuid.UUID, genre_ids: Sequence[uuid.UUID]) -> None:
        if not genre_ids:
            return
        stmt = pg_insert(TitleGenre).values(
            [{"title_id": title_id, "genre_id": gid} for gid in genre_ids]
        )
        await self.session.execute(stmt.on_conflict_do_nothing())

    async def link_language(
        self, title_id: uuid.UUID, language_code: str, language_type: str = "original"
    ) -> None:
        stmt = pg_insert(TitleLanguage).values(
            title_id=title_id, language_code=language_code, language_type=language_type
        )
        await self.session.execute(stmt.on_conflict_do_nothing())

    async def link_services(
        self, title_id: uuid.UUID, service_ids: Sequence[uuid.UUID], region: str
    ) -> None:
        if not service_ids:
            return
        stmt = pg_insert(TitleStreamingAvailability).values(
            [
                {"title_id": title_id, "streaming_service_id": sid, "region_code": region}
                for sid in service_ids
            ]
        )
        await self.session.execute(stmt.on_conflict_do_nothing())

    async def update_title(self, title_id: uuid.UUID, values: dict[str, Any]) -> None:
        if not values:
            return
        await self.session.execute(update(Title).where(Title.id == title_id).values(**values))

    # ── Enrichment selections ────────────────────────────────

    def _missing_details_clause(self) -> Any:
        return (Title.tmdb_id.is_not(None), or_(_blank(Title.overview), _blank(Title.poster_path)))

    async def titles_missing_details(self, limit: int) -> list[Title]:
        result = await self.session.execute(
            select(Title)
            .where(*self._missing_details_clause())
            .order_by(Title.popularity.desc().nulls_last())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_missing_details(self) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(Title).where(*self._missing_details_clause())
        )
        return int(result.scalar_one())

    def _missing_trailer_clause(self) -> Any:
        return (
            Title.tmdb_id.is_not(None),
            _blank(Title.trailer_url),
            Title.trailer_checked_at.is_(None),
        )

    async def titles_missing_trailers(self, limit: int) -> list[Title]:
        result = await self.session.execute(
            select(Title)
            .where(*self._missing_trailer_clause())
            .order_by(Title.popularity.desc().nulls_last())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_missing_trailers(self) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(Title).where(*self._missing_trailer_clause())
        )
        return int(result.scalar_one())

    # ── Streaming availability repair ────────────────────────

    def _corrupted_ids(self, region: str, threshold: int) -> Any:
        return (
            select(TitleStreamingAvailability.title_id)
            .join(
                StreamingService,
                StreamingService.id == TitleStreamingAvailability.streaming_service_id,
            )
            .where(
                TitleStreamingAvailability.region_code == region,
                StreamingService.is_active.is_(True),
            )
            .group_by(TitleStreamingAvailability.title_id)
            .having(func.count() >= threshold)
        )

    async def corrupted_streaming_titles(
        self, region: str, threshold: int, limit: int
    ) -> list[Title]:
        """Titles linked to at least `threshold` active services in `region`."""
        result = await self.session.execute(
            select(Title)
            .where(
                Title.id.in_(self._corrupted_ids(region, threshold)),
                Title.tmdb_id.is_not(None),
            )
            .order_by(Title.popularity.desc().nulls_last())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_corrupted_streaming(self, region: str, threshold: int) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(Title)
            .where(
                Title.id.in_(self._corrupted_ids(region, threshold)),
                Title.tmdb_id.is_not(None),
            )
        )
        return int(result.scalar_one())

    @retry_on_disconnect()
    async def replace_streaming(
        self, title_id: uuid.UUID, region: str, service_ids: Sequence[uuid.UUID]
    ) -> int:
        """Delete the title's rows for `region`, insert the confirmed set."""
        await self.session.execute(
            delete(TitleStreamingAvailability).where(
                TitleStreamingAvailability.title_id == title_id,
                TitleStreamingAvailability.region_code == region,
            )
        )
        unique_ids = list(dict.fromkeys(service_ids))
        await self.link_services(title_id, unique_ids, region)
        return len(unique_ids)


@dataclass
class Repositories:
    """The repositories a service needs, sharing one session."""

    jobs: JobRepo
    titles: TitleRepo
    reference: ReferenceRepo
    logs: SystemLogRepo
    session: AsyncSession | None = None

    @classmethod
    def from_session(cls, session: AsyncSession) -> Repositories:
        return cls(
            jobs=JobRepo(session),
            titles=TitleRepo(session),
            reference=ReferenceRepo(session),
            logs=SystemLogRepo(session),
            session=session,
        )

    async def commit(self) -> None:
        if self.session is not None:
            await self.session.commit()

    async def rollback(self) -> None:
        if self.session is not None:
            await self.session.rollback()
