"""
Failure paths on a real AsyncSession.

The in-memory fakes never expire ORM instances, so these tests run the
services against SQLite (aiosqlite) to cover what a rollback does to
loaded rows:
- a failed row write in an enrichment batch leaves the other rows alone
- a failed delta sync still records the failure on its job row
"""

from __future__ import annotations

import asyncio
import uuid

import pytest
from sqlalchemy import event, select, text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from apps.delta_sync_worker.service import ERROR_OPERATION, DeltaSyncService
from apps.enrich_worker.details import DetailsEnrichmentService
from tests.fakes import (
    FakeCatalog,
    FakeJobRepo,
    FakeLogRepo,
    FakeReferenceRepo,
    FakeTitleRepo,
    no_sleep,
)
from viib.db.models import Job, JobStatus, JobType, Title
from viib.db.repositories import JobRepo, Repositories, TitleRepo

# jobs uses Postgres-only defaults, so it gets a plain SQLite table
_JOBS_DDL = """
CREATE TABLE jobs (
    id CHAR(32) PRIMARY KEY,
    job_type VARCHAR(32) NOT NULL UNIQUE,
    job_name VARCHAR(128) NOT NULL,
    status VARCHAR(16) NOT NULL,
    is_active BOOLEAN NOT NULL,
    configuration JSON NOT NULL DEFAULT '{}',
    last_run_at DATETIME,
    last_run_duration_seconds INTEGER,
    total_titles_processed INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    next_run_at DATETIME,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
)
"""


async def _engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)

    # let SQLAlchemy own BEGIN so SAVEPOINT works
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Title.__table__.create)
        await conn.execute(text(_JOBS_DDL))
    return engine


class TestDetailsBatchOnSession:
    def test_failed_row_write_does_not_abort_batch(self, store, settings, clock) -> None:
        async def scenario() -> tuple[object, dict[str, str | None]]:
            engine = await _engine()
            factory = async_sessionmaker(engine, expire_on_commit=False)
            names = {1: "Alpha", 2: "Bravo", 3: "Charlie"}

            async with factory() as session:
                session.add_all(
                    Title(
                        id=uuid.uuid4(),
                        tmdb_id=tmdb_id,
                        title_type="movie",
                        name=name,
                        popularity=float(10 - tmdb_id),
                    )
                    for tmdb_id, name in names.items()
                )
                await session.commit()

            async with factory() as session:
                titles = TitleRepo(session)
                real_update = titles.update_title
                calls = 0

                async def flaky_update(title_id, values):
                    nonlocal calls
                    calls += 1
                    if calls == 1:
                        raise RuntimeError("write rejected")
                    await real_update(title_id, values)

                titles.update_title = flaky_update  # type: ignore[method-assign]
                repos = Repositories(
                    jobs=FakeJobRepo(store),  # type: ignore[arg-type]
                    titles=titles,
                    reference=FakeReferenceRepo(store),  # type: ignore[arg-type]
                    logs=FakeLogRepo(store),  # type: ignore[arg-type]
                    session=session,
                )
                catalog = FakeCatalog(
                    details={i: {"overview": f"About {n}", "poster_path": f"/{i}.jpg"} for i, n in names.items()}
                )
                service = DetailsEnrichmentService(repos, catalog, settings, clock=clock, sleep=no_sleep)
                result = await service.run()

            async with factory() as session:
                rows = (await session.execute(select(Title.name, Title.overview))).all()
            await engine.dispose()
            return result, {name: overview for name, overview in rows}

        result, overviews = asyncio.run(scenario())

        assert result.processed == 3
        assert result.errors == 1
        assert result.updated == 2
        assert overviews == {"Alpha": None, "Bravo": "About Bravo", "Charlie": "About Charlie"}


class TestDeltaSyncOnSession:
    def test_failure_recorded_after_rollback(self, store, settings, clock) -> None:
        async def broken() -> list[int]:
            raise RuntimeError("reference lookup failed")

        async def scenario() -> Job:
            engine = await _engine()
            factory = async_sessionmaker(engine, expire_on_commit=False)
            job_id = uuid.uuid4()

            async with factory() as session:
                session.add(
                    Job(
                        id=job_id,
                        job_type=JobType.SYNC_DELTA.value,
                        job_name="Sync Delta",
                        status=JobStatus.IDLE,
                        is_active=True,
                        configuration={},
                        total_titles_processed=0,
                    )
                )
                await session.commit()

            async with factory() as session:
                reference = FakeReferenceRepo(store)
                reference.tmdb_genre_ids = broken  # type: ignore[method-assign]
                repos = Repositories(
                    jobs=JobRepo(session),
                    titles=FakeTitleRepo(store),  # type: ignore[arg-type]
                    reference=reference,  # type: ignore[arg-type]
                    logs=FakeLogRepo(store),  # type: ignore[arg-type]
                    session=session,
                )
                service = DeltaSyncService(repos, FakeCatalog(), settings, clock=clock, sleep=no_sleep)
                with pytest.raises(RuntimeError, match="reference lookup failed"):
                    await service.run()

            async with factory() as session:
                job = await session.get(Job, job_id)
            await engine.dispose()
            assert job is not None
            return job

        job = asyncio.run(scenario())

        assert job.status is JobStatus.FAILED
        assert job.error_message == "reference lookup failed"
        assert job.next_run_at is not None
        assert [r.operation for r in store.logs.values()] == [ERROR_OPERATION]
