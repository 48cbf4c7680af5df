"""
Tests for the full-refresh worker.

Covers:
- Request parsing (camelCase body, required fields)
- Chunk mode: movie + TV discovery, vote floors, atomic progress increments
- Chunk failures logged with the request body and re-raised
- Standalone mode owning the job row
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime

import pytest

from apps.full_refresh_worker.service import (
    ERROR_OPERATION,
    ChunkRequest,
    FullRefreshService,
)
from tests.fakes import FakeCatalog, no_sleep
from viib.db.models import JobStatus, JobType, TitleType


def _discover(flt, page):
    if flt.media_type is TitleType.MOVIE:
        return [
            {"id": 1, "title": "Movie A", "release_date": "2021-01-01", "popularity": 9.0},
            {"id": 2, "title": "Movie B", "release_date": "2021-06-01", "popularity": 8.0},
        ]
    return [{"id": 3, "name": "Show C", "first_air_date": "2021-02-01", "popularity": 7.0}]


def _service(repos, catalog, settings, clock) -> FullRefreshService:
    return FullRefreshService(repos, catalog, settings, clock=clock, sleep=no_sleep)


class TestChunkRequest:
    def test_from_body(self) -> None:
        job_id = uuid.uuid4()
        request = ChunkRequest.from_body(
            {"languageCode": "en", "startYear": 2020, "endYear": 2022, "genreId": 28, "jobId": str(job_id)}
        )
        assert request.job_id == job_id
        assert list(request.years) == [2020, 2021, 2022]

    def test_single_year_alias(self) -> None:
        request = ChunkRequest.from_body({"languageCode": "en", "year": 2021, "genreId": 28})
        assert list(request.years) == [2021]
        assert request.to_body()["endYear"] == 2021

    @pytest.mark.parametrize(
        "body",
        [{}, {"languageCode": "en", "genreId": 28}, {"languageCode": "en", "startYear": 2021}],
    )
    def test_missing_fields(self, body: dict) -> None:
        with pytest.raises(ValueError, match="Missing required parameters"):
            ChunkRequest.from_body(body)


class TestChunkMode:
    def test_movies_and_series_with_tv_genre(self, store, repos, settings, clock) -> None:
        catalog = FakeCatalog(_discover)
        request = ChunkRequest("en", 2021, 28)

        result = asyncio.run(_service(repos, catalog, settings, clock).run_chunk(request))

        movie, series = catalog.filters
        assert movie.genre_id == 28 and movie.year == 2021
        assert series.genre_id == 10759
        assert movie.min_rating == settings.default_min_rating
        assert movie.min_vote_count == settings.default_min_vote_count
        assert result.to_dict()["titlesProcessed"] == 3
        assert result.movies.succeeded == 2
        assert result.series.succeeded == 1

    def test_current_year_has_no_vote_floor(self, repos, settings, clock) -> None:
        catalog = FakeCatalog()
        year = datetime.now(UTC).year

        asyncio.run(_service(repos, catalog, settings, clock).run_chunk(ChunkRequest("en", year, 28)))

        assert catalog.filters[0].min_rating is None
        assert catalog.filters[0].min_vote_count is None

    def test_genre_without_tv_equivalent_skips_series(self, repos, settings, clock) -> None:
        catalog = FakeCatalog()
        asyncio.run(_service(repos, catalog, settings, clock).run_chunk(ChunkRequest("en", 2021, 27)))
        assert [f.media_type for f in catalog.filters] == [TitleType.MOVIE]

    def test_progress_incremented_on_job(self, store, repos, settings, clock) -> None:
        job = store.add_job(JobType.FULL_REFRESH, status=JobStatus.RUNNING)
        job.total_titles_processed = 10
        request = ChunkRequest("en", 2021, 28, job_id=job.id)

        asyncio.run(_service(repos, FakeCatalog(_discover), settings, clock).run_chunk(request))

        assert store.jobs[job.id].total_titles_processed == 13
        # chunk mode leaves the status to the orchestrator
        assert store.jobs[job.id].status is JobStatus.RUNNING

    def test_failure_logged_with_request_body(self, store, repos, settings, clock) -> None:
        def boom(flt, page):
            raise RuntimeError("catalog down")

        request = ChunkRequest("hi", 2021, 18)

        with pytest.raises(RuntimeError, match="catalog down"):
            asyncio.run(_service(repos, FakeCatalog(boom), settings, clock).run_chunk(request))

        (row,) = store.logs.values()
        assert row.operation == ERROR_OPERATION
        assert row.context["request_body"] == request.to_body()


class TestStandalone:
    def test_run_all_completes_job(self, store, repos, settings, clock) -> None:
        store.add_genre("Action", 28)
        store.languages.append("en")
        job = store.add_job(JobType.FULL_REFRESH, configuration={"start_year": 2021, "end_year": 2021})

        result = asyncio.run(_service(repos, FakeCatalog(_discover), settings, clock).run_all())

        assert result.combinations == 1
        row = store.jobs[job.id]
        assert row.status is JobStatus.COMPLETED
        assert row.total_titles_processed == 3
        assert len(store.titles) == 3

    def test_run_all_failure_marks_job_failed(self, store, repos, settings, clock) -> None:
        def boom(flt, page):
            raise RuntimeError("catalog down")

        store.add_genre("Action", 28)
        store.languages.append("en")
        job = store.add_job(JobType.FULL_REFRESH, configuration={"start_year": 2021, "end_year": 2021})

        with pytest.raises(RuntimeError):
            asyncio.run(_service(repos, FakeCatalog(boom), settings, clock).run_all())

        assert store.jobs[job.id].status is JobStatus.FAILED
        assert store.jobs[job.id].error_message == "catalog down"
