"""
Tests for the full-refresh orchestrator.

Covers:
- Poll-boundary cancellation (stop seen only every N dispatches)
- Work-unit ledger and resume
- Dispatch-failure logging with retry parameters
"""

from __future__ import annotations

import asyncio
import uuid

import pytest

from apps.orchestrator.service import (
    DISPATCH_FAILED_OPERATION,
    OrchestratorService,
    WorkUnit,
    build_work_units,
    completed_keys,
    work_units_for,
)
from tests.fakes import FakeInvoker
from viib.db.models import JobStatus, JobType
from viib.db.repositories import JobNotFoundError


async def _yield(_seconds: float) -> None:
    await asyncio.sleep(0)


def _units(n: int) -> list[WorkUnit]:
    return [WorkUnit("en", 2020 + i // 5, 28 + i) for i in range(n)]


def _service(repos, invoker, settings) -> OrchestratorService:
    return OrchestratorService(repos, invoker, settings, sleep=_yield)


class TestWorkUnits:
    def test_language_major_grid(self) -> None:
        units = build_work_units(["en", "hi"], [2020, 2021], [28, 35])
        assert len(units) == 8
        assert units[0] == WorkUnit("en", 2020, 28)
        assert units[3] == WorkUnit("en", 2021, 35)
        assert units[4].language_code == "hi"

    def test_from_dict_accepts_camel_and_snake(self) -> None:
        a = WorkUnit.from_dict({"languageCode": "en", "year": 2021, "genreId": 28})
        b = WorkUnit.from_dict({"language_code": "en", "start_year": 2021, "genre_id": 28})
        assert a == b

    def test_request_body(self) -> None:
        body = WorkUnit("ko", 2022, 18).request_body("job-1")  # type: ignore[arg-type]
        assert body == {
            "languageCode": "ko",
            "startYear": 2022,
            "endYear": 2022,
            "genreId": 18,
            "jobId": "job-1",
        }

    def test_units_from_reference_data(self, store, repos) -> None:
        store.add_genre("Action", 28)
        store.add_genre("Drama", 18)
        store.languages.extend(["en", "hi"])
        job = store.add_job(JobType.FULL_REFRESH, configuration={"start_year": 2023, "end_year": 2024})

        units = asyncio.run(work_units_for(repos, job))
        assert len(units) == 2 * 2 * 2
        assert {u.genre_id for u in units} == {18, 28}


class TestCancellation:
    def test_stop_after_index_3_takes_effect_at_next_poll(self, store, repos, settings) -> None:
        job = store.add_job(JobType.FULL_REFRESH, status=JobStatus.RUNNING)

        def fail_job_after_third(body: dict) -> None:
            if body["genreId"] == 28 + 3:
                store.jobs[job.id].status = JobStatus.FAILED

        invoker = FakeInvoker(on_invoke=fail_job_after_third)
        report = asyncio.run(_service(repos, invoker, settings).run(job.id, _units(25)))

        assert report.stopped
        assert report.dispatched == list(range(10))
        assert len(invoker.calls) == 10
        assert all(idx < 10 for idx in report.dispatched)
        # operator-set status is left alone
        assert store.jobs[job.id].status is JobStatus.FAILED

    def test_idle_job_stops_the_loop(self, store, repos, settings) -> None:
        job = store.add_job(JobType.FULL_REFRESH, status=JobStatus.IDLE)
        invoker = FakeInvoker()
        report = asyncio.run(_service(repos, invoker, settings).run(job.id, _units(15)))
        # the first poll happens at offset 10
        assert report.dispatched == list(range(10))
        assert report.stopped

    def test_poll_interval_from_settings(self, store, repos, settings) -> None:
        settings.dispatch_poll_every = 3
        job = store.add_job(JobType.FULL_REFRESH, status=JobStatus.IDLE)
        report = asyncio.run(_service(repos, FakeInvoker(), settings).run(job.id, _units(10)))
        assert report.dispatched == [0, 1, 2]

    def test_runs_to_completion_when_not_stopped(self, store, repos, settings) -> None:
        job = store.add_job(JobType.FULL_REFRESH, status=JobStatus.RUNNING)
        invoker = FakeInvoker()
        report = asyncio.run(_service(repos, invoker, settings).run(job.id, _units(12)))

        assert not report.stopped
        assert report.succeeded == 12
        assert store.jobs[job.id].status is JobStatus.COMPLETED


class TestLedger:
    def test_completed_units_recorded_and_skipped_on_resume(self, store, repos, settings) -> None:
        job = store.add_job(JobType.FULL_REFRESH, status=JobStatus.RUNNING)
        units = _units(6)

        asyncio.run(_service(repos, FakeInvoker(), settings).run(job.id, units[:4]))
        ledger = store.jobs[job.id].configuration["completed_work_units"]
        assert len(ledger) == 4
        assert ledger[0]["titlesProcessed"] == 3
        assert len(completed_keys(store.jobs[job.id])) == 4

        store.jobs[job.id].status = JobStatus.RUNNING
        invoker = FakeInvoker()
        report = asyncio.run(_service(repos, invoker, settings).run(job.id, units))
        assert report.skipped == 4
        assert [body["genreId"] for _, body in invoker.calls] == [units[4].genre_id, units[5].genre_id]

    def test_start_index_skips_earlier_units(self, store, repos, settings) -> None:
        job = store.add_job(JobType.FULL_REFRESH, status=JobStatus.RUNNING)
        invoker = FakeInvoker()
        report = asyncio.run(_service(repos, invoker, settings).run(job.id, _units(5), start_index=3))
        assert report.dispatched == [3, 4]
        assert report.skipped == 3


class TestDispatchFailures:
    def test_failure_logged_with_retry_parameters(self, store, repos, settings) -> None:
        job = store.add_job(JobType.FULL_REFRESH, status=JobStatus.RUNNING)
        units = _units(4)
        invoker = FakeInvoker(fail=lambda body: body["genreId"] == units[2].genre_id)

        report = asyncio.run(_service(repos, invoker, settings).run(job.id, units))

        assert report.succeeded == 3
        assert report.failed == 1
        logs = [r for r in store.logs.values() if r.operation == DISPATCH_FAILED_OPERATION]
        assert len(logs) == 1
        ctx = logs[0].context
        assert ctx["chunk_index"] == 2
        assert ctx["retry_parameters"] == units[2].request_body(job.id)
        failed = store.jobs[job.id].configuration["failed_work_units"]
        assert failed[0]["genreId"] == units[2].genre_id
        # one failed chunk does not fail the run
        assert store.jobs[job.id].status is JobStatus.COMPLETED

    def test_unknown_job_raises(self, repos, settings) -> None:
        with pytest.raises(JobNotFoundError):
            asyncio.run(_service(repos, FakeInvoker(), settings).run(uuid.uuid4(), _units(1)))
