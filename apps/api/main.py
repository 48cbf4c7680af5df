"""
Ingestion Function API — FastAPI application.

Endpoints:
    GET  /health                                   Unauthenticated liveness check
    POST /functions/full-refresh-titles            Ingest one (language, year, genre) unit
    POST /functions/full-refresh-orchestrator      Dispatch the full refresh grid (background)
    POST /functions/sync-titles-delta              Daily delta sync
    POST /functions/enrich-title-details-batch     One budgeted details backfill batch
    POST /functions/enrich-title-trailers          One budgeted trailer backfill batch
    POST /functions/fix-streaming-availability     Repair blanket-linked availability rows
    POST /functions/retry-failed-threads           Re-invoke logged full-refresh failures
    POST /functions/discover-tmdb                  Language-priority discovery
    GET  /jobs                                     List job rows
    GET  /jobs/{job_type}                          Single job row
    POST /jobs/{job_type}/start                    Mark a job running
    POST /jobs/{job_type}/stop                     Operator stop (status idle)

Everything except /health requires the X-Api-Key header.
"""

from __future__ import annotations

import secrets
import sys
import time
import uuid
from collections.abc import Awaitable
from contextlib import asynccontextmanager
from typing import Any

import click
import structlog
import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

from apps.delta_sync_worker.main import run_delta_sync
from apps.enrich_worker.main import run_details, run_trailers
from apps.full_refresh_worker.main import run_full_refresh
from apps.orchestrator.service import OrchestratorService, WorkUnit, work_units_for
from apps.repair_worker.main import run_repair
from apps.retry_sweeper.main import run_sweep
from viib.config import ConfigurationError, get_settings
from viib.config.logging import bind_job_context, setup_logging
from viib.db.engine import get_async_session
from viib.db.models import Job, JobStatus, JobType
from viib.db.repositories import JobNotFoundError, Repositories
from viib.pipeline.discover import DiscoverRequest, discover_by_languages
from viib.pipeline.invoke import FunctionInvoker
from viib.pipeline.tmdb import CatalogClient

from .schemas import (
    DiscoverTmdbRequest,
    EnrichRequest,
    FullRefreshRequest,
    HealthResponse,
    JobResponse,
    OrchestratorRequest,
    RepairRequest,
    RetrySweepRequest,
)

logger = structlog.get_logger(__name__)

_API_KEY_HEADER = APIKeyHeader(name="X-Api-Key", auto_error=False)


# ── Auth dependency ──────────────────────────────────────────


async def verify_api_key(api_key: str | None = Depends(_API_KEY_HEADER)) -> str:
    """Validate API key using constant-time comparison (timing-attack safe)."""
    settings = get_settings()
    expected = settings.pipeline_api_key.get_secret_value()

    if not expected:
        raise HTTPException(
            status_code=500,
            detail="PIPELINE_API_KEY not configured on server",
        )

    if api_key is None or not secrets.compare_digest(api_key, expected):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")

    return api_key


# ── Lifespan ─────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    """Configure logging and validate critical settings on startup."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    if settings.is_production and not settings.pipeline_api_key.get_secret_value():
        logger.critical("PIPELINE_API_KEY must be set in production")
        sys.exit(1)
    logger.info("api_started", port=settings.port)
    yield
    logger.info("api_shutdown")


# ── App ──────────────────────────────────────────────────────

app = FastAPI(
    title="ViiB Catalog Ingestion API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


# ── Helpers ──────────────────────────────────────────────────


async def _respond(function: str, call: Awaitable[dict[str, Any]]) -> Any:
    """Await a function body and map failures to `{error}` responses."""
    try:
        return await call
    except JobNotFoundError as exc:
        return JSONResponse(status_code=404, content={"error": str(exc)})
    except ValueError as exc:
        return JSONResponse(status_code=400, content={"error": str(exc)})
    except ConfigurationError as exc:
        logger.error("function_misconfigured", function=function, error=str(exc))
        return JSONResponse(status_code=500, content={"error": str(exc)})
    except Exception as exc:
        logger.exception("function_failed", function=function)
        return JSONResponse(status_code=500, content={"error": str(exc)})


def _job_type(value: str) -> JobType:
    try:
        return JobType(value)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown job type {value}") from None


def _job_to_response(job: Job) -> JobResponse:
    return JobResponse(
        id=job.id,
        job_type=job.job_type,
        job_name=job.job_name,
        status=job.status.value if hasattr(job.status, "value") else str(job.status),
        is_active=job.is_active,
        configuration=job.configuration,
        last_run_at=job.last_run_at,
        last_run_duration_seconds=job.last_run_duration_seconds,
        total_titles_processed=job.total_titles_processed,
        error_message=job.error_message,
        next_run_at=job.next_run_at,
    )


async def run_discover(request: DiscoverRequest) -> dict[str, Any]:
    settings = get_settings()
    api_key = settings.require_tmdb_key()
    start = time.monotonic()
    async with CatalogClient(
        api_key, settings.tmdb_base_url, settings.catalog_timeout_seconds
    ) as catalog:
        movies = await discover_by_languages(catalog, request)
    logger.info("discover_done", languages=request.languages, results=len(movies))
    return {"movies": movies, "duration": round(time.monotonic() - start, 2)}


async def dispatch_in_background(
    job_id: uuid.UUID, units: list[WorkUnit], start_index: int
) -> None:
    """Orchestrator loop detached from the HTTP response."""
    settings = get_settings()
    bind_job_context(JobType.FULL_REFRESH.value, str(job_id))
    try:
        async with get_async_session()() as session, FunctionInvoker(
            settings.functions_base_url,
            settings.pipeline_api_key.get_secret_value(),
            settings.invoke_timeout_seconds,
        ) as invoker:
            svc = OrchestratorService(Repositories.from_session(session), invoker, settings)
            await svc.run(job_id, units, start_index)
    except Exception:
        logger.exception("orchestrator_background_crashed", job_id=str(job_id))


# ── Endpoints ────────────────────────────────────────────────


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Unauthenticated health check."""
    return HealthResponse()


@app.post("/functions/full-refresh-titles", dependencies=[Depends(verify_api_key)])
async def full_refresh_titles(body: FullRefreshRequest) -> Any:
    return await _respond("full-refresh-titles", run_full_refresh(body.to_body()))


@app.post("/functions/full-refresh-orchestrator", dependencies=[Depends(verify_api_key)])
async def full_refresh_orchestrator(
    body: OrchestratorRequest, background: BackgroundTasks
) -> Any:
    """Validate the job, then dispatch the work units after responding."""
    bind_job_context(JobType.FULL_REFRESH.value, str(body.job_id))
    async with get_async_session()() as session:
        repos = Repositories.from_session(session)
        job = await repos.jobs.get_by_id(body.job_id)
        if job is None:
            return JSONResponse(status_code=404, content={"error": f"Job {body.job_id} not found"})
        if not job.is_active or job.status.is_stopped:
            logger.info("orchestrator_job_not_running", status=job.status.value, active=job.is_active)
            return {
                "success": False,
                "message": f"Job not running (status: {job.status.value}, active: {job.is_active}).",
            }
        if body.chunks:
            units = [WorkUnit(c.language_code, c.year, c.genre_id) for c in body.chunks]
        else:
            units = await work_units_for(repos, job)

    background.add_task(dispatch_in_background, job.id, units, body.start_index)
    accepted = max(len(units) - body.start_index, 0)
    logger.info("orchestrator_accepted", chunks=len(units), accepted=accepted)
    return {"success": True, "accepted": accepted, "message": f"Dispatching {accepted} chunks"}


@app.post("/functions/sync-titles-delta", dependencies=[Depends(verify_api_key)])
async def sync_titles_delta() -> Any:
    return await _respond("sync-titles-delta", run_delta_sync())


@app.post("/functions/enrich-title-details-batch", dependencies=[Depends(verify_api_key)])
async def enrich_title_details_batch(body: EnrichRequest | None = None) -> Any:
    body = body or EnrichRequest()
    return await _respond("enrich-title-details-batch", run_details(body.job_id, body.batch_size))


@app.post("/functions/enrich-title-trailers", dependencies=[Depends(verify_api_key)])
async def enrich_title_trailers(body: EnrichRequest | None = None) -> Any:
    body = body or EnrichRequest()
    return await _respond("enrich-title-trailers", run_trailers(body.job_id, body.batch_size))


@app.post("/functions/fix-streaming-availability", dependencies=[Depends(verify_api_key)])
async def fix_streaming_availability(body: RepairRequest | None = None) -> Any:
    body = body or RepairRequest()
    return await _respond(
        "fix-streaming-availability", run_repair(body.batch_size, body.dry_run)
    )


@app.post("/functions/retry-failed-threads", dependencies=[Depends(verify_api_key)])
async def retry_failed_threads(body: RetrySweepRequest | None = None) -> Any:
    body = body or RetrySweepRequest()
    return await _respond("retry-failed-threads", run_sweep(body.limit))


@app.post("/functions/discover-tmdb", dependencies=[Depends(verify_api_key)])
async def discover_tmdb(body: DiscoverTmdbRequest) -> Any:
    request = DiscoverRequest(
        languages=body.languages,
        streaming_provider_ids=body.streaming_provider_ids,
        min_date=body.min_date,
        min_rating=body.min_rating,
        min_popularity=body.min_popularity,
        limit=body.limit,
        region=body.region,
    )
    return await _respond("discover-tmdb", run_discover(request))


@app.get(
    "/jobs",
    response_model=list[JobResponse],
    dependencies=[Depends(verify_api_key)],
)
async def list_jobs() -> list[JobResponse]:
    async with get_async_session()() as session:
        jobs = await Repositories.from_session(session).jobs.list_all()
    return [_job_to_response(j) for j in jobs]


@app.get(
    "/jobs/{job_type}",
    response_model=JobResponse,
    dependencies=[Depends(verify_api_key)],
)
async def get_job(job_type: str) -> JobResponse:
    async with get_async_session()() as session:
        job = await Repositories.from_session(session).jobs.get(_job_type(job_type))
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_type} not found")
    return _job_to_response(job)


async def _set_job_status(job_type: str, status: JobStatus) -> JobResponse:
    kind = _job_type(job_type)
    async with get_async_session()() as session:
        repos = Repositories.from_session(session)
        job = await repos.jobs.get(kind)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Job {job_type} not found")
        if status is JobStatus.RUNNING:
            await repos.jobs.mark_running(job.id)
        else:
            await repos.jobs.set_status(job.id, status)
        await repos.commit()
        await session.refresh(job)
    logger.info("job_status_set", job_type=kind.value, status=status.value)
    return _job_to_response(job)


@app.post(
    "/jobs/{job_type}/start",
    response_model=JobResponse,
    dependencies=[Depends(verify_api_key)],
)
async def start_job(job_type: str) -> JobResponse:
    """Mark a job running (clears the previous error)."""
    return await _set_job_status(job_type, JobStatus.RUNNING)


@app.post(
    "/jobs/{job_type}/stop",
    response_model=JobResponse,
    dependencies=[Depends(verify_api_key)],
)
async def stop_job(job_type: str) -> JobResponse:
    """Operator stop: running loops halt at their next status poll."""
    return await _set_job_status(job_type, JobStatus.IDLE)


# ── CLI ──────────────────────────────────────────────────────


@click.command()
@click.option("--host", default="0.0.0.0", help="Bind host")
@click.option("--port", default=None, type=int, help="Bind port (defaults to PORT env)")
def cli(host: str, port: int | None) -> None:
    """Start the ingestion function API server."""
    settings = get_settings()
    port = port or settings.port
    uvicorn.run(
        "apps.api.main:app",
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    cli()
