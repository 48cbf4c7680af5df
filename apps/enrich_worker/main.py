"""
Enrichment Worker CLI — details and trailer backfill batches.

    python -m apps.enrich_worker.main details [--job-id ...] [--batch-size N]
    python -m apps.enrich_worker.main trailers [--job-id ...] [--batch-size N]

Each invocation processes one budgeted batch; schedule it repeatedly.
"""

from __future__ import annotations

import asyncio
import json
import sys
import uuid
from typing import Any

import click
import structlog

from viib.config import get_settings
from viib.config.logging import bind_job_context, setup_logging
from viib.db.engine import get_async_session
from viib.db.repositories import Repositories
from viib.pipeline.tmdb import CatalogClient
from viib.pipeline.youtube import VideoSearchClient

from apps.enrich_worker.details import DetailsEnrichmentService
from apps.enrich_worker.trailers import TrailerEnrichmentService

logger = structlog.get_logger(__name__)


async def run_details(job_id: uuid.UUID | None, batch_size: int | None) -> dict[str, Any]:
    settings = get_settings()
    bind_job_context("enrich_details", str(job_id) if job_id else None)
    api_key = settings.require_tmdb_key()

    async with get_async_session()() as session, CatalogClient(
        api_key, settings.tmdb_base_url, settings.catalog_timeout_seconds
    ) as catalog:
        svc = DetailsEnrichmentService(Repositories.from_session(session), catalog, settings)
        result = await svc.run(job_id, batch_size=batch_size)
    return result.to_dict()


async def run_trailers(job_id: uuid.UUID | None, batch_size: int | None) -> dict[str, Any]:
    settings = get_settings()
    bind_job_context("enrich_trailers", str(job_id) if job_id else None)
    tmdb_key = settings.require_tmdb_key()
    youtube_key = settings.require_youtube_key()

    async with (
        get_async_session()() as session,
        CatalogClient(tmdb_key, settings.tmdb_base_url, settings.catalog_timeout_seconds) as catalog,
        VideoSearchClient(
            youtube_key, settings.youtube_search_url, settings.catalog_timeout_seconds
        ) as search,
    ):
        svc = TrailerEnrichmentService(Repositories.from_session(session), catalog, search, settings)
        result = await svc.run(job_id, batch_size=batch_size)
    return result.to_dict()


def _run(coro: Any, name: str) -> None:
    try:
        result = asyncio.run(coro)
    except Exception:
        logger.exception(f"{name}_crashed")
        sys.exit(1)
    click.echo(json.dumps(result))


@click.group()
def cli() -> None:
    """Enrichment workers."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)


@cli.command()
@click.option("--job-id", type=click.UUID, default=None, help="Job id for status checks and progress")
@click.option("--batch-size", type=int, default=None, help="Override the configured batch size")
def details(job_id: uuid.UUID | None, batch_size: int | None) -> None:
    """Backfill overview, poster, runtime and catalog trailers."""
    _run(run_details(job_id, batch_size), "enrich_details_worker")


@cli.command()
@click.option("--job-id", type=click.UUID, default=None, help="Job id for status checks and progress")
@click.option("--batch-size", type=int, default=None, help="Override the configured batch size")
def trailers(job_id: uuid.UUID | None, batch_size: int | None) -> None:
    """Find trailer URLs (catalog first, then YouTube search)."""
    _run(run_trailers(job_id, batch_size), "enrich_trailers_worker")


if __name__ == "__main__":
    cli()
