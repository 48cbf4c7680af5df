"""
Full Refresh Worker CLI — standalone entry point for full-refresh-titles.

With --language/--year/--genre-id it ingests a single work unit (the
same thing the orchestrator dispatches); without them it walks the whole
grid from the job configuration.
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import click
import structlog

from viib.config import get_settings
from viib.config.logging import bind_job_context, setup_logging

logger = structlog.get_logger(__name__)


async def run_full_refresh(body: dict[str, Any] | None = None) -> dict[str, Any]:
    """Execute full refresh, chunk mode when `body` names a work unit."""
    settings = get_settings()
    bind_job_context("full_refresh", (body or {}).get("jobId"))
    api_key = settings.require_tmdb_key()

    from viib.db.engine import get_async_session
    from viib.db.repositories import Repositories
    from viib.pipeline.tmdb import CatalogClient

    from apps.full_refresh_worker.service import ChunkRequest, FullRefreshService

    session_factory = get_async_session()

    async with session_factory() as session, CatalogClient(
        api_key, settings.tmdb_base_url, settings.catalog_timeout_seconds
    ) as catalog:
        svc = FullRefreshService(Repositories.from_session(session), catalog, settings)
        if body is not None:
            result = await svc.run_chunk(ChunkRequest.from_body(body))
        else:
            result = await svc.run_all()
    return result.to_dict()


@click.command()
@click.option("--language", default=None, help="Original language code of the work unit")
@click.option("--year", type=int, default=None, help="Release year (start year) of the work unit")
@click.option("--end-year", type=int, default=None, help="Last release year (defaults to --year)")
@click.option("--genre-id", type=int, default=None, help="TMDB movie genre id of the work unit")
@click.option("--job-id", default=None, help="Job id to credit progress to")
def cli(
    language: str | None,
    year: int | None,
    end_year: int | None,
    genre_id: int | None,
    job_id: str | None,
) -> None:
    """Run the full refresh worker."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    body: dict[str, Any] | None = None
    if language or year or genre_id:
        body = {
            "languageCode": language,
            "startYear": year,
            "endYear": end_year or year,
            "genreId": genre_id,
            "jobId": job_id,
        }
    try:
        result = asyncio.run(run_full_refresh(body))
    except Exception:
        logger.exception("full_refresh_worker_crashed")
        sys.exit(1)
    click.echo(json.dumps(result))


if __name__ == "__main__":
    cli()
