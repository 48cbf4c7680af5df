"""
Delta Sync Worker CLI — standalone entry point for sync-titles-delta.

Meant to run daily as a cron job; the job row's next_run_at records
when the next run is due.
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


async def run_delta_sync() -> dict[str, Any]:
    settings = get_settings()
    bind_job_context("sync_delta")
    api_key = settings.require_tmdb_key()

    from viib.db.engine import get_async_session
    from viib.db.repositories import Repositories
    from viib.pipeline.tmdb import CatalogClient

    from apps.delta_sync_worker.service import DeltaSyncService

    session_factory = get_async_session()

    async with session_factory() as session, CatalogClient(
        api_key, settings.tmdb_base_url, settings.catalog_timeout_seconds
    ) as catalog:
        svc = DeltaSyncService(Repositories.from_session(session), catalog, settings)
        result = await svc.run()
    return result.to_dict()


@click.command()
def cli() -> None:
    """Run the delta sync worker."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    try:
        result = asyncio.run(run_delta_sync())
    except Exception:
        logger.exception("delta_sync_worker_crashed")
        sys.exit(1)
    click.echo(json.dumps(result))


if __name__ == "__main__":
    cli()
