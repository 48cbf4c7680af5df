"""
Repair Worker CLI — standalone entry point for fix-streaming-availability.
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


async def run_repair(batch_size: int | None = None, dry_run: bool = False) -> dict[str, Any]:
    settings = get_settings()
    bind_job_context("fix_streaming")
    api_key = settings.require_tmdb_key()

    from viib.db.engine import get_async_session
    from viib.db.repositories import Repositories
    from viib.pipeline.tmdb import CatalogClient

    from apps.repair_worker.service import StreamingRepairService

    async with get_async_session()() as session, CatalogClient(
        api_key, settings.tmdb_base_url, settings.catalog_timeout_seconds
    ) as catalog:
        svc = StreamingRepairService(Repositories.from_session(session), catalog, settings)
        result = await svc.run(batch_size=batch_size, dry_run=dry_run)
    return result.to_dict()


@click.command()
@click.option("--batch-size", type=int, default=None, help="Titles per batch")
@click.option("--dry-run", is_flag=True, help="Count would-be fixes without writing")
def cli(batch_size: int | None, dry_run: bool) -> None:
    """Repair blanket-linked streaming availability rows."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    try:
        result = asyncio.run(run_repair(batch_size, dry_run))
    except Exception:
        logger.exception("repair_worker_crashed")
        sys.exit(1)
    click.echo(json.dumps(result))


if __name__ == "__main__":
    cli()
