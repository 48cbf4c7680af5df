"""
Retry Sweeper CLI — standalone entry point for retry-failed-threads.
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import click
import structlog

from viib.config import get_settings
from viib.config.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_sweep(limit: int | None = None) -> dict[str, Any]:
    settings = get_settings()

    from viib.db.engine import get_async_session
    from viib.db.repositories import Repositories
    from viib.pipeline.invoke import FunctionInvoker

    from apps.retry_sweeper.service import RetrySweeper

    async with get_async_session()() as session, FunctionInvoker(
        settings.functions_base_url,
        settings.pipeline_api_key.get_secret_value(),
        settings.invoke_timeout_seconds,
    ) as invoker:
        sweeper = RetrySweeper(Repositories.from_session(session), invoker, settings)
        result = await sweeper.run(limit)
    return result.to_dict()


@click.command()
@click.option("--limit", type=int, default=None, help="Max log rows to retry")
def cli(limit: int | None) -> None:
    """Retry logged full-refresh failures."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    try:
        result = asyncio.run(run_sweep(limit))
    except Exception:
        logger.exception("retry_sweeper_crashed")
        sys.exit(1)
    click.echo(json.dumps(result))


if __name__ == "__main__":
    cli()
