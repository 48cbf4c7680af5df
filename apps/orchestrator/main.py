"""
Orchestrator — full-refresh dispatch coordinator.

Entry point for a full refresh run: builds (or loads) the work-unit list
and dispatches one full-refresh-titles invocation per unit against the
function endpoints served by apps.api. Designed as a cron job that runs
and terminates.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click
import structlog

from viib.config import get_settings
from viib.config.logging import bind_job_context, setup_logging
from viib.db.engine import get_async_session
from viib.db.models import JobType
from viib.db.repositories import Repositories
from viib.pipeline.invoke import FunctionInvoker

from apps.orchestrator.service import OrchestratorService, WorkUnit, work_units_for

logger = structlog.get_logger(__name__)


async def run_orchestrator(
    chunks: list[dict[str, Any]] | None = None,
    *,
    start_index: int = 0,
    start: bool = False,
) -> dict[str, Any]:
    """Dispatch the full refresh grid (or the given chunks)."""
    settings = get_settings()

    session_factory = get_async_session()

    async with session_factory() as session:
        repos = Repositories.from_session(session)
        job = await repos.jobs.require(JobType.FULL_REFRESH)
        bind_job_context(JobType.FULL_REFRESH.value, str(job.id))

        if start:
            await repos.jobs.mark_running(job.id)
            await repos.commit()
        elif job.status.is_stopped:
            logger.info("orchestrator_job_not_running", status=job.status.value)
            return {"success": False, "message": f"Job not running (status: {job.status.value})."}

        units = (
            [WorkUnit.from_dict(c) for c in chunks]
            if chunks
            else await work_units_for(repos, job)
        )

        async with FunctionInvoker(
            settings.functions_base_url,
            settings.pipeline_api_key.get_secret_value(),
            settings.invoke_timeout_seconds,
        ) as invoker:
            svc = OrchestratorService(repos, invoker, settings)
            report = await svc.run(job.id, units, start_index)
    return report.to_dict()


@click.command()
@click.option(
    "--chunks-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON file with a list of {languageCode, year, genreId} chunks",
)
@click.option("--start-index", default=0, type=int, help="Skip chunks before this index")
@click.option("--start", is_flag=True, help="Mark the job running before dispatching")
def cli(chunks_file: Path | None, start_index: int, start: bool) -> None:
    """Run the full refresh orchestrator."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    chunks = json.loads(chunks_file.read_text()) if chunks_file else None
    try:
        result = asyncio.run(run_orchestrator(chunks, start_index=start_index, start=start))
    except Exception:
        logger.exception("orchestrator_crashed")
        sys.exit(1)
    click.echo(json.dumps(result))


if __name__ == "__main__":
    cli()
