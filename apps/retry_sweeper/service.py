"""
Retry Sweeper — re-invokes logged full-refresh failures.

The failure log is used as a single-shot retry queue: the oldest
unresolved dispatch-failure rows are re-invoked with their recorded
parameters; a row is deleted when its retry succeeds and left in place
otherwise. There is no retry cap; a row keeps coming back until it
succeeds or someone resolves it by hand.
"""

from __future__ import annotations

import asyncio
import time
import traceback
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from apps.orchestrator.service import DISPATCH_FAILED_OPERATION, TARGET_FUNCTION, Invoker

if TYPE_CHECKING:
    from viib.config.settings import Settings
    from viib.db.models import SystemLog
    from viib.db.repositories import Repositories

logger = structlog.get_logger(__name__)

RETRYABLE_OPERATIONS = (DISPATCH_FAILED_OPERATION, "full-refresh-titles-error")
ERROR_OPERATION = "retry-failed-threads-error"
_PARAM_KEYS = ("request_body", "requestBody", "edge_function_body", "retry_parameters")


def retry_parameters(log: SystemLog) -> dict[str, Any] | None:
    """The full-refresh-titles body recorded on a log row, or None if unusable."""
    context = log.context or {}
    params: dict[str, Any] | None = None
    for key in _PARAM_KEYS:
        candidate = context.get(key)
        if isinstance(candidate, dict):
            params = candidate
            break
    if not params:
        return None

    start_year = params.get("startYear") or params.get("year")
    if not params.get("languageCode") or not params.get("genreId") or not start_year:
        return None

    body: dict[str, Any] = {
        "languageCode": params["languageCode"],
        "startYear": start_year,
        "endYear": params.get("endYear") or start_year,
        "genreId": params["genreId"],
    }
    job_id = params.get("jobId") or context.get("job_id")
    if job_id:
        body["jobId"] = str(job_id)
    return body


@dataclass
class SweepResult:
    results: list[dict[str, Any]] = field(default_factory=list)
    duration: float = 0.0

    def _count(self, status: str) -> int:
        return sum(1 for r in self.results if r["status"] == status)

    def to_dict(self) -> dict[str, Any]:
        retried = self._count("success") + self._count("failed")
        return {
            "success": True,
            "message": f"Retried {retried} failed threads" if self.results else "No failed threads to retry",
            "retriedCount": retried,
            "successCount": self._count("success"),
            "failedCount": self._count("failed"),
            "skippedCount": self._count("skipped"),
            "results": self.results,
            "duration": round(self.duration, 2),
        }


class RetrySweeper:
    def __init__(
        self,
        repos: Repositories,
        invoker: Invoker,
        settings: Settings,
        *,
        clock: Any = time.monotonic,
        sleep: Any = asyncio.sleep,
    ) -> None:
        self.repos = repos
        self.invoker = invoker
        self.settings = settings
        self._clock = clock
        self._sleep = sleep

    async def run(self, limit: int | None = None) -> SweepResult:
        start = self._clock()
        try:
            return await self._sweep(start, limit)
        except Exception as exc:
            await self.repos.rollback()
            logger.exception("retry_sweep_failed")
            await self.repos.logs.log(
                ERROR_OPERATION, str(exc), error_stack=traceback.format_exc()
            )
            await self.repos.commit()
            raise

    async def _sweep(self, start: float, limit: int | None) -> SweepResult:
        result = SweepResult()
        rows = await self.repos.logs.list_unresolved(
            RETRYABLE_OPERATIONS, limit or self.settings.retry_sweep_limit
        )
        logger.info("retry_sweep_start", rows=len(rows))

        for i, row in enumerate(rows):
            body = retry_parameters(row)
            if body is None:
                logger.warning("retry_parameters_missing", log_id=str(row.id))
                result.results.append({"logId": str(row.id), "status": "skipped"})
                continue

            entry: dict[str, Any] = {
                "logId": str(row.id),
                "languageCode": body["languageCode"],
                "startYear": body["startYear"],
                "genreId": body["genreId"],
            }
            try:
                await self.invoker.invoke(TARGET_FUNCTION, body)
            except Exception as exc:
                logger.warning("retry_failed", log_id=str(row.id), error=str(exc))
                entry.update(status="failed", error=str(exc)[:500])
            else:
                await self.repos.logs.delete(row.id)
                await self.repos.commit()
                logger.info("retry_succeeded", log_id=str(row.id))
                entry["status"] = "success"
            result.results.append(entry)

            if i < len(rows) - 1:
                await self._sleep(self.settings.retry_delay_seconds)

        result.duration = self._clock() - start
        summary = result.to_dict()
        logger.info(
            "retry_sweep_done",
            retried=summary["retriedCount"],
            succeeded=summary["successCount"],
            failed=summary["failedCount"],
        )
        return result
