"""
Run control primitives: wall-clock budgets, polling-based stop checks,
and schedule arithmetic.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import structlog

from viib.db.models import JobStatus

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
StatusCheck = Callable[[], Awaitable[JobStatus | None]]


class TimeBudget:
    """Wall-clock budget measured from construction. `seconds=None` never expires."""

    def __init__(self, seconds: float | None, clock: Clock = time.monotonic) -> None:
        self.seconds = seconds
        self._clock = clock
        self._start = clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._start

    @property
    def exhausted(self) -> bool:
        return self.seconds is not None and self.elapsed >= self.seconds

    @property
    def remaining(self) -> float | None:
        if self.seconds is None:
            return None
        return max(0.0, self.seconds - self.elapsed)


class StopPoller:
    """Re-reads job status every `every` units of work.

    A stop requested between polls is only seen at the next poll, so up
    to `every - 1` further units run after the request.
    """

    def __init__(self, check: StatusCheck | None, every: int = 10) -> None:
        self._check = check
        self.every = max(1, every)
        self.last_status: JobStatus | None = None

    async def should_stop(self, index: int) -> bool:
        """True when `index` is a poll boundary and the job was stopped."""
        if self._check is None or index == 0 or index % self.every:
            return False
        status = await self._check()
        self.last_status = status
        if status is not None and status.is_stopped:
            logger.info("stop_requested", index=index, status=status.value)
            return True
        return False


def next_daily_run(now: datetime | None = None, hour: int = 2) -> datetime:
    """Tomorrow at `hour`:00 UTC."""
    now = now or datetime.now(UTC)
    tomorrow = (now.astimezone(UTC) + timedelta(days=1)).date()
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, hour, tzinfo=UTC)
