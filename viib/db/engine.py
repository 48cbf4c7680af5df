"""SQLAlchemy async engine + session factory."""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable
from functools import lru_cache
from typing import Any, TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from viib.config import get_settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_TRANSIENT_ERRORS = (
    ConnectionResetError,
    ConnectionRefusedError,
    ConnectionAbortedError,
    BrokenPipeError,
)

# asyncpg exception class names, matched by name
_ASYNCPG_DISCONNECTS = frozenset(
    {"ConnectionDoesNotExistError", "InterfaceError", "InternalClientError"}
)


@lru_cache(maxsize=1)
def get_async_engine() -> AsyncEngine:
    """Create and cache an async engine.

    NOTE: Supabase pooling runs pgBouncer in transaction mode, which does
    NOT support prepared statements, so asyncpg's statement cache is off.
    """
    settings = get_settings()
    return create_async_engine(
        settings.database_url,
        echo=False,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        pool_recycle=300,
        connect_args={
            "statement_cache_size": 0,
            "prepared_statement_cache_size": 0,
            "prepared_statement_name_func": lambda: "",
        },
    )


def get_async_session() -> async_sessionmaker[AsyncSession]:
    """Return an async session factory."""
    return async_sessionmaker(
        get_async_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


def is_disconnect(exc: BaseException) -> bool:
    """Check if an exception chain indicates a transient disconnect."""
    if isinstance(exc, (DisconnectionError, *_TRANSIENT_ERRORS)):
        return True
    if isinstance(exc, (DBAPIError, OperationalError)):
        if getattr(exc, "connection_invalidated", False):
            return True
        cause = exc.__cause__
        while cause is not None:
            if isinstance(cause, _TRANSIENT_ERRORS):
                return True
            if type(cause).__name__ in _ASYNCPG_DISCONNECTS:
                return True
            cause = cause.__cause__
    return False


def retry_on_disconnect(
    max_retries: int = 3,
    base_delay: float = 1.0,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator that retries a repository coroutine on transient DB disconnects.

    Only disconnects are retried; constraint violations and every other
    error propagate on the first attempt. Backoff is exponential:
    base_delay * 2^attempt seconds.
    """

    def _log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "transient_db_disconnect_retrying",
            attempt=state.attempt_number,
            max_retries=max_retries,
            error=str(exc),
        )

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            retrying = AsyncRetrying(
                retry=retry_if_exception(is_disconnect),
                stop=stop_after_attempt(max_retries + 1),
                wait=wait_exponential(multiplier=base_delay, min=base_delay),
                before_sleep=_log_retry,
                reraise=True,
            )
            async for attempt in retrying:
                with attempt:
                    return await fn(*args, **kwargs)
            raise AssertionError("unreachable")  # pragma: no cover

        return wrapper

    return decorator
