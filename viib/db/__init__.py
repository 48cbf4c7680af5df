"""Database package — engine, session, models, repositories."""

from viib.db.engine import get_async_engine, get_async_session
from viib.db.models import Base

__all__ = ["Base", "get_async_engine", "get_async_session"]
