"""
SQLAlchemy ORM models for the catalog and ingestion bookkeeping tables.

Three groups:
  - jobs / system_logs     — job ledger and failure log (retry queue)
  - titles + reference     — canonical catalog rows, genres, languages,
                             streaming services
  - join tables            — title_genres, title_languages,
                             title_streaming_availability

Join tables use composite primary keys; these are the ON CONFLICT
targets the upsert writer relies on for idempotence.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for all models."""

    type_annotation_map = {
        dict: JSONB,
        list: JSONB,
    }


# ╔══════════════════════════════════════════════════════════╗
# ║  JOB LEDGER                                              ║
# ╚══════════════════════════════════════════════════════════╝


class JobType(str, enum.Enum):
    """One row per job type, seeded out-of-band."""

    FULL_REFRESH = "full_refresh"
    SYNC_DELTA = "sync_delta"
    ENRICH_DETAILS = "enrich_details"
    ENRICH_TRAILERS = "enrich_trailers"
    FIX_STREAMING = "fix_streaming"


class JobStatus(str, enum.Enum):
    """Job states. `idle` and `failed` double as operator stop signals."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_stopped(self) -> bool:
        return self in (JobStatus.IDLE, JobStatus.FAILED)


class Job(Base):
    """Configuration source and progress ledger for one job type."""

    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    job_type: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    job_name: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            create_constraint=True,
            values_callable=lambda e: [m.value for m in e],
        ),
        default=JobStatus.IDLE,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    configuration: Mapped[dict[str, Any]] = mapped_column(
        JSONB, server_default=text("'{}'::jsonb"), nullable=False
    )
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_run_duration_seconds: Mapped[int | None] = mapped_column(Integer)
    total_titles_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Severity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class SystemLog(Base):
    """Failure log. Rows tagged as dispatch failures form the retry queue."""

    __tablename__ = "system_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    operation: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    error_message: Mapped[str | None] = mapped_column(Text)
    error_stack: Mapped[str | None] = mapped_column(Text)
    context: Mapped[dict[str, Any]] = mapped_column(
        JSONB, server_default=text("'{}'::jsonb"), nullable=False
    )
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


# ╔══════════════════════════════════════════════════════════╗
# ║  CATALOG                                                 ║
# ╚══════════════════════════════════════════════════════════╝


class TitleType(str, enum.Enum):
    MOVIE = "movie"
    SERIES = "series"

    @property
    def endpoint(self) -> str:
        """Catalog API path segment for this type."""
        return "movie" if self is TitleType.MOVIE else "tv"


class Title(Base):
    """Canonical catalog entry.

    Unique on tmdb_id (when present) and on (name, release_year).
    """

    __tablename__ = "titles"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tmdb_id: Mapped[int | None] = mapped_column(BigInteger, unique=True)
    title_type: Mapped[str] = mapped_column(String(16), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    original_name: Mapped[str | None] = mapped_column(Text)
    overview: Mapped[str | None] = mapped_column(Text)
    release_year: Mapped[int | None] = mapped_column(Integer)
    runtime: Mapped[int | None] = mapped_column(Integer)
    episode_run_time: Mapped[int | None] = mapped_column(Integer)
    original_language: Mapped[str | None] = mapped_column(String(8))
    popularity: Mapped[float | None] = mapped_column(Float, index=True)
    vote_average: Mapped[float | None] = mapped_column(Float)
    poster_path: Mapped[str | None] = mapped_column(Text)
    backdrop_path: Mapped[str | None] = mapped_column(Text)
    trailer_url: Mapped[str | None] = mapped_column(Text)
    is_tmdb_trailer: Mapped[bool | None] = mapped_column(Boolean)
    trailer_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("name", "release_year", name="uq_titles_name_year"),
    )


class Genre(Base):
    __tablename__ = "genres"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    genre_name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    tmdb_genre_id: Mapped[int | None] = mapped_column(Integer, unique=True)


class Language(Base):
    __tablename__ = "languages"

    language_code: Mapped[str] = mapped_column(String(8), primary_key=True)
    language_name: Mapped[str] = mapped_column(String(64), nullable=False)


class StreamingService(Base):
    __tablename__ = "streaming_services"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    service_name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# ╔══════════════════════════════════════════════════════════╗
# ║  JOIN TABLES — composite keys are the conflict targets   ║
# ╚══════════════════════════════════════════════════════════╝


class TitleGenre(Base):
    __tablename__ = "title_genres"

    title_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("titles.id", ondelete="CASCADE"), primary_key=True
    )
    genre_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("genres.id", ondelete="CASCADE"), primary_key=True
    )


class TitleLanguage(Base):
    __tablename__ = "title_languages"

    title_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("titles.id", ondelete="CASCADE"), primary_key=True
    )
    language_code: Mapped[str] = mapped_column(String(8), primary_key=True)
    language_type: Mapped[str] = mapped_column(String(16), primary_key=True)


class TitleStreamingAvailability(Base):
    __tablename__ = "title_streaming_availability"

    title_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("titles.id", ondelete="CASCADE"), primary_key=True
    )
    streaming_service_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("streaming_services.id", ondelete="CASCADE"),
        primary_key=True,
    )
    region_code: Mapped[str] = mapped_column(String(4), primary_key=True)
