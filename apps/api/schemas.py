"""Pydantic schemas for the ingestion function API."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts camelCase bodies (and snake_case field names)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChunkSpec(CamelModel):
    language_code: str
    year: int
    genre_id: int


class FullRefreshRequest(CamelModel):
    """Request body for POST /functions/full-refresh-titles."""

    language_code: str | None = None
    start_year: int | None = None
    end_year: int | None = None
    genre_id: int | None = None
    job_id: uuid.UUID | None = None

    def to_body(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class OrchestratorRequest(CamelModel):
    """Request body for POST /functions/full-refresh-orchestrator."""

    job_id: uuid.UUID
    chunks: list[ChunkSpec] | None = Field(
        default=None,
        description="Work units to dispatch; built from the job configuration if omitted",
    )
    start_index: int = Field(default=0, ge=0)


class EnrichRequest(CamelModel):
    """Request body for the details and trailer enrichment functions."""

    job_id: uuid.UUID | None = None
    batch_size: int | None = Field(default=None, gt=0)


class RepairRequest(CamelModel):
    batch_size: int | None = Field(default=None, gt=0)
    dry_run: bool = False


class RetrySweepRequest(CamelModel):
    limit: int | None = Field(default=None, gt=0)


class DiscoverTmdbRequest(CamelModel):
    """Request body for POST /functions/discover-tmdb."""

    languages: list[str] = Field(default_factory=lambda: ["en"], min_length=1)
    streaming_provider_ids: list[int] = Field(default_factory=list)
    min_year: int | None = Field(default=None, description="Earliest release year")
    min_rating: float = 6.0
    min_popularity: float = 10.0
    limit: int = Field(default=100, gt=0)
    region: str = "US"

    @property
    def min_date(self) -> date | None:
        return date(self.min_year, 1, 1) if self.min_year else None


class JobResponse(CamelModel):
    """One row of the jobs table."""

    id: uuid.UUID
    job_type: str
    job_name: str
    status: str
    is_active: bool
    configuration: dict[str, Any] | None = None
    last_run_at: datetime | None = None
    last_run_duration_seconds: int | None = None
    total_titles_processed: int = 0
    error_message: str | None = None
    next_run_at: datetime | None = None


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str = "ok"
    version: str = "0.1.0"
