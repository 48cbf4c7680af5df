"""Create catalog, reference, join and job ledger tables

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

NOTE: reference rows (jobs, genres, languages, streaming_services) are
not inserted here; run scripts/seed_reference_data.py after upgrading.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ENUM, JSONB, UUID


revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def upgrade() -> None:
    # ── Enums ─────────────────────────────────────────
    job_status = sa.Enum(
        "idle", "running", "completed", "failed",
        name="job_status",
    )
    job_status.create(op.get_bind(), checkfirst=True)

    # ── jobs ──────────────────────────────────────────
    op.create_table(
        "jobs",
        _uuid_pk(),
        sa.Column("job_type", sa.String(32), unique=True, nullable=False),
        sa.Column("job_name", sa.String(128), nullable=False),
        sa.Column("status", ENUM(name="job_status", create_type=False),
                  nullable=False, server_default="idle"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("configuration", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb"),
                  comment="Per-job overrides plus completed/failed work-unit ledgers"),
        sa.Column("last_run_at", sa.DateTime(timezone=True)),
        sa.Column("last_run_duration_seconds", sa.Integer()),
        sa.Column("total_titles_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text()),
        sa.Column("next_run_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── system_logs ───────────────────────────────────
    # Dispatch-failure rows double as the retry queue; resolved rows are deleted.
    op.create_table(
        "system_logs",
        _uuid_pk(),
        sa.Column("severity", sa.String(16), nullable=False, server_default="error"),
        sa.Column("operation", sa.String(128), nullable=False, index=True),
        sa.Column("error_message", sa.Text()),
        sa.Column("error_stack", sa.Text()),
        sa.Column("context", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_system_logs_unresolved", "system_logs", ["operation", "created_at"],
        postgresql_where=sa.text("resolved = false"),
    )

    # ── reference tables ──────────────────────────────
    op.create_table(
        "genres",
        _uuid_pk(),
        sa.Column("genre_name", sa.String(64), unique=True, nullable=False),
        sa.Column("tmdb_genre_id", sa.Integer(), unique=True),
    )
    op.create_table(
        "languages",
        sa.Column("language_code", sa.String(8), primary_key=True),
        sa.Column("language_name", sa.String(64), nullable=False),
    )
    op.create_table(
        "streaming_services",
        _uuid_pk(),
        sa.Column("service_name", sa.String(64), unique=True, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    # ── titles ────────────────────────────────────────
    op.create_table(
        "titles",
        _uuid_pk(),
        sa.Column("tmdb_id", sa.BigInteger(), unique=True),
        sa.Column("title_type", sa.String(16), nullable=False,
                  comment="movie | series"),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("original_name", sa.Text()),
        sa.Column("overview", sa.Text()),
        sa.Column("release_year", sa.Integer()),
        sa.Column("runtime", sa.Integer()),
        sa.Column("episode_run_time", sa.Integer()),
        sa.Column("original_language", sa.String(8)),
        sa.Column("popularity", sa.Float(), index=True),
        sa.Column("vote_average", sa.Float()),
        sa.Column("poster_path", sa.Text()),
        sa.Column("backdrop_path", sa.Text()),
        sa.Column("trailer_url", sa.Text()),
        sa.Column("is_tmdb_trailer", sa.Boolean()),
        sa.Column("trailer_checked_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("name", "release_year", name="uq_titles_name_year"),
    )

    # ── join tables ───────────────────────────────────
    op.create_table(
        "title_genres",
        sa.Column("title_id", UUID(as_uuid=True),
                  sa.ForeignKey("titles.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("genre_id", UUID(as_uuid=True),
                  sa.ForeignKey("genres.id", ondelete="CASCADE"), primary_key=True),
    )
    op.create_table(
        "title_languages",
        sa.Column("title_id", UUID(as_uuid=True),
                  sa.ForeignKey("titles.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("language_code", sa.String(8), primary_key=True),
        sa.Column("language_type", sa.String(16), primary_key=True,
                  comment="original | spoken"),
    )
    op.create_table(
        "title_streaming_availability",
        sa.Column("title_id", UUID(as_uuid=True),
                  sa.ForeignKey("titles.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("streaming_service_id", UUID(as_uuid=True),
                  sa.ForeignKey("streaming_services.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("region_code", sa.String(4), primary_key=True),
    )
    op.create_index(
        "ix_title_streaming_region", "title_streaming_availability", ["region_code", "title_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_title_streaming_region", table_name="title_streaming_availability")
    op.drop_table("title_streaming_availability")
    op.drop_table("title_languages")
    op.drop_table("title_genres")
    op.drop_table("titles")
    op.drop_table("streaming_services")
    op.drop_table("languages")
    op.drop_table("genres")
    op.drop_index("ix_system_logs_unresolved", table_name="system_logs")
    op.drop_table("system_logs")
    op.drop_table("jobs")

    op.execute("DROP TYPE IF EXISTS job_status")
