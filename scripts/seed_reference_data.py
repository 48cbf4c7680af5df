"""
Seed the reference rows the ingestion jobs depend on.

Inserts (idempotently):
  - one jobs row per job type
  - genres (TMDB movie genre ids)
  - languages
  - streaming services

Usage:
    python scripts/seed_reference_data.py
    python scripts/seed_reference_data.py --languages en,hi,ko
"""

from __future__ import annotations

import asyncio
import sys

import click
from sqlalchemy.dialects.postgresql import insert as pg_insert

# ── Ensure project root is on sys.path ────────────────
sys.path.insert(0, ".")

from viib.db.engine import get_async_session
from viib.db.models import Genre, Job, JobStatus, JobType, Language, StreamingService
from viib.pipeline.normalize import TMDB_GENRE_MAP

# ───────────────────────────────────────────────────────
#  Reference data
# ───────────────────────────────────────────────────────

JOBS = [
    {
        "job_type": JobType.FULL_REFRESH.value,
        "job_name": "Full Catalog Refresh",
        "configuration": {"start_year": 2020},
    },
    {
        "job_type": JobType.SYNC_DELTA.value,
        "job_name": "Daily Delta Sync",
        "configuration": {"lookback_days": 7, "min_rating": 6.0},
    },
    {
        "job_type": JobType.ENRICH_DETAILS.value,
        "job_name": "Enrich Title Details",
        "configuration": {"batch_size": 50},
    },
    {
        "job_type": JobType.ENRICH_TRAILERS.value,
        "job_name": "Enrich Title Trailers",
        "configuration": {"batch_size": 20},
    },
    {
        "job_type": JobType.FIX_STREAMING.value,
        "job_name": "Fix Streaming Availability",
        "configuration": {"batch_size": 100},
    },
]

LANGUAGES = {
    "en": "English",
    "hi": "Hindi",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "ja": "Japanese",
    "ko": "Korean",
    "zh": "Chinese",
    "pt": "Portuguese",
    "ta": "Tamil",
    "te": "Telugu",
}

STREAMING_SERVICES = ["Netflix", "Prime Video", "Hulu", "Apple TV+", "Disney+", "HBO Max"]


# ───────────────────────────────────────────────────────
#  Seeding
# ───────────────────────────────────────────────────────


async def seed(languages: dict[str, str]) -> None:
    session_factory = get_async_session()
    async with session_factory() as session:
        for job in JOBS:
            await session.execute(
                pg_insert(Job)
                .values(status=JobStatus.IDLE, is_active=True, total_titles_processed=0, **job)
                .on_conflict_do_nothing(index_elements=["job_type"])
            )
        print(f"  ✓ {len(JOBS)} jobs")

        for tmdb_id, name in TMDB_GENRE_MAP.items():
            await session.execute(
                pg_insert(Genre)
                .values(genre_name=name, tmdb_genre_id=tmdb_id)
                .on_conflict_do_nothing(index_elements=["genre_name"])
            )
        print(f"  ✓ {len(TMDB_GENRE_MAP)} genres")

        for code, name in languages.items():
            await session.execute(
                pg_insert(Language)
                .values(language_code=code, language_name=name)
                .on_conflict_do_nothing(index_elements=["language_code"])
            )
        print(f"  ✓ {len(languages)} languages")

        for name in STREAMING_SERVICES:
            await session.execute(
                pg_insert(StreamingService)
                .values(service_name=name, is_active=True)
                .on_conflict_do_nothing(index_elements=["service_name"])
            )
        print(f"  ✓ {len(STREAMING_SERVICES)} streaming services")

        await session.commit()


# ───────────────────────────────────────────────────────
#  CLI
# ───────────────────────────────────────────────────────


@click.command()
@click.option(
    "--languages",
    default=None,
    help="Comma-separated language codes to seed (default: all known)",
)
def cli(languages: str | None):
    selected = LANGUAGES
    if languages:
        codes = [c.strip() for c in languages.split(",") if c.strip()]
        unknown = [c for c in codes if c not in LANGUAGES]
        if unknown:
            raise click.BadParameter(f"Unknown language codes: {', '.join(unknown)}")
        selected = {c: LANGUAGES[c] for c in codes}

    print("╔══════════════════════════════════════════════╗")
    print("║  ViiB Reference Data Seeder                  ║")
    print("╚══════════════════════════════════════════════╝")
    asyncio.run(seed(selected))
    print("\nDone.")


if __name__ == "__main__":
    cli()
