"""
Discovery across an ordered list of languages.

Each language is fetched separately; results are tagged with a priority
(earlier language = higher) and merged so a title seen under several
languages keeps its highest-priority copy.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from viib.db.models import TitleType
from viib.pipeline.normalize import TMDB_GENRE_MAP
from viib.pipeline.tmdb import DiscoverFilter

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from viib.pipeline.tmdb import CatalogClient

logger = structlog.get_logger(__name__)

RESULTS_PER_PAGE = 20
MAX_PAGES_PER_LANGUAGE = 5


@dataclass
class DiscoverRequest:
    languages: list[str] = field(default_factory=lambda: ["en"])
    streaming_provider_ids: list[int] = field(default_factory=list)
    min_date: date | None = None
    min_rating: float = 6.0
    min_popularity: float = 10.0
    limit: int = 100
    region: str = "US"


def vote_count_floor(language: str) -> int:
    """Non-English titles gather fewer votes, so their floor is lower."""
    return 50 if language == "en" else 20


def pages_for_limit(limit: int) -> int:
    return max(1, min(math.ceil(limit / RESULTS_PER_PAGE), MAX_PAGES_PER_LANGUAGE))


def merge_by_language_priority(
    batches: Iterable[tuple[int, Sequence[dict[str, Any]]]],
    limit: int,
    min_popularity: float = 0.0,
) -> list[dict[str, Any]]:
    """Merge (priority, results) batches into one ranked list.

    Duplicates by `id` keep the highest priority copy, then the most
    popular one. Output is sorted by priority desc, popularity desc, and
    truncated to `limit`.
    """
    best: dict[int, tuple[int, dict[str, Any]]] = {}
    for priority, results in batches:
        for item in results:
            tmdb_id = item.get("id")
            if tmdb_id is None:
                continue
            current = best.get(tmdb_id)
            if current is None or (priority, item.get("popularity") or 0) > (
                current[0],
                current[1].get("popularity") or 0,
            ):
                best[tmdb_id] = (priority, item)

    ranked = [
        (priority, item)
        for priority, item in best.values()
        if (item.get("popularity") or 0) >= min_popularity
    ]
    ranked.sort(key=lambda pair: (pair[0], pair[1].get("popularity") or 0), reverse=True)
    return [{**item, "language_priority": priority} for priority, item in ranked[:limit]]


def format_discovered(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "tmdb_id": item["id"],
        "name": item.get("title") or item.get("original_title"),
        "poster_path": item.get("poster_path"),
        "backdrop_path": item.get("backdrop_path"),
        "popularity": item.get("popularity"),
        "vote_average": item.get("vote_average"),
        "release_date": item.get("release_date"),
        "original_language": item.get("original_language"),
        "genres": [TMDB_GENRE_MAP[g] for g in item.get("genre_ids") or [] if g in TMDB_GENRE_MAP],
        "overview": item.get("overview"),
    }


async def discover_by_languages(
    catalog: CatalogClient, request: DiscoverRequest
) -> list[dict[str, Any]]:
    """Fetch movies per language and return the merged, formatted list."""
    min_date = request.min_date or date.today() - timedelta(days=3 * 365)
    max_pages = pages_for_limit(request.limit)
    batches: list[tuple[int, list[dict[str, Any]]]] = []

    for index, language in enumerate(request.languages):
        priority = len(request.languages) - index
        flt = DiscoverFilter(
            media_type=TitleType.MOVIE,
            original_language=language,
            date_from=min_date,
            min_rating=request.min_rating,
            min_vote_count=vote_count_floor(language),
            streaming_provider_ids=list(request.streaming_provider_ids),
            region=request.region if request.streaming_provider_ids else None,
        )
        results: list[dict[str, Any]] = []
        async for page in catalog.iter_discover(flt, max_pages):
            # tag with the requested language, not the catalog's value
            results.extend({**r, "original_language": language} for r in page.results)
        logger.info("language_discovered", language=language, priority=priority, results=len(results))
        batches.append((priority, results))

    merged = merge_by_language_priority(batches, request.limit, request.min_popularity)
    return [format_discovered(item) for item in merged]
