"""
Async TMDB catalog client.

Design:
- One httpx.AsyncClient per client instance (async context manager)
- discover() never raises: a non-2xx or malformed response is logged and
  treated as an empty page; callers own pagination and page caps
- Detail lookups return None on failure; watch_providers() raises
  CatalogError so callers can tell "no providers" from "lookup failed"
- No retry or backoff at this layer
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import httpx
import structlog

from viib.db.models import TitleType

logger = structlog.get_logger(__name__)


class CatalogError(Exception):
    """Catalog API returned an error or an unusable payload."""


@dataclass
class DiscoverFilter:
    """Filter descriptor for one discover query."""

    media_type: TitleType
    genre_id: int | None = None
    original_language: str | None = None
    year: int | None = None
    date_from: date | None = None
    date_to: date | None = None
    min_rating: float | None = None
    min_vote_count: int | None = None
    streaming_provider_ids: list[int] = field(default_factory=list)
    region: str | None = None
    sort_by: str = "popularity.desc"

    def to_params(self, page: int) -> dict[str, Any]:
        movie = self.media_type is TitleType.MOVIE
        params: dict[str, Any] = {"page": page, "sort_by": self.sort_by}
        if self.genre_id is not None:
            params["with_genres"] = self.genre_id
        if self.original_language:
            params["with_original_language"] = self.original_language
        if self.year is not None:
            params["primary_release_year" if movie else "first_air_date_year"] = self.year
        date_key = "primary_release_date" if movie else "first_air_date"
        if self.date_from is not None:
            params[f"{date_key}.gte"] = self.date_from.isoformat()
        if self.date_to is not None:
            params[f"{date_key}.lte"] = self.date_to.isoformat()
        if self.min_rating is not None:
            params["vote_average.gte"] = self.min_rating
        if self.min_vote_count is not None:
            params["vote_count.gte"] = self.min_vote_count
        if self.streaming_provider_ids:
            params["with_watch_providers"] = "|".join(str(p) for p in self.streaming_provider_ids)
            params["watch_region"] = self.region or "US"
        elif self.region:
            params["watch_region"] = self.region
        return params


@dataclass
class DiscoverPage:
    """One page of discover results plus pagination metadata."""

    results: list[dict[str, Any]]
    page: int = 1
    total_pages: int = 0
    total_results: int = 0

    @property
    def has_more(self) -> bool:
        return bool(self.results) and self.page < self.total_pages


def find_tmdb_trailer(videos: list[dict[str, Any]]) -> str | None:
    """YouTube key of the catalog's own trailer, preferring official uploads."""
    trailers = [
        v for v in videos if v.get("type") == "Trailer" and v.get("site") == "YouTube" and v.get("key")
    ]
    if not trailers:
        return None
    official = [v for v in trailers if v.get("official")]
    return (official or trailers)[0]["key"]


class CatalogClient:
    """
    TMDB v3 client.

    Usage:
        async with CatalogClient(api_key) as catalog:
            page = await catalog.discover(DiscoverFilter(TitleType.MOVIE), page=1)
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.themoviedb.org/3",
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> CatalogClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=10.0),
                headers={"Accept": "application/json"},
            )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        assert self._client is not None, "CatalogClient used outside its context"
        query = {"api_key": self._api_key, **(params or {})}
        try:
            response = await self._client.get(f"{self._base_url}{path}", params=query)
        except httpx.HTTPError as exc:
            raise CatalogError(f"GET {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise CatalogError(f"GET {path} returned {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise CatalogError(f"GET {path} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise CatalogError(f"GET {path} returned {type(payload).__name__}, expected object")
        return payload

    # ── Discover ─────────────────────────────────────────────

    async def discover(self, flt: DiscoverFilter, page: int = 1) -> DiscoverPage:
        """One discover page. Failures are logged and yield an empty page."""
        path = f"/discover/{flt.media_type.endpoint}"
        try:
            payload = await self._get(path, flt.to_params(page))
        except CatalogError as exc:
            logger.warning(
                "discover_failed",
                media_type=flt.media_type.value,
                genre_id=flt.genre_id,
                language=flt.original_language,
                page=page,
                error=str(exc),
            )
            return DiscoverPage(results=[], page=page)

        results = payload.get("results")
        if not isinstance(results, list):
            logger.warning("discover_malformed", media_type=flt.media_type.value, page=page)
            return DiscoverPage(results=[], page=page)

        return DiscoverPage(
            results=[r for r in results if isinstance(r, dict) and r.get("id") is not None],
            page=int(payload.get("page") or page),
            total_pages=int(payload.get("total_pages") or 0),
            total_results=int(payload.get("total_results") or 0),
        )

    async def iter_discover(
        self, flt: DiscoverFilter, max_pages: int
    ) -> AsyncIterator[DiscoverPage]:
        """Yield pages 1..max_pages, stopping at the last page or an empty one."""
        for page_no in range(1, max_pages + 1):
            page = await self.discover(flt, page_no)
            if not page.results:
                return
            yield page
            if not page.has_more:
                return

    # ── Details ──────────────────────────────────────────────

    async def details(
        self, media_type: TitleType, tmdb_id: int, append: tuple[str, ...] = ("videos",)
    ) -> dict[str, Any] | None:
        params = {"append_to_response": ",".join(append)} if append else None
        try:
            return await self._get(f"/{media_type.endpoint}/{tmdb_id}", params)
        except CatalogError as exc:
            logger.warning("details_failed", tmdb_id=tmdb_id, error=str(exc))
            return None

    async def videos(self, media_type: TitleType, tmdb_id: int) -> list[dict[str, Any]]:
        try:
            payload = await self._get(f"/{media_type.endpoint}/{tmdb_id}/videos")
        except CatalogError as exc:
            logger.warning("videos_failed", tmdb_id=tmdb_id, error=str(exc))
            return []
        return list(payload.get("results") or [])

    async def season_videos(self, tmdb_id: int, season_number: int) -> list[dict[str, Any]]:
        try:
            payload = await self._get(f"/tv/{tmdb_id}/season/{season_number}/videos")
        except CatalogError as exc:
            logger.debug("season_videos_failed", tmdb_id=tmdb_id, season=season_number, error=str(exc))
            return []
        return list(payload.get("results") or [])

    async def watch_providers(
        self, media_type: TitleType, tmdb_id: int, region: str = "US"
    ) -> list[dict[str, Any]]:
        """Flat-rate (subscription) providers for a region.

        Raises CatalogError when the lookup itself fails.
        """
        payload = await self._get(f"/{media_type.endpoint}/{tmdb_id}/watch/providers")
        regional = (payload.get("results") or {}).get(region) or {}
        return list(regional.get("flatrate") or [])
