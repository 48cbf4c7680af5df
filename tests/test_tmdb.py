"""
Tests for the catalog and video search clients.

Uses httpx.MockTransport so no network is touched.
"""

from __future__ import annotations

import asyncio
from datetime import date
from typing import Any

import httpx
import pytest

from viib.db.models import TitleType
from viib.pipeline.tmdb import CatalogClient, CatalogError, DiscoverFilter, find_tmdb_trailer
from viib.pipeline.youtube import (
    QuotaExceededError,
    VideoHit,
    VideoSearchClient,
    is_official_channel,
    pick_official_trailer,
    trailer_query,
)

BASE = "https://catalog.test/3"


def _run_catalog(handler, fn):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            async with CatalogClient("k", BASE, client=http) as catalog:
                return await fn(catalog)

    return asyncio.run(go())


def _page(results: list[dict[str, Any]], page: int = 1, total_pages: int = 1) -> dict[str, Any]:
    return {"results": results, "page": page, "total_pages": total_pages, "total_results": 99}


# ── Discover filter ──────────────────────────────────────────


class TestDiscoverFilter:
    def test_movie_params(self) -> None:
        flt = DiscoverFilter(
            TitleType.MOVIE,
            genre_id=28,
            original_language="hi",
            year=2023,
            min_rating=6.0,
            min_vote_count=5,
        )
        params = flt.to_params(2)
        assert params["page"] == 2
        assert params["with_genres"] == 28
        assert params["with_original_language"] == "hi"
        assert params["primary_release_year"] == 2023
        assert params["vote_average.gte"] == 6.0
        assert params["vote_count.gte"] == 5
        assert params["sort_by"] == "popularity.desc"

    def test_series_uses_air_date_keys(self) -> None:
        flt = DiscoverFilter(
            TitleType.SERIES, year=2022, date_from=date(2022, 1, 1), date_to=date(2022, 1, 8)
        )
        params = flt.to_params(1)
        assert params["first_air_date_year"] == 2022
        assert params["first_air_date.gte"] == "2022-01-01"
        assert params["first_air_date.lte"] == "2022-01-08"
        assert "primary_release_year" not in params

    def test_streaming_providers_joined(self) -> None:
        flt = DiscoverFilter(TitleType.MOVIE, streaming_provider_ids=[8, 337])
        params = flt.to_params(1)
        assert params["with_watch_providers"] == "8|337"
        assert params["watch_region"] == "US"

    def test_unset_filters_omitted(self) -> None:
        params = DiscoverFilter(TitleType.MOVIE).to_params(1)
        assert set(params) == {"page", "sort_by"}


# ── Catalog client ───────────────────────────────────────────


class TestCatalogDiscover:
    def test_discover_hits_endpoint_with_key(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_page([{"id": 1, "title": "A"}]))

        page = _run_catalog(
            handler, lambda c: c.discover(DiscoverFilter(TitleType.SERIES, genre_id=18))
        )
        assert [r["id"] for r in page.results] == [1]
        assert seen[0].url.path == "/3/discover/tv"
        assert seen[0].url.params["api_key"] == "k"
        assert seen[0].url.params["with_genres"] == "18"

    def test_non_2xx_is_empty_page(self) -> None:
        page = _run_catalog(
            lambda r: httpx.Response(503, text="busy"),
            lambda c: c.discover(DiscoverFilter(TitleType.MOVIE), page=3),
        )
        assert page.results == []
        assert page.page == 3
        assert not page.has_more

    def test_malformed_is_empty_page(self) -> None:
        page = _run_catalog(
            lambda r: httpx.Response(200, json={"results": "nope"}),
            lambda c: c.discover(DiscoverFilter(TitleType.MOVIE)),
        )
        assert page.results == []

    def test_results_without_id_dropped(self) -> None:
        page = _run_catalog(
            lambda r: httpx.Response(200, json=_page([{"id": 1}, {"title": "no id"}])),
            lambda c: c.discover(DiscoverFilter(TitleType.MOVIE)),
        )
        assert len(page.results) == 1

    def test_iter_discover_respects_page_cap(self) -> None:
        pages: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            page = int(request.url.params["page"])
            pages.append(page)
            return httpx.Response(200, json=_page([{"id": page}], page=page, total_pages=50))

        async def collect(catalog: CatalogClient) -> list[int]:
            return [p.page async for p in catalog.iter_discover(DiscoverFilter(TitleType.MOVIE), 5)]

        assert _run_catalog(handler, collect) == [1, 2, 3, 4, 5]
        assert pages == [1, 2, 3, 4, 5]

    def test_iter_discover_stops_at_last_page(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            page = int(request.url.params["page"])
            return httpx.Response(200, json=_page([{"id": page}], page=page, total_pages=2))

        async def collect(catalog: CatalogClient) -> list[int]:
            return [p.page async for p in catalog.iter_discover(DiscoverFilter(TitleType.MOVIE), 5)]

        assert _run_catalog(handler, collect) == [1, 2]


class TestCatalogLookups:
    def test_details_failure_returns_none(self) -> None:
        result = _run_catalog(
            lambda r: httpx.Response(404, json={"status_message": "not found"}),
            lambda c: c.details(TitleType.MOVIE, 5),
        )
        assert result is None

    def test_details_appends_videos(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": 5, "runtime": 100})

        result = _run_catalog(handler, lambda c: c.details(TitleType.MOVIE, 5))
        assert result == {"id": 5, "runtime": 100}
        assert seen[0].url.path == "/3/movie/5"
        assert seen[0].url.params["append_to_response"] == "videos"

    def test_watch_providers_flatrate_for_region(self) -> None:
        payload = {
            "results": {
                "US": {"flatrate": [{"provider_id": 8}], "rent": [{"provider_id": 2}]},
                "GB": {"flatrate": [{"provider_id": 9}]},
            }
        }
        result = _run_catalog(
            lambda r: httpx.Response(200, json=payload),
            lambda c: c.watch_providers(TitleType.MOVIE, 5, "US"),
        )
        assert result == [{"provider_id": 8}]

    def test_watch_providers_missing_region_is_empty(self) -> None:
        result = _run_catalog(
            lambda r: httpx.Response(200, json={"results": {}}),
            lambda c: c.watch_providers(TitleType.SERIES, 5, "US"),
        )
        assert result == []

    def test_watch_providers_failure_raises(self) -> None:
        with pytest.raises(CatalogError):
            _run_catalog(
                lambda r: httpx.Response(500),
                lambda c: c.watch_providers(TitleType.MOVIE, 5),
            )

    def test_videos_failure_is_empty(self) -> None:
        result = _run_catalog(
            lambda r: httpx.Response(500), lambda c: c.videos(TitleType.MOVIE, 5)
        )
        assert result == []


class TestFindTrailer:
    def test_prefers_official_youtube_trailer(self) -> None:
        videos = [
            {"type": "Teaser", "site": "YouTube", "key": "teaser"},
            {"type": "Trailer", "site": "Vimeo", "key": "vimeo"},
            {"type": "Trailer", "site": "YouTube", "key": "fan", "official": False},
            {"type": "Trailer", "site": "YouTube", "key": "real", "official": True},
        ]
        assert find_tmdb_trailer(videos) == "real"

    def test_falls_back_to_any_trailer(self) -> None:
        videos = [{"type": "Trailer", "site": "YouTube", "key": "fan"}]
        assert find_tmdb_trailer(videos) == "fan"

    def test_none_without_trailer(self) -> None:
        assert find_tmdb_trailer([{"type": "Clip", "site": "YouTube", "key": "x"}]) is None


# ── Video search ─────────────────────────────────────────────


def _run_search(handler, query: str = "q"):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            async with VideoSearchClient("yt", "https://search.test/v3/search", client=http) as s:
                return await s.search(query)

    return asyncio.run(go())


class TestVideoSearch:
    def test_parses_hits(self) -> None:
        payload = {
            "items": [
                {"id": {"videoId": "abc"}, "snippet": {"title": "T", "channelTitle": "C"}},
                {"id": {"channelId": "skip"}, "snippet": {}},
            ]
        }
        hits = _run_search(lambda r: httpx.Response(200, json=payload))
        assert hits == [VideoHit("abc", "T", "C")]

    def test_quota_error_raises(self) -> None:
        payload = {"error": {"errors": [{"reason": "quotaExceeded"}]}}
        with pytest.raises(QuotaExceededError):
            _run_search(lambda r: httpx.Response(403, json=payload))

    def test_other_403_is_empty(self) -> None:
        payload = {"error": {"errors": [{"reason": "forbidden"}]}}
        assert _run_search(lambda r: httpx.Response(403, json=payload)) == []

    def test_pick_prefers_official_channel(self) -> None:
        hits = [
            VideoHit("1", "Fan edit", "Random"),
            VideoHit("2", "Trailer", "Studio Official"),
        ]
        assert pick_official_trailer(hits).video_id == "2"

    def test_pick_prefers_official_trailer_title(self) -> None:
        hits = [VideoHit("1", "Review", "Critic"), VideoHit("2", "Dune - Official Trailer", "X")]
        assert pick_official_trailer(hits).video_id == "2"

    def test_pick_falls_back_to_first(self) -> None:
        hits = [VideoHit("1", "Review", "Critic"), VideoHit("2", "Reaction", "Y")]
        assert pick_official_trailer(hits).video_id == "1"
        assert pick_official_trailer([]) is None

    def test_pick_prefers_studio_channel_over_first_hit(self) -> None:
        hits = [
            VideoHit("1", "Dune trailer reaction", "Movie Buff"),
            VideoHit("2", "DUNE | Main Trailer", "Warner Bros. Pictures"),
        ]
        assert pick_official_trailer(hits).video_id == "2"

    @pytest.mark.parametrize(
        "channel",
        ["Universal Pictures", "A24", "Netflix", "T-Series", "Marvel", "HBO Max Family"],
    )
    def test_official_channels(self, channel: str) -> None:
        assert is_official_channel(channel)

    @pytest.mark.parametrize("channel", ["Y", "Random", "Critic", "", "Movie Buff"])
    def test_unofficial_channels(self, channel: str) -> None:
        assert not is_official_channel(channel)

    def test_official_teaser_needs_studio_like_channel(self) -> None:
        teaser = VideoHit("1", "Nope - Official Teaser", "Monkeypaw Productions")
        fan = VideoHit("2", "Nope - Official Teaser", "Fan Uploads")
        assert pick_official_trailer([fan, teaser]).video_id == "1"

    def test_trailer_query(self) -> None:
        assert trailer_query("Dark", True, 2017) == "Dark tv series official trailer 2017"
        assert trailer_query("Heat", False, None) == "Heat movie official trailer"
