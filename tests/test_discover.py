"""
Tests for language-priority discovery and record normalisation.

Covers:
- Merge priority beats raw popularity
- Popularity floor and limit
- Per-language vote floors and page counts
- Movie → TV genre mapping
"""

from __future__ import annotations

import asyncio
from datetime import date

import pytest

from tests.fakes import FakeCatalog
from viib.db.models import TitleType
from viib.pipeline.discover import (
    DiscoverRequest,
    discover_by_languages,
    merge_by_language_priority,
    pages_for_limit,
    vote_count_floor,
)
from viib.pipeline.normalize import genre_names, normalize, tv_genre_for


class TestMerge:
    def test_higher_priority_language_wins_over_popularity(self) -> None:
        en = [{"id": 1, "popularity": 20.0, "title": "en copy"}]
        hi = [{"id": 1, "popularity": 95.0, "title": "hi copy"}]
        merged = merge_by_language_priority([(2, en), (1, hi)], limit=10)
        assert len(merged) == 1
        assert merged[0]["title"] == "en copy"
        assert merged[0]["language_priority"] == 2

    def test_same_priority_keeps_more_popular(self) -> None:
        merged = merge_by_language_priority(
            [(1, [{"id": 1, "popularity": 3.0, "v": "a"}, {"id": 1, "popularity": 9.0, "v": "b"}])],
            limit=10,
        )
        assert merged[0]["v"] == "b"

    def test_order_priority_then_popularity(self) -> None:
        en = [{"id": 1, "popularity": 10.0}, {"id": 2, "popularity": 50.0}]
        hi = [{"id": 3, "popularity": 99.0}]
        merged = merge_by_language_priority([(2, en), (1, hi)], limit=10)
        assert [m["id"] for m in merged] == [2, 1, 3]

    def test_limit_and_popularity_floor(self) -> None:
        batch = [{"id": i, "popularity": float(i)} for i in range(1, 21)]
        merged = merge_by_language_priority([(1, batch)], limit=5, min_popularity=10)
        assert [m["id"] for m in merged] == [20, 19, 18, 17, 16]
        assert all(m["popularity"] >= 10 for m in merged)

    def test_items_without_id_ignored(self) -> None:
        assert merge_by_language_priority([(1, [{"popularity": 50}])], limit=5) == []


class TestDiscoverHelpers:
    def test_vote_floor(self) -> None:
        assert vote_count_floor("en") == 50
        assert vote_count_floor("hi") == 20

    @pytest.mark.parametrize(("limit", "pages"), [(1, 1), (20, 1), (21, 2), (100, 5), (500, 5)])
    def test_pages_for_limit(self, limit: int, pages: int) -> None:
        assert pages_for_limit(limit) == pages


class TestDiscoverByLanguages:
    def test_en_hi_dedupes_under_en(self) -> None:
        def discover(flt, page):
            if page > 1:
                return []
            if flt.original_language == "en":
                return [{"id": 7, "title": "Shared", "popularity": 30.0, "genre_ids": [28]}]
            return [
                {"id": 7, "title": "Shared", "popularity": 80.0, "genre_ids": [28]},
                {"id": 8, "title": "Hindi Only", "popularity": 40.0, "genre_ids": [18]},
            ]

        catalog = FakeCatalog(discover)
        request = DiscoverRequest(languages=["en", "hi"], min_popularity=0, limit=10)
        movies = asyncio.run(discover_by_languages(catalog, request))

        assert [m["tmdb_id"] for m in movies] == [7, 8]
        assert movies[0]["original_language"] == "en"
        assert movies[0]["genres"] == ["Action"]
        assert movies[1]["original_language"] == "hi"

    def test_filters_per_language(self) -> None:
        catalog = FakeCatalog(lambda flt, page: [])
        request = DiscoverRequest(
            languages=["en", "ko"],
            streaming_provider_ids=[8],
            min_date=date(2024, 1, 1),
            limit=40,
        )
        asyncio.run(discover_by_languages(catalog, request))

        en, ko = catalog.filters
        assert en.original_language == "en" and en.min_vote_count == 50
        assert ko.original_language == "ko" and ko.min_vote_count == 20
        assert en.date_from == date(2024, 1, 1)
        assert en.streaming_provider_ids == [8]
        assert en.region == "US"


class TestNormalize:
    def test_movie(self) -> None:
        raw = {
            "id": 10,
            "title": "Heat",
            "original_title": "Heat",
            "release_date": "1995-12-15",
            "genre_ids": [28, 80],
            "popularity": 12.5,
            "original_language": "en",
        }
        record = normalize(raw, TitleType.MOVIE, {"runtime": 170})
        assert record.tmdb_id == 10
        assert record.release_year == 1995
        assert record.runtime == 170
        assert record.genre_names == ["Action", "Crime"]
        assert record.to_row()["title_type"] == "movie"

    def test_series_uses_tv_genre_names(self) -> None:
        raw = {"id": 11, "name": "Dark", "first_air_date": "2017-12-01", "genre_ids": [10765, 18]}
        record = normalize(raw, TitleType.SERIES, {"episode_run_time": [55, 60]})
        assert record.release_year == 2017
        assert record.episode_run_time == 55
        assert record.genre_names == ["Science Fiction", "Fantasy", "Drama"]

    def test_missing_id_raises(self) -> None:
        with pytest.raises(KeyError):
            normalize({"title": "No id"}, TitleType.MOVIE)

    def test_genres_from_details_when_absent(self) -> None:
        record = normalize({"id": 1, "title": "X"}, TitleType.MOVIE, {"genres": [{"id": 35}]})
        assert record.genre_ids == [35]

    def test_bad_date_gives_no_year(self) -> None:
        record = normalize({"id": 1, "title": "X", "release_date": ""}, TitleType.MOVIE)
        assert record.release_year is None


class TestGenreMapping:
    def test_tv_equivalents(self) -> None:
        assert tv_genre_for(28) == 10759
        assert tv_genre_for(878) == 10765
        assert tv_genre_for(10752) == 10768
        assert tv_genre_for(18) == 18
        assert tv_genre_for(27) is None

    def test_series_action_adventure_expands(self) -> None:
        assert genre_names([10759], TitleType.SERIES) == ["Action", "Adventure"]
        assert genre_names([10759], TitleType.MOVIE) == []
