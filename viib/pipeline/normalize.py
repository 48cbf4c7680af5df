"""
Catalog record normalisation.

Maps a raw TMDB discover/details object to the internal title schema
and resolves TMDB genre ids to internal genre names. Movie and TV genre
id spaces differ on TMDB; the TV side is mapped through fixed tables.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from viib.db.models import TitleType

# TMDB movie genre id → internal genre name
TMDB_GENRE_MAP: dict[int, str] = {
    28: "Action",
    12: "Adventure",
    16: "Animation",
    35: "Comedy",
    80: "Crime",
    99: "Documentary",
    18: "Drama",
    10751: "Family",
    14: "Fantasy",
    36: "History",
    27: "Horror",
    10402: "Music",
    9648: "Mystery",
    10749: "Romance",
    878: "Science Fiction",
    10770: "TV Movie",
    53: "Thriller",
    10752: "War",
    37: "Western",
}

# TMDB movie genre id → TMDB TV genre id (None: no TV counterpart)
MOVIE_TO_TV_GENRE: dict[int, int | None] = {
    28: 10759,
    12: 10759,
    16: 16,
    35: 35,
    80: 80,
    99: 99,
    18: 18,
    10751: 10751,
    14: 10765,
    36: None,
    27: None,
    10402: None,
    9648: 9648,
    10749: None,
    878: 10765,
    10770: None,
    53: None,
    10752: 10768,
    37: 37,
}

# TMDB TV-only genre ids → internal genre names they stand for
TV_GENRE_NAMES: dict[int, tuple[str, ...]] = {
    10759: ("Action", "Adventure"),
    10765: ("Science Fiction", "Fantasy"),
    10768: ("War",),
}


def tv_genre_for(movie_genre_id: int) -> int | None:
    """TV discover genre for a movie genre id, or None if there is none."""
    return MOVIE_TO_TV_GENRE.get(movie_genre_id)


def genre_names(genre_ids: list[int], title_type: TitleType) -> list[str]:
    """Internal genre names for a list of TMDB genre ids, de-duplicated in order."""
    names: list[str] = []
    for gid in genre_ids:
        if title_type is TitleType.SERIES and gid in TV_GENRE_NAMES:
            candidates: tuple[str, ...] = TV_GENRE_NAMES[gid]
        elif gid in TMDB_GENRE_MAP:
            candidates = (TMDB_GENRE_MAP[gid],)
        else:
            continue
        for name in candidates:
            if name not in names:
                names.append(name)
    return names


def _year(value: Any) -> int | None:
    if not value or not isinstance(value, str) or len(value) < 4:
        return None
    try:
        return int(value[:4])
    except ValueError:
        return None


def _int_or_none(value: Any) -> int | None:
    if value in (None, "", 0):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _episode_runtime(value: Any) -> int | None:
    # TMDB returns episode_run_time as a list of minutes
    if isinstance(value, list):
        return _int_or_none(value[0]) if value else None
    return _int_or_none(value)


@dataclass
class TitleRecord:
    """A catalog entry normalised to the internal title schema."""

    tmdb_id: int
    title_type: TitleType
    name: str
    original_name: str | None = None
    overview: str | None = None
    release_year: int | None = None
    runtime: int | None = None
    episode_run_time: int | None = None
    original_language: str | None = None
    popularity: float | None = None
    vote_average: float | None = None
    poster_path: str | None = None
    backdrop_path: str | None = None
    genre_ids: list[int] = field(default_factory=list)

    @property
    def genre_names(self) -> list[str]:
        return genre_names(self.genre_ids, self.title_type)

    def to_row(self) -> dict[str, Any]:
        """Column values for the titles table (genre ids live in join rows)."""
        return {
            "tmdb_id": self.tmdb_id,
            "title_type": self.title_type.value,
            "name": self.name,
            "original_name": self.original_name,
            "overview": self.overview,
            "release_year": self.release_year,
            "runtime": self.runtime,
            "episode_run_time": self.episode_run_time,
            "original_language": self.original_language,
            "popularity": self.popularity,
            "vote_average": self.vote_average,
            "poster_path": self.poster_path,
            "backdrop_path": self.backdrop_path,
        }


def normalize(
    raw: dict[str, Any],
    title_type: TitleType,
    details: dict[str, Any] | None = None,
) -> TitleRecord:
    """Build a TitleRecord from a discover result, filling gaps from details.

    Raises KeyError when the raw object carries no catalog id.
    """
    details = details or {}

    def pick(*keys: str) -> Any:
        for source in (raw, details):
            for key in keys:
                value = source.get(key)
                if value not in (None, ""):
                    return value
        return None

    if title_type is TitleType.MOVIE:
        name = pick("title", "original_title")
        original_name = pick("original_title")
        release_year = _year(pick("release_date"))
        runtime = _int_or_none(details.get("runtime"))
        episode_run_time = None
    else:
        name = pick("name", "original_name")
        original_name = pick("original_name")
        release_year = _year(pick("first_air_date"))
        runtime = None
        episode_run_time = _episode_runtime(details.get("episode_run_time"))

    genre_ids = raw.get("genre_ids")
    if genre_ids is None:
        genre_ids = [g["id"] for g in details.get("genres", []) if "id" in g]

    popularity = pick("popularity")
    vote_average = pick("vote_average")

    return TitleRecord(
        tmdb_id=int(raw["id"]),
        title_type=title_type,
        name=(name or "").strip(),
        original_name=original_name,
        overview=pick("overview"),
        release_year=release_year,
        runtime=runtime,
        episode_run_time=episode_run_time,
        original_language=pick("original_language"),
        popularity=float(popularity) if popularity is not None else None,
        vote_average=float(vote_average) if vote_average is not None else None,
        poster_path=pick("poster_path"),
        backdrop_path=pick("backdrop_path"),
        genre_ids=[int(g) for g in genre_ids],
    )
