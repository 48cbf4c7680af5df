"""
YouTube keyword search — fallback trailer source when the catalog has none.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

logger = structlog.get_logger(__name__)

YOUTUBE_WATCH_URL = "https://www.youtube.com/watch?v="


class QuotaExceededError(Exception):
    """The video search API reported quota exhaustion."""


@dataclass
class VideoHit:
    video_id: str
    title: str
    channel_title: str


# Studio, distributor and streaming-service channels whose uploads count as official
OFFICIAL_CHANNELS = (
    # major studios
    "Universal Pictures", "Warner Bros. Pictures", "Warner Bros.", "WB Pictures",
    "Sony Pictures Entertainment", "Sony Pictures", "Columbia Pictures",
    "Paramount Pictures", "Paramount", "20th Century Studios", "20th Century Fox",
    "Walt Disney Studios", "Disney", "Marvel Entertainment", "Marvel Studios",
    "DC", "Lionsgate Movies", "Lionsgate", "MGM", "Metro-Goldwyn-Mayer",
    # indie / specialty
    "A24", "Searchlight Pictures", "Fox Searchlight", "Focus Features",
    "Sony Pictures Classics", "NEON", "Magnolia Pictures", "IFC Films",
    "STXfilms", "STX Entertainment", "Entertainment One", "eOne Films",
    "Bleecker Street", "Annapurna Pictures", "Roadside Attractions",
    "FilmDistrict", "Open Road Films", "LD Entertainment", "Vertical Entertainment",
    # streaming services
    "Netflix", "Netflix Film", "Amazon Prime Video", "Prime Video",
    "Apple TV", "Apple TV+", "HBO", "HBO Max", "Max", "Hulu",
    "Peacock", "Peacock TV", "Disney+", "Disney Plus",
    # international
    "Studio Ghibli", "Toho", "StudioCanal", "Pathé", "Gaumont",
    "Constantin Film", "Film4", "Working Title", "Legendary Entertainment",
    # genre
    "Blumhouse", "A24 Films", "Shudder", "Scream Factory",
    # documentary
    "National Geographic", "PBS", "Sundance", "HBO Documentary Films",
    # other studios
    "DreamWorks", "Amblin", "New Line Cinema", "Miramax", "Relativity Media",
    "Screen Gems", "TriStar Pictures", "Summit Entertainment", "The Weinstein Company",
    "FilmNation", "Plan B", "Participant", "Lucasfilm", "Pixar",
    # India
    "T-Series", "Dharma Productions", "Red Chillies Entertainment", "Yash Raj Films",
    "Zee Studios", "Eros Now", "Tips Official", "Sony Music India",
    "Pen Movies", "Zee Music Company", "TSeries", "Goldmines",
    "Sun Pictures", "Lyca Productions", "Hombale Films", "Geetha Arts",
    "Mythri Movie Makers", "Sri Venkateswara Creations", "Aditya Music",
    # Korea
    "CJ ENM", "Showbox", "NEW", "Lotte Entertainment", "KOFIC",
    # Japan
    "Toei Animation", "Aniplex", "KADOKAWA", "Shochiku", "MAPPA",
    "Crunchyroll", "Funimation",
)
_OFFICIAL_NAMES = tuple(name.lower() for name in OFFICIAL_CHANNELS)
_OFFICIAL_KEYWORDS = ("official", "trailer", "studios", "pictures", "entertainment", "films", "productions")
_OFFICIAL_VIDEO_MARKERS = ("official trailer", "official teaser", "official clip")


def youtube_url(video_id: str) -> str:
    return f"{YOUTUBE_WATCH_URL}{video_id}"


def _contains_words(text: str, phrase: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(phrase)}(?!\w)", text) is not None


def is_official_channel(channel_title: str) -> bool:
    """A channel named "official", or one that names (or is named by) a known studio.

    Names are matched as whole words in both directions, so "Warner Bros.
    Pictures UK" and "Marvel" both count while a channel called "Y" does
    not match "Sony Pictures".
    """
    channel = channel_title.strip().lower()
    if not channel:
        return False
    if "official" in channel:
        return True
    return any(
        _contains_words(channel, name) or _contains_words(name, channel) for name in _OFFICIAL_NAMES
    )


def is_official_video(hit: VideoHit) -> bool:
    title = hit.title.lower()
    if "official trailer" in title:
        return True
    if not any(marker in title for marker in _OFFICIAL_VIDEO_MARKERS):
        return False
    channel = hit.channel_title.lower()
    return any(keyword in channel for keyword in _OFFICIAL_KEYWORDS)


def pick_official_trailer(hits: list[VideoHit]) -> VideoHit | None:
    """First hit from an official channel or with an official video title, else the first hit."""
    if not hits:
        return None
    for hit in hits:
        if is_official_channel(hit.channel_title) or is_official_video(hit):
            return hit
    return hits[0]


def trailer_query(name: str, is_series: bool, release_year: int | None) -> str:
    kind = "tv series" if is_series else "movie"
    parts = [name, kind, "official trailer"]
    if release_year:
        parts.append(str(release_year))
    return " ".join(parts)


def _is_quota_error(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    errors = (payload.get("error") or {}).get("errors") or []
    return any(e.get("reason") in ("quotaExceeded", "dailyLimitExceeded") for e in errors)


class VideoSearchClient:
    """Minimal YouTube Data API v3 search client."""

    def __init__(
        self,
        api_key: str,
        search_url: str = "https://www.googleapis.com/youtube/v3/search",
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._search_url = search_url
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> VideoSearchClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout, connect=10.0))
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def search(self, query: str, max_results: int = 5) -> list[VideoHit]:
        """Search videos. Raises QuotaExceededError on quota exhaustion; other
        failures are logged and yield no hits."""
        assert self._client is not None, "VideoSearchClient used outside its context"
        params = {
            "part": "snippet",
            "q": query,
            "type": "video",
            "maxResults": max_results,
            "key": self._api_key,
        }
        try:
            response = await self._client.get(self._search_url, params=params)
        except httpx.HTTPError as exc:
            logger.warning("video_search_failed", query=query, error=str(exc))
            return []

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code == 403 and _is_quota_error(payload):
            raise QuotaExceededError("YouTube API quota exceeded")
        if response.status_code >= 400 or not isinstance(payload, dict):
            logger.warning("video_search_failed", query=query, status=response.status_code)
            return []

        hits: list[VideoHit] = []
        for item in payload.get("items") or []:
            video_id = (item.get("id") or {}).get("videoId")
            if not video_id:
                continue
            snippet = item.get("snippet") or {}
            hits.append(
                VideoHit(
                    video_id=video_id,
                    title=snippet.get("title", ""),
                    channel_title=snippet.get("channelTitle", ""),
                )
            )
        return hits
