"""
External artist artwork lookups (Deezer, iTunes).

Strictly best effort: every public coroutine returns a list and never
raises, so callers can use it for background enrichment only.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, List, Optional

import aiohttp

_LOGGER = logging.getLogger(__name__)

DEEZER_ENDPOINT = "https://api.deezer.com/search/artist"
ITUNES_ENDPOINT = "https://itunes.apple.com/search"
REQUEST_TIMEOUT_SECONDS = 5.0

PLACEHOLDER_PATTERNS = [
    re.compile(r"artist/default-", re.IGNORECASE),  # Deezer default artist image
    re.compile(r"artist/000000", re.IGNORECASE),
    re.compile(r"artwork/default", re.IGNORECASE),
    re.compile(r"no-artwork", re.IGNORECASE),
    re.compile(r"placeholder", re.IGNORECASE),
    re.compile(r"avatar-default", re.IGNORECASE),
    re.compile(r"user-default", re.IGNORECASE),
    re.compile(r"audiodefault\.png", re.IGNORECASE),
    re.compile(r"MusicDefault\.png", re.IGNORECASE),
]

ITUNES_PLACEHOLDER_HASHES = [
    "bb7f14996b4e42ffbb76ea0e97c971de",
    "0/0/0/0/",
]

MIN_IMAGE_URL_LENGTH = 50
_ARTIST_SEPARATORS = re.compile(r"[,/&;]")
_ITUNES_SIZE = re.compile(r"100x100|60x60", re.IGNORECASE)


def is_placeholder_image(url: Optional[str]) -> bool:
    if not url:
        return True
    for pattern in PLACEHOLDER_PATTERNS:
        if pattern.search(url):
            _LOGGER.debug("Filtered placeholder pattern: %s", url[:80])
            return True
    for marker in ITUNES_PLACEHOLDER_HASHES:
        if marker in url:
            _LOGGER.debug("Filtered iTunes placeholder hash: %s", url[:80])
            return True
    # Very short URLs are generic placeholders in practice
    if len(url) < MIN_IMAGE_URL_LENGTH:
        _LOGGER.debug("Filtered short URL: %s", url)
        return True
    return False


class ArtworkService:
    """Finds extra artist images when Roon has fewer than we want to show."""

    def __init__(
        self,
        timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
        max_concurrent_requests: int = 4,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._semaphore = asyncio.Semaphore(max_concurrent_requests)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _fetch_json(self, url: str, params: dict) -> Any:
        session = await self._get_session()
        async with self._semaphore:
            async with session.get(url, params=params, timeout=self._timeout) as response:
                if response.status != 200:
                    raise aiohttp.ClientResponseError(
                        response.request_info,
                        response.history,
                        status=response.status,
                        message=f"Request failed with status {response.status}",
                    )
                # iTunes answers with text/javascript
                return await response.json(content_type=None)

    async def fetch_deezer_images(self, artist_name: str, limit: int = 4) -> List[str]:
        if not artist_name:
            return []
        try:
            _LOGGER.debug("Fetching from Deezer for artist: %s", artist_name)
            payload = await self._fetch_json(DEEZER_ENDPOINT, {"q": artist_name, "limit": str(limit)})
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            _LOGGER.warning("Deezer lookup failed: %s", e)
            return []

        entries = payload.get("data") if isinstance(payload, dict) else None
        images = []
        for entry in entries if isinstance(entries, list) else []:
            if not isinstance(entry, dict):
                continue
            url = (
                entry.get("picture_xl")
                or entry.get("picture_big")
                or entry.get("picture_medium")
                or entry.get("picture")
            )
            if url and not is_placeholder_image(url):
                images.append(url)
        _LOGGER.debug("Deezer returned %d images", len(images))
        return images

    async def fetch_itunes_images(self, artist_name: str, limit: int = 6) -> List[str]:
        if not artist_name:
            return []
        try:
            _LOGGER.debug("Fetching from iTunes for artist: %s", artist_name)
            payload = await self._fetch_json(
                ITUNES_ENDPOINT,
                {"term": artist_name, "entity": "musicTrack", "limit": str(limit)},
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            _LOGGER.warning("iTunes lookup failed: %s", e)
            return []

        entries = payload.get("results") if isinstance(payload, dict) else None
        images = []
        for entry in entries if isinstance(entries, list) else []:
            if not isinstance(entry, dict):
                continue
            url = entry.get("artworkUrl100") or entry.get("artworkUrl60")
            if not url:
                continue
            url = _ITUNES_SIZE.sub("1000x1000", url)
            if not is_placeholder_image(url):
                images.append(url)
        _LOGGER.debug("iTunes returned %d images", len(images))
        return images

    async def _lookup(self, artist_name: str, deezer_limit: int, itunes_limit: int) -> List[str]:
        deezer, itunes = await asyncio.gather(
            self.fetch_deezer_images(artist_name, deezer_limit),
            self.fetch_itunes_images(artist_name, itunes_limit),
        )
        return deezer + itunes

    async def fetch_supplemental_images(self, artist_name: Optional[str], desired_count: int = 2) -> List[str]:
        """Up to ``desired_count`` unique http(s) image URLs for ``artist_name``."""
        if not artist_name or desired_count <= 0:
            return []

        try:
            return await self._fetch_supplemental_images(artist_name, desired_count)
        except asyncio.CancelledError:
            raise
        except Exception:
            _LOGGER.exception("Artist image lookup failed for %s", artist_name)
            return []

    async def _fetch_supplemental_images(self, artist_name: str, desired_count: int) -> List[str]:
        results: List[str] = []

        def add(url: Any) -> None:
            if not isinstance(url, str) or not re.match(r"^https?://", url, re.IGNORECASE):
                return
            if url not in results:
                results.append(url)

        for url in await self._lookup(artist_name, desired_count * 3, desired_count * 4):
            add(url)

        if len(results) < desired_count and _ARTIST_SEPARATORS.search(artist_name):
            individual = [a.strip() for a in _ARTIST_SEPARATORS.split(artist_name) if a.strip()]
            _LOGGER.debug("Not enough results, trying individual artists: %s", individual)
            # Limit to the first two to keep request count down
            for artist in individual[:2]:
                if len(results) >= desired_count:
                    break
                for url in await self._lookup(artist, 3, 4):
                    add(url)

        final = results[:desired_count]
        _LOGGER.info("Found %d external images for %s", len(final), artist_name)
        return final
