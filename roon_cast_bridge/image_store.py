"""In-memory artwork host.

Images fetched from the Roon core are kept here under an opaque id and
served back to the receiver from ``<base_url>/images/<id>``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

_LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60 * 60
CLEANUP_INTERVAL_SECONDS = 10 * 60


@dataclass
class StoredImage:
    id: str
    cache_key: str
    data: bytes
    content_type: str
    expires_at: float


@dataclass(frozen=True)
class HostedImage:
    id: str
    url: str


class ImageStore:
    def __init__(
        self,
        base_url: Optional[str] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ) -> None:
        self.base_url: Optional[str] = None
        self.ttl_seconds = ttl_seconds
        self._by_cache_key: Dict[str, StoredImage] = {}
        self._by_id: Dict[str, StoredImage] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        if base_url:
            self.configure(base_url=base_url)

    def configure(self, base_url: Optional[str] = None, ttl_seconds: Optional[float] = None) -> None:
        if base_url:
            self.base_url = base_url.rstrip("/")
        if ttl_seconds:
            self.ttl_seconds = ttl_seconds

    def build_url(self, image_id: str) -> str:
        if not self.base_url:
            raise RuntimeError("ImageStore base URL has not been configured.")
        return f"{self.base_url}/images/{image_id}"

    def get_by_cache_key(self, cache_key: str, now: Optional[float] = None) -> Optional[HostedImage]:
        entry = self._by_cache_key.get(cache_key)
        if entry is None:
            return None
        if self._expired(entry, now):
            self.remove_by_cache_key(cache_key)
            return None
        return HostedImage(id=entry.id, url=self.build_url(entry.id))

    def save(
        self,
        cache_key: str,
        data: bytes,
        content_type: str = "image/jpeg",
        ttl_seconds: Optional[float] = None,
        now: Optional[float] = None,
    ) -> HostedImage:
        if not self.base_url:
            raise RuntimeError("ImageStore base URL has not been configured.")
        now = time.time() if now is None else now
        expires_at = now + (ttl_seconds or self.ttl_seconds)

        entry = self._by_cache_key.get(cache_key)
        if entry is not None:
            entry.data = data
            entry.content_type = content_type
            entry.expires_at = expires_at
        else:
            entry = StoredImage(
                id=uuid.uuid4().hex,
                cache_key=cache_key,
                data=data,
                content_type=content_type,
                expires_at=expires_at,
            )
            self._by_cache_key[cache_key] = entry
            self._by_id[entry.id] = entry

        return HostedImage(id=entry.id, url=self.build_url(entry.id))

    def get_by_id(self, image_id: str, now: Optional[float] = None) -> Optional[StoredImage]:
        entry = self._by_id.get(image_id)
        if entry is None:
            return None
        if self._expired(entry, now):
            self.remove_by_cache_key(entry.cache_key)
            return None
        return entry

    def remove_by_cache_key(self, cache_key: str) -> None:
        entry = self._by_cache_key.pop(cache_key, None)
        if entry is not None:
            self._by_id.pop(entry.id, None)

    def cleanup(self, now: Optional[float] = None) -> int:
        expired = [key for key, entry in self._by_cache_key.items() if self._expired(entry, now)]
        for key in expired:
            self.remove_by_cache_key(key)
        if expired:
            _LOGGER.debug("Expired %d hosted images", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._by_id)

    @staticmethod
    def _expired(entry: StoredImage, now: Optional[float]) -> bool:
        now = time.time() if now is None else now
        return entry.expires_at < now

    # -------------------------------------------------------------------------

    def start(self, interval_seconds: float = CLEANUP_INTERVAL_SECONDS) -> None:
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval_seconds))

    async def stop(self) -> None:
        task = self._cleanup_task
        self._cleanup_task = None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _cleanup_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.cleanup()
