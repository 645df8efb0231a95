"""
Roon extension side of the bridge.

Pairs with a Roon core through ``roonapi``, follows the zone list and turns
the selected zone into now-playing payloads on the EventBus:

- `roon_update`           snapshot changed (cores, zones, selection)
- `roon_now_playing`      track, seek position or transport state changed
- `roon_state`            transport state changed
- `roon_core_unavailable` the active core went away

``roonapi`` runs its websocket on its own thread; its callbacks are handed
to the event loop with ``call_soon_threadsafe`` and every piece of state
here is only touched on the loop.
"""

from __future__ import annotations

import asyncio
import base64
import copy
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import aiohttp
from roonapi import RoonApi, RoonDiscovery

from ..artwork import ArtworkService
from ..config import RoonConfig
from ..event_bus import EventBus
from ..image_store import ImageStore
from ..models import PreferencesStore
from .payload import (
    MAX_ARTIST_IMAGES,
    build_payload,
    extract_artist_name,
    image_cache_key,
    merge_images,
    same_track,
    track_changed,
)

_LOGGER = logging.getLogger(__name__)

CORE_RECONNECT_GRACE_SECONDS = 5.0
HEALTH_CHECK_SECONDS = 2.0
ENRICHMENT_TTL_SECONDS = 60 * 60
MAX_ENRICHMENT_ENTRIES = 100

INLINE_IMAGE = (256, 256, "fit")
HOSTED_IMAGE = (640, 640, "fit")
ARTIST_IMAGE = (1920, 1080, "fill")
ARTWORK_FIELDS = ("image_data", "image_url", "artist_images")


@dataclass
class RoonCore:
    id: str
    host: str
    port: int
    name: Optional[str] = None
    core_id: Optional[str] = None
    available: bool = False


class RoonService:
    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        event_bus: EventBus,
        config: RoonConfig,
        preferences: PreferencesStore,
        image_store: ImageStore,
        artwork: Optional[ArtworkService],
        http: aiohttp.ClientSession,
        token_path: Path,
        max_artist_images: int = MAX_ARTIST_IMAGES,
        core_grace_seconds: float = CORE_RECONNECT_GRACE_SECONDS,
        health_check_seconds: float = HEALTH_CHECK_SECONDS,
    ) -> None:
        self._loop = loop
        self._event_bus = event_bus
        self._config = config
        self._preferences = preferences
        self._image_store = image_store
        self._artwork = artwork
        self._http = http
        self._token_path = Path(token_path)
        self._max_artist_images = max_artist_images
        self._core_grace_seconds = core_grace_seconds
        self._health_check_seconds = health_check_seconds

        self._api: Optional[RoonApi] = None
        self._watchdog: Optional[asyncio.Task] = None
        self.cores: Dict[str, RoonCore] = {}
        self.active_core_id: Optional[str] = None
        self.zones: Dict[str, dict] = {}
        self.selected_zone_id: Optional[str] = None

        self.now_playing: Optional[dict] = None
        self.current_state: str = "stopped"
        self.last_transport_state: str = "idle"
        self.reconnecting: bool = False

        self._inline_cache: Dict[str, str] = {}
        # artist name -> (expires_at, image urls), oldest first
        self._enrichment_cache: Dict[str, Tuple[float, List[str]]] = {}
        self._evaluation_seq = 0
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        return {
            "cores": [
                {
                    "id": core.id,
                    "name": core.name or core.host,
                    "is_active": core.id == self.active_core_id,
                    "available": core.available,
                }
                for core in self.cores.values()
            ],
            "active_core_id": self.active_core_id,
            "zones": list(self.zones.values()),
            "selected_zone_id": self.selected_zone_id,
            "now_playing": self.now_playing,
            "reconnecting": self.reconnecting,
            "last_transport_state": self.last_transport_state,
        }

    def _emit_state(self) -> None:
        self._event_bus.publish("roon_update", {"snapshot": self.snapshot()})

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._config.host:
            self._add_core(self._config.host, self._config.port)
        else:
            for host, port in await self._discover():
                self._add_core(host, port)

        if not self.cores:
            _LOGGER.warning("No Roon core found")
            self._emit_state()
            return

        self._emit_state()
        first = next(iter(self.cores))
        await self.select_core(first)

    async def stop(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._close_api()

    async def _discover(self) -> List[Tuple[str, int]]:
        def _run() -> List[Tuple[str, int]]:
            discovery = RoonDiscovery(None)
            try:
                return list(discovery.all())
            finally:
                discovery.stop()

        try:
            servers = await asyncio.wait_for(
                self._loop.run_in_executor(None, _run),
                timeout=self._config.discovery_seconds + 5.0,
            )
        except (OSError, asyncio.TimeoutError) as e:
            _LOGGER.warning("Roon discovery failed: %s", e)
            return []
        _LOGGER.info("Discovered %d Roon core(s)", len(servers))
        return [(str(host), int(port)) for host, port in servers]

    def _add_core(self, host: str, port: int) -> RoonCore:
        core_id = f"{host}:{port}"
        core = self.cores.get(core_id)
        if core is None:
            core = RoonCore(id=core_id, host=host, port=int(port))
            self.cores[core_id] = core
        return core

    # -------------------------------------------------------------------------
    # Core pairing
    # -------------------------------------------------------------------------

    def _load_token(self) -> Optional[str]:
        try:
            with open(self._token_path, "r", encoding="utf-8") as f:
                return json.load(f).get("token")
        except FileNotFoundError:
            return None
        except (OSError, ValueError, AttributeError) as e:
            _LOGGER.warning("Failed to read Roon token: %s", e)
            return None

    def _save_token(self, token: Optional[str]) -> None:
        if not token:
            return
        try:
            with open(self._token_path, "w", encoding="utf-8") as f:
                json.dump({"token": token}, f)
        except OSError as e:
            _LOGGER.error("Failed to save Roon token: %s", e)

    async def select_core(self, core_id: str) -> bool:
        core = self.cores.get(core_id)
        if core is None:
            return False
        if core_id == self.active_core_id and self._api is not None:
            return True

        if self.active_core_id is not None:
            self._core_lost()
        await self._close_api()
        self._cleanup_subscriptions()

        appinfo = {
            "extension_id": self._config.extension_id,
            "display_name": self._config.display_name,
            "display_version": self._config.display_version,
            "publisher": self._config.publisher,
            "email": self._config.email,
        }
        token = self._load_token()
        _LOGGER.info("Waiting for Roon Core authorization at %s", core.id)

        try:
            api = await self._loop.run_in_executor(
                None, lambda: RoonApi(appinfo, token, core.host, core.port, blocking_init=True)
            )
        except Exception as e:
            _LOGGER.error("Could not pair with Roon core %s: %s", core.id, e)
            core.available = False
            self._emit_state()
            return False

        self._save_token(api.token)
        self._api = api
        core.core_id = api.core_id
        core.name = api.core_name or core.name
        api.register_state_callback(self._on_roon_event)
        self._watchdog = self._loop.create_task(self._watch_core(api, core))
        self._activate(core)
        return True

    def _activate(self, core: RoonCore) -> None:
        core.available = True
        self.active_core_id = core.id
        self.reconnecting = False
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
        _LOGGER.info("Activated Roon core %s (%s)", core.name, core.id)
        self._refresh_zones()

    async def _watch_core(self, api: RoonApi, core: RoonCore) -> None:
        """Follow the pairing state roonapi keeps for its websocket."""
        while True:
            await asyncio.sleep(self._health_check_seconds)
            if api is not self._api:
                return
            if not api.ready and self.active_core_id == core.id:
                self._core_lost()
            elif api.ready and self.active_core_id is None:
                _LOGGER.info("Roon core %s is back", core.id)
                self._activate(core)

    async def _close_api(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        api = self._api
        self._api = None
        if api is not None:
            try:
                await self._loop.run_in_executor(None, api.stop)
            except Exception:
                _LOGGER.debug("Roon API stop failed", exc_info=True)

    def _core_lost(self) -> None:
        core = self.cores.get(self.active_core_id or "")
        _LOGGER.warning("Roon core unavailable: %s", core.id if core else None)
        if core is not None:
            core.available = False
        self.active_core_id = None
        self.reconnecting = True
        if self._reconnect_timer is None:
            self._reconnect_timer = self._loop.call_later(
                self._core_grace_seconds, self._reconnect_grace_expired
            )
        self._emit_state()
        self._event_bus.publish("roon_core_unavailable", {})

    def _reconnect_grace_expired(self) -> None:
        self._reconnect_timer = None
        if self.active_core_id is None:
            self.reconnecting = False
            self._cleanup_subscriptions()
            self._emit_state()

    def _cleanup_subscriptions(self) -> None:
        self.zones.clear()
        self.current_state = "stopped"
        self.now_playing = None
        self._inline_cache.clear()
        _LOGGER.debug("Roon subscriptions cleared")

    # -------------------------------------------------------------------------
    # Zones
    # -------------------------------------------------------------------------

    def _on_roon_event(self, event: str, changed_ids: Any) -> None:
        # Called from the roonapi websocket thread
        self._loop.call_soon_threadsafe(self._handle_roon_event, event, changed_ids)

    def _handle_roon_event(self, event: str, changed_ids: Any) -> None:
        _LOGGER.debug("Roon event %s: %s", event, changed_ids)
        if event.startswith("zones"):
            self._refresh_zones()

    def _refresh_zones(self) -> None:
        api = self._api
        if api is None:
            return
        # Copy so the roonapi thread cannot mutate what we hand out
        self.zones = copy.deepcopy(dict(api.zones))
        self._restore_saved_zone()
        self.evaluate_playback_state()
        self._emit_state()

    def _restore_saved_zone(self) -> None:
        saved = self._preferences.preferences.selected_zone_id
        if self.selected_zone_id is None and saved and saved in self.zones:
            _LOGGER.info("Restoring saved zone %s", saved)
            self.selected_zone_id = saved

    def select_zone(self, zone_id: Optional[str]) -> bool:
        if not zone_id or zone_id not in self.zones:
            return False
        self.selected_zone_id = zone_id
        self._preferences.update(selected_zone_id=zone_id)
        self._emit_state()
        self.evaluate_playback_state()
        return True

    # -------------------------------------------------------------------------
    # Now playing
    # -------------------------------------------------------------------------

    def evaluate_playback_state(self) -> None:
        zone = self.zones.get(self.selected_zone_id or "")
        if zone is None:
            self.now_playing = None
            self.current_state = "idle"
            return

        core = self.cores.get(self.active_core_id or "")
        payload = build_payload(zone, core.name if core else None)
        new_state = payload["state"]
        state_changed = new_state != self.current_state
        changed = track_changed(self.now_playing, payload)

        self._evaluation_seq += 1
        seq = self._evaluation_seq

        if same_track(self.now_playing, payload):
            # Same track: keep the artwork already resolved for it
            for key in ARTWORK_FIELDS:
                if key in self.now_playing:
                    payload.setdefault(key, self.now_playing[key])
            self._finalize(seq, payload, state_changed, changed)
        elif changed and payload["now_playing"]:
            self._spawn(self._publish_with_artwork(seq, payload, state_changed))
        else:
            self._finalize(seq, payload, state_changed, changed)

    def _finalize(self, seq: int, payload: dict, state_changed: bool, changed: bool) -> None:
        if seq != self._evaluation_seq:
            # A newer zone update already superseded this one
            return
        self.now_playing = payload
        self.current_state = payload["state"]
        self.last_transport_state = payload["state"]
        if state_changed:
            self._event_bus.publish("roon_state", {"state": payload["state"], "payload": payload})
        if changed or state_changed:
            self._event_bus.publish("roon_now_playing", {"payload": payload})

    async def _publish_with_artwork(self, seq: int, payload: dict, state_changed: bool) -> None:
        now_playing = payload["now_playing"]
        image_key = now_playing.get("image_key")
        inline_art, hosted_art, artist_images = await asyncio.gather(
            self.get_inline_image(image_key),
            self.get_hosted_image(image_key, *HOSTED_IMAGE),
            self.get_artist_images(now_playing.get("artist_image_keys") or []),
        )

        cached = self._cached_enrichment(extract_artist_name(now_playing))
        if cached:
            artist_images = merge_images(artist_images, cached, self._max_artist_images)

        # Fast payload first, enrichment follows if it adds anything
        quick = dict(payload, image_data=inline_art, image_url=hosted_art, artist_images=artist_images)
        self._finalize(seq, quick, state_changed, True)

        if self._artwork is None or len(artist_images) >= self._max_artist_images:
            return

        enriched_images = await self.enrich_artist_images(now_playing, artist_images)
        if len(enriched_images) <= len(artist_images):
            return
        if not same_track(self.now_playing, quick):
            _LOGGER.debug("Track changed before enrichment finished; dropping it")
            return
        _LOGGER.info("Sending enriched artist images update")
        enriched = dict(self.now_playing or quick, artist_images=enriched_images)
        self.now_playing = enriched
        self._event_bus.publish("roon_now_playing", {"payload": enriched})

    async def enrich_artist_images(self, now_playing: dict, existing: List[str]) -> List[str]:
        current = [url for url in existing if url][: self._max_artist_images]
        needed = self._max_artist_images - len(current)
        if needed <= 0 or self._artwork is None:
            return current

        artist_name = extract_artist_name(now_playing)
        if not artist_name:
            return current

        supplemental = self._cached_enrichment(artist_name)
        if supplemental is None:
            supplemental = await self._artwork.fetch_supplemental_images(artist_name, max(2, needed))
            self._remember_enrichment(artist_name, supplemental)
        return merge_images(current, supplemental, self._max_artist_images)

    def _cached_enrichment(self, artist_name: Optional[str], now: Optional[float] = None) -> Optional[List[str]]:
        if not artist_name:
            return None
        entry = self._enrichment_cache.get(artist_name)
        if entry is None:
            return None
        expires_at, images = entry
        now = time.time() if now is None else now
        if now >= expires_at:
            del self._enrichment_cache[artist_name]
            return None
        return images

    def _remember_enrichment(self, artist_name: str, images: List[str], now: Optional[float] = None) -> None:
        # Failed lookups come back empty and are retried on the next track
        if not images:
            return
        self._enrichment_cache.pop(artist_name, None)
        now = time.time() if now is None else now
        expires_at = now + ENRICHMENT_TTL_SECONDS
        self._enrichment_cache[artist_name] = (expires_at, list(images))
        while len(self._enrichment_cache) > MAX_ENRICHMENT_ENTRIES:
            del self._enrichment_cache[next(iter(self._enrichment_cache))]

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    async def _download(self, image_key: str, width: int, height: int, scale: str) -> Tuple[bytes, str]:
        api = self._api
        if api is None:
            raise RuntimeError("Image service unavailable")
        url = api.get_image(image_key, scale=scale, width=width, height=height)
        async with self._http.get(url) as response:
            response.raise_for_status()
            content_type = response.headers.get("Content-Type", "image/jpeg")
            return await response.read(), content_type

    async def get_inline_image(self, image_key: Optional[str]) -> Optional[str]:
        if not image_key:
            return None
        width, height, scale = INLINE_IMAGE
        cache_key = image_cache_key(image_key, width, height, scale) + ":inline"
        cached = self._inline_cache.get(cache_key)
        if cached is not None:
            return cached
        try:
            data, content_type = await self._download(image_key, width, height, scale)
        except (aiohttp.ClientError, asyncio.TimeoutError, RuntimeError) as e:
            _LOGGER.debug("Inline image fetch failed for %s: %s", image_key, e)
            return None
        data_url = f"data:{content_type};base64,{base64.b64encode(data).decode('ascii')}"
        self._inline_cache[cache_key] = data_url
        return data_url

    async def get_hosted_image(
        self, image_key: Optional[str], width: int, height: int, scale: str
    ) -> Optional[str]:
        if not image_key:
            return None
        cache_key = image_cache_key(image_key, width, height, scale)
        cached = self._image_store.get_by_cache_key(cache_key)
        if cached is not None:
            return cached.url
        try:
            data, content_type = await self._download(image_key, width, height, scale)
            return self._image_store.save(cache_key, data, content_type).url
        except (aiohttp.ClientError, asyncio.TimeoutError, RuntimeError) as e:
            _LOGGER.debug("Hosted image fetch failed for %s: %s", image_key, e)
            return None

    async def get_artist_images(self, image_keys: List[str]) -> List[str]:
        unique: List[str] = []
        for key in image_keys:
            if key and key not in unique:
                unique.append(key)
        unique = unique[: self._max_artist_images]
        if not unique:
            return []
        results = await asyncio.gather(
            *(self.get_hosted_image(key, *ARTIST_IMAGE) for key in unique)
        )
        return [url for url in results if url]

    # -------------------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            _LOGGER.warning("Now-playing update failed", exc_info=error)
