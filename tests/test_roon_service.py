"""Tests for the Roon service against a fake roonapi client."""

import asyncio
import copy
import json
import re

import aiohttp
import pytest
from aioresponses import aioresponses

from roon_cast_bridge.config import RoonConfig
from roon_cast_bridge.image_store import ImageStore
from roon_cast_bridge.models import PreferencesStore
from roon_cast_bridge.roon import service as service_module
from roon_cast_bridge.roon.service import RoonService

from conftest import Recorder

# pylint: disable=redefined-outer-name

IMAGE_URL = re.compile(r"^http://10\.0\.0\.3:9330/api/image/.*$")

ZONE = {
    "zone_id": "z1",
    "display_name": "Living Room",
    "state": "playing",
    "now_playing": {
        "seek_position": 10,
        "image_key": "album1",
        "three_line": {"line1": "Idioteque", "line2": "Radiohead", "line3": "Kid A"},
    },
    "outputs": [{"output_id": "o1", "display_name": "DAC"}],
}


class FakeRoonApi:
    def __init__(self, appinfo, token, host, port, blocking_init=True) -> None:
        self.appinfo = appinfo
        self.host = host
        self.port = port
        self.token = token or "new-token"
        self.core_id = "core-1"
        self.core_name = "Study Core"
        self.ready = True
        self.zones = {"z1": copy.deepcopy(ZONE), "z2": {"zone_id": "z2", "display_name": "Kitchen", "state": "stopped"}}
        self.callbacks = []
        self.stopped = False

    def register_state_callback(self, callback, event_filter=None, id_filter=None) -> None:
        self.callbacks.append(callback)

    def get_image(self, image_key, scale="fit", width=500, height=500) -> str:
        return f"http://{self.host}:{self.port}/api/image/{image_key}?scale={scale}&width={width}&height={height}"

    def stop(self) -> None:
        self.stopped = True


class FakeArtwork:
    def __init__(self, images) -> None:
        self.images = images
        self.calls = []

    async def fetch_supplemental_images(self, artist_name, desired_count=2):
        self.calls.append((artist_name, desired_count))
        return list(self.images)


@pytest.fixture
def mock_responses():
    with aioresponses() as mock:
        mock.get(IMAGE_URL, body=b"\xff\xd8jpeg", content_type="image/jpeg", repeat=True)
        yield mock


@pytest.fixture
def fake_api(monkeypatch):
    created = []

    def factory(*args, **kwargs):
        api = FakeRoonApi(*args, **kwargs)
        created.append(api)
        return api

    monkeypatch.setattr(service_module, "RoonApi", factory)
    return created


async def _service(bus, tmp_path, artwork=None, **kwargs):
    preferences = PreferencesStore(tmp_path / "preferences.json")
    preferences.load()
    http = aiohttp.ClientSession()
    service = RoonService(
        loop=asyncio.get_running_loop(),
        event_bus=bus,
        config=RoonConfig(host="10.0.0.3", port=9330),
        preferences=preferences,
        image_store=ImageStore(base_url="http://10.0.0.2:8080"),
        artwork=artwork,
        http=http,
        token_path=tmp_path / "roon_token.json",
        **kwargs,
    )
    return service, preferences, http


async def test_pairs_and_saves_token(bus, tmp_path, fake_api, mock_responses) -> None:
    recorder = Recorder(bus, "roon_update")
    service, _, http = await _service(bus, tmp_path)

    await service.start()

    assert fake_api[0].host == "10.0.0.3"
    assert fake_api[0].appinfo["extension_id"] == "com.zeki.rooncast"
    assert json.loads((tmp_path / "roon_token.json").read_text()) == {"token": "new-token"}
    snapshot = recorder.of("roon_update")[-1]["snapshot"]
    assert snapshot["active_core_id"] == "10.0.0.3:9330"
    assert snapshot["cores"] == [
        {"id": "10.0.0.3:9330", "name": "Study Core", "is_active": True, "available": True}
    ]
    assert [zone["zone_id"] for zone in snapshot["zones"]] == ["z1", "z2"]

    await service.stop()
    assert fake_api[0].stopped
    await http.close()


async def test_selected_zone_publishes_now_playing_with_artwork(bus, tmp_path, fake_api, mock_responses) -> None:
    recorder = Recorder(bus, "roon_now_playing", "roon_state")
    service, preferences, http = await _service(bus, tmp_path)
    preferences.update(selected_zone_id="z1")

    await service.start()
    await asyncio.sleep(0.05)

    assert service.selected_zone_id == "z1"
    payload = recorder.of("roon_now_playing")[-1]["payload"]
    assert payload["zone_name"] == "Living Room"
    assert payload["core_name"] == "Study Core"
    assert payload["image_data"].startswith("data:image/jpeg;base64,")
    assert payload["image_url"].startswith("http://10.0.0.2:8080/images/")
    assert payload["artist_images"] == []
    assert recorder.of("roon_state")[-1]["state"] == "playing"

    await service.stop()
    await http.close()


async def test_enrichment_publishes_second_payload(bus, tmp_path, fake_api, mock_responses) -> None:
    recorder = Recorder(bus, "roon_now_playing")
    extra = ["https://e-cdns-images.dzcdn.net/images/artist/5f4b7c/1000x1000-000000-80-0-0.jpg"]
    artwork = FakeArtwork(extra)
    service, preferences, http = await _service(bus, tmp_path, artwork=artwork)
    preferences.update(selected_zone_id="z1")

    await service.start()
    await asyncio.sleep(0.05)

    payloads = [event["payload"] for event in recorder.of("roon_now_playing")]
    assert [p["artist_images"] for p in payloads] == [[], extra]
    assert artwork.calls == [("Radiohead", 4)]

    await service.stop()
    await http.close()


async def test_zone_updates_from_roon_thread(bus, tmp_path, fake_api, mock_responses) -> None:
    recorder = Recorder(bus, "roon_now_playing", "roon_state")
    service, _, http = await _service(bus, tmp_path)
    await service.start()
    assert service.select_zone("z1")
    await asyncio.sleep(0.05)
    first_url = service.now_playing["image_url"]

    api = fake_api[0]
    api.zones["z1"]["state"] = "paused"
    await asyncio.get_running_loop().run_in_executor(None, api.callbacks[0], "zones_changed", ["z1"])
    await asyncio.sleep(0.05)

    paused = recorder.of("roon_now_playing")[-1]["payload"]
    assert paused["state"] == "paused"
    assert paused["image_url"] == first_url
    assert recorder.of("roon_state")[-1]["state"] == "paused"

    await service.stop()
    await http.close()


async def test_select_zone_persists(bus, tmp_path, fake_api, mock_responses) -> None:
    service, preferences, http = await _service(bus, tmp_path)
    await service.start()

    assert not service.select_zone("missing")
    assert service.select_zone("z2")
    assert preferences.preferences.selected_zone_id == "z2"
    assert service.now_playing["zone_name"] == "Kitchen"

    await service.stop()
    await http.close()


async def test_core_loss_and_grace_period(bus, tmp_path, fake_api, mock_responses) -> None:
    recorder = Recorder(bus, "roon_core_unavailable")
    service, preferences, http = await _service(
        bus, tmp_path, health_check_seconds=0.01, core_grace_seconds=0.1
    )
    preferences.update(selected_zone_id="z1")
    await service.start()
    await asyncio.sleep(0.05)

    fake_api[0].ready = False
    await asyncio.sleep(0.05)

    assert len(recorder.of("roon_core_unavailable")) == 1
    assert service.reconnecting
    assert service.active_core_id is None
    assert service.zones

    await asyncio.sleep(0.15)
    assert not service.reconnecting
    assert service.zones == {}
    assert service.now_playing is None

    fake_api[0].ready = True
    await asyncio.sleep(0.05)
    assert service.active_core_id == "10.0.0.3:9330"
    assert "z1" in service.zones

    await service.stop()
    await http.close()


async def test_failed_enrichment_is_retried(bus, tmp_path) -> None:
    artwork = FakeArtwork([])
    service, _, http = await _service(bus, tmp_path, artwork=artwork)
    now_playing = {"artist": "Some Artist"}
    found = ["https://cdn.example/artist-one.jpg", "https://cdn.example/artist-two.jpg"]

    assert await service.enrich_artist_images(now_playing, []) == []
    artwork.images = found
    assert await service.enrich_artist_images(now_playing, []) == found
    assert await service.enrich_artist_images(now_playing, []) == found

    assert len(artwork.calls) == 2
    await http.close()


async def test_enrichment_cache_expires_and_is_bounded(bus, tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(service_module, "MAX_ENRICHMENT_ENTRIES", 2)
    service, _, http = await _service(bus, tmp_path, artwork=FakeArtwork([]))

    service._remember_enrichment("A", ["https://cdn.example/a.jpg"], now=0.0)
    service._remember_enrichment("B", ["https://cdn.example/b.jpg"], now=1.0)
    service._remember_enrichment("C", ["https://cdn.example/c.jpg"], now=2.0)

    assert service._cached_enrichment("A", now=3.0) is None
    assert service._cached_enrichment("B", now=3.0) == ["https://cdn.example/b.jpg"]
    assert service._cached_enrichment("C", now=2.0 + service_module.ENRICHMENT_TTL_SECONDS) is None
    await http.close()
