#!/usr/bin/env python3
import argparse
import asyncio
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import aiohttp

from .artwork import ArtworkService
from .cast.registry import DeviceRegistry
from .cast.session import CastSession
from .config import Config, load_config_from_json, public_base_url
from .dispatcher import PlaybackDispatcher
from .event_bus import EventBus
from .facade import CastFacade
from .image_store import ImageStore
from .models import PreferencesStore
from .roon.service import RoonService
from .server import FrontendServer
from .util import get_local_address

_LOGGER = logging.getLogger(__name__)
_MODULE_DIR = Path(__file__).parent
_REPO_DIR = _MODULE_DIR.parent

# Third-party loggers that are far too chatty at DEBUG
_QUIET_LOGGERS = ("websockets", "roonapi", "zeroconf", "aiohttp.access")

# -----------------------------------------------------------------------------
# Helper dataclasses
# -----------------------------------------------------------------------------

@dataclass
class Components:
    """Everything built at startup, in shutdown order."""
    server: FrontendServer
    roon: RoonService
    dispatcher: PlaybackDispatcher
    facade: CastFacade
    image_store: ImageStore
    artwork: Optional[ArtworkService]
    http: aiohttp.ClientSession

# -----------------------------------------------------------------------------
# Main Application
# -----------------------------------------------------------------------------

async def main() -> None:
    # --- 1. Load Basics ---
    config, loop, event_bus = _init_basics()

    # --- 2. Load Preferences ---
    preferences = PreferencesStore(_REPO_DIR / config.app.preferences_file)
    preferences.load()

    # --- 3. Build Components ---
    components = _build_components(config, loop, event_bus, preferences)

    # --- 4. Run until signalled ---
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Not available on Windows event loops
            pass

    try:
        components.image_store.start()
        await components.server.start()
        await components.facade.start()
        await components.roon.start()
        _LOGGER.info("%s started", config.app.name)
        await stop_event.wait()
    finally:
        # --- 5. Cleanup ---
        _LOGGER.debug("Shutting down...")
        await _shutdown(components)

# -----------------------------------------------------------------------------
# Helper Functions
# -----------------------------------------------------------------------------

def _init_basics() -> Tuple[Config, asyncio.AbstractEventLoop, EventBus]:
    """Loads config, sets up logging, and creates loop/event bus."""
    parser = argparse.ArgumentParser(prog="roon_cast_bridge")
    parser.add_argument(
        "-c", "--config", type=Path, required=False,
        default=_MODULE_DIR / "config.json",
        help="Path to configuration.json file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    config_path = args.config
    if not config_path.is_absolute():
        config_path = _REPO_DIR / config_path
    config = load_config_from_json(config_path)

    if args.debug:
        config.app.debug = True

    logging.basicConfig(
        level=logging.DEBUG if config.app.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    _LOGGER.info("Loading configuration from: %s", config_path)

    loop = asyncio.get_running_loop()
    event_bus = EventBus()

    return config, loop, event_bus

def _build_components(
    config: Config,
    loop: asyncio.AbstractEventLoop,
    event_bus: EventBus,
    preferences: PreferencesStore,
) -> Components:
    """Wires the cast side, the Roon side and the front end together."""
    base_url = public_base_url(config.server, get_local_address())
    _LOGGER.info("Hosting artwork at %s/images/", base_url)
    image_store = ImageStore(base_url=base_url)

    http = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=config.artwork.timeout_seconds)
    )
    artwork: Optional[ArtworkService] = None
    if config.artwork.enabled:
        artwork = ArtworkService(
            timeout_seconds=config.artwork.timeout_seconds,
            max_concurrent_requests=config.artwork.max_concurrent_requests,
            session=http,
        )

    registry = DeviceRegistry(ttl_seconds=config.cast.device_ttl_seconds)
    session = CastSession(
        loop=loop,
        event_bus=event_bus,
        registry=registry,
        app_id=config.cast.app_id,
        namespace=config.cast.namespace,
        max_message_bytes=config.cast.max_message_bytes,
        heartbeat_seconds=config.cast.heartbeat_seconds,
        launch_timeout_seconds=config.cast.launch_timeout_seconds,
    )
    facade = CastFacade(
        loop=loop,
        event_bus=event_bus,
        registry=registry,
        session=session,
        preferences=preferences,
        receiver_url=config.cast.receiver_url,
        sweep_seconds=config.cast.discovery_sweep_seconds,
    )
    dispatcher = PlaybackDispatcher(
        loop=loop,
        event_bus=event_bus,
        session=session,
        stop_debounce_seconds=config.cast.stop_debounce_seconds,
    )
    roon = RoonService(
        loop=loop,
        event_bus=event_bus,
        config=config.roon,
        preferences=preferences,
        image_store=image_store,
        artwork=artwork,
        http=http,
        token_path=_REPO_DIR / config.roon.token_file,
        max_artist_images=config.artwork.max_artist_images,
    )
    server = FrontendServer(
        event_bus=event_bus,
        facade=facade,
        roon=roon,
        image_store=image_store,
        host=config.server.host,
        port=config.server.port,
    )
    return Components(
        server=server,
        roon=roon,
        dispatcher=dispatcher,
        facade=facade,
        image_store=image_store,
        artwork=artwork,
        http=http,
    )

async def _shutdown(components: Components) -> None:
    """Stops everything, logging but not propagating individual failures."""
    steps = (
        ("front end", components.server.stop),
        ("Roon service", components.roon.stop),
        ("dispatcher", components.dispatcher.close),
        ("cast facade", components.facade.stop),
        ("image store", components.image_store.stop),
        ("HTTP session", components.http.close),
    )
    for name, step in steps:
        try:
            await step()
        except Exception:
            _LOGGER.exception("Error stopping %s", name)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
