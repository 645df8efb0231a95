"""Configuration models for the application."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import logging
_LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Configuration Dataclasses
# -----------------------------------------------------------------------------

@dataclass
class CastConfig:
    """Settings for the receiver application and session timing."""
    app_id: str = "180705D2"
    namespace: str = "urn:x-cast:com.zeki.rooncast"
    receiver_url: str = "https://zekimust-a11y.github.io/roon-cast/"
    heartbeat_seconds: float = 5.0
    launch_timeout_seconds: float = 10.0
    stop_debounce_seconds: float = 2.0
    discovery_sweep_seconds: float = 30.0
    device_ttl_seconds: float = 24 * 60 * 60
    # Stay below the receiver channel limit (64 KiB)
    max_message_bytes: int = 60 * 1024


@dataclass
class RoonConfig:
    """Settings for the Roon extension."""
    extension_id: str = "com.zeki.rooncast"
    display_name: str = "Roon Chromecast Bridge"
    display_version: str = "1.0.0"
    publisher: str = "zeki"
    email: str = "zekimust@gmail.com"
    # Connect directly instead of discovering cores
    host: Optional[str] = None
    port: int = 9330
    token_file: str = "roon_token.json"
    discovery_seconds: float = 5.0


@dataclass
class ServerConfig:
    """Settings for the websocket/HTTP front end."""
    host: str = "0.0.0.0"
    port: int = 8080
    public_host: Optional[str] = None
    public_base_url: Optional[str] = None


@dataclass
class ArtworkConfig:
    """Settings for external artist artwork lookups."""
    enabled: bool = True
    timeout_seconds: float = 5.0
    max_concurrent_requests: int = 4
    max_artist_images: int = 4


@dataclass
class AppConfig:
    """General application settings."""
    name: str
    preferences_file: str = "preferences.json"
    debug: bool = False


@dataclass
class Config:
    """Main configuration object."""
    app: AppConfig
    cast: CastConfig = field(default_factory=CastConfig)
    roon: RoonConfig = field(default_factory=RoonConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    artwork: ArtworkConfig = field(default_factory=ArtworkConfig)

# -----------------------------------------------------------------------------
# Helper Function
# -----------------------------------------------------------------------------

def load_config_from_json(config_path: Path) -> Config:
    """Loads configuration from a JSON file and populates dataclasses."""

    # --- Step 1: Load raw JSON data ---
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_data = json.load(f)
    except FileNotFoundError:
        _LOGGER.critical("Configuration file not found at: %s", config_path)
        raise
    except json.JSONDecodeError as e:
        _LOGGER.critical("Error parsing configuration file: %s", e)
        raise

    # --- Step 2: Create config objects from raw data ---
    if "app" not in raw_data:
        raise ValueError(
            "Configuration file must contain an 'app' section with a 'name'."
        )

    app_config = AppConfig(**raw_data.get("app", {}))
    cast_config = CastConfig(**raw_data.get("cast", {}))
    roon_config = RoonConfig(**raw_data.get("roon", {}))
    server_config = ServerConfig(**raw_data.get("server", {}))
    artwork_config = ArtworkConfig(**raw_data.get("artwork", {}))

    # --- Step 3: Return the main Config object ---
    return Config(
        app=app_config,
        cast=cast_config,
        roon=roon_config,
        server=server_config,
        artwork=artwork_config,
    )


def public_base_url(config: ServerConfig, detected_host: str) -> str:
    """Base URL the receiver uses to fetch hosted artwork."""
    if config.public_base_url:
        return config.public_base_url.rstrip("/")
    host = config.public_host or detected_host
    return f"http://{host}:{config.port}"
