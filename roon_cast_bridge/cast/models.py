from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

DEFAULT_CAST_PORT = 8009


class CastStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    APP_READY = "app-ready"
    DISCONNECTED = "disconnected"


class MessageKind(str, Enum):
    NOW_PLAYING = "NOW_PLAYING"
    STATE = "STATE"


@dataclass(frozen=True)
class ReceiverAnnouncement:
    """One mDNS answer for a `_googlecast._tcp` service."""
    name: str
    addresses: List[str] = field(default_factory=list)
    port: Optional[int] = None
    host: Optional[str] = None
    properties: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Device:
    """A discovered receiver. Instances are never mutated; updates replace them."""
    id: str
    friendly_name: str
    address: str
    port: int = DEFAULT_CAST_PORT
    model: Optional[str] = None
    last_seen: float = 0.0

    def to_dict(self, is_selected: bool = False) -> dict:
        return {
            "id": self.id,
            "friendlyName": self.friendly_name,
            "model": self.model,
            "address": self.address,
            "isSelected": is_selected,
        }
