"""Discovered receivers, keyed by their stable cast id."""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Dict, List, Optional

from .models import DEFAULT_CAST_PORT, Device, ReceiverAnnouncement

_LOGGER = logging.getLogger(__name__)

DEVICE_TTL_SECONDS = 24 * 60 * 60


class DeviceRegistry:
    """Upserts announcements and evicts receivers nobody has heard from.

    Entries are frozen :class:`Device` instances; ``register`` swaps in a new
    instance instead of editing the old one, so snapshots handed out earlier
    never change underneath their holders.
    """

    def __init__(self, ttl_seconds: float = DEVICE_TTL_SECONDS) -> None:
        self.ttl_seconds = ttl_seconds
        # dict keeps first-discovery order, re-registering keeps the slot
        self._devices: Dict[str, Device] = {}

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def get(self, device_id: Optional[str]) -> Optional[Device]:
        if device_id is None:
            return None
        return self._devices.get(device_id)

    def register(
        self, announcement: ReceiverAnnouncement, now: Optional[float] = None
    ) -> Optional[Device]:
        """Insert or refresh the receiver described by ``announcement``.

        Returns the stored device, or None when the announcement has no
        address or no TXT data and was ignored.
        """
        if not announcement.properties or not announcement.addresses:
            _LOGGER.debug("Ignoring incomplete announcement for %s", announcement.name)
            return None

        props = announcement.properties
        device_id = props.get("id") or announcement.name
        existing = self._devices.get(device_id)
        seen_at = time.time() if now is None else now

        if existing is None:
            device = Device(
                id=device_id,
                friendly_name=props.get("fn") or announcement.host or device_id,
                address=announcement.addresses[0],
                port=announcement.port or DEFAULT_CAST_PORT,
                model=props.get("md"),
                last_seen=seen_at,
            )
        else:
            device = dataclasses.replace(
                existing,
                friendly_name=props.get("fn") or existing.friendly_name,
                address=announcement.addresses[0] or existing.address,
                port=announcement.port or existing.port,
                model=props.get("md") or existing.model,
                last_seen=seen_at,
            )

        self._devices[device_id] = device
        _LOGGER.debug("Registered receiver %s", device)
        return device

    def purge_stale(self, now: Optional[float] = None) -> bool:
        """Drop receivers not seen within the TTL. True if any were removed."""
        now = time.time() if now is None else now
        stale = [
            device_id
            for device_id, device in self._devices.items()
            if now - device.last_seen > self.ttl_seconds
        ]
        for device_id in stale:
            _LOGGER.info("Evicting stale receiver %s", device_id)
            del self._devices[device_id]
        return bool(stale)

    def list(self, selected_id: Optional[str] = None) -> List[dict]:
        return [
            device.to_dict(is_selected=device.id == selected_id)
            for device in self._devices.values()
        ]

    def devices(self) -> List[Device]:
        return list(self._devices.values())
