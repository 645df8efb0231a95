"""Snapshot/command surface over the receiver registry and the cast session."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Set

from .cast.discovery import ReceiverDiscovery
from .cast.registry import DeviceRegistry
from .cast.session import CastSession
from .event_bus import EventBus
from .models import PreferencesStore

_LOGGER = logging.getLogger(__name__)

CAST_TOPICS = ("cast_devices", "cast_status", "cast_message", "cast_error")


class CastFacade:
    """
    What the front end sees of the cast side.

    Reads come from the registry and the session; the only commands are
    selecting a receiver and refreshing discovery. Every change is published
    on the EventBus under one of ``CAST_TOPICS``.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        event_bus: EventBus,
        registry: DeviceRegistry,
        session: CastSession,
        preferences: PreferencesStore,
        receiver_url: str,
        discovery_factory: Callable[..., ReceiverDiscovery] = ReceiverDiscovery,
        sweep_seconds: float = 30.0,
    ) -> None:
        self._loop = loop
        self._event_bus = event_bus
        self.registry = registry
        self.session = session
        self._preferences = preferences
        self.receiver_url = receiver_url

        self.discovery = discovery_factory(
            registry=registry,
            on_change=self.devices_changed,
            sweep_seconds=sweep_seconds,
        )
        self._tasks: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def devices(self) -> List[dict]:
        return self.registry.list(self.session.selected_device_id)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "devices": self.devices(),
            "selectedDeviceId": self.session.selected_device_id,
            "castStatus": self.session.status.value,
            "receiverUrl": self.receiver_url,
        }

    def listen(self, listener: Callable[[dict], None]) -> None:
        """Subscribe ``listener`` to every cast event; ``__topic`` tells them apart."""
        for topic in CAST_TOPICS:
            self._event_bus.subscribe(topic, listener)

    def unlisten(self, listener: Callable[[dict], None]) -> None:
        for topic in CAST_TOPICS:
            self._event_bus.unsubscribe(topic, listener)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def select_device(self, device_id: str) -> bool:
        if device_id not in self.registry:
            _LOGGER.warning("Unknown receiver %s", device_id)
            return False

        self.session.select(device_id)
        self._preferences.update(selected_receiver_id=device_id)
        self.publish_devices()
        self._spawn(self._connect())
        return True

    async def refresh_discovery(self) -> None:
        try:
            await self.discovery.refresh()
        except Exception as err:
            _LOGGER.error("Refresh error: %s", err)
            self._event_bus.publish("cast_error", {"message": str(err)})
        self.publish_devices()

    # -------------------------------------------------------------------------
    # Change propagation
    # -------------------------------------------------------------------------

    def publish_devices(self) -> None:
        self._event_bus.publish("cast_devices", {"devices": self.devices()})

    def devices_changed(self) -> None:
        """Registry changed: restore the saved receiver if it just showed up."""
        saved = self._preferences.preferences.selected_receiver_id
        if saved and self.session.selected_device_id is None and saved in self.registry:
            _LOGGER.info("Restoring saved receiver %s", saved)
            self.select_device(saved)
            return
        self.publish_devices()

    async def _connect(self) -> None:
        try:
            await self.session.connect()
        except Exception as err:
            self.session.handle_transport_error(err)

    def _spawn(self, coro) -> asyncio.Task:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        await self.discovery.start()

    async def stop(self) -> None:
        await self.discovery.stop()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.session.close()

