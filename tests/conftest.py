"""Shared fixtures: an in-memory cast transport and an EventBus recorder."""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest

from roon_cast_bridge.cast.models import ReceiverAnnouncement
from roon_cast_bridge.cast.registry import DeviceRegistry
from roon_cast_bridge.cast.session import CastSession
from roon_cast_bridge.cast.transport import (
    NS_RECEIVER,
    PLATFORM_RECEIVER_ID,
    SENDER_ID,
    CastTransport,
)
from roon_cast_bridge.event_bus import EventBus

APP_ID = "180705D2"
NAMESPACE = "urn:x-cast:com.zeki.rooncast"


class FakeTransport(CastTransport):
    """Records every outbound message instead of writing to a socket."""

    def __init__(self, connect_error: Optional[Exception] = None) -> None:
        super().__init__()
        self.connect_error = connect_error
        self.connected_to: Optional[Tuple[str, int]] = None
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []
        self.closed = False
        self.send_error: Optional[Exception] = None

    async def connect(self, host: str, port: int) -> None:
        await asyncio.sleep(0)
        if self.connect_error is not None:
            raise self.connect_error
        self.connected_to = (host, port)

    def send_message(self, channel, message: dict) -> None:
        if self.closed:
            raise BrokenPipeError("transport closed")
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((channel.namespace, channel.destination_id, message))

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._closed(None)

    # --- test helpers ---

    def receive(self, namespace: str, message: dict, source: str = PLATFORM_RECEIVER_ID) -> None:
        self._route(source, SENDER_ID, namespace, message)

    def receiver_status(self, *applications: dict) -> None:
        self.receive(
            NS_RECEIVER,
            {"type": "RECEIVER_STATUS", "status": {"applications": list(applications)}},
        )

    def types(self, namespace: Optional[str] = None) -> List[str]:
        return [
            message.get("type")
            for ns, _dest, message in self.sent
            if namespace is None or ns == namespace
        ]

    def sent_to(self, destination: str) -> List[Dict[str, Any]]:
        return [message for _ns, dest, message in self.sent if dest == destination]


class FakeDiscovery:
    """Stands in for ReceiverDiscovery; announcements are fed in by hand."""

    def __init__(self, *, registry, on_change, sweep_seconds) -> None:
        self.registry = registry
        self.on_change = on_change
        self.sweep_seconds = sweep_seconds
        self.refreshes = 0
        self.started = False
        self.refresh_error: Optional[Exception] = None

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def refresh(self) -> None:
        self.refreshes += 1
        if self.refresh_error is not None:
            raise self.refresh_error

    def announce(self, ann: ReceiverAnnouncement) -> None:
        if self.registry.register(ann) is not None:
            self.on_change()


class Recorder:
    """Collects EventBus events for the given topics."""

    def __init__(self, bus: EventBus, *topics: str) -> None:
        self.events: List[dict] = []
        for topic in topics:
            bus.subscribe(topic, self.events.append)

    def of(self, topic: str) -> List[dict]:
        return [event for event in self.events if event["__topic"] == topic]

    def statuses(self) -> List[str]:
        return [event["status"] for event in self.of("cast_status")]


def announcement(device_id: str = "cc1", name: str = "Living Room", address: str = "10.0.0.5", **props) -> ReceiverAnnouncement:
    properties = {"id": device_id, "fn": name, "md": "Chromecast"}
    properties.update(props)
    return ReceiverAnnouncement(
        name=f"Chromecast-{device_id}._googlecast._tcp.local.",
        addresses=[address],
        port=8009,
        host=f"{device_id}.local.",
        properties=properties,
    )


def make_session(bus: EventBus, registry: DeviceRegistry, transports: List[FakeTransport], **kwargs) -> CastSession:
    """A session whose transport factory hands out (and remembers) FakeTransports."""

    def factory() -> FakeTransport:
        transport = FakeTransport()
        transports.append(transport)
        return transport

    options = dict(
        loop=asyncio.get_running_loop(),
        event_bus=bus,
        registry=registry,
        app_id=APP_ID,
        namespace=NAMESPACE,
        transport_factory=factory,
        launch_timeout_seconds=0.2,
        app_reconnect_delay=0.01,
        pipe_reconnect_delay=0.01,
        pause_settle_seconds=0,
        stop_settle_seconds=0,
    )
    options.update(kwargs)
    return CastSession(**options)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def registry() -> DeviceRegistry:
    registry = DeviceRegistry()
    registry.register(announcement(), now=1000.0)
    return registry
