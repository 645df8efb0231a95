"""
Websocket front end.

Browsers connect to ``ws://<host>:<port>/`` and receive a ``bootstrap``
frame followed by every cast/roon event as ``{"event": ..., "data": ...}``.
Commands are JSON frames ``{"id": ..., "command": ..., ...}`` and get a
``{"id": ..., "ok": bool, "error": str}`` reply.

Plain HTTP requests on the same port serve ``/api/status`` and the hosted
artwork under ``/images/<id>``.
"""

from __future__ import annotations

import json
import logging
from http import HTTPStatus
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from websockets.asyncio.server import ServerConnection, broadcast, serve
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from .event_bus import EventBus
from .facade import CAST_TOPICS, CastFacade
from .image_store import ImageStore
from .roon.service import RoonService

_LOGGER = logging.getLogger(__name__)

ROON_TOPICS = ("roon_update", "roon_now_playing", "roon_state")

# Bus topic -> wire event name
EVENT_NAMES = {
    "cast_devices": "cast:devices",
    "cast_status": "cast:status",
    "cast_message": "cast:message",
    "cast_error": "cast:error",
    "roon_update": "roon:update",
    "roon_now_playing": "roon:now-playing",
    "roon_state": "roon:state",
}

IMAGE_CACHE_CONTROL = "public, max-age=300"


class CommandError(Exception):
    """A command was understood but could not be carried out."""


def _event_data(topic: str, data: dict) -> Any:
    if topic == "cast_devices":
        return data.get("devices", [])
    if topic == "cast_status":
        return data.get("status")
    if topic == "cast_message":
        return data.get("message")
    if topic == "cast_error":
        return {"message": data.get("message")}
    if topic == "roon_update":
        return data.get("snapshot")
    if topic == "roon_now_playing":
        return data.get("payload")
    if topic == "roon_state":
        return {"state": data.get("state"), "payload": data.get("payload")}
    return {k: v for k, v in data.items() if not k.startswith("__")}


def _json_response(status: HTTPStatus, body: Any) -> Response:
    payload = json.dumps(body, ensure_ascii=False).encode("utf-8")
    headers = Headers({"Content-Type": "application/json", "Content-Length": str(len(payload))})
    return Response(status.value, status.phrase, headers, payload)


class FrontendServer:
    def __init__(
        self,
        *,
        event_bus: EventBus,
        facade: CastFacade,
        roon: RoonService,
        image_store: ImageStore,
        host: str,
        port: int,
    ) -> None:
        self._event_bus = event_bus
        self.facade = facade
        self.roon = roon
        self.image_store = image_store
        self.host = host
        self.port = port

        self.clients: Set[ServerConnection] = set()
        self._server = None
        self._commands: Dict[str, Callable[[dict], Awaitable[None]]] = {
            "cast:select": self._cmd_cast_select,
            "cast:refresh": self._cmd_cast_refresh,
            "roon:select-core": self._cmd_roon_select_core,
            "roon:select-zone": self._cmd_roon_select_zone,
            "request:auto-select": self._cmd_auto_select,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        for topic in CAST_TOPICS + ROON_TOPICS:
            self._event_bus.subscribe(topic, self.relay)
        self._server = await serve(
            self.handle_client,
            self.host,
            self.port,
            process_request=self.process_request,
        )
        _LOGGER.info("Front end listening on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        for topic in CAST_TOPICS + ROON_TOPICS:
            self._event_bus.unsubscribe(topic, self.relay)
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def bootstrap(self) -> Dict[str, Any]:
        return {"roon": self.roon.snapshot(), "cast": self.facade.snapshot()}

    def relay(self, data: dict) -> None:
        topic = data.get("__topic")
        event = EVENT_NAMES.get(topic)
        if event is None or not self.clients:
            return
        frame = json.dumps({"event": event, "data": _event_data(topic, data)}, ensure_ascii=False)
        broadcast(self.clients, frame)

    # -------------------------------------------------------------------------
    # Websocket clients
    # -------------------------------------------------------------------------

    async def handle_client(self, websocket: ServerConnection) -> None:
        self.clients.add(websocket)
        _LOGGER.debug("Front end client connected: %s", websocket.remote_address)
        try:
            await websocket.send(json.dumps({"event": "bootstrap", "data": self.bootstrap()}))
            async for raw in websocket:
                reply = await self.handle_command(raw)
                await websocket.send(json.dumps(reply))
        except ConnectionClosed:
            pass
        finally:
            self.clients.discard(websocket)
            _LOGGER.debug("Front end client disconnected: %s", websocket.remote_address)

    async def handle_command(self, raw: Any) -> Dict[str, Any]:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            return {"ok": False, "error": "Invalid JSON"}
        if not isinstance(message, dict):
            return {"ok": False, "error": "Invalid command"}

        reply: Dict[str, Any] = {}
        if "id" in message:
            reply["id"] = message["id"]

        handler = self._commands.get(message.get("command"))
        if handler is None:
            reply.update(ok=False, error=f"Unknown command: {message.get('command')}")
            return reply

        try:
            await handler(message)
        except CommandError as err:
            reply.update(ok=False, error=str(err))
            return reply
        except Exception as err:
            _LOGGER.exception("Command %s failed", message.get("command"))
            reply.update(ok=False, error=str(err))
            return reply

        reply["ok"] = True
        return reply

    async def _cmd_cast_select(self, message: dict) -> None:
        device_id = message.get("deviceId")
        if not device_id or not self.facade.select_device(device_id):
            raise CommandError("Device not found")

    async def _cmd_cast_refresh(self, message: dict) -> None:
        await self.facade.refresh_discovery()

    async def _cmd_roon_select_core(self, message: dict) -> None:
        core_id = message.get("coreId")
        if not core_id or not await self.roon.select_core(core_id):
            raise CommandError("Core not found")

    async def _cmd_roon_select_zone(self, message: dict) -> None:
        if not self.roon.select_zone(message.get("zoneId")):
            raise CommandError("Zone not found")

    async def _cmd_auto_select(self, message: dict) -> None:
        await self.auto_select()

    async def auto_select(self) -> None:
        """Select the core, zone and receiver when there is exactly one of each."""
        if self.roon.active_core_id is None and len(self.roon.cores) == 1:
            await self.roon.select_core(next(iter(self.roon.cores)))

        if self.roon.selected_zone_id is None and len(self.roon.zones) == 1:
            self.roon.select_zone(next(iter(self.roon.zones)))

        devices = self.facade.registry.devices()
        if self.facade.session.selected_device_id is None and len(devices) == 1:
            self.facade.select_device(devices[0].id)

    # -------------------------------------------------------------------------
    # Plain HTTP
    # -------------------------------------------------------------------------

    def process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        path = request.path.split("?", 1)[0]

        if request.headers.get("Upgrade", "").lower() == "websocket":
            return None

        if path == "/api/status":
            return _json_response(HTTPStatus.OK, self.bootstrap())

        if path.startswith("/images/"):
            return self.serve_image(path[len("/images/"):])

        return _json_response(HTTPStatus.NOT_FOUND, {"error": "Not found"})

    def serve_image(self, image_id: str) -> Response:
        entry = self.image_store.get_by_id(image_id) if image_id else None
        if entry is None:
            return _json_response(HTTPStatus.NOT_FOUND, {"error": "Image not found"})
        headers = Headers(
            {
                "Content-Type": entry.content_type,
                "Content-Length": str(len(entry.data)),
                "Cache-Control": IMAGE_CACHE_CONTROL,
            }
        )
        return Response(HTTPStatus.OK.value, HTTPStatus.OK.phrase, headers, entry.data)
