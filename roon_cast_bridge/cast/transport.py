"""CASTV2 transport: TLS socket, frame codec and virtual channels."""

from __future__ import annotations

import asyncio
import json
import logging
import ssl
import struct
from typing import TYPE_CHECKING, Callable, List, Optional

# pylint: disable=no-name-in-module
from pychromecast.generated.cast_channel_pb2 import (  # type: ignore[attr-defined]
    CastMessage,
)

from .sanitizer import encode_message

_LOGGER = logging.getLogger(__name__)

NS_CONNECTION = "urn:x-cast:com.google.cast.tp.connection"
NS_RECEIVER = "urn:x-cast:com.google.cast.receiver"
NS_HEARTBEAT = "urn:x-cast:com.google.cast.tp.heartbeat"

SENDER_ID = "sender-0"
PLATFORM_RECEIVER_ID = "receiver-0"
BROADCAST_ID = "*"

_HEADER = struct.Struct(">I")

MessageHandler = Callable[[dict], None]


class Channel:
    """A virtual JSON channel multiplexed over one transport."""

    def __init__(
        self,
        transport: "CastTransport",
        source_id: str,
        destination_id: str,
        namespace: str,
    ) -> None:
        self.transport = transport
        self.source_id = source_id
        self.destination_id = destination_id
        self.namespace = namespace
        self._handlers: List[MessageHandler] = []
        self.closed = False

    def send(self, message: dict) -> None:
        if self.closed:
            raise BrokenPipeError(f"Channel {self.namespace} is closed")
        self.transport.send_message(self, message)

    def on_message(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    def dispatch(self, message: dict) -> None:
        for handler in list(self._handlers):
            try:
                handler(message)
            except Exception:
                _LOGGER.exception("Error handling message on %s", self.namespace)

    def close(self) -> None:
        self.closed = True
        self._handlers.clear()
        self.transport.remove_channel(self)

    def __repr__(self) -> str:
        return f"Channel({self.source_id}->{self.destination_id} {self.namespace})"


class CastTransport:
    """Channel bookkeeping shared by the real socket and test fakes.

    Subclasses implement ``connect``, ``send_message`` and ``close`` and call
    ``_route`` for every decoded inbound message and ``_closed`` when the
    connection goes away.
    """

    def __init__(self) -> None:
        self._channels: List[Channel] = []
        self._close_callbacks: List[Callable[[Optional[Exception]], None]] = []

    async def connect(self, host: str, port: int) -> None:
        raise NotImplementedError

    def send_message(self, channel: Channel, message: dict) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def create_channel(self, source_id: str, destination_id: str, namespace: str) -> Channel:
        channel = Channel(self, source_id, destination_id, namespace)
        self._channels.append(channel)
        return channel

    def remove_channel(self, channel: Channel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def on_close(self, callback: Callable[[Optional[Exception]], None]) -> None:
        self._close_callbacks.append(callback)

    def _route(self, source_id: str, destination_id: str, namespace: str, message: dict) -> None:
        for channel in list(self._channels):
            if channel.namespace != namespace or channel.destination_id != source_id:
                continue
            if destination_id not in (channel.source_id, BROADCAST_ID):
                continue
            channel.dispatch(message)

    def _closed(self, exc: Optional[Exception]) -> None:
        callbacks = list(self._close_callbacks)
        self._close_callbacks.clear()
        for channel in list(self._channels):
            channel.closed = True
        self._channels.clear()
        for callback in callbacks:
            try:
                callback(exc)
            except Exception:
                _LOGGER.exception("Error in transport close callback")


class CastSocket(CastTransport, asyncio.Protocol):
    """TLS connection to a receiver speaking length-prefixed CastMessages."""

    def __init__(self, connect_timeout: float = 10.0) -> None:
        CastTransport.__init__(self)
        self.connect_timeout = connect_timeout

        self._buffer: Optional[bytes] = None
        self._buffer_len: int = 0
        self._transport: Optional[asyncio.Transport] = None
        self._close_requested = False

    # -------------------------------------------------------------------------
    # CastTransport
    # -------------------------------------------------------------------------

    async def connect(self, host: str, port: int) -> None:
        loop = asyncio.get_running_loop()
        # Receivers present self-signed certificates
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

        await asyncio.wait_for(
            loop.create_connection(lambda: self, host, port, ssl=context),
            timeout=self.connect_timeout,
        )
        _LOGGER.debug("TLS connected to %s:%s", host, port)

    def send_message(self, channel: Channel, message: dict) -> None:
        if self._transport is None or self._transport.is_closing():
            raise BrokenPipeError("Cast connection is closed")

        msg = CastMessage()
        msg.protocol_version = CastMessage.CASTV2_1_0
        msg.source_id = channel.source_id
        msg.destination_id = channel.destination_id
        msg.namespace = channel.namespace
        msg.payload_type = CastMessage.STRING
        msg.payload_utf8 = encode_message(message).decode("utf-8")

        data = msg.SerializeToString()
        self._transport.write(_HEADER.pack(len(data)) + data)

    def close(self) -> None:
        self._close_requested = True
        if self._transport is not None:
            self._transport.close()

    # -------------------------------------------------------------------------
    # asyncio.Protocol
    # -------------------------------------------------------------------------

    def connection_made(self, transport) -> None:
        self._transport = transport
        if self._close_requested:
            # Closed while the TLS handshake was still running
            _LOGGER.debug("Closing connection that was abandoned while opening")
            transport.close()

    def data_received(self, data: bytes) -> None:
        if self._buffer is None:
            self._buffer = data
        else:
            self._buffer += data
        self._buffer_len = len(self._buffer)

        pos = 0
        while self._buffer_len - pos >= _HEADER.size:
            (length,) = _HEADER.unpack_from(self._buffer, pos)
            end = pos + _HEADER.size + length
            if self._buffer_len < end:
                break
            self.process_packet(self._buffer[pos + _HEADER.size : end])
            pos = end

        self._remove_from_buffer(pos)

    def connection_lost(self, exc) -> None:
        _LOGGER.debug("Cast connection lost: %s", exc)
        self._transport = None
        self._buffer = None
        self._buffer_len = 0
        self._closed(exc)

    # -------------------------------------------------------------------------

    def process_packet(self, packet_data: bytes) -> None:
        msg = CastMessage.FromString(packet_data)
        if msg.payload_type != CastMessage.STRING:
            _LOGGER.debug("Ignoring binary message on %s", msg.namespace)
            return

        try:
            message = json.loads(msg.payload_utf8)
        except ValueError:
            _LOGGER.warning("Invalid JSON on %s: %r", msg.namespace, msg.payload_utf8[:200])
            return

        if not isinstance(message, dict):
            return

        self._route(msg.source_id, msg.destination_id, msg.namespace, message)

    def _remove_from_buffer(self, end_of_frame_pos: int) -> None:
        self._buffer_len -= end_of_frame_pos
        if self._buffer_len == 0:
            self._buffer = None
            return
        if TYPE_CHECKING:
            assert self._buffer is not None, "Buffer should be set"
        self._buffer = self._buffer[end_of_frame_pos:]

