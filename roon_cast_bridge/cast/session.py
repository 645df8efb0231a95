"""
Cast session state machine.

Owns the connection to the selected receiver:

    idle -> connecting -> connected -> app-ready
              \\___________\\___________\\____-> disconnected

Receiver status reports are the only thing that binds the application
channels. Launch requests are deduplicated and time out; recoverable
transport failures schedule a reconnect.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

from ..event_bus import EventBus
from .exceptions import (
    CastError,
    ChannelUnavailableError,
    LaunchError,
    LaunchTimeoutError,
    is_broken_pipe,
)
from .models import CastStatus, Device
from .registry import DeviceRegistry
from .sanitizer import sanitize, wrap
from .transport import (
    NS_CONNECTION,
    NS_HEARTBEAT,
    NS_RECEIVER,
    PLATFORM_RECEIVER_ID,
    SENDER_ID,
    CastSocket,
    CastTransport,
    Channel,
)

_LOGGER = logging.getLogger(__name__)

MAX_MESSAGE_BYTES = 60 * 1024
HEARTBEAT_SECONDS = 5.0
LAUNCH_TIMEOUT_SECONDS = 10.0
APP_RECONNECT_DELAY = 1.0
PIPE_RECONNECT_DELAY = 2.0
PAUSE_SETTLE_SECONDS = 0.1
STOP_SETTLE_SECONDS = 0.2


@dataclass
class _PendingLaunch:
    request_id: int
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None


@dataclass
class _Channels:
    connection: Optional[Channel] = None
    receiver: Optional[Channel] = None
    heartbeat: Optional[Channel] = None
    app_connection: Optional[Channel] = None
    custom: Optional[Channel] = None


class CastSession:
    """One stateful connection to the selected receiver."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        event_bus: EventBus,
        registry: DeviceRegistry,
        app_id: str,
        namespace: str,
        transport_factory: Callable[[], CastTransport] = CastSocket,
        max_message_bytes: int = MAX_MESSAGE_BYTES,
        heartbeat_seconds: float = HEARTBEAT_SECONDS,
        launch_timeout_seconds: float = LAUNCH_TIMEOUT_SECONDS,
        app_reconnect_delay: float = APP_RECONNECT_DELAY,
        pipe_reconnect_delay: float = PIPE_RECONNECT_DELAY,
        pause_settle_seconds: float = PAUSE_SETTLE_SECONDS,
        stop_settle_seconds: float = STOP_SETTLE_SECONDS,
    ) -> None:
        self._loop = loop
        self._event_bus = event_bus
        self._registry = registry
        self.app_id = app_id
        self.namespace = namespace
        self._transport_factory = transport_factory

        self.max_message_bytes = max_message_bytes
        self._heartbeat_seconds = heartbeat_seconds
        self._launch_timeout_seconds = launch_timeout_seconds
        self._app_reconnect_delay = app_reconnect_delay
        self._pipe_reconnect_delay = pipe_reconnect_delay
        self._pause_settle_seconds = pause_settle_seconds
        self._stop_settle_seconds = stop_settle_seconds

        self.selected_device_id: Optional[str] = None
        self.status: CastStatus = CastStatus.IDLE

        self._transport: Optional[CastTransport] = None
        self._connecting: Optional[asyncio.Future] = None
        self._channels = _Channels()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self.transport_id: Optional[str] = None

        self._pending_launch: Optional[_PendingLaunch] = None
        self._stopping: Optional[asyncio.Future] = None
        self._request_ids = itertools.count(1)

        self.last_message: Optional[Dict[str, Any]] = None
        self._last_message_sent = False

        self._recovery_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def _set_status(self, status: CastStatus) -> None:
        self.status = status
        _LOGGER.debug("Cast status -> %s", status.value)
        self._event_bus.publish("cast_status", {"status": status.value})

    def _publish_error(self, error: Any) -> None:
        message = str(error) or error.__class__.__name__
        self._event_bus.publish("cast_error", {"message": message})

    def _create_task(self, coro) -> asyncio.Task:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def connected(self) -> bool:
        return self._transport is not None

    @property
    def app_ready(self) -> bool:
        return self.transport_id is not None and self._channels.custom is not None

    @property
    def launch_pending(self) -> bool:
        return self._pending_launch is not None

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def select(self, device_id: Optional[str]) -> None:
        """Point the session at another receiver (None deselects)."""
        if device_id == self.selected_device_id:
            return
        if self._transport is not None or self._connecting is not None:
            self.disconnect()
        self.selected_device_id = device_id
        if device_id is None:
            self.last_message = None
            self._set_status(CastStatus.IDLE)

    def _selected_device(self) -> Device:
        if not self.selected_device_id:
            raise CastError("No Chromecast selected")
        device = self._registry.get(self.selected_device_id)
        if device is None:
            raise CastError("Selected Chromecast not available")
        return device

    # -------------------------------------------------------------------------
    # Connect / disconnect
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the transport and platform channels unless already open."""
        device = self._selected_device()

        if self._connecting is not None:
            await asyncio.shield(self._connecting)
            return

        if self._transport is not None:
            _LOGGER.debug("Reusing existing receiver connection")
            return

        connecting = self._loop.create_future()
        self._connecting = connecting
        try:
            await self._open(device)
        except asyncio.CancelledError:
            connecting.cancel()
            raise
        except Exception as err:
            if not connecting.done():
                connecting.set_exception(err)
                # The caller re-raises; other waiters saw it via the shield
                connecting.exception()
            raise
        else:
            if not connecting.done():
                connecting.set_result(None)
        finally:
            if self._connecting is connecting:
                self._connecting = None

    async def _open(self, device: Device) -> None:
        _LOGGER.info("Connecting to %s (%s:%s)", device.friendly_name, device.address, device.port)
        self._set_status(CastStatus.CONNECTING)

        transport = self._transport_factory()
        self._transport = transport
        transport.on_close(lambda exc, t=transport: self._handle_transport_closed(t, exc))

        try:
            await transport.connect(device.address, device.port)
            if self._transport is not transport:
                transport.close()
                raise CastError("Connection superseded")

            channels = self._channels
            channels.connection = transport.create_channel(SENDER_ID, PLATFORM_RECEIVER_ID, NS_CONNECTION)
            channels.receiver = transport.create_channel(SENDER_ID, PLATFORM_RECEIVER_ID, NS_RECEIVER)
            channels.heartbeat = transport.create_channel(SENDER_ID, PLATFORM_RECEIVER_ID, NS_HEARTBEAT)

            channels.connection.send({"type": "CONNECT"})
            channels.heartbeat.on_message(self._handle_heartbeat_message)
            self._heartbeat_task = self._loop.create_task(self._heartbeat_loop(channels.heartbeat))

            channels.receiver.on_message(self._handle_receiver_message)
            channels.receiver.send({"type": "GET_STATUS", "requestId": next(self._request_ids)})
        except asyncio.CancelledError:
            if self._transport is transport:
                self.disconnect()
            raise
        except Exception as err:
            _LOGGER.warning("Connection to %s failed: %s", device.address, err)
            if self._transport is transport:
                self.disconnect()
            raise

        _LOGGER.info("Connected to %s", device.friendly_name)
        self._set_status(CastStatus.CONNECTED)

    def disconnect(self) -> None:
        """Tear down the transport and everything bound to it."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

        transport = self._transport
        self._transport = None
        # An in-flight connect notices it was superseded and fails on its own
        self._connecting = None
        if transport is not None:
            try:
                transport.close()
            except Exception:
                _LOGGER.debug("Transport close failed", exc_info=True)

        self._fail_pending_launch(LaunchError("Receiver connection closed"))

        self._channels = _Channels()
        self.transport_id = None
        self._set_status(
            CastStatus.DISCONNECTED if self.selected_device_id else CastStatus.IDLE
        )

    def _handle_transport_closed(self, transport: CastTransport, exc: Optional[Exception]) -> None:
        if transport is not self._transport:
            return
        _LOGGER.info("Receiver connection closed: %s", exc or "remote close")
        self.disconnect()

    async def _heartbeat_loop(self, channel: Channel) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_seconds)
            try:
                channel.send({"type": "PING"})
            except Exception as err:
                _LOGGER.debug("Heartbeat failed: %s", err)
                self._publish_error(err)

    def _handle_heartbeat_message(self, message: dict) -> None:
        if message.get("type") == "PING" and self._channels.heartbeat is not None:
            try:
                self._channels.heartbeat.send({"type": "PONG"})
            except Exception:
                _LOGGER.debug("Failed to answer receiver PING", exc_info=True)

    # -------------------------------------------------------------------------
    # Receiver status / application binding
    # -------------------------------------------------------------------------

    def _handle_receiver_message(self, message: dict) -> None:
        msg_type = message.get("type")
        if not msg_type:
            return
        _LOGGER.debug("Receiver message: %s", message)

        if msg_type == "RECEIVER_STATUS":
            self.process_receiver_status(message.get("status"))
        elif msg_type == "LAUNCH_ERROR":
            reason = message.get("reason") or "Chromecast launch error"
            _LOGGER.error("Launch error: %s", reason)
            self._fail_pending_launch(LaunchError(reason))

    def process_receiver_status(self, status: Optional[dict]) -> None:
        applications = (status or {}).get("applications")
        if not applications:
            self.reset_application_state()
            return

        app = next(
            (entry for entry in applications if entry.get("appId") == self.app_id),
            None,
        )
        if app is None:
            self.reset_application_state()
            self._fail_pending_launch(LaunchError("Receiver app not running"))
            return

        transport_id = app.get("transportId")
        if transport_id and transport_id != self.transport_id:
            self.transport_id = transport_id
            self._bind_application_channels()

        pending = self._pending_launch
        if pending is not None:
            self._pending_launch = None
            if pending.timer is not None:
                pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_result(None)

    def _bind_application_channels(self) -> None:
        transport = self._transport
        if transport is None or not self.transport_id:
            return

        self._close_application_channels()
        _LOGGER.info("Binding application channels (transport %s)", self.transport_id)

        app_connection = transport.create_channel(SENDER_ID, self.transport_id, NS_CONNECTION)
        custom = transport.create_channel(SENDER_ID, self.transport_id, self.namespace)
        custom.on_message(self._handle_custom_message)
        self._channels.app_connection = app_connection
        self._channels.custom = custom

        app_connection.send({"type": "CONNECT"})
        self._set_status(CastStatus.APP_READY)
        self.flush_last_message()

    def _close_application_channels(self) -> None:
        for channel in (self._channels.app_connection, self._channels.custom):
            if channel is not None:
                channel.close()
        self._channels.app_connection = None
        self._channels.custom = None

    def reset_application_state(self) -> None:
        was_ready = self.status == CastStatus.APP_READY
        self.transport_id = None
        self._close_application_channels()
        if was_ready and self._transport is not None:
            self._set_status(CastStatus.CONNECTED)

    def _handle_custom_message(self, message: dict) -> None:
        self._event_bus.publish("cast_message", {"message": message})

    # -------------------------------------------------------------------------
    # Launch
    # -------------------------------------------------------------------------

    async def ensure_launched(self) -> None:
        """Connect if needed and make sure the receiver app is bound."""
        if self._stopping is not None:
            # Relaunch only once the running stop has torn the app down
            await asyncio.shield(self._stopping)
        await self.connect()
        if self.app_ready:
            return
        receiver = self._channels.receiver
        if receiver is None:
            raise ChannelUnavailableError("Receiver channel not established")

        pending = self._pending_launch
        if pending is None:
            request_id = next(self._request_ids)
            pending = _PendingLaunch(request_id=request_id, future=self._loop.create_future())
            self._pending_launch = pending
            try:
                receiver.send({"type": "LAUNCH", "appId": self.app_id, "requestId": request_id})
            except Exception:
                self._pending_launch = None
                raise
            pending.timer = self._loop.call_later(
                self._launch_timeout_seconds, self._launch_timed_out, pending
            )
            _LOGGER.info("Launching receiver app %s (request %s)", self.app_id, request_id)

        await asyncio.shield(pending.future)

    def _launch_timed_out(self, pending: _PendingLaunch) -> None:
        if self._pending_launch is not pending:
            return
        _LOGGER.warning("Launch request %s timed out", pending.request_id)
        self._fail_pending_launch(LaunchTimeoutError("Chromecast launch timeout"))

    def _fail_pending_launch(self, error: Exception) -> None:
        pending = self._pending_launch
        if pending is None:
            return
        self._pending_launch = None
        if pending.timer is not None:
            pending.timer.cancel()
        if not pending.future.done():
            pending.future.set_exception(error)
            # Retrieved here so an unawaited failure is not reported as lost
            pending.future.exception()

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def prepare(self, kind: str, payload: Optional[dict]) -> Dict[str, Any]:
        """Sanitize ``payload`` and keep it as the message to resend."""
        message = wrap(kind, sanitize(kind, payload, self.max_message_bytes))
        self.last_message = message
        self._last_message_sent = False
        return message

    def transmit(self, message: Dict[str, Any]) -> None:
        """Send a prepared message on the custom channel."""
        custom = self._channels.custom
        if custom is None or not self.app_ready:
            raise ChannelUnavailableError("Custom channel unavailable")
        if message is not self.last_message:
            _LOGGER.debug("Dropping superseded %s message", message.get("type"))
            return
        if self._last_message_sent:
            # Already flushed when the channel was bound
            return
        custom.send(message)
        self._last_message_sent = True

    def send(self, kind: str, payload: Optional[dict]) -> Dict[str, Any]:
        """Sanitize, remember and send; the app must already be launched."""
        if not self.app_ready:
            raise ChannelUnavailableError("Custom channel unavailable")
        message = self.prepare(kind, payload)
        self.transmit(message)
        return message

    def flush_last_message(self) -> None:
        custom = self._channels.custom
        if custom is None or self.last_message is None:
            return
        try:
            custom.send(self.last_message)
            self._last_message_sent = True
        except Exception as err:
            self.handle_transport_error(err)

    def clear_last_message(self) -> None:
        self.last_message = None
        self._last_message_sent = False

    # -------------------------------------------------------------------------
    # Stop
    # -------------------------------------------------------------------------

    async def stop(self) -> None:
        """Best-effort shutdown of the receiver app; the connection stays up."""
        if self._stopping is not None:
            await asyncio.shield(self._stopping)
            return

        stopping = self._loop.create_future()
        self._stopping = stopping
        stopped_message = self.last_message
        try:
            await self._stop_application()
        finally:
            self._stopping = None
            stopping.set_result(None)

        self.transport_id = None
        self._close_application_channels()
        if self.last_message is stopped_message:
            self.clear_last_message()
        if not self.selected_device_id:
            self._set_status(CastStatus.IDLE)
        elif self._transport is not None:
            self._set_status(CastStatus.CONNECTED)

    async def _stop_application(self) -> None:
        custom = self._channels.custom
        if custom is not None:
            try:
                _LOGGER.info("Sending PAUSE to receiver")
                custom.send({"type": "PAUSE"})
                await asyncio.sleep(self._pause_settle_seconds)
            except Exception as err:
                _LOGGER.warning("Pause message error: %s", err)

        receiver = self._channels.receiver
        if receiver is not None:
            try:
                _LOGGER.info("Sending STOP to receiver")
                receiver.send({"type": "STOP", "appId": self.app_id, "requestId": next(self._request_ids)})
                await asyncio.sleep(self._stop_settle_seconds)
            except Exception as err:
                _LOGGER.warning("Stop cast error: %s", err)

        app_connection = self._channels.app_connection
        if app_connection is not None:
            try:
                app_connection.send({"type": "CLOSE"})
            except Exception as err:
                _LOGGER.debug("App connection close error: %s", err)

    # -------------------------------------------------------------------------
    # Failure handling
    # -------------------------------------------------------------------------

    def handle_transport_error(self, error: BaseException) -> None:
        """Surface ``error`` and schedule recovery for the known failure classes."""
        self._publish_error(error)

        if isinstance(error, ChannelUnavailableError):
            _LOGGER.warning("Application channel unavailable (%s); reconnecting", error)
            self.reset_application_state()
            self.disconnect()
            self._schedule_recovery(self._app_reconnect_delay, relaunch=True)
            return

        if is_broken_pipe(error):
            _LOGGER.warning("Broken pipe to receiver (%s); reconnecting", error)
            self.disconnect()
            self._schedule_recovery(self._pipe_reconnect_delay, relaunch=False)
            return

        _LOGGER.error("Cast error: %s", error)

    def _schedule_recovery(self, delay: float, *, relaunch: bool) -> None:
        if not self.selected_device_id:
            return
        if self._recovery_handle is not None:
            self._recovery_handle.cancel()
        self._recovery_handle = self._loop.call_later(delay, self._start_recovery, relaunch)

    def _start_recovery(self, relaunch: bool) -> None:
        self._recovery_handle = None
        if not self.selected_device_id:
            return
        self._create_task(self._recover(relaunch))

    async def _recover(self, relaunch: bool) -> None:
        try:
            await self.connect()
        except Exception as err:
            _LOGGER.warning("Reconnect failed: %s", err)
            self._publish_error(err)
            return
        if not relaunch:
            return
        try:
            await self.ensure_launched()
        except Exception as err:
            _LOGGER.warning("Relaunch failed: %s", err)
            self._publish_error(err)

    async def close(self) -> None:
        """Cancel timers and background work and drop the connection."""
        if self._recovery_handle is not None:
            self._recovery_handle.cancel()
            self._recovery_handle = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._transport is not None:
            self.disconnect()
