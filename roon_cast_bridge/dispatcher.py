"""
Playback dispatcher.

Turns Roon playback events into receiver messages. Short "stopped" or
"paused" blips during a track change must not tear the receiver app down,
so a stop only happens once an inactive state has lasted for the debounce
window without any newer playing/transitional event.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

from .cast.models import MessageKind
from .cast.session import CastSession
from .event_bus import EventBus, EventHandler, subscribe

_LOGGER = logging.getLogger(__name__)

STOP_DEBOUNCE_SECONDS = 2.0

# States a NOW_PLAYING event is still forwarded in
_FORWARDED_NOW_PLAYING_STATES = ("playing", "loading", "stopped")


class PlaybackDispatcher(EventHandler):
    """Listens to `roon_now_playing` / `roon_core_unavailable` and drives the session."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        event_bus: EventBus,
        session: CastSession,
        stop_debounce_seconds: float = STOP_DEBOUNCE_SECONDS,
    ) -> None:
        super().__init__(event_bus)
        self._loop = loop
        self._session = session
        self._stop_debounce_seconds = stop_debounce_seconds

        self._stop_timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

        self._subscribe_all_methods()

    @property
    def stop_pending(self) -> bool:
        return self._stop_timer is not None

    # -------------------------------------------------------------------------
    # EventBus
    # -------------------------------------------------------------------------

    @subscribe
    def roon_now_playing(self, data: dict) -> None:
        payload = data.get("payload")
        if not payload:
            return
        # Track data means NOW_PLAYING even when the zone briefly reports "stopped"
        if payload.get("now_playing") or payload.get("state") == "playing":
            self.handle_now_playing(payload)
        else:
            self.handle_state(payload)

    @subscribe
    def roon_core_unavailable(self, _data: Optional[dict] = None) -> None:
        _LOGGER.info("Roon core unavailable; stopping receiver app")
        self.cancel_stop()
        self._spawn(self._session.stop())

    # -------------------------------------------------------------------------
    # Policy
    # -------------------------------------------------------------------------

    def handle_now_playing(self, payload: Optional[dict]) -> None:
        if not self._session.selected_device_id or not payload:
            return

        if self._stop_timer is not None:
            _LOGGER.info("Canceling pending stop, received now-playing data")
            self.cancel_stop()

        state = payload.get("state")
        if state and state not in _FORWARDED_NOW_PLAYING_STATES:
            _LOGGER.info("Skip NOW_PLAYING while state %s", state)
            return

        self._spawn(self._forward(MessageKind.NOW_PLAYING, payload))

    def handle_state(self, payload: Optional[dict]) -> None:
        if not self._session.selected_device_id or not payload:
            return

        state = payload.get("state")
        is_playing = state == "playing"
        is_transitioning = state == "loading" or not state

        if is_playing or is_transitioning:
            if self._stop_timer is not None:
                _LOGGER.info("Canceling pending stop, state is %s", state)
                self.cancel_stop()
            self._spawn(self._forward(MessageKind.STATE, payload))
            return

        if self._stop_timer is not None:
            # Already scheduled
            return

        _LOGGER.info(
            "Scheduling stop in %.1f seconds due to state %s",
            self._stop_debounce_seconds,
            state,
        )
        self._stop_timer = self._loop.call_later(self._stop_debounce_seconds, self._fire_stop)

    def cancel_stop(self) -> None:
        if self._stop_timer is not None:
            self._stop_timer.cancel()
            self._stop_timer = None

    def _fire_stop(self) -> None:
        self._stop_timer = None
        _LOGGER.info("Executing delayed stop")
        self._spawn(self._session.stop())

    async def _forward(self, kind: MessageKind, payload: dict) -> None:
        message = self._session.prepare(kind.value, payload)
        try:
            await self._session.ensure_launched()
            self._session.transmit(message)
        except Exception as err:
            self._session.handle_transport_error(err)

    # -------------------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            _LOGGER.error("Dispatcher task failed", exc_info=error)

    async def close(self) -> None:
        self.cancel_stop()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
