from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional, Set

from zeroconf import ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from .models import ReceiverAnnouncement
from .registry import DeviceRegistry

_LOGGER = logging.getLogger(__name__)

CAST_SERVICE = "_googlecast._tcp.local."
SWEEP_SECONDS = 30.0


def _decode_properties(props: Optional[Dict[bytes, Optional[bytes]]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    if not props:
        return out
    for k, v in props.items():
        if isinstance(k, bytes):
            ks = k.decode("utf-8", errors="ignore")
        else:
            ks = str(k)
        if v is None:
            vs = ""
        elif isinstance(v, bytes):
            vs = v.decode("utf-8", errors="ignore")
        else:
            vs = str(v)
        out[ks] = vs
    return out


class ReceiverDiscovery:
    """
    Browses mDNS for cast receivers and keeps the registry fresh.

    Service type: `_googlecast._tcp.local.`
    TXT keys used: `id` (stable id), `fn` (friendly name), `md` (model)

    Runs independently of the session: it only ever writes to the registry
    and calls ``on_change`` when the device list changed.
    """

    def __init__(
        self,
        *,
        registry: DeviceRegistry,
        on_change: Callable[[], None],
        sweep_seconds: float = SWEEP_SECONDS,
        service_type: str = CAST_SERVICE,
    ) -> None:
        self._registry = registry
        self._on_change = on_change
        self._sweep_seconds = sweep_seconds
        self._service_type = service_type

        self._azc: Optional[AsyncZeroconf] = None
        self._browser: Optional[AsyncServiceBrowser] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._azc is not None

    async def start(self) -> None:
        if self._azc is not None:
            return
        self._azc = AsyncZeroconf()
        self._start_browser()
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        _LOGGER.info("Discovering receivers (%s)", self._service_type)

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None
        await self._cancel_browser()
        for task in list(self._pending):
            task.cancel()
        azc = self._azc
        self._azc = None
        if azc is not None:
            await azc.async_close()

    async def refresh(self) -> None:
        """Restart the browser so every receiver is queried again."""
        if self._azc is None:
            return
        _LOGGER.info("Manual discovery refresh")
        await self._cancel_browser()
        self._start_browser()

    # -------------------------------------------------------------------------

    def _start_browser(self) -> None:
        if self._azc is None:
            return
        self._browser = AsyncServiceBrowser(
            self._azc.zeroconf,
            self._service_type,
            handlers=[self._on_state_change],
        )

    async def _cancel_browser(self) -> None:
        browser = self._browser
        self._browser = None
        if browser is None:
            return
        try:
            await browser.async_cancel()
        except Exception:
            _LOGGER.debug("Failed to cancel mDNS browser", exc_info=True)

    # IMPORTANT: zeroconf calls handlers using keyword args.
    # So this handler must accept those parameter names.
    def _on_state_change(
        self, zeroconf, service_type: str, name: str, state_change: ServiceStateChange
    ) -> None:
        if state_change not in (ServiceStateChange.Added, ServiceStateChange.Updated):
            return
        task = asyncio.create_task(self._resolve(zeroconf, service_type, name))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _resolve(self, zeroconf, service_type: str, name: str) -> None:
        try:
            info = AsyncServiceInfo(service_type, name)
            ok = await info.async_request(zeroconf, timeout=1500)
            if not ok:
                _LOGGER.debug("No mDNS answer for %s", name)
                return

            announcement = ReceiverAnnouncement(
                name=name,
                addresses=info.parsed_addresses(),
                port=int(info.port) if info.port else None,
                host=(info.server or "").rstrip(".") or None,
                properties=_decode_properties(info.properties),
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            _LOGGER.debug("Receiver discovery error for %s", name, exc_info=True)
            return

        self.handle_announcement(announcement)

    def handle_announcement(self, announcement: ReceiverAnnouncement) -> None:
        _LOGGER.debug(
            "mDNS update %s addresses=%s txt=%s",
            announcement.name,
            announcement.addresses,
            announcement.properties,
        )
        device = self._registry.register(announcement)
        if device is not None:
            _LOGGER.info("Receiver %s at %s:%s", device.friendly_name, device.address, device.port)
            self._on_change()

    def sweep(self, now: Optional[float] = None) -> bool:
        removed = self._registry.purge_stale(now)
        if removed:
            self._on_change()
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_seconds)
            try:
                self.sweep()
            except Exception:
                _LOGGER.exception("Receiver sweep failed")
