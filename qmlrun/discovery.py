"""Device discovery over mDNS.

Devices in developer mode announce ``_fbx-devel._tcp.local.``.  A discovery
session browses for that service type for a bounded time and collects the
unique device addresses it hears about:

  1. the browser is started and advertisements start flowing in from the
     zeroconf thread;
  2. each advertisement is handed over to the event loop, where new
     addresses are recorded (tagged with the local interface address
     used to reach them, when known);
  3. the session resolves as soon as ``max_count`` devices are recorded, or
     with whatever was found when the timeout expires.

A timeout is not an error: an empty list simply means nothing answered.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from zeroconf import IPVersion, ServiceBrowser, ServiceStateChange, Zeroconf

from qmlrun.errors import DeviceConnectionError
from qmlrun.netif import interface_for_address, resolve_interface_address

logger = logging.getLogger(__name__)

DEVICE_SERVICE_TYPE = "_fbx-devel._tcp.local."
DEFAULT_SEARCH_TIMEOUT = 5.0


@dataclass(frozen=True)
class DeviceRecord:
    """A device found during one discovery session."""

    address: str
    interface_address: Optional[str] = None


@dataclass
class Advertisement:
    """One service announcement, reduced to what discovery needs."""

    name: str
    addresses: list[str] = field(default_factory=list)
    network_interface: Optional[str] = None


AdvertisementHandler = Callable[[Advertisement], None]


class DeviceBrowser:
    """Zeroconf browser for developer-mode device announcements.

    Callbacks run on the zeroconf thread; callers are responsible for
    handing advertisements over to their own execution context.
    """

    def __init__(self, service_type: str = DEVICE_SERVICE_TYPE) -> None:
        self.service_type = service_type
        self._zeroconf: Optional[Zeroconf] = None
        self._browser: Optional[ServiceBrowser] = None
        self._on_advertisement: Optional[AdvertisementHandler] = None

    def start(self, on_advertisement: AdvertisementHandler) -> None:
        self._on_advertisement = on_advertisement
        self._zeroconf = Zeroconf()
        self._browser = ServiceBrowser(
            self._zeroconf,
            self.service_type,
            handlers=[self._on_state_change],
        )
        logger.debug("mDNS: browser ready for %s", self.service_type)

    def stop(self) -> None:
        if self._browser:
            self._browser.cancel()
            self._browser = None
        if self._zeroconf:
            self._zeroconf.close()
            self._zeroconf = None
        self._on_advertisement = None

    def _on_state_change(
        self, zeroconf: Zeroconf, service_type: str,
        name: str, state_change: ServiceStateChange,
    ) -> None:
        if state_change not in (ServiceStateChange.Added, ServiceStateChange.Updated):
            return
        info = zeroconf.get_service_info(service_type, name)
        if info is None:
            return
        addresses = info.parsed_addresses(IPVersion.V4Only)
        interface = interface_for_address(addresses[0]) if addresses else None
        advertisement = Advertisement(
            name=name, addresses=addresses, network_interface=interface
        )
        logger.debug("mDNS: advertisement %s", advertisement)
        handler = self._on_advertisement
        if handler is not None:
            handler(advertisement)


class DiscoverySession:
    """State of one bounded discovery run.

    Exactly one terminal transition happens (quota reached, timeout, or
    cancellation); the browser handle is dropped at that point so any
    late advertisement or timer is ignored.
    """

    def __init__(
        self,
        browser: DeviceBrowser,
        timeout: float = DEFAULT_SEARCH_TIMEOUT,
        max_count: int = 0,
    ) -> None:
        self.timeout = timeout
        self.max_count = max_count
        self.records: list[DeviceRecord] = []
        self._found: set[str] = set()
        self._browser: Optional[DeviceBrowser] = browser
        self._timer: Optional[asyncio.TimerHandle] = None
        self._done: Optional[asyncio.Future] = None

    @property
    def active(self) -> bool:
        return self._browser is not None

    async def run(self) -> list[DeviceRecord]:
        loop = asyncio.get_running_loop()
        self._done = loop.create_future()
        if self._browser is None:
            raise RuntimeError("discovery session already finished")

        def _deliver(advertisement: Advertisement) -> None:
            loop.call_soon_threadsafe(self.handle_advertisement, advertisement)

        try:
            try:
                self._browser.start(_deliver)
            except OSError as exc:
                raise DeviceConnectionError(f"Cannot start mDNS browser: {exc}") from exc
            self._timer = loop.call_later(self.timeout, self._on_timeout)
            return await self._done
        finally:
            self._finish()

    def handle_advertisement(self, advertisement: Advertisement) -> None:
        if self._browser is None:
            return
        if not advertisement.addresses:
            return

        interface_address = resolve_interface_address(advertisement.network_interface)
        for address in advertisement.addresses:
            if address in self._found:
                continue
            self._found.add(address)
            self.records.append(DeviceRecord(address, interface_address))
            logger.info(
                "Found device at %s (via %s)", address, interface_address or "default route"
            )
            if self._quota_reached():
                break

        if self._quota_reached():
            self._finish()

    def _quota_reached(self) -> bool:
        return self.max_count > 0 and len(self.records) >= self.max_count

    def _on_timeout(self) -> None:
        if self._browser is None:
            return
        logger.debug("Discovery timed out after %.1fs with %d device(s)",
                     self.timeout, len(self.records))
        self._finish()

    def _finish(self) -> None:
        browser = self._browser
        if browser is None:
            return
        self._browser = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        browser.stop()
        if self._done is not None and not self._done.done():
            self._done.set_result(list(self.records))


async def discover(
    timeout: Optional[float] = DEFAULT_SEARCH_TIMEOUT,
    max_count: int = 0,
    browser: Optional[DeviceBrowser] = None,
) -> list[DeviceRecord]:
    """Browse for devices for up to *timeout* seconds.

    ``max_count=0`` collects until the timeout; otherwise the search stops as
    soon as that many distinct devices have been seen.  A timeout of ``None``
    or ``0`` means the default five seconds.
    """
    timeout = timeout or DEFAULT_SEARCH_TIMEOUT
    if max_count < 0:
        raise ValueError("max_count must be >= 0")
    logger.debug("Searching for devices: timeout=%.1fs max_count=%d", timeout, max_count)
    session = DiscoverySession(browser or DeviceBrowser(), timeout, max_count)
    return await session.run()


search = discover
