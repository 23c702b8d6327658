"""Finding a receiver again after its address changed.

Pioneer network receivers advertise AirPlay (``_raop._tcp.local.``) over
mDNS. The service name carries the device's friendly name, so a receiver that
came back on a new DHCP lease can be found by name and then checked for an
open telnet port.
"""

import asyncio
import logging
from typing import Any, Optional, Sequence

from zeroconf import ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

_LOGGER = logging.getLogger(__name__)

RAOP_SERVICE_TYPE = "_raop._tcp.local."
TELNET_PORTS = (23, 24, 8102)


async def is_port_open(host: str, port: int, timeout: float = 1.5) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def check_ports(host: str, ports: Sequence[int] = TELNET_PORTS, timeout: float = 1.5) -> Optional[int]:
    """First of ``ports`` that accepts a TCP connection on ``host``."""
    for port in ports:
        if await is_port_open(host, port, timeout):
            _LOGGER.debug(f"{host}:{port} is open")
            return port
    return None


async def find_devices(timeout: float = 5.0, service_type: str = RAOP_SERVICE_TYPE) -> dict[str, list[str]]:
    """Browse mDNS for ``timeout`` seconds; returns service name -> addresses."""
    found: dict[str, list[str]] = {}
    azc = AsyncZeroconf()
    zc = azc.zeroconf
    pending: set[asyncio.Task] = set()

    async def _resolve(name: str):
        try:
            info = AsyncServiceInfo(service_type, name)
            if not await info.async_request(zc, timeout=1500):
                return
            addresses = info.parsed_addresses()
            if addresses:
                found[name] = addresses
                _LOGGER.debug(f"Discovered {name} -> {addresses}")
        except Exception:
            _LOGGER.debug(f"Failed to resolve {name}", exc_info=True)

    def _on_change(zeroconf: Any, service_type: str, name: str, state_change: ServiceStateChange):
        if state_change == ServiceStateChange.Added:
            task = asyncio.get_running_loop().create_task(_resolve(name))
            pending.add(task)
            task.add_done_callback(pending.discard)

    browser = AsyncServiceBrowser(zc, service_type, handlers=[_on_change])
    try:
        await asyncio.sleep(timeout)
        if pending:
            await asyncio.wait(list(pending), timeout=2.0)
    finally:
        await browser.async_cancel()
        await azc.async_close()
    return found


def matches_name(service_name: str, name_hint: Optional[str]) -> bool:
    """AirPlay names look like ``<MAC>@<friendly name>._raop._tcp.local.``."""
    if not name_hint:
        return True
    friendly = service_name.split("@", 1)[-1]
    return name_hint.lower() in friendly.lower()


async def find_replacement_address(
    name_hint: Optional[str], ports: Sequence[int] = TELNET_PORTS, browse_timeout: float = 5.0
) -> Optional[tuple[str, int]]:
    """Look for the receiver named ``name_hint`` and return a reachable (host, port)."""
    _LOGGER.info(f"Searching network for {name_hint or 'any receiver'}")
    devices = await find_devices(browse_timeout)
    for service_name, addresses in sorted(devices.items()):
        if not matches_name(service_name, name_hint):
            continue
        for address in addresses:
            port = await check_ports(address, ports)
            if port is not None:
                _LOGGER.info(f"Found {service_name} at {address}:{port}")
                return address, port
    _LOGGER.info(f"No reachable receiver matching {name_hint!r} found")
    return None
