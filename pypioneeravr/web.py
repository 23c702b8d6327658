"""HTTP control through the receiver's built-in web interface.

Some models accept the same command strings as the telnet port at
``/EventHandler.asp?WebToHostItem=<cmd>``. ``/StatusHandler.asp`` answering
200 means the interface is switched on.
"""

import asyncio
import logging
from typing import Optional

import aiohttp
from aiohttp.client_exceptions import ClientError

STATUS_PATH = "/StatusHandler.asp"
EVENT_PATH = "/EventHandler.asp"

# Commands the web interface is used for when enabled
WEB_COMMANDS = ("PO", "PF", "MO", "MF", "VU", "VD")


def accepts(command: str) -> bool:
    return command in WEB_COMMANDS or (len(command) == 4 and command.endswith("FN"))


class WebInterface:

    TIMEOUT = aiohttp.ClientTimeout(total=5)

    def __init__(self, host: str, base_url: Optional[str] = None):
        self._logger = logging.getLogger(__name__)
        self._base_url = (base_url or f"http://{host}").rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None
        self.enabled = False

    @property
    def base_url(self) -> str:
        return self._base_url

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.TIMEOUT)
        return self._session

    async def probe(self) -> bool:
        """Check whether the web interface answers; sets :attr:`enabled`."""
        url = f"{self._base_url}{STATUS_PATH}"
        try:
            async with self._get_session().get(url) as response:
                self.enabled = response.status == 200
        except (ClientError, asyncio.TimeoutError) as e:
            self._logger.debug(f"Web interface probe failed: {e!r}")
            self.enabled = False
        self._logger.info(f"Web interface {'enabled' if self.enabled else 'not available'} at {self._base_url}")
        return self.enabled

    async def send(self, command: str):
        """Send one command. Raises :class:`aiohttp.ClientError` on failure."""
        url = f"{self._base_url}{EVENT_PATH}"
        self._logger.debug(f"SEND (web): {command}")
        async with self._get_session().get(url, params={"WebToHostItem": command}) as response:
            response.raise_for_status()

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
