"""Pioneer AVR session - one receiver, one connection.

This module wires the pieces together:
- Connection (socket, reconnects, watchdogs) and its CommandQueue
- ResponseParser writing into DeviceState
- InputCatalog for input discovery
- MultiplexingListener for pushing state changes to applications
- State poller and post-connect initialisation
- Optional web-interface path for simple writes

Query verbs are coroutines that return once the receiver has answered.
Setter verbs return once the command has been written; the receiver's
unsolicited status line then updates the state and the listeners.
"""

import asyncio
import logging
import time
from asyncio import Task
from typing import Any, Awaitable, Callable, Optional, Sequence

from aiohttp.client_exceptions import ClientError

from pypioneeravr.catalog import InputCatalog
from pypioneeravr.command_queue import CommandQueue
from pypioneeravr.connection import DEFAULT_PORT, TELNET_PORTS, Connection, Rediscover
from pypioneeravr.discovery import find_replacement_address
from pypioneeravr.exceptions import AVRError, DeviceError
from pypioneeravr.listener import AVRListener, MultiplexingListener
from pypioneeravr.parser import (
    DisplayChanged,
    ErrorReported,
    InputChanged,
    InputDiscovered,
    InputMissing,
    ListeningModeChanged,
    MuteChanged,
    PowerChanged,
    ResponseParser,
    SENT_SUFFIX,
    VolumeChanged,
)
from pypioneeravr.state import INPUT_CANDIDATES, DeviceState, Input, sanitize_input_name
from pypioneeravr.web import WebInterface, accepts as web_accepts

REMOTE_KEYS = {
    "UP": "CUP",
    "DOWN": "CDN",
    "LEFT": "CLE",
    "RIGHT": "CRI",
    "ENTER": "CEN",
    "RETURN": "CRT",
    "HOME_MENU": "HM",
}

# Listening modes cycled by toggle_listening_mode
LISTENING_MODE_AUTO = "0013"
LISTENING_MODE_PRO_LOGIC = "0101"
LISTENING_MODE_EXTENDED_STEREO = "0112"


class PioneerAVR:
    """High-level control of one Pioneer receiver."""

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        min_volume: int = 0,
        max_volume: int = 60,
        name: Optional[str] = None,
        telnet_ports: Sequence[int] = TELNET_PORTS,
        max_reconnect_attempts: int = 10,
        rediscover: Optional[Rediscover] = find_replacement_address,
        enable_polling: bool = True,
        poll_interval: float = 29,
        use_web_interface: bool = False,
        discover_inputs: bool = True,
        input_candidates: Sequence[str] = INPUT_CANDIDATES,
    ):
        """Initialize the session.

        Args:
            host: Receiver hostname or IP
            port: Telnet port (23, some models use 24 or 8102)
            min_volume: Lower volume bound in percent of the native scale
            max_volume: Upper volume bound; 0-100% is stretched over min..max
            name: Device name used to find the receiver again via mDNS
            telnet_ports: Ports to check on a rediscovered address
            max_reconnect_attempts: Failed reconnects before rediscovery
            rediscover: Async (name, ports) -> (host, port) lookup, None to disable
            enable_polling: Whether to periodically refresh power and volume
            poll_interval: Seconds between polls
            use_web_interface: Send simple writes over HTTP when available
            discover_inputs: Whether to run input discovery after connecting
            input_candidates: Input codes probed during discovery
        """
        self._logger = logging.getLogger(__name__)
        self._name = name
        self._enable_polling = enable_polling
        self._poll_interval = poll_interval
        self._use_web_interface = use_web_interface
        self._discover_inputs = discover_inputs

        self._push_delay: float = 0.005
        self._power_refresh_delay: float = 0.5
        self._volume_refresh_delay: float = 1.0
        # Stop polling when nobody has touched the receiver for this long
        self._interaction_timeout: float = 48 * 60 * 60
        self._last_user_interaction: float = time.time()

        self.state = DeviceState(min_volume, max_volume)
        self._parser = ResponseParser(self.state)
        self._queue = CommandQueue()
        self._connection = Connection(
            host,
            port,
            line_handler=self._handle_line,
            name=name,
            telnet_ports=tuple(telnet_ports),
            max_reconnect_attempts=max_reconnect_attempts,
            rediscover=rediscover,
            queue=self._queue,
        )
        self._catalog = InputCatalog(self.state, self._connection, input_candidates)
        self._web: Optional[WebInterface] = WebInterface(host) if use_web_interface else None

        self._multiplex_callback = MultiplexingListener()
        self._catalog.add_ready_callback(self._on_inputs_ready)
        self._connection.add_on_connect_callback(self._on_connected)
        self._connection.add_on_disconnect_callback(self._on_disconnected)

        self._poll_task: Optional[Task[Any]] = None
        self._post_connect_task: Optional[Task[Any]] = None
        self._background_tasks: set[Task[Any]] = set()
        self._pending_pushes: dict[str, asyncio.TimerHandle] = {}

    # ========== Properties ==========

    @property
    def host(self) -> str:
        return self._connection.host

    @property
    def port(self) -> int:
        return self._connection.port

    @property
    def name(self) -> Optional[str]:
        return self._name

    @property
    def connected(self) -> bool:
        return self._connection.connected

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def catalog(self) -> InputCatalog:
        return self._catalog

    @property
    def web(self) -> Optional[WebInterface]:
        return self._web

    @property
    def inputs(self) -> list[Input]:
        return self.state.inputs

    @property
    def is_ready(self) -> bool:
        """Whether input discovery has completed."""
        return self._catalog.is_ready

    def register_listener(self, listener: AVRListener):
        """Register external listener for receiver events."""
        self._multiplex_callback.register_listener(listener)

    def unregister_listener(self, listener: AVRListener):
        """Unregister external listener."""
        self._multiplex_callback.unregister_listener(listener)

    # ========== Lifecycle ==========

    async def async_connect(self) -> bool:
        """Connect to the receiver. Returns False if it could not be reached.

        A failed connect keeps retrying in the background.
        """
        if self._web is not None and not self._web.enabled:
            await self._web.probe()
        return await self._connection.connect()

    def close(self):
        """Close the connection and stop reconnection attempts."""
        for task in [self._poll_task, self._post_connect_task, *self._background_tasks]:
            if task is not None and not task.done():
                task.cancel()
        self._catalog.stop()
        for handle in self._pending_pushes.values():
            handle.cancel()
        self._pending_pushes.clear()
        self._connection.close()

    async def async_close(self):
        self.close()
        if self._web is not None:
            await self._web.close()

    async def wait_for_inputs(self, timeout: float = 30.0) -> bool:
        """Wait until input discovery has completed."""
        return await self._catalog.wait_ready(timeout)

    def _on_connected(self):
        """Called by the connection once the socket is up."""
        self._logger.info(f"Receiver {self._name or self.host} connected")
        self._multiplex_callback.connected()
        if self.state.power is not None:
            self._schedule_push("power", self._push_power)

        loop = asyncio.get_running_loop()
        if self._post_connect_task is not None and not self._post_connect_task.done():
            self._post_connect_task.cancel()
        self._post_connect_task = loop.create_task(self._post_connect())
        if self._enable_polling:
            if self._poll_task is not None and not self._poll_task.done():
                self._poll_task.cancel()
            self._poll_task = loop.create_task(self._poll_state())

    def _on_disconnected(self):
        """Called by the connection when the socket is gone."""
        for task in (self._poll_task, self._post_connect_task):
            if task is not None and not task.done():
                task.cancel()
        self._catalog.stop()
        self._multiplex_callback.disconnected()
        # Unreachable receivers are reported as off
        self._multiplex_callback.power_changed(False)

    def _on_inputs_ready(self):
        self._multiplex_callback.inputs_ready()
        # The active input only resolves once the input table is filled
        self._run_later(0, self.update_input)

    async def _post_connect(self):
        try:
            await self.update_power()
            await self.update_listening_mode()
            await self._connection.send("0PKL")
            await self._connection.send("0RML")
            await self.update_input()
            await self.update_volume()
            await self.update_mute()
        except AVRError as e:
            self._logger.debug(f"Post-connect refresh incomplete: {e!r}")
        if self._discover_inputs and not self._catalog.is_ready:
            self._catalog.start()

    # ========== Inbound ==========

    def _handle_line(self, line: str):
        event = self._parser.parse(line)
        if event is None:
            return
        if isinstance(event, PowerChanged):
            self._schedule_push("power", self._push_power)
        elif isinstance(event, MuteChanged):
            self._schedule_push("mute", self._push_mute)
        elif isinstance(event, VolumeChanged):
            self._schedule_push("volume", self._push_volume)
        elif isinstance(event, InputChanged):
            if event.known:
                self._schedule_push("input", self._push_input)
        elif isinstance(event, ListeningModeChanged):
            self._multiplex_callback.listening_mode_changed(event.mode, event.family)
        elif isinstance(event, InputMissing):
            self._catalog.probe_answered(event.input_id)
        elif isinstance(event, InputDiscovered):
            self._catalog.probe_answered(event.input.id)
            if event.added:
                self._multiplex_callback.input_discovered(event.index, event.input)
        elif isinstance(event, DisplayChanged):
            self._multiplex_callback.display_changed(event.text)
        elif isinstance(event, ErrorReported):
            self._multiplex_callback.error(event.line)

    def _schedule_push(self, name: str, push: Callable[[], Any]):
        """Push once the value has settled; repeated updates within the delay coalesce."""
        handle = self._pending_pushes.pop(name, None)
        if handle is not None:
            handle.cancel()

        def _run():
            self._pending_pushes.pop(name, None)
            push()

        self._pending_pushes[name] = asyncio.get_running_loop().call_later(self._push_delay, _run)

    def _push_power(self):
        if self.state.power is not None:
            self._multiplex_callback.power_changed(self.state.power)

    def _push_mute(self):
        self._multiplex_callback.mute_changed(bool(self.state.muted))

    def _push_volume(self):
        self._multiplex_callback.volume_changed(self.state.volume)

    def _push_input(self):
        self._multiplex_callback.input_changed(self.state.active_input_index)

    # ========== Outbound helpers ==========

    async def _query(self, message: str, response_key: str) -> str:
        return await self._connection.send(message, response_key)

    async def _send(self, message: str) -> str:
        """Fire-and-forget write, over HTTP when the web interface is in use."""
        if self._web is not None and self._web.enabled and web_accepts(message):
            try:
                await self._web.send(message)
                return f"{message}{SENT_SUFFIX}"
            except (ClientError, asyncio.TimeoutError) as e:
                self._logger.warning(f"Web interface write of {message} failed ({e!r}), using telnet")
        return await self._connection.send(message)

    def _user_interaction(self):
        self._last_user_interaction = time.time()

    def _can_control(self, verb: str, require_power: bool = True) -> bool:
        if not self.connected:
            self._logger.debug(f"{verb} ignored: not connected")
            return False
        if require_power and not self.state.power:
            self._logger.debug(f"{verb} ignored: receiver is off")
            return False
        return True

    def _run_later(self, delay: float, refresh: Callable[[], Awaitable[Any]]):
        async def _delayed():
            await asyncio.sleep(delay)
            try:
                await refresh()
            except AVRError as e:
                self._logger.debug(f"Delayed refresh failed: {e!r}")

        task = asyncio.get_running_loop().create_task(_delayed())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # ========== Status queries ==========

    async def update_power(self) -> Optional[bool]:
        await self._query("?P", "PWR")
        return self.state.power

    async def update_volume(self) -> int:
        await self._query("?V", "VOL")
        return self.state.volume

    async def update_mute(self) -> Optional[bool]:
        await self._query("?M", "MUT")
        return self.state.muted

    async def update_input(self) -> int:
        await self._query("?F", "FN")
        return self.state.active_input_index

    async def update_listening_mode(self) -> Optional[str]:
        await self._query("?S", "SR")
        return self.state.listening_mode

    async def update_listening_mode_lm(self) -> Optional[str]:
        await self._query("?L", "LM")
        return self.state.listening_mode_lm

    async def power_status(self) -> Optional[bool]:
        if self.state.power is None:
            return await self.update_power()
        return self.state.power

    async def volume_status(self) -> int:
        if self.state.volume_raw is None:
            return await self.update_volume()
        return self.state.volume

    async def mute_status(self) -> Optional[bool]:
        if self.connected:
            return await self.update_mute()
        return self.state.muted

    async def input_status(self) -> int:
        return await self.update_input()

    # ========== Setters ==========

    async def power_on(self):
        self._user_interaction()
        if not self._can_control("power_on", require_power=False):
            return
        self._logger.info("Power on")
        await self._send("PO")
        self._run_later(self._power_refresh_delay, self.update_power)

    async def power_off(self):
        self._user_interaction()
        if not self._can_control("power_off", require_power=False):
            return
        self._logger.info("Power off")
        await self._send("PF")
        self._run_later(self._power_refresh_delay, self.update_power)

    async def set_volume(self, percent: int):
        """Set the volume in percent of the configured window."""
        self._user_interaction()
        if not self._can_control("set_volume"):
            return
        percent = min(max(int(percent), 0), 100)
        if percent == self.state.volume and self.state.volume_raw is not None:
            self._logger.debug(f"Volume already {percent}%, not sent")
            return
        command = self.state.volume_command(percent)
        self._logger.info(f"Volume request: {percent}% ({command})")
        await self._send(command)

    async def volume_up(self):
        self._user_interaction()
        if not self._can_control("volume_up"):
            return
        await self._send("VU")
        self._run_later(self._volume_refresh_delay, self._refresh_volume_and_mute)

    async def volume_down(self):
        self._user_interaction()
        if not self._can_control("volume_down"):
            return
        await self._send("VD")
        self._run_later(self._volume_refresh_delay, self._refresh_volume_and_mute)

    async def _refresh_volume_and_mute(self):
        await self.update_volume()
        await self.update_mute()

    async def mute_on(self):
        self._user_interaction()
        if not self._can_control("mute_on"):
            return
        if self.state.muted is True:
            self._logger.debug("Already muted")
            return
        await self._send("MO")

    async def mute_off(self):
        self._user_interaction()
        if not self._can_control("mute_off"):
            return
        if self.state.muted is False:
            self._logger.debug("Already unmuted")
            return
        await self._send("MF")

    async def set_input(self, input_id: str):
        self._user_interaction()
        if not self._can_control("set_input"):
            return
        self._logger.info(f"Input request: {input_id}")
        await self._send(f"{input_id}FN")

    async def rename_input(self, input_id: str, name: str):
        """Store a new name for ``input_id`` on the receiver."""
        self._user_interaction()
        if not self._can_control("rename_input"):
            return
        name = sanitize_input_name(name)
        await self._send(f"{name}1RGB{input_id}")
        index = self.state.find_input_index(input_id)
        if index != -1:
            self.state.inputs[index].name = name

    async def remote_key(self, key: str):
        """Press a remote-control key: UP, DOWN, LEFT, RIGHT, ENTER, RETURN or HOME_MENU."""
        command = REMOTE_KEYS.get(key.upper())
        if command is None:
            raise ValueError(f"Unknown remote key {key!r}, expected one of {', '.join(REMOTE_KEYS)}")
        self._user_interaction()
        if not self._can_control("remote_key"):
            return
        await self._send(command)

    async def toggle_listening_mode(self):
        """Switch between extended stereo and the receiver's default surround mode."""
        self._user_interaction()
        if not self._can_control("toggle_listening_mode"):
            return
        try:
            await self.update_listening_mode()
        except AVRError as e:
            self._logger.debug(f"Listening mode query failed: {e!r}")

        if self.state.listening_mode in (LISTENING_MODE_AUTO, LISTENING_MODE_PRO_LOGIC):
            await self._send(f"{LISTENING_MODE_EXTENDED_STEREO}SR")
            return
        try:
            await self._connection.send(f"!{LISTENING_MODE_AUTO}SR", "SR")
        except DeviceError as e:
            self._logger.debug(f"Auto surround not available ({e.line}), using Pro Logic")
            await self._send(f"{LISTENING_MODE_PRO_LOGIC}SR")

    # ========== Polling ==========

    async def _poll_state(self):
        """Periodically refresh state changed from the front panel or remote."""
        while True:
            try:
                await asyncio.sleep(self._poll_interval)
                if not self.connected:
                    continue
                idle = time.time() - self._last_user_interaction
                if idle > self._interaction_timeout:
                    self._logger.debug(f"No user interaction for {idle:.0f}s, skipping poll")
                    continue
                if self.state.power and self.state.last_power_poll is not None:
                    await self.update_volume()
                if self.state.discovery_complete:
                    await self.update_power()
            except asyncio.CancelledError:
                self._logger.debug("State poller cancelled")
                break
            except AVRError as e:
                self._logger.debug(f"Poll failed: {e!r}")
            except Exception as e:
                self._logger.error(f"Error in state poller: {e}", exc_info=True)
