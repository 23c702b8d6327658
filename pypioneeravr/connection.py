import asyncio
import logging
import time
from asyncio import Task
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pypioneeravr.command_queue import CommandQueue
from pypioneeravr.exceptions import AVRError, NotConnectedError
from pypioneeravr.parser import SENT_SUFFIX, is_error_line

DEFAULT_PORT = 23
TELNET_PORTS = (23, 24, 8102)

# Async callable (device name hint, candidate ports) -> (host, port) or None
Rediscover = Callable[[Optional[str], tuple[int, ...]], Awaitable[Optional[tuple[str, int]]]]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


def reconnect_delay(attempt: int, short_delay: float = 15.0, long_delay: float = 60.0, long_after: int = 30) -> float:
    """Seconds to wait before reconnect attempt number ``attempt`` (1-based)."""
    return short_delay if attempt <= long_after else long_delay


class AVRProtocol(asyncio.Protocol):
    """Line framing for the receiver's telnet port.

    Commands go out CRLF-terminated; replies come back as CRLF-terminated
    lines, sometimes several per packet and sometimes split across packets.
    """

    def __init__(self, connection: "Connection"):
        self._logger = logging.getLogger(__name__)
        self._connection = connection
        self._transport = None
        self._received_message = ""
        self.peer_name = None

    @property
    def transport(self):
        return self._transport

    def connection_made(self, transport):
        """Method from asyncio.Protocol"""
        self._transport = transport
        self.peer_name = transport.get_extra_info("peername")
        self._logger.info(f"Connection Made: {self.peer_name}")
        self._connection._connection_made(self)

    def data_received(self, data):
        """Method from asyncio.Protocol"""
        self._logger.debug(f"data_received client: {data}")
        self._received_message += data.decode("ascii", errors="ignore")
        *lines, self._received_message = self._received_message.split("\n")
        for line in lines:
            line = line.replace("\r", "").strip()
            if line:
                self._connection._line_received(line)

    def connection_lost(self, exc):
        """Method from asyncio.Protocol"""
        self._connection._connection_lost(self, exc)

    def write(self, message: str):
        self._transport.write(f"{message}\r\n".encode("ascii", errors="ignore"))

    def close(self):
        if self._transport:
            self._transport.close()


class Connection:
    """One socket to one receiver and everything needed to keep it alive.

    - connect / reconnect with backoff, asking ``rediscover`` for a new
      address once ``max_reconnect_attempts`` is exceeded
    - command worker draining the :class:`CommandQueue` with write spacing
    - dead-link watchdog and idle-disconnect timer
    - direct (unqueued) path for fire-and-forget writes
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        line_handler: Optional[Callable[[str], Any]] = None,
        name: Optional[str] = None,
        telnet_ports: tuple[int, ...] = TELNET_PORTS,
        max_reconnect_attempts: int = 10,
        rediscover: Optional[Rediscover] = None,
        queue: Optional[CommandQueue] = None,
    ):
        self._logger = logging.getLogger(__name__)
        self._host = host
        self._port = port
        self._name = name
        self._telnet_ports = tuple(telnet_ports)
        self._line_handler = line_handler
        self._rediscover = rediscover
        self._max_reconnect_attempts = max_reconnect_attempts
        self._queue = queue or CommandQueue()

        # Timing (seconds)
        self._min_send_interval: float = 0.038  # receiver drops input written faster than this
        self._queue_tick: float = 0.02
        self._connect_timeout: float = 10.0
        self._probe_timeout: float = 5.0
        self._reconnect_delay_short: float = 15.0
        self._reconnect_delay_long: float = 60.0
        self._reconnect_long_after: int = 30
        self._watchdog_interval: float = 3.1
        self._dead_link_timeout: float = 60.0
        self._dead_link_write_gap: float = 10.0
        self._idle_timeout: float = 2 * 60 * 60
        self._stale_queue_timeout: float = 15.0

        self._state = ConnectionState.DISCONNECTED
        self._reconnect = True
        self._reconnect_attempt: int = 0
        self._protocol: Optional[AVRProtocol] = None
        self._connected_at: Optional[float] = None
        self._last_write: Optional[float] = None
        self._last_receive: Optional[float] = None

        self._command_worker_task: Optional[Task[Any]] = None
        self._connection_watchdog_task: Optional[Task[Any]] = None
        self._reconnect_task: Optional[Task[Any]] = None
        self._idle_handle: Optional[asyncio.TimerHandle] = None
        self._stale_queue_handle: Optional[asyncio.TimerHandle] = None

        self._on_connect_callbacks: list[Callable[[], Any]] = []
        self._on_disconnect_callbacks: list[Callable[[], Any]] = []

    # ========== Properties ==========

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        """Whether writes are currently permitted."""
        return self._state == ConnectionState.CONNECTED and self._protocol is not None

    @property
    def reconnect_attempt(self) -> int:
        return self._reconnect_attempt

    @property
    def queue(self) -> CommandQueue:
        return self._queue

    @property
    def last_write(self) -> Optional[float]:
        return self._last_write

    @property
    def last_receive(self) -> Optional[float]:
        return self._last_receive

    def set_line_handler(self, handler: Callable[[str], Any]):
        self._line_handler = handler

    def add_on_connect_callback(self, callback: Callable[[], Any]):
        self._on_connect_callbacks.append(callback)

    def add_on_disconnect_callback(self, callback: Callable[[], Any]):
        self._on_disconnect_callbacks.append(callback)

    # ========== Connection lifecycle ==========

    async def connect(self) -> bool:
        """Open the socket and probe power. Returns whether the link is up.

        Failures are logged and handed to the reconnect loop, never raised.
        """
        if self._state == ConnectionState.CONNECTED:
            return True
        if self._state == ConnectionState.CONNECTING:
            return False
        self._reconnect = True
        self._state = ConnectionState.CONNECTING
        loop = asyncio.get_running_loop()
        self._logger.debug(f"Connecting to {self._host}:{self._port}")
        try:
            await asyncio.wait_for(
                loop.create_connection(lambda: AVRProtocol(self), host=self._host, port=self._port),
                self._connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            self._logger.warning(f"Connect to {self._host}:{self._port} failed: {e!r}")
            if self._state == ConnectionState.CONNECTING:
                self._state = ConnectionState.DISCONNECTED
            self._schedule_reconnect()
            return False

        if not self.connected:
            return False
        await self._probe_power()
        return self.connected

    async def _probe_power(self):
        try:
            await asyncio.wait_for(self.send("?P", "PWR"), self._probe_timeout)
        except (AVRError, asyncio.TimeoutError) as e:
            self._logger.debug(f"Power probe after connect failed: {e!r}")

    def disconnect(self):
        """Drop the socket; the reconnect loop takes over unless closed."""
        self._logger.debug("disconnect() called")
        if self._protocol is not None:
            self._protocol.close()

    def close(self):
        """Close the connection and stop reconnection attempts."""
        self._reconnect = False
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        if self._protocol is not None:
            self._state = ConnectionState.CLOSING
            self._protocol.close()
        else:
            self._state = ConnectionState.DISCONNECTED
            self._queue.clear("closed")
        self._cancel_handle("_stale_queue_handle")

    def _connection_made(self, protocol: AVRProtocol):
        """Called by AVRProtocol once the socket is open."""
        loop = asyncio.get_running_loop()
        self._protocol = protocol
        self._state = ConnectionState.CONNECTED
        self._reconnect_attempt = 0
        self._connected_at = time.time()
        self._last_receive = None
        self._last_write = None
        self._cancel_handle("_stale_queue_handle")
        self._reset_idle_timer()

        for task in (self._command_worker_task, self._connection_watchdog_task):
            if task is not None and not task.done():
                task.cancel()
        self._command_worker_task = loop.create_task(self._command_worker())
        self._connection_watchdog_task = loop.create_task(self._connection_watchdog())

        self._logger.info(f"Connected to {self._host}:{self._port}")
        for callback in list(self._on_connect_callbacks):
            try:
                callback()
            except Exception as e:
                self._logger.error(f"Exception in on-connect callback: {e}", exc_info=True)

    def _connection_lost(self, protocol: AVRProtocol, exc):
        """Called by AVRProtocol when the socket closes for any reason."""
        if protocol is not self._protocol:
            return
        self._protocol = None
        self._state = ConnectionState.DISCONNECTED
        for task in (self._command_worker_task, self._connection_watchdog_task):
            if task is not None and not task.done():
                task.cancel()
        self._cancel_handle("_idle_handle")
        self._queue.clear("connection lost")

        disconnected_message = f"Disconnected from {self._host}"
        if exc is not None:
            disconnected_message += f" ({exc!r})"
        if self._reconnect:
            self._logger.error(disconnected_message + ", will try to reconnect")
        else:
            # Only info in here as close has been called.
            self._logger.info(disconnected_message + ", not reconnecting")

        for callback in list(self._on_disconnect_callbacks):
            try:
                callback()
            except Exception as e:
                self._logger.error(f"Exception in on-disconnect callback: {e}", exc_info=True)

        self._schedule_reconnect()

    def _schedule_reconnect(self):
        if not self._reconnect:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(self._wait_to_reconnect())

    async def _wait_to_reconnect(self):
        """Attempt to reconnect after connection loss."""
        while self._reconnect and self._state != ConnectionState.CONNECTED:
            self._reconnect_attempt += 1
            delay = reconnect_delay(
                self._reconnect_attempt,
                self._reconnect_delay_short,
                self._reconnect_delay_long,
                self._reconnect_long_after,
            )
            self._logger.info(f"Reconnect attempt {self._reconnect_attempt} in {delay:.0f}s")
            await asyncio.sleep(delay)
            if not self._reconnect or self._state == ConnectionState.CONNECTED:
                return
            if self._reconnect_attempt > self._max_reconnect_attempts and self._rediscover is not None:
                await self._rediscover_address()
            try:
                if await self.connect():
                    self._logger.info(f"Successfully reconnected to {self._host}:{self._port}")
                    return
            except Exception as e:
                self._logger.warning(f"Reconnect attempt failed: {e}")

    async def _rediscover_address(self):
        self._logger.info(
            f"{self._reconnect_attempt - 1} reconnect attempts failed, looking for {self._name or self._host} on the network"
        )
        try:
            found = await self._rediscover(self._name, self._telnet_ports)
        except Exception as e:
            self._logger.error(f"Device rediscovery failed: {e}", exc_info=True)
            found = None
        if found:
            self._host, self._port = found
            self._reconnect_attempt = 0
            self._logger.info(f"Updated connection info for {self._name or 'device'}: {self._host}:{self._port}")
        else:
            self._logger.error(
                f"Device {self._name or self._host} still unreachable after {self._reconnect_attempt - 1} attempts "
                f"and not found on the network"
            )

    # ========== Sending ==========

    async def send(self, message: str, response_key: Optional[str] = None) -> str:
        """Send ``message`` and return the line that answers it.

        With a ``response_key`` (or a ``?``/``!`` message) the command is
        queued and the coroutine waits for the matching line. Otherwise it is
        written directly, spaced from the previous write, and
        ``"<message>:SENT"`` is returned straight away.
        """
        queued = response_key is not None or message.startswith(("?", "!")) or len(self._queue) > 0
        if queued:
            return await self.enqueue(message, response_key)
        if not self.connected:
            self._schedule_reconnect()
            raise NotConnectedError(f"Not connected, {message} not sent")
        await self._wait_for_send_slot()
        if not self.connected:
            raise NotConnectedError(f"Connection lost before {message} was sent")
        self._write(message)
        return f"{message}{SENT_SUFFIX}"

    def enqueue(self, message: str, response_key: Optional[str] = None) -> asyncio.Future:
        """Queue ``message`` and return the future of its response line."""
        future = self._queue.enqueue(message, response_key)
        if not self.connected:
            self._schedule_reconnect()
            self._arm_stale_queue_timer()
        return future

    async def _wait_for_send_slot(self):
        while self._last_write is not None:
            remaining = self._min_send_interval - (time.time() - self._last_write)
            if remaining <= 0:
                return
            await asyncio.sleep(remaining)

    def _write(self, message: str):
        if message.startswith("!"):
            message = message[1:]
        self._logger.debug(f"SEND: {message}")
        self._protocol.write(message)
        self._last_write = time.time()
        self._reset_idle_timer()

    async def _command_worker(self):
        """Worker task that drains the command queue while connected."""
        while True:
            try:
                await asyncio.sleep(self._queue_tick)
                self._queue.expire_locks()
                if not self.connected:
                    continue
                entry = self._queue.next_command()
                if entry is None:
                    continue
                if self._last_write is not None and time.time() - self._last_write < self._min_send_interval:
                    continue
                self._write(entry.message)
                self._queue.mark_sent(entry)
            except asyncio.CancelledError:
                self._logger.debug("Command worker cancelled")
                break
            except Exception as e:
                self._logger.error(f"Error in command worker: {e}", exc_info=True)

    def _arm_stale_queue_timer(self):
        """Give up on queued commands if the link does not come back in time."""
        self._cancel_handle("_stale_queue_handle")
        self._stale_queue_handle = asyncio.get_running_loop().call_later(
            self._stale_queue_timeout, self._drop_stale_queue
        )

    def _drop_stale_queue(self):
        self._stale_queue_handle = None
        if not self.connected:
            self._queue.clear("not connected")

    # ========== Receiving ==========

    def _line_received(self, line: str):
        self._last_receive = time.time()
        self._reset_idle_timer()
        self._logger.debug(f"RECV: {line}")
        try:
            if not self._queue.resolve(line) and is_error_line(line):
                self._queue.resolve_error(line)
        except Exception as e:
            self._logger.error(f"Error resolving queue for {line!r}: {e}", exc_info=True)
        if self._line_handler is not None:
            try:
                self._line_handler(line)
            except Exception as e:
                self._logger.error(f"Error handling line {line!r}: {e}", exc_info=True)

    # ========== Watchdogs ==========

    async def _connection_watchdog(self):
        """Treat the link as dead if the receiver stops answering our writes."""
        while self._reconnect:
            try:
                await asyncio.sleep(self._watchdog_interval)
                if self.link_seems_dead():
                    self._logger.error(
                        f"[WATCHDOG] Device {self._name or self._host} not responding, reconnecting..."
                    )
                    self._queue.clear("device not responding")
                    self.disconnect()
                    return
            except asyncio.CancelledError:
                self._logger.debug("Connection watchdog cancelled")
                break
            except Exception as e:
                self._logger.error(f"Error in connection watchdog: {e}")

    def link_seems_dead(self, now: Optional[float] = None) -> bool:
        """We keep writing but nothing has come back for the dead-link timeout."""
        if not self.connected or self._reconnect_attempt != 0 or self._last_write is None:
            return False
        now = now if now is not None else time.time()
        last_heard = self._last_receive if self._last_receive is not None else self._connected_at
        if last_heard is None:
            return False
        return (
            self._last_write - last_heard > self._dead_link_write_gap
            and now - last_heard > self._dead_link_timeout
        )

    def _reset_idle_timer(self):
        self._cancel_handle("_idle_handle")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._idle_handle = loop.call_later(self._idle_timeout, self._idle_timeout_expired)

    def _idle_timeout_expired(self):
        self._idle_handle = None
        self._logger.info(f"No traffic for {self._idle_timeout:.0f}s, dropping idle connection")
        self.disconnect()

    def _cancel_handle(self, attribute: str):
        handle = getattr(self, attribute)
        if handle is not None:
            handle.cancel()
            setattr(self, attribute, None)
