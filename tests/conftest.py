"""Shared fixtures: a scripted fake receiver on a localhost socket."""

import asyncio
import re
from typing import Callable, Optional

import pytest


class FakeReceiver:
    """Just enough of the receiver's telnet protocol to drive the client.

    Every received command is recorded in ``received``. Commands listed in
    ``silent`` get no answer, ``replies`` overrides the answer for a command.
    """

    def __init__(self, inputs: Optional[dict[str, str]] = None):
        self.power = True
        self.volume = 92
        self.muted = False
        self.input_id = "19"
        self.listening_mode = "0013"
        self.listening_mode_lm = "0101"
        self.inputs = dict(inputs) if inputs is not None else {"19": "HDMI 1", "25": "BD"}
        self.rejected_modes: set[str] = set()
        self.silent: set[str] = set()
        self.replies: dict[str, list[str]] = {}
        self.received: list[str] = []
        self.connections = 0
        self.port: Optional[int] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: list[asyncio.StreamWriter] = []

    async def __aenter__(self) -> "FakeReceiver":
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.stop()

    async def start(self, port: int = 0):
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", port)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self):
        self.drop_clients()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    def drop_clients(self):
        for writer in self._writers:
            writer.close()
        self._writers = []

    def push(self, line: str):
        """Send an unsolicited line to every connected client."""
        for writer in self._writers:
            writer.write(f"{line}\r\n".encode("ascii"))

    def count(self, command: str) -> int:
        return self.received.count(command)

    async def wait_for(self, predicate: Callable[[], bool], timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.01)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.connections += 1
        self._writers.append(writer)
        try:
            while True:
                data = await reader.readline()
                if not data:
                    break
                command = data.decode("ascii").strip()
                if not command:
                    continue
                self.received.append(command)
                for line in self.reply_to(command):
                    writer.write(f"{line}\r\n".encode("ascii"))
                await writer.drain()
        except (ConnectionError, asyncio.CancelledError):
            pass
        finally:
            writer.close()

    def reply_to(self, command: str) -> list[str]:
        if command in self.silent:
            return []
        if command in self.replies:
            return list(self.replies[command])
        if command == "?P":
            return [self._power()]
        if command in ("PO", "PF"):
            self.power = command == "PO"
            return [self._power()]
        if command == "?V":
            return [self._volume()]
        if command in ("VU", "VD"):
            self.volume = max(0, min(185, self.volume + (2 if command == "VU" else -2)))
            return [self._volume()]
        if re.fullmatch(r"\d{3}VL", command):
            self.volume = int(command[:3])
            return [self._volume()]
        if command == "?M":
            return [self._mute()]
        if command in ("MO", "MF"):
            self.muted = command == "MO"
            return [self._mute()]
        if command == "?F":
            return [f"FN{self.input_id}"]
        if re.fullmatch(r"\d{2}FN", command):
            if command[:2] not in self.inputs:
                return ["E06"]
            self.input_id = command[:2]
            return [f"FN{self.input_id}"]
        if command == "?S":
            return [f"SR{self.listening_mode}"]
        if command == "?L":
            return [f"LM{self.listening_mode_lm}"]
        if re.fullmatch(r"\d{4}SR", command):
            if command[:4] in self.rejected_modes:
                return ["E04"]
            self.listening_mode = command[:4]
            return [f"SR{self.listening_mode}"]
        if command.startswith("?RGB"):
            input_id = command[4:6]
            if input_id in self.inputs:
                return [f"RGB{input_id}1{self.inputs[input_id]}"]
            return [f"E06RGB{input_id}"]
        match = re.fullmatch(r"(.*)1RGB(\d{2})", command)
        if match:
            self.inputs[match.group(2)] = match.group(1)
            return [f"RGB{match.group(2)}1{match.group(1)}"]
        if command in ("0PKL", "0RML"):
            return []
        return ["E04"]

    def _power(self) -> str:
        return "PWR0" if self.power else "PWR1"

    def _volume(self) -> str:
        return f"VOL{self.volume:03d}"

    def _mute(self) -> str:
        return "MUT0" if self.muted else "MUT1"


def speed_up(connection):
    """Shrink a Connection's timers so tests finish quickly."""
    connection._min_send_interval = 0.001
    connection._queue_tick = 0.002
    connection._connect_timeout = 1.0
    connection._probe_timeout = 1.0
    connection._reconnect_delay_short = 0.01
    connection._reconnect_delay_long = 0.02
    connection._stale_queue_timeout = 1.0
    connection.queue.lock_timeout = 0.5


@pytest.fixture
def fake_receiver():
    return FakeReceiver()


@pytest.fixture
def fast():
    return speed_up
