"""Outbound command queue with response-key correlation.

A query is tagged with the response key its answer will contain (``?V`` ->
``VOL``). Only one query per key may be in flight; later queries with the same
key wait behind it. The receiver offers no message ids, so the first inbound
line containing a locked key resolves that key.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Optional

from pypioneeravr.exceptions import CommandTimeoutError, DeviceError, NotConnectedError
from pypioneeravr.parser import SENT_SUFFIX


class PendingCommand:
    """A queued message and everyone waiting on its answer."""

    def __init__(self, message: str, response_key: Optional[str], issued_at: float):
        self.message = message
        self.response_key = response_key
        self.issued_at = issued_at
        self.sent_at: Optional[float] = None
        self.futures: list[asyncio.Future] = []

    @property
    def in_flight(self) -> bool:
        return self.sent_at is not None

    def resolve(self, line: str):
        for future in self.futures:
            if not future.done():
                future.set_result(line)

    def fail(self, exc: Exception):
        for future in self.futures:
            if not future.done():
                future.set_exception(exc)

    def __repr__(self):
        return f"PendingCommand({self.message!r}, key={self.response_key!r}, sent={self.in_flight})"


class CommandQueue:
    """FIFO of pending commands plus the response-key lock table.

    The queue does no I/O. The connection's worker asks it for the next
    command to write (:meth:`next_command`), reports the write
    (:meth:`mark_sent`) and feeds it inbound lines (:meth:`resolve`,
    :meth:`resolve_error`).
    """

    def __init__(self, lock_timeout: float = 5.0, clock=time.monotonic):
        self._logger = logging.getLogger(__name__)
        self._lock_timeout = lock_timeout
        self._clock = clock
        self._entries: deque[PendingCommand] = deque()
        # response key -> in-flight command holding the lock
        self._locks: dict[str, PendingCommand] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def lock_timeout(self) -> float:
        return self._lock_timeout

    @lock_timeout.setter
    def lock_timeout(self, value: float):
        self._lock_timeout = value

    @property
    def entries(self) -> list[PendingCommand]:
        return list(self._entries)

    @property
    def locked_keys(self) -> list[str]:
        return list(self._locks.keys())

    def is_locked(self, response_key: str) -> bool:
        return response_key in self._locks

    def enqueue(self, message: str, response_key: Optional[str], loop: Optional[asyncio.AbstractEventLoop] = None) -> asyncio.Future:
        """Queue ``message`` and return a future for its response line.

        An identical message already in the queue is not queued twice; the new
        waiter is attached to the existing entry instead.
        """
        loop = loop or asyncio.get_running_loop()
        future = loop.create_future()
        for entry in self._entries:
            if entry.message == message:
                entry.futures.append(future)
                self._logger.debug(f"QUEUE: Duplicate command not queued: {message}")
                return future
        entry = PendingCommand(message, response_key, self._clock())
        entry.futures.append(future)
        self._entries.append(entry)
        self._logger.debug(f"QUEUE: Added {message} (key={response_key}), queue size {len(self._entries)}")
        return future

    def next_command(self) -> Optional[PendingCommand]:
        """First unsent command, unless another query holds its key."""
        for entry in self._entries:
            if entry.in_flight:
                continue
            if entry.response_key is not None and entry.response_key in self._locks:
                return None
            return entry
        return None

    def mark_sent(self, entry: PendingCommand):
        """Record that ``entry`` was written.

        Queries take their key's lock. Fire-and-forget messages that went
        through the queue are done as soon as they are written.
        """
        now = self._clock()
        if entry.response_key is None:
            self._remove(entry)
            entry.resolve(f"{entry.message}{SENT_SUFFIX}")
            return
        entry.sent_at = now
        self._locks[entry.response_key] = entry

    def resolve(self, line: str) -> bool:
        """Resolve the locked query whose key appears in ``line``.

        Only the in-flight command is settled; later commands with the same
        key stay queued and are written next. Returns ``True`` if a key
        matched.
        """
        for response_key in list(self._locks.keys()):
            if response_key in line:
                self._logger.debug(f"QUEUE: {line} resolves key {response_key}")
                self._release(response_key, lambda entry: entry.resolve(line))
                return True
        return False

    def resolve_error(self, line: str) -> bool:
        """Fail the oldest in-flight query with a :class:`DeviceError`.

        Error replies never echo the key of the query they answer, so the
        query at the head of the lock table takes the blame.
        """
        if not self._locks:
            return False
        response_key = next(iter(self._locks))
        self._logger.debug(f"QUEUE: Error {line} resolves key {response_key}")
        error = DeviceError(line, response_key)
        self._release(response_key, lambda entry: entry.fail(error))
        return True

    def expire_locks(self) -> list[PendingCommand]:
        """Force-release locks held longer than the lock timeout.

        The stalled command is dropped and its waiters get a
        :class:`CommandTimeoutError`; commands queued behind it proceed.
        """
        now = self._clock()
        expired = []
        for response_key, entry in list(self._locks.items()):
            if now - entry.sent_at > self._lock_timeout:
                self._logger.warning(
                    f"QUEUE: No response to {entry.message} after {now - entry.sent_at:.1f}s, releasing {response_key}"
                )
                del self._locks[response_key]
                self._remove(entry)
                entry.fail(CommandTimeoutError(entry.message, response_key))
                expired.append(entry)
        return expired

    def clear(self, reason: str = "connection lost"):
        """Drop every pending command; waiters get a :class:`NotConnectedError`."""
        if self._entries:
            self._logger.info(f"QUEUE: Dropping {len(self._entries)} pending commands ({reason})")
        entries = list(self._entries)
        self._entries.clear()
        self._locks.clear()
        for entry in entries:
            entry.fail(NotConnectedError(f"{entry.message} dropped: {reason}"))

    def _release(self, response_key: str, settle):
        entry = self._locks.pop(response_key)
        self._remove(entry)
        settle(entry)

    def _remove(self, entry: PendingCommand):
        try:
            self._entries.remove(entry)
        except ValueError:
            pass
