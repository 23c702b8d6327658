"""Input discovery: ask the receiver which input codes it has.

Each candidate code is probed with ``?RGBxx``. The receiver answers with the
input's name (``RGBxx1NAME``) or with ``E06RGBxx`` / ``E04RGBxx`` when the
code does not exist. Codes that get no answer stay in
``DeviceState.missing_inputs`` and are re-probed for a bounded number of
rounds.
"""

import asyncio
import logging
from asyncio import Task
from typing import Any, Callable, Optional, Sequence

from pypioneeravr.state import INPUT_CANDIDATES, DeviceState


class InputCatalog:

    def __init__(self, state: DeviceState, connection, candidates: Sequence[str] = INPUT_CANDIDATES):
        self._logger = logging.getLogger(__name__)
        self._state = state
        self._connection = connection
        self._candidates = tuple(candidates)

        self._probe_interval: float = 0.15
        # Bounded wait for the previous probe to be answered before moving on
        self._probe_wait_step: float = 0.15
        self._probe_wait_max_steps: int = 30
        self._retry_rounds: int = 30
        self._retry_wait: float = 0.5

        self._being_added: Optional[str] = None
        self._probe_idle = asyncio.Event()
        self._probe_idle.set()
        self._first_pass_done = False
        self._ready = False
        self._ready_event = asyncio.Event()
        self._ready_callbacks: list[Callable[[], Any]] = []
        self._discovery_task: Optional[Task[Any]] = None

    @property
    def candidates(self) -> tuple[str, ...]:
        return self._candidates

    @property
    def is_ready(self) -> bool:
        """True once every probe was answered and at least one input exists.

        Never goes back to False for the life of this catalog.
        """
        return self._ready

    @property
    def being_added(self) -> Optional[str]:
        """Code of the probe currently awaiting an answer."""
        return self._being_added

    @property
    def running(self) -> bool:
        return self._discovery_task is not None and not self._discovery_task.done()

    def add_ready_callback(self, callback: Callable[[], Any]):
        self._ready_callbacks.append(callback)

    def start(self) -> Optional[Task[Any]]:
        """Run :meth:`discover` in the background unless already running or ready."""
        if self._ready or self.running:
            return self._discovery_task
        self._discovery_task = asyncio.get_running_loop().create_task(self.discover())
        return self._discovery_task

    def stop(self):
        if self.running:
            self._discovery_task.cancel()
        self._discovery_task = None
        self._clear_being_added()

    async def wait_ready(self, timeout: float = 30.0) -> bool:
        try:
            await asyncio.wait_for(self._ready_event.wait(), timeout)
        except asyncio.TimeoutError:
            missing = sorted(self._state.missing_inputs)
            self._logger.warning(f"Timeout waiting for input discovery, missing: {missing}")
            return False
        return True

    async def discover(self) -> bool:
        """Probe every candidate once, then retry the unanswered ones."""
        self._logger.info(f"Discovering inputs ({len(self._candidates)} candidates)")
        self._first_pass_done = False
        for code in self._candidates:
            await self._probe(code)
        self._first_pass_done = True

        rounds = 0
        while self._state.missing_inputs and rounds < self._retry_rounds:
            await asyncio.sleep(self._retry_wait)
            if not self._state.missing_inputs:
                break
            rounds += 1
            missing = sorted(self._state.missing_inputs)
            self._logger.debug(f"Retry round {rounds}: re-probing {missing}")
            for code in missing:
                await self._probe(code)

        self._check_ready()
        if not self._ready:
            self._logger.warning(
                f"Input discovery incomplete after {rounds} retry rounds, "
                f"missing: {sorted(self._state.missing_inputs)}, found {len(self._state.inputs)} inputs"
            )
        return self._ready

    async def _probe(self, code: str):
        if self._being_added is not None:
            try:
                await asyncio.wait_for(
                    self._probe_idle.wait(), self._probe_wait_step * self._probe_wait_max_steps
                )
            except asyncio.TimeoutError:
                self._logger.debug(f"Probe for {self._being_added} still unanswered, probing {code} anyway")

        self._being_added = code
        self._probe_idle.clear()
        self._state.missing_inputs.add(code)
        future = self._connection.enqueue(f"?RGB{code}", f"RGB{code}")
        future.add_done_callback(lambda f, code=code: self._probe_finished(code, f))
        await asyncio.sleep(self._probe_interval)

    def _probe_finished(self, code: str, future: asyncio.Future):
        if not future.cancelled() and future.exception() is not None:
            self._logger.debug(f"Probe for input {code} failed: {future.exception()!r}")
        if self._being_added == code:
            self._clear_being_added()

    def probe_answered(self, code: str):
        """Called when the receiver described ``code`` or said it does not exist."""
        self._state.missing_inputs.discard(code)
        if self._being_added == code:
            self._clear_being_added()
        if self._first_pass_done:
            self._check_ready()

    def _clear_being_added(self):
        self._being_added = None
        self._probe_idle.set()

    def _check_ready(self):
        if self._ready or not self._state.discovery_complete:
            return
        self._ready = True
        self._ready_event.set()
        self._logger.info(f"Input discovery complete: {len(self._state.inputs)} inputs")
        for callback in list(self._ready_callbacks):
            try:
                callback()
            except Exception as e:
                self._logger.error(f"Exception in inputs-ready callback: {e}", exc_info=True)
