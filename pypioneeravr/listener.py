from abc import ABC, abstractmethod
import logging
from typing import List

from pypioneeravr.state import Input


class AVRListener(ABC):

    @abstractmethod
    def connected(self):
        pass

    @abstractmethod
    def disconnected(self):
        pass

    @abstractmethod
    def power_changed(self, power: bool):
        pass

    @abstractmethod
    def volume_changed(self, volume: int):
        """Called when the volume changes. Volume is a percentage (0-100)."""
        pass

    @abstractmethod
    def mute_changed(self, muted: bool):
        pass

    @abstractmethod
    def input_changed(self, index: int):
        """Called when the active input changes. Index points into the discovered inputs."""
        pass

    def listening_mode_changed(self, mode: str, family: str):
        """Called with a 4-digit mode code. Family is "SR" or "LM"."""
        pass

    def display_changed(self, text: str):
        pass

    def input_discovered(self, index: int, avr_input: Input):
        pass

    def inputs_ready(self):
        """Called once per session when input discovery has completed."""
        pass

    def error(self, error_message: str):
        # By default, do nothing but can be overwritten to be notified of these messages.
        pass


class MultiplexingListener(AVRListener):
    """Fans notifications out to registered listeners.

    A listener that raises is logged and skipped; the others are still called.
    """

    _listeners: List[AVRListener]

    def __init__(self):
        self._listeners = []
        self._logger = logging.getLogger(__name__)

    def _notify(self, method: str, *args):
        for listener in list(self._listeners):
            try:
                getattr(listener, method)(*args)
            except Exception as e:
                self._logger.error(f"Exception in {method}() of {listener!r}: {e}", exc_info=True)

    def connected(self):
        self._notify("connected")

    def disconnected(self):
        self._notify("disconnected")

    def power_changed(self, power: bool):
        self._notify("power_changed", power)

    def volume_changed(self, volume: int):
        self._notify("volume_changed", volume)

    def mute_changed(self, muted: bool):
        self._notify("mute_changed", muted)

    def input_changed(self, index: int):
        self._notify("input_changed", index)

    def listening_mode_changed(self, mode: str, family: str):
        self._notify("listening_mode_changed", mode, family)

    def display_changed(self, text: str):
        self._notify("display_changed", text)

    def input_discovered(self, index: int, avr_input: Input):
        self._notify("input_discovered", index, avr_input)

    def inputs_ready(self):
        self._notify("inputs_ready")

    def error(self, error_message: str):
        self._notify("error", error_message)

    def register_listener(self, listener: AVRListener):
        self._listeners.append(listener)

    def unregister_listener(self, listener: AVRListener):
        if listener in self._listeners:
            self._listeners.remove(listener)
        else:
            self._logger.info("Listener isn't registered")


class LoggingListener(AVRListener):

    def __init__(self, logger=logging):
        self.logger = logger

    def connected(self):
        self.logger.info("Connected")

    def disconnected(self):
        self.logger.info("Disconnected")

    def power_changed(self, power: bool):
        self.logger.info(f"Power changed to: {'On' if power else 'Off'}")

    def volume_changed(self, volume: int):
        self.logger.info(f"Volume: {volume}%")

    def mute_changed(self, muted: bool):
        self.logger.info(f"Mute: {'on' if muted else 'off'}")

    def input_changed(self, index: int):
        self.logger.info(f"Input changed to index {index}")

    def listening_mode_changed(self, mode: str, family: str):
        self.logger.info(f"Listening mode ({family}): {mode}")

    def display_changed(self, text: str):
        if text:
            self.logger.info(f"[DISPLAY] {text}")

    def input_discovered(self, index: int, avr_input: Input):
        self.logger.info(f"Input {index}: {avr_input.name} (id {avr_input.id}, {avr_input.kind.name})")

    def inputs_ready(self):
        self.logger.info("Input discovery complete")

    def error(self, error_message: str):
        self.logger.warning(f"Device error: {error_message}")
