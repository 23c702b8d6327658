"""Classification of receiver response lines.

Lines arrive already stripped of CR/LF. The receiver has no message ids, so a
line is recognised by the response code it contains. Codes can co-occur (an
error line may mention ``RGB``, a listening-mode line is only six characters
long), so the checks run in a fixed order and the first match wins:

    VD/VU/MO:SENT   acknowledgement of a volume-step or mute write
    :SENT           any other local write acknowledgement (swallowed)
    E...            device error (except the two input-discovery variants)
    PWR0 / PWR1     power on / off
    MUT0 / MUT1     muted / not muted
    SRnnnn          listening mode
    LMnnnn          listening mode, secondary family
    VOLnnn          volume on the native 0-185 scale
    FNnn            active input
    E04RGB / E06RGB input code does not exist on this unit
    RGBnn?name      input name (discovery or rename reply)
    FLxxxx...       front-panel display
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from pypioneeravr.display import DISPLAY_PREFIX, decode_display_line
from pypioneeravr.state import DeviceState, Input, input_kind, sanitize_input_name

SENT_SUFFIX = ":SENT"
ACKNOWLEDGED_WRITES = ("VD" + SENT_SUFFIX, "VU" + SENT_SUFFIX, "MO" + SENT_SUFFIX)
INPUT_MISSING_PREFIXES = ("E06RGB", "E04RGB")


@dataclass
class Event:
    line: str


@dataclass
class Acknowledged(Event):
    pass


@dataclass
class ErrorReported(Event):
    pass


@dataclass
class PowerChanged(Event):
    power: bool


@dataclass
class MuteChanged(Event):
    muted: bool


@dataclass
class ListeningModeChanged(Event):
    mode: str
    family: str  # "SR" or "LM"


@dataclass
class VolumeChanged(Event):
    raw: int
    percent: int


@dataclass
class InputChanged(Event):
    index: int
    input_id: str
    known: bool


@dataclass
class InputMissing(Event):
    input_id: str


@dataclass
class InputDiscovered(Event):
    index: int
    input: Input
    added: bool


@dataclass
class DisplayChanged(Event):
    text: str


def is_error_line(line: str) -> bool:
    """Device error that should resolve whatever query is in flight."""
    return line.startswith("E") and not line.startswith(INPUT_MISSING_PREFIXES)


class ResponseParser:
    """Turns one line into one event and applies it to the device state."""

    def __init__(self, state: DeviceState, clock=time.time):
        self._logger = logging.getLogger(__name__)
        self._state = state
        self._clock = clock

    @property
    def state(self) -> DeviceState:
        return self._state

    def parse(self, line: str) -> Optional[Event]:
        """Classify ``line``; returns ``None`` for lines that carry nothing we track.

        Never raises: a malformed line is logged and dropped.
        """
        try:
            return self._parse(line.strip())
        except Exception as e:
            self._logger.error(f"Failed to parse line {line!r}: {e}", exc_info=True)
            return None

    def _parse(self, line: str) -> Optional[Event]:
        if not line:
            return None
        if any(marker in line for marker in ACKNOWLEDGED_WRITES):
            return Acknowledged(line)
        if SENT_SUFFIX in line:
            return None
        if is_error_line(line):
            self._logger.debug(f"RECV: Device error: {line}")
            return ErrorReported(line)
        if "PWR" in line:
            return self._power(line)
        if "MUT" in line:
            return self._mute(line)
        if "SR" in line and len(line) == 6:
            return self._listening_mode(line, "SR")
        if "LM" in line and len(line) == 6:
            return self._listening_mode(line, "LM")
        if "VOL" in line:
            return self._volume(line)
        if "FN" in line:
            return self._input(line)
        if line.startswith(INPUT_MISSING_PREFIXES):
            return self._input_missing(line)
        if "RGB" in line:
            return self._input_discovered(line)
        if line.startswith(DISPLAY_PREFIX):
            return self._display(line)
        self._logger.debug(f"Unhandled message received: {line}")
        return None

    def _power(self, line: str) -> Optional[Event]:
        data = line[line.index("PWR"):]
        digit = data[3:4]
        if not digit.isdigit():
            self._logger.warning(f"Invalid power status: {line}")
            return None
        self._state.power = int(digit) == 0
        self._state.last_power_poll = self._clock()
        self._logger.debug(f"RECV: Power status: {'On' if self._state.power else 'Off'} ({data})")
        return PowerChanged(line, self._state.power)

    def _mute(self, line: str) -> Optional[Event]:
        data = line[line.index("MUT"):]
        digit = data[3:4]
        if not digit.isdigit():
            self._logger.warning(f"Invalid mute status: {line}")
            return None
        self._state.muted = int(digit) == 0
        self._logger.debug(f"RECV: Mute status: {'Muted' if self._state.muted else 'Not Muted'} ({data})")
        return MuteChanged(line, self._state.muted)

    def _listening_mode(self, line: str, family: str) -> Event:
        data = line[line.index(family):]
        mode = data[2:6]
        if family == "SR":
            self._state.listening_mode = mode
        else:
            self._state.listening_mode_lm = mode
        return ListeningModeChanged(line, mode, family)

    def _volume(self, line: str) -> Optional[Event]:
        data = line[line.index("VOL"):]
        raw_str = data[3:6]
        if len(raw_str) != 3 or not raw_str.isdigit():
            self._logger.warning(f"Invalid volume level: {line}")
            return None
        raw = int(raw_str)
        percent = self._state.raw_to_percent(raw)
        self._state.volume_raw = raw
        self._state.volume = percent
        self._logger.debug(f"RECV: Volume is {raw_str} ({percent}%)")
        return VolumeChanged(line, raw, percent)

    def _input(self, line: str) -> Event:
        data = line[line.index("FN"):]
        input_id = data[2:4]
        index = self._state.find_input_index(input_id)
        if index == -1:
            # Seen during discovery before the input table is filled
            self._logger.debug(f"RECV: Unknown input {input_id!r}")
            return InputChanged(line, 0, input_id, False)
        self._state.active_input_index = index
        self._logger.debug(f"RECV: Input status: {input_id} (index {index})")
        return InputChanged(line, index, input_id, True)

    def _input_missing(self, line: str) -> Event:
        data = line[line.index("RGB"):]
        input_id = data[3:5]
        self._state.missing_inputs.discard(input_id)
        self._logger.debug(f"RECV: Input {input_id} does not exist on this unit")
        return InputMissing(line, input_id)

    def _input_discovered(self, line: str) -> Optional[Event]:
        data = line[line.index("RGB"):]
        input_id = data[3:5]
        if len(input_id) != 2:
            self._logger.warning(f"Invalid input reply: {line}")
            return None
        discovered = Input(input_id, sanitize_input_name(data[6:].strip()), input_kind(input_id))
        index, added = self._state.upsert_input(discovered)
        if added:
            self._logger.info(
                f"Input [{discovered.name}] discovered (id: {input_id}, type: {discovered.kind.name}). "
                f"Count={self._state.discovered_count}"
                + (f", missing: {sorted(self._state.missing_inputs)}" if self._state.missing_inputs else "")
            )
        return InputDiscovered(line, index, self._state.inputs[index], added)

    def _display(self, line: str) -> Event:
        text = decode_display_line(line)
        self._state.display = text
        return DisplayChanged(line, text)
