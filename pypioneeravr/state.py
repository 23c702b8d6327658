"""Last-known receiver state, the input table and volume rescaling."""

import math
import re
from dataclasses import dataclass
from enum import IntEnum
from fractions import Fraction
from typing import Optional

# Native volume scale of the receiver: "000VL".."185VL"
VOLUME_RAW_MAX = 185

INPUT_NAME_MAX_LENGTH = 14
_INPUT_NAME_INVALID_CHARS = re.compile(r"[^a-zA-Z0-9 ]")


class InputKind(IntEnum):
    """Category of an input, numbered like the smart-home input source types."""
    OTHER = 0
    HOME_SCREEN = 1
    TUNER = 2
    HDMI = 3
    COMPOSITE_VIDEO = 4
    S_VIDEO = 5
    COMPONENT_VIDEO = 6
    DVI = 7
    AIRPLAY = 8
    USB = 9
    APPLICATION = 10


# Known input codes. Anything not listed is reported as OTHER.
INPUT_KINDS: dict[str, InputKind] = {
    "02": InputKind.TUNER,            # TUNER
    "05": InputKind.HDMI,             # TV
    "06": InputKind.HDMI,             # CBL/SAT
    "10": InputKind.COMPOSITE_VIDEO,  # VIDEO
    "14": InputKind.COMPONENT_VIDEO,  # VIDEO 2
    "15": InputKind.HDMI,             # DVR/BDR
    "17": InputKind.USB,              # USB/iPod
    "18": InputKind.TUNER,            # XM RADIO
    "19": InputKind.HDMI,             # HDMI 1
    "20": InputKind.HDMI,             # HDMI 2
    "21": InputKind.HDMI,             # HDMI 3
    "22": InputKind.HDMI,             # HDMI 4
    "23": InputKind.HDMI,             # HDMI 5
    "24": InputKind.HDMI,             # HDMI 6
    "25": InputKind.HDMI,             # BD
    "26": InputKind.APPLICATION,      # MEDIA GALLERY / HOME MEDIA
    "31": InputKind.HDMI,             # HDMI CYCLE
    "34": InputKind.HDMI,             # HDMI 7
    "35": InputKind.HDMI,             # HDMI 8
    "38": InputKind.TUNER,            # NETRADIO
    "46": InputKind.AIRPLAY,          # AIRPLAY
}

# Codes probed with "?RGBxx" during input discovery
INPUT_CANDIDATES: tuple[str, ...] = tuple(f"{i:02d}" for i in range(1, 61))


def input_kind(input_id: str) -> InputKind:
    return INPUT_KINDS.get(input_id, InputKind.OTHER)


def sanitize_input_name(name: str) -> str:
    """Strip characters the receiver cannot store and cut to the panel width."""
    return _INPUT_NAME_INVALID_CHARS.sub("", name)[:INPUT_NAME_MAX_LENGTH]


@dataclass
class Input:
    """One selectable input as reported by an ``RGB`` reply."""
    id: str
    name: str
    kind: InputKind = InputKind.OTHER


class DeviceState:
    """Mutable record of what the receiver last told us.

    Only the response parser writes here; verbs read it. The record survives
    disconnects so a reconnect resumes from the last-known values.
    """

    def __init__(self, min_volume: int = 0, max_volume: int = 60):
        self._min_volume = min_volume
        self._max_volume = max_volume

        self.power: Optional[bool] = None
        self.muted: Optional[bool] = True  # assume muted until told otherwise
        self.volume: int = 30  # percent
        self.volume_raw: Optional[int] = None
        self.active_input_index: int = 0
        self.listening_mode: Optional[str] = None  # "SR" family
        self.listening_mode_lm: Optional[str] = None  # "LM" family
        self.last_power_poll: Optional[float] = None
        self.display: Optional[str] = None

        self.inputs: list[Input] = []
        # Discovery codes queried but not yet answered
        self.missing_inputs: set[str] = set()
        self.discovered_count: int = 0

    @property
    def min_volume(self) -> int:
        """Lower volume bound in percent of the native scale."""
        return self._min_volume

    @property
    def max_volume(self) -> int:
        """Upper volume bound in percent of the native scale."""
        return self._max_volume

    @property
    def rescaling(self) -> bool:
        return self._max_volume > self._min_volume

    def _raw_bounds(self) -> tuple[Fraction, Fraction]:
        return (
            Fraction(self._min_volume * VOLUME_RAW_MAX, 100),
            Fraction(self._max_volume * VOLUME_RAW_MAX, 100),
        )

    def raw_to_percent(self, raw: int) -> int:
        """Convert a native 0-185 value to the 0-100 scale shown to users.

        With bounds configured, the raw value is clamped into the bounded
        window first and the window is stretched over 0-100.
        """
        if not self.rescaling:
            return math.floor(Fraction(raw * 100, VOLUME_RAW_MAX))
        min_raw, max_raw = self._raw_bounds()
        clamped = min(max(Fraction(raw), min_raw), max_raw)
        return math.floor((clamped - min_raw) / (max_raw - min_raw) * 100)

    def percent_to_raw(self, percent: int) -> int:
        percent = min(max(int(percent), 0), 100)
        if not self.rescaling:
            return math.floor(Fraction(percent * VOLUME_RAW_MAX, 100))
        min_raw, max_raw = self._raw_bounds()
        return math.floor(Fraction(percent, 100) * (max_raw - min_raw) + min_raw)

    def volume_command(self, percent: int) -> str:
        """Build the ``NNNVL`` set-volume command for a percentage."""
        return f"{self.percent_to_raw(percent):03d}VL"

    def find_input_index(self, input_id: str) -> int:
        for index, known in enumerate(self.inputs):
            if known.id == input_id:
                return index
        return -1

    def upsert_input(self, new_input: Input) -> tuple[int, bool]:
        """Add a discovered input, or update its name if already known.

        Returns the input's index and whether it was newly added.
        """
        index = self.find_input_index(new_input.id)
        if index != -1:
            self.inputs[index].name = new_input.name
            return index, False
        self.inputs.append(new_input)
        self.missing_inputs.discard(new_input.id)
        self.discovered_count += 1
        return len(self.inputs) - 1, True

    @property
    def active_input(self) -> Optional[Input]:
        if 0 <= self.active_input_index < len(self.inputs):
            return self.inputs[self.active_input_index]
        return None

    @property
    def discovery_complete(self) -> bool:
        """No probe is unanswered and at least one input exists."""
        return not self.missing_inputs and len(self.inputs) > 0
