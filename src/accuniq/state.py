"""Device status tracking for ``A`` packets.

The analyzer reports its front-panel state as a single ASCII byte.
StateTracker remembers the last state so that only transitions are
reported, and flags the transition into CompleteDisplay, which is the
cue to pull the measurement off the device.

Example:
    >>> from accuniq.state import StateTracker
    >>> tracker = StateTracker()
    >>> tracker.update(0x35).current.display_name
    'Measuring Body Composition'
    >>> tracker.update(0x35) is None
    True
"""

from dataclasses import dataclass
from enum import Enum


class DeviceState(Enum):
    """Front-panel state of the analyzer."""

    READY = "ready"
    MEASURING_WEIGHT = "measuring_weight"
    INPUT_MEMBER_INFO = "input_member_info"
    MEASURING_BODY_COMPOSITION = "measuring_body_composition"
    COMPLETE_DISPLAY = "complete_display"
    PRINTING = "printing"
    SETTING = "setting"
    CALIBRATION = "calibration"
    UNKNOWN = "unknown"

    @classmethod
    def from_byte(cls, status: int) -> "DeviceState":
        """Map a status byte to a state; unrecognised bytes are UNKNOWN."""
        return _STATUS_BYTES.get(status, cls.UNKNOWN)

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_STATUS_BYTES = {
    0x30: DeviceState.READY,
    0x31: DeviceState.MEASURING_WEIGHT,
    0x32: DeviceState.INPUT_MEMBER_INFO,
    0x33: DeviceState.INPUT_MEMBER_INFO,
    0x34: DeviceState.INPUT_MEMBER_INFO,
    0x35: DeviceState.MEASURING_BODY_COMPOSITION,
    0x36: DeviceState.COMPLETE_DISPLAY,
    0x37: DeviceState.SETTING,
    0x41: DeviceState.SETTING,
    0x42: DeviceState.SETTING,
    0x43: DeviceState.CALIBRATION,
}

_DISPLAY_NAMES = {
    DeviceState.READY: "Ready",
    DeviceState.MEASURING_WEIGHT: "Measuring Weight",
    DeviceState.INPUT_MEMBER_INFO: "Input Member Info",
    DeviceState.MEASURING_BODY_COMPOSITION: "Measuring Body Composition",
    DeviceState.COMPLETE_DISPLAY: "Complete",
    DeviceState.PRINTING: "Printing",
    DeviceState.SETTING: "Settings",
    DeviceState.CALIBRATION: "Calibration",
    DeviceState.UNKNOWN: "Unknown",
}


@dataclass(frozen=True)
class StateChange:
    """A transition reported by StateTracker.update()."""

    previous: DeviceState
    current: DeviceState

    @property
    def requests_measurement(self) -> bool:
        """True when the device has just finished a measurement."""
        return self.current is DeviceState.COMPLETE_DISPLAY


class StateTracker:
    """Remembers the last reported state; reports only changes."""

    def __init__(self):
        self._state = DeviceState.UNKNOWN

    @property
    def state(self) -> DeviceState:
        return self._state

    def reset(self) -> None:
        """Forget the tracked state (on disconnect)."""
        self._state = DeviceState.UNKNOWN

    def update(self, status: int) -> StateChange | None:
        """Apply a status byte.

        Returns:
            StateChange if the state differs from the tracked one,
            otherwise None.
        """
        new_state = DeviceState.from_byte(status)
        if new_state is self._state:
            return None
        change = StateChange(previous=self._state, current=new_state)
        self._state = new_state
        return change
