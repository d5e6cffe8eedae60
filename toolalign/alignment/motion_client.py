"""
Motion Controller Client

Blocking client for a Klipper printer behind the Moonraker HTTP API. It reads
the toolhead position and the stored tool offsets, and issues the moves, tool
changes and offset adjustments the auto-offset controller asks for.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests

Position = Tuple[float, float, float]


class MotionControllerError(Exception):
    """Base class for failures talking to the motion controller."""


class TransportError(MotionControllerError):
    """The request did not complete or came back with a non-2xx status."""


class ProtocolError(MotionControllerError):
    """The response was not the JSON shape we expected."""


class Axis(enum.Enum):
    X = "X"
    Y = "Y"
    Z = "Z"


@dataclass
class MotionState:
    """Last polled controller state. Stale as soon as anything moves."""
    absolute_coordinates: bool = True
    position: Optional[Position] = None
    homed_axes: Tuple[bool, bool, bool] = (False, False, False)
    motors_enabled: Tuple[bool, bool, bool] = (False, False, False)


def _fmt(value: float) -> str:
    text = f"{value:.6f}".rstrip('0').rstrip('.')
    return text if text not in ('', '-') else '0'


def bounce_legs(amount: float, bounce: float) -> Tuple[float, float]:
    """
    Split a relative move into an overshoot leg and a settle leg.

    The first leg travels past the target by `bounce` in the direction of
    travel and the second comes back by the same amount, so backlash is
    always taken up from the same side. A zero move counts as negative.
    """
    if amount > 0:
        return amount + bounce, -bounce
    return amount - bounce, bounce


def overshoot_target(current: float, target: float, bounce: float) -> float:
    """Absolute-move counterpart of bounce_legs for a single coordinate."""
    if target - current > 0:
        return target + bounce
    return target - bounce


class KlipperClient:
    """
    Synchronous Moonraker client.

    Every gcode script is sent in absolute mode. The cached position is
    invalidated by every successful script and re-read on demand.
    """

    ABSOLUTE_MODE = "G90"
    Z_FEEDRATE = 500

    def __init__(self, base_url: str, timeout: float = 10.0, z_height: float = 33.2,
                 session: Optional[requests.Session] = None):
        """
        Initialize the client.

        Args:
            base_url: Moonraker URL, e.g. http://printer.local
            timeout: Per-request timeout in seconds
            z_height: Fixed Z height used when approaching the camera
            session: Optional requests session (mainly for tests)
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.z_height = z_height
        self.session = session or requests.Session()
        self.logger = logging.getLogger(__name__)

        self.state = MotionState()
        self._position_stale = True

    def close(self):
        self.session.close()

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"Request to {url} failed: {e}") from e

        if not response.ok:
            raise TransportError(f"Request to {url} failed: HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"Invalid JSON from {url}: {e}") from e

    def _query(self, objects: Dict[str, Any]) -> Dict[str, Any]:
        data = self._post('/printer/objects/query', {'objects': objects})
        try:
            return data['result']['status']
        except (KeyError, TypeError) as e:
            raise ProtocolError(f"Unexpected query response: missing {e}") from e

    def run_gcode(self, script: str):
        """Run a gcode script (lines separated by newlines) in absolute mode."""
        self.logger.debug(f"Running gcode: {script!r}")
        self._post('/printer/gcode/script', {'script': f"{self.ABSOLUTE_MODE}\n{script}"})
        self._position_stale = True

    @property
    def position_stale(self) -> bool:
        return self._position_stale

    def fetch_position(self) -> Position:
        """Query the toolhead position and refresh the cache."""
        status = self._query({'toolhead': ['position']})
        try:
            raw = status['toolhead']['position']
            position = (float(raw[0]), float(raw[1]), float(raw[2]))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProtocolError(f"Unexpected toolhead position: {e}") from e

        self.state.position = position
        self._position_stale = False
        return position

    def get_position(self) -> Position:
        """Cached position, re-fetched if anything moved since the last read."""
        if self._position_stale or self.state.position is None:
            return self.fetch_position()
        return self.state.position

    def fetch_status(self) -> MotionState:
        """Poll positioning mode, position, homed axes and motor state."""
        status = self._query({
            'toolhead': ['position', 'homed_axes'],
            'gcode_move': ['absolute_coordinates'],
            'stepper_enable': None,
        })
        try:
            toolhead = status['toolhead']
            raw = toolhead['position']
            position = (float(raw[0]), float(raw[1]), float(raw[2]))
            homed = toolhead.get('homed_axes', '')
            absolute = bool(status['gcode_move']['absolute_coordinates'])
            steppers = status.get('stepper_enable', {}).get('steppers', {})
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            raise ProtocolError(f"Unexpected status response: {e}") from e

        self.state = MotionState(
            absolute_coordinates=absolute,
            position=position,
            homed_axes=('x' in homed, 'y' in homed, 'z' in homed),
            motors_enabled=(
                bool(steppers.get('stepper_x', False)),
                bool(steppers.get('stepper_y', False)),
                bool(steppers.get('stepper_z', False)),
            ),
        )
        self._position_stale = False
        return self.state

    def move_to_position(self, position: Tuple[float, float], bounce: Optional[float] = None):
        """
        Move to the Z approach height, then to (x, y).

        With a bounce amount the head first overshoots past the target on
        each axis in the direction of travel, then settles onto it.
        """
        x, y = position
        lines = [f"G1 Z{self.z_height:.2f}"]

        if bounce:
            current_x, current_y, _ = self.get_position()
            lines.append(f"G1 X{_fmt(overshoot_target(current_x, x, bounce))} "
                         f"Y{_fmt(overshoot_target(current_y, y, bounce))}")

        lines.append(f"G1 X{_fmt(x)} Y{_fmt(y)}")
        self.logger.debug(f"Moving to ({x:.4f}, {y:.4f}), bounce={bounce}")
        self.run_gcode("\n".join(lines))

    def move_axis_relative(self, axis: Axis, amount: float, bounce: Optional[float] = None):
        """Relative single-axis move. Z moves are never bounced."""
        axis = Axis(axis)
        if axis is Axis.Z:
            self.run_gcode(f"_CLIENT_LINEAR_MOVE Z={_fmt(amount)} F={self.Z_FEEDRATE}")
            return

        if bounce:
            first, second = bounce_legs(amount, bounce)
            self.logger.debug(f"Moving {axis.value} by {amount:.4f} via {first:.4f}, {second:.4f}")
            self.run_gcode(f"_CLIENT_LINEAR_MOVE {axis.value}={_fmt(first)}")
            self.run_gcode(f"_CLIENT_LINEAR_MOVE {axis.value}={_fmt(second)}")
        else:
            self.run_gcode(f"_CLIENT_LINEAR_MOVE {axis.value}={_fmt(amount)}")

    def home_all(self):
        self.run_gcode("G28")

    def home_xy(self):
        self.run_gcode("G28 X Y")

    def pick_tool(self, tool: int):
        if tool < 0:
            raise ValueError(f"Invalid tool number: {tool}")
        self.run_gcode(f"T{tool}")

    def dropoff_tool(self):
        self.run_gcode("T_1")

    def disable_motors(self):
        self.run_gcode("M18")

    def wait_for_moves(self):
        self.run_gcode("M400")

    def dwell(self, milliseconds: int):
        self.run_gcode(f"G4 P{int(milliseconds)}")

    def get_tool_offsets(self) -> List[Position]:
        """
        Read the per-tool offsets from the save_variables object.

        Tools are read from t0 upwards until the first tool with no offset
        variables at all.
        """
        status = self._query({'save_variables': None})
        try:
            variables = status['save_variables']['variables']
        except (KeyError, TypeError) as e:
            raise ProtocolError(f"Unexpected save_variables response: missing {e}") from e

        offsets = []
        tool = 0
        while True:
            keys = [f"t{tool}_{axis}_offset" for axis in ('x', 'y', 'z')]
            present = [key in variables for key in keys]
            if not any(present):
                break
            if not all(present):
                raise ProtocolError(f"Incomplete offset variables for tool {tool}")
            try:
                offsets.append(tuple(float(variables[key]) for key in keys))
            except (TypeError, ValueError) as e:
                raise ProtocolError(f"Invalid offset value for tool {tool}: {e}") from e
            tool += 1

        return offsets

    def adjust_tool_offset(self, tool: int, axis: Axis, amount: float):
        """Add `amount` to the stored X or Y offset of a tool."""
        axis = Axis(axis)
        if axis is Axis.Z:
            raise ValueError("Only X and Y tool offsets can be adjusted")
        if tool < 0:
            raise ValueError(f"Invalid tool number: {tool}")
        self.run_gcode(f"TC_ADJUST_OFFSET TOOL={tool} AXIS={axis.value} AMOUNT={_fmt(amount)}")
