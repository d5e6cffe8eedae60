"""
Auto-Offset Controller Module

State machine that turns the aggregated nozzle estimate into corrective moves
and, once a nozzle is centered, into tool offsets or repeatability reports.
It is ticked from outside (once per control cycle) and never blocks on the
camera; only the motion controller calls are blocking.
"""

import enum
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from .circle_aggregator import CircleAggregator
from .motion_client import Axis, KlipperClient, MotionControllerError
from .repeatability import Sample, write_report


class StateError(Exception):
    """An operation was requested without its preconditions being met."""


class SessionKind(enum.Enum):
    IDLE = "idle"
    SINGLE_TOOL = "single_tool"
    ALL_TOOLS = "all_tools"
    REPEATABILITY_TEST = "repeatability_test"
    HOMING_TEST = "homing_test"


class TickOutcome(enum.Enum):
    IDLE = "idle"
    WAITING = "waiting"
    MOVED = "moved"
    TOOL_CHANGED = "tool_changed"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class AutoOffsetSettings:
    """Tuning for the centering loop and the calibration sessions."""
    target_max_offset: float = 0.00625  # mm, per axis
    min_confidence_for_move: float = 0.95
    min_interval_between_moves: float = 2.0  # seconds
    swap_axes: bool = True
    mirror_axes: Tuple[bool, bool] = (False, True)
    park_tool: bool = True
    samples_per_tool: int = 3
    repeatability_samples: int = 10
    bounce_amount: float = 0.5
    num_tools: int = 4
    camera_size: Tuple[float, float] = (1280.0, 800.0)

    @classmethod
    def from_dict(cls, data: Dict) -> 'AutoOffsetSettings':
        defaults = cls()
        return cls(
            target_max_offset=data.get('target_max_offset', defaults.target_max_offset),
            min_confidence_for_move=data.get('min_confidence_for_move', defaults.min_confidence_for_move),
            min_interval_between_moves=data.get('min_interval_between_moves',
                                                defaults.min_interval_between_moves),
            swap_axes=data.get('swap_axes', defaults.swap_axes),
            mirror_axes=tuple(data.get('mirror_axes', defaults.mirror_axes)),
            park_tool=data.get('park_tool', defaults.park_tool),
            samples_per_tool=data.get('samples_per_tool', defaults.samples_per_tool),
            repeatability_samples=data.get('repeatability_samples', defaults.repeatability_samples),
            bounce_amount=data.get('bounce_amount', defaults.bounce_amount),
            num_tools=data.get('num_tools', defaults.num_tools),
            camera_size=tuple(data.get('camera_size', defaults.camera_size)),
        )


@dataclass
class ToolOffset:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def adjust(self, axis: Axis, amount: float):
        if axis is Axis.X:
            self.x += amount
        elif axis is Axis.Y:
            self.y += amount
        else:
            self.z += amount


@dataclass
class SavedData:
    """Data kept between runs: the camera reference position."""
    camera_position: Optional[Tuple[float, float]] = None

    @classmethod
    def load(cls, path: str) -> 'SavedData':
        if not os.path.exists(path):
            return cls()
        with open(path, 'r') as f:
            data = json.load(f)
        position = data.get('camera_position')
        return cls(camera_position=tuple(position) if position is not None else None)

    def save(self, path: str):
        with open(path, 'w') as f:
            json.dump({'camera_position': self.camera_position}, f, indent=2)


@dataclass
class CalibrationSession:
    """
    One run of the state machine. current_tool is None until a tool has
    been picked for the session.

    A tool change that failed stays in pending_change and is retried on the
    next tick. Once the last sample is in, the session is finalizing and
    never samples again; committed lists the offsets already sent.
    """
    kind: SessionKind = SessionKind.IDLE
    current_tool: Optional[int] = None
    prev_position: Optional[Tuple[float, float]] = None
    last_move: Optional[float] = None
    remaining_samples: int = 0
    repeatability: List[Sample] = field(default_factory=list)
    tool_samples: Dict[int, List[Sample]] = field(default_factory=dict)
    pending_change: Optional[Tuple[int, bool]] = None  # (tool, rehome)
    finalizing: bool = False
    committed: Set[Tuple[int, Axis]] = field(default_factory=set)


class AutoOffsetController:
    """
    Drives calibration sessions against a motion controller client.

    Failures are collected in `errors` rather than raised from tick(), so a
    bad network round-trip costs one tick and nothing more.
    """

    def __init__(self,
                 client: KlipperClient,
                 settings: Optional[AutoOffsetSettings] = None,
                 output_dir: str = "data_output",
                 saved_data_file: Optional[str] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the controller.

        Args:
            client: Motion controller client
            settings: Session settings
            output_dir: Directory for repeatability reports
            saved_data_file: JSON file holding the camera position, if any
            clock: Monotonic time source in seconds
        """
        self.client = client
        self.settings = settings or AutoOffsetSettings()
        self.output_dir = output_dir
        self.saved_data_file = saved_data_file
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.session = CalibrationSession()
        self.active_tool: Optional[int] = None
        self.camera_position: Optional[Tuple[float, float]] = None
        self.tool_offsets: List[ToolOffset] = []
        self.errors: List[str] = []
        self.last_report_path: Optional[str] = None
        self.statistics = {
            'moves_issued': 0,
            'tool_changes': 0,
            'sessions_completed': 0,
            'errors': 0,
        }

        if self.saved_data_file:
            self.camera_position = SavedData.load(self.saved_data_file).camera_position
            if self.camera_position is not None:
                self.logger.info(f"Loaded camera position {self.camera_position}")

    @property
    def kind(self) -> SessionKind:
        return self.session.kind

    def _report_error(self, message: str):
        self.logger.error(message)
        self.errors.append(message)
        self.statistics['errors'] += 1

    def _run_action(self, description: str, action: Callable[[], None]) -> bool:
        try:
            action()
            return True
        except (MotionControllerError, StateError, ValueError, OSError) as e:
            self._report_error(f"{description} failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Session control

    def _resolve_tool(self, tool: Optional[int]) -> int:
        if tool is None:
            tool = self.active_tool
        if tool is None:
            raise StateError("No active tool")
        if tool < 0 or tool >= self.settings.num_tools:
            raise StateError(f"Invalid tool index {tool}")
        if tool != self.active_tool:
            self._pickup(tool, move_to_camera=True)
        return tool

    def _start(self, kind: SessionKind, tool: Optional[int] = None, remaining: int = 0,
               pending_change: Optional[Tuple[int, bool]] = None):
        x, y, _ = self.client.get_position()
        self.session = CalibrationSession(
            kind=kind,
            current_tool=tool,
            prev_position=(x, y),
            remaining_samples=remaining,
            pending_change=pending_change,
        )
        self.logger.info(f"Started {kind.value} session (tool={tool})")

    def start_single_tool(self, tool: Optional[int] = None) -> bool:
        """Center one tool, defaulting to the active one."""
        def start():
            self._start(SessionKind.SINGLE_TOOL, self._resolve_tool(tool))
        return self._run_action("Starting single tool session", start)

    def start_all_tools(self) -> bool:
        """Center every tool in turn and commit offsets relative to tool 0."""
        def start():
            if self.settings.num_tools < 1:
                raise StateError("num_tools must be at least 1")
            if self.settings.samples_per_tool < 1:
                raise StateError("samples_per_tool must be at least 1")
            self._start(SessionKind.ALL_TOOLS, pending_change=(0, False))
        return self._run_action("Starting all tools session", start)

    def start_repeatability_test(self, tool: Optional[int] = None,
                                 samples: Optional[int] = None) -> bool:
        return self._start_repeatability(SessionKind.REPEATABILITY_TEST, tool, samples)

    def start_homing_test(self, tool: Optional[int] = None, samples: Optional[int] = None) -> bool:
        return self._start_repeatability(SessionKind.HOMING_TEST, tool, samples)

    def _start_repeatability(self, kind: SessionKind, tool: Optional[int],
                             samples: Optional[int]) -> bool:
        count = self.settings.repeatability_samples if samples is None else samples

        def start():
            if count < 1:
                raise StateError(f"Repeatability test needs at least one sample, got {count}")
            if self.camera_position is None:
                raise StateError("No camera position saved, the tool cannot be returned to the camera")
            self._start(kind, self._resolve_tool(tool), remaining=count)
        return self._run_action(f"Starting {kind.value} session", start)

    def stop(self):
        """Return to idle. A motion command already sent is not aborted."""
        if self.session.kind is not SessionKind.IDLE:
            self.logger.info(f"Stopped {self.session.kind.value} session")
        self.session = CalibrationSession()

    # ------------------------------------------------------------------
    # Tick

    def pixels_to_offset(self, guess: Tuple[float, float, float],
                         pixels_per_mm: float) -> Tuple[float, float]:
        """Convert a pixel position into the machine move that centers it."""
        center_x = self.settings.camera_size[0] / 2.0
        center_y = self.settings.camera_size[1] / 2.0

        move_x = (center_x - guess[0]) / pixels_per_mm
        move_y = (center_y - guess[1]) / pixels_per_mm

        if self.settings.swap_axes:
            move_x, move_y = move_y, move_x
        if self.settings.mirror_axes[0]:
            move_x = -move_x
        if self.settings.mirror_axes[1]:
            move_y = -move_y
        return move_x, move_y

    def tick(self, aggregator: CircleAggregator, pixels_per_mm: float,
             now: Optional[float] = None) -> TickOutcome:
        """
        Advance the active session by at most one action.

        Args:
            aggregator: Aggregator fed with the latest detections
            pixels_per_mm: Image scale from the current settings snapshot
            now: Current time, defaults to the controller clock

        Returns:
            What this tick did
        """
        if self.session.kind is SessionKind.IDLE:
            return TickOutcome.IDLE

        if now is None:
            now = self.clock()

        try:
            return self._tick(aggregator, pixels_per_mm, now)
        except (MotionControllerError, StateError) as e:
            self._report_error(f"{self.session.kind.value} tick failed: {e}")
            return TickOutcome.ERROR

    def _tick(self, aggregator: CircleAggregator, pixels_per_mm: float,
              now: float) -> TickOutcome:
        session = self.session

        # a tool change or the final step that failed is retried on its own
        if session.pending_change is not None:
            tool, rehome = session.pending_change
            self._change_tool(tool, aggregator, now, rehome=rehome)
            return TickOutcome.TOOL_CHANGED

        if session.finalizing:
            return self._finish()

        x, y, _ = self.client.get_position()
        if session.prev_position != (x, y):
            self.logger.debug(f"Position changed to ({x:.4f}, {y:.4f}), clearing samples")
            session.prev_position = (x, y)
            aggregator.clear()

        confidence = aggregator.confidence()
        guess = aggregator.current_guess()
        if confidence is None or guess is None:
            return TickOutcome.WAITING

        if confidence[0] < self.settings.min_confidence_for_move:
            return TickOutcome.WAITING

        if (session.last_move is not None
                and now - session.last_move < self.settings.min_interval_between_moves):
            return TickOutcome.WAITING

        offset = self.pixels_to_offset(guess, pixels_per_mm)
        limit = self.settings.target_max_offset
        if abs(offset[0]) < limit and abs(offset[1]) < limit:
            return self._on_centered((x, y), offset, aggregator, now)

        self.logger.debug(f"Moving to center: ({offset[0]:.4f}, {offset[1]:.4f})")
        self.client.move_axis_relative(Axis.X, offset[0], self.settings.bounce_amount)
        self.client.move_axis_relative(Axis.Y, offset[1], self.settings.bounce_amount)
        session.last_move = now
        self.statistics['moves_issued'] += 1
        return TickOutcome.MOVED

    def _on_centered(self, position: Tuple[float, float], offset: Tuple[float, float],
                     aggregator: CircleAggregator, now: float) -> TickOutcome:
        session = self.session
        sample = (position, offset)

        if session.kind is SessionKind.SINGLE_TOOL:
            self.logger.info(f"Tool {session.current_tool} centered at "
                             f"({position[0]:.4f}, {position[1]:.4f})")
            return self._complete()

        if session.kind is SessionKind.ALL_TOOLS:
            tool = session.current_tool
            samples = session.tool_samples.setdefault(tool, [])
            samples.append(sample)
            self.logger.info(f"Tool {tool} centered ({len(samples)}/{self.settings.samples_per_tool})")

            if len(samples) < self.settings.samples_per_tool:
                return self._request_change(tool, aggregator, now)

            if tool == 0:
                self.camera_position = _median_position(samples)
                self.logger.info(f"Camera reference position: {self.camera_position}")

            if tool + 1 >= self.settings.num_tools:
                session.finalizing = True
                return self._finish()

            return self._request_change(tool + 1, aggregator, now)

        # repeatability and homing tests
        session.repeatability.append(sample)
        session.remaining_samples -= 1

        if session.remaining_samples <= 0:
            session.finalizing = True
            return self._finish()

        self.logger.debug(f"Found center, {session.remaining_samples} samples remaining")
        return self._request_change(session.current_tool, aggregator, now,
                                    rehome=session.kind is SessionKind.HOMING_TEST)

    def _request_change(self, tool: int, aggregator: CircleAggregator, now: float,
                        rehome: bool = False) -> TickOutcome:
        self.session.pending_change = (tool, rehome)
        self._change_tool(tool, aggregator, now, rehome=rehome)
        return TickOutcome.TOOL_CHANGED

    def _finish(self) -> TickOutcome:
        if self.session.kind is SessionKind.ALL_TOOLS:
            self._finalize_all_tools()
        else:
            self._save_report()
        return self._complete()

    def _complete(self) -> TickOutcome:
        self.logger.info(f"{self.session.kind.value} session complete")
        self.statistics['sessions_completed'] += 1
        self.session = CalibrationSession()
        return TickOutcome.COMPLETED

    def _change_tool(self, tool: int, aggregator: CircleAggregator, now: float,
                     rehome: bool = False):
        self.client.dropoff_tool()
        self.active_tool = None
        if rehome:
            self.client.home_xy()
        self._pickup(tool, move_to_camera=True)

        self.session.current_tool = tool
        self.session.pending_change = None
        self.session.last_move = now
        aggregator.clear()
        self.statistics['tool_changes'] += 1

    def _save_report(self):
        session = self.session
        try:
            self.last_report_path = write_report(
                session.repeatability, session.current_tool, self.output_dir,
                homing=session.kind is SessionKind.HOMING_TEST)
        except OSError as e:
            self.last_report_path = None
            self._report_error(f"Writing repeatability report failed: {e}")

    def _finalize_all_tools(self):
        session = self.session
        reference = None
        for tool in range(self.settings.num_tools):
            samples = session.tool_samples.get(tool)
            if not samples:
                raise StateError(f"No samples recorded for tool {tool}")

            median_x, median_y = _median_position(samples)
            if tool == 0:
                reference = (median_x, median_y)
                continue

            offsets = ((Axis.X, median_x - reference[0]), (Axis.Y, median_y - reference[1]))
            for axis, amount in offsets:
                # adjustments are additive, so each one is sent once
                if (tool, axis) in session.committed:
                    continue
                self.logger.info(f"Setting tool {tool} {axis.value} offset: {amount:.4f}")
                self._commit_offset(tool, axis, amount)
                session.committed.add((tool, axis))

        self.camera_position = reference
        try:
            self._persist_camera_position()
        except (OSError, ValueError) as e:
            self._report_error(f"Saving camera position failed: {e}")

        if self.settings.park_tool:
            self.client.dropoff_tool()
            self.active_tool = None

    def _commit_offset(self, tool: int, axis: Axis, amount: float):
        self.client.adjust_tool_offset(tool, axis, amount)
        while len(self.tool_offsets) <= tool:
            self.tool_offsets.append(ToolOffset())
        self.tool_offsets[tool].adjust(axis, amount)

    # ------------------------------------------------------------------
    # Manual operations

    def _pickup(self, tool: int, move_to_camera: bool):
        self.client.pick_tool(tool)
        self.active_tool = tool
        if move_to_camera and self.camera_position is not None:
            self.client.move_to_position(self.camera_position, self.settings.bounce_amount)

    def pickup_tool(self, tool: int, move_to_camera: bool = True) -> bool:
        return self._run_action(f"Picking tool {tool}", lambda: self._pickup(tool, move_to_camera))

    def dropoff_tool(self) -> bool:
        def dropoff():
            self.client.dropoff_tool()
            self.active_tool = None
        return self._run_action("Dropping tool", dropoff)

    def move_to_camera(self) -> bool:
        def move():
            if self.camera_position is None:
                raise StateError("No camera position saved")
            self.client.move_to_position(self.camera_position, self.settings.bounce_amount)
        return self._run_action("Moving to camera", move)

    def _persist_camera_position(self):
        if not self.saved_data_file:
            return
        saved = SavedData.load(self.saved_data_file)
        saved.camera_position = self.camera_position
        saved.save(self.saved_data_file)

    def save_camera_position(self) -> bool:
        """Store the current position as the camera reference."""
        def save():
            x, y, _ = self.client.fetch_position()
            self.camera_position = (x, y)
            self.logger.info(f"Camera position saved: ({x:.4f}, {y:.4f})")
            self._persist_camera_position()
        return self._run_action("Saving camera position", save)

    def adjust_offset_from_camera(self, tool: Optional[int] = None) -> bool:
        """Commit the distance between the current position and the camera as the tool's offset."""
        def adjust():
            target = self.active_tool if tool is None else tool
            if target is None:
                raise StateError("No active tool")
            if self.camera_position is None:
                raise StateError("No camera position saved")
            x, y, _ = self.client.fetch_position()
            self._commit_offset(target, Axis.X, x - self.camera_position[0])
            self._commit_offset(target, Axis.Y, y - self.camera_position[1])
        return self._run_action("Adjusting offset from camera", adjust)

    def refresh_tool_offsets(self) -> bool:
        def refresh():
            self.tool_offsets = [ToolOffset(*offset) for offset in self.client.get_tool_offsets()]
            self.logger.info(f"Loaded offsets for {len(self.tool_offsets)} tools")
        return self._run_action("Reading tool offsets", refresh)

    def get_status(self) -> Dict:
        return {
            'session': self.session.kind.value,
            'current_tool': self.session.current_tool,
            'active_tool': self.active_tool,
            'camera_position': self.camera_position,
            'remaining_samples': self.session.remaining_samples,
            'last_report': self.last_report_path,
            'errors': list(self.errors[-5:]),
            'statistics': dict(self.statistics),
        }


def _median_position(samples: List[Sample]) -> Tuple[float, float]:
    # median of position + residual offset, independently per axis
    xs = sorted(pos[0] + offset[0] for pos, offset in samples)
    ys = sorted(pos[1] + offset[1] for pos, offset in samples)
    return xs[len(xs) // 2], ys[len(ys) // 2]
