"""
Test configuration and shared fixtures for the nozzle alignment tests.
"""

import cv2
import numpy as np
import pytest

from toolalign.alignment.auto_offset import AutoOffsetController, AutoOffsetSettings
from toolalign.alignment.circle_aggregator import CircleAggregator


class FakeMotionClient:
    """
    In-memory stand-in for KlipperClient.

    The reported position depends only on which tool is picked, which is
    enough to drive the calibration sessions.
    """

    def __init__(self, tool_positions=None, idle_position=(150.0, 150.0, 30.0)):
        self.tool_positions = tool_positions or {}
        self.idle_position = idle_position
        self.active_tool = None
        self.calls = []
        self.fail_next = None
        self._failures = {}

    def fail_once(self, name, error, after=0):
        """Make the call `name` raise `error` once, after `after` successful calls."""
        self._failures[name] = [after, error]

    def _maybe_fail(self, name=None):
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error

        failure = self._failures.get(name)
        if failure is not None:
            if failure[0] == 0:
                del self._failures[name]
                raise failure[1]
            failure[0] -= 1

    def get_position(self):
        self._maybe_fail('get_position')
        return self.tool_positions.get(self.active_tool, self.idle_position)

    def fetch_position(self):
        return self.get_position()

    def move_axis_relative(self, axis, amount, bounce=None):
        self._maybe_fail('move_axis_relative')
        self.calls.append(('move_axis_relative', axis, amount, bounce))

    def move_to_position(self, position, bounce=None):
        self._maybe_fail('move_to_position')
        self.calls.append(('move_to_position', position, bounce))

    def pick_tool(self, tool):
        self._maybe_fail('pick_tool')
        self.calls.append(('pick_tool', tool))
        self.active_tool = tool

    def dropoff_tool(self):
        self._maybe_fail('dropoff_tool')
        self.calls.append(('dropoff_tool',))
        self.active_tool = None

    def home_xy(self):
        self._maybe_fail('home_xy')
        self.calls.append(('home_xy',))

    def adjust_tool_offset(self, tool, axis, amount):
        self._maybe_fail('adjust_tool_offset')
        self.calls.append(('adjust_tool_offset', tool, axis, amount))

    def get_tool_offsets(self):
        return [(0.0, 0.0, 0.0)] * 4

    def close(self):
        pass

    def calls_named(self, name):
        return [call for call in self.calls if call[0] == name]


def seed(aggregator, detection, count=45):
    """Push the same detection `count` times."""
    for _ in range(count):
        aggregator.add_frame(detection)


def create_nozzle_frame(width=640, height=480, center=None, radius=30,
                        background=200, nozzle=20):
    """RGB frame with a dark filled disk on a bright background."""
    frame = np.full((height, width, 3), background, dtype=np.uint8)
    if center is None:
        center = (width // 2, height // 2)
    cv2.circle(frame, center, radius, (nozzle, nozzle, nozzle), -1)
    return frame


@pytest.fixture
def fake_client():
    return FakeMotionClient()


@pytest.fixture
def aggregator():
    return CircleAggregator(window_size=45, min_samples=5)


@pytest.fixture
def controller_factory(tmp_path):
    """Build a controller around a fake client, writing reports to tmp_path."""
    def make(client, **settings):
        return AutoOffsetController(
            client,
            AutoOffsetSettings(**settings),
            output_dir=str(tmp_path / "data_output"),
        )
    return make
