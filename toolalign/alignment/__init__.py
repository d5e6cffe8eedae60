"""
Tool Head Alignment - Alignment Module

This package contains the core alignment functionality including:
- Nozzle location in camera frames
- Sliding window aggregation with confidence scoring
- Klipper / Moonraker motion controller client
- Auto-offset calibration sessions and repeatability reports
- Offline detector tuning over labeled screenshots
- Camera source management and system coordination
"""

from .alignment_system import AlignmentSystem, SystemConfig, SettingsStore, LocatorWorker
from .auto_offset import (
    AutoOffsetController,
    AutoOffsetSettings,
    SessionKind,
    StateError,
    TickOutcome,
    ToolOffset,
)
from .circle_aggregator import CircleAggregator
from .motion_client import (
    Axis,
    KlipperClient,
    MotionControllerError,
    MotionState,
    ProtocolError,
    TransportError,
)
from .nozzle_locator import DetectionStrategy, DetectorState, VisionSettings, locate
from .repeatability import RepeatabilityStats, write_report
from .tuning import EvaluationResult, SavedTargets, compare_strategies, evaluate, save_screenshot

__all__ = [
    'AlignmentSystem',
    'SystemConfig',
    'SettingsStore',
    'LocatorWorker',
    'AutoOffsetController',
    'AutoOffsetSettings',
    'SessionKind',
    'StateError',
    'TickOutcome',
    'ToolOffset',
    'CircleAggregator',
    'Axis',
    'KlipperClient',
    'MotionControllerError',
    'MotionState',
    'ProtocolError',
    'TransportError',
    'DetectionStrategy',
    'DetectorState',
    'VisionSettings',
    'locate',
    'RepeatabilityStats',
    'write_report',
    'EvaluationResult',
    'SavedTargets',
    'compare_strategies',
    'evaluate',
    'save_screenshot',
]
