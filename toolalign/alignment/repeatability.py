"""
Repeatability statistics and report files.

A sample is ((position_x, position_y), (offset_x, offset_y)): where the
machine was when the nozzle was reported centered, and the residual offset
seen by the camera at that moment.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

import numpy as np

Sample = Tuple[Tuple[float, float], Tuple[float, float]]

logger = logging.getLogger(__name__)


@dataclass
class AxisStats:
    median: float
    mean: float
    std_dev: float
    min: float
    max: float

    @property
    def range(self) -> float:
        return self.max - self.min

    @classmethod
    def from_values(cls, values: Sequence[float]) -> 'AxisStats':
        ordered = np.sort(np.asarray(values, dtype=float))
        return cls(
            # upper middle element for even counts
            median=float(ordered[len(ordered) // 2]),
            mean=float(ordered.mean()),
            std_dev=float(ordered.std()),
            min=float(ordered[0]),
            max=float(ordered[-1]),
        )


@dataclass
class RepeatabilityStats:
    """Per-axis statistics over position + offset."""
    x: AxisStats
    y: AxisStats

    @classmethod
    def from_samples(cls, samples: Sequence[Sample]) -> 'RepeatabilityStats':
        if not samples:
            raise ValueError("No repeatability samples")

        xs = [pos[0] + offset[0] for pos, offset in samples]
        ys = [pos[1] + offset[1] for pos, offset in samples]
        return cls(x=AxisStats.from_values(xs), y=AxisStats.from_values(ys))

    def log_summary(self):
        logger.debug(f"Median: ({self.x.median:.3f}, {self.y.median:.3f})")
        logger.debug(f"Mean: ({self.x.mean:.3f}, {self.y.mean:.3f})")
        logger.debug(f"Standard Deviation: ({self.x.std_dev:.3f}, {self.y.std_dev:.3f})")
        logger.debug(f"Min: ({self.x.min:.3f}, {self.y.min:.3f})")
        logger.debug(f"Max: ({self.x.max:.3f}, {self.y.max:.3f})")
        logger.debug(f"Range: ({self.x.range:.3f}, {self.y.range:.3f})")


def report_filename(tool: int, homing: bool, timestamp: datetime) -> str:
    prefix = "repeatability_homing" if homing else "repeatability"
    return f"{prefix}_tool_{tool}_data_{timestamp.strftime('%Y-%m-%d_%H-%M-%S')}.txt"


def format_report(samples: Sequence[Sample], tool: int, stats: RepeatabilityStats) -> str:
    lines: List[str] = ["X,Y"]
    for (x, y), (offset_x, offset_y) in samples:
        lines.append(f"{x:.6f},{y:.6f},{offset_x:.6f},{offset_y:.6f}")

    lines.append("")
    lines.append(f"Statistics: Tool {tool}")
    lines.append(f"StdDev: X={stats.x.std_dev:.6f}, Y={stats.y.std_dev:.6f}")
    lines.append(f"Range: X={stats.x.range:.6f}, Y={stats.y.range:.6f}")
    return "\n".join(lines) + "\n"


def write_report(samples: Sequence[Sample], tool: int, output_dir: str = "data_output",
                 homing: bool = False, timestamp: Optional[datetime] = None) -> str:
    """
    Write a repeatability report and return its path.

    Args:
        samples: Recorded (position, offset) samples
        tool: Tool index the samples belong to
        output_dir: Directory for the report, created if missing
        homing: Whether the samples came from a homing test
        timestamp: Time used in the file name (defaults to now, UTC)

    Returns:
        Path of the written file
    """
    stats = RepeatabilityStats.from_samples(samples)
    stats.log_summary()

    if timestamp is None:
        timestamp = datetime.now(timezone.utc)

    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, report_filename(tool, homing, timestamp))

    with open(path, 'w') as f:
        f.write(format_report(samples, tool, stats))

    logger.info(f"Repeatability data saved to {path}")
    return path
