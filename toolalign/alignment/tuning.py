"""
Detector Tuning Module

Offline workflow for choosing locator settings. Camera frames are saved as
numbered screenshots, optionally together with a hand-labeled nozzle center,
and a settings candidate is scored by running the locator over every labeled
image.
"""

import dataclasses
import json
import logging
import math
import os
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import cv2
import numpy as np

from .nozzle_locator import DetectionStrategy, DetectorState, VisionSettings, locate

TARGETS_FILENAME = 'saved_targets.json'
SCREENSHOT_PATTERN = 'frame_{:04d}.jpg'
MISS_PENALTY = 1000.0
NO_DETECTION_SCORE = 1e30

logger = logging.getLogger(__name__)


@dataclass
class SavedTargets:
    """
    Labeled nozzle centers, keyed by image file name within the image folder.

    index is the number given to the next labeled screenshot.
    """
    index: int = 0
    targets: Dict[str, Tuple[float, float]] = field(default_factory=dict)

    @classmethod
    def load(cls, directory: str) -> 'SavedTargets':
        path = os.path.join(directory, TARGETS_FILENAME)
        if not os.path.exists(path):
            return cls()
        with open(path, 'r') as f:
            data = json.load(f)
        targets = {name: (float(x), float(y)) for name, (x, y) in data.get('targets', {}).items()}
        return cls(index=int(data.get('index', 0)), targets=targets)

    def save(self, directory: str):
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, TARGETS_FILENAME)
        with open(path, 'w') as f:
            json.dump({'index': self.index,
                       'targets': {name: list(target) for name, target in self.targets.items()}},
                      f, indent=2, sort_keys=True)

    def add_target(self, target: Tuple[float, float]) -> str:
        """Reserve the next file name for a labeled image and record its target."""
        name = SCREENSHOT_PATTERN.format(self.index)
        self.index += 1
        self.targets[name] = (float(target[0]), float(target[1]))
        return name


def next_screenshot_path(directory: str, start: int = 0) -> str:
    """First frame_NNNN.jpg in the directory that does not exist yet."""
    n = start
    while True:
        path = os.path.join(directory, SCREENSHOT_PATTERN.format(n))
        if not os.path.exists(path):
            return path
        n += 1


def _write_image(path: str, image: np.ndarray):
    if image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
    if not cv2.imwrite(path, image):
        raise OSError(f"Could not write image {path}")


def save_screenshot(frame: np.ndarray, directory: str,
                    target: Optional[Tuple[float, float]] = None) -> str:
    """
    Save an RGB frame into the tuning image folder.

    Args:
        frame: RGB frame as delivered by a camera source
        directory: Image folder
        target: Labeled nozzle center in frame pixels, if known

    Returns:
        Path of the written image
    """
    os.makedirs(directory, exist_ok=True)

    if target is None:
        path = next_screenshot_path(directory)
        _write_image(path, frame)
        logger.info(f"Saved screenshot {path}")
        return path

    saved = SavedTargets.load(directory)
    name = saved.add_target(target)
    path = os.path.join(directory, name)
    if os.path.exists(path):
        raise FileExistsError(f"Labeled screenshot already exists: {path}")

    _write_image(path, frame)
    saved.save(directory)
    logger.info(f"Saved labeled screenshot {path} at ({target[0]:.1f}, {target[1]:.1f})")
    return path


@dataclass
class EvaluationResult:
    """Locator errors over a labeled image folder."""
    errors: List[Tuple[float, float]] = field(default_factory=list)
    misses: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    @property
    def average_error(self) -> float:
        """Mean euclidean distance to the labeled center, NaN without detections."""
        if not self.errors:
            return math.nan
        return sum(math.hypot(dx, dy) for dx, dy in self.errors) / len(self.errors)

    @property
    def score(self) -> float:
        """Lower is better. Each miss costs MISS_PENALTY pixels."""
        score = self.average_error + MISS_PENALTY * len(self.misses)
        if math.isnan(score):
            return NO_DETECTION_SCORE
        return score


def evaluate(directory: str, settings: VisionSettings,
             targets: Optional[SavedTargets] = None,
             debug_dir: Optional[str] = None,
             detector_state: Optional[DetectorState] = None) -> EvaluationResult:
    """
    Run the locator over every labeled image and collect the errors.

    Args:
        directory: Image folder holding the labeled screenshots
        settings: Candidate settings
        targets: Labels, loaded from the folder if None
        debug_dir: If set, the processed image of each frame is written there
        detector_state: Reusable detectors

    Returns:
        EvaluationResult; images that cannot be read or processed are listed
        in failures and do not count as misses
    """
    if targets is None:
        targets = SavedTargets.load(directory)
    if detector_state is None:
        detector_state = DetectorState()
    if debug_dir:
        os.makedirs(debug_dir, exist_ok=True)

    result = EvaluationResult()
    for name, (target_x, target_y) in sorted(targets.targets.items()):
        image = cv2.imread(os.path.join(directory, name))
        if image is None:
            logger.warning(f"Could not read labeled image {name}")
            result.failures.append(name)
            continue

        try:
            output, detection = locate(cv2.cvtColor(image, cv2.COLOR_BGR2RGB), settings,
                                       detector_state)
        except cv2.error as e:
            logger.error(f"Failed to locate nozzle in {name}: {e}")
            result.failures.append(name)
            continue

        if debug_dir:
            stem = os.path.splitext(name)[0]
            _write_image(os.path.join(debug_dir, f"{stem}_output.jpg"), output)

        if detection is None:
            result.misses.append(name)
            continue

        result.errors.append((target_x - detection[0], target_y - detection[1]))
        logger.debug(f"{name}: detected ({detection[0]:.2f}, {detection[1]:.2f}), "
                     f"target ({target_x:.2f}, {target_y:.2f})")

    logger.info(f"Evaluated {len(targets.targets)} images with {settings.strategy.value}: "
                f"{len(result.errors)} detections, {len(result.misses)} misses, "
                f"average error {result.average_error:.3f}px, score {result.score:.3f}")
    return result


def compare_strategies(directory: str, settings: VisionSettings,
                       strategies: Optional[Iterable[DetectionStrategy]] = None
                       ) -> List[Tuple[DetectionStrategy, EvaluationResult]]:
    """Evaluate the settings once per strategy, best score first."""
    if strategies is None:
        strategies = list(DetectionStrategy)

    targets = SavedTargets.load(directory)
    detector_state = DetectorState()
    results = []
    for strategy in strategies:
        candidate = dataclasses.replace(settings, strategy=strategy)
        results.append((strategy, evaluate(directory, candidate, targets,
                                           detector_state=detector_state)))

    results.sort(key=lambda item: item[1].score)
    return results
