"""
Nozzle Locator Module

This module finds a tool nozzle in a downward-looking camera frame. The frame
runs through a fixed pipeline (gamma, luma, blur, threshold) and then one of
the fixed candidate extraction strategies (Hough circles or one of three blob
detector presets) picks at most one circle.
"""

import enum
import math
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import cv2
import numpy as np

Circle = Tuple[float, float, float]

HOUGH_DP = 1.0
HOUGH_MIN_DIST = 20.0
HOUGH_PARAM1 = 100.0
HOUGH_PARAM2 = 30.0
HOUGH_MIN_RADIUS = 20
HOUGH_MAX_RADIUS = 50
HOUGH_RADIUS_RANGE = (10.0, 50.0)

MARKER_COLOR = (0, 255, 0)
CROSSHAIR_COLOR = (255, 0, 0)


class DetectionStrategy(enum.Enum):
    """Closed set of candidate extraction strategies."""
    HOUGH = "hough"
    BLOB_STANDARD = "blob_standard"
    BLOB_RELAXED = "blob_relaxed"
    BLOB_SUPER_RELAXED = "blob_super_relaxed"

    @property
    def is_blob(self) -> bool:
        return self is not DetectionStrategy.HOUGH


class ThresholdType(enum.Enum):
    """Global threshold variants; all invert so the nozzle ends up white."""
    BINARY_INV = "binary_inv"
    TRIANGLE = "triangle"
    OTSU = "otsu"

    @property
    def cv_flags(self) -> int:
        if self is ThresholdType.TRIANGLE:
            return cv2.THRESH_BINARY_INV + cv2.THRESH_TRIANGLE
        if self is ThresholdType.OTSU:
            return cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU
        return cv2.THRESH_BINARY_INV


@dataclass(frozen=True)
class VisionSettings:
    """Snapshot of the locator settings. Immutable, so it can be shared freely."""
    filter_step: int = 0  # 0 input, 1 luma, 2 blur, 3 threshold, >3 final
    gamma: float = 1.2
    blur_kernel_size: int = 7
    blur_sigma: float = 6.0
    adaptive_threshold: bool = False
    threshold_block_size: int = 17
    threshold_type: ThresholdType = ThresholdType.TRIANGLE
    strategy: DetectionStrategy = DetectionStrategy.BLOB_STANDARD
    draw_circle: bool = True
    crosshair_size: float = 60.0
    pixels_per_mm: float = 200.0
    prescale: float = 1.0

    @classmethod
    def from_dict(cls, data: Dict) -> 'VisionSettings':
        """Build settings from a config section, falling back to defaults."""
        defaults = cls()

        strategy = defaults.strategy
        if 'strategy' in data:
            strategy = DetectionStrategy(data['strategy'])
        elif data.get('use_hough'):
            strategy = DetectionStrategy.HOUGH

        return cls(
            filter_step=data.get('filter_step', defaults.filter_step),
            gamma=data.get('gamma', defaults.gamma),
            blur_kernel_size=data.get('blur_kernel_size', defaults.blur_kernel_size),
            blur_sigma=data.get('blur_sigma', defaults.blur_sigma),
            adaptive_threshold=data.get('adaptive_threshold', defaults.adaptive_threshold),
            threshold_block_size=data.get('threshold_block_size', defaults.threshold_block_size),
            threshold_type=ThresholdType(data.get('threshold_type', defaults.threshold_type.value)),
            strategy=strategy,
            draw_circle=data.get('draw_circle', defaults.draw_circle),
            crosshair_size=data.get('crosshair_size', defaults.crosshair_size),
            pixels_per_mm=data.get('pixels_per_mm', defaults.pixels_per_mm),
            prescale=data.get('prescale', defaults.prescale),
        )


@dataclass(frozen=True)
class BlobPreset:
    """Parameters for one SimpleBlobDetector configuration."""
    min_threshold: float
    max_threshold: float
    threshold_step: float
    min_area: float
    max_area: float
    min_circularity: float
    min_convexity: float
    min_inertia_ratio: float
    min_dist_between_blobs: float
    min_repeatability: int = 2
    blob_color: int = 255  # white after the inverted threshold

    def to_params(self) -> cv2.SimpleBlobDetector_Params:
        params = cv2.SimpleBlobDetector_Params()
        params.minThreshold = self.min_threshold
        params.maxThreshold = self.max_threshold
        params.thresholdStep = self.threshold_step

        params.filterByArea = True
        params.minArea = self.min_area
        params.maxArea = self.max_area

        params.filterByCircularity = True
        params.minCircularity = self.min_circularity
        params.maxCircularity = 1.0

        params.filterByConvexity = True
        params.minConvexity = self.min_convexity
        params.maxConvexity = 1.0

        params.filterByInertia = True
        params.minInertiaRatio = self.min_inertia_ratio

        params.filterByColor = True
        params.blobColor = self.blob_color

        params.minRepeatability = self.min_repeatability
        params.minDistBetweenBlobs = self.min_dist_between_blobs
        return params


BLOB_PRESETS: Dict[DetectionStrategy, BlobPreset] = {
    DetectionStrategy.BLOB_STANDARD: BlobPreset(
        min_threshold=1.0,
        max_threshold=50.0,
        threshold_step=1.0,
        min_area=math.pi * 20.0 ** 2,
        max_area=math.pi * 50.0 ** 2,
        min_circularity=0.4,
        min_convexity=0.3,
        min_inertia_ratio=0.5,
        min_dist_between_blobs=10.0,
    ),
    DetectionStrategy.BLOB_RELAXED: BlobPreset(
        min_threshold=1.0,
        max_threshold=50.0,
        threshold_step=1.0,
        min_area=math.pi * 20.0 ** 2,
        max_area=math.pi * 125.0 ** 2,
        min_circularity=0.4,
        min_convexity=0.1,
        min_inertia_ratio=0.3,
        min_dist_between_blobs=10.0,
    ),
    DetectionStrategy.BLOB_SUPER_RELAXED: BlobPreset(
        min_threshold=20.0,
        max_threshold=200.0,
        threshold_step=1.0,
        min_area=200.0,
        max_area=math.pi * 150.0 ** 2,
        min_circularity=0.5,
        min_convexity=0.5,
        min_inertia_ratio=0.5,
        min_dist_between_blobs=2.0,
    ),
}


@dataclass
class DetectorState:
    """
    Reusable detector objects for the locator.

    Blob detectors are built lazily, one per preset, and kept across frames.
    Nothing here changes what a call to locate() returns.
    """
    blob_detectors: Dict[DetectionStrategy, cv2.SimpleBlobDetector] = field(default_factory=dict)
    gamma_tables: Dict[float, np.ndarray] = field(default_factory=dict)

    def blob_detector(self, strategy: DetectionStrategy) -> cv2.SimpleBlobDetector:
        detector = self.blob_detectors.get(strategy)
        if detector is None:
            detector = cv2.SimpleBlobDetector_create(BLOB_PRESETS[strategy].to_params())
            self.blob_detectors[strategy] = detector
        return detector

    def gamma_table(self, gamma: float) -> np.ndarray:
        table = self.gamma_tables.get(gamma)
        if table is None:
            inv_gamma = 1.0 / gamma
            table = np.array([((i / 255.0) ** inv_gamma) * 255
                              for i in np.arange(0, 256)]).astype('uint8')
            self.gamma_tables[gamma] = table
        return table


def select_best_circle(circles: Sequence[Sequence[float]],
                       image_size: Tuple[int, int]) -> Optional[Circle]:
    """
    Pick the Hough candidate: larger radius wins, on a radius tie the center
    nearer to the image center wins.

    Args:
        circles: Iterable of (x, y, radius)
        image_size: (width, height) of the image the circles came from

    Returns:
        The selected (x, y, radius) or None if no circle is in range
    """
    center_x, center_y = image_size[0] / 2.0, image_size[1] / 2.0
    best = None
    best_dist = None

    for circle in circles:
        x, y, radius = float(circle[0]), float(circle[1]), float(circle[2])
        if radius < HOUGH_RADIUS_RANGE[0] or radius > HOUGH_RADIUS_RANGE[1]:
            continue

        dist = math.hypot(x - center_x, y - center_y)
        if best is None or radius > best[2] or (radius == best[2] and dist < best_dist):
            best = (x, y, radius)
            best_dist = dist

    return best


def draw_overlay(image: np.ndarray, detection: Optional[Circle],
                 crosshair_size: float = 0.0) -> np.ndarray:
    """
    Draw the detection marker and an image-center crosshair.

    Returns a new 3-channel image; the input is left untouched.
    """
    if image.ndim == 2:
        canvas = cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
    else:
        canvas = image.copy()

    if detection is not None:
        x, y, radius = detection
        cv2.circle(canvas, (int(round(x)), int(round(y))), int(round(radius)), MARKER_COLOR, 2)

    if crosshair_size > 0:
        height, width = canvas.shape[:2]
        cx, cy = width // 2, height // 2
        half = int(crosshair_size / 2)
        cv2.line(canvas, (cx - half, cy), (cx + half, cy), CROSSHAIR_COLOR, 1)
        cv2.line(canvas, (cx, cy - half), (cx, cy + half), CROSSHAIR_COLOR, 1)

    return canvas


def _hough_candidate(image: np.ndarray) -> Optional[Circle]:
    circles = cv2.HoughCircles(
        image,
        cv2.HOUGH_GRADIENT,
        HOUGH_DP,
        HOUGH_MIN_DIST,
        param1=HOUGH_PARAM1,
        param2=HOUGH_PARAM2,
        minRadius=HOUGH_MIN_RADIUS,
        maxRadius=HOUGH_MAX_RADIUS,
    )
    if circles is None:
        return None

    height, width = image.shape[:2]
    return select_best_circle(circles[0], (width, height))


def _blob_candidate(image: np.ndarray, strategy: DetectionStrategy,
                    detector_state: DetectorState) -> Optional[Circle]:
    keypoints = detector_state.blob_detector(strategy).detect(image)
    if not keypoints:
        return None

    keypoint = keypoints[0]
    return (float(keypoint.pt[0]), float(keypoint.pt[1]), float(keypoint.size) / 2.0)


def locate(frame: np.ndarray, settings: VisionSettings,
           detector_state: Optional[DetectorState] = None) -> Tuple[np.ndarray, Optional[Circle]]:
    """
    Locate the nozzle in a frame.

    Args:
        frame: RGB (H x W x 3) or single channel uint8 image
        settings: Settings snapshot for this frame
        detector_state: Reusable detectors; a throwaway one is used if None

    Returns:
        (processed_image, detection) where processed_image is the stage picked
        by settings.filter_step and detection is (x, y, radius) in input
        pixels or None
    """
    if detector_state is None:
        detector_state = DetectorState()

    input_size = (frame.shape[1], frame.shape[0])
    img = frame
    if settings.prescale != 1.0:
        img = cv2.resize(img, None, fx=settings.prescale, fy=settings.prescale,
                         interpolation=cv2.INTER_LINEAR)

    if settings.gamma != 1.0:
        img = cv2.LUT(img, detector_state.gamma_table(settings.gamma))
    output = img

    # 1. luma
    if img.ndim == 3:
        img = cv2.cvtColor(img, cv2.COLOR_RGB2YUV)[:, :, 0]
    if settings.filter_step == 1:
        output = img

    # 2. blur
    kernel = settings.blur_kernel_size
    img = cv2.GaussianBlur(img, (kernel, kernel), settings.blur_sigma, sigmaY=settings.blur_sigma,
                           borderType=cv2.BORDER_REPLICATE)
    if settings.filter_step == 2:
        output = img

    # 3. threshold
    if settings.adaptive_threshold:
        img = cv2.adaptiveThreshold(img, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, cv2.THRESH_BINARY,
                                    settings.threshold_block_size * 2 + 1, 1)
    else:
        _, img = cv2.threshold(img, settings.threshold_block_size, 255,
                               settings.threshold_type.cv_flags)
    if settings.filter_step == 3:
        output = img

    # 4. candidate extraction
    if settings.strategy is DetectionStrategy.HOUGH:
        detection = _hough_candidate(img)
    elif settings.strategy.is_blob:
        detection = _blob_candidate(img, settings.strategy, detector_state)
    else:
        raise ValueError(f"Unknown detection strategy: {settings.strategy}")

    if settings.filter_step > 3:
        output = img

    if settings.prescale != 1.0:
        output = cv2.resize(output, input_size, interpolation=cv2.INTER_AREA)
        if detection is not None:
            detection = tuple(v / settings.prescale for v in detection)

    # 5. marker
    if detection is not None and settings.draw_circle:
        output = draw_overlay(output, detection, settings.crosshair_size)

    return output, detection
