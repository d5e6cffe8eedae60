"""
Camera Source Abstractions

Frame producers for the locator worker. Every source delivers RGB frames and
counts them, so a consumer can tell a new frame from one it already saw.
"""

import abc
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import cv2
import numpy as np

IMAGE_SUFFIXES = ('.png', '.jpg', '.jpeg', '.bmp')


@dataclass
class CameraConfig:
    """Configuration for camera sources."""
    resolution: Tuple[int, int] = (1280, 800)
    fps: int = 30

    # For physical cameras
    device_index: int = 0

    # For image folder replay
    image_directory: str = "test_images"
    loop: bool = True


class CameraSource(abc.ABC):
    """Abstract base class for all camera sources."""

    def __init__(self, config: CameraConfig):
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)
        self._running = False
        self._frame_lock = threading.Lock()
        self._current_frame = None
        self._frame_count = 0

    @abc.abstractmethod
    def start(self) -> bool:
        """Start the camera source."""
        pass

    @abc.abstractmethod
    def stop(self):
        """Stop the camera source."""
        pass

    def _publish(self, frame: np.ndarray):
        with self._frame_lock:
            self._current_frame = frame
            self._frame_count += 1

    def get_frame(self) -> Optional[np.ndarray]:
        """Get the latest frame."""
        with self._frame_lock:
            return self._current_frame.copy() if self._current_frame is not None else None

    def get_frame_with_count(self) -> Tuple[Optional[np.ndarray], int]:
        """Latest frame together with the number of frames published so far."""
        with self._frame_lock:
            frame = self._current_frame.copy() if self._current_frame is not None else None
            return frame, self._frame_count

    def is_running(self) -> bool:
        return self._running

    def get_resolution(self) -> Tuple[int, int]:
        return self.config.resolution


class PhysicalCameraSource(CameraSource):
    """
    USB/CSI camera read through cv2.VideoCapture on a background thread.

    The capture handle only exists while the source runs; a device that
    fails to open is released straight away.
    """

    def __init__(self, config: CameraConfig):
        super().__init__(config)
        self.camera = None
        self.camera_thread = None
        self.read_failures = 0

    def _open_capture(self):
        capture = cv2.VideoCapture(self.config.device_index)
        if capture.isOpened():
            return capture
        capture.release()
        return None

    def _apply_capture_settings(self, capture) -> Tuple[int, int]:
        requested = tuple(self.config.resolution)
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, requested[0])
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, requested[1])
        capture.set(cv2.CAP_PROP_FPS, self.config.fps)

        delivered = (int(capture.get(cv2.CAP_PROP_FRAME_WIDTH)),
                     int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT)))
        if delivered != requested:
            # offsets are measured from the configured center
            self.logger.warning(f"Camera {self.config.device_index} delivers "
                                f"{delivered[0]}x{delivered[1]}, configured {requested[0]}x{requested[1]}")
        return delivered

    def start(self) -> bool:
        capture = None
        try:
            capture = self._open_capture()
            if capture is None:
                self.logger.error(f"Failed to open camera {self.config.device_index}")
                return False

            width, height = self._apply_capture_settings(capture)
        except cv2.error as e:
            self.logger.error(f"Failed to start physical camera: {e}")
            if capture is not None:
                capture.release()
            return False

        self.camera = capture
        self.read_failures = 0
        self._running = True
        self.camera_thread = threading.Thread(target=self._capture_loop, daemon=True)
        self.camera_thread.start()

        self.logger.info(f"Camera {self.config.device_index} started at {width}x{height}")
        return True

    def stop(self):
        self._running = False
        if self.camera_thread:
            self.camera_thread.join(timeout=2.0)
            self.camera_thread = None

        if self.camera is not None:
            self.camera.release()
            self.camera = None

    @property
    def frame_interval(self) -> float:
        return 1.0 / self.config.fps

    def _capture_loop(self):
        capture = self.camera
        while self._running:
            ok, bgr = capture.read()
            if not ok:
                self.read_failures += 1
                if self.read_failures == 1 or self.read_failures % 100 == 0:
                    self.logger.warning(f"Camera read failed ({self.read_failures} so far)")
            else:
                self._publish(cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB))
            time.sleep(self.frame_interval)

class ImageFolderCameraSource(CameraSource):
    """Replays the images of a directory in name order, for offline tuning."""

    def __init__(self, config: CameraConfig):
        super().__init__(config)
        self.replay_thread = None
        self.image_files = []

    def start(self) -> bool:
        directory = Path(self.config.image_directory)
        if not directory.is_dir():
            self.logger.error(f"Image directory not found: {directory}")
            return False

        self.image_files = sorted(p for p in directory.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES)
        if not self.image_files:
            self.logger.error(f"No images in {directory}")
            return False

        self._running = True
        self.replay_thread = threading.Thread(target=self._replay_loop, daemon=True)
        self.replay_thread.start()

        self.logger.info(f"Replaying {len(self.image_files)} images from {directory}")
        return True

    def stop(self):
        self._running = False

        if self.replay_thread:
            self.replay_thread.join(timeout=2.0)

    def _replay_loop(self):
        while self._running:
            for image_file in self.image_files:
                if not self._running:
                    return
                frame = cv2.imread(str(image_file))
                if frame is None:
                    self.logger.warning(f"Could not read {image_file.name}")
                    continue
                self._publish(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))
                time.sleep(1.0 / self.config.fps)

            if not self.config.loop:
                self._running = False


def create_camera_source(source_type: str, config: CameraConfig) -> CameraSource:
    """Factory function to create camera sources."""

    sources = {
        'physical': PhysicalCameraSource,
        'image_folder': ImageFolderCameraSource,
    }

    if source_type not in sources:
        raise ValueError(f"Unknown camera source type: {source_type}. Available: {list(sources.keys())}")

    return sources[source_type](config)
