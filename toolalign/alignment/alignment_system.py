"""
Alignment System Main Module

Wires the camera, the nozzle locator worker, the circle aggregator, the
Klipper client and the auto-offset controller together. Frames are processed
on a worker thread; everything else happens on the thread that calls tick().
"""

import dataclasses
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from queue import Empty, Queue
from typing import Any, Dict, Optional, Tuple

import cv2
import numpy as np

from .auto_offset import AutoOffsetController, AutoOffsetSettings, TickOutcome
from .camera_sources import CameraConfig, CameraSource, create_camera_source
from .circle_aggregator import Circle, CircleAggregator
from .motion_client import KlipperClient, MotionControllerError
from .nozzle_locator import DetectorState, VisionSettings, locate
from . import tuning


@dataclass
class SystemConfig:
    """Configuration for the alignment system."""
    # Camera settings
    camera_source_type: str = 'physical'  # 'physical' or 'image_folder'
    camera_index: int = 0
    camera_resolution: tuple = (1280, 800)
    camera_fps: int = 30
    image_directory: str = 'test_images'

    # Printer settings
    printer_url: str = 'http://localhost'
    request_timeout: float = 10.0  # seconds
    z_height: float = 33.2

    # Aggregation
    window_size: int = 45
    min_samples: int = 5

    # Control loop
    tick_rate: float = 30.0  # Hz
    startup_tool: Optional[int] = None

    # Files
    output_dir: str = 'data_output'
    saved_data_file: str = 'saved_data.json'
    screenshot_dir: str = 'test_images'

    vision: VisionSettings = field(default_factory=VisionSettings)
    auto_offset: AutoOffsetSettings = field(default_factory=AutoOffsetSettings)

    @classmethod
    def from_json(cls, config_file: str) -> 'SystemConfig':
        """
        Load configuration from JSON file.

        Args:
            config_file: Path to JSON configuration file

        Returns:
            SystemConfig instance
        """
        with open(config_file, 'r') as f:
            config_data = json.load(f)

        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any]) -> 'SystemConfig':
        config = cls()

        camera_config = config_data.get('camera', {})
        config.camera_source_type = camera_config.get('source_type', config.camera_source_type)
        config.camera_index = camera_config.get('index', config.camera_index)
        config.camera_resolution = tuple(camera_config.get('resolution', config.camera_resolution))
        config.camera_fps = camera_config.get('fps', config.camera_fps)
        config.image_directory = camera_config.get('image_directory', config.image_directory)

        printer_config = config_data.get('printer', {})
        config.printer_url = printer_config.get('url', config.printer_url)
        config.request_timeout = printer_config.get('timeout', config.request_timeout)
        config.z_height = printer_config.get('z_height', config.z_height)

        processing_config = config_data.get('processing', {})
        config.window_size = processing_config.get('window_size', config.window_size)
        config.min_samples = processing_config.get('min_samples', config.min_samples)
        config.tick_rate = processing_config.get('tick_rate', config.tick_rate)
        config.startup_tool = processing_config.get('startup_tool', config.startup_tool)

        files_config = config_data.get('files', {})
        config.output_dir = files_config.get('output_dir', config.output_dir)
        config.saved_data_file = files_config.get('saved_data', config.saved_data_file)
        config.screenshot_dir = files_config.get('screenshots', config.screenshot_dir)

        config.vision = VisionSettings.from_dict(config_data.get('vision', {}))

        # offsets are measured from the center of the configured resolution
        auto_offset_config = dict(config_data.get('auto_offset', {}))
        auto_offset_config.setdefault('camera_size', config.camera_resolution)
        config.auto_offset = AutoOffsetSettings.from_dict(auto_offset_config)

        return config


class SettingsStore:
    """
    Holds the current vision settings.

    Writers swap in a new frozen instance under a lock; readers take a
    snapshot, which is a plain attribute read and never blocks.
    """

    def __init__(self, settings: VisionSettings):
        self._lock = threading.Lock()
        self._settings = settings

    def snapshot(self) -> VisionSettings:
        return self._settings

    def update(self, **changes) -> VisionSettings:
        with self._lock:
            self._settings = dataclasses.replace(self._settings, **changes)
            return self._settings


class LocatorWorker:
    """Runs the nozzle locator on every new camera frame on its own thread."""

    def __init__(self, camera_source: CameraSource, settings_store: SettingsStore,
                 detections: Queue):
        self.camera_source = camera_source
        self.settings_store = settings_store
        self.detections = detections
        self.logger = logging.getLogger(__name__)

        self.detector_state = DetectorState()
        self.running = False
        self.thread = None

        self._image_lock = threading.Lock()
        self._processed_image = None
        self.frames_processed = 0

    def start(self):
        self.running = True
        self.thread = threading.Thread(target=self._processing_loop, daemon=True)
        self.thread.start()
        self.logger.info("Locator worker started")

    def stop(self):
        self.running = False
        if self.thread:
            self.thread.join(timeout=2.0)
            self.thread = None

    def get_processed_image(self) -> Optional[np.ndarray]:
        with self._image_lock:
            return self._processed_image

    def process_frame(self, frame: np.ndarray) -> Optional[Circle]:
        """Locate the nozzle in one frame and hand the result to the consumer."""
        settings = self.settings_store.snapshot()
        processed, detection = locate(frame, settings, self.detector_state)

        with self._image_lock:
            self._processed_image = processed
        self.detections.put(detection)
        self.frames_processed += 1
        return detection

    def _processing_loop(self):
        last_count = 0
        while self.running:
            frame, count = self.camera_source.get_frame_with_count()
            if frame is None or count == last_count:
                time.sleep(0.005)
                continue
            last_count = count

            try:
                self.process_frame(frame)
            except (cv2.error, ValueError) as e:
                self.logger.error(f"Processing error: {e}")


class AlignmentSystem:
    """
    Main alignment system that coordinates all components.
    """

    def __init__(self, config: SystemConfig,
                 client: Optional[KlipperClient] = None,
                 camera_source: Optional[CameraSource] = None):
        """
        Initialize the alignment system.

        Args:
            config: System configuration
            client: Motion controller client (built from config if None)
            camera_source: Frame producer (built from config if None)
        """
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.settings_store = SettingsStore(config.vision)
        self.aggregator = CircleAggregator(config.window_size, config.min_samples)
        self.detection_queue: Queue = Queue()

        self.client = client or KlipperClient(config.printer_url, timeout=config.request_timeout,
                                              z_height=config.z_height)
        self.controller = AutoOffsetController(
            self.client,
            config.auto_offset,
            output_dir=config.output_dir,
            saved_data_file=config.saved_data_file,
        )

        self.camera_source = camera_source
        self.locator_worker: Optional[LocatorWorker] = None
        self.connected = False

        self.system_statistics = {
            'ticks': 0,
            'detections_received': 0,
            'detection_misses': 0,
        }

        self.logger.info("Alignment system initialized")

    def connect(self) -> bool:
        """Read the initial position and tool offsets from the printer."""
        try:
            position = self.client.fetch_position()
        except MotionControllerError as e:
            self.logger.error(f"Failed to connect to {self.config.printer_url}: {e}")
            self.controller.errors.append(f"Failed to get position: {e}")
            return False

        self.logger.info(f"Connected to {self.config.printer_url}, position {position}")
        self.connected = True
        self.controller.refresh_tool_offsets()

        if self.config.startup_tool is not None:
            self.controller.pickup_tool(self.config.startup_tool)
        return True

    def start_system(self) -> bool:
        """
        Start all system components.

        Returns:
            True if all components started successfully
        """
        if not self._start_camera():
            return False

        if not self.connect():
            self._stop_camera()
            return False

        self.locator_worker = LocatorWorker(self.camera_source, self.settings_store, self.detection_queue)
        self.locator_worker.start()

        self.logger.info("Alignment system started successfully")
        return True

    def stop_system(self):
        """Stop all system components."""
        self.logger.info("Stopping alignment system")

        self.controller.stop()
        if self.locator_worker:
            self.locator_worker.stop()
            self.locator_worker = None
        self._stop_camera()
        self.client.close()

        self.logger.info("Alignment system stopped")

    def _start_camera(self) -> bool:
        if self.camera_source is None:
            camera_config = CameraConfig(
                resolution=tuple(self.config.camera_resolution),
                fps=self.config.camera_fps,
                device_index=self.config.camera_index,
                image_directory=self.config.image_directory,
            )
            try:
                self.camera_source = create_camera_source(self.config.camera_source_type, camera_config)
            except ValueError as e:
                self.logger.error(f"Failed to initialize camera source: {e}")
                return False

        if not self.camera_source.start():
            self.logger.error(f"Failed to start {self.config.camera_source_type} camera source")
            return False

        self.logger.info(f"Started {self.config.camera_source_type} camera source successfully")
        return True

    def _stop_camera(self):
        if self.camera_source:
            self.camera_source.stop()

    def drain_detections(self) -> int:
        """Move every pending detection from the worker into the aggregator."""
        drained = 0
        while True:
            try:
                detection = self.detection_queue.get_nowait()
            except Empty:
                return drained

            self.aggregator.add_frame(detection)
            drained += 1
            if detection is None:
                self.system_statistics['detection_misses'] += 1
            else:
                self.system_statistics['detections_received'] += 1

    def tick(self) -> TickOutcome:
        """One control cycle: drain detections, then advance the controller."""
        self.drain_detections()
        settings = self.settings_store.snapshot()
        self.system_statistics['ticks'] += 1
        return self.controller.tick(self.aggregator, settings.pixels_per_mm)

    def update_vision_settings(self, **changes) -> VisionSettings:
        settings = self.settings_store.update(**changes)
        self.logger.info(f"Vision settings updated: {changes}")
        return settings

    def get_processed_image(self) -> Optional[np.ndarray]:
        if self.locator_worker:
            return self.locator_worker.get_processed_image()
        return None

    def save_screenshot(self, target: Optional[Tuple[float, float]] = None) -> Optional[str]:
        """
        Save the latest camera frame into the tuning image folder.

        Args:
            target: Hand-labeled nozzle center in frame pixels, if any

        Returns:
            Path of the written image, or None if there was nothing to save
        """
        frame = self.camera_source.get_frame() if self.camera_source else None
        if frame is None:
            self.logger.warning("No camera frame to save")
            return None

        try:
            return tuning.save_screenshot(frame, self.config.screenshot_dir, target)
        except OSError as e:
            self.logger.error(f"Failed to save screenshot: {e}")
            return None

    def get_current_estimate(self) -> Tuple[Optional[Circle], Optional[Tuple[float, Circle]]]:
        return self.aggregator.current_guess(), self.aggregator.confidence()

    def get_system_status(self) -> Dict[str, Any]:
        stats = dict(self.system_statistics)
        if self.locator_worker:
            stats['frames_processed'] = self.locator_worker.frames_processed
        else:
            stats['frames_processed'] = 0

        return {
            'camera_running': bool(self.camera_source and self.camera_source.is_running()),
            'connected': self.connected,
            'processing_running': bool(self.locator_worker and self.locator_worker.running),
            'controller': self.controller.get_status(),
            'statistics': stats,
        }
