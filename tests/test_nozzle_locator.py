"""
Tests for the nozzle locator pipeline and the Hough candidate selection.
"""
import dataclasses

import numpy as np
import pytest

from toolalign.alignment.nozzle_locator import (
    BLOB_PRESETS,
    DetectionStrategy,
    DetectorState,
    ThresholdType,
    VisionSettings,
    draw_overlay,
    locate,
    select_best_circle,
)

from conftest import create_nozzle_frame

# Deterministic global threshold for synthetic frames
TEST_SETTINGS = VisionSettings(
    threshold_type=ThresholdType.BINARY_INV,
    threshold_block_size=100,
    draw_circle=False,
)


class TestSelectBestCircle:
    """Hough candidate policy: largest radius, then nearest to center."""

    def test_larger_radius_wins_regardless_of_position(self):
        circles = [(320.0, 240.0, 25.0), (10.0, 10.0, 30.0)]
        assert select_best_circle(circles, (640, 480)) == (10.0, 10.0, 30.0)

        circles.reverse()
        assert select_best_circle(circles, (640, 480)) == (10.0, 10.0, 30.0)

    def test_equal_radius_nearer_center_wins(self):
        circles = [(100.0, 100.0, 30.0), (330.0, 250.0, 30.0), (600.0, 50.0, 30.0)]
        assert select_best_circle(circles, (640, 480)) == (330.0, 250.0, 30.0)

    def test_out_of_range_radius_ignored(self):
        circles = [(320.0, 240.0, 80.0), (100.0, 100.0, 5.0)]
        assert select_best_circle(circles, (640, 480)) is None

    def test_empty(self):
        assert select_best_circle([], (640, 480)) is None


class TestBlobPresets:
    def test_standard_preset_area_bounds(self):
        preset = BLOB_PRESETS[DetectionStrategy.BLOB_STANDARD]
        assert preset.min_area == pytest.approx(np.pi * 20 ** 2)
        assert preset.max_area == pytest.approx(np.pi * 50 ** 2)
        assert preset.min_circularity == 0.4
        assert preset.min_convexity == 0.3
        assert preset.min_inertia_ratio == 0.5
        assert preset.blob_color == 255
        assert preset.min_dist_between_blobs == 10.0
        assert preset.min_repeatability == 2

    def test_every_blob_strategy_has_a_preset(self):
        for strategy in DetectionStrategy:
            assert strategy.is_blob == (strategy in BLOB_PRESETS)

    def test_detectors_are_reused(self):
        state = DetectorState()
        first = state.blob_detector(DetectionStrategy.BLOB_RELAXED)
        assert state.blob_detector(DetectionStrategy.BLOB_RELAXED) is first


class TestLocate:
    """End to end pipeline on synthetic frames."""

    def test_blob_finds_centered_nozzle(self):
        frame = create_nozzle_frame(center=(320, 240), radius=30)

        _, detection = locate(frame, TEST_SETTINGS, DetectorState())

        assert detection is not None
        x, y, radius = detection
        assert x == pytest.approx(320, abs=2)
        assert y == pytest.approx(240, abs=2)
        assert radius == pytest.approx(30, abs=3)

    def test_hough_finds_off_center_nozzle(self):
        frame = create_nozzle_frame(center=(250, 200), radius=35)
        settings = dataclasses.replace(TEST_SETTINGS, strategy=DetectionStrategy.HOUGH)

        _, detection = locate(frame, settings)

        assert detection is not None
        x, y, radius = detection
        assert x == pytest.approx(250, abs=3)
        assert y == pytest.approx(200, abs=3)
        assert 20 <= radius <= 50

    def test_blank_frame_is_a_miss(self):
        frame = np.full((480, 640, 3), 200, dtype=np.uint8)

        for strategy in DetectionStrategy:
            settings = dataclasses.replace(TEST_SETTINGS, strategy=strategy)
            _, detection = locate(frame, settings)
            assert detection is None

    def test_prescale_reports_input_pixels(self):
        frame = create_nozzle_frame(center=(320, 240), radius=20)
        settings = dataclasses.replace(TEST_SETTINGS, prescale=2.0)

        processed, detection = locate(frame, settings)

        assert processed.shape[:2] == frame.shape[:2]
        assert detection is not None
        assert detection[0] == pytest.approx(320, abs=2)
        assert detection[1] == pytest.approx(240, abs=2)
        assert detection[2] == pytest.approx(20, abs=3)

    @pytest.mark.parametrize("filter_step", [1, 2, 3, 4])
    def test_filter_step_selects_single_channel_stage(self, filter_step):
        frame = create_nozzle_frame()
        settings = dataclasses.replace(TEST_SETTINGS, filter_step=filter_step)

        processed, _ = locate(frame, settings)

        assert processed.shape == frame.shape[:2]

    def test_threshold_stage_is_binary(self):
        frame = create_nozzle_frame()
        settings = dataclasses.replace(TEST_SETTINGS, filter_step=3)

        processed, _ = locate(frame, settings)

        assert set(np.unique(processed)) <= {0, 255}
        # the dark nozzle turns white
        assert processed[240, 320] == 255
        assert processed[10, 10] == 0

    def test_marker_drawing_does_not_change_detection(self):
        frame = create_nozzle_frame()
        plain_image, plain = locate(frame, TEST_SETTINGS)
        drawn_image, drawn = locate(frame, dataclasses.replace(TEST_SETTINGS, draw_circle=True))

        assert plain == drawn
        assert drawn_image.ndim == 3
        assert not np.array_equal(plain_image, drawn_image)

    def test_input_frame_is_not_modified(self):
        frame = create_nozzle_frame()
        original = frame.copy()

        locate(frame, dataclasses.replace(TEST_SETTINGS, draw_circle=True))

        assert np.array_equal(frame, original)

    def test_adaptive_threshold_runs(self):
        frame = create_nozzle_frame()
        settings = dataclasses.replace(TEST_SETTINGS, adaptive_threshold=True, threshold_block_size=17,
                                       filter_step=3)

        processed, _ = locate(frame, settings)

        assert processed.shape == frame.shape[:2]
        assert processed.dtype == np.uint8


def test_draw_overlay_converts_gray_to_rgb():
    gray = np.zeros((100, 100), dtype=np.uint8)

    canvas = draw_overlay(gray, (50.0, 50.0, 20.0), crosshair_size=20)

    assert canvas.shape == (100, 100, 3)
    assert canvas.any()
    assert not gray.any()


def test_settings_from_dict():
    settings = VisionSettings.from_dict({'use_hough': True, 'pixels_per_mm': 138.0,
                                         'threshold_type': 'otsu'})
    assert settings.strategy is DetectionStrategy.HOUGH
    assert settings.pixels_per_mm == 138.0
    assert settings.threshold_type is ThresholdType.OTSU

    settings = VisionSettings.from_dict({'strategy': 'blob_super_relaxed', 'use_hough': True})
    assert settings.strategy is DetectionStrategy.BLOB_SUPER_RELAXED

    with pytest.raises(dataclasses.FrozenInstanceError):
        settings.gamma = 2.0
