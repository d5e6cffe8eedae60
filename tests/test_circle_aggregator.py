"""
Tests for the sliding-window circle aggregator.
"""
import math
import random

import pytest

from toolalign.alignment.circle_aggregator import CircleAggregator


def _recompute(window):
    valid = [d for d in window if d is not None]
    sums = tuple(sum(d[i] for d in valid) for i in range(3))
    sums_sq = tuple(sum(d[i] * d[i] for d in valid) for i in range(3))
    return sums, sums_sq, len(valid)


class TestRunningSums:
    """The incremental sums always match a recomputation over the window."""

    @pytest.mark.parametrize("window_size", [1, 5, 17, 45])
    def test_sums_match_window_contents(self, window_size):
        rng = random.Random(window_size)
        aggregator = CircleAggregator(window_size=window_size, min_samples=1)
        history = []

        for _ in range(300):
            if rng.random() < 0.3:
                detection = None
            else:
                detection = (rng.uniform(0, 1280), rng.uniform(0, 800), rng.uniform(10, 50))
            aggregator.add_frame(detection)
            history.append(detection)

            window = history[-window_size:]
            sums, sums_sq, valid = _recompute(window)
            actual_sums, actual_sums_sq = aggregator.running_sums()

            assert len(aggregator) == len(window)
            assert aggregator.valid_count == valid
            assert actual_sums == pytest.approx(sums, abs=1e-6)
            assert actual_sums_sq == pytest.approx(sums_sq, rel=1e-9, abs=1e-3)

    def test_clear_resets_everything(self):
        aggregator = CircleAggregator(window_size=10, min_samples=1)
        for i in range(8):
            aggregator.add_frame((i, i, i))
        aggregator.add_frame(None)

        aggregator.clear()

        assert len(aggregator) == 0
        assert aggregator.valid_count == 0
        assert aggregator.running_sums() == ((0.0, 0.0, 0.0), (0.0, 0.0, 0.0))
        assert aggregator.current_guess() is None


class TestConfidence:
    """Confidence gating and formula."""

    def test_none_below_min_samples(self):
        aggregator = CircleAggregator(window_size=45, min_samples=5)
        for _ in range(4):
            aggregator.add_frame((640.0, 400.0, 25.0))
            assert aggregator.confidence() is None
            assert aggregator.current_guess() is None

        aggregator.add_frame((640.0, 400.0, 25.0))
        assert aggregator.confidence() is not None
        assert aggregator.current_guess() == pytest.approx((640.0, 400.0, 25.0))

    def test_misses_do_not_count_as_samples(self):
        aggregator = CircleAggregator(window_size=45, min_samples=5)
        for _ in range(4):
            aggregator.add_frame((1.0, 2.0, 3.0))
        for _ in range(20):
            aggregator.add_frame(None)

        assert aggregator.confidence() is None

    def test_eviction_can_drop_below_min_samples(self):
        aggregator = CircleAggregator(window_size=6, min_samples=5)
        for _ in range(5):
            aggregator.add_frame((1.0, 2.0, 3.0))
        assert aggregator.confidence() is not None

        aggregator.add_frame(None)
        aggregator.add_frame(None)  # evicts one valid sample

        assert aggregator.valid_count == 4
        assert aggregator.confidence() is None

    def test_identical_detections_give_full_confidence(self):
        aggregator = CircleAggregator()
        for _ in range(45):
            aggregator.add_frame((640.0, 400.0, 25.0))

        overall, per_axis = aggregator.confidence()

        assert overall == pytest.approx(1.0)
        assert per_axis == pytest.approx((1.0, 1.0, 1.0))

    def test_formula_with_misses_and_spread(self):
        aggregator = CircleAggregator(window_size=10, min_samples=5)
        for i in range(8):
            aggregator.add_frame((0.0 if i % 2 else 2.0, 5.0, 1.0))
        aggregator.add_frame(None)
        aggregator.add_frame(None)

        # rate 0.8 sits on the logistic midpoint
        detection_factor = 0.5
        std_err_x = 1.0 / math.sqrt(8)
        consistency_x = 1.0 / (1.0 + std_err_x)
        expected = ((consistency_x + 1.0) / 2.0) * 0.8 + detection_factor * 0.2

        overall, (c_x, c_y, c_r) = aggregator.confidence()

        assert aggregator.detection_rate == pytest.approx(0.8)
        assert overall == pytest.approx(expected)
        assert c_x == pytest.approx(consistency_x * 0.8 + 0.1)
        assert c_y == pytest.approx(0.9)
        assert c_r == pytest.approx(0.9)

    def test_confidence_increases_as_spread_shrinks(self):
        previous = None
        for spread in [8.0, 4.0, 2.0, 1.0, 0.5, 0.0]:
            aggregator = CircleAggregator()
            for i in range(45):
                offset = spread if i % 2 else -spread
                aggregator.add_frame((640.0 + offset, 400.0 - offset, 25.0))

            overall, _ = aggregator.confidence()
            if previous is not None:
                assert overall > previous
            previous = overall

        assert previous == pytest.approx(1.0)

    def test_radius_does_not_affect_overall(self):
        steady = CircleAggregator()
        noisy = CircleAggregator()
        for i in range(45):
            steady.add_frame((640.0, 400.0, 25.0))
            noisy.add_frame((640.0, 400.0, 20.0 if i % 2 else 30.0))

        assert steady.confidence()[0] == pytest.approx(noisy.confidence()[0])
        assert noisy.confidence()[1][2] < steady.confidence()[1][2]


def test_invalid_arguments():
    with pytest.raises(ValueError):
        CircleAggregator(window_size=0)
    with pytest.raises(ValueError):
        CircleAggregator(min_samples=0)
