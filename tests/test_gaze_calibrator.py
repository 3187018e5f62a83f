"""
Tests for gaze calibration: homography fitting, transformation and quality
"""

import logging

import numpy as np
import pytest

from proctor_calibration.calibration.gaze_calibrator import (
    GazeCalibrator,
    compute_homography_dlt,
    DegenerateGeometryError,
)
from proctor_calibration.calibration.types import GazeSample, HeadPose, HeadPoseSample


def make_sample(screen, gaze, yaw=0.0, pitch=0.0, confidence=0.9):
    return GazeSample(
        screen_point=(float(screen[0]), float(screen[1])),
        gaze_point=(float(gaze[0]), float(gaze[1])),
        head_pose=HeadPose(yaw=yaw, pitch=pitch, roll=0.0),
        confidence=confidence,
        timestamp=0,
    )


def apply_homography(H, x, y):
    v = H @ np.array([x, y, 1.0])
    return v[0] / v[2], v[1] / v[2]


TRUE_H = np.array([
    [1.1, 0.05, 20.0],
    [0.02, 0.95, -10.0],
    [1e-5, 2e-5, 1.0],
])

GRID = [(x, y) for y in (100.0, 540.0, 980.0) for x in (100.0, 960.0, 1820.0)]


def checkerboard_calibrator(error_px):
    """5x5 grid whose gaze points alternate +/- error_px in x."""
    calibrator = GazeCalibrator()
    for i in range(5):
        for j in range(5):
            x, y = i * 250.0, j * 250.0
            sign = 1 if (i + j) % 2 == 0 else -1
            calibrator.add_point(make_sample((x, y), (x + sign * error_px, y)))
    assert calibrator.calculate_homography() is True
    return calibrator


class TestHomographyFitting:
    """Tests for the DLT homography fit"""

    def test_identity_recovery(self):
        """Unit square mapped onto itself (plus tiny noise) gives the identity"""
        calibrator = GazeCalibrator()
        corners = [(0.0, 0.0), (1.0, 0.0), (1.0, 1.0), (0.0, 1.0)]
        for i, (x, y) in enumerate(corners):
            eps = 1e-7 * (i + 1)
            calibrator.add_point(make_sample((x, y), (x + eps, y - eps)))

        assert calibrator.calculate_homography() is True

        H = np.array(calibrator.homography.matrix)
        assert np.allclose(H, np.eye(3), atol=1e-4)

        tx, ty = calibrator.transform_point(0.5, 0.5)
        assert tx == pytest.approx(0.5, abs=1e-4)
        assert ty == pytest.approx(0.5, abs=1e-4)

    def test_recovers_known_projective_transform(self):
        """Exact correspondences at pixel scale recover the generating homography"""
        calibrator = GazeCalibrator()
        for x, y in GRID:
            calibrator.add_point(make_sample((x, y), apply_homography(TRUE_H, x, y)))

        assert calibrator.calculate_homography() is True

        result = calibrator.homography
        H = np.array(result.matrix)
        assert H[2, 2] == pytest.approx(1.0)
        assert np.allclose(H, TRUE_H, rtol=1e-6, atol=1e-7)
        assert result.bias[0] == pytest.approx(0.0, abs=1e-6)
        assert result.bias[1] == pytest.approx(0.0, abs=1e-6)

        expected = apply_homography(TRUE_H, 700.0, 300.0)
        actual = calibrator.transform_point(700.0, 300.0)
        assert actual[0] == pytest.approx(expected[0], abs=1e-4)
        assert actual[1] == pytest.approx(expected[1], abs=1e-4)

    def test_bias_is_mean_residual_of_projective_map(self):
        """Bias equals mean(actual gaze - H(screen))"""
        calibrator = checkerboard_calibrator(15.0)
        result = calibrator.homography
        H = np.array(result.matrix)

        residuals = []
        for sample in calibrator.samples:
            px, py = apply_homography(H, *sample.screen_point)
            residuals.append((sample.gaze_point[0] - px, sample.gaze_point[1] - py))
        expected = np.mean(residuals, axis=0)

        assert result.bias[0] == pytest.approx(expected[0], abs=1e-6)
        assert result.bias[1] == pytest.approx(expected[1], abs=1e-6)

    def test_transform_applies_bias(self):
        """transform_point adds the bias on top of the projective map"""
        calibrator = checkerboard_calibrator(15.0)
        result = calibrator.homography
        H = np.array(result.matrix)

        px, py = apply_homography(H, 400.0, 600.0)
        tx, ty = calibrator.transform_point(400.0, 600.0)
        assert tx == pytest.approx(px + result.bias[0])
        assert ty == pytest.approx(py + result.bias[1])

    @pytest.mark.parametrize("count", [0, 1, 2, 3])
    def test_insufficient_points(self, count, caplog):
        """Fewer than four correspondences never fit"""
        calibrator = GazeCalibrator()
        for x, y in GRID[:count]:
            calibrator.add_point(make_sample((x, y), (x, y)))

        with caplog.at_level(logging.WARNING):
            assert calibrator.calculate_homography() is False

        assert calibrator.homography is None
        assert calibrator.transform_point(123.0, 456.0) == (123.0, 456.0)
        assert "Insufficient calibration points" in caplog.text

    def test_collinear_points_are_degenerate(self, caplog):
        """Points on a single line are reported as degenerate geometry"""
        calibrator = GazeCalibrator()
        for t in range(5):
            calibrator.add_point(make_sample((t * 100.0, t * 50.0), (t * 100.0, t * 50.0)))

        with caplog.at_level(logging.WARNING):
            assert calibrator.calculate_homography() is False

        assert calibrator.homography is None
        assert "Degenerate calibration geometry" in caplog.text
        assert "Insufficient" not in caplog.text

    def test_coincident_points_are_degenerate(self):
        """All samples at one spot cannot determine a homography"""
        calibrator = GazeCalibrator()
        for _ in range(6):
            calibrator.add_point(make_sample((500.0, 500.0), (510.0, 495.0)))
        assert calibrator.calculate_homography() is False

    def test_collinear_triple_in_minimal_set(self):
        """Four points with three on a line are rejected"""
        calibrator = GazeCalibrator()
        for point in [(0.0, 0.0), (100.0, 0.0), (200.0, 0.0), (0.0, 100.0)]:
            calibrator.add_point(make_sample(point, point))
        assert calibrator.calculate_homography() is False

    def test_too_few_distinct_points(self):
        """Repeated samples of three distinct points leave the fit underdetermined"""
        calibrator = GazeCalibrator()
        for point in [(0.0, 0.0), (100.0, 0.0), (0.0, 100.0)] * 3:
            calibrator.add_point(make_sample(point, point))
        assert calibrator.calculate_homography() is False

    def test_repeated_targets_with_collinear_triple(self, caplog):
        """Noisy repeats of four targets, three on a line, still cannot fit"""
        rng = np.random.default_rng(3)
        calibrator = GazeCalibrator()
        for _ in range(5):
            for x, y in [(0.0, 0.0), (100.0, 0.0), (200.0, 0.0), (100.0, 100.0)]:
                noise = rng.normal(0.0, 2.0, size=2)
                calibrator.add_point(make_sample((x, y), (x + noise[0], y + noise[1])))

        with caplog.at_level(logging.WARNING):
            assert calibrator.calculate_homography() is False

        assert calibrator.homography is None
        assert "Degenerate calibration geometry" in caplog.text

    def test_repeated_targets_in_general_position(self):
        """Noisy repeats of four well-placed targets fit fine"""
        rng = np.random.default_rng(3)
        calibrator = GazeCalibrator()
        for _ in range(5):
            for x, y in [(0.0, 0.0), (200.0, 0.0), (200.0, 100.0), (0.0, 100.0)]:
                noise = rng.normal(0.0, 2.0, size=2)
                calibrator.add_point(make_sample((x, y), (x + noise[0], y + noise[1])))

        assert calibrator.calculate_homography() is True
        tx, ty = calibrator.transform_point(100.0, 50.0)
        assert tx == pytest.approx(100.0, abs=10.0)
        assert ty == pytest.approx(50.0, abs=10.0)

    def test_all_but_one_target_on_a_line(self):
        """Many targets on one row plus a single off-row target"""
        calibrator = GazeCalibrator()
        for x in range(0, 1000, 100):
            calibrator.add_point(make_sample((float(x), 0.0), (x + 1.5, 0.7 * (x % 3))))
        calibrator.add_point(make_sample((500.0, 400.0), (503.0, 398.0)))
        assert calibrator.calculate_homography() is False

    def test_compute_homography_dlt_raises_on_coincident_gaze(self):
        """The solver itself raises for coincident destination points"""
        src = np.array(GRID[:4])
        dst = np.zeros((4, 2))
        with pytest.raises(DegenerateGeometryError):
            compute_homography_dlt(src, dst)

    def test_failed_refit_discards_previous_fit(self):
        """A failed fit leaves no stale homography behind"""
        calibrator = GazeCalibrator()
        for x, y in GRID[:4]:
            calibrator.add_point(make_sample((x, y), (x, y)))
        assert calibrator.calculate_homography() is True

        calibrator.settings.min_gaze_points = 10
        assert calibrator.calculate_homography() is False
        assert calibrator.homography is None

    def test_clear_invalidates_homography(self):
        """Clearing data also drops the fitted homography and bias"""
        calibrator = checkerboard_calibrator(15.0)
        assert calibrator.homography is not None

        calibrator.clear()

        assert calibrator.point_count == 0
        assert calibrator.homography is None
        assert calibrator.transform_point(10.0, 20.0) == (10.0, 20.0)


class TestPersonalThresholds:
    """Tests for personal threshold derivation"""

    def test_defaults_without_data(self):
        thresholds = GazeCalibrator().calculate_personal_thresholds()
        assert thresholds.gaze_accuracy == 50
        assert thresholds.confidence_threshold == 0.7

    def test_accurate_calibration_gets_tightest_threshold(self):
        calibrator = GazeCalibrator()
        for x, y in GRID:
            calibrator.add_point(make_sample((x, y), apply_homography(TRUE_H, x, y), confidence=0.9))
        calibrator.calculate_homography()

        thresholds = calibrator.calculate_personal_thresholds()
        assert thresholds.gaze_accuracy == pytest.approx(30.0)
        assert thresholds.confidence_threshold == pytest.approx(0.8)

    def test_low_confidence_points_are_ignored(self):
        """With no confident points the error falls back to 50px"""
        calibrator = GazeCalibrator()
        for x, y in GRID:
            calibrator.add_point(make_sample((x, y), (x, y), confidence=0.4))
        calibrator.calculate_homography()

        thresholds = calibrator.calculate_personal_thresholds()
        assert thresholds.gaze_accuracy == pytest.approx(75.0)
        assert thresholds.confidence_threshold == pytest.approx(0.6)

    def test_threshold_is_capped(self):
        calibrator = checkerboard_calibrator(200.0)
        assert calibrator.calculate_personal_thresholds().gaze_accuracy == pytest.approx(100.0)


class TestCalibrationQuality:
    """Tests for calibration quality scoring"""

    def test_no_data(self):
        quality = GazeCalibrator().calculate_quality()
        assert quality.gaze_accuracy == 0
        assert quality.head_pose_range == 0
        assert quality.environment_stability == 0
        assert quality.overall == 0
        assert quality.recommendations == ['No calibration data available']

    def test_gaze_accuracy_decreases_with_error(self):
        """Larger reprojection error gives a lower gaze accuracy score"""
        low = checkerboard_calibrator(10.0).calculate_quality()
        mid = checkerboard_calibrator(50.0).calculate_quality()
        high = checkerboard_calibrator(90.0).calculate_quality()

        assert low.gaze_accuracy > mid.gaze_accuracy > high.gaze_accuracy
        assert 0 <= high.gaze_accuracy <= 1

    def test_excellent_calibration(self):
        """Accurate fit with wide head movement and a stable environment"""
        calibrator = GazeCalibrator()
        poses = [(-20, -15), (20, -15), (20, 15), (-20, 15)]
        for (x, y), (yaw, pitch) in zip(GRID[:4] + GRID[5:6], poses + [(0, 0)]):
            calibrator.add_point(
                make_sample((x, y), apply_homography(TRUE_H, x, y), yaw=yaw, pitch=pitch)
            )
        assert calibrator.calculate_homography() is True

        quality = calibrator.calculate_quality(environment_stability=1.0)
        assert quality.gaze_accuracy == pytest.approx(1.0)
        assert quality.head_pose_range == pytest.approx(1.0)
        assert quality.overall == pytest.approx(1.0)
        assert quality.recommendations == ['Calibration quality is excellent!']
        assert calibrator.meets_quality_threshold(environment_stability=1.0) is True

    def test_default_environment_stability(self):
        calibrator = checkerboard_calibrator(0.0)
        quality = calibrator.calculate_quality()
        assert quality.environment_stability == pytest.approx(0.8)

    def test_overall_weighting(self):
        calibrator = checkerboard_calibrator(50.0)
        quality = calibrator.calculate_quality(environment_stability=0.5)
        expected = 0.5 * quality.gaze_accuracy + 0.3 * quality.head_pose_range + 0.2 * 0.5
        assert quality.overall == pytest.approx(expected)

    def test_narrow_head_movement_recommendation(self):
        """No head movement scores zero range and asks for wider movement"""
        calibrator = checkerboard_calibrator(0.0)
        quality = calibrator.calculate_quality(environment_stability=1.0)

        assert quality.head_pose_range == 0
        assert 'Move your head through a wider range during head pose calibration' in quality.recommendations
        assert quality.overall == pytest.approx(0.7)
        assert calibrator.meets_quality_threshold(environment_stability=1.0) is False

    def test_unstable_environment_recommendation(self):
        calibrator = checkerboard_calibrator(0.0)
        quality = calibrator.calculate_quality(environment_stability=0.3)
        assert 'Improve lighting conditions' in quality.recommendations

    def test_inaccurate_gaze_recommendation(self):
        quality = checkerboard_calibrator(90.0).calculate_quality()
        assert quality.recommendations[0] == 'Look directly at each calibration point'

    def test_overall_stays_in_unit_range(self):
        calibrator = checkerboard_calibrator(300.0)
        for stability in (-1.0, 0.0, 2.0):
            quality = calibrator.calculate_quality(environment_stability=stability)
            assert 0.0 <= quality.overall <= 1.0


class TestHeadPoseBounds:
    """Tests for head-pose step bounds"""

    def test_defaults_without_samples(self):
        yaw_range, pitch_range = GazeCalibrator().head_pose_bounds()
        assert yaw_range == (-20.0, 20.0)
        assert pitch_range == (-15.0, 15.0)

    def test_bounds_from_confident_samples(self):
        calibrator = GazeCalibrator()
        calibrator.add_head_pose_sample(HeadPoseSample('left', yaw=-25.0, pitch=0.0, confidence=0.9))
        calibrator.add_head_pose_sample(HeadPoseSample('right', yaw=28.0, pitch=1.0, confidence=0.9))
        calibrator.add_head_pose_sample(HeadPoseSample('up', yaw=0.0, pitch=14.0, confidence=0.9))
        calibrator.add_head_pose_sample(HeadPoseSample('down', yaw=0.0, pitch=-12.0, confidence=0.9))
        calibrator.add_head_pose_sample(HeadPoseSample('left', yaw=-60.0, pitch=0.0, confidence=0.2))

        yaw_range, pitch_range = calibrator.head_pose_bounds()
        assert yaw_range == (-25.0, 28.0)
        assert pitch_range == (-12.0, 14.0)
        assert calibrator.head_pose_count == 5


def test_calibration_results():
    """get_calibration_results bundles everything profile creation needs"""
    calibrator = checkerboard_calibrator(10.0)
    results = calibrator.get_calibration_results()

    assert results['data_points'] == 25
    assert results['homography'] is not None
    assert results['quality'].overall >= 0
    assert results['personal_thresholds'].gaze_accuracy >= 30
    assert results['head_pose_bounds'] == ((-20.0, 20.0), (-15.0, 15.0))
