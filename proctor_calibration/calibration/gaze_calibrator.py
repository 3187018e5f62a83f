"""
Gaze Calibrator

Fits the screen-to-gaze mapping from calibration correspondences and scores
how good the calibration is.

Mapping model:
A planar homography H (3x3, H[2,2] == 1) is fitted with the Direct Linear
Transform. Each correspondence (x, y) -> (u, v) contributes two rows to A:
    [x, y, 1, 0, 0, 0, -u*x, -u*y, -u]
    [0, 0, 0, x, y, 1, -v*x, -v*y, -v]
and h is the unit eigenvector of A^T A with the smallest eigenvalue. Points
are Hartley-normalised first so pixel-scale coordinates do not wreck the
conditioning of A^T A. The mean residual left by H is stored separately as
an additive bias.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from proctor_calibration.calibration.settings import CalibrationSettings
from proctor_calibration.calibration.types import (
    CalibrationQuality,
    GazeSample,
    HeadPoseSample,
    HomographyResult,
    PersonalThresholds,
    Point,
)


# Weights of the overall quality score
WEIGHT_GAZE_ACCURACY = 0.5
WEIGHT_HEAD_POSE_RANGE = 0.3
WEIGHT_ENVIRONMENT = 0.2

# Used when no environment baseline is available to score against
DEFAULT_ENVIRONMENT_STABILITY = 0.8

# Head pose spread (degrees) that earns a full head-pose score
FULL_YAW_SPREAD = 40.0
FULL_PITCH_SPREAD = 30.0

DEFAULT_YAW_RANGE = (-20.0, 20.0)
DEFAULT_PITCH_RANGE = (-15.0, 15.0)

DEFAULT_GAZE_ACCURACY_PX = 50.0
DEFAULT_CONFIDENCE_THRESHOLD = 0.7

# Numerical tolerances for degeneracy checks (normalised coordinates)
_COINCIDENT_TOL = 1e-9
_COLLINEAR_TOL = 1e-8
_NULLSPACE_TOL = 1e-10
_SINGULAR_TOL = 1e-12
_W_EPS = 1e-12


class DegenerateGeometryError(Exception):
    """Raised internally when correspondences cannot determine a homography."""


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return float(max(low, min(high, value)))


def _normalization_transform(points: np.ndarray) -> np.ndarray:
    """Similarity transform moving the centroid to 0 and the mean distance to sqrt(2)."""
    centroid = points.mean(axis=0)
    mean_distance = float(np.mean(np.linalg.norm(points - centroid, axis=1)))
    if mean_distance < _COINCIDENT_TOL:
        raise DegenerateGeometryError("all points coincide")
    scale = np.sqrt(2.0) / mean_distance
    return np.array([
        [scale, 0.0, -scale * centroid[0]],
        [0.0, scale, -scale * centroid[1]],
        [0.0, 0.0, 1.0],
    ])


def _apply_affine(transform: np.ndarray, points: np.ndarray) -> np.ndarray:
    return points @ transform[:2, :2].T + transform[:2, 2]


def _is_collinear(points: np.ndarray) -> bool:
    centered = points - points.mean(axis=0)
    spread = np.linalg.eigvalsh(centered.T @ centered)
    return bool(spread[0] <= _COLLINEAR_TOL * spread[1])


def _check_point_set(points: np.ndarray, label: str):
    if _is_collinear(points):
        raise DegenerateGeometryError(f"{label} points are collinear")


def _check_general_position(points: np.ndarray, label: str):
    """
    Require four distinct points with no three of them collinear.

    Repeated samples of the same target add no constraints, so only distinct
    points count. Such a four-point subset exists unless every distinct point
    but at most one lies on a single line.
    """
    distinct = np.unique(points, axis=0)
    if len(distinct) < 4:
        raise DegenerateGeometryError(f"only {len(distinct)} distinct {label} points")
    if _is_collinear(distinct):
        raise DegenerateGeometryError(f"{label} points are collinear")
    for i in range(len(distinct)):
        if _is_collinear(np.delete(distinct, i, axis=0)):
            raise DegenerateGeometryError(f"all {label} points but one are collinear")


def compute_homography_dlt(src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """
    Solve for H with dst ~ H * src.

    Args:
        src: (n, 2) screen points, n >= 4
        dst: (n, 2) gaze points

    Returns:
        3x3 homography scaled so H[2, 2] == 1 (or unit norm if H[2, 2] ~ 0)

    Raises:
        DegenerateGeometryError: if the correspondences do not pin down H
    """
    src = np.asarray(src, dtype=float)
    dst = np.asarray(dst, dtype=float)

    t_src = _normalization_transform(src)
    t_dst = _normalization_transform(dst)
    src_n = _apply_affine(t_src, src)
    dst_n = _apply_affine(t_dst, dst)

    _check_general_position(src_n, "screen")
    _check_point_set(dst_n, "gaze")

    n = len(src_n)
    A = np.zeros((2 * n, 9))
    x, y = src_n[:, 0], src_n[:, 1]
    u, v = dst_n[:, 0], dst_n[:, 1]
    A[0::2, 0] = x
    A[0::2, 1] = y
    A[0::2, 2] = 1.0
    A[0::2, 6] = -u * x
    A[0::2, 7] = -u * y
    A[0::2, 8] = -u
    A[1::2, 3] = x
    A[1::2, 4] = y
    A[1::2, 5] = 1.0
    A[1::2, 6] = -v * x
    A[1::2, 7] = -v * y
    A[1::2, 8] = -v

    # eigh returns eigenvalues in ascending order
    eigenvalues, eigenvectors = np.linalg.eigh(A.T @ A)
    if eigenvalues[1] <= _NULLSPACE_TOL * eigenvalues[-1]:
        raise DegenerateGeometryError("solution space has more than one dimension")

    h_normalized = eigenvectors[:, 0].reshape(3, 3)
    H = np.linalg.inv(t_dst) @ h_normalized @ t_src

    if abs(H[2, 2]) > _W_EPS:
        H = H / H[2, 2]
    else:
        H = H / np.linalg.norm(H)

    if abs(np.linalg.det(H)) <= _SINGULAR_TOL * np.linalg.norm(H) ** 3:
        raise DegenerateGeometryError("fitted homography is singular")

    return H


class GazeCalibrator:
    """
    Accumulates gaze correspondences and fits the screen-to-gaze transform.

    Provides:
    - Homography + bias fitting
    - Point transformation with identity fallback
    - Personal detection thresholds
    - Calibration quality scoring and recommendations
    """

    def __init__(self, settings: Optional[CalibrationSettings] = None):
        self.settings = settings or CalibrationSettings()
        self.logger = logging.getLogger(__name__)

        self._samples: List[GazeSample] = []
        self._head_pose_samples: List[HeadPoseSample] = []
        self._homography: Optional[np.ndarray] = None
        self._bias = np.zeros(2)

    @property
    def point_count(self) -> int:
        return len(self._samples)

    @property
    def head_pose_count(self) -> int:
        return len(self._head_pose_samples)

    @property
    def samples(self) -> Tuple[GazeSample, ...]:
        return tuple(self._samples)

    @property
    def homography(self) -> Optional[HomographyResult]:
        """The current fit, or None if no homography has been fitted."""
        if self._homography is None:
            return None
        return HomographyResult(
            matrix=self._homography.tolist(),
            bias=(float(self._bias[0]), float(self._bias[1])),
        )

    def add_point(self, sample: GazeSample):
        """Append a correspondence; samples are immutable once stored."""
        self._samples.append(sample)

    def add_head_pose_sample(self, sample: HeadPoseSample):
        self._head_pose_samples.append(sample)

    def clear(self):
        """Drop all samples and invalidate the fitted homography and bias."""
        self._samples = []
        self._head_pose_samples = []
        self._invalidate()

    def _invalidate(self):
        self._homography = None
        self._bias = np.zeros(2)

    def calculate_homography(self) -> bool:
        """
        Fit the homography and bias from every stored sample.

        Returns:
            True on success. False for too few samples or degenerate geometry;
            any earlier fit is discarded in that case.
        """
        count = len(self._samples)
        if count < self.settings.min_gaze_points:
            self.logger.warning(
                f"Insufficient calibration points for homography calculation: "
                f"{count} < {self.settings.min_gaze_points}"
            )
            self._invalidate()
            return False

        screen = np.array([s.screen_point for s in self._samples], dtype=float)
        gaze = np.array([s.gaze_point for s in self._samples], dtype=float)

        try:
            H = compute_homography_dlt(screen, gaze)
        except (DegenerateGeometryError, np.linalg.LinAlgError) as e:
            self.logger.warning(f"Degenerate calibration geometry ({count} points): {e}")
            self._invalidate()
            return False

        self._homography = H
        self._bias = self._calculate_bias(screen, gaze)

        self.logger.debug(f"Homography fitted from {count} points, bias={self._bias.tolist()}")
        return True

    def _calculate_bias(self, screen: np.ndarray, gaze: np.ndarray) -> np.ndarray:
        predicted = np.array([self._project(x, y) for x, y in screen])
        return np.mean(gaze - predicted, axis=0)

    def _project(self, x: float, y: float) -> Point:
        H = self._homography
        w = H[2, 0] * x + H[2, 1] * y + H[2, 2]
        if abs(w) < _W_EPS:
            self.logger.warning(f"Point ({x}, {y}) maps to infinity; returning it unchanged")
            return float(x), float(y)
        px = (H[0, 0] * x + H[0, 1] * y + H[0, 2]) / w
        py = (H[1, 0] * x + H[1, 1] * y + H[1, 2]) / w
        return float(px), float(py)

    def transform_point(self, x: float, y: float) -> Point:
        """
        Map a screen point to the expected gaze point.

        Without a fitted homography the input is returned unchanged.
        """
        if self._homography is None:
            return float(x), float(y)
        px, py = self._project(x, y)
        return px + float(self._bias[0]), py + float(self._bias[1])

    def _reprojection_errors(self) -> List[float]:
        """Pixel error for every sample above the confidence cutoff."""
        errors = []
        for sample in self._samples:
            if sample.confidence > self.settings.min_point_confidence:
                px, py = self.transform_point(*sample.screen_point)
                gx, gy = sample.gaze_point
                errors.append(float(np.hypot(px - gx, py - gy)))
        return errors

    def calculate_personal_thresholds(self) -> PersonalThresholds:
        """
        Derive per-user detection thresholds from calibration performance.

        Better calibration gives a tighter pixel threshold.
        """
        if not self._samples:
            return PersonalThresholds(
                gaze_accuracy=DEFAULT_GAZE_ACCURACY_PX,
                confidence_threshold=DEFAULT_CONFIDENCE_THRESHOLD,
            )

        errors = self._reprojection_errors()
        average_error = float(np.mean(errors)) if errors else DEFAULT_GAZE_ACCURACY_PX
        avg_confidence = float(np.mean([s.confidence for s in self._samples]))

        return PersonalThresholds(
            gaze_accuracy=_clamp(average_error * 1.5, 30.0, 100.0),
            confidence_threshold=max(0.6, avg_confidence - 0.1),
        )

    def _gaze_accuracy_score(self) -> float:
        errors = self._reprojection_errors()
        if not errors:
            return 0.0
        # 20px error scores 1.0, 100px scores 0.0
        return _clamp((100.0 - float(np.mean(errors))) / 80.0)

    def _head_pose_range_score(self) -> float:
        if not self._samples:
            return 0.0
        yaws = [s.head_pose.yaw for s in self._samples]
        pitches = [s.head_pose.pitch for s in self._samples]
        yaw_score = min(1.0, (max(yaws) - min(yaws)) / FULL_YAW_SPREAD)
        pitch_score = min(1.0, (max(pitches) - min(pitches)) / FULL_PITCH_SPREAD)
        return (yaw_score + pitch_score) / 2.0

    def calculate_quality(self, environment_stability: Optional[float] = None) -> CalibrationQuality:
        """
        Score the current calibration.

        Args:
            environment_stability: Score from the environment calibrator; a
                fixed default is used when it is not available.
        """
        if not self._samples:
            return CalibrationQuality(
                gaze_accuracy=0.0,
                head_pose_range=0.0,
                environment_stability=0.0,
                overall=0.0,
                recommendations=['No calibration data available'],
            )

        if environment_stability is None:
            environment_stability = DEFAULT_ENVIRONMENT_STABILITY
        environment_stability = _clamp(environment_stability)

        gaze_accuracy = self._gaze_accuracy_score()
        head_pose_range = self._head_pose_range_score()
        overall = _clamp(
            gaze_accuracy * WEIGHT_GAZE_ACCURACY
            + head_pose_range * WEIGHT_HEAD_POSE_RANGE
            + environment_stability * WEIGHT_ENVIRONMENT
        )

        return CalibrationQuality(
            gaze_accuracy=gaze_accuracy,
            head_pose_range=head_pose_range,
            environment_stability=environment_stability,
            overall=overall,
            recommendations=self._generate_recommendations(
                gaze_accuracy, head_pose_range, environment_stability
            ),
        )

    @staticmethod
    def _generate_recommendations(
        gaze_accuracy: float,
        head_pose_range: float,
        environment_stability: float
    ) -> List[str]:
        recommendations = []

        if gaze_accuracy < 0.8:
            recommendations.append('Look directly at each calibration point')
            recommendations.append('Keep your head still during gaze calibration')
            recommendations.append('Ensure your eyes are clearly visible to the camera')

        if head_pose_range < 0.6:
            recommendations.append('Move your head through a wider range during head pose calibration')
            recommendations.append('Ensure you complete all head movement directions')

        if environment_stability < 0.7:
            recommendations.append('Improve lighting conditions')
            recommendations.append('Remove distracting objects from the camera view')
            recommendations.append('Ensure stable positioning')

        if not recommendations:
            recommendations.append('Calibration quality is excellent!')

        return recommendations

    def meets_quality_threshold(self, environment_stability: Optional[float] = None) -> bool:
        quality = self.calculate_quality(environment_stability)
        return quality.overall >= self.settings.quality_threshold

    def head_pose_bounds(self) -> Tuple[Point, Point]:
        """
        Yaw and pitch ranges covered during the head-pose step.

        Returns:
            ((yaw_min, yaw_max), (pitch_min, pitch_max)); defaults when no
            confident head-pose samples were collected.
        """
        confident = [
            s for s in self._head_pose_samples
            if s.confidence > self.settings.min_point_confidence
        ]
        if not confident:
            return DEFAULT_YAW_RANGE, DEFAULT_PITCH_RANGE

        yaws = [s.yaw for s in confident]
        pitches = [s.pitch for s in confident]
        return (min(yaws), max(yaws)), (min(pitches), max(pitches))

    def get_calibration_results(self, environment_stability: Optional[float] = None) -> Dict[str, Any]:
        """Everything profile creation needs from the gaze side."""
        return {
            'homography': self.homography,
            'personal_thresholds': self.calculate_personal_thresholds(),
            'quality': self.calculate_quality(environment_stability),
            'head_pose_bounds': self.head_pose_bounds(),
            'data_points': len(self._samples),
        }
