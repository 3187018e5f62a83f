"""
Environment Calibrator

Characterises lighting, shadows and face/object counts during the
environment step, derives IPD/EAR baselines from eye landmarks, and checks
later samples for drift against the stored baseline.

Images are numpy arrays in RGB(A) order, shaped (H, W, 3) or (H, W, 4);
(H, W) arrays are taken to be luminance already.
"""

import logging
from typing import List, Optional, Sequence

import cv2
import numpy as np

from proctor_calibration.calibration.settings import CalibrationSettings
from proctor_calibration.calibration.types import (
    HISTOGRAM_BINS,
    EnvironmentBaseline,
    EnvironmentSample,
    EnvironmentValidation,
    LandmarkSample,
    MalformedInputError,
    now_ms,
)


DEFAULT_IPD_MM = 65.0
DEFAULT_EAR = 0.3

# Luminance weights (ITU-R BT.601)
LUMA_R = 0.299
LUMA_G = 0.587
LUMA_B = 0.114


def histogram_mean(histogram: Sequence[float]) -> float:
    """First moment over intensity, weighted by bucket probability."""
    weights = np.asarray(histogram, dtype=float)
    total = weights.sum()
    if total <= 0:
        return 128.0
    return float(np.dot(np.arange(len(weights)), weights) / total)


def histogram_variance(histogram: Sequence[float], mean: float) -> float:
    weights = np.asarray(histogram, dtype=float)
    total = weights.sum()
    if total <= 0:
        return 0.0
    deviations = (np.arange(len(weights)) - mean) ** 2
    return float(np.dot(deviations, weights) / total)


def _distance(a, b) -> float:
    return float(np.hypot(b[0] - a[0], b[1] - a[1]))


class EnvironmentCalibrator:
    """
    Accumulates environment samples and eye landmarks for one session.

    Provides:
    - Lighting histogram and shadow analysis of raw frames
    - IPD / EAR / blink-rate baselines
    - Baseline creation and drift validation
    """

    def __init__(self, settings: Optional[CalibrationSettings] = None):
        self.settings = settings or CalibrationSettings()
        self.logger = logging.getLogger(__name__)

        self._samples: List[EnvironmentSample] = []
        self._landmarks: List[LandmarkSample] = []
        self._baseline: Optional[EnvironmentBaseline] = None

    @property
    def data_count(self) -> int:
        return len(self._samples)

    @property
    def landmark_count(self) -> int:
        return len(self._landmarks)

    def add_sample(self, sample: EnvironmentSample):
        self._samples.append(sample)

    def add_landmarks(self, sample: LandmarkSample):
        self._landmarks.append(sample)

    def clear(self):
        """Drop samples, landmarks and the baseline."""
        self._samples = []
        self._landmarks = []
        self._baseline = None

    def get_baseline(self) -> Optional[EnvironmentBaseline]:
        return self._baseline

    # ------------------------------------------------------------------
    # Frame analysis
    # ------------------------------------------------------------------

    @staticmethod
    def _luminance(image) -> np.ndarray:
        pixels = np.asarray(image)
        if pixels.ndim == 2:
            luminance = pixels.astype(float)
        elif pixels.ndim == 3 and pixels.shape[2] in (3, 4):
            rgb = pixels[..., :3].astype(float)
            luminance = LUMA_R * rgb[..., 0] + LUMA_G * rgb[..., 1] + LUMA_B * rgb[..., 2]
        else:
            raise MalformedInputError(f"Expected an (H, W[, 3|4]) image, got shape {pixels.shape}")
        if luminance.size == 0:
            raise MalformedInputError("Image has no pixels")
        return luminance

    def analyze_lighting_histogram(self, image) -> List[float]:
        """
        Normalised 256-bin luminance histogram of an image.

        Returns:
            List of 256 bucket probabilities summing to 1
        """
        luminance = self._luminance(image)
        # Round half up (0.5 goes to the upper bucket)
        buckets = np.clip(np.floor(luminance + 0.5), 0, 255).astype(np.uint8)
        counts = cv2.calcHist([buckets], [0], None, [HISTOGRAM_BINS], [0, HISTOGRAM_BINS]).ravel()
        return (counts.astype(float) / buckets.size).tolist()

    def calculate_shadow_score(self, image) -> float:
        """
        Mean luminance gradient magnitude over interior pixels, scaled to [0, 1].

        Higher means harder edges / more shadow structure.
        """
        luminance = self._luminance(image)
        height, width = luminance.shape
        if height < 3 or width < 3:
            return 0.0

        current = luminance[1:-1, 1:-1]
        grad_x = np.abs(luminance[1:-1, 2:] - current)
        grad_y = np.abs(luminance[2:, 1:-1] - current)
        magnitude = cv2.magnitude(grad_x, grad_y)
        return float(np.mean(magnitude) / 255.0)

    def measure_shadow_stability(self, frames: Sequence) -> float:
        """
        Stability of shadow scores across frames (1.0 = perfectly stable).
        """
        if len(frames) < 2:
            return 1.0

        scores = np.array([self.calculate_shadow_score(frame) for frame in frames])
        variance = float(np.var(scores))
        return max(0.0, 1.0 - variance * 10.0)

    # ------------------------------------------------------------------
    # Landmark baselines
    # ------------------------------------------------------------------

    def calculate_ipd(self, left_eye_landmarks: Sequence, right_eye_landmarks: Sequence) -> float:
        """
        Interpupillary distance in mm.

        Uses a fixed mm-per-pixel factor, so the result is only as good as
        that approximation (no camera intrinsics are available).
        """
        if len(left_eye_landmarks) == 0 or len(right_eye_landmarks) == 0:
            return DEFAULT_IPD_MM

        left_center = np.mean(np.asarray(left_eye_landmarks, dtype=float), axis=0)
        right_center = np.mean(np.asarray(right_eye_landmarks, dtype=float), axis=0)
        return _distance(left_center, right_center) * self.settings.mm_per_pixel

    @staticmethod
    def calculate_ear(eye_landmarks: Sequence) -> float:
        """Eye aspect ratio over a 6-point eye contour."""
        if len(eye_landmarks) < 6:
            return DEFAULT_EAR

        p = eye_landmarks
        horizontal = _distance(p[0], p[3])
        if horizontal == 0:
            return 0.0
        return (_distance(p[1], p[5]) + _distance(p[2], p[4])) / (2.0 * horizontal)

    def detect_baseline_blink_rate(self, ear_values: Sequence[float], time_span_ms: float) -> float:
        """
        Blinks per minute in an EAR series.

        A blink is counted when EAR falls below the threshold; it must rise
        back above before another blink can count.
        """
        if len(ear_values) == 0 or time_span_ms <= 0:
            return 0.0

        threshold = self.settings.blink_ear_threshold
        blink_count = 0
        in_blink = False
        for ear in ear_values:
            if ear < threshold and not in_blink:
                blink_count += 1
                in_blink = True
            elif ear >= threshold:
                in_blink = False

        return blink_count / time_span_ms * 60000.0

    def _sample_ear(self, sample: LandmarkSample) -> float:
        return (self.calculate_ear(sample.left_eye) + self.calculate_ear(sample.right_eye)) / 2.0

    def ipd_baseline(self) -> float:
        if not self._landmarks:
            return DEFAULT_IPD_MM
        return float(np.mean([self.calculate_ipd(s.left_eye, s.right_eye) for s in self._landmarks]))

    def ear_baseline(self) -> float:
        if not self._landmarks:
            return DEFAULT_EAR
        return float(np.mean([self._sample_ear(s) for s in self._landmarks]))

    def blink_rate_baseline(self) -> Optional[float]:
        """Blinks per minute over the landmark samples, or None without a time span."""
        if len(self._landmarks) < 2:
            return None
        ordered = sorted(self._landmarks, key=lambda s: s.timestamp)
        span = ordered[-1].timestamp - ordered[0].timestamp
        if span <= 0:
            return None
        return self.detect_baseline_blink_rate([self._sample_ear(s) for s in ordered], span)

    # ------------------------------------------------------------------
    # Baseline
    # ------------------------------------------------------------------

    def create_baseline(self) -> Optional[EnvironmentBaseline]:
        """
        Build the baseline from every stored sample, replacing any earlier one.

        Returns:
            The baseline, or None if no samples were collected
        """
        if not self._samples:
            self.logger.warning("No environment samples; cannot create baseline")
            return None

        histograms = np.array([s.lighting_histogram for s in self._samples], dtype=float)
        avg_histogram = histograms.mean(axis=0)
        mean = histogram_mean(avg_histogram)
        variance = histogram_variance(avg_histogram, mean)

        avg_shadow_score = float(np.mean([s.shadow_score for s in self._samples]))
        shadow_stability = 1.0 - avg_shadow_score

        # Record the most faces/objects ever seen rather than the average
        face_count = max(s.face_count for s in self._samples)
        object_count = max(s.object_count for s in self._samples)

        self._baseline = EnvironmentBaseline(
            histogram=avg_histogram.tolist(),
            mean=mean,
            variance=variance,
            shadow_stability=shadow_stability,
            face_count=face_count,
            object_count=object_count,
            quality=self._baseline_quality(shadow_stability, variance, face_count, object_count),
            timestamp=now_ms(),
        )
        self.logger.info(
            f"Environment baseline created from {len(self._samples)} samples "
            f"(mean={mean:.1f}, variance={variance:.1f}, quality={self._baseline.quality:.2f})"
        )
        return self._baseline

    @staticmethod
    def _baseline_quality(
        shadow_stability: float,
        variance: float,
        face_count: int,
        object_count: int
    ) -> float:
        quality = 0.5

        if shadow_stability > 0.8:
            quality += 0.2
        elif shadow_stability > 0.6:
            quality += 0.1

        # Well lit: neither flat nor blown out
        if 500 < variance < 2000:
            quality += 0.2
        elif 200 < variance < 3000:
            quality += 0.1

        if face_count == 1:
            quality += 0.2
        elif face_count > 1:
            quality -= 0.1

        if object_count == 0:
            quality += 0.1
        else:
            quality -= object_count * 0.05

        return float(max(0.0, min(1.0, quality)))

    def stability_score(self) -> Optional[float]:
        """Environment stability for calibration quality: the baseline's quality."""
        if self._baseline is None:
            return None
        return self._baseline.quality

    def validate_environment(self, sample: EnvironmentSample) -> EnvironmentValidation:
        """Compare a live sample against the baseline."""
        if self._baseline is None:
            return EnvironmentValidation(is_valid=False, issues=['No baseline available'], confidence=0.0)

        issues = []
        confidence = 1.0

        lighting_diff = abs(histogram_mean(sample.lighting_histogram) - self._baseline.mean)
        if lighting_diff > self.settings.lighting_drift_threshold:
            issues.append('Lighting conditions have changed significantly')
            confidence -= 0.3

        baseline_shadow = 1.0 - self._baseline.shadow_stability
        if abs(sample.shadow_score - baseline_shadow) > self.settings.shadow_drift_threshold:
            issues.append('Shadow conditions are unstable')
            confidence -= 0.2

        if sample.face_count != self._baseline.face_count:
            issues.append('Number of faces in frame has changed')
            confidence -= 0.3

        if sample.object_count > self._baseline.object_count:
            issues.append('Additional objects detected in frame')
            confidence -= 0.2

        if issues:
            self.logger.debug(f"Environment drift detected: {issues}")

        return EnvironmentValidation(
            is_valid=not issues,
            issues=issues,
            confidence=max(0.0, confidence),
        )
