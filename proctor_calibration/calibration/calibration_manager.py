"""
Calibration Manager

Drives one calibration session through the fixed gaze -> head pose ->
environment sequence and assembles the final CalibrationProfile.

One manager owns one session and its two calibrators. Nothing here is
shared between managers, so concurrent sessions each need their own
instance; calls on a single instance must not overlap.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from proctor_calibration.calibration.environment_calibrator import (
    EnvironmentCalibrator,
    histogram_mean,
    histogram_variance,
)
from proctor_calibration.calibration.gaze_calibrator import GazeCalibrator
from proctor_calibration.calibration.settings import CalibrationSettings
from proctor_calibration.calibration.steps import CalibrationStepId, build_steps
from proctor_calibration.calibration.types import (
    HISTOGRAM_BINS,
    CalibrationProfile,
    CalibrationQuality,
    CalibrationSession,
    EnvironmentBatch,
    EnvironmentSample,
    EnvironmentValidation,
    GazeBatch,
    HeadPoseBatch,
    LandmarkSample,
    MalformedInputError,
    SessionStatus,
    StepPayload,
    now_ms,
)


IDENTITY_HOMOGRAPHY = ((1.0, 0.0, 0.0), (0.0, 1.0, 0.0), (0.0, 0.0, 1.0))


class LandmarkTracker(Protocol):
    """The face tracker handle a manager may be given at construction."""

    def get_eye_landmarks(self) -> Optional[LandmarkSample]:
        ...


@dataclass
class FinalizeResult:
    success: bool
    profile: Optional[CalibrationProfile] = None
    quality: Optional[CalibrationQuality] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'profile': self.profile.to_dict() if self.profile else None,
            'quality': self.quality.to_dict() if self.quality else None,
            'reason': self.reason,
        }


class CalibrationManager:
    """
    Orchestrates the complete calibration process

    Provides:
    - Session lifecycle (start, per-step processing, finalize, reset)
    - Routing of step batches to the gaze and environment calibrators
    - Quality gating and profile assembly
    """

    def __init__(
        self,
        settings: Optional[CalibrationSettings] = None,
        tracker: Optional[LandmarkTracker] = None
    ):
        """
        Initialize calibration manager

        Args:
            settings: Calibration constants (defaults when None)
            tracker: Optional face tracker used to sample eye landmarks
                during the environment step
        """
        self.settings = settings or CalibrationSettings()
        self.tracker = tracker
        self.logger = logging.getLogger(__name__)

        self.gaze_calibrator = GazeCalibrator(self.settings)
        self.environment_calibrator = EnvironmentCalibrator(self.settings)
        self.current_session: Optional[CalibrationSession] = None

        self._step_handlers: Dict[type, Callable[[Any], bool]] = {
            GazeBatch: self.process_gaze_calibration,
            HeadPoseBatch: self.process_head_pose_calibration,
            EnvironmentBatch: self.process_environment_baseline,
        }

    @property
    def status(self) -> SessionStatus:
        if self.current_session is None:
            return SessionStatus.NOT_STARTED
        return self.current_session.status

    def start_calibration(self) -> CalibrationSession:
        """Start a fresh session, discarding data from any previous run."""
        started = now_ms()
        self.current_session = CalibrationSession(
            id=f"calibration-{started}",
            start_time=started,
            steps=build_steps(),
        )
        self.gaze_calibrator.clear()
        self.environment_calibrator.clear()

        self.logger.info(f"Calibration session started: {self.current_session.id}")
        return self.current_session

    def _active_session(self, step_id: CalibrationStepId) -> Optional[CalibrationSession]:
        session = self.current_session
        if session is None:
            self.logger.warning(f"No active calibration session for {step_id.value}")
            return None
        if session.status == SessionStatus.COMPLETED:
            self.logger.warning(f"Session {session.id} is already completed; ignoring {step_id.value}")
            return None
        session.status = SessionStatus.IN_PROGRESS
        return session

    def _complete_step(self, session: CalibrationSession, step_id: CalibrationStepId):
        session.step(step_id.value).completed = True
        incomplete = [i for i, step in enumerate(session.steps) if not step.completed]
        session.current_step_index = incomplete[0] if incomplete else len(session.steps) - 1
        self.logger.info(f"Calibration step completed: {step_id.value}")

    def _reopen_step(self, session: CalibrationSession, step_id: CalibrationStepId):
        step = session.step(step_id.value)
        if step.completed:
            step.completed = False
            session.current_step_index = min(session.current_step_index, session.steps.index(step))

    def process_step(self, payload: StepPayload) -> bool:
        """Dispatch a typed step payload to its handler."""
        handler = self._step_handlers.get(type(payload))
        if handler is None:
            raise MalformedInputError(f"Unknown calibration step payload: {type(payload).__name__}")
        return handler(payload)

    def process_gaze_calibration(self, batch: Any) -> bool:
        """
        Add gaze correspondences and refit the homography.

        Args:
            batch: GazeBatch or a raw list of gaze sample dicts

        Returns:
            True if the homography was fitted and the step completed

        Raises:
            MalformedInputError: if the batch is not a list of gaze samples
        """
        batch = GazeBatch.from_payload(batch)
        session = self._active_session(CalibrationStepId.GAZE)
        if session is None:
            return False

        for sample in batch.samples:
            self.gaze_calibrator.add_point(sample)

        success = self.gaze_calibrator.calculate_homography()
        if success:
            self._complete_step(session, CalibrationStepId.GAZE)
        else:
            # A failed refit discards the earlier homography
            self._reopen_step(session, CalibrationStepId.GAZE)
        return success

    def process_head_pose_calibration(self, batch: Any) -> bool:
        """
        Record the guided head movements.

        The step is acknowledged for any well-formed batch; the samples only
        feed the profile's head-pose bounds.
        """
        batch = HeadPoseBatch.from_payload(batch)
        session = self._active_session(CalibrationStepId.HEAD_POSE)
        if session is None:
            return False

        for sample in batch.samples:
            self.gaze_calibrator.add_head_pose_sample(sample)

        self._complete_step(session, CalibrationStepId.HEAD_POSE)
        return True

    def process_environment_baseline(self, batch: Any) -> bool:
        """
        Add environment samples (and landmarks) for the baseline.

        The baseline itself is built in finalize_calibration.

        Returns:
            True once at least one environment sample is stored
        """
        batch = EnvironmentBatch.from_payload(batch)
        session = self._active_session(CalibrationStepId.ENVIRONMENT)
        if session is None:
            return False

        for sample in batch.samples:
            self.environment_calibrator.add_sample(sample)
        for landmarks in batch.landmarks:
            self.environment_calibrator.add_landmarks(landmarks)

        if self.tracker is not None:
            landmarks = self.tracker.get_eye_landmarks()
            if landmarks is not None:
                self.environment_calibrator.add_landmarks(landmarks)

        if self.environment_calibrator.data_count == 0:
            self.logger.warning("Environment step received no samples")
            return False

        self._complete_step(session, CalibrationStepId.ENVIRONMENT)
        return True

    def finalize_calibration(self) -> FinalizeResult:
        """
        Gate on step completion and quality, then build the profile.

        Returns:
            FinalizeResult; on a quality rejection the quality report is
            attached so the UI can show the recommendations.
        """
        session = self.current_session
        if session is None:
            return FinalizeResult(success=False, reason='no-session')

        if not session.all_steps_completed:
            pending = [step.id for step in session.steps if not step.completed]
            self.logger.warning(f"Cannot finalize calibration; incomplete steps: {pending}")
            return FinalizeResult(success=False, reason='incomplete-steps')

        baseline = self.environment_calibrator.create_baseline()
        quality = self.gaze_calibrator.calculate_quality(self.environment_calibrator.stability_score())
        session.overall_quality = quality.overall

        if quality.overall < self.settings.quality_threshold:
            session.status = SessionStatus.FAILED
            self.logger.warning(
                f"Calibration quality {quality.overall:.2f} below threshold "
                f"{self.settings.quality_threshold:.2f}"
            )
            return FinalizeResult(success=False, quality=quality, reason='quality-below-threshold')

        homography = self.gaze_calibrator.homography
        yaw_range, pitch_range = self.gaze_calibrator.head_pose_bounds()

        if baseline is not None:
            histogram = tuple(baseline.histogram)
            lighting_mean = baseline.mean
            lighting_variance = baseline.variance
        else:
            histogram = tuple([1.0 / HISTOGRAM_BINS] * HISTOGRAM_BINS)
            lighting_mean = histogram_mean(histogram)
            lighting_variance = histogram_variance(histogram, lighting_mean)

        profile = CalibrationProfile(
            ipd=self.environment_calibrator.ipd_baseline(),
            ear_baseline=self.environment_calibrator.ear_baseline(),
            homography=tuple(tuple(row) for row in homography.matrix) if homography else IDENTITY_HOMOGRAPHY,
            bias=homography.bias if homography else (0.0, 0.0),
            yaw_range=yaw_range,
            pitch_range=pitch_range,
            histogram=histogram,
            lighting_mean=lighting_mean,
            lighting_variance=lighting_variance,
            quality=quality.overall,
            personal_thresholds=self.gaze_calibrator.calculate_personal_thresholds(),
            blink_rate=self.environment_calibrator.blink_rate_baseline(),
        )

        session.end_time = now_ms()
        session.profile = profile
        session.status = SessionStatus.COMPLETED
        self.logger.info(f"Calibration session {session.id} completed (quality={quality.overall:.2f})")

        return FinalizeResult(success=True, profile=profile, quality=quality)

    def get_current_session(self) -> Optional[CalibrationSession]:
        return self.current_session

    def get_calibration_quality(self) -> CalibrationQuality:
        return self.gaze_calibrator.calculate_quality(self.environment_calibrator.stability_score())

    def meets_quality_threshold(self) -> bool:
        return self.get_calibration_quality().overall >= self.settings.quality_threshold

    def validate_environment(self, sample: Any) -> EnvironmentValidation:
        """Check a live environment sample against this session's baseline."""
        if not isinstance(sample, EnvironmentSample):
            sample = EnvironmentSample.from_dict(sample)
        return self.environment_calibrator.validate_environment(sample)

    def reset_calibration(self):
        """Drop the session and all collected data. Safe in any state."""
        if self.current_session is not None:
            self.logger.info(f"Calibration session reset: {self.current_session.id}")
        self.current_session = None
        self.gaze_calibrator.clear()
        self.environment_calibrator.clear()

    def get_gaze_calibrator(self) -> GazeCalibrator:
        return self.gaze_calibrator

    def get_environment_calibrator(self) -> EnvironmentCalibrator:
        return self.environment_calibrator
