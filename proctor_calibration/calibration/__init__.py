"""
Calibration Module

Turns per-point observations from the calibration ritual into a personal
screen-to-gaze mapping, a head-pose envelope and an environment baseline.
"""

from proctor_calibration.calibration.types import (
    CalibrationError,
    MalformedInputError,
    HeadPose,
    GazeSample,
    HeadPoseSample,
    EnvironmentSample,
    LandmarkSample,
    HomographyResult,
    PersonalThresholds,
    CalibrationQuality,
    EnvironmentBaseline,
    EnvironmentValidation,
    CalibrationProfile,
    CalibrationStep,
    CalibrationSession,
    SessionStatus,
    GazeBatch,
    HeadPoseBatch,
    EnvironmentBatch,
    StepPayload,
)
from proctor_calibration.calibration.steps import (
    CalibrationStepId,
    STEP_DEFINITIONS,
    parse_step_payload,
)
from proctor_calibration.calibration.settings import CalibrationSettings
from proctor_calibration.calibration.gaze_calibrator import GazeCalibrator
from proctor_calibration.calibration.environment_calibrator import EnvironmentCalibrator
from proctor_calibration.calibration.calibration_manager import (
    CalibrationManager,
    FinalizeResult,
    LandmarkTracker,
)

__all__ = [
    'CalibrationError',
    'MalformedInputError',
    'HeadPose',
    'GazeSample',
    'HeadPoseSample',
    'EnvironmentSample',
    'LandmarkSample',
    'HomographyResult',
    'PersonalThresholds',
    'CalibrationQuality',
    'EnvironmentBaseline',
    'EnvironmentValidation',
    'CalibrationProfile',
    'CalibrationStep',
    'CalibrationSession',
    'SessionStatus',
    'GazeBatch',
    'HeadPoseBatch',
    'EnvironmentBatch',
    'StepPayload',
    'CalibrationStepId',
    'STEP_DEFINITIONS',
    'parse_step_payload',
    'CalibrationSettings',
    'GazeCalibrator',
    'EnvironmentCalibrator',
    'CalibrationManager',
    'FinalizeResult',
    'LandmarkTracker',
]
