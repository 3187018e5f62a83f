"""
Calibration value types.

Samples arrive from the browser tracker as JSON, so every input type has a
``from_dict`` that accepts camelCase (wire) or snake_case keys and raises
``MalformedInputError`` on anything that is not the expected shape. Every
type also has ``to_dict`` producing camelCase, JSON-compatible output.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from proctor_calibration.utils.json_encoder import dumps


HISTOGRAM_BINS = 256

Point = Tuple[float, float]
Matrix3 = List[List[float]]

HEAD_POSE_DIRECTIONS = ('left', 'right', 'up', 'down', 'center')


class CalibrationError(Exception):
    """Base class for calibration errors."""


class MalformedInputError(CalibrationError, ValueError):
    """A batch or sample does not have the expected shape or types."""


_MISSING = object()


def now_ms() -> int:
    return int(time.time() * 1000)


def _field(data: Dict[str, Any], camel: str, snake: Optional[str] = None, default: Any = _MISSING) -> Any:
    if not isinstance(data, dict):
        raise MalformedInputError(f"Expected an object, got {type(data).__name__}")
    if camel in data:
        return data[camel]
    if snake and snake in data:
        return data[snake]
    if default is _MISSING:
        raise MalformedInputError(f"Missing field '{camel}'")
    return default


def _as_float(value: Any, name: str) -> float:
    # bool is an int subclass; a True confidence is an integration bug
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedInputError(f"Field '{name}' must be a number, got {value!r}")
    try:
        value = float(value)
    except OverflowError:
        raise MalformedInputError(f"Field '{name}' is too large for a float") from None
    if not math.isfinite(value):
        raise MalformedInputError(f"Field '{name}' must be finite, got {value!r}")
    return value


def _as_count(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise MalformedInputError(f"Field '{name}' must be an integer, got {value!r}")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value < 0:
        raise MalformedInputError(f"Field '{name}' must be a non-negative integer, got {value!r}")
    return value


def _as_point(value: Any, name: str) -> Point:
    if isinstance(value, dict):
        return (_as_float(_field(value, 'x'), f"{name}.x"),
                _as_float(_field(value, 'y'), f"{name}.y"))
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return (_as_float(value[0], f"{name}[0]"), _as_float(value[1], f"{name}[1]"))
    raise MalformedInputError(f"Field '{name}' must be an {{x, y}} object or a pair, got {value!r}")


def _as_confidence(value: Any) -> float:
    confidence = _as_float(value, 'confidence')
    if not 0.0 <= confidence <= 1.0:
        raise MalformedInputError(f"Field 'confidence' must be in [0, 1], got {confidence}")
    return confidence


def _as_timestamp(data: Dict[str, Any]) -> int:
    value = _field(data, 'timestamp', default=None)
    if value is None:
        return now_ms()
    return int(_as_float(value, 'timestamp'))


def _as_landmarks(value: Any, name: str) -> Tuple[Point, ...]:
    if not isinstance(value, (list, tuple)):
        raise MalformedInputError(f"Field '{name}' must be a list of points")
    return tuple(_as_point(p, f"{name}[{i}]") for i, p in enumerate(value))


@dataclass(frozen=True)
class HeadPose:
    """Head rotation in degrees."""
    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HeadPose':
        return cls(
            yaw=_as_float(_field(data, 'yaw'), 'headPose.yaw'),
            pitch=_as_float(_field(data, 'pitch'), 'headPose.pitch'),
            roll=_as_float(_field(data, 'roll', default=0.0), 'headPose.roll'),
        )

    def to_dict(self) -> Dict[str, float]:
        return {'yaw': self.yaw, 'pitch': self.pitch, 'roll': self.roll}


@dataclass(frozen=True)
class GazeSample:
    """One screen-point to gaze-point correspondence."""
    screen_point: Point
    gaze_point: Point
    head_pose: HeadPose = field(default_factory=HeadPose)
    confidence: float = 1.0
    timestamp: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GazeSample':
        head_pose = _field(data, 'headPose', 'head_pose', default=None)
        return cls(
            screen_point=_as_point(_field(data, 'screenPoint', 'screen_point'), 'screenPoint'),
            gaze_point=_as_point(_field(data, 'gazePoint', 'gaze_point'), 'gazePoint'),
            head_pose=HeadPose.from_dict(head_pose) if head_pose is not None else HeadPose(),
            confidence=_as_confidence(_field(data, 'confidence')),
            timestamp=_as_timestamp(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'screenPoint': {'x': self.screen_point[0], 'y': self.screen_point[1]},
            'gazePoint': {'x': self.gaze_point[0], 'y': self.gaze_point[1]},
            'headPose': self.head_pose.to_dict(),
            'confidence': self.confidence,
            'timestamp': self.timestamp,
        }


@dataclass(frozen=True)
class HeadPoseSample:
    """Head pose captured while the user follows a guided movement."""
    direction: str
    yaw: float
    pitch: float
    roll: float = 0.0
    confidence: float = 1.0
    timestamp: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HeadPoseSample':
        direction = _field(data, 'direction')
        if direction not in HEAD_POSE_DIRECTIONS:
            raise MalformedInputError(f"Unknown head pose direction: {direction!r}")
        return cls(
            direction=direction,
            yaw=_as_float(_field(data, 'yaw'), 'yaw'),
            pitch=_as_float(_field(data, 'pitch'), 'pitch'),
            roll=_as_float(_field(data, 'roll', default=0.0), 'roll'),
            confidence=_as_confidence(_field(data, 'confidence')),
            timestamp=_as_timestamp(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'direction': self.direction,
            'yaw': self.yaw,
            'pitch': self.pitch,
            'roll': self.roll,
            'confidence': self.confidence,
            'timestamp': self.timestamp,
        }


@dataclass(frozen=True)
class EnvironmentSample:
    """Lighting, shadow and face/object counts for one moment of the environment step."""
    lighting_histogram: Tuple[float, ...]
    shadow_score: float
    face_count: int
    object_count: int
    timestamp: int = 0

    def __post_init__(self):
        if len(self.lighting_histogram) != HISTOGRAM_BINS:
            raise MalformedInputError(
                f"Lighting histogram must have {HISTOGRAM_BINS} bins, got {len(self.lighting_histogram)}"
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EnvironmentSample':
        histogram = _field(data, 'lightingHistogram', 'lighting_histogram')
        if not isinstance(histogram, (list, tuple)):
            raise MalformedInputError("Field 'lightingHistogram' must be a list of numbers")
        return cls(
            lighting_histogram=tuple(_as_float(v, 'lightingHistogram') for v in histogram),
            shadow_score=_as_float(_field(data, 'shadowScore', 'shadow_score'), 'shadowScore'),
            face_count=_as_count(_field(data, 'faceCount', 'face_count'), 'faceCount'),
            object_count=_as_count(_field(data, 'objectCount', 'object_count'), 'objectCount'),
            timestamp=_as_timestamp(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lightingHistogram': list(self.lighting_histogram),
            'shadowScore': self.shadow_score,
            'faceCount': self.face_count,
            'objectCount': self.object_count,
            'timestamp': self.timestamp,
        }


@dataclass(frozen=True)
class LandmarkSample:
    """Eye contour landmarks (pixels) for one frame, six points per eye."""
    left_eye: Tuple[Point, ...]
    right_eye: Tuple[Point, ...]
    timestamp: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LandmarkSample':
        return cls(
            left_eye=_as_landmarks(_field(data, 'leftEye', 'left_eye'), 'leftEye'),
            right_eye=_as_landmarks(_field(data, 'rightEye', 'right_eye'), 'rightEye'),
            timestamp=_as_timestamp(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'leftEye': [list(p) for p in self.left_eye],
            'rightEye': [list(p) for p in self.right_eye],
            'timestamp': self.timestamp,
        }


@dataclass
class HomographyResult:
    """Fitted screen-to-gaze projective map plus additive bias."""
    matrix: Matrix3
    bias: Point = (0.0, 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {'matrix': [list(row) for row in self.matrix], 'bias': list(self.bias)}


@dataclass
class PersonalThresholds:
    gaze_accuracy: float
    confidence_threshold: float

    def to_dict(self) -> Dict[str, float]:
        return {'gazeAccuracy': self.gaze_accuracy, 'confidenceThreshold': self.confidence_threshold}


@dataclass
class CalibrationQuality:
    """Weighted calibration score; every component lies in [0, 1]."""
    gaze_accuracy: float
    head_pose_range: float
    environment_stability: float
    overall: float
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'gazeAccuracy': self.gaze_accuracy,
            'headPoseRange': self.head_pose_range,
            'environmentStability': self.environment_stability,
            'overall': self.overall,
            'recommendations': list(self.recommendations),
        }


@dataclass
class EnvironmentBaseline:
    histogram: List[float]
    mean: float
    variance: float
    shadow_stability: float
    face_count: int
    object_count: int
    quality: float
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'histogram': list(self.histogram),
            'mean': self.mean,
            'variance': self.variance,
            'shadowStability': self.shadow_stability,
            'faceCount': self.face_count,
            'objectCount': self.object_count,
            'quality': self.quality,
            'timestamp': self.timestamp,
        }


@dataclass
class EnvironmentValidation:
    is_valid: bool
    issues: List[str]
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {'isValid': self.is_valid, 'issues': list(self.issues), 'confidence': self.confidence}


@dataclass(frozen=True)
class CalibrationProfile:
    """
    Terminal artifact of a calibration session.

    Consumed by the real-time monitor; ``to_dict`` output is the wire shape
    (nested lists and numbers only).
    """
    ipd: float
    ear_baseline: float
    homography: Tuple[Tuple[float, ...], ...]
    bias: Point
    yaw_range: Point
    pitch_range: Point
    histogram: Tuple[float, ...]
    lighting_mean: float
    lighting_variance: float
    quality: float
    personal_thresholds: Optional[PersonalThresholds] = None
    blink_rate: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'ipd': self.ipd,
            'earBaseline': self.ear_baseline,
            'gazeMapping': {
                'homography': [list(row) for row in self.homography],
                'bias': list(self.bias),
            },
            'headPoseBounds': {
                'yawRange': list(self.yaw_range),
                'pitchRange': list(self.pitch_range),
            },
            'lightingBaseline': {
                'histogram': list(self.histogram),
                'mean': self.lighting_mean,
                'variance': self.lighting_variance,
            },
            'quality': self.quality,
        }
        if self.personal_thresholds is not None:
            data['personalThresholds'] = self.personal_thresholds.to_dict()
        if self.blink_rate is not None:
            data['blinkRate'] = self.blink_rate
        return data

    def to_json(self, **kwargs) -> str:
        return dumps(self.to_dict(), **kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CalibrationProfile':
        mapping = _field(data, 'gazeMapping')
        bounds = _field(data, 'headPoseBounds')
        lighting = _field(data, 'lightingBaseline')
        thresholds = data.get('personalThresholds')
        blink_rate = data.get('blinkRate')
        try:
            homography = tuple(tuple(_as_float(v, 'homography') for v in row) for row in mapping['homography'])
        except (KeyError, TypeError) as e:
            raise MalformedInputError(f"Invalid homography: {e}") from e
        if len(homography) != 3 or any(len(row) != 3 for row in homography):
            raise MalformedInputError("Homography must be a 3x3 matrix")
        return cls(
            ipd=_as_float(_field(data, 'ipd'), 'ipd'),
            ear_baseline=_as_float(_field(data, 'earBaseline'), 'earBaseline'),
            homography=homography,
            bias=_as_point(_field(mapping, 'bias'), 'bias'),
            yaw_range=_as_point(_field(bounds, 'yawRange'), 'yawRange'),
            pitch_range=_as_point(_field(bounds, 'pitchRange'), 'pitchRange'),
            histogram=tuple(_as_float(v, 'histogram') for v in _field(lighting, 'histogram')),
            lighting_mean=_as_float(_field(lighting, 'mean'), 'mean'),
            lighting_variance=_as_float(_field(lighting, 'variance'), 'variance'),
            quality=_as_float(_field(data, 'quality'), 'quality'),
            personal_thresholds=PersonalThresholds(
                gaze_accuracy=_as_float(_field(thresholds, 'gazeAccuracy'), 'gazeAccuracy'),
                confidence_threshold=_as_float(_field(thresholds, 'confidenceThreshold'), 'confidenceThreshold'),
            ) if thresholds is not None else None,
            blink_rate=_as_float(blink_rate, 'blinkRate') if blink_rate is not None else None,
        )


class SessionStatus(str, Enum):
    NOT_STARTED = 'not-started'
    IN_PROGRESS = 'in-progress'
    COMPLETED = 'completed'
    FAILED = 'failed'


@dataclass
class CalibrationStep:
    id: str
    name: str
    description: str
    duration_ms: int
    instructions: List[str]
    completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'duration': self.duration_ms,
            'instructions': list(self.instructions),
            'completed': self.completed,
        }


@dataclass
class CalibrationSession:
    """The single live session owned by a CalibrationManager."""
    id: str
    start_time: int
    steps: List[CalibrationStep]
    current_step_index: int = 0
    overall_quality: float = 0.0
    status: SessionStatus = SessionStatus.NOT_STARTED
    end_time: Optional[int] = None
    profile: Optional[CalibrationProfile] = None

    def step(self, step_id: str) -> CalibrationStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    @property
    def all_steps_completed(self) -> bool:
        return all(step.completed for step in self.steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'startTime': self.start_time,
            'endTime': self.end_time,
            'steps': [step.to_dict() for step in self.steps],
            'currentStepIndex': self.current_step_index,
            'overallQuality': self.overall_quality,
            'profile': self.profile.to_dict() if self.profile else None,
            'status': self.status.value,
        }


def _batch_items(payload: Any) -> List[Any]:
    # The UI historically wrapped batches as {"data": [...]}
    if isinstance(payload, dict) and 'data' in payload:
        payload = payload['data']
    if not isinstance(payload, (list, tuple)):
        raise MalformedInputError(f"Batch must be a list, got {type(payload).__name__}")
    return list(payload)


def _parse_items(items: Iterable[Any], sample_type) -> List[Any]:
    parsed = []
    for index, item in enumerate(items):
        if isinstance(item, sample_type):
            parsed.append(item)
            continue
        try:
            parsed.append(sample_type.from_dict(item))
        except MalformedInputError as e:
            raise MalformedInputError(f"{sample_type.__name__} #{index}: {e}") from e
    return parsed


@dataclass
class GazeBatch:
    samples: List[GazeSample] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> 'GazeBatch':
        if isinstance(payload, cls):
            return payload
        return cls(_parse_items(_batch_items(payload), GazeSample))


@dataclass
class HeadPoseBatch:
    samples: List[HeadPoseSample] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> 'HeadPoseBatch':
        if isinstance(payload, cls):
            return payload
        return cls(_parse_items(_batch_items(payload), HeadPoseSample))


@dataclass
class EnvironmentBatch:
    """Environment samples, optionally with eye landmarks captured alongside."""
    samples: List[EnvironmentSample] = field(default_factory=list)
    landmarks: List[LandmarkSample] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> 'EnvironmentBatch':
        if isinstance(payload, cls):
            return payload
        landmarks: Sequence[Any] = ()
        items = payload
        if isinstance(payload, dict) and 'landmarks' in payload:
            landmarks = payload['landmarks']
            if not isinstance(landmarks, (list, tuple)):
                raise MalformedInputError("Field 'landmarks' must be a list")
            # Landmark-only batches carry no environment samples
            items = payload.get('data', [])
        return cls(
            samples=_parse_items(_batch_items(items), EnvironmentSample),
            landmarks=_parse_items(landmarks, LandmarkSample),
        )


StepPayload = Union[GazeBatch, HeadPoseBatch, EnvironmentBatch]
