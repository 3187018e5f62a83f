"""
The fixed three-step calibration sequence.

``STEP_DEFINITIONS`` is the only place the steps are described; sessions
build their step list from it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Tuple, Type

from proctor_calibration.calibration.types import (
    CalibrationStep,
    EnvironmentBatch,
    GazeBatch,
    HeadPoseBatch,
    MalformedInputError,
    StepPayload,
)


class CalibrationStepId(str, Enum):
    GAZE = 'gaze-calibration'
    HEAD_POSE = 'head-pose-calibration'
    ENVIRONMENT = 'environment-baseline'


@dataclass(frozen=True)
class StepDefinition:
    id: CalibrationStepId
    name: str
    description: str
    duration_ms: int
    instructions: Tuple[str, ...]
    payload_type: Type


STEP_DEFINITIONS: Tuple[StepDefinition, ...] = (
    StepDefinition(
        id=CalibrationStepId.GAZE,
        name='Gaze Calibration',
        description='Look at each dot as it appears on screen',
        duration_ms=30000,
        instructions=(
            'Keep your head still and centered',
            'Look directly at each dot when it appears',
            'Wait for the dot to disappear before moving your eyes',
        ),
        payload_type=GazeBatch,
    ),
    StepDefinition(
        id=CalibrationStepId.HEAD_POSE,
        name='Head Movement Calibration',
        description='Follow the guided head movements',
        duration_ms=15000,
        instructions=(
            'Move your head slowly in each direction',
            'Keep your eyes looking at the center',
            'Return to center position between movements',
        ),
        payload_type=HeadPoseBatch,
    ),
    StepDefinition(
        id=CalibrationStepId.ENVIRONMENT,
        name='Environment Setup',
        description='Establishing lighting and environment baseline',
        duration_ms=10000,
        instructions=(
            'Sit still and look at the camera',
            'Ensure consistent lighting',
            'Remove any distracting objects from view',
        ),
        payload_type=EnvironmentBatch,
    ),
)


def build_steps() -> List[CalibrationStep]:
    """Fresh, uncompleted steps for a new session."""
    return [
        CalibrationStep(
            id=definition.id.value,
            name=definition.name,
            description=definition.description,
            duration_ms=definition.duration_ms,
            instructions=list(definition.instructions),
        )
        for definition in STEP_DEFINITIONS
    ]


def get_definition(step_id: Any) -> StepDefinition:
    try:
        step_id = CalibrationStepId(step_id)
    except ValueError:
        raise MalformedInputError(f"Unknown calibration step: {step_id!r}") from None
    for definition in STEP_DEFINITIONS:
        if definition.id == step_id:
            return definition
    raise MalformedInputError(f"Unknown calibration step: {step_id!r}")


def parse_step_payload(step_id: Any, data: Any) -> StepPayload:
    """Parse a raw batch into the payload type of the given step."""
    return get_definition(step_id).payload_type.from_payload(data)
