"""
Tunable calibration constants, loaded from the ``calibration`` section of
``config/config.yaml``.
"""

from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from proctor_calibration.utils.config_loader import get_section


@dataclass
class CalibrationSettings:
    quality_threshold: float = 0.8
    min_gaze_points: int = 4
    min_point_confidence: float = 0.5
    mm_per_pixel: float = 0.2
    blink_ear_threshold: float = 0.25
    lighting_drift_threshold: float = 30.0
    shadow_drift_threshold: float = 0.2

    def __post_init__(self):
        if not 0.0 <= self.quality_threshold <= 1.0:
            raise ValueError(f"quality_threshold must be in [0, 1], got {self.quality_threshold}")
        # A projective transform has 8 degrees of freedom
        if self.min_gaze_points < 4:
            raise ValueError(f"min_gaze_points must be at least 4, got {self.min_gaze_points}")
        if self.mm_per_pixel <= 0:
            raise ValueError(f"mm_per_pixel must be positive, got {self.mm_per_pixel}")

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> 'CalibrationSettings':
        """
        Build settings from a loaded config dict.

        Unknown keys in the section are ignored; missing keys keep defaults.
        """
        section = get_section(config, 'calibration')
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in section.items():
            if key not in known:
                continue
            values[key] = int(value) if key == 'min_gaze_points' else float(value)
        return cls(**values)
