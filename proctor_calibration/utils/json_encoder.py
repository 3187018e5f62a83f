"""
JSON helpers for values that carry NumPy scalars or arrays.
"""

import json
from typing import Any

import numpy as np


class NumpyJSONEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles NumPy types."""
    def default(self, obj):
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        return super().default(obj)


def dumps(obj: Any, **kwargs) -> str:
    return json.dumps(obj, cls=NumpyJSONEncoder, **kwargs)
