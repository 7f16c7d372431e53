"""Feature extraction for the anomaly scorer."""

import math
from collections.abc import Iterable
from numbers import Real

import numpy as np

from procscope.errors import InvalidFeatureError
from procscope.models import ProcessSample

# Changing this order invalidates any trained forest.
FEATURE_NAMES: tuple[str, ...] = ("cpu_percent", "memory_mb", "priority")
N_FEATURES = len(FEATURE_NAMES)


def _coerce(name: str, value: object) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, Real):
        raise InvalidFeatureError(f"{name} is not numeric: {value!r}")
    number = float(value)
    if math.isnan(number):
        return 0.0
    if math.isinf(number):
        raise InvalidFeatureError(f"{name} is infinite")
    return number


def extract_features(sample: ProcessSample) -> np.ndarray:
    """
    Turn a process sample into its feature vector.

    Missing and NaN fields become 0.0. Non-numeric or infinite fields raise
    InvalidFeatureError.
    """
    return np.array(
        [_coerce(name, getattr(sample, name, None)) for name in FEATURE_NAMES],
        dtype=float,
    )


def feature_matrix(samples: Iterable[ProcessSample]) -> np.ndarray:
    """Stack the feature vectors of samples into an (n, N_FEATURES) matrix."""
    rows = [extract_features(sample) for sample in samples]
    if not rows:
        return np.empty((0, N_FEATURES), dtype=float)
    return np.vstack(rows)
