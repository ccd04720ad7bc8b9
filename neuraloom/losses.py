"""
losses.py
~~~~~~~~~

Loss functions over equal-length prediction/target vectors.

Mismatched lengths are treated as a transient editing state rather than an
error: ``compute`` returns 0.0 and ``gradient`` returns an empty array.
"""

from enum import Enum
from typing import Sequence

import numpy as np

# Probabilities are clamped to [EPSILON, 1 - EPSILON] before taking logs
EPSILON = 1e-7


class LossFunction(str, Enum):
    MSE = 'mse'
    CROSS_ENTROPY = 'cross_entropy'

    def compute(self, predicted: Sequence[float], target: Sequence[float]) -> float:
        """Scalar loss, averaged over the vector."""
        if len(predicted) != len(target) or len(predicted) == 0:
            return 0.0
        p = np.asarray(predicted, dtype=np.float64)
        t = np.asarray(target, dtype=np.float64)

        if self is LossFunction.MSE:
            return float(np.mean((p - t) ** 2))

        p = np.clip(p, EPSILON, 1.0 - EPSILON)
        return float(-np.mean(t * np.log(p) + (1.0 - t) * np.log(1.0 - p)))

    def gradient(self, predicted: Sequence[float], target: Sequence[float]) -> np.ndarray:
        """dL/dpredicted for each element."""
        if len(predicted) != len(target):
            return np.zeros(0, dtype=np.float64)
        p = np.asarray(predicted, dtype=np.float64)
        t = np.asarray(target, dtype=np.float64)

        if self is LossFunction.MSE:
            return (2.0 / max(len(p), 1)) * (p - t)

        p = np.clip(p, EPSILON, 1.0 - EPSILON)
        return (p - t) / (p * (1.0 - p))
