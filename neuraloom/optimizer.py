"""
optimizer.py
~~~~~~~~~~~~

Plain stochastic gradient descent with optional gradient clipping.

Zeroing gradients between updates is left to the training loop.
"""

import math
from typing import TYPE_CHECKING, Sequence

import numpy as np

if TYPE_CHECKING:
    from neuraloom.graph import Weight


class SGDOptimizer:
    """
    Applies ``value += -(learning_rate / batch_size) * gradient``.

    When ``max_gradient_norm`` is finite, each gradient is first clipped
    into [-max_gradient_norm, +max_gradient_norm].
    """

    def __init__(self, learning_rate: float, max_gradient_norm: float = math.inf):
        if learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {learning_rate}")
        if max_gradient_norm <= 0:
            raise ValueError(f"max_gradient_norm must be positive, got {max_gradient_norm}")
        self.learning_rate = learning_rate
        self.max_gradient_norm = max_gradient_norm

    def apply(self, values: np.ndarray, gradients: np.ndarray, batch_size: int = 1) -> None:
        """Update ``values`` in place from ``gradients``."""
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        if len(values) == 0:
            return

        if math.isfinite(self.max_gradient_norm):
            gradients = np.clip(gradients, -self.max_gradient_norm, self.max_gradient_norm)

        values += -(self.learning_rate / batch_size) * gradients

    def step(self, weights: Sequence['Weight'], batch_size: int = 1) -> None:
        """Apply one update to a list of graph weights."""
        if not weights:
            return
        values = np.array([w.value for w in weights], dtype=np.float64)
        gradients = np.array([w.gradient for w in weights], dtype=np.float64)
        self.apply(values, gradients, batch_size)
        for weight, value in zip(weights, values):
            weight.value = float(value)

    def __repr__(self):
        return (f"SGDOptimizer(learning_rate={self.learning_rate}, "
                f"max_gradient_norm={self.max_gradient_norm})")
