"""
activations.py
~~~~~~~~~~~~~~

Activation functions available to a neuron.
"""

import math
from enum import Enum


class Activation(str, Enum):
    """
    Closed set of neuron activations.

    ``backward`` is expressed in terms of the already computed forward
    output, not the pre-activation sum.
    """

    LINEAR = 'linear'
    RELU = 'relu'
    SIGMOID = 'sigmoid'

    def forward(self, x: float) -> float:
        if self is Activation.LINEAR:
            return x
        if self is Activation.RELU:
            return max(0.0, x)
        # Split on sign so math.exp never overflows
        if x >= 0:
            return 1.0 / (1.0 + math.exp(-x))
        z = math.exp(x)
        return z / (1.0 + z)

    def backward(self, output: float) -> float:
        if self is Activation.LINEAR:
            return 1.0
        if self is Activation.RELU:
            return 1.0 if output > 0 else 0.0
        return output * (1.0 - output)
