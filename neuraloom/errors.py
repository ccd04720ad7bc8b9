"""
errors.py
~~~~~~~~~

Structural failures raised while validating or compiling a network.

These describe a network the engine cannot execute, so they are always
raised to the caller and never handled inside the numeric core.
"""

from typing import Optional


class GraphError(Exception):
    """Base class for every structural network failure."""

    message = "Invalid computation graph."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)


class CycleDetected(GraphError):
    message = (
        "Cycle detected in the computation graph. "
        "Feedforward networks cannot have cycles."
    )


class DisconnectedGraph(GraphError):
    message = (
        "Disconnected graph: not all neurons are reachable from input "
        "or bias neurons, or an output neuron is not reachable."
    )


class InputOutputNotSet(GraphError):
    message = "Input or output neurons are not set for the graph."


class DimensionMismatch(GraphError):
    message = (
        "Dimension mismatch: the number of provided values does not "
        "match the number of input or output neurons."
    )
