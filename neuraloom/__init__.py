"""
neuraloom package
~~~~~~~~~~~~~~~~~

Computation-graph engine for small feedforward neural networks.
Contains the editable graph model, the compiler to a flat execution
model, forward/backward propagation, losses, the SGD optimizer, the
training orchestrator and a REST/WebSocket service around it.
"""

from neuraloom.activations import Activation
from neuraloom.compiler import ExecutionModel, compile_graph, sync_back
from neuraloom.datasets import DatasetPreset
from neuraloom.errors import (
    CycleDetected,
    DimensionMismatch,
    DisconnectedGraph,
    GraphError,
    InputOutputNotSet
)
from neuraloom.graph import Graph, Handle, Neuron, Weight
from neuraloom.losses import LossFunction
from neuraloom.optimizer import SGDOptimizer
from neuraloom.training import (
    CompiledNetwork,
    ConnectionSpec,
    NodeRole,
    NodeSpec,
    RunState,
    StepGranularity,
    StepPhase,
    TrainingConfig,
    TrainingService,
    TrainingUpdate,
    build_network
)

__version__ = "1.0.0"

__all__ = [
    'Activation',
    'CompiledNetwork',
    'ConnectionSpec',
    'CycleDetected',
    'DatasetPreset',
    'DimensionMismatch',
    'DisconnectedGraph',
    'ExecutionModel',
    'Graph',
    'GraphError',
    'Handle',
    'InputOutputNotSet',
    'LossFunction',
    'Neuron',
    'NodeRole',
    'NodeSpec',
    'RunState',
    'SGDOptimizer',
    'StepGranularity',
    'StepPhase',
    'TrainingConfig',
    'TrainingService',
    'TrainingUpdate',
    'Weight',
    'build_network',
    'compile_graph',
    'sync_back',
]
