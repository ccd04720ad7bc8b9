"""
training.py
~~~~~~~~~~~

Training orchestration for networks described by node and connection lists.

The TrainingService owns at most one compiled network at a time and runs it
either continuously on a background gevent greenlet or one step at a time
under the caller's control. The two modes are mutually exclusive: the
compiled network is handed to the worker when a run starts and handed back
when it ends, never copied.

Progress callbacks are invoked from the worker greenlet. Greenlets share the
thread and hub of the code that started them, so callbacks arrive on the
caller's own execution context.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import gevent
import numpy as np

from neuraloom import engine
from neuraloom.activations import Activation
from neuraloom.compiler import ExecutionModel, compile_graph
from neuraloom.datasets import DatasetPreset
from neuraloom.errors import DimensionMismatch
from neuraloom.graph import Graph
from neuraloom.losses import LossFunction
from neuraloom.optimizer import SGDOptimizer

logger = logging.getLogger(__name__)

Sample = Tuple[Sequence[float], Sequence[float]]

# Upper bound on progress notifications sent during one continuous run
MAX_PROGRESS_UPDATES = 100


# ============================================================================
# DESCRIPTIONS
# ============================================================================

class NodeRole(str, Enum):
    INPUT = 'input'
    OUTPUT = 'output'
    HIDDEN = 'hidden'
    BIAS = 'bias'


class RunState(str, Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    CANCELLING = 'cancelling'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    FAILED = 'failed'


class StepPhase(str, Enum):
    FORWARD = 'forward'
    BACKWARD = 'backward'


class StepGranularity(str, Enum):
    SAMPLE = 'sample'
    EPOCH = 'epoch'


@dataclass(frozen=True)
class NodeSpec:
    """A neuron as described by the caller."""

    id: str
    role: NodeRole = NodeRole.HIDDEN
    activation: Activation = Activation.LINEAR

    def __post_init__(self):
        object.__setattr__(self, 'role', NodeRole(self.role))
        object.__setattr__(self, 'activation', Activation(self.activation))


@dataclass(frozen=True)
class ConnectionSpec:
    """A connection as described by the caller; ``weight`` None means random."""

    id: str
    source_id: str
    target_id: str
    weight: Optional[float] = None


@dataclass
class TrainingConfig:
    learning_rate: float = 0.1
    loss: LossFunction = LossFunction.MSE
    epochs: int = 500
    batch_size: int = 1
    max_gradient_norm: float = math.inf
    shuffle: bool = True
    seed: Optional[int] = None

    def __post_init__(self):
        self.loss = LossFunction(self.loss)
        if not isinstance(self.epochs, int) or self.epochs < 1:
            raise ValueError('epochs must be a positive integer')
        if not isinstance(self.batch_size, int) or self.batch_size < 1:
            raise ValueError('batch_size must be a positive integer')
        if not isinstance(self.learning_rate, (int, float)) or self.learning_rate <= 0:
            raise ValueError('learning_rate must be a positive number')
        if self.max_gradient_norm <= 0:
            raise ValueError('max_gradient_norm must be a positive number')

    def optimizer(self) -> SGDOptimizer:
        return SGDOptimizer(self.learning_rate, self.max_gradient_norm)


@dataclass
class TrainingUpdate:
    """
    One progress record.

    ``weights`` maps connection ids and ``nodes`` maps node ids to
    ``(value, gradient)`` pairs. ``sample_index`` and ``phase`` are only set
    when stepping sample by sample.
    """

    epoch: int
    loss: float
    weights: Dict[str, Tuple[float, float]]
    nodes: Dict[str, Tuple[float, float]]
    sample_index: Optional[int] = None
    phase: Optional[StepPhase] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'epoch': self.epoch,
            'loss': self.loss,
            'weights': {k: {'value': v, 'gradient': g} for k, (v, g) in self.weights.items()},
            'nodes': {k: {'value': v, 'gradient': g} for k, (v, g) in self.nodes.items()},
            'sample_index': self.sample_index,
            'phase': self.phase.value if self.phase is not None else None
        }


@dataclass
class CompiledNetwork:
    """An ExecutionModel plus the id maps needed to report on it."""

    model: ExecutionModel
    connection_index: Dict[str, int]
    node_index: Dict[str, int]
    training_data: List[Sample] = field(default_factory=list)

    def snapshot(
        self,
        epoch: int,
        loss: float,
        sample_index: Optional[int] = None,
        phase: Optional[StepPhase] = None
    ) -> TrainingUpdate:
        model = self.model
        return TrainingUpdate(
            epoch=epoch,
            loss=float(loss),
            weights={
                cid: (float(model.weight_values[i]), float(model.weight_gradients[i]))
                for cid, i in self.connection_index.items()
            },
            nodes={
                nid: (float(model.node_values[i]), float(model.node_gradients[i]))
                for nid, i in self.node_index.items()
            },
            sample_index=sample_index,
            phase=phase
        )

    def predict(self, inputs: Sequence[float]) -> List[float]:
        engine.predict(self.model, inputs)
        return engine.outputs(self.model)


# ============================================================================
# BUILDING
# ============================================================================

def _as_node(node: Union[NodeSpec, Dict[str, Any]]) -> NodeSpec:
    if isinstance(node, NodeSpec):
        return node
    return NodeSpec(
        id=str(node['id']),
        role=node.get('role', NodeRole.HIDDEN),
        activation=node.get('activation', Activation.LINEAR)
    )


def _as_connection(conn: Union[ConnectionSpec, Dict[str, Any]]) -> ConnectionSpec:
    if isinstance(conn, ConnectionSpec):
        return conn
    return ConnectionSpec(
        id=str(conn['id']),
        source_id=str(conn['source_id']),
        target_id=str(conn['target_id']),
        weight=conn.get('weight')
    )


def build_network(
    nodes: Sequence[Union[NodeSpec, Dict[str, Any]]],
    connections: Sequence[Union[ConnectionSpec, Dict[str, Any]]],
    data: Optional[Sequence[Sample]] = None,
    seed: Optional[int] = None
) -> CompiledNetwork:
    """
    Build, validate and compile a network from caller descriptions.

    Connections naming an unknown node are skipped. Without ``data`` the XOR
    preset is used.

    Raises:
        GraphError: If the described network cannot be executed, including
            DimensionMismatch when a sample does not fit the network
    """
    nodes = [_as_node(n) for n in nodes]
    connections = [_as_connection(c) for c in connections]

    graph = Graph(seed=seed)
    neurons = {node.id: graph.add_neuron(node.activation) for node in nodes}
    graph.set_inputs([neurons[n.id] for n in nodes if n.role is NodeRole.INPUT])
    graph.set_outputs([neurons[n.id] for n in nodes if n.role is NodeRole.OUTPUT])
    graph.set_biases([neurons[n.id] for n in nodes if n.role is NodeRole.BIAS])

    weight_handles = {}
    for conn in connections:
        source = neurons.get(conn.source_id)
        target = neurons.get(conn.target_id)
        if source is None or target is None:
            logger.debug(f"Skipping connection {conn.id}: unknown endpoint")
            continue
        weight_handles[conn.id] = graph.connect(source, target, conn.weight).handle

    model = compile_graph(graph)

    if data is None:
        data = DatasetPreset.XOR.training_data()
    data = [(list(inputs), list(targets)) for inputs, targets in data]

    n_inputs, n_outputs = len(model.input_indices), len(model.output_indices)
    for inputs, targets in data:
        if len(inputs) != n_inputs or len(targets) != n_outputs:
            raise DimensionMismatch(
                f"Sample shape ({len(inputs)}, {len(targets)}) does not match "
                f"network shape ({n_inputs}, {n_outputs})."
            )

    weight_position = {handle: i for i, handle in enumerate(model.weight_ids)}
    node_position = {handle: i for i, handle in enumerate(model.node_ids)}

    compiled = CompiledNetwork(
        model=model,
        connection_index={cid: weight_position[h] for cid, h in weight_handles.items()},
        node_index={nid: node_position[n.handle] for nid, n in neurons.items()},
        training_data=data
    )
    logger.info(
        f"Built network: {model.num_nodes} neurons, {model.num_weights} weights, "
        f"{len(data)} samples"
    )
    return compiled


# ============================================================================
# SERVICE
# ============================================================================

UpdateCallback = Callable[[TrainingUpdate], None]
CompleteCallback = Callable[[RunState], None]


class TrainingService:
    """
    Runs and steps training for one network.

    State machine for continuous runs:
    IDLE -> RUNNING -> CANCELLING -> CANCELLED, or RUNNING -> COMPLETED
    (or FAILED if the run raised).
    """

    def __init__(self, seed: Optional[int] = None):
        self._state = RunState.IDLE
        self._worker: Optional[gevent.Greenlet] = None
        self._run_id = 0
        self.error: Optional[BaseException] = None

        self._stepping: Optional[CompiledNetwork] = None
        self._sample_queue: List[Tuple[int, Sample]] = []
        self._sample_index = 0
        self._step_epoch = 0
        self._phase = StepPhase.FORWARD
        self._rng = np.random.default_rng(seed)

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state in (RunState.RUNNING, RunState.CANCELLING)

    @property
    def stepping_network(self) -> Optional[CompiledNetwork]:
        return self._stepping

    @property
    def step_epoch(self) -> int:
        return self._step_epoch

    @property
    def phase(self) -> StepPhase:
        return self._phase

    # ------------------------------------------------------------------
    # Continuous runs
    # ------------------------------------------------------------------

    def start_training(
        self,
        compiled: CompiledNetwork,
        config: TrainingConfig,
        on_update: Optional[UpdateCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        start_epoch: int = 0
    ) -> bool:
        """
        Start a continuous run in the background.

        The service gives up its stepping network; ``compiled`` belongs to the
        worker until the run ends and is then kept for stepping.

        ``config.epochs`` more epochs are run. Epochs are numbered from
        ``start_epoch + 1``, so a run that follows earlier training passes
        ``step_epoch`` to keep counting where it left off.

        Returns:
            False if a run is already active (nothing is started)
        """
        if self.is_running:
            logger.warning("Training already running, ignoring start request")
            return False

        self._stepping = None
        self._reset_steps()
        self._run_id += 1
        self._state = RunState.RUNNING
        self.error = None

        logger.info(
            f"Starting training run {self._run_id}: epochs={config.epochs}, "
            f"lr={config.learning_rate}, loss={config.loss.value}, "
            f"batch_size={config.batch_size}"
        )
        self._worker = gevent.spawn(
            self._run, self._run_id, compiled, config, on_update, on_complete, start_epoch
        )
        return True

    def stop_training(self) -> bool:
        """Ask the active run to stop before its next epoch."""
        if self._state is not RunState.RUNNING:
            return False
        self._state = RunState.CANCELLING
        logger.info(f"Cancelling training run {self._run_id}")
        return True

    def wait(self, timeout: Optional[float] = None) -> RunState:
        """Block (cooperatively) until the active run, if any, finishes."""
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
        return self._state

    def _run(
        self,
        run_id: int,
        compiled: CompiledNetwork,
        config: TrainingConfig,
        on_update: Optional[UpdateCallback],
        on_complete: Optional[CompleteCallback],
        start_epoch: int
    ) -> None:
        epochs = config.epochs
        interval = max(1, epochs // MAX_PROGRESS_UPDATES)
        rng = np.random.default_rng(config.seed) if config.shuffle else None
        last = {'epoch': start_epoch, 'loss': None, 'reported': True}

        def on_epoch(offset: int, loss: float) -> None:
            epoch = start_epoch + offset
            reported = offset % interval == 0 or offset == epochs
            if reported and on_update is not None:
                on_update(compiled.snapshot(epoch, loss))
            last.update(epoch=epoch, loss=loss, reported=reported)
            # Let other greenlets (requests, socket traffic) run between epochs
            gevent.sleep(0)

        try:
            engine.train(
                compiled.model,
                compiled.training_data,
                epochs,
                config.loss,
                config.optimizer(),
                batch_size=config.batch_size,
                rng=rng,
                on_epoch=on_epoch,
                should_stop=lambda: self._state is RunState.CANCELLING
            )

            cancelled = self._state is RunState.CANCELLING
            if cancelled and not last['reported'] and on_update is not None:
                on_update(compiled.snapshot(last['epoch'], last['loss']))
            final = RunState.CANCELLED if cancelled else RunState.COMPLETED
        except Exception as e:
            logger.exception(f"Training run {run_id} failed: {e}")
            self.error = e
            final = RunState.FAILED

        self._worker = None
        if run_id == self._run_id:
            self._state = final
            self._stepping = compiled
            self._step_epoch = last['epoch']
        else:
            # reset() was called while this run was winding down
            self._state = RunState.IDLE
        logger.info(f"Training run {run_id} finished: {final.value} at epoch {last['epoch']}")

        if on_complete is not None:
            on_complete(final)

    # ------------------------------------------------------------------
    # Manual stepping
    # ------------------------------------------------------------------

    def step(
        self,
        granularity: Union[StepGranularity, str],
        nodes: Sequence[Union[NodeSpec, Dict[str, Any]]],
        connections: Sequence[Union[ConnectionSpec, Dict[str, Any]]],
        config: TrainingConfig,
        on_update: Optional[UpdateCallback] = None,
        data: Optional[Sequence[Sample]] = None
    ) -> Optional[TrainingUpdate]:
        """
        Advance training by one epoch or one sample phase.

        The network is compiled from ``nodes``/``connections`` on first use
        and reused until ``invalidate`` or ``reset`` is called.

        Returns:
            The progress record, or None while a continuous run is active
        """
        if self.is_running:
            logger.warning("Training is running, ignoring step request")
            return None

        if self._stepping is None:
            self._stepping = build_network(nodes, connections, data)
            self._reset_steps()

        if StepGranularity(granularity) is StepGranularity.EPOCH:
            update = self._step_epoch_once(self._stepping, config)
        else:
            update = self._step_sample(self._stepping, config)

        if on_update is not None:
            on_update(update)
        return update

    def _step_epoch_once(self, net: CompiledNetwork, config: TrainingConfig) -> TrainingUpdate:
        loss = engine.train_one_epoch(
            net.model, net.training_data, config.loss, config.optimizer(),
            config.batch_size, self._rng if config.shuffle else None
        )
        self._step_epoch += 1
        return net.snapshot(self._step_epoch, loss)

    def _step_sample(self, net: CompiledNetwork, config: TrainingConfig) -> TrainingUpdate:
        if not net.training_data:
            raise ValueError("Cannot step through an empty dataset")

        if self._phase is StepPhase.FORWARD:
            if not self._sample_queue:
                self._fill_queue(net, config)
            elif self._sample_index >= len(self._sample_queue):
                self._fill_queue(net, config)
                self._step_epoch += 1

        index, (inputs, targets) = self._sample_queue[self._sample_index]

        if self._phase is StepPhase.FORWARD:
            loss = engine.forward_pass(net.model, inputs, targets, config.loss)
            self._phase = StepPhase.BACKWARD
            return net.snapshot(self._step_epoch, loss, index, StepPhase.FORWARD)

        loss = engine.train_sample(
            net.model, inputs, targets, config.loss, config.optimizer(), config.batch_size
        )
        self._phase = StepPhase.FORWARD
        self._sample_index += 1
        return net.snapshot(self._step_epoch, loss, index, StepPhase.BACKWARD)

    def _fill_queue(self, net: CompiledNetwork, config: TrainingConfig) -> None:
        queue = list(enumerate(net.training_data))
        if config.shuffle:
            queue = [queue[i] for i in self._rng.permutation(len(queue))]
        self._sample_queue = queue
        self._sample_index = 0

    def _reset_steps(self) -> None:
        self._sample_queue = []
        self._sample_index = 0
        self._phase = StepPhase.FORWARD

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def load(self, compiled: CompiledNetwork) -> bool:
        """Take ownership of ``compiled`` as the stepping network."""
        if self.is_running:
            logger.warning("Training is running, ignoring network load")
            return False
        self._stepping = compiled
        self._reset_steps()
        self._step_epoch = 0
        return True

    def invalidate(self) -> None:
        """Drop the stepping network after a topology change."""
        self._stepping = None
        self._reset_steps()

    def reset(self) -> None:
        """Cancel any run and forget all training progress."""
        self.stop_training()
        # A run that is still winding down must not hand its network back
        self._run_id += 1
        if not self.is_running:
            self._state = RunState.IDLE
        self._stepping = None
        self._reset_steps()
        self._step_epoch = 0
