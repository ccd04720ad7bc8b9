"""
graph.py
~~~~~~~~

Editable computation graph for feedforward networks.

Neurons and weights are stored in generational arenas and refer to each
other through ``Handle`` values rather than object references. Removing a
neuron or weight bumps the generation of its slot, so handles held by the
caller after a deletion resolve to nothing instead of to whatever entry
later reuses the slot.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Callable, Generic, Iterator, List, NamedTuple, Optional, Sequence,
    Tuple, TypeVar, Union
)

import numpy as np

from neuraloom import engine
from neuraloom.activations import Activation
from neuraloom.compiler import compile_graph, sync_back
from neuraloom.errors import (
    CycleDetected,
    DimensionMismatch,
    DisconnectedGraph,
    InputOutputNotSet
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


class Handle(NamedTuple):
    """Index of an arena slot plus the generation it was issued for."""

    index: int
    generation: int


class Arena(Generic[T]):
    """Slot storage addressed by generational handles."""

    def __init__(self) -> None:
        self._slots: List[Optional[T]] = []
        self._generations: List[int] = []
        self._free: List[int] = []
        self._count = 0

    def insert(self, build: Callable[[Handle], T]) -> T:
        """Allocate a slot and store ``build(handle)`` in it."""
        if self._free:
            index = self._free.pop()
        else:
            index = len(self._slots)
            self._slots.append(None)
            self._generations.append(0)

        handle = Handle(index, self._generations[index])
        item = build(handle)
        self._slots[index] = item
        self._count += 1
        return item

    def get(self, handle: Handle) -> Optional[T]:
        index, generation = handle
        if 0 <= index < len(self._slots) and self._generations[index] == generation:
            return self._slots[index]
        return None

    def remove(self, handle: Handle) -> Optional[T]:
        item = self.get(handle)
        if item is None:
            return None

        self._slots[handle.index] = None
        self._generations[handle.index] += 1
        self._free.append(handle.index)
        self._count -= 1
        return item

    def __contains__(self, handle: Handle) -> bool:
        return self.get(handle) is not None

    def __len__(self) -> int:
        return self._count

    def __iter__(self) -> Iterator[T]:
        return (item for item in self._slots if item is not None)


@dataclass(eq=False)
class Neuron:
    """A computation node. Adjacency is kept as lists of weight handles."""

    handle: Handle
    activation: Activation
    value: float = 0.0
    gradient: float = 0.0
    incoming: List[Handle] = field(default_factory=list)
    outgoing: List[Handle] = field(default_factory=list)

    @property
    def is_source(self) -> bool:
        """True when nothing feeds this neuron (its value is supplied externally)."""
        return not self.incoming

    def reset_gradient(self) -> None:
        self.gradient = 0.0


@dataclass(eq=False)
class Weight:
    """A directed weighted connection from ``source`` to ``target``."""

    handle: Handle
    source: Handle
    target: Handle
    value: float
    gradient: float = 0.0

    def reset_gradient(self) -> None:
        self.gradient = 0.0


NeuronRef = Union[Neuron, Handle]
WeightRef = Union[Weight, Handle]


class Graph:
    """
    Directed neuron/weight graph.

    The graph owns every neuron and weight. Input, output and bias roles are
    bookkeeping only and have no structural effect.

    Example:
        >>> graph = Graph()
        >>> a = graph.add_neuron(Activation.LINEAR)
        >>> b = graph.add_neuron(Activation.LINEAR)
        >>> weight = graph.connect(a, b, 2.0)
        >>> graph.set_inputs([a])
        >>> graph.set_outputs([b])
        >>> graph.forward([3.0])
        [6.0]
    """

    def __init__(self, seed: Optional[int] = None):
        """
        Create an empty graph.

        Args:
            seed: Seed for the generator used to draw default weights
        """
        self._neurons: Arena[Neuron] = Arena()
        self._weights: Arena[Weight] = Arena()
        self._inputs: List[Handle] = []
        self._outputs: List[Handle] = []
        self._biases: List[Handle] = []
        self._rng = np.random.default_rng(seed)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def neurons(self) -> List[Neuron]:
        return list(self._neurons)

    @property
    def weights(self) -> List[Weight]:
        return list(self._weights)

    @property
    def input_neurons(self) -> List[Neuron]:
        return [self._neurons.get(h) for h in self._inputs]

    @property
    def output_neurons(self) -> List[Neuron]:
        return [self._neurons.get(h) for h in self._outputs]

    @property
    def bias_neurons(self) -> List[Neuron]:
        return [self._neurons.get(h) for h in self._biases]

    @property
    def output_values(self) -> List[float]:
        """Current values of the output neurons, in output order."""
        return [neuron.value for neuron in self.output_neurons]

    def get_neuron(self, handle: Handle) -> Optional[Neuron]:
        return self._neurons.get(handle)

    def get_weight(self, handle: Handle) -> Optional[Weight]:
        return self._weights.get(handle)

    def neuron(self, ref: NeuronRef) -> Neuron:
        """Resolve a neuron or handle, raising KeyError if it no longer exists."""
        handle = ref.handle if isinstance(ref, Neuron) else ref
        neuron = self._neurons.get(handle)
        if neuron is None:
            raise KeyError(f"Unknown neuron {handle}")
        return neuron

    def weight(self, ref: WeightRef) -> Weight:
        handle = ref.handle if isinstance(ref, Weight) else ref
        weight = self._weights.get(handle)
        if weight is None:
            raise KeyError(f"Unknown weight {handle}")
        return weight

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def add_neuron(self, activation: Union[Activation, str] = Activation.LINEAR) -> Neuron:
        activation = Activation(activation)
        return self._neurons.insert(lambda handle: Neuron(handle, activation))

    def connect(
        self,
        source: NeuronRef,
        target: NeuronRef,
        weight: Optional[float] = None
    ) -> Weight:
        """
        Connect two neurons.

        Args:
            source: Neuron the connection reads from
            target: Neuron the connection feeds
            weight: Initial value; drawn uniformly from [-1, 1] when omitted

        Returns:
            The new Weight
        """
        src = self.neuron(source)
        dst = self.neuron(target)
        value = float(self._rng.uniform(-1.0, 1.0)) if weight is None else float(weight)

        edge = self._weights.insert(
            lambda handle: Weight(handle, src.handle, dst.handle, value)
        )
        src.outgoing.append(edge.handle)
        dst.incoming.append(edge.handle)
        return edge

    def disconnect(self, ref: WeightRef) -> None:
        edge = self.weight(ref)
        src = self._neurons.get(edge.source)
        dst = self._neurons.get(edge.target)
        if src is not None:
            src.outgoing.remove(edge.handle)
        if dst is not None:
            dst.incoming.remove(edge.handle)
        self._weights.remove(edge.handle)

    def remove_neuron(self, ref: NeuronRef) -> None:
        """Remove a neuron, every weight touching it, and any role it held."""
        neuron = self.neuron(ref)
        for handle in list(neuron.incoming) + list(neuron.outgoing):
            if handle in self._weights:
                self.disconnect(handle)

        self._neurons.remove(neuron.handle)
        self._inputs = [h for h in self._inputs if h != neuron.handle]
        self._outputs = [h for h in self._outputs if h != neuron.handle]
        self._biases = [h for h in self._biases if h != neuron.handle]
        logger.debug(f"Removed neuron {neuron.handle}")

    def set_inputs(self, neurons: Sequence[NeuronRef]) -> None:
        self._inputs = [self.neuron(n).handle for n in neurons]

    def set_outputs(self, neurons: Sequence[NeuronRef]) -> None:
        self._outputs = [self.neuron(n).handle for n in neurons]

    def set_biases(self, neurons: Sequence[NeuronRef]) -> None:
        self._biases = [self.neuron(n).handle for n in neurons]

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """
        Check that the graph can be compiled.

        Raises:
            InputOutputNotSet: If there are no input or no output neurons
            CycleDetected: If the dependency graph is not acyclic
            DisconnectedGraph: If a neuron is unreachable from input/bias neurons
        """
        if not self._inputs or not self._outputs:
            raise InputOutputNotSet()

        self.topological_order()
        self._check_connectivity()

    def topological_order(self) -> List[Neuron]:
        """
        Order neurons so each one follows every neuron with an edge into it.

        Raises:
            CycleDetected: If no such order exists
        """
        in_degree = {n.handle: len(n.incoming) for n in self._neurons}
        queue = deque(n for n in self._neurons if in_degree[n.handle] == 0)
        order: List[Neuron] = []

        while queue:
            current = queue.popleft()
            order.append(current)
            for handle in current.outgoing:
                neighbor = self._neurons.get(self._weights.get(handle).target)
                in_degree[neighbor.handle] -= 1
                if in_degree[neighbor.handle] == 0:
                    queue.append(neighbor)

        if len(order) < len(self._neurons):
            raise CycleDetected()
        return order

    def _check_connectivity(self) -> None:
        roots = self._inputs + [h for h in self._biases if h not in self._inputs]
        visited = set(roots)
        queue = deque(roots)

        while queue:
            current = self._neurons.get(queue.popleft())
            for handle in current.outgoing:
                target = self._weights.get(handle).target
                if target not in visited:
                    visited.add(target)
                    queue.append(target)

        for neuron in self._neurons:
            if neuron.handle not in visited:
                raise DisconnectedGraph()

        for handle in self._outputs:
            if handle not in visited:
                raise DisconnectedGraph()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def forward(self, inputs: Sequence[float]) -> List[float]:
        """
        Run inference on the editable graph and store values on its neurons.

        Raises:
            DimensionMismatch: If len(inputs) differs from the input count
            GraphError: If the graph does not validate
        """
        if len(inputs) != len(self._inputs):
            raise DimensionMismatch(
                f"Expected {len(self._inputs)} input values, got {len(inputs)}."
            )

        model = compile_graph(self)
        engine.predict(model, inputs)
        sync_back(model, self)
        return self.output_values

    def train(
        self,
        data: Sequence[Tuple[Sequence[float], Sequence[float]]],
        epochs: int,
        loss,
        optimizer,
        batch_size: int = 1,
        shuffle: bool = True
    ) -> List[float]:
        """
        Train the graph in place and return the average loss of each epoch.

        Args:
            data: (input, target) pairs
            epochs: Number of passes over ``data``
            loss: LossFunction to minimise
            optimizer: SGDOptimizer applying the updates
            batch_size: Scales the step size; updates stay per sample
            shuffle: Visit samples in a fresh random order every epoch
        """
        for inputs, targets in data:
            if len(inputs) != len(self._inputs) or len(targets) != len(self._outputs):
                raise DimensionMismatch(
                    f"Sample shape ({len(inputs)}, {len(targets)}) does not match "
                    f"({len(self._inputs)} inputs, {len(self._outputs)} outputs)."
                )

        model = compile_graph(self)
        history = engine.train(
            model, data, epochs, loss, optimizer,
            batch_size=batch_size,
            rng=self._rng if shuffle else None
        )
        sync_back(model, self)
        return history

    def reset_values(self) -> None:
        """Zero the value of every neuron that is computed from others."""
        for neuron in self._neurons:
            if not neuron.is_source:
                neuron.value = 0.0

    def __repr__(self):
        return (f"Graph(neurons={len(self._neurons)}, weights={len(self._weights)}, "
                f"inputs={len(self._inputs)}, outputs={len(self._outputs)})")
