"""
compiler.py
~~~~~~~~~~~

Flattens a validated Graph into the dense, index-addressed arrays the
execution engine works on.

A compiled ExecutionModel is mutated in place during training and is
discarded and rebuilt whenever the graph topology changes; the Graph
never writes to it.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, List

import numpy as np

from neuraloom.activations import Activation

if TYPE_CHECKING:
    from neuraloom.graph import Graph

logger = logging.getLogger(__name__)


@dataclass
class ExecutionModel:
    """
    Structure-of-arrays form of a network.

    Attributes:
        node_values: Current value of each neuron
        node_gradients: Accumulated dL/dvalue of each neuron
        node_activations: Activation of each neuron
        weight_values: Current value of each weight
        weight_gradients: Accumulated dL/dweight of each weight
        node_incoming: Per neuron, indices of the weights feeding it
        node_outgoing: Per neuron, indices of the weights leaving it
        edge_sources: Per weight, index of its source neuron
        node_ids: Neuron index -> graph handle
        weight_ids: Weight index -> graph handle
        input_indices: Input neurons, in input order
        output_indices: Output neurons, in output order
        bias_indices: Bias neurons
        topological_order: Neuron indices, each after all of its sources
    """

    node_values: np.ndarray
    node_gradients: np.ndarray
    node_activations: List[Activation]
    weight_values: np.ndarray
    weight_gradients: np.ndarray
    node_incoming: List[np.ndarray]
    node_outgoing: List[np.ndarray]
    edge_sources: np.ndarray
    node_ids: List[Any]
    weight_ids: List[Any]
    input_indices: np.ndarray
    output_indices: np.ndarray
    bias_indices: np.ndarray
    topological_order: np.ndarray

    @property
    def num_nodes(self) -> int:
        return len(self.node_values)

    @property
    def num_weights(self) -> int:
        return len(self.weight_values)


def _index_array(values: List[int]) -> np.ndarray:
    return np.asarray(values, dtype=np.intp)


def compile_graph(graph: 'Graph') -> ExecutionModel:
    """
    Compile a graph into an ExecutionModel.

    Args:
        graph: The graph to compile; it is validated first

    Returns:
        A fresh ExecutionModel seeded with the graph's current values

    Raises:
        GraphError: Whatever ``graph.validate()`` raises
    """
    graph.validate()

    neurons = graph.neurons
    weights = graph.weights
    index_of = {neuron.handle: i for i, neuron in enumerate(neurons)}

    incoming: List[List[int]] = [[] for _ in neurons]
    outgoing: List[List[int]] = [[] for _ in neurons]
    edge_sources = np.zeros(len(weights), dtype=np.intp)

    for w_idx, weight in enumerate(weights):
        src = index_of.get(weight.source)
        dst = index_of.get(weight.target)
        if src is None or dst is None:
            logger.warning(f"Skipping weight {weight.handle}: endpoint not in graph")
            continue

        edge_sources[w_idx] = src
        incoming[dst].append(w_idx)
        outgoing[src].append(w_idx)

    model = ExecutionModel(
        node_values=np.array([n.value for n in neurons], dtype=np.float64),
        node_gradients=np.zeros(len(neurons), dtype=np.float64),
        node_activations=[n.activation for n in neurons],
        weight_values=np.array([w.value for w in weights], dtype=np.float64),
        weight_gradients=np.zeros(len(weights), dtype=np.float64),
        node_incoming=[_index_array(edges) for edges in incoming],
        node_outgoing=[_index_array(edges) for edges in outgoing],
        edge_sources=edge_sources,
        node_ids=[n.handle for n in neurons],
        weight_ids=[w.handle for w in weights],
        input_indices=_index_array([index_of[n.handle] for n in graph.input_neurons]),
        output_indices=_index_array([index_of[n.handle] for n in graph.output_neurons]),
        bias_indices=_index_array([index_of[n.handle] for n in graph.bias_neurons]),
        topological_order=_index_array(
            [index_of[n.handle] for n in graph.topological_order()]
        )
    )

    logger.debug(
        f"Compiled graph: {model.num_nodes} neurons, {model.num_weights} weights, "
        f"{len(model.input_indices)} inputs, {len(model.output_indices)} outputs"
    )
    return model


def sync_back(model: ExecutionModel, graph: 'Graph') -> None:
    """
    Copy values and gradients from a model back onto the graph it came from.

    Entries deleted from the graph since compilation are skipped.
    """
    for i, handle in enumerate(model.weight_ids):
        weight = graph.get_weight(handle)
        if weight is not None:
            weight.value = float(model.weight_values[i])
            weight.gradient = float(model.weight_gradients[i])

    for i, handle in enumerate(model.node_ids):
        neuron = graph.get_neuron(handle)
        if neuron is not None:
            neuron.value = float(model.node_values[i])
            neuron.gradient = float(model.node_gradients[i])
