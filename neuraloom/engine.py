"""
engine.py
~~~~~~~~~

Forward and backward propagation over a compiled ExecutionModel, plus the
per-sample training loop built on them.

Everything here is synchronous and works only on the model it is given.
"""

import logging
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from neuraloom.compiler import ExecutionModel
from neuraloom.losses import LossFunction
from neuraloom.optimizer import SGDOptimizer

logger = logging.getLogger(__name__)

Sample = Tuple[Sequence[float], Sequence[float]]


# ============================================================================
# INFERENCE
# ============================================================================

def predict(model: ExecutionModel, inputs: Sequence[float]) -> None:
    """
    Forward pass.

    Inputs are written positionally: extra values are ignored and missing
    ones leave the previous value in place. Bias neurons are set to 1.0.
    Neurons without incoming weights are otherwise left untouched.
    """
    values = model.node_values
    for position, index in enumerate(model.input_indices):
        if position < len(inputs):
            values[index] = inputs[position]
    for index in model.bias_indices:
        values[index] = 1.0

    for index in model.topological_order:
        edges = model.node_incoming[index]
        if len(edges) == 0:
            continue
        total = float(np.dot(values[model.edge_sources[edges]], model.weight_values[edges]))
        values[index] = model.node_activations[index].forward(total)


def outputs(model: ExecutionModel) -> List[float]:
    return [float(model.node_values[i]) for i in model.output_indices]


# ============================================================================
# GRADIENTS
# ============================================================================

def zero_gradients(model: ExecutionModel) -> None:
    model.node_gradients.fill(0.0)
    model.weight_gradients.fill(0.0)


def compute_backward(model: ExecutionModel, target_gradients: Sequence[float]) -> None:
    """
    Backward pass.

    Seeds each output neuron with the matching loss gradient, then walks the
    topological order in reverse. Weight and neuron gradients are added to
    whatever is already accumulated; call ``zero_gradients`` to clear them.
    """
    values = model.node_values
    gradients = model.node_gradients

    for position, index in enumerate(model.output_indices):
        if position < len(target_gradients):
            gradients[index] = target_gradients[position]

    for index in model.topological_order[::-1]:
        edges = model.node_incoming[index]
        if len(edges) == 0:
            continue

        local_grad = model.node_activations[index].backward(values[index]) * gradients[index]
        sources = model.edge_sources[edges]
        model.weight_gradients[edges] += local_grad * values[sources]
        # Parallel edges can share a source, so accumulate unbuffered
        np.add.at(gradients, sources, local_grad * model.weight_values[edges])


# ============================================================================
# TRAINING
# ============================================================================

def forward_pass(
    model: ExecutionModel,
    inputs: Sequence[float],
    targets: Sequence[float],
    loss: LossFunction
) -> float:
    """Predict and return the loss without touching gradients or weights."""
    predict(model, inputs)
    return loss.compute(outputs(model), targets)


def train_sample(
    model: ExecutionModel,
    inputs: Sequence[float],
    targets: Sequence[float],
    loss: LossFunction,
    optimizer: SGDOptimizer,
    batch_size: int = 1
) -> float:
    """
    Forward, backward and one weight update for a single sample.

    Returns:
        The sample's loss, measured before the update
    """
    zero_gradients(model)
    predict(model, inputs)
    predicted = outputs(model)
    sample_loss = loss.compute(predicted, targets)
    compute_backward(model, loss.gradient(predicted, targets))
    optimizer.apply(model.weight_values, model.weight_gradients, batch_size)
    return sample_loss


def train_one_epoch(
    model: ExecutionModel,
    data: Sequence[Sample],
    loss: LossFunction,
    optimizer: SGDOptimizer,
    batch_size: int = 1,
    rng: Optional[np.random.Generator] = None
) -> float:
    """
    One pass over ``data`` with an update after every sample.

    ``batch_size`` only scales the step size. Samples are visited in a
    random order when ``rng`` is given.

    Returns:
        Average sample loss over the epoch
    """
    if not data:
        return 0.0

    order = rng.permutation(len(data)) if rng is not None else range(len(data))
    total_loss = 0.0
    for i in order:
        inputs, targets = data[i]
        total_loss += train_sample(model, inputs, targets, loss, optimizer, batch_size)

    return total_loss / len(data)


def train(
    model: ExecutionModel,
    data: Sequence[Sample],
    epochs: int,
    loss: LossFunction,
    optimizer: SGDOptimizer,
    batch_size: int = 1,
    rng: Optional[np.random.Generator] = None,
    on_epoch: Optional[Callable[[int, float], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None
) -> List[float]:
    """
    Run up to ``epochs`` epochs and return the average loss of each.

    Args:
        model: Compiled network, updated in place
        data: (input, target) pairs
        epochs: Number of epochs to run
        loss: Loss to minimise
        optimizer: Update rule
        batch_size: Step size divisor
        rng: Shuffles the samples every epoch when given
        on_epoch: Called with (epoch, average_loss) after each epoch
        should_stop: Polled before each epoch; a True result ends training

    Returns:
        Loss history, one entry per completed epoch
    """
    history: List[float] = []

    for epoch in range(1, epochs + 1):
        if should_stop is not None and should_stop():
            logger.info(f"Training stopped before epoch {epoch}")
            break

        avg_loss = train_one_epoch(model, data, loss, optimizer, batch_size, rng)
        history.append(avg_loss)

        if epoch == 1 or epoch % 100 == 0:
            logger.debug(f"Epoch {epoch}: loss {avg_loss:.6f}")

        if on_epoch is not None:
            on_epoch(epoch, avg_loss)

    return history
