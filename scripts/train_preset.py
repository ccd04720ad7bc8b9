#!/usr/bin/env python3
"""
Train a small fully connected network on one of the built-in datasets.

Usage:
    python scripts/train_preset.py [xor|linear|circle|spiral] [epochs]

The script will:
1. Build an inputs → 4 hidden ReLU → 1 output network with a bias neuron
2. Train it with per-sample SGD, printing the loss as it goes
3. Print the network's prediction for every sample
"""

import sys

import numpy as np

from neuraloom import Activation, DatasetPreset, LossFunction, NodeSpec, ConnectionSpec
from neuraloom import TrainingConfig, build_network
from neuraloom import engine

HIDDEN_UNITS = 4


def describe_network(preset: DatasetPreset):
    """
    Build node and connection descriptions for ``preset``.

    Returns:
    --------
    tuple
        (nodes, connections)
    """
    linear_target = preset is DatasetPreset.LINEAR
    nodes = [NodeSpec(f'x{i}', 'input') for i in range(preset.input_column_count)]
    nodes.append(NodeSpec('bias', 'bias'))
    nodes += [NodeSpec(f'h{i}', 'hidden', Activation.RELU) for i in range(HIDDEN_UNITS)]
    nodes.append(NodeSpec(
        'out', 'output', Activation.LINEAR if linear_target else Activation.SIGMOID
    ))

    sources = [n.id for n in nodes if n.role.value in ('input', 'bias')]
    hidden = [n.id for n in nodes if n.role.value == 'hidden']

    connections = []
    for src in sources:
        for dst in hidden:
            connections.append(ConnectionSpec(f'{src}-{dst}', src, dst))
    for src in hidden + ['bias']:
        connections.append(ConnectionSpec(f'{src}-out', src, 'out'))
    return nodes, connections


def main():
    """Main training function."""
    preset = DatasetPreset(sys.argv[1].lower()) if len(sys.argv) > 1 else DatasetPreset.XOR
    epochs = int(sys.argv[2]) if len(sys.argv) > 2 else 1000

    print("=" * 60)
    print(f"Training on the {preset.value.upper()} preset for {epochs} epochs")
    print("=" * 60)

    nodes, connections = describe_network(preset)
    loss = LossFunction.MSE if preset is DatasetPreset.LINEAR else LossFunction.CROSS_ENTROPY
    config = TrainingConfig(learning_rate=0.05, loss=loss, epochs=epochs, seed=0)

    try:
        compiled = build_network(nodes, connections, preset.training_data(), seed=0)
    except Exception as e:
        print(f"\n❌ Could not build network: {e}")
        sys.exit(1)

    def report(epoch, avg_loss):
        if epoch == 1 or epoch % max(1, epochs // 10) == 0:
            print(f"   Epoch {epoch:>5}: loss {avg_loss:.6f}")

    history = engine.train(
        compiled.model, compiled.training_data, epochs, config.loss,
        config.optimizer(), config.batch_size,
        rng=np.random.default_rng(config.seed), on_epoch=report
    )

    print(f"\n✅ Final loss: {history[-1]:.6f}")
    print("\n📝 Predictions:")
    for inputs, targets in compiled.training_data:
        output = compiled.predict(inputs)
        print(f"   {[round(v, 3) for v in inputs]} -> {output[0]:.4f} (target {targets[0]:.4f})")


if __name__ == '__main__':
    main()
