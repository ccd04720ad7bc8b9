"""
test_training.py
~~~~~~~~~~~~~~~~

Tests for building networks from descriptions and for the TrainingService
run/step state machine.
"""

import gevent
import numpy as np
import pytest

from neuraloom import (
    ConnectionSpec,
    CycleDetected,
    DatasetPreset,
    DimensionMismatch,
    DisconnectedGraph,
    InputOutputNotSet,
    NodeSpec,
    RunState,
    StepGranularity,
    StepPhase,
    TrainingConfig,
    TrainingService,
    build_network
)
from neuraloom.training import MAX_PROGRESS_UPDATES

XOR_DATA = DatasetPreset.XOR.training_data()

# Seeds tried when looking for a random start that trains XOR
XOR_SEARCH_SEEDS = 40


@pytest.fixture
def nodes():
    """Node descriptions for a 2-2-1 network with a bias neuron."""
    return [
        NodeSpec('x1', 'input'),
        NodeSpec('x2', 'input'),
        NodeSpec('b', 'bias'),
        NodeSpec('h1', 'hidden', 'relu'),
        NodeSpec('h2', 'hidden', 'relu'),
        NodeSpec('y', 'output', 'sigmoid'),
    ]


@pytest.fixture
def connections():
    """Connection descriptions with fixed starting weights."""
    weights = [
        ('x1', 'h1', 1.0), ('x2', 'h1', 1.0), ('b', 'h1', 0.0),
        ('x1', 'h2', 1.0), ('x2', 'h2', 1.0), ('b', 'h2', -1.0),
        ('h1', 'y', 3.0), ('h2', 'y', -6.0), ('b', 'y', -1.3),
    ]
    return [
        ConnectionSpec(f'{src}-{dst}', src, dst, value)
        for src, dst, value in weights
    ]


@pytest.fixture
def config():
    return TrainingConfig(learning_rate=0.1, epochs=50, shuffle=False)


@pytest.fixture
def service():
    svc = TrainingService(seed=0)
    yield svc
    svc.reset()
    svc.wait(5)


@pytest.mark.unit
class TestTrainingConfig:
    """Test run configuration validation."""

    def test_defaults(self):
        config = TrainingConfig()
        assert config.epochs == 500
        assert config.batch_size == 1
        assert config.loss.value == 'mse'

    def test_loss_by_name(self):
        assert TrainingConfig(loss='cross_entropy').loss.value == 'cross_entropy'

    @pytest.mark.parametrize('kwargs', [
        {'epochs': 0},
        {'batch_size': 0},
        {'learning_rate': -1.0},
        {'max_gradient_norm': 0.0},
        {'loss': 'hinge'},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            TrainingConfig(**kwargs)


@pytest.mark.unit
class TestBuildNetwork:
    """Test turning descriptions into a compiled network."""

    def test_maps_every_id(self, nodes, connections):
        """Test that each node and connection id maps to a model index."""
        compiled = build_network(nodes, connections, XOR_DATA)

        assert set(compiled.node_index) == {n.id for n in nodes}
        assert set(compiled.connection_index) == {c.id for c in connections}
        model = compiled.model
        assert model.weight_values[compiled.connection_index['h2-y']] == -6.0
        assert len(model.bias_indices) == 1

    def test_accepts_dicts(self):
        """Test that plain dictionaries work as descriptions."""
        compiled = build_network(
            [{'id': 'a', 'role': 'input'}, {'id': 'b', 'role': 'output'}],
            [{'id': 'ab', 'source_id': 'a', 'target_id': 'b', 'weight': 2.0}],
            [([3.0], [6.0])]
        )

        assert compiled.predict([3.0]) == pytest.approx([6.0])

    def test_skips_unknown_endpoints(self, nodes, connections):
        """Test that connections to unknown nodes are ignored."""
        extra = connections + [ConnectionSpec('ghost', 'x1', 'nowhere', 1.0)]
        compiled = build_network(nodes, extra, XOR_DATA)

        assert 'ghost' not in compiled.connection_index
        assert compiled.model.num_weights == len(connections)

    def test_defaults_to_xor(self, nodes, connections):
        compiled = build_network(nodes, connections)
        assert len(compiled.training_data) == 4

    def test_sample_shape_mismatch(self, nodes, connections):
        """Test that samples must match the input and output counts."""
        with pytest.raises(DimensionMismatch):
            build_network(nodes, connections, [([1.0], [0.0])])
        with pytest.raises(DimensionMismatch):
            build_network(nodes, connections, [([1.0, 0.0], [0.0, 1.0])])

    def test_structural_errors_surface(self, nodes, connections):
        """Test that validation failures reach the caller unchanged."""
        cyclic = connections + [ConnectionSpec('loop', 'y', 'h1', 1.0)]
        with pytest.raises(CycleDetected):
            build_network(nodes, cyclic, XOR_DATA)

        no_output = [n for n in nodes if n.id != 'y']
        with pytest.raises(InputOutputNotSet):
            build_network(no_output, connections, XOR_DATA)

        orphan = nodes + [NodeSpec('lonely', 'hidden')]
        with pytest.raises(DisconnectedGraph):
            build_network(orphan, connections, XOR_DATA)

    def test_snapshot(self, nodes, connections):
        """Test that a snapshot reports values and gradients by caller id."""
        compiled = build_network(nodes, connections, XOR_DATA)
        update = compiled.snapshot(3, 0.25)

        assert update.epoch == 3
        assert update.weights['x1-h1'] == (1.0, 0.0)
        assert set(update.nodes) == {n.id for n in nodes}
        body = update.to_dict()
        assert body['weights']['h2-y'] == {'value': -6.0, 'gradient': 0.0}
        assert body['phase'] is None


@pytest.mark.integration
class TestContinuousTraining:
    """Test background runs."""

    def test_run_completes(self, service, nodes, connections):
        """Test a full run with rate-limited progress."""
        compiled = build_network(nodes, connections, XOR_DATA)
        config = TrainingConfig(learning_rate=0.1, epochs=700, seed=0)
        updates, finished = [], []

        assert service.start_training(compiled, config, updates.append, finished.append)
        assert service.state is RunState.RUNNING
        assert service.wait(30) is RunState.COMPLETED

        assert finished == [RunState.COMPLETED]
        assert len(updates) <= MAX_PROGRESS_UPDATES
        assert updates[-1].epoch == 700
        assert [u.epoch for u in updates] == sorted(u.epoch for u in updates)

    def test_run_learns_xor_from_random_weights(self, nodes, connections):
        """
        Test a 700 epoch XOR run starting from weights uniform in [-1, 1].

        Only some random starts reach the thresholds, so the first seed in a
        fixed range that does is used. The untrained network must not
        already separate the classes.
        """
        random_connections = [
            ConnectionSpec(c.id, c.source_id, c.target_id) for c in connections
        ]

        def meets_thresholds(compiled):
            for inputs, targets in XOR_DATA:
                prediction = compiled.predict(inputs)[0]
                if (prediction >= 0.2) if targets[0] == 0.0 else (prediction <= 0.8):
                    return False
            return True

        for seed in range(XOR_SEARCH_SEEDS):
            compiled = build_network(nodes, random_connections, XOR_DATA, seed=seed)
            solved_before = meets_thresholds(compiled)

            service = TrainingService(seed=seed)
            updates = []
            service.start_training(
                compiled, TrainingConfig(learning_rate=0.1, epochs=700, seed=seed),
                updates.append
            )
            assert service.wait(30) is RunState.COMPLETED
            if updates[-1].loss < 0.1 and meets_thresholds(compiled):
                break
        else:
            pytest.fail(f"No seed below {XOR_SEARCH_SEEDS} learned XOR in 700 epochs")

        assert not solved_before
        assert updates[-1].epoch == 700
        assert updates[-1].loss < updates[0].loss

    def test_run_continues_epoch_numbering(self, service, nodes, connections, config):
        """Test that a second run counts on from the first one's epochs."""
        compiled = build_network(nodes, connections, XOR_DATA)
        service.start_training(compiled, config)
        service.wait(30)
        weights_after_first = compiled.model.weight_values.copy()

        updates = []
        assert service.start_training(
            service.stepping_network, config, updates.append,
            start_epoch=service.step_epoch
        )
        assert service.wait(30) is RunState.COMPLETED

        assert [u.epoch for u in updates] == list(range(51, 101))
        assert service.step_epoch == 100
        assert service.stepping_network is compiled
        assert not np.array_equal(weights_after_first, compiled.model.weight_values)

    def test_final_epoch_reported_off_interval(self, service, nodes, connections):
        """Test that the last epoch is reported even when off the interval."""
        compiled = build_network(nodes, connections, XOR_DATA)
        updates = []

        service.start_training(compiled, TrainingConfig(epochs=205), updates.append)
        service.wait(30)

        assert updates[-1].epoch == 205
        assert updates[0].epoch == 2

    def test_second_start_is_noop(self, service, nodes, connections, config):
        """Test that only one run can be active."""
        first = build_network(nodes, connections, XOR_DATA)
        second = build_network(nodes, connections, XOR_DATA)

        assert service.start_training(first, config)
        assert not service.start_training(second, config)
        service.wait(30)

        assert service.stepping_network is first

    def test_cancel(self, service, nodes, connections, config):
        """Test that cancellation is honoured before the next epoch."""
        compiled = build_network(nodes, connections, XOR_DATA)
        updates, finished = [], []

        def on_update(update):
            updates.append(update)
            if update.epoch == 10:
                service.stop_training()

        service.start_training(compiled, config, on_update, finished.append)
        assert service.wait(30) is RunState.CANCELLED

        assert finished == [RunState.CANCELLED]
        assert updates[-1].epoch == 10
        assert service.step_epoch == 10

    def test_cancel_reports_last_epoch(self, service, nodes, connections):
        """Test that a cancelled run reports its last epoch if it was skipped."""
        compiled = build_network(nodes, connections, XOR_DATA)
        updates = []

        # 1000 epochs reports every 10th; the stopper runs when epoch 1 yields
        service.start_training(compiled, TrainingConfig(epochs=1000), updates.append)
        gevent.spawn(service.stop_training)

        assert service.wait(30) is RunState.CANCELLED
        assert [u.epoch for u in updates] == [1]
        assert service.step_epoch == 1


    def test_stop_without_run(self, service):
        assert service.stop_training() is False
        assert service.state is RunState.IDLE

    def test_step_ignored_while_running(self, service, nodes, connections, config):
        """Test that manual steps are refused during a run."""
        compiled = build_network(nodes, connections, XOR_DATA)
        service.start_training(compiled, config)

        assert service.step(StepGranularity.EPOCH, nodes, connections, config) is None
        service.wait(30)

    def test_network_handed_back(self, service, nodes, connections, config):
        """Test that stepping continues from a finished run's weights."""
        compiled = build_network(nodes, connections, XOR_DATA)
        service.start_training(compiled, config)
        service.wait(30)

        weights_after_run = compiled.model.weight_values.copy()
        update = service.step(StepGranularity.EPOCH, nodes, connections, config)

        assert update.epoch == config.epochs + 1
        assert service.stepping_network is compiled
        assert not np.array_equal(weights_after_run, compiled.model.weight_values)

    def test_start_invalidates_stepping(self, service, nodes, connections, config):
        """Test that starting a run takes the stepping network away."""
        service.step(StepGranularity.EPOCH, nodes, connections, config)
        stepping = service.stepping_network
        fresh = build_network(nodes, connections, XOR_DATA)

        service.start_training(fresh, config)
        assert service.stepping_network is None
        service.wait(30)
        assert service.stepping_network is fresh
        assert service.stepping_network is not stepping


@pytest.mark.unit
class TestStepping:
    """Test manual stepping."""

    def test_epoch_steps_count_up(self, service, nodes, connections, config):
        first = service.step(StepGranularity.EPOCH, nodes, connections, config)
        second = service.step('epoch', nodes, connections, config)

        assert (first.epoch, second.epoch) == (1, 2)
        assert first.phase is None

    def test_sample_phases_alternate(self, service, nodes, connections, config):
        """Test forward then backward for each sample, in order."""
        updates = [
            service.step(StepGranularity.SAMPLE, nodes, connections, config)
            for _ in range(8)
        ]

        assert [u.phase for u in updates] == [StepPhase.FORWARD, StepPhase.BACKWARD] * 4
        assert [u.sample_index for u in updates] == [0, 0, 1, 1, 2, 2, 3, 3]
        assert all(u.epoch == 0 for u in updates)

    def test_forward_phase_keeps_weights(self, service, nodes, connections, config):
        """Test that only the backward phase changes weights."""
        forward = service.step(StepGranularity.SAMPLE, nodes, connections, config)
        assert forward.weights['h2-y'][0] == -6.0

        backward = service.step(StepGranularity.SAMPLE, nodes, connections, config)
        assert forward.loss == pytest.approx(backward.loss)
        assert any(
            backward.weights[cid][0] != forward.weights[cid][0]
            for cid in forward.weights
        )

    def test_queue_wraps_to_next_epoch(self, service, nodes, connections, config):
        """Test that exhausting the sample queue starts a new epoch."""
        for _ in range(8):
            service.step(StepGranularity.SAMPLE, nodes, connections, config)
        update = service.step(StepGranularity.SAMPLE, nodes, connections, config)

        assert update.epoch == 1
        assert update.sample_index == 0
        assert update.phase is StepPhase.FORWARD

    def test_shuffled_queue_visits_every_sample(self, service, nodes, connections):
        config = TrainingConfig(epochs=10, shuffle=True)
        indices = [
            service.step(StepGranularity.SAMPLE, nodes, connections, config).sample_index
            for _ in range(8)
        ]

        assert sorted(indices[::2]) == [0, 1, 2, 3]

    def test_build_errors_surface(self, service, nodes, connections, config):
        """Test that stepping an invalid network raises instead of ignoring it."""
        cyclic = connections + [ConnectionSpec('loop', 'y', 'h1', 1.0)]
        with pytest.raises(CycleDetected):
            service.step(StepGranularity.SAMPLE, nodes, cyclic, config)

    def test_empty_dataset(self, service, nodes, connections, config):
        with pytest.raises(ValueError):
            service.step(StepGranularity.SAMPLE, nodes, connections, config, data=[])

    def test_callback_receives_update(self, service, nodes, connections, config):
        received = []
        update = service.step(
            StepGranularity.EPOCH, nodes, connections, config, on_update=received.append
        )
        assert received == [update]

    def test_invalidate_and_reset(self, service, nodes, connections, config):
        """Test that invalidate recompiles and reset clears progress."""
        service.step(StepGranularity.EPOCH, nodes, connections, config)
        first = service.stepping_network

        service.invalidate()
        service.step(StepGranularity.EPOCH, nodes, connections, config)
        assert service.stepping_network is not first
        assert service.step_epoch == 2

        service.reset()
        assert service.stepping_network is None
        assert service.step_epoch == 0
        assert service.state is RunState.IDLE
