"""
Integration Tests for NeuralNetwork
===================================

End-to-end tests for building, running, training and checkpointing networks.
"""

import json
import logging

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from doodlenet.network import NeuralNetwork, LayerTrace
from doodlenet.tensor import Tensor4D
from doodlenet.errors import (ConfigurationError, ShapeMismatchError,
                              NumericalInstabilityError, UnsupportedOperationError)


DOODLE_CONFIG = [
    {'type': 'input', 'shape': (1, 8, 8, 1)},
    {'type': 'conv2d', 'kernel': 3, 'filters': 4, 'activation': 'relu', 'padding': 'same'},
    {'type': 'pool', 'size': 2},
    {'type': 'conv2d', 'kernel': 2, 'filters': 3, 'activation': 'tanh', 'padding': 'same'},
    {'type': 'flatten'},
    {'type': 'dense', 'size': 5, 'activation': 'softmax'},
]

XOR_CONFIG = [
    {'type': 'input', 'shape': (1, 1, 1, 2)},
    {'type': 'dense', 'size': 4, 'activation': 'tanh'},
    {'type': 'dense', 'size': 4, 'activation': 'tanh'},
    {'type': 'dense', 'size': 1, 'activation': 'sigmoid'},
]


def dense_net(sizes=(3, 4, 2), activation='sigmoid', **kwargs):
    configs = [{'type': 'input', 'shape': (1, 1, 1, sizes[0])}]
    configs += [{'type': 'dense', 'size': s, 'activation': activation} for s in sizes[1:]]
    return NeuralNetwork(configs, **kwargs)


class TestConstruction:
    """Tests for NeuralNetwork construction."""

    def test_layers_built_in_order(self):
        nn = NeuralNetwork(DOODLE_CONFIG)

        assert [layer.type for layer in nn.layers] == [
            'input', 'conv2d', 'pool', 'conv2d', 'flatten', 'dense']
        assert nn.input_shape == (1, 8, 8, 1)
        assert nn.output_size == 5

    def test_needs_two_layers(self):
        with pytest.raises(ConfigurationError):
            NeuralNetwork([{'type': 'input', 'shape': (1, 1, 1, 2)}])

    def test_first_layer_must_be_input(self):
        with pytest.raises(ConfigurationError):
            NeuralNetwork([{'type': 'dense', 'size': 2}, {'type': 'dense', 'size': 1}])

    def test_only_one_input(self):
        with pytest.raises(ConfigurationError):
            NeuralNetwork([
                {'type': 'input', 'shape': (1, 1, 1, 2)},
                {'type': 'input', 'shape': (1, 1, 1, 2)},
            ])

    @pytest.mark.parametrize('learning_rate', [0, -0.1, float('nan'), float('inf'), 'fast'])
    def test_invalid_learning_rate(self, learning_rate):
        with pytest.raises(ConfigurationError):
            dense_net(learning_rate=learning_rate)

    def test_learning_rate_setter(self):
        nn = dense_net()
        nn.learning_rate = 0.05

        assert nn.learning_rate == 0.05
        with pytest.raises(ConfigurationError):
            nn.learning_rate = -1

    def test_unknown_loss(self):
        with pytest.raises(ConfigurationError):
            dense_net(loss='huber')

    def test_layers_is_read_only_view(self):
        nn = dense_net()
        assert isinstance(nn.layers, tuple)


class TestGuess:
    """Tests for the forward pass."""

    def test_output_length(self):
        nn = dense_net(sizes=(3, 7, 6))
        out = nn.guess([0.1, 0.2, 0.3])

        assert out.shape == (6,)

    def test_softmax_sums_to_one(self):
        nn = NeuralNetwork(DOODLE_CONFIG)
        out = nn.guess(np.random.rand(1, 8, 8, 1))

        assert out.shape == (5,)
        assert np.isclose(np.sum(out), 1.0)
        assert np.all(out > 0)

    def test_flat_vector_for_spatial_input(self):
        """A flat buffer is reshaped to the declared (N, H, W, C)."""
        nn = NeuralNetwork(DOODLE_CONFIG)
        image = np.random.rand(1, 8, 8, 1)

        np.testing.assert_array_equal(nn.guess(image.ravel()), nn.guess(image))
        np.testing.assert_array_equal(nn.guess(Tensor4D.from_numpy(image)), nn.guess(image))

    def test_forward_trace(self):
        nn = NeuralNetwork(DOODLE_CONFIG)
        trace = nn.forward(np.random.rand(64))

        assert len(trace) == len(nn.layers)
        assert all(isinstance(step, LayerTrace) for step in trace)
        assert trace[1].output.shape == (1, 8, 8, 4)
        assert trace[2].output.shape == (1, 4, 4, 4)
        assert trace[4].output.shape == (48,)

    def test_guess_does_not_change_params(self):
        nn = dense_net()
        before = [layer.params['weights'].copy() for layer in nn.layers[1:]]
        nn.guess([1.0, 2.0, 3.0])

        for layer, weights in zip(nn.layers[1:], before):
            np.testing.assert_array_equal(layer.weights, weights)

    def test_predict_class(self):
        nn = NeuralNetwork(DOODLE_CONFIG)
        x = np.random.rand(64)
        assert nn.predict_class(x) == int(np.argmax(nn.guess(x)))

    def test_spatial_output(self):
        nn = NeuralNetwork([
            {'type': 'input', 'shape': (1, 3, 3, 1)},
            {'type': 'conv2d', 'kernel': 2, 'filters': 1},
        ])
        out = nn.guess(np.ones((1, 3, 3, 1)))

        assert isinstance(out, Tensor4D)
        assert out.shape == (1, 2, 2, 1)

    def test_vector_wrong_length(self):
        nn = dense_net()
        with pytest.raises(ShapeMismatchError):
            nn.guess([1.0, 2.0])

    def test_tensor_wrong_shape(self):
        nn = NeuralNetwork(DOODLE_CONFIG)
        with pytest.raises(ShapeMismatchError):
            nn.guess(Tensor4D((1, 7, 7, 1)))

    def test_matrix_input_unsupported(self):
        nn = NeuralNetwork(DOODLE_CONFIG)
        with pytest.raises(UnsupportedOperationError):
            nn.guess(np.zeros((8, 8)))

    def test_flatten_rejects_batches(self):
        nn = NeuralNetwork([
            {'type': 'input', 'shape': (2, 4, 4, 1)},
            {'type': 'conv2d', 'kernel': 3, 'filters': 2},
            {'type': 'flatten'},
            {'type': 'dense', 'size': 2},
        ])
        with pytest.raises(UnsupportedOperationError):
            nn.guess(np.zeros((2, 4, 4, 1)))


class TestTraining:
    """Tests for train()."""

    def test_xor_converges(self):
        np.random.seed(42)
        nn = NeuralNetwork(XOR_CONFIG, learning_rate=0.3, loss='mse')
        data = [([0, 0], [0]), ([0, 1], [1]), ([1, 0], [1]), ([1, 1], [0])]

        def solved():
            return all(abs(nn.guess(x)[0] - y[0]) < 0.1 for x, y in data)

        for epoch in range(20000):
            for x, y in data:
                nn.train(x, y)
            if epoch % 250 == 0 and solved():
                break

        for x, y in data:
            assert abs(nn.guess(x)[0] - y[0]) < 0.1

    def test_training_reduces_loss(self):
        np.random.seed(0)
        nn = NeuralNetwork(DOODLE_CONFIG, learning_rate=0.05, loss='categorical_crossentropy')
        x = np.random.rand(64)
        target = np.eye(5)[2]

        initial = nn.loss(x, target)
        for _ in range(30):
            nn.train(x, target)

        assert nn.loss(x, target) < initial

    def test_softmax_shortcut_selection(self):
        softmax_cce = dense_net(sizes=(3, 4), activation='softmax', loss='cce')
        softmax_mse = dense_net(sizes=(3, 4), activation='softmax', loss='mse')
        sigmoid_cce = dense_net(sizes=(3, 4), activation='sigmoid', loss='cce')

        assert softmax_cce.uses_softmax_shortcut()
        assert not softmax_mse.uses_softmax_shortcut()
        assert not sigmoid_cce.uses_softmax_shortcut()

    def test_shortcut_seeds_prediction_minus_target(self):
        np.random.seed(5)
        nn = dense_net(sizes=(3, 4), activation='softmax', loss='categorical_crossentropy')
        x = np.array([0.2, -0.4, 0.1])
        target = np.array([0.0, 1.0, 0.0, 0.0])
        prediction = nn.guess(x)

        nn.train(x, target)

        np.testing.assert_allclose(nn.layers[-1].grads['bias'], prediction - target)

    def test_target_wrong_length(self):
        nn = dense_net()
        with pytest.raises(ShapeMismatchError):
            nn.train([1.0, 2.0, 3.0], [1.0])

    def test_spatial_output_training(self):
        nn = NeuralNetwork([
            {'type': 'input', 'shape': (1, 3, 3, 1)},
            {'type': 'conv2d', 'kernel': 2, 'filters': 1},
        ], learning_rate=0.02)
        x = np.random.rand(1, 3, 3, 1)
        target = np.ones(4)

        initial = nn.loss(x, target)
        for _ in range(20):
            nn.train(x, target)

        assert nn.loss(x, target) < initial

    def test_nan_input_raises_and_keeps_params(self):
        nn = dense_net()
        before = [layer.weights.copy() for layer in nn.layers[1:]]

        with pytest.raises(NumericalInstabilityError):
            nn.train([np.nan, 0.0, 1.0], [1.0, 0.0])

        # The output layer rejects its NaN gradient before updating anything
        for layer, weights in zip(nn.layers[1:], before):
            np.testing.assert_array_equal(layer.weights, weights)

    def test_debug_mode_checks_forward(self):
        nn = dense_net(debug=True)
        with pytest.raises(NumericalInstabilityError):
            nn.guess([np.inf, 0.0, 1.0])

    def test_debug_mode_logs_diagnostics(self, caplog):
        nn = dense_net(debug=True)
        caplog.set_level(logging.DEBUG, logger='doodlenet.network')

        nn.train([0.1, 0.2, 0.3], [1.0, 0.0])

        assert 'wNorm' in caplog.text

    def test_huge_inputs_keep_dense_grads_clipped(self):
        nn = dense_net(sizes=(4, 6, 3), activation=None, learning_rate=0.01)
        x = np.array([1e6, -3e6, 2e6, 5e5])

        nn.train(x, [1e7, -1e7, 0.0])

        for layer in nn.layers[1:]:
            assert np.max(np.abs(layer.grads['weights'])) <= 1.0
            assert np.max(np.abs(layer.grads['bias'])) <= 1.0

    def test_evaluate(self):
        nn = dense_net(sizes=(3, 4, 2))
        X = np.random.rand(6, 3)
        Y = np.eye(2)[[0, 1, 0, 1, 1, 0]]

        loss, accuracy = nn.evaluate(X, Y)

        assert loss >= 0
        assert 0.0 <= accuracy <= 1.0


class TestCheckpoint:
    """Tests for checkpoint() / from_checkpoint()."""

    def _trained(self):
        np.random.seed(11)
        nn = NeuralNetwork(DOODLE_CONFIG, learning_rate=0.02, loss='categorical_crossentropy')
        for label in range(5):
            nn.train(np.random.rand(64), np.eye(5)[label])
        return nn

    def test_round_trip_is_bit_identical(self):
        nn = self._trained()
        restored = NeuralNetwork.from_checkpoint(nn.checkpoint(), loss='categorical_crossentropy')
        x = np.random.rand(64)

        assert np.array_equal(nn.guess(x), restored.guess(x))
        assert restored.learning_rate == nn.learning_rate

    def test_round_trip_through_json(self):
        nn = self._trained()
        record = json.loads(json.dumps(nn.checkpoint()))
        restored = NeuralNetwork.from_checkpoint(record)
        x = np.random.rand(64)

        assert np.array_equal(nn.guess(x), restored.guess(x))

    def test_same_padding_restored_verbatim(self):
        nn = self._trained()
        restored = NeuralNetwork.from_checkpoint(nn.checkpoint())

        for original, copy in zip(nn.layers, restored.layers):
            if original.type == 'conv2d':
                assert copy.padding == original.padding
                assert copy.out_shape == original.out_shape

    def test_checkpoint_is_a_snapshot(self):
        nn = self._trained()
        record = nn.checkpoint()
        frozen = json.dumps(record)

        nn.train(np.random.rand(64), np.eye(5)[0])

        assert json.dumps(record) == frozen

    def test_restored_network_is_independent(self):
        nn = self._trained()
        record = nn.checkpoint()
        restored = NeuralNetwork.from_checkpoint(record)

        restored.train(np.random.rand(64), np.eye(5)[1])

        assert record['layers'][-1]['weights'] == nn.layers[-1].weights.ravel().tolist()

    def test_missing_learning_rate_warns(self, caplog):
        record = dense_net().checkpoint()
        del record['learningRate']

        with caplog.at_level(logging.WARNING, logger='doodlenet.network'):
            restored = NeuralNetwork.from_checkpoint(record)

        assert restored.learning_rate == 0.1
        assert 'learningRate' in caplog.text

    def test_invalid_checkpoint(self):
        with pytest.raises(ConfigurationError):
            NeuralNetwork.from_checkpoint({'learningRate': 0.1})

    def test_weights_size_mismatch(self):
        record = dense_net().checkpoint()
        record['layers'][1]['weights'].append(0.0)

        with pytest.raises(ConfigurationError):
            NeuralNetwork.from_checkpoint(record)


class TestIntrospection:
    """Feature maps, filters and summary."""

    def test_get_feature_maps(self):
        nn = NeuralNetwork(DOODLE_CONFIG)
        maps = nn.get_feature_maps(np.random.rand(64))

        assert [m['layer_index'] for m in maps] == [1, 3]
        assert maps[0]['feature_map'].shape == (1, 8, 8, 4)
        assert maps[1]['feature_map'].shape == (1, 4, 4, 3)

    def test_get_filters(self):
        nn = NeuralNetwork(DOODLE_CONFIG)
        filters = nn.get_filters()

        assert filters[0]['weights'].shape == (3, 3, 1, 4)
        assert filters[1]['weights'].shape == (2, 2, 4, 3)

    def test_num_params(self):
        nn = dense_net(sizes=(3, 4, 2))
        assert nn.num_params() == (3 * 4 + 4) + (4 * 2 + 2)

    def test_summary(self, capsys):
        nn = NeuralNetwork(DOODLE_CONFIG)
        total = nn.summary()

        assert total == nn.num_params()
        assert 'Total trainable parameters' in capsys.readouterr().out


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
