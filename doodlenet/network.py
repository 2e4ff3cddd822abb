"""
NeuralNetwork Engine
====================

Ties the layers together:
- Building layers from a declarative config list
- Forward pass (with an explicit per-layer trace)
- Backward pass with in-place SGD updates
- Checkpointing and restoring

The engine works on one sample at a time. Batching, epochs and I/O belong to
the caller (see trainer.py).

Example:
    >>> nn = NeuralNetwork([
    ...     {'type': 'input', 'shape': (1, 1, 1, 2)},
    ...     {'type': 'dense', 'size': 4, 'activation': 'tanh'},
    ...     {'type': 'dense', 'size': 1, 'activation': 'sigmoid'},
    ... ], learning_rate=0.3)
    >>> nn.train([1, 0], [1])
    >>> nn.guess([1, 0]).shape
    (1,)
"""

import copy
import logging
import math
from collections import namedtuple

import numpy as np

from .errors import (ConfigurationError, ShapeMismatchError,
                     NumericalInstabilityError, UnsupportedOperationError)
from .layers import (FORWARD, BACKWARD, build_layer, output_shape, output_size,
                     serialize_layer, config_from_record, restore_params)
from .losses import get_loss, CategoricalCrossEntropyLoss
from .tensor import Tensor4D

logger = logging.getLogger(__name__)

LayerTrace = namedtuple('LayerTrace', ['layer', 'output', 'cache'])


class NeuralNetwork:
    """
    Feed-forward / convolutional neural network.

    Args:
        configs: Ordered list of layer config dicts; the first must be an input
        learning_rate: SGD step size (default: 0.1)
        loss: Loss name or Loss instance (default: 'mse')
        debug: Check activations for NaN/Inf and log output-layer diagnostics

    Example config for a 28x28 doodle classifier:
        [
            {'type': 'input', 'shape': (1, 28, 28, 1)},
            {'type': 'conv2d', 'kernel': (3, 3), 'filters': 8, 'activation': 'relu'},
            {'type': 'pool', 'size': (2, 2)},
            {'type': 'flatten'},
            {'type': 'dense', 'size': 10, 'activation': 'softmax'},
        ]
    """

    def __init__(self, configs, learning_rate=0.1, loss='mse', debug=False):
        configs = list(configs)
        if len(configs) < 2:
            raise ConfigurationError("NeuralNetwork requires at least input and output layers.")
        if not isinstance(configs[0], dict) or configs[0].get('type') != 'input':
            raise ConfigurationError("The first layer must be an input layer")

        self.learning_rate = learning_rate
        self.loss_fn = get_loss(loss)
        self.debug = debug

        self._layers = []
        prev = None
        for i, config in enumerate(configs):
            if i > 0 and isinstance(config, dict) and config.get('type') == 'input':
                raise ConfigurationError(f"Layer {i}: only the first layer may be an input")
            layer = build_layer(config, prev)
            self._layers.append(layer)
            prev = layer

        logger.debug("Built network: %s", ' -> '.join(repr(layer) for layer in self._layers))

    # Properties

    @property
    def layers(self):
        return tuple(self._layers)

    @property
    def learning_rate(self):
        return self._learning_rate

    @learning_rate.setter
    def learning_rate(self, value):
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Learning rate must be a number, got {value!r}")
        if not math.isfinite(value) or value <= 0:
            raise ConfigurationError(f"Learning rate must be positive and finite, got {value}")
        self._learning_rate = value

    @property
    def input_shape(self):
        return self._layers[0].shape

    @property
    def output_size(self):
        return output_size(self._layers[-1])

    # Inference

    def _prepare_input(self, value):
        """Validate an input against the input layer and normalise its type."""
        shape = self.input_shape
        if isinstance(value, Tensor4D):
            if value.shape != shape:
                raise ShapeMismatchError(f"Input shape {value.shape} does not match {shape}")
            return value

        array = np.asarray(value, dtype=np.float64)
        if array.ndim == 4:
            if array.shape != shape:
                raise ShapeMismatchError(f"Input shape {array.shape} does not match {shape}")
            return Tensor4D.from_numpy(array)
        if array.ndim == 1:
            n, h, w, c = shape
            # a spatial input layer reshapes the vector into its full shape
            expected = (n if h > 1 or w > 1 else 1) * h * w * c
            if array.size != expected:
                raise ShapeMismatchError(f"Input has {array.size} values, expected {expected}")
            return array
        raise UnsupportedOperationError(
            f"Input must be a flat vector or a 4D tensor, got a {array.ndim}D value")

    def forward(self, inputs):
        """
        Run a forward pass and keep every layer's output and cache.

        Args:
            inputs: Flat vector or (N, H, W, C) tensor / array

        Returns:
            List of LayerTrace(layer, output, cache), input layer first
        """
        value = self._prepare_input(inputs)
        trace = []
        for layer in self._layers:
            value, cache = FORWARD[layer.type](layer, value, debug=self.debug)
            trace.append(LayerTrace(layer, value, cache))
        return trace

    def guess(self, inputs):
        """
        Predict the output for one sample.

        Returns:
            1D array for vector outputs (softmax probabilities when the output
            layer uses softmax), Tensor4D for spatial outputs
        """
        return self.forward(inputs)[-1].output

    def predict_class(self, inputs):
        """Arg-max over the network output."""
        output = self.guess(inputs)
        if isinstance(output, Tensor4D):
            output = output.data
        return int(np.argmax(output))

    # Training

    def uses_softmax_shortcut(self):
        """
        True when the output layer is a softmax dense layer trained with
        categorical cross-entropy.

        For that pair the loss gradient w.r.t. the pre-activation z is just
        prediction - target, which is what train() seeds the backward pass with.
        """
        last = self._layers[-1]
        return (last.type == 'dense' and last.is_softmax
                and isinstance(self.loss_fn, CategoricalCrossEntropyLoss))

    def _prepare_target(self, target):
        target = np.asarray(target, dtype=np.float64).ravel()
        if target.size != self.output_size:
            raise ShapeMismatchError(
                f"Target has {target.size} values, network outputs {self.output_size}")
        return target

    def train(self, inputs, target):
        """
        One SGD step on a single sample.

        Every trainable layer's parameters are updated in place. A non-finite
        gradient raises NumericalInstabilityError; parameters of the layer that
        produced it are left untouched, layers closer to the output have
        already been updated.
        """
        target = self._prepare_target(target)
        trace = self.forward(inputs)
        output = trace[-1].output
        prediction = output.data if isinstance(output, Tensor4D) else output

        shortcut = self.uses_softmax_shortcut()
        if shortcut:
            grad = prediction - target
        else:
            grad = self.loss_fn.df(prediction, target)
        if isinstance(output, Tensor4D):
            grad = Tensor4D(output.shape, grad)

        if self.debug:
            self._log_diagnostics(trace[-1].layer, prediction)

        last = len(trace) - 1
        for i in range(last, -1, -1):
            layer, _, cache = trace[i]
            grad = BACKWARD[layer.type](
                layer, grad, cache, self._learning_rate,
                softmax_shortcut=shortcut and i == last)

            values = grad.data if isinstance(grad, Tensor4D) else grad
            if not np.all(np.isfinite(values)):
                raise NumericalInstabilityError(
                    f"NaN detected in backward pass in layer {i} ({layer.type})")

    def _log_diagnostics(self, layer, prediction):
        weights = layer.params.get('weights', layer.params.get('kernel'))
        bias = layer.params.get('bias')
        w_norm = float(np.sqrt(np.sum(weights ** 2))) if weights is not None else 0.0
        b_mean = float(np.mean(bias)) if bias is not None and bias.size else 0.0
        logger.debug("Layer: %s, wNorm=%.4f, bMean=%.4f, out[0]=%.4f",
                     layer.type, w_norm, b_mean, float(np.ravel(prediction)[0]))

    def loss(self, inputs, target):
        """Loss of the current prediction for one sample."""
        prediction = self.guess(inputs)
        if isinstance(prediction, Tensor4D):
            prediction = prediction.data
        return self.loss_fn.f(prediction, self._prepare_target(target))

    def evaluate(self, X, Y):
        """
        Evaluate on a set of samples.

        Args:
            X: Iterable of inputs
            Y: Iterable of targets (one-hot for classification)

        Returns:
            Tuple of (mean loss, arg-max accuracy)
        """
        total_loss = 0.0
        correct = 0
        count = 0
        for x, y in zip(X, Y):
            prediction = self.guess(x)
            if isinstance(prediction, Tensor4D):
                prediction = prediction.data
            y = self._prepare_target(y)
            total_loss += self.loss_fn.f(prediction, y)
            correct += int(np.argmax(prediction) == np.argmax(y))
            count += 1
        if count == 0:
            return 0.0, 0.0
        return total_loss / count, correct / count

    # Checkpointing

    def checkpoint(self):
        """
        Serializable snapshot of the network.

        Returns:
            {'learningRate': float, 'layers': [record, ...]} built from plain
            Python lists, so later training never changes it
        """
        return {
            'learningRate': self._learning_rate,
            'layers': [serialize_layer(layer) for layer in self._layers],
        }

    @classmethod
    def from_checkpoint(cls, record, loss='mse', debug=False):
        """
        Rebuild a network from a checkpoint record.

        Args:
            record: Dict produced by checkpoint() (or loaded from JSON)
            loss: Loss to train with from here on (not part of the record)
            debug: Debug mode for the rebuilt network
        """
        if not isinstance(record, dict) or 'layers' not in record:
            raise ConfigurationError("Checkpoint must be a dict with a 'layers' list")

        learning_rate = record.get('learningRate')
        if learning_rate is None:
            learning_rate = 0.1
            logger.warning("Checkpoint has no learningRate, using %s", learning_rate)

        records = copy.deepcopy(record['layers'])
        configs = [config_from_record(r) for r in records]
        nn = cls(configs, learning_rate=learning_rate, loss=loss, debug=debug)

        for layer, layer_record in zip(nn._layers, records):
            restore_params(layer, layer_record)
        return nn

    # Introspection

    def get_feature_maps(self, inputs):
        """
        Conv2D outputs for one sample.

        Returns:
            List of dicts with 'layer_index', 'layer' and 'feature_map'
            (an (N, H, W, C) array copy)
        """
        feature_maps = []
        for i, (layer, output, _) in enumerate(self.forward(inputs)):
            if layer.type == 'conv2d':
                feature_maps.append({
                    'layer_index': i,
                    'layer': layer,
                    'feature_map': output.to_numpy().copy(),
                })
        return feature_maps

    def get_filters(self):
        """Copies of every Conv2D kernel, shape (kH, kW, C_in, C_out)."""
        return [{
            'layer_index': i,
            'layer': layer,
            'weights': layer.kernel.to_numpy().copy(),
        } for i, layer in enumerate(self._layers) if layer.type == 'conv2d']

    def num_params(self):
        return sum(param.size for layer in self._layers for param in layer.params.values())

    def summary(self):
        """Print model summary."""
        print("\n" + "=" * 70)
        print("NeuralNetwork Summary")
        print("=" * 70)
        print(f"Input shape: {self.input_shape}")
        print(f"Loss: {self.loss_fn.name}, learning rate: {self._learning_rate}")
        print("-" * 70)

        total_params = 0

        for i, layer in enumerate(self._layers):
            n_params = sum(param.size for param in layer.params.values())
            total_params += n_params
            shape = str(output_shape(layer))
            print(f"{i:3d}. {str(layer):<40} {shape:<18} Params: {n_params:,}")

        print("-" * 70)
        print(f"Total trainable parameters: {total_params:,}")
        print("=" * 70 + "\n")

        return total_params

    def __repr__(self):
        return (f"NeuralNetwork(layers={len(self._layers)}, "
                f"learning_rate={self._learning_rate}, loss={self.loss_fn.name})")
