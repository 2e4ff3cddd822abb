"""
Loss Functions
==============

Loss functions measure how wrong a single prediction is.

Each loss implements:
- f(prediction, target): scalar loss value
- df(prediction, target): gradient of the loss w.r.t. each output

Both operate on one sample (1D vectors). Probabilities are clipped to
[1e-7, 1 - 1e-7] before taking logs.

The softmax + categorical cross-entropy pair has the simplified gradient
prediction - target. The network applies that shortcut itself (see
NeuralNetwork.uses_softmax_shortcut); the registry always returns the plain
derivative of the loss.
"""

import numpy as np

from .errors import ConfigurationError, ShapeMismatchError

EPSILON = 1e-7


def _as_pair(prediction, target):
    prediction = np.asarray(prediction, dtype=np.float64).ravel()
    target = np.asarray(target, dtype=np.float64).ravel()
    if prediction.shape != target.shape:
        raise ShapeMismatchError(
            f"Prediction length {prediction.size} must match target length {target.size}")
    return prediction, target


class Loss:
    """Base class for loss functions."""

    name = None

    def f(self, prediction, target):
        """Compute loss value."""
        raise NotImplementedError

    def df(self, prediction, target):
        """Compute gradient of loss w.r.t. prediction."""
        raise NotImplementedError

    def __call__(self, prediction, target):
        return self.f(prediction, target)

    def __repr__(self):
        return f"{self.__class__.__name__}()"


class MSELoss(Loss):
    """
    Mean Squared Error.

    Formula: L = 0.5 * sum((y_pred - y_true)^2) / n

    The gradient is the raw per-output error y_pred - y_true; the 0.5 cancels
    the square and the 1/n is left to the learning rate.
    """

    name = 'mse'

    def f(self, prediction, target):
        prediction, target = _as_pair(prediction, target)
        diff = prediction - target
        return float(0.5 * np.sum(diff * diff) / target.size)

    def df(self, prediction, target):
        prediction, target = _as_pair(prediction, target)
        return prediction - target


class BinaryCrossEntropyLoss(Loss):
    """
    Binary Cross-Entropy for sigmoid outputs.

    Formula: L = mean(-[y*log(p) + (1-y)*log(1-p)])
    Gradient: dL/dp = (p - y) / (p * (1 - p))
    """

    name = 'bce'

    def f(self, prediction, target):
        prediction, target = _as_pair(prediction, target)
        p = np.clip(prediction, EPSILON, 1 - EPSILON)
        loss = -target * np.log(p) - (1 - target) * np.log(1 - p)
        return float(np.mean(loss))

    def df(self, prediction, target):
        prediction, target = _as_pair(prediction, target)
        p = np.clip(prediction, EPSILON, 1 - EPSILON)
        return (p - target) / (p * (1 - p))


class CategoricalCrossEntropyLoss(Loss):
    """
    Categorical Cross-Entropy for a one-hot target.

    Formula: L = -sum(y * log(p))
    Gradient: dL/dp = -y / p
    """

    name = 'categorical_crossentropy'

    def f(self, prediction, target):
        prediction, target = _as_pair(prediction, target)
        p = np.clip(prediction, EPSILON, 1 - EPSILON)
        return float(-np.sum(target * np.log(p)))

    def df(self, prediction, target):
        prediction, target = _as_pair(prediction, target)
        p = np.clip(prediction, EPSILON, 1 - EPSILON)
        return -target / p


# ============================================================================
# Loss Registry
# ============================================================================

LOSSES = {
    'mse': MSELoss,
    'mean_squared_error': MSELoss,
    'bce': BinaryCrossEntropyLoss,
    'binary_crossentropy': BinaryCrossEntropyLoss,
    'categorical_crossentropy': CategoricalCrossEntropyLoss,
    'categoricalcrossentropy': CategoricalCrossEntropyLoss,
    'cross_entropy': CategoricalCrossEntropyLoss,
    'cce': CategoricalCrossEntropyLoss,
}


def get_loss(name):
    """
    Get loss function by name.

    Args:
        name: String name or Loss instance

    Returns:
        Loss instance
    """
    if isinstance(name, Loss):
        return name

    if not isinstance(name, str):
        raise ConfigurationError(f"Loss must be a name, got {type(name).__name__}")

    name_lower = name.lower().replace('-', '_').replace(' ', '_')
    if name_lower not in LOSSES:
        available = ', '.join(sorted(LOSSES.keys()))
        raise ConfigurationError(f"Unknown loss '{name}'. Available: {available}")

    return LOSSES[name_lower]()
