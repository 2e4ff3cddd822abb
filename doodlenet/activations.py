"""
Activation Functions
====================

Named elementwise activations used by Dense and Conv2D layers.

Each activation implements:
- f(x): the activation value
- df(y): the derivative, expressed in terms of the OUTPUT y = f(x)

Writing the derivative in terms of the output keeps the backward pass simple:
the layers only cache what they produced in the forward pass.

    sigmoid:  f'(x) = y * (1 - y)
    tanh:     f'(x) = 1 - y^2
    relu:     f'(x) = 1 if y > 0 else 0

Softmax is not part of the registry. Its derivative is a full Jacobian, not
an elementwise function, so Dense layers handle it directly with softmax().
"""

import numpy as np

from .errors import ConfigurationError

SOFTMAX = 'softmax'


class Activation:
    """Base class for all activation functions."""

    name = None
    # Identifier written to checkpoints; defaults to name
    wire_id = None

    def f(self, x):
        """Apply activation function."""
        raise NotImplementedError

    def df(self, y):
        """Derivative of the activation, evaluated on its output."""
        raise NotImplementedError

    def __call__(self, x):
        return self.f(x)

    def __repr__(self):
        return f"{self.__class__.__name__}()"


class Linear(Activation):
    """
    Linear (Identity) activation: f(x) = x

    Used for regression outputs and raw scores.
    """

    name = 'linear'

    def f(self, x):
        return x

    def df(self, y):
        return np.ones_like(y, dtype=np.float64)


class Sigmoid(Activation):
    """
    Sigmoid: f(x) = 1 / (1 + exp(-x))

    Squashes output to (0, 1).

    Derivative:
        f'(x) = y * (1 - y)
    """

    name = 'sigmoid'

    def f(self, x):
        # Clip for numerical stability
        x_clipped = np.clip(x, -500, 500)
        return 1.0 / (1.0 + np.exp(-x_clipped))

    def df(self, y):
        return y * (1 - y)


class Tanh(Activation):
    """
    Hyperbolic Tangent with the input clamped to [-20, 20].

    tanh is already saturated to 1.0 well inside that range, so the clamp
    only guards against overflow in exotic inputs.

    Derivative:
        f'(x) = 1 - y^2
    """

    name = 'tanh'
    limit = 20.0

    def f(self, x):
        return np.tanh(np.clip(x, -self.limit, self.limit))

    def df(self, y):
        return 1 - y * y


class ReLU(Activation):
    """
    Rectified Linear Unit: f(x) = max(0, x)

    Derivative:
        f'(x) = 1 if y > 0 else 0
    """

    name = 'relu'

    def f(self, x):
        return np.maximum(0, x)

    def df(self, y):
        return (np.asarray(y) > 0).astype(np.float64)


class LeakyReLU(Activation):
    """
    Leaky ReLU: f(x) = x if x > 0 else alpha * x

    y has the same sign as x, so the output decides the slope.

    Args:
        alpha: Slope for negative values (default: 0.01)
    """

    name = 'leaky_relu'
    wire_id = 'leakyRelu'

    def __init__(self, alpha=0.01):
        self.alpha = alpha

    def f(self, x):
        return np.where(x > 0, x, self.alpha * x)

    def df(self, y):
        return np.where(np.asarray(y) > 0, 1.0, self.alpha)


class ELU(Activation):
    """
    Exponential Linear Unit: f(x) = x if x >= 0 else alpha * (exp(x) - 1)

    For negative inputs y + alpha = alpha * exp(x), which is the derivative.

    Args:
        alpha: Saturation value for negative inputs (default: 1.0)
    """

    name = 'elu'

    def __init__(self, alpha=1.0):
        self.alpha = alpha

    def f(self, x):
        x = np.asarray(x, dtype=np.float64)
        # expm1 on the clipped branch avoids overflow warnings for large x
        return np.where(x >= 0, x, self.alpha * np.expm1(np.minimum(x, 0)))

    def df(self, y):
        y = np.asarray(y, dtype=np.float64)
        return np.where(y >= 0, 1.0, y + self.alpha)


class Softplus(Activation):
    """
    Softplus: f(x) = log(1 + exp(x))

    The derivative is sigmoid(x). With y = softplus(x), exp(x) = exp(y) - 1,
    which gives sigmoid(x) = 1 - exp(-y).
    """

    name = 'softplus'

    def f(self, x):
        return np.logaddexp(0, x)

    def df(self, y):
        return -np.expm1(-np.asarray(y, dtype=np.float64))


def softmax(z):
    """
    Numerically stable softmax over a 1D vector.

    Subtracting max(z) before exp prevents overflow without changing the
    result: exp(z-c)/sum(exp(z-c)) = exp(z)/sum(exp(z))
    """
    z = np.asarray(z, dtype=np.float64)
    exp_z = np.exp(z - np.max(z))
    return exp_z / np.sum(exp_z)


def is_softmax(name):
    """True when an activation identifier names softmax."""
    return isinstance(name, str) and _normalize(name) == SOFTMAX


# ====================================
# Activation Registry
# ====================================

ACTIVATIONS = {
    'linear': Linear,
    'identity': Linear,
    'none': Linear,
    'sigmoid': Sigmoid,
    'tanh': Tanh,
    'relu': ReLU,
    'leaky_relu': LeakyReLU,
    'leakyrelu': LeakyReLU,
    'elu': ELU,
    'softplus': Softplus,
}


def _normalize(name):
    return name.lower().replace('-', '_')


def get_activation(name):
    """
    Get activation function by name.

    Args:
        name: String name ('relu', 'sigmoid', etc.), Activation instance or None

    Returns:
        Activation instance, or None when no activation is configured

    Example:
        >>> act = get_activation('relu')
        >>> act.f(np.array([-1, 0, 1]))
        array([0, 0, 1])
    """
    if name is None or isinstance(name, Activation):
        return name

    if not isinstance(name, str):
        raise ConfigurationError(f"Activation must be a name, got {type(name).__name__}")

    name_lower = _normalize(name)
    if name_lower == SOFTMAX:
        raise ConfigurationError(
            "softmax is not an elementwise activation; it is only valid on dense layers")
    if name_lower not in ACTIVATIONS:
        available = ', '.join(sorted(ACTIVATIONS.keys()))
        raise ConfigurationError(f"Unknown activation '{name}'. Available: {available}")

    return ACTIVATIONS[name_lower]()
