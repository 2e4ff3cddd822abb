"""
Engine Errors
=============

Every failure raised by the engine derives from NetworkError. Each class also
derives from the closest built-in exception, so code that catches ValueError
or TypeError keeps working.

- ConfigurationError: invalid layer list, adjacency, names or checkpoint
- ShapeMismatchError: buffer/shape disagreement, wrong input or target size
- NumericalInstabilityError: NaN or Inf in a gradient or activation
- UnsupportedOperationError: an operation given a value it cannot handle
"""


class NetworkError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(NetworkError, ValueError):
    """Raised when a network cannot be built from its configuration."""


class ShapeMismatchError(NetworkError, ValueError):
    """Raised when a buffer, input or target disagrees with the expected shape."""


class NumericalInstabilityError(NetworkError, ArithmeticError):
    """Raised when a non-finite value shows up during a training step."""


class UnsupportedOperationError(NetworkError, TypeError):
    """Raised when a layer is given a value of the wrong kind or rank."""
