"""
Layers
======

The five layer kinds of the engine, their per-pass caches, and the maths that
moves data and gradients through them.

Layers implemented:
- Input: declares the sample shape, passes data through
- Dense: fully connected, optional activation or softmax
- Conv2D: 2D convolution over NHWC tensors, valid/same/explicit padding
- Pool: max pooling that records the argmax of every window
- Flatten: NHWC tensor (batch 1) to a flat vector

Layers are plain records tagged with a `type` string. They hold shapes and
parameters only; the forward/backward functions below take a layer and return
fresh values. A forward pass produces an explicit cache object, which the
matching backward function consumes, so nothing about an in-flight sample is
ever stored on the layer.

Every backward function applies one plain SGD step to the layer's parameters
in place and records the gradients it used in `layer.grads`.
"""

import logging
from collections import namedtuple

import numpy as np

from .activations import get_activation, is_softmax, softmax, SOFTMAX
from .errors import (ConfigurationError, ShapeMismatchError,
                     NumericalInstabilityError, UnsupportedOperationError)
from .tensor import Tensor4D

logger = logging.getLogger(__name__)

LAYER_TYPES = ('input', 'dense', 'conv2d', 'pool', 'flatten')
# Layers whose output is a flat vector rather than a spatial map
VECTOR_LAYERS = ('dense', 'flatten')
GRAD_CLIP = 1.0


def clip(values):
    """Clamp gradient values to [-1, 1]."""
    return np.clip(values, -GRAD_CLIP, GRAD_CLIP)


def _check_finite(values, what, layer_type):
    if not np.all(np.isfinite(values)):
        raise NumericalInstabilityError(f"NaN/Inf detected in {what} of {layer_type} layer")


# ============================================================================
# Layer records
# ============================================================================

class InputLayer:
    """Declares the (N, H, W, C) shape of a sample. No parameters."""

    type = 'input'

    def __init__(self, shape):
        self.shape = shape
        self.params = {}
        self.grads = {}

    def __repr__(self):
        return f"Input(shape={self.shape})"


class DenseLayer:
    """
    Fully Connected Layer.

    Weights are stored as an (output_size, input_size) matrix, so the flat
    row-major buffer is output-major: weights[i * input_size + j] connects
    input j to output i.

    Args:
        input_size: Number of input features
        output_size: Number of output features
        weights: (output_size, input_size) array
        bias: (output_size,) array
        activation: Activation name, 'softmax', or None
    """

    type = 'dense'

    def __init__(self, input_size, output_size, weights, bias, activation=None):
        self.input_size = input_size
        self.output_size = output_size
        self.activation_name = activation
        self.activation = None if is_softmax(activation) else get_activation(activation)
        self.params = {'weights': weights, 'bias': bias}
        self.grads = {}

    @property
    def weights(self):
        return self.params['weights']

    @property
    def bias(self):
        return self.params['bias']

    @property
    def is_softmax(self):
        return is_softmax(self.activation_name)

    def __repr__(self):
        return f"Dense({self.input_size}, {self.output_size}, activation={self.activation_name})"


class Conv2DLayer:
    """
    2D Convolutional Layer over NHWC tensors.

    Args:
        input_shape: (N, H, W, C_in) expected from the previous layer
        kernel: Tensor4D of shape (kH, kW, C_in, C_out)
        bias: (C_out,) array
        stride: (stride_h, stride_w)
        padding: (top, bottom, left, right) in input units
        out_shape: (N, H_out, W_out, C_out)
        activation: Activation name or None

    Where:
        H_out = (H + top + bottom - kH) // stride_h + 1
        W_out = (W + left + right - kW) // stride_w + 1
    """

    type = 'conv2d'

    def __init__(self, input_shape, kernel, bias, stride, padding, out_shape, activation=None):
        self.input_shape = input_shape
        self.kernel = kernel
        self.stride_h, self.stride_w = stride
        self.pad_top, self.pad_bottom, self.pad_left, self.pad_right = padding
        self.out_shape = out_shape
        self.activation_name = activation
        self.activation = get_activation(activation)
        # params['kernel'] is the kernel's own buffer, not a copy
        self.params = {'kernel': kernel.data, 'bias': bias}
        self.grads = {}

    @property
    def bias(self):
        return self.params['bias']

    @property
    def padding(self):
        return (self.pad_top, self.pad_bottom, self.pad_left, self.pad_right)

    def __repr__(self):
        kh, kw, _, filters = self.kernel.shape
        return (f"Conv2D({filters}, kernel=({kh}, {kw}), "
                f"stride=({self.stride_h}, {self.stride_w}), padding={self.padding})")


class PoolLayer:
    """
    Max Pooling Layer.

    Args:
        input_shape: (N, H, W, C) expected from the previous layer
        window: (window_h, window_w)
        stride: (stride_h, stride_w)
        out_shape: (N, H_out, W_out, C)
    """

    type = 'pool'

    def __init__(self, input_shape, window, stride, out_shape):
        self.input_shape = input_shape
        self.window_h, self.window_w = window
        self.stride_h, self.stride_w = stride
        self.channels = out_shape[3]
        self.out_shape = out_shape
        self.params = {}
        self.grads = {}

    def __repr__(self):
        return (f"Pool(size=({self.window_h}, {self.window_w}), "
                f"stride=({self.stride_h}, {self.stride_w}))")


class FlattenLayer:
    """Reshapes a batch-1 NHWC tensor into a vector of `size` values."""

    type = 'flatten'

    def __init__(self, size):
        self.size = size
        self.params = {}
        self.grads = {}

    def __repr__(self):
        return f"Flatten(size={self.size})"


# ============================================================================
# Caches (one forward/backward round trip)
# ============================================================================

InputCache = namedtuple('InputCache', ['shape'])

DenseCache = namedtuple('DenseCache', ['input', 'z', 'output', 'input_shape'])

Conv2DCache = namedtuple('Conv2DCache', [
    'input', 'padded', 'kernel', 'col', 'post_act',
    'out_h', 'out_w', 'stride_h', 'stride_w', 'pad_top', 'pad_left',
])

PoolCache = namedtuple('PoolCache', [
    'input_shape', 'window_h', 'window_w', 'stride_h', 'stride_w',
    'out_h', 'out_w', 'mask',
])

FlattenCache = namedtuple('FlattenCache', ['shape'])


# ============================================================================
# Shape inference
# ============================================================================

def output_shape(layer):
    """(N, H, W, C) produced by a layer. Vector layers report (1, 1, 1, size)."""
    if layer.type == 'input':
        return layer.shape
    if layer.type == 'dense':
        return (1, 1, 1, layer.output_size)
    if layer.type in ('conv2d', 'pool'):
        return layer.out_shape
    if layer.type == 'flatten':
        return (1, 1, 1, layer.size)
    raise ConfigurationError(f"Unknown layer type '{layer.type}'")


def output_size(layer):
    """Number of values per sample produced by a layer."""
    _, h, w, c = output_shape(layer)
    return h * w * c


def conv_output_size(size, pad_total, kernel, stride):
    """floor((size + pad_total - kernel) / stride) + 1"""
    return (size + pad_total - kernel) // stride + 1


def same_padding(kernel):
    """
    Split the padding a stride-1 convolution needs to keep the input size.

    Any odd remainder goes to the bottom/right side.
    """
    total = max(0, kernel - 1)
    before = total // 2
    return before, total - before


# ============================================================================
# Builders
# ============================================================================

def _positive_int(value, what):
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0:
        raise ConfigurationError(f"{what} must be a positive integer, got {value!r}")
    return int(value)


def _pair(value, what):
    """Accept an int or a two-element sequence of positive ints."""
    if isinstance(value, (int, np.integer)) and not isinstance(value, bool):
        value = (value, value)
    try:
        first, second = value
    except (TypeError, ValueError):
        raise ConfigurationError(f"{what} must be an int or a pair of ints, got {value!r}")
    return _positive_int(first, what), _positive_int(second, what)


def build_input_layer(config):
    shape = config.get('shape')
    try:
        shape = tuple(_positive_int(d, 'Input shape entry') for d in shape)
    except TypeError:
        raise ConfigurationError(f"Input shape must be (N, H, W, C), got {shape!r}")
    if len(shape) != 4:
        raise ConfigurationError(f"Input shape must be (N, H, W, C), got {shape!r}")
    return InputLayer(shape)


def build_dense_layer(config, input_size):
    """
    Build a Dense layer.

    Weights: (U(0,1) - 0.5) * sqrt(2 / (in + out))
    Bias:    (U(0,1) - 0.5) * 0.1
    """
    output_size = _positive_int(config.get('size'), 'Dense size')
    activation = config.get('activation')
    if activation is not None and not is_softmax(activation):
        get_activation(activation)  # validate the name early

    scale = np.sqrt(2.0 / (input_size + output_size))
    weights = (np.random.rand(output_size, input_size) - 0.5) * scale
    bias = (np.random.rand(output_size) - 0.5) * 0.1

    return DenseLayer(input_size, output_size, weights, bias, activation=activation)


def _resolve_padding(padding, kernel_h, kernel_w):
    if padding is None or padding == 'valid':
        return (0, 0, 0, 0)
    if padding == 'same':
        top, bottom = same_padding(kernel_h)
        left, right = same_padding(kernel_w)
        return (top, bottom, left, right)
    if isinstance(padding, str):
        raise ConfigurationError(f"Unknown padding '{padding}'. Available: valid, same")
    try:
        pads = tuple(int(p) for p in padding)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Padding must be 'valid', 'same' or 4 ints, got {padding!r}")
    if len(pads) != 4 or any(p < 0 for p in pads):
        raise ConfigurationError(
            f"Explicit padding must be (top, bottom, left, right) >= 0, got {padding!r}")
    return pads


def build_conv2d_layer(config, prev):
    """
    Build a Conv2D layer from its config and the previous layer.

    Kernel: (U(0,1) - 0.5) * 0.1, shape (kH, kW, C_in, C_out)
    Bias:   zeros
    """
    if prev is None or prev.type not in ('input', 'conv2d', 'pool'):
        raise ConfigurationError("Conv2D must follow an input/conv/pool")

    activation = config.get('activation')
    if is_softmax(activation):
        raise ConfigurationError("softmax is only supported on dense layers")

    n, h_in, w_in, c_in = output_shape(prev)
    filters = _positive_int(config.get('filters'), 'Conv2D filters')
    kernel_h, kernel_w = _pair(config.get('kernel'), 'Conv2D kernel')
    stride = _pair(config.get('stride') or 1, 'Conv2D stride')
    padding = _resolve_padding(config.get('padding', 'valid'), kernel_h, kernel_w)
    top, bottom, left, right = padding

    h_out = conv_output_size(h_in, top + bottom, kernel_h, stride[0])
    w_out = conv_output_size(w_in, left + right, kernel_w, stride[1])
    if h_out <= 0 or w_out <= 0:
        raise ConfigurationError(
            f"Conv2D kernel ({kernel_h}, {kernel_w}) does not fit input ({h_in}, {w_in}) "
            f"with padding {padding}")

    kernel = Tensor4D((kernel_h, kernel_w, c_in, filters))
    kernel.data[:] = (np.random.rand(kernel.size) - 0.5) * 0.1
    bias = np.zeros(filters)

    return Conv2DLayer((n, h_in, w_in, c_in), kernel, bias, stride, padding,
                       (n, h_out, w_out, filters), activation=activation)


def build_pool_layer(config, prev):
    """Build a max Pool layer. Stride defaults to the window size."""
    if prev is None or prev.type in VECTOR_LAYERS:
        raise ConfigurationError("Pool must follow an input/conv/pool layer")

    n, h_in, w_in, channels = output_shape(prev)
    window = _pair(config.get('size'), 'Pool size')
    stride = _pair(config.get('stride') or window, 'Pool stride')

    h_out = conv_output_size(h_in, 0, window[0], stride[0])
    w_out = conv_output_size(w_in, 0, window[1], stride[1])
    if h_out <= 0 or w_out <= 0:
        raise ConfigurationError(f"Pool window {window} does not fit input ({h_in}, {w_in})")

    return PoolLayer((n, h_in, w_in, channels), window, stride, (n, h_out, w_out, channels))


def build_flatten_layer(prev):
    if prev is None or prev.type in VECTOR_LAYERS:
        raise ConfigurationError("Flatten must follow an input/conv/pool layer")
    return FlattenLayer(output_size(prev))


def build_layer(config, prev=None):
    """
    Build a concrete layer from a config dict and the previous built layer.

    Args:
        config: e.g. {'type': 'dense', 'size': 10, 'activation': 'softmax'}
        prev: Previously built layer, None for the first one

    Returns:
        InputLayer, DenseLayer, Conv2DLayer, PoolLayer or FlattenLayer
    """
    if not isinstance(config, dict):
        raise ConfigurationError(f"Layer config must be a dict, got {type(config).__name__}")

    layer_type = config.get('type')
    if layer_type == 'input':
        return build_input_layer(config)
    if layer_type not in LAYER_TYPES:
        available = ', '.join(LAYER_TYPES)
        raise ConfigurationError(f"Unknown layer type '{layer_type}'. Available: {available}")
    if prev is None:
        raise ConfigurationError(f"{layer_type} layer needs a previous layer")

    if layer_type == 'dense':
        return build_dense_layer(config, output_size(prev))
    if layer_type == 'conv2d':
        return build_conv2d_layer(config, prev)
    if layer_type == 'pool':
        return build_pool_layer(config, prev)
    return build_flatten_layer(prev)


# ============================================================================
# Forward pass
# ============================================================================

def _as_tensor(value, layer_type):
    if isinstance(value, Tensor4D):
        return value
    if isinstance(value, np.ndarray) and value.ndim == 4:
        return Tensor4D.from_numpy(value)
    raise UnsupportedOperationError(f"{layer_type} layer expects a 4D tensor input")


def input_forward(layer, value, debug=False):
    """
    Pass the sample through.

    A flat vector fed to a spatial input layer (H or W > 1) is reshaped into
    a tensor of the declared shape.
    """
    n, h, w, c = layer.shape
    if isinstance(value, np.ndarray) and value.ndim == 1 and (h > 1 or w > 1):
        value = Tensor4D(layer.shape, value)
    return value, InputCache(layer.shape)


def dense_forward(layer, value, debug=False):
    """
    z = W @ x + b, then the activation (or softmax).

    A 4D tensor input contributes only its first batch element, flattened.
    """
    input_shape = None
    if isinstance(value, np.ndarray) and value.ndim == 4:
        value = Tensor4D.from_numpy(value)
    if isinstance(value, Tensor4D):
        input_shape = value.shape
        value = value.flatten()[0]
    if not isinstance(value, np.ndarray) or value.ndim != 1:
        raise UnsupportedOperationError("Dense layer expects a vector or a 4D tensor input")
    if value.size != layer.input_size:
        raise ShapeMismatchError(
            f"Dense layer expects {layer.input_size} inputs, got {value.size}")

    x = value.astype(np.float64, copy=False)
    z = layer.weights @ x + layer.bias

    if layer.is_softmax:
        output = softmax(z)
    elif layer.activation is not None:
        output = np.asarray(layer.activation.f(z), dtype=np.float64)
    else:
        output = z.copy()

    if debug:
        _check_finite(z, 'pre-activation', layer.type)
        _check_finite(output, 'output', layer.type)

    return output, DenseCache(x, z, output, input_shape)


def _windows(array, window_h, window_w, stride_h, stride_w, out_h, out_w):
    """
    View every window of an NHWC array without copying.

    Returns:
        Array of shape (N, out_h, out_w, window_h, window_w, C)
    """
    s_n, s_h, s_w, s_c = array.strides
    shape = (array.shape[0], out_h, out_w, window_h, window_w, array.shape[3])
    strides = (s_n, s_h * stride_h, s_w * stride_w, s_h, s_w, s_c)
    return np.lib.stride_tricks.as_strided(array, shape=shape, strides=strides, writeable=False)


def conv2d_forward(layer, value, debug=False):
    """
    Convolution using im2col.

    For every batch n, output position (oy, ox) and filter f:

        out[n, oy, ox, f] = bias[f] + sum_{ky, kx, c}
            padded[n, oy*sH + ky, ox*sW + kx, c] * kernel[ky, kx, c, f]

    All windows are gathered into one (N*H_out*W_out, kH*kW*C_in) matrix whose
    columns are ordered (ky, kx, c), the same order as the kernel buffer, so
    the whole layer is one matrix multiplication.
    """
    x = _as_tensor(value, layer.type)
    if x.shape != tuple(layer.input_shape):
        raise ShapeMismatchError(
            f"Conv2D layer expects input shape {layer.input_shape}, got {x.shape}")

    padded = x.pad(layer.pad_top, layer.pad_bottom, layer.pad_left, layer.pad_right)
    kernel = layer.kernel
    kh, kw, c_in, c_out = kernel.shape
    n, out_h, out_w, _ = layer.out_shape

    patches = _windows(padded.to_numpy(), kh, kw, layer.stride_h, layer.stride_w, out_h, out_w)
    col = patches.reshape(n * out_h * out_w, kh * kw * c_in)

    z = col @ kernel.data.reshape(kh * kw * c_in, c_out) + layer.bias
    if layer.activation is not None:
        z = layer.activation.f(z)

    if debug:
        _check_finite(z, 'output', layer.type)

    out = Tensor4D(layer.out_shape, z)
    cache = Conv2DCache(
        input=x, padded=padded, kernel=kernel, col=col, post_act=out,
        out_h=out_h, out_w=out_w, stride_h=layer.stride_h, stride_w=layer.stride_w,
        pad_top=layer.pad_top, pad_left=layer.pad_left,
    )
    return out, cache


def pool_forward(layer, value, debug=False):
    """
    Max pooling that records where every maximum came from.

    The mask holds, for each (n, oy, ox, c) in that order, the flat index of
    the winning element in the input buffer. Ties go to the first element in
    window row-major order.
    """
    x = _as_tensor(value, layer.type)
    if x.shape != tuple(layer.input_shape):
        raise ShapeMismatchError(
            f"Pool layer expects input shape {layer.input_shape}, got {x.shape}")

    n, out_h, out_w, channels = layer.out_shape
    wh, ww = layer.window_h, layer.window_w
    sh, sw = layer.stride_h, layer.stride_w

    windows = _windows(x.to_numpy(), wh, ww, sh, sw, out_h, out_w)
    # (N, out_h, out_w, C, wh*ww)
    windows_flat = windows.transpose(0, 1, 2, 5, 3, 4).reshape(n, out_h, out_w, channels, wh * ww)

    output = np.max(windows_flat, axis=-1)
    local = np.argmax(windows_flat, axis=-1)

    s_n, s_h, s_w, _ = x.strides
    n_idx = np.arange(n).reshape(n, 1, 1, 1)
    rows = np.arange(out_h).reshape(1, out_h, 1, 1) * sh + local // ww
    cols = np.arange(out_w).reshape(1, 1, out_w, 1) * sw + local % ww
    c_idx = np.arange(channels).reshape(1, 1, 1, channels)
    mask = (n_idx * s_n + rows * s_h + cols * s_w + c_idx).ravel()

    if debug:
        _check_finite(output, 'output', layer.type)

    cache = PoolCache(
        input_shape=x.shape, window_h=wh, window_w=ww, stride_h=sh, stride_w=sw,
        out_h=out_h, out_w=out_w, mask=mask,
    )
    return Tensor4D(layer.out_shape, output), cache


def flatten_forward(layer, value, debug=False):
    """Flatten a batch-1 tensor into a single vector."""
    x = _as_tensor(value, layer.type)
    if x.shape[0] != 1:
        raise UnsupportedOperationError("Flatten only supports a batch size of 1")
    return x.flatten()[0], FlattenCache(x.shape)


# ============================================================================
# Backward pass
# ============================================================================

def input_backward(layer, grad, cache, learning_rate, softmax_shortcut=False):
    return grad


def dense_backward(layer, grad, cache, learning_rate, softmax_shortcut=False):
    """
    Backward pass with clipped gradients and an in-place SGD step.

        dZ[i]   = clip(grad[i] * df(y[i]))      (clip(grad[i]) for softmax + CE)
        dW[i,j] = clip(dZ[i] * x[j])
        dB[i]   = clip(dZ[i])
        dX[j]   = clip(sum_i W[i,j] * dZ[i])

    Every value is clamped to [-1, 1] before use. This bounds exploding
    gradients at the cost of an inexact gradient near saturation.

    Args:
        softmax_shortcut: The incoming gradient is already (prediction - target)
                          w.r.t. z, as for a softmax output trained with
                          categorical cross-entropy.
    """
    if not isinstance(cache, DenseCache):
        raise UnsupportedOperationError(
            f"Dense backward got a {type(cache).__name__} cache")
    grad = np.asarray(grad, dtype=np.float64)
    if grad.ndim != 1 or grad.size != layer.output_size:
        raise ShapeMismatchError(
            f"Dense backward expects {layer.output_size} gradient values, got {grad.size}")

    if softmax_shortcut:
        dz = clip(grad)
    elif layer.is_softmax:
        # Full softmax Jacobian-vector product: y * (g - sum(g * y))
        y = cache.output
        dz = clip(y * (grad - np.dot(grad, y)))
    elif layer.activation is not None:
        dz = clip(grad * layer.activation.df(cache.output))
    else:
        dz = clip(grad)

    d_weights = clip(np.outer(dz, cache.input))
    d_bias = clip(dz)
    dx = clip(layer.weights.T @ dz)

    _check_finite(dz, 'dZ', layer.type)
    _check_finite(d_weights, 'weight gradient', layer.type)
    _check_finite(dx, 'input gradient', layer.type)

    layer.params['weights'] -= learning_rate * d_weights
    layer.params['bias'] -= learning_rate * d_bias
    layer.grads = {'weights': d_weights, 'bias': d_bias}

    if cache.input_shape is not None:
        # Input came from a tensor; only its first batch element was used
        out = Tensor4D(cache.input_shape)
        out.data[:dx.size] = dx
        return out
    return dx


def conv2d_backward(layer, grad, cache, learning_rate, softmax_shortcut=False):
    """
    Backward pass for Conv2D.

        dZ      = grad * df(post_activation)
        dKernel = col.T @ dZ                 (summed over every window)
        dBias   = sum of dZ per filter
        dPadded = col2im(dZ @ kernel.T)      (overlapping windows accumulate)
        dInput  = dPadded cropped back to the un-padded input

    Kernel and bias are then updated in place.
    """
    if not isinstance(cache, Conv2DCache):
        raise UnsupportedOperationError(
            f"Conv2D backward got a {type(cache).__name__} cache")
    grad = _as_tensor(grad, layer.type)
    if grad.shape != tuple(layer.out_shape):
        raise ShapeMismatchError(
            f"Conv2D backward expects gradient shape {layer.out_shape}, got {grad.shape}")

    kernel = cache.kernel
    kh, kw, c_in, c_out = kernel.shape
    n, h_pad, w_pad, _ = cache.padded.shape
    out_h, out_w = cache.out_h, cache.out_w
    sh, sw = cache.stride_h, cache.stride_w

    dz = grad.data.reshape(-1, c_out)
    if layer.activation is not None:
        dz = dz * layer.activation.df(cache.post_act.data.reshape(-1, c_out))

    kernel_col = kernel.data.reshape(kh * kw * c_in, c_out)
    d_kernel = cache.col.T @ dz
    d_bias = np.sum(dz, axis=0)
    d_col = (dz @ kernel_col.T).reshape(n, out_h, out_w, kh, kw, c_in)

    # col2im
    d_padded = np.zeros((n, h_pad, w_pad, c_in))
    for oy in range(out_h):
        for ox in range(out_w):
            y0 = oy * sh
            x0 = ox * sw
            d_padded[:, y0:y0 + kh, x0:x0 + kw, :] += d_col[:, oy, ox]

    _, h_in, w_in, _ = cache.input.shape
    d_input = Tensor4D.from_numpy(
        d_padded[:, cache.pad_top:cache.pad_top + h_in, cache.pad_left:cache.pad_left + w_in, :])

    _check_finite(dz, 'dZ', layer.type)
    _check_finite(d_kernel, 'kernel gradient', layer.type)
    _check_finite(d_input.data, 'input gradient', layer.type)

    kernel.data -= learning_rate * d_kernel.ravel()
    layer.params['bias'] -= learning_rate * d_bias
    layer.grads = {'kernel': d_kernel.reshape(kernel.shape), 'bias': d_bias}

    return d_input


def pool_backward(layer, grad, cache, learning_rate, softmax_shortcut=False):
    """Route every output gradient to the input position that won its window."""
    if not isinstance(cache, PoolCache):
        raise UnsupportedOperationError(
            f"Pool backward got a {type(cache).__name__} cache")
    grad = _as_tensor(grad, layer.type)
    if grad.size != cache.mask.size:
        raise ShapeMismatchError(
            f"Pool backward expects {cache.mask.size} gradient values, got {grad.size}")

    d_input = Tensor4D(cache.input_shape)
    # add.at accumulates when overlapping windows share a winner
    np.add.at(d_input.data, cache.mask, grad.data)
    return d_input


def flatten_backward(layer, grad, cache, learning_rate, softmax_shortcut=False):
    """Reshape the vector gradient back into the cached tensor shape."""
    if not isinstance(cache, FlattenCache):
        raise UnsupportedOperationError(
            f"Flatten backward got a {type(cache).__name__} cache")
    if isinstance(grad, Tensor4D):
        grad = grad.data
    grad = np.asarray(grad, dtype=np.float64)
    if grad.ndim != 1:
        raise UnsupportedOperationError("Flatten backward expects a vector gradient")
    return Tensor4D(cache.shape, grad)


FORWARD = {
    'input': input_forward,
    'dense': dense_forward,
    'conv2d': conv2d_forward,
    'pool': pool_forward,
    'flatten': flatten_forward,
}

BACKWARD = {
    'input': input_backward,
    'dense': dense_backward,
    'conv2d': conv2d_backward,
    'pool': pool_backward,
    'flatten': flatten_backward,
}


# ============================================================================
# Checkpoint records
# ============================================================================

def _ints(values):
    return [int(v) for v in values]


def serialize_layer(layer):
    """
    Plain-Python record of a layer (JSON friendly, no shared buffers).

    Field names follow the checkpoint wire format.
    """
    if layer.type == 'input':
        return {'type': 'input', 'shape': _ints(layer.shape)}

    if layer.type == 'flatten':
        return {'type': 'flatten', 'size': int(layer.size)}

    if layer.type == 'pool':
        return {
            'type': 'pool',
            'windowH': layer.window_h,
            'windowW': layer.window_w,
            'strideH': layer.stride_h,
            'strideW': layer.stride_w,
            'channels': layer.channels,
            'outShape': _ints(layer.out_shape),
        }

    if layer.type == 'dense':
        record = {
            'type': 'dense',
            'inputSize': layer.input_size,
            'outputSize': layer.output_size,
            'weights': layer.weights.ravel().tolist(),
            'bias': layer.bias.tolist(),
        }
        if layer.activation_name is not None:
            record['activation'] = _activation_id(layer.activation_name)
        return record

    if layer.type == 'conv2d':
        record = {
            'type': 'conv2d',
            'strideH': layer.stride_h,
            'strideW': layer.stride_w,
            'padTop': layer.pad_top,
            'padBottom': layer.pad_bottom,
            'padLeft': layer.pad_left,
            'padRight': layer.pad_right,
            'kernel': layer.kernel.data.tolist(),
            'kernelShape': _ints(layer.kernel.shape),
            'bias': layer.bias.tolist(),
            'outShape': _ints(layer.out_shape),
        }
        if layer.activation_name is not None:
            record['activation'] = _activation_id(layer.activation_name)
        return record

    raise ConfigurationError(f"Unknown layer type '{layer.type}'")


def _activation_id(name):
    if is_softmax(name):
        return SOFTMAX
    activation = get_activation(name)
    return activation.wire_id or activation.name


REQUIRED_FIELDS = {
    'input': ('shape',),
    'flatten': (),
    'pool': ('windowH', 'windowW', 'strideH', 'strideW'),
    'dense': ('outputSize', 'weights', 'bias'),
    'conv2d': ('strideH', 'strideW', 'padTop', 'padBottom', 'padLeft', 'padRight',
               'kernel', 'kernelShape', 'bias', 'outShape'),
}


def config_from_record(record):
    """
    Rebuild a layer config from a checkpoint record.

    Conv2D pads are reapplied verbatim from padTop/padBottom/padLeft/padRight,
    so 'same' layers come back with the geometry they were trained with.
    """
    if not isinstance(record, dict):
        raise ConfigurationError(f"Layer record must be a dict, got {type(record).__name__}")
    layer_type = record.get('type')
    if layer_type not in REQUIRED_FIELDS:
        raise ConfigurationError(f"Unknown layer type '{layer_type}' in checkpoint")
    missing = [key for key in REQUIRED_FIELDS[layer_type] if key not in record]
    if missing:
        raise ConfigurationError(
            f"{layer_type} record is missing fields: {', '.join(missing)}")

    if layer_type == 'input':
        return {'type': 'input', 'shape': tuple(record['shape'])}
    if layer_type == 'flatten':
        return {'type': 'flatten'}
    if layer_type == 'pool':
        return {
            'type': 'pool',
            'size': (record['windowH'], record['windowW']),
            'stride': (record['strideH'], record['strideW']),
        }
    if layer_type == 'dense':
        return {
            'type': 'dense',
            'size': record['outputSize'],
            'activation': record.get('activation'),
        }
    kernel_shape = record['kernelShape']
    return {
        'type': 'conv2d',
        'filters': record['outShape'][3],
        'kernel': (kernel_shape[0], kernel_shape[1]),
        'stride': (record['strideH'], record['strideW']),
        'padding': (record['padTop'], record['padBottom'],
                    record['padLeft'], record['padRight']),
        'activation': record.get('activation'),
    }


def _copy_into(target, values, what):
    values = np.array(values, dtype=np.float64).ravel()
    if values.size != target.size:
        raise ConfigurationError(
            f"Checkpoint {what} has {values.size} values, layer expects {target.size}")
    target.reshape(-1)[:] = values


def restore_params(layer, record):
    """Copy checkpointed parameters into a freshly built layer, in place."""
    if layer.type == 'dense':
        if 'inputSize' in record and record['inputSize'] != layer.input_size:
            raise ConfigurationError(
                f"Dense record inputSize {record['inputSize']} does not match "
                f"rebuilt layer input size {layer.input_size}")
        _copy_into(layer.params['weights'], record['weights'], 'dense weights')
        _copy_into(layer.params['bias'], record['bias'], 'dense bias')
    elif layer.type == 'conv2d':
        if tuple(record['kernelShape']) != layer.kernel.shape:
            raise ConfigurationError(
                f"Checkpoint kernel shape {tuple(record['kernelShape'])} does not match "
                f"rebuilt kernel shape {layer.kernel.shape}")
        _copy_into(layer.kernel.data, record['kernel'], 'conv kernel')
        _copy_into(layer.params['bias'], record['bias'], 'conv bias')
