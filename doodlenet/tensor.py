"""
Tensor4D
========

A 4-dimensional (batch, height, width, channel) buffer in NHWC order.

The data lives in one flat float64 array. Element (n, y, x, c) sits at

    n * H*W*C + y * W*C + x * C + c

so strides are (H*W*C, W*C, C, 1). Coordinates are not bounds-checked:
callers are expected to respect the shape.
"""

import numpy as np

from .errors import ShapeMismatchError


def _as_shape(shape):
    try:
        shape = tuple(int(d) for d in shape)
    except (TypeError, ValueError):
        raise ShapeMismatchError(f"Tensor shape must be four integers, got {shape!r}")
    if len(shape) != 4 or any(d <= 0 for d in shape):
        raise ShapeMismatchError(f"Tensor shape must be four positive integers, got {shape}")
    return shape


class Tensor4D:
    """
    NHWC tensor with a flat row-major buffer.

    Args:
        shape: (N, H, W, C)
        data: Optional initial values, any array-like of N*H*W*C numbers.
              The values are copied, never aliased.

    Example:
        >>> t = Tensor4D((1, 2, 2, 1), [1, 2, 3, 4])
        >>> t.get(0, 1, 0, 0)
        3.0
    """

    def __init__(self, shape, data=None):
        self.shape = _as_shape(shape)
        n, h, w, c = self.shape
        self.strides = (h * w * c, w * c, c, 1)
        size = n * h * w * c

        if data is None:
            self.data = np.zeros(size, dtype=np.float64)
        else:
            data = np.array(data, dtype=np.float64).ravel()
            if data.size != size:
                raise ShapeMismatchError(
                    f"Buffer size mismatch: {data.size} values for shape {self.shape}")
            self.data = data

    @classmethod
    def from_numpy(cls, array):
        """Build a tensor from an (N, H, W, C) array."""
        array = np.asarray(array, dtype=np.float64)
        if array.ndim != 4:
            raise ShapeMismatchError(f"Expected a 4D array, got {array.ndim}D")
        return cls(array.shape, array)

    @property
    def size(self):
        return self.data.size

    def get_n(self):
        return self.shape[0]

    def get_h(self):
        return self.shape[1]

    def get_w(self):
        return self.shape[2]

    def get_c(self):
        return self.shape[3]

    # Element access

    def index_of(self, n, y, x, c):
        """Flat buffer index of (n, y, x, c)."""
        s_n, s_h, s_w, s_c = self.strides
        return n * s_n + y * s_h + x * s_w + c * s_c

    def unravel(self, index):
        """Decode a flat buffer index back into (n, y, x, c)."""
        s_n, s_h, s_w, _ = self.strides
        n, rem = divmod(int(index), s_n)
        y, rem = divmod(rem, s_h)
        x, c = divmod(rem, s_w)
        return n, y, x, c

    def get(self, n, y, x, c):
        return float(self.data[self.index_of(n, y, x, c)])

    def set(self, n, y, x, c, value):
        self.data[self.index_of(n, y, x, c)] = value

    def to_numpy(self):
        """(N, H, W, C) view of the buffer. Writes go through to the tensor."""
        return self.data.reshape(self.shape)

    # Filling and copying

    def fill(self, value):
        self.data.fill(value)

    def set_each(self, fn):
        """Assign fn() to every element, in buffer order."""
        for i in range(self.data.size):
            self.data[i] = fn()

    def clone(self):
        return Tensor4D(self.shape, self.data)

    # Shape operations

    def flatten(self):
        """Return one flat copy per batch element."""
        step = self.strides[0]
        return [self.data[i * step:(i + 1) * step].copy() for i in range(self.shape[0])]

    def pad(self, pad_top, pad_bottom, pad_left, pad_right):
        """New tensor with a zero border; the original sits at (pad_top, pad_left)."""
        padded = np.pad(self.to_numpy(),
                        ((0, 0), (pad_top, pad_bottom), (pad_left, pad_right), (0, 0)),
                        mode='constant')
        return Tensor4D.from_numpy(padded)

    def crop(self, top, left, height, width):
        """New tensor holding rows top..top+height and columns left..left+width."""
        region = self.to_numpy()[:, top:top + height, left:left + width, :]
        return Tensor4D.from_numpy(region)

    def slice_window(self, n, y, x, window_h, window_w):
        """
        Copy a window into a flat, channel-interleaved buffer.

        The result is ordered (dy, dx, c), i.e. the layout of the window as it
        sits in the NHWC buffer.
        """
        window = self.to_numpy()[n, y:y + window_h, x:x + window_w, :]
        return window.reshape(-1).copy()

    def pool2d(self, window_h, window_w, stride_h, stride_w, mode='max'):
        """
        Pool over every window and return the smaller tensor.

        Convenience op: the Pool layer tracks argmax indices for backprop and
        does not use this.

        Args:
            mode: 'max' or 'avg'
        """
        if mode not in ('max', 'avg'):
            raise ValueError(f"Unknown pooling mode '{mode}'. Available: max, avg")

        n_batch, h, w, c = self.shape
        h_out = (h - window_h) // stride_h + 1
        w_out = (w - window_w) // stride_w + 1
        out = Tensor4D((n_batch, h_out, w_out, c))
        out_view = out.to_numpy()

        for n in range(n_batch):
            for oy in range(h_out):
                for ox in range(w_out):
                    patch = self.slice_window(n, oy * stride_h, ox * stride_w, window_h, window_w)
                    patch = patch.reshape(-1, c)
                    if mode == 'max':
                        out_view[n, oy, ox] = patch.max(axis=0)
                    else:
                        out_view[n, oy, ox] = patch.sum(axis=0) / (window_h * window_w)

        return out

    def __eq__(self, other):
        if not isinstance(other, Tensor4D):
            return NotImplemented
        return self.shape == other.shape and np.array_equal(self.data, other.data)

    def __repr__(self):
        return f"Tensor4D(shape={self.shape})"
