"""
Tests for Tensor4D
==================

Indexing, padding, windows, pooling and flattening on NHWC buffers.
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from doodlenet.tensor import Tensor4D
from doodlenet.errors import ShapeMismatchError


def arange_tensor(shape):
    return Tensor4D(shape, np.arange(np.prod(shape), dtype=np.float64))


class TestConstruction:
    """Tests for building tensors."""

    def test_zero_initialized(self):
        t = Tensor4D((2, 3, 4, 5))

        assert t.shape == (2, 3, 4, 5)
        assert t.size == 120
        assert np.all(t.data == 0)

    def test_strides(self):
        """Strides are (H*W*C, W*C, C, 1)."""
        t = Tensor4D((2, 3, 4, 5))
        assert t.strides == (60, 20, 5, 1)

    def test_buffer_size_mismatch(self):
        with pytest.raises(ShapeMismatchError):
            Tensor4D((1, 2, 2, 1), [1, 2, 3])

    def test_invalid_shape(self):
        with pytest.raises(ShapeMismatchError):
            Tensor4D((1, 2, 2))
        with pytest.raises(ShapeMismatchError):
            Tensor4D((1, 0, 2, 1))

    def test_data_is_copied(self):
        """The tensor never aliases the buffer it was given."""
        source = np.arange(4, dtype=np.float64)
        t = Tensor4D((1, 2, 2, 1), source)
        source[0] = 99

        assert t.get(0, 0, 0, 0) == 0

    def test_from_numpy(self):
        array = np.random.randn(1, 3, 3, 2)
        t = Tensor4D.from_numpy(array)

        assert t.shape == (1, 3, 3, 2)
        np.testing.assert_array_equal(t.to_numpy(), array)


class TestElementAccess:
    """Tests for get/set and flat indexing."""

    def test_get_matches_row_major_layout(self):
        t = arange_tensor((2, 3, 4, 5))
        view = np.arange(120).reshape(2, 3, 4, 5)

        assert t.get(1, 2, 3, 4) == view[1, 2, 3, 4]
        assert t.get(0, 1, 2, 3) == view[0, 1, 2, 3]

    def test_set(self):
        t = Tensor4D((1, 2, 2, 2))
        t.set(0, 1, 0, 1, 7.5)

        assert t.get(0, 1, 0, 1) == 7.5
        assert t.data[t.index_of(0, 1, 0, 1)] == 7.5

    def test_unravel_inverts_index_of(self):
        t = Tensor4D((2, 3, 4, 5))
        for coords in [(0, 0, 0, 0), (1, 2, 3, 4), (0, 1, 3, 2), (1, 0, 2, 1)]:
            assert t.unravel(t.index_of(*coords)) == coords

    def test_fill_and_clone(self):
        t = Tensor4D((1, 2, 2, 1))
        t.fill(3.0)
        copy = t.clone()
        copy.set(0, 0, 0, 0, -1.0)

        assert np.all(t.data == 3.0)
        assert copy.get(0, 0, 0, 0) == -1.0
        assert copy != t

    def test_set_each(self):
        t = Tensor4D((1, 2, 2, 1))
        values = iter([1.0, 2.0, 3.0, 4.0])
        t.set_each(lambda: next(values))

        np.testing.assert_array_equal(t.data, [1, 2, 3, 4])


class TestShapeOperations:
    """Tests for pad, crop, slice_window and flatten."""

    def test_pad(self):
        t = arange_tensor((1, 2, 2, 1))
        padded = t.pad(1, 2, 0, 1)

        assert padded.shape == (1, 5, 3, 1)
        assert padded.get(0, 1, 0, 0) == t.get(0, 0, 0, 0)
        assert padded.get(0, 2, 1, 0) == t.get(0, 1, 1, 0)
        # Border is zero
        assert padded.get(0, 0, 0, 0) == 0
        assert padded.get(0, 4, 2, 0) == 0
        assert np.sum(padded.data) == np.sum(t.data)

    def test_crop_inverts_pad(self):
        t = Tensor4D.from_numpy(np.random.randn(1, 4, 3, 2))
        padded = t.pad(1, 0, 2, 1)

        assert padded.crop(1, 2, 4, 3) == t

    def test_slice_window_is_channel_interleaved(self):
        t = arange_tensor((1, 3, 3, 2))
        window = t.slice_window(0, 1, 1, 2, 2)

        expected = [t.get(0, y, x, c) for y in (1, 2) for x in (1, 2) for c in (0, 1)]
        np.testing.assert_array_equal(window, expected)

    def test_flatten_per_batch(self):
        t = arange_tensor((2, 2, 2, 1))
        flat = t.flatten()

        assert len(flat) == 2
        np.testing.assert_array_equal(flat[0], [0, 1, 2, 3])
        np.testing.assert_array_equal(flat[1], [4, 5, 6, 7])

    def test_flatten_returns_copies(self):
        t = arange_tensor((1, 2, 2, 1))
        flat = t.flatten()[0]
        flat[0] = 100

        assert t.get(0, 0, 0, 0) == 0


class TestPool2D:
    """Tests for the convenience pooling op."""

    def test_max_pool(self):
        t = Tensor4D((1, 2, 2, 1), [1, 2, 3, 4])
        out = t.pool2d(2, 2, 2, 2, 'max')

        assert out.shape == (1, 1, 1, 1)
        assert out.get(0, 0, 0, 0) == 4

    def test_avg_pool(self):
        t = Tensor4D((1, 2, 2, 1), [1, 2, 3, 4])
        out = t.pool2d(2, 2, 2, 2, 'avg')

        assert out.get(0, 0, 0, 0) == 2.5

    def test_pool_per_channel(self):
        t = Tensor4D.from_numpy(np.random.randn(1, 4, 4, 3))
        out = t.pool2d(2, 2, 2, 2, 'max')
        view = t.to_numpy()

        assert out.shape == (1, 2, 2, 3)
        for c in range(3):
            assert out.get(0, 1, 0, c) == np.max(view[0, 2:4, 0:2, c])

    def test_unknown_mode(self):
        t = Tensor4D((1, 2, 2, 1))
        with pytest.raises(ValueError):
            t.pool2d(2, 2, 2, 2, 'median')


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
