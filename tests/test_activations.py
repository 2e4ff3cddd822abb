"""
Tests for Activations and Losses
================================

Registry lookups plus the derivative contract: df applied to the OUTPUT of f
must equal the numerical derivative of f at the input.
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from doodlenet.activations import (ACTIVATIONS, Linear, Sigmoid, Tanh, ReLU, LeakyReLU,
                                   ELU, Softplus, softmax, get_activation, is_softmax)
from doodlenet.losses import (MSELoss, BinaryCrossEntropyLoss, CategoricalCrossEntropyLoss,
                              get_loss, EPSILON)
from doodlenet.errors import ConfigurationError, ShapeMismatchError


def numerical_derivative(f, x, epsilon=1e-6):
    return (f(x + epsilon) - f(x - epsilon)) / (2 * epsilon)


# Avoids 0, where relu/leaky_relu/elu have a kink
SAMPLE_POINTS = np.array([-50.0, -8.0, -2.5, -1.0, -0.3, 0.2, 0.7, 1.5, 3.0, 9.0, 50.0])


class TestDerivativeContract:
    """df(f(x)) == f'(x) for every registered activation."""

    @pytest.mark.parametrize('name', sorted(set(cls.name for cls in ACTIVATIONS.values())))
    def test_matches_numerical_derivative(self, name):
        act = get_activation(name)

        analytical = act.df(act.f(SAMPLE_POINTS))
        numerical = numerical_derivative(act.f, SAMPLE_POINTS)

        np.testing.assert_allclose(analytical, numerical, rtol=1e-4, atol=1e-6)

    def test_tanh_clamped_region(self):
        """Past the clamp f is constant, so both derivatives are (numerically) zero."""
        act = Tanh()
        x = np.array([-40.0, -25.0, 25.0, 40.0])

        np.testing.assert_allclose(act.df(act.f(x)), 0.0, atol=1e-12)
        np.testing.assert_allclose(numerical_derivative(act.f, x), 0.0, atol=1e-12)

    def test_tanh_never_overflows(self):
        act = Tanh()
        y = act.f(np.array([-1e308, 1e308]))
        np.testing.assert_array_equal(y, [np.tanh(-20.0), np.tanh(20.0)])

    def test_sigmoid_extreme_inputs(self):
        act = Sigmoid()
        y = act.f(np.array([-1e4, 0.0, 1e4]))

        assert np.all(np.isfinite(y))
        assert y[1] == 0.5

    def test_softplus_derivative_is_sigmoid(self):
        x = np.linspace(-5, 5, 11)
        np.testing.assert_allclose(Softplus().df(Softplus().f(x)), Sigmoid().f(x), rtol=1e-10)


class TestActivationValues:
    """Forward values of the elementwise activations."""

    def test_relu(self):
        np.testing.assert_array_equal(ReLU().f(np.array([-2.0, 0.0, 3.0])), [0, 0, 3])

    def test_leaky_relu(self):
        np.testing.assert_allclose(LeakyReLU().f(np.array([-2.0, 3.0])), [-0.02, 3.0])

    def test_elu(self):
        y = ELU().f(np.array([-1.0, 2.0]))
        np.testing.assert_allclose(y, [np.exp(-1.0) - 1, 2.0])

    def test_linear(self):
        x = np.array([-1.5, 2.0])
        np.testing.assert_array_equal(Linear().f(x), x)
        np.testing.assert_array_equal(Linear().df(x), [1.0, 1.0])


class TestSoftmax:
    """Tests for softmax()."""

    def test_sums_to_one(self):
        z = np.random.randn(10) * 5
        p = softmax(z)

        assert np.isclose(np.sum(p), 1.0)
        assert np.all(p > 0)

    def test_stable_for_large_inputs(self):
        p = softmax(np.array([1000.0, 1000.0, -1000.0]))
        np.testing.assert_allclose(p, [0.5, 0.5, 0.0], atol=1e-12)

    def test_shift_invariant(self):
        z = np.array([0.1, 2.0, -1.0])
        np.testing.assert_allclose(softmax(z), softmax(z + 100))


class TestRegistry:
    """Tests for get_activation() and get_loss()."""

    def test_lookup_is_case_insensitive(self):
        assert isinstance(get_activation('ReLU'), ReLU)
        assert isinstance(get_activation('leaky-relu'), LeakyReLU)

    def test_none_means_no_activation(self):
        assert get_activation(None) is None

    def test_instance_passes_through(self):
        act = ELU(alpha=0.5)
        assert get_activation(act) is act

    def test_unknown_activation(self):
        with pytest.raises(ConfigurationError):
            get_activation('swish')

    def test_softmax_is_not_elementwise(self):
        assert is_softmax('Softmax')
        with pytest.raises(ConfigurationError):
            get_activation('softmax')

    def test_loss_aliases(self):
        assert isinstance(get_loss('mse'), MSELoss)
        assert isinstance(get_loss('binary_crossentropy'), BinaryCrossEntropyLoss)
        assert isinstance(get_loss('cross_entropy'), CategoricalCrossEntropyLoss)

    def test_unknown_loss(self):
        with pytest.raises(ConfigurationError):
            get_loss('hinge')


class TestLosses:
    """Loss values and gradients."""

    def test_mse(self):
        loss = MSELoss()
        pred = np.array([1.0, 2.0])
        target = np.array([0.0, 4.0])

        # 0.5 * (1 + 4) / 2
        assert loss.f(pred, target) == pytest.approx(1.25)
        np.testing.assert_array_equal(loss.df(pred, target), [1.0, -2.0])

    def test_mse_zero_at_target(self):
        loss = MSELoss()
        assert loss.f([0.3, 0.7], [0.3, 0.7]) == 0.0

    def test_bce_gradient(self):
        loss = BinaryCrossEntropyLoss()
        pred = np.array([0.3, 0.8])
        target = np.array([1.0, 0.0])

        numerical = np.array([
            (loss.f(pred + d, target) - loss.f(pred - d, target)) / 2e-6
            for d in (np.array([1e-6, 0.0]), np.array([0.0, 1e-6]))
        ])
        # f is a mean over 2 outputs, df is per output
        np.testing.assert_allclose(loss.df(pred, target) / 2, numerical, rtol=1e-5)

    def test_bce_clips_probabilities(self):
        loss = BinaryCrossEntropyLoss()
        value = loss.f([0.0, 1.0], [1.0, 0.0])

        assert np.isfinite(value)
        assert value == pytest.approx(-np.log(EPSILON), rel=1e-6)

    def test_cce(self):
        loss = CategoricalCrossEntropyLoss()
        pred = np.array([0.2, 0.5, 0.3])
        target = np.array([0.0, 1.0, 0.0])

        assert loss.f(pred, target) == pytest.approx(-np.log(0.5))
        np.testing.assert_allclose(loss.df(pred, target), [0.0, -2.0, 0.0])

    def test_length_mismatch(self):
        with pytest.raises(ShapeMismatchError):
            MSELoss().f([1.0, 2.0], [1.0])
        with pytest.raises(ShapeMismatchError):
            CategoricalCrossEntropyLoss().df([0.5, 0.5], [1.0, 0.0, 0.0])


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
