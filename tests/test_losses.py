"""
test_losses.py
~~~~~~~~~~~~~~

Unit tests for the loss functors.
"""

import numpy as np
import pytest

from digitnet.exceptions import ShapeMismatchError
from digitnet.losses import CrossEntropy, MeanSquaredError, get_loss
from digitnet.tensor import Tensor


def column(values):
    """Batch of one sample with ``values`` along the channel axis."""
    return Tensor.from_array(np.asarray(values, dtype=float).reshape(1, -1, 1, 1))


@pytest.mark.unit
class TestCrossEntropy:
    """Test cross-entropy forward and backward."""

    def test_forward(self):
        """Test -sum(label * log(p)) for a one-hot label."""
        loss = CrossEntropy()
        value = loss.forward(column([0.25, 0.75]), column([0.0, 1.0]))
        assert value == pytest.approx(-np.log(0.75))

    def test_forward_averages_over_batch(self):
        """Test that the loss is divided by the batch size."""
        loss = CrossEntropy()
        prediction = Tensor.from_array(np.full((2, 2, 1, 1), 0.5))
        label = Tensor.from_array(np.array([1.0, 0.0, 0.0, 1.0]).reshape(2, 2, 1, 1))
        assert loss.forward(prediction, label) == pytest.approx(np.log(2.0))

    def test_zero_probability_is_finite(self):
        """Test that a zero probability on the target stays finite."""
        loss = CrossEntropy()
        prediction = column([1.0, 0.0])
        label = column([0.0, 1.0])
        assert np.isfinite(loss.forward(prediction, label))
        assert np.all(np.isfinite(loss.backward(prediction, label).data))

    def test_backward(self):
        """Test -label / p."""
        loss = CrossEntropy()
        grad = loss.backward(column([0.25, 0.5]), column([0.0, 1.0])).data
        np.testing.assert_allclose(grad.reshape(-1), [0.0, -2.0])


@pytest.mark.unit
class TestMeanSquaredError:
    """Test squared-error forward and backward."""

    def test_forward(self):
        """Test the summed squared difference."""
        loss = MeanSquaredError()
        assert loss.forward(column([1.0, 0.0]), column([0.0, 0.5])) == pytest.approx(1.25)

    def test_backward(self):
        """Test 2 * (prediction - label)."""
        loss = MeanSquaredError()
        grad = loss.backward(column([1.0, 0.0]), column([0.0, 0.5])).data
        np.testing.assert_allclose(grad.reshape(-1), [2.0, -1.0])

    def test_perfect_prediction(self):
        """Test zero loss and zero gradient on an exact match."""
        loss = MeanSquaredError()
        assert loss.forward(column([0.2, 0.8]), column([0.2, 0.8])) == 0.0
        assert np.all(loss.backward(column([0.2, 0.8]), column([0.2, 0.8])).data == 0.0)


@pytest.mark.unit
class TestLossFactory:
    """Test loss lookup and shape checks."""

    def test_registered_names(self):
        """Test that both losses resolve by name."""
        assert isinstance(get_loss('cross_entropy'), CrossEntropy)
        assert isinstance(get_loss('mse'), MeanSquaredError)

    def test_unknown_name(self):
        """Test that unknown names are rejected."""
        with pytest.raises(ValueError):
            get_loss('hinge')

    @pytest.mark.parametrize("loss", [CrossEntropy(), MeanSquaredError()])
    def test_shape_mismatch(self, loss):
        """Test that prediction and label shapes must agree."""
        with pytest.raises(ShapeMismatchError):
            loss.forward(column([0.5, 0.5]), column([0.0, 0.0, 1.0]))
