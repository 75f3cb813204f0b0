"""
losses.py
~~~~~~~~~

Loss functors: scalar batch loss and its gradient with respect to the
network's prediction.
"""

import numpy as np

from digitnet.exceptions import ShapeMismatchError
from digitnet.tensor import Tensor


class LossFunctor:
    """Base class for loss functors."""

    name = ''

    def forward(self, prediction: Tensor, label: Tensor) -> float:
        """Return the loss averaged over the batch."""
        raise NotImplementedError

    def backward(self, prediction: Tensor, label: Tensor) -> Tensor:
        """Return d(loss)/d(prediction)."""
        raise NotImplementedError

    @staticmethod
    def _check(prediction: Tensor, label: Tensor) -> None:
        if prediction.shape != label.shape:
            raise ShapeMismatchError(
                f"Prediction shape {prediction.shape} does not match "
                f"label shape {label.shape}"
            )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class CrossEntropy(LossFunctor):
    """
    Cross-entropy over softmax probabilities and one-hot labels.

    The gradient is taken with respect to the probabilities and is meant
    to be chained through a preceding Softmax layer.
    """

    name = 'cross_entropy'

    def __init__(self, epsilon: float = 1e-10):
        self.epsilon = epsilon

    def forward(self, prediction: Tensor, label: Tensor) -> float:
        self._check(prediction, label)
        probs = np.maximum(prediction.data, self.epsilon)
        return float(-np.sum(label.data * np.log(probs)) / prediction.batch_size)

    def backward(self, prediction: Tensor, label: Tensor) -> Tensor:
        self._check(prediction, label)
        probs = np.maximum(prediction.data, self.epsilon)
        return Tensor.from_array(-(label.data / probs) / prediction.batch_size)


class MeanSquaredError(LossFunctor):
    """Sum of squared differences averaged over the batch."""

    name = 'mse'

    def forward(self, prediction: Tensor, label: Tensor) -> float:
        self._check(prediction, label)
        diff = prediction.data - label.data
        return float(np.sum(diff ** 2) / prediction.batch_size)

    def backward(self, prediction: Tensor, label: Tensor) -> Tensor:
        self._check(prediction, label)
        diff = prediction.data - label.data
        return Tensor.from_array(2.0 * diff / prediction.batch_size)


LOSS_TYPES = {
    loss_cls.name: loss_cls for loss_cls in (CrossEntropy, MeanSquaredError)
}


def get_loss(name: str) -> LossFunctor:
    """
    Factory function to get loss functor instances.

    Args:
        name (str): Loss name ('cross_entropy', 'mse')

    Returns:
        LossFunctor instance
    """
    if name not in LOSS_TYPES:
        raise ValueError(f"Unknown loss: {name}")
    return LOSS_TYPES[name]()
