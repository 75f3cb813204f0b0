"""
tensor.py
~~~~~~~~~

Dense (batch, channels, height, width) buffer used for inputs, labels,
activations, gradients and layer parameters.
"""

from typing import Tuple, Union

import numpy as np

DTYPE = np.float64

Shape = Tuple[int, int, int, int]


def _validate_shape(shape) -> Shape:
    """Check that ``shape`` is four non-negative integers."""
    shape = tuple(int(dim) for dim in shape)
    if len(shape) != 4:
        raise ValueError(
            f"Tensor shape must be (N, C, H, W), got {shape}"
        )
    if any(dim < 0 for dim in shape):
        raise ValueError(f"Tensor dimensions must be non-negative, got {shape}")
    return shape


class Tensor:
    """
    Contiguous, zero-initialized numeric buffer with shape (N, C, H, W).

    The shape is fixed at construction. A tensor with a different batch
    size is obtained through :meth:`with_batch`, which re-creates the
    buffer instead of resizing it.
    """

    __slots__ = ('_shape', '_data')

    def __init__(self, shape, dtype=DTYPE):
        """
        Create a zero-filled tensor.

        Args:
            shape: Four non-negative integers (N, C, H, W)
            dtype: numpy dtype of the buffer
        """
        self._shape = _validate_shape(shape)
        self._data = np.zeros(self._shape, dtype=dtype)

    @classmethod
    def from_array(cls, array: np.ndarray) -> 'Tensor':
        """
        Copy a 4-D array into a new tensor of the engine's dtype.

        Args:
            array: Array of shape (N, C, H, W)

        Returns:
            Tensor holding a copy of ``array``
        """
        array = np.asarray(array)
        tensor = cls(array.shape)
        tensor._data[...] = array
        return tensor

    @property
    def shape(self) -> Shape:
        return self._shape

    @property
    def data(self) -> np.ndarray:
        """The underlying (N, C, H, W) array."""
        return self._data

    @property
    def batch_size(self) -> int:
        return self._shape[0]

    def element_count(self) -> int:
        """Total number of elements, N * C * H * W."""
        n, c, h, w = self._shape
        return n * c * h * w

    def per_sample_element_count(self) -> int:
        """Number of elements in one sample, C * H * W."""
        _, c, h, w = self._shape
        return c * h * w

    def with_batch(self, batch_size: int) -> 'Tensor':
        """Return a new zero-filled tensor with a different batch size."""
        return Tensor((batch_size,) + self._shape[1:], dtype=self._data.dtype)

    def sample(self, index: int) -> np.ndarray:
        """Flat view of one sample's C * H * W elements."""
        return self._data[index].reshape(-1)

    def _flat(self) -> np.ndarray:
        if self.element_count() == 0:
            raise ValueError(
                f"Element access on empty tensor with shape {self._shape}"
            )
        return self._data.reshape(-1)

    def __getitem__(self, offset: int) -> float:
        return self._flat()[offset]

    def __setitem__(self, offset: int, value: Union[int, float]) -> None:
        self._flat()[offset] = value

    def __len__(self) -> int:
        return self.element_count()

    def __repr__(self) -> str:
        return f"Tensor(shape={self._shape})"
