"""
test_tensor.py
~~~~~~~~~~~~~~

Unit tests for the (N, C, H, W) tensor container.
"""

import numpy as np
import pytest

from digitnet.tensor import Tensor


@pytest.mark.unit
class TestTensor:
    """Test construction, counts and element access."""

    def test_zero_initialized(self):
        """Test that a new tensor is filled with zeros."""
        tensor = Tensor((2, 3, 4, 5))
        assert tensor.shape == (2, 3, 4, 5)
        assert np.all(tensor.data == 0.0)

    def test_element_counts(self):
        """Test total and per-sample element counts."""
        tensor = Tensor((2, 3, 4, 5))
        assert tensor.element_count() == 2 * 3 * 4 * 5
        assert tensor.per_sample_element_count() == 3 * 4 * 5
        assert len(tensor) == tensor.element_count()
        assert tensor.data.size == tensor.element_count()

    def test_elements_read_back(self):
        """Test that every element reads back exactly what was written."""
        tensor = Tensor((2, 1, 3, 3))
        for offset in range(tensor.element_count()):
            tensor[offset] = offset * 0.5
        for offset in range(tensor.element_count()):
            assert tensor[offset] == offset * 0.5

    def test_linear_offset_is_row_major(self):
        """Test that linear offsets follow N, C, H, W order."""
        tensor = Tensor((1, 2, 2, 2))
        tensor[5] = 1.0
        assert tensor.data[0, 1, 0, 1] == 1.0

    def test_with_batch_recreates(self):
        """Test that a smaller batch is a new zero-filled tensor."""
        tensor = Tensor((4, 1, 2, 2))
        tensor[0] = 3.0
        smaller = tensor.with_batch(2)
        assert smaller.shape == (2, 1, 2, 2)
        assert np.all(smaller.data == 0.0)
        assert tensor.shape == (4, 1, 2, 2)

    def test_from_array_copies(self):
        """Test that from_array does not alias the source array."""
        source = np.ones((1, 1, 2, 2))
        tensor = Tensor.from_array(source)
        source[0, 0, 0, 0] = 5.0
        assert tensor[0] == 1.0

    def test_sample_view(self):
        """Test that sample() returns a flat per-sample view."""
        tensor = Tensor.from_array(np.arange(8, dtype=float).reshape(2, 1, 2, 2))
        assert list(tensor.sample(1)) == [4.0, 5.0, 6.0, 7.0]

    @pytest.mark.parametrize("shape", [(1, 2, 3), (1, -1, 2, 2)])
    def test_malformed_shape(self, shape):
        """Test that non-4D or negative shapes are rejected."""
        with pytest.raises(ValueError):
            Tensor(shape)

    def test_access_on_empty_tensor(self):
        """Test that element access on a zero-sized tensor fails."""
        tensor = Tensor((0, 1, 2, 2))
        assert tensor.element_count() == 0
        with pytest.raises(ValueError):
            tensor[0]
