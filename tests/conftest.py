"""
conftest.py
~~~~~~~~~~~

Shared fixtures: small synthetic digit datasets, IDX files on disk and
small networks.
"""

import numpy as np
import pytest

from digitnet.mnist_loader import LabeledImages, write_idx
from digitnet.network import build_network

# Small architecture that keeps every layer type in play on 8x8 inputs
SMALL_CONV_NET = [
    {'type': 'input'},
    {'type': 'convolution', 'out_channels': 3, 'kernel_size': 3, 'padding': 1},
    {'type': 'relu'},
    {'type': 'max_pooling', 'kernel_size': 2, 'stride': 2},
    {'type': 'fully_connected', 'outputs': 10},
    {'type': 'softmax'},
]


def make_images(count, size=8, seed=0):
    """Random uint8 digits (count, 1, size, size) with labels 0-9."""
    rng = np.random.default_rng(seed)
    images = rng.integers(0, 256, size=(count, 1, size, size), dtype=np.uint8)
    labels = (np.arange(count) % 10).astype(np.uint8)
    return images, labels


@pytest.fixture
def small_dataset():
    """Twenty 8x8 single-channel images."""
    images, labels = make_images(20)
    return LabeledImages(images, labels)


@pytest.fixture
def small_network():
    """Seeded conv network for 8x8 inputs, batch size 4."""
    return build_network(SMALL_CONV_NET, (4, 1, 8, 8), loss='cross_entropy', seed=7)


@pytest.fixture
def idx_files(tmp_path):
    """Write a 30-sample 8x8 dataset as IDX files and return their paths."""
    images, labels = make_images(30, seed=3)
    images_path = str(tmp_path / "images.idx3-ubyte")
    labels_path = str(tmp_path / "labels.idx1-ubyte")
    write_idx(images_path, images)
    write_idx(labels_path, labels)
    return images_path, labels_path


@pytest.fixture
def model_path(tmp_path):
    """Path of a model database inside a temporary directory."""
    return str(tmp_path / "test_models" / "model.db")
