"""
mnist_loader.py
~~~~~~~~~~~~~~~

Loader for the MNIST IDX files (``train-images.idx3-ubyte`` and friends,
optionally gzip-compressed) and the ordered, indexable dataset view the
trainer consumes.
"""

import gzip
import logging
from typing import Tuple

import numpy as np

from digitnet.exceptions import DatasetFormatError, EmptyDatasetError

logger = logging.getLogger(__name__)

IMAGES_MAGIC = 2051
LABELS_MAGIC = 2049


class LabeledImages:
    """
    Ordered collection of uint8 images and their class-index labels.

    ``images`` has shape (n, channels, height, width) with intensities
    0-255 and ``labels`` has shape (n,). Slicing returns another view in
    the same order; nothing is ever shuffled.
    """

    def __init__(self, images: np.ndarray, labels: np.ndarray):
        """
        Args:
            images: uint8 array (n, channels, height, width)
            labels: uint8 array (n,)

        Raises:
            EmptyDatasetError: If the collection is empty or the image and
                label counts differ
        """
        images = np.asarray(images, dtype=np.uint8)
        labels = np.asarray(labels, dtype=np.uint8).reshape(-1)
        if images.ndim == 3:
            images = images[:, np.newaxis]
        if images.ndim != 4:
            raise ValueError(
                f"Images must be (n, channels, height, width), got {images.shape}"
            )
        if len(images) == 0 or len(labels) == 0:
            raise EmptyDatasetError("Dataset contains no images")
        if len(images) != len(labels):
            raise EmptyDatasetError(
                f"Image count {len(images)} does not match label count {len(labels)}"
            )
        self.images = images
        self.labels = labels

    @property
    def channels(self) -> int:
        return self.images.shape[1]

    @property
    def height(self) -> int:
        return self.images.shape[2]

    @property
    def width(self) -> int:
        return self.images.shape[3]

    @property
    def sample_shape(self) -> Tuple[int, int, int]:
        """(channels, height, width) of one image."""
        return self.images.shape[1:]

    def __len__(self) -> int:
        return len(self.labels)

    def __getitem__(self, index):
        if isinstance(index, slice):
            return LabeledImages(self.images[index], self.labels[index])
        return self.images[index], int(self.labels[index])

    def split(self, fraction: float = 0.8) -> Tuple['LabeledImages', 'LabeledImages']:
        """
        Split into leading and trailing views, e.g. train and validation.

        Args:
            fraction: Share of samples in the first view

        Returns:
            tuple: (first, second) views in dataset order
        """
        if not 0.0 < fraction < 1.0:
            raise ValueError(f"fraction must be between 0 and 1, got {fraction}")
        cut = int(len(self) * fraction)
        return self[:cut], self[cut:]

    def __repr__(self) -> str:
        return (f"LabeledImages(size={len(self)}, channels={self.channels}, "
                f"height={self.height}, width={self.width})")


def _read_bytes(path: str) -> bytes:
    opener = gzip.open if path.endswith('.gz') else open
    with opener(path, 'rb') as f:
        return f.read()


def _parse_idx(payload: bytes, magic: int, dims: int, path: str) -> np.ndarray:
    header_size = 4 * (1 + dims)
    if len(payload) < header_size:
        raise DatasetFormatError(f"{path}: truncated IDX header")
    header = np.frombuffer(payload, dtype='>i4', count=1 + dims)
    if int(header[0]) != magic:
        raise DatasetFormatError(
            f"{path}: bad magic number {int(header[0])}, expected {magic}"
        )
    shape = tuple(int(dim) for dim in header[1:])
    expected = int(np.prod(shape))
    body = np.frombuffer(payload, dtype=np.uint8, offset=header_size)
    if body.size < expected:
        raise DatasetFormatError(
            f"{path}: expected {expected} bytes of data, found {body.size}"
        )
    return body[:expected].reshape(shape)


def load_mnist_images(path: str) -> np.ndarray:
    """
    Read an IDX3 image file.

    Returns:
        uint8 array (n, 1, rows, cols)
    """
    images = _parse_idx(_read_bytes(path), IMAGES_MAGIC, 3, path)
    return images[:, np.newaxis, :, :]


def load_mnist_labels(path: str) -> np.ndarray:
    """
    Read an IDX1 label file.

    Returns:
        uint8 array (n,)
    """
    return _parse_idx(_read_bytes(path), LABELS_MAGIC, 1, path)


def load_mnist(images_path: str, labels_path: str) -> LabeledImages:
    """
    Load an image file and its label file as one dataset.

    Raises:
        DatasetFormatError: If a file is not a valid IDX file
        EmptyDatasetError: If the files are empty or their counts differ
        OSError: If a file cannot be read
    """
    logger.info(f"Loading MNIST data from {images_path} and {labels_path}")
    dataset = LabeledImages(load_mnist_images(images_path),
                            load_mnist_labels(labels_path))
    logger.info(f"Loaded {dataset!r}")
    return dataset


def write_idx(path: str, array: np.ndarray) -> None:
    """
    Write a uint8 array as an IDX file (3-D images or 1-D labels).

    Used to produce small fixture files and subsets of MNIST.
    """
    array = np.asarray(array, dtype=np.uint8)
    if array.ndim == 4:
        array = array.reshape(array.shape[0], array.shape[2], array.shape[3])
    magic = {3: IMAGES_MAGIC, 1: LABELS_MAGIC}.get(array.ndim)
    if magic is None:
        raise ValueError(f"Cannot write a {array.ndim}-D array as IDX")
    header = np.array((magic,) + array.shape, dtype='>i4')
    opener = gzip.open if path.endswith('.gz') else open
    with opener(path, 'wb') as f:
        f.write(header.tobytes())
        f.write(array.tobytes())
