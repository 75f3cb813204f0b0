"""
digitnet package
~~~~~~~~~~~~~~~~

Minimal neural network engine for MNIST digit recognition.
Contains the tensor container, layers, loss functors, the network
orchestrator, the training driver, model persistence and the API server.
"""

from digitnet.exceptions import (
    DigitNetError,
    ShapeMismatchError,
    EmptyDatasetError,
    DatasetFormatError,
    ModelPersistenceError,
    PhaseError
)
from digitnet.tensor import Tensor
from digitnet.network import Network, Phase, build_network

__version__ = "1.0.0"

__all__ = [
    'DigitNetError',
    'ShapeMismatchError',
    'EmptyDatasetError',
    'DatasetFormatError',
    'ModelPersistenceError',
    'PhaseError',
    'Tensor',
    'Network',
    'Phase',
    'build_network'
]
