"""
exceptions.py
~~~~~~~~~~~~~

Error types raised by the digitnet engine.
"""


class DigitNetError(Exception):
    """Base class for all digitnet errors."""


class ShapeMismatchError(DigitNetError):
    """
    Raised when shapes fail to compose.

    Covers adjacent layers whose shapes disagree at build time, layer
    hyperparameters that do not fit the incoming shape, and stored
    parameters that disagree with the built architecture.
    """


class EmptyDatasetError(DigitNetError):
    """Raised when a dataset is empty or its image and label counts differ."""


class DatasetFormatError(DigitNetError):
    """Raised when an IDX dataset file is malformed."""


class ModelPersistenceError(DigitNetError):
    """Raised by the driver when a model cannot be saved or loaded."""


class PhaseError(DigitNetError):
    """Raised when an operation is not allowed in the network's phase."""
