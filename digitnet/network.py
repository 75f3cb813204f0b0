"""
network.py
~~~~~~~~~~

Network orchestration: an ordered chain of layers plus one loss functor.

A network is either wired by hand with ``add_layer`` or built from a
declarative architecture (a list of ``{'type': tag, **hyperparameters}``
dicts) with :func:`build_network`. Shapes are validated as the chain is
bound to its input shape.
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from digitnet import model_persistence
from digitnet.exceptions import PhaseError, ShapeMismatchError
from digitnet.layers import Layer, ParameterRecord, create_layer
from digitnet.losses import LossFunctor, get_loss
from digitnet.tensor import Tensor, Shape

logger = logging.getLogger(__name__)


class Phase(Enum):
    """Whether backward and update semantics are engaged."""

    TRAIN = 'train'
    TEST = 'test'


class Network:
    """
    Ordered sequence of layers trained against one loss functor.

    Invariant: for every adjacent pair of layers, the output sample shape
    of layer i equals the input sample shape of layer i + 1. The batch
    dimension may shrink for a trailing partial batch.
    """

    def __init__(self, input_shape=None, loss: Union[LossFunctor, str, None] = None,
                 phase: Phase = Phase.TRAIN, seed: Optional[int] = None):
        """
        Args:
            input_shape: Expected (N, C, H, W) input shape, settable once
            loss: Loss functor or its registered name
            phase: Initial phase
            seed: Seed for weight initialization
        """
        self.layers: List[Layer] = []
        self.loss: Optional[LossFunctor] = None
        self.phase = phase
        self.input_shape: Optional[Shape] = None
        self._rng = np.random.default_rng(seed)
        self._initialized = False

        if input_shape is not None:
            self.set_input_shape(input_shape)
        if loss is not None:
            self.set_loss(loss)

    def set_input_shape(self, input_shape) -> None:
        """Declare the expected (N, C, H, W) input shape."""
        if self.input_shape is not None:
            raise ValueError(
                f"Input shape already set to {self.input_shape}"
            )
        input_shape = tuple(int(dim) for dim in input_shape)
        if len(input_shape) != 4 or any(dim < 1 for dim in input_shape):
            raise ShapeMismatchError(
                f"Input shape must be four positive integers, got {input_shape}"
            )
        self.input_shape = input_shape

    def set_loss(self, loss: Union[LossFunctor, str]) -> None:
        self.loss = get_loss(loss) if isinstance(loss, str) else loss

    def set_phase(self, phase: Phase) -> None:
        self.phase = Phase(phase)

    @property
    def output_shape(self) -> Optional[Shape]:
        if not self.layers:
            return self.input_shape
        return self.layers[-1].output_shape

    def add_layer(self, layer: Layer) -> Layer:
        """
        Append a layer to the chain.

        Once the input shape is known the layer is bound to the previous
        layer's output shape immediately, so incompatible layers fail here.

        Raises:
            ShapeMismatchError: If the layer does not fit the chain
        """
        if self._initialized:
            raise ShapeMismatchError("Cannot add layers to an initialized network")
        if self.input_shape is not None and all(existing.initialized for existing in self.layers):
            self._bind(len(self.layers), layer, self.output_shape)
        self.layers.append(layer)
        return layer

    def _bind(self, index: int, layer: Layer, shape: Shape) -> Shape:
        if layer.initialized:
            if layer.input_shape[1:] != tuple(shape[1:]):
                raise ShapeMismatchError(
                    f"Layer {index} {layer!r} expects samples of shape "
                    f"{layer.input_shape[1:]}, previous layer produces {shape[1:]}"
                )
            return layer.output_shape
        try:
            return layer.initialize(shape, self._rng)
        except ShapeMismatchError as e:
            raise ShapeMismatchError(f"Layer {index}: {e}") from e

    def initialize(self) -> Shape:
        """
        Finalize the chain, validating every adjacent pair of shapes.

        Returns:
            The output shape of the last layer
        """
        if self._initialized:
            return self.output_shape
        if self.input_shape is None:
            raise ShapeMismatchError("Input shape has not been set")
        if not self.layers:
            raise ShapeMismatchError("Network has no layers")

        shape = self.input_shape
        for index, layer in enumerate(self.layers):
            shape = self._bind(index, layer, shape)

        self._initialized = True
        logger.info(
            f"Network initialized: {len(self.layers)} layers, "
            f"{self.input_shape} -> {shape}"
        )
        return shape

    def _forward(self, input_data: Tensor) -> Tensor:
        self.initialize()
        if input_data.shape[1:] != self.input_shape[1:]:
            raise ShapeMismatchError(
                f"Network expects samples of shape {self.input_shape[1:]}, "
                f"got {input_data.shape[1:]}"
            )
        output = input_data
        for layer in self.layers:
            output = layer.forward(output)
        return output

    def train_batch(self, input_data: Tensor, label: Tensor,
                    learning_rate: float) -> float:
        """
        Run one gradient-descent step on a mini-batch.

        Args:
            input_data: (N, C, H, W) input batch
            label: Target tensor with the network's output shape
            learning_rate: Step size

        Returns:
            float: Loss of the batch before the update
        """
        if self.phase is not Phase.TRAIN:
            raise PhaseError(f"train_batch requires {Phase.TRAIN}, network is in {self.phase}")
        if self.loss is None:
            raise ValueError("No loss functor set")

        prediction = self._forward(input_data)
        loss = self.loss.forward(prediction, label)
        gradient = self.loss.backward(prediction, label)

        for layer in reversed(self.layers):
            gradient = layer.backward(gradient)

        for layer in self.layers:
            layer.update_parameters(learning_rate)

        return loss

    def test_batch(self, input_data: Tensor) -> Tensor:
        """Forward pass only; valid in either phase, no parameter mutation."""
        return self._forward(input_data)

    def describe(self) -> List[Dict[str, Any]]:
        """Declarative description of the layer chain."""
        return [layer.get_config() for layer in self.layers]

    def parameter_records(self) -> List[ParameterRecord]:
        """Serialized parameters of every layer in construction order."""
        self.initialize()
        return [layer.serialize_parameters() for layer in self.layers]

    def restore_parameters(self, records: Sequence[ParameterRecord]) -> None:
        """
        Load serialized parameters into every layer.

        Either every layer is loaded or the network is left as it was.

        Raises:
            ShapeMismatchError: If any record disagrees with the built chain
        """
        self.initialize()
        if len(records) != len(self.layers):
            raise ShapeMismatchError(
                f"Model holds {len(records)} layer records, network has "
                f"{len(self.layers)} layers"
            )
        snapshots = self.parameter_records()
        loaded = 0
        try:
            for index, (layer, record) in enumerate(zip(self.layers, records)):
                try:
                    layer.deserialize_parameters(record)
                except ShapeMismatchError as e:
                    raise ShapeMismatchError(f"Layer {index}: {e}") from e
                loaded += 1
        except ShapeMismatchError:
            for layer, snapshot in zip(self.layers[:loaded], snapshots):
                layer.deserialize_parameters(snapshot)
            raise

    def save_model(self, path: str, model_id: str = 'default',
                   accuracy: Optional[float] = None) -> bool:
        """
        Persist every layer's parameters in architecture order.

        Returns:
            bool: True if the save was successful, False otherwise
        """
        return model_persistence.save_model(self, path, model_id, accuracy=accuracy)

    def load_model(self, path: str, model_id: str = 'default') -> bool:
        """
        Restore parameters saved from an identically built network.

        Returns:
            bool: True on success; False if the model is missing, unreadable
            or disagrees with this architecture (parameters are untouched)
        """
        return model_persistence.load_model(self, path, model_id)

    def summary(self) -> str:
        lines = [f"Input {self.input_shape}"]
        for index, layer in enumerate(self.layers):
            lines.append(f"  [{index}] {layer!r} -> {layer.output_shape}")
        lines.append(f"Loss {self.loss!r}")
        return '\n'.join(lines)

    def __repr__(self) -> str:
        return (f"Network(input_shape={self.input_shape}, "
                f"layers={len(self.layers)}, phase={self.phase.value})")


def build_network(architecture: Sequence[Dict[str, Any]], input_shape,
                  loss: Union[LossFunctor, str] = 'cross_entropy',
                  phase: Phase = Phase.TRAIN,
                  seed: Optional[int] = None) -> Network:
    """
    Instantiate a network from a declarative architecture.

    Args:
        architecture: Ordered ``{'type': tag, **hyperparameters}`` dicts
        input_shape: Expected (N, C, H, W) input shape
        loss: Loss functor or its registered name
        phase: Initial phase
        seed: Seed for weight initialization

    Returns:
        Network: Initialized network

    Raises:
        ShapeMismatchError: If adjacent layers do not compose
        ValueError: If a layer type or loss name is unknown

    Example:
        >>> net = build_network(MLP_NET, (1, 1, 28, 28), loss='mse')
        >>> net.output_shape
        (1, 10, 1, 1)
    """
    network = Network(input_shape=input_shape, loss=loss, phase=phase, seed=seed)
    for config in architecture:
        network.add_layer(create_layer(config))
    network.initialize()
    return network


def load_network(path: str, model_id: str = 'default',
                 phase: Phase = Phase.TEST) -> Optional[Network]:
    """
    Rebuild a network from a stored model's architecture and load it.

    Args:
        path: Model database file
        model_id: Identifier of the model inside the database
        phase: Phase of the returned network

    Returns:
        The loaded network or None if it could not be restored
    """
    stored = model_persistence.load_stored_model(path, model_id)
    if stored is None:
        return None

    try:
        network = build_network(
            stored['architecture'],
            stored['input_shape'],
            loss=stored['loss'],
            phase=phase
        )
        network.restore_parameters(stored['records'])
    except ShapeMismatchError as e:
        logger.error(f"Stored model '{model_id}' does not compose: {e}")
        return None
    except (ValueError, TypeError) as e:
        logger.error(f"Invalid architecture in stored model '{model_id}': {e}")
        return None

    logger.info(f"Rebuilt network '{model_id}' from {path}")
    return network
