"""
trainer.py
~~~~~~~~~~

Mini-batch gradient-descent driver.

The trainer walks the training set in order (no shuffling), trains one
batch at a time, evaluates on the validation set every
``test_after_batches`` batches and after every epoch, decays the learning
rate once per completed epoch and finally persists the model.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

import numpy as np

from digitnet.config import TrainerConfig, NUM_CLASSES
from digitnet.exceptions import ModelPersistenceError
from digitnet.mnist_loader import LabeledImages
from digitnet.tensor import Tensor, DTYPE

# Raw intensities are scaled by 1/256, so 255 maps to 255/256
PIXEL_SCALE = 1.0 / 256.0

# Progress event kinds
DATA_LOADED = 'data_loaded'
BATCH_EVALUATED = 'batch_evaluated'
EPOCH_COMPLETE = 'epoch_complete'
FINAL_ACCURACY = 'final_accuracy'
MODEL_SAVED = 'model_saved'


@dataclass
class ProgressEvent:
    """A training milestone with its numeric fields."""

    kind: str
    message: str
    fields: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind, 'message': self.message, **self.fields}


@dataclass
class TrainingResult:
    """Outcome of :meth:`Trainer.run`."""

    accuracy: float
    batches: int
    epochs_completed: int
    learning_rate: float
    last_loss: Optional[float] = None
    elapsed_time: float = 0.0


ProgressCallback = Callable[[ProgressEvent], None]


def normalize_images(images: np.ndarray) -> np.ndarray:
    """Scale uint8 intensities by 1/256."""
    return np.asarray(images, dtype=DTYPE) * PIXEL_SCALE


def encode_labels(labels: np.ndarray, num_classes: int = NUM_CLASSES) -> np.ndarray:
    """
    One-hot encode class indices.

    Args:
        labels: Class indices, shape (n,)
        num_classes: Length of each one-hot vector

    Returns:
        Array of shape (n, num_classes, 1, 1)
    """
    labels = np.asarray(labels, dtype=np.int64).reshape(-1)
    if labels.size and (labels.min() < 0 or labels.max() >= num_classes):
        raise ValueError(
            f"Labels must be in [0, {num_classes}), got range "
            f"[{labels.min()}, {labels.max()}]"
        )
    one_hot = np.zeros((labels.size, num_classes, 1, 1), dtype=DTYPE)
    one_hot[np.arange(labels.size), labels, 0, 0] = 1.0
    return one_hot


def fetch_batch(dataset: LabeledImages, offset: int, batch_size: int,
                num_classes: int = NUM_CLASSES) -> Optional[Tuple[Tensor, Tensor]]:
    """
    Assemble the batch starting at ``offset``.

    A trailing batch is truncated rather than padded.

    Returns:
        (input, label) tensors, or None when ``offset`` is past the end
    """
    if offset >= len(dataset):
        return None
    end = min(offset + batch_size, len(dataset))
    input_data = Tensor.from_array(normalize_images(dataset.images[offset:end]))
    label = Tensor.from_array(encode_labels(dataset.labels[offset:end], num_classes))
    return input_data, label


def iter_batches(dataset: LabeledImages, batch_size: int,
                 num_classes: int = NUM_CLASSES) -> Iterator[Tuple[Tensor, Tensor]]:
    """
    Yield every batch of ``dataset`` in order.

    The same input and label tensors are refilled for every batch and only
    re-created, via ``with_batch``, when the trailing batch is smaller.
    """
    input_data = Tensor((batch_size,) + tuple(dataset.sample_shape))
    label = Tensor((batch_size, num_classes, 1, 1))
    for offset in range(0, len(dataset), batch_size):
        end = min(offset + batch_size, len(dataset))
        if end - offset != input_data.batch_size:
            input_data = input_data.with_batch(end - offset)
            label = label.with_batch(end - offset)
        input_data.data[...] = normalize_images(dataset.images[offset:end])
        label.data[...] = encode_labels(dataset.labels[offset:end], num_classes)
        yield input_data, label


def argmax_last(values) -> int:
    """
    Index of the maximum value; the last maximal index wins.

    Equivalent to scanning low to high and taking every candidate that is
    ``>=`` the current best.
    """
    values = np.asarray(values).reshape(-1)
    return int(values.size - 1 - np.argmax(values[::-1]))


def decode_predictions(output: Tensor) -> np.ndarray:
    """Per-sample class index of a (N, C, H, W) output, last maximum wins."""
    flat = output.data.reshape(output.batch_size, -1)
    width = flat.shape[1]
    return width - 1 - np.argmax(flat[:, ::-1], axis=1)


def evaluate(network, dataset: LabeledImages, batch_size: int = 128) -> float:
    """
    Fraction of ``dataset`` the network classifies correctly.

    The dataset is run through ``test_batch`` in sub-batches of
    ``batch_size``, independent of the training batch size.
    """
    correct = 0
    for offset in range(0, len(dataset), batch_size):
        images = dataset.images[offset:offset + batch_size]
        output = network.test_batch(Tensor.from_array(normalize_images(images)))
        predicted = decode_predictions(output)
        correct += int(np.sum(predicted == dataset.labels[offset:offset + batch_size]))
    return correct / len(dataset)


def decay_learning_rate(rate: float, decay_rate: float, min_rate: float) -> float:
    """One decay step: ``max(rate * decay_rate, min_rate)``."""
    return max(rate * decay_rate, min_rate)


class Trainer:
    """
    Training driver for a network over ordered train and validation views.

    Progress milestones are written to the ``logger`` handle given at
    construction and passed to ``callback`` if one is set. ``yield_func``
    is called after every trained batch so a cooperative scheduler can run
    other tasks.
    """

    def __init__(self, network, train_set: LabeledImages,
                 validation_set: LabeledImages,
                 config: Optional[TrainerConfig] = None,
                 logger: Optional[logging.Logger] = None,
                 callback: Optional[ProgressCallback] = None,
                 yield_func: Optional[Callable[[], None]] = None):
        self.network = network
        self.train_set = train_set
        self.validation_set = validation_set
        self.config = config or TrainerConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.callback = callback
        self.yield_func = yield_func
        self.learning_rate = self.config.learning_rate

    def _emit(self, kind: str, message: str, **fields: Any) -> None:
        event = ProgressEvent(kind, message, fields)
        self.logger.info(message)
        if self.callback is not None:
            self.callback(event)

    def evaluate(self) -> float:
        return evaluate(self.network, self.validation_set, self.config.eval_batch_size)

    def run(self, model_path: Optional[str] = None,
            model_id: str = 'default') -> TrainingResult:
        """
        Train until the epoch or batch cap is reached.

        Args:
            model_path: Model file to save to after training, if any
            model_id: Identifier of the model inside the file

        Returns:
            TrainingResult: Final accuracy and counters

        Raises:
            ModelPersistenceError: If the trained model cannot be saved
        """
        cfg = self.config
        start_time = time.time()
        total = len(self.train_set)

        self._emit(
            DATA_LOADED,
            f"Training set size is {total}, validation set size is "
            f"{len(self.validation_set)}",
            train_size=total,
            validation_size=len(self.validation_set)
        )
        self.logger.info(
            f"max_epochs: {cfg.max_epochs}, max_batches: {cfg.max_batches}, "
            f"test_after_batches: {cfg.test_after_batches}, batch_size: {cfg.batch_size}"
        )
        self.logger.info(
            f"learning_rate: {self.learning_rate}, decay_rate: {cfg.decay_rate}, "
            f"min_learning_rate: {cfg.min_learning_rate}"
        )

        batches_trained = 0
        epochs_completed = 0
        loss = None
        stopped = False

        while epochs_completed < cfg.max_epochs and not stopped:
            batch_idx = 0
            for input_data, label in iter_batches(self.train_set, cfg.batch_size,
                                                  cfg.num_classes):
                if cfg.max_batches is not None and batches_trained >= cfg.max_batches:
                    stopped = True
                    break

                loss = self.network.train_batch(input_data, label, self.learning_rate)
                batches_trained += 1
                if self.yield_func is not None:
                    self.yield_func()

                if batch_idx > 0 and batch_idx % cfg.test_after_batches == 0:
                    accuracy = self.evaluate()
                    sample = batch_idx * cfg.batch_size
                    self._emit(
                        BATCH_EVALUATED,
                        f"sample : {sample}/{total} , loss : {loss:.6f} , "
                        f"accuracy : {accuracy * 100.0:.4f}%",
                        epoch=epochs_completed,
                        batch=batch_idx,
                        sample=sample,
                        total=total,
                        loss=loss,
                        accuracy=accuracy
                    )
                batch_idx += 1

            if stopped:
                break

            accuracy = self.evaluate()
            self._emit(
                EPOCH_COMPLETE,
                f"epoch[{epochs_completed}] accuracy : {accuracy * 100.0:.4f}%",
                epoch=epochs_completed,
                total_epochs=cfg.max_epochs,
                accuracy=accuracy,
                learning_rate=self.learning_rate,
                elapsed_time=time.time() - start_time
            )
            epochs_completed += 1
            self.learning_rate = decay_learning_rate(
                self.learning_rate, cfg.decay_rate, cfg.min_learning_rate
            )

        accuracy = self.evaluate()
        self._emit(
            FINAL_ACCURACY,
            f"final accuracy : {accuracy * 100.0:.4f}%",
            accuracy=accuracy,
            batches=batches_trained,
            epochs=epochs_completed
        )

        if model_path is not None:
            if not self.network.save_model(model_path, model_id, accuracy=accuracy):
                raise ModelPersistenceError(
                    f"Failed to save model '{model_id}' to {model_path}"
                )
            self._emit(
                MODEL_SAVED,
                f"Saved model '{model_id}' to {model_path}",
                model_path=model_path,
                model_id=model_id
            )

        return TrainingResult(
            accuracy=accuracy,
            batches=batches_trained,
            epochs_completed=epochs_completed,
            learning_rate=self.learning_rate,
            last_loss=loss,
            elapsed_time=time.time() - start_time
        )
