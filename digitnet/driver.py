"""
driver.py
~~~~~~~~~

Driver surface: train a network on an MNIST training file pair and
evaluate a saved model on a test file pair.
"""

import logging
from typing import Callable, Optional

from digitnet.architectures import get_architecture
from digitnet.config import TrainerConfig
from digitnet.exceptions import ModelPersistenceError
from digitnet.mnist_loader import load_mnist
from digitnet.network import Phase, build_network, load_network
from digitnet.trainer import (
    Trainer,
    TrainingResult,
    ProgressCallback,
    ProgressEvent,
    FINAL_ACCURACY,
    evaluate as evaluate_network
)

logger = logging.getLogger(__name__)


def train(
    train_images_path: str,
    train_labels_path: str,
    model_out_path: str,
    config: Optional[TrainerConfig] = None,
    architecture: str = 'conv',
    model_id: str = 'default',
    seed: Optional[int] = None,
    callback: Optional[ProgressCallback] = None,
    yield_func: Optional[Callable[[], None]] = None
) -> TrainingResult:
    """
    Train a network and save it to ``model_out_path``.

    The labeled file pair is split in order into a training and a
    validation view (``config.train_fraction``, 0.8 by default).

    Args:
        train_images_path: IDX3 image file
        train_labels_path: IDX1 label file
        model_out_path: Model database file to write
        config: Training hyperparameters
        architecture: Named architecture ('conv' or 'mlp')
        model_id: Identifier of the model inside the file
        seed: Seed for weight initialization
        callback: Receives every progress event
        yield_func: Called after every trained batch

    Returns:
        TrainingResult: Final validation accuracy and counters

    Raises:
        EmptyDatasetError: If the files hold no samples or their counts differ
        ModelPersistenceError: If the model cannot be saved
    """
    config = config or TrainerConfig()

    logger.info("loading training data...")
    dataset = load_mnist(train_images_path, train_labels_path)
    train_set, validation_set = dataset.split(config.train_fraction)
    logger.info(
        f"channels: {dataset.channels}, width: {dataset.width}, "
        f"height: {dataset.height}"
    )

    logger.info("construct network begin...")
    layers, loss = get_architecture(architecture)
    network = build_network(
        layers,
        (config.batch_size,) + tuple(dataset.sample_shape),
        loss=loss,
        phase=Phase.TRAIN,
        seed=seed
    )
    logger.debug(network.summary())
    logger.info("construct network done.")

    trainer = Trainer(
        network,
        train_set,
        validation_set,
        config=config,
        logger=logger,
        callback=callback,
        yield_func=yield_func
    )
    result = trainer.run(model_path=model_out_path, model_id=model_id)
    logger.info("finished training.")
    return result


def evaluate(
    test_images_path: str,
    test_labels_path: str,
    model_in_path: str,
    model_id: str = 'default',
    batch_size: int = 64,
    callback: Optional[ProgressCallback] = None
) -> float:
    """
    Evaluate a saved model on a labeled test file pair.

    Args:
        test_images_path: IDX3 image file
        test_labels_path: IDX1 label file
        model_in_path: Model database file to read
        model_id: Identifier of the model inside the file
        batch_size: Evaluation sub-batch size
        callback: Receives the final accuracy event

    Returns:
        float: Fraction of correctly classified samples

    Raises:
        EmptyDatasetError: If the files hold no samples or their counts differ
        ModelPersistenceError: If the model cannot be loaded
    """
    logger.info("loading test data...")
    dataset = load_mnist(test_images_path, test_labels_path)

    logger.info("construct network begin...")
    network = load_network(model_in_path, model_id, phase=Phase.TEST)
    if network is None:
        raise ModelPersistenceError(
            f"Failed to load model '{model_id}' from {model_in_path}"
        )
    logger.info("construct network done.")

    logger.info("begin test...")
    accuracy = evaluate_network(network, dataset, batch_size)
    message = f"accuracy : {accuracy * 100.0:.4f}%"
    logger.info(message)
    if callback is not None:
        callback(ProgressEvent(FINAL_ACCURACY, message, {
            'accuracy': accuracy,
            'total': len(dataset)
        }))
    logger.info("finished test.")
    return accuracy
