"""
test_trainer.py
~~~~~~~~~~~~~~~

Unit and integration tests for batching, decoding and the training loop.
"""

import logging

import numpy as np
import pytest

from digitnet.config import TrainerConfig
from digitnet.exceptions import ModelPersistenceError
from digitnet.mnist_loader import LabeledImages
from digitnet.model_persistence import get_model_metadata
from digitnet.tensor import Tensor
from digitnet.trainer import (
    Trainer,
    PIXEL_SCALE,
    DATA_LOADED,
    BATCH_EVALUATED,
    EPOCH_COMPLETE,
    FINAL_ACCURACY,
    MODEL_SAVED,
    argmax_last,
    decay_learning_rate,
    decode_predictions,
    encode_labels,
    evaluate,
    fetch_batch,
    iter_batches,
    normalize_images
)

from conftest import make_images


class FixedOutputNetwork:
    """Stand-in network whose predictions are fixed per sample."""

    def __init__(self, outputs):
        self.outputs = np.asarray(outputs, dtype=float)
        self.seen = 0

    def test_batch(self, input_data):
        count = input_data.batch_size
        output = self.outputs[self.seen:self.seen + count]
        self.seen += count
        return Tensor.from_array(output.reshape(count, -1, 1, 1))


@pytest.mark.unit
class TestBatching:
    """Test batch assembly."""

    def test_batch_sizes(self):
        """Test that a trailing partial batch is truncated."""
        images, labels = make_images(10)
        dataset = LabeledImages(images, labels)
        sizes = [batch.batch_size for batch, _ in iter_batches(dataset, 4)]
        assert sizes == [4, 4, 2]

    def test_buffers_reused_until_trailing_batch(self):
        """Test that full batches share tensors and the tail gets a new one."""
        images, labels = make_images(10)
        dataset = LabeledImages(images, labels)
        seen = []
        for input_data, label in iter_batches(dataset, 4):
            seen.append((id(input_data), input_data.batch_size,
                         input_data.data.copy(), label.shape))

        assert seen[0][0] == seen[1][0]
        assert seen[2][0] != seen[1][0]
        assert seen[2][3] == (2, 10, 1, 1)
        np.testing.assert_allclose(seen[2][2], images[8:10] * PIXEL_SCALE)

    def test_fetch_batch_contents(self, small_dataset):
        """Test pixel scaling and one-hot labels of a fetched batch."""
        input_data, label = fetch_batch(small_dataset, 4, 3)
        np.testing.assert_allclose(
            input_data.data, small_dataset.images[4:7] * PIXEL_SCALE
        )
        assert label.shape == (3, 10, 1, 1)
        assert list(np.argmax(label.data.reshape(3, 10), axis=1)) == [4, 5, 6]

    def test_fetch_past_end(self, small_dataset):
        """Test that an offset past the end yields no batch."""
        assert fetch_batch(small_dataset, 20, 4) is None

    def test_normalize_divides_by_256(self):
        """Test the 1/256 intensity scale."""
        scaled = normalize_images(np.array([0, 128, 255], dtype=np.uint8))
        np.testing.assert_allclose(scaled, [0.0, 0.5, 255.0 / 256.0])

    def test_encode_labels(self):
        """Test one-hot encoding."""
        one_hot = encode_labels(np.array([2, 0]), 3).reshape(2, 3)
        np.testing.assert_array_equal(one_hot, [[0, 0, 1], [1, 0, 0]])

    def test_encode_out_of_range(self):
        """Test that labels outside the class range are rejected."""
        with pytest.raises(ValueError):
            encode_labels(np.array([10]), 10)


@pytest.mark.unit
class TestDecoding:
    """Test prediction decoding and accuracy."""

    def test_argmax_last_breaks_ties_high(self):
        """Test that the last maximal index wins."""
        assert argmax_last([0.5, 0.9, 0.9]) == 2
        assert argmax_last([0.9, 0.1, 0.2]) == 0

    def test_decode_predictions(self):
        """Test per-sample decoding with ties."""
        output = Tensor.from_array(
            np.array([[0.1, 0.7, 0.2], [0.4, 0.2, 0.4]]).reshape(2, 3, 1, 1)
        )
        assert list(decode_predictions(output)) == [1, 2]

    def test_evaluate_counts_correct(self):
        """Test accuracy across several evaluation sub-batches."""
        images = np.zeros((5, 1, 2, 2), dtype=np.uint8)
        labels = np.array([0, 1, 2, 1, 0])
        predictions = np.eye(3)[[0, 1, 2, 2, 2]]
        network = FixedOutputNetwork(predictions)

        accuracy = evaluate(network, LabeledImages(images, labels), batch_size=2)

        assert accuracy == pytest.approx(3 / 5)
        assert network.seen == 5

    def test_decay(self):
        """Test that decay is floored at the minimum rate."""
        rate = 0.01
        for _ in range(3):
            rate = decay_learning_rate(rate, 0.1, 1e-6)
        assert rate == pytest.approx(1e-5)
        assert decay_learning_rate(1e-6, 0.1, 1e-6) == 1e-6


@pytest.mark.integration
class TestTrainer:
    """Test the training loop."""

    @pytest.fixture
    def split(self, small_dataset):
        return small_dataset.split(0.8)

    def run_trainer(self, network, split, **overrides):
        events = []
        config = TrainerConfig(**{'batch_size': 4, 'eval_batch_size': 3, **overrides})
        trainer = Trainer(network, split[0], split[1], config=config,
                          callback=events.append)
        return trainer, events

    def test_epochs_and_events(self, small_network, split):
        """Test event order, evaluation cadence and learning-rate decay."""
        trainer, events = self.run_trainer(
            small_network, split, max_epochs=2, max_batches=None,
            test_after_batches=2
        )
        result = trainer.run()

        kinds = [event.kind for event in events]
        assert kinds == [
            DATA_LOADED,
            BATCH_EVALUATED, EPOCH_COMPLETE,
            BATCH_EVALUATED, EPOCH_COMPLETE,
            FINAL_ACCURACY,
        ]
        assert events[0].fields['train_size'] == 16
        assert events[1].fields['sample'] == 8
        assert result.batches == 8
        assert result.epochs_completed == 2
        assert result.learning_rate == pytest.approx(0.01 * 0.1 * 0.1)
        assert 0.0 <= result.accuracy <= 1.0
        assert np.isfinite(result.last_loss)

    def test_batch_cap(self, small_network, split):
        """Test that training stops exactly at max_batches."""
        trainer, events = self.run_trainer(
            small_network, split, max_epochs=3, max_batches=5
        )
        result = trainer.run()
        assert result.batches == 5
        assert result.epochs_completed == 1
        assert [event.kind for event in events].count(EPOCH_COMPLETE) == 1

    def test_saves_model(self, small_network, split, model_path):
        """Test that the trained model is saved with its accuracy."""
        trainer, events = self.run_trainer(small_network, split, max_batches=2)
        result = trainer.run(model_path=model_path, model_id='digits')

        assert events[-1].kind == MODEL_SAVED
        assert events[-1].to_dict()['model_id'] == 'digits'
        assert get_model_metadata(model_path, 'digits')['accuracy'] == pytest.approx(
            result.accuracy
        )

    def test_save_failure_raises(self, small_network, split, tmp_path):
        """Test that an unwritable model path fails the run."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        trainer, _ = self.run_trainer(small_network, split, max_batches=1)
        with pytest.raises(ModelPersistenceError):
            trainer.run(model_path=str(blocker / "model.db"))

    def test_logs_progress(self, small_network, split, caplog):
        """Test that milestones reach the injected logger."""
        logger = logging.getLogger("digitnet.test.trainer")
        config = TrainerConfig(batch_size=4, max_batches=1)
        trainer = Trainer(small_network, split[0], split[1], config=config,
                          logger=logger)
        with caplog.at_level(logging.INFO, logger="digitnet.test.trainer"):
            trainer.run()
        assert any("final accuracy" in message for message in caplog.messages)

    def test_yield_after_every_batch(self, small_network, split):
        """Test that the yield hook runs once per trained batch."""
        calls = []
        config = TrainerConfig(batch_size=4, max_epochs=2, max_batches=None)
        trainer = Trainer(small_network, split[0], split[1], config=config,
                          yield_func=lambda: calls.append(1))
        result = trainer.run()
        assert len(calls) == result.batches == 8
