"""
test_model_persistence.py
~~~~~~~~~~~~~~~~~~~~~~~~~~

Unit tests for SQLite-based model persistence.
"""

import os
import sqlite3

import numpy as np
import pytest

from digitnet.model_persistence import (
    save_model,
    load_model,
    load_stored_model,
    list_saved_models,
    get_model_metadata,
    delete_model,
    ModelDatabase
)
from digitnet.network import Phase, build_network, load_network
from digitnet.tensor import Tensor
from digitnet.trainer import encode_labels, normalize_images

from conftest import SMALL_CONV_NET, make_images


@pytest.fixture
def inputs():
    images, _ = make_images(4, seed=5)
    return Tensor.from_array(normalize_images(images))


@pytest.fixture
def trained_network(small_network):
    """Create a small network with some training applied."""
    images, labels = make_images(8, seed=9)
    for offset in (0, 4):
        small_network.train_batch(
            Tensor.from_array(normalize_images(images[offset:offset + 4])),
            Tensor.from_array(encode_labels(labels[offset:offset + 4], 10)),
            0.05
        )
    return small_network


@pytest.mark.unit
class TestModelPersistence:
    """Test basic model persistence operations."""

    def test_save_creates_database(self, small_network, model_path):
        """Test that saving a network creates the database file."""
        assert save_model(small_network, model_path) is True
        assert os.path.exists(model_path)

    def test_round_trip_preserves_outputs(self, trained_network, model_path, inputs):
        """Test that a fresh network loaded from disk predicts identically."""
        expected = trained_network.test_batch(inputs).data
        assert trained_network.save_model(model_path, 'digits') is True

        fresh = build_network(SMALL_CONV_NET, (4, 1, 8, 8), seed=123)
        assert fresh.load_model(model_path, 'digits') is True
        np.testing.assert_array_equal(fresh.test_batch(inputs).data, expected)

    def test_load_network_rebuilds_architecture(self, trained_network, model_path, inputs):
        """Test rebuilding a network from the stored architecture alone."""
        expected = trained_network.test_batch(inputs).data
        save_model(trained_network, model_path, accuracy=0.5)

        network = load_network(model_path)
        assert network is not None
        assert network.phase is Phase.TEST
        assert network.describe() == trained_network.describe()
        assert network.loss.name == 'cross_entropy'
        np.testing.assert_array_equal(network.test_batch(inputs).data, expected)

    def test_architecture_mismatch_leaves_parameters(self, small_network, model_path):
        """Test that a mismatched model is refused without partial loads."""
        save_model(small_network, model_path)
        other = build_network(
            [
                {'type': 'input'},
                {'type': 'convolution', 'out_channels': 3, 'kernel_size': 3, 'padding': 1},
                {'type': 'relu'},
                {'type': 'max_pooling', 'kernel_size': 2, 'stride': 2},
                {'type': 'fully_connected', 'outputs': 5},
                {'type': 'softmax'},
            ],
            (4, 1, 8, 8),
            seed=1
        )
        conv_before = other.layers[1].weight.data.copy()
        fc_before = other.layers[4].weight.data.copy()

        assert load_model(other, model_path) is False
        np.testing.assert_array_equal(other.layers[1].weight.data, conv_before)
        np.testing.assert_array_equal(other.layers[4].weight.data, fc_before)

    def test_save_overwrites(self, small_network, trained_network, model_path):
        """Test that saving under an existing id replaces the model."""
        save_model(small_network, model_path, accuracy=0.1)
        save_model(trained_network, model_path, accuracy=0.9)
        assert len(list_saved_models(model_path)) == 1
        assert get_model_metadata(model_path)['accuracy'] == 0.9

    def test_records_are_little_endian_doubles(self, small_network, model_path):
        """Test the on-disk encoding of parameter blobs."""
        save_model(small_network, model_path)
        stored = load_stored_model(model_path)
        record = stored['records'][1]
        assert record.layer_type == 'convolution'
        assert record.weight_shape == (3, 1, 3, 3)
        weights = np.frombuffer(record.weight, dtype='<f8').reshape(record.weight_shape)
        np.testing.assert_array_equal(weights, small_network.layers[1].weight.data)
        assert stored['records'][2].weight is None


@pytest.mark.unit
class TestModelListing:
    """Test listing, metadata and deletion."""

    def test_list_models(self, small_network, model_path):
        """Test listing every model in a file."""
        save_model(small_network, model_path, 'first')
        save_model(small_network, model_path, 'second', accuracy=0.75)

        models = list_saved_models(model_path)
        assert {model['model_id'] for model in models} == {'first', 'second'}
        assert all(model['layer_count'] == len(SMALL_CONV_NET) for model in models)

    def test_metadata(self, small_network, model_path):
        """Test metadata without loading parameters."""
        save_model(small_network, model_path, 'digits', accuracy=0.5)
        metadata = get_model_metadata(model_path, 'digits')
        assert metadata['model_id'] == 'digits'
        assert metadata['input_shape'] == [4, 1, 8, 8]
        assert metadata['loss'] == 'cross_entropy'
        assert metadata['accuracy'] == 0.5
        assert metadata['architecture'] == small_network.describe()

    def test_delete(self, small_network, model_path):
        """Test deleting a model."""
        save_model(small_network, model_path, 'digits')
        assert delete_model(model_path, 'digits') is True
        assert get_model_metadata(model_path, 'digits') is None
        assert delete_model(model_path, 'digits') is False


@pytest.mark.unit
class TestErrorHandling:
    """Test failure modes."""

    def test_missing_file(self, small_network, tmp_path):
        """Test that a nonexistent file yields False and is not created."""
        path = str(tmp_path / "missing.db")
        assert load_model(small_network, path) is False
        assert load_network(path) is None
        assert list_saved_models(path) == []
        assert not os.path.exists(path)

    def test_missing_model_id(self, small_network, model_path):
        """Test loading an id that was never saved."""
        save_model(small_network, model_path, 'digits')
        assert load_model(small_network, model_path, 'other') is False

    def test_invalid_model_id(self, small_network, model_path):
        """Test that empty ids are rejected."""
        assert save_model(small_network, model_path, '') is False
        assert get_model_metadata(model_path, '') is None

    def test_invalid_accuracy(self, small_network, model_path):
        """Test that out-of-range accuracy is rejected."""
        assert save_model(small_network, model_path, accuracy=1.5) is False

    def test_record_count_mismatch(self, model_path):
        """Test that the database refuses inconsistent records."""
        db = ModelDatabase(db_path=model_path)
        with pytest.raises(ValueError):
            db.save_model_to_db('bad', [{'type': 'relu'}], (1, 1, 2, 2), 'mse', [])


@pytest.mark.unit
class TestForeignFiles:
    """Test reading SQLite files that are not model files."""

    @pytest.fixture
    def foreign_db(self, tmp_path):
        path = str(tmp_path / "other.db")
        conn = sqlite3.connect(path)
        conn.execute('CREATE TABLE notes (body TEXT)')
        conn.commit()
        conn.close()
        return path

    def tables(self, path):
        conn = sqlite3.connect(path)
        try:
            return {row[0] for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            )}
        finally:
            conn.close()

    def test_read_paths_leave_schema_alone(self, small_network, foreign_db):
        """Test that loading, listing and deleting add no tables."""
        assert load_model(small_network, foreign_db) is False
        assert list_saved_models(foreign_db) == []
        assert get_model_metadata(foreign_db) is None
        assert delete_model(foreign_db) is False
        assert self.tables(foreign_db) == {'notes'}
