"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite-based persistence for network parameters.

A model file is an SQLite database that can hold several models. Each
model stores its declarative architecture and, in construction order, one
record per layer: the layer type tag, the weight and bias shapes and the
raw little-endian float64 buffers.
"""

import sqlite3
import json
import os
import logging
from typing import Optional, List, Dict, Any, Generator
from contextlib import contextmanager

from digitnet.exceptions import ShapeMismatchError
from digitnet.layers import ParameterRecord

# Configure module logger
logger = logging.getLogger(__name__)


def _shape_to_json(shape) -> Optional[str]:
    return None if shape is None else json.dumps([int(dim) for dim in shape])


def _shape_from_json(text: Optional[str]):
    return None if text is None else tuple(json.loads(text))


class ModelDatabase:
    """
    Manages the SQLite database of one model file.

    The database stores:
    - Model metadata (architecture, input shape, loss, accuracy)
    - One parameter record per layer as binary blobs
    """

    def __init__(self, db_path: str = 'models/digitnet.db', create: bool = True):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
            create: Create the directory and tables if missing; read-only
                callers pass False so foreign files are left untouched
        """
        self.db_path = db_path
        if create:
            self._ensure_directory()
            self._initialize_schema()

    def _ensure_directory(self) -> None:
        """Create the database directory if it doesn't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row  # Enable column access by name
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS models (
                    model_id TEXT PRIMARY KEY,
                    architecture TEXT NOT NULL,
                    input_shape TEXT NOT NULL,
                    loss TEXT NOT NULL,
                    accuracy REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS layer_records (
                    model_id TEXT NOT NULL,
                    layer_index INTEGER NOT NULL,
                    layer_type TEXT NOT NULL,
                    weight_shape TEXT,
                    weight BLOB,
                    bias_shape TEXT,
                    bias BLOB,
                    PRIMARY KEY (model_id, layer_index)
                )
            ''')

    def save_model_to_db(
        self,
        model_id: str,
        architecture: List[Dict[str, Any]],
        input_shape,
        loss: str,
        records: List[ParameterRecord],
        accuracy: Optional[float] = None
    ) -> bool:
        """
        Save a model's architecture and layer records.

        The previous version of ``model_id`` is replaced in the same
        transaction, so a failed save leaves it intact.

        Args:
            model_id: Unique identifier for the model
            architecture: Declarative layer descriptions
            input_shape: (N, C, H, W) the network was built for
            loss: Registered loss name
            records: One parameter record per layer, in order
            accuracy: Validation accuracy (0.0 to 1.0)

        Returns:
            bool: True if successful

        Raises:
            ValueError: If accuracy is out of valid range or the record
                count disagrees with the architecture
        """
        # Validate inputs
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(
                f"Accuracy must be between 0.0 and 1.0, got {accuracy}"
            )
        if len(records) != len(architecture):
            raise ValueError(
                f"Got {len(records)} layer records for "
                f"{len(architecture)} layers"
            )

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO models
                (model_id, architecture, input_shape, loss, accuracy)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(model_id) DO UPDATE SET
                    architecture = excluded.architecture,
                    input_shape = excluded.input_shape,
                    loss = excluded.loss,
                    accuracy = excluded.accuracy,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                model_id,
                json.dumps(architecture),
                _shape_to_json(input_shape),
                loss,
                accuracy
            ))

            cursor.execute(
                'DELETE FROM layer_records WHERE model_id = ?',
                (model_id,)
            )
            cursor.executemany('''
                INSERT INTO layer_records
                (model_id, layer_index, layer_type, weight_shape, weight,
                 bias_shape, bias)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', [
                (
                    model_id,
                    index,
                    record.layer_type,
                    _shape_to_json(record.weight_shape),
                    record.weight,
                    _shape_to_json(record.bias_shape),
                    record.bias
                )
                for index, record in enumerate(records)
            ])

        logger.info(
            f"Saved model '{model_id}' with {len(records)} layers "
            f"to {self.db_path}, accuracy={accuracy}"
        )
        return True

    def load_model_from_db(self, model_id: str) -> Optional[Dict[str, Any]]:
        """
        Load a model's architecture and layer records.

        Args:
            model_id: Unique identifier of the model

        Returns:
            Dictionary with ``architecture``, ``input_shape``, ``loss``,
            ``accuracy`` and ``records``, or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT * FROM models WHERE model_id = ?',
                (model_id,)
            )
            row = cursor.fetchone()

            if row is None:
                logger.warning(f"Model '{model_id}' not found in {self.db_path}")
                return None

            cursor.execute('''
                SELECT layer_type, weight_shape, weight, bias_shape, bias
                FROM layer_records
                WHERE model_id = ?
                ORDER BY layer_index
            ''', (model_id,))

            records = [
                ParameterRecord(
                    layer_type=record['layer_type'],
                    weight_shape=_shape_from_json(record['weight_shape']),
                    weight=None if record['weight'] is None else bytes(record['weight']),
                    bias_shape=_shape_from_json(record['bias_shape']),
                    bias=None if record['bias'] is None else bytes(record['bias'])
                )
                for record in cursor.fetchall()
            ]

            logger.debug(f"Loaded {len(records)} layer records for '{model_id}'")
            return {
                'model_id': row['model_id'],
                'architecture': json.loads(row['architecture']),
                'input_shape': _shape_from_json(row['input_shape']),
                'loss': row['loss'],
                'accuracy': row['accuracy'],
                'records': records
            }

    def list_models_from_db(self) -> List[Dict[str, Any]]:
        """
        List all models with metadata.

        Returns:
            List of model metadata dictionaries
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT
                    m.model_id,
                    m.architecture,
                    m.input_shape,
                    m.loss,
                    m.accuracy,
                    m.created_at,
                    m.updated_at,
                    COUNT(r.layer_index) AS layer_count
                FROM models m
                LEFT JOIN layer_records r ON r.model_id = m.model_id
                GROUP BY m.model_id
                ORDER BY m.created_at DESC
            ''')

            models = [self._metadata(row) for row in cursor.fetchall()]
            logger.debug(f"Listed {len(models)} models")
            return models

    def get_model_metadata_from_db(self, model_id: str) -> Optional[Dict[str, Any]]:
        """
        Get model metadata without reading the parameter blobs.

        Args:
            model_id: Unique identifier of the model

        Returns:
            Metadata dictionary or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT
                    m.model_id,
                    m.architecture,
                    m.input_shape,
                    m.loss,
                    m.accuracy,
                    m.created_at,
                    m.updated_at,
                    (SELECT COUNT(*) FROM layer_records r
                     WHERE r.model_id = m.model_id) AS layer_count
                FROM models m
                WHERE m.model_id = ?
            ''', (model_id,))

            row = cursor.fetchone()
            if row is None:
                logger.warning(f"Metadata for model '{model_id}' not found")
                return None
            return self._metadata(row)

    @staticmethod
    def _metadata(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            'model_id': row['model_id'],
            'architecture': json.loads(row['architecture']),
            'input_shape': list(json.loads(row['input_shape'])),
            'loss': row['loss'],
            'accuracy': row['accuracy'],
            'layer_count': row['layer_count'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def delete_model_from_db(self, model_id: str) -> bool:
        """
        Delete a model and its layer records.

        Args:
            model_id: Unique identifier of the model

        Returns:
            bool: True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'DELETE FROM layer_records WHERE model_id = ?',
                (model_id,)
            )
            cursor.execute(
                'DELETE FROM models WHERE model_id = ?',
                (model_id,)
            )

            deleted = cursor.rowcount > 0
            if deleted:
                logger.info(f"Deleted model '{model_id}'")
            else:
                logger.warning(
                    f"Could not delete model '{model_id}': not found"
                )
            return deleted


def _open_existing(db_path: str) -> Optional[ModelDatabase]:
    """Open a model file for reading without creating it."""
    if not os.path.isfile(db_path):
        logger.error(f"Model file not found: {db_path}")
        return None
    return ModelDatabase(db_path=db_path, create=False)


def save_model(
    network,
    db_path: str,
    model_id: str = 'default',
    accuracy: Optional[float] = None
) -> bool:
    """
    Save a network's parameters to a model file.

    Args:
        network: Initialized network to save
        db_path: Path of the model database file
        model_id: Identifier of the model inside the file
        accuracy: Validation accuracy of the network (0.0 to 1.0)

    Returns:
        bool: True if the save was successful, False otherwise

    Example:
        >>> net = build_network(MLP_NET, (1, 1, 28, 28), loss='mse')
        >>> save_model(net, "models/mnist.db")
        True
    """
    if not model_id or not isinstance(model_id, str):
        logger.error("Invalid model_id: must be a non-empty string")
        return False

    try:
        records = network.parameter_records()
        db = ModelDatabase(db_path=db_path)
        return db.save_model_to_db(
            model_id,
            network.describe(),
            network.input_shape,
            network.loss.name,
            records,
            accuracy
        )

    except ValueError as e:
        logger.error(f"Validation error saving model '{model_id}': {e}")
        return False
    except (ShapeMismatchError, AttributeError) as e:
        logger.error(
            f"Serialization error saving model '{model_id}': {e}"
        )
        return False
    except sqlite3.Error as e:
        logger.error(f"Database error saving model '{model_id}': {e}")
        return False
    except OSError as e:
        logger.error(f"I/O error saving model '{model_id}': {e}")
        return False


def load_stored_model(
    db_path: str,
    model_id: str = 'default'
) -> Optional[Dict[str, Any]]:
    """
    Read a stored model's architecture and layer records.

    Args:
        db_path: Path of the model database file
        model_id: Identifier of the model inside the file

    Returns:
        Stored model dictionary or None if it could not be read
    """
    if not model_id or not isinstance(model_id, str):
        logger.error("Invalid model_id: must be a non-empty string")
        return None

    try:
        db = _open_existing(db_path)
        if db is None:
            return None
        return db.load_model_from_db(model_id)

    except sqlite3.Error as e:
        logger.error(f"Database error loading model '{model_id}': {e}")
        return None
    except (json.JSONDecodeError, TypeError) as e:
        logger.error(f"Corrupt record in model '{model_id}': {e}")
        return None


def load_model(network, db_path: str, model_id: str = 'default') -> bool:
    """
    Load stored parameters into an already built network.

    Every stored record must match the corresponding layer's type and
    parameter shapes; otherwise nothing is loaded.

    Args:
        network: Network built with the same architecture
        db_path: Path of the model database file
        model_id: Identifier of the model inside the file

    Returns:
        bool: True if the parameters were loaded, False otherwise
    """
    stored = load_stored_model(db_path, model_id)
    if stored is None:
        return False

    try:
        network.restore_parameters(stored['records'])
    except ShapeMismatchError as e:
        logger.error(
            f"Model '{model_id}' does not match the built architecture: {e}"
        )
        return False

    logger.info(f"Loaded model '{model_id}' from {db_path}")
    return True


def list_saved_models(db_path: str) -> List[Dict[str, Any]]:
    """
    List all models stored in a model file.

    Args:
        db_path: Path of the model database file

    Returns:
        list: A list of metadata dictionaries for each saved model
    """
    if not os.path.isfile(db_path):
        return []

    try:
        return ModelDatabase(db_path=db_path, create=False).list_models_from_db()

    except sqlite3.Error as e:
        logger.error(f"Database error listing models: {e}")
        return []
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error listing models: {e}")
        return []


def get_model_metadata(
    db_path: str,
    model_id: str = 'default'
) -> Optional[Dict[str, Any]]:
    """
    Get metadata for a specific model without loading its parameters.

    Args:
        db_path: Path of the model database file
        model_id: Identifier of the model inside the file

    Returns:
        dict: Model metadata or None if not found
    """
    if not model_id or not isinstance(model_id, str):
        logger.error("Invalid model_id: must be a non-empty string")
        return None

    try:
        db = _open_existing(db_path)
        if db is None:
            return None
        return db.get_model_metadata_from_db(model_id)

    except sqlite3.Error as e:
        logger.error(
            f"Database error getting metadata for '{model_id}': {e}"
        )
        return None
    except json.JSONDecodeError as e:
        logger.error(
            f"JSON decode error getting metadata for '{model_id}': {e}"
        )
        return None


def delete_model(db_path: str, model_id: str = 'default') -> bool:
    """
    Delete a stored model.

    Args:
        db_path: Path of the model database file
        model_id: Identifier of the model inside the file

    Returns:
        bool: True if deletion was successful, False otherwise
    """
    if not model_id or not isinstance(model_id, str):
        logger.error("Invalid model_id: must be a non-empty string")
        return False

    try:
        db = _open_existing(db_path)
        if db is None:
            return False
        return db.delete_model_from_db(model_id)

    except sqlite3.Error as e:
        logger.error(f"Database error deleting model '{model_id}': {e}")
        return False
