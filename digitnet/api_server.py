"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for training and
evaluating digitnet models.

This module provides endpoints for:
- Training a network on MNIST IDX files with real-time progress updates
- Evaluating a saved model on a labeled test set
- Listing, inspecting and deleting saved models
- Rendering a test digit with the model's prediction

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for background training tasks
- SQLite model files for persistence
"""

import os
import sys
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List

import gevent
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from digitnet import driver
from digitnet import config
from digitnet.architectures import ARCHITECTURES
from digitnet.exceptions import (
    DatasetFormatError,
    EmptyDatasetError,
    ModelPersistenceError
)
from digitnet.mnist_loader import load_mnist
from digitnet.model_persistence import (
    list_saved_models,
    get_model_metadata,
    delete_model
)
from digitnet.network import Phase, load_network
from digitnet.tensor import Tensor
from digitnet.trainer import ProgressEvent, normalize_images, argmax_last

config.configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

is_production = os.getenv('FLASK_ENV') == 'production'

# SocketIO enables real-time communication (WebSockets) for training updates
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}


# ============================================================================
# REQUEST HELPERS
# ============================================================================

def _model_path(data: Dict[str, Any]) -> str:
    """
    Return the server's model file.

    Clients select models by ``model_id`` only; the file is fixed by
    DIGITNET_MODEL_PATH.

    Raises:
        ValueError: If the request tries to name a model file
    """
    if 'model_path' in data or 'model_path' in request.args:
        raise ValueError('model_path cannot be set by clients')
    return config.MODEL_PATH


def _data_paths(data: Dict[str, Any]):
    """
    Return the (images_path, labels_path) pair named in a request body.

    Relative paths that do not exist as given are looked up in the data
    directory (DIGITNET_DATA_DIR).

    Raises:
        ValueError: If a path is missing or does not exist
    """
    paths = []
    for key in ('images_path', 'labels_path'):
        path = data.get(key)
        if not isinstance(path, str) or not path:
            raise ValueError(f'{key} is required')
        if not os.path.isabs(path) and not os.path.isfile(path):
            path = os.path.join(config.DATA_DIR, path)
        if not os.path.isfile(path):
            raise ValueError(f'{key} does not exist: {path}')
        paths.append(path)
    return tuple(paths)


def _model_id(data: Dict[str, Any]) -> str:
    model_id = data.get('model_id', 'default')
    if not isinstance(model_id, str) or not model_id:
        raise ValueError('model_id must be a non-empty string')
    return model_id


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """
    Return server status and statistics.

    Counts the models in the default model file and the training jobs
    that are in progress (status='pending' or 'training').
    """
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'saved_models': len(list_saved_models(config.MODEL_PATH)),
        'training_jobs': active_training
    }), 200


@app.route('/api/train', methods=['POST'])
def train_model():
    """
    Start training a network in the background.

    Request body:
        {
            'images_path': 'data/train-images.idx3-ubyte',
            'labels_path': 'data/train-labels.idx1-ubyte',
            'model_id': 'default',               # optional
            'architecture': 'conv',              # optional, 'conv' or 'mlp'
            'hyperparameters': {'max_batches': 5000, ...}  # optional
        }

    Returns:
        JSON with job_id, model_id and status
    """
    data = request.get_json() or {}

    try:
        images_path, labels_path = _data_paths(data)
        model_id = _model_id(data)
        model_path = _model_path(data)
        architecture = data.get('architecture', 'conv')
        if architecture not in ARCHITECTURES:
            raise ValueError(
                f'architecture must be one of {sorted(ARCHITECTURES)}'
            )
        trainer_config = config.TrainerConfig.from_dict(data.get('hyperparameters'))
    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid training request: {e}")
        return jsonify({'error': str(e)}), 400

    job_id = str(uuid.uuid4())

    training_jobs[job_id] = {
        'model_id': model_id,
        'model_path': model_path,
        'status': 'pending',
        'progress': 0,
        'epochs': trainer_config.max_epochs
    }

    logger.info(
        f"Created training job {job_id} for model {model_id}: "
        f"architecture={architecture}, {trainer_config.to_dict()}"
    )

    # Run training in background so we can return immediately
    socketio.start_background_task(
        train_model_task,
        job_id, images_path, labels_path, model_path, model_id,
        architecture, trainer_config
    )

    return jsonify({
        'job_id': job_id,
        'model_id': model_id,
        'status': 'training_started'
    }), 202


def train_model_task(
    job_id: str,
    images_path: str,
    labels_path: str,
    model_path: str,
    model_id: str,
    architecture: str,
    trainer_config: config.TrainerConfig
) -> None:
    """
    Background task that trains a network.

    Sends every progress event via WebSocket as training progresses.
    """
    def on_progress(event: ProgressEvent) -> None:
        """Called for every training milestone to send progress updates."""
        job = training_jobs[job_id]
        job['status'] = 'training'
        if 'epoch' in event.fields and 'total_epochs' in event.fields:
            job['progress'] = (event.fields['epoch'] + 1) / event.fields['total_epochs'] * 100
        if 'accuracy' in event.fields:
            job['accuracy'] = event.fields['accuracy']

        # Send update to connected clients via WebSocket
        socketio.emit('training_update', {
            'job_id': job_id,
            'model_id': model_id,
            'progress': job['progress'],
            **event.to_dict()
        })

        # Let gevent send the message immediately
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id}")

        # Define yield function for cooperative multitasking
        # This allows HTTP requests to be processed during training
        def yield_to_other_tasks():
            gevent.sleep(0)

        result = driver.train(
            images_path,
            labels_path,
            model_path,
            config=trainer_config,
            architecture=architecture,
            model_id=model_id,
            callback=on_progress,
            yield_func=yield_to_other_tasks
        )

        training_jobs[job_id]['status'] = 'completed'
        training_jobs[job_id]['accuracy'] = result.accuracy
        training_jobs[job_id]['progress'] = 100

        logger.info(f"Training completed for job {job_id}: accuracy {result.accuracy:.2%}")

        # Notify clients that training is complete
        socketio.emit('training_complete', {
            'job_id': job_id,
            'model_id': model_id,
            'status': 'completed',
            'accuracy': float(result.accuracy),
            'batches': result.batches,
            'progress': 100
        })
        gevent.sleep(0)

        # Clients follow jobs through WebSocket events, so drop the record
        if job_id in training_jobs:
            del training_jobs[job_id]
            logger.debug(f"Cleaned up completed training job {job_id}")

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        training_jobs[job_id]['status'] = 'failed'
        training_jobs[job_id]['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'model_id': model_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)

        if job_id in training_jobs:
            del training_jobs[job_id]
            logger.debug(f"Cleaned up failed training job {job_id}")


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/evaluate', methods=['POST'])
def evaluate_model():
    """
    Evaluate a saved model on a labeled test set.

    Request body:
        {
            'images_path': 'data/t10k-images.idx3-ubyte',
            'labels_path': 'data/t10k-labels.idx1-ubyte',
            'model_id': 'default',             # optional
            'batch_size': 64                   # optional
        }

    Returns:
        JSON with model_id, accuracy and total
    """
    data = request.get_json() or {}

    try:
        images_path, labels_path = _data_paths(data)
        model_id = _model_id(data)
        model_path = _model_path(data)
        batch_size = data.get('batch_size', 64)
        if not isinstance(batch_size, int) or batch_size < 1:
            raise ValueError('batch_size must be a positive integer')
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    events: List[ProgressEvent] = []

    try:
        accuracy = driver.evaluate(
            images_path,
            labels_path,
            model_path,
            model_id=model_id,
            batch_size=batch_size,
            callback=events.append
        )
    except (EmptyDatasetError, DatasetFormatError) as e:
        logger.warning(f"Invalid evaluation data: {e}")
        return jsonify({'error': str(e)}), 400
    except ModelPersistenceError as e:
        logger.warning(str(e))
        return jsonify({'error': 'Model not found or not loadable'}), 404
    except Exception as e:
        logger.exception(f"Error evaluating model {model_id}: {e}")
        return jsonify({'error': 'Internal server error'}), 500

    return jsonify({
        'model_id': model_id,
        'accuracy': accuracy,
        'total': events[-1].fields['total'] if events else None
    }), 200


@app.route('/api/models', methods=['GET'])
def list_models():
    """List all models saved in the server's model file."""
    try:
        model_path = _model_path({})
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    models = list_saved_models(model_path)
    logger.debug(f"Listing {len(models)} models in {model_path}")
    return jsonify({'models': models}), 200


@app.route('/api/models/<model_id>', methods=['GET'])
def get_model(model_id: str):
    """Return the metadata of a saved model."""
    try:
        model_path = _model_path({})
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    metadata = get_model_metadata(model_path, model_id)
    if metadata is None:
        return jsonify({'error': 'Model not found'}), 404
    return jsonify(metadata), 200


@app.route('/api/models/<model_id>', methods=['DELETE'])
def delete_model_endpoint(model_id: str):
    """Delete a saved model."""
    try:
        model_path = _model_path({})
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    if not delete_model(model_path, model_id):
        logger.warning(f"Delete attempted for non-existent model: {model_id}")
        return jsonify({'error': 'Model not found'}), 404

    logger.info(f"Deleted model {model_id} from {model_path}")
    return jsonify({'model_id': model_id, 'deleted': True}), 200


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in array.flatten()]


def create_digit_image(image_data: np.ndarray, predicted: int, actual: int) -> str:
    """
    Create a base64-encoded PNG image of a digit.

    Args:
        image_data: (channels, height, width) uint8 image
        predicted: The digit the network predicted (0-9)
        actual: The correct digit (0-9)

    Returns:
        Base64-encoded PNG image string
    """
    plt.figure(figsize=(3, 3))
    plt.imshow(image_data[0], cmap='gray')
    plt.title(f"Predicted: {predicted} | Actual: {actual}")
    plt.axis('off')

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


@app.route('/api/models/<model_id>/example', methods=['POST'])
def get_example(model_id: str):
    """
    Classify one test digit and return it as an image.

    Request body:
        {
            'images_path': ..., 'labels_path': ...,
            'index': 0,            # optional, random when omitted
        }

    Returns JSON with image, prediction details and network output.
    """
    data = request.get_json() or {}

    try:
        images_path, labels_path = _data_paths(data)
        model_path = _model_path(data)
        dataset = load_mnist(images_path, labels_path)
    except (ValueError, EmptyDatasetError, DatasetFormatError) as e:
        return jsonify({'error': str(e)}), 400

    index = data.get('index')
    if index is None:
        index = int(np.random.randint(0, len(dataset)))
    if not isinstance(index, int) or not 0 <= index < len(dataset):
        return jsonify({'error': f'index must be in [0, {len(dataset)})'}), 400

    net = load_network(model_path, model_id, phase=Phase.TEST)
    if net is None:
        return jsonify({'error': 'Model not found or not loadable'}), 404

    image, actual_digit = dataset[index]
    output = net.test_batch(Tensor.from_array(normalize_images(image[np.newaxis])))
    predicted_digit = argmax_last(output.data[0])

    return jsonify({
        'model_id': model_id,
        'example_index': index,
        'predicted_digit': predicted_digit,
        'actual_digit': actual_digit,
        'correct': predicted_digit == actual_digit,
        'image_data': create_digit_image(image, predicted_digit, actual_digit),
        'network_output': array_to_float_list(output.data[0])
    }), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    port = config.PORT
    logger.info(f"Starting server at http://localhost:{port}/")

    # Start the server with WebSocket support
    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_production,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
