"""
config.py
~~~~~~~~~

Runtime configuration: training hyperparameters, environment-driven
settings and logging setup.
"""

import os
import logging
from dataclasses import dataclass, asdict, fields
from typing import Any, Dict, Optional

# Environment-driven settings
MODEL_PATH = os.getenv('DIGITNET_MODEL_PATH', 'models/mnist.db')
DATA_DIR = os.getenv('DIGITNET_DATA_DIR', 'data')
PORT = int(os.getenv('PORT', 8000))

NUM_CLASSES = 10


@dataclass
class TrainerConfig:
    """
    Hyperparameters of a training run.

    Defaults give the standard MNIST run: one epoch of single-sample
    batches capped at 5000 batches, evaluating every 1000 batches.
    """

    learning_rate: float = 0.01
    decay_rate: float = 0.1
    min_learning_rate: float = 0.000001
    batch_size: int = 1
    test_after_batches: int = 1000
    eval_batch_size: int = 128
    max_batches: Optional[int] = 5000
    max_epochs: int = 1
    train_fraction: float = 0.8
    num_classes: int = NUM_CLASSES

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ValueError: If a hyperparameter is out of range
        """
        if self.learning_rate <= 0:
            raise ValueError('learning_rate must be a positive number')
        if not 0 < self.decay_rate <= 1:
            raise ValueError('decay_rate must be in (0, 1]')
        if self.min_learning_rate < 0:
            raise ValueError('min_learning_rate must be non-negative')
        for name in ('batch_size', 'test_after_batches', 'eval_batch_size',
                     'max_epochs', 'num_classes'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ValueError(f'{name} must be a positive integer')
        if self.max_batches is not None and (
                not isinstance(self.max_batches, int)
                or isinstance(self.max_batches, bool)
                or self.max_batches < 1):
            raise ValueError('max_batches must be a positive integer or null')
        if not 0 < self.train_fraction < 1:
            raise ValueError('train_fraction must be between 0 and 1')

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'TrainerConfig':
        """
        Build a config from user-provided overrides.

        Raises:
            ValueError: On unknown keys or out-of-range values
        """
        data = dict(data or {})
        known = {field.name for field in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown hyperparameters: {sorted(unknown)}")
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    # Set up basic logging format
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # In production, silence noisy third-party logs but keep our logs visible
    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('digitnet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)
