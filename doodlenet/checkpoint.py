"""
Checkpoint Files
================

Save and load network checkpoints as JSON.

A checkpoint is the dict returned by NeuralNetwork.checkpoint():

    {
        "learningRate": 0.01,
        "layers": [
            {"type": "input", "shape": [1, 28, 28, 1]},
            {"type": "conv2d", "strideH": 1, ..., "kernel": [...], "bias": [...]},
            ...
        ]
    }
"""

import json
from pathlib import Path

from .errors import ConfigurationError
from .layers import config_from_record
from .network import NeuralNetwork


def validate_checkpoint(record):
    """
    Check the overall structure of a checkpoint record.

    Raises:
        ConfigurationError: If the record cannot describe a network
    """
    if not isinstance(record, dict):
        raise ConfigurationError(f"Checkpoint must be a dict, got {type(record).__name__}")
    if 'learningRate' not in record:
        raise ConfigurationError("Checkpoint is missing 'learningRate'")
    layers = record.get('layers')
    if not isinstance(layers, list) or len(layers) < 2:
        raise ConfigurationError("Checkpoint must hold a list of at least two layers")
    for layer in layers:
        config_from_record(layer)
    return record


def save_checkpoint(network, filepath):
    """
    Save a network (or a checkpoint record) to a JSON file.

    Args:
        network: NeuralNetwork or a dict from NeuralNetwork.checkpoint()
        filepath: Destination path; parent directories are created
    """
    record = network.checkpoint() if isinstance(network, NeuralNetwork) else network
    validate_checkpoint(record)

    path = Path(filepath)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(record, f, indent=2)

    print(f"Checkpoint saved to {path}")
    return path


def load_checkpoint(filepath):
    """Load and validate a checkpoint record from a JSON file."""
    with open(filepath, 'r', encoding='utf-8') as f:
        record = json.load(f)
    return validate_checkpoint(record)


def load_network(filepath, loss='mse', debug=False):
    """
    Rebuild a network from a checkpoint file.

    Args:
        filepath: JSON checkpoint path
        loss: Loss used for further training
        debug: Debug mode for the rebuilt network
    """
    network = NeuralNetwork.from_checkpoint(load_checkpoint(filepath), loss=loss, debug=debug)
    print(f"Model loaded from {filepath}")
    return network
