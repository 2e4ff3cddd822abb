"""
doodlenet
=========

A feed-forward / convolutional neural-network engine written with NumPy.

- Declarative layer configs: input, dense, conv2d, pool, flatten
- NHWC Tensor4D with padding, window slicing and pooling
- Forward pass with explicit per-layer caches
- Backpropagation with in-place SGD, one sample at a time
- Softmax + cross-entropy gradient shortcut
- JSON checkpoints that rebuild a network exactly
- QuickDraw data preparation and a doodle-trainer command
"""

from .activations import (Linear, Sigmoid, Tanh, ReLU, LeakyReLU, ELU, Softplus,
                          softmax, get_activation)
from .errors import (NetworkError, ConfigurationError, ShapeMismatchError,
                     NumericalInstabilityError, UnsupportedOperationError)
from .losses import MSELoss, BinaryCrossEntropyLoss, CategoricalCrossEntropyLoss, get_loss
from .tensor import Tensor4D
from .network import NeuralNetwork, LayerTrace
from .checkpoint import save_checkpoint, load_checkpoint, load_network
from .trainer import Trainer, TrainerCallbacks
from .utils import one_hot_encode, create_batches, to_input_tensor
from .quickdraw import (QuickDrawDataset, BatchSampler, FileSampleSource, build_dataset,
                        load_manifest)

__version__ = "1.0.0"
__all__ = [
    # Activations
    'Linear', 'Sigmoid', 'Tanh', 'ReLU', 'LeakyReLU', 'ELU', 'Softplus',
    'softmax', 'get_activation',
    # Errors
    'NetworkError', 'ConfigurationError', 'ShapeMismatchError',
    'NumericalInstabilityError', 'UnsupportedOperationError',
    # Losses
    'MSELoss', 'BinaryCrossEntropyLoss', 'CategoricalCrossEntropyLoss', 'get_loss',
    # Engine
    'Tensor4D', 'NeuralNetwork', 'LayerTrace',
    # Checkpoints and training
    'save_checkpoint', 'load_checkpoint', 'load_network',
    'Trainer', 'TrainerCallbacks',
    # Utilities
    'one_hot_encode', 'create_batches', 'to_input_tensor',
    # QuickDraw data
    'QuickDrawDataset', 'BatchSampler', 'FileSampleSource', 'build_dataset', 'load_manifest',
]
