"""
Utility Functions
=================

Helper functions for:
- Byte normalisation
- Turning images into network inputs
- Batching
- Metrics
"""

import numpy as np

from .tensor import Tensor4D


def normalize_bytes(data):
    """Map uint8 pixel values to floats in [0, 1]."""
    return np.asarray(data, dtype=np.float64) / 255.0


def to_input_tensor(image, height=28, width=28):
    """
    Wrap a single-channel image as a (1, H, W, 1) tensor for guess().

    Args:
        image: (H, W) array, (H, W, 1) array or flat buffer of H*W values
    """
    return Tensor4D((1, height, width, 1), np.asarray(image, dtype=np.float64).ravel())


def one_hot_encode(labels, num_classes=None):
    """
    Convert integer labels to one-hot encoded vectors.

    Args:
        labels: Integer labels, shape (N,)
        num_classes: Number of classes (inferred if None)

    Returns:
        One-hot matrix, shape (N, num_classes)
    """
    labels = np.asarray(labels).astype(int)

    if num_classes is None:
        num_classes = labels.max() + 1

    one_hot = np.zeros((len(labels), num_classes), dtype=np.float64)
    one_hot[np.arange(len(labels)), labels] = 1.0

    return one_hot


def create_batches(X, y, batch_size, shuffle=True):
    """
    Create mini-batches for training.

    Args:
        X: Features, shape (N, ...)
        y: Labels, shape (N,) or (N, C)
        batch_size: Batch size
        shuffle: Whether to shuffle

    Yields:
        (X_batch, y_batch) tuples
    """
    n_samples = len(X)

    if shuffle:
        indices = np.random.permutation(n_samples)
        X = X[indices]
        y = y[indices]

    for start_idx in range(0, n_samples, batch_size):
        end_idx = min(start_idx + batch_size, n_samples)
        yield X[start_idx:end_idx], y[start_idx:end_idx]


def accuracy_score(y_true, y_pred):
    """
    Compute classification accuracy.

    Args:
        y_true: True labels (integers or one-hot)
        y_pred: Predictions (probabilities or one-hot)

    Returns:
        Accuracy as float
    """
    y_true = np.asarray(y_true)
    y_pred = np.asarray(y_pred)
    if y_true.ndim > 1:
        y_true = np.argmax(y_true, axis=1)
    if y_pred.ndim > 1:
        y_pred = np.argmax(y_pred, axis=1)

    return float(np.mean(y_true == y_pred))


def confusion_matrix(y_true, y_pred, num_classes=None):
    """
    Compute confusion matrix.

    Args:
        y_true: True labels
        y_pred: Predicted labels
        num_classes: Number of classes

    Returns:
        Confusion matrix, shape (num_classes, num_classes)
    """
    y_true = np.asarray(y_true)
    y_pred = np.asarray(y_pred)
    if y_true.ndim > 1:
        y_true = np.argmax(y_true, axis=1)
    if y_pred.ndim > 1:
        y_pred = np.argmax(y_pred, axis=1)

    if num_classes is None:
        num_classes = max(y_true.max(), y_pred.max()) + 1

    cm = np.zeros((num_classes, num_classes), dtype=int)
    for t, p in zip(y_true, y_pred):
        cm[t, p] += 1

    return cm


def train_test_split(X, y, test_size=0.2, shuffle=True, random_state=None):
    """
    Split data into train and test sets.

    Returns:
        X_train, X_test, y_train, y_test
    """
    if random_state is not None:
        np.random.seed(random_state)

    n_samples = len(X)
    n_test = int(n_samples * test_size)

    if shuffle:
        indices = np.random.permutation(n_samples)
    else:
        indices = np.arange(n_samples)

    test_indices = indices[:n_test]
    train_indices = indices[n_test:]

    return X[train_indices], X[test_indices], y[train_indices], y[test_indices]


def set_random_seed(seed):
    """Set random seed for reproducibility (weights are drawn from np.random)."""
    np.random.seed(seed)
    print(f"Random seed set to {seed}")
