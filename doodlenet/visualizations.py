"""
Visualization Utilities
=======================

This module provides functions for visualizing:
- Training progress (loss/accuracy curves from Trainer.fit)
- Feature maps from convolutional layers (NHWC)
- Convolutional kernels (kH, kW, C_in, C_out)
- Confusion matrix
- Sample predictions
"""

import numpy as np
import matplotlib.pyplot as plt


def _finish(fig, save_path, what, show):
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"{what} saved to {save_path}")

    if show:
        plt.show()
    return fig


def _grid(n_items, figsize):
    n_cols = int(np.ceil(np.sqrt(n_items)))
    n_rows = int(np.ceil(n_items / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=figsize)
    return fig, np.array(axes).flatten()


def plot_training_history(history, figsize=(14, 5), save_path=None, show=True):
    """
    Plot training history (loss and accuracy curves).

    Args:
        history: Dictionary with 'loss', 'accuracy', 'val_loss', 'val_accuracy'
        figsize: Figure size
        save_path: Path to save figure
        show: Call plt.show()
    """
    fig, axes = plt.subplots(1, 2, figsize=figsize)

    epochs = range(1, len(history['loss']) + 1)

    # Loss plot
    axes[0].plot(epochs, history['loss'], 'b-', label='Training Loss', linewidth=2)
    if history.get('val_loss'):
        axes[0].plot(epochs, history['val_loss'], 'r-', label='Validation Loss', linewidth=2)
    axes[0].set_xlabel('Epoch', fontsize=12)
    axes[0].set_ylabel('Loss', fontsize=12)
    axes[0].set_title('Training and Validation Loss', fontsize=14)
    axes[0].legend(fontsize=10)
    axes[0].grid(True, alpha=0.3)

    # Accuracy plot
    axes[1].plot(epochs, history['accuracy'], 'b-', label='Training Accuracy', linewidth=2)
    if history.get('val_accuracy'):
        axes[1].plot(epochs, history['val_accuracy'], 'r-', label='Validation Accuracy', linewidth=2)
    axes[1].set_xlabel('Epoch', fontsize=12)
    axes[1].set_ylabel('Accuracy', fontsize=12)
    axes[1].set_title('Training and Validation Accuracy', fontsize=14)
    axes[1].legend(fontsize=10)
    axes[1].grid(True, alpha=0.3)

    return _finish(fig, save_path, "Training history plot", show)


def visualize_feature_maps(feature_maps, max_maps=16, figsize=(12, 12), save_path=None, show=True):
    """
    Visualize feature maps from a convolutional layer.

    Args:
        feature_maps: Feature maps, shape (1, H, W, C) or (H, W, C), e.g. the
                      'feature_map' entry of NeuralNetwork.get_feature_maps()
        max_maps: Maximum number of feature maps to display
    """
    feature_maps = np.asarray(feature_maps)
    if feature_maps.ndim == 4:
        feature_maps = feature_maps[0]  # Remove batch dimension

    n_maps = min(feature_maps.shape[-1], max_maps)
    fig, axes = _grid(n_maps, figsize)

    for i in range(n_maps):
        axes[i].imshow(feature_maps[:, :, i], cmap='viridis')
        axes[i].set_title(f'Filter {i}', fontsize=8)
        axes[i].axis('off')

    # Hide unused subplots
    for i in range(n_maps, len(axes)):
        axes[i].axis('off')

    plt.suptitle('Feature Maps', fontsize=14)
    return _finish(fig, save_path, "Feature maps", show)


def visualize_filters(kernel, max_filters=32, figsize=(12, 8), save_path=None, show=True):
    """
    Visualize convolutional kernel weights.

    Args:
        kernel: Kernel weights, shape (kH, kW, C_in, C_out)
        max_filters: Maximum number of filters to display
    """
    kernel = np.asarray(kernel)
    n_filters = min(kernel.shape[3], max_filters)
    fig, axes = _grid(n_filters, figsize)

    for i in range(n_filters):
        # Average across input channels
        filter_img = np.mean(kernel[:, :, :, i], axis=2)

        # Normalize for visualization
        filter_img = (filter_img - filter_img.min()) / (filter_img.max() - filter_img.min() + 1e-8)

        axes[i].imshow(filter_img, cmap='gray')
        axes[i].set_title(f'Filter {i}', fontsize=8)
        axes[i].axis('off')

    for i in range(n_filters, len(axes)):
        axes[i].axis('off')

    plt.suptitle('Convolutional Filters', fontsize=14)
    return _finish(fig, save_path, "Filters visualization", show)


def visualize_confusion_matrix(cm, class_names=None, figsize=(10, 8), save_path=None, show=True):
    """
    Visualize confusion matrix.

    Args:
        cm: Confusion matrix, shape (num_classes, num_classes)
        class_names: List of class names
    """
    fig, ax = plt.subplots(figsize=figsize)

    im = ax.imshow(cm, interpolation='nearest', cmap=plt.cm.Blues)
    ax.figure.colorbar(im, ax=ax)

    if class_names is None:
        class_names = [str(i) for i in range(len(cm))]

    ax.set(xticks=np.arange(len(class_names)),
           yticks=np.arange(len(class_names)),
           xticklabels=class_names,
           yticklabels=class_names,
           ylabel='True Label',
           xlabel='Predicted Label',
           title='Confusion Matrix')

    plt.setp(ax.get_xticklabels(), rotation=45, ha='right', rotation_mode='anchor')

    thresh = cm.max() / 2.
    for i in range(len(class_names)):
        for j in range(len(class_names)):
            ax.text(j, i, format(cm[i, j], 'd'),
                    ha='center', va='center',
                    color='white' if cm[i, j] > thresh else 'black')

    return _finish(fig, save_path, "Confusion matrix", show)


def plot_sample_predictions(images, true_labels, pred_labels, class_names=None,
                            n_samples=16, figsize=(12, 12), save_path=None, show=True):
    """
    Plot sample predictions with true and predicted labels.

    Args:
        images: Images, shape (N, H, W, C) or (N, H, W)
        true_labels: True labels
        pred_labels: Predicted labels
        class_names: Class names for labels
    """
    n_samples = min(n_samples, len(images))
    fig, axes = _grid(n_samples, figsize)

    for i in range(n_samples):
        img = np.asarray(images[i])
        if img.ndim == 3 and img.shape[-1] == 1:
            img = np.squeeze(img, axis=-1)

        axes[i].imshow(img, cmap='gray' if img.ndim == 2 else None)

        true = class_names[true_labels[i]] if class_names else str(true_labels[i])
        pred = class_names[pred_labels[i]] if class_names else str(pred_labels[i])

        color = 'green' if true_labels[i] == pred_labels[i] else 'red'
        axes[i].set_title(f'True: {true}\nPred: {pred}', color=color, fontsize=9)
        axes[i].axis('off')

    for i in range(n_samples, len(axes)):
        axes[i].axis('off')

    plt.suptitle('Sample Predictions', fontsize=14)
    return _finish(fig, save_path, "Sample predictions", show)
