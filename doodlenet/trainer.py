"""
Trainer
=======

The epoch/batch loop around NeuralNetwork.train().

The network itself only knows how to take one SGD step on one sample. The
Trainer:
- Shuffles and batches the data every epoch
- Trains sample by sample and tracks loss and arg-max accuracy
- Reports progress (tqdm) and calls user callbacks
- Takes periodic checkpoints, optionally writing them to disk
"""

import numpy as np
from tqdm import tqdm

from .checkpoint import save_checkpoint
from .utils import create_batches, one_hot_encode


class TrainerCallbacks:
    """
    Hooks called by Trainer.fit(). Subclass and override what you need.

    Metrics dicts hold 'loss' and, at epoch end, 'accuracy' (plus
    'val_loss'/'val_accuracy' when validation data is given).
    """

    def on_epoch_start(self, epoch):
        pass

    def on_batch_end(self, batch_index, metrics):
        pass

    def on_epoch_end(self, epoch, metrics):
        pass

    def on_checkpoint(self, epoch, record):
        pass


class Trainer:
    """
    Mini-batch training driver for a NeuralNetwork.

    Args:
        network: NeuralNetwork to train in place
        batch_size: Samples per batch (default: 32)
        epochs: Number of passes over the data (default: 10)
        checkpoint_every: Take a checkpoint every N epochs (default: 1)
        checkpoint_path: Optional file pattern such as 'ckpt/model_epoch-{epoch}.json'
        shuffle: Shuffle samples every epoch

    Example:
        >>> trainer = Trainer(nn, batch_size=32, epochs=5)
        >>> history = trainer.fit(X_train, y_train, validation_data=(X_test, y_test))
    """

    def __init__(self, network, batch_size=32, epochs=10, checkpoint_every=1,
                 checkpoint_path=None, shuffle=True):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if epochs <= 0:
            raise ValueError(f"epochs must be positive, got {epochs}")
        if checkpoint_every <= 0:
            raise ValueError(f"checkpoint_every must be positive, got {checkpoint_every}")

        self.network = network
        self.batch_size = batch_size
        self.epochs = epochs
        self.checkpoint_every = checkpoint_every
        self.checkpoint_path = checkpoint_path
        self.shuffle = shuffle
        self.history = self._empty_history()

    @staticmethod
    def _empty_history():
        return {'loss': [], 'accuracy': [], 'val_loss': [], 'val_accuracy': []}

    def _prepare_inputs(self, X):
        """Reshape every sample to what the input layer accepts."""
        X = np.asarray(X, dtype=np.float64)
        n, h, w, c = self.network.input_shape
        if h > 1 or w > 1:
            return X.reshape(len(X), n, h, w, c)
        return X.reshape(len(X), -1)

    def _prepare_targets(self, y):
        y = np.asarray(y)
        output_size = self.network.output_size
        if y.ndim == 1:
            if output_size > 1:
                return one_hot_encode(y, output_size)
            return y.astype(np.float64).reshape(-1, 1)
        return y.astype(np.float64)

    def fit(self, X, y, validation_data=None, callbacks=None, verbose=True):
        """
        Train the network.

        Args:
            X: Samples, shape (N, ...) matching the input layer
            y: Integer labels (N,) or targets (N, output_size)
            validation_data: Tuple (X_val, y_val) evaluated after each epoch
            callbacks: TrainerCallbacks instance
            verbose: Show a progress bar and per-epoch summary

        Returns:
            Training history dictionary
        """
        callbacks = callbacks or TrainerCallbacks()
        X = self._prepare_inputs(X)
        y = self._prepare_targets(y)
        if len(X) != len(y):
            raise ValueError(f"Got {len(X)} samples but {len(y)} targets")

        if validation_data is not None:
            X_val = self._prepare_inputs(validation_data[0])
            y_val = self._prepare_targets(validation_data[1])

        self.history = self._empty_history()
        n_batches = (len(X) + self.batch_size - 1) // self.batch_size

        for epoch in range(self.epochs):
            callbacks.on_epoch_start(epoch)

            epoch_loss = 0.0
            epoch_correct = 0
            n_samples = 0

            batches = create_batches(X, y, self.batch_size, shuffle=self.shuffle)
            if verbose:
                batches = tqdm(batches, total=n_batches, desc=f"Epoch {epoch+1}/{self.epochs}")

            for batch_index, (X_batch, y_batch) in enumerate(batches):
                for x_i, y_i in zip(X_batch, y_batch):
                    self.network.train(x_i, y_i)

                    prediction = np.ravel(self.network.guess(x_i))
                    epoch_loss += self.network.loss_fn.f(prediction, y_i)
                    epoch_correct += int(np.argmax(prediction) == np.argmax(y_i))
                    n_samples += 1

                batch_metrics = {'loss': epoch_loss / max(1, n_samples)}
                callbacks.on_batch_end(batch_index, batch_metrics)

                if verbose and hasattr(batches, 'set_postfix'):
                    batches.set_postfix({
                        'loss': f'{epoch_loss/n_samples:.4f}',
                        'acc': f'{epoch_correct/n_samples:.4f}'
                    })

            metrics = {
                'loss': epoch_loss / max(1, n_samples),
                'accuracy': epoch_correct / max(1, n_samples),
            }
            self.history['loss'].append(metrics['loss'])
            self.history['accuracy'].append(metrics['accuracy'])

            if validation_data is not None:
                val_loss, val_accuracy = self.network.evaluate(X_val, y_val)
                metrics['val_loss'] = val_loss
                metrics['val_accuracy'] = val_accuracy
                self.history['val_loss'].append(val_loss)
                self.history['val_accuracy'].append(val_accuracy)

            callbacks.on_epoch_end(epoch, metrics)

            if verbose:
                msg = (f"Epoch {epoch+1}/{self.epochs} - Loss: {metrics['loss']:.4f}"
                       f" - Acc: {metrics['accuracy']:.4f}")
                if validation_data is not None:
                    msg += f" - Val Loss: {val_loss:.4f} - Val Acc: {val_accuracy:.4f}"
                print(msg)

            if (epoch + 1) % self.checkpoint_every == 0:
                self.checkpoint(epoch, callbacks)

        return self.history

    def checkpoint(self, epoch, callbacks=None):
        """Take a checkpoint, hand it to the callbacks and write it if a path is set."""
        record = self.network.checkpoint()
        if callbacks is not None:
            callbacks.on_checkpoint(epoch, record)
        if self.checkpoint_path:
            save_checkpoint(record, self.checkpoint_path.format(epoch=epoch))
        return record
