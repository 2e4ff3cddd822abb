"""
doodle-trainer
==============

Builds the QuickDraw data set and trains the doodle classifier CNN.

Example:
    doodle-trainer --class-list categories.txt --model-output doodle-guesser.json \\
        --epochs 15 --learn-rate 0.01
"""

import argparse
import logging
import sys

from .checkpoint import save_checkpoint
from .network import NeuralNetwork
from .quickdraw import (build_dataset, DEFAULT_CACHE_DIR, DEFAULT_DATA_DIR, MANIFEST_NAME,
                        IMAGE_SHAPE)
from .trainer import Trainer
from .utils import set_random_seed

logger = logging.getLogger(__name__)


def doodle_layers(num_classes):
    """The doodle classifier: two conv/pool stages and a small dense head."""
    height, width, channels = IMAGE_SHAPE
    return [
        {'type': 'input', 'shape': (1, height, width, channels)},
        {'type': 'conv2d', 'kernel': 3, 'filters': 8, 'activation': 'relu'},
        {'type': 'pool', 'size': 2},
        {'type': 'conv2d', 'kernel': 3, 'filters': 16, 'activation': 'relu'},
        {'type': 'pool', 'size': 2},
        {'type': 'flatten'},
        {'type': 'dense', 'size': 64, 'activation': 'relu'},
        {'type': 'dense', 'size': num_classes, 'activation': 'softmax'},
    ]


def read_class_list(path):
    """Newline-delimited category names; blank lines are skipped."""
    with open(path, 'r', encoding='utf-8') as f:
        names = [line.strip() for line in f if line.strip()]
    if not names:
        raise ValueError(f"Class list {path} is empty")
    return names


def build_parser():
    parser = argparse.ArgumentParser(
        prog='doodle-trainer',
        description='Builds data set and trains doodle detector CNN')
    parser.add_argument('--class-list', default='categories.txt',
                        help='Text file list of doodle types, newline delimited')
    parser.add_argument('--train-count', type=int, default=800,
                        help='Number of doodles to train on, per doodle, per epoch')
    parser.add_argument('--test-count', type=int, default=200,
                        help='Number of doodles to test against per doodle')
    parser.add_argument('--model-output', default='doodle-guesser.json',
                        help='Path to the final model file output')
    parser.add_argument('--epochs', type=int, default=15, help='Number of epochs to train')
    parser.add_argument('--learn-rate', type=float, default=0.01, help='Learning rate')
    parser.add_argument('--batch-size', type=int, default=32)
    parser.add_argument('--cache-dir', default=DEFAULT_CACHE_DIR,
                        help='Where downloaded QuickDraw .npy files are kept')
    parser.add_argument('--data-dir', default=DEFAULT_DATA_DIR,
                        help='Where the train/test .bin files are written')
    parser.add_argument('--manifest', default=None,
                        help=f'Manifest path (default: <data-dir>/{MANIFEST_NAME})')
    parser.add_argument('--checkpoint-path', default='.cache/checkpoints/model_epoch-{epoch}.json',
                        help="Per-epoch checkpoint pattern, '' to disable")
    parser.add_argument('--no-download', action='store_true',
                        help='Fail instead of downloading missing categories')
    parser.add_argument('--seed', type=int, default=None)
    parser.add_argument('--quiet', action='store_true', help='No progress bars')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    if args.seed is not None:
        set_random_seed(args.seed)

    class_names = read_class_list(args.class_list)
    logger.info("Training on %d classes: %s", len(class_names), ', '.join(class_names))

    with build_dataset(class_names, cache_dir=args.cache_dir, data_dir=args.data_dir,
                       manifest_path=args.manifest, train_count=args.train_count,
                       test_count=args.test_count, download=not args.no_download,
                       seed=args.seed) as dataset:
        X_train, y_train = dataset.load_split('train')
        X_test, y_test = dataset.load_split('test')
        num_classes = dataset.num_classes

    nn = NeuralNetwork(doodle_layers(num_classes), learning_rate=args.learn_rate,
                       loss='categorical_crossentropy')
    trainer = Trainer(nn, batch_size=args.batch_size, epochs=args.epochs,
                      checkpoint_every=1, checkpoint_path=args.checkpoint_path or None)
    history = trainer.fit(X_train, y_train, validation_data=(X_test, y_test),
                          verbose=not args.quiet)

    save_checkpoint(nn, args.model_output)
    print(f"Final model saved to {args.model_output}")
    if history['val_accuracy']:
        print(f"Test accuracy: {history['val_accuracy'][-1]:.4f}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
