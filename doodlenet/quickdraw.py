"""
QuickDraw Data
==============

Everything between the raw QuickDraw bitmap dumps and the Trainer:
- Reading numpy_bitmap .npy files (one 28x28 uint8 doodle per row)
- Building per-class train/test .bin files and a JSON manifest
- Reading samples back by byte offset
- Shuffled one-hot batches and whole splits in NHWC layout

Manifest layout (doodle-manifest.json):

    {
      "version": 1,
      "classes": [
        {
          "id": 0, "name": "cat", "displayName": "Cat", "oneHot": [1, 0],
          "train": {"count": 800, "bin": "cat_train.bin", "dtype": "u8",
                    "imageSize": [28, 28, 1], "offsets": [0, 784, ...]},
          "test": {...},
          "source": {"url": "https://...", "cacheFile": "..."}
        },
        ...
      ]
    }

Bin paths are relative to the directory holding the manifest.
"""

import json
import logging
import os
import urllib.parse
import urllib.request
from pathlib import Path

import numpy as np

from .utils import normalize_bytes

logger = logging.getLogger(__name__)

IMAGE_SHAPE = (28, 28, 1)
IMAGE_SIZE = 28 * 28
MANIFEST_VERSION = 1
SPLITS = ('train', 'test')
QUICKDRAW_URL = 'https://storage.googleapis.com/quickdraw_dataset/full/numpy_bitmap/{name}.npy'

DEFAULT_CACHE_DIR = '.cache/quickdraw'
DEFAULT_DATA_DIR = '.cache/public'
MANIFEST_NAME = 'doodle-manifest.json'


def snake_case(name):
    """'hot air balloon' -> 'hot_air_balloon'"""
    return '_'.join(name.strip().split(' '))


def display_name(name):
    """'hot_air_balloon' -> 'Hot Air Balloon'"""
    return ' '.join(part[:1].upper() + part[1:] for part in name.split('_'))


def quickdraw_url(name):
    """Download URL of a category's bitmap file (the bucket uses spaces)."""
    return QUICKDRAW_URL.format(name=urllib.parse.quote(name.replace('_', ' ')))


def read_bitmaps(path):
    """
    Open a numpy_bitmap file without reading it all into memory.

    Returns:
        Read-only (N, 784) uint8 array

    Raises:
        ValueError: If the file does not hold 28x28 bitmaps
    """
    images = np.load(path, mmap_mode='r')
    if images.ndim != 2 or images.shape[1] != IMAGE_SIZE:
        raise ValueError(f"{path}: expected (N, {IMAGE_SIZE}) bitmaps, got shape {images.shape}")
    return images


def fetch_bitmaps(name, cache_dir=DEFAULT_CACHE_DIR, download=True):
    """
    Path of a category's cached bitmap file, downloading it if missing.

    Args:
        name: Category in snake_case
        cache_dir: Directory holding {name}.npy
        download: Fetch missing files from the QuickDraw bucket
    """
    path = Path(cache_dir) / f"{name}.npy"
    if path.exists():
        return path
    if not download:
        raise FileNotFoundError(f"No cached bitmaps for '{name}' at {path}")

    url = quickdraw_url(name)
    path.parent.mkdir(parents=True, exist_ok=True)
    partial = path.with_name(path.name + '.part')
    logger.info("Downloading %s", url)
    urllib.request.urlretrieve(url, partial)
    partial.replace(path)
    return path


# Manifest

def validate_manifest(manifest):
    """
    Check a manifest dict for the fields the samplers rely on.

    Raises:
        ValueError: On a wrong version, bad class ids or inconsistent splits
    """
    if not isinstance(manifest, dict) or manifest.get('version') != MANIFEST_VERSION:
        raise ValueError(f"Unsupported manifest version: {manifest.get('version')!r}"
                         if isinstance(manifest, dict) else "Manifest must be a dict")

    classes = manifest.get('classes')
    if not isinstance(classes, list) or not classes:
        raise ValueError("Manifest must list at least one class")

    num_classes = len(classes)
    ids = sorted(info.get('id', -1) for info in classes)
    if ids != list(range(num_classes)):
        raise ValueError(f"Class ids must be 0..{num_classes - 1}, got {ids}")

    for info in classes:
        one_hot = info.get('oneHot')
        if one_hot is not None and (len(one_hot) != num_classes or one_hot[info['id']] != 1):
            raise ValueError(f"Class '{info.get('name')}' has a bad oneHot vector")
        for split in SPLITS:
            split_info = info.get(split)
            if not isinstance(split_info, dict):
                raise ValueError(f"Class '{info.get('name')}' has no '{split}' split")
            if split_info.get('count') != len(split_info.get('offsets', ())):
                raise ValueError(f"Class '{info.get('name')}' {split}: count does not "
                                 f"match the number of offsets")
            if list(split_info.get('imageSize', IMAGE_SHAPE)) != list(IMAGE_SHAPE):
                raise ValueError(f"Class '{info.get('name')}' {split}: unsupported "
                                 f"imageSize {split_info.get('imageSize')}")
    return manifest


def load_manifest(path):
    with open(path, 'r', encoding='utf-8') as f:
        return validate_manifest(json.load(f))


def save_manifest(manifest, path):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(manifest, f, indent=2)
    return path


def build_dataset(class_names, cache_dir=DEFAULT_CACHE_DIR, data_dir=DEFAULT_DATA_DIR,
                  manifest_path=None, train_count=800, test_count=200, download=True,
                  seed=None):
    """
    Cut train/test splits out of the QuickDraw bitmaps and write a manifest.

    For every class a random train_count + test_count subset of its doodles
    is taken. Pixels are inverted (255 - p) so strokes are dark on a light
    background, and each split is written as a flat {name}_{split}.bin file
    of 784-byte images.

    Args:
        class_names: Category names, spaces or underscores
        cache_dir: Where the downloaded .npy files live
        data_dir: Where the .bin files are written
        manifest_path: Manifest destination (default: data_dir/doodle-manifest.json)
        train_count: Training samples per class
        test_count: Test samples per class
        download: Fetch missing .npy files
        seed: Seed for the subset selection

    Returns:
        QuickDrawDataset over the written files
    """
    names = [snake_case(name) for name in class_names if name.strip()]
    if not names:
        raise ValueError("No class names given")
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate class names: {names}")
    if train_count <= 0 or test_count <= 0:
        raise ValueError("train_count and test_count must be positive")

    data_dir = Path(data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    manifest_path = Path(manifest_path) if manifest_path else data_dir / MANIFEST_NAME
    manifest_dir = manifest_path.parent

    rng = np.random.RandomState(seed)
    needed = train_count + test_count
    classes = []

    for class_id, name in enumerate(names):
        cache_file = fetch_bitmaps(name, cache_dir, download=download)
        images = read_bitmaps(cache_file)
        if len(images) < needed:
            raise ValueError(f"'{name}' has only {len(images)} samples, need {needed}")

        order = rng.permutation(len(images))
        chosen = {'train': order[:train_count], 'test': order[train_count:needed]}

        one_hot = [0] * len(names)
        one_hot[class_id] = 1
        info = {
            'id': class_id,
            'name': name,
            'displayName': display_name(name),
            'oneHot': one_hot,
            'source': {'url': quickdraw_url(name), 'cacheFile': str(cache_file)},
        }

        for split in SPLITS:
            indices = chosen[split]
            bin_path = data_dir / f"{name}_{split}.bin"
            pixels = 255 - np.asarray(images[indices], dtype=np.uint8)
            with open(bin_path, 'wb') as f:
                f.write(pixels.tobytes())

            info[split] = {
                'count': len(indices),
                'bin': Path(os.path.relpath(bin_path, manifest_dir)).as_posix(),
                'dtype': 'u8',
                'imageSize': list(IMAGE_SHAPE),
                'offsets': [i * IMAGE_SIZE for i in range(len(indices))],
            }

        logger.info("Prepared '%s': %d train, %d test", name, train_count, test_count)
        classes.append(info)

    manifest = {'version': MANIFEST_VERSION, 'classes': classes}
    save_manifest(manifest, manifest_path)
    print(f"Manifest written to {manifest_path}")
    return QuickDrawDataset(manifest, manifest_dir)


# Reading samples

class FileSampleSource:
    """
    Reads 784-byte samples out of .bin files, keeping each file open.

    Use as a context manager or call close() when done.
    """

    def __init__(self, root_dir):
        self.root_dir = Path(root_dir)
        self._handles = {}

    def read(self, bin_path, offset, length=IMAGE_SIZE):
        """Read one sample as floats in [0, 1]."""
        handle = self._handles.get(bin_path)
        if handle is None:
            handle = open(self.root_dir / bin_path, 'rb')
            self._handles[bin_path] = handle
        handle.seek(offset)
        data = handle.read(length)
        if len(data) != length:
            raise ValueError(f"{bin_path}: expected {length} bytes at offset {offset}, "
                             f"got {len(data)}")
        return normalize_bytes(np.frombuffer(data, dtype=np.uint8))

    def close(self):
        for handle in self._handles.values():
            handle.close()
        self._handles.clear()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class BatchSampler:
    """
    Iterates one epoch of (X, Y) batches over every sample of a split.

    Samples from all classes are pooled and reshuffled on each iteration.
    X has shape (B, 28, 28, 1); Y is one-hot with shape (B, num_classes).
    The last batch may be smaller.

    Args:
        classes: Manifest class entries
        source: FileSampleSource to read from
        batch_size: Samples per batch
        split: 'train' or 'test'
        shuffle: Reshuffle every epoch
    """

    def __init__(self, classes, source, batch_size, split='train', shuffle=True):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if split not in SPLITS:
            raise ValueError(f"Unknown split '{split}', expected one of {SPLITS}")

        self.source = source
        self.batch_size = batch_size
        self.split = split
        self.shuffle = shuffle
        self.num_classes = len(classes)
        self._samples = [(info['id'], info[split]['bin'], offset)
                         for info in classes for offset in info[split]['offsets']]

    @property
    def num_samples(self):
        return len(self._samples)

    def __len__(self):
        return (len(self._samples) + self.batch_size - 1) // self.batch_size

    def __iter__(self):
        if self.shuffle:
            order = np.random.permutation(len(self._samples))
        else:
            order = np.arange(len(self._samples))

        for start in range(0, len(order), self.batch_size):
            indices = order[start:start + self.batch_size]
            X = np.empty((len(indices),) + IMAGE_SHAPE)
            Y = np.zeros((len(indices), self.num_classes))
            for b, i in enumerate(indices):
                class_id, bin_path, offset = self._samples[i]
                X[b] = self.source.read(bin_path, offset).reshape(IMAGE_SHAPE)
                Y[b, class_id] = 1.0
            yield X, Y


class QuickDrawDataset:
    """
    A manifest plus the files it points to.

    Example:
        >>> with QuickDrawDataset.from_manifest('.cache/public/doodle-manifest.json') as ds:
        ...     X_train, y_train = ds.load_split('train')
        >>> trainer.fit(X_train, y_train)
    """

    def __init__(self, manifest, root_dir):
        self.manifest = validate_manifest(manifest)
        self.classes = sorted(manifest['classes'], key=lambda info: info['id'])
        self.source = FileSampleSource(root_dir)

    @classmethod
    def from_manifest(cls, path, root_dir=None):
        """Open a dataset; bin paths resolve against root_dir or the manifest's directory."""
        path = Path(path)
        return cls(load_manifest(path), root_dir if root_dir is not None else path.parent)

    @property
    def num_classes(self):
        return len(self.classes)

    @property
    def class_names(self):
        return [info.get('displayName') or display_name(info['name']) for info in self.classes]

    def count(self, split='train'):
        return sum(info[split]['count'] for info in self.classes)

    def batch_sampler(self, split='train', batch_size=32, shuffle=True):
        return BatchSampler(self.classes, self.source, batch_size, split=split, shuffle=shuffle)

    def load_split(self, split='train'):
        """
        Read a whole split into memory, class by class.

        Returns:
            X: (N, 28, 28, 1) floats in [0, 1]
            Y: (N, num_classes) one-hot targets
        """
        sampler = self.batch_sampler(split, batch_size=max(1, self.count(split)), shuffle=False)
        batches = list(sampler)
        if not batches:
            return np.empty((0,) + IMAGE_SHAPE), np.zeros((0, self.num_classes))
        return batches[0]

    def close(self):
        self.source.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
