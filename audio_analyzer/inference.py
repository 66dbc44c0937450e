"""
MusiCNN classifier heads, loaded once per coordinator.

Each classifier consumes the frame-wise mel tensor produced by a worker
(shape [frames, 96]) and returns one [a, b] probability row per 187-frame
patch.
"""

import logging
import os
import threading
from typing import Dict, Iterable, Optional, Protocol

import numpy as np

from .extraction import MEL_BANDS, import_essentia

logger = logging.getLogger('audio-analyzer.inference')

PATCH_SIZE = 187
INPUT_NODE = 'model/Placeholder'
OUTPUT_NODE = 'model/Sigmoid'

# Models registered by default, in reporting order
MODEL_NAMES = (
    'danceability',
    'mood_happy',
    'mood_sad',
    'mood_relaxed',
    'mood_aggressive',
)

# Label order of these heads is [negative, positive]; scores are flipped
INVERTED_MODELS = frozenset({'mood_sad', 'mood_relaxed'})


def model_filename(name: str) -> str:
    return f'{name}-musicnn-msd-2.pb'


class Classifier(Protocol):
    name: str

    def predict(self, features: np.ndarray) -> np.ndarray:
        ...


def frames_to_patches(features: np.ndarray, patch_size: int = PATCH_SIZE) -> np.ndarray:
    """
    Batch [frames, bands] into [batch, 1, patch_size, bands].

    The last partial patch is zero-padded so short tracks still yield one row.
    """
    features = np.asarray(features, dtype=np.float32)
    if features.ndim != 2 or features.shape[0] == 0:
        raise ValueError(f"expected a non-empty [frames, bands] tensor, got shape {features.shape}")
    frames, bands = features.shape
    remainder = frames % patch_size
    if remainder:
        padding = np.zeros((patch_size - remainder, bands), dtype=np.float32)
        features = np.vstack([features, padding])
    return features.reshape(-1, 1, patch_size, bands)


class MusiCNNClassifier:
    """One TensorFlow classification head evaluated through essentia."""

    def __init__(self, name: str, graph_path: str):
        essentia = import_essentia()
        self.name = name
        self.graph_path = graph_path
        self._pool_type = essentia.Pool
        self._model = essentia.standard.TensorflowPredict(
            graphFilename=graph_path,
            inputs=[INPUT_NODE],
            outputs=[OUTPUT_NODE],
        )
        # A TensorFlow session is not safe to share between concurrent callers
        self._lock = threading.Lock()

    def predict(self, features: np.ndarray) -> np.ndarray:
        patches = frames_to_patches(features)
        if patches.shape[-1] != MEL_BANDS:
            raise ValueError(f"expected {MEL_BANDS} mel bands, got {patches.shape[-1]}")
        pool = self._pool_type()
        pool.set(INPUT_NODE, patches)
        with self._lock:
            output = self._model(pool)
        return np.asarray(output[OUTPUT_NODE], dtype=np.float64).reshape(patches.shape[0], -1)


def load_models(model_dir: str, names: Optional[Iterable[str]] = None) -> Dict[str, MusiCNNClassifier]:
    """
    Load every registered classifier head.

    Raises FileNotFoundError when a graph is missing: the coordinator must not
    accept submissions with a partial model set.
    """
    models = {}
    for name in (names or MODEL_NAMES):
        path = os.path.join(model_dir, model_filename(name))
        if not os.path.exists(path):
            raise FileNotFoundError(f"Model not found: {path}")
        models[name] = MusiCNNClassifier(name, path)
        logger.info(f"Model {name} has been loaded!")
    logger.info(f"{len(models)} MusiCNN classification heads loaded from {model_dir}")
    return models
