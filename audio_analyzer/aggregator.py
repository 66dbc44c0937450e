"""Turns a worker's extracted features into the final WorkResult."""

import logging
from typing import Callable, Iterable, Mapping, Optional, Sequence, Tuple

import numpy as np

from .errors import InferenceFailure
from .inference import INVERTED_MODELS, Classifier
from .models import FeaturesMessage, WorkResult, utc_now

logger = logging.getLogger('audio-analyzer.aggregator')


def two_values_average(rows: Sequence[Sequence[float]]) -> Tuple[float, float]:
    """Average the first and second columns of N prediction rows separately."""
    values = np.asarray(rows, dtype=np.float64)
    if values.ndim != 2 or values.shape[0] == 0 or values.shape[1] < 2:
        raise ValueError(f"expected N x 2 prediction rows, got shape {values.shape}")
    return float(values[:, 0].mean()), float(values[:, 1].mean())


def summarize_predictions(name: str, rows: Sequence[Sequence[float]],
                          inverted: Iterable[str] = INVERTED_MODELS) -> float:
    """Reduce a model's prediction rows to its reported track-level score."""
    first, second = two_values_average(rows)
    if name in inverted:
        first, second = 1 - first, 1 - second
    return first


class ResultAggregator:
    """Runs every registered model on one job's features."""

    def __init__(self, models: Mapping[str, Classifier],
                 inverted: Iterable[str] = INVERTED_MODELS,
                 clock: Optional[Callable] = None):
        self.models = dict(models)
        self.inverted = frozenset(inverted)
        self._clock = clock or utc_now

    def aggregate(self, task_key: str, features: FeaturesMessage) -> WorkResult:
        scores = {}
        for name, model in self.models.items():
            try:
                rows = model.predict(features.feature_tensor)
                scores[name] = summarize_predictions(name, rows, self.inverted)
            except Exception as e:
                raise InferenceFailure(f"model {name} failed: {e}", task_key) from e

        logger.debug(f"Aggregated {task_key}: {scores}")
        return WorkResult(
            task_key=task_key,
            per_model_score=scores,
            aux_features=features.aux_features,
            computed_at=self._clock(),
        )
