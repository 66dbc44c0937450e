"""Jobs, results and the worker message protocol."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

import numpy as np

from .errors import InvalidInput, WorkerError

TASK_KEY_PREFIX = 'task:'
MAX_SOURCE_REF_LENGTH = 4096

# Keys of the flat WorkResult form that are not model scores
_RESULT_META_KEYS = ('taskKey', 'computedAt', 'energy', 'loudness', 'tempo')


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_source_ref(source_ref: Any) -> str:
    if not isinstance(source_ref, str):
        raise InvalidInput(f"source reference must be a string, got {type(source_ref).__name__}")
    normalized = source_ref.strip()
    if not normalized:
        raise InvalidInput("source reference is empty")
    if len(normalized) > MAX_SOURCE_REF_LENGTH:
        raise InvalidInput(f"source reference longer than {MAX_SOURCE_REF_LENGTH} characters")
    if any(ord(ch) < 32 for ch in normalized):
        raise InvalidInput("source reference contains control characters")
    return normalized


def task_key(source_ref: Any) -> str:
    """Deduplication key: two submissions of the same source share one key."""
    return TASK_KEY_PREFIX + normalize_source_ref(source_ref)


class JobState(str, Enum):
    QUEUED = 'queued'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT)


@dataclass
class Job:
    id: str
    source_ref: str
    submitted_at: datetime = field(default_factory=utc_now)
    state: JobState = JobState.QUEUED

    @property
    def task_key(self) -> str:
        return self.id

    @classmethod
    def create(cls, source_ref: Any) -> 'Job':
        normalized = normalize_source_ref(source_ref)
        return cls(id=TASK_KEY_PREFIX + normalized, source_ref=normalized)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'taskKey': self.id,
            'sourceRef': self.source_ref,
            'submittedAt': self.submitted_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Job':
        job = cls.create(data.get('sourceRef'))
        submitted_at = data.get('submittedAt')
        if submitted_at:
            job.submitted_at = datetime.fromisoformat(submitted_at)
        return job


@dataclass(frozen=True)
class AuxFeatures:
    energy: float
    loudness: float
    tempo: float


@dataclass(frozen=True)
class WorkResult:
    """Final per-job output. Never updated in place."""

    task_key: str
    per_model_score: Dict[str, float]
    aux_features: AuxFeatures
    computed_at: datetime = field(default_factory=utc_now)

    def is_expired(self, ttl_seconds: float, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        return (now - self.computed_at).total_seconds() >= ttl_seconds

    def to_dict(self) -> Dict[str, Any]:
        """Flat form: model scores side by side with energy, loudness and tempo."""
        data: Dict[str, Any] = dict(self.per_model_score)
        data.update({
            'energy': self.aux_features.energy,
            'loudness': self.aux_features.loudness,
            'tempo': self.aux_features.tempo,
            'taskKey': self.task_key,
            'computedAt': self.computed_at.isoformat(),
        })
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkResult':
        scores = {
            name: float(value)
            for name, value in data.items()
            if name not in _RESULT_META_KEYS
        }
        computed_at = datetime.fromisoformat(data['computedAt'])
        if computed_at.tzinfo is None:
            computed_at = computed_at.replace(tzinfo=timezone.utc)
        return cls(
            task_key=data['taskKey'],
            per_model_score=scores,
            aux_features=AuxFeatures(
                energy=float(data['energy']),
                loudness=float(data['loudness']),
                tempo=float(data['tempo']),
            ),
            computed_at=computed_at,
        )

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> 'WorkResult':
        return cls.from_dict(json.loads(raw))


# --- Worker -> coordinator protocol -----------------------------------------

FEATURES = 'features'
ERROR = 'error'


@dataclass(frozen=True)
class FeaturesMessage:
    feature_tensor: np.ndarray
    energy: float
    loudness: float
    tempo: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': FEATURES,
            'featureTensor': np.asarray(self.feature_tensor, dtype=np.float32).tolist(),
            'energy': float(self.energy),
            'loudness': float(self.loudness),
            'tempo': float(self.tempo),
        }

    @property
    def aux_features(self) -> AuxFeatures:
        return AuxFeatures(energy=self.energy, loudness=self.loudness, tempo=self.tempo)


@dataclass(frozen=True)
class ErrorMessage:
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {'type': ERROR, 'reason': self.reason}


WorkerMessage = Union[FeaturesMessage, ErrorMessage]


def parse_worker_message(payload: Any, task_key: Optional[str] = None) -> WorkerMessage:
    """
    Validate a raw message received from a worker process.

    Anything other than a well-formed features or error message is a
    protocol violation and raises WorkerError.
    """
    if not isinstance(payload, dict):
        raise WorkerError(f"protocol violation: expected a mapping, got {type(payload).__name__}", task_key)

    kind = payload.get('type')
    if kind == ERROR:
        return ErrorMessage(reason=str(payload.get('reason') or 'unknown worker error'))
    if kind != FEATURES:
        raise WorkerError(f"protocol violation: unknown message type {kind!r}", task_key)

    try:
        tensor = np.asarray(payload['featureTensor'], dtype=np.float32)
        energy = float(payload['energy'])
        loudness = float(payload['loudness'])
        tempo = float(payload['tempo'])
    except (KeyError, TypeError, ValueError) as e:
        raise WorkerError(f"protocol violation: malformed features message ({e})", task_key) from None

    if tensor.ndim != 2 or tensor.shape[0] == 0:
        raise WorkerError(f"protocol violation: feature tensor must be 2-D and non-empty, got shape {tensor.shape}", task_key)

    return FeaturesMessage(feature_tensor=tensor, energy=energy, loudness=loudness, tempo=tempo)
