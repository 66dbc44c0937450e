"""Failure taxonomy for analysis jobs."""

from enum import Enum
from typing import Any, Dict, Optional


class FailureReason(str, Enum):
    INVALID_INPUT = 'InvalidInput'
    SPAWN_FAILURE = 'SpawnFailure'
    WORKER_ERROR = 'WorkerError'
    WORKER_CRASHED = 'WorkerCrashed'
    TIMEOUT = 'Timeout'
    INFERENCE_FAILURE = 'InferenceFailure'
    STORAGE_FAILURE = 'StorageFailure'


class AnalysisError(Exception):
    """Base class for every classified job failure."""

    reason = FailureReason.WORKER_ERROR

    def __init__(self, detail: str, task_key: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.task_key = task_key

    def to_dict(self) -> Dict[str, Any]:
        return {
            'reason': self.reason.value,
            'detail': self.detail,
            'taskKey': self.task_key,
        }

    def __str__(self):
        return f"{self.reason.value}: {self.detail}"


class InvalidInput(AnalysisError):
    """Malformed submission, rejected before dispatch."""

    reason = FailureReason.INVALID_INPUT


class SpawnFailure(AnalysisError):
    reason = FailureReason.SPAWN_FAILURE


class WorkerError(AnalysisError):
    """Feature extraction reported a failure (or broke the message protocol)."""

    reason = FailureReason.WORKER_ERROR


class WorkerCrashed(AnalysisError):
    """Worker process exited without sending a message."""

    reason = FailureReason.WORKER_CRASHED

    def __init__(self, detail: str, task_key: Optional[str] = None, exitcode: Optional[int] = None):
        super().__init__(detail, task_key)
        self.exitcode = exitcode


class JobTimeout(AnalysisError):
    reason = FailureReason.TIMEOUT


class InferenceFailure(AnalysisError):
    reason = FailureReason.INFERENCE_FAILURE


class StorageFailure(AnalysisError):
    """
    Cache/queue/database write failed.

    When raised after a successful computation, `result` holds the WorkResult
    that could not be persisted so callers can still recover it.
    """

    reason = FailureReason.STORAGE_FAILURE

    def __init__(self, detail: str, task_key: Optional[str] = None, result: Any = None):
        super().__init__(detail, task_key)
        self.result = result

