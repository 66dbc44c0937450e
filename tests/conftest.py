import threading
import time
from datetime import timedelta
from typing import Dict, List, Optional

import numpy as np
import pytest

from audio_analyzer.aggregator import ResultAggregator
from audio_analyzer.dispatcher import Dispatcher
from audio_analyzer.errors import StorageFailure
from audio_analyzer.models import AuxFeatures, FeaturesMessage, JobState, WorkResult, utc_now
from audio_analyzer.process import WorkerOutcome
from audio_analyzer.supervisor import JobSupervisor


def features_payload(frames: int = 10, energy: float = 0.5, loudness: float = -12.0,
                     tempo: float = 120.0) -> dict:
    return FeaturesMessage(
        feature_tensor=np.ones((frames, 96), dtype=np.float32),
        energy=energy,
        loudness=loudness,
        tempo=tempo,
    ).to_dict()


def make_result(task_key: str = 'task:a.mp3', computed_at=None, **scores) -> WorkResult:
    return WorkResult(
        task_key=task_key,
        per_model_score=scores or {'mood_happy': 0.25},
        aux_features=AuxFeatures(energy=0.5, loudness=-12.0, tempo=120.0),
        computed_at=computed_at or utc_now(),
    )


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeClassifier:
    def __init__(self, name: str, rows=((0.2, 0.8), (0.4, 0.6)), error: Optional[Exception] = None):
        self.name = name
        self.rows = np.asarray(rows, dtype=np.float64)
        self.error = error
        self.calls = 0

    def predict(self, features):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.rows


class FakeHandle:
    """Worker handle whose outcome is scripted by the test."""

    def __init__(self, spawner: 'FakeSpawner', source_ref: str, outcome: WorkerOutcome,
                 gate: Optional[threading.Event]):
        self.spawner = spawner
        self.source_ref = source_ref
        self.outcome = outcome
        self.gate = gate
        self.terminated = False
        self.closed = 0

    def wait(self, timeout: float) -> WorkerOutcome:
        if self.gate is not None:
            self.gate.wait(10)
        return self.outcome

    def terminate(self) -> None:
        self.terminated = True

    def close(self) -> None:
        self.closed += 1
        self.spawner._exited(self)


class FakeSpawner:
    """
    Spawner that records concurrency instead of starting processes.

    Outcomes and gates are looked up by source reference; anything
    unscripted produces a valid features message.
    """

    def __init__(self, gate: Optional[threading.Event] = None):
        self.gate = gate
        self.outcomes: Dict[str, WorkerOutcome] = {}
        self.spawn_errors: Dict[str, Exception] = {}
        self.gates: Dict[str, threading.Event] = {}
        self.spawned: List[str] = []
        self.handles: List[FakeHandle] = []
        self.live = 0
        self.peak = 0
        self._lock = threading.Lock()

    def spawn(self, source_ref: str) -> FakeHandle:
        if source_ref in self.spawn_errors:
            raise self.spawn_errors[source_ref]
        outcome = self.outcomes.get(source_ref, WorkerOutcome(message=features_payload()))
        handle = FakeHandle(self, source_ref, outcome, self.gates.get(source_ref, self.gate))
        with self._lock:
            self.spawned.append(source_ref)
            self.handles.append(handle)
            self.live += 1
            self.peak = max(self.peak, self.live)
        return handle

    def _exited(self, handle: FakeHandle) -> None:
        with self._lock:
            self.live -= 1


class InMemoryStore:
    """ResultStore stand-in keeping everything in dicts."""

    def __init__(self, ttl_seconds: int = 3600, save_failures: int = 0):
        self.ttl_seconds = ttl_seconds
        self.save_failures = save_failures
        self.results: Dict[str, WorkResult] = {}
        self.states: Dict[str, List[JobState]] = {}
        self.failures: List[tuple] = []
        self.save_attempts = 0
        self._lock = threading.Lock()

    def cached(self, task_key: str) -> Optional[WorkResult]:
        result = self.results.get(task_key)
        if result is None or result.is_expired(self.ttl_seconds):
            return None
        return result

    def save(self, job, result: WorkResult) -> None:
        with self._lock:
            self.save_attempts += 1
            if self.save_failures > 0:
                self.save_failures -= 1
                raise StorageFailure("redis unavailable", job.task_key, result=result)
            self.results[job.task_key] = result
        self.mark_state(job, JobState.COMPLETED)

    def mark_state(self, job, state: JobState) -> None:
        with self._lock:
            self.states.setdefault(job.task_key, []).append(state)

    def record_failure(self, job, state: JobState, error) -> None:
        self.mark_state(job, state)
        with self._lock:
            self.failures.append((job.task_key, state, error))

    def status(self, task_key: str):
        result = self.cached(task_key)
        if result is not None:
            return {'taskKey': task_key, 'state': 'completed', 'result': result.to_dict(), 'error': None}
        states = self.states.get(task_key)
        if not states:
            return None
        return {'taskKey': task_key, 'state': states[-1].value, 'result': None, 'error': None}

    def seed(self, result: WorkResult, age_seconds: float = 0) -> None:
        if age_seconds:
            result = WorkResult(
                task_key=result.task_key,
                per_model_score=result.per_model_score,
                aux_features=result.aux_features,
                computed_at=utc_now() - timedelta(seconds=age_seconds),
            )
        self.results[result.task_key] = result


@pytest.fixture
def classifiers():
    return {
        'mood_happy': FakeClassifier('mood_happy'),
        'mood_sad': FakeClassifier('mood_sad'),
    }


@pytest.fixture
def gate():
    event = threading.Event()
    yield event
    # Never leave supervisor threads blocked after a failing assertion
    event.set()


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def make_dispatcher(classifiers, store):
    created = []

    def factory(spawner, max_workers: int = 5, job_timeout: float = 1.0,
                storage_retries: int = 3, result_store=None) -> Dispatcher:
        supervisor = JobSupervisor(spawner, ResultAggregator(classifiers), job_timeout)
        dispatcher = Dispatcher(
            supervisor,
            result_store or store,
            max_workers=max_workers,
            storage_retries=storage_retries,
            storage_retry_delay=0.01,
            sleep=lambda seconds: None,
        )
        created.append(dispatcher)
        return dispatcher

    yield factory
    for dispatcher in created:
        dispatcher.shutdown(wait=True, timeout=5)
