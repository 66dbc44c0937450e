"""
Concurrency-bounded dispatch of analysis jobs to worker processes.

Scheduling decisions (slot count, pending FIFO, in-flight map) are made under
one lock; each dispatched job is then supervised on its own thread, which
blocks on the worker process and runs inference once features arrive.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Union

from .errors import AnalysisError, JobTimeout, SpawnFailure, StorageFailure, WorkerError
from .models import Job, JobState, WorkResult
from .supervisor import JobSupervisor

logger = logging.getLogger('audio-analyzer.dispatcher')

Outcome = Union[WorkResult, AnalysisError]


@dataclass(frozen=True)
class DispatcherStats:
    active: int
    pending: int
    inflight: int
    peak_active: int
    dispatched: int
    released: int


class _PendingJob:
    __slots__ = ('job', 'future')

    def __init__(self, job: Job, future: Future):
        self.job = job
        self.future = future


class _Slot:
    """A concurrency permit; released exactly once, from the job's finalizer."""

    __slots__ = ('_dispatcher', 'released')

    def __init__(self, dispatcher: 'Dispatcher'):
        self._dispatcher = dispatcher
        self.released = False

    def release(self, dispatch_next: bool = True) -> None:
        self._dispatcher._release_slot(self, dispatch_next)


def _completed_future(result: WorkResult) -> Future:
    future = Future()
    future.set_result(result)
    return future


class Dispatcher:
    """
    Accepts jobs, deduplicates them by task key and runs at most
    `max_workers` of them at a time, strictly in submission order.
    """

    def __init__(self, supervisor: JobSupervisor, store, max_workers: int = 5,
                 storage_retries: int = 3, storage_retry_delay: float = 0.5,
                 sleep: Callable[[float], None] = time.sleep):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.supervisor = supervisor
        self.store = store
        self.max_workers = max_workers
        self.storage_retries = max(1, storage_retries)
        self.storage_retry_delay = storage_retry_delay
        self._sleep = sleep

        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._pending: Deque[_PendingJob] = deque()
        self._inflight: Dict[str, Future] = {}
        self._active = 0
        self._peak_active = 0
        self._dispatched = 0
        self._released = 0
        self._closed = False

    # --- submission ---------------------------------------------------------

    def submit(self, source_ref: str) -> Future:
        """
        Submit a source for analysis and return a future of its WorkResult.

        Raises InvalidInput synchronously for a malformed reference. Every
        later failure is delivered through the future as an AnalysisError.
        """
        job = Job.create(source_ref)
        key = job.task_key

        with self._lock:
            self._ensure_open()
            existing = self._inflight.get(key)
        if existing is not None:
            logger.debug(f"Joining in-flight job {key}")
            return existing

        cached = self.store.cached(key)
        if cached is not None:
            logger.info(f"Cache hit for {key}, no worker needed")
            return _completed_future(cached)

        with self._lock:
            self._ensure_open()
            existing = self._inflight.get(key)
            if existing is not None:
                return existing
            future = Future()
            self._inflight[key] = future

        self.store.mark_state(job, JobState.QUEUED)
        with self._lock:
            self._pending.append(_PendingJob(job, future))
        self.try_dispatch_next()
        return future

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("dispatcher is shut down")

    # --- dispatch -----------------------------------------------------------

    def try_dispatch_next(self) -> None:
        """Start queued jobs while slots are free. Safe to call from any thread."""
        while True:
            with self._lock:
                if not self._pending or self._active >= self.max_workers:
                    return
                pending = self._pending.popleft()
                self._active += 1
                self._dispatched += 1
                self._peak_active = max(self._peak_active, self._active)
                slot = _Slot(self)
            self._launch(pending, slot)

    def _launch(self, pending: _PendingJob, slot: _Slot) -> None:
        job = pending.job
        job.state = JobState.ACTIVE
        thread = threading.Thread(
            target=self._run_job,
            args=(pending, slot),
            name=f'job:{job.task_key[-40:]}',
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError as e:
            # The outer loop in try_dispatch_next picks up the next job
            slot.release(dispatch_next=False)
            self._resolve(pending, SpawnFailure(f"could not start supervisor thread: {e}", job.task_key))

    def _run_job(self, pending: _PendingJob, slot: _Slot) -> None:
        try:
            outcome = self._execute(pending.job)
        finally:
            slot.release()
        self._resolve(pending, outcome)

    def _execute(self, job: Job) -> Outcome:
        try:
            self.store.mark_state(job, JobState.ACTIVE)
            result = self.supervisor.run(job)
            self._persist(job, result)
            return result
        except AnalysisError as e:
            return e
        except Exception as e:
            logger.exception(f"Unexpected error while running {job.task_key}")
            return WorkerError(f"unexpected coordinator error: {e}", job.task_key)

    def _persist(self, job: Job, result: WorkResult) -> None:
        """Save a computed result, retrying a bounded number of times."""
        failure = None
        for attempt in range(1, self.storage_retries + 1):
            try:
                self.store.save(job, result)
                return
            except StorageFailure as e:
                failure = e
                logger.warning(
                    f"Persisting {job.task_key} failed (attempt {attempt}/{self.storage_retries}): {e.detail}"
                )
                if attempt < self.storage_retries:
                    self._sleep(self.storage_retry_delay * attempt)

        logger.error(
            f"Giving up persisting {job.task_key} after {self.storage_retries} attempts; "
            f"result kept for manual recovery: {result.to_json()}"
        )
        raise failure

    def _release_slot(self, slot: _Slot, dispatch_next: bool) -> None:
        with self._lock:
            if slot.released:
                logger.error("Concurrency slot released twice; ignoring")
                return
            slot.released = True
            self._active -= 1
            self._released += 1
            self._changed.notify_all()
        if dispatch_next:
            self.try_dispatch_next()

    def _resolve(self, pending: _PendingJob, outcome: Outcome) -> None:
        job = pending.job
        if isinstance(outcome, AnalysisError):
            job.state = JobState.TIMED_OUT if isinstance(outcome, JobTimeout) else JobState.FAILED
            logger.error(f"✗ Failed: {job.source_ref} [{job.task_key}] - {outcome}")
            self.store.record_failure(job, job.state, outcome)
        else:
            job.state = JobState.COMPLETED
            logger.info(f"✓ Completed: {job.source_ref}")

        with self._lock:
            self._inflight.pop(job.task_key, None)
            self._changed.notify_all()

        if isinstance(outcome, AnalysisError):
            pending.future.set_exception(outcome)
        else:
            pending.future.set_result(outcome)

    # --- introspection & lifecycle -----------------------------------------

    def stats(self) -> DispatcherStats:
        with self._lock:
            return DispatcherStats(
                active=self._active,
                pending=len(self._pending),
                inflight=len(self._inflight),
                peak_active=self._peak_active,
                dispatched=self._dispatched,
                released=self._released,
            )

    def has_capacity(self) -> bool:
        return self._active + len(self._pending) < self.max_workers

    def wait_for_capacity(self, timeout: Optional[float] = None) -> bool:
        """Block until a newly submitted job would be dispatched immediately."""
        with self._changed:
            return self._changed.wait_for(self.has_capacity, timeout)

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> bool:
        """
        Stop accepting submissions. Queued and running jobs still finish.

        Returns True once nothing is in flight.
        """
        with self._changed:
            self._closed = True
            if not wait:
                return not self._inflight
            return self._changed.wait_for(lambda: not self._inflight, timeout)
