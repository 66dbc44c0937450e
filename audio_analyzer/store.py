"""Redis-backed durable queue, result cache and the persistence facade."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import psycopg2
import redis

from .errors import AnalysisError, StorageFailure
from .models import Job, JobState, WorkResult, utc_now

logger = logging.getLogger('audio-analyzer.store')

# Queue names
ANALYSIS_QUEUE = 'audio:analysis:queue'
ANALYSIS_PROCESSING = 'audio:analysis:processing'
ANALYSIS_RESULTS = 'audio:analysis:results'
STATUS_PREFIX = 'audio:analysis:status:'

# Control channel for pause/resume/stop signals
CONTROL_CHANNEL = 'audio:analysis:control'

# Terminal records kept for downstream readers; older ones are trimmed
RESULTS_MAX_LENGTH = 10000

LIVE_STATES = (JobState.QUEUED.value, JobState.ACTIVE.value)

BACKEND_ERRORS = (redis.RedisError, psycopg2.Error, OSError)


def _text(value: Union[str, bytes, None]) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode('utf-8')
    return value


class ResultCache:
    """task key -> WorkResult with a fixed time-to-live."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = 3600):
        self.client = client
        self.ttl_seconds = ttl_seconds

    def get(self, task_key: str) -> Optional[WorkResult]:
        raw = self.client.get(task_key)
        if raw is None:
            return None
        try:
            result = WorkResult.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache entry {task_key}: {e}")
            return None
        # Expiry is judged on computedAt too, not only on the backend's TTL
        if result.is_expired(self.ttl_seconds):
            return None
        return result

    def put(self, result: WorkResult) -> None:
        self.client.set(result.task_key, result.to_json(), ex=self.ttl_seconds)


@dataclass(frozen=True)
class ClaimedJob:
    job: Job
    raw: bytes


class JobQueue:
    """
    Durable job lists plus per-job status hashes.

    A claimed job moves atomically from the pending list to the processing
    list and stays there until acknowledged, so entries claimed by a
    coordinator that dies are recovered on the next start.
    """

    def __init__(self, client: redis.Redis, status_ttl_seconds: int = 3600,
                 results_max_length: int = RESULTS_MAX_LENGTH):
        self.client = client
        self.status_ttl_seconds = status_ttl_seconds
        self.results_max_length = results_max_length

    def enqueue(self, job: Job) -> None:
        self.client.rpush(ANALYSIS_QUEUE, json.dumps(job.to_dict()))
        # A duplicate of a queued or running job joins it once claimed; keep its live state
        current = (self.get_state(job.task_key) or {}).get('state')
        if current not in LIVE_STATES:
            self.set_state(job.task_key, JobState.QUEUED)

    def claim(self, timeout: int) -> Optional[ClaimedJob]:
        raw = self.client.blmove(ANALYSIS_QUEUE, ANALYSIS_PROCESSING, timeout, 'LEFT', 'RIGHT')
        if raw is None:
            return None
        try:
            job = Job.from_dict(json.loads(raw))
        except (ValueError, AnalysisError) as e:
            logger.error(f"Dropping malformed queue entry {raw!r}: {e}")
            self.client.lrem(ANALYSIS_PROCESSING, 1, raw)
            return None
        return ClaimedJob(job=job, raw=raw)

    def ack(self, claimed: ClaimedJob) -> None:
        self.client.lrem(ANALYSIS_PROCESSING, 1, claimed.raw)

    def recover_stale(self) -> int:
        """Move every entry left in processing back to the head of pending."""
        recovered = 0
        while self.client.lmove(ANALYSIS_PROCESSING, ANALYSIS_QUEUE, 'RIGHT', 'LEFT') is not None:
            recovered += 1
        if recovered:
            logger.info(f"Re-queued {recovered} jobs left in processing by a previous run")
        return recovered

    def pending_count(self) -> int:
        return int(self.client.llen(ANALYSIS_QUEUE))

    def publish(self, record: Dict[str, Any]) -> None:
        """Append a terminal record to the results list, keeping only the newest entries."""
        self.client.rpush(ANALYSIS_RESULTS, json.dumps(record, sort_keys=True))
        self.client.ltrim(ANALYSIS_RESULTS, -self.results_max_length, -1)

    def set_state(self, task_key: str, state: JobState,
                  error: Optional[AnalysisError] = None) -> None:
        key = STATUS_PREFIX + task_key
        mapping = {'state': state.value, 'updatedAt': utc_now().isoformat()}
        if error is not None:
            mapping['reason'] = error.reason.value
            mapping['detail'] = error.detail[:500]
        pipe = self.client.pipeline()
        if error is None:
            pipe.hdel(key, 'reason', 'detail')
        pipe.hset(key, mapping=mapping)
        pipe.expire(key, self.status_ttl_seconds)
        pipe.execute()

    def get_state(self, task_key: str) -> Optional[Dict[str, str]]:
        data = self.client.hgetall(STATUS_PREFIX + task_key)
        if not data:
            return None
        return {_text(k): _text(v) for k, v in data.items()}


class ResultStore:
    """
    Persistence facade used by the dispatcher.

    Writes are keyed by task key and idempotent, so two coordinators sharing
    one Redis may both persist the same job (last writer wins).
    """

    def __init__(self, cache: ResultCache, queue: JobQueue, database=None):
        self.cache = cache
        self.queue = queue
        self.database = database

    def cached(self, task_key: str) -> Optional[WorkResult]:
        try:
            return self.cache.get(task_key)
        except BACKEND_ERRORS as e:
            # A cache outage must not block work; treat as a miss
            logger.warning(f"Result cache lookup failed for {task_key}: {e}")
            return None

    def save(self, job: Job, result: WorkResult) -> None:
        """Persist a computed result. Raises StorageFailure on any backend error."""
        try:
            if self.database is not None:
                self.database.save_result(job.source_ref, result)
            self.cache.put(result)
            self.queue.set_state(job.task_key, JobState.COMPLETED)
            # Published last so a retried save does not emit duplicates
            self.queue.publish({
                'taskKey': job.task_key,
                'sourceRef': job.source_ref,
                'state': JobState.COMPLETED.value,
                'result': result.to_dict(),
            })
        except BACKEND_ERRORS as e:
            raise StorageFailure(f"could not persist result: {e}", job.task_key, result=result) from e

    def mark_state(self, job: Job, state: JobState) -> None:
        try:
            self.queue.set_state(job.task_key, state)
        except BACKEND_ERRORS as e:
            logger.warning(f"Could not record state {state.value} for {job.task_key}: {e}")

    def record_failure(self, job: Job, state: JobState, error: AnalysisError) -> None:
        try:
            self.queue.set_state(job.task_key, state, error)
            self.queue.publish({
                'taskKey': job.task_key,
                'sourceRef': job.source_ref,
                'state': state.value,
                'error': error.to_dict(),
            })
            if self.database is not None:
                self.database.record_failure(job.source_ref, job.task_key, error)
        except BACKEND_ERRORS as e:
            logger.warning(f"Could not record failure for {job.task_key}: {e}")

    def status(self, task_key: str) -> Optional[Dict[str, Any]]:
        """Status lookup: {taskKey, state, result, error}, or None if unknown."""
        result = self.cached(task_key)
        if result is not None:
            return {
                'taskKey': task_key,
                'state': JobState.COMPLETED.value,
                'result': result.to_dict(),
                'error': None,
            }
        try:
            record = self.queue.get_state(task_key)
        except BACKEND_ERRORS as e:
            raise StorageFailure(f"status lookup failed: {e}", task_key) from e
        if record is None:
            return None
        state = record.get('state', JobState.QUEUED.value)
        if state == JobState.COMPLETED.value:
            # Result expired from the cache: recomputation is required
            return None
        error = None
        if record.get('reason'):
            error = {'reason': record['reason'], 'detail': record.get('detail', ''), 'taskKey': task_key}
        return {'taskKey': task_key, 'state': state, 'result': None, 'error': error}
