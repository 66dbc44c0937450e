"""Deadline enforcement and terminal outcome classification for one job."""

import logging
import signal
from typing import Optional

from .aggregator import ResultAggregator
from .errors import (
    AnalysisError,
    JobTimeout,
    SpawnFailure,
    WorkerCrashed,
    WorkerError,
)
from .models import ErrorMessage, FeaturesMessage, Job, WorkResult, parse_worker_message
from .process import WorkerOutcome

logger = logging.getLogger('audio-analyzer.supervisor')


def describe_exit(exitcode: Optional[int]) -> str:
    if exitcode is None:
        return "unknown exit status"
    if exitcode < 0:
        try:
            return f"killed by {signal.Signals(-exitcode).name}"
        except ValueError:
            return f"killed by signal {-exitcode}"
    return f"exit code {exitcode}"


def classify_outcome(outcome: WorkerOutcome, task_key: Optional[str] = None,
                     timeout: Optional[float] = None) -> FeaturesMessage:
    """
    Map a worker outcome onto the failure taxonomy.

    Returns the features message on success, raises the matching
    AnalysisError otherwise.
    """
    if outcome.timed_out:
        limit = f" after {timeout:g}s" if timeout is not None else ""
        raise JobTimeout(f"worker did not respond{limit}", task_key)

    if outcome.has_message:
        message = parse_worker_message(outcome.message, task_key)
        if isinstance(message, ErrorMessage):
            raise WorkerError(message.reason, task_key)
        return message

    # Exit without a message is a crash whatever the code, 0 included
    raise WorkerCrashed(
        f"worker exited without a result ({describe_exit(outcome.exitcode)})",
        task_key,
        exitcode=outcome.exitcode,
    )


class JobSupervisor:
    """Runs a single job: spawn, wait under deadline, classify, aggregate."""

    def __init__(self, spawner, aggregator: ResultAggregator, job_timeout: float):
        self.spawner = spawner
        self.aggregator = aggregator
        self.job_timeout = job_timeout

    def run(self, job: Job) -> WorkResult:
        try:
            handle = self.spawner.spawn(job.source_ref)
        except Exception as e:
            raise SpawnFailure(f"could not start worker: {e}", job.task_key) from e

        try:
            outcome = handle.wait(self.job_timeout)
            if outcome.timed_out:
                handle.terminate()
            features = classify_outcome(outcome, job.task_key, self.job_timeout)
        except AnalysisError as e:
            logger.warning(f"Job {job.task_key} failed in worker: {e}")
            raise
        finally:
            handle.close()

        return self.aggregator.aggregate(job.task_key, features)
