"""Process-wide state, created explicitly before any submission is accepted."""

import logging
from typing import Mapping, Optional

import redis

from .aggregator import ResultAggregator
from .config import Config
from .database import ResultRepository
from .dispatcher import Dispatcher
from .extraction import WorkerOptions
from .inference import Classifier, load_models
from .process import ProcessSpawner
from .store import JobQueue, ResultCache, ResultStore
from .supervisor import JobSupervisor

logger = logging.getLogger('audio-analyzer.context')


class AnalyzerContext:
    """
    Owns the loaded models and storage clients of one coordinator.

    Built by `create()`; pass it to whatever needs them instead of reaching
    for module globals.
    """

    def __init__(self, config: Config, models: Mapping[str, Classifier],
                 redis_client: redis.Redis, database: Optional[ResultRepository] = None):
        self.config = config
        self.models = dict(models)
        self.redis = redis_client
        self.database = database
        self.queue = JobQueue(redis_client, status_ttl_seconds=config.result_ttl_seconds)
        self.cache = ResultCache(redis_client, ttl_seconds=config.result_ttl_seconds)
        self.store = ResultStore(self.cache, self.queue, database)
        self.aggregator = ResultAggregator(self.models)

    @classmethod
    def create(cls, config: Config, models: Optional[Mapping[str, Classifier]] = None,
               redis_client: Optional[redis.Redis] = None) -> 'AnalyzerContext':
        logger.info("Audio analyzer configuration:")
        logger.info(f"  Max concurrent workers: {config.max_concurrent_workers}")
        logger.info(f"  Job timeout: {config.job_timeout_seconds}s, result TTL: {config.result_ttl_seconds}s")
        logger.info(f"  Threads per worker: {config.threads_per_worker}")
        if config.worker_max_memory_mb:
            logger.info(f"  Worker memory limit: {config.worker_max_memory_mb} MB")

        if models is None:
            models = load_models(config.model_dir)
        if redis_client is None:
            redis_client = redis.from_url(config.redis_url)

        database = None
        if config.database_url:
            database = ResultRepository(config.database_url)
            database.connect()
            database.ensure_schema()
        return cls(config, models, redis_client, database)

    def build_dispatcher(self, spawner=None) -> Dispatcher:
        if spawner is None:
            spawner = ProcessSpawner(WorkerOptions.from_config(self.config))
        supervisor = JobSupervisor(spawner, self.aggregator, self.config.job_timeout_seconds)
        return Dispatcher(
            supervisor,
            self.store,
            max_workers=self.config.max_concurrent_workers,
            storage_retries=self.config.storage_retries,
            storage_retry_delay=self.config.storage_retry_delay,
        )

    def close(self) -> None:
        self.redis.close()
        if self.database is not None:
            self.database.close()
