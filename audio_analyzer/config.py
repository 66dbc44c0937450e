"""Service configuration read from the environment."""

import logging
import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_threads(threads_per_worker: int) -> None:
    """
    Pin TensorFlow, OpenMP and BLAS thread pools to a fixed size.

    These variables are read by the TensorFlow C++ runtime when it initialises,
    so this MUST run before essentia/tensorflow is imported in the process.
    """
    threads = str(max(1, int(threads_per_worker)))
    os.environ['TF_CPP_MIN_LOG_LEVEL'] = '2'  # Reduce TF logging noise
    os.environ['TF_NUM_INTRAOP_THREADS'] = threads
    os.environ['TF_NUM_INTEROP_THREADS'] = '1'
    os.environ['OMP_NUM_THREADS'] = threads
    os.environ['OPENBLAS_NUM_THREADS'] = threads
    os.environ['MKL_NUM_THREADS'] = threads
    os.environ['NUMEXPR_MAX_THREADS'] = threads


def configure_logging(level: str = 'INFO') -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )


@dataclass(frozen=True)
class Config:
    """Runtime settings shared by the coordinator, its workers and the API."""

    redis_url: str = 'redis://localhost:6379'
    database_url: str = ''
    music_path: str = '/music'
    model_dir: str = '/app/models'
    max_concurrent_workers: int = 5
    result_ttl_seconds: int = 3600
    job_timeout_seconds: float = 300.0
    api_key: str = ''
    threads_per_worker: int = 1
    worker_max_memory_mb: int = 0
    storage_retries: int = 3
    storage_retry_delay: float = 0.5
    poll_timeout: int = 5
    fetch_timeout: float = 60.0
    feature_hop_size: int = 1024
    log_level: str = 'INFO'

    def __post_init__(self):
        if self.max_concurrent_workers < 1:
            raise ValueError("MAX_CONCURRENT_WORKERS must be at least 1")
        if self.result_ttl_seconds < 1:
            raise ValueError("RESULT_TTL_SECONDS must be at least 1")
        if self.job_timeout_seconds <= 0:
            raise ValueError("JOB_TIMEOUT_SECONDS must be positive")
        if self.storage_retries < 1:
            raise ValueError("STORAGE_RETRIES must be at least 1")
        if self.feature_hop_size < 1:
            raise ValueError("FEATURE_HOP_SIZE must be at least 1")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Config':
        """Build a Config from environment variables named after each field in upper case."""
        env = os.environ if environ is None else environ
        values = {}
        for field in fields(cls):
            raw = env.get(field.name.upper())
            if raw is None or raw == '':
                continue
            try:
                if field.type in (int, 'int'):
                    values[field.name] = int(raw)
                elif field.type in (float, 'float'):
                    values[field.name] = float(raw)
                else:
                    values[field.name] = raw
            except ValueError:
                raise ValueError(f"Invalid value for {field.name.upper()}: {raw!r}") from None
        return cls(**values)
