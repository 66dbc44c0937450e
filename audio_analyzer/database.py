"""PostgreSQL sink for analysis results and failures."""

import logging
import threading

import psycopg2
from psycopg2.extras import Json

from .errors import AnalysisError
from .models import WorkResult

logger = logging.getLogger('audio-analyzer.database')

SCHEMA = """
CREATE TABLE IF NOT EXISTS analysis_results (
    task_key TEXT PRIMARY KEY,
    source_ref TEXT NOT NULL,
    scores JSONB NOT NULL,
    energy DOUBLE PRECISION,
    loudness DOUBLE PRECISION,
    tempo DOUBLE PRECISION,
    computed_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS analysis_failures (
    task_key TEXT PRIMARY KEY,
    source_ref TEXT NOT NULL,
    reason TEXT NOT NULL,
    detail TEXT,
    retry_count INTEGER NOT NULL DEFAULT 1,
    last_failed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


class ResultRepository:
    """
    Upserts keyed by task key (last writer wins).

    Owns one connection shared by every coordinator thread, so calls are
    serialised. A connection found closed after an error is dropped and
    reopened on the next write.
    """

    def __init__(self, url: str):
        self.url = url
        self.conn = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        if not self.url:
            raise ValueError("DATABASE_URL not set")
        self.conn = psycopg2.connect(self.url, options="-c client_encoding=UTF8")
        self.conn.autocommit = False
        logger.info("Connected to PostgreSQL result sink")

    def close(self) -> None:
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    def _execute(self, sql: str, params=None) -> None:
        with self._lock:
            if self.conn is None or self.conn.closed:
                self.connect()
            conn = self.conn
            try:
                with conn.cursor() as cursor:
                    cursor.execute(sql, params)
                conn.commit()
            except psycopg2.Error:
                if conn.closed:
                    logger.warning("PostgreSQL connection lost; reconnecting on next write")
                    self.conn = None
                else:
                    conn.rollback()
                raise

    def ensure_schema(self) -> None:
        self._execute(SCHEMA)

    def save_result(self, source_ref: str, result: WorkResult) -> None:
        self._execute("""
            INSERT INTO analysis_results (
                task_key, source_ref, scores, energy, loudness, tempo, computed_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (task_key) DO UPDATE SET
                source_ref = EXCLUDED.source_ref,
                scores = EXCLUDED.scores,
                energy = EXCLUDED.energy,
                loudness = EXCLUDED.loudness,
                tempo = EXCLUDED.tempo,
                computed_at = EXCLUDED.computed_at
        """, (
            result.task_key,
            source_ref,
            Json(result.per_model_score),
            result.aux_features.energy,
            result.aux_features.loudness,
            result.aux_features.tempo,
            result.computed_at,
        ))

    def record_failure(self, source_ref: str, task_key: str, error: AnalysisError) -> None:
        self._execute("""
            INSERT INTO analysis_failures (task_key, source_ref, reason, detail, retry_count, last_failed_at)
            VALUES (%s, %s, %s, %s, 1, NOW())
            ON CONFLICT (task_key) DO UPDATE SET
                reason = EXCLUDED.reason,
                detail = EXCLUDED.detail,
                retry_count = analysis_failures.retry_count + 1,
                last_failed_at = NOW()
        """, (task_key, source_ref, error.reason.value, error.detail[:500]))
