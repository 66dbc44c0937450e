"""Durable-queue intake: feeds jobs from Redis into the dispatcher."""

import json
import logging
import threading
import time
from concurrent.futures import Future
from typing import Optional

import redis

from .dispatcher import Dispatcher
from .errors import AnalysisError
from .store import CONTROL_CHANNEL, ClaimedJob, JobQueue

logger = logging.getLogger('audio-analyzer.service')

MAX_BACKOFF_SECONDS = 30
PAUSE_SLEEP_SECONDS = 1.0


class QueueConsumer:
    """Claims jobs from the pending list only while the dispatcher has a free slot."""

    def __init__(self, dispatcher: Dispatcher, queue: JobQueue, poll_timeout: int = 5,
                 control_client: Optional[redis.Redis] = None, drain_on_stop: bool = True):
        self.dispatcher = dispatcher
        self.queue = queue
        self.poll_timeout = poll_timeout
        self.control_client = control_client
        self.drain_on_stop = drain_on_stop
        self.running = False
        self.is_paused = False
        self.pubsub = None
        self._stopped = threading.Event()

    def _setup_control_channel(self):
        """Subscribe to control channel for pause/resume/stop signals"""
        if self.control_client is None:
            return
        try:
            self.pubsub = self.control_client.pubsub()
            self.pubsub.subscribe(CONTROL_CHANNEL)
            logger.info(f"Subscribed to control channel: {CONTROL_CHANNEL}")
        except redis.RedisError as e:
            logger.warning(f"Failed to subscribe to control channel: {e}")
            self.pubsub = None

    def _check_control_signals(self):
        """Check for pause/resume/stop control signals (non-blocking)"""
        if not self.pubsub:
            return

        message = self.pubsub.get_message(ignore_subscribe_messages=True, timeout=0.001)
        if not message or message['type'] != 'message':
            return
        data = message['data'].decode('utf-8') if isinstance(message['data'], bytes) else message['data']

        # Structured commands arrive as JSON, plain signals as bare strings
        try:
            cmd = json.loads(data)
            if isinstance(cmd, dict) and cmd.get('command'):
                data = str(cmd['command'])
        except ValueError:
            pass

        logger.info(f"Received control signal: {data}")
        if data == 'pause':
            self.is_paused = True
            logger.info("Audio analysis PAUSED")
        elif data == 'resume':
            self.is_paused = False
            logger.info("Audio analysis RESUMED")
        elif data == 'stop':
            self.running = False
            logger.info("Audio analysis STOPPING (graceful shutdown)")
        else:
            logger.warning(f"Ignoring unknown control signal: {data}")

    def _on_done(self, claimed: ClaimedJob, future: Future) -> None:
        error = future.exception()
        if error is not None and not isinstance(error, AnalysisError):
            logger.error(f"Job {claimed.job.task_key} ended with unexpected error: {error}")
        try:
            self.queue.ack(claimed)
        except redis.RedisError as e:
            # Left in processing; recovered (and served from cache) on next start
            logger.error(f"Failed to acknowledge {claimed.job.task_key}: {e}")

    def poll_once(self) -> bool:
        """
        Claim and submit at most one job.

        Returns True if a job was taken off the queue.
        """
        if not self.dispatcher.wait_for_capacity(self.poll_timeout):
            return False
        claimed = self.queue.claim(self.poll_timeout)
        if claimed is None:
            return False
        try:
            future = self.dispatcher.submit(claimed.job.source_ref)
        except AnalysisError as e:
            logger.error(f"Rejected queued job {claimed.job.task_key}: {e}")
            self.queue.ack(claimed)
            return True
        except RuntimeError:
            # Dispatcher closed under us; the entry stays in processing and is recovered on restart
            self.running = False
            return False
        future.add_done_callback(lambda f: self._on_done(claimed, f))
        return True

    def stop(self) -> None:
        self.running = False

    def start(self):
        """Run the intake loop until stopped, then drain in-flight jobs."""
        logger.info("=" * 60)
        logger.info("Starting Audio Analysis Queue Consumer")
        logger.info("=" * 60)
        logger.info(f"  Max concurrent workers: {self.dispatcher.max_workers}")
        logger.info(f"  Job timeout: {self.dispatcher.supervisor.job_timeout}s")
        logger.info(f"  Poll timeout: {self.poll_timeout}s")

        self.running = True
        self._stopped.clear()
        self.queue.recover_stale()
        self._setup_control_channel()

        backoff = 1
        try:
            while self.running:
                try:
                    self._check_control_signals()
                    if self.is_paused:
                        time.sleep(PAUSE_SLEEP_SECONDS)
                        continue
                    self.poll_once()
                    backoff = 1
                except KeyboardInterrupt:
                    logger.info("Shutdown requested")
                    self.running = False
                except redis.RedisError as e:
                    logger.error(f"Redis error: {e}; retrying in {backoff}s")
                    time.sleep(backoff)
                    backoff = min(backoff * 2, MAX_BACKOFF_SECONDS)
        finally:
            if self.drain_on_stop:
                logger.info("Draining in-flight jobs...")
                self.dispatcher.shutdown(wait=True)
            if self.pubsub:
                self.pubsub.close()
                logger.info("Control channel closed")
            self._stopped.set()
            logger.info("Queue consumer stopped")

    def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        return self._stopped.wait(timeout)
