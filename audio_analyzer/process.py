"""Spawning and supervising isolated worker processes."""

import logging
import multiprocessing
from dataclasses import dataclass
from multiprocessing.connection import wait as wait_for_ready
from typing import Any, Callable, Optional

from .extraction import WorkerOptions, run_worker

logger = logging.getLogger('audio-analyzer.process')

# Seconds to wait for a process to exit on its own before escalating
JOIN_GRACE_SECONDS = 5.0
TERMINATE_GRACE_SECONDS = 2.0


@dataclass(frozen=True)
class WorkerOutcome:
    """What a worker did before the coordinator stopped waiting on it."""

    message: Any = None
    exitcode: Optional[int] = None
    timed_out: bool = False

    @property
    def has_message(self) -> bool:
        return self.message is not None


class WorkerHandle:
    """Coordinator-side view of one running worker process."""

    def __init__(self, process, conn, source_ref: str):
        self.process = process
        self.source_ref = source_ref
        self._conn = conn
        self._closed = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    def is_alive(self) -> bool:
        return self.process.is_alive()

    def wait(self, timeout: float) -> WorkerOutcome:
        """
        Block until the worker sends its message, exits, or `timeout` elapses.

        A message always wins over an exit that happened right after sending it.
        """
        ready = wait_for_ready([self._conn, self.process.sentinel], timeout)
        if not ready:
            return WorkerOutcome(timed_out=True)

        if self._conn in ready or self._conn.poll():
            try:
                return WorkerOutcome(message=self._conn.recv())
            except (EOFError, OSError):
                pass  # Pipe closed without a message: the process is going away

        self.process.join(JOIN_GRACE_SECONDS)
        return WorkerOutcome(exitcode=self.process.exitcode)

    def terminate(self) -> None:
        """Forcibly stop the process: SIGTERM, then SIGKILL if it lingers."""
        if self.process.is_alive():
            logger.warning(f"Terminating worker pid={self.pid} for {self.source_ref}")
            self.process.terminate()
            self.process.join(TERMINATE_GRACE_SECONDS)
        if self.process.is_alive():
            self.process.kill()
            self.process.join()

    def close(self) -> None:
        """Reap the process on every exit path. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            if self.process.is_alive():
                self.process.join(JOIN_GRACE_SECONDS)
            self.terminate()
        finally:
            self._conn.close()
            self.process.close()


class ProcessSpawner:
    """
    Starts one fresh OS process per job.

    Uses the `spawn` start method by default so each worker gets a clean
    interpreter with no inherited TensorFlow state or coordinator threads.
    """

    def __init__(self, options: Optional[WorkerOptions] = None, start_method: str = 'spawn',
                 target: Callable[..., None] = run_worker):
        self.options = options or WorkerOptions()
        self._context = multiprocessing.get_context(start_method)
        self._target = target

    def spawn(self, source_ref: str) -> WorkerHandle:
        recv_conn, send_conn = self._context.Pipe(duplex=False)
        process = self._context.Process(
            target=self._target,
            args=(send_conn, source_ref, self.options),
            name=f'audio-worker:{source_ref[-40:]}',
            daemon=True,
        )
        try:
            process.start()
        except BaseException:
            recv_conn.close()
            send_conn.close()
            raise
        # Only the child may write; dropping our copy lets recv() see EOF on crash
        send_conn.close()
        logger.debug(f"Spawned worker pid={process.pid} for {source_ref}")
        return WorkerHandle(process, recv_conn, source_ref)
