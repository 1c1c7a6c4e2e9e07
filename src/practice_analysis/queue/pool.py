"""In-process worker pool woken by admissions."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

from practice_analysis.queue.models import WorkerRunSummary
from practice_analysis.queue.worker import AnalysisWorker

logger = logging.getLogger(__name__)

ERROR_BACKOFF_SECONDS = 5.0


class QueueWaker(Protocol):
    """Receives a fire-and-forget nudge after each admission."""

    def wake(self) -> None:
        """Signal that a job may be pending; must not block."""


class NullWaker:
    """Waker for processes that only admit jobs; a separate worker polls."""

    def wake(self) -> None:
        return None


class WorkerPool:
    """Fixed set of worker threads that drain the queue when woken.

    Each thread owns one ``AnalysisWorker``. A wake-up makes idle threads
    drain the queue immediately; otherwise they poll every
    ``poll_interval_seconds``. Pending jobs are durable, so a missed wake-up
    only delays processing until the next poll.
    """

    def __init__(
        self,
        *,
        worker_factory: Callable[[str], AnalysisWorker],
        size: int,
        worker_id_prefix: str,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        if size < 1:
            raise ValueError("Worker pool size must be >= 1.")
        self._worker_factory = worker_factory
        self._size = size
        self._worker_id_prefix = worker_id_prefix
        self._poll_interval = poll_interval_seconds
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._workers: list[AnalysisWorker] = []
        self._summary = WorkerRunSummary()
        self._summary_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return bool(self._threads)

    @property
    def summary(self) -> WorkerRunSummary:
        with self._summary_lock:
            snapshot = WorkerRunSummary()
            snapshot.add(self._summary)
            return snapshot

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for index in range(self._size):
            worker = self._worker_factory(f"{self._worker_id_prefix}-{index}")
            thread = threading.Thread(
                target=self._thread_loop,
                args=(worker,),
                daemon=True,
                name=f"analysis-worker-{index}",
            )
            self._workers.append(worker)
            self._threads.append(thread)
            thread.start()
        logger.info("Analysis worker pool started (size=%d)", self._size)
        # Drain anything left from a previous process.
        self.wake()

    def wake(self) -> None:
        self._wake.set()

    def stop(self, *, timeout: float = 15.0) -> None:
        if not self._threads:
            return
        self._stop.set()
        for worker in self._workers:
            worker.request_stop()
        self._wake.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        self._workers = []
        logger.info("Analysis worker pool stopped")

    def join(self) -> None:
        """Block until ``stop`` is called from another thread or a signal handler."""

        while not self._stop.wait(timeout=0.5):
            pass

    def _thread_loop(self, worker: AnalysisWorker) -> None:
        while not self._stop.is_set():
            self._wake.wait(timeout=self._poll_interval)
            if self._stop.is_set():
                break
            self._wake.clear()
            try:
                summary = worker.run_loop(max_idle_polls=1)
            except Exception:
                logger.exception("Analysis worker %s crashed; backing off", worker.worker_id)
                self._stop.wait(timeout=ERROR_BACKOFF_SECONDS)
                continue
            with self._summary_lock:
                self._summary.add(summary)
