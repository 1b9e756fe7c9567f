"""Execution sinks that decide where and when accepted jobs run."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Protocol

from nightscout_tuner.config import ExecutorSettings
from nightscout_tuner.jobs.models import Submission

logger = logging.getLogger(__name__)

JobHandler = Callable[[str], None]


class JobExecutor(Protocol):
    """Dispatch target for accepted jobs."""

    def attach(self, handler: JobHandler) -> None:
        """Register the callable that runs one job by id."""

    def submit(self, job_id: str, submission: Submission) -> None:
        """Schedule an accepted job; raising means the job was not dispatched."""

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop accepting jobs, optionally waiting for in-flight ones."""


class InlineExecutor:
    """Runs each job synchronously inside ``submit``."""

    def __init__(self) -> None:
        self._handler: JobHandler | None = None

    def attach(self, handler: JobHandler) -> None:
        self._handler = handler

    def submit(self, job_id: str, submission: Submission) -> None:
        if self._handler is None:
            raise RuntimeError("InlineExecutor has no job handler attached.")
        logger.debug("[job %s] Running inline for %s", job_id, submission.endpoint)
        self._handler(job_id)

    def shutdown(self, *, wait: bool = True) -> None:
        return None


class ThreadPoolJobExecutor:
    """Runs jobs on a bounded in-process thread pool."""

    def __init__(self, *, max_workers: int = 2) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="autotune-job")
        self._handler: JobHandler | None = None
        self._futures: dict[str, Future[None]] = {}
        self._lock = threading.Lock()

    def attach(self, handler: JobHandler) -> None:
        self._handler = handler

    def submit(self, job_id: str, submission: Submission) -> None:
        if self._handler is None:
            raise RuntimeError("ThreadPoolJobExecutor has no job handler attached.")
        future = self._pool.submit(self._handler, job_id)
        with self._lock:
            self._futures[job_id] = future
        future.add_done_callback(lambda done: self._on_done(job_id, done))
        logger.debug("[job %s] Queued on thread pool for %s", job_id, submission.endpoint)

    def pending(self) -> int:
        with self._lock:
            return len(self._futures)

    def shutdown(self, *, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=not wait)

    def _on_done(self, job_id: str, future: Future[None]) -> None:
        with self._lock:
            self._futures.pop(job_id, None)
        if future.cancelled():
            logger.warning("[job %s] Cancelled before it started", job_id)
            return
        error = future.exception()
        if error is not None:
            logger.error("[job %s] Job handler raised: %s", job_id, error, exc_info=error)


class DurableQueueExecutor:
    """Leaves the ``submitted`` row in the store for a ``JobWorker`` to claim."""

    def attach(self, handler: JobHandler) -> None:
        return None

    def submit(self, job_id: str, submission: Submission) -> None:
        logger.info("[job %s] Published to durable queue for %s", job_id, submission.endpoint)

    def shutdown(self, *, wait: bool = True) -> None:
        return None


def build_executor(settings: ExecutorSettings) -> JobExecutor:
    """Executor configured by ``NIGHTSCOUT_TUNER_EXECUTOR``."""

    if settings.kind == "inline":
        return InlineExecutor()
    if settings.kind == "thread":
        return ThreadPoolJobExecutor(max_workers=settings.max_workers)
    if settings.kind == "queue":
        return DurableQueueExecutor()
    raise ValueError(f"Unsupported executor: {settings.kind!r}")
