"""Durable-queue consumer for submitted tuning jobs."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from nightscout_tuner.jobs.coordinator import JobCoordinator
from nightscout_tuner.jobs.models import AnalysisFailed, FailureReason, JobView

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    timeouts: int = 0
    stale_recovered: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.timeouts += other.timeouts
        self.stale_recovered += other.stale_recovered
        self.idle_polls += other.idle_polls


class JobWorker:
    """Claims ``submitted`` jobs from the store and runs them one at a time."""

    def __init__(
        self,
        *,
        coordinator: JobCoordinator,
        poll_interval_seconds: float = 2.0,
        recover_stale: bool = True,
    ) -> None:
        self.coordinator = coordinator
        self.repository = coordinator.repository
        self.poll_interval_seconds = poll_interval_seconds
        self.recover_stale = recover_stale
        self._stop_requested = False
        self._current_job_id: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        if self.recover_stale:
            summary.stale_recovered = self.repository.fail_stale_jobs()

        job = self.repository.claim_next()
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_job_id = job.job_id
        try:
            self._process(job, summary)
        finally:
            self._current_job_id = None
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run until stopped, ``max_jobs`` processed, or ``max_idle_polls`` empty polls in a row."""

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self) -> None:
        self._stop_requested = True

    def _process(self, job: JobView, summary: WorkerRunSummary) -> None:
        logger.info("[job %s] Claimed for %s", job.job_id, job.endpoint)
        outcome = self.coordinator.run_claimed(job)
        if isinstance(outcome, AnalysisFailed):
            summary.failed = 1
            if outcome.timed_out:
                summary.timeouts = 1
            if outcome.reason != FailureReason.CANCELLED:
                logger.warning(
                    "[job %s] Failed with %s (exit_code=%s)",
                    job.job_id,
                    outcome.reason.value,
                    outcome.exit_code,
                )
            return
        summary.succeeded = 1
        logger.info(
            "[job %s] Succeeded with %d recommendations",
            job.job_id,
            len(outcome.result.recommendations),
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info(
                "Received %s, stopping after current job (job_id=%s)",
                name,
                self._current_job_id,
            )
            self._stop_requested = True

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            logger.debug("Worker running outside main thread; signal handlers not installed")
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
