"""Job coordinator: accept submissions, dispatch them, and record outcomes."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol
from uuid import uuid4

from nightscout_tuner.jobs.errors import JobError, JobErrorKind
from nightscout_tuner.jobs.executors import JobExecutor
from nightscout_tuner.jobs.models import (
    ACTIVE_STATES,
    AnalysisFailed,
    AnalysisOutcome,
    AnalysisSucceeded,
    AutotuneResult,
    FailureReason,
    JobFailureDetails,
    JobMeta,
    JobView,
    Submission,
    SubmissionResult,
)
from nightscout_tuner.jobs.validation import validate_submission
from nightscout_tuner.storage.repository import JobRepository

logger = logging.getLogger(__name__)


class AnalysisRunnerLike(Protocol):
    def run(
        self,
        job_id: str,
        submission: Submission,
        *,
        cancel_requested: Callable[[], bool] | None = None,
    ) -> AnalysisOutcome: ...


class JobCoordinator:
    """Owns the job lifecycle from submission to a terminal state."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        runner: AnalysisRunnerLike,
        executor: JobExecutor,
        cancel_poll_seconds: float = 5.0,
    ) -> None:
        self.repository = repository
        self.runner = runner
        self.executor = executor
        self.cancel_poll_seconds = cancel_poll_seconds
        self._cancel_events: dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        executor.attach(self.run_job)

    def submit(self, submission: Submission, *, job_id: str | None = None) -> SubmissionResult:
        """Enqueue a validated submission and hand it to the executor."""

        job_id = job_id or str(uuid4())
        try:
            meta = self.repository.enqueue(job_id, submission)
        except JobError as error:
            if error.kind == JobErrorKind.ALREADY_QUEUED:
                logger.info(
                    "Rejected submission for %s: job %s already active",
                    submission.endpoint,
                    error.job_id,
                )
            return SubmissionResult(
                job_id=error.job_id,
                rejection=error.kind,
                message=error.message,
            )

        try:
            self.executor.submit(meta.job_id, submission)
        except Exception as error:  # noqa: BLE001
            logger.exception("[job %s] Dispatch failed", meta.job_id)
            try:
                self.repository.mark_failed(
                    meta.job_id,
                    FailureReason.INTERNAL_ERROR,
                    diagnostic=f"Dispatch failed: {error.__class__.__name__}: {error}",
                )
            except JobError as store_error:
                return SubmissionResult(
                    job_id=meta.job_id,
                    rejection=store_error.kind,
                    message=store_error.message,
                )
            return SubmissionResult(
                job_id=meta.job_id,
                rejection=JobErrorKind.DISPATCH_ERROR,
                message=f"Job could not be dispatched: {error}",
            )
        return SubmissionResult(job_id=meta.job_id)

    def submit_raw(self, payload: Any) -> SubmissionResult:
        """Validate an untrusted payload, then submit it."""

        report = validate_submission(payload)
        if report.submission is None:
            return SubmissionResult(
                job_id=None,
                rejection=JobErrorKind.VALIDATION_ERROR,
                message="Submission payload is invalid.",
                errors=report.errors,
            )
        return self.submit(report.submission)

    def run_job(self, job_id: str) -> None:
        """Executor entry point: claim a ``submitted`` job and drive it to a terminal state."""

        if not self.repository.mark_processing(job_id):
            logger.info("[job %s] Not in submitted state, skipping", job_id)
            return
        job = self.repository.get_job(job_id)
        if job is None:
            logger.error("[job %s] Vanished after being marked processing", job_id)
            return
        self._execute(job)

    def run_claimed(self, job: JobView) -> AnalysisOutcome:
        """Run a job already moved to ``processing`` by a queue worker."""

        return self._execute(job)

    def record_outcome(self, outcome: AnalysisOutcome) -> bool:
        """Persist an analysis outcome; returns ``False`` if the job was already terminal."""

        if isinstance(outcome, AnalysisSucceeded):
            recorded = self.repository.mark_succeeded(outcome.job_id, outcome.result)
        else:
            recorded = self.repository.mark_failed(
                outcome.job_id,
                outcome.reason,
                exit_code=outcome.exit_code,
                diagnostic=outcome.diagnostic or None,
            )
        if not recorded:
            logger.info(
                "[job %s] Outcome %s ignored: job already terminal",
                outcome.job_id,
                type(outcome).__name__,
            )
        return recorded

    def cancel(self, job_id: str) -> bool:
        """Fail an active job as cancelled and stop its process if it runs here."""

        cancelled = self.repository.mark_failed(
            job_id,
            FailureReason.CANCELLED,
            diagnostic="Cancelled by request.",
        )
        with self._lock:
            event = self._cancel_events.get(job_id)
        if event is not None:
            event.set()
        if cancelled:
            logger.info("[job %s] Cancelled", job_id)
        return cancelled

    def jobs_for(self, endpoint: str, *, limit: int = 50) -> list[JobMeta]:
        return self.repository.jobs_for(endpoint, limit=limit)

    def latest_for(self, endpoint: str) -> JobMeta | None:
        return self.repository.latest_for(endpoint)

    def result_for(self, endpoint: str, job_id: str) -> AutotuneResult | None:
        return self.repository.result_for(endpoint, job_id)

    def failure_for(self, endpoint: str, job_id: str) -> JobFailureDetails | None:
        return self.repository.failure_for(endpoint, job_id)

    def close(self) -> None:
        self.executor.shutdown(wait=True)

    def _execute(self, job: JobView) -> AnalysisOutcome:
        event = threading.Event()
        with self._lock:
            self._cancel_events[job.job_id] = event
        try:
            outcome = self.runner.run(
                job.job_id,
                job.submission,
                cancel_requested=self._cancel_probe(job.job_id, event),
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("[job %s] Analysis raised unexpectedly", job.job_id)
            outcome = AnalysisFailed(
                job_id=job.job_id,
                reason=FailureReason.INTERNAL_ERROR,
                diagnostic=f"{error.__class__.__name__}: {error}",
            )
        finally:
            with self._lock:
                self._cancel_events.pop(job.job_id, None)

        try:
            self.record_outcome(outcome)
        except JobError:
            logger.exception("[job %s] Could not record outcome", job.job_id)
            self._fail_after_record_error(job.job_id)
        return outcome

    def _cancel_probe(self, job_id: str, event: threading.Event) -> Callable[[], bool]:
        """Cancellation check that also notices jobs terminated by another process."""

        next_check = time.monotonic() + self.cancel_poll_seconds

        def _probe() -> bool:
            nonlocal next_check
            if event.is_set():
                return True
            now = time.monotonic()
            if now < next_check:
                return False
            next_check = now + self.cancel_poll_seconds
            try:
                job = self.repository.get_job(job_id)
            except JobError as error:
                logger.warning("[job %s] Cancellation check failed: %s", job_id, error)
                return False
            if job is not None and job.state not in ACTIVE_STATES:
                logger.info("[job %s] Terminated elsewhere (%s)", job_id, job.state.value)
                event.set()
            return event.is_set()

        return _probe

    def _fail_after_record_error(self, job_id: str) -> None:
        self.repository.mark_failed(
            job_id,
            FailureReason.INTERNAL_ERROR,
            diagnostic="Outcome could not be recorded.",
        )
