"""Durable tuning job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import literal_column
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlmodel import Session, col, select

from nightscout_tuner.jobs.errors import JobError, JobErrorKind
from nightscout_tuner.jobs.models import (
    ACTIVE_STATES,
    AutotuneOptions,
    AutotuneResult,
    FailureReason,
    JobFailureDetails,
    JobMeta,
    JobSettings,
    JobState,
    JobView,
    Recommendation,
    Submission,
)
from nightscout_tuner.storage.alembic_runner import upgrade_head
from nightscout_tuner.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from nightscout_tuner.storage.sqlmodel_models import (
    JobFailureRecord,
    JobResultRecord,
    TuningJob,
)

logger = logging.getLogger(__name__)

DEFAULT_ACTIVE_JOB_STALE_AFTER = timedelta(hours=1)
DEFAULT_JOBS_LIMIT = 50
_ACTIVE_STATE_VALUES = tuple(sorted(state.value for state in ACTIVE_STATES))
_BUSY_MARKERS = ("database is locked", "database is busy", "database table is locked")

T = TypeVar("T")


class JobRepository:
    """Job state machine persistence; one endpoint may have at most one active job."""

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        commit_retries: int = 3,
        commit_retry_delay_seconds: float = 0.2,
        stale_after: timedelta = DEFAULT_ACTIVE_JOB_STALE_AFTER,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if stale_after.total_seconds() <= 0:
            raise ValueError("stale_after must be > 0")
        self.db_path = db_path
        self.commit_retries = commit_retries
        self.commit_retry_delay_seconds = commit_retry_delay_seconds
        self.stale_after = stale_after
        self._clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(
        self,
        job_id: str,
        submission: Submission,
        *,
        submitted_at: datetime | None = None,
    ) -> JobMeta:
        """Insert a new ``submitted`` job or raise ``ALREADY_QUEUED`` for a busy endpoint."""

        while True:
            meta = self._run(
                lambda session: self._try_insert(
                    session,
                    job_id=job_id,
                    submission=submission,
                    submitted_at=submitted_at or self._clock(),
                ),
                operation="enqueue",
                job_id=job_id,
            )
            if meta is not None:
                logger.info("[job %s] Enqueued tuning job for %s", job_id, submission.endpoint)
                return meta

    def mark_processing(self, job_id: str) -> bool:
        """Move a ``submitted`` job to ``processing``."""

        def _work(session: Session) -> bool:
            result = session.exec(
                sa_update(TuningJob)
                .where(
                    col(TuningJob.job_id) == job_id,
                    col(TuningJob.state) == JobState.SUBMITTED.value,
                )
                .values(
                    state=JobState.PROCESSING.value,
                    started_at=to_db_datetime(self._clock()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            return True

        return self._run(_work, operation="mark_processing", job_id=job_id)

    def claim_next(self) -> JobView | None:
        """Atomically claim the oldest ``submitted`` job for a queue worker."""

        while True:
            settled, view = self._run(self._try_claim, operation="claim_next")
            if settled:
                return view

    def mark_failed(
        self,
        job_id: str,
        reason: FailureReason,
        *,
        exit_code: int | None = None,
        diagnostic: str | None = None,
    ) -> bool:
        """Terminate an active job with a failure reason and its diagnostic row."""

        def _work(session: Session) -> bool:
            if not self._terminate(
                session,
                job_id=job_id,
                state=JobState.ERROR,
                failure_reason=reason,
            ):
                return False
            self._add_failure_record(
                session,
                job_id=job_id,
                reason=reason,
                exit_code=exit_code,
                diagnostic=diagnostic,
            )
            return True

        return self._run(_work, operation="mark_failed", job_id=job_id)

    def mark_succeeded(self, job_id: str, result: AutotuneResult) -> bool:
        """Terminate an active job with its parsed recommendations."""

        def _work(session: Session) -> bool:
            if not self._terminate(session, job_id=job_id, state=JobState.SUCCESS):
                return False
            self._add_result_record(session, job_id=job_id, result=result)
            return True

        return self._run(_work, operation="mark_succeeded", job_id=job_id)

    def jobs_for(self, endpoint: str, *, limit: int = DEFAULT_JOBS_LIMIT) -> list[JobMeta]:
        """Jobs submitted for an endpoint, newest first."""

        def _work(session: Session) -> list[JobMeta]:
            rows = session.exec(
                select(TuningJob)
                .where(TuningJob.endpoint == endpoint)
                .order_by(
                    col(TuningJob.submitted_at).desc(),
                    literal_column("rowid").desc(),
                )
                .limit(max(1, limit)),
            ).all()
            return [_to_job_meta(row) for row in rows]

        return self._run(_work, operation="jobs_for")

    def latest_for(self, endpoint: str) -> JobMeta | None:
        jobs = self.jobs_for(endpoint, limit=1)
        return jobs[0] if jobs else None

    def result_for(self, endpoint: str, job_id: str) -> AutotuneResult | None:
        """Recommendations of a successful job, scoped by its endpoint."""

        def _work(session: Session) -> AutotuneResult | None:
            row = session.exec(
                select(JobResultRecord)
                .join(TuningJob, col(TuningJob.job_id) == col(JobResultRecord.job_id))
                .where(
                    JobResultRecord.job_id == job_id,
                    TuningJob.endpoint == endpoint,
                ),
            ).one_or_none()
            if row is None:
                return None
            return AutotuneResult(
                recommendations=tuple(
                    Recommendation.from_payload(item)
                    for item in json.loads(row.recommendations_json)
                ),
                options=AutotuneOptions.from_payload(json.loads(row.options_json)),
            )

        return self._run(_work, operation="result_for", job_id=job_id)

    def failure_for(self, endpoint: str, job_id: str) -> JobFailureDetails | None:
        """Failure diagnostic of an errored job, scoped by its endpoint."""

        def _work(session: Session) -> JobFailureDetails | None:
            row = session.exec(
                select(JobFailureRecord)
                .join(TuningJob, col(TuningJob.job_id) == col(JobFailureRecord.job_id))
                .where(
                    JobFailureRecord.job_id == job_id,
                    TuningJob.endpoint == endpoint,
                ),
            ).one_or_none()
            if row is None:
                return None
            return JobFailureDetails(
                job_id=row.job_id,
                reason=FailureReason(row.reason),
                exit_code=row.exit_code,
                diagnostic=row.diagnostic,
                created_at=to_utc_aware_datetime(row.created_at),
            )

        return self._run(_work, operation="failure_for", job_id=job_id)

    def get_job(self, job_id: str) -> JobView | None:
        def _work(session: Session) -> JobView | None:
            row = session.get(TuningJob, job_id)
            return _to_job_view(row) if row is not None else None

        return self._run(_work, operation="get_job", job_id=job_id)

    def fail_stale_jobs(self, stale_after: timedelta | None = None) -> int:
        """Fail processing jobs abandoned by a crashed worker; returns how many were closed.

        Submitted rows are never swept: they are queued messages no worker owns yet.
        """

        threshold = stale_after or self.stale_after

        def _find(session: Session) -> list[str]:
            rows = session.exec(
                select(TuningJob).where(TuningJob.state == JobState.PROCESSING.value),
            ).all()
            return [
                row.job_id for row in rows if self._is_job_stale(row, stale_after=threshold)
            ]

        recovered = 0
        for job_id in self._run(_find, operation="fail_stale_jobs"):
            if self.mark_failed(
                job_id,
                FailureReason.STALE,
                diagnostic=_stale_diagnostic(threshold),
            ):
                logger.warning("[job %s] Recovered stale processing job", job_id)
                recovered += 1
        return recovered

    def _try_insert(
        self,
        session: Session,
        *,
        job_id: str,
        submission: Submission,
        submitted_at: datetime,
    ) -> JobMeta | None:
        row = TuningJob(
            job_id=job_id,
            endpoint=submission.endpoint,
            state=JobState.SUBMITTED.value,
            parameters_json=json.dumps(
                submission.settings.to_payload(),
                ensure_ascii=False,
                sort_keys=True,
            ),
            access_token=submission.access_token,
            time_zone=submission.settings.time_zone,
            submitted_at=to_db_datetime(submitted_at),
        )
        session.add(row)
        try:
            session.flush()
        except IntegrityError as error:
            session.rollback()
            active = session.exec(
                select(TuningJob).where(
                    TuningJob.endpoint == submission.endpoint,
                    col(TuningJob.state).in_(_ACTIVE_STATE_VALUES),
                ),
            ).one_or_none()
            if active is None:
                raise

            if self._is_job_stale(active, stale_after=self.stale_after):
                stale_job_id = active.job_id
                if self._terminate(
                    session,
                    job_id=stale_job_id,
                    state=JobState.ERROR,
                    failure_reason=FailureReason.STALE,
                ):
                    self._add_failure_record(
                        session,
                        job_id=stale_job_id,
                        reason=FailureReason.STALE,
                        exit_code=None,
                        diagnostic=_stale_diagnostic(self.stale_after),
                    )
                    session.commit()
                logger.warning(
                    "Recovered stale processing job and enqueuing a new one "
                    "(endpoint=%s stale_job_id=%s).",
                    submission.endpoint,
                    stale_job_id,
                )
                return None

            raise JobError(
                kind=JobErrorKind.ALREADY_QUEUED,
                message=(
                    "Another tuning job is already active for this endpoint "
                    f"(endpoint={submission.endpoint}, job_id={active.job_id}, "
                    f"state={active.state})."
                ),
                job_id=active.job_id,
            ) from error
        return _to_job_meta(row)

    def _try_claim(self, session: Session) -> tuple[bool, JobView | None]:
        candidate = session.exec(
            select(TuningJob)
            .where(TuningJob.state == JobState.SUBMITTED.value)
            .order_by(col(TuningJob.submitted_at).asc(), literal_column("rowid").asc())
            .limit(1),
        ).one_or_none()
        if candidate is None:
            return True, None

        result = session.exec(
            sa_update(TuningJob)
            .where(
                col(TuningJob.job_id) == candidate.job_id,
                col(TuningJob.state) == JobState.SUBMITTED.value,
            )
            .values(
                state=JobState.PROCESSING.value,
                started_at=to_db_datetime(self._clock()),
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            return False, None

        session.refresh(candidate)
        return True, _to_job_view(candidate)

    def _terminate(
        self,
        session: Session,
        *,
        job_id: str,
        state: JobState,
        failure_reason: FailureReason | None = None,
    ) -> bool:
        result = session.exec(
            sa_update(TuningJob)
            .where(
                col(TuningJob.job_id) == job_id,
                col(TuningJob.state).in_(_ACTIVE_STATE_VALUES),
            )
            .values(
                state=state.value,
                done_at=to_db_datetime(self._clock()),
                failure_reason=failure_reason.value if failure_reason is not None else None,
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            return False
        return True

    def _add_failure_record(
        self,
        session: Session,
        *,
        job_id: str,
        reason: FailureReason,
        exit_code: int | None,
        diagnostic: str | None,
    ) -> None:
        session.add(
            JobFailureRecord(
                job_id=job_id,
                reason=reason.value,
                exit_code=exit_code,
                diagnostic=diagnostic,
                created_at=to_db_datetime(self._clock()),
            ),
        )
        session.flush()

    def _add_result_record(self, session: Session, *, job_id: str, result: AutotuneResult) -> None:
        session.add(
            JobResultRecord(
                job_id=job_id,
                options_json=json.dumps(result.options.to_payload(), sort_keys=True),
                recommendations_json=json.dumps(
                    [item.to_payload() for item in result.recommendations],
                ),
                recommendation_count=len(result.recommendations),
                created_at=to_db_datetime(self._clock()),
            ),
        )
        session.flush()

    def _is_job_stale(self, row: TuningJob, *, stale_after: timedelta) -> bool:
        if row.state != JobState.PROCESSING.value or row.started_at is None:
            return False
        return (self._clock() - to_utc_aware_datetime(row.started_at)) > stale_after

    def _run(
        self,
        work: Callable[[Session], T],
        *,
        operation: str,
        job_id: str | None = None,
    ) -> T:
        """Run ``work`` in one transaction, retrying commits that hit a locked database."""

        attempt = 0
        while True:
            with Session(self.engine) as session:
                try:
                    value = work(session)
                    session.commit()
                    return value
                except JobError:
                    session.rollback()
                    raise
                except OperationalError as error:
                    session.rollback()
                    if _is_busy_error(error) and attempt < self.commit_retries:
                        attempt += 1
                        logger.warning(
                            "SQLite busy during %s (attempt %d/%d), retrying",
                            operation,
                            attempt,
                            self.commit_retries,
                        )
                        time.sleep(self.commit_retry_delay_seconds * attempt)
                        continue
                    raise _store_error(operation, job_id, error) from error
                except SQLAlchemyError as error:
                    session.rollback()
                    raise _store_error(operation, job_id, error) from error


def _is_busy_error(error: OperationalError) -> bool:
    message = str(error.orig if error.orig is not None else error).lower()
    return any(marker in message for marker in _BUSY_MARKERS)


def _store_error(operation: str, job_id: str | None, error: SQLAlchemyError) -> JobError:
    logger.error("Job store %s failed (job_id=%s): %s", operation, job_id, error)
    return JobError(
        kind=JobErrorKind.STORE_ERROR,
        message=f"Job store {operation} failed: {error.__class__.__name__}",
        job_id=job_id,
    )


def _stale_diagnostic(stale_after: timedelta) -> str:
    return (
        "Auto-recovered stale active job after crash/interruption "
        f"(no progress for more than {int(stale_after.total_seconds())}s)."
    )


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_meta(row: TuningJob) -> JobMeta:
    return JobMeta(
        job_id=row.job_id,
        state=JobState(row.state),
        submitted_at=to_utc_aware_datetime(row.submitted_at).astimezone(_zone(row.time_zone)),
    )


def _to_job_view(row: TuningJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        endpoint=row.endpoint,
        state=JobState(row.state),
        submission=Submission(
            endpoint=row.endpoint,
            settings=JobSettings.from_payload(json.loads(row.parameters_json)),
            access_token=row.access_token,
        ),
        submitted_at=to_utc_aware_datetime(row.submitted_at),
        started_at=_optional_aware(row.started_at),
        done_at=_optional_aware(row.done_at),
        failure_reason=(
            FailureReason(row.failure_reason) if row.failure_reason is not None else None
        ),
    )
