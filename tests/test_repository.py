from __future__ import annotations

import sqlite3
import threading
from datetime import UTC, date, datetime, time, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

import allure
import pytest
from factories import SITE_ENDPOINT, build_submission
from sqlalchemy.exc import OperationalError

from nightscout_tuner.jobs.errors import JobError, JobErrorKind
from nightscout_tuner.jobs.models import (
    AutotuneOptions,
    AutotuneResult,
    FailureReason,
    JobState,
    Recommendation,
    RecommendationKind,
)
from nightscout_tuner.storage.repository import JobRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Durable Job Store"),
]

OTHER_URL = "https://other.example.com"


def _result(job_id: str, endpoint: str = SITE_ENDPOINT) -> AutotuneResult:
    return AutotuneResult(
        recommendations=(
            Recommendation(
                kind=RecommendationKind.ISF,
                current_value=45.0,
                recommended_value=42.37,
                rounded_recommendation=42.35,
            ),
            Recommendation(
                kind=RecommendationKind.BASAL,
                current_value=0.65,
                recommended_value=0.7,
                rounded_recommendation=0.7,
                time_of_day=time(0, 0),
                days_missing=0,
            ),
        ),
        options=AutotuneOptions(
            job_id=job_id,
            endpoint=endpoint,
            date_from=date(2026, 10, 12),
            date_to=date(2026, 10, 18),
            uam_as_basal=False,
            autotune_version="0.7.1",
            time_zone="Europe/Amsterdam",
        ),
    )


def test_enqueue_rejects_second_active_job_for_endpoint(repository: JobRepository) -> None:
    submission = build_submission()
    meta = repository.enqueue("job-1", submission)
    assert meta.state == JobState.SUBMITTED

    with pytest.raises(JobError) as excinfo:
        repository.enqueue("job-2", submission)

    assert excinfo.value.kind == JobErrorKind.ALREADY_QUEUED
    assert excinfo.value.job_id == "job-1"
    assert repository.get_job("job-2") is None
    assert [job.job_id for job in repository.jobs_for(SITE_ENDPOINT)] == ["job-1"]


def test_enqueue_is_scoped_per_endpoint(repository: JobRepository) -> None:
    repository.enqueue("job-1", build_submission())
    repository.enqueue("job-2", build_submission(OTHER_URL))

    assert [job.job_id for job in repository.jobs_for(SITE_ENDPOINT)] == ["job-1"]
    assert [job.job_id for job in repository.jobs_for("https://other.example.com/")] == ["job-2"]


def test_concurrent_enqueue_admits_exactly_one_job(tmp_path: Path) -> None:
    db_path = tmp_path / "race.db"
    setup = JobRepository(db_path)
    setup.init_schema()
    setup.close()
    submission = build_submission()
    barrier = threading.Barrier(8)
    accepted: list[str] = []
    rejected: list[JobErrorKind] = []
    lock = threading.Lock()

    def _submit(index: int) -> None:
        repository = JobRepository(db_path, commit_retry_delay_seconds=0.01)
        try:
            barrier.wait(timeout=5)
            repository.enqueue(f"job-{index}", submission)
            with lock:
                accepted.append(f"job-{index}")
        except JobError as error:
            with lock:
                rejected.append(error.kind)
        finally:
            repository.close()

    threads = [threading.Thread(target=_submit, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(accepted) == 1
    assert rejected == [JobErrorKind.ALREADY_QUEUED] * 7


@pytest.mark.parametrize("finish", ["success", "error"])
def test_endpoint_accepts_new_job_after_previous_terminates(
    repository: JobRepository,
    finish: str,
) -> None:
    repository.enqueue("job-1", build_submission())
    assert repository.mark_processing("job-1")
    if finish == "success":
        assert repository.mark_succeeded("job-1", _result("job-1"))
    else:
        assert repository.mark_failed("job-1", FailureReason.TOOL_FAILED, exit_code=1)

    repository.enqueue("job-2", build_submission())

    assert [job.job_id for job in repository.jobs_for(SITE_ENDPOINT)] == ["job-2", "job-1"]


def test_mark_processing_only_moves_submitted_jobs(repository: JobRepository) -> None:
    repository.enqueue("job-1", build_submission())

    assert repository.mark_processing("job-1")
    assert not repository.mark_processing("job-1")
    assert not repository.mark_processing("missing")

    job = repository.get_job("job-1")
    assert job is not None
    assert job.state == JobState.PROCESSING
    assert job.started_at is not None


def test_terminal_transition_happens_once(repository: JobRepository) -> None:
    repository.enqueue("job-1", build_submission())
    repository.mark_processing("job-1")

    assert repository.mark_succeeded("job-1", _result("job-1"))
    assert not repository.mark_failed("job-1", FailureReason.CANCELLED)
    assert not repository.mark_succeeded("job-1", _result("job-1"))

    job = repository.get_job("job-1")
    assert job is not None
    assert job.state == JobState.SUCCESS
    assert job.done_at is not None
    assert job.failure_reason is None
    assert repository.failure_for(SITE_ENDPOINT, "job-1") is None


def test_failure_record_is_persisted_with_reason(repository: JobRepository) -> None:
    repository.enqueue("job-1", build_submission())
    repository.mark_processing("job-1")

    assert repository.mark_failed(
        "job-1",
        FailureReason.TOOL_FAILED,
        exit_code=3,
        diagnostic="ERROR fetching entries",
    )

    failure = repository.failure_for(SITE_ENDPOINT, "job-1")
    assert failure is not None
    assert failure.reason == FailureReason.TOOL_FAILED
    assert failure.exit_code == 3
    assert failure.diagnostic == "ERROR fetching entries"
    job = repository.get_job("job-1")
    assert job is not None
    assert job.failure_reason == FailureReason.TOOL_FAILED


def test_state_change_rolls_back_when_detail_insert_fails(
    repository: JobRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    repository.enqueue("job-1", build_submission())
    repository.mark_processing("job-1")

    def _boom(*_args: object, **_kwargs: object) -> None:
        raise OperationalError("INSERT", {}, sqlite3.OperationalError("disk I/O error"))

    monkeypatch.setattr(repository, "_add_failure_record", _boom)

    with pytest.raises(JobError) as excinfo:
        repository.mark_failed("job-1", FailureReason.TOOL_FAILED, exit_code=1)

    assert excinfo.value.kind == JobErrorKind.STORE_ERROR
    job = repository.get_job("job-1")
    assert job is not None
    assert job.state == JobState.PROCESSING
    assert job.failure_reason is None


def test_locked_database_is_retried(
    repository: JobRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    repository.enqueue("job-1", build_submission())
    repository.mark_processing("job-1")
    original = repository._add_result_record
    calls: list[str] = []

    def _locked_once(*args: object, **kwargs: object) -> None:
        calls.append("call")
        if len(calls) == 1:
            raise OperationalError("INSERT", {}, sqlite3.OperationalError("database is locked"))
        original(*args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(repository, "_add_result_record", _locked_once)

    assert repository.mark_succeeded("job-1", _result("job-1"))
    assert len(calls) == 2
    assert repository.result_for(SITE_ENDPOINT, "job-1") is not None


def _start_processing_at(repository: JobRepository, job_id: str, started_at: datetime) -> None:
    crashed = JobRepository(repository.db_path, clock=lambda: started_at)
    try:
        assert crashed.mark_processing(job_id)
    finally:
        crashed.close()


def test_enqueue_rejects_while_first_job_is_processing(repository: JobRepository) -> None:
    repository.enqueue("job-1", build_submission())
    assert repository.mark_processing("job-1")

    with pytest.raises(JobError) as excinfo:
        repository.enqueue("job-2", build_submission())

    assert excinfo.value.kind == JobErrorKind.ALREADY_QUEUED
    assert excinfo.value.job_id == "job-1"
    assert repository.get_job("job-2") is None
    assert repository.get_job("job-1").state == JobState.PROCESSING  # type: ignore[union-attr]


def test_enqueue_recovers_stale_processing_job(repository: JobRepository) -> None:
    repository.enqueue("job-old", build_submission())
    _start_processing_at(repository, "job-old", datetime.now(tz=UTC) - timedelta(hours=2))

    meta = repository.enqueue("job-new", build_submission())

    assert meta.job_id == "job-new"
    old = repository.get_job("job-old")
    assert old is not None
    assert old.state == JobState.ERROR
    assert old.failure_reason == FailureReason.STALE
    failure = repository.failure_for(SITE_ENDPOINT, "job-old")
    assert failure is not None
    assert "stale" in (failure.diagnostic or "")


def test_long_queued_job_still_blocks_its_endpoint(repository: JobRepository) -> None:
    repository.enqueue(
        "job-queued",
        build_submission(),
        submitted_at=datetime.now(tz=UTC) - timedelta(hours=2),
    )

    with pytest.raises(JobError) as excinfo:
        repository.enqueue("job-new", build_submission())

    assert excinfo.value.kind == JobErrorKind.ALREADY_QUEUED
    assert repository.get_job("job-queued").state == JobState.SUBMITTED  # type: ignore[union-attr]


def test_fail_stale_jobs_only_touches_old_processing_jobs(repository: JobRepository) -> None:
    long_ago = datetime.now(tz=UTC) - timedelta(hours=3)
    repository.enqueue("job-stuck", build_submission())
    _start_processing_at(repository, "job-stuck", long_ago)
    repository.enqueue("job-queued", build_submission(OTHER_URL), submitted_at=long_ago)
    repository.enqueue("job-running", build_submission("https://third.example.com"))
    repository.mark_processing("job-running")
    repository.enqueue(
        "job-done",
        build_submission("https://fourth.example.com"),
        submitted_at=long_ago,
    )
    _start_processing_at(repository, "job-done", long_ago)
    repository.mark_succeeded("job-done", _result("job-done"))

    assert repository.fail_stale_jobs() == 1
    assert repository.fail_stale_jobs() == 0

    states = {
        job_id: repository.get_job(job_id).state  # type: ignore[union-attr]
        for job_id in ("job-stuck", "job-queued", "job-running", "job-done")
    }
    assert states == {
        "job-stuck": JobState.ERROR,
        "job-queued": JobState.SUBMITTED,
        "job-running": JobState.PROCESSING,
        "job-done": JobState.SUCCESS,
    }


def test_jobs_for_is_newest_first_and_limited(repository: JobRepository) -> None:
    base = datetime(2026, 10, 1, 8, 0, tzinfo=UTC)
    for index in range(4):
        job_id = f"job-{index}"
        repository.enqueue(job_id, build_submission(), submitted_at=base + timedelta(hours=index))
        repository.mark_processing(job_id)
        repository.mark_failed(job_id, FailureReason.CANCELLED)

    jobs = repository.jobs_for(SITE_ENDPOINT)
    assert [job.job_id for job in jobs] == ["job-3", "job-2", "job-1", "job-0"]
    assert [job.job_id for job in repository.jobs_for(SITE_ENDPOINT, limit=2)] == [
        "job-3",
        "job-2",
    ]
    assert repository.latest_for(SITE_ENDPOINT).job_id == "job-3"  # type: ignore[union-attr]
    assert repository.jobs_for("https://nobody.example.com/") == []
    assert repository.latest_for("https://nobody.example.com/") is None


def test_submitted_at_is_rendered_in_profile_time_zone(repository: JobRepository) -> None:
    submitted_at = datetime(2026, 7, 1, 10, 0, tzinfo=UTC)
    repository.enqueue("job-1", build_submission(), submitted_at=submitted_at)

    meta = repository.latest_for(SITE_ENDPOINT)

    assert meta is not None
    assert meta.submitted_at.tzinfo == ZoneInfo("Europe/Amsterdam")
    assert meta.submitted_at.hour == 12
    assert meta.submitted_at == submitted_at


def test_result_lookup_is_scoped_to_endpoint(repository: JobRepository) -> None:
    repository.enqueue("job-1", build_submission())
    repository.mark_processing("job-1")
    repository.mark_succeeded("job-1", _result("job-1"))

    result = repository.result_for(SITE_ENDPOINT, "job-1")

    assert result is not None
    assert result.options.date_from == date(2026, 10, 12)
    assert result.find_isf() is not None
    assert result.find_isf().rounded_recommendation == 42.35  # type: ignore[union-attr]
    assert result.find_basal()[0].time_of_day == time(0, 0)
    assert result.find_carb_ratio() is None
    assert repository.result_for("https://other.example.com/", "job-1") is None
    assert repository.result_for(SITE_ENDPOINT, "missing") is None


def test_claim_next_takes_oldest_submitted_job(repository: JobRepository) -> None:
    base = datetime.now(tz=UTC) - timedelta(minutes=10)
    repository.enqueue(
        "job-late",
        build_submission(OTHER_URL),
        submitted_at=base + timedelta(minutes=5),
    )
    repository.enqueue("job-early", build_submission(), submitted_at=base)

    first = repository.claim_next()
    second = repository.claim_next()

    assert first is not None
    assert first.job_id == "job-early"
    assert first.state == JobState.PROCESSING
    assert second is not None
    assert second.job_id == "job-late"
    assert repository.claim_next() is None


def test_job_view_restores_submission(repository: JobRepository) -> None:
    submission = build_submission()
    repository.enqueue("job-1", submission)

    job = repository.get_job("job-1")

    assert job is not None
    assert job.submission == submission
    assert job.submission.settings.oaps_profile["basalprofile"][1]["rate"] == 0.8


def test_non_positive_stale_threshold_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="stale_after"):
        JobRepository(tmp_path / "jobs.db", stale_after=timedelta(0))
