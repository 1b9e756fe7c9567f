"""Controllers for tuning job CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from nightscout_tuner.analysis.nightscout import NightscoutClient
from nightscout_tuner.analysis.runner import AnalysisRunner
from nightscout_tuner.config import Settings
from nightscout_tuner.jobs.coordinator import JobCoordinator
from nightscout_tuner.jobs.executors import InlineExecutor, JobExecutor, build_executor
from nightscout_tuner.jobs.models import AutotuneResult, JobFailureDetails, JobMeta, JobState
from nightscout_tuner.jobs.validation import normalize_endpoint
from nightscout_tuner.jobs.worker import JobWorker
from nightscout_tuner.storage.repository import JobRepository


@dataclass(slots=True)
class SubmitJobCommand:
    """CLI input for job submission."""

    db_path: Path | None
    request_file: Path
    wait: bool


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for per-endpoint job listing."""

    db_path: Path | None
    endpoint: str
    limit: int


@dataclass(slots=True)
class LatestJobCommand:
    db_path: Path | None
    endpoint: str


@dataclass(slots=True)
class JobResultCommand:
    """CLI input for recommendation lookup."""

    db_path: Path | None
    endpoint: str
    job_id: str


@dataclass(slots=True)
class CancelJobCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for durable-queue worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None = None


@dataclass(slots=True)
class VerifyEndpointCommand:
    endpoint: str
    access_token: str | None


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus whether the command achieved its goal."""

    lines: list[str]
    success: bool


class TuningCliController:
    """Coordinates submission, worker, and inspection CLI operations."""

    def submit(self, command: SubmitJobCommand) -> CommandResult:
        settings = _settings(command.db_path)
        payload = json.loads(command.request_file.read_text("utf-8"))
        executor = InlineExecutor() if command.wait else build_executor(settings.executor)
        with _coordinator(settings, executor=executor) as coordinator:
            submitted = coordinator.submit_raw(payload)
            if not submitted.accepted or submitted.job_id is None:
                kind = submitted.rejection.value if submitted.rejection else "-"
                lines = [f"Submission rejected: kind={kind} job_id={submitted.job_id or '-'}"]
                if submitted.message:
                    lines.append(submitted.message)
                lines.extend(f"  {issue}" for issue in submitted.errors)
                return CommandResult(lines=lines, success=False)

            lines = [
                f"Job submitted: job_id={submitted.job_id} executor="
                f"{'inline' if command.wait else settings.executor.kind}",
            ]
            if not command.wait:
                return CommandResult(lines=lines, success=True)

            job = coordinator.repository.get_job(submitted.job_id)
            if job is None:
                return CommandResult(lines=[*lines, "Job not found after run."], success=False)
            lines.append(f"Job finished: state={job.state.value}")
            if job.state == JobState.SUCCESS:
                result = coordinator.result_for(job.endpoint, job.job_id)
                if result is not None:
                    lines.extend(_render_result(result))
                return CommandResult(lines=lines, success=True)
            failure = coordinator.failure_for(job.endpoint, job.job_id)
            if failure is not None:
                lines.extend(_render_failure(failure))
            return CommandResult(lines=lines, success=False)

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = _settings(command.db_path)
        endpoint = normalize_endpoint(command.endpoint)
        with _repository(settings) as repository:
            jobs = repository.jobs_for(endpoint, limit=command.limit)
        if not jobs:
            return [f"No jobs for {endpoint}"]
        return [f"Jobs for {endpoint}:", *(_render_meta(job) for job in jobs)]

    def latest(self, command: LatestJobCommand) -> list[str]:
        settings = _settings(command.db_path)
        endpoint = normalize_endpoint(command.endpoint)
        with _repository(settings) as repository:
            job = repository.latest_for(endpoint)
        if job is None:
            return [f"No jobs for {endpoint}"]
        return [_render_meta(job)]

    def result(self, command: JobResultCommand) -> CommandResult:
        settings = _settings(command.db_path)
        endpoint = normalize_endpoint(command.endpoint)
        with _repository(settings) as repository:
            result = repository.result_for(endpoint, command.job_id)
            failure = (
                repository.failure_for(endpoint, command.job_id) if result is None else None
            )
        if result is not None:
            return CommandResult(lines=_render_result(result), success=True)
        if failure is not None:
            return CommandResult(
                lines=[
                    f"Job {command.job_id} failed",
                    *_render_failure(failure),
                ],
                success=True,
            )
        return CommandResult(
            lines=[f"No result for job {command.job_id} at {endpoint}"],
            success=False,
        )

    def cancel(self, command: CancelJobCommand) -> CommandResult:
        settings = _settings(command.db_path)
        with _coordinator(settings, executor=InlineExecutor()) as coordinator:
            cancelled = coordinator.cancel(command.job_id)
        if cancelled:
            return CommandResult(lines=[f"Job cancelled: job_id={command.job_id}"], success=True)
        return CommandResult(
            lines=[f"Job {command.job_id} is not active; nothing to cancel"],
            success=False,
        )

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _coordinator(settings, executor=build_executor(settings.executor)) as coordinator:
            worker = JobWorker(
                coordinator=coordinator,
                poll_interval_seconds=settings.executor.poll_interval_seconds,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} timeouts={summary.timeouts} "
            f"stale_recovered={summary.stale_recovered} idle_polls={summary.idle_polls}",
        ]

    def verify(self, command: VerifyEndpointCommand) -> CommandResult:
        settings = Settings.from_env()
        settings.validate()
        endpoint = normalize_endpoint(command.endpoint)
        with NightscoutClient(
            timeout_seconds=settings.nightscout.verify_timeout_seconds,
            max_retries=settings.nightscout.max_retries,
        ) as client:
            verified = client.verify(endpoint, command.access_token)
        if verified:
            return CommandResult(lines=[f"Nightscout API reachable: {endpoint}"], success=True)
        return CommandResult(
            lines=[f"Nightscout API verification failed: {endpoint}"],
            success=False,
        )


def build_runner(settings: Settings, *, verifier: NightscoutClient) -> AnalysisRunner:
    return AnalysisRunner(
        command=settings.autotune.command_args,
        autotune_version=settings.autotune.version,
        workdir_root=settings.autotune.workdir_root,
        verifier=verifier,
        timeout_seconds=settings.autotune.timeout_seconds,
        keep_workdirs=settings.autotune.keep_workdirs,
        diagnostic_max_chars=settings.autotune.diagnostic_max_chars,
    )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        settings.db_path,
        busy_timeout_ms=settings.storage.busy_timeout_ms,
        commit_retries=settings.storage.commit_retries,
        commit_retry_delay_seconds=settings.storage.commit_retry_delay_seconds,
        stale_after=timedelta(seconds=settings.storage.active_job_stale_after_seconds),
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _coordinator(settings: Settings, *, executor: JobExecutor) -> Iterator[JobCoordinator]:
    with (
        _repository(settings) as repository,
        NightscoutClient(
            timeout_seconds=settings.nightscout.verify_timeout_seconds,
            max_retries=settings.nightscout.max_retries,
        ) as verifier,
    ):
        coordinator = JobCoordinator(
            repository=repository,
            runner=build_runner(settings, verifier=verifier),
            executor=executor,
        )
        try:
            yield coordinator
        finally:
            coordinator.close()


def _render_meta(job: JobMeta) -> str:
    return f"- {job.job_id} state={job.state.value} submitted_at={job.submitted_at.isoformat()}"


def _render_result(result: AutotuneResult) -> list[str]:
    options = result.options
    lines = [
        f"Recommendations for {options.endpoint} "
        f"({options.date_from.isoformat()}..{options.date_to.isoformat()}, "
        f"autotune {options.autotune_version}, tz={options.time_zone}):",
    ]
    isf = result.find_isf()
    if isf is not None:
        lines.append(
            f"  ISF: {isf.current_value:g} -> {isf.recommended_value:g} "
            f"(rounded {isf.rounded_recommendation:g})",
        )
    carb_ratio = result.find_carb_ratio()
    if carb_ratio is not None:
        lines.append(
            f"  Carb ratio: {carb_ratio.current_value:g} -> {carb_ratio.recommended_value:g} "
            f"(rounded {carb_ratio.rounded_recommendation:g})",
        )
    for basal in result.find_basal():
        when = basal.time_of_day.strftime("%H:%M") if basal.time_of_day else "--:--"
        lines.append(
            f"  Basal {when}: {basal.current_value:g} -> {basal.recommended_value:g} "
            f"(rounded {basal.rounded_recommendation:g}, days missing {basal.days_missing})",
        )
    return lines


def _render_failure(failure: JobFailureDetails) -> list[str]:
    exit_code = failure.exit_code if failure.exit_code is not None else "-"
    lines = [f"  reason={failure.reason.value} exit_code={exit_code}"]
    if failure.diagnostic:
        lines.extend(f"  | {line}" for line in failure.diagnostic.splitlines()[-20:])
    return lines
