"""CLI entrypoint for nightscout-tuner."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from nightscout_tuner import __version__
from nightscout_tuner.controllers import (
    CancelJobCommand,
    CommandResult,
    JobResultCommand,
    LatestJobCommand,
    ListJobsCommand,
    SubmitJobCommand,
    TuningCliController,
    VerifyEndpointCommand,
    WorkerCommand,
)
from nightscout_tuner.jobs.errors import JobError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TuningCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
ACCESS_TOKEN_ENV = "NIGHTSCOUT_TUNER_ACCESS_TOKEN"

T = TypeVar("T")


@click.group()
@click.version_option(version=__version__, prog_name="nightscout-tuner")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root logging level.",
)
def nightscout_tuner(log_level: str) -> None:
    """Queue and run oref0 autotune against Nightscout sites."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@nightscout_tuner.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--request-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="JSON submission with `nightscout_url`, optional token and `settings`.",
)
@click.option(
    "--wait/--no-wait",
    default=False,
    show_default=True,
    help="Run the job in this process and print its outcome.",
)
def submit(db_path: Path | None, request_file: Path, wait: bool) -> None:
    """Submit one autotune job for a Nightscout site."""

    _emit_result(
        lambda: CONTROLLER.submit(
            SubmitJobCommand(db_path=db_path, request_file=request_file, wait=wait),
        ),
        failure_message="Job was not completed successfully.",
    )


@nightscout_tuner.command("jobs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--endpoint", required=True, help="Nightscout site URL.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs(db_path: Path | None, endpoint: str, limit: int) -> None:
    """List jobs for a Nightscout site, newest first."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.list_jobs(
                ListJobsCommand(db_path=db_path, endpoint=endpoint, limit=limit),
            ),
        ),
    )


@nightscout_tuner.command("latest")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--endpoint", required=True, help="Nightscout site URL.")
def latest(db_path: Path | None, endpoint: str) -> None:
    """Show the most recent job for a Nightscout site."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.latest(LatestJobCommand(db_path=db_path, endpoint=endpoint)),
        ),
    )


@nightscout_tuner.command("result")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--endpoint", required=True, help="Nightscout site URL the job belongs to.")
@click.option("--job-id", required=True, help="Job id returned by `submit`.")
def result(db_path: Path | None, endpoint: str, job_id: str) -> None:
    """Show recommendations (or the failure) of one job."""

    _emit_result(
        lambda: CONTROLLER.result(
            JobResultCommand(db_path=db_path, endpoint=endpoint, job_id=job_id),
        ),
        failure_message="Result not found.",
    )


@nightscout_tuner.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Active job id.")
def cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a submitted or processing job."""

    _emit_result(
        lambda: CONTROLLER.cancel(CancelJobCommand(db_path=db_path, job_id=job_id)),
        failure_message="Nothing was cancelled.",
    )


@nightscout_tuner.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process at most one job and exit.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many jobs.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many consecutive empty polls (default: run until signalled).",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int | None,
) -> None:
    """Consume submitted jobs from the durable queue."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    once=once,
                    max_jobs=max_jobs,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        ),
    )


@nightscout_tuner.command("verify")
@click.option("--endpoint", required=True, help="Nightscout site URL.")
def verify(endpoint: str) -> None:
    """Check that a Nightscout site API is reachable.

    The API secret, if any, is read from `NIGHTSCOUT_TUNER_ACCESS_TOKEN`.
    """

    access_token = os.getenv(ACCESS_TOKEN_ENV) or None
    _emit_result(
        lambda: CONTROLLER.verify(
            VerifyEndpointCommand(endpoint=endpoint, access_token=access_token),
        ),
        failure_message="Nightscout verification failed.",
    )


def _guarded(action: Callable[[], T]) -> T:
    try:
        return action()
    except (JobError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_result(action: Callable[[], CommandResult], *, failure_message: str) -> None:
    outcome = _guarded(action)
    _emit_lines(outcome.lines)
    if not outcome.success:
        raise click.ClickException(failure_message)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    nightscout_tuner()
