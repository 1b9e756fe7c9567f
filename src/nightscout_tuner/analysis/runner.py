"""Subprocess-based runner for oref0 autotune."""

from __future__ import annotations

import copy
import logging
import os
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import IO, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from nightscout_tuner.analysis.nightscout import EndpointVerifier
from nightscout_tuner.analysis.parser import parse_log
from nightscout_tuner.analysis.sanitization import (
    DEFAULT_MAX_DIAGNOSTIC_CHARS,
    sanitize_diagnostic,
)
from nightscout_tuner.analysis.workdir import AnalysisWorkdir, AnalysisWorkdirManager
from nightscout_tuner.jobs.models import (
    AnalysisFailed,
    AnalysisOutcome,
    AnalysisSucceeded,
    AutotuneOptions,
    FailureReason,
    JobSettings,
    Submission,
)
from nightscout_tuner.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0
TIMEOUT_EXIT_CODE = 124
CANCELLED_EXIT_CODE = 130
COMMAND_NOT_EXECUTABLE_EXIT_CODE = 126
COMMAND_NOT_FOUND_EXIT_CODE = 127
API_SECRET_ENV = "API_SECRET"


@dataclass(slots=True)
class ProcessExecution:
    """Raw result of one autotune process."""

    exit_code: int
    timed_out: bool
    cancelled: bool
    stderr: str


def build_autotune_profile(settings: JobSettings) -> dict[str, Any]:
    """Apply job settings on top of the submitted OpenAPS profile."""

    profile = copy.deepcopy(settings.oaps_profile)
    profile["autosens_min"] = settings.autosens_min
    profile["autosens_max"] = settings.autosens_max
    profile["min_5m_carbimpact"] = settings.min_5m_carbimpact
    profile["curve"] = settings.insulin_type
    return profile


def analysis_window(*, today: date, days: int) -> tuple[date, date]:
    """Trailing window of ``days`` days ending yesterday."""

    date_to = today - timedelta(days=1)
    date_from = date_to - timedelta(days=max(1, days) - 1)
    return date_from, date_to


class AnalysisRunner:
    """Verify the site, run autotune in a fresh workdir, and parse its recommendations."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        command: Sequence[str],
        autotune_version: str,
        workdir_root: Path,
        verifier: EndpointVerifier,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        keep_workdirs: bool = False,
        diagnostic_max_chars: int = DEFAULT_MAX_DIAGNOSTIC_CHARS,
        terminate_grace_seconds: float = 2.0,
        poll_interval_seconds: float = 0.1,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not command:
            raise ValueError("Autotune command must not be empty.")
        self.command = tuple(command)
        self.autotune_version = autotune_version
        self.workdirs = AnalysisWorkdirManager(workdir_root)
        self.verifier = verifier
        self.timeout_seconds = timeout_seconds
        self.keep_workdirs = keep_workdirs
        self.diagnostic_max_chars = diagnostic_max_chars
        self.terminate_grace_seconds = terminate_grace_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._clock = clock

    def run(
        self,
        job_id: str,
        submission: Submission,
        *,
        cancel_requested: Callable[[], bool] | None = None,
    ) -> AnalysisOutcome:
        """Execute one job's analysis and return its outcome; never raises for tool failures."""

        if not self.verifier.verify(submission.endpoint, submission.access_token):
            logger.warning(
                "[job %s] Nightscout verification failed for %s",
                job_id,
                submission.endpoint,
            )
            return AnalysisFailed(
                job_id=job_id,
                reason=FailureReason.VERIFICATION_FAILED,
                diagnostic=f"Nightscout API verification failed for {submission.endpoint}",
            )

        options = self.build_options(job_id=job_id, submission=submission)
        workdir = self.workdirs.create(
            job_id=job_id,
            profile=build_autotune_profile(submission.settings),
        )
        try:
            return self._run_in_workdir(
                job_id=job_id,
                submission=submission,
                options=options,
                workdir=workdir,
                cancel_requested=cancel_requested,
            )
        finally:
            if not self.keep_workdirs:
                self.workdirs.cleanup(workdir)

    def build_options(self, *, job_id: str, submission: Submission) -> AutotuneOptions:
        time_zone = submission.settings.time_zone
        try:
            zone = ZoneInfo(time_zone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("[job %s] Unknown time zone %r, using UTC", job_id, time_zone)
            zone = ZoneInfo("UTC")
        date_from, date_to = analysis_window(
            today=self._clock().astimezone(zone).date(),
            days=submission.settings.autotune_days,
        )
        return AutotuneOptions(
            job_id=job_id,
            endpoint=submission.endpoint,
            date_from=date_from,
            date_to=date_to,
            uam_as_basal=submission.settings.uam_as_basal,
            autotune_version=self.autotune_version,
            time_zone=time_zone,
        )

    def build_args(self, *, workdir: AnalysisWorkdir, options: AutotuneOptions) -> list[str]:
        return [
            *self.command,
            f"--dir={workdir.path}",
            f"--ns-host={options.endpoint}",
            f"--start-date={options.date_from.isoformat()}",
            f"--end-date={options.date_to.isoformat()}",
            f"--categorize-uam-as-basal={'true' if options.uam_as_basal else 'false'}",
        ]

    def _run_in_workdir(
        self,
        *,
        job_id: str,
        submission: Submission,
        options: AutotuneOptions,
        workdir: AnalysisWorkdir,
        cancel_requested: Callable[[], bool] | None,
    ) -> AnalysisOutcome:
        run_args = self.build_args(workdir=workdir, options=options)
        env = os.environ.copy()
        env.pop(API_SECRET_ENV, None)
        if submission.access_token:
            env[API_SECRET_ENV] = submission.access_token

        logger.info(
            "[job %s] Running autotune for %s from %s to %s",
            job_id,
            options.endpoint,
            options.date_from,
            options.date_to,
        )
        started = time.monotonic()
        try:
            workdir.stdout_path.parent.mkdir(parents=True, exist_ok=True)
            with workdir.stdout_path.open("w", encoding="utf-8") as stdout_handle:
                execution = self._run_subprocess(
                    run_args=run_args,
                    env=env,
                    cwd=workdir.path,
                    stdout_handle=stdout_handle,
                    cancel_requested=cancel_requested,
                )
        except FileNotFoundError:
            return self._failed(
                job_id,
                exit_code=COMMAND_NOT_FOUND_EXIT_CODE,
                diagnostic=f"Autotune command not found: {run_args[0]}",
            )
        except OSError as error:
            return self._failed(
                job_id,
                exit_code=COMMAND_NOT_EXECUTABLE_EXIT_CODE,
                diagnostic=f"Autotune failed to start: {error}",
            )

        elapsed = time.monotonic() - started
        if execution.cancelled:
            logger.info("[job %s] Autotune cancelled after %.1fs", job_id, elapsed)
            return AnalysisFailed(
                job_id=job_id,
                reason=FailureReason.CANCELLED,
                exit_code=CANCELLED_EXIT_CODE,
                diagnostic=self._diagnostic(execution.stderr) or "Cancelled by request.",
            )
        if execution.timed_out:
            logger.warning(
                "[job %s] Autotune exceeded %.0fs and was terminated",
                job_id,
                self.timeout_seconds,
            )
            return self._failed(
                job_id,
                exit_code=TIMEOUT_EXIT_CODE,
                diagnostic=(
                    f"Autotune timed out after {self.timeout_seconds:g}s.\n{execution.stderr}"
                ),
                timed_out=True,
            )
        if execution.exit_code != 0:
            logger.warning("[job %s] Autotune exited with code %d", job_id, execution.exit_code)
            return self._failed(
                job_id,
                exit_code=execution.exit_code,
                diagnostic=execution.stderr,
            )
        if not workdir.recommendations_log_path.is_file():
            return self._failed(
                job_id,
                exit_code=execution.exit_code,
                diagnostic=(
                    f"Recommendations log not found: {workdir.recommendations_log_path.name}\n"
                    f"{execution.stderr}"
                ),
            )

        logger.info("[job %s] Autotune finished in %.1fs", job_id, elapsed)
        return AnalysisSucceeded(
            job_id=job_id,
            result=parse_log(workdir.recommendations_log_path, options),
        )

    def _run_subprocess(
        self,
        *,
        run_args: list[str],
        env: dict[str, str],
        cwd: Path,
        stdout_handle: IO[str],
        cancel_requested: Callable[[], bool] | None,
    ) -> ProcessExecution:
        process = subprocess.Popen(  # noqa: S603
            run_args,
            env=env,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=stdout_handle,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
        collector = StderrCollector(process.stderr, max_chars=self.diagnostic_max_chars * 2)
        collector.start()
        start_monotonic = time.monotonic()
        timed_out = False
        cancelled = False

        while True:
            returncode = process.poll()
            if returncode is not None:
                break
            if time.monotonic() - start_monotonic >= self.timeout_seconds:
                timed_out = True
                _terminate_process(process, grace_seconds=self.terminate_grace_seconds)
                break
            if cancel_requested is not None and cancel_requested():
                cancelled = True
                _terminate_process(process, grace_seconds=self.terminate_grace_seconds)
                break
            time.sleep(self.poll_interval_seconds)

        collector.join(timeout=self.terminate_grace_seconds)
        exit_code = process.returncode if process.returncode is not None else -1
        if timed_out:
            exit_code = TIMEOUT_EXIT_CODE
        elif cancelled:
            exit_code = CANCELLED_EXIT_CODE
        return ProcessExecution(
            exit_code=exit_code,
            timed_out=timed_out,
            cancelled=cancelled,
            stderr=collector.text(),
        )

    def _failed(
        self,
        job_id: str,
        *,
        exit_code: int | None,
        diagnostic: str,
        timed_out: bool = False,
    ) -> AnalysisFailed:
        return AnalysisFailed(
            job_id=job_id,
            reason=FailureReason.TOOL_FAILED,
            exit_code=exit_code,
            diagnostic=self._diagnostic(diagnostic),
            timed_out=timed_out,
        )

    def _diagnostic(self, text: str) -> str:
        return sanitize_diagnostic(text, max_chars=self.diagnostic_max_chars)


class StderrCollector:
    """Drains a process stderr pipe on a background thread, keeping a bounded tail."""

    def __init__(self, stream: IO[str] | None, *, max_chars: int) -> None:
        self._stream = stream
        self._max_chars = max_chars
        self._chunks: deque[str] = deque()
        self._size = 0
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._drain, daemon=True, name="autotune-stderr")

    def start(self) -> None:
        if self._stream is not None:
            self._thread.start()

    def join(self, *, timeout: float) -> None:
        if self._thread.is_alive():
            self._thread.join(timeout=timeout)

    def text(self) -> str:
        with self._lock:
            return "".join(self._chunks)

    def _drain(self) -> None:
        assert self._stream is not None
        for line in iter(self._stream.readline, ""):
            with self._lock:
                self._chunks.append(line)
                self._size += len(line)
                while self._size > self._max_chars and len(self._chunks) > 1:
                    self._size -= len(self._chunks.popleft())
        self._stream.close()


def _terminate_process(process: subprocess.Popen[str], *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=grace_seconds)
