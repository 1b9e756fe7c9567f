"""Runtime configuration for the tuning job service."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_EXECUTORS = ("inline", "thread", "queue")


@dataclass(slots=True)
class StorageSettings:
    """SQLite access policy."""

    busy_timeout_ms: int = 5_000
    commit_retries: int = 3
    commit_retry_delay_seconds: float = 0.2
    active_job_stale_after_seconds: int = 3_600


@dataclass(slots=True)
class AutotuneSettings:
    """External autotune tool invocation settings."""

    command: str = "oref0-autotune"
    version: str = "0.7.1"
    timeout_seconds: float = 300.0
    workdir_root: Path = Path(".nightscout_tuner/work")
    keep_workdirs: bool = False
    diagnostic_max_chars: int = 2_000

    @property
    def command_args(self) -> tuple[str, ...]:
        return tuple(shlex.split(self.command))


@dataclass(slots=True)
class NightscoutSettings:
    """Nightscout pre-flight verification settings."""

    verify_timeout_seconds: float = 10.0
    max_retries: int = 1


@dataclass(slots=True)
class ExecutorSettings:
    """Dispatch backend settings."""

    kind: str = "queue"
    max_workers: int = 2
    poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".nightscout_tuner.db")
    storage: StorageSettings = field(default_factory=StorageSettings)
    autotune: AutotuneSettings = field(default_factory=AutotuneSettings)
    nightscout: NightscoutSettings = field(default_factory=NightscoutSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("NIGHTSCOUT_TUNER_DB_PATH", ".nightscout_tuner.db")),
            storage=StorageSettings(
                busy_timeout_ms=int(os.getenv("NIGHTSCOUT_TUNER_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                commit_retries=int(os.getenv("NIGHTSCOUT_TUNER_COMMIT_RETRIES", "3")),
                commit_retry_delay_seconds=float(
                    os.getenv("NIGHTSCOUT_TUNER_COMMIT_RETRY_DELAY_SECONDS", "0.2"),
                ),
                active_job_stale_after_seconds=int(
                    os.getenv("NIGHTSCOUT_TUNER_ACTIVE_JOB_STALE_AFTER_SECONDS", "3600"),
                ),
            ),
            autotune=AutotuneSettings(
                command=os.getenv("NIGHTSCOUT_TUNER_AUTOTUNE_COMMAND", "oref0-autotune"),
                version=os.getenv("NIGHTSCOUT_TUNER_AUTOTUNE_VERSION", "0.7.1"),
                timeout_seconds=float(
                    os.getenv("NIGHTSCOUT_TUNER_AUTOTUNE_TIMEOUT_SECONDS", "300"),
                ),
                workdir_root=Path(
                    os.getenv("NIGHTSCOUT_TUNER_WORKDIR_ROOT", ".nightscout_tuner/work"),
                ),
                keep_workdirs=_env_bool("NIGHTSCOUT_TUNER_KEEP_WORKDIRS", default=False),
                diagnostic_max_chars=int(
                    os.getenv("NIGHTSCOUT_TUNER_DIAGNOSTIC_MAX_CHARS", "2000"),
                ),
            ),
            nightscout=NightscoutSettings(
                verify_timeout_seconds=float(
                    os.getenv("NIGHTSCOUT_TUNER_VERIFY_TIMEOUT_SECONDS", "10"),
                ),
                max_retries=int(os.getenv("NIGHTSCOUT_TUNER_VERIFY_MAX_RETRIES", "1")),
            ),
            executor=ExecutorSettings(
                kind=os.getenv("NIGHTSCOUT_TUNER_EXECUTOR", "queue").strip().lower(),
                max_workers=int(os.getenv("NIGHTSCOUT_TUNER_MAX_WORKERS", "2")),
                poll_interval_seconds=float(
                    os.getenv("NIGHTSCOUT_TUNER_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the service cannot run with."""

        if self.storage.busy_timeout_ms <= 0:
            raise ValueError("NIGHTSCOUT_TUNER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.storage.commit_retries < 0:
            raise ValueError("NIGHTSCOUT_TUNER_COMMIT_RETRIES must be >= 0.")
        if self.storage.active_job_stale_after_seconds <= 0:
            raise ValueError("NIGHTSCOUT_TUNER_ACTIVE_JOB_STALE_AFTER_SECONDS must be > 0.")
        if not self.autotune.command_args:
            raise ValueError("NIGHTSCOUT_TUNER_AUTOTUNE_COMMAND must not be empty.")
        if self.autotune.timeout_seconds <= 0:
            raise ValueError("NIGHTSCOUT_TUNER_AUTOTUNE_TIMEOUT_SECONDS must be > 0.")
        if self.autotune.timeout_seconds >= self.storage.active_job_stale_after_seconds:
            raise ValueError(
                "NIGHTSCOUT_TUNER_AUTOTUNE_TIMEOUT_SECONDS must be lower than "
                "NIGHTSCOUT_TUNER_ACTIVE_JOB_STALE_AFTER_SECONDS.",
            )
        if self.autotune.diagnostic_max_chars <= 0:
            raise ValueError("NIGHTSCOUT_TUNER_DIAGNOSTIC_MAX_CHARS must be > 0.")
        if self.nightscout.verify_timeout_seconds <= 0:
            raise ValueError("NIGHTSCOUT_TUNER_VERIFY_TIMEOUT_SECONDS must be > 0.")
        if self.executor.kind not in SUPPORTED_EXECUTORS:
            raise ValueError(
                f"Invalid NIGHTSCOUT_TUNER_EXECUTOR: {self.executor.kind!r}. "
                f"Expected one of: {', '.join(SUPPORTED_EXECUTORS)}.",
            )
        if self.executor.max_workers <= 0:
            raise ValueError("NIGHTSCOUT_TUNER_MAX_WORKERS must be > 0.")
        if self.executor.poll_interval_seconds < 0:
            raise ValueError("NIGHTSCOUT_TUNER_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
