from __future__ import annotations

from pathlib import Path

import allure
import pytest

from nightscout_tuner.config import AutotuneSettings, ExecutorSettings, Settings, StorageSettings

pytestmark = [
    allure.epic("Service Runtime"),
    allure.feature("Configuration"),
]


def test_defaults_are_valid() -> None:
    settings = Settings()

    settings.validate()
    assert settings.autotune.command_args == ("oref0-autotune",)
    assert settings.executor.kind == "queue"


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NIGHTSCOUT_TUNER_DB_PATH", "/tmp/tuner.db")
    monkeypatch.setenv("NIGHTSCOUT_TUNER_AUTOTUNE_COMMAND", "docker run --rm oref0 oref0-autotune")
    monkeypatch.setenv("NIGHTSCOUT_TUNER_AUTOTUNE_TIMEOUT_SECONDS", "120")
    monkeypatch.setenv("NIGHTSCOUT_TUNER_KEEP_WORKDIRS", "yes")
    monkeypatch.setenv("NIGHTSCOUT_TUNER_EXECUTOR", " Thread ")
    monkeypatch.setenv("NIGHTSCOUT_TUNER_MAX_WORKERS", "4")
    monkeypatch.setenv("NIGHTSCOUT_TUNER_ACTIVE_JOB_STALE_AFTER_SECONDS", "600")

    settings = Settings.from_env()

    assert settings.db_path == Path("/tmp/tuner.db")
    assert settings.autotune.command_args == ("docker", "run", "--rm", "oref0", "oref0-autotune")
    assert settings.autotune.timeout_seconds == 120.0
    assert settings.autotune.keep_workdirs is True
    assert settings.executor.kind == "thread"
    assert settings.executor.max_workers == 4
    assert settings.storage.active_job_stale_after_seconds == 600
    settings.validate()


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NIGHTSCOUT_TUNER_DB_PATH", "/tmp/from-env.db")

    assert Settings.from_env(db_path=Path("cli.db")).db_path == Path("cli.db")


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NIGHTSCOUT_TUNER_KEEP_WORKDIRS", "maybe")

    with pytest.raises(ValueError, match="NIGHTSCOUT_TUNER_KEEP_WORKDIRS"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(executor=ExecutorSettings(kind="celery")), "NIGHTSCOUT_TUNER_EXECUTOR"),
        (Settings(executor=ExecutorSettings(max_workers=0)), "NIGHTSCOUT_TUNER_MAX_WORKERS"),
        (Settings(autotune=AutotuneSettings(command="  ")), "AUTOTUNE_COMMAND"),
        (Settings(autotune=AutotuneSettings(timeout_seconds=0)), "AUTOTUNE_TIMEOUT_SECONDS"),
        (Settings(storage=StorageSettings(busy_timeout_ms=0)), "BUSY_TIMEOUT_MS"),
        (
            Settings(storage=StorageSettings(active_job_stale_after_seconds=0)),
            "ACTIVE_JOB_STALE_AFTER_SECONDS",
        ),
        (
            Settings(autotune=AutotuneSettings(timeout_seconds=3_600)),
            "must be lower than NIGHTSCOUT_TUNER_ACTIVE_JOB_STALE_AFTER_SECONDS",
        ),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_validate_accepts_timeout_just_below_stale_threshold() -> None:
    settings = Settings(
        autotune=AutotuneSettings(timeout_seconds=599),
        storage=StorageSettings(active_job_stale_after_seconds=600),
    )

    settings.validate()
