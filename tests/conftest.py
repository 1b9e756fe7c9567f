"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from nightscout_tuner.storage.repository import JobRepository


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "jobs.db", commit_retry_delay_seconds=0.01)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def fake_autotune_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in (
        "FAKE_AUTOTUNE_EXIT_CODE",
        "FAKE_AUTOTUNE_SLEEP_SECONDS",
        "FAKE_AUTOTUNE_LOG",
        "FAKE_AUTOTUNE_SKIP_LOG",
        "API_SECRET",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
