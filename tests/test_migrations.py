from pathlib import Path

import allure
from sqlalchemy import text

from nightscout_tuner.storage.repository import JobRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = connection.execute(
            text(
                "SELECT name FROM sqlite_master WHERE type = 'table' "
                "AND name IN ('tuning_jobs', 'job_results', 'job_failures') ORDER BY name",
            ),
        ).scalars().all()
        index_sql = connection.execute(
            text(
                "SELECT sql FROM sqlite_master "
                "WHERE type = 'index' AND name = 'uq_tuning_jobs_endpoint_active'",
            ),
        ).scalar_one()

    assert version == "20261019_0001"
    assert tables == ["job_failures", "job_results", "tuning_jobs"]
    assert "UNIQUE" in index_sql.upper()
    assert "WHERE" in index_sql.upper()
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "jobs.db"
    repository = JobRepository(db_path)
    repository.init_schema()
    repository.init_schema()

    assert db_path.exists()
    assert repository.jobs_for("https://sugar.example.com/") == []
    repository.close()
