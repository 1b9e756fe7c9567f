"""SQLModel ORM tables for the tuning job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text, text
from sqlmodel import Field, SQLModel


class TuningJob(SQLModel, table=True):
    __tablename__ = "tuning_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_tuning_jobs_endpoint_active",
            "endpoint",
            unique=True,
            sqlite_where=text("state IN ('submitted', 'processing')"),
        ),
    )

    job_id: str = Field(primary_key=True)
    endpoint: str = Field(index=True)
    state: str = Field(index=True)
    parameters_json: str = Field(sa_column=Column(Text, nullable=False))
    access_token: str | None = None
    time_zone: str = Field(
        default="UTC",
        sa_column=Column(String, nullable=False, server_default="UTC"),
    )
    submitted_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    done_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failure_reason: str | None = None


class JobResultRecord(SQLModel, table=True):
    __tablename__ = "job_results"  # type: ignore[bad-override]

    job_id: str = Field(
        sa_column=Column(
            ForeignKey("tuning_jobs.job_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    options_json: str = Field(sa_column=Column(Text, nullable=False))
    recommendations_json: str = Field(sa_column=Column(Text, nullable=False))
    recommendation_count: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobFailureRecord(SQLModel, table=True):
    __tablename__ = "job_failures"  # type: ignore[bad-override]

    job_id: str = Field(
        sa_column=Column(
            ForeignKey("tuning_jobs.job_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    reason: str
    exit_code: int | None = None
    diagnostic: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
