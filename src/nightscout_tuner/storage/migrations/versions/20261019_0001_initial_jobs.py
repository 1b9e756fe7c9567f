"""Tuning job store baseline: jobs, results and failures."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tuning_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("endpoint", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("parameters_json", sa.Text(), nullable=False),
        sa.Column("access_token", sa.String(), nullable=True),
        sa.Column("time_zone", sa.String(), nullable=False, server_default="UTC"),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("done_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_tuning_jobs_endpoint", "tuning_jobs", ["endpoint"])
    op.create_index("ix_tuning_jobs_state", "tuning_jobs", ["state"])
    op.create_index(
        "uq_tuning_jobs_endpoint_active",
        "tuning_jobs",
        ["endpoint"],
        unique=True,
        sqlite_where=sa.text("state IN ('submitted', 'processing')"),
    )

    op.create_table(
        "job_results",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("options_json", sa.Text(), nullable=False),
        sa.Column("recommendations_json", sa.Text(), nullable=False),
        sa.Column("recommendation_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["tuning_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("job_id"),
    )

    op.create_table(
        "job_failures",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("exit_code", sa.Integer(), nullable=True),
        sa.Column("diagnostic", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["tuning_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("job_id"),
    )


def downgrade() -> None:
    op.drop_table("job_failures")
    op.drop_table("job_results")
    op.drop_index("uq_tuning_jobs_endpoint_active", table_name="tuning_jobs")
    op.drop_index("ix_tuning_jobs_state", table_name="tuning_jobs")
    op.drop_index("ix_tuning_jobs_endpoint", table_name="tuning_jobs")
    op.drop_table("tuning_jobs")
