"""Create generation job, task, task event and action record tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "generation_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("request_json", sa.Text(), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovery_attempts", sa.Integer(), nullable=False),
        sa.Column("cleared_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_generation_jobs_user_id", "generation_jobs", ["user_id"], unique=False)
    op.create_index(
        "ix_generation_jobs_target_id",
        "generation_jobs",
        ["target_id"],
        unique=False,
    )
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"], unique=False)
    op.create_index("ix_generation_jobs_owner_id", "generation_jobs", ["owner_id"], unique=False)
    op.create_index(
        "idx_generation_jobs_user_status",
        "generation_jobs",
        ["user_id", "status", "created_at"],
        unique=False,
    )

    op.create_table(
        "generation_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("task_key", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("group_key", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("dependencies_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retry_count", sa.Integer(), nullable=False),
        sa.Column("is_recoverable", sa.Boolean(), nullable=False),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("input_json", sa.Text(), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_details_json", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
        sa.UniqueConstraint("job_id", "task_key", name="uq_generation_tasks_job_key"),
    )
    op.create_index("ix_generation_tasks_job_id", "generation_tasks", ["job_id"], unique=False)
    op.create_index(
        "ix_generation_tasks_task_type",
        "generation_tasks",
        ["task_type"],
        unique=False,
    )
    op.create_index(
        "ix_generation_tasks_group_key",
        "generation_tasks",
        ["group_key"],
        unique=False,
    )
    op.create_index("ix_generation_tasks_status", "generation_tasks", ["status"], unique=False)
    op.create_index(
        "ix_generation_tasks_failure_class",
        "generation_tasks",
        ["failure_class"],
        unique=False,
    )
    op.create_index(
        "idx_generation_tasks_dispatch",
        "generation_tasks",
        ["job_id", "status", "priority", "sequence"],
        unique=False,
    )

    op.create_table(
        "generation_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["generation_tasks.task_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_generation_task_events_task_id",
        "generation_task_events",
        ["task_id"],
        unique=False,
    )
    op.create_index(
        "ix_generation_task_events_job_id",
        "generation_task_events",
        ["job_id"],
        unique=False,
    )
    op.create_index(
        "ix_generation_task_events_event_type",
        "generation_task_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_generation_task_events_task_time",
        "generation_task_events",
        ["task_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "generation_job_actions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("actor_user_id", sa.String(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("task_ids_json", sa.Text(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_generation_job_actions_job_id",
        "generation_job_actions",
        ["job_id"],
        unique=False,
    )
    op.create_index(
        "ix_generation_job_actions_actor_user_id",
        "generation_job_actions",
        ["actor_user_id"],
        unique=False,
    )
    op.create_index(
        "ix_generation_job_actions_action_type",
        "generation_job_actions",
        ["action_type"],
        unique=False,
    )
    op.create_index(
        "idx_generation_job_actions_job_time",
        "generation_job_actions",
        ["job_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("generation_job_actions")
    op.drop_table("generation_task_events")
    op.drop_table("generation_tasks")
    op.drop_table("generation_jobs")
