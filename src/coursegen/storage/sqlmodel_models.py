"""SQLModel ORM tables for generation job storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class GenerationJob(SQLModel, table=True):
    __tablename__ = "generation_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_jobs_user_status", "user_id", "status", "created_at"),)

    job_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    target_id: str = Field(index=True)
    title: str
    status: str = Field(index=True)
    progress: float = Field(
        default=0.0,
        sa_column=Column(Float, nullable=False, server_default=text("0")),
    )
    request_json: str = Field(sa_column=Column(Text, nullable=False))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    owner_id: str | None = Field(default=None, index=True)
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    recovery_attempts: int = Field(default=0)
    cleared_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationTask(SQLModel, table=True):
    __tablename__ = "generation_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", "task_key", name="uq_generation_tasks_job_key"),
        Index("idx_generation_tasks_dispatch", "job_id", "status", "priority", "sequence"),
    )

    task_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_key: str
    task_type: str = Field(index=True)
    group_key: str | None = Field(default=None, index=True)
    title: str
    sequence: int
    priority: int = Field(default=100)
    dependencies_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    current_retry_count: int = Field(default=0)
    max_retry_count: int = Field(default=3)
    is_recoverable: bool = Field(default=True)
    timeout_seconds: int = Field(default=120)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    input_json: str = Field(sa_column=Column(Text, nullable=False))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = Field(default=None, index=True)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    error_details_json: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationTaskEvent(SQLModel, table=True):
    __tablename__ = "generation_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationJobAction(SQLModel, table=True):
    __tablename__ = "generation_job_actions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_job_actions_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    actor_user_id: str = Field(index=True)
    action_type: str = Field(index=True)
    task_ids_json: str | None = Field(default=None, sa_column=Column(Text))
    success: bool
    message: str = Field(sa_column=Column(Text, nullable=False))
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
