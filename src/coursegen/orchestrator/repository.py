"""Persistent store for generation jobs, tasks, task events and action records."""

from __future__ import annotations

import json
from collections.abc import Collection, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import case, func, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from coursegen.orchestrator.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    StateConflictError,
    TaskNotFoundError,
)
from coursegen.orchestrator.models import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    ActionRecordView,
    ActionRecordWrite,
    ActionType,
    FailureClass,
    JobCreate,
    JobStatus,
    JobView,
    TaskCreate,
    TaskEventView,
    TaskStatus,
    TaskView,
)
from coursegen.orchestrator.progress import recompute_job_progress
from coursegen.storage.alembic_runner import upgrade_head
from coursegen.storage.common import (
    build_sqlite_engine,
    connect_sqlite_with_policy,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from coursegen.storage.sqlmodel_models import (
    GenerationJob,
    GenerationJobAction,
    GenerationTask,
    GenerationTaskEvent,
)


class GenerationRepository:
    """Job/task persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._connection = connect_sqlite_with_policy(
            db_path=db_path,
            busy_timeout_ms=busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self._connection.close()
        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_job(self, payload: JobCreate, tasks: Sequence[TaskCreate]) -> JobView:
        """Persist a queued job and all of its queued tasks in one transaction."""

        validate_task_graph(tasks)
        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = GenerationJob(
                job_id=job_id,
                user_id=payload.user_id,
                target_id=payload.target_id,
                title=payload.title,
                status=JobStatus.QUEUED.value,
                progress=0.0,
                request_json=_dump_json(payload.request),
                recovery_attempts=0,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            self._add_task_rows(
                session=session,
                job_id=job_id,
                tasks=tasks,
                first_sequence=1,
                now=now,
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def add_tasks(self, *, job_id: str, tasks: Sequence[TaskCreate]) -> list[TaskView]:
        """Append queued tasks to a job that has not reached a terminal state."""

        now = utc_now()
        with Session(self.engine) as session:
            job = self._get_job_row(session=session, job_id=job_id)
            if JobStatus(job.status) in TERMINAL_JOB_STATUSES:
                raise InvalidTransitionError(
                    f"Cannot add tasks to job {job_id} in status={job.status}",
                )
            existing = session.exec(
                select(GenerationTask).where(GenerationTask.job_id == job_id),
            ).all()
            validate_task_graph(tasks, existing_keys={row.task_key for row in existing})
            first_sequence = max((row.sequence for row in existing), default=0) + 1
            task_ids = self._add_task_rows(
                session=session,
                job_id=job_id,
                tasks=tasks,
                first_sequence=first_sequence,
                now=now,
            )
            session.commit()
        return [task for task in self.list_tasks(job_id=job_id) if task.task_id in task_ids]

    def get_job(self, job_id: str) -> JobView | None:
        """Load one job by id."""

        with Session(self.engine) as session:
            row = session.get(GenerationJob, job_id)
            return _to_job_view(row) if row is not None else None

    def require_job(self, job_id: str) -> JobView:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(
        self,
        *,
        user_id: str | None = None,
        statuses: Collection[JobStatus] | None = None,
        include_cleared: bool = False,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, newest first."""

        with Session(self.engine) as session:
            statement = select(GenerationJob)
            if user_id is not None:
                statement = statement.where(GenerationJob.user_id == user_id)
            if statuses is not None:
                statement = statement.where(
                    col(GenerationJob.status).in_([status.value for status in statuses]),
                )
            if not include_cleared:
                statement = statement.where(col(GenerationJob.cleared_at).is_(None))
            rows = session.exec(
                statement.order_by(col(GenerationJob.created_at).desc()).limit(max(1, limit)),
            ).all()
            return [_to_job_view(row) for row in rows]

    def list_active_jobs(self, *, user_id: str | None = None, limit: int = 100) -> list[JobView]:
        """Non-terminal jobs, optionally scoped to one user."""

        return self.list_jobs(user_id=user_id, statuses=ACTIVE_JOB_STATUSES, limit=limit)

    def transition_job(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        expected: Collection[JobStatus],
        target: JobStatus,
        error_message: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """Move a job to ``target`` only if its current status is one of ``expected``."""

        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {
            "status": target.value,
            "error_message": error_message,
            "updated_at": now,
            "finished_at": now if target in TERMINAL_JOB_STATUSES else None,
        }
        if target == JobStatus.PROCESSING:
            values["started_at"] = func.coalesce(col(GenerationJob.started_at), now)
        if result is not None:
            values["result_json"] = _dump_json(result)
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status).in_([status.value for status in expected]),
                )
                .values(**values),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def claim_job(
        self,
        *,
        job_id: str,
        owner_id: str,
        lease_expired_before: datetime,
    ) -> JobView | None:
        """Take ownership of an active job and move it to processing.

        The claim succeeds when nobody owns the job, when ``owner_id`` already owns it,
        or when the current owner's heartbeat is older than ``lease_expired_before``.
        """

        now = to_db_datetime(utc_now())
        cutoff = to_db_datetime(lease_expired_before)
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status).in_(
                        [JobStatus.QUEUED.value, JobStatus.PROCESSING.value],
                    ),
                    or_(
                        col(GenerationJob.owner_id).is_(None),
                        col(GenerationJob.owner_id) == owner_id,
                        col(GenerationJob.heartbeat_at).is_(None),
                        col(GenerationJob.heartbeat_at) < cutoff,
                    ),
                )
                .values(
                    owner_id=owner_id,
                    heartbeat_at=now,
                    status=JobStatus.PROCESSING.value,
                    started_at=func.coalesce(col(GenerationJob.started_at), now),
                    finished_at=None,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return None
            session.commit()
        return self.get_job(job_id)

    def release_job(self, *, job_id: str, owner_id: str) -> bool:
        """Drop ownership if ``owner_id`` still holds it."""

        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.owner_id) == owner_id,
                )
                .values(owner_id=None),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def touch_job_heartbeat(self, *, job_id: str, owner_id: str) -> bool:
        """Refresh the owner's liveness timestamp."""

        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.owner_id) == owner_id,
                )
                .values(heartbeat_at=to_db_datetime(utc_now())),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def update_job_progress(self, job_id: str) -> float:
        """Recompute progress from task state; never lowers it while processing."""

        computed = recompute_job_progress(self.list_tasks(job_id=job_id))
        with Session(self.engine) as session:
            session.exec(
                sa_update(GenerationJob)
                .where(col(GenerationJob.job_id) == job_id)
                .values(
                    progress=case(
                        (
                            col(GenerationJob.status) == JobStatus.PROCESSING.value,
                            func.max(col(GenerationJob.progress), computed),
                        ),
                        else_=computed,
                    ),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
        return self.require_job(job_id).progress

    def increment_recovery_attempts(self, job_id: str) -> int:
        """Bump the automatic recovery counter and return the new value."""

        with Session(self.engine) as session:
            session.exec(
                sa_update(GenerationJob)
                .where(col(GenerationJob.job_id) == job_id)
                .values(recovery_attempts=col(GenerationJob.recovery_attempts) + 1),
            )
            session.commit()
        return self.require_job(job_id).recovery_attempts

    def clear_job(self, job_id: str) -> bool:
        """Hide a terminal job from default listings; rows are kept."""

        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status).in_(
                        [status.value for status in TERMINAL_JOB_STATUSES],
                    ),
                    col(GenerationJob.cleared_at).is_(None),
                )
                .values(cleared_at=to_db_datetime(utc_now())),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def get_task(self, task_id: str) -> TaskView | None:
        """Load one task by id."""

        with Session(self.engine) as session:
            row = session.get(GenerationTask, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        job_id: str,
        statuses: Collection[TaskStatus] | None = None,
    ) -> list[TaskView]:
        """List a job's tasks in creation order."""

        with Session(self.engine) as session:
            statement = select(GenerationTask).where(GenerationTask.job_id == job_id)
            if statuses is not None:
                statement = statement.where(
                    col(GenerationTask.status).in_([status.value for status in statuses]),
                )
            rows = session.exec(statement.order_by(col(GenerationTask.sequence).asc())).all()
            return [_to_task_view(row) for row in rows]

    def claim_task(self, task_id: str) -> TaskView | None:
        """Move a due queued task to running; ``None`` when the guard does not hold."""

        now = utc_now()
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.QUEUED.value,
                    col(GenerationTask.run_after) <= to_db_datetime(now),
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    started_at=to_db_datetime(now),
                    finished_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return None
            row = self._get_task_row(session=session, task_id=task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                job_id=row.job_id,
                event_type="claimed",
                status_from=TaskStatus.QUEUED,
                status_to=TaskStatus.RUNNING,
                details={"attempt": row.current_retry_count + 1},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def complete_task(self, *, task_id: str, result_payload: dict[str, Any]) -> bool:
        """Mark a running task as completed."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    result_json=_dump_json(result_payload),
                    failure_class=None,
                    error_message=None,
                    error_details_json=None,
                    finished_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            row = self._get_task_row(session=session, task_id=task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                job_id=row.job_id,
                event_type="succeeded",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.COMPLETED,
                details={"result_keys": sorted(result_payload)},
            )
            session.commit()
            return True

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        expected_retry_count: int,
        retry_count: int,
        run_after: datetime,
        failure_class: FailureClass,
        error_message: str,
        error_details: dict[str, Any],
    ) -> bool:
        """Requeue a running task for automatic retry with backoff."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.RUNNING.value,
                    col(GenerationTask.current_retry_count) == expected_retry_count,
                )
                .values(
                    status=TaskStatus.QUEUED.value,
                    current_retry_count=retry_count,
                    run_after=to_db_datetime(run_after),
                    failure_class=failure_class.value,
                    error_message=error_message,
                    error_details_json=_dump_json(error_details),
                    started_at=None,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            row = self._get_task_row(session=session, task_id=task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                job_id=row.job_id,
                event_type="retry_scheduled",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.QUEUED,
                details={
                    "retry_count": retry_count,
                    "run_after": to_utc_aware_datetime(run_after).isoformat(),
                    "failure_class": failure_class.value,
                    "error_message": error_message,
                },
            )
            session.commit()
            return True

    def fail_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        expected_retry_count: int,
        retry_count: int,
        failure_class: FailureClass,
        error_message: str,
        error_details: dict[str, Any],
        is_recoverable: bool,
    ) -> bool:
        """Mark a running task as failed."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.RUNNING.value,
                    col(GenerationTask.current_retry_count) == expected_retry_count,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    current_retry_count=retry_count,
                    is_recoverable=is_recoverable,
                    failure_class=failure_class.value,
                    error_message=error_message,
                    error_details_json=_dump_json(error_details),
                    finished_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            row = self._get_task_row(session=session, task_id=task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                job_id=row.job_id,
                event_type="failed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.FAILED,
                details={
                    "retry_count": retry_count,
                    "failure_class": failure_class.value,
                    "is_recoverable": is_recoverable,
                    "error_message": error_message,
                },
            )
            session.commit()
            return True

    def skip_task(self, *, task_id: str, reason: str | None = None) -> TaskView:
        """Skip a queued, running or failed task."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in {TaskStatus.QUEUED, TaskStatus.RUNNING, TaskStatus.FAILED}:
                raise InvalidTransitionError(
                    f"Task {row.task_key} cannot be skipped from status={previous.value}",
                )
            outcome = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == previous.value,
                )
                .values(
                    status=TaskStatus.SKIPPED.value,
                    finished_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                raise StateConflictError(
                    "Task state changed concurrently while skipping; "
                    f"please retry the action (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                job_id=row.job_id,
                event_type="skipped",
                status_from=previous,
                status_to=TaskStatus.SKIPPED,
                details={"reason": reason} if reason else {},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def retry_task(self, *, task_id: str, reset_budget: bool = False) -> TaskView:
        """Manual retry of a recoverable failed task."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            if row.status != TaskStatus.FAILED.value:
                raise InvalidTransitionError(
                    f"Only failed tasks can be retried, task {row.task_key} is {row.status}",
                )
            if not row.is_recoverable:
                raise InvalidTransitionError(
                    f"Task {row.task_key} failed permanently and cannot be retried; "
                    "skip it instead",
                )
            if not reset_budget and row.current_retry_count >= row.max_retry_count:
                raise InvalidTransitionError(
                    f"Task {row.task_key} exhausted its retry budget "
                    f"({row.current_retry_count}/{row.max_retry_count}); "
                    "retry with a budget reset",
                )
            previous_count = row.current_retry_count
            outcome = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.FAILED.value,
                    col(GenerationTask.current_retry_count) == previous_count,
                )
                .values(
                    status=TaskStatus.QUEUED.value,
                    current_retry_count=0 if reset_budget else previous_count,
                    run_after=now,
                    failure_class=None,
                    error_message=None,
                    error_details_json=None,
                    started_at=None,
                    finished_at=None,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                raise StateConflictError(
                    "Task state changed concurrently while retrying; "
                    f"please retry the action (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                job_id=row.job_id,
                event_type="manual_retry",
                status_from=TaskStatus.FAILED,
                status_to=TaskStatus.QUEUED,
                details={"reset_budget": reset_budget, "previous_retry_count": previous_count},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def requeue_running_tasks(
        self,
        *,
        job_id: str,
        stale_before: datetime | None = None,
        event_type: str = "orphan_requeued",
    ) -> list[str]:
        """Return running tasks to the queue without consuming retry budget."""

        return self._move_tasks(
            job_id=job_id,
            sources=(TaskStatus.RUNNING,),
            target=TaskStatus.QUEUED,
            event_type=event_type,
            stale_before=stale_before,
            details={},
        )

    def skip_open_tasks(self, *, job_id: str, reason: str) -> list[str]:
        """Skip every queued or running task of a job."""

        return self._move_tasks(
            job_id=job_id,
            sources=(TaskStatus.QUEUED, TaskStatus.RUNNING),
            target=TaskStatus.SKIPPED,
            event_type="skipped",
            stale_before=None,
            details={"reason": reason},
        )

    def set_task_status(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        expected: Collection[TaskStatus],
        target: TaskStatus,
        event_type: str = "status_changed",
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Move a task to ``target`` only while it is in one of the ``expected`` statuses."""

        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {"status": target.value, "updated_at": now}
        if target == TaskStatus.QUEUED:
            values.update(run_after=now, started_at=None, finished_at=None)
        elif target == TaskStatus.RUNNING:
            values.update(started_at=now, finished_at=None)
        else:
            values["finished_at"] = now
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in expected:
                return False
            outcome = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == previous.value,
                )
                .values(**values),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                job_id=row.job_id,
                event_type=event_type,
                status_from=previous,
                status_to=target,
                details=details or {},
            )
            session.commit()
            return True

    def add_task_event(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        job_id: str,
        event_type: str,
        status_from: TaskStatus | None = None,
        status_to: TaskStatus | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append a standalone task event."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                task_id=task_id,
                job_id=job_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details or {},
            )
            session.commit()

    def list_task_events(
        self,
        *,
        job_id: str | None = None,
        task_id: str | None = None,
    ) -> list[TaskEventView]:
        """Task audit trail in insertion order."""

        with Session(self.engine) as session:
            statement = select(GenerationTaskEvent)
            if job_id is not None:
                statement = statement.where(GenerationTaskEvent.job_id == job_id)
            if task_id is not None:
                statement = statement.where(GenerationTaskEvent.task_id == task_id)
            rows = session.exec(statement.order_by(col(GenerationTaskEvent.id).asc())).all()
            return [
                TaskEventView(
                    event_id=int(row.id or 0),
                    task_id=row.task_id,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=_load_json(row.details_json) or {},
                )
                for row in rows
            ]

    def add_action_record(self, record: ActionRecordWrite) -> ActionRecordView:
        """Append one action record."""

        with Session(self.engine) as session:
            row = GenerationJobAction(
                job_id=record.job_id,
                actor_user_id=record.actor_user_id,
                action_type=record.action_type.value,
                task_ids_json=_dump_json(list(record.task_ids)) if record.task_ids else None,
                success=record.success,
                message=record.message,
                details_json=_dump_json(record.details) if record.details else None,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_action_view(row)

    def list_action_records(self, *, job_id: str) -> list[ActionRecordView]:
        """Action log of one job in insertion order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationJobAction)
                .where(GenerationJobAction.job_id == job_id)
                .order_by(col(GenerationJobAction.id).asc()),
            ).all()
            return [_to_action_view(row) for row in rows]

    def _add_task_rows(
        self,
        *,
        session: Session,
        job_id: str,
        tasks: Sequence[TaskCreate],
        first_sequence: int,
        now: datetime,
    ) -> set[str]:
        rows: list[GenerationTask] = []
        for offset, task in enumerate(tasks):
            rows.append(
                GenerationTask(
                    task_id=str(uuid4()),
                    job_id=job_id,
                    task_key=task.task_key,
                    task_type=task.task_type,
                    group_key=task.group_key,
                    title=task.title,
                    sequence=first_sequence + offset,
                    priority=task.priority,
                    dependencies_json=_dump_json(list(task.dependencies)),
                    status=TaskStatus.QUEUED.value,
                    current_retry_count=0,
                    max_retry_count=task.max_retry_count,
                    is_recoverable=True,
                    timeout_seconds=task.timeout_seconds,
                    run_after=to_db_datetime(now),
                    input_json=_dump_json(task.input_payload),
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
        session.add_all(rows)
        session.flush()
        for row in rows:
            self._add_event(
                session=session,
                task_id=row.task_id,
                job_id=job_id,
                event_type="queued",
                status_from=None,
                status_to=TaskStatus.QUEUED,
                details={
                    "task_key": row.task_key,
                    "task_type": row.task_type,
                    "max_retry_count": row.max_retry_count,
                },
            )
        return {row.task_id for row in rows}

    def _move_tasks(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        sources: Sequence[TaskStatus],
        target: TaskStatus,
        event_type: str,
        stale_before: datetime | None,
        details: dict[str, Any],
    ) -> list[str]:
        now = to_db_datetime(utc_now())
        moved: list[str] = []
        with Session(self.engine) as session:
            statement = select(GenerationTask).where(
                GenerationTask.job_id == job_id,
                col(GenerationTask.status).in_([status.value for status in sources]),
            )
            if stale_before is not None:
                statement = statement.where(
                    col(GenerationTask.updated_at) < to_db_datetime(stale_before),
                )
            candidates = [
                (row.task_id, TaskStatus(row.status))
                for row in session.exec(statement.order_by(col(GenerationTask.sequence))).all()
            ]
            values: dict[str, Any] = {"status": target.value, "updated_at": now}
            if target == TaskStatus.QUEUED:
                values.update(run_after=now, started_at=None)
            else:
                values["finished_at"] = now
            for task_id, previous in candidates:
                outcome = session.exec(
                    sa_update(GenerationTask)
                    .where(
                        col(GenerationTask.task_id) == task_id,
                        col(GenerationTask.status) == previous.value,
                    )
                    .values(**values),
                )
                if outcome.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    job_id=job_id,
                    event_type=event_type,
                    status_from=previous,
                    status_to=target,
                    details=details,
                )
                moved.append(task_id)
            session.commit()
        return moved

    def _get_job_row(self, *, session: Session, job_id: str) -> GenerationJob:
        row = session.get(GenerationJob, job_id)
        if row is None:
            raise JobNotFoundError(job_id)
        return row

    def _get_task_row(self, *, session: Session, task_id: str) -> GenerationTask:
        row = session.get(GenerationTask, task_id)
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        job_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, Any],
    ) -> None:
        session.add(
            GenerationTaskEvent(
                task_id=task_id,
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=_dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def validate_task_graph(
    tasks: Sequence[TaskCreate],
    *,
    existing_keys: Collection[str] = (),
) -> None:
    """Reject duplicate keys, unknown dependencies and dependency cycles."""

    known = set(existing_keys)
    new_keys: set[str] = set()
    for task in tasks:
        if task.task_key in known or task.task_key in new_keys:
            raise ValueError(f"Duplicate task key: {task.task_key}")
        new_keys.add(task.task_key)
    known |= new_keys
    for task in tasks:
        missing = [key for key in task.dependencies if key not in known]
        if missing:
            raise ValueError(f"Task {task.task_key} depends on unknown tasks: {missing}")

    pending = {task.task_key: set(task.dependencies) & new_keys for task in tasks}
    while pending:
        ready = [key for key, deps in pending.items() if not deps]
        if not ready:
            raise ValueError(f"Task dependency cycle among: {sorted(pending)}")
        for key in ready:
            del pending[key]
        for deps in pending.values():
            deps.difference_update(ready)


def _dump_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json(value: str | None) -> Any:
    if not value:
        return None
    return json.loads(value)


def _optional_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: GenerationJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        target_id=row.target_id,
        title=row.title,
        status=JobStatus(row.status),
        progress=float(row.progress),
        request=_load_json(row.request_json) or {},
        result=_load_json(row.result_json),
        error_message=row.error_message,
        owner_id=row.owner_id,
        heartbeat_at=_optional_datetime(row.heartbeat_at),
        recovery_attempts=row.recovery_attempts,
        cleared_at=_optional_datetime(row.cleared_at),
        started_at=_optional_datetime(row.started_at),
        finished_at=_optional_datetime(row.finished_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_task_view(row: GenerationTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        job_id=row.job_id,
        task_key=row.task_key,
        task_type=row.task_type,
        group_key=row.group_key,
        title=row.title,
        sequence=row.sequence,
        priority=row.priority,
        dependencies=tuple(_load_json(row.dependencies_json) or ()),
        status=TaskStatus(row.status),
        current_retry_count=row.current_retry_count,
        max_retry_count=row.max_retry_count,
        is_recoverable=bool(row.is_recoverable),
        timeout_seconds=row.timeout_seconds,
        run_after=to_utc_aware_datetime(row.run_after),
        input_payload=_load_json(row.input_json) or {},
        result_payload=_load_json(row.result_json),
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_message=row.error_message,
        error_details=_load_json(row.error_details_json) or {},
        started_at=_optional_datetime(row.started_at),
        finished_at=_optional_datetime(row.finished_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_action_view(row: GenerationJobAction) -> ActionRecordView:
    return ActionRecordView(
        action_id=int(row.id or 0),
        job_id=row.job_id,
        actor_user_id=row.actor_user_id,
        action_type=ActionType(row.action_type),
        task_ids=tuple(_load_json(row.task_ids_json) or ()),
        success=bool(row.success),
        message=row.message,
        details=_load_json(row.details_json) or {},
        created_at=to_utc_aware_datetime(row.created_at),
    )
