"""Domain models for generation jobs, tasks and recovery actions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Aggregate job lifecycle states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TaskType(str, Enum):
    """Generation step kinds produced by outline decomposition."""

    LESSON_SECTION = "lesson_section"
    LESSON_ASSESSMENT = "lesson_assessment"
    LESSON_MIND_MAP = "lesson_mind_map"
    LESSON_BRAINBYTES = "lesson_brainbytes"
    PATH_QUIZ = "path_quiz"
    CLASS_EXAM = "class_exam"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    BACKEND_TRANSIENT = "backend_transient"
    CONNECTION = "connection"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    INVALID_INPUT = "invalid_input"
    CONTENT_POLICY = "content_policy"
    INSUFFICIENT_CONTENT = "insufficient_content"
    NOT_FOUND = "not_found"
    DATA_CONFLICT = "data_conflict"
    ACCESS_OR_AUTH = "access_or_auth"
    BILLING_OR_QUOTA = "billing_or_quota"
    UNKNOWN = "unknown"


class ActionType(str, Enum):
    """User/operator recovery actions recorded in the action log."""

    RETRY_TASK = "retry_task"
    SKIP_TASK = "skip_task"
    PAUSE_JOB = "pause_job"
    RESUME_JOB = "resume_job"
    CANCEL_JOB = "cancel_job"
    EXPORT_REPORT = "export_report"


class HealthState(str, Enum):
    """Escalating liveness classification of a job."""

    HEALTHY = "healthy"
    STALLED = "stalled"
    STUCK = "stuck"
    ABANDONED = "abandoned"


class RecommendedAction(str, Enum):
    """Next step suggested by the health monitor."""

    NONE = "none"
    WAIT = "wait"
    RESUME = "resume"
    RETRY = "retry"
    RETRY_TASK = "retry_task"
    CANCEL_JOB = "cancel_job"
    DELETE_AND_RETRY = "delete_and_retry"
    MANUAL_INTERVENTION = "manual_intervention"


class AttemptOutcome(str, Enum):
    """Result of one task runner attempt."""

    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    CONFLICT = "conflict"


ACTIVE_JOB_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.PAUSED})
TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED})
TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED, TaskStatus.FAILED})


@dataclass(slots=True)
class TaskCreate:
    """Input payload for one task of a new job."""

    task_key: str
    task_type: str
    title: str
    group_key: str | None = None
    dependencies: tuple[str, ...] = ()
    priority: int = 100
    max_retry_count: int = 3
    timeout_seconds: int = 120
    input_payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobCreate:
    """Input payload for persisting a job."""

    user_id: str
    target_id: str
    title: str
    request: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for services, CLI and monitors."""

    job_id: str
    user_id: str
    target_id: str
    title: str
    status: JobStatus
    progress: float
    request: dict[str, Any]
    result: dict[str, Any] | None
    error_message: str | None
    owner_id: str | None
    heartbeat_at: datetime | None
    recovery_attempts: int
    cleared_at: datetime | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass(slots=True)
class TaskView:
    """Readable task view for runner, orchestrator and reports."""

    task_id: str
    job_id: str
    task_key: str
    task_type: str
    group_key: str | None
    title: str
    sequence: int
    priority: int
    dependencies: tuple[str, ...]
    status: TaskStatus
    current_retry_count: int
    max_retry_count: int
    is_recoverable: bool
    timeout_seconds: int
    run_after: datetime
    input_payload: dict[str, Any]
    result_payload: dict[str, Any] | None
    failure_class: FailureClass | None
    error_message: str | None
    error_details: dict[str, Any]
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def retries_exhausted(self) -> bool:
        return self.current_retry_count >= self.max_retry_count

    @property
    def is_finished(self) -> bool:
        """Whether the task counts towards job progress."""

        if self.status in {TaskStatus.COMPLETED, TaskStatus.SKIPPED}:
            return True
        if self.status == TaskStatus.FAILED:
            return not self.is_recoverable or self.retries_exhausted
        return False

    @property
    def can_retry(self) -> bool:
        return self.status == TaskStatus.FAILED and self.is_recoverable


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    job_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ActionRecordWrite:
    """Append-only action record payload."""

    job_id: str
    actor_user_id: str
    action_type: ActionType
    success: bool
    message: str
    task_ids: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ActionRecordView:
    """Stored action record."""

    action_id: int
    job_id: str
    actor_user_id: str
    action_type: ActionType
    task_ids: tuple[str, ...]
    success: bool
    message: str
    details: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class FailedTaskSummary:
    """Failed task entry surfaced to polling clients."""

    task_id: str
    task_key: str
    title: str
    task_type: str
    error_message: str | None
    failure_class: FailureClass | None
    is_recoverable: bool
    current_retry_count: int
    max_retry_count: int
    user_message: str | None = None


@dataclass(slots=True)
class ProgressSnapshot:
    """Polling view of a job's progress."""

    job_id: str
    status: JobStatus
    progress: float
    phase: str
    status_message: str
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    skipped_tasks: int
    running_tasks: int
    queued_tasks: int
    failed: list[FailedTaskSummary] = field(default_factory=list)
    error_message: str | None = None


@dataclass(slots=True)
class JobDetails:
    """Job with its tasks and current progress snapshot."""

    job: JobView
    tasks: list[TaskView]
    progress: ProgressSnapshot


@dataclass(slots=True)
class ActionResult:
    """Outcome of one recovery controller action."""

    job_id: str
    action_type: ActionType
    success: bool
    message: str
    job_status: JobStatus
    action_id: int | None = None
    succeeded_task_ids: list[str] = field(default_factory=list)
    failed_tasks: dict[str, str] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class HealthStatus:
    """Liveness classification of one job."""

    job_id: str
    state: HealthState
    job_status: JobStatus
    idle_seconds: float
    last_activity_at: datetime
    progress: float
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    running_tasks: int
    queued_tasks: int
    recommended_action: RecommendedAction
    user_message: str
    can_auto_recover: bool
    recovery_attempts: int
    max_recovery_attempts: int

    @property
    def is_healthy(self) -> bool:
        return self.state == HealthState.HEALTHY


@dataclass(slots=True)
class RecoveryResult:
    """Outcome of one automatic recovery attempt."""

    job_id: str
    success: bool
    action: RecommendedAction
    message: str
    requeued_task_ids: list[str] = field(default_factory=list)
    final_status: JobStatus | None = None


@dataclass(slots=True)
class RecoverySuggestion:
    """Ranked next action for a job with failures."""

    action: str
    label: str
    description: str
    task_ids: list[str] = field(default_factory=list)
    priority: int = 100


@dataclass(slots=True)
class SmartRecoveryResult:
    """Outcome of retry-or-skip recovery over all failed tasks."""

    job_id: str
    success: bool
    message: str
    retried_task_ids: list[str] = field(default_factory=list)
    skipped_task_ids: list[str] = field(default_factory=list)
    manual_task_ids: list[str] = field(default_factory=list)
    job_status: JobStatus | None = None
