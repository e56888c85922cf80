"""Job liveness classification and automatic recovery."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

from coursegen.config import HealthSettings
from coursegen.orchestrator.dispatcher import GenerationOrchestrator
from coursegen.orchestrator.errors import InvalidTransitionError, StateConflictError
from coursegen.orchestrator.models import (
    HealthState,
    HealthStatus,
    JobStatus,
    JobView,
    RecommendedAction,
    RecoveryResult,
    TaskStatus,
    TaskView,
)
from coursegen.orchestrator.progress import TaskCounts
from coursegen.orchestrator.repository import GenerationRepository
from coursegen.storage.common import utc_now

logger = logging.getLogger(__name__)

_USER_MESSAGES: dict[RecommendedAction, str] = {
    RecommendedAction.NONE: "Generation is not running.",
    RecommendedAction.WAIT: "Generation is in progress. Please wait...",
    RecommendedAction.RESUME: "Generation is paused. Resume it to continue.",
    RecommendedAction.RETRY: "Generation is taking longer than expected. We can try to resume it.",
    RecommendedAction.RETRY_TASK: (
        "Generation appears to be stuck. We can try to resume it automatically."
    ),
    RecommendedAction.CANCEL_JOB: (
        "Generation appears to be stuck with no work left. Cancel it or finalize it."
    ),
    RecommendedAction.DELETE_AND_RETRY: (
        "Generation has been inactive for too long. Restart it from the saved task list."
    ),
    RecommendedAction.MANUAL_INTERVENTION: (
        "Generation requires manual intervention. Please contact support."
    ),
}


def classify_job_health(  # noqa: PLR0911
    *,
    job: JobView,
    tasks: Sequence[TaskView],
    now: datetime,
    settings: HealthSettings,
    owner_alive: bool | None = None,
) -> HealthStatus:
    """Classify a job as healthy, stalled, stuck or abandoned.

    ``owner_alive`` overrides the heartbeat-based liveness check when the caller
    knows whether the owning execution context is still dispatching.
    """

    counts = TaskCounts.from_tasks(tasks)
    last_activity = max([job.updated_at, *(task.updated_at for task in tasks)])
    idle_seconds = max(0.0, (now - last_activity).total_seconds())

    def _status(
        state: HealthState,
        action: RecommendedAction,
        *,
        can_auto_recover: bool,
    ) -> HealthStatus:
        capped = (
            state != HealthState.HEALTHY
            and job.recovery_attempts >= settings.max_recovery_attempts
        )
        if capped:
            action = RecommendedAction.MANUAL_INTERVENTION
            can_auto_recover = False
        return HealthStatus(
            job_id=job.job_id,
            state=state,
            job_status=job.status,
            idle_seconds=round(idle_seconds, 3),
            last_activity_at=last_activity,
            progress=job.progress,
            total_tasks=counts.total,
            completed_tasks=counts.completed,
            failed_tasks=counts.failed,
            running_tasks=counts.running,
            queued_tasks=counts.queued,
            recommended_action=action,
            user_message=_USER_MESSAGES[action],
            can_auto_recover=can_auto_recover,
            recovery_attempts=job.recovery_attempts,
            max_recovery_attempts=settings.max_recovery_attempts,
        )

    if job.is_terminal:
        return _status(HealthState.HEALTHY, RecommendedAction.NONE, can_auto_recover=False)
    if job.status == JobStatus.PAUSED:
        return _status(HealthState.HEALTHY, RecommendedAction.RESUME, can_auto_recover=False)
    if idle_seconds < settings.stall_threshold_seconds:
        return _status(HealthState.HEALTHY, RecommendedAction.WAIT, can_auto_recover=False)

    work_remains = counts.queued > 0 or counts.running > 0 or any(
        task.can_retry and not task.retries_exhausted for task in tasks
    )
    if owner_alive is None:
        owner_alive = job.owner_id is not None and (
            job.heartbeat_at is not None
            and (now - job.heartbeat_at).total_seconds() < settings.abandon_after_seconds
        )
    if not owner_alive:
        return _status(
            HealthState.ABANDONED,
            RecommendedAction.DELETE_AND_RETRY,
            can_auto_recover=True,
        )

    fresh_running = any(
        task.status == TaskStatus.RUNNING
        and (now - task.updated_at).total_seconds() < settings.stall_threshold_seconds
        for task in tasks
    )
    stale_running = any(
        task.status == TaskStatus.RUNNING
        and (now - task.updated_at).total_seconds() >= settings.stuck_threshold_seconds
        for task in tasks
    )
    if (idle_seconds >= settings.stuck_threshold_seconds and not fresh_running) or stale_running:
        return _status(
            HealthState.STUCK,
            RecommendedAction.RETRY_TASK if work_remains else RecommendedAction.CANCEL_JOB,
            can_auto_recover=True,
        )
    return _status(
        HealthState.STALLED,
        RecommendedAction.RETRY if work_remains else RecommendedAction.WAIT,
        can_auto_recover=True,
    )


class HealthMonitor:
    """Periodically inspects active jobs and re-engages the orchestrator when needed."""

    def __init__(
        self,
        *,
        repository: GenerationRepository,
        orchestrator: GenerationOrchestrator,
        settings: HealthSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.orchestrator = orchestrator
        self.settings = settings or HealthSettings()
        self._clock = clock

    def check_job(self, job_id: str) -> HealthStatus:
        """Classify one job from persisted state."""

        job = self.repository.require_job(job_id)
        tasks = self.repository.list_tasks(job_id=job_id)
        return classify_job_health(
            job=job,
            tasks=tasks,
            now=self._clock(),
            settings=self.settings,
            owner_alive=self._local_owner_alive(job),
        )

    def attempt_recovery(self, job_id: str) -> RecoveryResult:
        """Recover a stalled, stuck or abandoned job; healthy jobs are left untouched."""

        status = self.check_job(job_id)
        if status.is_healthy:
            return RecoveryResult(
                job_id=job_id,
                success=True,
                action=RecommendedAction.NONE,
                message=f"No recovery needed ({status.job_status.value}): {status.user_message}",
                final_status=status.job_status,
            )
        if not status.can_auto_recover:
            logger.warning(
                "Job %s needs manual intervention after %d recovery attempt(s)",
                job_id,
                status.recovery_attempts,
            )
            return RecoveryResult(
                job_id=job_id,
                success=False,
                action=RecommendedAction.MANUAL_INTERVENTION,
                message=(
                    f"Recovery limit reached ({status.recovery_attempts}/"
                    f"{status.max_recovery_attempts}); manual intervention required"
                ),
                final_status=status.job_status,
            )

        attempt = self.repository.increment_recovery_attempts(job_id)
        requeued = self._requeue_recoverable(job_id, state=status.state)
        logger.info(
            "Recovering job %s (%s, attempt %d/%d): %d task(s) requeued",
            job_id,
            status.state.value,
            attempt,
            self.settings.max_recovery_attempts,
            len(requeued),
        )
        summary = self.orchestrator.engage(job_id)
        job = self.repository.require_job(job_id)
        if summary is not None and summary.halted_reason == "owned_by_another_worker":
            return RecoveryResult(
                job_id=job_id,
                success=False,
                action=RecommendedAction.WAIT,
                message=f"Job is still owned by {job.owner_id}; waiting for its lease to expire",
                requeued_task_ids=requeued,
                final_status=job.status,
            )
        return RecoveryResult(
            job_id=job_id,
            success=True,
            action=status.recommended_action,
            message=(
                f"Recovery attempt {attempt}/{self.settings.max_recovery_attempts}: "
                f"re-engaged dispatch of {status.state.value} job "
                f"({len(requeued)} task(s) requeued)"
            ),
            requeued_task_ids=requeued,
            final_status=job.status,
        )

    def scan(self, user_id: str | None = None) -> list[HealthStatus]:
        """Check every active job."""

        jobs = self.repository.list_active_jobs(user_id=user_id)
        return [self.check_job(job.job_id) for job in jobs]

    def watch(
        self,
        *,
        stop_event: threading.Event | None = None,
        interval_seconds: float | None = None,
        auto_recover: bool | None = None,
        max_cycles: int | None = None,
        on_status: Callable[[HealthStatus], None] | None = None,
    ) -> int:
        """Scan on a fixed interval until stopped; returns the number of completed cycles."""

        stop_event = stop_event or threading.Event()
        interval = (
            self.settings.watch_interval_seconds if interval_seconds is None else interval_seconds
        )
        recover = self.settings.auto_recover if auto_recover is None else auto_recover
        cycles = 0
        while not stop_event.is_set():
            for status in self.scan():
                if on_status is not None:
                    on_status(status)
                if recover and not status.is_healthy and status.can_auto_recover:
                    result = self.attempt_recovery(status.job_id)
                    logger.info("Auto-recovery of job %s: %s", status.job_id, result.message)
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            stop_event.wait(interval)
        return cycles

    def _requeue_recoverable(self, job_id: str, *, state: HealthState) -> list[str]:
        requeued: list[str] = []
        if state in {HealthState.STUCK, HealthState.ABANDONED}:
            stale_before = self._clock() - timedelta(seconds=self.settings.stuck_threshold_seconds)
            requeued.extend(
                self.repository.requeue_running_tasks(
                    job_id=job_id,
                    stale_before=stale_before,
                    event_type="stale_requeued",
                ),
            )
        for task in self.repository.list_tasks(job_id=job_id, statuses={TaskStatus.FAILED}):
            if not task.can_retry or task.retries_exhausted:
                continue
            try:
                self.repository.retry_task(task_id=task.task_id)
            except (InvalidTransitionError, StateConflictError) as error:
                logger.info("Job %s: task %s not requeued: %s", job_id, task.task_key, error)
                continue
            requeued.append(task.task_id)
        return requeued

    def _local_owner_alive(self, job: JobView) -> bool | None:
        if job.owner_id is not None and job.owner_id == self.orchestrator.owner_id:
            return self.orchestrator.is_dispatching(job.job_id)
        return None
