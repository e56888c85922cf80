"""User/operator recovery actions over jobs and their tasks."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from coursegen.orchestrator.dispatcher import GenerationOrchestrator
from coursegen.orchestrator.errors import (
    InvalidTransitionError,
    JobAccessDeniedError,
    StateConflictError,
    TaskNotFoundError,
)
from coursegen.orchestrator.failure_classifier import CRITICAL_FAILURE_CLASSES
from coursegen.orchestrator.models import (
    ACTIVE_JOB_STATUSES,
    ActionRecordView,
    ActionRecordWrite,
    ActionResult,
    ActionType,
    JobStatus,
    JobView,
    RecoverySuggestion,
    SmartRecoveryResult,
    TaskStatus,
    TaskView,
)
from coursegen.orchestrator.reporting import REPORT_FORMATS, build_job_report, render_report_csv
from coursegen.orchestrator.repository import GenerationRepository

logger = logging.getLogger(__name__)

_TASK_ACTIONS = frozenset({ActionType.RETRY_TASK, ActionType.SKIP_TASK})
_CANCEL_FAILED_SHARE = 0.5


@dataclass(slots=True)
class _ActionOutcome:
    success: bool
    message: str
    succeeded_task_ids: list[str] = field(default_factory=list)
    failed_tasks: dict[str, str] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)
    record_details: dict[str, Any] | None = None
    engage: bool = False


class RecoveryController:
    """Applies recovery actions, records every one of them, and re-engages dispatch."""

    def __init__(
        self,
        *,
        repository: GenerationRepository,
        orchestrator: GenerationOrchestrator,
    ) -> None:
        self.repository = repository
        self.orchestrator = orchestrator

    def post_action(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        actor_user_id: str,
        action_type: ActionType | str,
        task_ids: Sequence[str] = (),
        reset_budget: bool = False,
        report_format: str = "json",
    ) -> ActionResult:
        """Apply one action to a job owned by ``actor_user_id``.

        Rejected actions are recorded before ``JobAccessDeniedError`` or
        ``InvalidTransitionError`` is raised. Batch task actions never raise for a
        single target; per-target rejections are returned in ``failed_tasks``.
        """

        action = ActionType(action_type)
        job = self.repository.require_job(job_id)
        targets = tuple(dict.fromkeys(task_ids))
        if job.user_id != actor_user_id:
            self._record(
                job_id=job_id,
                actor_user_id=actor_user_id,
                action=action,
                task_ids=targets,
                outcome=_ActionOutcome(
                    success=False,
                    message=f"Access denied for user {actor_user_id}",
                    details={"reason": "access_denied"},
                ),
            )
            raise JobAccessDeniedError(job_id, actor_user_id)

        handlers: dict[ActionType, Callable[[], _ActionOutcome]] = {
            ActionType.RETRY_TASK: lambda: self._retry_tasks(
                job,
                targets,
                reset_budget=reset_budget,
            ),
            ActionType.SKIP_TASK: lambda: self._skip_tasks(job, targets),
            ActionType.PAUSE_JOB: lambda: self._pause(job),
            ActionType.RESUME_JOB: lambda: self._resume(job),
            ActionType.CANCEL_JOB: lambda: self._cancel(job),
            ActionType.EXPORT_REPORT: lambda: self._export(job, report_format=report_format),
        }
        try:
            if action in _TASK_ACTIONS and not targets:
                raise InvalidTransitionError(f"{action.value} requires at least one task id")
            outcome = handlers[action]()
        except InvalidTransitionError as error:
            self._record(
                job_id=job_id,
                actor_user_id=actor_user_id,
                action=action,
                task_ids=targets,
                outcome=_ActionOutcome(success=False, message=str(error)),
            )
            logger.info("Rejected %s on job %s: %s", action.value, job_id, error)
            raise

        record = self._record(
            job_id=job_id,
            actor_user_id=actor_user_id,
            action=action,
            task_ids=targets,
            outcome=outcome,
        )
        logger.info(
            "Action %s on job %s by %s: %s",
            action.value,
            job_id,
            actor_user_id,
            outcome.message,
        )
        if outcome.engage:
            self.orchestrator.engage(job_id)
        return ActionResult(
            job_id=job_id,
            action_type=action,
            success=outcome.success,
            message=outcome.message,
            job_status=self.repository.require_job(job_id).status,
            action_id=record.action_id,
            succeeded_task_ids=outcome.succeeded_task_ids,
            failed_tasks=outcome.failed_tasks,
            details=outcome.details,
        )

    def smart_recover(self, *, job_id: str, actor_user_id: str) -> SmartRecoveryResult:
        """Retry what can be retried, skip what is safe to skip, leave the rest to a human."""

        job = self.repository.require_job(job_id)
        if job.user_id != actor_user_id:
            raise JobAccessDeniedError(job_id, actor_user_id)
        failed = self.repository.list_tasks(job_id=job_id, statuses={TaskStatus.FAILED})
        if not failed:
            return SmartRecoveryResult(
                job_id=job_id,
                success=True,
                message="No failed tasks to recover",
                job_status=job.status,
            )

        to_retry = [
            task.task_id for task in failed if task.can_retry and not task.retries_exhausted
        ]
        manual = [
            task.task_id
            for task in failed
            if task.task_id not in to_retry and task.failure_class in CRITICAL_FAILURE_CLASSES
        ]
        to_skip = [
            task.task_id
            for task in failed
            if task.task_id not in to_retry and task.task_id not in manual
        ]

        skipped: list[str] = []
        retried: list[str] = []
        rejected = 0
        if to_skip:
            result = self.post_action(
                job_id=job_id,
                actor_user_id=actor_user_id,
                action_type=ActionType.SKIP_TASK,
                task_ids=to_skip,
            )
            skipped = result.succeeded_task_ids
            rejected += len(result.failed_tasks)
        if to_retry:
            result = self.post_action(
                job_id=job_id,
                actor_user_id=actor_user_id,
                action_type=ActionType.RETRY_TASK,
                task_ids=to_retry,
            )
            retried = result.succeeded_task_ids
            rejected += len(result.failed_tasks)

        message = f"Recovered: {len(retried)} retried, {len(skipped)} skipped"
        if manual:
            message += f", {len(manual)} require manual attention"
        if rejected:
            message += f", {rejected} could not be changed"
        return SmartRecoveryResult(
            job_id=job_id,
            success=not manual and not rejected,
            message=message,
            retried_task_ids=retried,
            skipped_task_ids=skipped,
            manual_task_ids=manual,
            job_status=self.repository.require_job(job_id).status,
        )

    def recovery_suggestions(self, job_id: str) -> list[RecoverySuggestion]:
        """Ranked next actions for a job, most useful first."""

        job = self.repository.require_job(job_id)
        tasks = self.repository.list_tasks(job_id=job_id)
        failed = [task for task in tasks if task.status == TaskStatus.FAILED]
        retryable = [task for task in failed if task.can_retry]
        permanent = [task for task in failed if not task.can_retry]
        suggestions: list[RecoverySuggestion] = []

        if retryable:
            exhausted = sum(1 for task in retryable if task.retries_exhausted)
            description = f"Retry {len(retryable)} task(s) that failed with a recoverable error"
            if exhausted:
                description += f"; {exhausted} need a retry budget reset"
            suggestions.append(
                RecoverySuggestion(
                    action=ActionType.RETRY_TASK.value,
                    label="Retry failed tasks",
                    description=description,
                    task_ids=[task.task_id for task in retryable],
                    priority=10,
                ),
            )
        if permanent:
            suggestions.append(
                RecoverySuggestion(
                    action=ActionType.SKIP_TASK.value,
                    label="Skip failed tasks",
                    description=(
                        f"Skip {len(permanent)} task(s) that cannot be retried and continue "
                        "without that content"
                    ),
                    task_ids=[task.task_id for task in permanent],
                    priority=20,
                ),
            )
        if job.status == JobStatus.PAUSED:
            suggestions.append(
                RecoverySuggestion(
                    action=ActionType.RESUME_JOB.value,
                    label="Resume generation",
                    description="Continue generating the remaining content",
                    priority=5,
                ),
            )
        if job.status == JobStatus.PROCESSING and failed:
            suggestions.append(
                RecoverySuggestion(
                    action=ActionType.PAUSE_JOB.value,
                    label="Pause generation",
                    description="Pause to review failed tasks before more content is generated",
                    priority=30,
                ),
            )
        mostly_failed = bool(tasks) and len(failed) > len(tasks) * _CANCEL_FAILED_SHARE
        if job.status in ACTIVE_JOB_STATUSES and mostly_failed:
            suggestions.append(
                RecoverySuggestion(
                    action=ActionType.CANCEL_JOB.value,
                    label="Cancel generation",
                    description="Most tasks failed; cancel and start over with a revised outline",
                    priority=40,
                ),
            )
        suggestions.sort(key=lambda suggestion: suggestion.priority)
        return suggestions

    def _retry_tasks(
        self,
        job: JobView,
        task_ids: Sequence[str],
        *,
        reset_budget: bool,
    ) -> _ActionOutcome:
        if job.status == JobStatus.CANCELED:
            raise InvalidTransitionError(
                f"Job {job.job_id} is canceled; its tasks cannot be retried",
            )
        outcome = self._apply_per_task(
            job,
            task_ids,
            lambda task_id: self.repository.retry_task(task_id=task_id, reset_budget=reset_budget),
        )
        if outcome.succeeded_task_ids and job.status in {JobStatus.FAILED, JobStatus.COMPLETED}:
            self.repository.update_job_progress(job.job_id)
            if self.repository.transition_job(
                job_id=job.job_id,
                expected={JobStatus.FAILED, JobStatus.COMPLETED},
                target=JobStatus.PROCESSING,
            ):
                logger.info("Job %s reopened for retry", job.job_id)
        else:
            self.repository.update_job_progress(job.job_id)
        current = self.repository.require_job(job.job_id)
        outcome.engage = bool(outcome.succeeded_task_ids) and current.status in {
            JobStatus.QUEUED,
            JobStatus.PROCESSING,
        }
        outcome.message = _batch_message("Retried", outcome)
        outcome.details["reset_budget"] = reset_budget
        return outcome

    def _skip_tasks(self, job: JobView, task_ids: Sequence[str]) -> _ActionOutcome:
        outcome = self._apply_per_task(
            job,
            task_ids,
            lambda task_id: self.repository.skip_task(task_id=task_id, reason="skipped_by_user"),
        )
        if outcome.succeeded_task_ids:
            self.repository.update_job_progress(job.job_id)
            self.orchestrator.reconcile_job(job.job_id)
        outcome.message = _batch_message("Skipped", outcome)
        return outcome

    def _pause(self, job: JobView) -> _ActionOutcome:
        if not self.repository.transition_job(
            job_id=job.job_id,
            expected={JobStatus.PROCESSING},
            target=JobStatus.PAUSED,
        ):
            raise InvalidTransitionError(
                _job_transition_error(self.repository, job.job_id, "paused"),
            )
        return _ActionOutcome(success=True, message="Generation paused")

    def _resume(self, job: JobView) -> _ActionOutcome:
        if not self.repository.transition_job(
            job_id=job.job_id,
            expected={JobStatus.PAUSED},
            target=JobStatus.PROCESSING,
        ):
            raise InvalidTransitionError(
                _job_transition_error(self.repository, job.job_id, "resumed"),
            )
        return _ActionOutcome(success=True, message="Generation resumed", engage=True)

    def _cancel(self, job: JobView) -> _ActionOutcome:
        if not self.repository.transition_job(
            job_id=job.job_id,
            expected=ACTIVE_JOB_STATUSES,
            target=JobStatus.CANCELED,
            error_message="Canceled by user",
        ):
            raise InvalidTransitionError(
                _job_transition_error(self.repository, job.job_id, "canceled"),
            )
        skipped = self.repository.skip_open_tasks(job_id=job.job_id, reason="job_canceled")
        return _ActionOutcome(
            success=True,
            message=f"Generation canceled ({len(skipped)} open task(s) skipped)",
            details={"skipped_task_ids": skipped},
        )

    def _export(self, job: JobView, *, report_format: str) -> _ActionOutcome:
        if report_format not in REPORT_FORMATS:
            raise InvalidTransitionError(
                f"Unsupported report format {report_format!r}; "
                f"expected one of {', '.join(REPORT_FORMATS)}",
            )
        report = build_job_report(
            job=job,
            tasks=self.repository.list_tasks(job_id=job.job_id),
            events=self.repository.list_task_events(job_id=job.job_id),
            actions=self.repository.list_action_records(job_id=job.job_id),
        )
        details: dict[str, Any] = {"format": report_format, "report": report}
        if report_format == "csv":
            details["content"] = render_report_csv(report)
        return _ActionOutcome(
            success=True,
            message=f"Report exported ({report_format})",
            details=details,
            record_details={
                "format": report_format,
                "success_rate": report["summary"]["success_rate"],
                "task_counts": report["summary"]["task_counts"],
            },
        )

    def _apply_per_task(
        self,
        job: JobView,
        task_ids: Sequence[str],
        apply: Callable[[str], TaskView],
    ) -> _ActionOutcome:
        outcome = _ActionOutcome(success=True, message="")
        for task_id in task_ids:
            task = self.repository.get_task(task_id)
            if task is None or task.job_id != job.job_id:
                outcome.failed_tasks[task_id] = str(TaskNotFoundError(task_id))
                continue
            try:
                apply(task_id)
            except (InvalidTransitionError, StateConflictError, TaskNotFoundError) as error:
                outcome.failed_tasks[task_id] = str(error)
                continue
            outcome.succeeded_task_ids.append(task_id)
        outcome.success = not outcome.failed_tasks
        return outcome

    def _record(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        actor_user_id: str,
        action: ActionType,
        task_ids: Sequence[str],
        outcome: _ActionOutcome,
    ) -> ActionRecordView:
        details = (
            dict(outcome.record_details)
            if outcome.record_details is not None
            else dict(outcome.details)
        )
        if outcome.succeeded_task_ids:
            details["succeeded_task_ids"] = list(outcome.succeeded_task_ids)
        if outcome.failed_tasks:
            details["failed_tasks"] = dict(outcome.failed_tasks)
        return self.repository.add_action_record(
            ActionRecordWrite(
                job_id=job_id,
                actor_user_id=actor_user_id,
                action_type=action,
                success=outcome.success,
                message=outcome.message,
                task_ids=tuple(task_ids),
                details=details,
            ),
        )


def _batch_message(verb: str, outcome: _ActionOutcome) -> str:
    message = f"{verb} {len(outcome.succeeded_task_ids)} task(s)"
    if outcome.failed_tasks:
        message += f", {len(outcome.failed_tasks)} rejected"
    return message


def _job_transition_error(repository: GenerationRepository, job_id: str, verb: str) -> str:
    current = repository.require_job(job_id)
    return f"Job {job_id} cannot be {verb} from status={current.status.value}"
