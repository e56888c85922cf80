"""Controllers for job and monitor CLI commands."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path

from coursegen.config import Settings
from coursegen.orchestrator.backend.echo import EchoStepExecutor, parse_failure_script
from coursegen.orchestrator.dispatcher import DispatchSummary
from coursegen.orchestrator.models import (
    ActionResult,
    ActionType,
    HealthStatus,
    JobDetails,
    JobStatus,
    TaskStatus,
)
from coursegen.orchestrator.repository import GenerationRepository
from coursegen.orchestrator.services import GenerationService


@dataclass(slots=True)
class JobCreateCommand:
    """CLI input for job creation from an outline file."""

    db_path: Path | None
    request_path: Path
    user_id: str | None
    run: bool
    failures: tuple[str, ...] = ()


@dataclass(slots=True)
class JobRunCommand:
    """CLI input for inline job dispatch."""

    db_path: Path | None
    job_id: str
    failures: tuple[str, ...] = ()


@dataclass(slots=True)
class JobShowCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str
    show_events: bool = False
    output_format: str = "table"


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    user_id: str | None
    active_only: bool
    include_cleared: bool
    limit: int


@dataclass(slots=True)
class JobActionCommand:
    """CLI input for a recovery action."""

    db_path: Path | None
    job_id: str
    action: str
    tasks: tuple[str, ...]
    user_id: str | None
    reset_budget: bool = False
    failures: tuple[str, ...] = ()


@dataclass(slots=True)
class JobHealthCommand:
    """CLI input for health checks of one or all active jobs."""

    db_path: Path | None
    job_id: str | None
    output_format: str = "table"


@dataclass(slots=True)
class JobRecoverCommand:
    """CLI input for automatic or smart recovery."""

    db_path: Path | None
    job_id: str
    user_id: str | None
    smart: bool
    failures: tuple[str, ...] = ()


@dataclass(slots=True)
class JobReportCommand:
    """CLI input for report export."""

    db_path: Path | None
    job_id: str
    user_id: str | None
    output_format: str
    output_path: Path | None


@dataclass(slots=True)
class JobClearCommand:
    """CLI input for hiding a finished job."""

    db_path: Path | None
    job_id: str
    user_id: str | None


@dataclass(slots=True)
class MonitorWatchCommand:
    """CLI input for the periodic health monitor."""

    db_path: Path | None
    interval_seconds: float | None
    auto_recover: bool | None
    max_cycles: int | None
    failures: tuple[str, ...] = ()


class GenerationCliController:
    """Coordinates job creation, dispatch, inspection and recovery CLI operations."""

    def create_job(self, command: JobCreateCommand) -> list[str]:
        data = json.loads(command.request_path.read_text("utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{command.request_path} must contain a JSON object.")
        settings = _settings(command.db_path)
        if command.user_id:
            data["user_id"] = command.user_id
        with _service(settings, failures=command.failures) as service:
            job_id = service.create_job(data)
            details = service.get_job(job_id)
            lines = [
                f"Job created: job_id={job_id} target={details.job.target_id} "
                f"tasks={len(details.tasks)} status={details.job.status.value}",
            ]
            if command.run:
                lines.extend(_summary_lines(service.run_job(job_id)))
                lines.extend(_progress_lines(service.get_job(job_id)))
        return lines

    def run_job(self, command: JobRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings, failures=command.failures) as service:
            summary = service.run_job(command.job_id)
            details = service.get_job(command.job_id)
        return [*_summary_lines(summary), *_progress_lines(details)]

    def show_job(self, command: JobShowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            details = service.get_job(command.job_id)
            events = (
                service.repository.list_task_events(job_id=command.job_id)
                if command.show_events
                else []
            )
            suggestions = service.recovery_suggestions(command.job_id)

        if command.output_format == "json":
            snapshot = asdict(details.progress)
            return [
                json.dumps(
                    {
                        "job": {
                            "job_id": details.job.job_id,
                            "user_id": details.job.user_id,
                            "target_id": details.job.target_id,
                            "title": details.job.title,
                            "status": details.job.status.value,
                            "progress": details.job.progress,
                            "error_message": details.job.error_message,
                            "recovery_attempts": details.job.recovery_attempts,
                        },
                        "progress": snapshot,
                        "tasks": [
                            {
                                "task_id": task.task_id,
                                "task_key": task.task_key,
                                "task_type": task.task_type,
                                "status": task.status.value,
                                "retries": f"{task.current_retry_count}/{task.max_retry_count}",
                                "is_recoverable": task.is_recoverable,
                                "error_message": task.error_message,
                            }
                            for task in details.tasks
                        ],
                        "suggestions": [asdict(suggestion) for suggestion in suggestions],
                    },
                    indent=2,
                    ensure_ascii=False,
                    default=str,
                ),
            ]

        lines = _progress_lines(details)
        lines.append(f"Tasks: {len(details.tasks)}")
        for task in details.tasks:
            line = (
                f"  {task.task_id} key={task.task_key} type={task.task_type} "
                f"status={task.status.value} retries={task.current_retry_count}/"
                f"{task.max_retry_count}"
            )
            if task.status == TaskStatus.FAILED:
                line += f" recoverable={'yes' if task.is_recoverable else 'no'}"
                line += f" error={task.error_message or '-'}"
            lines.append(line)
        for suggestion in suggestions:
            lines.append(
                f"Suggestion: {suggestion.label} ({suggestion.action}): {suggestion.description}",
            )
        if events:
            lines.append(f"Events: {len(events)}")
            keys = {task.task_id: task.task_key for task in details.tasks}
            for event in events:
                lines.append(
                    f"  {event.created_at.isoformat()} {keys.get(event.task_id, event.task_id)} "
                    f"{event.event_type} "
                    f"{event.status_from.value if event.status_from else '-'} -> "
                    f"{event.status_to.value if event.status_to else '-'}",
                )
        return lines

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            if command.active_only:
                jobs = service.list_active_jobs(user_id=command.user_id)
            else:
                jobs = service.list_jobs(
                    user_id=command.user_id,
                    include_cleared=command.include_cleared,
                    limit=command.limit,
                )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} user={job.user_id} target={job.target_id} "
                f"status={job.status.value} progress={job.progress:.1f}% "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def post_action(self, command: JobActionCommand) -> list[str]:
        settings = _settings(command.db_path)
        actor = command.user_id or settings.user_context.user_id
        with _service(settings, failures=command.failures) as service:
            task_ids = _resolve_task_ids(service, job_id=command.job_id, tasks=command.tasks)
            result = service.post_action(
                job_id=command.job_id,
                actor_user_id=actor,
                action_type=ActionType(command.action),
                task_ids=task_ids,
                reset_budget=command.reset_budget,
            )
            details = service.get_job(command.job_id)
        return [*_action_lines(result), *_progress_lines(details)]

    def health(self, command: JobHealthCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            if command.job_id is not None:
                statuses = [service.get_health(command.job_id)]
            else:
                statuses = service.monitor.scan()

        if command.output_format == "json":
            return [json.dumps([asdict(status) for status in statuses], indent=2, default=str)]
        if not statuses:
            return ["No active jobs."]
        return [_health_line(status) for status in statuses]

    def recover(self, command: JobRecoverCommand) -> list[str]:
        settings = _settings(command.db_path)
        actor = command.user_id or settings.user_context.user_id
        with _service(settings, failures=command.failures) as service:
            if command.smart:
                smart = service.smart_recover(job_id=command.job_id, actor_user_id=actor)
                lines = [
                    f"Smart recovery: success={'yes' if smart.success else 'no'} {smart.message}",
                ]
            else:
                result = service.attempt_recovery(command.job_id)
                lines = [
                    f"Recovery: success={'yes' if result.success else 'no'} "
                    f"action={result.action.value} requeued={len(result.requeued_task_ids)} "
                    f"{result.message}",
                ]
            lines.extend(_progress_lines(service.get_job(command.job_id)))
        return lines

    def report(self, command: JobReportCommand) -> list[str]:
        settings = _settings(command.db_path)
        actor = command.user_id or settings.user_context.user_id
        with _service(settings) as service:
            result = service.post_action(
                job_id=command.job_id,
                actor_user_id=actor,
                action_type=ActionType.EXPORT_REPORT,
                report_format=command.output_format,
            )

        if command.output_format == "csv":
            content = result.details["content"]
        else:
            content = json.dumps(result.details["report"], indent=2, ensure_ascii=False)
        if command.output_path is None:
            return [content]
        command.output_path.parent.mkdir(parents=True, exist_ok=True)
        command.output_path.write_text(content, "utf-8")
        return [f"Report written: {command.output_path}"]

    def clear_job(self, command: JobClearCommand) -> list[str]:
        settings = _settings(command.db_path)
        actor = command.user_id or settings.user_context.user_id
        with _service(settings) as service:
            cleared = service.clear_job(job_id=command.job_id, actor_user_id=actor)
        if not cleared:
            return [f"Job not cleared (still active or already cleared): {command.job_id}"]
        return [f"Job cleared: {command.job_id}"]

    def watch(
        self,
        command: MonitorWatchCommand,
        *,
        emit: Callable[[str], None],
        stop_event: threading.Event | None = None,
    ) -> list[str]:
        """Stream one line per job per scan until stopped or ``max_cycles`` is reached."""

        settings = _settings(command.db_path)
        with _service(settings, failures=command.failures) as service:
            cycles = service.monitor.watch(
                stop_event=stop_event,
                interval_seconds=command.interval_seconds,
                auto_recover=command.auto_recover,
                max_cycles=command.max_cycles,
                on_status=lambda status: emit(_health_line(status)),
            )
        return [f"Monitor stopped after {cycles} cycle(s)"]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _resolve_task_ids(
    service: GenerationService,
    *,
    job_id: str,
    tasks: tuple[str, ...],
) -> list[str]:
    by_key = {task.task_key: task.task_id for task in service.repository.list_tasks(job_id=job_id)}
    return [by_key.get(value, value) for value in tasks]


def _summary_lines(summary: DispatchSummary) -> list[str]:
    return [
        "Dispatch summary: "
        f"dispatched={summary.dispatched} succeeded={summary.succeeded} "
        f"retried={summary.retried} failed={summary.failed} conflicts={summary.conflicts} "
        f"requeued_orphans={summary.requeued_orphans} "
        f"final_status={summary.final_status.value if summary.final_status else '-'} "
        f"halted={summary.halted_reason or '-'}",
    ]


def _progress_lines(details: JobDetails) -> list[str]:
    snapshot = details.progress
    lines = [
        f"Job: {details.job.job_id} ({details.job.title})",
        f"Status: {snapshot.status.value} progress={snapshot.progress:.1f}% phase={snapshot.phase}",
        f"Message: {snapshot.status_message}",
        f"Counts: total={snapshot.total_tasks} completed={snapshot.completed_tasks} "
        f"failed={snapshot.failed_tasks} skipped={snapshot.skipped_tasks} "
        f"running={snapshot.running_tasks} queued={snapshot.queued_tasks}",
    ]
    if snapshot.error_message and snapshot.status == JobStatus.FAILED:
        lines.append(f"Error: {snapshot.error_message}")
    for failed in snapshot.failed:
        lines.append(
            f"  failed {failed.task_key} ({failed.task_id}) "
            f"class={failed.failure_class.value if failed.failure_class else '-'} "
            f"recoverable={'yes' if failed.is_recoverable else 'no'} "
            f"retries={failed.current_retry_count}/{failed.max_retry_count}: "
            f"{failed.user_message or failed.error_message or '-'}",
        )
    return lines


def _action_lines(result: ActionResult) -> list[str]:
    lines = [
        f"Action {result.action_type.value}: success={'yes' if result.success else 'no'} "
        f"{result.message} (job status={result.job_status.value})",
    ]
    for task_id, reason in result.failed_tasks.items():
        lines.append(f"  rejected {task_id}: {reason}")
    return lines


def _health_line(status: HealthStatus) -> str:
    return (
        f"{status.job_id} state={status.state.value} status={status.job_status.value} "
        f"idle={status.idle_seconds:.0f}s progress={status.progress:.1f}% "
        f"action={status.recommended_action.value} "
        f"recoveries={status.recovery_attempts}/{status.max_recovery_attempts}: "
        f"{status.user_message}"
    )


@contextmanager
def _service(settings: Settings, *, failures: tuple[str, ...] = ()) -> Iterator[GenerationService]:
    repository = GenerationRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    executor = EchoStepExecutor(failures=parse_failure_script(failures))
    try:
        yield GenerationService(repository=repository, executor=executor, settings=settings)
    finally:
        repository.close()
