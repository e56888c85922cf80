"""Exportable job reports with summary metrics and recommendations."""

from __future__ import annotations

import csv
import io
from collections import Counter
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from coursegen.orchestrator.failure_classifier import (
    CRITICAL_FAILURE_CLASSES,
    RETRYABLE_FAILURE_CLASSES,
)
from coursegen.orchestrator.models import (
    ActionRecordView,
    FailureClass,
    JobView,
    TaskEventView,
    TaskStatus,
    TaskView,
)
from coursegen.storage.common import utc_now

REPORT_VERSION = 1
REPORT_FORMATS = ("json", "csv")
SUCCESS_RATE_GOAL = 90.0
SERVICE_ERROR_SHARE_MAX = 0.5
SLOW_TASK_SECONDS = 30.0

_ERROR_EVENT_TYPES = frozenset({"retry_scheduled", "failed"})
ERROR_SEVERITIES = ("critical", "high", "medium", "low")
_SERVICE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.RATE_LIMITED.value,
        FailureClass.BACKEND_TRANSIENT.value,
        FailureClass.CONNECTION.value,
        FailureClass.BACKEND_NON_RETRYABLE.value,
    },
)
_KNOWN_FAILURE_CLASSES = frozenset(item.value for item in FailureClass)


def build_job_report(  # noqa: PLR0913
    *,
    job: JobView,
    tasks: Sequence[TaskView],
    events: Sequence[TaskEventView],
    actions: Sequence[ActionRecordView],
    include_tasks: bool = True,
    include_errors: bool = True,
) -> dict[str, Any]:
    """Assemble a JSON-serializable report of one job.

    Errors are every failed attempt recorded in the task event trail, so a task
    that failed twice before succeeding contributes two entries.
    """

    task_keys = {task.task_id: task.task_key for task in tasks}
    errors = [
        _error_entry(event, task_key=task_keys.get(event.task_id))
        for event in events
        if event.event_type in _ERROR_EVENT_TYPES
    ]
    status_counts = Counter(task.status.value for task in tasks)
    completed = status_counts.get(TaskStatus.COMPLETED.value, 0)
    success_rate = round(completed * 100.0 / len(tasks), 2) if tasks else 0.0
    durations = [
        seconds for seconds in (_task_duration(task) for task in tasks) if seconds is not None
    ]
    severity_counts = Counter(error["severity"] for error in errors)

    return {
        "report_version": REPORT_VERSION,
        "generated_at": utc_now().isoformat(),
        "job": {
            "job_id": job.job_id,
            "user_id": job.user_id,
            "target_id": job.target_id,
            "title": job.title,
            "status": job.status.value,
            "progress": job.progress,
            "error_message": job.error_message,
            "recovery_attempts": job.recovery_attempts,
            "created_at": job.created_at.isoformat(),
            "started_at": _iso(job.started_at),
            "finished_at": _iso(job.finished_at),
        },
        "tasks": [_task_entry(task) for task in tasks] if include_tasks else [],
        "errors": errors if include_errors else [],
        "user_actions": [
            {
                "action_id": action.action_id,
                "action_type": action.action_type.value,
                "actor_user_id": action.actor_user_id,
                "task_ids": list(action.task_ids),
                "success": action.success,
                "message": action.message,
                "created_at": action.created_at.isoformat(),
            }
            for action in actions
        ],
        "summary": {
            "duration_seconds": _job_duration(job),
            "success_rate": success_rate,
            "task_counts": {
                status.value: status_counts.get(status.value, 0) for status in TaskStatus
            },
            "error_counts": {
                severity: severity_counts.get(severity, 0) for severity in ERROR_SEVERITIES
            },
            "average_task_seconds": round(sum(durations) / len(durations), 3) if durations else 0.0,
            "recommendations": generate_recommendations(
                tasks=tasks,
                errors=errors,
                success_rate=success_rate,
                durations=durations,
            ),
        },
    }


def generate_recommendations(
    *,
    tasks: Sequence[TaskView],
    errors: Sequence[dict[str, Any]],
    success_rate: float,
    durations: Sequence[float] = (),
) -> list[str]:
    recommendations: list[str] = []
    if tasks and success_rate < SUCCESS_RATE_GOAL:
        recommendations.append(
            f"Success rate is below {SUCCESS_RATE_GOAL:.0f}% - review error patterns "
            "and consider adjusting retry limits",
        )
    critical = sum(1 for error in errors if error["severity"] == "critical")
    if critical:
        recommendations.append(
            f"{critical} critical error(s) detected - these require immediate attention",
        )
    service_errors = sum(
        1 for error in errors if error["failure_class"] in _SERVICE_FAILURE_CLASSES
    )
    if errors and service_errors > len(errors) * SERVICE_ERROR_SHARE_MAX:
        recommendations.append(
            "Most errors come from the generation service - consider lowering concurrency "
            "or raising the service quota",
        )
    if any(task.status == TaskStatus.SKIPPED for task in tasks):
        recommendations.append(
            "Some tasks were skipped - verify that the course is still complete",
        )
    if durations and sum(durations) / len(durations) > SLOW_TASK_SECONDS:
        recommendations.append(
            "Average task time is high - consider splitting long sections",
        )
    if not recommendations:
        recommendations.append("Generation completed with no major issues detected")
    return recommendations


def render_report_csv(report: dict[str, Any]) -> str:
    """Flatten a report into sectioned CSV text."""

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    summary = report["summary"]
    writer.writerow(["Course Generation Report"])
    writer.writerow(["Generated", report["generated_at"]])
    writer.writerow(["Job ID", report["job"]["job_id"]])
    writer.writerow(["Status", report["job"]["status"]])
    writer.writerow([])

    writer.writerow(["SUMMARY"])
    writer.writerow(["Duration (seconds)", summary["duration_seconds"]])
    writer.writerow(["Success Rate (%)", f"{summary['success_rate']:.2f}"])
    for status, count in summary["task_counts"].items():
        writer.writerow([f"Tasks {status}", count])
    writer.writerow([])

    if report["tasks"]:
        writer.writerow(["TASKS"])
        writer.writerow(
            ["Task ID", "Task Key", "Type", "Status", "Retries", "Duration (s)", "Error Message"],
        )
        for task in report["tasks"]:
            writer.writerow(
                [
                    task["task_id"],
                    task["task_key"],
                    task["task_type"],
                    task["status"],
                    f"{task['current_retry_count']}/{task['max_retry_count']}",
                    task["duration_seconds"] if task["duration_seconds"] is not None else "",
                    task["error_message"] or "",
                ],
            )
        writer.writerow([])

    if report["errors"]:
        writer.writerow(["ERRORS"])
        writer.writerow(
            ["Event ID", "Task Key", "Failure Class", "Severity", "Message", "Created At"],
        )
        for error in report["errors"]:
            writer.writerow(
                [
                    error["event_id"],
                    error["task_key"] or "",
                    error["failure_class"] or "",
                    error["severity"],
                    error["error_message"] or "",
                    error["created_at"],
                ],
            )
        writer.writerow([])

    writer.writerow(["RECOMMENDATIONS"])
    for index, recommendation in enumerate(summary["recommendations"], start=1):
        writer.writerow([f"{index}. {recommendation}"])
    return buffer.getvalue()


def _task_entry(task: TaskView) -> dict[str, Any]:
    return {
        "task_id": task.task_id,
        "task_key": task.task_key,
        "task_type": task.task_type,
        "title": task.title,
        "status": task.status.value,
        "current_retry_count": task.current_retry_count,
        "max_retry_count": task.max_retry_count,
        "is_recoverable": task.is_recoverable,
        "failure_class": task.failure_class.value if task.failure_class else None,
        "error_message": task.error_message,
        "duration_seconds": _task_duration(task),
        "created_at": task.created_at.isoformat(),
    }


def _error_entry(event: TaskEventView, *, task_key: str | None) -> dict[str, Any]:
    raw_class = event.details.get("failure_class")
    failure_class = FailureClass(raw_class) if raw_class in _KNOWN_FAILURE_CLASSES else None
    return {
        "event_id": event.event_id,
        "task_id": event.task_id,
        "task_key": task_key,
        "failure_class": failure_class.value if failure_class else None,
        "severity": _severity(failure_class, final=event.event_type == "failed"),
        "error_message": event.details.get("error_message"),
        "created_at": event.created_at.isoformat(),
    }


def _severity(failure_class: FailureClass | None, *, final: bool) -> str:
    if failure_class in CRITICAL_FAILURE_CLASSES:
        return "critical"
    if failure_class is not None and failure_class not in RETRYABLE_FAILURE_CLASSES:
        return "high"
    return "medium" if final else "low"


def _task_duration(task: TaskView) -> float | None:
    if task.started_at is None or task.finished_at is None:
        return None
    return round(max(0.0, (task.finished_at - task.started_at).total_seconds()), 3)


def _job_duration(job: JobView) -> float:
    if job.started_at is None:
        return 0.0
    end = job.finished_at or utc_now()
    return round(max(0.0, (end - job.started_at).total_seconds()), 3)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
