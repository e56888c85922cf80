"""Derived job progress, phase labels and status messages."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from coursegen.orchestrator.models import (
    FailedTaskSummary,
    JobStatus,
    JobView,
    ProgressSnapshot,
    TaskStatus,
    TaskType,
    TaskView,
)

PHASE_ORDER: tuple[tuple[str, frozenset[str]], ...] = (
    ("sections", frozenset({TaskType.LESSON_SECTION.value})),
    ("assessments", frozenset({TaskType.LESSON_ASSESSMENT.value})),
    ("path_assessments", frozenset({TaskType.PATH_QUIZ.value, TaskType.CLASS_EXAM.value})),
    ("media", frozenset({TaskType.LESSON_MIND_MAP.value, TaskType.LESSON_BRAINBYTES.value})),
)

_PHASE_DESCRIPTIONS = {
    "sections": "lesson sections",
    "assessments": "lesson assessments",
    "path_assessments": "path quizzes and exams",
    "media": "mind maps and BrainBytes",
    "other": "remaining content",
    "finalizing": "final review",
}


@dataclass(slots=True)
class TaskCounts:
    total: int = 0
    queued: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    finished: int = 0

    @classmethod
    def from_tasks(cls, tasks: Iterable[TaskView]) -> TaskCounts:
        counts = cls()
        for task in tasks:
            counts.total += 1
            if task.status == TaskStatus.QUEUED:
                counts.queued += 1
            elif task.status == TaskStatus.RUNNING:
                counts.running += 1
            elif task.status == TaskStatus.COMPLETED:
                counts.completed += 1
            elif task.status == TaskStatus.FAILED:
                counts.failed += 1
            elif task.status == TaskStatus.SKIPPED:
                counts.skipped += 1
            if task.is_finished:
                counts.finished += 1
        return counts


def recompute_job_progress(tasks: Sequence[TaskView]) -> float:
    """Percentage of finished tasks, rounded to two decimals."""

    if not tasks:
        return 0.0
    counts = TaskCounts.from_tasks(tasks)
    return round(counts.finished * 100.0 / counts.total, 2)


def current_phase(tasks: Sequence[TaskView]) -> str:
    """First phase, in generation order, that still has unfinished tasks."""

    unfinished_types = {task.task_type for task in tasks if not task.is_finished}
    if not unfinished_types:
        return "finalizing"
    for phase, task_types in PHASE_ORDER:
        if unfinished_types & task_types:
            return phase
    return "other"


def status_message(job: JobView, tasks: Sequence[TaskView]) -> str:
    """Human-readable one-line status for polling clients."""

    counts = TaskCounts.from_tasks(tasks)
    if job.status == JobStatus.QUEUED:
        return f"Waiting to start ({counts.total} tasks planned)"
    if job.status == JobStatus.PROCESSING:
        phase = _PHASE_DESCRIPTIONS[current_phase(tasks)]
        return f"Generating {phase} ({counts.finished}/{counts.total} tasks done)"
    if job.status == JobStatus.PAUSED:
        return f"Paused at {counts.finished}/{counts.total} tasks"
    if job.status == JobStatus.COMPLETED:
        if counts.skipped or counts.failed:
            return (
                f"Completed with {counts.completed} generated, "
                f"{counts.skipped} skipped and {counts.failed} failed tasks"
            )
        return f"Completed all {counts.total} tasks"
    if job.status == JobStatus.FAILED:
        return f"Generation failed: {counts.failed} task(s) need attention"
    return "Generation canceled"


def failed_task_summaries(tasks: Sequence[TaskView]) -> list[FailedTaskSummary]:
    return [
        FailedTaskSummary(
            task_id=task.task_id,
            task_key=task.task_key,
            title=task.title,
            task_type=task.task_type,
            error_message=task.error_message,
            failure_class=task.failure_class,
            is_recoverable=task.is_recoverable,
            current_retry_count=task.current_retry_count,
            max_retry_count=task.max_retry_count,
            user_message=_optional_str(task.error_details.get("user_message")),
        )
        for task in tasks
        if task.status == TaskStatus.FAILED
    ]


def build_progress_snapshot(job: JobView, tasks: Sequence[TaskView]) -> ProgressSnapshot:
    """Assemble the polling snapshot from persisted job and task state."""

    counts = TaskCounts.from_tasks(tasks)
    return ProgressSnapshot(
        job_id=job.job_id,
        status=job.status,
        progress=job.progress,
        phase=current_phase(tasks),
        status_message=status_message(job, tasks),
        total_tasks=counts.total,
        completed_tasks=counts.completed,
        failed_tasks=counts.failed,
        skipped_tasks=counts.skipped,
        running_tasks=counts.running,
        queued_tasks=counts.queued,
        failed=failed_task_summaries(tasks),
        error_message=job.error_message,
    )


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)
