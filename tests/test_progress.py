from __future__ import annotations

import allure
import pytest

from conftest import make_job, make_task
from coursegen.orchestrator.models import FailureClass, JobStatus, TaskStatus, TaskType
from coursegen.orchestrator.progress import (
    TaskCounts,
    build_progress_snapshot,
    current_phase,
    recompute_job_progress,
    status_message,
)

pytestmark = [
    allure.epic("Generation Orchestrator"),
    allure.feature("Progress Tracking"),
]


def test_progress_counts_finished_tasks_only() -> None:
    tasks = [
        make_task("a", status=TaskStatus.COMPLETED),
        make_task("b", status=TaskStatus.SKIPPED),
        make_task("c", status=TaskStatus.FAILED, is_recoverable=False),
        make_task("d", status=TaskStatus.FAILED, current_retry_count=1),
        make_task("e", status=TaskStatus.QUEUED),
    ]

    assert recompute_job_progress(tasks) == 60.0
    counts = TaskCounts.from_tasks(tasks)
    assert (counts.completed, counts.skipped, counts.failed, counts.queued) == (1, 1, 2, 1)
    assert counts.finished == 3


def test_recoverable_failure_with_exhausted_budget_counts_as_finished() -> None:
    tasks = [
        make_task("a", status=TaskStatus.COMPLETED),
        make_task("b", status=TaskStatus.FAILED, current_retry_count=3, max_retry_count=3),
        make_task("c", status=TaskStatus.RUNNING),
    ]

    assert recompute_job_progress(tasks) == pytest.approx(66.67)


def test_progress_of_empty_job_is_zero() -> None:
    assert recompute_job_progress([]) == 0.0


def test_current_phase_follows_generation_order() -> None:
    section = make_task("section-l1-0", status=TaskStatus.COMPLETED)
    assessment = make_task("assessment-l1", task_type=TaskType.LESSON_ASSESSMENT.value)
    exam = make_task("exam-c", task_type=TaskType.CLASS_EXAM.value)
    mind_map = make_task("mindmap-l1", task_type=TaskType.LESSON_MIND_MAP.value)

    assert current_phase([make_task("section-l1-1"), assessment, mind_map]) == "sections"
    assert current_phase([section, assessment, exam, mind_map]) == "assessments"
    assert current_phase([section, exam, mind_map]) == "path_assessments"
    assert current_phase([section, mind_map]) == "media"
    assert current_phase([section]) == "finalizing"


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (JobStatus.QUEUED, "Waiting to start (2 tasks planned)"),
        (JobStatus.PROCESSING, "Generating lesson sections (1/2 tasks done)"),
        (JobStatus.PAUSED, "Paused at 1/2 tasks"),
        (JobStatus.FAILED, "Generation failed: 0 task(s) need attention"),
        (JobStatus.CANCELED, "Generation canceled"),
    ],
)
def test_status_message_per_job_status(status: JobStatus, expected: str) -> None:
    tasks = [make_task("a", status=TaskStatus.COMPLETED), make_task("b")]

    assert status_message(make_job(status=status), tasks) == expected


def test_completed_status_message_mentions_skipped_content() -> None:
    tasks = [make_task("a", status=TaskStatus.COMPLETED), make_task("b", status=TaskStatus.SKIPPED)]

    message = status_message(make_job(status=JobStatus.COMPLETED), tasks)

    assert message == "Completed with 1 generated, 1 skipped and 0 failed tasks"


def test_snapshot_lists_failed_tasks_with_user_message() -> None:
    failed = make_task(
        "section-l1-2",
        status=TaskStatus.FAILED,
        is_recoverable=False,
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        error_message="Simulated permanent failure for section-l1-2",
        error_details={"user_message": "This step could not be generated."},
    )
    job = make_job(status=JobStatus.FAILED, progress=100.0, error_message="1 task(s) failed")

    snapshot = build_progress_snapshot(job, [make_task("a", status=TaskStatus.COMPLETED), failed])

    assert snapshot.status == JobStatus.FAILED
    assert snapshot.progress == 100.0
    assert snapshot.phase == "finalizing"
    assert snapshot.failed_tasks == 1
    assert snapshot.error_message == "1 task(s) failed"
    [summary] = snapshot.failed
    assert summary.task_key == "section-l1-2"
    assert summary.is_recoverable is False
    assert summary.user_message == "This step could not be generated."
