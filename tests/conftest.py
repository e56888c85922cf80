"""Shared test fixtures."""

from __future__ import annotations

import os
import threading
import time
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from coursegen.config import HealthSettings, OrchestratorSettings, Settings
from coursegen.orchestrator.backend.base import StepRequest, StepResult
from coursegen.orchestrator.decomposition import (
    GenerationOptions,
    GenerationRequest,
    LessonOutline,
    PathOutline,
)
from coursegen.orchestrator.models import JobStatus, JobView, TaskStatus, TaskType, TaskView
from coursegen.orchestrator.repository import GenerationRepository


def fast_orchestrator_settings(**overrides) -> OrchestratorSettings:
    """Dispatch settings with zero backoff and a short poll interval."""

    values = {
        "max_concurrency": 2,
        "poll_interval_seconds": 0.01,
        "retry_base_seconds": 0.0,
        "retry_max_seconds": 0.0,
        "owner_id": "test-owner",
    }
    values.update(overrides)
    return OrchestratorSettings(**values)


def sections_only_request(
    section_count: int = 5,
    *,
    user_id: str = "user-1",
    target_id: str = "course-1",
) -> GenerationRequest:
    """One lesson with ``section_count`` sections and every optional family disabled."""

    return GenerationRequest(
        user_id=user_id,
        target_id=target_id,
        title="Intro to Testing",
        paths=[
            PathOutline(
                path_id="p1",
                title="Basics",
                lessons=[
                    LessonOutline(
                        lesson_id="l1",
                        title="First Lesson",
                        sections=tuple(f"Section {index}" for index in range(section_count)),
                    ),
                ],
            ),
        ],
        options=GenerationOptions(
            include_assessments=False,
            include_path_quizzes=False,
            include_class_exam=False,
            include_media=False,
        ),
    )


def full_course_request(*, user_id: str = "user-1") -> GenerationRequest:
    """Two paths, three lessons, every content family enabled."""

    return GenerationRequest(
        user_id=user_id,
        target_id="course-full",
        title="Full Course",
        paths=[
            PathOutline(
                path_id="p1",
                title="Path One",
                lessons=[
                    LessonOutline(lesson_id="l1", title="Lesson 1", sections=("Intro", "Body")),
                    LessonOutline(lesson_id="l2", title="Lesson 2", sections=("Only",)),
                ],
            ),
            PathOutline(
                path_id="p2",
                title="Path Two",
                lessons=[LessonOutline(lesson_id="l3", title="Lesson 3", sections=("A", "B"))],
            ),
        ],
    )


def make_job(**overrides) -> JobView:
    now = overrides.pop("now", None) or datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
    values = {
        "job_id": "job-1",
        "user_id": "user-1",
        "target_id": "course-1",
        "title": "Intro to Testing",
        "status": JobStatus.PROCESSING,
        "progress": 0.0,
        "request": {},
        "result": None,
        "error_message": None,
        "owner_id": None,
        "heartbeat_at": None,
        "recovery_attempts": 0,
        "cleared_at": None,
        "started_at": now,
        "finished_at": None,
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return JobView(**values)


def make_task(task_key: str, **overrides) -> TaskView:
    now = overrides.pop("now", None) or datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
    values = {
        "task_id": f"id-{task_key}",
        "job_id": "job-1",
        "task_key": task_key,
        "task_type": TaskType.LESSON_SECTION.value,
        "group_key": "l1",
        "title": task_key,
        "sequence": 1,
        "priority": 0,
        "dependencies": (),
        "status": TaskStatus.QUEUED,
        "current_retry_count": 0,
        "max_retry_count": 3,
        "is_recoverable": True,
        "timeout_seconds": 120,
        "run_after": now,
        "input_payload": {},
        "result_payload": None,
        "failure_class": None,
        "error_message": None,
        "error_details": {},
        "started_at": None,
        "finished_at": None,
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return TaskView(**values)


class SlowFirstAttemptExecutor:
    """Outlives a short task timeout on attempt 1 and tracks overlapping calls per task."""

    def __init__(self, first_delay: float = 2.5, later_delay: float = 0.1) -> None:
        self.first_delay = first_delay
        self.later_delay = later_delay
        self.calls: list[StepRequest] = []
        self.max_active_per_task = 0
        self._active: dict[str, int] = {}
        self._lock = threading.Lock()

    def execute(self, request: StepRequest) -> StepResult:
        with self._lock:
            self.calls.append(request)
            active = self._active.get(request.task_id, 0) + 1
            self._active[request.task_id] = active
            self.max_active_per_task = max(self.max_active_per_task, active)
        try:
            time.sleep(self.first_delay if request.attempt == 1 else self.later_delay)
        finally:
            with self._lock:
                self._active[request.task_id] -= 1
        return StepResult(payload={"attempt": request.attempt})


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[GenerationRepository]:
    repo = GenerationRepository(tmp_path / "coursegen.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "coursegen.db",
        orchestrator=fast_orchestrator_settings(),
        health=HealthSettings(stall_threshold_seconds=120),
    )


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop every COURSEGEN_* variable inherited from the outer environment."""

    for name in list(os.environ):
        if name.startswith("COURSEGEN_"):
            monkeypatch.delenv(name, raising=False)
