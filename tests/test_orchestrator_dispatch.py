from __future__ import annotations

import threading
import time
from pathlib import Path

import allure
import pytest

from conftest import (
    SlowFirstAttemptExecutor,
    fast_orchestrator_settings,
    full_course_request,
    sections_only_request,
)
from coursegen.config import Settings
from coursegen.orchestrator.backend.base import StepErrorCategory, StepRequest, StepResult
from coursegen.orchestrator.backend.echo import EchoStepExecutor
from coursegen.orchestrator.errors import InvalidTransitionError, JobAccessDeniedError
from coursegen.orchestrator.models import ActionType, JobStatus, TaskStatus
from coursegen.orchestrator.repository import GenerationRepository
from coursegen.orchestrator.services import GenerationService
from coursegen.storage.common import utc_now

pytestmark = [
    allure.epic("Generation Orchestrator"),
    allure.feature("Dispatch & Job Lifecycle"),
]


def _service(
    repository: GenerationRepository,
    settings: Settings,
    executor=None,
) -> GenerationService:
    return GenerationService(
        repository=repository,
        executor=executor or EchoStepExecutor(),
        settings=settings,
    )


def _tasks_by_key(service: GenerationService, job_id: str):
    return {task.task_key: task for task in service.repository.list_tasks(job_id=job_id)}


def _wait_until(predicate, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not reached in time")


def test_all_tasks_succeed_first_time(repository: GenerationRepository, settings: Settings) -> None:
    executor = EchoStepExecutor()
    service = _service(repository, settings, executor)
    job_id = service.create_job(sections_only_request(5))

    summary = service.run_job(job_id)

    assert summary.final_status == JobStatus.COMPLETED
    assert summary.dispatched == 5
    assert summary.succeeded == 5
    details = service.get_job(job_id)
    assert details.job.status == JobStatus.COMPLETED
    assert details.job.progress == 100.0
    assert details.job.owner_id is None
    assert details.job.finished_at is not None
    assert details.progress.status_message == "Completed all 5 tasks"
    snapshot = service.orchestrator.get_progress(job_id)
    assert snapshot.progress == 100.0
    assert snapshot.completed_tasks == 5
    assert details.job.result is not None
    assert sorted(details.job.result["outputs"]) == [f"section-l1-{index}" for index in range(5)]
    assert service.repository.list_action_records(job_id=job_id) == []
    assert len(executor.calls) == 5


def test_transient_failures_retry_without_intervention(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    executor = EchoStepExecutor(
        failures={"section-l1-2": [StepErrorCategory.TRANSIENT, StepErrorCategory.TRANSIENT]},
    )
    service = _service(repository, settings, executor)
    job_id = service.create_job(sections_only_request(5))

    summary = service.run_job(job_id)

    assert summary.final_status == JobStatus.COMPLETED
    assert summary.retried == 2
    third = _tasks_by_key(service, job_id)["section-l1-2"]
    assert third.status == TaskStatus.COMPLETED
    assert third.current_retry_count == 2
    assert executor.attempts_for("section-l1-2") == 3
    assert service.repository.list_action_records(job_id=job_id) == []


def test_permanent_failure_fails_job_until_task_is_skipped(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    executor = EchoStepExecutor(failures={"section-l1-1": [StepErrorCategory.PERMANENT]})
    service = _service(repository, settings, executor)
    job_id = service.create_job(sections_only_request(5))

    summary = service.run_job(job_id)

    assert summary.final_status == JobStatus.FAILED
    details = service.get_job(job_id)
    assert details.job.status == JobStatus.FAILED
    assert [failed.task_key for failed in details.progress.failed] == ["section-l1-1"]
    assert details.progress.failed[0].is_recoverable is False
    assert details.progress.completed_tasks == 4
    assert "section-l1-1" in (details.job.error_message or "")

    second = _tasks_by_key(service, job_id)["section-l1-1"]
    result = service.post_action(
        job_id=job_id,
        actor_user_id="user-1",
        action_type=ActionType.SKIP_TASK,
        task_ids=[second.task_id],
    )

    assert result.success is True
    assert result.job_status == JobStatus.COMPLETED
    job = service.get_job(job_id).job
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100.0
    assert job.result is not None
    assert job.result["skipped"] == ["section-l1-1"]
    assert len(service.repository.list_action_records(job_id=job_id)) == 1
    assert executor.attempts_for("section-l1-1") == 1


def test_failed_tasks_do_not_fail_job_when_configured(
    repository: GenerationRepository,
    tmp_path: Path,
) -> None:
    settings = Settings(
        db_path=tmp_path / "coursegen.db",
        orchestrator=fast_orchestrator_settings(fail_job_on_task_failure=False),
    )
    service = _service(
        repository,
        settings,
        EchoStepExecutor(failures={"section-l1-0": [StepErrorCategory.INVALID_INPUT]}),
    )
    job_id = service.create_job(sections_only_request(2))

    summary = service.run_job(job_id)

    assert summary.final_status == JobStatus.COMPLETED
    details = service.get_job(job_id)
    assert details.progress.failed_tasks == 1
    assert details.progress.status_message == (
        "Completed with 1 generated, 0 skipped and 1 failed tasks"
    )


def test_dependencies_dispatch_in_order(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    executor = EchoStepExecutor()
    service = _service(repository, settings, executor)
    job_id = service.create_job(full_course_request())

    assert service.run_job(job_id).final_status == JobStatus.COMPLETED

    order = [call.task_key for call in executor.calls]
    tasks = _tasks_by_key(service, job_id)
    assert len(order) == len(tasks)
    for task in tasks.values():
        for dependency in task.dependencies:
            assert order.index(dependency) < order.index(task.task_key)
    assert order.index("exam-course-full") > order.index("quiz-p2")


def test_dependency_on_skipped_task_is_satisfied(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    request = sections_only_request(2)
    request.options.include_assessments = True
    executor = EchoStepExecutor()
    service = _service(repository, settings, executor)
    job_id = service.create_job(request)
    first = _tasks_by_key(service, job_id)["section-l1-0"]
    service.repository.skip_task(task_id=first.task_id, reason="skipped_by_user")

    assert service.run_job(job_id).final_status == JobStatus.COMPLETED
    assert [call.task_key for call in executor.calls] == ["section-l1-1", "assessment-l1"]


class _ConcurrencyTracker:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.current = 0
        self.peak = 0

    def execute(self, request: StepRequest) -> StepResult:
        with self._lock:
            self.current += 1
            self.peak = max(self.peak, self.current)
        time.sleep(0.05)
        with self._lock:
            self.current -= 1
        return StepResult(payload={"task_key": request.task_key})


def test_in_flight_tasks_never_exceed_max_concurrency(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    tracker = _ConcurrencyTracker()
    service = _service(repository, settings, tracker)
    job_id = service.create_job(sections_only_request(6))

    assert service.run_job(job_id).final_status == JobStatus.COMPLETED
    assert tracker.peak == 2


def test_timed_out_task_is_not_redispatched_while_its_call_runs(
    repository: GenerationRepository,
    tmp_path: Path,
) -> None:
    settings = Settings(
        db_path=tmp_path / "coursegen.db",
        orchestrator=fast_orchestrator_settings(task_timeouts={"lesson_section": 1}),
    )
    executor = SlowFirstAttemptExecutor()
    service = _service(repository, settings, executor)
    job_id = service.create_job(sections_only_request(1))

    summary = service.run_job(job_id)

    assert summary.final_status == JobStatus.COMPLETED
    assert summary.retried == 1
    assert [call.attempt for call in executor.calls] == [1, 2]
    assert executor.max_active_per_task == 1


def test_pause_halts_dispatch_and_resume_continues(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    executor = EchoStepExecutor()
    service = _service(repository, settings, executor)
    job_id = service.create_job(sections_only_request(5))
    assert service.repository.transition_job(
        job_id=job_id,
        expected={JobStatus.QUEUED},
        target=JobStatus.PROCESSING,
    )

    paused = service.post_action(
        job_id=job_id,
        actor_user_id="user-1",
        action_type=ActionType.PAUSE_JOB,
    )
    summary = service.run_job(job_id)

    assert paused.job_status == JobStatus.PAUSED
    assert summary.halted_reason == "job_paused"
    assert executor.calls == []

    resumed = service.post_action(
        job_id=job_id,
        actor_user_id="user-1",
        action_type=ActionType.RESUME_JOB,
    )

    assert resumed.job_status == JobStatus.COMPLETED
    assert len(executor.calls) == 5
    assert all(executor.attempts_for(f"section-l1-{index}") == 1 for index in range(5))


def test_pause_mid_run_stops_new_dispatch(repository: GenerationRepository, tmp_path: Path) -> None:
    settings = Settings(
        db_path=tmp_path / "coursegen.db",
        orchestrator=fast_orchestrator_settings(max_concurrency=1),
    )
    executor = EchoStepExecutor(delay_seconds=0.05)
    service = _service(repository, settings, executor)
    job_id = service.create_job(sections_only_request(5))

    service.orchestrator.engage(job_id, background=True)
    _wait_until(
        lambda: any(
            task.status == TaskStatus.COMPLETED
            for task in service.repository.list_tasks(job_id=job_id)
        ),
    )
    service.post_action(job_id=job_id, actor_user_id="user-1", action_type=ActionType.PAUSE_JOB)
    assert service.orchestrator.wait_for_dispatch(job_id, timeout=10)

    details = service.get_job(job_id)
    assert details.job.status == JobStatus.PAUSED
    assert details.progress.running_tasks == 0
    assert details.progress.queued_tasks > 0
    attempts_at_pause = len(executor.calls)

    service.post_action(job_id=job_id, actor_user_id="user-1", action_type=ActionType.RESUME_JOB)

    assert service.get_job(job_id).job.status == JobStatus.COMPLETED
    assert len(executor.calls) == 5
    assert attempts_at_pause < 5


class _PausingExecutor:
    """Pauses the job from inside the step call, then lets the step finish."""

    def __init__(self, repository: GenerationRepository) -> None:
        self.repository = repository
        self.calls: list[str] = []

    def execute(self, request: StepRequest) -> StepResult:
        self.calls.append(request.task_key)
        assert self.repository.transition_job(
            job_id=request.job_id,
            expected={JobStatus.PROCESSING},
            target=JobStatus.PAUSED,
        )
        return StepResult(payload={"task_key": request.task_key})


def test_paused_job_is_finalized_when_last_attempt_finishes(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    executor = _PausingExecutor(repository)
    service = _service(repository, settings, executor)
    job_id = service.create_job(sections_only_request(1))

    summary = service.orchestrator.run_job(job_id)

    assert executor.calls == ["section-l1-0"]
    assert summary.final_status == JobStatus.COMPLETED
    assert summary.halted_reason == "job_completed"
    details = service.get_job(job_id)
    assert details.job.status == JobStatus.COMPLETED
    assert details.job.finished_at is not None
    assert details.job.progress == 100.0


def test_resume_requires_paused_job(repository: GenerationRepository, settings: Settings) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(sections_only_request(1))

    with pytest.raises(InvalidTransitionError, match="cannot be resumed from status=queued"):
        service.post_action(
            job_id=job_id,
            actor_user_id="user-1",
            action_type=ActionType.RESUME_JOB,
        )


def test_cancel_skips_open_tasks_and_stops_dispatch(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    executor = EchoStepExecutor()
    service = _service(repository, settings, executor)
    job_id = service.create_job(sections_only_request(3))

    result = service.post_action(
        job_id=job_id,
        actor_user_id="user-1",
        action_type=ActionType.CANCEL_JOB,
    )
    summary = service.run_job(job_id)

    assert result.job_status == JobStatus.CANCELED
    assert result.message == "Generation canceled (3 open task(s) skipped)"
    assert summary.halted_reason == "job_canceled"
    assert executor.calls == []
    details = service.get_job(job_id)
    assert details.job.error_message == "Canceled by user"
    assert details.progress.skipped_tasks == 3
    with pytest.raises(InvalidTransitionError, match="cannot be canceled"):
        service.post_action(
            job_id=job_id,
            actor_user_id="user-1",
            action_type=ActionType.CANCEL_JOB,
        )


def test_orchestration_fault_fails_job(
    repository: GenerationRepository,
    settings: Settings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(sections_only_request(2))

    def _broken_attempt(task):
        raise RuntimeError("runner exploded")

    monkeypatch.setattr(service.orchestrator.runner, "run_attempt", _broken_attempt)

    summary = service.run_job(job_id)

    assert summary.final_status == JobStatus.FAILED
    assert summary.halted_reason == "orchestration_fault"
    job = service.get_job(job_id).job
    assert job.status == JobStatus.FAILED
    assert job.error_message == "Orchestration fault: RuntimeError: runner exploded"
    assert job.owner_id is None


def test_job_owned_by_live_worker_is_not_dispatched(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    executor = EchoStepExecutor()
    service = _service(repository, settings, executor)
    job_id = service.create_job(sections_only_request(1))
    assert repository.claim_job(
        job_id=job_id,
        owner_id="other-worker",
        lease_expired_before=utc_now(),
    )

    summary = service.run_job(job_id)

    assert summary.halted_reason == "owned_by_another_worker"
    assert executor.calls == []


def test_create_job_from_mapping_defaults_user(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(
        {
            "target_id": "course-9",
            "paths": [{"path_id": "p1", "lessons": [{"lesson_id": "l1", "sections": ["A"]}]}],
        },
    )

    job = service.get_job(job_id).job
    assert job.user_id == settings.user_context.user_id
    assert job.status == JobStatus.QUEUED
    with pytest.raises(JobAccessDeniedError):
        service.get_job(job_id, user_id="someone-else")


def test_create_job_with_start_runs_inline(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service = _service(repository, settings)

    job_id = service.create_job(sections_only_request(2), start=True)

    assert service.get_job(job_id).job.status == JobStatus.COMPLETED


def test_create_job_rejects_outline_without_tasks(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service = _service(repository, settings)

    with pytest.raises(ValueError, match="produced no tasks"):
        service.create_job(sections_only_request(0))


def test_clear_job_hides_finished_job(repository: GenerationRepository, settings: Settings) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(sections_only_request(1), start=True)

    with pytest.raises(JobAccessDeniedError):
        service.clear_job(job_id=job_id, actor_user_id="intruder")
    assert service.clear_job(job_id=job_id, actor_user_id="user-1")

    assert service.list_jobs(user_id="user-1") == []
    assert [job.job_id for job in service.list_jobs(include_cleared=True)] == [job_id]
