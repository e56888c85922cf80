from __future__ import annotations

import csv
import io

import allure
import pytest

from conftest import sections_only_request
from coursegen.config import Settings
from coursegen.orchestrator.backend.base import StepErrorCategory
from coursegen.orchestrator.backend.echo import EchoStepExecutor
from coursegen.orchestrator.errors import (
    InvalidTransitionError,
    JobAccessDeniedError,
    JobNotFoundError,
)
from coursegen.orchestrator.models import ActionType, FailureClass, JobStatus, TaskStatus
from coursegen.orchestrator.reporting import build_job_report, render_report_csv
from coursegen.orchestrator.repository import GenerationRepository
from coursegen.orchestrator.services import GenerationService

pytestmark = [
    allure.epic("Generation Orchestrator"),
    allure.feature("Recovery Actions & Reports"),
]


def _service(
    repository: GenerationRepository,
    settings: Settings,
    failures: dict[str, list[StepErrorCategory]] | None = None,
) -> GenerationService:
    return GenerationService(
        repository=repository,
        executor=EchoStepExecutor(failures=failures),
        settings=settings,
    )


def _task_id(service: GenerationService, job_id: str, task_key: str) -> str:
    return next(
        task.task_id
        for task in service.repository.list_tasks(job_id=job_id)
        if task.task_key == task_key
    )


def _failed_job(
    repository: GenerationRepository,
    settings: Settings,
    failures: dict[str, list[StepErrorCategory]],
    section_count: int = 5,
) -> tuple[GenerationService, str]:
    service = _service(repository, settings, failures)
    job_id = service.create_job(sections_only_request(section_count), start=True)
    assert service.get_job(job_id).job.status == JobStatus.FAILED
    return service, job_id


def test_action_by_non_owner_is_recorded_and_rejected(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(sections_only_request(2))

    with pytest.raises(JobAccessDeniedError, match="does not own job"):
        service.post_action(
            job_id=job_id,
            actor_user_id="intruder",
            action_type=ActionType.CANCEL_JOB,
        )

    assert service.get_job(job_id).job.status == JobStatus.QUEUED
    [record] = service.repository.list_action_records(job_id=job_id)
    assert record.actor_user_id == "intruder"
    assert record.action_type == ActionType.CANCEL_JOB
    assert record.success is False
    assert record.details == {"reason": "access_denied"}


def test_action_on_unknown_job_raises(repository: GenerationRepository, settings: Settings) -> None:
    service = _service(repository, settings)

    with pytest.raises(JobNotFoundError):
        service.post_action(
            job_id="missing",
            actor_user_id="user-1",
            action_type=ActionType.PAUSE_JOB,
        )


def test_invalid_transition_is_recorded_and_raised(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(sections_only_request(1), start=True)

    with pytest.raises(InvalidTransitionError, match="cannot be paused from status=completed"):
        service.post_action(
            job_id=job_id,
            actor_user_id="user-1",
            action_type=ActionType.PAUSE_JOB,
        )

    [record] = service.repository.list_action_records(job_id=job_id)
    assert record.success is False
    assert "cannot be paused" in record.message


def test_task_action_without_targets_is_rejected(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(sections_only_request(1))

    with pytest.raises(InvalidTransitionError, match="requires at least one task id"):
        service.post_action(
            job_id=job_id,
            actor_user_id="user-1",
            action_type=ActionType.SKIP_TASK,
        )


def test_batch_skip_reports_per_task_results(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service, job_id = _failed_job(
        repository,
        settings,
        {"section-l1-1": [StepErrorCategory.PERMANENT]},
    )
    failed_id = _task_id(service, job_id, "section-l1-1")
    completed_id = _task_id(service, job_id, "section-l1-0")

    result = service.post_action(
        job_id=job_id,
        actor_user_id="user-1",
        action_type=ActionType.SKIP_TASK,
        task_ids=[failed_id, completed_id, "no-such-task", failed_id],
    )

    assert result.success is False
    assert result.succeeded_task_ids == [failed_id]
    assert set(result.failed_tasks) == {completed_id, "no-such-task"}
    assert "cannot be skipped" in result.failed_tasks[completed_id]
    assert result.failed_tasks["no-such-task"] == "Task not found: no-such-task"
    assert result.message == "Skipped 1 task(s), 2 rejected"
    assert result.job_status == JobStatus.COMPLETED
    [record] = service.repository.list_action_records(job_id=job_id)
    assert record.task_ids == (failed_id, completed_id, "no-such-task")
    assert record.details["succeeded_task_ids"] == [failed_id]
    assert set(record.details["failed_tasks"]) == {completed_id, "no-such-task"}


def test_skipping_last_open_task_of_paused_job_finalizes_it(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(sections_only_request(2))
    repo = service.repository
    repo.transition_job(job_id=job_id, expected={JobStatus.QUEUED}, target=JobStatus.PROCESSING)
    done_id = _task_id(service, job_id, "section-l1-0")
    open_id = _task_id(service, job_id, "section-l1-1")
    assert repo.claim_task(done_id) is not None
    assert repo.complete_task(task_id=done_id, result_payload={"ok": True})
    service.post_action(job_id=job_id, actor_user_id="user-1", action_type=ActionType.PAUSE_JOB)

    result = service.post_action(
        job_id=job_id,
        actor_user_id="user-1",
        action_type=ActionType.SKIP_TASK,
        task_ids=[open_id],
    )

    assert result.success is True
    assert result.succeeded_task_ids == [open_id]
    assert result.job_status == JobStatus.COMPLETED
    job = service.get_job(job_id).job
    assert job.status == JobStatus.COMPLETED
    assert job.finished_at is not None
    assert repo.get_task(open_id).status == TaskStatus.SKIPPED


def test_skipping_one_of_several_open_tasks_keeps_job_paused(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(sections_only_request(3))
    repository.transition_job(
        job_id=job_id,
        expected={JobStatus.QUEUED},
        target=JobStatus.PROCESSING,
    )
    service.post_action(job_id=job_id, actor_user_id="user-1", action_type=ActionType.PAUSE_JOB)

    result = service.post_action(
        job_id=job_id,
        actor_user_id="user-1",
        action_type=ActionType.SKIP_TASK,
        task_ids=[_task_id(service, job_id, "section-l1-0")],
    )

    assert result.success is True
    assert result.job_status == JobStatus.PAUSED


def test_task_from_another_job_is_rejected(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(sections_only_request(1))
    other_job_id = service.create_job(sections_only_request(1))
    foreign = _task_id(service, other_job_id, "section-l1-0")

    result = service.post_action(
        job_id=job_id,
        actor_user_id="user-1",
        action_type=ActionType.SKIP_TASK,
        task_ids=[foreign],
    )

    assert result.success is False
    assert result.failed_tasks == {foreign: f"Task not found: {foreign}"}
    assert service.repository.get_task(foreign).status == TaskStatus.QUEUED


def test_retry_with_budget_reset_reopens_failed_job(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service, job_id = _failed_job(
        repository,
        settings,
        {"section-l1-0": [StepErrorCategory.TRANSIENT] * 3},
        section_count=2,
    )
    failed_id = _task_id(service, job_id, "section-l1-0")
    failed = service.repository.get_task(failed_id)
    assert failed.retries_exhausted

    with pytest.raises(InvalidTransitionError):
        service.repository.retry_task(task_id=failed_id)
    rejected = service.post_action(
        job_id=job_id,
        actor_user_id="user-1",
        action_type=ActionType.RETRY_TASK,
        task_ids=[failed_id],
    )
    assert rejected.success is False
    assert "exhausted its retry budget" in rejected.failed_tasks[failed_id]
    assert rejected.job_status == JobStatus.FAILED

    result = service.post_action(
        job_id=job_id,
        actor_user_id="user-1",
        action_type=ActionType.RETRY_TASK,
        task_ids=[failed_id],
        reset_budget=True,
    )

    assert result.success is True
    assert result.details["reset_budget"] is True
    assert result.job_status == JobStatus.COMPLETED
    task = service.repository.get_task(failed_id)
    assert task.status == TaskStatus.COMPLETED
    assert task.current_retry_count == 0
    records = service.repository.list_action_records(job_id=job_id)
    assert [record.success for record in records] == [False, True]


def test_retry_of_permanent_failure_is_rejected_per_task(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service, job_id = _failed_job(
        repository,
        settings,
        {"section-l1-2": [StepErrorCategory.INVALID_INPUT]},
    )
    failed_id = _task_id(service, job_id, "section-l1-2")

    result = service.post_action(
        job_id=job_id,
        actor_user_id="user-1",
        action_type=ActionType.RETRY_TASK,
        task_ids=[failed_id],
    )

    assert result.success is False
    assert "skip it instead" in result.failed_tasks[failed_id]
    assert result.job_status == JobStatus.FAILED


def test_retry_on_canceled_job_is_rejected(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(sections_only_request(1))
    service.post_action(job_id=job_id, actor_user_id="user-1", action_type=ActionType.CANCEL_JOB)

    with pytest.raises(InvalidTransitionError, match="is canceled"):
        service.post_action(
            job_id=job_id,
            actor_user_id="user-1",
            action_type=ActionType.RETRY_TASK,
            task_ids=[_task_id(service, job_id, "section-l1-0")],
        )


def test_smart_recover_retries_skips_and_escalates(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(sections_only_request(4))
    repo = service.repository
    retryable, permanent, critical, _ok = repo.list_tasks(job_id=job_id)
    repo.transition_job(job_id=job_id, expected={JobStatus.QUEUED}, target=JobStatus.PROCESSING)
    for task, failure_class, recoverable in (
        (retryable, FailureClass.RATE_LIMITED, True),
        (permanent, FailureClass.CONTENT_POLICY, False),
        (critical, FailureClass.INSUFFICIENT_CONTENT, False),
    ):
        repo.claim_task(task.task_id)
        repo.fail_task(
            task_id=task.task_id,
            expected_retry_count=0,
            retry_count=0,
            failure_class=failure_class,
            error_message=failure_class.value,
            error_details={},
            is_recoverable=recoverable,
        )
    repo.transition_job(job_id=job_id, expected={JobStatus.PROCESSING}, target=JobStatus.FAILED)

    result = service.smart_recover(job_id=job_id, actor_user_id="user-1")

    assert result.success is False
    assert result.retried_task_ids == [retryable.task_id]
    assert result.skipped_task_ids == [permanent.task_id]
    assert result.manual_task_ids == [critical.task_id]
    assert result.message == "Recovered: 1 retried, 1 skipped, 1 require manual attention"
    assert repo.get_task(retryable.task_id).status == TaskStatus.COMPLETED
    assert repo.get_task(permanent.task_id).status == TaskStatus.SKIPPED
    assert repo.get_task(critical.task_id).status == TaskStatus.FAILED
    assert result.job_status == JobStatus.FAILED
    actions = [record.action_type for record in repo.list_action_records(job_id=job_id)]
    assert actions == [ActionType.SKIP_TASK, ActionType.RETRY_TASK]


def test_smart_recover_without_failures(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(sections_only_request(1), start=True)

    result = service.smart_recover(job_id=job_id, actor_user_id="user-1")

    assert result.success is True
    assert result.message == "No failed tasks to recover"
    with pytest.raises(JobAccessDeniedError):
        service.smart_recover(job_id=job_id, actor_user_id="intruder")


def test_recovery_suggestions_are_ranked(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service, job_id = _failed_job(
        repository,
        settings,
        {
            "section-l1-0": [StepErrorCategory.PERMANENT],
            "section-l1-1": [StepErrorCategory.PERMANENT],
            "section-l1-2": [StepErrorCategory.TRANSIENT] * 3,
        },
        section_count=4,
    )

    suggestions = service.recovery_suggestions(job_id)

    assert [suggestion.action for suggestion in suggestions] == ["retry_task", "skip_task"]
    assert suggestions[0].task_ids == [_task_id(service, job_id, "section-l1-2")]
    assert "1 need a retry budget reset" in suggestions[0].description
    assert len(suggestions[1].task_ids) == 2


def test_suggestions_for_paused_and_mostly_failed_jobs(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(sections_only_request(3))
    repo = service.repository
    repo.transition_job(job_id=job_id, expected={JobStatus.QUEUED}, target=JobStatus.PROCESSING)
    for task in repo.list_tasks(job_id=job_id)[:2]:
        repo.claim_task(task.task_id)
        repo.fail_task(
            task_id=task.task_id,
            expected_retry_count=0,
            retry_count=0,
            failure_class=FailureClass.NOT_FOUND,
            error_message="not found",
            error_details={},
            is_recoverable=False,
        )

    processing = [suggestion.action for suggestion in service.recovery_suggestions(job_id)]
    repo.transition_job(job_id=job_id, expected={JobStatus.PROCESSING}, target=JobStatus.PAUSED)
    paused = [suggestion.action for suggestion in service.recovery_suggestions(job_id)]

    assert processing == ["skip_task", "pause_job", "cancel_job"]
    assert paused == ["resume_job", "skip_task", "cancel_job"]


def test_export_report_json_and_csv(repository: GenerationRepository, settings: Settings) -> None:
    service, job_id = _failed_job(
        repository,
        settings,
        {
            "section-l1-1": [StepErrorCategory.PERMANENT],
            "section-l1-3": [StepErrorCategory.TRANSIENT],
        },
    )

    result = service.post_action(
        job_id=job_id,
        actor_user_id="user-1",
        action_type=ActionType.EXPORT_REPORT,
    )
    report = result.details["report"]

    assert result.message == "Report exported (json)"
    assert report["job"]["status"] == "failed"
    assert report["summary"]["task_counts"]["completed"] == 4
    assert report["summary"]["task_counts"]["failed"] == 1
    assert report["summary"]["success_rate"] == 80.0
    assert report["summary"]["error_counts"] == {"critical": 0, "high": 1, "medium": 0, "low": 1}
    assert {error["task_key"] for error in report["errors"]} == {"section-l1-1", "section-l1-3"}
    assert any("below" in item for item in report["summary"]["recommendations"])

    csv_result = service.post_action(
        job_id=job_id,
        actor_user_id="user-1",
        action_type=ActionType.EXPORT_REPORT,
        report_format="csv",
    )
    rows = list(csv.reader(io.StringIO(csv_result.details["content"])))

    assert rows[0] == ["Course Generation Report"]
    assert ["Job ID", job_id] in rows
    assert ["SUMMARY"] in rows
    assert ["ERRORS"] in rows
    assert ["RECOMMENDATIONS"] in rows
    records = service.repository.list_action_records(job_id=job_id)
    assert [record.details["format"] for record in records] == ["json", "csv"]
    assert "report" not in records[0].details
    assert records[0].details["success_rate"] == 80.0


def test_export_report_rejects_unknown_format(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(sections_only_request(1))

    with pytest.raises(InvalidTransitionError, match="Unsupported report format"):
        service.post_action(
            job_id=job_id,
            actor_user_id="user-1",
            action_type=ActionType.EXPORT_REPORT,
            report_format="xml",
        )


def test_report_of_clean_run_has_no_major_issues(
    repository: GenerationRepository,
    settings: Settings,
) -> None:
    service = _service(repository, settings)
    job_id = service.create_job(sections_only_request(2), start=True)
    details = service.get_job(job_id)

    report = build_job_report(
        job=details.job,
        tasks=details.tasks,
        events=service.repository.list_task_events(job_id=job_id),
        actions=[],
        include_tasks=False,
    )

    assert report["report_version"] == 1
    assert report["tasks"] == []
    assert report["errors"] == []
    assert report["summary"]["success_rate"] == 100.0
    assert report["summary"]["recommendations"] == [
        "Generation completed with no major issues detected",
    ]
    assert "TASKS" not in render_report_csv(report)
