"""Single-attempt task execution with timeout, retry bookkeeping and classification."""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from coursegen.orchestrator.backend.base import (
    StepExecutor,
    StepRequest,
    StepResult,
)
from coursegen.orchestrator.failure_classifier import (
    StepFailureClassification,
    classify_step_failure,
)
from coursegen.orchestrator.models import AttemptOutcome, FailureClass, TaskStatus, TaskView
from coursegen.orchestrator.repository import GenerationRepository
from coursegen.storage.common import utc_now

logger = logging.getLogger(__name__)


class StepTimeoutError(TimeoutError):
    """Step executor did not return within the task timeout."""


@dataclass(slots=True)
class AttemptReport:
    """What happened to one task attempt."""

    task_id: str
    task_key: str
    outcome: AttemptOutcome
    retry_count: int
    failure_class: FailureClass | None = None
    error_message: str | None = None
    retry_delay_seconds: float | None = None


class TaskRunner:
    """Executes exactly one attempt of a task against a step executor."""

    def __init__(
        self,
        *,
        repository: GenerationRepository,
        executor: StepExecutor,
        retry_base_seconds: float = 2.0,
        retry_max_seconds: float = 60.0,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self._random = random.Random()  # noqa: S311
        self._lingering: dict[str, threading.Thread] = {}
        self._lingering_lock = threading.Lock()

    def busy_task_ids(self) -> set[str]:
        """Tasks whose timed-out step call is still running in the executor."""

        with self._lingering_lock:
            for task_id, thread in list(self._lingering.items()):
                if not thread.is_alive():
                    del self._lingering[task_id]
            return set(self._lingering)

    def run_attempt(self, task: TaskView) -> AttemptReport:
        """Claim, execute and persist the outcome of one attempt.

        A task whose previous attempt timed out is not claimed again until that
        step call has returned; such calls report ``CONFLICT``.
        """

        if task.task_id in self.busy_task_ids():
            self._record_conflict(
                task=task,
                transition="claim",
                details={"observed_status": None, "reason": "previous_attempt_running"},
            )
            return AttemptReport(
                task_id=task.task_id,
                task_key=task.task_key,
                outcome=AttemptOutcome.CONFLICT,
                retry_count=task.current_retry_count,
            )

        claimed = self.repository.claim_task(task.task_id)
        if claimed is None:
            current = self.repository.get_task(task.task_id)
            self._record_conflict(
                task=task,
                transition="claim",
                details={"observed_status": current.status.value if current else None},
            )
            return AttemptReport(
                task_id=task.task_id,
                task_key=task.task_key,
                outcome=AttemptOutcome.CONFLICT,
                retry_count=task.current_retry_count,
            )

        request = StepRequest(
            job_id=claimed.job_id,
            task_id=claimed.task_id,
            task_key=claimed.task_key,
            task_type=claimed.task_type,
            title=claimed.title,
            group_key=claimed.group_key,
            attempt=claimed.current_retry_count + 1,
            timeout_seconds=claimed.timeout_seconds,
            input_payload=claimed.input_payload,
        )
        logger.debug("Running %s (attempt %d)", claimed.task_key, request.attempt)
        try:
            result = self._call_with_timeout(request)
        except Exception as error:  # noqa: BLE001
            return self._handle_failure(task=claimed, error=error)
        return self._handle_success(task=claimed, result=result)

    def compute_retry_delay(self, *, retry_number: int) -> float:
        """Full-jitter exponential backoff for the given retry number."""

        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _handle_success(self, *, task: TaskView, result: StepResult) -> AttemptReport:
        payload = result.payload if isinstance(result, StepResult) else {"value": result}
        if not self.repository.complete_task(task_id=task.task_id, result_payload=payload):
            return self._conflict_after_attempt(task=task, transition="complete")
        self.repository.update_job_progress(task.job_id)
        logger.info("Task %s completed", task.task_key)
        return AttemptReport(
            task_id=task.task_id,
            task_key=task.task_key,
            outcome=AttemptOutcome.SUCCEEDED,
            retry_count=task.current_retry_count,
        )

    def _handle_failure(self, *, task: TaskView, error: Exception) -> AttemptReport:
        classification = classify_step_failure(error=error, task_type=task.task_type)
        error_message = str(error) or type(error).__name__
        details = classification.to_event_details(task_type=task.task_type)
        details.update(getattr(error, "details", None) or {})

        if not classification.retryable:
            return self._persist_failure(
                task=task,
                classification=classification,
                error_message=error_message,
                details=details,
                retry_count=task.current_retry_count,
                is_recoverable=False,
            )

        if task.current_retry_count >= task.max_retry_count:
            return self._persist_failure(
                task=task,
                classification=classification,
                error_message=error_message,
                details=details,
                retry_count=task.current_retry_count,
                is_recoverable=True,
            )

        retry_count = task.current_retry_count + 1
        if retry_count >= task.max_retry_count:
            return self._persist_failure(
                task=task,
                classification=classification,
                error_message=error_message,
                details=details,
                retry_count=retry_count,
                is_recoverable=True,
            )

        delay_seconds = self.compute_retry_delay(retry_number=retry_count)
        scheduled = self.repository.schedule_retry(
            task_id=task.task_id,
            expected_retry_count=task.current_retry_count,
            retry_count=retry_count,
            run_after=utc_now() + timedelta(seconds=delay_seconds),
            failure_class=classification.failure_class,
            error_message=error_message,
            error_details=details,
        )
        if not scheduled:
            return self._conflict_after_attempt(task=task, transition="schedule_retry")
        self.repository.update_job_progress(task.job_id)
        logger.warning(
            "Task %s failed (%s), retry %d/%d in %.1fs: %s",
            task.task_key,
            classification.failure_class.value,
            retry_count,
            task.max_retry_count,
            delay_seconds,
            error_message,
        )
        return AttemptReport(
            task_id=task.task_id,
            task_key=task.task_key,
            outcome=AttemptOutcome.RETRY_SCHEDULED,
            retry_count=retry_count,
            failure_class=classification.failure_class,
            error_message=error_message,
            retry_delay_seconds=delay_seconds,
        )

    def _persist_failure(  # noqa: PLR0913
        self,
        *,
        task: TaskView,
        classification: StepFailureClassification,
        error_message: str,
        details: dict[str, Any],
        retry_count: int,
        is_recoverable: bool,
    ) -> AttemptReport:
        failed = self.repository.fail_task(
            task_id=task.task_id,
            expected_retry_count=task.current_retry_count,
            retry_count=retry_count,
            failure_class=classification.failure_class,
            error_message=error_message,
            error_details=details,
            is_recoverable=is_recoverable,
        )
        if not failed:
            return self._conflict_after_attempt(task=task, transition="fail")
        self.repository.update_job_progress(task.job_id)
        logger.warning(
            "Task %s failed (%s, recoverable=%s): %s",
            task.task_key,
            classification.failure_class.value,
            is_recoverable,
            error_message,
        )
        return AttemptReport(
            task_id=task.task_id,
            task_key=task.task_key,
            outcome=AttemptOutcome.FAILED,
            retry_count=retry_count,
            failure_class=classification.failure_class,
            error_message=error_message,
        )

    def _conflict_after_attempt(self, *, task: TaskView, transition: str) -> AttemptReport:
        current = self.repository.get_task(task.task_id)
        self._record_conflict(
            task=task,
            transition=transition,
            details={"observed_status": current.status.value if current else None},
        )
        self.repository.update_job_progress(task.job_id)
        return AttemptReport(
            task_id=task.task_id,
            task_key=task.task_key,
            outcome=AttemptOutcome.CONFLICT,
            retry_count=current.current_retry_count if current else task.current_retry_count,
        )

    def _record_conflict(
        self,
        *,
        task: TaskView,
        transition: str,
        details: dict[str, Any],
    ) -> None:
        logger.info(
            "Task %s: %s lost to a concurrent transition (%s)",
            task.task_key,
            transition,
            details.get("observed_status"),
        )
        observed = details.get("observed_status")
        self.repository.add_task_event(
            task_id=task.task_id,
            job_id=task.job_id,
            event_type="state_transition_conflict",
            status_from=TaskStatus.RUNNING if transition != "claim" else TaskStatus.QUEUED,
            status_to=TaskStatus(observed) if observed else None,
            details={"transition": transition, **details},
        )

    def _call_with_timeout(self, request: StepRequest) -> StepResult:
        if request.timeout_seconds <= 0:
            return self.executor.execute(request)

        outcome: dict[str, Any] = {}

        def _target() -> None:
            try:
                outcome["result"] = self.executor.execute(request)
            except Exception as error:  # noqa: BLE001
                outcome["error"] = error

        thread = threading.Thread(target=_target, name=f"step-{request.task_key}", daemon=True)
        thread.start()
        thread.join(request.timeout_seconds)
        if thread.is_alive():
            with self._lingering_lock:
                self._lingering[request.task_id] = thread
            raise StepTimeoutError(
                f"Step {request.task_key} timed out after {request.timeout_seconds}s",
            )
        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]

