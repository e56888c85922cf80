"""Job dispatch loop: ordering, bounded concurrency, finalization."""

from __future__ import annotations

import logging
import threading
from collections.abc import Collection, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from coursegen.config import OrchestratorSettings
from coursegen.orchestrator.backend.base import StepExecutor
from coursegen.orchestrator.decomposition import GenerationRequest, plan_generation_tasks
from coursegen.orchestrator.models import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_TASK_STATUSES,
    AttemptOutcome,
    JobCreate,
    JobDetails,
    JobStatus,
    JobView,
    ProgressSnapshot,
    TaskStatus,
    TaskView,
)
from coursegen.orchestrator.progress import build_progress_snapshot
from coursegen.orchestrator.repository import GenerationRepository
from coursegen.orchestrator.runner import AttemptReport, TaskRunner
from coursegen.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchSummary:
    """Aggregate dispatch counters for CLI reporting."""

    job_id: str
    dispatched: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    conflicts: int = 0
    requeued_orphans: int = 0
    final_status: JobStatus | None = None
    halted_reason: str | None = None

    def record(self, report: AttemptReport) -> None:
        if report.outcome == AttemptOutcome.SUCCEEDED:
            self.succeeded += 1
        elif report.outcome == AttemptOutcome.RETRY_SCHEDULED:
            self.retried += 1
        elif report.outcome == AttemptOutcome.FAILED:
            self.failed += 1
        else:
            self.conflicts += 1


class GenerationOrchestrator:
    """Drives the tasks of a job to completion through a bounded worker pool."""

    def __init__(
        self,
        *,
        repository: GenerationRepository,
        executor: StepExecutor,
        settings: OrchestratorSettings | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or OrchestratorSettings()
        self.owner_id = self.settings.owner_id
        self.runner = TaskRunner(
            repository=repository,
            executor=executor,
            retry_base_seconds=self.settings.retry_base_seconds,
            retry_max_seconds=self.settings.retry_max_seconds,
        )
        self._guard = threading.Lock()
        self._job_locks: dict[str, threading.Lock] = {}
        self._active_jobs: set[str] = set()
        self._threads: dict[str, threading.Thread] = {}
        self._stop_event = threading.Event()

    def create_job(self, request: GenerationRequest) -> JobView:
        """Decompose the request and persist the queued job with all of its tasks."""

        tasks = plan_generation_tasks(request, settings=self.settings)
        if not tasks:
            raise ValueError("Generation request produced no tasks; add sections to the outline.")
        job = self.repository.create_job(
            JobCreate(
                user_id=request.user_id,
                target_id=request.target_id,
                title=request.title,
                request=request.to_dict(),
            ),
            tasks,
        )
        logger.info("Created job %s with %d tasks for %s", job.job_id, len(tasks), job.target_id)
        return job

    def engage(self, job_id: str, *, background: bool | None = None) -> DispatchSummary | None:
        """Run the dispatch loop inline, or on a daemon thread when dispatching in background.

        Inline calls wait for a loop already running for the same job in this process.
        """

        run_in_background = self.settings.background_dispatch if background is None else background
        if not run_in_background:
            return self.run_job(job_id)
        thread = threading.Thread(
            target=self._run_in_background,
            args=(job_id,),
            name=f"dispatch-{job_id[:8]}",
            daemon=True,
        )
        with self._guard:
            self._threads[job_id] = thread
        thread.start()
        return None

    def wait_for_dispatch(self, job_id: str, timeout: float | None = None) -> bool:
        """Join the background loop of a job; ``True`` when none is left running."""

        with self._guard:
            thread = self._threads.get(job_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def stop(self) -> None:
        """Ask every dispatch loop of this orchestrator to halt at the next boundary."""

        self._stop_event.set()

    def is_dispatching(self, job_id: str) -> bool:
        with self._guard:
            return job_id in self._active_jobs

    def run_job(self, job_id: str) -> DispatchSummary:
        """Drive a job until its tasks are terminal or it is paused or canceled."""

        with self._job_lock(job_id):
            with self._guard:
                self._active_jobs.add(job_id)
            try:
                return self._run_owned(job_id)
            finally:
                with self._guard:
                    self._active_jobs.discard(job_id)

    def reconcile_job(self, job_id: str) -> JobView:
        """Re-finalize a job whose tasks no longer have outstanding work."""

        job = self.repository.require_job(job_id)
        tasks = self.repository.list_tasks(job_id=job_id)
        if any(task.status in {TaskStatus.QUEUED, TaskStatus.RUNNING} for task in tasks):
            return job
        if job.status == JobStatus.FAILED:
            self.repository.update_job_progress(job_id)
            failed = [task for task in tasks if task.status == TaskStatus.FAILED]
            if failed and self.settings.fail_job_on_task_failure:
                self.repository.transition_job(
                    job_id=job_id,
                    expected={JobStatus.FAILED},
                    target=JobStatus.FAILED,
                    error_message=_failure_message(failed),
                    result=_job_result(tasks),
                )
            elif self.repository.transition_job(
                job_id=job_id,
                expected={JobStatus.FAILED},
                target=JobStatus.COMPLETED,
                result=_job_result(tasks),
            ):
                logger.info("Job %s reconciled to completed", job_id)
            return self.repository.require_job(job_id)
        if job.status == JobStatus.PAUSED:
            return self._finalize(job_id, expected={JobStatus.PAUSED})
        if job.status == JobStatus.PROCESSING and not self.is_dispatching(job_id):
            return self._finalize(job_id)
        return job

    def get_job(self, job_id: str) -> JobDetails:
        """Job with its tasks and progress snapshot."""

        job = self.repository.require_job(job_id)
        tasks = self.repository.list_tasks(job_id=job_id)
        return JobDetails(job=job, tasks=tasks, progress=build_progress_snapshot(job, tasks))

    def get_progress(self, job_id: str) -> ProgressSnapshot:
        job = self.repository.require_job(job_id)
        return build_progress_snapshot(job, self.repository.list_tasks(job_id=job_id))

    def list_active_jobs(self, user_id: str | None = None) -> list[JobView]:
        return self.repository.list_active_jobs(user_id=user_id)

    def _run_owned(self, job_id: str) -> DispatchSummary:
        summary = DispatchSummary(job_id=job_id)
        job = self.repository.require_job(job_id)
        if job.status not in {JobStatus.QUEUED, JobStatus.PROCESSING}:
            summary.final_status = job.status
            summary.halted_reason = f"job_{job.status.value}"
            return summary

        lease_cutoff = utc_now() - timedelta(seconds=self.settings.owner_lease_seconds)
        claimed = self.repository.claim_job(
            job_id=job_id,
            owner_id=self.owner_id,
            lease_expired_before=lease_cutoff,
        )
        if claimed is None:
            current = self.repository.require_job(job_id)
            summary.final_status = current.status
            summary.halted_reason = (
                "owned_by_another_worker"
                if current.status in ACTIVE_JOB_STATUSES
                else f"job_{current.status.value}"
            )
            logger.info("Job %s not claimed: %s", job_id, summary.halted_reason)
            return summary

        try:
            orphans = self.repository.requeue_running_tasks(job_id=job_id)
            if orphans:
                logger.warning("Job %s: requeued %d orphaned running task(s)", job_id, len(orphans))
            summary.requeued_orphans += len(orphans)
            self._dispatch(job_id, summary)
        except Exception as error:  # noqa: BLE001
            logger.exception("Orchestration fault in job %s", job_id)
            self.repository.transition_job(
                job_id=job_id,
                expected=ACTIVE_JOB_STATUSES,
                target=JobStatus.FAILED,
                error_message=f"Orchestration fault: {type(error).__name__}: {error}",
            )
            summary.final_status = JobStatus.FAILED
            summary.halted_reason = "orchestration_fault"
        finally:
            self.repository.release_job(job_id=job_id, owner_id=self.owner_id)
        return summary

    def _dispatch(self, job_id: str, summary: DispatchSummary) -> None:
        poll = self.settings.poll_interval_seconds
        in_flight: dict[Future[AttemptReport], str] = {}
        with ThreadPoolExecutor(
            max_workers=self.settings.max_concurrency,
            thread_name_prefix=f"job-{job_id[:8]}",
        ) as pool:
            while True:
                self.repository.touch_job_heartbeat(job_id=job_id, owner_id=self.owner_id)
                job = self.repository.require_job(job_id)
                if job.status != JobStatus.PROCESSING or self._stop_event.is_set():
                    if in_flight:
                        self._collect(in_flight, summary, timeout=poll)
                        continue
                    if job.status == JobStatus.PAUSED:
                        job = self.reconcile_job(job_id)
                    summary.final_status = job.status
                    summary.halted_reason = (
                        "shutdown"
                        if job.status == JobStatus.PROCESSING
                        else f"job_{job.status.value}"
                    )
                    logger.info("Job %s dispatch halted: %s", job_id, summary.halted_reason)
                    return

                tasks = self.repository.list_tasks(job_id=job_id)
                busy = set(in_flight.values()) | self.runner.busy_task_ids()
                ready = select_ready_tasks(tasks, now=utc_now(), exclude=busy)
                for task in ready[: self.settings.max_concurrency - len(in_flight)]:
                    in_flight[pool.submit(self.runner.run_attempt, task)] = task.task_id
                    summary.dispatched += 1
                if in_flight:
                    self._collect(in_flight, summary, timeout=poll)
                    continue

                queued = [task for task in tasks if task.status == TaskStatus.QUEUED]
                if queued:
                    self._stop_event.wait(_next_wakeup(queued, now=utc_now(), poll=poll))
                    continue
                if any(task.status == TaskStatus.RUNNING for task in tasks):
                    summary.requeued_orphans += len(
                        self.repository.requeue_running_tasks(job_id=job_id),
                    )
                    continue

                summary.final_status = self._finalize(job_id).status
                return

    def _collect(
        self,
        in_flight: dict[Future[AttemptReport], str],
        summary: DispatchSummary,
        *,
        timeout: float,
    ) -> None:
        done, _ = wait(in_flight, timeout=timeout, return_when=FIRST_COMPLETED)
        for future in done:
            in_flight.pop(future)
            summary.record(future.result())

    def _finalize(
        self,
        job_id: str,
        *,
        expected: Collection[JobStatus] = frozenset({JobStatus.PROCESSING}),
    ) -> JobView:
        self.repository.update_job_progress(job_id)
        tasks = self.repository.list_tasks(job_id=job_id)
        failed = [task for task in tasks if task.status == TaskStatus.FAILED]
        if failed and self.settings.fail_job_on_task_failure:
            moved = self.repository.transition_job(
                job_id=job_id,
                expected=expected,
                target=JobStatus.FAILED,
                error_message=_failure_message(failed),
                result=_job_result(tasks),
            )
        else:
            moved = self.repository.transition_job(
                job_id=job_id,
                expected=expected,
                target=JobStatus.COMPLETED,
                result=_job_result(tasks),
            )
        job = self.repository.require_job(job_id)
        if moved:
            logger.info(
                "Job %s finished: %s (%d failed task(s))",
                job_id,
                job.status.value,
                len(failed),
            )
        return job

    def _run_in_background(self, job_id: str) -> None:
        try:
            self.run_job(job_id)
        except Exception:  # noqa: BLE001
            logger.exception("Background dispatch of job %s crashed", job_id)

    def _job_lock(self, job_id: str) -> threading.Lock:
        with self._guard:
            return self._job_locks.setdefault(job_id, threading.Lock())


def select_ready_tasks(
    tasks: Sequence[TaskView],
    *,
    now: datetime,
    exclude: Collection[str] = (),
) -> list[TaskView]:
    """Queued, due tasks whose dependencies are terminal, by (priority, sequence)."""

    status_by_key = {task.task_key: task.status for task in tasks}
    ready = [
        task
        for task in tasks
        if task.status == TaskStatus.QUEUED
        and task.task_id not in exclude
        and task.run_after <= now
        and all(status_by_key.get(key) in TERMINAL_TASK_STATUSES for key in task.dependencies)
    ]
    ready.sort(key=lambda task: (task.priority, task.sequence))
    return ready


def _next_wakeup(queued: Sequence[TaskView], *, now: datetime, poll: float) -> float:
    delay = (min(task.run_after for task in queued) - now).total_seconds()
    if delay <= 0:
        return poll
    return min(delay, poll)


def _failure_message(failed: Sequence[TaskView]) -> str:
    details = "; ".join(
        f"{task.task_key}: {task.error_message or 'unknown error'}" for task in failed
    )
    return f"{len(failed)} task(s) failed: {details}"


def _job_result(tasks: Sequence[TaskView]) -> dict[str, Any]:
    return {
        "total_tasks": len(tasks),
        "outputs": {
            task.task_key: task.result_payload
            for task in tasks
            if task.status == TaskStatus.COMPLETED and task.result_payload is not None
        },
        "skipped": [task.task_key for task in tasks if task.status == TaskStatus.SKIPPED],
        "failed": [
            {
                "task_id": task.task_id,
                "task_key": task.task_key,
                "error_message": task.error_message,
                "failure_class": task.failure_class.value if task.failure_class else None,
                "is_recoverable": task.is_recoverable,
            }
            for task in tasks
            if task.status == TaskStatus.FAILED
        ],
    }
