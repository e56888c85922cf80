"""Use-case facade over the orchestrator, health monitor and recovery controller."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from coursegen.config import Settings
from coursegen.orchestrator.backend.base import StepExecutor
from coursegen.orchestrator.decomposition import GenerationRequest
from coursegen.orchestrator.dispatcher import DispatchSummary, GenerationOrchestrator
from coursegen.orchestrator.errors import JobAccessDeniedError
from coursegen.orchestrator.health import HealthMonitor
from coursegen.orchestrator.models import (
    ActionResult,
    ActionType,
    HealthStatus,
    JobDetails,
    JobView,
    RecoveryResult,
    RecoverySuggestion,
    SmartRecoveryResult,
)
from coursegen.orchestrator.recovery import RecoveryController
from coursegen.orchestrator.repository import GenerationRepository


class GenerationService:
    """Entry point used by the CLI and by embedding applications."""

    def __init__(
        self,
        *,
        repository: GenerationRepository,
        executor: StepExecutor,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.repository = repository
        self.orchestrator = GenerationOrchestrator(
            repository=repository,
            executor=executor,
            settings=self.settings.orchestrator,
        )
        self.monitor = HealthMonitor(
            repository=repository,
            orchestrator=self.orchestrator,
            settings=self.settings.health,
        )
        self.recovery = RecoveryController(repository=repository, orchestrator=self.orchestrator)

    def create_job(
        self,
        request: GenerationRequest | Mapping[str, Any],
        *,
        start: bool = False,
    ) -> str:
        """Persist a queued job for the request; optionally engage dispatch right away."""

        if not isinstance(request, GenerationRequest):
            request = GenerationRequest.from_dict(
                request,
                user_id=self.settings.user_context.user_id if "user_id" not in request else None,
            )
        job = self.orchestrator.create_job(request)
        if start:
            self.orchestrator.engage(job.job_id)
        return job.job_id

    def run_job(self, job_id: str) -> DispatchSummary:
        """Drive a job inline until it is terminal, paused or owned elsewhere."""

        return self.orchestrator.run_job(job_id)

    def get_job(self, job_id: str, *, user_id: str | None = None) -> JobDetails:
        details = self.orchestrator.get_job(job_id)
        if user_id is not None and details.job.user_id != user_id:
            raise JobAccessDeniedError(job_id, user_id)
        return details

    def list_jobs(
        self,
        *,
        user_id: str | None = None,
        include_cleared: bool = False,
        limit: int = 50,
    ) -> list[JobView]:
        return self.repository.list_jobs(
            user_id=user_id,
            include_cleared=include_cleared,
            limit=limit,
        )

    def list_active_jobs(self, user_id: str | None = None) -> list[JobView]:
        return self.orchestrator.list_active_jobs(user_id=user_id)

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
        return self.recovery.post_action(
            job_id=job_id,
            actor_user_id=actor_user_id,
            action_type=action_type,
            task_ids=task_ids,
            reset_budget=reset_budget,
            report_format=report_format,
        )

    def smart_recover(self, *, job_id: str, actor_user_id: str) -> SmartRecoveryResult:
        return self.recovery.smart_recover(job_id=job_id, actor_user_id=actor_user_id)

    def recovery_suggestions(self, job_id: str) -> list[RecoverySuggestion]:
        return self.recovery.recovery_suggestions(job_id)

    def get_health(self, job_id: str) -> HealthStatus:
        return self.monitor.check_job(job_id)

    def attempt_recovery(self, job_id: str) -> RecoveryResult:
        return self.monitor.attempt_recovery(job_id)

    def clear_job(self, *, job_id: str, actor_user_id: str) -> bool:
        """Hide a finished job from default listings."""

        job = self.repository.require_job(job_id)
        if job.user_id != actor_user_id:
            raise JobAccessDeniedError(job_id, actor_user_id)
        return self.repository.clear_job(job_id)
