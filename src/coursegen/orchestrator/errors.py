"""Domain errors raised by the orchestrator and recovery controller."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for operator-facing orchestration errors."""


class JobNotFoundError(OrchestratorError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class TaskNotFoundError(OrchestratorError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class JobAccessDeniedError(OrchestratorError):
    def __init__(self, job_id: str, actor_user_id: str) -> None:
        super().__init__(f"User {actor_user_id} does not own job {job_id}")
        self.job_id = job_id
        self.actor_user_id = actor_user_id


class InvalidTransitionError(OrchestratorError):
    """Requested status change is not allowed from the current state."""


class StateConflictError(OrchestratorError):
    """Guarded update lost a race with a concurrent transition."""
