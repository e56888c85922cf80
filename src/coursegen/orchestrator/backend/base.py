"""Step executor interface for generation task attempts."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol


class StepErrorCategory(str, Enum):
    """Failure categories a step executor may report."""

    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    PERMANENT = "permanent"
    INVALID_INPUT = "invalid_input"


@dataclass(slots=True)
class StepRequest:
    """Inputs required to execute one task attempt."""

    job_id: str
    task_id: str
    task_key: str
    task_type: str
    title: str
    group_key: str | None
    attempt: int
    timeout_seconds: int
    input_payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class StepResult:
    """Generated content returned by a successful attempt."""

    payload: dict[str, Any] = field(default_factory=dict)


class StepExecutionError(RuntimeError):
    """Typed executor failure; ``category`` drives retryability."""

    def __init__(
        self,
        message: str,
        *,
        category: StepErrorCategory = StepErrorCategory.TRANSIENT,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.details = details or {}


class StepExecutor(Protocol):
    """Protocol implemented by content generation backends."""

    def execute(self, request: StepRequest) -> StepResult:
        """Run one attempt and return the generated payload."""
