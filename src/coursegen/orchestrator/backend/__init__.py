from coursegen.orchestrator.backend.base import (
    StepErrorCategory,
    StepExecutionError,
    StepExecutor,
    StepRequest,
    StepResult,
)
from coursegen.orchestrator.backend.echo import EchoStepExecutor

__all__ = [
    "EchoStepExecutor",
    "StepErrorCategory",
    "StepExecutionError",
    "StepExecutor",
    "StepRequest",
    "StepResult",
]
