"""Deterministic local executor for demos and tests."""

from __future__ import annotations

import threading
import time
from collections.abc import Mapping, Sequence

from coursegen.orchestrator.backend.base import (
    StepErrorCategory,
    StepExecutionError,
    StepRequest,
    StepResult,
)


class EchoStepExecutor:
    """Return placeholder content for every task, optionally failing on a script.

    ``failures`` maps a task key to the categories raised by its first attempts, in
    order; once a script is used up the task succeeds.
    """

    def __init__(
        self,
        *,
        failures: Mapping[str, Sequence[StepErrorCategory]] | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self._failures = {key: list(categories) for key, categories in (failures or {}).items()}
        self._delay_seconds = delay_seconds
        self._lock = threading.Lock()
        self.calls: list[StepRequest] = []

    def execute(self, request: StepRequest) -> StepResult:
        with self._lock:
            self.calls.append(request)
            script = self._failures.get(request.task_key)
            category = script.pop(0) if script else None
        if self._delay_seconds > 0:
            time.sleep(self._delay_seconds)
        if category is not None:
            raise StepExecutionError(
                f"Simulated {category.value} failure for {request.task_key}",
                category=category,
            )
        return StepResult(
            payload={
                "backend": "echo",
                "task_key": request.task_key,
                "task_type": request.task_type,
                "content": f"{request.title}: generated {request.task_type.replace('_', ' ')}",
                "attempt": request.attempt,
            },
        )

    def attempts_for(self, task_key: str) -> int:
        with self._lock:
            return sum(1 for call in self.calls if call.task_key == task_key)


def parse_failure_script(values: Sequence[str]) -> dict[str, list[StepErrorCategory]]:
    """Parse ``TASK_KEY=category[,category...]`` entries from the CLI."""

    script: dict[str, list[StepErrorCategory]] = {}
    for value in values:
        key, separator, raw_categories = value.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"Expected TASK_KEY=category[,category], got {value!r}")
        categories = [StepErrorCategory(item.strip()) for item in raw_categories.split(",") if item]
        script.setdefault(key.strip(), []).extend(categories)
    return script
