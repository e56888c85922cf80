"""Runtime configuration for the generation orchestrator and health monitor."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from coursegen.orchestrator.models import TaskType

DEFAULT_TASK_TIMEOUTS: dict[str, int] = {
    TaskType.LESSON_SECTION.value: 120,
    TaskType.LESSON_ASSESSMENT.value: 90,
    TaskType.LESSON_MIND_MAP.value: 60,
    TaskType.LESSON_BRAINBYTES.value: 60,
    TaskType.PATH_QUIZ.value: 90,
    TaskType.CLASS_EXAM.value: 120,
}

DEFAULT_TASK_MAX_RETRIES: dict[str, int] = {
    TaskType.LESSON_SECTION.value: 3,
    TaskType.LESSON_ASSESSMENT.value: 3,
    TaskType.LESSON_MIND_MAP.value: 2,
    TaskType.LESSON_BRAINBYTES.value: 2,
    TaskType.PATH_QUIZ.value: 3,
    TaskType.CLASS_EXAM.value: 3,
}


@dataclass(slots=True)
class OrchestratorSettings:
    """Dispatch loop and retry policy settings."""

    max_concurrency: int = 4
    poll_interval_seconds: float = 0.5
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 60.0
    owner_lease_seconds: int = 120
    background_dispatch: bool = False
    fail_job_on_task_failure: bool = True
    owner_id: str = field(default_factory=lambda: f"{socket.gethostname()}:{os.getpid()}")
    task_timeouts: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TASK_TIMEOUTS))
    task_max_retries: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_TASK_MAX_RETRIES),
    )

    def timeout_for(self, task_type: str) -> int:
        return self.task_timeouts.get(task_type, 120)

    def max_retries_for(self, task_type: str) -> int:
        return self.task_max_retries.get(task_type, 3)


@dataclass(slots=True)
class HealthSettings:
    """Staleness thresholds for the health monitor."""

    stall_threshold_seconds: int = 120
    stuck_multiplier: float = 3.0
    abandon_after_seconds: int = 1_800
    max_recovery_attempts: int = 3
    watch_interval_seconds: float = 30.0
    auto_recover: bool = False

    @property
    def stuck_threshold_seconds(self) -> float:
        return self.stall_threshold_seconds * self.stuck_multiplier


@dataclass(slots=True)
class UserContextSettings:
    """User context settings."""

    user_id: str = "default_user"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".coursegen.db")
    sqlite_busy_timeout_ms: int = 5_000
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        orchestrator = OrchestratorSettings(
            max_concurrency=int(os.getenv("COURSEGEN_MAX_CONCURRENCY", "4")),
            poll_interval_seconds=float(os.getenv("COURSEGEN_POLL_INTERVAL_SECONDS", "0.5")),
            retry_base_seconds=float(os.getenv("COURSEGEN_RETRY_BASE_SECONDS", "2.0")),
            retry_max_seconds=float(os.getenv("COURSEGEN_RETRY_MAX_SECONDS", "60.0")),
            owner_lease_seconds=int(os.getenv("COURSEGEN_OWNER_LEASE_SECONDS", "120")),
            background_dispatch=_env_bool("COURSEGEN_BACKGROUND_DISPATCH", default=False),
            fail_job_on_task_failure=_env_bool(
                "COURSEGEN_FAIL_JOB_ON_TASK_FAILURE",
                default=True,
            ),
        )
        owner_id = os.getenv("COURSEGEN_OWNER_ID", "").strip()
        if owner_id:
            orchestrator.owner_id = owner_id
        orchestrator.task_timeouts.update(
            _collect_task_overrides("COURSEGEN_TASK_TIMEOUTS"),
        )
        orchestrator.task_max_retries.update(
            _collect_task_overrides("COURSEGEN_TASK_MAX_RETRIES"),
        )
        return cls(
            db_path=db_path or Path(os.getenv("COURSEGEN_DB_PATH", ".coursegen.db")),
            sqlite_busy_timeout_ms=int(os.getenv("COURSEGEN_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            orchestrator=orchestrator,
            health=HealthSettings(
                stall_threshold_seconds=int(
                    os.getenv("COURSEGEN_STALL_THRESHOLD_SECONDS", "120"),
                ),
                stuck_multiplier=float(os.getenv("COURSEGEN_STUCK_MULTIPLIER", "3.0")),
                abandon_after_seconds=int(
                    os.getenv("COURSEGEN_ABANDON_AFTER_SECONDS", "1800"),
                ),
                max_recovery_attempts=int(os.getenv("COURSEGEN_MAX_RECOVERY_ATTEMPTS", "3")),
                watch_interval_seconds=float(
                    os.getenv("COURSEGEN_WATCH_INTERVAL_SECONDS", "30"),
                ),
                auto_recover=_env_bool("COURSEGEN_AUTO_RECOVER", default=False),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("COURSEGEN_USER_ID", "default_user"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the orchestrator cannot run with."""

        if self.orchestrator.max_concurrency <= 0:
            raise ValueError("COURSEGEN_MAX_CONCURRENCY must be a positive integer.")
        if self.orchestrator.poll_interval_seconds <= 0:
            raise ValueError("COURSEGEN_POLL_INTERVAL_SECONDS must be > 0.")
        if self.orchestrator.retry_base_seconds < 0:
            raise ValueError("COURSEGEN_RETRY_BASE_SECONDS must be >= 0.")
        if self.orchestrator.retry_max_seconds < self.orchestrator.retry_base_seconds:
            raise ValueError(
                "COURSEGEN_RETRY_MAX_SECONDS must be >= COURSEGEN_RETRY_BASE_SECONDS.",
            )
        if self.orchestrator.owner_lease_seconds <= 0:
            raise ValueError("COURSEGEN_OWNER_LEASE_SECONDS must be > 0.")
        for task_type, timeout in self.orchestrator.task_timeouts.items():
            if timeout <= 0:
                raise ValueError(
                    f"COURSEGEN_TASK_TIMEOUTS value for {task_type!r} must be > 0, got {timeout}",
                )
        for task_type, retries in self.orchestrator.task_max_retries.items():
            if retries < 0:
                raise ValueError(
                    "COURSEGEN_TASK_MAX_RETRIES value for "
                    f"{task_type!r} must be >= 0, got {retries}",
                )
        if self.health.stall_threshold_seconds <= 0:
            raise ValueError("COURSEGEN_STALL_THRESHOLD_SECONDS must be > 0.")
        if self.health.stuck_multiplier < 1:
            raise ValueError("COURSEGEN_STUCK_MULTIPLIER must be >= 1.")
        if self.health.abandon_after_seconds <= self.health.stall_threshold_seconds:
            raise ValueError(
                "COURSEGEN_ABANDON_AFTER_SECONDS must be greater than "
                "COURSEGEN_STALL_THRESHOLD_SECONDS.",
            )
        if self.health.max_recovery_attempts < 0:
            raise ValueError("COURSEGEN_MAX_RECOVERY_ATTEMPTS must be >= 0.")
        if self.health.watch_interval_seconds <= 0:
            raise ValueError("COURSEGEN_WATCH_INTERVAL_SECONDS must be > 0.")


def _collect_task_overrides(name: str) -> dict[str, int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return {}

    known = {task_type.value for task_type in TaskType}
    overrides: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                f"Invalid {name} entry: {token!r}. Expected format '<task_type>=<value>'.",
            )
        task_type, value_raw = (item.strip() for item in token.split("=", 1))
        if task_type not in known:
            raise ValueError(f"Invalid {name} entry: unknown task type {task_type!r}")
        try:
            overrides[task_type] = int(value_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid {name} value for {task_type!r}: {value_raw!r}",
            ) from error
    return overrides


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
