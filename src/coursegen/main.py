"""CLI entrypoint for coursegen."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from coursegen import __version__
from coursegen.orchestrator.controllers import (
    GenerationCliController,
    JobActionCommand,
    JobClearCommand,
    JobCreateCommand,
    JobHealthCommand,
    JobListCommand,
    JobRecoverCommand,
    JobReportCommand,
    JobRunCommand,
    JobShowCommand,
    MonitorWatchCommand,
)
from coursegen.orchestrator.errors import OrchestratorError
from coursegen.orchestrator.models import ActionType

click.rich_click.USE_MARKDOWN = True
GENERATION_CONTROLLER = GenerationCliController()
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

T = TypeVar("T")

failure_option = click.option(
    "--fail",
    "failures",
    multiple=True,
    help=(
        "Scripted failures for the built-in echo executor, `TASK_KEY=category[,category]` "
        "with categories transient, timeout, permanent, invalid_input. Can be repeated."
    ),
)
db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
user_option = click.option(
    "--user-id",
    default=None,
    help="Acting user id. Defaults to COURSEGEN_USER_ID.",
)


@click.group()
@click.version_option(version=__version__, prog_name="coursegen")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log orchestrator activity.")
def coursegen(verbose: bool) -> None:
    """Course content generation job orchestrator."""

    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format=_LOG_FORMAT,
    )


@coursegen.group()
def jobs() -> None:
    """Generation job commands."""


@jobs.command("create")
@db_path_option
@click.argument("request_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@user_option
@click.option(
    "--run/--no-run",
    default=False,
    show_default=True,
    help="Dispatch the job inline right after creating it.",
)
@failure_option
def jobs_create(
    db_path: Path | None,
    request_path: Path,
    user_id: str | None,
    run: bool,
    failures: tuple[str, ...],
) -> None:
    """Create a job from a JSON course outline.

    The outline holds `target_id`, `title`, `paths[].lessons[].sections` and
    optional `options` toggles for assessments, quizzes, exam and media.
    """

    _emit_lines(
        _handle(
            lambda: GENERATION_CONTROLLER.create_job(
                JobCreateCommand(
                    db_path=db_path,
                    request_path=request_path,
                    user_id=user_id,
                    run=run,
                    failures=failures,
                ),
            ),
        ),
    )


@jobs.command("run")
@db_path_option
@click.argument("job_id")
@failure_option
def jobs_run(db_path: Path | None, job_id: str, failures: tuple[str, ...]) -> None:
    """Drive a job until it is finished, paused or canceled."""

    _emit_lines(
        _handle(
            lambda: GENERATION_CONTROLLER.run_job(
                JobRunCommand(db_path=db_path, job_id=job_id, failures=failures),
            ),
        ),
    )


@jobs.command("show")
@db_path_option
@click.argument("job_id")
@click.option("--events/--no-events", default=False, show_default=True, help="Show task events.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def jobs_show(db_path: Path | None, job_id: str, events: bool, output_format: str) -> None:
    """Show job progress, tasks and recovery suggestions."""

    _emit_lines(
        _handle(
            lambda: GENERATION_CONTROLLER.show_job(
                JobShowCommand(
                    db_path=db_path,
                    job_id=job_id,
                    show_events=events,
                    output_format=output_format.lower(),
                ),
            ),
        ),
    )


@jobs.command("list")
@db_path_option
@click.option("--user-id", default=None, help="Only jobs of this user.")
@click.option("--active/--all", "active_only", default=False, show_default=True)
@click.option("--include-cleared", is_flag=True, default=False, help="Include cleared jobs.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(  # noqa: PLR0913
    db_path: Path | None,
    user_id: str | None,
    active_only: bool,
    include_cleared: bool,
    limit: int,
) -> None:
    """List jobs, newest first."""

    _emit_lines(
        _handle(
            lambda: GENERATION_CONTROLLER.list_jobs(
                JobListCommand(
                    db_path=db_path,
                    user_id=user_id,
                    active_only=active_only,
                    include_cleared=include_cleared,
                    limit=limit,
                ),
            ),
        ),
    )


@jobs.command("action")
@db_path_option
@click.argument("job_id")
@click.argument(
    "action",
    type=click.Choice(
        [action.value for action in ActionType if action != ActionType.EXPORT_REPORT],
        case_sensitive=False,
    ),
)
@click.option(
    "--task",
    "tasks",
    multiple=True,
    help="Target task id or task key for retry_task/skip_task. Can be repeated.",
)
@click.option(
    "--reset-budget",
    is_flag=True,
    default=False,
    help="Reset the retry counter of retried tasks.",
)
@user_option
@failure_option
def jobs_action(  # noqa: PLR0913
    db_path: Path | None,
    job_id: str,
    action: str,
    tasks: tuple[str, ...],
    reset_budget: bool,
    user_id: str | None,
    failures: tuple[str, ...],
) -> None:
    """Apply a recovery action: retry/skip tasks, pause, resume or cancel the job."""

    _emit_lines(
        _handle(
            lambda: GENERATION_CONTROLLER.post_action(
                JobActionCommand(
                    db_path=db_path,
                    job_id=job_id,
                    action=action.lower(),
                    tasks=tasks,
                    user_id=user_id,
                    reset_budget=reset_budget,
                    failures=failures,
                ),
            ),
        ),
    )


@jobs.command("health")
@db_path_option
@click.argument("job_id", required=False)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def jobs_health(db_path: Path | None, job_id: str | None, output_format: str) -> None:
    """Classify one job, or every active job, as healthy, stalled, stuck or abandoned."""

    _emit_lines(
        _handle(
            lambda: GENERATION_CONTROLLER.health(
                JobHealthCommand(
                    db_path=db_path,
                    job_id=job_id,
                    output_format=output_format.lower(),
                ),
            ),
        ),
    )


@jobs.command("recover")
@db_path_option
@click.argument("job_id")
@click.option(
    "--smart",
    is_flag=True,
    default=False,
    help="Retry recoverable failed tasks and skip the rest instead of health-based recovery.",
)
@user_option
@failure_option
def jobs_recover(
    db_path: Path | None,
    job_id: str,
    smart: bool,
    user_id: str | None,
    failures: tuple[str, ...],
) -> None:
    """Recover a stalled, stuck or abandoned job."""

    _emit_lines(
        _handle(
            lambda: GENERATION_CONTROLLER.recover(
                JobRecoverCommand(
                    db_path=db_path,
                    job_id=job_id,
                    user_id=user_id,
                    smart=smart,
                    failures=failures,
                ),
            ),
        ),
    )


@jobs.command("report")
@db_path_option
@click.argument("job_id")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["json", "csv"], case_sensitive=False),
    default="json",
    show_default=True,
    help="Report format.",
)
@click.option(
    "--output",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the report to a file instead of stdout.",
)
@user_option
def jobs_report(
    db_path: Path | None,
    job_id: str,
    output_format: str,
    output_path: Path | None,
    user_id: str | None,
) -> None:
    """Export a job report with task outcomes, errors and recommendations."""

    _emit_lines(
        _handle(
            lambda: GENERATION_CONTROLLER.report(
                JobReportCommand(
                    db_path=db_path,
                    job_id=job_id,
                    user_id=user_id,
                    output_format=output_format.lower(),
                    output_path=output_path,
                ),
            ),
        ),
    )


@jobs.command("clear")
@db_path_option
@click.argument("job_id")
@user_option
def jobs_clear(db_path: Path | None, job_id: str, user_id: str | None) -> None:
    """Hide a finished job from default listings."""

    _emit_lines(
        _handle(
            lambda: GENERATION_CONTROLLER.clear_job(
                JobClearCommand(db_path=db_path, job_id=job_id, user_id=user_id),
            ),
        ),
    )


@coursegen.group()
def monitor() -> None:
    """Health monitor commands."""


@monitor.command("watch")
@db_path_option
@click.option(
    "--interval",
    "interval_seconds",
    type=click.FloatRange(min=0.0, min_open=True),
    default=None,
    help="Seconds between scans. Defaults to COURSEGEN_WATCH_INTERVAL_SECONDS.",
)
@click.option(
    "--auto-recover/--no-auto-recover",
    default=None,
    help="Recover unhealthy jobs automatically. Defaults to COURSEGEN_AUTO_RECOVER.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many scans.",
)
@failure_option
def monitor_watch(
    db_path: Path | None,
    interval_seconds: float | None,
    auto_recover: bool | None,
    max_cycles: int | None,
    failures: tuple[str, ...],
) -> None:
    """Scan active jobs on a fixed interval until interrupted."""

    command = MonitorWatchCommand(
        db_path=db_path,
        interval_seconds=interval_seconds,
        auto_recover=auto_recover,
        max_cycles=max_cycles,
        failures=failures,
    )
    try:
        lines = _handle(lambda: GENERATION_CONTROLLER.watch(command, emit=click.echo))
    except KeyboardInterrupt:
        lines = ["Monitor interrupted."]
    _emit_lines(lines)


def _handle(action: Callable[[], T]) -> T:
    try:
        return action()
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    coursegen()
