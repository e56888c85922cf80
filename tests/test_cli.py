from __future__ import annotations

import csv
import io
import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from conftest import sections_only_request
from coursegen.main import coursegen

pytestmark = [
    allure.epic("Generation Orchestrator"),
    allure.feature("CLI Ops"),
]


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch, clean_env) -> Path:
    monkeypatch.setenv("COURSEGEN_USER_ID", "user-1")
    monkeypatch.setenv("COURSEGEN_RETRY_BASE_SECONDS", "0")
    monkeypatch.setenv("COURSEGEN_RETRY_MAX_SECONDS", "0")
    monkeypatch.setenv("COURSEGEN_POLL_INTERVAL_SECONDS", "0.01")
    return tmp_path / "coursegen-cli.db"


def _write_request(tmp_path: Path, section_count: int = 3) -> Path:
    request_path = tmp_path / "request.json"
    request_path.write_text(
        json.dumps(sections_only_request(section_count).to_dict()),
        "utf-8",
    )
    return request_path


def _invoke(runner: CliRunner, db_path: Path, *args: str):
    group, command, *rest = args
    result = runner.invoke(coursegen, [group, command, "--db-path", str(db_path), *rest])
    assert result.exit_code == 0, result.output
    return result


def _job_id(output: str) -> str:
    match = re.search(r"job_id=(\S+)", output)
    assert match is not None, output
    return match.group(1)


def test_cli_create_run_inspect_and_recover(tmp_path: Path, cli_env: Path) -> None:
    runner = CliRunner()
    request_path = _write_request(tmp_path)

    created = _invoke(
        runner,
        cli_env,
        "jobs",
        "create",
        str(request_path),
        "--run",
        "--fail",
        "section-l1-1=permanent",
    )
    job_id = _job_id(created.output)
    assert "tasks=3 status=queued" in created.output
    assert "final_status=failed" in created.output
    assert "failed section-l1-1" in created.output
    assert "recoverable=no" in created.output

    shown = _invoke(runner, cli_env, "jobs", "show", job_id, "--format", "json")
    payload = json.loads(shown.output)
    assert payload["job"]["status"] == "failed"
    assert payload["job"]["user_id"] == "user-1"
    assert [task["status"] for task in payload["tasks"]] == ["completed", "failed", "completed"]
    assert [suggestion["action"] for suggestion in payload["suggestions"]] == ["skip_task"]

    table = _invoke(runner, cli_env, "jobs", "show", job_id, "--events")
    assert "Status: failed" in table.output
    assert "Suggestion:" in table.output
    assert "Events:" in table.output

    skipped = _invoke(
        runner,
        cli_env,
        "jobs",
        "action",
        job_id,
        "skip_task",
        "--task",
        "section-l1-1",
    )
    assert "Action skip_task: success=yes" in skipped.output
    assert "job status=completed" in skipped.output

    report = _invoke(runner, cli_env, "jobs", "report", job_id, "--format", "csv")
    rows = list(csv.reader(io.StringIO(report.output)))
    assert rows[0] == ["Course Generation Report"]
    assert ["Job ID", job_id] in rows

    report_path = tmp_path / "reports" / "report.json"
    written = _invoke(runner, cli_env, "jobs", "report", job_id, "--output", str(report_path))
    assert "Report written" in written.output
    saved = json.loads(report_path.read_text("utf-8"))
    assert saved["job"]["job_id"] == job_id
    assert saved["summary"]["success_rate"] == pytest.approx(66.67)

    health = _invoke(runner, cli_env, "jobs", "health", job_id)
    assert f"{job_id} state=healthy status=completed" in health.output

    listed = _invoke(runner, cli_env, "jobs", "list")
    assert "Jobs: 1" in listed.output
    assert job_id in listed.output

    cleared = _invoke(runner, cli_env, "jobs", "clear", job_id)
    assert f"Job cleared: {job_id}" in cleared.output
    assert "Jobs: 0" in _invoke(runner, cli_env, "jobs", "list").output
    assert "Jobs: 1" in _invoke(runner, cli_env, "jobs", "list", "--include-cleared").output


def test_cli_run_and_monitor_watch(tmp_path: Path, cli_env: Path) -> None:
    runner = CliRunner()
    request_path = _write_request(tmp_path, section_count=2)

    created = _invoke(runner, cli_env, "jobs", "create", str(request_path))
    job_id = _job_id(created.output)

    health = _invoke(runner, cli_env, "jobs", "health", "--format", "json")
    statuses = json.loads(health.output)
    assert [status["job_id"] for status in statuses] == [job_id]

    watched = _invoke(
        runner,
        cli_env,
        "monitor",
        "watch",
        "--max-cycles",
        "1",
        "--interval",
        "0.01",
    )
    assert f"{job_id} state=healthy status=queued" in watched.output
    assert "Monitor stopped after 1 cycle(s)" in watched.output

    ran = _invoke(runner, cli_env, "jobs", "run", job_id)
    assert "final_status=completed" in ran.output
    assert "progress=100.0%" in ran.output
    assert "No active jobs." in _invoke(runner, cli_env, "jobs", "health").output


def test_cli_reports_orchestrator_errors(tmp_path: Path, cli_env: Path) -> None:
    runner = CliRunner()

    missing = runner.invoke(coursegen, ["jobs", "show", "--db-path", str(cli_env), "no-such-job"])

    assert missing.exit_code == 1

    bad_request = tmp_path / "bad.json"
    bad_request.write_text(json.dumps({"target_id": "course-1", "paths": []}), "utf-8")
    rejected = runner.invoke(
        coursegen,
        ["jobs", "create", "--db-path", str(cli_env), str(bad_request)],
    )

    assert rejected.exit_code == 1
