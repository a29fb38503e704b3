"""Tests for the attoloop CLI."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from attoloop.cli import main

PASS_REPORT = "# Report\n\n✅ VERIFIED COMPLETE\n\n## Summary\n\nAll done.\n"


def _use_fake_agent(workspace: Path, argv: tuple[str, list[str]]) -> None:
    command, args = argv
    (workspace / ".git").mkdir(exist_ok=True)
    (workspace / ".attoloop.yaml").write_text(
        f"agent:\n  command: {json.dumps(command)}\n  args: {json.dumps(args)}\n"
        "  grace_period_ms: 500\n",
        encoding="utf-8",
    )


def _json(output: str) -> dict:
    # Log lines may precede the document on a mixed stream.
    return json.loads(output[output.index("{\n") :])


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def test_stop_creates_sentinel(runner: CliRunner, workspace: Path) -> None:
    result = runner.invoke(main, ["stop", str(workspace)])
    assert result.exit_code == 0
    assert (workspace / ".stop").read_text().startswith("Stop requested at")


def test_status_json(runner: CliRunner, workspace: Path) -> None:
    (workspace / ".status.json").write_text(
        json.dumps({"complete": False, "progress": {"completed": 2, "total": 5}, "summary": "halfway"})
    )
    result = runner.invoke(main, ["status", str(workspace), "--json"])
    assert result.exit_code == 0
    data = _json(result.output)
    assert data["completed"] == 2
    assert data["remaining"] == 3
    assert data["percentage"] == 40
    assert data["summary"] == "halfway"
    assert data["warnings"] == []


def test_status_text_reports_warnings(runner: CliRunner, workspace: Path) -> None:
    (workspace / ".status.json").write_text(json.dumps({"complete": True, "progress": {"completed": 1, "total": 5}}))
    result = runner.invoke(main, ["status", str(workspace)])
    assert result.exit_code == 0
    assert "progress=1/5" in result.output
    assert "warning: marked complete" in result.output


def test_run_requires_instructions(runner: CliRunner, tmp_path: Path) -> None:
    result = runner.invoke(main, ["run", str(tmp_path)])
    assert result.exit_code == 1
    assert "INSTRUCTIONS.md" in result.output


def test_run_rejects_verbose_and_quiet(runner: CliRunner, workspace: Path) -> None:
    result = runner.invoke(main, ["run", str(workspace), "-v", "-q"])
    assert result.exit_code == 2


def test_dry_run_shows_prompt(runner: CliRunner, workspace: Path) -> None:
    result = runner.invoke(main, ["run", str(workspace), "--dry-run", "--mode", "autonomous"])
    assert result.exit_code == 0
    assert "# Iteration 1" in result.output
    assert "Build the thing" in result.output
    assert '"mode": "autonomous"' in result.output


def test_run_to_completion(runner: CliRunner, workspace: Path, fake_agent_argv) -> None:
    _use_fake_agent(workspace, fake_agent_argv)
    status = workspace / ".status.json"
    env = {
        "FAKE_AGENT_STATUS": f"{status}="
        + json.dumps({"complete": True, "progress": {"completed": 2, "total": 2}, "summary": "all done"})
    }
    result = runner.invoke(
        main,
        ["run", str(workspace), "--no-verify", "--no-delay", "--output", "quiet", "-m", "3"],
        env=env,
    )
    assert result.exit_code == 0, result.output
    assert "completed" in result.output
    logs = list((workspace / "logs").glob("iterate-*.log"))
    assert len(logs) == 1
    assert "ITERATION 1" in logs[0].read_text()


def test_run_budget_exhausted(runner: CliRunner, workspace: Path, fake_agent_argv) -> None:
    _use_fake_agent(workspace, fake_agent_argv)
    result = runner.invoke(main, ["run", str(workspace), "--no-delay", "-q", "-m", "2"])
    assert result.exit_code == 0, result.output
    assert "iteration budget exhausted" in result.output
    assert json.loads((workspace / ".status.json").read_text())["complete"] is False


def test_run_missing_agent_errors(runner: CliRunner, workspace: Path) -> None:
    result = runner.invoke(
        main,
        ["run", str(workspace), "--no-delay", "-q", "--agent-command", str(workspace / "no-agent")],
    )
    assert result.exit_code == 1
    assert "agent could not be spawned" in result.output


def test_run_removes_stop_file(runner: CliRunner, workspace: Path, fake_agent_argv) -> None:
    _use_fake_agent(workspace, fake_agent_argv)
    (workspace / ".stop").write_text("stop")
    result = runner.invoke(main, ["run", str(workspace), "--no-delay", "-q", "-m", "5"])
    assert result.exit_code == 0, result.output
    assert "stop requested (file)" in result.output
    assert not (workspace / ".stop").exists()


def test_verify_pass(runner: CliRunner, workspace: Path, fake_agent_argv) -> None:
    _use_fake_agent(workspace, fake_agent_argv)
    report = workspace / "verification-report.md"
    result = runner.invoke(
        main,
        ["verify", str(workspace), "--json"],
        env={"FAKE_AGENT_WRITE": f"{report}={PASS_REPORT}"},
    )
    assert result.exit_code == 0, result.output
    data = _json(result.output)
    assert data["status"] == "pass"
    assert data["summary"] == "All done."


def test_verify_without_report_needs_review(runner: CliRunner, workspace: Path, fake_agent_argv) -> None:
    _use_fake_agent(workspace, fake_agent_argv)
    result = runner.invoke(main, ["verify", str(workspace), "--json"])
    assert result.exit_code == 2
    assert _json(result.output)["status"] == "needs_review"


def test_invalid_config_is_reported(runner: CliRunner, workspace: Path) -> None:
    (workspace / ".git").mkdir()
    (workspace / ".attoloop.yaml").write_text("run:\n  mode: turbo\n")
    result = runner.invoke(main, ["status", str(workspace)])
    assert result.exit_code == 1
    assert "run.mode" in result.output
