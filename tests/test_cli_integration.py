import json
import shlex
import subprocess
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

from autopilot.adapters import LocalIssueTracker
from autopilot.cli import cli
from autopilot.config import load_config, save_config
from autopilot.state import RunStore

PYTHON = shlex.quote(sys.executable)


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def _set_offline_collaborators(config_path: Path, *, lint_fails: bool = False) -> None:
    config = load_config(config_path)
    config.project.test_command = f"{PYTHON} -c \"print('2 passed')\""
    config.project.lint_command = (
        f"{PYTHON} -c \"import sys; print('src/app.py:1: E501 too long'); sys.exit(1)\""
        if lint_fails
        else f"{PYTHON} -c \"print('lint ok')\""
    )
    config.project.security_command = ""
    config.agent.binary = "autopilot-missing-agent"
    config.vcs.remote = ""
    config.vcs.gh_binary = "autopilot-missing-gh"
    save_config(config_path, config)


@pytest.fixture
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    repo_path = tmp_path / "repo"
    repo_path.mkdir()
    _init_git_repo(repo_path)
    monkeypatch.chdir(repo_path)
    monkeypatch.setenv("AUTOPILOT_LOG_LEVEL", "CRITICAL")
    return repo_path


def _init(repo: Path, **kwargs: bool) -> CliRunner:
    runner = CliRunner()
    result = runner.invoke(cli, ["init"])
    assert result.exit_code == 0, result.output
    _set_offline_collaborators(repo / "autopilot.toml", **kwargs)
    return runner


def _blocked_run(repo: Path) -> CliRunner:
    runner = _init(repo, lint_fails=True)
    result = runner.invoke(cli, ["run", "X-01"])
    assert result.exit_code == 1, result.output
    return runner


def test_init_writes_config_and_workspace(repo: Path) -> None:
    result = CliRunner().invoke(cli, ["init"])

    assert result.exit_code == 0
    assert "Initialized autopilot" in result.output
    assert load_config(repo / "autopilot.toml").workflow.max_review_passes == 7
    assert (repo / ".autopilot" / "state").is_dir()
    assert (repo / ".autopilot" / ".gitignore").read_text(encoding="utf-8") == "*\n"
    status = subprocess.run(
        ["git", "status", "--porcelain"], cwd=repo, check=True, text=True, capture_output=True
    ).stdout
    assert ".autopilot" not in status


def test_run_next_completes_with_caveats_when_tools_are_missing(repo: Path) -> None:
    runner = _init(repo)
    tracker = LocalIssueTracker(repo / ".autopilot" / "tracker.json")
    tracker.add_issue("X-01", "Add login form")

    result = runner.invoke(cli, ["run", "next"])

    assert result.exit_code == 0, result.output
    report = json.loads(result.stdout)
    assert report["target"] == "X-01"
    assert report["status"] == "approved"
    assert report["current_phase"] == "done"
    assert len(report["completed_phases"]) == 9
    caveats = [entry["message"] for entry in report["caveats"]]
    assert "agent unavailable: autopilot-missing-agent not found" in caveats
    assert "git push unavailable: no remote configured" in caveats
    assert tracker.get("X-01")["status"] == "ready_for_review"
    assert (repo / ".autopilot" / "worktrees" / "autopilot-x-01" / "README.md").exists()

    status = runner.invoke(cli, ["status"])
    assert status.exit_code == 0
    assert json.loads(status.stdout) == []


def test_run_next_with_empty_backlog_reports_nothing_to_do(repo: Path) -> None:
    runner = _init(repo)

    result = runner.invoke(cli, ["run", "next"])

    assert result.exit_code == 0
    assert json.loads(result.stdout) == {
        "target": None,
        "next_action": "none: no eligible backlog ticket",
    }


def test_blocked_run_exits_1_and_keeps_its_record(repo: Path) -> None:
    runner = _init(repo, lint_fails=True)

    result = runner.invoke(cli, ["run", "X-01"])

    assert result.exit_code == 1
    report = json.loads(result.stdout)
    assert report["status"] == "active"
    assert report["current_phase"] == "gate"
    assert report["retry_count"] == 1
    assert "quality gates failed: lint" in report["next_action"]

    status = runner.invoke(cli, ["status", "X-01"])
    payload = json.loads(status.stdout)
    assert payload["active"] is True
    assert payload["owner"] is None
    assert payload["current_phase"] == "gate"


def test_abort_then_run_exits_3_and_removes_the_record(repo: Path) -> None:
    runner = _blocked_run(repo)

    abort = runner.invoke(cli, ["abort", "X-01"])
    assert abort.exit_code == 0
    assert json.loads(abort.stdout)["abort_requested"] is True

    result = runner.invoke(cli, ["run", "X-01"])

    assert result.exit_code == 3
    report = json.loads(result.stdout)
    assert report["status"] == "aborted"
    assert report["current_phase"] == "gate"
    assert RunStore(repo / ".autopilot" / "state").open("X-01") is None


def test_live_foreign_lease_exits_4(repo: Path) -> None:
    runner = _blocked_run(repo)
    RunStore(repo / ".autopilot" / "state").acquire("X-01", owner="other-host:1:abcd")

    result = runner.invoke(cli, ["run", "X-01"])

    assert result.exit_code == 4
    assert "already active" in result.output


def test_corrupt_record_exits_3_and_is_left_in_place(repo: Path) -> None:
    runner = _blocked_run(repo)
    record = RunStore(repo / ".autopilot" / "state").record_path("X-01")
    record.write_text("{\"active\": true", encoding="utf-8")

    result = runner.invoke(cli, ["run", "X-01"])

    assert result.exit_code == 3
    assert "inspect or remove the record manually" in result.output
    assert record.read_text(encoding="utf-8") == "{\"active\": true"


def test_resume_without_a_record_exits_1(repo: Path) -> None:
    runner = _init(repo)

    result = runner.invoke(cli, ["run", "resume", "X-404"])

    assert result.exit_code == 1
    assert "No persisted run for 'X-404'" in result.output


def test_reap_removes_nothing_while_runs_are_live(repo: Path) -> None:
    runner = _blocked_run(repo)

    result = runner.invoke(cli, ["reap"])

    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"reaped": []}
