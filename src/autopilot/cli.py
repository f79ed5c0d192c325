from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Any

import click

from autopilot.adapters import CommandGateRunner, GitVersionControl, LocalIssueTracker
from autopilot.adapters.browser import PlaywrightBrowserDriver
from autopilot.agents import AgentCLI, AuthorAgent, DocumenterAgent, FixerAgent, ReviewerAgent
from autopilot.config import AutopilotConfig, load_config, save_config
from autopilot.errors import (
    AlreadyActive,
    AutopilotError,
    CollaboratorError,
    FatalStateCorruption,
)
from autopilot.guard import evaluate_stop
from autopilot.logging_config import setup_logging
from autopilot.machine import PhaseStateMachine
from autopilot.models import RunReport, RunStatus
from autopilot.state import PersistedState, RunStore
from autopilot.steps import Collaborators

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "autopilot.toml"
WORKSPACE_DIR = ".autopilot"


class ExitCode(IntEnum):
    APPROVED = 0
    BLOCKED = 1
    ESCALATED = 2
    ABORTED = 3
    ALREADY_ACTIVE = 4


STATUS_EXIT_CODES = {
    RunStatus.APPROVED: ExitCode.APPROVED,
    RunStatus.ACTIVE: ExitCode.BLOCKED,
    RunStatus.ESCALATED: ExitCode.ESCALATED,
    RunStatus.ABORTED: ExitCode.ABORTED,
}


class AutopilotCLIError(click.ClickException):
    def __init__(self, message: str, exit_code: int = ExitCode.BLOCKED) -> None:
        super().__init__(message)
        self.exit_code = int(exit_code)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: AutopilotConfig
    store: RunStore
    tracker: LocalIssueTracker
    machine: PhaseStateMachine


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _ensure_workspace(repo_root: Path) -> Path:
    workspace = repo_root / WORKSPACE_DIR
    workspace.mkdir(parents=True, exist_ok=True)
    ignore_file = workspace / ".gitignore"
    if not ignore_file.exists():
        ignore_file.write_text("*\n", encoding="utf-8")
    return workspace


def _build_store(repo_root: Path, config: AutopilotConfig) -> RunStore:
    return RunStore(
        _resolve_path(repo_root, config.state.directory),
        stale_after_seconds=config.workflow.stale_after_seconds,
        lock_timeout_seconds=config.state.lock_timeout_seconds,
    )


def _build_collaborators(
    repo_root: Path, config: AutopilotConfig, tracker: LocalIssueTracker
) -> Collaborators:
    backend = AgentCLI(
        config.agent.binary,
        model=config.agent.model,
        timeout_seconds=config.agent.timeout_seconds,
    )
    return Collaborators(
        tracker=tracker,
        vcs=GitVersionControl(
            repo_root,
            worktree_root=_resolve_path(repo_root, config.vcs.worktree_root),
            base_branch=config.vcs.base_branch,
            remote=config.vcs.remote,
            gh_binary=config.vcs.gh_binary,
            timeout_seconds=config.vcs.timeout_seconds,
        ),
        gates=CommandGateRunner(
            config.project.gate_commands(),
            working_directory=repo_root,
            timeout_seconds=config.workflow.gate_timeout_seconds,
        ),
        reviewer=ReviewerAgent(backend),
        applier=FixerAgent(backend),
        author=AuthorAgent(backend),
        docs=DocumenterAgent(backend),
        browser=PlaywrightBrowserDriver,
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    store = _build_store(repo_root, config)
    tracker = LocalIssueTracker(_resolve_path(repo_root, config.tracker.path))
    machine = PhaseStateMachine(
        store,
        config,
        _build_collaborators(repo_root, config, tracker),
        repo_root=repo_root,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        tracker=tracker,
        machine=machine,
    )


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _finish(report: RunReport) -> None:
    _echo_json(report.to_dict())
    code = STATUS_EXIT_CODES[report.status]
    if code is not ExitCode.APPROVED:
        click.get_current_context().exit(int(code))


def _state_summary(store: RunStore, state: PersistedState) -> dict[str, Any]:
    return {
        "target": state.target,
        "run_id": state.run.id,
        "status": state.run.status.value,
        "current_phase": state.run.current_phase.value,
        "active": state.active,
        "owner": state.owner,
        "started_at": state.started_at,
        "last_checked_at": state.last_checked_at,
        "reinforcement_count": state.reinforcement_count,
        "stale": store.is_stale(state),
        "abort_requested": state.abort_requested,
    }


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log debug output to stderr.")
def cli(verbose: bool) -> None:
    """Autopilot: resumable autonomous development runs."""
    repo_root = Path.cwd().resolve()
    workspace = repo_root / WORKSPACE_DIR
    setup_logging(verbose=verbose, log_dir=workspace / "logs" if workspace.is_dir() else None)


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    _ensure_workspace(repo_root)
    _resolve_path(repo_root, config.state.directory).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized autopilot in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {_resolve_path(repo_root, config.state.directory)}")


@cli.command("run")
@click.argument("target")
@click.argument("resume_target", required=False)
@click.option("--ticket", "ticket_ref", default=None, help="Tracker ticket linked to the run.")
@click.option("--project", "project_filter", default=None, help="Project filter for `run next`.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def run_command(
    target: str,
    resume_target: str | None,
    ticket_ref: str | None,
    project_filter: str | None,
    config_value: str,
) -> None:
    """Run TARGET, `run next`, or `run resume TARGET`."""
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_path(repo_root, config_value))
    _ensure_workspace(repo_root)

    resume = False
    if target == "resume":
        if not resume_target:
            raise click.UsageError("`run resume` needs a TARGET.")
        target, resume = resume_target, True
    elif target == "next":
        if resume_target:
            raise click.UsageError("`run next` takes no TARGET.")
        try:
            ticket = runtime.tracker.fetch_next(
                project_filter or runtime.config.tracker.project_filter or None
            )
        except CollaboratorError as exc:
            raise AutopilotCLIError(str(exc)) from exc
        if ticket is None:
            _echo_json({"target": None, "next_action": "none: no eligible backlog ticket"})
            return
        target, ticket_ref = ticket, ticket
    elif resume_target:
        raise click.UsageError(f"Unexpected extra argument: {resume_target}")

    try:
        report = runtime.machine.run(target, ticket_ref=ticket_ref, resume=resume)
    except AlreadyActive as exc:
        raise AutopilotCLIError(str(exc), ExitCode.ALREADY_ACTIVE) from exc
    except FatalStateCorruption as exc:
        raise AutopilotCLIError(
            f"{exc}; inspect or remove the record manually.", ExitCode.ABORTED
        ) from exc
    except AutopilotError as exc:
        raise AutopilotCLIError(str(exc)) from exc
    _finish(report)


@cli.command("status")
@click.argument("target", required=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(target: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_path(repo_root, config_value))
    store = _build_store(repo_root, config)
    try:
        if target is None:
            _echo_json([_state_summary(store, state) for state in store.list_states()])
            return
        state = store.open(target)
    except FatalStateCorruption as exc:
        raise AutopilotCLIError(str(exc), ExitCode.ABORTED) from exc
    if state is None:
        raise AutopilotCLIError(f"No persisted run for '{target}'.")
    payload = _state_summary(store, state)
    payload["report"] = RunReport.from_run(state.run).to_dict()
    _echo_json(payload)


@cli.command("abort")
@click.argument("target")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def abort_command(target: str, config_value: str) -> None:
    """Ask the run for TARGET to stop at its next phase boundary."""
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_path(repo_root, config_value))
    store = _build_store(repo_root, config)
    try:
        state = store.request_abort(target)
    except FatalStateCorruption as exc:
        raise AutopilotCLIError(str(exc), ExitCode.ABORTED) from exc
    except AutopilotError as exc:
        raise AutopilotCLIError(str(exc)) from exc
    next_action = (
        "the running invocation stops at its next phase boundary"
        if state.owner
        else f"run `autopilot run {target}` to finalize"
    )
    _echo_json({"target": target, "abort_requested": True, "next_action": next_action})


@cli.command("reap")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def reap_command(config_value: str) -> None:
    """Abort and remove Active runs with no liveness signal."""
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_path(repo_root, config_value))
    store = _build_store(repo_root, config)
    _echo_json({"reaped": store.reap_stale()})


@cli.command("guard")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def guard_command(config_value: str) -> None:
    """Stop hook: read a stop event on stdin and block while a run is in flight."""
    raw = sys.stdin.read()
    try:
        event = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        event = {}
    if not isinstance(event, dict):
        event = {}

    repo_root = Path(str(event.get("cwd") or event.get("directory") or Path.cwd())).resolve()
    try:
        config = load_config(_resolve_path(repo_root, config_value))
        decision = evaluate_stop(
            event,
            _build_store(repo_root, config),
            max_blocks=config.workflow.max_guard_blocks,
        )
    except (AutopilotError, OSError, ValueError) as exc:
        logger.warning("Stop guard skipped: %s", exc)
        return
    if decision is not None:
        click.echo(json.dumps(decision, ensure_ascii=False))
