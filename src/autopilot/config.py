from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

GATE_KINDS = ("tests", "lint", "security")


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    test_command: str = "uv run --extra dev pytest -q"
    lint_command: str = "uv run --extra dev ruff check src tests"
    security_command: str = "bandit -q -r src"

    def gate_commands(self) -> dict[str, str]:
        return {
            "tests": self.test_command,
            "lint": self.lint_command,
            "security": self.security_command,
        }


@dataclass(slots=True)
class WorkflowConfig:
    max_review_passes: int = 7
    require_failing_checks: bool = True
    stale_after_seconds: float = 7200.0
    max_guard_blocks: int = 10
    verify_url: str = ""
    verify_expect_text: str = ""
    verify_actions: list[str] = field(default_factory=list)
    ready_timeout_seconds: float = 30.0
    gate_timeout_seconds: float = 600.0


@dataclass(slots=True)
class AgentConfig:
    binary: str = "claude"
    model: str = ""
    timeout_seconds: float = 900.0


@dataclass(slots=True)
class VcsConfig:
    base_branch: str = ""
    remote: str = "origin"
    worktree_root: str = ".autopilot/worktrees"
    branch_prefix: str = "autopilot/"
    commit_type: str = "feat"
    attribution_trailer: str = "Assisted-by: autopilot"
    gh_binary: str = "gh"
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class TrackerConfig:
    path: str = ".autopilot/tracker.json"
    project_filter: str = ""


@dataclass(slots=True)
class StateConfig:
    directory: str = ".autopilot/state"
    lock_timeout_seconds: float = 3.0


@dataclass(slots=True)
class AutopilotConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    vcs: VcsConfig = field(default_factory=VcsConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> AutopilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AutopilotConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            agent=AgentConfig(**data.get("agent", {})),
            vcs=VcsConfig(**data.get("vcs", {})),
            tracker=TrackerConfig(**data.get("tracker", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "test_command": self.project.test_command,
                "lint_command": self.project.lint_command,
                "security_command": self.project.security_command,
            },
            "workflow": {
                "max_review_passes": self.workflow.max_review_passes,
                "require_failing_checks": self.workflow.require_failing_checks,
                "stale_after_seconds": self.workflow.stale_after_seconds,
                "max_guard_blocks": self.workflow.max_guard_blocks,
                "verify_url": self.workflow.verify_url,
                "verify_expect_text": self.workflow.verify_expect_text,
                "verify_actions": list(self.workflow.verify_actions),
                "ready_timeout_seconds": self.workflow.ready_timeout_seconds,
                "gate_timeout_seconds": self.workflow.gate_timeout_seconds,
            },
            "agent": {
                "binary": self.agent.binary,
                "model": self.agent.model,
                "timeout_seconds": self.agent.timeout_seconds,
            },
            "vcs": {
                "base_branch": self.vcs.base_branch,
                "remote": self.vcs.remote,
                "worktree_root": self.vcs.worktree_root,
                "branch_prefix": self.vcs.branch_prefix,
                "commit_type": self.vcs.commit_type,
                "attribution_trailer": self.vcs.attribution_trailer,
                "gh_binary": self.vcs.gh_binary,
                "timeout_seconds": self.vcs.timeout_seconds,
            },
            "tracker": {
                "path": self.tracker.path,
                "project_filter": self.tracker.project_filter,
            },
            "state": {
                "directory": self.state.directory,
                "lock_timeout_seconds": self.state.lock_timeout_seconds,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AutopilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "workflow", "agent", "vcs", "tracker", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AutopilotConfig:
    if not path.exists():
        return AutopilotConfig.default()
    return AutopilotConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: AutopilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
