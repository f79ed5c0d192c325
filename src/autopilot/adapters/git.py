from __future__ import annotations

import logging
import re
import shutil
import subprocess
from pathlib import Path

from autopilot.adapters.base import VersionControl
from autopilot.errors import AutopilotError, CollaboratorError, ToolUnavailable

logger = logging.getLogger(__name__)


def slugify(text: str, max_len: int = 48) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    if len(slug) > max_len:
        slug = slug[:max_len].rstrip("-")
    return slug or "run"


def format_commit_message(commit_type: str, scope: str, subject: str, trailer: str = "") -> str:
    message = f"{commit_type}({scope}): {subject.strip()}"
    if trailer.strip():
        message = f"{message}\n\n{trailer.strip()}"
    return message


class GitVersionControl(VersionControl):
    """Git worktrees for isolation, ``gh`` for pull requests."""

    def __init__(
        self,
        repo_root: Path,
        *,
        worktree_root: Path,
        base_branch: str = "",
        remote: str = "origin",
        gh_binary: str = "gh",
        timeout_seconds: float = 120.0,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.worktree_root = worktree_root
        self.base_branch = base_branch
        self.remote = remote
        self.gh_binary = gh_binary
        self.timeout_seconds = timeout_seconds
        self.branch: str | None = None
        self.worktree_path: Path | None = None

    def _run(
        self, command: list[str], *, cwd: Path, tool: str
    ) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                command,
                cwd=cwd,
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise ToolUnavailable(tool, f"{command[0]} not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise CollaboratorError(
                f"{tool} {command[1] if len(command) > 1 else ''} timed out after "
                f"{self.timeout_seconds:.0f}s",
                tool=tool,
            ) from exc

    def _run_git(
        self, args: list[str], *, cwd: Path | None = None, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        proc = self._run(["git", "--no-pager", *args], cwd=cwd or self.repo_root, tool="git")
        if check and proc.returncode != 0:
            raise CollaboratorError(proc.stderr.strip() or proc.stdout.strip(), tool="git")
        return proc

    def _require_worktree(self) -> Path:
        if self.worktree_path is None or self.branch is None:
            raise AutopilotError("No working copy prepared; call create_worktree first.")
        return self.worktree_path

    def worktree_path_for(self, branch: str) -> Path:
        return self.worktree_root / slugify(branch.replace("/", "-"), max_len=80)

    def create_worktree(self, branch: str) -> Path:
        path = self.worktree_path_for(branch)
        if (path / ".git").exists():
            current = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=path).stdout.strip()
            if current != branch:
                raise CollaboratorError(
                    f"Working copy {path} is on '{current}', expected '{branch}'.", tool="git"
                )
            logger.debug("Reusing working copy %s", path)
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            args = ["worktree", "add", str(path), "-b", branch]
            if self.base_branch:
                args.append(self.base_branch)
            proc = self._run_git(args, check=False)
            if proc.returncode != 0 and "already exists" in proc.stderr:
                proc = self._run_git(["worktree", "add", str(path), branch], check=False)
            if proc.returncode != 0:
                raise CollaboratorError(
                    proc.stderr.strip() or f"git worktree add failed for {branch}", tool="git"
                )
            logger.info("Created working copy %s on %s", path, branch)
        self.branch = branch
        self.worktree_path = path
        return path

    def commit(self, message: str) -> str | None:
        path = self._require_worktree()
        self._run_git(["add", "-A"], cwd=path)
        status = self._run_git(["status", "--porcelain"], cwd=path).stdout.strip()
        if not status:
            logger.info("Nothing to commit in %s", path)
            return None
        self._run_git(["commit", "-m", message], cwd=path)
        return self._run_git(["rev-parse", "HEAD"], cwd=path).stdout.strip()

    def push(self) -> None:
        path = self._require_worktree()
        if not self.remote:
            raise ToolUnavailable("git push", "no remote configured")
        remotes = self._run_git(["remote"], cwd=path).stdout.split()
        if self.remote not in remotes:
            raise ToolUnavailable("git push", f"remote '{self.remote}' not configured")
        self._run_git(["push", "-u", self.remote, str(self.branch)], cwd=path)

    def open_pull_request(self, title: str, body: str) -> str:
        path = self._require_worktree()
        if shutil.which(self.gh_binary) is None:
            raise ToolUnavailable("pull request", f"{self.gh_binary} not found")
        existing = self._run(
            [self.gh_binary, "pr", "view", str(self.branch), "--json", "url", "-q", ".url"],
            cwd=path,
            tool="gh",
        )
        if existing.returncode == 0 and existing.stdout.strip():
            logger.info("Reusing pull request %s", existing.stdout.strip())
            return existing.stdout.strip()
        command = [
            self.gh_binary,
            "pr",
            "create",
            "--title",
            title,
            "--body",
            body,
            "--head",
            str(self.branch),
        ]
        if self.base_branch:
            command.extend(["--base", self.base_branch])
        proc = self._run(command, cwd=path, tool="gh")
        if proc.returncode != 0:
            raise CollaboratorError(f"Failed to create PR: {proc.stderr.strip()}", tool="gh")
        return proc.stdout.strip().splitlines()[-1]
