from __future__ import annotations

import logging
import re
import shlex
import shutil
import subprocess
from pathlib import Path

from autopilot.adapters.base import GateOutcome, GateResult, Issue, QualityGateRunner, Unavailable
from autopilot.config import GATE_KINDS

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
ISSUE_LINE_PATTERN = re.compile(
    r"^(?P<path>[^\s:]+\.[A-Za-z0-9]+):(?P<line>\d+)(?::\d+)?:?\s*(?P<msg>.*)$"
)
MAX_ISSUES = 50


class CommandGateRunner(QualityGateRunner):
    """Runs one shell command per gate kind and maps the exit status to a result."""

    def __init__(
        self,
        commands: dict[str, str],
        *,
        working_directory: Path,
        timeout_seconds: float = 600.0,
    ) -> None:
        self.commands = dict(commands)
        self.working_directory = working_directory
        self.timeout_seconds = timeout_seconds
        self.kinds = tuple(kind for kind in GATE_KINDS if kind in self.commands)

    @staticmethod
    def _parse_issues(output: str) -> tuple[Issue, ...]:
        issues: list[Issue] = []
        for raw_line in output.splitlines():
            line = raw_line.strip()
            if not line:
                continue
            match = ISSUE_LINE_PATTERN.match(line)
            if match:
                issues.append(
                    Issue(
                        message=match.group("msg") or line,
                        path=match.group("path"),
                        line=int(match.group("line")),
                    )
                )
            if len(issues) >= MAX_ISSUES:
                break
        if issues:
            return tuple(issues)
        tail = [line.strip() for line in output.splitlines() if line.strip()][-5:]
        return tuple(Issue(message=line) for line in tail)

    def run(self, kind: str, *, cwd: Path | None = None) -> GateOutcome:
        command_text = self.commands.get(kind, "").strip()
        if not command_text:
            return Unavailable(kind=kind, reason="no command configured")

        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        command_payload: str | list[str] = command_text
        if not used_shell:
            try:
                command_payload = shlex.split(command_text)
            except ValueError:
                used_shell = True
                command_payload = command_text

        executable = command_payload[0] if isinstance(command_payload, list) else ""
        if executable and shutil.which(executable) is None:
            return Unavailable(kind=kind, reason=f"{executable} not found")

        logger.debug("Running %s gate: %s", kind, command_text)
        try:
            proc = subprocess.run(
                command_payload,
                cwd=cwd or self.working_directory,
                shell=used_shell,
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return GateResult(
                kind=kind,
                passed=False,
                issues=(Issue(message=f"{kind} gate timed out after {self.timeout_seconds:.0f}s"),),
            )
        if used_shell and proc.returncode == 127:
            return Unavailable(kind=kind, reason=proc.stderr.strip()[-200:] or "command not found")
        if proc.returncode == 0:
            return GateResult(kind=kind, passed=True)
        output = f"{proc.stdout}\n{proc.stderr}"
        issues = self._parse_issues(output) or (
            Issue(message=f"{kind} exited with {proc.returncode}"),
        )
        logger.info("%s gate failed with exit code %s", kind, proc.returncode)
        return GateResult(kind=kind, passed=False, issues=issues)
