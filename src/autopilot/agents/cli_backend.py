from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any

from autopilot.errors import CollaboratorError, ToolUnavailable

logger = logging.getLogger(__name__)


class AgentCLI:
    """Runs a coding-agent CLI in print mode and returns its final text."""

    def __init__(
        self,
        binary: str = "claude",
        *,
        model: str = "",
        timeout_seconds: float = 900.0,
    ) -> None:
        self.binary = binary
        self.model = model
        self.timeout_seconds = timeout_seconds

    def build_command(self, system_prompt: str, user_prompt: str) -> list[str]:
        command = [
            self.binary,
            "-p",
            user_prompt,
            "--output-format",
            "json",
            "--append-system-prompt",
            system_prompt,
        ]
        if self.model.strip():
            command.extend(["--model", self.model.strip()])
        return command

    @staticmethod
    def render_prompt(instruction: str, context: dict[str, Any]) -> str:
        if not context:
            return instruction
        return (
            f"{instruction}\n\nContext JSON:\n"
            f"{json.dumps(context, ensure_ascii=False, indent=2, default=str)}"
        )

    @staticmethod
    def _extract_content(raw: str) -> str:
        stripped = raw.strip()
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            return stripped
        if isinstance(event, dict):
            if event.get("is_error"):
                raise CollaboratorError(
                    f"Agent reported an error: {str(event.get('result', ''))[:500]}",
                    tool="agent",
                )
            result = event.get("result")
            if isinstance(result, str):
                return result.strip()
            content = event.get("content")
            if isinstance(content, str):
                return content.strip()
        return stripped

    def execute(
        self,
        system_prompt: str,
        instruction: str,
        context: dict[str, Any],
        *,
        cwd: Path | None = None,
    ) -> str:
        command = self.build_command(system_prompt, self.render_prompt(instruction, context))
        logger.debug("Running agent %s in %s", self.binary, cwd)
        try:
            proc = subprocess.run(
                command,
                cwd=str(cwd) if cwd else None,
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise ToolUnavailable("agent", f"{self.binary} not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise CollaboratorError(
                f"Agent timed out after {self.timeout_seconds:.0f}s", tool="agent"
            ) from exc
        if proc.returncode != 0:
            raise CollaboratorError(
                f"Agent failed with exit code {proc.returncode}: {proc.stderr.strip()[-500:]}",
                tool="agent",
            )
        return self._extract_content(proc.stdout)
