from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from autopilot.agents.base import Author, DocWriter, FeedbackApplier, ReviewFeedback, Reviewer
from autopilot.agents.cli_backend import AgentCLI
from autopilot.models import Verdict

SEVERITY_PATTERN = re.compile(
    r"\b(BLOCKER|MAJOR|MINOR|SUGGESTION)\b\s*[:\-]?\s*(.*)", re.IGNORECASE
)
VERDICT_PATTERN = re.compile(
    r"^\s*VERDICT\s*:\s*(APPROVED|NEEDS[_ ]CHANGES)\s*$", re.IGNORECASE | re.MULTILINE
)
PATH_PATTERN = re.compile(r"(?<![\w/.-])((?:[\w.-]+/)*[\w.-]+\.[A-Za-z0-9]{1,8})(?::\d+)?")
ACTIONABLE = {"BLOCKER", "MAJOR", "MINOR"}


class AgentRole:
    role: str = "agent"
    system_prompt: str = "You are a software engineering agent."

    def __init__(self, backend: AgentCLI) -> None:
        self.backend = backend

    def _run(self, instruction: str, context: dict[str, Any]) -> str:
        worktree = context.get("worktree")
        return self.backend.execute(
            self.system_prompt,
            instruction,
            context,
            cwd=Path(worktree) if worktree else None,
        )


class ReviewerAgent(AgentRole, Reviewer):
    role = "reviewer"
    system_prompt = """
You are the code reviewer. Review the change for correctness, maintainability,
security and test quality. Report each finding on its own line prefixed with
BLOCKER, MAJOR, MINOR or SUGGESTION and include file paths where relevant.
End with exactly one line: `VERDICT: APPROVED` or `VERDICT: NEEDS_CHANGES`.
""".strip()

    @staticmethod
    def parse(content: str) -> ReviewFeedback:
        items: list[str] = []
        actionable = 0
        for raw_line in content.splitlines():
            line = raw_line.strip().lstrip("-*").strip()
            match = SEVERITY_PATTERN.match(line)
            if not match:
                continue
            severity = match.group(1).upper()
            items.append(f"{severity}: {match.group(2).strip()}")
            if severity in ACTIONABLE:
                actionable += 1

        verdict_match = VERDICT_PATTERN.search(content)
        if verdict_match:
            approved = verdict_match.group(1).upper() == "APPROVED"
        else:
            approved = actionable == 0
        verdict = Verdict.APPROVED if approved else Verdict.NEEDS_CHANGES

        targets: list[str] = []
        for item in items:
            for match in PATH_PATTERN.finditer(item):
                if match.group(1) not in targets:
                    targets.append(match.group(1))
        return ReviewFeedback(
            verdict=verdict,
            items=tuple(items),
            implicated_targets=tuple(targets),
        )

    def review(self, target: str, context: dict[str, Any]) -> ReviewFeedback:
        content = self._run(
            f"Review the work done for {target} in this working copy against its spec.",
            context,
        )
        return self.parse(content)


class FixerAgent(AgentRole, FeedbackApplier):
    role = "fixer"
    system_prompt = """
You are the implementer addressing review feedback. Apply every actionable item,
keep the existing tests passing, and do not widen the scope of the change.
""".strip()

    def apply_feedback(
        self, target: str, feedback: tuple[str, ...], context: dict[str, Any]
    ) -> None:
        items = "\n".join(f"- {item}" for item in feedback)
        self._run(f"Address this review feedback for {target}:\n{items}", context)


class AuthorAgent(AgentRole, Author):
    role = "author"
    system_prompt = """
You are the implementer working test-first. When asked for a spec, write the spec
and the failing tests that pin it down, without implementing. When asked to
implement, make those tests pass with the smallest correct change.
""".strip()

    def write_spec(self, target: str, context: dict[str, Any]) -> None:
        self._run(
            f"Write the spec and failing tests for {target}. Do not implement it yet.",
            context,
        )

    def implement(self, target: str, context: dict[str, Any]) -> None:
        self._run(f"Implement {target} so that its failing tests pass.", context)


class DocumenterAgent(AgentRole, DocWriter):
    role = "documenter"
    system_prompt = """
You are the documentation specialist. Update user-facing docs, READMEs and
changelogs affected by the change. Summarize what you changed in a few lines.
""".strip()

    def sync_docs(self, target: str, context: dict[str, Any]) -> str:
        summary = self._run(
            "Sync documentation with the delivered change for "
            f"{target}. Changed phases so far: "
            f"{json.dumps(context.get('completed_phases', []))}",
            context,
        )
        return summary[:2000]
