from __future__ import annotations

import logging
import shlex
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from autopilot.adapters.base import (
    BrowserDriver,
    GateResult,
    IssueTracker,
    QualityGateRunner,
    Unavailable,
    VersionControl,
)
from autopilot.adapters.git import format_commit_message, slugify
from autopilot.agents.base import Author, DocWriter, FeedbackApplier, Reviewer
from autopilot.config import AutopilotConfig
from autopilot.errors import CollaboratorError, ToolUnavailable
from autopilot.models import Phase, Verdict, WorkflowRun
from autopilot.review import ReviewController

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Collaborators:
    tracker: IssueTracker
    vcs: VersionControl
    gates: QualityGateRunner
    reviewer: Reviewer
    applier: FeedbackApplier
    author: Author
    docs: DocWriter
    browser: Callable[[], BrowserDriver] | None = None


@dataclass(slots=True)
class StepContext:
    run: WorkflowRun
    config: AutopilotConfig
    collaborators: Collaborators
    repo_root: Path
    checkpoint: Callable[[], None]

    @property
    def branch(self) -> str:
        return f"{self.config.vcs.branch_prefix}{slugify(self.run.target)}"

    @property
    def scope(self) -> str:
        return slugify(self.run.target, max_len=24)

    def ensure_worktree(self) -> Path:
        path = self.collaborators.vcs.create_worktree(self.branch)
        self.run.worktree_path = str(path)
        return path

    def working_directory(self) -> Path:
        if self.run.worktree_path:
            return Path(self.run.worktree_path)
        return self.repo_root

    def agent_context(self) -> dict[str, Any]:
        return {
            "target": self.run.target,
            "run_id": self.run.id,
            "phase": self.run.current_phase.value,
            "ticket": self.run.external_ticket_ref,
            "worktree": str(self.working_directory()),
            "completed_phases": [phase.value for phase in self.run.completed_phases],
        }

    def commit_message(self, subject: str, *, commit_type: str | None = None) -> str:
        return format_commit_message(
            commit_type or self.config.vcs.commit_type,
            self.scope,
            subject,
            self.config.vcs.attribution_trailer,
        )


class Step(ABC):
    """One phase action. Returns the evidence the phase exit condition reads.

    Steps must be safe to re-invoke after a crash.
    """

    name: str = "step"

    @abstractmethod
    def execute(self, ctx: StepContext) -> dict[str, Any]: ...


class VCSStep(Step):
    name = "vcs"
    ACTIONS = ("create_worktree", "commit", "deliver")

    def __init__(self, action: str) -> None:
        if action not in self.ACTIONS:
            raise ValueError(f"Unknown VCS action: {action}")
        self.action = action

    def execute(self, ctx: StepContext) -> dict[str, Any]:
        if self.action == "create_worktree":
            path = ctx.ensure_worktree()
            return {"worktree": str(path), "branch": ctx.branch}
        if self.action == "commit":
            ctx.ensure_worktree()
            sha = ctx.collaborators.vcs.commit(ctx.commit_message(f"implement {ctx.run.target}"))
            return {"commit": sha, "committed": sha is not None}
        return self._deliver(ctx)

    @staticmethod
    def _deliver(ctx: StepContext) -> dict[str, Any]:
        run = ctx.run
        if run.pull_request_url:
            logger.info("Pull request already open for %s: %s", run.target, run.pull_request_url)
            return {"pull_request_url": run.pull_request_url, "reused": True}
        vcs = ctx.collaborators.vcs
        ctx.ensure_worktree()
        vcs.push()
        title = f"{ctx.config.vcs.commit_type}({ctx.scope}): {run.target}"
        lines = [f"Autopilot run `{run.id}` for {run.target}."]
        if run.external_ticket_ref:
            lines.append(f"Ticket: {run.external_ticket_ref}")
        approved = [item for item in run.review_passes if item.verdict is Verdict.APPROVED]
        if approved:
            lines.append(f"Review approved on pass {approved[-1].pass_number}.")
        if run.caveats:
            lines.append("")
            lines.append("Caveats:")
            lines.extend(f"- {entry.message}" for entry in run.caveats)
        url = vcs.open_pull_request(title, "\n".join(lines))
        run.pull_request_url = url
        ctx.checkpoint()
        return {"pull_request_url": url, "reused": False}


class AuthorStep(Step):
    name = "author"

    def __init__(self, action: str) -> None:
        if action not in ("write_spec", "implement"):
            raise ValueError(f"Unknown author action: {action}")
        self.action = action

    def execute(self, ctx: StepContext) -> dict[str, Any]:
        author = ctx.collaborators.author
        if self.action == "write_spec":
            author.write_spec(ctx.run.target, ctx.agent_context())
        else:
            author.implement(ctx.run.target, ctx.agent_context())

        outcome = ctx.collaborators.gates.run("tests", cwd=ctx.working_directory())
        if isinstance(outcome, Unavailable):
            raise ToolUnavailable("tests", outcome.reason)
        failing = 0 if outcome.passed else max(len(outcome.issues), 1)
        return {"tests": outcome.to_dict(), "failing_checks": failing}


class ReviewStep(Step):
    name = "review"

    def execute(self, ctx: StepContext) -> dict[str, Any]:
        collaborators = ctx.collaborators
        budget_start = int(ctx.run.evidence.get(Phase.REVIEW.value, {}).get("budget_start", 0))
        last = ctx.run.review_passes[-1] if ctx.run.review_passes else None
        if last is not None and last.verdict is Verdict.APPROVED:
            # Approval was checkpointed before the phase evidence was.
            return {
                "approved_pass": last.pass_number,
                "passes": len(ctx.run.review_passes),
                "budget_start": budget_start,
            }
        controller = ReviewController(
            collaborators.reviewer,
            collaborators.applier,
            collaborators.gates,
            collaborators.tracker,
            max_passes=ctx.config.workflow.max_review_passes,
        )
        approved = controller.run(
            ctx.run,
            context=ctx.agent_context(),
            checkpoint=ctx.checkpoint,
            budget_start=budget_start,
        )
        return {
            "approved_pass": approved.pass_number,
            "passes": len(ctx.run.review_passes),
            "budget_start": budget_start,
        }


class GateStep(Step):
    name = "gate"

    def execute(self, ctx: StepContext) -> dict[str, Any]:
        outcomes = ctx.collaborators.gates.run_all(cwd=ctx.working_directory())
        gates: dict[str, dict[str, Any]] = {}
        for kind, outcome in outcomes.items():
            gates[kind] = outcome.to_dict()
            if isinstance(outcome, Unavailable):
                ctx.run.add_caveat(f"{kind} unavailable: {outcome.reason}")
                logger.warning("%s gate unavailable: %s", kind, outcome.reason)
        failed = [
            kind
            for kind, outcome in outcomes.items()
            if isinstance(outcome, GateResult) and not outcome.passed
        ]
        return {"gates": gates, "failed": failed}


class VerifyStep(Step):
    name = "verify"

    def execute(self, ctx: StepContext) -> dict[str, Any]:
        workflow = ctx.config.workflow
        if not workflow.verify_url.strip():
            return {"skipped": "verification not configured"}
        factory = ctx.collaborators.browser
        if factory is None:
            raise ToolUnavailable("browser", "no browser driver configured")

        driver = factory()
        try:
            driver.navigate(workflow.verify_url)
            driver.wait_ready(workflow.ready_timeout_seconds)
            for action in workflow.verify_actions:
                self._perform(driver, action)
            if workflow.verify_actions:
                driver.wait_ready(workflow.ready_timeout_seconds)
            snapshot = driver.snapshot()
            screenshot = driver.screenshot(
                ctx.repo_root / ".autopilot" / "artifacts" / ctx.run.id / "verify.png"
            )
        finally:
            driver.close()

        expected = workflow.verify_expect_text.strip()
        verified = not expected or expected in snapshot
        return {
            "url": workflow.verify_url,
            "verified": verified,
            "expected_text": expected,
            "screenshot": str(screenshot),
            "actions": len(workflow.verify_actions),
        }

    @staticmethod
    def _perform(driver: BrowserDriver, action: str) -> None:
        try:
            parts = shlex.split(action)
        except ValueError as exc:
            raise CollaboratorError(
                f"Invalid verify action {action!r}: {exc}", tool="browser"
            ) from exc
        if len(parts) == 2 and parts[0] == "click":
            driver.click(parts[1])
        elif len(parts) == 3 and parts[0] == "fill":
            driver.fill(parts[1], parts[2])
        else:
            raise CollaboratorError(
                f"Invalid verify action {action!r}; expected `click REF` or `fill REF VALUE`",
                tool="browser",
            )


class DocStep(Step):
    name = "docs"

    def execute(self, ctx: StepContext) -> dict[str, Any]:
        summary = ctx.collaborators.docs.sync_docs(ctx.run.target, ctx.agent_context())
        sha: str | None = None
        vcs = ctx.collaborators.vcs
        try:
            ctx.ensure_worktree()
            sha = vcs.commit(
                ctx.commit_message(f"sync documentation for {ctx.run.target}", commit_type="docs")
            )
            if sha and ctx.run.pull_request_url:
                vcs.push()
        except ToolUnavailable as exc:
            ctx.run.add_caveat(str(exc))
        return {"summary": summary[:500], "commit": sha, "synced": True}


class TicketStep(Step):
    name = "ticket"

    def __init__(self, status: str) -> None:
        self.status = status

    def execute(self, ctx: StepContext) -> dict[str, Any]:
        ref = ctx.run.external_ticket_ref
        if not ref:
            return {"ticket": None, "status": None}
        ctx.collaborators.tracker.update_status(ref, self.status)
        return {"ticket": ref, "status": self.status}
