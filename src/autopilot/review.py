from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from autopilot.adapters.base import GateResult, IssueTracker, QualityGateRunner, Unavailable
from autopilot.agents.base import FeedbackApplier, Reviewer
from autopilot.errors import (
    CollaboratorError,
    EscalationRequired,
    RegressionDetected,
    RetryableReviewRejection,
    ToolUnavailable,
)
from autopilot.models import (
    EscalationTicket,
    GateStatus,
    ReviewPass,
    RunStatus,
    Verdict,
    WorkflowRun,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_PASSES = 7


class ReviewController:
    """Bounded critique-and-fix loop with escalation to a human.

    A pass only counts once its fix left the quality gates green. A pass that
    regresses the gates halts the loop without consuming budget. Exhausting
    ``max_passes`` files exactly one escalation ticket per run.
    """

    def __init__(
        self,
        reviewer: Reviewer,
        applier: FeedbackApplier,
        gates: QualityGateRunner,
        tracker: IssueTracker,
        *,
        max_passes: int = DEFAULT_MAX_PASSES,
    ) -> None:
        if max_passes < 1:
            raise ValueError("max_passes must be at least 1")
        self.reviewer = reviewer
        self.applier = applier
        self.gates = gates
        self.tracker = tracker
        self.max_passes = max_passes

    def run(
        self,
        run: WorkflowRun,
        *,
        context: dict[str, Any],
        checkpoint: Callable[[], None] | None = None,
        budget_start: int = 0,
    ) -> ReviewPass:
        """Return the approving pass or raise ``EscalationRequired``.

        Counted passes recorded before ``budget_start`` belong to an earlier
        budget (a run resumed after escalation). ``RegressionDetected``
        propagates to the caller with the run untouched.
        """
        counted = self._counted_passes(run)
        used = max(counted - budget_start, 0)
        pass_number = counted + 1
        while used < self.max_passes:
            try:
                approved = self._run_pass(run, pass_number, context)
            except RetryableReviewRejection as exc:
                run.review_passes.append(exc.review_pass)
                used += 1
                logger.info(
                    "Review pass %s/%s on %s: needs changes (%s item(s))",
                    used,
                    self.max_passes,
                    run.target,
                    len(exc.review_pass.feedback_items),
                )
                if checkpoint is not None:
                    checkpoint()
                pass_number += 1
                continue
            run.review_passes.append(approved)
            logger.info("Review pass %s on %s: approved", pass_number, run.target)
            if checkpoint is not None:
                checkpoint()
            return approved

        ticket = self.escalate(run)
        if checkpoint is not None:
            checkpoint()
        raise EscalationRequired(ticket)

    @staticmethod
    def _counted_passes(run: WorkflowRun) -> int:
        return sum(1 for item in run.review_passes if item.verdict is Verdict.NEEDS_CHANGES)

    def _run_pass(self, run: WorkflowRun, pass_number: int, context: dict[str, Any]) -> ReviewPass:
        feedback = self.reviewer.review(run.target, context)
        if feedback.verdict is Verdict.APPROVED:
            return ReviewPass(
                pass_number=pass_number,
                verdict=Verdict.APPROVED,
                feedback_items=feedback.items,
                post_pass_tests_status=GateStatus.UNKNOWN,
                implicated_targets=feedback.implicated_targets,
            )

        self.applier.apply_feedback(run.target, feedback.items, context)
        status, issues = self.post_pass_status(context)
        if status is not GateStatus.GREEN:
            raise RegressionDetected(pass_number, status.value, issues)
        raise RetryableReviewRejection(
            ReviewPass(
                pass_number=pass_number,
                verdict=Verdict.NEEDS_CHANGES,
                feedback_items=feedback.items,
                post_pass_tests_status=GateStatus.GREEN,
                implicated_targets=feedback.implicated_targets,
            )
        )

    def post_pass_status(self, context: dict[str, Any]) -> tuple[GateStatus, list[str]]:
        worktree = context.get("worktree")
        outcomes = self.gates.run_all(cwd=Path(worktree) if worktree else None)
        failures: list[str] = []
        for kind, outcome in outcomes.items():
            if isinstance(outcome, GateResult) and not outcome.passed:
                rendered = [issue.render() for issue in outcome.issues[:3]]
                failures.append(f"{kind}: " + (", ".join(rendered) or "failed"))
        if failures:
            return GateStatus.RED, failures
        tests = outcomes.get("tests")
        if tests is None or isinstance(tests, Unavailable):
            return GateStatus.UNKNOWN, ["tests gate unavailable"]
        return GateStatus.GREEN, []

    def escalate(self, run: WorkflowRun) -> EscalationTicket:
        run.status = RunStatus.ESCALATED
        if run.escalation is not None:
            logger.info(
                "Run %s already escalated as %s", run.id, run.escalation.external_ticket_ref
            )
            return run.escalation

        counted = [item for item in run.review_passes if item.verdict is Verdict.NEEDS_CHANGES]
        unresolved = counted[-1].feedback_items if counted else ()
        implicated: list[str] = []
        for item in counted:
            for path in item.implicated_targets:
                if path not in implicated:
                    implicated.append(path)
        summary = (
            f"{len(counted)} review pass(es) on {run.target} applied feedback with green "
            f"quality gates but never reached approval (budget {self.max_passes})."
        )
        body = _escalation_body(run, summary, unresolved, implicated)

        external_ref: str | None = None
        comment_ref: str | None = None
        try:
            external = self.tracker.create_issue(
                f"Escalation: {run.target} needs human review", body
            )
            external_ref = external.id
        except (ToolUnavailable, CollaboratorError) as exc:
            logger.warning("Could not file escalation for %s: %s", run.target, exc)
        if external_ref and run.external_ticket_ref:
            try:
                comment = self.tracker.comment(
                    run.external_ticket_ref,
                    f"{body}\n\nEscalated to {external_ref} for human review.",
                )
                comment_ref = comment.id
            except (ToolUnavailable, CollaboratorError) as exc:
                logger.warning("Could not comment on %s: %s", run.external_ticket_ref, exc)
                run.add_caveat(
                    f"escalation {external_ref} could not be cross-referenced on "
                    f"{run.external_ticket_ref}: {exc}"
                )

        run.escalation = EscalationTicket(
            attempted_summary=summary,
            unresolved_feedback=tuple(unresolved),
            implicated_targets=tuple(implicated),
            external_ticket_ref=external_ref,
            comment_ref=comment_ref,
        )
        logger.warning("Run %s escalated (%s)", run.id, external_ref or "no ticket filed")
        return run.escalation


def _escalation_body(
    run: WorkflowRun,
    summary: str,
    unresolved: tuple[str, ...],
    implicated: list[str],
) -> str:
    lines = [f"Run {run.id} for {run.target}", "", "Attempted:", summary, ""]
    lines.append("Unresolved feedback:")
    lines.extend(f"- {item}" for item in unresolved or ("(none recorded)",))
    if implicated:
        lines.append("")
        lines.append("Implicated files:")
        lines.extend(f"- {path}" for path in implicated)
    return "\n".join(lines)
