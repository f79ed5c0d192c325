from __future__ import annotations

import logging
import os
import socket
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from autopilot.config import AutopilotConfig
from autopilot.errors import (
    BlockingValidationFailure,
    CollaboratorError,
    EscalationRequired,
    RegressionDetected,
    RunNotFound,
    ToolUnavailable,
)
from autopilot.models import Phase, RunReport, RunStatus, Verdict, WorkflowRun
from autopilot.state.run_store import PersistedState, RunStore
from autopilot.steps import (
    AuthorStep,
    Collaborators,
    DocStep,
    GateStep,
    ReviewStep,
    Step,
    StepContext,
    TicketStep,
    VCSStep,
    VerifyStep,
)

logger = logging.getLogger(__name__)

ExitCheck = Callable[[WorkflowRun, dict[str, Any]], str | None]


@dataclass(slots=True, frozen=True)
class PhaseDefinition:
    phase: Phase
    step: Step
    exit_check: ExitCheck
    ticket_sync: TicketStep | None = None


def _worktree_recorded(run: WorkflowRun, evidence: dict[str, Any]) -> str | None:
    if evidence.get("worktree"):
        return None
    return "no isolated working copy recorded"


def _failing_checks_recorded(required: bool) -> ExitCheck:
    def check(run: WorkflowRun, evidence: dict[str, Any]) -> str | None:
        if not required:
            return None if "tests" in evidence else "spec step recorded no test run"
        if int(evidence.get("failing_checks", 0)) >= 1:
            return None
        return "spec step produced no failing checks; write a failing test before implementing"

    return check


def _tests_green(run: WorkflowRun, evidence: dict[str, Any]) -> str | None:
    tests = evidence.get("tests")
    if isinstance(tests, dict) and tests.get("pass") is True:
        return None
    issues = tests.get("issues", []) if isinstance(tests, dict) else []
    detail = f": {'; '.join(issues[:3])}" if issues else ""
    return f"tests gate is not green{detail}"


def _commit_recorded(run: WorkflowRun, evidence: dict[str, Any]) -> str | None:
    return None if "commit" in evidence else "no commit outcome recorded"


def _review_approved(run: WorkflowRun, evidence: dict[str, Any]) -> str | None:
    if any(item.verdict is Verdict.APPROVED for item in run.review_passes):
        return None
    return "no approved review pass recorded"


def _page_verified(run: WorkflowRun, evidence: dict[str, Any]) -> str | None:
    if evidence.get("skipped") or evidence.get("verified") is True:
        return None
    expected = evidence.get("expected_text") or "expected content"
    return f"page at {evidence.get('url', '?')} did not show {expected!r}"


def _gates_pass(run: WorkflowRun, evidence: dict[str, Any]) -> str | None:
    if "gates" not in evidence:
        return "no quality gate results recorded"
    failed = evidence.get("failed") or []
    if failed:
        return f"quality gates failed: {', '.join(failed)}"
    return None


def _pull_request_recorded(run: WorkflowRun, evidence: dict[str, Any]) -> str | None:
    return None if evidence.get("pull_request_url") else "no pull request URL recorded"


def _docs_synced(run: WorkflowRun, evidence: dict[str, Any]) -> str | None:
    return None if evidence.get("synced") else "documentation sync not recorded"


def default_phases(config: AutopilotConfig) -> dict[Phase, PhaseDefinition]:
    definitions = [
        PhaseDefinition(
            Phase.SETUP,
            VCSStep("create_worktree"),
            _worktree_recorded,
            ticket_sync=TicketStep("in_progress"),
        ),
        PhaseDefinition(
            Phase.SPEC_WRITE,
            AuthorStep("write_spec"),
            _failing_checks_recorded(config.workflow.require_failing_checks),
        ),
        PhaseDefinition(Phase.IMPLEMENT, AuthorStep("implement"), _tests_green),
        PhaseDefinition(Phase.INTEGRATE, VCSStep("commit"), _commit_recorded),
        PhaseDefinition(Phase.REVIEW, ReviewStep(), _review_approved),
        PhaseDefinition(Phase.VERIFY, VerifyStep(), _page_verified),
        PhaseDefinition(Phase.GATE, GateStep(), _gates_pass),
        PhaseDefinition(
            Phase.DELIVER,
            VCSStep("deliver"),
            _pull_request_recorded,
            ticket_sync=TicketStep("ready_for_review"),
        ),
        PhaseDefinition(Phase.DOC_SYNC, DocStep(), _docs_synced),
    ]
    return {definition.phase: definition for definition in definitions}


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class PhaseStateMachine:
    """Walks a run through the ordered phases, one Step per phase.

    Every boundary touches the persisted record, so a crash resumes at
    ``current_phase`` with the evidence recorded so far.
    """

    def __init__(
        self,
        store: RunStore,
        config: AutopilotConfig,
        collaborators: Collaborators,
        *,
        repo_root: Path,
        owner: str | None = None,
        phases: dict[Phase, PhaseDefinition] | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.collaborators = collaborators
        self.repo_root = repo_root
        self.owner = owner or default_owner()
        self.phases = phases or default_phases(config)

    def exit_failure(self, run: WorkflowRun) -> str | None:
        """Return why the current phase may not be left, or ``None``."""
        if run.current_phase is Phase.DONE:
            return "run is already done"
        evidence = run.evidence.get(run.current_phase.value)
        if evidence is None:
            return "no evidence recorded for this phase"
        if evidence.get("unavailable"):
            return None
        return self.phases[run.current_phase].exit_check(run, evidence)

    def advance(self, run: WorkflowRun) -> Phase:
        phase = run.current_phase
        reason = self.exit_failure(run)
        if reason is not None:
            raise BlockingValidationFailure(phase.value, reason)
        run.completed_phases.append(phase)
        run.current_phase = phase.next()
        run.retry_count = 0
        run.blocking = []
        logger.info("Run %s: %s -> %s", run.id, phase.value, run.current_phase.value)
        return run.current_phase

    def run(
        self,
        target: str,
        *,
        ticket_ref: str | None = None,
        resume: bool = False,
    ) -> RunReport:
        """Start, resume or report on the run for ``target``.

        ``resume`` is required to reactivate an escalated run; plain invocations
        only report on it.
        """
        state = self.store.open(target)
        if state is None:
            if resume:
                raise RunNotFound(target)
            state = self.store.create(target, owner=self.owner, external_ticket_ref=ticket_ref)
        else:
            state = self.store.acquire(target, owner=self.owner)
            logger.info(
                "Resuming run %s for %s at %s", state.run.id, target, state.run.current_phase.value
            )
        if ticket_ref and not state.run.external_ticket_ref:
            state.run.external_ticket_ref = ticket_ref

        try:
            if state.abort_requested:
                return self._abort(state)
            if state.run.status is RunStatus.ESCALATED:
                if not resume:
                    logger.info("Run %s is escalated; waiting for a human", state.run.id)
                    return RunReport.from_run(state.run)
                self._reactivate(state)
            return self._drive(state)
        finally:
            self.store.release(state)

    def _checkpoint(self, state: PersistedState) -> Callable[[], None]:
        def checkpoint() -> None:
            self.store.touch(state)

        return checkpoint

    def _drive(self, state: PersistedState) -> RunReport:
        run = state.run
        while run.current_phase is not Phase.DONE:
            self.store.touch(state)
            if state.abort_requested:
                return self._abort(state)

            if self.exit_failure(run) is None:
                logger.info("Run %s: %s already satisfied", run.id, run.current_phase.value)
            else:
                try:
                    self._execute(self.phases[run.current_phase], state)
                except EscalationRequired:
                    return self._escalated(state)
                except (BlockingValidationFailure, RegressionDetected, CollaboratorError) as exc:
                    return self._blocked(state, str(exc))

            try:
                self.advance(run)
            except BlockingValidationFailure as exc:
                return self._blocked(state, str(exc))
        return self._complete(state)

    def _execute(self, definition: PhaseDefinition, state: PersistedState) -> None:
        run = state.run
        ctx = StepContext(
            run=run,
            config=self.config,
            collaborators=self.collaborators,
            repo_root=self.repo_root,
            checkpoint=self._checkpoint(state),
        )
        logger.info(
            "Run %s: executing %s (%s)", run.id, definition.phase.value, definition.step.name
        )
        try:
            evidence = definition.step.execute(ctx)
        except ToolUnavailable as exc:
            logger.warning("Run %s: %s", run.id, exc)
            run.add_caveat(str(exc))
            evidence = {"unavailable": exc.tool, "reason": exc.reason}

        if definition.ticket_sync is not None:
            try:
                evidence["ticket"] = definition.ticket_sync.execute(ctx)
            except ToolUnavailable as exc:
                run.add_caveat(str(exc))
        run.evidence[definition.phase.value] = evidence

    def _blocked(self, state: PersistedState, message: str) -> RunReport:
        run = state.run
        run.retry_count += 1
        run.set_blocking(message)
        self.store.touch(state)
        logger.warning("Run %s blocked at %s: %s", run.id, run.current_phase.value, message)
        return RunReport.from_run(run)

    def _escalated(self, state: PersistedState) -> RunReport:
        run = state.run
        run.status = RunStatus.ESCALATED
        if run.escalation is None or run.escalation.external_ticket_ref is None:
            run.add_caveat("escalation ticket could not be filed with the issue tracker")
        self.store.touch(state)
        return RunReport.from_run(run)

    def _reactivate(self, state: PersistedState) -> None:
        run = state.run
        counted = sum(1 for item in run.review_passes if item.verdict is Verdict.NEEDS_CHANGES)
        run.status = RunStatus.ACTIVE
        run.retry_count = 0
        run.blocking = []
        run.evidence[Phase.REVIEW.value] = {"budget_start": counted}
        logger.info("Run %s reactivated with a fresh review budget", run.id)
        self.store.touch(state)

    def _complete(self, state: PersistedState) -> RunReport:
        run = state.run
        run.status = RunStatus.APPROVED
        report = RunReport.from_run(run)
        self.store.delete(state)
        logger.info("Run %s for %s approved", run.id, run.target)
        return report

    def _abort(self, state: PersistedState) -> RunReport:
        run = state.run
        run.status = RunStatus.ABORTED
        run.add_caveat("aborted by operator request")
        report = RunReport.from_run(run)
        self.store.delete(state)
        logger.warning("Run %s for %s aborted at %s", run.id, run.target, run.current_phase.value)
        return report
