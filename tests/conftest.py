from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from autopilot.adapters.base import (
    GateOutcome,
    GateResult,
    Issue,
    IssueTracker,
    QualityGateRunner,
    TicketRef,
    Unavailable,
    VersionControl,
)
from autopilot.agents.base import Author, DocWriter, FeedbackApplier, ReviewFeedback, Reviewer
from autopilot.config import AutopilotConfig
from autopilot.errors import ToolUnavailable
from autopilot.machine import PhaseStateMachine
from autopilot.models import RunReport, Verdict
from autopilot.state import RunStore
from autopilot.steps import Collaborators


def passing(kind: str) -> GateResult:
    return GateResult(kind=kind, passed=True)


def failing(kind: str, message: str = "assert 1 == 2") -> GateResult:
    return GateResult(
        kind=kind,
        passed=False,
        issues=(Issue(message=message, path="tests/test_feature.py", line=3),),
    )


class FakeTracker(IssueTracker):
    def __init__(self, statuses: dict[str, str] | None = None) -> None:
        self.statuses = dict(statuses or {})
        self.comments: list[tuple[str, str]] = []
        self.created: list[tuple[str, str]] = []
        self.unavailable = False
        self.comment_error: Exception | None = None

    def fetch_next(self, project_filter: str | None = None) -> str | None:
        _ = project_filter
        for ref, status in self.statuses.items():
            if status == "backlog":
                return ref
        return None

    def update_status(self, ref: str, status: str) -> None:
        if self.unavailable:
            raise ToolUnavailable("tracker", "offline")
        self.statuses[ref] = status

    def comment(self, ref: str, text: str) -> TicketRef:
        if self.unavailable:
            raise ToolUnavailable("tracker", "offline")
        if self.comment_error is not None:
            raise self.comment_error
        self.comments.append((ref, text))
        return TicketRef(id=f"{ref}#comment-{len(self.comments)}")

    def create_issue(self, title: str, body: str) -> TicketRef:
        if self.unavailable:
            raise ToolUnavailable("tracker", "offline")
        self.created.append((title, body))
        return TicketRef(id=f"ESC-{len(self.created)}")


class FakeVCS(VersionControl):
    def __init__(self, root: Path) -> None:
        self.root = root
        self.worktrees: list[str] = []
        self.commits: list[str] = []
        self.pushes = 0
        self.pull_requests: list[tuple[str, str]] = []
        self.push_error: Exception | None = None

    def create_worktree(self, branch: str) -> Path:
        path = self.root / branch.replace("/", "-")
        path.mkdir(parents=True, exist_ok=True)
        self.worktrees.append(branch)
        return path

    def commit(self, message: str) -> str | None:
        self.commits.append(message)
        return f"{len(self.commits):040d}"

    def push(self) -> None:
        if self.push_error is not None:
            raise self.push_error
        self.pushes += 1

    def open_pull_request(self, title: str, body: str) -> str:
        self.pull_requests.append((title, body))
        return f"https://example.test/pr/{len(self.pull_requests)}"


class ScriptedGates(QualityGateRunner):
    def __init__(self, results: dict[str, GateOutcome] | None = None) -> None:
        self.results: dict[str, GateOutcome] = results or {
            "tests": passing("tests"),
            "lint": passing("lint"),
            "security": passing("security"),
        }
        self.kinds = tuple(self.results)
        self.calls: list[str] = []

    def run(self, kind: str, *, cwd: Path | None = None) -> GateOutcome:
        _ = cwd
        self.calls.append(kind)
        return self.results.get(kind, Unavailable(kind=kind, reason="not configured"))


class ScriptedReviewer(Reviewer):
    """Returns the scripted verdicts in order, repeating the last one."""

    def __init__(self, verdicts: list[Verdict] | None = None) -> None:
        self.verdicts = list(verdicts or [Verdict.APPROVED])
        self.calls = 0

    def review(self, target: str, context: dict[str, Any]) -> ReviewFeedback:
        _ = target, context
        verdict = self.verdicts[min(self.calls, len(self.verdicts) - 1)]
        self.calls += 1
        if verdict is Verdict.APPROVED:
            return ReviewFeedback(verdict=verdict)
        return ReviewFeedback(
            verdict=verdict,
            items=(f"MAJOR: src/feature.py:{self.calls} handle the empty case",),
            implicated_targets=("src/feature.py",),
        )


class RecordingApplier(FeedbackApplier):
    def __init__(self, gates: ScriptedGates, *, breaks_tests_on: int | None = None) -> None:
        self.gates = gates
        self.breaks_tests_on = breaks_tests_on
        self.applied: list[tuple[str, ...]] = []

    def apply_feedback(
        self, target: str, feedback: tuple[str, ...], context: dict[str, Any]
    ) -> None:
        _ = target, context
        self.applied.append(feedback)
        if self.breaks_tests_on is not None and len(self.applied) == self.breaks_tests_on:
            self.gates.results["tests"] = failing("tests", "regressed after fix")


class FakeAuthor(Author):
    """Writes a failing test, then makes it pass."""

    def __init__(self, gates: ScriptedGates, *, writes_failing_test: bool = True) -> None:
        self.gates = gates
        self.writes_failing_test = writes_failing_test
        self.spec_calls = 0
        self.implement_calls = 0
        self.implement_error: Exception | None = None

    def write_spec(self, target: str, context: dict[str, Any]) -> None:
        _ = target, context
        self.spec_calls += 1
        if self.writes_failing_test:
            self.gates.results["tests"] = failing("tests")

    def implement(self, target: str, context: dict[str, Any]) -> None:
        _ = target, context
        self.implement_calls += 1
        if self.implement_error is not None:
            raise self.implement_error
        self.gates.results["tests"] = passing("tests")


class FakeDocs(DocWriter):
    def __init__(self) -> None:
        self.calls = 0
        self.error: Exception | None = None

    def sync_docs(self, target: str, context: dict[str, Any]) -> str:
        _ = context
        self.calls += 1
        if self.error is not None:
            raise self.error
        return f"Updated README for {target}"


@dataclass
class Harness:
    tmp_path: Path
    config: AutopilotConfig
    store: RunStore
    tracker: FakeTracker
    vcs: FakeVCS
    gates: ScriptedGates
    reviewer: ScriptedReviewer
    applier: RecordingApplier
    author: FakeAuthor
    docs: FakeDocs
    browser_factory: Any = None
    owner: str = "test-owner"
    machines: list[PhaseStateMachine] = field(default_factory=list)

    def machine(self, owner: str | None = None) -> PhaseStateMachine:
        machine = PhaseStateMachine(
            self.store,
            self.config,
            Collaborators(
                tracker=self.tracker,
                vcs=self.vcs,
                gates=self.gates,
                reviewer=self.reviewer,
                applier=self.applier,
                author=self.author,
                docs=self.docs,
                browser=self.browser_factory,
            ),
            repo_root=self.tmp_path,
            owner=owner or self.owner,
        )
        self.machines.append(machine)
        return machine

    def run(self, target: str = "X-01", **kwargs: Any) -> RunReport:
        return self.machine().run(target, **kwargs)


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    config = AutopilotConfig.default()
    gates = ScriptedGates()
    return Harness(
        tmp_path=tmp_path,
        config=config,
        store=RunStore(tmp_path / ".autopilot" / "state", lock_timeout_seconds=0.5),
        tracker=FakeTracker({"X-01": "backlog"}),
        vcs=FakeVCS(tmp_path / "worktrees"),
        gates=gates,
        reviewer=ScriptedReviewer(),
        applier=RecordingApplier(gates),
        author=FakeAuthor(gates),
        docs=FakeDocs(),
    )
