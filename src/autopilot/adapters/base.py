from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from autopilot.config import GATE_KINDS

TRACKER_STATUSES = ("backlog", "in_progress", "ready_for_review")


@dataclass(slots=True, frozen=True)
class TicketRef:
    id: str
    url: str | None = None


@dataclass(slots=True, frozen=True)
class Issue:
    message: str
    path: str | None = None
    line: int | None = None

    def render(self) -> str:
        if self.path and self.line:
            return f"{self.path}:{self.line}: {self.message}"
        if self.path:
            return f"{self.path}: {self.message}"
        return self.message


@dataclass(slots=True, frozen=True)
class GateResult:
    kind: str
    passed: bool
    issues: tuple[Issue, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "pass": self.passed,
            "issues": [issue.render() for issue in self.issues],
        }


@dataclass(slots=True, frozen=True)
class Unavailable:
    """A gate whose tool is missing; distinguishable from a failing gate."""

    kind: str
    reason: str

    def to_dict(self) -> dict[str, object]:
        return {"unavailable": True, "reason": self.reason}


GateOutcome = GateResult | Unavailable


class IssueTracker(ABC):
    @abstractmethod
    def fetch_next(self, project_filter: str | None = None) -> str | None:
        """Return the next backlog ticket id matching the filter, if any."""

    @abstractmethod
    def update_status(self, ref: str, status: str) -> None:
        """Move a ticket to one of TRACKER_STATUSES."""

    @abstractmethod
    def comment(self, ref: str, text: str) -> TicketRef:
        """Post a comment on a ticket and return a reference to it."""

    @abstractmethod
    def create_issue(self, title: str, body: str) -> TicketRef:
        """Create a new ticket outside the backlog flow (used for escalations)."""


class VersionControl(ABC):
    @abstractmethod
    def create_worktree(self, branch: str) -> Path:
        """Create (or reuse) the isolated working copy for ``branch``."""

    @abstractmethod
    def commit(self, message: str) -> str | None:
        """Commit all changes in the working copy; ``None`` when nothing changed."""

    @abstractmethod
    def push(self) -> None:
        """Publish the working copy branch."""

    @abstractmethod
    def open_pull_request(self, title: str, body: str) -> str:
        """Open (or return the existing) pull request and return its URL."""


class QualityGateRunner(ABC):
    kinds: tuple[str, ...] = GATE_KINDS

    @abstractmethod
    def run(self, kind: str, *, cwd: Path | None = None) -> GateOutcome:
        """Run one gate kind; a missing tool returns ``Unavailable``."""

    def run_all(self, *, cwd: Path | None = None) -> dict[str, GateOutcome]:
        return {kind: self.run(kind, cwd=cwd) for kind in self.kinds}


class BrowserDriver(ABC):
    @abstractmethod
    def navigate(self, url: str) -> None: ...

    @abstractmethod
    def wait_ready(self, timeout: float) -> None:
        """Block until the page settles; raise ReadinessTimeout after ``timeout``."""

    @abstractmethod
    def snapshot(self) -> str: ...

    @abstractmethod
    def screenshot(self, path: Path) -> Path: ...

    @abstractmethod
    def fill(self, ref: str, value: str) -> None: ...

    @abstractmethod
    def click(self, ref: str) -> None: ...

    def close(self) -> None:
        return None
