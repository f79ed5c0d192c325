from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from autopilot.models import EscalationTicket, ReviewPass


class AutopilotError(RuntimeError):
    """Base class for workflow engine failures."""


class AutopilotStateError(AutopilotError):
    """Raised when persisted-run operations fail."""


class AlreadyActive(AutopilotStateError):
    """Another live invocation already owns the run for this target."""

    def __init__(self, target: str, *, reason: str | None = None) -> None:
        super().__init__(reason or f"A run for '{target}' is already active.")
        self.target = target


class RunNotFound(AutopilotStateError):
    def __init__(self, target: str) -> None:
        super().__init__(f"No persisted run for '{target}'.")
        self.target = target


class StateLockTimeout(AutopilotStateError):
    """Raised when the per-target lock file cannot be acquired in time."""


class FatalStateCorruption(AutopilotStateError):
    """The persisted record is unreadable or internally inconsistent.

    Never repaired automatically; the operator has to inspect or remove the record.
    """

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message if path is None else f"{message} ({path})")
        self.path = path


class BlockingValidationFailure(AutopilotError):
    """A phase exit condition is unmet; the run stays active at the same phase."""

    def __init__(self, phase: str, reason: str) -> None:
        super().__init__(f"[{phase}] {reason}")
        self.phase = phase
        self.reason = reason


class ToolUnavailable(AutopilotError):
    """A collaborator tool could not run at all."""

    def __init__(self, tool: str, reason: str = "not available") -> None:
        super().__init__(f"{tool} unavailable: {reason}")
        self.tool = tool
        self.reason = reason


class CollaboratorError(AutopilotError):
    """A collaborator ran but failed (non-zero exit, bad output, timeout)."""

    def __init__(self, message: str, *, tool: str | None = None) -> None:
        super().__init__(message)
        self.tool = tool


class ReadinessTimeout(CollaboratorError):
    """A bounded readiness wait expired."""

    def __init__(self, what: str, timeout_seconds: float) -> None:
        super().__init__(
            f"{what} not ready after {timeout_seconds:.1f}s", tool="browser"
        )
        self.timeout_seconds = timeout_seconds


class RetryableReviewRejection(AutopilotError):
    """A review pass returned NeedsChanges and left the gates green."""

    def __init__(self, review_pass: ReviewPass) -> None:
        super().__init__(
            f"Review pass {review_pass.pass_number} requested "
            f"{len(review_pass.feedback_items)} change(s)."
        )
        self.review_pass = review_pass


class RegressionDetected(AutopilotError):
    """Applying review feedback left the quality gates failing."""

    def __init__(self, pass_number: int, status: str, issues: list[str]) -> None:
        detail = "; ".join(issues[:5]) if issues else "no details"
        super().__init__(
            f"Review pass {pass_number} left quality gates {status}: {detail}"
        )
        self.pass_number = pass_number
        self.status = status
        self.issues = issues


class EscalationRequired(AutopilotError):
    """Review budget exhausted; the run is handed to a human."""

    def __init__(self, ticket: EscalationTicket) -> None:
        super().__init__(ticket.attempted_summary)
        self.ticket = ticket
