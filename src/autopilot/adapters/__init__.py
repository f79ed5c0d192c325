from autopilot.adapters.base import (
    TRACKER_STATUSES,
    BrowserDriver,
    GateOutcome,
    GateResult,
    Issue,
    IssueTracker,
    QualityGateRunner,
    TicketRef,
    Unavailable,
    VersionControl,
)
from autopilot.adapters.gates import CommandGateRunner
from autopilot.adapters.git import GitVersionControl, format_commit_message, slugify
from autopilot.adapters.tracker import LocalIssueTracker

__all__ = [
    "TRACKER_STATUSES",
    "BrowserDriver",
    "CommandGateRunner",
    "GateOutcome",
    "GateResult",
    "GitVersionControl",
    "Issue",
    "IssueTracker",
    "LocalIssueTracker",
    "QualityGateRunner",
    "TicketRef",
    "Unavailable",
    "VersionControl",
    "format_commit_message",
    "slugify",
]
