from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from autopilot.errors import FatalStateCorruption


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class Phase(StrEnum):
    SETUP = "setup"
    SPEC_WRITE = "spec_write"
    IMPLEMENT = "implement"
    INTEGRATE = "integrate"
    REVIEW = "review"
    VERIFY = "verify"
    GATE = "gate"
    DELIVER = "deliver"
    DOC_SYNC = "doc_sync"
    DONE = "done"

    def next(self) -> Phase:
        order = list(Phase)
        index = order.index(self)
        if index + 1 >= len(order):
            raise ValueError(f"{self.value} is terminal")
        return order[index + 1]

    def remaining(self) -> list[Phase]:
        order = list(Phase)
        return order[order.index(self) :]


class RunStatus(StrEnum):
    ACTIVE = "active"
    APPROVED = "approved"
    ESCALATED = "escalated"
    ABORTED = "aborted"


class Verdict(StrEnum):
    APPROVED = "approved"
    NEEDS_CHANGES = "needs_changes"


class GateStatus(StrEnum):
    GREEN = "green"
    RED = "red"
    UNKNOWN = "unknown"


def _enum_value(enum_cls: type[StrEnum], raw: Any, field_name: str) -> Any:
    try:
        return enum_cls(raw)
    except ValueError as exc:
        raise FatalStateCorruption(f"Invalid {field_name}: {raw!r}") from exc


def _str_list(raw: Any, field_name: str) -> list[str]:
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise FatalStateCorruption(f"Invalid {field_name}: expected list of strings")
    return list(raw)


@dataclass(slots=True, frozen=True)
class ReviewPass:
    pass_number: int
    verdict: Verdict
    feedback_items: tuple[str, ...] = ()
    post_pass_tests_status: GateStatus = GateStatus.UNKNOWN
    implicated_targets: tuple[str, ...] = ()
    recorded_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pass_number": self.pass_number,
            "verdict": self.verdict.value,
            "feedback_items": list(self.feedback_items),
            "post_pass_tests_status": self.post_pass_tests_status.value,
            "implicated_targets": list(self.implicated_targets),
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> ReviewPass:
        if not isinstance(payload, dict) or not isinstance(payload.get("pass_number"), int):
            raise FatalStateCorruption("Invalid review pass entry")
        return cls(
            pass_number=payload["pass_number"],
            verdict=_enum_value(Verdict, payload.get("verdict"), "review verdict"),
            feedback_items=tuple(_str_list(payload.get("feedback_items", []), "feedback_items")),
            post_pass_tests_status=_enum_value(
                GateStatus, payload.get("post_pass_tests_status", "unknown"), "tests status"
            ),
            implicated_targets=tuple(
                _str_list(payload.get("implicated_targets", []), "implicated_targets")
            ),
            recorded_at=str(payload.get("recorded_at") or utcnow_iso()),
        )


@dataclass(slots=True, frozen=True)
class EscalationTicket:
    attempted_summary: str
    unresolved_feedback: tuple[str, ...]
    implicated_targets: tuple[str, ...]
    external_ticket_ref: str | None
    comment_ref: str | None = None
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted_summary": self.attempted_summary,
            "unresolved_feedback": list(self.unresolved_feedback),
            "implicated_targets": list(self.implicated_targets),
            "external_ticket_ref": self.external_ticket_ref,
            "comment_ref": self.comment_ref,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> EscalationTicket:
        if not isinstance(payload, dict):
            raise FatalStateCorruption("Invalid escalation entry")
        return cls(
            attempted_summary=str(payload.get("attempted_summary", "")),
            unresolved_feedback=tuple(
                _str_list(payload.get("unresolved_feedback", []), "unresolved_feedback")
            ),
            implicated_targets=tuple(
                _str_list(payload.get("implicated_targets", []), "implicated_targets")
            ),
            external_ticket_ref=payload.get("external_ticket_ref"),
            comment_ref=payload.get("comment_ref"),
            created_at=str(payload.get("created_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class ReportEntry:
    phase: str
    message: str
    at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase, "message": self.message, "at": self.at}

    @classmethod
    def from_dict(cls, payload: Any) -> ReportEntry:
        if not isinstance(payload, dict) or not isinstance(payload.get("message"), str):
            raise FatalStateCorruption("Invalid report entry")
        return cls(
            phase=str(payload.get("phase", "")),
            message=payload["message"],
            at=str(payload.get("at") or utcnow_iso()),
        )


def new_run_id() -> str:
    return f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


@dataclass(slots=True)
class WorkflowRun:
    target: str
    id: str = field(default_factory=new_run_id)
    current_phase: Phase = Phase.SETUP
    status: RunStatus = RunStatus.ACTIVE
    retry_count: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    external_ticket_ref: str | None = None
    completed_phases: list[Phase] = field(default_factory=list)
    evidence: dict[str, dict[str, Any]] = field(default_factory=dict)
    review_passes: list[ReviewPass] = field(default_factory=list)
    caveats: list[ReportEntry] = field(default_factory=list)
    blocking: list[ReportEntry] = field(default_factory=list)
    worktree_path: str | None = None
    pull_request_url: str | None = None
    escalation: EscalationTicket | None = None

    def add_caveat(self, message: str, *, phase: Phase | None = None) -> None:
        if any(entry.message == message for entry in self.caveats):
            return
        self.caveats.append(ReportEntry(phase=(phase or self.current_phase).value, message=message))

    def set_blocking(self, message: str) -> None:
        self.blocking = [ReportEntry(phase=self.current_phase.value, message=message)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "target": self.target,
            "current_phase": self.current_phase.value,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
            "external_ticket_ref": self.external_ticket_ref,
            "completed_phases": [phase.value for phase in self.completed_phases],
            "evidence": self.evidence,
            "review_passes": [item.to_dict() for item in self.review_passes],
            "caveats": [entry.to_dict() for entry in self.caveats],
            "blocking": [entry.to_dict() for entry in self.blocking],
            "worktree_path": self.worktree_path,
            "pull_request_url": self.pull_request_url,
            "escalation": self.escalation.to_dict() if self.escalation else None,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> WorkflowRun:
        if not isinstance(payload, dict):
            raise FatalStateCorruption("Run entry is not an object")
        for key in ("id", "target", "current_phase", "status"):
            if not isinstance(payload.get(key), str):
                raise FatalStateCorruption(f"Run entry missing '{key}'")
        evidence = payload.get("evidence", {})
        if not isinstance(evidence, dict) or not all(
            isinstance(value, dict) for value in evidence.values()
        ):
            raise FatalStateCorruption("Invalid phase evidence")
        completed = [
            _enum_value(Phase, item, "completed phase")
            for item in _str_list(payload.get("completed_phases", []), "completed_phases")
        ]
        retry_count = payload.get("retry_count", 0)
        if not isinstance(retry_count, int) or retry_count < 0:
            raise FatalStateCorruption(f"Invalid retry_count: {retry_count!r}")
        passes = payload.get("review_passes", [])
        caveats = payload.get("caveats", [])
        blocking = payload.get("blocking", [])
        if not all(isinstance(item, list) for item in (passes, caveats, blocking)):
            raise FatalStateCorruption("Run history fields must be lists")
        escalation = payload.get("escalation")
        run = cls(
            id=payload["id"],
            target=payload["target"],
            current_phase=_enum_value(Phase, payload["current_phase"], "current_phase"),
            status=_enum_value(RunStatus, payload["status"], "status"),
            retry_count=retry_count,
            created_at=str(payload.get("created_at") or utcnow_iso()),
            external_ticket_ref=payload.get("external_ticket_ref"),
            completed_phases=completed,
            evidence={str(key): dict(value) for key, value in evidence.items()},
            review_passes=[ReviewPass.from_dict(item) for item in passes],
            caveats=[ReportEntry.from_dict(item) for item in caveats],
            blocking=[ReportEntry.from_dict(item) for item in blocking],
            worktree_path=payload.get("worktree_path"),
            pull_request_url=payload.get("pull_request_url"),
            escalation=EscalationTicket.from_dict(escalation) if escalation else None,
        )
        if run.current_phase in run.completed_phases:
            raise FatalStateCorruption(
                f"Phase '{run.current_phase.value}' is both current and completed"
            )
        expected = list(Phase)[: list(Phase).index(run.current_phase)]
        if run.completed_phases != expected:
            raise FatalStateCorruption("Completed phases do not match the current phase")
        return run


@dataclass(slots=True)
class RunReport:
    target: str
    run_id: str
    status: RunStatus
    current_phase: Phase
    completed_phases: list[Phase]
    retry_count: int
    blocking: list[ReportEntry]
    caveats: list[ReportEntry]
    pull_request_url: str | None
    escalation: EscalationTicket | None
    next_action: str

    @classmethod
    def from_run(cls, run: WorkflowRun) -> RunReport:
        return cls(
            target=run.target,
            run_id=run.id,
            status=run.status,
            current_phase=run.current_phase,
            completed_phases=list(run.completed_phases),
            retry_count=run.retry_count,
            blocking=list(run.blocking),
            caveats=list(run.caveats),
            pull_request_url=run.pull_request_url,
            escalation=run.escalation,
            next_action=_next_action(run),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "run_id": self.run_id,
            "status": self.status.value,
            "current_phase": self.current_phase.value,
            "completed_phases": [phase.value for phase in self.completed_phases],
            "retry_count": self.retry_count,
            "blocking": [entry.to_dict() for entry in self.blocking],
            "caveats": [entry.to_dict() for entry in self.caveats],
            "pull_request_url": self.pull_request_url,
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "next_action": self.next_action,
        }


def _next_action(run: WorkflowRun) -> str:
    if run.status is RunStatus.APPROVED:
        return "none: run complete"
    if run.status is RunStatus.ABORTED:
        return "none: run aborted"
    if run.status is RunStatus.ESCALATED:
        ref = run.escalation.external_ticket_ref if run.escalation else None
        suffix = f" (see {ref})" if ref else ""
        return f"human review required{suffix}; then `autopilot run resume {run.target}`"
    if run.blocking:
        return (
            f"resolve blocking issue in {run.current_phase.value}: "
            f"{run.blocking[-1].message}"
        )
    return f"continue at {run.current_phase.value}"
