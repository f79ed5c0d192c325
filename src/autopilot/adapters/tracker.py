from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from autopilot.adapters.base import TRACKER_STATUSES, IssueTracker, TicketRef
from autopilot.errors import CollaboratorError
from autopilot.models import utcnow_iso

logger = logging.getLogger(__name__)

ESCALATION_LABEL = "escalation"


class LocalIssueTracker(IssueTracker):
    """Issue tracker backed by a single JSON file in the repository."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"issues": [], "next_escalation": 1}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CollaboratorError(
                f"Tracker file is not valid JSON: {exc}", tool="tracker"
            ) from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("issues"), list):
            raise CollaboratorError("Tracker file must contain an 'issues' list.", tool="tracker")
        payload.setdefault("next_escalation", 1)
        return payload

    def _save(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=".tracker-", dir=self.path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
        os.replace(temp_name, self.path)

    @staticmethod
    def _find(payload: dict[str, Any], ref: str) -> dict[str, Any]:
        for issue in payload["issues"]:
            if isinstance(issue, dict) and issue.get("id") == ref:
                return issue
        raise CollaboratorError(f"Ticket not found: {ref}", tool="tracker")

    def add_issue(
        self,
        ref: str,
        title: str,
        *,
        project: str = "",
        status: str = "backlog",
        labels: list[str] | None = None,
    ) -> TicketRef:
        payload = self._load()
        payload["issues"].append(
            {
                "id": ref,
                "title": title,
                "project": project,
                "status": status,
                "labels": list(labels or []),
                "comments": [],
                "created_at": utcnow_iso(),
            }
        )
        self._save(payload)
        return TicketRef(id=ref)

    def get(self, ref: str) -> dict[str, Any]:
        return self._find(self._load(), ref)

    def fetch_next(self, project_filter: str | None = None) -> str | None:
        for issue in self._load()["issues"]:
            if not isinstance(issue, dict) or issue.get("status") != "backlog":
                continue
            if ESCALATION_LABEL in issue.get("labels", []):
                continue
            if project_filter and issue.get("project") != project_filter:
                continue
            return str(issue["id"])
        return None

    def update_status(self, ref: str, status: str) -> None:
        if status not in TRACKER_STATUSES:
            raise CollaboratorError(f"Unknown tracker status: {status}", tool="tracker")
        payload = self._load()
        issue = self._find(payload, ref)
        if issue.get("status") == status:
            return
        logger.info("Ticket %s: %s -> %s", ref, issue.get("status"), status)
        issue["status"] = status
        issue["updated_at"] = utcnow_iso()
        self._save(payload)

    def comment(self, ref: str, text: str) -> TicketRef:
        payload = self._load()
        issue = self._find(payload, ref)
        comments = issue.setdefault("comments", [])
        comments.append({"body": text, "created_at": utcnow_iso()})
        self._save(payload)
        return TicketRef(id=f"{ref}#comment-{len(comments)}")

    def create_issue(self, title: str, body: str) -> TicketRef:
        payload = self._load()
        number = int(payload["next_escalation"])
        ref = f"ESC-{number}"
        payload["next_escalation"] = number + 1
        payload["issues"].append(
            {
                "id": ref,
                "title": title,
                "body": body,
                "project": "",
                "status": "backlog",
                "labels": [ESCALATION_LABEL],
                "comments": [],
                "created_at": utcnow_iso(),
            }
        )
        self._save(payload)
        return TicketRef(id=ref)
