from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from autopilot.models import Verdict


@dataclass(slots=True, frozen=True)
class ReviewFeedback:
    verdict: Verdict
    items: tuple[str, ...] = ()
    implicated_targets: tuple[str, ...] = ()


class Reviewer(ABC):
    @abstractmethod
    def review(self, target: str, context: dict[str, Any]) -> ReviewFeedback:
        """Critique the current state of ``target``."""


class FeedbackApplier(ABC):
    @abstractmethod
    def apply_feedback(
        self, target: str, feedback: tuple[str, ...], context: dict[str, Any]
    ) -> None:
        """Turn review feedback into changes in the working copy.

        Opaque by contract: the only requirement is that the result can be checked
        by the quality gates afterwards.
        """


class Author(ABC):
    @abstractmethod
    def write_spec(self, target: str, context: dict[str, Any]) -> None:
        """Write the spec and the failing checks that pin it down."""

    @abstractmethod
    def implement(self, target: str, context: dict[str, Any]) -> None:
        """Make the failing checks pass."""


class DocWriter(ABC):
    @abstractmethod
    def sync_docs(self, target: str, context: dict[str, Any]) -> str:
        """Bring documentation in line with the delivered change; return a summary."""
