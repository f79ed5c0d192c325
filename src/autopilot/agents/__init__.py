from autopilot.agents.base import Author, DocWriter, FeedbackApplier, ReviewFeedback, Reviewer
from autopilot.agents.cli_backend import AgentCLI
from autopilot.agents.roles import AuthorAgent, DocumenterAgent, FixerAgent, ReviewerAgent

__all__ = [
    "AgentCLI",
    "Author",
    "AuthorAgent",
    "DocWriter",
    "DocumenterAgent",
    "FeedbackApplier",
    "FixerAgent",
    "ReviewFeedback",
    "Reviewer",
    "ReviewerAgent",
]
