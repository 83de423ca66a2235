"""
Abstract base classes for collaborators.

The orchestrator never talks to the code-hosting platform or the AI service
directly; it goes through these two narrow interfaces. Implementations are
expected to translate their native failures into the error taxonomy in
``repo_autopilot.exceptions``:

- ``RateLimitError`` for rate limiting
- ``AuthenticationError`` for rejected credentials
- ``NotFoundError`` for missing objects
- ``TransientCollaboratorError`` for timeouts and 5xx responses
"""

from abc import ABC, abstractmethod
from typing import Any

from repo_autopilot.enums import CheckStatus, ReviewDecision
from repo_autopilot.models.domain import (
    Action,
    AnalysisResult,
    Comment,
    Patch,
    PullRequest,
    Reaction,
    ReviewResponse,
)


class GitProvider(ABC):
    """Abstract base class for the code-hosting collaborator.

    All methods are async to support non-blocking I/O.
    """

    @abstractmethod
    async def get_labels(self, issue_number: int) -> list[str]:
        """Current label names on an issue or pull request.

        Always reflects the platform's live state, not a webhook payload.
        """
        pass

    @abstractmethod
    async def add_label(self, issue_number: int, label: str) -> None:
        """Add one label to an issue or pull request (additive)."""
        pass

    @abstractmethod
    async def get_repository_context(self, issue_number: int) -> dict[str, Any]:
        """Collect what the agent needs to analyze an issue.

        Returns:
            Dict with at least ``issue`` (number, title, body, labels),
            ``default_branch`` and ``files`` (repository paths).
        """
        pass

    @abstractmethod
    async def create_branch(self, branch_name: str, from_branch: str) -> str:
        """Create a branch; an existing branch of that name is reused.

        Returns:
            Head commit SHA of the branch.
        """
        pass

    @abstractmethod
    async def commit_files(self, branch: str, patch: Patch) -> str:
        """Apply every file of ``patch`` to ``branch`` as exactly one commit.

        Returns:
            SHA of the created commit.
        """
        pass

    @abstractmethod
    async def create_pull_request(self, title: str, body: str, head: str, base: str) -> PullRequest:
        """Open a pull request from ``head`` into ``base``.

        If one is already open for the same head, it is returned instead.
        """
        pass

    @abstractmethod
    async def add_comment(self, issue_number: int, body: str) -> Comment:
        """Comment on an issue or pull request conversation."""
        pass

    async def reply_to_review_comment(self, pr_number: int, comment_id: int, body: str) -> Comment:
        """Reply in a review comment thread.

        Default implementation falls back to a plain PR comment for
        platforms without threaded replies.
        """
        return await self.add_comment(pr_number, body)

    @abstractmethod
    async def get_reactions(self, issue_number: int, comment_id: int) -> list[Reaction]:
        """Reactions currently on a comment in an issue or PR conversation."""
        pass

    @abstractmethod
    async def get_review_decision(self, pr_number: int) -> ReviewDecision:
        """Aggregate review state (latest review per reviewer)."""
        pass

    @abstractmethod
    async def has_conflicts(self, pr_number: int) -> bool:
        """Whether the pull request cannot be merged cleanly."""
        pass

    @abstractmethod
    async def get_check_status(self, pr_number: int) -> CheckStatus:
        """Combined CI status of the pull request head commit."""
        pass

    @abstractmethod
    async def merge_pull_request(self, pr_number: int, message: str) -> bool:
        """Merge the pull request.

        Returns:
            True if the platform reports the PR as merged.
        """
        pass


class AgentProvider(ABC):
    """Abstract base class for the AI collaborator.

    The orchestrator treats the agent as an opaque, retryable-on-timeout
    black box. Only the shape of inputs and outputs is part of the contract.
    """

    @abstractmethod
    async def analyze(self, context: dict[str, Any]) -> AnalysisResult:
        """Produce an analysis document and an ordered list of actions."""
        pass

    @abstractmethod
    async def implement(self, action: Action, context: dict[str, Any]) -> Patch:
        """Produce the code change implementing one action."""
        pass

    @abstractmethod
    async def fix_failure(self, logs: str, context: dict[str, Any]) -> Patch:
        """Produce a code change addressing a CI failure."""
        pass

    @abstractmethod
    async def propose_fix(self, logs: str, context: dict[str, Any]) -> str:
        """Describe, without applying, how a CI failure would be fixed."""
        pass

    @abstractmethod
    async def respond_to_review(self, thread: dict[str, Any]) -> ReviewResponse:
        """Produce a reply, and optionally a fix, for a review comment thread."""
        pass
