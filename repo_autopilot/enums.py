"""Enumerations for repo-autopilot strategies, statuses and tags."""

from enum import Enum


class CIStrategy(str, Enum):
    """How CI failures on a bot pull request are fixed.

    - immediate: the fix is generated and pushed as soon as CI fails
    - approval_required: a fix is proposed as a comment and applied on approval
    """

    IMMEDIATE = "immediate"
    APPROVAL_REQUIRED = "approval_required"

    def __str__(self) -> str:
        return self.value


class BranchStrategy(str, Enum):
    """How branches are laid out for an issue.

    - hierarchical: ``analysis/{issue}-{slug}`` with ``action/{issue}-{action}``
      branches on top of it
    - flat: one ``bot/{issue}-{action}`` branch per action off the default branch
    """

    FLAT = "flat"
    HIERARCHICAL = "hierarchical"

    def __str__(self) -> str:
        return self.value


class IssueStatus(str, Enum):
    """Lifecycle of an issue through analysis and execution."""

    ANALYZING = "analyzing"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    COMPLETE = "complete"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if no further transitions are possible."""
        return self in (IssueStatus.COMPLETE, IssueStatus.FAILED)


class PRStatus(str, Enum):
    """Lifecycle of a bot pull request through CI, fixes and merge."""

    PENDING_CI = "pending_ci"
    CI_PASSED = "ci_passed"
    CI_FAILED = "ci_failed"
    APPROVED = "approved"
    MERGED = "merged"
    ESCALATED = "escalated"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if the PR is out of the bot's hands."""
        return self in (PRStatus.MERGED, PRStatus.ESCALATED)


class Tag(str, Enum):
    """Declarative ``bot:*`` labels recognized on issues."""

    SIMPLE = "bot:simple"
    COMPLEX = "bot:complex"
    FLAT = "bot:flat"
    HIERARCHICAL = "bot:hierarchical"
    SKIP = "bot:skip"

    def __str__(self) -> str:
        return self.value


class ReviewDecision(str, Enum):
    """Aggregated review state of a pull request."""

    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    REVIEW_REQUIRED = "review_required"

    def __str__(self) -> str:
        return self.value


class CheckStatus(str, Enum):
    """Combined CI status of a pull request head commit."""

    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"

    def __str__(self) -> str:
        return self.value
