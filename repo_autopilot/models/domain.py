"""
Domain models for the orchestrator.

This module holds the durable per-entity records (``IssueState``,
``PRState``) and the value types exchanged with the code-hosting and AI
collaborators. Records are plain dataclasses; ``to_dict()`` / ``from_dict()``
convert them to and from the JSON documents the state store persists.

Example:
    Persisting a freshly analyzed issue::

        state = IssueState(
            issue_number=42,
            owner="acme",
            repo="webapp",
            title="Fix login",
            ci_strategy=CIStrategy.IMMEDIATE,
            branch_strategy=BranchStrategy.HIERARCHICAL,
        )
        await store.create(state)
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from repo_autopilot.enums import BranchStrategy, CIStrategy, IssueStatus, PRStatus


def utcnow() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat()


def issue_key(issue_number: int) -> str:
    """State key for an issue."""
    return f"issue-{issue_number}"


def pr_key(pr_number: int) -> str:
    """State key for a pull request."""
    return f"pr-{pr_number}"


@dataclass(frozen=True)
class Strategy:
    """Execution strategy resolved from an issue's ``bot:*`` labels."""

    ci_strategy: CIStrategy
    branch_strategy: BranchStrategy
    skip: bool = False


@dataclass
class Action:
    """One discrete unit of implementation work produced by analysis.

    Each action yields exactly one branch and one pull request.
    """

    name: str
    """Short kebab-case identifier, used in branch names."""

    description: str = ""
    """What the action should change, handed to the agent verbatim."""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Action":
        return cls(name=data["name"], description=data.get("description", ""))


@dataclass
class IssueState:
    """Durable state of one originating issue.

    ``ci_strategy`` and ``branch_strategy`` are fixed when the issue is
    analyzed and never recomputed from later label edits. ``actions`` is
    append-only once analysis has run, and ``current_action_index`` never
    exceeds ``len(actions)``.
    """

    issue_number: int
    owner: str
    repo: str
    title: str
    ci_strategy: CIStrategy
    branch_strategy: BranchStrategy
    status: IssueStatus = IssueStatus.ANALYZING
    analysis_branch: str | None = None
    actions: list[Action] = field(default_factory=list)
    current_action_index: int = 0
    summary_comment_id: int | None = None
    pr_numbers: list[int] = field(default_factory=list)
    error: str | None = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)
    version: int = 0

    @property
    def key(self) -> str:
        return issue_key(self.issue_number)

    @property
    def has_remaining_actions(self) -> bool:
        return self.current_action_index < len(self.actions)

    def advance(self) -> None:
        """Move the cursor past the action that was just executed."""
        if self.current_action_index >= len(self.actions):
            raise ValueError(f"Issue #{self.issue_number} has no action left to advance past")
        self.current_action_index += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_number": self.issue_number,
            "owner": self.owner,
            "repo": self.repo,
            "title": self.title,
            "ci_strategy": self.ci_strategy.value,
            "branch_strategy": self.branch_strategy.value,
            "status": self.status.value,
            "analysis_branch": self.analysis_branch,
            "actions": [a.to_dict() for a in self.actions],
            "current_action_index": self.current_action_index,
            "summary_comment_id": self.summary_comment_id,
            "pr_numbers": list(self.pr_numbers),
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IssueState":
        return cls(
            issue_number=data["issue_number"],
            owner=data["owner"],
            repo=data["repo"],
            title=data.get("title", ""),
            ci_strategy=CIStrategy(data["ci_strategy"]),
            branch_strategy=BranchStrategy(data["branch_strategy"]),
            status=IssueStatus(data["status"]),
            analysis_branch=data.get("analysis_branch"),
            actions=[Action.from_dict(a) for a in data.get("actions", [])],
            current_action_index=data.get("current_action_index", 0),
            summary_comment_id=data.get("summary_comment_id"),
            pr_numbers=list(data.get("pr_numbers", [])),
            error=data.get("error"),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            version=data.get("version", 0),
        )


@dataclass
class PendingFix:
    """A CI fix proposed under ``approval_required`` and not yet applied."""

    proposal_comment_id: int
    logs: str
    head_sha: str | None = None
    proposed_at: str = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposal_comment_id": self.proposal_comment_id,
            "logs": self.logs,
            "head_sha": self.head_sha,
            "proposed_at": self.proposed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingFix":
        return cls(
            proposal_comment_id=data["proposal_comment_id"],
            logs=data.get("logs", ""),
            head_sha=data.get("head_sha"),
            proposed_at=data.get("proposed_at", utcnow()),
        )


@dataclass
class PRState:
    """Durable state of one bot pull request.

    Always tied to one ``(issue_number, action_index)`` pair. ``ci_strategy``
    is copied from the parent issue when the PR is created and is immutable
    afterwards. ``fix_attempts`` only grows, by exactly one per applied
    CI fix.

    ``head_sha`` is the newest commit known on the PR branch. Commits it
    replaced are kept in ``superseded_shas`` so late or redelivered CI
    results for them can be told apart from results for the current head.
    """

    pr_number: int
    issue_number: int
    action_index: int
    action_name: str
    branch_name: str
    base_branch: str
    ci_strategy: CIStrategy
    status: PRStatus = PRStatus.PENDING_CI
    fix_attempts: int = 0
    fix_history: list[dict[str, Any]] = field(default_factory=list)
    pending_fix: PendingFix | None = None
    last_failure_sha: str | None = None
    head_sha: str | None = None
    superseded_shas: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow)
    last_fix_at: str | None = None
    updated_at: str = field(default_factory=utcnow)
    version: int = 0

    @property
    def key(self) -> str:
        return pr_key(self.pr_number)

    def is_superseded(self, sha: str | None) -> bool:
        """True for a commit that is no longer the head of the PR branch."""
        return bool(sha) and sha in self.superseded_shas

    def observe_head(self, sha: str | None) -> None:
        """Record ``sha`` as the branch head, superseding the previous one."""
        if not sha or sha == self.head_sha:
            return
        if self.head_sha and self.head_sha not in self.superseded_shas:
            self.superseded_shas.append(self.head_sha)
        if sha in self.superseded_shas:
            self.superseded_shas.remove(sha)
        self.head_sha = sha

    def record_fix(self, commit_sha: str, trigger: str) -> None:
        """Account for one pushed CI fix commit."""
        now = utcnow()
        self.observe_head(commit_sha)
        self.fix_attempts += 1
        self.last_fix_at = now
        self.fix_history.append({"attempt": self.fix_attempts, "sha": commit_sha, "trigger": trigger, "at": now})
        self.status = PRStatus.PENDING_CI

    def to_dict(self) -> dict[str, Any]:
        return {
            "pr_number": self.pr_number,
            "issue_number": self.issue_number,
            "action_index": self.action_index,
            "action_name": self.action_name,
            "branch_name": self.branch_name,
            "base_branch": self.base_branch,
            "ci_strategy": self.ci_strategy.value,
            "status": self.status.value,
            "fix_attempts": self.fix_attempts,
            "fix_history": list(self.fix_history),
            "pending_fix": self.pending_fix.to_dict() if self.pending_fix else None,
            "last_failure_sha": self.last_failure_sha,
            "head_sha": self.head_sha,
            "superseded_shas": list(self.superseded_shas),
            "created_at": self.created_at,
            "last_fix_at": self.last_fix_at,
            "updated_at": self.updated_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PRState":
        pending = data.get("pending_fix")
        return cls(
            pr_number=data["pr_number"],
            issue_number=data["issue_number"],
            action_index=data["action_index"],
            action_name=data["action_name"],
            branch_name=data["branch_name"],
            base_branch=data["base_branch"],
            ci_strategy=CIStrategy(data["ci_strategy"]),
            status=PRStatus(data["status"]),
            fix_attempts=data.get("fix_attempts", 0),
            fix_history=list(data.get("fix_history", [])),
            pending_fix=PendingFix.from_dict(pending) if pending else None,
            last_failure_sha=data.get("last_failure_sha"),
            head_sha=data.get("head_sha"),
            superseded_shas=list(data.get("superseded_shas", [])),
            created_at=data["created_at"],
            last_fix_at=data.get("last_fix_at"),
            updated_at=data["updated_at"],
            version=data.get("version", 0),
        )


@dataclass
class FileChange:
    """Full new content for one file."""

    path: str
    content: str


@dataclass
class Patch:
    """A code change produced by the agent, committed as one commit."""

    message: str
    files: list[FileChange] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.files


@dataclass
class AnalysisResult:
    """Agent analysis of an issue: a markdown document and ordered actions."""

    document: str
    actions: list[Action]


@dataclass
class ReviewResponse:
    """Agent response to a review comment thread."""

    reply: str
    patch: Patch | None = None


@dataclass
class Reaction:
    """An emoji reaction on a comment."""

    content: str
    """Reaction identifier as used by the platform (``+1``, ``rocket``...)."""

    user: str


@dataclass
class Comment:
    """A comment created on an issue or pull request."""

    id: int
    body: str
    author: str = ""
    url: str = ""


@dataclass
class PullRequest:
    """A pull request as returned by the code-hosting collaborator."""

    number: int
    title: str
    head: str
    base: str
    url: str = ""
    merged: bool = False
