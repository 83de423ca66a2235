"""Pytest configuration and shared fixtures."""

from collections import defaultdict
from pathlib import Path
from typing import Any

import pytest

from repo_autopilot.config.settings import AutopilotSettings
from repo_autopilot.engine.state_manager import StateManager
from repo_autopilot.enums import CheckStatus, ReviewDecision
from repo_autopilot.exceptions import ExternalServiceError, NotFoundError
from repo_autopilot.models.domain import (
    Action,
    AnalysisResult,
    Comment,
    FileChange,
    Patch,
    PullRequest,
    Reaction,
    ReviewResponse,
)
from repo_autopilot.providers.base import AgentProvider, GitProvider

BOT_LOGIN = "repo-autopilot[bot]"


class FakeGitProvider(GitProvider):
    """In-memory code host recording every side effect."""

    def __init__(self) -> None:
        self.labels: dict[int, list[str]] = {}
        self.branches: dict[str, str] = {"main": "sha-main-0"}
        self.commits: list[tuple[str, Patch, str]] = []
        self.pull_requests: dict[int, PullRequest] = {}
        self.comments: dict[int, list[Comment]] = defaultdict(list)
        self.review_replies: list[tuple[int, int, str]] = []
        self.reactions: dict[int, list[Reaction]] = defaultdict(list)
        self.review_decisions: dict[int, ReviewDecision] = {}
        self.conflicts: set[int] = set()
        self.check_status: dict[int, CheckStatus] = {}
        self.merge_calls: list[int] = []
        self.merge_failures = 0
        self._next_number = 100
        self._next_comment_id = 1000
        self._next_sha = 0

    # Test helpers

    def react(self, comment_id: int, user: str = "alice", content: str = "+1") -> None:
        self.reactions[comment_id].append(Reaction(content=content, user=user))

    def commits_on(self, branch: str) -> list[tuple[str, Patch, str]]:
        return [c for c in self.commits if c[0] == branch]

    def all_comments(self) -> list[Comment]:
        return [c for comments in self.comments.values() for c in comments]

    def _sha(self) -> str:
        self._next_sha += 1
        return f"{self._next_sha:040x}"

    # GitProvider

    async def get_labels(self, issue_number: int) -> list[str]:
        return list(self.labels.get(issue_number, []))

    async def add_label(self, issue_number: int, label: str) -> None:
        labels = self.labels.setdefault(issue_number, [])
        if label not in labels:
            labels.append(label)

    async def get_repository_context(self, issue_number: int) -> dict[str, Any]:
        return {
            "repository": "acme/webapp",
            "default_branch": "main",
            "issue": {
                "number": issue_number,
                "title": "Fix login",
                "body": "Login crashes on empty password",
                "labels": list(self.labels.get(issue_number, [])),
            },
            "files": ["app/login.py", "tests/test_login.py"],
        }

    async def create_branch(self, branch_name: str, from_branch: str) -> str:
        if branch_name in self.branches:
            return self.branches[branch_name]
        if from_branch not in self.branches:
            raise NotFoundError(f"Branch {from_branch} not found", status_code=404)
        self.branches[branch_name] = self.branches[from_branch]
        return self.branches[branch_name]

    async def commit_files(self, branch: str, patch: Patch) -> str:
        if branch not in self.branches:
            raise NotFoundError(f"Branch {branch} not found", status_code=404)
        sha = self._sha()
        self.branches[branch] = sha
        self.commits.append((branch, patch, sha))
        return sha

    async def create_pull_request(self, title: str, body: str, head: str, base: str) -> PullRequest:
        for pr in self.pull_requests.values():
            if pr.head == head and not pr.merged:
                return pr
        self._next_number += 1
        pr = PullRequest(number=self._next_number, title=title, head=head, base=base)
        self.pull_requests[pr.number] = pr
        return pr

    async def add_comment(self, issue_number: int, body: str) -> Comment:
        self._next_comment_id += 1
        comment = Comment(id=self._next_comment_id, body=body, author=BOT_LOGIN)
        self.comments[issue_number].append(comment)
        return comment

    async def reply_to_review_comment(self, pr_number: int, comment_id: int, body: str) -> Comment:
        self.review_replies.append((pr_number, comment_id, body))
        self._next_comment_id += 1
        return Comment(id=self._next_comment_id, body=body, author=BOT_LOGIN)

    async def get_reactions(self, issue_number: int, comment_id: int) -> list[Reaction]:
        return list(self.reactions[comment_id])

    async def get_review_decision(self, pr_number: int) -> ReviewDecision:
        return self.review_decisions.get(pr_number, ReviewDecision.REVIEW_REQUIRED)

    async def has_conflicts(self, pr_number: int) -> bool:
        return pr_number in self.conflicts

    async def get_check_status(self, pr_number: int) -> CheckStatus:
        return self.check_status.get(pr_number, CheckStatus.PENDING)

    async def merge_pull_request(self, pr_number: int, message: str) -> bool:
        self.merge_calls.append(pr_number)
        if self.merge_failures:
            self.merge_failures -= 1
            raise ExternalServiceError("Base branch was modified", status_code=405)
        self.pull_requests[pr_number].merged = True
        return True


class FakeAgentProvider(AgentProvider):
    """Deterministic agent recording the operations it was asked for."""

    def __init__(self, actions: list[Action] | None = None, document: str = "# Analysis\n\nNull password.") -> None:
        self.actions = actions if actions is not None else [Action("add-null-check", "Guard against None")]
        self.document = document
        self.calls: list[tuple[str, Any]] = []

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    async def analyze(self, context: dict[str, Any]) -> AnalysisResult:
        self.calls.append(("analyze", context))
        return AnalysisResult(document=self.document, actions=[Action(a.name, a.description) for a in self.actions])

    async def implement(self, action: Action, context: dict[str, Any]) -> Patch:
        self.calls.append(("implement", context))
        return Patch(
            message=f"Implement {action.name}",
            files=[FileChange(path=f"app/{action.name}.py", content=f"# {action.description}\n")],
        )

    async def fix_failure(self, logs: str, context: dict[str, Any]) -> Patch:
        self.calls.append(("fix_failure", context))
        return Patch(
            message=f"Fix CI (attempt {context['attempt']})",
            files=[FileChange(path="app/login.py", content=f"# fix {context['attempt']}\n")],
        )

    async def propose_fix(self, logs: str, context: dict[str, Any]) -> str:
        self.calls.append(("propose_fix", context))
        return "Import `Optional` in app/login.py."

    async def respond_to_review(self, thread: dict[str, Any]) -> ReviewResponse:
        self.calls.append(("respond_to_review", thread))
        return ReviewResponse(
            reply="Good catch, renamed.",
            patch=Patch(message="Rename variable", files=[FileChange(path="app/login.py", content="# renamed\n")]),
        )


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def state_manager(temp_state_dir: Path) -> StateManager:
    """StateManager instance with temp directory."""
    return StateManager(str(temp_state_dir))


@pytest.fixture
def settings(temp_state_dir: Path) -> AutopilotSettings:
    """Settings for testing."""
    return AutopilotSettings(
        github={"app_id": 1234, "installation_id": 5678, "private_key": "not-a-real-key", "bot_login": BOT_LOGIN},
        webhook={"secret": "s3cret"},
        repository={"owner": "acme", "name": "webapp", "default_branch": "main"},
        workflow={"state_directory": str(temp_state_dir), "maintainer": "alice"},
    )


@pytest.fixture
def fake_git() -> FakeGitProvider:
    return FakeGitProvider()


@pytest.fixture
def fake_agent() -> FakeAgentProvider:
    return FakeAgentProvider()
