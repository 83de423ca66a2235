"""GitHub provider implementation using PyGithub and REST API.

Every call fetches the current installation token from the credential broker
and rebuilds the client when the token rotated. PyGithub is synchronous, so
calls run in a worker thread, and its exceptions are translated into the
orchestrator's error taxonomy. Rate limits, timeouts and 5xx responses are
retried with exponential backoff.
"""

import asyncio
import time
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

import requests
import structlog
from github import Auth, Github, GithubException, InputGitTreeElement  # type: ignore[import-not-found]
from github.GithubException import (  # type: ignore[import-not-found]
    BadCredentialsException,
    RateLimitExceededException,
    UnknownObjectException,
)
from github.Repository import Repository as GHRepository  # type: ignore[import-not-found]

from repo_autopilot.credentials.broker import CredentialBroker
from repo_autopilot.enums import CheckStatus, ReviewDecision
from repo_autopilot.exceptions import (
    AuthenticationError,
    ExternalServiceError,
    NotFoundError,
    RateLimitError,
    RepoAutopilotError,
    TransientCollaboratorError,
)
from repo_autopilot.models.domain import Comment, Patch, PullRequest, Reaction
from repo_autopilot.models.events import FAILING_CONCLUSIONS
from repo_autopilot.providers.base import GitProvider
from repo_autopilot.utils.retry import retry_call

log = structlog.get_logger(__name__)

T = TypeVar("T")

MAX_CONTEXT_FILES = 500


async def _run_sync(func: Callable[[], T]) -> T:
    """Run a synchronous function in a thread pool.

    This prevents blocking the event loop when calling synchronous
    PyGithub methods.
    """
    return await asyncio.to_thread(func)


class GitHubRestProvider(GitProvider):
    """GitHub implementation using PyGithub library, authenticated as an App installation."""

    def __init__(
        self,
        broker: CredentialBroker,
        owner: str,
        repo: str,
        base_url: str = "https://api.github.com",
        default_branch: str = "main",
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_backoff: float = 2.0,
        merge_method: str = "squash",
    ):
        """Initialize GitHub provider.

        Args:
            broker: Source of installation access tokens
            owner: Repository owner (user or organization)
            repo: Repository name
            base_url: GitHub API base URL (for GitHub Enterprise)
            default_branch: Branch the repository context is read from
            timeout: Per-request timeout in seconds
            retry_attempts: Attempts for rate-limited or transient failures
            retry_backoff: Exponential backoff base in seconds
            merge_method: ``merge``, ``squash`` or ``rebase``
        """
        self.broker = broker
        self.owner = owner
        self.repo = repo
        # Normalize base_url by removing trailing slash (Pydantic HttpUrl adds it)
        self.base_url = str(base_url).rstrip("/")
        self.default_branch = default_branch
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.merge_method = merge_method
        self._token: str | None = None
        self._client: Github | None = None
        self._repo: GHRepository | None = None

    async def _repository(self) -> GHRepository:
        credential = await self.broker.token()
        if self._repo is None or credential.token != self._token:
            if self._client is not None:
                self._client.close()
            self._client = Github(
                auth=Auth.Token(credential.token),
                base_url=self.base_url,
                timeout=int(self.timeout),
            )
            self._repo = self._client.get_repo(f"{self.owner}/{self.repo}", lazy=True)
            self._token = credential.token
            log.debug("github_client_refreshed", owner=self.owner, repo=self.repo)
        return self._repo

    async def _call(self, operation: str, func: Callable[[GHRepository], T]) -> T:
        """Run one PyGithub operation with translation and retries."""
        return await retry_call(
            self._call_once,
            operation,
            func,
            max_attempts=self.retry_attempts,
            backoff_factor=self.retry_backoff,
        )

    async def _call_once(self, operation: str, func: Callable[[GHRepository], T]) -> T:
        repo = await self._repository()
        try:
            return await _run_sync(lambda: func(repo))
        except GithubException as e:
            error = self._translate(operation, e)
            log.warning("github_call_failed", operation=operation, status=e.status, error=error.message)
            raise error from e
        except requests.exceptions.RequestException as e:
            log.warning("github_call_unreachable", operation=operation, error=str(e))
            raise TransientCollaboratorError(f"GitHub {operation} failed: {e}") from e

    def _translate(self, operation: str, e: GithubException) -> RepoAutopilotError:
        """Map a PyGithub exception onto the error taxonomy."""
        status = e.status
        message = _error_message(e)

        if (
            isinstance(e, RateLimitExceededException)
            or status == 429
            or (status == 403 and "rate limit" in message.lower())
        ):
            return RateLimitError(
                f"GitHub rate limit hit during {operation}",
                status_code=status,
                retry_after=_retry_after(e.headers),
            )
        if isinstance(e, BadCredentialsException) or status == 401:
            # Force a fresh token on the next call
            self.broker.invalidate()
            return AuthenticationError(f"GitHub rejected credentials during {operation}: {message}")
        if isinstance(e, UnknownObjectException) or status == 404:
            return NotFoundError(f"GitHub {operation}: not found", status_code=status, response_text=message)
        if status is not None and status >= 500:
            return TransientCollaboratorError(
                f"GitHub {operation} failed: {message}", status_code=status, response_text=message
            )
        return ExternalServiceError(f"GitHub {operation} failed: {message}", status_code=status, response_text=message)

    async def get_labels(self, issue_number: int) -> list[str]:
        """Retrieve the live labels of an issue or PR."""
        log.debug("get_labels", number=issue_number)
        return await self._call(
            "get_labels",
            lambda repo: [label.name for label in repo.get_issue(issue_number).get_labels()],
        )

    async def add_label(self, issue_number: int, label: str) -> None:
        log.info("add_label", number=issue_number, label=label)
        await self._call("add_label", lambda repo: repo.get_issue(issue_number).add_to_labels(label))

    async def get_repository_context(self, issue_number: int) -> dict[str, Any]:
        """Issue details plus the file listing of the default branch."""
        log.info("get_repository_context", number=issue_number)

        def _context(repo: GHRepository) -> dict[str, Any]:
            issue = repo.get_issue(issue_number)
            tree = repo.get_git_tree(self.default_branch, recursive=True)
            files = [entry.path for entry in tree.tree if entry.type == "blob"]
            return {
                "repository": f"{self.owner}/{self.repo}",
                "default_branch": self.default_branch,
                "issue": {
                    "number": issue.number,
                    "title": issue.title,
                    "body": issue.body or "",
                    "labels": [label.name for label in issue.labels],
                },
                "files": files[:MAX_CONTEXT_FILES],
            }

        return await self._call("get_repository_context", _context)

    async def create_branch(self, branch_name: str, from_branch: str) -> str:
        """Create a branch, reusing it if it already exists."""
        log.info("create_branch", branch=branch_name, from_branch=from_branch)

        def _create_branch(repo: GHRepository) -> str:
            try:
                return repo.get_git_ref(f"heads/{branch_name}").object.sha
            except UnknownObjectException:
                pass

            # Get the source branch reference
            source_sha = repo.get_git_ref(f"heads/{from_branch}").object.sha
            repo.create_git_ref(ref=f"refs/heads/{branch_name}", sha=source_sha)
            return source_sha

        return await self._call("create_branch", _create_branch)

    async def commit_files(self, branch: str, patch: Patch) -> str:
        """Write every file of the patch as one commit via the git data API.

        The commit object is created first and the branch ref is moved in a
        separate step that only fast-forwards from the parent it was built
        on. Retrying either step never stacks a second commit on the branch.
        """
        log.info("commit_files", branch=branch, files=[f.path for f in patch.files])

        def _create_commit(repo: GHRepository) -> tuple[str, str]:
            parent_sha = repo.get_git_ref(f"heads/{branch}").object.sha
            parent = repo.get_git_commit(parent_sha)
            elements = [InputGitTreeElement(f.path, "100644", "blob", content=f.content) for f in patch.files]
            tree = repo.create_git_tree(elements, base_tree=parent.tree)
            commit = repo.create_git_commit(patch.message, tree, [parent])
            return commit.sha, parent_sha

        commit_sha, parent_sha = await self._call("commit_files", _create_commit)

        def _move_ref(repo: GHRepository) -> str:
            # A retry after a lost response can find the ref already moved
            ref = repo.get_git_ref(f"heads/{branch}")
            if ref.object.sha == commit_sha:
                return commit_sha
            if ref.object.sha != parent_sha:
                raise ExternalServiceError(
                    f"Branch {branch} moved to {ref.object.sha} while committing on {parent_sha}",
                    status_code=409,
                )
            ref.edit(commit_sha)
            return commit_sha

        return await self._call("update_ref", _move_ref)

    async def create_pull_request(self, title: str, body: str, head: str, base: str) -> PullRequest:
        """Create a pull request, returning the open one for ``head`` if any."""
        log.info("create_pull_request", title=title, head=head, base=base)

        def _create_pr(repo: GHRepository) -> Any:
            existing = list(repo.get_pulls(state="open", head=f"{self.owner}:{head}", base=base))
            if existing:
                log.info("pull_request_exists", number=existing[0].number, head=head)
                return existing[0]
            return repo.create_pull(title=title, body=body, head=head, base=base)

        gh_pr = await self._call("create_pull_request", _create_pr)
        return PullRequest(
            number=gh_pr.number,
            title=gh_pr.title,
            head=gh_pr.head.ref,
            base=gh_pr.base.ref,
            url=gh_pr.html_url,
            merged=bool(gh_pr.merged),
        )

    async def add_comment(self, issue_number: int, body: str) -> Comment:
        """Add comment to an issue or PR conversation."""
        log.info("add_comment", number=issue_number)
        gh_comment = await self._call(
            "add_comment",
            lambda repo: repo.get_issue(issue_number).create_comment(body),
        )
        return _convert_comment(gh_comment)

    async def reply_to_review_comment(self, pr_number: int, comment_id: int, body: str) -> Comment:
        log.info("reply_to_review_comment", number=pr_number, comment=comment_id)
        gh_comment = await self._call(
            "reply_to_review_comment",
            lambda repo: repo.get_pull(pr_number).create_review_comment_reply(comment_id, body),
        )
        return _convert_comment(gh_comment)

    async def get_reactions(self, issue_number: int, comment_id: int) -> list[Reaction]:
        log.debug("get_reactions", number=issue_number, comment=comment_id)

        def _reactions(repo: GHRepository) -> list[Reaction]:
            comment = repo.get_issue(issue_number).get_comment(comment_id)
            return [
                Reaction(content=r.content, user=r.user.login if r.user else "") for r in comment.get_reactions()
            ]

        return await self._call("get_reactions", _reactions)

    async def get_review_decision(self, pr_number: int) -> ReviewDecision:
        """Aggregate the latest approving or blocking review of each reviewer."""

        def _decision(repo: GHRepository) -> ReviewDecision:
            latest: dict[str, str] = {}
            for review in repo.get_pull(pr_number).get_reviews():
                if review.user is None or review.state in ("COMMENTED", "PENDING"):
                    continue
                latest[review.user.login] = review.state

            states = set(latest.values())
            if "CHANGES_REQUESTED" in states:
                return ReviewDecision.CHANGES_REQUESTED
            if "APPROVED" in states:
                return ReviewDecision.APPROVED
            return ReviewDecision.REVIEW_REQUIRED

        return await self._call("get_review_decision", _decision)

    async def has_conflicts(self, pr_number: int) -> bool:
        """Whether the PR cannot be merged cleanly.

        GitHub computes mergeability lazily; an unknown result counts as
        conflicted so the merge is deferred to a later event.
        """
        mergeable = await self._call("has_conflicts", lambda repo: repo.get_pull(pr_number).mergeable)
        if mergeable is None:
            log.info("mergeability_unknown", number=pr_number)
            return True
        return not mergeable

    async def get_check_status(self, pr_number: int) -> CheckStatus:
        def _status(repo: GHRepository) -> CheckStatus:
            head_sha = repo.get_pull(pr_number).head.sha
            runs = list(repo.get_commit(head_sha).get_check_runs())
            if not runs or any(run.status != "completed" for run in runs):
                return CheckStatus.PENDING
            if any(run.conclusion in FAILING_CONCLUSIONS for run in runs):
                return CheckStatus.FAILURE
            return CheckStatus.SUCCESS

        return await self._call("get_check_status", _status)

    async def merge_pull_request(self, pr_number: int, message: str) -> bool:
        log.info("merge_pull_request", number=pr_number, method=self.merge_method)
        status = await self._call(
            "merge_pull_request",
            lambda repo: repo.get_pull(pr_number).merge(commit_message=message, merge_method=self.merge_method),
        )
        return bool(status.merged)


def _error_message(e: GithubException) -> str:
    data = e.data
    if isinstance(data, Mapping) and data.get("message"):
        return str(data["message"])
    return str(data) if data else str(e)


def _retry_after(headers: Mapping[str, str] | None) -> float | None:
    """Seconds to wait from ``Retry-After`` or ``X-RateLimit-Reset``."""
    if not headers:
        return None
    lowered = {k.lower(): v for k, v in headers.items()}
    try:
        if "retry-after" in lowered:
            return float(lowered["retry-after"])
        if "x-ratelimit-reset" in lowered:
            return max(0.0, float(lowered["x-ratelimit-reset"]) - time.time())
    except ValueError:
        return None
    return None


def _convert_comment(gh_comment: Any) -> Comment:
    """Convert a GitHub issue or review comment to our Comment model."""
    return Comment(
        id=gh_comment.id,
        body=gh_comment.body or "",
        author=gh_comment.user.login if gh_comment.user else "unknown",
        url=gh_comment.html_url or "",
    )
