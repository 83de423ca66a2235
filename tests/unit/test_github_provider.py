"""Tests for repo_autopilot/providers/github_rest.py."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, Mock, patch

import pytest
import requests
from github import GithubException
from github.GithubException import BadCredentialsException, UnknownObjectException

from repo_autopilot.credentials.broker import Credential
from repo_autopilot.enums import CheckStatus, ReviewDecision
from repo_autopilot.exceptions import (
    AuthenticationError,
    ExternalServiceError,
    NotFoundError,
    RateLimitError,
    TransientCollaboratorError,
)
from repo_autopilot.models.domain import FileChange, Patch
from repo_autopilot.providers.github_rest import GitHubRestProvider


def _credential(token: str = "ghs_first") -> Credential:
    return Credential(token=token, expires_at=datetime.now(UTC) + timedelta(hours=1))


@pytest.fixture
def broker():
    broker = Mock()
    broker.token = AsyncMock(return_value=_credential())
    broker.invalidate = Mock()
    return broker


@pytest.fixture
def mock_repo():
    return Mock()


@pytest.fixture
def mock_github_class(mock_repo):
    with patch("repo_autopilot.providers.github_rest.Github") as github_class:
        github_class.return_value.get_repo.return_value = mock_repo
        yield github_class


@pytest.fixture
def no_sleep():
    with patch("repo_autopilot.utils.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


@pytest.fixture
def provider(broker, mock_github_class, no_sleep):
    return GitHubRestProvider(broker, owner="acme", repo="webapp", base_url="https://api.github.com/")


def _review(login: str, state: str) -> Mock:
    review = Mock()
    review.user.login = login
    review.state = state
    return review


def _run(status: str, conclusion: str | None) -> Mock:
    run = Mock()
    run.status = status
    run.conclusion = conclusion
    return run


class TestClient:
    @pytest.mark.asyncio
    async def test_client_built_from_installation_token(self, provider, mock_github_class, mock_repo):
        mock_repo.get_issue.return_value.get_labels.return_value = []

        await provider.get_labels(42)
        await provider.get_labels(42)

        mock_github_class.assert_called_once()
        assert mock_github_class.call_args.kwargs["base_url"] == "https://api.github.com"
        mock_github_class.return_value.get_repo.assert_called_once_with("acme/webapp", lazy=True)

    @pytest.mark.asyncio
    async def test_client_rebuilt_when_token_rotates(self, provider, broker, mock_github_class, mock_repo):
        mock_repo.get_issue.return_value.get_labels.return_value = []

        await provider.get_labels(42)
        broker.token.return_value = _credential("ghs_second")
        await provider.get_labels(42)

        assert mock_github_class.call_count == 2
        mock_github_class.return_value.close.assert_called_once()


class TestErrorTranslation:
    @pytest.mark.asyncio
    async def test_not_found(self, provider, mock_repo, no_sleep):
        mock_repo.get_issue.side_effect = UnknownObjectException(404, {"message": "Not Found"}, {})

        with pytest.raises(NotFoundError):
            await provider.get_labels(42)

        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bad_credentials_invalidate_token(self, provider, broker, mock_repo, no_sleep):
        mock_repo.get_issue.side_effect = BadCredentialsException(401, {"message": "Bad credentials"}, {})

        with pytest.raises(AuthenticationError):
            await provider.get_labels(42)

        broker.invalidate.assert_called_once()
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, provider, mock_repo, no_sleep):
        label = Mock()
        label.name = "bot:simple"
        mock_repo.get_issue.return_value.get_labels.side_effect = [
            GithubException(502, {"message": "Bad Gateway"}, {}),
            [label],
        ]

        assert await provider.get_labels(42) == ["bot:simple"]
        no_sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_server_error_exhausts_retries(self, provider, mock_repo, no_sleep):
        mock_repo.get_issue.side_effect = GithubException(503, {"message": "Unavailable"}, {})

        with pytest.raises(TransientCollaboratorError):
            await provider.get_labels(42)

        assert mock_repo.get_issue.call_count == 3

    @pytest.mark.asyncio
    async def test_secondary_rate_limit_honors_retry_after(self, provider, mock_repo, no_sleep):
        mock_repo.get_issue.side_effect = [
            GithubException(403, {"message": "You have exceeded a secondary rate limit"}, {"Retry-After": "60"}),
            Mock(get_labels=Mock(return_value=[])),
        ]

        assert await provider.get_labels(42) == []
        no_sleep.assert_awaited_once_with(60.0)

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted(self, provider, mock_repo):
        mock_repo.get_issue.side_effect = GithubException(429, {"message": "slow down"}, {})

        with pytest.raises(RateLimitError):
            await provider.get_labels(42)

    @pytest.mark.asyncio
    async def test_validation_error_is_not_retried(self, provider, mock_repo, no_sleep):
        mock_repo.get_issue.side_effect = GithubException(422, {"message": "Validation Failed"}, {})

        with pytest.raises(ExternalServiceError, match="Validation Failed") as exc_info:
            await provider.get_labels(42)

        assert exc_info.value.status_code == 422
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, provider, mock_repo):
        mock_repo.get_issue.side_effect = requests.exceptions.ConnectionError("reset by peer")

        with pytest.raises(TransientCollaboratorError):
            await provider.get_labels(42)


class TestBranchesAndCommits:
    @pytest.mark.asyncio
    async def test_create_branch_from_source(self, provider, mock_repo):
        source = Mock()
        source.object.sha = "abc123"
        mock_repo.get_git_ref.side_effect = [UnknownObjectException(404, {"message": "Not Found"}, {}), source]

        sha = await provider.create_branch("action/42-add-null-check", "analysis/42-fix-login")

        assert sha == "abc123"
        mock_repo.create_git_ref.assert_called_once_with(ref="refs/heads/action/42-add-null-check", sha="abc123")

    @pytest.mark.asyncio
    async def test_existing_branch_is_reused(self, provider, mock_repo):
        mock_repo.get_git_ref.return_value.object.sha = "def456"

        assert await provider.create_branch("bot/42-x", "main") == "def456"
        mock_repo.create_git_ref.assert_not_called()

    @pytest.mark.asyncio
    async def test_commit_files_is_one_commit(self, provider, mock_repo):
        ref = mock_repo.get_git_ref.return_value
        ref.object.sha = "parent-sha"
        mock_repo.create_git_commit.return_value.sha = "new-sha"
        patch_ = Patch(
            message="Implement add-null-check",
            files=[FileChange("app/login.py", "a\n"), FileChange("tests/test_login.py", "b\n")],
        )

        sha = await provider.commit_files("bot/42-x", patch_)

        assert sha == "new-sha"
        elements = mock_repo.create_git_tree.call_args.args[0]
        assert len(elements) == 2
        mock_repo.create_git_commit.assert_called_once()
        assert mock_repo.create_git_commit.call_args.args[0] == "Implement add-null-check"
        ref.edit.assert_called_once_with("new-sha")

    @pytest.mark.asyncio
    async def test_ref_update_retry_does_not_stack_commits(self, provider, mock_repo, no_sleep):
        ref = mock_repo.get_git_ref.return_value
        ref.object.sha = "parent-sha"
        mock_repo.create_git_commit.return_value.sha = "new-sha"

        def applied_but_lost(sha):
            ref.object.sha = sha
            raise GithubException(502, {"message": "Bad Gateway"}, {})

        ref.edit.side_effect = applied_but_lost

        sha = await provider.commit_files("bot/42-x", Patch("fix", files=[FileChange("app/login.py", "a\n")]))

        assert sha == "new-sha"
        mock_repo.create_git_commit.assert_called_once()
        ref.edit.assert_called_once_with("new-sha")
        no_sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_branch_moved_while_committing(self, provider, mock_repo, no_sleep):
        at_parent = Mock()
        at_parent.object.sha = "parent-sha"
        moved = Mock()
        moved.object.sha = "someone-else"
        mock_repo.get_git_ref.side_effect = [at_parent, moved]
        mock_repo.create_git_commit.return_value.sha = "new-sha"

        with pytest.raises(ExternalServiceError, match="moved to someone-else") as exc_info:
            await provider.commit_files("bot/42-x", Patch("fix", files=[FileChange("app/login.py", "a\n")]))

        assert exc_info.value.status_code == 409
        moved.edit.assert_not_called()
        no_sleep.assert_not_awaited()


class TestPullRequests:
    @pytest.mark.asyncio
    async def test_create_pull_request(self, provider, mock_repo):
        mock_repo.get_pulls.return_value = []
        gh_pr = mock_repo.create_pull.return_value
        gh_pr.number = 101
        gh_pr.title = "[#42] add-null-check"
        gh_pr.head.ref = "bot/42-add-null-check"
        gh_pr.base.ref = "main"
        gh_pr.html_url = "https://github.com/acme/webapp/pull/101"
        gh_pr.merged = False

        pr = await provider.create_pull_request("[#42] add-null-check", "body", "bot/42-add-null-check", "main")

        assert pr.number == 101
        assert pr.base == "main"
        mock_repo.get_pulls.assert_called_once_with(state="open", head="acme:bot/42-add-null-check", base="main")

    @pytest.mark.asyncio
    async def test_existing_pull_request_is_returned(self, provider, mock_repo):
        existing = Mock(number=77, title="t", html_url="u", merged=False)
        existing.head.ref = "bot/42-x"
        existing.base.ref = "main"
        mock_repo.get_pulls.return_value = [existing]

        pr = await provider.create_pull_request("t", "b", "bot/42-x", "main")

        assert pr.number == 77
        mock_repo.create_pull.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reviews,expected",
        [
            ([], ReviewDecision.REVIEW_REQUIRED),
            ([("bob", "APPROVED")], ReviewDecision.APPROVED),
            ([("bob", "CHANGES_REQUESTED"), ("bob", "APPROVED")], ReviewDecision.APPROVED),
            ([("bob", "APPROVED"), ("carol", "CHANGES_REQUESTED")], ReviewDecision.CHANGES_REQUESTED),
            ([("bob", "APPROVED"), ("bob", "COMMENTED")], ReviewDecision.APPROVED),
        ],
    )
    async def test_review_decision(self, provider, mock_repo, reviews, expected):
        mock_repo.get_pull.return_value.get_reviews.return_value = [_review(u, s) for u, s in reviews]

        assert await provider.get_review_decision(101) == expected

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mergeable,expected", [(True, False), (False, True), (None, True)])
    async def test_has_conflicts(self, provider, mock_repo, mergeable, expected):
        mock_repo.get_pull.return_value.mergeable = mergeable

        assert await provider.has_conflicts(101) is expected

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "runs,expected",
        [
            ([], CheckStatus.PENDING),
            ([("completed", "success"), ("in_progress", None)], CheckStatus.PENDING),
            ([("completed", "success"), ("completed", "timed_out")], CheckStatus.FAILURE),
            ([("completed", "success"), ("completed", "skipped")], CheckStatus.SUCCESS),
        ],
    )
    async def test_check_status(self, provider, mock_repo, runs, expected):
        mock_repo.get_commit.return_value.get_check_runs.return_value = [_run(s, c) for s, c in runs]

        assert await provider.get_check_status(101) == expected

    @pytest.mark.asyncio
    async def test_merge_uses_squash(self, provider, mock_repo):
        mock_repo.get_pull.return_value.merge.return_value.merged = True

        assert await provider.merge_pull_request(101, "add-null-check (#101, for #42)") is True
        mock_repo.get_pull.return_value.merge.assert_called_once_with(
            commit_message="add-null-check (#101, for #42)", merge_method="squash"
        )

    @pytest.mark.asyncio
    async def test_merge_rejected(self, provider, mock_repo):
        mock_repo.get_pull.return_value.merge.side_effect = GithubException(
            405, {"message": "Pull Request is not mergeable"}, {}
        )

        with pytest.raises(ExternalServiceError, match="not mergeable"):
            await provider.merge_pull_request(101, "msg")


class TestComments:
    @pytest.mark.asyncio
    async def test_add_comment(self, provider, mock_repo):
        gh_comment = mock_repo.get_issue.return_value.create_comment.return_value
        gh_comment.id = 1001
        gh_comment.body = "hello"
        gh_comment.user.login = "repo-autopilot[bot]"
        gh_comment.html_url = "https://github.com/acme/webapp/issues/42#issuecomment-1001"

        comment = await provider.add_comment(42, "hello")

        assert comment.id == 1001
        assert comment.author == "repo-autopilot[bot]"

    @pytest.mark.asyncio
    async def test_get_reactions(self, provider, mock_repo):
        reaction = Mock(content="+1")
        reaction.user.login = "alice"
        mock_repo.get_issue.return_value.get_comment.return_value.get_reactions.return_value = [reaction]

        reactions = await provider.get_reactions(42, 1001)

        assert [(r.content, r.user) for r in reactions] == [("+1", "alice")]
        mock_repo.get_issue.assert_called_with(42)
        mock_repo.get_issue.return_value.get_comment.assert_called_once_with(1001)

    @pytest.mark.asyncio
    async def test_repository_context_limits_files(self, provider, mock_repo):
        issue = mock_repo.get_issue.return_value
        issue.number = 42
        issue.title = "Fix login"
        issue.body = None
        issue.labels = []
        entries = [Mock(path=f"src/f{i}.py", type="blob") for i in range(600)] + [Mock(path="src", type="tree")]
        mock_repo.get_git_tree.return_value.tree = entries

        context = await provider.get_repository_context(42)

        assert context["issue"]["body"] == ""
        assert len(context["files"]) == 500
        assert "src" not in context["files"]
        mock_repo.get_git_tree.assert_called_once_with("main", recursive=True)
