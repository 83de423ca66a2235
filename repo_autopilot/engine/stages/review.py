"""Review comment responder.

Answers inline review comments on bot pull requests. The agent's reply is
posted in the comment's thread and, when the agent also returns a code
change, that change is pushed to the PR branch as one commit. Review fixes
are not CI fixes: ``fix_attempts`` and ``status`` stay as they are. The
pushed commit does become the new head of the PR branch.
"""

import structlog

from repo_autopilot.engine.stages.base import WorkflowStage
from repo_autopilot.exceptions import NotFoundError
from repo_autopilot.models.domain import ReviewResponse
from repo_autopilot.models.events import PRReviewCommentCreated

log = structlog.get_logger(__name__)


class ReviewHandler(WorkflowStage):
    """Reply to, and optionally act on, review comments."""

    async def on_review_comment(self, event: PRReviewCommentCreated) -> ReviewResponse | None:
        pr = await self.state.load_pr(event.pr_number)
        if pr is None or pr.status.is_terminal:
            log.debug("review_comment_ignored", pr=event.pr_number)
            return None
        if event.author.lower() == self.settings.github.bot_login.lower():
            return None

        thread = {
            "pr_number": pr.pr_number,
            "issue_number": pr.issue_number,
            "action": pr.action_name,
            "branch": pr.branch_name,
            "comment_id": event.comment_id,
            "body": event.body,
            "author": event.author,
            "path": event.path,
            "line": event.line,
            "diff_hunk": event.diff_hunk,
            "in_reply_to": event.in_reply_to,
        }

        async with self._reporting_failures(pr.pr_number, "review_response", pr.key):
            response = await self.agent.respond_to_review(thread)
            reply = response.reply.strip()
            if response.patch is not None and not response.patch.is_empty:
                commit_sha = await self.git.commit_files(pr.branch_name, response.patch)
                await self._update_pr(pr.pr_number, lambda record: record.observe_head(commit_sha))
                reply += f"\n\nPushed `{commit_sha[:7]}` to `{pr.branch_name}`."
                log.info("review_fix_pushed", pr=pr.pr_number, commit=commit_sha)
            await self._post_reply(pr.pr_number, event.comment_id, reply)

        log.info("review_comment_answered", pr=pr.pr_number, comment=event.comment_id)
        return response

    async def _post_reply(self, pr_number: int, comment_id: int, body: str) -> None:
        try:
            await self.git.reply_to_review_comment(pr_number, comment_id, body)
        except NotFoundError:
            # Thread gone (comment deleted or outdated); answer on the PR instead.
            log.info("review_thread_unavailable", pr=pr_number, comment=comment_id)
            await self.git.add_comment(pr_number, body)
