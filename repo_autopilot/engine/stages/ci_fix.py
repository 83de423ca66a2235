"""
CI failure handling - bounded auto-fix loop with escalation.

State machine on the pull request record::

    pending_ci -> ci_failed -> (fix pushed) -> pending_ci -> ...
                            -> escalated

On each failing check run for a new head commit:

1. ``fix_attempts`` already at the budget (3): escalate. The PR becomes
   ``escalated``, a comment summarizing every attempt mentions the
   maintainer, and the ``needs-attention`` label is added. This holds for
   both CI strategies.
2. Otherwise, by the CI strategy inherited from the issue:

   - ``immediate``: the agent produces a fix, it is pushed as one commit and
     ``fix_attempts`` goes up by one.
   - ``approval_required``: the agent describes a fix, the description is
     posted as a comment and the PR stays ``ci_failed`` until the proposal
     comment is approved. Applying it then follows the immediate path.

Deduplication:
    The failing head SHA is stored as ``last_failure_sha``. Several failing
    check runs for one commit, or a redelivered event, trigger one fix.
    Failures reported for a commit the PR branch has already moved past
    (``PRState.superseded_shas``) are ignored.
"""

from typing import Any

import structlog

from repo_autopilot.engine.approval import is_approved
from repo_autopilot.engine.stages.base import WorkflowStage
from repo_autopilot.enums import CIStrategy, PRStatus
from repo_autopilot.exceptions import AgentResponseError
from repo_autopilot.models.domain import PendingFix, PRState
from repo_autopilot.models.events import CheckRunCompleted

log = structlog.get_logger(__name__)

LOG_EXCERPT_LENGTH = 2000


class CIFailureHandler(WorkflowStage):
    """Fix failing CI on bot pull requests, within a fixed attempt budget."""

    @property
    def max_fix_attempts(self) -> int:
        return self.settings.workflow.max_fix_attempts

    async def on_failure(self, pr_number: int, event: CheckRunCompleted) -> PRState | None:
        """React to a failing check run on a tracked pull request."""
        pr = await self.state.load_pr(pr_number)
        if pr is None:
            log.debug("ci_failure_untracked_pr", pr=pr_number)
            return None
        if pr.status.is_terminal:
            log.debug("ci_failure_ignored", pr=pr_number, status=str(pr.status))
            return pr
        head_sha = event.head_sha or None
        if pr.is_superseded(head_sha):
            log.info("ci_failure_for_superseded_commit", pr=pr_number, head_sha=head_sha, current=pr.head_sha)
            return pr
        if head_sha and pr.last_failure_sha == head_sha:
            log.info("ci_failure_already_handled", pr=pr_number, head_sha=head_sha)
            return pr

        logs = event.logs
        log.info("ci_failed", pr=pr_number, check=event.name, fix_attempts=pr.fix_attempts)

        def mark_failed(record: PRState) -> None:
            record.observe_head(head_sha)
            record.status = PRStatus.CI_FAILED
            record.last_failure_sha = head_sha
            record.pending_fix = None

        pr = await self._update_pr(pr_number, mark_failed)
        if pr.fix_attempts >= self.max_fix_attempts:
            return await self._escalate(pr, logs)

        if pr.ci_strategy == CIStrategy.IMMEDIATE:
            return await self._apply_fix(pr, logs, trigger="ci_failure")
        return await self._propose_fix(pr, logs, event.head_sha)

    async def on_approval_check(self, pr_number: int) -> PRState | None:
        """Apply a proposed fix once its proposal comment is approved."""
        pr = await self.state.load_pr(pr_number)
        if pr is None or pr.status.is_terminal or pr.pending_fix is None:
            return pr

        workflow = self.settings.workflow
        reactions = await self.git.get_reactions(pr_number, pr.pending_fix.proposal_comment_id)
        approved = is_approved(
            reactions,
            reaction=workflow.approval_reaction,
            approvers=workflow.approvers,
            bot_login=self.settings.github.bot_login,
        )
        if not approved:
            log.debug("ci_fix_not_approved", pr=pr_number)
            return pr

        log.info("ci_fix_approved", pr=pr_number, proposal=pr.pending_fix.proposal_comment_id)
        return await self._apply_fix(pr, pr.pending_fix.logs, trigger="approval")

    def _context(self, pr: PRState) -> dict[str, Any]:
        return {
            "pr_number": pr.pr_number,
            "issue_number": pr.issue_number,
            "action": pr.action_name,
            "branch": pr.branch_name,
            "base_branch": pr.base_branch,
            "attempt": pr.fix_attempts + 1,
            "max_attempts": self.max_fix_attempts,
            "previous_fixes": list(pr.fix_history),
        }

    async def _apply_fix(self, pr: PRState, logs: str, trigger: str) -> PRState:
        async with self._reporting_failures(pr.pr_number, "ci_fix", pr.key):
            patch = await self.agent.fix_failure(logs, self._context(pr))
            if patch.is_empty:
                raise AgentResponseError("Fix produced no changes", operation="fix_failure")
            commit_sha = await self.git.commit_files(pr.branch_name, patch)

        def count_fix(record: PRState) -> None:
            record.record_fix(commit_sha, trigger)
            record.pending_fix = None

        # Reapplied on a fresh read so a pushed commit is always counted
        pr = await self._update_pr(pr.pr_number, count_fix)
        log.info(
            "ci_fix_pushed",
            pr=pr.pr_number,
            commit=commit_sha,
            fix_attempts=pr.fix_attempts,
            trigger=trigger,
        )
        return pr

    async def _propose_fix(self, pr: PRState, logs: str, head_sha: str | None) -> PRState:
        async with self._reporting_failures(pr.pr_number, "ci_fix_proposal", pr.key):
            proposal = await self.agent.propose_fix(logs, self._context(pr))
            comment = await self.git.add_comment(pr.pr_number, self._proposal_body(pr, proposal))

        def store_proposal(record: PRState) -> None:
            record.pending_fix = PendingFix(proposal_comment_id=comment.id, logs=logs, head_sha=head_sha)

        pr = await self._update_pr(pr.pr_number, store_proposal)
        log.info("ci_fix_proposed", pr=pr.pr_number, proposal=comment.id)
        return pr

    def _proposal_body(self, pr: PRState, proposal: str) -> str:
        return (
            f"## Proposed CI fix (attempt {pr.fix_attempts + 1} of {self.max_fix_attempts})\n\n"
            f"{proposal.strip()}\n\n"
            f"React with `{self.settings.workflow.approval_reaction}` on this comment to apply it."
        )

    async def _escalate(self, pr: PRState, logs: str) -> PRState:
        pr = await self._update_pr(pr.pr_number, _mark_escalated)

        await self.git.add_comment(pr.pr_number, self._escalation_body(pr, logs))
        await self.git.add_label(pr.pr_number, self.settings.tags.needs_attention)
        log.warning("pr_escalated", pr=pr.pr_number, fix_attempts=pr.fix_attempts)
        return pr

    def _escalation_body(self, pr: PRState, logs: str) -> str:
        maintainer = self.settings.workflow.maintainer
        mention = f"@{maintainer.lstrip('@')} " if maintainer else ""
        lines = [
            "## CI still failing, escalating",
            "",
            f"{mention}CI kept failing after {pr.fix_attempts} automated fix attempt(s). "
            "No further fixes will be attempted on this pull request.",
            "",
            "### Attempts",
        ]
        for entry in pr.fix_history:
            lines.append(f"{entry['attempt']}. `{entry['sha'][:7]}` ({entry['trigger']}, {entry['at']})")
        if not pr.fix_history:
            lines.append("_none_")

        excerpt = logs if len(logs) <= LOG_EXCERPT_LENGTH else logs[-LOG_EXCERPT_LENGTH:]
        lines += ["", "### Latest failure", "", "```", excerpt, "```"]
        return "\n".join(lines)


def _mark_escalated(pr: PRState) -> None:
    pr.status = PRStatus.ESCALATED
