"""
Merge gate - merge a bot pull request once every condition holds.

A pull request is ready to merge when all of:

- its status is ``ci_passed`` (or ``approved``, left by an earlier merge
  call that failed)
- the code host reports the review decision as approved
- the code host reports no merge conflicts

The gate then sets ``approved`` and calls merge once. A successful merge sets
``merged`` (terminal) and notes it on the parent issue. A failed merge call is
logged at warning and the PR stays ``approved`` until the next check-suite or
review event, or the next poll, observes the conditions again.

A green check suite only counts for the current head of the PR branch. A
late result for a commit the branch has moved past (for example the commit a
CI fix replaced) is ignored.
"""

import structlog

from repo_autopilot.engine.stages.base import WorkflowStage
from repo_autopilot.enums import CheckStatus, PRStatus, ReviewDecision
from repo_autopilot.exceptions import ExternalServiceError
from repo_autopilot.models.domain import PRState
from repo_autopilot.models.events import CheckSuiteCompleted

log = structlog.get_logger(__name__)

MERGEABLE_STATUSES = frozenset({PRStatus.CI_PASSED, PRStatus.APPROVED})


class MergeGate(WorkflowStage):
    """Decide when a bot pull request is merged, and merge it."""

    async def on_check_suite(self, pr_number: int, event: CheckSuiteCompleted) -> PRState | None:
        """Record a green check suite, then evaluate merge readiness."""
        pr = await self.state.load_pr(pr_number)
        if pr is None or pr.status.is_terminal:
            return pr
        if not event.succeeded:
            log.debug("check_suite_not_green", pr=pr_number, conclusion=event.conclusion)
            return pr
        head_sha = event.head_sha or None
        if pr.is_superseded(head_sha):
            log.info("check_suite_for_superseded_commit", pr=pr_number, head_sha=head_sha, current=pr.head_sha)
            return pr

        await self._mark_ci_passed(pr, head_sha)
        return await self.evaluate(pr_number)

    async def reconcile(self, pr_number: int) -> PRState | None:
        """Catch up on CI results that arrived while no delivery got through."""
        pr = await self.state.load_pr(pr_number)
        if pr is None or pr.status.is_terminal:
            return pr

        if pr.status == PRStatus.PENDING_CI:
            status = await self.git.get_check_status(pr_number)
            if status != CheckStatus.SUCCESS:
                log.debug("reconcile_ci_not_green", pr=pr_number, check_status=str(status))
                return pr
            await self._mark_ci_passed(pr, None)

        return await self.evaluate(pr_number)

    async def _mark_ci_passed(self, pr: PRState, head_sha: str | None) -> None:
        if pr.status not in (PRStatus.PENDING_CI, PRStatus.CI_FAILED):
            return

        def mark_passed(record: PRState) -> None:
            record.observe_head(head_sha)
            if record.status in (PRStatus.PENDING_CI, PRStatus.CI_FAILED):
                record.status = PRStatus.CI_PASSED
                record.pending_fix = None

        pr = await self._update_pr(pr.pr_number, mark_passed)
        log.info("ci_passed", pr=pr.pr_number, fix_attempts=pr.fix_attempts, head_sha=pr.head_sha)

    async def evaluate(self, pr_number: int) -> PRState | None:
        """Merge the pull request if it is ready.

        Returns:
            The PR record after evaluation, or None if the PR is untracked.
        """
        pr = await self.state.load_pr(pr_number)
        if pr is None or pr.status.is_terminal:
            return pr
        if pr.status not in MERGEABLE_STATUSES:
            log.debug("merge_not_ready", pr=pr_number, status=str(pr.status))
            return pr

        decision = await self.git.get_review_decision(pr_number)
        if decision != ReviewDecision.APPROVED:
            log.debug("merge_waiting_for_review", pr=pr_number, decision=str(decision))
            return pr
        if await self.git.has_conflicts(pr_number):
            log.info("merge_blocked_by_conflicts", pr=pr_number)
            return pr

        if pr.status != PRStatus.APPROVED:
            pr = await self._update_pr(pr_number, _mark_approved)
            if pr.status != PRStatus.APPROVED:
                log.info("merge_state_changed", pr=pr_number, status=str(pr.status))
                return pr

        try:
            merged = await self.git.merge_pull_request(
                pr_number,
                f"{pr.action_name} (#{pr_number}, for #{pr.issue_number})",
            )
        except ExternalServiceError as e:
            log.warning("merge_failed", pr=pr_number, error=e.message)
            return pr
        if not merged:
            log.warning("merge_not_performed", pr=pr_number)
            return pr

        pr = await self._update_pr(pr_number, _mark_merged)
        log.info("pr_merged", pr=pr_number, issue=pr.issue_number)

        await self.git.add_comment(
            pr.issue_number,
            f"Merged #{pr_number} (action **{pr.action_name}**) into `{pr.base_branch}`.",
        )
        return pr


def _mark_approved(pr: PRState) -> None:
    if pr.status in MERGEABLE_STATUSES:
        pr.status = PRStatus.APPROVED


def _mark_merged(pr: PRState) -> None:
    pr.status = PRStatus.MERGED
