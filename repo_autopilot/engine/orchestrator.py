"""
Workflow orchestrator - routes events to stages under per-entity locks.

This module provides the WorkflowOrchestrator class, the central coordination
point between the webhook gateway and the workflow stages. The orchestrator
manages:

- Routing each event variant to the stage that handles it
- Serializing handling per entity key (``issue-{n}`` / ``pr-{n}``) while
  different entities proceed concurrently
- Converting stage failures into a result dict after logging them
- A reconciliation pass (``poll``) for deliveries that never arrived

Routing:
    =========================  =============================================
    Event                      Handler
    =========================  =============================================
    IssueOpened                IssueWorkflow.on_opened
    IssueCommented/Labeled     IssueWorkflow.on_activity (issue) or
                               CIFailureHandler.on_approval_check (PR)
    PRReviewSubmitted          MergeGate.evaluate
    PRReviewCommentCreated     ReviewHandler.on_review_comment
    CheckRunCompleted          CIFailureHandler.on_failure (failing runs)
    CheckSuiteCompleted        MergeGate.on_check_suite
    =========================  =============================================

Example:
    >>> state = StateManager(settings.state_dir)
    >>> orchestrator = WorkflowOrchestrator(settings, git, agent, state)
    >>> result = await orchestrator.dispatch(event)
    >>> result["success"]
    True
"""

from typing import Any

import structlog

from repo_autopilot.config.settings import AutopilotSettings
from repo_autopilot.engine.locks import KeyedLock
from repo_autopilot.engine.stages.ci_fix import CIFailureHandler
from repo_autopilot.engine.stages.issue_workflow import IssueWorkflow
from repo_autopilot.engine.stages.merge import MergeGate
from repo_autopilot.engine.stages.review import ReviewHandler
from repo_autopilot.engine.state_manager import StateManager
from repo_autopilot.enums import IssueStatus
from repo_autopilot.models.domain import issue_key, pr_key
from repo_autopilot.models.events import (
    CheckRunCompleted,
    CheckSuiteCompleted,
    Event,
    IssueCommented,
    IssueLabeled,
    IssueOpened,
    PRReviewCommentCreated,
    PRReviewSubmitted,
)
from repo_autopilot.providers.base import AgentProvider, GitProvider

log = structlog.get_logger(__name__)


class WorkflowOrchestrator:
    """Dispatch webhook events to the workflow stages.

    Attributes:
        settings: Orchestrator configuration.
        git: Code-hosting collaborator.
        agent: AI collaborator.
        state: State manager for per-entity records.
        issues: Issue workflow stage.
        ci: CI failure handler.
        reviews: Review comment responder.
        merge: Merge gate.
    """

    def __init__(
        self,
        settings: AutopilotSettings,
        git: GitProvider,
        agent: AgentProvider,
        state: StateManager,
    ) -> None:
        """Initialize the orchestrator and its stages.

        Args:
            settings: Orchestrator configuration
            git: Code-hosting collaborator
            agent: AI collaborator
            state: State manager
        """
        self.settings = settings
        self.git = git
        self.agent = agent
        self.state = state

        self.issues = IssueWorkflow(git, agent, state, settings)
        self.ci = CIFailureHandler(git, agent, state, settings)
        self.reviews = ReviewHandler(git, agent, state, settings)
        self.merge = MergeGate(git, agent, state, settings)

        self._locks = KeyedLock()

    async def dispatch(self, event: Event) -> dict[str, Any]:
        """Handle one event.

        Returns:
            ``{"success": True, "event_type": ..., "keys": [...]}`` or, when a
            handler raised, ``{"success": False, "error": ...}``. Skipped
            events carry ``skipped`` and ``reason``.
        """
        structlog.contextvars.bind_contextvars(
            delivery_id=event.delivery_id,
            event_type=str(event.event_type),
        )
        try:
            if not self._is_watched_repository(event):
                log.info("event_for_other_repository", owner=event.owner, repo=event.repo)
                return {"success": False, "skipped": True, "reason": "repository not configured"}

            log.info("dispatching_event", keys=list(event.entity_keys))
            await self._route(event)
            return {"success": True, "event_type": str(event.event_type), "keys": list(event.entity_keys)}

        except Exception as e:
            log.error("event_handling_failed", error=str(e), exc_info=True)
            return {"success": False, "event_type": str(event.event_type), "error": str(e)}
        finally:
            structlog.contextvars.unbind_contextvars("delivery_id", "event_type")

    def _is_watched_repository(self, event: Event) -> bool:
        repository = self.settings.repository
        if not event.owner or not event.repo:
            return True
        return event.owner.lower() == repository.owner.lower() and event.repo.lower() == repository.name.lower()

    async def _route(self, event: Event) -> None:
        if isinstance(event, IssueOpened):
            async with self._locks.hold(issue_key(event.issue_number)):
                await self.issues.on_opened(event)

        elif isinstance(event, IssueCommented | IssueLabeled):
            if isinstance(event, IssueCommented) and self._is_bot(event.author):
                log.debug("own_comment_ignored", number=event.issue_number)
                return
            await self._on_activity(event.issue_number, event.is_pull_request)

        elif isinstance(event, PRReviewSubmitted):
            async with self._locks.hold(pr_key(event.pr_number)):
                await self.merge.evaluate(event.pr_number)

        elif isinstance(event, PRReviewCommentCreated):
            async with self._locks.hold(pr_key(event.pr_number)):
                await self.reviews.on_review_comment(event)

        elif isinstance(event, CheckRunCompleted):
            if not event.failed:
                log.debug("check_run_not_failing", conclusion=event.conclusion)
                return
            for pr_number in event.pr_numbers:
                async with self._locks.hold(pr_key(pr_number)):
                    await self.ci.on_failure(pr_number, event)

        elif isinstance(event, CheckSuiteCompleted):
            for pr_number in event.pr_numbers:
                async with self._locks.hold(pr_key(pr_number)):
                    await self.merge.on_check_suite(pr_number, event)

        else:
            log.warning("unroutable_event", event_class=type(event).__name__)

    async def _on_activity(self, number: int, is_pull_request: bool) -> None:
        if is_pull_request:
            async with self._locks.hold(pr_key(number)):
                await self.ci.on_approval_check(number)
        else:
            async with self._locks.hold(issue_key(number)):
                await self.issues.on_activity(number)

    def _is_bot(self, login: str) -> bool:
        return login.lower() == self.settings.github.bot_login.lower()

    async def poll(self) -> dict[str, Any]:
        """Reconcile every active entity against the code host.

        Re-checks approvals for issues awaiting approval or interrupted during
        execution, approvals for proposed CI fixes, and CI and merge state for
        open pull requests. Each entity is handled under its lock and a
        failure on one does not stop the pass.

        Returns:
            Counts of entities checked and of failures.
        """
        checked = 0
        failures = 0

        for issue in await self.state.get_active_issues():
            if issue.status not in (IssueStatus.AWAITING_APPROVAL, IssueStatus.EXECUTING):
                continue
            checked += 1
            try:
                await self._on_activity(issue.issue_number, is_pull_request=False)
            except Exception as e:
                failures += 1
                log.error("poll_issue_failed", issue=issue.issue_number, error=str(e), exc_info=True)

        for pr in await self.state.get_active_prs():
            checked += 1
            try:
                async with self._locks.hold(pr.key):
                    if pr.pending_fix is not None:
                        await self.ci.on_approval_check(pr.pr_number)
                    else:
                        await self.merge.reconcile(pr.pr_number)
            except Exception as e:
                failures += 1
                log.error("poll_pr_failed", pr=pr.pr_number, error=str(e), exc_info=True)

        log.info("poll_complete", checked=checked, failures=failures)
        return {"success": failures == 0, "checked": checked, "failures": failures}
