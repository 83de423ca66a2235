"""
Base class for workflow stages.

This module provides the WorkflowStage base class shared by the issue
workflow, the CI fix loop, the review responder and the merge gate.

Stage Lifecycle:
    Stages are instantiated once during orchestrator initialization and reused
    for every event routed to them. The lifecycle is:

    1. Instantiation: Stage receives git, agent, state, and settings
    2. Handling: the orchestrator calls a stage method with an event or an
       entity number while holding that entity's lock
    3. Completion: Stage updates state and posts comments
    4. Error handling: ``_reporting_failures()`` makes failures human-visible

Persistence:
    Stages never write a record they loaded earlier with a bare ``save()``.
    Every transition goes through ``_update_issue()`` / ``_update_pr()``,
    which re-read the record and reapply the change when another writer (a
    poller process sharing the state directory) got there first.

Stage Responsibilities:
    Each stage implementation is responsible for:
    - Re-reading the entity record from the state manager (nothing is cached)
    - Treating terminal records and repeated deliveries as no-ops
    - Persisting every transition before the next external side effect
    - Adding informative comments to the issue or pull request
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import structlog

from repo_autopilot.config.settings import AutopilotSettings
from repo_autopilot.engine.state_manager import StateManager
from repo_autopilot.exceptions import (
    RepoAutopilotError,
    StateConflictError,
    TerminalWorkflowError,
    WorkflowError,
)
from repo_autopilot.models.domain import IssueState, PRState, issue_key, pr_key
from repo_autopilot.providers.base import AgentProvider, GitProvider

log = structlog.get_logger(__name__)


class WorkflowStage:
    """Base class for all workflow stages.

    Attributes:
        git: Code-hosting collaborator (labels, branches, PRs, comments).
        agent: AI collaborator for analysis, implementation and fixes.
        state: State manager for persisting per-entity records.
        settings: Configuration including tags, repository and workflow knobs.

    Note:
        Stages are shared across entities. Do not store issue- or
        PR-specific data as instance attributes.
    """

    def __init__(
        self,
        git: GitProvider,
        agent: AgentProvider,
        state: StateManager,
        settings: AutopilotSettings,
    ) -> None:
        """Initialize the workflow stage with required dependencies.

        Args:
            git: Code-hosting collaborator
            agent: AI collaborator
            state: State manager for persistence
            settings: Orchestrator settings
        """
        self.git = git
        self.agent = agent
        self.state = state
        self.settings = settings

    @property
    def default_branch(self) -> str:
        return self.settings.repository.default_branch

    async def _handle_stage_error(self, number: int, error: Exception, stage: str) -> None:
        """Make a stage failure visible on the issue or pull request.

        Logs the error with full context, adds an error comment and the
        ``needs-attention`` label. Failures while reporting are logged and do
        not replace the original error, which the caller re-raises.

        Args:
            number: Issue or pull request number to comment on
            error: The exception that was raised
            stage: Workflow step that failed (for the comment and logs)
        """
        error_msg = getattr(error, "message", None) or str(error) or type(error).__name__
        log.error("stage_error", number=number, stage=stage, error=error_msg, exc_info=True)

        try:
            await self.git.add_comment(
                number,
                f"**Automation stopped** during `{stage}`.\n\n"
                f"Error: {error_msg}\n\n"
                "A human needs to look at this before the workflow can continue.",
            )
            await self.git.add_label(number, self.settings.tags.needs_attention)
        except Exception as report_error:
            log.error("stage_error_report_failed", number=number, stage=stage, error=str(report_error))

    async def _on_stage_failure(self, number: int, error: RepoAutopilotError, stage: str) -> None:
        """Hook run for a failure that stops the step. Defaults to reporting it."""
        await self._handle_stage_error(number, error, stage)

    @asynccontextmanager
    async def _reporting_failures(self, number: int, stage: str, entity: str) -> AsyncIterator[None]:
        """Surface failures of the wrapped step, then re-raise.

        A ``StateConflictError`` passes through untouched: the step did not
        fail, it lost a race and is picked up again by the next delivery or
        poll. Errors from outside the package hierarchy are wrapped in
        ``TerminalWorkflowError`` so they are reported like any other.
        """
        try:
            yield
        except StateConflictError as e:
            log.warning("stage_state_conflict", number=number, stage=stage, error=e.message)
            raise
        except RepoAutopilotError as e:
            await self._on_stage_failure(number, e, stage)
            raise
        except Exception as e:
            error = TerminalWorkflowError(str(e) or type(e).__name__, entity=entity, stage=stage)
            await self._on_stage_failure(number, error, stage)
            raise error from e

    async def _update_issue(self, issue_number: int, mutate: Callable[[IssueState], None]) -> IssueState:
        issue = await self.state.update_issue(issue_number, mutate)
        if issue is None:
            raise WorkflowError(f"No state stored for {issue_key(issue_number)}")
        return issue

    async def _update_pr(self, pr_number: int, mutate: Callable[[PRState], None]) -> PRState:
        pr = await self.state.update_pr(pr_number, mutate)
        if pr is None:
            raise WorkflowError(f"No state stored for {pr_key(pr_number)}")
        return pr
