"""
Issue workflow - from an opened issue to one pull request per action.

States:
    analyzing -> awaiting_approval -> executing -> complete

    ``failed`` is reachable from any non-terminal state. ``complete`` and
    ``failed`` are terminal: later events for the issue are no-ops.

Analysis:
    On ``issues.opened`` the live labels are fetched and resolved into a
    strategy, which is stored on the record and never recomputed. The agent
    analyzes the repository context and returns a document plus an ordered
    action list. Under the hierarchical branch strategy the document is
    committed to ``analysis/{issue}-{slug}``; under flat there is no analysis
    branch and the document only appears in the summary comment.

Approval:
    The summary comment is the approval target. Any issue activity (comment,
    label) and the poller re-check its reactions.

Execution:
    Actions run strictly in analysis order. ``current_action_index`` is
    persisted after each pull request, so an interrupted run resumes where
    it stopped instead of starting over.
"""

from typing import Any

import structlog

from repo_autopilot.engine.approval import is_approved
from repo_autopilot.engine.branching import action_branch, analysis_branch, slugify
from repo_autopilot.engine.stages.base import WorkflowStage
from repo_autopilot.engine.strategy import resolve
from repo_autopilot.enums import BranchStrategy, IssueStatus
from repo_autopilot.exceptions import AgentResponseError, RepoAutopilotError, StateConflictError
from repo_autopilot.models.domain import (
    AnalysisResult,
    FileChange,
    IssueState,
    Patch,
    PRState,
)
from repo_autopilot.models.events import IssueOpened

log = structlog.get_logger(__name__)

SUMMARY_EXCERPT_LENGTH = 1500


class IssueWorkflow(WorkflowStage):
    """Drive one issue through analysis, approval and per-action execution.

    Example:
        >>> workflow = IssueWorkflow(git, agent, state, settings)
        >>> await workflow.on_opened(event)          # analysis, summary comment
        >>> await workflow.on_activity(42)           # executes once approved
    """

    async def on_opened(self, event: IssueOpened) -> IssueState | None:
        """Analyze a newly opened issue.

        Returns:
            The issue record, or None when the issue carries ``bot:skip``.
        """
        issue_number = event.issue_number
        existing = await self.state.load_issue(issue_number)
        if existing is not None and existing.status != IssueStatus.ANALYZING:
            log.debug("issue_already_tracked", issue=issue_number, status=str(existing.status))
            return existing

        if existing is None:
            labels = await self.git.get_labels(issue_number)
            strategy = resolve(labels)
            if strategy.skip:
                log.info("issue_skipped", issue=issue_number, labels=labels)
                return None

            issue = IssueState(
                issue_number=issue_number,
                owner=event.owner or self.settings.repository.owner,
                repo=event.repo or self.settings.repository.name,
                title=event.title,
                ci_strategy=strategy.ci_strategy,
                branch_strategy=strategy.branch_strategy,
            )
            try:
                issue = await self.state.create(issue)
            except StateConflictError:
                log.info("issue_created_concurrently", issue=issue_number)
                return await self.state.load_issue(issue_number)
        else:
            # A previous analysis was interrupted before the summary was posted
            log.info("issue_analysis_resumed", issue=issue_number)
            issue = existing

        log.info(
            "issue_analysis_started",
            issue=issue_number,
            ci_strategy=str(issue.ci_strategy),
            branch_strategy=str(issue.branch_strategy),
        )

        async with self._reporting_failures(issue_number, "analysis", issue.key):
            return await self._analyze(issue)

    async def _analyze(self, issue: IssueState) -> IssueState:
        context = await self.git.get_repository_context(issue.issue_number)
        result = await self.agent.analyze(context)
        if not result.actions:
            raise AgentResponseError("Analysis produced no actions", operation="analyze")

        def store_actions(record: IssueState) -> None:
            record.actions = list(result.actions)

        issue = await self._update_issue(issue.issue_number, store_actions)

        if issue.branch_strategy == BranchStrategy.HIERARCHICAL:
            branch = analysis_branch(issue.issue_number, issue.title)
            await self.git.create_branch(branch, self.default_branch)
            await self.git.commit_files(branch, self._analysis_patch(issue, result))
            issue.analysis_branch = branch

        comment = await self.git.add_comment(issue.issue_number, self._summary(issue, result))

        def await_approval(record: IssueState) -> None:
            record.analysis_branch = issue.analysis_branch
            record.summary_comment_id = comment.id
            record.status = IssueStatus.AWAITING_APPROVAL

        issue = await self._update_issue(issue.issue_number, await_approval)

        log.info(
            "issue_awaiting_approval",
            issue=issue.issue_number,
            actions=len(issue.actions),
            summary_comment=comment.id,
        )
        return issue

    def _analysis_patch(self, issue: IssueState, result: AnalysisResult) -> Patch:
        directory = self.settings.workflow.analysis_directory.rstrip("/")
        path = f"{directory}/{issue.issue_number}-{slugify(issue.title)}.md"
        return Patch(
            message=f"Add analysis for #{issue.issue_number}",
            files=[FileChange(path=path, content=result.document)],
        )

    def _summary(self, issue: IssueState, result: AnalysisResult) -> str:
        document = result.document.strip()
        if len(document) > SUMMARY_EXCERPT_LENGTH:
            document = document[:SUMMARY_EXCERPT_LENGTH].rstrip() + "\n\n_(truncated)_"

        lines = ["## Analysis", "", document, "", "## Planned actions", ""]
        for i, action in enumerate(issue.actions, 1):
            line = f"{i}. **{action.name}**"
            if action.description:
                line += f": {action.description}"
            lines.append(line)

        lines += [
            "",
            f"CI strategy: `{issue.ci_strategy}` | Branch strategy: `{issue.branch_strategy}`",
        ]
        if issue.analysis_branch:
            lines.append(f"Analysis branch: `{issue.analysis_branch}`")
        lines += [
            "",
            f"React with `{self.settings.workflow.approval_reaction}` on this comment to approve execution.",
        ]
        return "\n".join(lines)

    async def on_activity(self, issue_number: int) -> IssueState | None:
        """Check for approval and execute when it is present.

        Called for comments and labels on the issue and by the poller.
        Terminal issues and issues still in analysis are left alone.
        """
        issue = await self.state.load_issue(issue_number)
        if issue is None:
            log.debug("issue_untracked", issue=issue_number)
            return None
        if issue.status.is_terminal or issue.status == IssueStatus.ANALYZING:
            log.debug("issue_activity_ignored", issue=issue_number, status=str(issue.status))
            return issue

        if issue.status == IssueStatus.AWAITING_APPROVAL:
            if issue.summary_comment_id is None or not await self._approved(issue):
                log.debug("issue_not_approved", issue=issue_number)
                return issue
            issue = await self._update_issue(issue_number, _mark_executing)
            if issue.status != IssueStatus.EXECUTING:
                return issue
            log.info("issue_approved", issue=issue_number)
        else:
            log.info("issue_execution_resumed", issue=issue_number, action_index=issue.current_action_index)

        return await self.execute(issue)

    async def _approved(self, issue: IssueState) -> bool:
        workflow = self.settings.workflow
        reactions = await self.git.get_reactions(issue.issue_number, issue.summary_comment_id)
        return is_approved(
            reactions,
            reaction=workflow.approval_reaction,
            approvers=workflow.approvers,
            bot_login=self.settings.github.bot_login,
        )

    async def execute(self, issue: IssueState) -> IssueState:
        """Run every remaining action of an ``executing`` issue in order."""
        async with self._reporting_failures(issue.issue_number, "execution", issue.key):
            while issue.has_remaining_actions:
                issue = await self._execute_action(issue)

        issue = await self._update_issue(issue.issue_number, _mark_complete)
        prs = ", ".join(f"#{n}" for n in issue.pr_numbers)
        await self.git.add_comment(
            issue.issue_number,
            f"All {len(issue.actions)} planned action(s) have pull requests: {prs}.",
        )
        log.info("issue_complete", issue=issue.issue_number, prs=issue.pr_numbers)
        return issue

    async def _execute_action(self, issue: IssueState) -> IssueState:
        index = issue.current_action_index
        action = issue.actions[index]
        layout = action_branch(
            issue.branch_strategy,
            issue.issue_number,
            action.name,
            self.default_branch,
            issue.analysis_branch,
        )
        log.info("action_started", issue=issue.issue_number, action=action.name, index=index, branch=layout.name)

        context: dict[str, Any] = await self.git.get_repository_context(issue.issue_number)
        context.update(
            action=action.to_dict(),
            action_index=index,
            branch=layout.name,
            base_branch=layout.base,
        )
        patch = await self.agent.implement(action, context)
        if patch.is_empty:
            raise AgentResponseError(f"No changes produced for action '{action.name}'", operation="implement")

        await self.git.create_branch(layout.name, layout.source)
        commit_sha = await self.git.commit_files(layout.name, patch)
        pr = await self.git.create_pull_request(
            title=f"[#{issue.issue_number}] {action.name}",
            body=self._pr_body(issue, index),
            head=layout.name,
            base=layout.base,
        )

        if await self.state.load_pr(pr.number) is None:
            try:
                await self.state.create(
                    PRState(
                        pr_number=pr.number,
                        issue_number=issue.issue_number,
                        action_index=index,
                        action_name=action.name,
                        branch_name=layout.name,
                        base_branch=layout.base,
                        ci_strategy=issue.ci_strategy,
                        head_sha=commit_sha,
                    )
                )
            except StateConflictError:
                log.info("pr_state_created_concurrently", pr=pr.number)

        def record_pull_request(record: IssueState) -> None:
            if pr.number not in record.pr_numbers:
                record.pr_numbers.append(pr.number)
            if record.current_action_index == index:
                record.advance()

        issue = await self._update_issue(issue.issue_number, record_pull_request)

        log.info("action_completed", issue=issue.issue_number, action=action.name, pr=pr.number)
        return issue

    def _pr_body(self, issue: IssueState, index: int) -> str:
        action = issue.actions[index]
        return (
            f"Implements action {index + 1} of {len(issue.actions)} for #{issue.issue_number}: "
            f"**{action.name}**\n\n{action.description}\n\n"
            f"CI strategy: `{issue.ci_strategy}`"
        )

    async def _on_stage_failure(self, issue_number: int, error: RepoAutopilotError, stage: str) -> None:
        """Mark the issue failed, then report the error on it."""

        def mark_failed(issue: IssueState) -> None:
            issue.status = IssueStatus.FAILED
            issue.error = error.message

        await self.state.update_issue(issue_number, mark_failed)
        await self._handle_stage_error(issue_number, error, stage)


def _mark_executing(issue: IssueState) -> None:
    if issue.status == IssueStatus.AWAITING_APPROVAL:
        issue.status = IssueStatus.EXECUTING


def _mark_complete(issue: IssueState) -> None:
    issue.status = IssueStatus.COMPLETE
