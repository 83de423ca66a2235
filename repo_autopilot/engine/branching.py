"""Branch naming per branch strategy.

Hierarchical:
    analysis/{issue}-{slug}     analysis document, base for action branches
    action/{issue}-{action}     one per action, PR targets the analysis branch
    rework/{issue}-{n}          rework iterations

Flat:
    bot/{issue}-{action}        one per action, PR targets the default branch
"""

import re
from dataclasses import dataclass

from repo_autopilot.enums import BranchStrategy

MAX_SLUG_LENGTH = 40


def slugify(text: str, max_length: int = MAX_SLUG_LENGTH) -> str:
    """Turn free text into a lowercase, dash-separated branch component.

    Example:
        >>> slugify("Fix login: NPE on empty password!")
        'fix-login-npe-on-empty-password'
    """
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    if len(slug) > max_length:
        slug = slug[:max_length].rstrip("-")
    return slug or "untitled"


def analysis_branch(issue_number: int, title: str) -> str:
    return f"analysis/{issue_number}-{slugify(title)}"


def rework_branch(issue_number: int, iteration: int) -> str:
    if iteration < 1:
        raise ValueError("Rework iterations start at 1")
    return f"rework/{issue_number}-{iteration}"


@dataclass(frozen=True)
class ActionBranch:
    """Where an action's work goes and which branch its PR targets."""

    name: str
    source: str
    base: str


def action_branch(
    strategy: BranchStrategy,
    issue_number: int,
    action_name: str,
    default_branch: str,
    analysis: str | None = None,
) -> ActionBranch:
    """Derive the branch layout for one action.

    Args:
        strategy: Branch strategy fixed on the issue
        issue_number: Originating issue
        action_name: Action identifier from analysis
        default_branch: Repository default branch
        analysis: Analysis branch (hierarchical only)

    Returns:
        ActionBranch with the new branch name, the branch to create it from
        and the PR base.
    """
    action = slugify(action_name)
    if strategy == BranchStrategy.FLAT:
        return ActionBranch(name=f"bot/{issue_number}-{action}", source=default_branch, base=default_branch)

    if not analysis:
        raise ValueError(f"Hierarchical issue #{issue_number} has no analysis branch")
    return ActionBranch(name=f"action/{issue_number}-{action}", source=analysis, base=analysis)
