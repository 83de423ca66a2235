"""Reaction-based approval predicate.

Approval is a human gesture: a designated reaction on the comment that
carries a proposal (the analysis summary, or a proposed CI fix). The
predicate is pure so the rule can be tested without a platform.
"""

from collections.abc import Iterable

from repo_autopilot.models.domain import Reaction


def is_approved(
    reactions: Iterable[Reaction],
    reaction: str = "+1",
    approvers: Iterable[str] = (),
    bot_login: str | None = None,
) -> bool:
    """Check whether a comment's reactions amount to approval.

    Args:
        reactions: Reactions currently on the proposal comment
        reaction: Reaction content that counts as approval
        approvers: Logins allowed to approve; empty allows anyone
        bot_login: The bot's own login, never counted

    Returns:
        True if at least one eligible user left the approval reaction.
    """
    allowed = {a.lower() for a in approvers}
    bot = bot_login.lower() if bot_login else None

    for r in reactions:
        user = r.user.lower()
        if r.content != reaction or user == bot:
            continue
        if not allowed or user in allowed:
            return True
    return False
