"""Tests for engine/approval.py."""

from repo_autopilot.engine.approval import is_approved
from repo_autopilot.models.domain import Reaction

BOT = "repo-autopilot[bot]"


def test_no_reactions():
    assert is_approved([]) is False


def test_thumbs_up_from_anyone():
    assert is_approved([Reaction("+1", "alice")]) is True


def test_other_reactions_do_not_count():
    assert is_approved([Reaction("heart", "alice"), Reaction("-1", "bob")]) is False


def test_bot_cannot_approve_itself():
    assert is_approved([Reaction("+1", BOT)], bot_login=BOT) is False
    assert is_approved([Reaction("+1", "Repo-Autopilot[bot]")], bot_login=BOT) is False


def test_approvers_restrict_who_counts():
    reactions = [Reaction("+1", "mallory")]
    assert is_approved(reactions, approvers=["alice"]) is False
    assert is_approved(reactions + [Reaction("+1", "Alice")], approvers=["alice"]) is True


def test_custom_reaction():
    assert is_approved([Reaction("rocket", "alice")], reaction="rocket") is True
    assert is_approved([Reaction("+1", "alice")], reaction="rocket") is False
