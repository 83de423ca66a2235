"""
Strategy resolution from declarative ``bot:*`` labels.

Each rule answers an independent question, so there is no precedence
between rules, only within the branch rule:

- ``skip``: ``bot:skip`` present
- ``ci_strategy``: ``approval_required`` if ``bot:complex`` present, else
  ``immediate`` (``bot:simple`` and no tag behave the same)
- ``branch_strategy``: ``flat`` if ``bot:flat`` present, else
  ``hierarchical``. ``bot:flat`` is checked first, so an issue carrying both
  ``bot:flat`` and ``bot:hierarchical`` resolves to ``flat``.

Labels are compared case-insensitively; anything outside the vocabulary is
ignored.
"""

from collections.abc import Iterable

from repo_autopilot.enums import BranchStrategy, CIStrategy, Tag
from repo_autopilot.models.domain import Strategy

_VOCABULARY = {tag.value: tag for tag in Tag}


def parse_tags(labels: Iterable[str]) -> frozenset[Tag]:
    """Normalize raw label names into the recognized tag vocabulary.

    Example:
        >>> sorted(parse_tags(["Bot:Complex", "bug", " bot:flat "]))
        [<Tag.COMPLEX: 'bot:complex'>, <Tag.FLAT: 'bot:flat'>]
    """
    tags = set()
    for label in labels:
        tag = _VOCABULARY.get(label.strip().lower())
        if tag is not None:
            tags.add(tag)
    return frozenset(tags)


def resolve(tags: Iterable[str]) -> Strategy:
    """Map a set of labels to a ``Strategy``.

    Pure and deterministic: the same labels always yield the same result.

    Args:
        tags: Label names, either raw strings or ``Tag`` members

    Returns:
        Strategy with ``ci_strategy``, ``branch_strategy`` and ``skip``
    """
    recognized = parse_tags(str(t) for t in tags)

    skip = Tag.SKIP in recognized
    ci_strategy = CIStrategy.APPROVAL_REQUIRED if Tag.COMPLEX in recognized else CIStrategy.IMMEDIATE
    if Tag.FLAT in recognized:
        branch_strategy = BranchStrategy.FLAT
    else:
        branch_strategy = BranchStrategy.HIERARCHICAL

    return Strategy(ci_strategy=ci_strategy, branch_strategy=branch_strategy, skip=skip)
