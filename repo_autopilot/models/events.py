"""Inbound webhook events.

Each supported platform event becomes one frozen dataclass. Together they
form a tagged union (``Event``) the orchestrator dispatches on with
``isinstance``. Every variant knows which state keys it touches, so the
orchestrator can serialize processing per entity.
"""

from dataclasses import dataclass
from enum import Enum

from repo_autopilot.models.domain import issue_key, pr_key


class EventType(str, Enum):
    """Discriminator for the event variants."""

    ISSUE_OPENED = "issue_opened"
    ISSUE_COMMENTED = "issue_commented"
    ISSUE_LABELED = "issue_labeled"
    PR_REVIEW_SUBMITTED = "pr_review_submitted"
    PR_REVIEW_COMMENT_CREATED = "pr_review_comment_created"
    CHECK_RUN_COMPLETED = "check_run_completed"
    CHECK_SUITE_COMPLETED = "check_suite_completed"

    def __str__(self) -> str:
        return self.value


FAILING_CONCLUSIONS = frozenset({"failure", "timed_out", "startup_failure"})


@dataclass(frozen=True)
class Event:
    """Fields common to every event."""

    delivery_id: str
    owner: str
    repo: str

    event_type = None  # overridden per variant

    @property
    def entity_keys(self) -> tuple[str, ...]:
        return ()


@dataclass(frozen=True)
class IssueOpened(Event):
    issue_number: int = 0
    title: str = ""
    body: str = ""
    labels: tuple[str, ...] = ()

    event_type = EventType.ISSUE_OPENED

    @property
    def entity_keys(self) -> tuple[str, ...]:
        return (issue_key(self.issue_number),)


@dataclass(frozen=True)
class IssueCommented(Event):
    """Comment on an issue or, when ``is_pull_request`` is set, on a PR."""

    issue_number: int = 0
    comment_id: int = 0
    body: str = ""
    author: str = ""
    is_pull_request: bool = False

    event_type = EventType.ISSUE_COMMENTED

    @property
    def entity_keys(self) -> tuple[str, ...]:
        key = pr_key(self.issue_number) if self.is_pull_request else issue_key(self.issue_number)
        return (key,)


@dataclass(frozen=True)
class IssueLabeled(Event):
    issue_number: int = 0
    label: str = ""
    is_pull_request: bool = False

    event_type = EventType.ISSUE_LABELED

    @property
    def entity_keys(self) -> tuple[str, ...]:
        key = pr_key(self.issue_number) if self.is_pull_request else issue_key(self.issue_number)
        return (key,)


@dataclass(frozen=True)
class PRReviewSubmitted(Event):
    pr_number: int = 0
    state: str = ""
    author: str = ""

    event_type = EventType.PR_REVIEW_SUBMITTED

    @property
    def entity_keys(self) -> tuple[str, ...]:
        return (pr_key(self.pr_number),)


@dataclass(frozen=True)
class PRReviewCommentCreated(Event):
    pr_number: int = 0
    comment_id: int = 0
    body: str = ""
    author: str = ""
    path: str | None = None
    line: int | None = None
    diff_hunk: str = ""
    in_reply_to: int | None = None

    event_type = EventType.PR_REVIEW_COMMENT_CREATED

    @property
    def entity_keys(self) -> tuple[str, ...]:
        return (pr_key(self.pr_number),)


@dataclass(frozen=True)
class CheckRunCompleted(Event):
    pr_numbers: tuple[int, ...] = ()
    head_sha: str = ""
    name: str = ""
    conclusion: str | None = None
    output_title: str = ""
    output_summary: str = ""
    output_text: str = ""
    details_url: str = ""

    event_type = EventType.CHECK_RUN_COMPLETED

    @property
    def failed(self) -> bool:
        return self.conclusion in FAILING_CONCLUSIONS

    @property
    def logs(self) -> str:
        """Failure report assembled from the check run output."""
        parts = [f"Check run: {self.name}", f"Conclusion: {self.conclusion}"]
        if self.output_title:
            parts.append(self.output_title)
        if self.output_summary:
            parts.append(self.output_summary)
        if self.output_text:
            parts.append(self.output_text)
        if self.details_url:
            parts.append(f"Details: {self.details_url}")
        return "\n\n".join(parts)

    @property
    def entity_keys(self) -> tuple[str, ...]:
        return tuple(pr_key(n) for n in self.pr_numbers)


@dataclass(frozen=True)
class CheckSuiteCompleted(Event):
    pr_numbers: tuple[int, ...] = ()
    head_sha: str = ""
    conclusion: str | None = None

    event_type = EventType.CHECK_SUITE_COMPLETED

    @property
    def succeeded(self) -> bool:
        return self.conclusion == "success"

    @property
    def entity_keys(self) -> tuple[str, ...]:
        return tuple(pr_key(n) for n in self.pr_numbers)

