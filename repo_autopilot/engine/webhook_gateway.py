"""
Webhook authentication and event classification.

The gateway is the first line of defense: it verifies the HMAC-SHA256
signature over the raw, unparsed body and only then decodes the payload into
one of the event variants in ``repo_autopilot.models.events``. It carries no
business logic.

Unrecognized event types and actions are dropped (``accept`` returns None)
rather than treated as errors, so new platform events never break ingestion.
"""

import hashlib
import hmac
import json
from collections.abc import Mapping
from typing import Any

import structlog

from repo_autopilot.exceptions import EventParseError, SignatureError
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

log = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-hub-signature-256"
EVENT_HEADER = "x-github-event"
DELIVERY_HEADER = "x-github-delivery"
SIGNATURE_PREFIX = "sha256="


def sign(body: bytes, secret: str) -> str:
    """Compute the signature header value for a body.

    Example:
        >>> sign(b"{}", "s3cret")[:7]
        'sha256='
    """
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


class WebhookGateway:
    """Verify and classify inbound webhook deliveries.

    Example:
        >>> gateway = WebhookGateway(secret="s3cret")
        >>> event = gateway.accept(body, request.headers)
        >>> if event is not None:
        ...     await orchestrator.dispatch(event)
    """

    def __init__(self, secret: str) -> None:
        """Initialize gateway.

        Args:
            secret: Shared webhook secret
        """
        if not secret:
            raise ValueError("Webhook secret must not be empty")
        self._secret = secret

    def verify(self, raw_body: bytes, signature: str | None) -> None:
        """Check the signature header against the raw body.

        Raises:
            SignatureError: If the header is missing, malformed or wrong
        """
        if not signature:
            raise SignatureError("Missing webhook signature header")
        if not signature.startswith(SIGNATURE_PREFIX):
            raise SignatureError("Invalid signature format (expected sha256=...)")

        expected = sign(raw_body, self._secret)
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "replace")):
            raise SignatureError("Webhook signature does not match payload")

    def accept(self, raw_body: bytes, headers: Mapping[str, str]) -> Event | None:
        """Authenticate a delivery and turn it into an event.

        Args:
            raw_body: Request body exactly as received
            headers: Request headers (looked up case-insensitively)

        Returns:
            The classified event, or None if the event type is not one the
            orchestrator handles.

        Raises:
            SignatureError: If authentication fails. Nothing is parsed.
            EventParseError: If the authenticated body is not a JSON object
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        self.verify(raw_body, lowered.get(SIGNATURE_HEADER))

        event_name = lowered.get(EVENT_HEADER, "")
        delivery_id = lowered.get(DELIVERY_HEADER, "")

        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise EventParseError(f"Webhook body is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise EventParseError("Webhook body must be a JSON object")

        try:
            event = self.classify(event_name, delivery_id, payload)
        except (KeyError, TypeError, ValueError) as e:
            raise EventParseError(f"Malformed {event_name} payload: {e}") from e

        if event is None:
            log.debug("event_ignored", event_name=event_name, action=payload.get("action"), delivery=delivery_id)
        else:
            log.info("event_accepted", event_type=str(event.event_type), delivery=delivery_id)
        return event

    def classify(self, event_name: str, delivery_id: str, payload: dict[str, Any]) -> Event | None:
        """Map an event name and payload to an event variant."""
        action = payload.get("action")
        repository = payload.get("repository") or {}
        owner = (repository.get("owner") or {}).get("login", "")
        common = {"delivery_id": delivery_id, "owner": owner, "repo": repository.get("name", "")}

        if event_name == "issues":
            issue = payload["issue"]
            if action == "opened":
                return IssueOpened(
                    **common,
                    issue_number=issue["number"],
                    title=issue.get("title") or "",
                    body=issue.get("body") or "",
                    labels=tuple(label["name"] for label in issue.get("labels", [])),
                )
            if action == "labeled":
                return IssueLabeled(
                    **common,
                    issue_number=issue["number"],
                    label=(payload.get("label") or {}).get("name", ""),
                    is_pull_request="pull_request" in issue,
                )
            return None

        if event_name == "issue_comment" and action == "created":
            issue = payload["issue"]
            comment = payload["comment"]
            return IssueCommented(
                **common,
                issue_number=issue["number"],
                comment_id=comment["id"],
                body=comment.get("body") or "",
                author=(comment.get("user") or {}).get("login", ""),
                is_pull_request="pull_request" in issue,
            )

        if event_name == "pull_request_review" and action == "submitted":
            review = payload["review"]
            return PRReviewSubmitted(
                **common,
                pr_number=payload["pull_request"]["number"],
                state=(review.get("state") or "").lower(),
                author=(review.get("user") or {}).get("login", ""),
            )

        if event_name == "pull_request_review_comment" and action == "created":
            comment = payload["comment"]
            return PRReviewCommentCreated(
                **common,
                pr_number=payload["pull_request"]["number"],
                comment_id=comment["id"],
                body=comment.get("body") or "",
                author=(comment.get("user") or {}).get("login", ""),
                path=comment.get("path"),
                line=comment.get("line"),
                diff_hunk=comment.get("diff_hunk") or "",
                in_reply_to=comment.get("in_reply_to_id"),
            )

        if event_name == "check_run" and action == "completed":
            run = payload["check_run"]
            output = run.get("output") or {}
            return CheckRunCompleted(
                **common,
                pr_numbers=tuple(pr["number"] for pr in run.get("pull_requests", [])),
                head_sha=run.get("head_sha", ""),
                name=run.get("name", ""),
                conclusion=run.get("conclusion"),
                output_title=output.get("title") or "",
                output_summary=output.get("summary") or "",
                output_text=output.get("text") or "",
                details_url=run.get("details_url") or "",
            )

        if event_name == "check_suite" and action == "completed":
            suite = payload["check_suite"]
            return CheckSuiteCompleted(
                **common,
                pr_numbers=tuple(pr["number"] for pr in suite.get("pull_requests", [])),
                head_sha=suite.get("head_sha", ""),
                conclusion=suite.get("conclusion"),
            )

        return None
