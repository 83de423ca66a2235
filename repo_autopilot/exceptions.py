"""Custom exception hierarchy for the repo-autopilot orchestrator.

The hierarchy mirrors how failures are handled: authentication failures are
rejected outright, rate limits and transient collaborator failures are retried
with backoff, state conflicts are retried by re-reading, and terminal workflow
failures are surfaced to humans as issue/PR comments.

Exception Hierarchy:
    RepoAutopilotError (base)
    ├── ConfigurationError
    ├── AuthenticationError
    │   ├── SignatureError
    │   └── CredentialError
    ├── EventParseError
    ├── ExternalServiceError
    │   ├── RateLimitError
    │   ├── TransientCollaboratorError
    │   └── NotFoundError
    ├── AgentError
    │   └── AgentResponseError
    └── WorkflowError
        ├── StateConflictError
        └── TerminalWorkflowError

Example Usage:
    >>> from repo_autopilot.exceptions import ConfigurationError
    >>> try:
    ...     load_config(path)
    ... except FileNotFoundError as e:
    ...     raise ConfigurationError(f"Config file not found: {path}") from e
"""


class RepoAutopilotError(Exception):
    """Base exception for all repo-autopilot errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(RepoAutopilotError):
    """Configuration file missing, unreadable, or invalid."""

    pass


class AuthenticationError(RepoAutopilotError):
    """Authentication failed.

    Never retried. Covers inbound webhook signatures as well as outbound
    credentials rejected by the code-hosting platform.
    """

    pass


class SignatureError(AuthenticationError):
    """Webhook signature header missing, malformed, or not matching the body."""

    pass


class CredentialError(AuthenticationError):
    """Installation credential could not be minted or exchanged.

    Attributes:
        status_code: HTTP status of the exchange response, when there was one
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code of the failed exchange (if applicable)
        """
        self.status_code = status_code
        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"
        super().__init__(full_message)
        self.message = message


class EventParseError(RepoAutopilotError):
    """Authenticated webhook body could not be decoded as an event envelope."""

    pass


class ExternalServiceError(RepoAutopilotError):
    """Communication with a collaborator (code host or AI service) failed.

    Attributes:
        message: Human-readable error description
        status_code: HTTP status code (if applicable)
        response_text: Response body text (if applicable)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            response_text: Response body text (if applicable)
        """
        self.status_code = status_code
        self.response_text = response_text

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        # Preserve original message (super sets self.message to full_message)
        self.message = message


class RateLimitError(ExternalServiceError):
    """Collaborator signalled a rate limit.

    Attributes:
        retry_after: Seconds the collaborator asked us to wait, if it said
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class TransientCollaboratorError(ExternalServiceError):
    """Timeout or 5xx from a collaborator; safe to retry."""

    pass


class NotFoundError(ExternalServiceError):
    """Requested object does not exist on the collaborator."""

    pass


class AgentError(RepoAutopilotError):
    """AI collaborator failed to produce a usable result.

    Attributes:
        operation: Agent operation that failed (e.g. "analyze")
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            operation: Agent operation that failed
        """
        self.operation = operation
        full_message = message if not operation else f"{message} (operation: {operation})"
        super().__init__(full_message)
        self.message = message


class AgentResponseError(AgentError):
    """AI collaborator answered, but the answer could not be parsed."""

    pass


class WorkflowError(RepoAutopilotError):
    """Workflow execution errors (state machine, persistence)."""

    pass


class StateConflictError(WorkflowError):
    """A per-key write observed a newer version than the one it read.

    Attributes:
        key: State key (``issue-{n}`` or ``pr-{n}``)
        expected_version: Version the writer read
        actual_version: Version found in the store
    """

    def __init__(self, key: str, expected_version: int, actual_version: int) -> None:
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Concurrent update on {key}: expected version {expected_version}, found {actual_version}"
        )


class TerminalWorkflowError(WorkflowError):
    """Failure that cannot be resolved locally and needs a human.

    Attributes:
        entity: State key of the affected entity
        stage: Workflow step that failed
    """

    def __init__(self, message: str, entity: str | None = None, stage: str | None = None) -> None:
        self.entity = entity
        self.stage = stage

        parts = [message]
        if entity:
            parts.append(f"entity: {entity}")
        if stage:
            parts.append(f"stage: {stage}")

        full_message = message if len(parts) == 1 else f"{message} ({', '.join(parts[1:])})"
        super().__init__(full_message)
        self.message = message
