"""OpenAI-compatible agent provider (vLLM, LMStudio, hosted endpoints, etc.)."""

import json
import re
from typing import Any

import httpx
import structlog

from repo_autopilot.exceptions import (
    AgentResponseError,
    AuthenticationError,
    ExternalServiceError,
    RateLimitError,
    TransientCollaboratorError,
)
from repo_autopilot.models.domain import Action, AnalysisResult, FileChange, Patch, ReviewResponse
from repo_autopilot.providers.base import AgentProvider
from repo_autopilot.rendering.prompts import PromptRenderer
from repo_autopilot.utils.retry import retry_call

log = structlog.get_logger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


class OpenAICompatibleProvider(AgentProvider):
    """Agent provider for OpenAI-compatible chat completion servers.

    Each operation renders a prompt, calls ``/chat/completions`` once (plus
    retries for rate limits, timeouts and 5xx) and parses the answer into
    domain types.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000/v1",
        model: str = "default",
        api_key: str | None = None,
        timeout: float = 300.0,
        temperature: float = 0.2,
        retry_attempts: int = 3,
        retry_backoff: float = 2.0,
        client: httpx.AsyncClient | None = None,
        renderer: PromptRenderer | None = None,
    ):
        """Initialize OpenAI-compatible provider.

        Args:
            base_url: API base URL (e.g., http://localhost:8000/v1)
            model: Model identifier to use
            api_key: Optional API key for authentication
            timeout: Request timeout in seconds (default: 300)
            temperature: Sampling temperature
            retry_attempts: Attempts for retryable failures
            retry_backoff: Exponential backoff base in seconds
            client: HTTP client to use (tests inject one)
            renderer: Prompt renderer
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.renderer = renderer or PromptRenderer()

        # Build headers
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def close(self) -> None:
        await self.client.aclose()

    async def analyze(self, context: dict[str, Any]) -> AnalysisResult:
        prompt = self.renderer.render("analyze", context=context)
        data = _parse_json(await self._complete(prompt, "analyze"), "analyze")
        try:
            actions = [Action(name=a["name"], description=a.get("description", "")) for a in data["actions"]]
            return AnalysisResult(document=str(data.get("document", "")), actions=actions)
        except (KeyError, TypeError, AttributeError) as e:
            raise AgentResponseError(f"Analysis answer has the wrong shape: {e}", operation="analyze") from e

    async def implement(self, action: Action, context: dict[str, Any]) -> Patch:
        prompt = self.renderer.render("implement", action=action.to_dict(), context=context)
        data = _parse_json(await self._complete(prompt, "implement"), "implement")
        return _parse_patch(data, "implement")

    async def fix_failure(self, logs: str, context: dict[str, Any]) -> Patch:
        prompt = self.renderer.render("fix_failure", logs=logs, context=context)
        data = _parse_json(await self._complete(prompt, "fix_failure"), "fix_failure")
        return _parse_patch(data, "fix_failure")

    async def propose_fix(self, logs: str, context: dict[str, Any]) -> str:
        prompt = self.renderer.render("propose_fix", logs=logs, context=context)
        proposal = (await self._complete(prompt, "propose_fix")).strip()
        if not proposal:
            raise AgentResponseError("Empty fix proposal", operation="propose_fix")
        return proposal

    async def respond_to_review(self, thread: dict[str, Any]) -> ReviewResponse:
        prompt = self.renderer.render("respond_to_review", thread=thread)
        data = _parse_json(await self._complete(prompt, "respond_to_review"), "respond_to_review")
        reply = data.get("reply")
        if not isinstance(reply, str) or not reply.strip():
            raise AgentResponseError("Review answer has no reply", operation="respond_to_review")
        patch_data = data.get("patch")
        patch = _parse_patch(patch_data, "respond_to_review") if patch_data else None
        return ReviewResponse(reply=reply, patch=patch)

    async def _complete(self, prompt: str, operation: str) -> str:
        return await retry_call(
            self._complete_once,
            prompt,
            operation,
            max_attempts=self.retry_attempts,
            backoff_factor=self.retry_backoff,
        )

    async def _complete_once(self, prompt: str, operation: str) -> str:
        """Call the chat completions API once and return the message content."""
        log.info("executing_prompt", model=self.model, operation=operation)

        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions",
                json={
                    "model": self.model,
                    "messages": [{"role": "user", "content": prompt}],
                    "temperature": self.temperature,
                },
            )
        except httpx.TimeoutException as e:
            log.warning("prompt_timed_out", operation=operation, timeout=self.timeout)
            raise TransientCollaboratorError(f"Agent {operation} timed out") from e
        except httpx.TransportError as e:
            log.warning("prompt_transport_failed", operation=operation, error=str(e))
            raise TransientCollaboratorError(f"Agent {operation} failed: {e}") from e

        if not response.is_success:
            raise _status_error(response, operation)

        try:
            result = response.json()
            output = result["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            log.error("no_choices_in_response", operation=operation)
            raise AgentResponseError(f"Malformed completion response: {e}", operation=operation) from e

        usage = result.get("usage") or {}
        log.info(
            "prompt_executed",
            operation=operation,
            output_length=len(output),
            tokens=usage.get("total_tokens", usage.get("completion_tokens", 0)),
        )
        return output


def _status_error(response: httpx.Response, operation: str) -> Exception:
    status = response.status_code
    detail = response.text
    try:
        detail = response.json().get("error", {}).get("message", detail)
    except (ValueError, AttributeError):
        pass  # Non-JSON error body, keep the raw text

    log.error("prompt_execution_failed", operation=operation, status_code=status, error=detail)
    if status == 429:
        retry_after = response.headers.get("retry-after")
        return RateLimitError(
            f"Agent {operation} rate limited",
            status_code=status,
            retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
        )
    if status in (401, 403):
        return AuthenticationError(f"Agent endpoint rejected credentials ({status})")
    if status >= 500:
        return TransientCollaboratorError(f"Agent {operation} failed", status_code=status, response_text=detail)
    return ExternalServiceError(f"Agent {operation} failed: {detail}", status_code=status, response_text=detail)


def _parse_json(output: str, operation: str) -> dict[str, Any]:
    """Extract the JSON object from a model answer.

    Accepts a bare object, an object in a fenced code block, or an object
    surrounded by prose.
    """
    match = _FENCED_JSON.search(output)
    if match:
        candidate = match.group(1)
    else:
        start, end = output.find("{"), output.rfind("}")
        if start == -1 or end <= start:
            raise AgentResponseError("Answer contains no JSON object", operation=operation)
        candidate = output[start : end + 1]

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise AgentResponseError(f"Answer is not valid JSON: {e}", operation=operation) from e
    if not isinstance(data, dict):
        raise AgentResponseError("Answer is not a JSON object", operation=operation)
    return data


def _parse_patch(data: Any, operation: str) -> Patch:
    try:
        files = [FileChange(path=f["path"], content=f["content"]) for f in data.get("files", [])]
        return Patch(message=data.get("message") or f"Automated change ({operation})", files=files)
    except (KeyError, TypeError, AttributeError) as e:
        raise AgentResponseError(f"Patch has the wrong shape: {e}", operation=operation) from e
