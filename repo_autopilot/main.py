"""CLI entry point for the orchestrator."""

import asyncio
import json
import sys
import uuid
from pathlib import Path

import click
import structlog

from repo_autopilot.config.settings import AutopilotSettings
from repo_autopilot.credentials.broker import CredentialBroker
from repo_autopilot.engine.orchestrator import WorkflowOrchestrator
from repo_autopilot.engine.state_manager import StateManager
from repo_autopilot.engine.webhook_gateway import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    WebhookGateway,
    sign,
)
from repo_autopilot.exceptions import ConfigurationError, RepoAutopilotError
from repo_autopilot.providers.github_rest import GitHubRestProvider
from repo_autopilot.providers.openai_compatible import OpenAICompatibleProvider
from repo_autopilot.utils.logging_config import LOG_FORMATS, configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option("--config", default="autopilot.yaml", help="Path to configuration file")
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--log-format", type=click.Choice(LOG_FORMATS), default="json", help="Log line format")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str, log_format: str) -> None:
    """repo-autopilot: event-driven issue-to-merge automation."""
    configure_logging(log_level, log_format)

    config_path = Path(config)
    if not config_path.exists():
        click.echo(f"Error: Configuration file not found: {config}", err=True)
        sys.exit(1)

    try:
        settings = AutopilotSettings.from_yaml(str(config_path))
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


def build_orchestrator(settings: AutopilotSettings) -> WorkflowOrchestrator:
    """Wire the collaborators described by ``settings`` into an orchestrator."""
    github = settings.github
    workflow = settings.workflow
    api_url = str(github.api_url).rstrip("/")

    broker = CredentialBroker(
        app_id=github.app_id,
        installation_id=github.installation_id,
        private_key=github.load_private_key(),
        api_url=api_url,
        timeout=github.timeout,
    )
    git = GitHubRestProvider(
        broker,
        owner=settings.repository.owner,
        repo=settings.repository.name,
        base_url=api_url,
        default_branch=settings.repository.default_branch,
        timeout=github.timeout,
        retry_attempts=workflow.retry_attempts,
        retry_backoff=workflow.retry_backoff,
    )

    agent_config = settings.agent_provider
    agent = OpenAICompatibleProvider(
        base_url=agent_config.base_url,
        model=agent_config.model,
        api_key=agent_config.api_key.get_secret_value() if agent_config.api_key else None,
        timeout=agent_config.timeout,
        temperature=agent_config.temperature,
        retry_attempts=workflow.retry_attempts,
        retry_backoff=workflow.retry_backoff,
    )

    state = StateManager(settings.state_dir)
    return WorkflowOrchestrator(settings, git, agent, state)


def _run(coro, command: str):
    """Run a coroutine, turning orchestrator errors into an exit status."""
    try:
        return asyncio.run(coro)
    except RepoAutopilotError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{command}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


@cli.command()
@click.option("--host", default="0.0.0.0", help="Interface to bind")  # nosec B104
@click.option("--port", default=8000, type=int, help="Port to listen on")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run the webhook server."""
    import uvicorn

    from repo_autopilot.webhook_server import create_app

    settings: AutopilotSettings = ctx.obj["settings"]
    try:
        orchestrator = build_orchestrator(settings)
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    gateway = WebhookGateway(settings.webhook.secret.get_secret_value())
    log.info("webhook_server_starting", host=host, port=port, repository=settings.repository.name)
    uvicorn.run(create_app(gateway, orchestrator), host=host, port=port)


@cli.command()
@click.pass_context
def poll(ctx: click.Context) -> None:
    """Reconcile active issues and pull requests once (missed deliveries)."""
    orchestrator = build_orchestrator(ctx.obj["settings"])
    result = _run(orchestrator.poll(), "poll")
    click.echo(f"Checked {result['checked']} entities, {result['failures']} failure(s)")
    if not result["success"]:
        sys.exit(1)


@cli.command("show-state")
@click.argument("key")
@click.pass_context
def show_state(ctx: click.Context, key: str) -> None:
    """Print the stored record for KEY (e.g. issue-42, pr-17)."""
    state = StateManager(ctx.obj["settings"].state_dir)
    record = _run(state.get(key), "show_state")
    if record is None:
        click.echo(f"No state stored for {key}", err=True)
        sys.exit(1)
    click.echo(json.dumps(record, indent=2))


@cli.command()
@click.argument("payload_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--event", "event_name", required=True, help="GitHub event name (X-GitHub-Event)")
@click.option("--delivery", default=None, help="Delivery id to use (random by default)")
@click.pass_context
def replay(ctx: click.Context, payload_file: str, event_name: str, delivery: str | None) -> None:
    """Feed a saved webhook payload through the gateway and orchestrator."""
    settings: AutopilotSettings = ctx.obj["settings"]
    secret = settings.webhook.secret.get_secret_value()
    body = Path(payload_file).read_bytes()
    headers = {
        SIGNATURE_HEADER: sign(body, secret),
        EVENT_HEADER: event_name,
        DELIVERY_HEADER: delivery or f"replay-{uuid.uuid4()}",
    }

    try:
        event = WebhookGateway(secret).accept(body, headers)
    except RepoAutopilotError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    if event is None:
        click.echo(f"Event '{event_name}' is not handled; nothing to do")
        return

    orchestrator = build_orchestrator(settings)
    result = _run(orchestrator.dispatch(event), "replay")
    click.echo(json.dumps(result, indent=2))
    if not result.get("success"):
        sys.exit(1)


if __name__ == "__main__":
    cli()
