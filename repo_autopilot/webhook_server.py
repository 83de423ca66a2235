"""Webhook server for real-time GitHub event processing.

The signature is checked against the raw body before anything is parsed.
Accepted events are acknowledged with 202 and handled in a background task,
so slow collaborator calls never hold the delivery open.
"""

import structlog
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from repo_autopilot.engine.orchestrator import WorkflowOrchestrator
from repo_autopilot.engine.webhook_gateway import WebhookGateway
from repo_autopilot.exceptions import EventParseError, SignatureError

log = structlog.get_logger(__name__)


def create_app(gateway: WebhookGateway, orchestrator: WorkflowOrchestrator) -> FastAPI:
    """Build the FastAPI application around a gateway and an orchestrator."""
    app = FastAPI(title="repo-autopilot webhook server")

    @app.post("/webhook/github")
    async def github_webhook(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
        """Handle GitHub webhook deliveries."""
        raw_body = await request.body()

        try:
            event = gateway.accept(raw_body, request.headers)
        except SignatureError as e:
            log.warning("webhook_rejected", error=e.message, delivery=request.headers.get("x-github-delivery"))
            raise HTTPException(status_code=401, detail="Invalid signature") from e
        except EventParseError as e:
            log.warning("webhook_unparseable", error=e.message)
            raise HTTPException(status_code=400, detail=e.message) from e

        if event is None:
            return JSONResponse(status_code=202, content={"status": "ignored"})

        background_tasks.add_task(orchestrator.dispatch, event)
        log.info("webhook_received", event_type=str(event.event_type), delivery=event.delivery_id)
        return JSONResponse(
            status_code=202,
            content={"status": "accepted", "event_type": str(event.event_type), "delivery": event.delivery_id},
        )

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "service": "repo-autopilot"}

    return app
