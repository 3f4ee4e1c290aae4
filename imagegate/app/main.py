"""FastAPI service for custom image requests.

The chat collaborator (Slack app, bot, ...) calls these routes to:
- submit a request for a base image plus extra packages
- approve or reject it
- look up packages and repositories

Lifecycle changes flow back to it as JSON events posted to NOTIFIER_URL.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from imagegate.api.core.container import get_container
from imagegate.api.routes import register_routes
from imagegate.observability.tracing import log_event, new_trace_id

tags_metadata = [
    {
        "name": "Requests",
        "description": "Submit, inspect, approve and reject custom image requests"
    },
    {
        "name": "Packages",
        "description": "Package search used while composing a request"
    },
    {
        "name": "Repositories",
        "description": "Repositories known to chainctl"
    }
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    container = get_container()
    await container.scheduler.start()
    resumed = container.workflow.resume_monitoring()
    log_event(
        "service.start",
        trace_id=new_trace_id(),
        org=container.settings.chainguard_org_id,
        registry=container.settings.chainguard_registry,
        approvers=len(container.settings.approvers),
        resumed_monitors=resumed,
    )
    try:
        yield
    finally:
        container.monitor.stop_all()
        await container.scheduler.stop()


app = FastAPI(
    title='Custom Image Requests',
    version='1.0.0',
    description='Approval gate and build tracking for custom container images',
    openapi_tags=tags_metadata,
    lifespan=lifespan,
)

# Register all API routes
register_routes(app)
