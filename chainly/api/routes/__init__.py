"""API route handlers."""

from chainly.api.routes.executions import router as executions_router
from chainly.api.routes.oauth import router as oauth_router
from chainly.api.routes.webhooks import router as webhooks_router
from chainly.api.routes.workflows import router as workflows_router

__all__ = [
    "executions_router",
    "oauth_router",
    "webhooks_router",
    "workflows_router",
]
