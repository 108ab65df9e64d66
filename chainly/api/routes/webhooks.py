"""Webhook trigger endpoints.

Inbound HTTP calls that start workflow runs. The generic and Google Form
endpoints authenticate with a shared secret header; the GitHub endpoint
verifies the ``X-Hub-Signature-256`` HMAC when the trigger node has a secret.
"""

import json
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import APIRouter, Query, Request, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from chainly.api.deps import DBSession, ExecutionServiceDep, RateLimiterDep, client_ip
from chainly.config import settings
from chainly.core.rate_limit import RateLimiter
from chainly.core.webhook_security import verify_shared_secret, verify_signature
from chainly.models.node import Node, NodeType
from chainly.services.execution_service import ExecutionService, ExecutionServiceError

logger = structlog.get_logger()

router = APIRouter()

GITHUB_EVENT_HEADER = "x-github-event"
GITHUB_DELIVERY_HEADER = "x-github-delivery"
GITHUB_SIGNATURE_HEADER = "x-hub-signature-256"


def _failure(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def _rate_limited(limiter: RateLimiter, key: str) -> JSONResponse | None:
    result = limiter.check(key)
    if result.allowed:
        return None
    logger.info("webhook_rate_limited", rate_limit_key=key)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"success": False, "error": "Too many requests"},
        headers=result.headers(),
    )


def _variable_name(data: dict[str, Any], default: str) -> str:
    value = data.get("variableName")
    return value if isinstance(value, str) and value else default


async def _authorize_secret_trigger(
    session: DBSession,
    request: Request,
    workflow_id: str,
    node_id: str | None,
    node_type: NodeType,
    label: str,
) -> tuple[dict[str, Any] | None, JSONResponse | None]:
    """Load a shared-secret trigger node and check the caller's secret.

    Returns the node data, or the failure response to send instead.
    """
    if not node_id:
        return None, _failure(status.HTTP_400_BAD_REQUEST, "nodeId query parameter is required")

    node = await session.get(Node, node_id)
    if node is None or node.workflow_id != workflow_id:
        return None, _failure(status.HTTP_404_NOT_FOUND, "Node not found for this workflow")
    if node.type != node_type:
        return None, _failure(status.HTTP_400_BAD_REQUEST, f"Node is not a {label}")

    data = dict(node.data or {})
    stored_secret = data.get("secret")
    if not isinstance(stored_secret, str) or not stored_secret:
        return None, _failure(status.HTTP_400_BAD_REQUEST, "Webhook secret is not configured")

    secret_header = settings.webhook_secret_header.lower()
    if not verify_shared_secret(request.headers.get(secret_header), stored_secret):
        logger.warning("webhook_secret_mismatch", workflow_id=workflow_id, node_id=node_id)
        return None, _failure(status.HTTP_401_UNAUTHORIZED, "Invalid webhook secret")

    return data, None


async def _enqueue(
    service: ExecutionService,
    workflow_id: str,
    node_id: str,
    initial_context: dict[str, Any],
) -> JSONResponse:
    try:
        run_id = await service.enqueue_trigger(workflow_id, node_id, initial_context)
    except (ExecutionServiceError, RedisError) as e:
        logger.error(
            "webhook_enqueue_failed",
            workflow_id=workflow_id,
            node_id=node_id,
            error_type=type(e).__name__,
        )
        return _failure(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Failed to enqueue workflow execution",
        )

    logger.info("webhook_run_enqueued", workflow_id=workflow_id, node_id=node_id, run_id=run_id)
    return JSONResponse(content={"success": True})


@router.post("/github")
async def github_webhook(
    request: Request,
    session: DBSession,
    service: ExecutionServiceDep,
    limiter: RateLimiterDep,
    workflow_id: str | None = Query(default=None, alias="workflowId"),
    node_id: str | None = Query(default=None, alias="nodeId"),
) -> JSONResponse:
    """Start a workflow from a GitHub webhook delivery.

    Events outside the node's ``events`` list are acknowledged with 200 and
    ignored; an empty list accepts every event.
    """
    limited = _rate_limited(limiter, f"github-webhook:{workflow_id or 'unknown'}:{client_ip(request)}")
    if limited is not None:
        return limited

    if not workflow_id:
        return _failure(status.HTTP_400_BAD_REQUEST, "Workflow ID is required")
    if not node_id:
        return _failure(status.HTTP_400_BAD_REQUEST, "nodeId query parameter is required")

    node = await session.get(Node, node_id)
    if node is None or node.workflow_id != workflow_id:
        return _failure(status.HTTP_404_NOT_FOUND, "Node not found for this workflow")
    if node.type != NodeType.GITHUB_TRIGGER:
        return _failure(status.HTTP_400_BAD_REQUEST, "Node is not a GitHub trigger")

    data = dict(node.data or {})
    event = request.headers.get(GITHUB_EVENT_HEADER)
    if not event:
        return _failure(status.HTTP_400_BAD_REQUEST, "Missing X-GitHub-Event header")

    raw_body = await request.body()

    secret = data.get("secret")
    if isinstance(secret, str) and secret:
        signature = request.headers.get(GITHUB_SIGNATURE_HEADER)
        if not signature:
            return _failure(status.HTTP_401_UNAUTHORIZED, "Missing X-Hub-Signature-256 header")
        if not verify_signature(raw_body, signature, secret):
            logger.warning("github_webhook_signature_invalid", workflow_id=workflow_id, node_id=node_id)
            return _failure(status.HTTP_401_UNAUTHORIZED, "Invalid webhook signature")

    configured_events = data.get("events") or []
    if configured_events and event not in configured_events:
        return JSONResponse(
            content={
                "success": True,
                "message": "Event ignored (not in configured events list)",
            }
        )

    try:
        body = json.loads(raw_body)
    except ValueError:
        return _failure(status.HTTP_400_BAD_REQUEST, "Request body must be valid JSON")

    payload = body if isinstance(body, dict) else {}
    github_data = {
        "event": event,
        "action": payload.get("action"),
        "delivery": request.headers.get(GITHUB_DELIVERY_HEADER),
        "repository": payload.get("repository") or {},
        "sender": payload.get("sender") or {},
        "payload": body,
    }

    return await _enqueue(
        service,
        workflow_id,
        node_id,
        {_variable_name(data, "github"): github_data},
    )


@router.post("/google-form")
async def google_form_webhook(
    request: Request,
    session: DBSession,
    service: ExecutionServiceDep,
    limiter: RateLimiterDep,
    workflow_id: str | None = Query(default=None, alias="workflowId"),
    node_id: str | None = Query(default=None, alias="nodeId"),
) -> JSONResponse:
    """Start a workflow from a Google Forms submission.

    Meant to be called by an Apps Script ``onFormSubmit`` hook that sends
    the trigger node's shared secret in the configured secret header. The
    response lands under the node's ``variableName`` (default ``googleForm``).
    """
    limited = _rate_limited(
        limiter, f"google-form-webhook:{workflow_id or 'unknown'}:{client_ip(request)}"
    )
    if limited is not None:
        return limited

    if not workflow_id:
        return _failure(status.HTTP_400_BAD_REQUEST, "Workflow ID is required")

    data, failure = await _authorize_secret_trigger(
        session, request, workflow_id, node_id, NodeType.GOOGLE_FORM_TRIGGER, "Google Form trigger"
    )
    if failure is not None:
        return failure

    try:
        body = json.loads(await request.body())
    except ValueError:
        return _failure(status.HTTP_400_BAD_REQUEST, "Request body must be valid JSON")
    if not isinstance(body, dict):
        return _failure(status.HTTP_400_BAD_REQUEST, "Request body must be a JSON object")

    form_data = {
        "formId": body.get("formId"),
        "formTitle": body.get("formTitle"),
        "responseId": body.get("responseId"),
        "timestamp": body.get("timestamp"),
        "respondentEmail": body.get("respondentEmail"),
        "responses": body.get("responses"),
        "raw": body,
    }

    return await _enqueue(
        service,
        workflow_id,
        node_id,
        {_variable_name(data, "googleForm"): form_data},
    )


@router.post("/{workflow_id}")
async def workflow_webhook(
    workflow_id: str,
    request: Request,
    session: DBSession,
    service: ExecutionServiceDep,
    limiter: RateLimiterDep,
    node_id: str | None = Query(default=None, alias="nodeId"),
) -> JSONResponse:
    """Start a workflow from a generic webhook call.

    The caller authenticates with the trigger node's shared secret in the
    configured secret header. The run's initial context holds the request
    under the node's ``variableName`` (default ``webhook``).
    """
    limited = _rate_limited(limiter, f"webhook:{workflow_id}:{client_ip(request)}")
    if limited is not None:
        return limited

    data, failure = await _authorize_secret_trigger(
        session, request, workflow_id, node_id, NodeType.WEBHOOK_TRIGGER, "webhook trigger"
    )
    if failure is not None:
        return failure

    try:
        body = json.loads(await request.body())
    except ValueError:
        return _failure(status.HTTP_400_BAD_REQUEST, "Request body must be valid JSON")

    secret_header = settings.webhook_secret_header.lower()
    headers = {key: value for key, value in request.headers.items() if key.lower() != secret_header}

    return await _enqueue(
        service,
        workflow_id,
        node_id,
        {
            _variable_name(data, "webhook"): {
                "body": body,
                "headers": headers,
                "query": dict(request.query_params),
                "nodeId": node_id,
                "receivedAt": datetime.now(timezone.utc).isoformat(),
            }
        },
    )
