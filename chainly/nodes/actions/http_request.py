"""HTTP request node.

Calls an arbitrary HTTP endpoint and stores the response in the context.
"""

from dataclasses import dataclass
from typing import Any

import httpx

from chainly.config import settings
from chainly.core.steps import NonRetriableStepError
from chainly.models.node import NodeType
from chainly.nodes.base import (
    BaseNodeExecutor,
    NodeExecutorParams,
    NodeValidationError,
    WorkflowContext,
)
from chainly.nodes.templating import render_template

METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
METHODS_WITH_BODY = ("POST", "PUT", "PATCH")
DEFAULT_VARIABLE_NAME = "httpResponse"


@dataclass
class HttpRequestInput:
    """Input for HTTP request node."""

    endpoint: str
    method: str = "GET"
    body: str | None = None
    variable_name: str = DEFAULT_VARIABLE_NAME


class HttpRequestExecutor(BaseNodeExecutor[HttpRequestInput]):
    """Sends one HTTP request.

    ``endpoint`` and ``body`` may reference the context with ``{{...}}``.
    JSON responses are parsed, anything else is stored as text. Client
    errors (4xx) fail the node immediately; server errors and network
    failures are retried.
    """

    node_type = NodeType.HTTP_REQUEST
    channel = "http-request-execution"
    step_name = "http-request"

    def __init__(self, timeout: float | None = None) -> None:
        self._timeout = timeout if timeout is not None else settings.executor_http_timeout

    def validate_input(self, data: dict[str, Any]) -> HttpRequestInput:
        """Validate input data."""
        endpoint = data.get("endpoint")
        if not endpoint or not isinstance(endpoint, str):
            raise NodeValidationError("HTTP Request Node: Endpoint is required", field="endpoint")

        method = str(data.get("method") or "GET").upper()
        if method not in METHODS:
            raise NodeValidationError(
                f"HTTP Request Node: Unsupported method '{method}'", field="method"
            )

        body = data.get("body")
        if body is not None and not isinstance(body, str):
            raise NodeValidationError("HTTP Request Node: Body must be a string", field="body")

        return HttpRequestInput(
            endpoint=endpoint,
            method=method,
            body=body,
            variable_name=data.get("variableName") or DEFAULT_VARIABLE_NAME,
        )

    async def execute(
        self,
        input_data: HttpRequestInput,
        params: NodeExecutorParams,
    ) -> WorkflowContext:
        """Execute the HTTP request."""
        endpoint = render_template(input_data.endpoint, params.context)
        content = None
        headers = {}
        if input_data.method in METHODS_WITH_BODY and input_data.body:
            content = render_template(input_data.body, params.context)
            headers["Content-Type"] = "application/json"

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(
                    input_data.method,
                    endpoint,
                    content=content,
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code < 500:
                raise NonRetriableStepError(
                    f"HTTP Request Node: {input_data.method} {endpoint} returned "
                    f"{e.response.status_code}"
                ) from e
            raise
        except httpx.InvalidURL as e:
            raise NonRetriableStepError(f"HTTP Request Node: Invalid endpoint '{endpoint}'") from e

        if "application/json" in response.headers.get("content-type", ""):
            data: Any = response.json()
        else:
            data = response.text

        return {
            **params.context,
            input_data.variable_name: {
                "status": response.status_code,
                "statusText": response.reason_phrase,
                "data": data,
            },
        }
