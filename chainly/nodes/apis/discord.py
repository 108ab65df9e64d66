"""Discord node.

Posts a message to a Discord channel through an incoming webhook URL.
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
    require_variable_name,
)
from chainly.nodes.templating import render_template

LABEL = "Discord Node"
MAX_MESSAGE_LENGTH = 2000


@dataclass
class DiscordInput:
    variable_name: str
    webhook_url: str
    content: str
    username: str | None = None


class DiscordExecutor(BaseNodeExecutor[DiscordInput]):
    """Sends ``content`` (rendered, cut to 2000 characters) to the webhook.

    The webhook URL and username may reference the context with ``{{...}}``.
    The sent text is stored as ``{variableName: {"message": ...}}``.
    """

    node_type = NodeType.DISCORD
    channel = "discord-execution"
    step_name = "discord-webhook"

    def __init__(self, timeout: float | None = None) -> None:
        self._timeout = timeout if timeout is not None else settings.executor_http_timeout

    def validate_input(self, data: dict[str, Any]) -> DiscordInput:
        variable_name = require_variable_name(data, LABEL)

        webhook_url = data.get("webhookUrl")
        if not webhook_url or not isinstance(webhook_url, str):
            raise NodeValidationError(f"{LABEL}: Webhook URL is required", field="webhookUrl")

        content = data.get("content")
        if not content or not isinstance(content, str):
            raise NodeValidationError(f"{LABEL}: Message content is required", field="content")

        return DiscordInput(
            variable_name=variable_name,
            webhook_url=webhook_url,
            content=content,
            username=data.get("username") or None,
        )

    async def execute(
        self,
        input_data: DiscordInput,
        params: NodeExecutorParams,
    ) -> WorkflowContext:
        url = render_template(input_data.webhook_url, params.context).strip()
        if not url.startswith(("http://", "https://")):
            raise NonRetriableStepError(f"{LABEL}: Webhook URL must start with http:// or https://")

        message = render_template(input_data.content, params.context)[:MAX_MESSAGE_LENGTH]
        payload: dict[str, Any] = {"content": message}
        if input_data.username:
            username = render_template(input_data.username, params.context)
            if username:
                payload["username"] = username

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code == 404:
                raise NonRetriableStepError(f"{LABEL}: Webhook not found. It may have been deleted.") from e
            if status_code < 500 and status_code != 429:
                raise NonRetriableStepError(f"{LABEL}: Discord API error ({status_code})") from e
            raise

        return {**params.context, input_data.variable_name: {"message": message}}
