"""Anthropic API node.

Calls the Anthropic Messages API for text generation.
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
    require_credential_access,
    require_variable_name,
)
from chainly.nodes.templating import render_template

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
LABEL = "Anthropic Node"


@dataclass
class AnthropicInput:
    """Input for Anthropic node."""

    variable_name: str
    credential_id: str
    model: str
    user_prompt: str
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_tokens: int = 1024


class AnthropicExecutor(BaseNodeExecutor[AnthropicInput]):
    """Anthropic API node for text generation.

    Requires an ANTHROPIC credential. The first text block of the reply is
    stored as ``{variableName: {"text": ...}}``.
    """

    node_type = NodeType.ANTHROPIC
    channel = "anthropic-execution"
    step_name = "anthropic-generate-text"

    def __init__(self, timeout: float | None = None) -> None:
        self._timeout = timeout if timeout is not None else settings.executor_http_timeout

    def validate_input(self, data: dict[str, Any]) -> AnthropicInput:
        variable_name = require_variable_name(data, LABEL)

        model = data.get("model")
        if not model or not isinstance(model, str):
            raise NodeValidationError(f"{LABEL}: Model is required", field="model")

        user_prompt = data.get("userPrompt")
        if not user_prompt or not isinstance(user_prompt, str):
            raise NodeValidationError(f"{LABEL}: User prompt is required", field="userPrompt")

        credential_id = data.get("credentialId")
        if not credential_id:
            raise NodeValidationError(f"{LABEL}: Credential is required", field="credentialId")

        max_tokens = data.get("maxTokens", 1024)
        if max_tokens < 1 or max_tokens > 128000:
            raise NodeValidationError(
                f"{LABEL}: Max tokens must be between 1 and 128000", field="maxTokens"
            )

        return AnthropicInput(
            variable_name=variable_name,
            credential_id=credential_id,
            model=model,
            user_prompt=user_prompt,
            system_prompt=data.get("systemPrompt") or DEFAULT_SYSTEM_PROMPT,
            max_tokens=max_tokens,
        )

    async def execute(
        self,
        input_data: AnthropicInput,
        params: NodeExecutorParams,
    ) -> WorkflowContext:
        credentials, user_id = require_credential_access(params, LABEL)
        api_key = await credentials.get_secret(input_data.credential_id, user_id)

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    ANTHROPIC_MESSAGES_URL,
                    headers={
                        "x-api-key": api_key,
                        "anthropic-version": ANTHROPIC_VERSION,
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": input_data.model,
                        "max_tokens": input_data.max_tokens,
                        "system": render_template(input_data.system_prompt, params.context),
                        "messages": [
                            {
                                "role": "user",
                                "content": render_template(input_data.user_prompt, params.context),
                            }
                        ],
                    },
                )
                response.raise_for_status()
                data = response.json()

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code == 401:
                raise NonRetriableStepError(f"{LABEL}: Invalid Anthropic API key") from e
            if status_code < 500 and status_code != 429:
                raise NonRetriableStepError(f"{LABEL}: Anthropic API error ({status_code})") from e
            raise

        text = next(
            (
                block.get("text") or ""
                for block in data.get("content") or []
                if isinstance(block, dict) and block.get("type") == "text"
            ),
            "",
        )

        return {
            **params.context,
            input_data.variable_name: {
                "text": text,
                "model": data.get("model", input_data.model),
                "usage": data.get("usage", {}),
            },
        }
