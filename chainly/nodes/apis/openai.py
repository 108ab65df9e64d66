"""OpenAI API node.

Calls OpenAI chat models for text generation.
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

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL = "gpt-4o"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
LABEL = "OpenAI Node"


@dataclass
class OpenAIInput:
    """Input for OpenAI node."""

    variable_name: str
    credential_id: str
    user_prompt: str
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    model: str = DEFAULT_MODEL
    max_tokens: int = 1024
    temperature: float = 0.7


class OpenAIExecutor(BaseNodeExecutor[OpenAIInput]):
    """OpenAI API node for text generation.

    Requires an OPENAI credential. Prompts may reference the context with
    ``{{...}}``; the reply is stored as ``{variableName: {"text": ...}}``.
    """

    node_type = NodeType.OPENAI
    channel = "openai-execution"
    step_name = "openai-generate-text"

    def __init__(self, timeout: float | None = None) -> None:
        self._timeout = timeout if timeout is not None else settings.executor_http_timeout

    def validate_input(self, data: dict[str, Any]) -> OpenAIInput:
        """Validate input data."""
        variable_name = require_variable_name(data, LABEL)

        model = data.get("model") or DEFAULT_MODEL
        user_prompt = data.get("userPrompt")
        if not user_prompt or not isinstance(user_prompt, str):
            raise NodeValidationError(f"{LABEL}: User prompt is required", field="userPrompt")

        credential_id = data.get("credentialId")
        if not credential_id:
            raise NodeValidationError(f"{LABEL}: Credential is required", field="credentialId")

        max_tokens = data.get("maxTokens", 1024)
        temperature = data.get("temperature", 0.7)

        if not 0 <= temperature <= 2:
            raise NodeValidationError(
                f"{LABEL}: Temperature must be between 0 and 2", field="temperature"
            )

        if max_tokens < 1 or max_tokens > 128000:
            raise NodeValidationError(
                f"{LABEL}: Max tokens must be between 1 and 128000", field="maxTokens"
            )

        return OpenAIInput(
            variable_name=variable_name,
            credential_id=credential_id,
            user_prompt=user_prompt,
            system_prompt=data.get("systemPrompt") or DEFAULT_SYSTEM_PROMPT,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
        )

    async def execute(
        self,
        input_data: OpenAIInput,
        params: NodeExecutorParams,
    ) -> WorkflowContext:
        """Execute OpenAI API call."""
        credentials, user_id = require_credential_access(params, LABEL)
        api_key = await credentials.get_secret(input_data.credential_id, user_id)

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    OPENAI_CHAT_URL,
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": input_data.model,
                        "messages": [
                            {
                                "role": "system",
                                "content": render_template(input_data.system_prompt, params.context),
                            },
                            {
                                "role": "user",
                                "content": render_template(input_data.user_prompt, params.context),
                            },
                        ],
                        "max_tokens": input_data.max_tokens,
                        "temperature": input_data.temperature,
                    },
                )
                response.raise_for_status()
                data = response.json()

        except httpx.HTTPStatusError as e:
            if e.response.status_code == 401:
                raise NonRetriableStepError(f"{LABEL}: Invalid OpenAI API key") from e
            if e.response.status_code < 500 and e.response.status_code != 429:
                raise NonRetriableStepError(
                    f"{LABEL}: OpenAI API error ({e.response.status_code})"
                ) from e
            raise

        choices = data.get("choices") or []
        text = (choices[0]["message"].get("content") or "") if choices else ""

        return {
            **params.context,
            input_data.variable_name: {
                "text": text,
                "model": data.get("model", input_data.model),
                "usage": data.get("usage", {}),
            },
        }
