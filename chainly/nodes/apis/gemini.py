"""Gemini API node.

Calls Google's Generative Language API (Gemini models) for text generation.
"""

from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

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

GEMINI_GENERATE_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
LABEL = "Gemini Node"


@dataclass
class GeminiInput:
    """Input for Gemini node."""

    variable_name: str
    credential_id: str
    model: str
    user_prompt: str
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


def first_candidate_text(data: dict[str, Any]) -> str:
    """Text of the first text part of the first candidate."""
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return next((part["text"] for part in parts if isinstance(part, dict) and "text" in part), "")


class GeminiExecutor(BaseNodeExecutor[GeminiInput]):
    """Gemini API node for text generation.

    Requires a GEMINI credential holding a Generative Language API key.
    The reply is stored as ``{variableName: {"text": ...}}``.
    """

    node_type = NodeType.GEMINI
    channel = "gemini-execution"
    step_name = "gemini-generate-text"

    def __init__(self, timeout: float | None = None) -> None:
        self._timeout = timeout if timeout is not None else settings.executor_http_timeout

    def validate_input(self, data: dict[str, Any]) -> GeminiInput:
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

        return GeminiInput(
            variable_name=variable_name,
            credential_id=credential_id,
            model=model,
            user_prompt=user_prompt,
            system_prompt=data.get("systemPrompt") or DEFAULT_SYSTEM_PROMPT,
        )

    async def execute(
        self,
        input_data: GeminiInput,
        params: NodeExecutorParams,
    ) -> WorkflowContext:
        credentials, user_id = require_credential_access(params, LABEL)
        api_key = await credentials.get_secret(input_data.credential_id, user_id)

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    GEMINI_GENERATE_URL.format(model=quote(input_data.model, safe="")),
                    headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
                    json={
                        "systemInstruction": {
                            "parts": [{"text": render_template(input_data.system_prompt, params.context)}]
                        },
                        "contents": [
                            {
                                "role": "user",
                                "parts": [{"text": render_template(input_data.user_prompt, params.context)}],
                            }
                        ],
                    },
                )
                response.raise_for_status()
                data = response.json()

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code in (401, 403):
                raise NonRetriableStepError(f"{LABEL}: Invalid Gemini API key") from e
            if status_code == 404:
                raise NonRetriableStepError(f'{LABEL}: Model "{input_data.model}" not found') from e
            if status_code < 500 and status_code != 429:
                raise NonRetriableStepError(f"{LABEL}: Gemini API error ({status_code})") from e
            raise

        return {
            **params.context,
            input_data.variable_name: {
                "text": first_candidate_text(data),
                "model": input_data.model,
                "usage": data.get("usageMetadata", {}),
            },
        }
