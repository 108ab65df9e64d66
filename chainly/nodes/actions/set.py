"""Set node.

Builds a new mapping from key/value fields, evaluating ``{{...}}``
references against the context.
"""

from dataclasses import dataclass
from typing import Any

from chainly.models.node import NodeType
from chainly.nodes.base import (
    BaseNodeExecutor,
    NodeExecutorParams,
    NodeValidationError,
    WorkflowContext,
)
from chainly.nodes.templating import TemplateError, evaluate_value

DEFAULT_VARIABLE_NAME = "data"


@dataclass
class SetField:
    key: str
    value: str


@dataclass
class SetInput:
    """Input for set node."""

    fields: list[SetField]
    variable_name: str = DEFAULT_VARIABLE_NAME


class SetExecutor(BaseNodeExecutor[SetInput]):
    node_type = NodeType.SET
    channel = "set-execution"
    step_name = "evaluate-fields"

    def validate_input(self, data: dict[str, Any]) -> SetInput:
        raw_fields = data.get("fields") or []
        if not isinstance(raw_fields, list) or not raw_fields:
            raise NodeValidationError("Set Node: At least one field is required", field="fields")

        fields = []
        for raw in raw_fields:
            if not isinstance(raw, dict) or not raw.get("key"):
                raise NodeValidationError("Set Node: Field key cannot be empty", field="fields")
            value = raw.get("value", "")
            fields.append(SetField(key=str(raw["key"]), value=value if isinstance(value, str) else str(value)))

        return SetInput(
            fields=fields,
            variable_name=data.get("variableName") or DEFAULT_VARIABLE_NAME,
        )

    async def execute(self, input_data: SetInput, params: NodeExecutorParams) -> WorkflowContext:
        evaluated: dict[str, Any] = {}
        for field in input_data.fields:
            try:
                evaluated[field.key] = evaluate_value(field.value, params.context)
            except TemplateError as e:
                raise NodeValidationError(
                    f'Set Node: Failed to evaluate field "{field.key}". {e}',
                    field=field.key,
                ) from e

        return {**params.context, input_data.variable_name: evaluated}
