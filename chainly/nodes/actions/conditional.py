"""Conditional node.

Evaluates a boolean expression against the context and stores the
outcome. Every downstream node still runs; later nodes read
``{{variableName.result}}``.
"""

from dataclasses import dataclass
from typing import Any

from chainly.core.steps import NonRetriableStepError
from chainly.models.node import NodeType
from chainly.nodes.base import (
    BaseNodeExecutor,
    NodeExecutorParams,
    NodeValidationError,
    WorkflowContext,
    require_variable_name,
)
from chainly.nodes.expressions import ExpressionError, evaluate_expression

LABEL = "Conditional Node"


@dataclass
class ConditionalInput:
    variable_name: str
    condition: str


class ConditionalExecutor(BaseNodeExecutor[ConditionalInput]):
    node_type = NodeType.CONDITIONAL
    channel = "conditional-execution"
    step_name = "evaluate-condition"

    def validate_input(self, data: dict[str, Any]) -> ConditionalInput:
        variable_name = require_variable_name(data, LABEL)
        condition = data.get("condition")
        if not condition or not isinstance(condition, str):
            raise NodeValidationError(f"{LABEL}: Condition is required", field="condition")
        return ConditionalInput(variable_name=variable_name, condition=condition)

    async def execute(
        self,
        input_data: ConditionalInput,
        params: NodeExecutorParams,
    ) -> WorkflowContext:
        try:
            passed = bool(evaluate_expression(input_data.condition, params.context))
        except ExpressionError as e:
            raise NonRetriableStepError(
                f'{LABEL}: Failed to evaluate condition "{input_data.condition}". {e}'
            ) from e

        return {
            **params.context,
            input_data.variable_name: {
                "result": passed,
                "condition": input_data.condition,
            },
        }
