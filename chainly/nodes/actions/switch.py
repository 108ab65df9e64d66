"""Switch node.

Evaluates an expression and picks the first case whose value equals the
result (compared as text). The match is stored under ``variableName``;
``selectedOutput`` names the ``case-<index>`` or ``default`` handle.
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
from chainly.nodes.expressions import ExpressionError, as_text, evaluate_expression

LABEL = "Switch Node"
DEFAULT_OUTPUT = "default"


@dataclass
class SwitchCase:
    label: str
    value: str


@dataclass
class SwitchInput:
    variable_name: str
    expression: str
    cases: list[SwitchCase]
    has_default: bool = True


def find_matching_case(value: Any, cases: list[SwitchCase]) -> int | None:
    """Index of the first case equal to ``value`` as text."""
    text = as_text(value)
    for index, case in enumerate(cases):
        if case.value == text:
            return index
    return None


class SwitchExecutor(BaseNodeExecutor[SwitchInput]):
    node_type = NodeType.SWITCH
    channel = "switch-execution"
    step_name = "evaluate-switch"

    def validate_input(self, data: dict[str, Any]) -> SwitchInput:
        variable_name = require_variable_name(data, LABEL)

        expression = data.get("expression")
        if not expression or not isinstance(expression, str):
            raise NodeValidationError(f"{LABEL}: Expression is required", field="expression")

        raw_cases = data.get("cases") or []
        if not isinstance(raw_cases, list) or not raw_cases:
            raise NodeValidationError(f"{LABEL}: At least one case is required", field="cases")

        cases = []
        for raw in raw_cases:
            if not isinstance(raw, dict):
                raise NodeValidationError(f"{LABEL}: Each case needs a label and value", field="cases")
            cases.append(
                SwitchCase(label=str(raw.get("label") or ""), value=as_text(raw.get("value", "")))
            )

        has_default = data.get("hasDefault")
        return SwitchInput(
            variable_name=variable_name,
            expression=expression,
            cases=cases,
            has_default=True if has_default is None else bool(has_default),
        )

    async def execute(
        self,
        input_data: SwitchInput,
        params: NodeExecutorParams,
    ) -> WorkflowContext:
        try:
            value = evaluate_expression(input_data.expression, params.context)
        except ExpressionError as e:
            raise NonRetriableStepError(
                f'{LABEL}: Failed to evaluate expression "{input_data.expression}". {e}'
            ) from e

        index = find_matching_case(value, input_data.cases)
        if index is not None:
            selected_output: str | None = f"case-{index}"
        elif input_data.has_default:
            selected_output = DEFAULT_OUTPUT
        else:
            selected_output = None

        return {
            **params.context,
            input_data.variable_name: {
                "value": value,
                "matchedCase": (input_data.cases[index].label or None) if index is not None else None,
                "matchedIndex": index,
                "isDefault": index is None,
                "selectedOutput": selected_output,
            },
        }
