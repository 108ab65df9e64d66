"""Wait node.

Pauses the run for a fixed duration using a durable sleep, so a run
retried mid-wait only waits for the remaining time.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from chainly.core.steps import step_key
from chainly.models.node import NodeType
from chainly.nodes.base import (
    BaseNodeExecutor,
    NodeExecutorParams,
    NodeValidationError,
    WorkflowContext,
)

UNIT_SECONDS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 60 * 60,
    "days": 24 * 60 * 60,
}


@dataclass
class WaitInput:
    duration: float = 5
    unit: str = "seconds"

    @property
    def seconds(self) -> float:
        return self.duration * UNIT_SECONDS[self.unit]

    def formatted(self) -> str:
        amount = int(self.duration) if float(self.duration).is_integer() else self.duration
        unit = self.unit[:-1] if amount == 1 else self.unit
        return f"{amount} {unit}"


class WaitExecutor(BaseNodeExecutor[WaitInput]):
    node_type = NodeType.WAIT
    channel = "wait-execution"
    step_name = "wait"

    def validate_input(self, data: dict[str, Any]) -> WaitInput:
        duration = data.get("duration", 5)
        unit = data.get("unit") or "seconds"

        if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration <= 0:
            raise NodeValidationError("Wait Node: Duration must be a positive number", field="duration")
        if unit not in UNIT_SECONDS:
            raise NodeValidationError(f"Wait Node: Unsupported unit '{unit}'", field="unit")

        return WaitInput(duration=duration, unit=unit)

    async def perform(self, input_data: WaitInput, params: NodeExecutorParams) -> WorkflowContext:
        await params.step.sleep(step_key(self.step_name, params.node_id), input_data.seconds)
        return await params.step.run(
            step_key("wait-complete", params.node_id),
            lambda: self.execute(input_data, params),
        )

    async def execute(self, input_data: WaitInput, params: NodeExecutorParams) -> WorkflowContext:
        return {
            **params.context,
            "_lastWait": {
                "duration": input_data.duration,
                "unit": input_data.unit,
                "formatted": input_data.formatted(),
                "completedAt": datetime.now(timezone.utc).isoformat(),
            },
        }
