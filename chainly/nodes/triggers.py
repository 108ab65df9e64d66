"""Trigger node executors.

Triggers only mark the start of a run: the data a trigger received
(webhook payload, GitHub event, form response, schedule tick) is already in the initial
context, so executing one passes the context through unchanged.
"""

from typing import Any

from chainly.models.node import TRIGGER_NODE_TYPES, NodeType
from chainly.nodes.base import BaseNodeExecutor, NodeExecutorParams, WorkflowContext

_CHANNELS = {
    NodeType.INITIAL: "initial-execution",
    NodeType.MANUAL_TRIGGER: "manual-trigger-execution",
    NodeType.WEBHOOK_TRIGGER: "webhook-trigger-execution",
    NodeType.GITHUB_TRIGGER: "github-trigger-execution",
    NodeType.SCHEDULE_TRIGGER: "schedule-trigger-execution",
    NodeType.GOOGLE_FORM_TRIGGER: "google-form-trigger-execution",
}


class TriggerExecutor(BaseNodeExecutor[dict[str, Any]]):
    """Passthrough executor, instantiated once per trigger type."""

    def __init__(self, node_type: NodeType) -> None:
        if node_type not in TRIGGER_NODE_TYPES:
            raise ValueError(f"{node_type.value} is not a trigger type")
        self.node_type = node_type
        self.channel = _CHANNELS[node_type]
        self.step_name = node_type.value.lower().replace("_", "-")

    async def execute(
        self,
        input_data: dict[str, Any],
        params: NodeExecutorParams,
    ) -> WorkflowContext:
        return dict(params.context)


def trigger_executors() -> list[TriggerExecutor]:
    """One executor for every trigger node type."""
    return [TriggerExecutor(node_type) for node_type in NodeType if node_type in TRIGGER_NODE_TYPES]
