"""Node executor registry.

Central mapping from every NodeType to the executor that runs it.
"""

import structlog

from chainly.models.node import NodeType
from chainly.nodes.base import BaseNodeExecutor

logger = structlog.get_logger()


class NodeRegistryError(Exception):
    """Error in registry operations."""

    pass


class UnknownNodeTypeError(NodeRegistryError):
    """No executor is registered for a node type."""

    def __init__(self, node_type: NodeType | str) -> None:
        value = node_type.value if isinstance(node_type, NodeType) else node_type
        super().__init__(f"No executor found for node type: {value}")
        self.node_type = node_type


class NodeExecutorRegistry:
    """Registry of node executors keyed by node type.

    Example usage:
        registry = NodeExecutorRegistry()
        registry.register(HttpRequestExecutor())
        registry.verify_complete()

        executor = registry.get(NodeType.HTTP_REQUEST)
        context = await executor.run(params)
    """

    def __init__(self) -> None:
        self._executors: dict[NodeType, BaseNodeExecutor] = {}

    def register(self, executor: BaseNodeExecutor) -> None:
        """Register an executor for its node type.

        Raises:
            NodeRegistryError: If the node type already has an executor
        """
        node_type = executor.node_type
        if node_type in self._executors:
            raise NodeRegistryError(f"Executor for '{node_type.value}' already registered")

        self._executors[node_type] = executor
        logger.debug("node_executor_registered", node_type=node_type.value)

    def get(self, node_type: NodeType | str) -> BaseNodeExecutor:
        """Get the executor for a node type.

        Raises:
            UnknownNodeTypeError: If no executor is registered
        """
        try:
            return self._executors[NodeType(node_type)]
        except (ValueError, KeyError):
            raise UnknownNodeTypeError(node_type) from None

    def __contains__(self, node_type: object) -> bool:
        return node_type in self._executors

    def __len__(self) -> int:
        return len(self._executors)

    def missing_types(self) -> list[NodeType]:
        return [node_type for node_type in NodeType if node_type not in self._executors]

    def verify_complete(self) -> None:
        """Check that every node type has an executor.

        Raises:
            NodeRegistryError: Listing the node types without one
        """
        missing = self.missing_types()
        if missing:
            names = ", ".join(node_type.value for node_type in missing)
            raise NodeRegistryError(f"No executor registered for node types: {names}")

    def load_builtin_executors(self) -> int:
        """Register all built-in executors.

        Returns:
            Number of executors loaded
        """
        from chainly.nodes.actions.conditional import ConditionalExecutor
        from chainly.nodes.actions.http_request import HttpRequestExecutor
        from chainly.nodes.actions.set import SetExecutor
        from chainly.nodes.actions.switch import SwitchExecutor
        from chainly.nodes.actions.wait import WaitExecutor
        from chainly.nodes.apis.anthropic import AnthropicExecutor
        from chainly.nodes.apis.discord import DiscordExecutor
        from chainly.nodes.apis.gemini import GeminiExecutor
        from chainly.nodes.apis.google_calendar import GoogleCalendarExecutor
        from chainly.nodes.apis.openai import OpenAIExecutor
        from chainly.nodes.triggers import trigger_executors

        builtin_executors: list[BaseNodeExecutor] = [
            *trigger_executors(),
            HttpRequestExecutor(),
            SetExecutor(),
            WaitExecutor(),
            ConditionalExecutor(),
            SwitchExecutor(),
            OpenAIExecutor(),
            AnthropicExecutor(),
            GeminiExecutor(),
            GoogleCalendarExecutor(),
            DiscordExecutor(),
        ]

        for executor in builtin_executors:
            self.register(executor)

        logger.info("builtin_executors_loaded", count=len(builtin_executors))
        return len(builtin_executors)


_registry: NodeExecutorRegistry | None = None


def get_executor_registry() -> NodeExecutorRegistry:
    """Get or create the singleton executor registry.

    Returns:
        Registry with built-in executors loaded and verified complete
    """
    global _registry
    if _registry is None:
        registry = NodeExecutorRegistry()
        registry.load_builtin_executors()
        registry.verify_complete()
        _registry = registry
    return _registry
