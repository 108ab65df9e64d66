"""Node executors - one per workflow node type."""

from chainly.nodes.base import (
    BaseNodeExecutor,
    NodeExecutionError,
    NodeExecutorParams,
    NodeValidationError,
)
from chainly.nodes.registry import (
    NodeExecutorRegistry,
    UnknownNodeTypeError,
    get_executor_registry,
)

__all__ = [
    "BaseNodeExecutor",
    "NodeExecutionError",
    "NodeExecutorParams",
    "NodeExecutorRegistry",
    "NodeValidationError",
    "UnknownNodeTypeError",
    "get_executor_registry",
]
