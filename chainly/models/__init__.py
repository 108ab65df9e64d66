"""Data models - SQLModel entities and request/response schemas."""

from chainly.models.credential import Credential, CredentialCreate, CredentialRead, CredentialType
from chainly.models.execution import (
    Execution,
    ExecutionRead,
    ExecutionStatus,
    ExecutionStep,
    ExecutionStepRead,
    StepRecord,
)
from chainly.models.node import TRIGGER_NODE_TYPES, Connection, Node, NodeType
from chainly.models.user import User
from chainly.models.workflow import Workflow, WorkflowCreate, WorkflowGraphSave, WorkflowRead

__all__ = [
    "TRIGGER_NODE_TYPES",
    "Connection",
    "Credential",
    "CredentialCreate",
    "CredentialRead",
    "CredentialType",
    "Execution",
    "ExecutionRead",
    "ExecutionStatus",
    "ExecutionStep",
    "ExecutionStepRead",
    "Node",
    "NodeType",
    "StepRecord",
    "User",
    "Workflow",
    "WorkflowCreate",
    "WorkflowGraphSave",
    "WorkflowRead",
]
