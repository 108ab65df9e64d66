"""Node and connection entity models.

A workflow graph is stored as one row per node and one row per connection.
Both are replaced wholesale whenever the workflow is saved.
"""

from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from sqlalchemy import JSON
from sqlmodel import Column, Field, Relationship, SQLModel

if TYPE_CHECKING:
    from chainly.models.workflow import Workflow

DEFAULT_HANDLE = "main"


class NodeType(str, Enum):
    """Every node kind the engine knows how to execute."""

    # Triggers
    INITIAL = "INITIAL"
    MANUAL_TRIGGER = "MANUAL_TRIGGER"
    WEBHOOK_TRIGGER = "WEBHOOK_TRIGGER"
    GITHUB_TRIGGER = "GITHUB_TRIGGER"
    SCHEDULE_TRIGGER = "SCHEDULE_TRIGGER"
    GOOGLE_FORM_TRIGGER = "GOOGLE_FORM_TRIGGER"

    # Actions
    HTTP_REQUEST = "HTTP_REQUEST"
    SET = "SET"
    WAIT = "WAIT"
    OPENAI = "OPENAI"
    GOOGLE_CALENDAR = "GOOGLE_CALENDAR"
    CONDITIONAL = "CONDITIONAL"
    SWITCH = "SWITCH"
    ANTHROPIC = "ANTHROPIC"
    GEMINI = "GEMINI"
    DISCORD = "DISCORD"


TRIGGER_NODE_TYPES: frozenset[NodeType] = frozenset(
    {
        NodeType.INITIAL,
        NodeType.MANUAL_TRIGGER,
        NodeType.WEBHOOK_TRIGGER,
        NodeType.GITHUB_TRIGGER,
        NodeType.SCHEDULE_TRIGGER,
        NodeType.GOOGLE_FORM_TRIGGER,
    }
)


def is_trigger_type(node_type: str | NodeType) -> bool:
    """Check whether a node type starts a workflow."""
    try:
        return NodeType(node_type) in TRIGGER_NODE_TYPES
    except ValueError:
        return False


class Node(SQLModel, table=True):
    """Node database entity.

    ``data`` holds the type-specific configuration (e.g. ``variableName``,
    ``endpoint``, ``secret``). ``position`` is layout only.
    """

    __tablename__ = "node"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        description="Client-generated node identifier",
    )
    workflow_id: str = Field(
        foreign_key="workflow.id",
        index=True,
        description="Owning workflow ID",
    )
    name: str = Field(default="", max_length=255)
    type: NodeType = Field(index=True, description="Node kind")
    sort_order: int = Field(default=0, ge=0, description="Declaration order within the workflow")
    position: dict[str, Any] = Field(
        default_factory=lambda: {"x": 0, "y": 0},
        sa_column=Column(JSON, nullable=False),
    )
    data: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
        description="Type-specific configuration",
    )

    workflow: "Workflow" = Relationship(back_populates="nodes")


class Connection(SQLModel, table=True):
    """Directed edge from one node's output handle to another node's input handle."""

    __tablename__ = "connection"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
    )
    workflow_id: str = Field(
        foreign_key="workflow.id",
        index=True,
    )
    from_node_id: str = Field(index=True)
    from_output: str = Field(default=DEFAULT_HANDLE, max_length=100)
    to_node_id: str = Field(index=True)
    to_input: str = Field(default=DEFAULT_HANDLE, max_length=100)

    workflow: "Workflow" = Relationship(back_populates="connections")


class NodeSave(SQLModel):
    """Schema for a node in a graph save request."""

    id: str = Field(min_length=1, max_length=100)
    type: NodeType
    name: str = ""
    position: dict[str, Any] = Field(default_factory=lambda: {"x": 0, "y": 0})
    data: dict[str, Any] = Field(default_factory=dict)


class ConnectionSave(SQLModel):
    """Schema for a connection in a graph save request."""

    source: str
    target: str
    sourceHandle: str = DEFAULT_HANDLE
    targetHandle: str = DEFAULT_HANDLE


class NodeRead(SQLModel):
    """Schema for reading a node."""

    id: str
    type: NodeType
    name: str
    position: dict[str, Any]
    data: dict[str, Any]


class ConnectionRead(SQLModel):
    """Schema for reading a connection."""

    id: str
    source: str
    target: str
    sourceHandle: str
    targetHandle: str

    @classmethod
    def from_entity(cls, connection: Connection) -> "ConnectionRead":
        return cls(
            id=connection.id,
            source=connection.from_node_id,
            target=connection.to_node_id,
            sourceHandle=connection.from_output,
            targetHandle=connection.to_input,
        )
