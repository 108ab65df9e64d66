"""Workflow entity model.

Defines the Workflow table. The graph itself lives in the node and
connection tables (see chainly.models.node).
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING
from uuid import uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, Relationship, SQLModel

from chainly.models.node import ConnectionRead, ConnectionSave, NodeRead, NodeSave

if TYPE_CHECKING:
    from chainly.models.execution import Execution
    from chainly.models.node import Connection, Node
    from chainly.models.user import User


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class WorkflowBase(SQLModel):
    """Base workflow fields shared across models."""

    name: str = Field(
        max_length=255,
        min_length=1,
        description="Workflow name",
    )


class Workflow(WorkflowBase, table=True):
    """Workflow database entity.

    Owned exclusively by its creator. Nodes and connections are replaced
    as a whole on every save.
    """

    __tablename__ = "workflow"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        description="Unique workflow identifier (UUID)",
    )
    user_id: str = Field(
        foreign_key="user.id",
        index=True,
        description="Owner user ID",
    )
    created_at: datetime = Field(
        sa_type=DateTime(timezone=True),
        default_factory=utc_now,
        description="Creation timestamp (UTC)",
    )
    updated_at: datetime = Field(
        sa_type=DateTime(timezone=True),
        default_factory=utc_now,
        sa_column_kwargs={"onupdate": utc_now},
        description="Last update timestamp (UTC)",
    )

    # Relationships
    user: "User" = Relationship(back_populates="workflows")
    nodes: list["Node"] = Relationship(
        back_populates="workflow",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )
    connections: list["Connection"] = Relationship(
        back_populates="workflow",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )
    executions: list["Execution"] = Relationship(back_populates="workflow")


class WorkflowCreate(WorkflowBase):
    """Schema for creating a new workflow."""

    pass


class WorkflowGraphSave(SQLModel):
    """Schema for saving a workflow graph (replace-all)."""

    nodes: list[NodeSave] = Field(default_factory=list)
    connections: list[ConnectionSave] = Field(default_factory=list)


class WorkflowRead(WorkflowBase):
    """Schema for reading workflow data."""

    id: str
    user_id: str
    created_at: datetime
    updated_at: datetime
    nodes: list[NodeRead] = Field(default_factory=list)
    connections: list[ConnectionRead] = Field(default_factory=list)
