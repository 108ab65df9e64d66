"""Execution entity models.

Defines the Execution table (one row per workflow run), the ExecutionStep
table (one append-only row per executed node) and the StepRecord table
backing the durable step log.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from sqlalchemy import JSON, DateTime, UniqueConstraint
from sqlmodel import Column, Field, Relationship, SQLModel, Text

from chainly.models.node import NodeType

if TYPE_CHECKING:
    from chainly.models.workflow import Workflow


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ExecutionStatus(str, Enum):
    """Execution lifecycle status."""

    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({ExecutionStatus.SUCCESS, ExecutionStatus.FAILED})

CANCELLED_MESSAGE = "Execution cancelled by user"


class ExecutionStateError(Exception):
    """Attempted transition out of a terminal execution state."""

    pass


class Execution(SQLModel, table=True):
    """Execution database entity.

    Status moves RUNNING -> SUCCESS or RUNNING -> FAILED exactly once;
    terminal rows are never mutated again.
    """

    __tablename__ = "execution"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        description="Unique execution identifier (UUID)",
    )
    workflow_id: str = Field(
        foreign_key="workflow.id",
        index=True,
        description="Associated workflow ID",
    )
    run_id: str = Field(
        index=True,
        unique=True,
        max_length=100,
        description="Correlation id of the queued run that created this execution",
    )
    status: ExecutionStatus = Field(
        default=ExecutionStatus.RUNNING,
        index=True,
        description="Current execution status",
    )
    error: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
        description="Error message if execution failed",
    )
    error_stack: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )
    output: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
        description="Final context of a successful run",
    )
    started_at: datetime = Field(
        sa_type=DateTime(timezone=True),
        default_factory=utc_now,
        description="Execution start timestamp (UTC)",
    )
    completed_at: datetime | None = Field(
        sa_type=DateTime(timezone=True),
        default=None,
        description="Execution completion timestamp (UTC)",
    )

    # Relationships
    workflow: "Workflow" = Relationship(back_populates="executions")
    steps: list["ExecutionStep"] = Relationship(
        back_populates="execution",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_ms(self) -> int | None:
        """Calculate execution duration in milliseconds."""
        if self.completed_at is None:
            return None
        delta = as_utc(self.completed_at) - as_utc(self.started_at)
        return int(delta.total_seconds() * 1000)

    def _ensure_running(self) -> None:
        if self.is_terminal:
            raise ExecutionStateError(
                f"Execution '{self.id}' is already {self.status.value}"
            )

    def mark_success(self, output: dict[str, Any]) -> None:
        """Mark execution as successful with the final context."""
        self._ensure_running()
        self.status = ExecutionStatus.SUCCESS
        self.output = output
        self.completed_at = utc_now()

    def mark_failed(self, error: str, error_stack: str | None = None) -> None:
        """Mark execution as failed with error information."""
        self._ensure_running()
        self.status = ExecutionStatus.FAILED
        self.error = error
        self.error_stack = error_stack
        self.completed_at = utc_now()


class ExecutionStep(SQLModel, table=True):
    """Persisted record of one node's execution within a run."""

    __tablename__ = "execution_step"
    __table_args__ = (UniqueConstraint("execution_id", "node_id"),)

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
    )
    execution_id: str = Field(foreign_key="execution.id", index=True)
    node_id: str = Field(max_length=100)
    node_type: NodeType
    status: ExecutionStatus
    order: int = Field(ge=0, description="Position in the resolved execution order")
    input: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    output: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error_stack: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    started_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    completed_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))

    execution: Execution = Relationship(back_populates="steps")


class StepStatus(str, Enum):
    """Durable step log status."""

    COMPLETED = "completed"
    SLEEPING = "sleeping"


class StepRecord(SQLModel, table=True):
    """Durable step log entry.

    A committed entry memoizes its step's result so a retried run skips
    the work. ``(run_id, step_key)`` is unique.
    """

    __tablename__ = "step_record"
    __table_args__ = (UniqueConstraint("run_id", "step_key"),)

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
    )
    run_id: str = Field(index=True, max_length=100)
    step_key: str = Field(max_length=255)
    status: StepStatus = Field(default=StepStatus.COMPLETED)
    result: Any = Field(default=None, sa_column=Column(JSON, nullable=True))
    attempts: int = Field(default=1, ge=1)
    wake_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class ExecutionRead(SQLModel):
    """Schema for reading execution data."""

    id: str
    workflow_id: str
    run_id: str
    status: ExecutionStatus
    error: str | None = None
    output: dict[str, Any] | None = None
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None

    @classmethod
    def from_entity(cls, execution: Execution) -> "ExecutionRead":
        return cls(
            id=execution.id,
            workflow_id=execution.workflow_id,
            run_id=execution.run_id,
            status=execution.status,
            error=execution.error,
            output=execution.output,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            duration_ms=execution.duration_ms,
        )


class ExecutionStepRead(SQLModel):
    """Schema for reading a step record."""

    id: str
    node_id: str
    node_type: NodeType
    status: ExecutionStatus
    order: int
    input: dict[str, Any] | None = None
    output: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
