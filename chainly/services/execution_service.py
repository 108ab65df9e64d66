"""Execution service.

Starts workflow runs by handing them to the job queue and manages the
execution records they produce.
"""

import asyncio
from typing import Any, Protocol
from uuid import uuid4

import structlog
from celery import Celery
from kombu.exceptions import OperationalError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chainly.celery_app import EXECUTE_WORKFLOW_TASK
from chainly.core.graph import resolve_execution_order
from chainly.models.execution import (
    CANCELLED_MESSAGE,
    Execution,
    ExecutionRead,
    ExecutionStatus,
    ExecutionStep,
    ExecutionStepRead,
)
from chainly.models.workflow import Workflow
from chainly.services.workflow_service import WorkflowService, load_graph

logger = structlog.get_logger()


def new_run_id() -> str:
    """Generate a run correlation id."""
    return str(uuid4())


class ExecutionServiceError(Exception):
    """Error in execution service operations."""

    pass


class ExecutionNotFoundError(ExecutionServiceError):
    """Execution not found."""

    pass


class ExecutionAccessDeniedError(ExecutionServiceError):
    """User doesn't have access to execution."""

    pass


class ExecutionNotCancellableError(ExecutionServiceError):
    """Execution is already in a terminal state."""

    pass


class QueueUnavailableError(ExecutionServiceError):
    """The job broker could not be reached."""

    pass


class WorkflowQueue(Protocol):
    """Hands workflow runs to the durable job queue."""

    async def enqueue_run(
        self,
        run_id: str,
        workflow_id: str,
        trigger_node_id: str | None = None,
        initial_context: dict[str, Any] | None = None,
    ) -> str: ...


class CeleryWorkflowQueue:
    """WorkflowQueue backed by Celery.

    The run id doubles as the Celery task id. A redelivered or duplicated
    task finds the execution already created for its run id. Publishing
    blocks on broker I/O, so it runs in a worker thread.
    """

    def __init__(self, app: Celery) -> None:
        self._app = app

    async def enqueue_run(
        self,
        run_id: str,
        workflow_id: str,
        trigger_node_id: str | None = None,
        initial_context: dict[str, Any] | None = None,
    ) -> str:
        try:
            await asyncio.to_thread(
                self._app.send_task,
                EXECUTE_WORKFLOW_TASK,
                kwargs={
                    "workflow_id": workflow_id,
                    "run_id": run_id,
                    "trigger_node_id": trigger_node_id,
                    "initial_context": initial_context,
                },
                task_id=run_id,
            )
        except OperationalError as e:
            logger.error("workflow_run_enqueue_failed", run_id=run_id, workflow_id=workflow_id)
            raise QueueUnavailableError(f"Job broker unavailable: {e}") from e
        logger.info("workflow_run_enqueued", run_id=run_id, workflow_id=workflow_id)
        return run_id


class ExecutionService:
    """Service for managing workflow executions.

    Handles:
    - Validating and enqueueing runs
    - Reading executions and their steps
    - Cancelling running executions
    - User-scoped access control (through the owning workflow)

    Example usage:
        service = ExecutionService(session, queue)

        run_id = await service.execute(workflow_id="workflow-456", user_id="user-123")
        executions = await service.list_all(user_id="user-123")
    """

    def __init__(
        self,
        session: AsyncSession,
        queue: WorkflowQueue | None = None,
    ) -> None:
        """Initialize execution service.

        Args:
            session: Async database session
            queue: Job queue for new runs
        """
        self._session = session
        self._queue = queue

    def _require_queue(self) -> WorkflowQueue:
        if self._queue is None:
            raise ExecutionServiceError("Workflow queue is not available")
        return self._queue

    async def execute(
        self,
        workflow_id: str,
        user_id: str,
        initial_context: dict[str, Any] | None = None,
    ) -> str:
        """Validate a workflow and enqueue a run of it.

        Returns:
            Run id of the enqueued run

        Raises:
            WorkflowNotFoundError: If workflow doesn't exist
            WorkflowAccessDeniedError: If user doesn't own workflow
            GraphValidationError: If the graph cannot be executed
        """
        queue = self._require_queue()
        await WorkflowService(self._session).get_entity(workflow_id, user_id)

        nodes, connections = await load_graph(self._session, workflow_id)
        resolve_execution_order(nodes, connections)

        run_id = await queue.enqueue_run(new_run_id(), workflow_id, None, initial_context)
        logger.info("workflow_execution_requested", workflow_id=workflow_id, user_id=user_id)
        return run_id

    async def enqueue_trigger(
        self,
        workflow_id: str,
        trigger_node_id: str,
        initial_context: dict[str, Any],
    ) -> str:
        """Enqueue a run started by an external trigger (webhook or schedule).

        The graph is validated by the run itself; an invalid graph yields a
        FAILED execution.
        """
        queue = self._require_queue()
        return await queue.enqueue_run(new_run_id(), workflow_id, trigger_node_id, initial_context)

    async def get(self, execution_id: str, user_id: str) -> ExecutionRead:
        """Get an execution.

        Raises:
            ExecutionNotFoundError: If execution doesn't exist
            ExecutionAccessDeniedError: If user doesn't own execution
        """
        execution = await self._get_and_verify(execution_id, user_id)
        return ExecutionRead.from_entity(execution)

    async def list_all(
        self,
        user_id: str,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ExecutionRead]:
        """List the user's executions, newest first."""
        query = (
            select(Execution)
            .join(Workflow, Workflow.id == Execution.workflow_id)
            .where(Workflow.user_id == user_id)
        )
        if workflow_id:
            query = query.where(Execution.workflow_id == workflow_id)
        if status:
            query = query.where(Execution.status == status)
        query = query.order_by(Execution.started_at.desc()).offset(offset).limit(limit)

        result = await self._session.execute(query)
        return [ExecutionRead.from_entity(e) for e in result.scalars().all()]

    async def list_steps(self, execution_id: str, user_id: str) -> list[ExecutionStepRead]:
        """List the recorded node steps of an execution in execution order."""
        await self._get_and_verify(execution_id, user_id)

        result = await self._session.execute(
            select(ExecutionStep)
            .where(ExecutionStep.execution_id == execution_id)
            .order_by(ExecutionStep.order)
        )
        return [ExecutionStepRead.model_validate(s) for s in result.scalars().all()]

    async def cancel(self, execution_id: str, user_id: str) -> ExecutionRead:
        """Cancel a running execution.

        The run stops at its next node boundary; a node already executing
        finishes first.

        Raises:
            ExecutionNotFoundError: If execution doesn't exist
            ExecutionAccessDeniedError: If user doesn't own execution
            ExecutionNotCancellableError: If the execution already finished
        """
        execution = await self._get_and_verify(execution_id, user_id)

        if execution.status != ExecutionStatus.RUNNING:
            raise ExecutionNotCancellableError(
                f"Cannot cancel: status is {execution.status.value}"
            )

        execution.mark_failed(CANCELLED_MESSAGE)
        await self._session.commit()
        await self._session.refresh(execution)

        logger.info(
            "execution_cancelled",
            execution_id=execution_id,
            user_id=user_id,
        )

        return ExecutionRead.from_entity(execution)

    async def _get_and_verify(self, execution_id: str, user_id: str) -> Execution:
        """Get execution and verify ownership of its workflow.

        Raises:
            ExecutionNotFoundError: If not found
            ExecutionAccessDeniedError: If wrong owner
        """
        query = (
            select(Execution, Workflow.user_id)
            .join(Workflow, Workflow.id == Execution.workflow_id)
            .where(Execution.id == execution_id)
        )
        result = await self._session.execute(query)
        row = result.one_or_none()

        if row is None:
            raise ExecutionNotFoundError(f"Execution '{execution_id}' not found")

        execution, owner_id = row
        if owner_id != user_id:
            logger.warning(
                "execution_access_denied",
                execution_id=execution_id,
                requested_by=user_id,
            )
            raise ExecutionAccessDeniedError("Access denied to execution")

        return execution
