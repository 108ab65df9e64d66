"""Workflow execution orchestrator.

Runs one workflow run end to end: resolves the execution order, creates
the Execution row, dispatches each node to its executor and records the
outcome. Every side effect sits behind a durable step key, so a run
re-entered by the job queue after a crash resumes instead of repeating
committed work.
"""

import traceback
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from chainly.config import settings
from chainly.core.graph import GraphValidationError, resolve_execution_order
from chainly.core.realtime import StatusSink
from chainly.core.steps import (
    DurableStepRunner,
    NonRetriableStepError,
    StepRunner,
    step_key,
    to_json_value,
)
from chainly.models.execution import (
    Execution,
    ExecutionRead,
    ExecutionStatus,
    ExecutionStep,
)
from chainly.models.node import Connection, Node, NodeType
from chainly.models.workflow import Workflow
from chainly.nodes.base import CredentialProvider, NodeExecutionError, NodeExecutorParams
from chainly.nodes.registry import NodeExecutorRegistry, UnknownNodeTypeError

logger = structlog.get_logger()

StepRunnerFactory = Callable[[str], StepRunner]


class WorkflowNotFoundForRunError(Exception):
    """The workflow of a queued run no longer exists."""

    pass


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def _format_stack(error: BaseException) -> str:
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


class WorkflowOrchestrator:
    """Executes workflow runs.

    Example usage:
        orchestrator = WorkflowOrchestrator(
            session_maker,
            registry=get_executor_registry(),
            publisher=get_status_publisher(),
        )
        execution = await orchestrator.run(workflow_id, run_id="run-123", enqueued=True)
    """

    def __init__(
        self,
        session_maker: sessionmaker,
        registry: NodeExecutorRegistry,
        publisher: StatusSink,
        step_runner_factory: StepRunnerFactory | None = None,
        credentials: CredentialProvider | None = None,
    ) -> None:
        self._session_maker = session_maker
        self._registry = registry
        self._publisher = publisher
        self._credentials = credentials
        self._step_runner_factory = step_runner_factory or (
            lambda run_id: DurableStepRunner(
                session_maker,
                run_id,
                max_attempts=settings.step_max_attempts,
                retry_delay=settings.step_retry_delay,
            )
        )

    async def run(
        self,
        workflow_id: str,
        run_id: str,
        trigger_node_id: str | None = None,
        initial_context: dict[str, Any] | None = None,
        enqueued: bool = False,
    ) -> ExecutionRead | None:
        """Execute one run of a workflow.

        Args:
            workflow_id: Workflow to run
            run_id: Queue correlation id; the Execution row is keyed by it
            trigger_node_id: Start from this trigger only
            initial_context: Data supplied by the trigger
            enqueued: Whether the run came from the job queue. Queued runs
                record validation failures as a FAILED execution instead
                of raising.

        Returns:
            The execution in its final state, or None if the workflow
            no longer exists

        Raises:
            GraphValidationError: If the graph is invalid and not enqueued
        """
        step = self._step_runner_factory(run_id)
        log = logger.bind(workflow_id=workflow_id, run_id=run_id)

        try:
            plan = await step.run(
                "prepare-workflow",
                lambda: self._prepare(workflow_id, trigger_node_id),
            )
        except NonRetriableStepError as e:
            cause = e.__cause__
            if isinstance(cause, WorkflowNotFoundForRunError):
                log.warning("workflow_run_skipped_missing_workflow")
                return None
            if not enqueued:
                raise (cause if isinstance(cause, GraphValidationError) else e) from None

            log.info("workflow_validation_failed", error=str(e))
            execution_id = await step.run(
                "create-execution",
                lambda: self._create_execution(workflow_id, run_id),
            )
            await step.run(
                "fail-execution",
                lambda: self._finish(execution_id, error=str(e)),
            )
            return await self._read(execution_id)

        execution_id = await step.run(
            "create-execution",
            lambda: self._create_execution(workflow_id, run_id),
        )
        log = log.bind(execution_id=execution_id)
        log.info("workflow_execution_started", node_count=len(plan["order"]))

        context: dict[str, Any] = to_json_value(initial_context or {})

        for index, node_id in enumerate(plan["order"]):
            if await self._current_status(execution_id) != ExecutionStatus.RUNNING:
                log.info("workflow_execution_cancelled", stopped_before=node_id)
                return await self._read(execution_id)

            node = plan["nodes"][node_id]
            node_type = NodeType(node["type"])
            started_at = utc_now()
            node_input = context

            try:
                executor = self._registry.get(node_type)
                context = await executor.run(
                    NodeExecutorParams(
                        node_id=node_id,
                        node_type=node_type,
                        data=node["data"],
                        context=context,
                        step=step,
                        publish=self._publisher.publish,
                        workflow_id=workflow_id,
                        execution_id=execution_id,
                        user_id=plan["user_id"],
                        credentials=self._credentials,
                    )
                )
            except (NodeExecutionError, UnknownNodeTypeError) as e:
                error_stack = _format_stack(e.__cause__ or e)
                log.info(
                    "workflow_node_failed",
                    node_id=node_id,
                    node_type=node_type.value,
                    error=str(e),
                )
                await step.run(
                    step_key("record-step", node_id),
                    lambda: self._record_step(
                        execution_id,
                        node_id,
                        node_type,
                        index,
                        ExecutionStatus.FAILED,
                        node_input,
                        None,
                        started_at,
                        error=str(e),
                        error_stack=error_stack,
                    ),
                )
                await step.run(
                    "fail-execution",
                    lambda: self._finish(execution_id, error=str(e), error_stack=error_stack),
                )
                return await self._read(execution_id)

            await step.run(
                step_key("record-step", node_id),
                lambda: self._record_step(
                    execution_id,
                    node_id,
                    node_type,
                    index,
                    ExecutionStatus.SUCCESS,
                    node_input,
                    context,
                    started_at,
                ),
            )

        await step.run(
            "complete-execution",
            lambda: self._finish(execution_id, output=context),
        )
        log.info("workflow_execution_completed")
        return await self._read(execution_id)

    async def _prepare(self, workflow_id: str, trigger_node_id: str | None) -> dict[str, Any]:
        async with self._session_maker() as session:
            workflow = await session.get(Workflow, workflow_id)
            if workflow is None:
                raise NonRetriableStepError(
                    f"Workflow '{workflow_id}' not found"
                ) from WorkflowNotFoundForRunError(workflow_id)

            nodes_result = await session.execute(
                select(Node).where(Node.workflow_id == workflow_id).order_by(Node.sort_order)
            )
            connections_result = await session.execute(
                select(Connection).where(Connection.workflow_id == workflow_id)
            )
            nodes = list(nodes_result.scalars().all())
            connections = list(connections_result.scalars().all())

        try:
            order = resolve_execution_order(nodes, connections, trigger_node_id)
        except GraphValidationError as e:
            raise NonRetriableStepError(str(e)) from e

        by_id = {node.id: node for node in nodes}
        return {
            "user_id": workflow.user_id,
            "order": order,
            "nodes": {
                node_id: {"type": by_id[node_id].type.value, "data": by_id[node_id].data}
                for node_id in order
            },
        }

    async def _create_execution(self, workflow_id: str, run_id: str) -> str:
        async with self._session_maker() as session:
            result = await session.execute(select(Execution).where(Execution.run_id == run_id))
            execution = result.scalar_one_or_none()
            if execution is None:
                execution = Execution(workflow_id=workflow_id, run_id=run_id)
                session.add(execution)
                await session.commit()
                await session.refresh(execution)
            return execution.id

    async def _current_status(self, execution_id: str) -> ExecutionStatus:
        async with self._session_maker() as session:
            result = await session.execute(
                select(Execution.status).where(Execution.id == execution_id)
            )
            return result.scalar_one()

    async def _record_step(
        self,
        execution_id: str,
        node_id: str,
        node_type: NodeType,
        order: int,
        status: ExecutionStatus,
        node_input: dict[str, Any],
        output: dict[str, Any] | None,
        started_at: datetime,
        error: str | None = None,
        error_stack: str | None = None,
    ) -> str:
        async with self._session_maker() as session:
            result = await session.execute(
                select(ExecutionStep).where(
                    ExecutionStep.execution_id == execution_id,
                    ExecutionStep.node_id == node_id,
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                record = ExecutionStep(
                    execution_id=execution_id,
                    node_id=node_id,
                    node_type=node_type,
                    status=status,
                    order=order,
                    input=node_input,
                    output=output,
                    error=error,
                    error_stack=error_stack,
                    started_at=started_at,
                    completed_at=utc_now(),
                )
                session.add(record)
                await session.commit()
                await session.refresh(record)
            return record.id

    async def _finish(
        self,
        execution_id: str,
        output: dict[str, Any] | None = None,
        error: str | None = None,
        error_stack: str | None = None,
    ) -> str:
        """Move the execution to its terminal state.

        An execution that is already terminal (e.g. cancelled while its
        last node ran) is left untouched.
        """
        async with self._session_maker() as session:
            execution = await session.get(Execution, execution_id)
            if execution.is_terminal:
                return execution.status.value

            if error is None:
                execution.mark_success(output or {})
            else:
                execution.mark_failed(error, error_stack)
            await session.commit()
            return execution.status.value

    async def _read(self, execution_id: str) -> ExecutionRead:
        async with self._session_maker() as session:
            execution = await session.get(Execution, execution_id)
            return ExecutionRead.from_entity(execution)


async def fail_abandoned_run(session_maker: sessionmaker, run_id: str, error: str) -> bool:
    """Fail the execution of a run whose job gave up.

    Used once the queue stops retrying a run; an execution left RUNNING
    would otherwise never reach a terminal state.

    Returns:
        True if a RUNNING execution was marked FAILED
    """
    async with session_maker() as session:
        result = await session.execute(select(Execution).where(Execution.run_id == run_id))
        execution = result.scalar_one_or_none()
        if execution is None or execution.is_terminal:
            return False

        execution_id = execution.id
        execution.mark_failed(error)
        await session.commit()

    logger.warning("execution_abandoned", run_id=run_id, execution_id=execution_id)
    return True
