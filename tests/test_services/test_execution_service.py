"""Tests for the execution service."""

import pytest
from kombu.exceptions import OperationalError

from chainly.celery_app import EXECUTE_WORKFLOW_TASK
from chainly.core.graph import CyclicGraphError, NoTriggerError
from chainly.models.execution import CANCELLED_MESSAGE, Execution, ExecutionStatus
from chainly.models.node import NodeType
from chainly.services.execution_service import (
    CeleryWorkflowQueue,
    ExecutionAccessDeniedError,
    ExecutionNotCancellableError,
    ExecutionNotFoundError,
    ExecutionService,
    ExecutionServiceError,
    QueueUnavailableError,
)
from chainly.services.workflow_service import WorkflowAccessDeniedError


async def add_execution(db_session, workflow_id: str, run_id: str, **fields) -> Execution:
    execution = Execution(workflow_id=workflow_id, run_id=run_id, **fields)
    db_session.add(execution)
    await db_session.commit()
    await db_session.refresh(execution)
    return execution


class TestExecute:
    @pytest.mark.asyncio
    async def test_valid_workflow_is_enqueued(self, db_session, make_workflow, queue, test_user):
        workflow = await make_workflow(
            [("ex-t", NodeType.MANUAL_TRIGGER, {}), ("ex-a", NodeType.SET, {})],
            [("ex-t", "ex-a")],
        )

        run_id = await ExecutionService(db_session, queue).execute(
            workflow.id, test_user.id, initial_context={"manual": True}
        )

        assert queue.runs == [
            {
                "run_id": run_id,
                "workflow_id": workflow.id,
                "trigger_node_id": None,
                "initial_context": {"manual": True},
            }
        ]

    @pytest.mark.asyncio
    async def test_invalid_graph_is_rejected_before_enqueue(
        self, db_session, make_workflow, queue, test_user
    ):
        workflow = await make_workflow(
            [
                ("cy-t", NodeType.MANUAL_TRIGGER, {}),
                ("cy-a", NodeType.SET, {}),
                ("cy-b", NodeType.SET, {}),
            ],
            [("cy-t", "cy-a"), ("cy-a", "cy-b"), ("cy-b", "cy-a")],
        )

        with pytest.raises(CyclicGraphError):
            await ExecutionService(db_session, queue).execute(workflow.id, test_user.id)

        assert queue.runs == []

    @pytest.mark.asyncio
    async def test_workflow_without_trigger(self, db_session, make_workflow, queue, test_user):
        workflow = await make_workflow([("nt-a", NodeType.SET, {})])

        with pytest.raises(NoTriggerError):
            await ExecutionService(db_session, queue).execute(workflow.id, test_user.id)

    @pytest.mark.asyncio
    async def test_foreign_workflow(self, db_session, make_workflow, queue):
        workflow = await make_workflow([("fw-t", NodeType.MANUAL_TRIGGER, {})])

        with pytest.raises(WorkflowAccessDeniedError):
            await ExecutionService(db_session, queue).execute(workflow.id, "intruder")

    @pytest.mark.asyncio
    async def test_no_queue(self, db_session, make_workflow, test_user):
        workflow = await make_workflow([("nq-t", NodeType.MANUAL_TRIGGER, {})])

        with pytest.raises(ExecutionServiceError, match="queue is not available"):
            await ExecutionService(db_session).execute(workflow.id, test_user.id)

    @pytest.mark.asyncio
    async def test_enqueue_trigger_skips_validation(self, db_session, make_workflow, queue):
        workflow = await make_workflow([("et-a", NodeType.SET, {})])

        await ExecutionService(db_session, queue).enqueue_trigger(workflow.id, "et-a", {"x": 1})

        assert queue.runs[0]["trigger_node_id"] == "et-a"
        assert queue.runs[0]["initial_context"] == {"x": 1}


class TestExecutionLifecycle:
    @pytest.mark.asyncio
    async def test_cancel_running_execution(self, db_session, make_workflow, test_user):
        workflow = await make_workflow([("cx-t", NodeType.MANUAL_TRIGGER, {})])
        execution = await add_execution(db_session, workflow.id, "run-cancel")
        service = ExecutionService(db_session)

        cancelled = await service.cancel(execution.id, test_user.id)

        assert cancelled.status == ExecutionStatus.FAILED
        assert cancelled.error == CANCELLED_MESSAGE
        assert cancelled.completed_at is not None

        with pytest.raises(ExecutionNotCancellableError):
            await service.cancel(execution.id, test_user.id)

    @pytest.mark.asyncio
    async def test_finished_execution_cannot_be_cancelled(self, db_session, make_workflow, test_user):
        workflow = await make_workflow([("fx-t", NodeType.MANUAL_TRIGGER, {})])
        execution = await add_execution(
            db_session, workflow.id, "run-done", status=ExecutionStatus.SUCCESS
        )

        with pytest.raises(ExecutionNotCancellableError, match="SUCCESS"):
            await ExecutionService(db_session).cancel(execution.id, test_user.id)

    @pytest.mark.asyncio
    async def test_list_filters(self, db_session, make_workflow, test_user):
        workflow = await make_workflow([("lf-t", NodeType.MANUAL_TRIGGER, {})])
        await add_execution(db_session, workflow.id, "run-a")
        await add_execution(db_session, workflow.id, "run-b", status=ExecutionStatus.FAILED)
        service = ExecutionService(db_session)

        everything = await service.list_all(test_user.id)
        failed = await service.list_all(test_user.id, status=ExecutionStatus.FAILED)

        assert {e.run_id for e in everything} == {"run-a", "run-b"}
        assert [e.run_id for e in failed] == ["run-b"]
        assert await service.list_all("intruder") == []

    @pytest.mark.asyncio
    async def test_access_control(self, db_session, make_workflow, test_user):
        workflow = await make_workflow([("ac-t", NodeType.MANUAL_TRIGGER, {})])
        execution = await add_execution(db_session, workflow.id, "run-private")
        service = ExecutionService(db_session)

        with pytest.raises(ExecutionAccessDeniedError):
            await service.get(execution.id, "intruder")
        with pytest.raises(ExecutionNotFoundError):
            await service.list_steps("missing", test_user.id)


class RecordingCelery:
    def __init__(self):
        self.sent = []

    def send_task(self, name, kwargs=None, task_id=None):
        self.sent.append((name, kwargs, task_id))


class UnreachableCelery:
    def send_task(self, name, kwargs=None, task_id=None):
        raise OperationalError("Error 111 connecting to localhost:6379. Connection refused.")


class TestCeleryWorkflowQueue:
    @pytest.mark.asyncio
    async def test_sends_run_with_run_id_as_task_id(self):
        app = RecordingCelery()

        run_id = await CeleryWorkflowQueue(app).enqueue_run(
            "run-42", "wf-1", trigger_node_id="t-1", initial_context={"manual": True}
        )

        assert run_id == "run-42"
        assert app.sent == [
            (
                EXECUTE_WORKFLOW_TASK,
                {
                    "workflow_id": "wf-1",
                    "run_id": "run-42",
                    "trigger_node_id": "t-1",
                    "initial_context": {"manual": True},
                },
                "run-42",
            )
        ]

    @pytest.mark.asyncio
    async def test_broker_outage_raises_queue_unavailable(self):
        with pytest.raises(QueueUnavailableError, match="Job broker unavailable"):
            await CeleryWorkflowQueue(UnreachableCelery()).enqueue_run("run-43", "wf-1")

    @pytest.mark.asyncio
    async def test_execute_reports_broker_outage(self, db_session, make_workflow, test_user):
        workflow = await make_workflow([("t", NodeType.MANUAL_TRIGGER, {})])
        service = ExecutionService(db_session, CeleryWorkflowQueue(UnreachableCelery()))

        with pytest.raises(ExecutionServiceError):
            await service.execute(workflow.id, test_user.id)
