"""Tests for the workflow service."""

import pytest

from chainly.models.node import ConnectionSave, NodeSave, NodeType
from chainly.models.workflow import WorkflowCreate
from chainly.services.workflow_service import (
    NodeIdConflictError,
    WorkflowAccessDeniedError,
    WorkflowNotFoundError,
    WorkflowService,
    WorkflowValidationError,
    validate_graph,
)


def nodes(*specs: tuple[str, NodeType]) -> list[NodeSave]:
    return [NodeSave(id=node_id, type=node_type) for node_id, node_type in specs]


class TestValidateGraph:
    def test_valid_graph(self):
        assert validate_graph(
            nodes(("t", NodeType.MANUAL_TRIGGER), ("a", NodeType.SET)),
            [ConnectionSave(source="t", target="a")],
        ) == []

    def test_reports_every_problem(self):
        errors = validate_graph(
            nodes(("a", NodeType.SET), ("a", NodeType.SET)),
            [ConnectionSave(source="a", target="a"), ConnectionSave(source="ghost", target="a")],
        )

        assert errors == [
            "Duplicate node IDs detected",
            "Self-loop detected on node: a",
            "Connection references unknown source node: ghost",
        ]


class TestWorkflowService:
    @pytest.mark.asyncio
    async def test_create_and_get(self, db_session, test_user):
        service = WorkflowService(db_session)

        created = await service.create(test_user.id, WorkflowCreate(name="Orders"))
        fetched = await service.get(created.id, test_user.id)

        assert fetched.name == "Orders"
        assert fetched.nodes == []
        assert fetched.connections == []

    @pytest.mark.asyncio
    async def test_save_graph_replaces_everything(self, db_session, test_user):
        service = WorkflowService(db_session)
        workflow = await service.create(test_user.id, WorkflowCreate(name="Orders"))

        await service.save_graph(
            workflow.id,
            test_user.id,
            nodes(("wf-t", NodeType.MANUAL_TRIGGER), ("wf-a", NodeType.SET)),
            [ConnectionSave(source="wf-t", target="wf-a")],
        )
        saved = await service.save_graph(
            workflow.id,
            test_user.id,
            nodes(("wf-t", NodeType.WEBHOOK_TRIGGER), ("wf-b", NodeType.HTTP_REQUEST)),
            [ConnectionSave(source="wf-t", target="wf-b")],
        )

        assert [(n.id, n.type) for n in saved.nodes] == [
            ("wf-t", NodeType.WEBHOOK_TRIGGER),
            ("wf-b", NodeType.HTTP_REQUEST),
        ]
        assert [(c.source, c.target) for c in saved.connections] == [("wf-t", "wf-b")]

    @pytest.mark.asyncio
    async def test_invalid_graph_is_not_saved(self, db_session, test_user):
        service = WorkflowService(db_session)
        workflow = await service.create(test_user.id, WorkflowCreate(name="Orders"))

        with pytest.raises(WorkflowValidationError) as exc_info:
            await service.save_graph(
                workflow.id,
                test_user.id,
                nodes(("solo", NodeType.SET)),
                [ConnectionSave(source="solo", target="solo")],
            )

        assert exc_info.value.errors == ["Self-loop detected on node: solo"]
        assert (await service.get(workflow.id, test_user.id)).nodes == []

    @pytest.mark.asyncio
    async def test_node_id_owned_by_another_workflow(self, db_session, test_user):
        service = WorkflowService(db_session)
        first = await service.create(test_user.id, WorkflowCreate(name="Orders"))
        second = await service.create(test_user.id, WorkflowCreate(name="Refunds"))
        await service.save_graph(
            first.id,
            test_user.id,
            nodes(("shared-t", NodeType.MANUAL_TRIGGER), ("shared-a", NodeType.SET)),
            [ConnectionSave(source="shared-t", target="shared-a")],
        )

        with pytest.raises(NodeIdConflictError) as exc_info:
            await service.save_graph(
                second.id,
                test_user.id,
                nodes(("shared-a", NodeType.MANUAL_TRIGGER), ("own-b", NodeType.SET)),
                [ConnectionSave(source="shared-a", target="own-b")],
            )

        assert exc_info.value.node_ids == ["shared-a"]
        assert (await service.get(second.id, test_user.id)).nodes == []
        assert [n.id for n in (await service.get(first.id, test_user.id)).nodes] == [
            "shared-t",
            "shared-a",
        ]

    @pytest.mark.asyncio
    async def test_resaving_own_node_ids_is_not_a_conflict(self, db_session, test_user):
        service = WorkflowService(db_session)
        workflow = await service.create(test_user.id, WorkflowCreate(name="Orders"))
        graph_nodes = nodes(("keep-t", NodeType.MANUAL_TRIGGER))

        await service.save_graph(workflow.id, test_user.id, graph_nodes, [])
        saved = await service.save_graph(workflow.id, test_user.id, graph_nodes, [])

        assert [n.id for n in saved.nodes] == ["keep-t"]

    @pytest.mark.asyncio
    async def test_access_control(self, db_session, test_user):
        service = WorkflowService(db_session)
        workflow = await service.create(test_user.id, WorkflowCreate(name="Orders"))

        with pytest.raises(WorkflowAccessDeniedError):
            await service.get(workflow.id, "intruder")
        with pytest.raises(WorkflowNotFoundError):
            await service.get("missing", test_user.id)
