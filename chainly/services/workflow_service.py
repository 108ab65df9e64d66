"""Workflow service.

Handles creating workflows and saving/loading their node graphs.
"""

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chainly.models.node import (
    Connection,
    ConnectionRead,
    ConnectionSave,
    Node,
    NodeRead,
    NodeSave,
)
from chainly.models.workflow import Workflow, WorkflowCreate, WorkflowRead, utc_now

logger = structlog.get_logger()


class WorkflowServiceError(Exception):
    """Error in workflow service operations."""

    pass


class WorkflowNotFoundError(WorkflowServiceError):
    """Workflow not found."""

    pass


class WorkflowAccessDeniedError(WorkflowServiceError):
    """User doesn't have access to workflow."""

    pass


class WorkflowValidationError(WorkflowServiceError):
    """Saved graph is structurally invalid."""

    def __init__(self, message: str, errors: list[str]) -> None:
        super().__init__(message)
        self.errors = errors


class NodeIdConflictError(WorkflowServiceError):
    """Node ids in the graph already belong to another workflow."""

    def __init__(self, node_ids: list[str]) -> None:
        super().__init__(f"Node ids already used by another workflow: {', '.join(node_ids)}")
        self.node_ids = node_ids


async def load_graph(
    session: AsyncSession,
    workflow_id: str,
) -> tuple[list[Node], list[Connection]]:
    """Load a workflow's nodes (in declaration order) and connections."""
    nodes_result = await session.execute(
        select(Node).where(Node.workflow_id == workflow_id).order_by(Node.sort_order)
    )
    connections_result = await session.execute(
        select(Connection).where(Connection.workflow_id == workflow_id)
    )
    return list(nodes_result.scalars().all()), list(connections_result.scalars().all())


def validate_graph(nodes: list[NodeSave], connections: list[ConnectionSave]) -> list[str]:
    """Structural checks run on save.

    Returns:
        List of validation errors (empty if valid)
    """
    errors = []

    node_ids = [n.id for n in nodes]
    if len(node_ids) != len(set(node_ids)):
        errors.append("Duplicate node IDs detected")

    node_id_set = set(node_ids)
    for connection in connections:
        if connection.source not in node_id_set:
            errors.append(f"Connection references unknown source node: {connection.source}")
        if connection.target not in node_id_set:
            errors.append(f"Connection references unknown target node: {connection.target}")
        if connection.source == connection.target:
            errors.append(f"Self-loop detected on node: {connection.source}")

    return errors


class WorkflowService:
    """Service for managing workflows.

    Handles:
    - Creating workflows
    - Reading workflows with their graph
    - Replacing the graph on save
    - User-scoped access control

    Example usage:
        service = WorkflowService(session)

        workflow = await service.create("user-123", WorkflowCreate(name="Orders"))
        workflow = await service.save_graph(
            workflow.id,
            "user-123",
            nodes=[NodeSave(id="t1", type=NodeType.WEBHOOK_TRIGGER)],
            connections=[],
        )
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize workflow service.

        Args:
            session: Async database session
        """
        self._session = session

    async def create(
        self,
        user_id: str,
        data: WorkflowCreate,
    ) -> WorkflowRead:
        """Create a new, empty workflow."""
        workflow = Workflow(user_id=user_id, name=data.name)

        self._session.add(workflow)
        await self._session.commit()
        await self._session.refresh(workflow)

        logger.info("workflow_created", workflow_id=workflow.id, user_id=user_id)

        return await self._to_read(workflow)

    async def get(
        self,
        workflow_id: str,
        user_id: str,
    ) -> WorkflowRead:
        """Get a workflow with its graph.

        Raises:
            WorkflowNotFoundError: If workflow doesn't exist
            WorkflowAccessDeniedError: If user doesn't own workflow
        """
        workflow = await self.get_entity(workflow_id, user_id)
        return await self._to_read(workflow)

    async def save_graph(
        self,
        workflow_id: str,
        user_id: str,
        nodes: list[NodeSave],
        connections: list[ConnectionSave],
    ) -> WorkflowRead:
        """Replace the workflow's nodes and connections in one transaction.

        Raises:
            WorkflowNotFoundError: If workflow doesn't exist
            WorkflowAccessDeniedError: If user doesn't own workflow
            WorkflowValidationError: If the graph is structurally invalid
            NodeIdConflictError: If a node id is taken by another workflow
        """
        workflow = await self.get_entity(workflow_id, user_id)

        errors = validate_graph(nodes, connections)
        if errors:
            raise WorkflowValidationError("Invalid workflow graph", errors=errors)

        node_ids = [node.id for node in nodes]
        taken = await self._session.execute(
            select(Node.id).where(Node.id.in_(node_ids), Node.workflow_id != workflow_id)
        )
        conflicts = sorted(taken.scalars().all())
        if conflicts:
            raise NodeIdConflictError(conflicts)

        await self._session.execute(delete(Connection).where(Connection.workflow_id == workflow_id))
        await self._session.execute(delete(Node).where(Node.workflow_id == workflow_id))

        for index, node in enumerate(nodes):
            self._session.add(
                Node(
                    id=node.id,
                    workflow_id=workflow_id,
                    name=node.name,
                    type=node.type,
                    sort_order=index,
                    position=node.position,
                    data=node.data,
                )
            )
        for connection in connections:
            self._session.add(
                Connection(
                    workflow_id=workflow_id,
                    from_node_id=connection.source,
                    from_output=connection.sourceHandle,
                    to_node_id=connection.target,
                    to_input=connection.targetHandle,
                )
            )

        workflow.updated_at = utc_now()
        try:
            await self._session.commit()
        except IntegrityError as e:
            await self._session.rollback()
            raise NodeIdConflictError(node_ids) from e
        await self._session.refresh(workflow)

        logger.info(
            "workflow_graph_saved",
            workflow_id=workflow_id,
            user_id=user_id,
            node_count=len(nodes),
            connection_count=len(connections),
        )

        return await self._to_read(workflow)

    async def get_entity(
        self,
        workflow_id: str,
        user_id: str,
    ) -> Workflow:
        """Get workflow and verify ownership.

        Raises:
            WorkflowNotFoundError: If not found
            WorkflowAccessDeniedError: If wrong owner
        """
        query = select(Workflow).where(Workflow.id == workflow_id)
        result = await self._session.execute(query)
        workflow = result.scalar_one_or_none()

        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found")

        if workflow.user_id != user_id:
            logger.warning(
                "workflow_access_denied",
                workflow_id=workflow_id,
                requested_by=user_id,
            )
            raise WorkflowAccessDeniedError("Access denied to workflow")

        return workflow

    async def _to_read(self, workflow: Workflow) -> WorkflowRead:
        """Convert workflow entity (plus its graph) to read schema."""
        nodes, connections = await load_graph(self._session, workflow.id)
        return WorkflowRead(
            id=workflow.id,
            user_id=workflow.user_id,
            name=workflow.name,
            created_at=workflow.created_at,
            updated_at=workflow.updated_at,
            nodes=[
                NodeRead(id=n.id, type=n.type, name=n.name, position=n.position, data=n.data)
                for n in nodes
            ],
            connections=[ConnectionRead.from_entity(c) for c in connections],
        )
