"""Workflow API endpoints.

Creating workflows, saving their graphs and starting manual runs.
"""

import structlog
from fastapi import APIRouter, HTTPException, status

from chainly.api.deps import CurrentUser, ExecutionServiceDep, WorkflowServiceDep
from chainly.core.graph import GraphValidationError
from chainly.models.workflow import WorkflowCreate, WorkflowGraphSave, WorkflowRead
from chainly.services.execution_service import ExecutionServiceError
from chainly.services.workflow_service import (
    NodeIdConflictError,
    WorkflowAccessDeniedError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)

logger = structlog.get_logger()

router = APIRouter()


@router.post("", response_model=WorkflowRead, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    user: CurrentUser,
    service: WorkflowServiceDep,
    data: WorkflowCreate,
) -> WorkflowRead:
    """Create a new, empty workflow."""
    return await service.create(user_id=user.id, data=data)


@router.get("/{workflow_id}", response_model=WorkflowRead)
async def get_workflow(
    workflow_id: str,
    user: CurrentUser,
    service: WorkflowServiceDep,
) -> WorkflowRead:
    """Get a workflow with its nodes and connections."""
    try:
        return await service.get(workflow_id=workflow_id, user_id=user.id)
    except WorkflowNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e
    except WorkflowAccessDeniedError as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(e),
        ) from e


@router.put("/{workflow_id}/graph", response_model=WorkflowRead)
async def save_workflow_graph(
    workflow_id: str,
    user: CurrentUser,
    service: WorkflowServiceDep,
    data: WorkflowGraphSave,
) -> WorkflowRead:
    """Replace the workflow's nodes and connections.

    Args:
        workflow_id: Workflow identifier
        user: Current authenticated user
        service: Workflow service
        data: Complete graph; anything not listed is removed

    Returns:
        Saved workflow
    """
    try:
        return await service.save_graph(
            workflow_id=workflow_id,
            user_id=user.id,
            nodes=data.nodes,
            connections=data.connections,
        )
    except WorkflowNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e
    except WorkflowAccessDeniedError as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(e),
        ) from e
    except WorkflowValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "errors": e.errors},
        ) from e
    except NodeIdConflictError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(e), "nodeIds": e.node_ids},
        ) from e


@router.post("/{workflow_id}/execute", status_code=status.HTTP_202_ACCEPTED)
async def execute_workflow(
    workflow_id: str,
    user: CurrentUser,
    service: ExecutionServiceDep,
) -> dict[str, str]:
    """Validate the workflow and enqueue a run.

    Validation errors (cycle, missing trigger, disconnected graph) are
    returned verbatim with status 400 and nothing is enqueued.
    """
    try:
        run_id = await service.execute(workflow_id=workflow_id, user_id=user.id)
    except WorkflowNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e
    except WorkflowAccessDeniedError as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(e),
        ) from e
    except GraphValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e
    except ExecutionServiceError as e:
        logger.error("workflow_enqueue_failed", workflow_id=workflow_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        ) from e

    return {"runId": run_id, "workflowId": workflow_id}
