"""Execution API endpoints.

Reading executions and their steps, cancellation, and live node status
over SSE.
"""

import json
from typing import Annotated

import structlog
from fastapi import APIRouter, HTTPException, Query, Request, status
from sse_starlette.sse import EventSourceResponse

from chainly.api.deps import CurrentUser, ExecutionServiceDep, StatusPublisherDep, WorkflowServiceDep
from chainly.models.execution import ExecutionRead, ExecutionStatus, ExecutionStepRead
from chainly.services.execution_service import (
    ExecutionAccessDeniedError,
    ExecutionNotCancellableError,
    ExecutionNotFoundError,
)
from chainly.services.workflow_service import WorkflowAccessDeniedError, WorkflowNotFoundError

logger = structlog.get_logger()

router = APIRouter()


@router.get("", response_model=list[ExecutionRead])
async def list_executions(
    user: CurrentUser,
    service: ExecutionServiceDep,
    workflow_id: Annotated[str | None, Query()] = None,
    status_filter: Annotated[ExecutionStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[ExecutionRead]:
    """List user's executions, newest first."""
    return await service.list_all(
        user_id=user.id,
        workflow_id=workflow_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )


@router.get("/realtime/{workflow_id}")
async def stream_node_status(
    workflow_id: str,
    request: Request,
    user: CurrentUser,
    workflows: WorkflowServiceDep,
    publisher: StatusPublisherDep,
) -> EventSourceResponse:
    """Stream node status events of a workflow via SSE.

    Each event carries ``channel``, ``topic`` ("status"), ``node_id`` and
    ``status`` (loading, success or error). Events published while nobody
    is connected are not replayed.
    """
    try:
        await workflows.get_entity(workflow_id, user.id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except WorkflowAccessDeniedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e

    async def event_generator():
        async with publisher.subscribe(workflow_id) as events:
            async for event in events:
                if await request.is_disconnected():
                    break
                yield {"event": event.channel, "data": json.dumps(event.to_dict())}

    logger.info("status_stream_opened", workflow_id=workflow_id, user_id=user.id)
    return EventSourceResponse(event_generator())


@router.get("/{execution_id}", response_model=ExecutionRead)
async def get_execution(
    execution_id: str,
    user: CurrentUser,
    service: ExecutionServiceDep,
) -> ExecutionRead:
    try:
        return await service.get(execution_id=execution_id, user_id=user.id)
    except ExecutionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e
    except ExecutionAccessDeniedError as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(e),
        ) from e


@router.get("/{execution_id}/steps", response_model=list[ExecutionStepRead])
async def list_execution_steps(
    execution_id: str,
    user: CurrentUser,
    service: ExecutionServiceDep,
) -> list[ExecutionStepRead]:
    """List the node steps recorded for an execution, in execution order."""
    try:
        return await service.list_steps(execution_id=execution_id, user_id=user.id)
    except ExecutionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e
    except ExecutionAccessDeniedError as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(e),
        ) from e


@router.post("/{execution_id}/cancel", response_model=ExecutionRead)
async def cancel_execution(
    execution_id: str,
    user: CurrentUser,
    service: ExecutionServiceDep,
) -> ExecutionRead:
    """Cancel a running execution.

    The run stops before its next node; a node already executing finishes.
    """
    try:
        return await service.cancel(execution_id=execution_id, user_id=user.id)
    except ExecutionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e
    except ExecutionAccessDeniedError as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(e),
        ) from e
    except ExecutionNotCancellableError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e
