"""Celery tasks.

Runs queued workflow runs and checks schedule triggers every minute.
Each task drives the async orchestrator inside its own event loop, so
database engines and Redis clients are created per task.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any

import structlog
from celery import Task
from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from chainly.celery_app import CHECK_SCHEDULES_TASK, EXECUTE_WORKFLOW_TASK, celery_app
from chainly.config import settings
from chainly.core.encryption import CredentialEncryption
from chainly.core.orchestrator import WorkflowOrchestrator, fail_abandoned_run
from chainly.core.realtime import RedisStatusPublisher
from chainly.models.node import Node, NodeType
from chainly.nodes.registry import get_executor_registry
from chainly.services.credential_access import SessionCredentialProvider
from chainly.services.execution_service import CeleryWorkflowQueue, WorkflowQueue, new_run_id
from chainly.services.schedule import STATEFUL_MODES, should_trigger

logger = structlog.get_logger()


def create_session_maker() -> tuple[AsyncEngine, sessionmaker]:
    """Create an engine bound to the current event loop."""
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    return engine, sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def run_workflow(
    workflow_id: str,
    run_id: str,
    trigger_node_id: str | None = None,
    initial_context: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    engine, session_maker = create_session_maker()
    redis = Redis.from_url(settings.redis_url)
    try:
        orchestrator = WorkflowOrchestrator(
            session_maker,
            registry=get_executor_registry(),
            publisher=RedisStatusPublisher(redis),
            credentials=SessionCredentialProvider(
                session_maker,
                CredentialEncryption(settings.encryption_key.get_secret_value()),
            ),
        )
        execution = await orchestrator.run(
            workflow_id,
            run_id,
            trigger_node_id=trigger_node_id,
            initial_context=initial_context,
            enqueued=True,
        )
    finally:
        await redis.aclose()
        await engine.dispose()

    if execution is None:
        return None
    return {"execution_id": execution.id, "status": execution.status.value}


async def abandon_run(run_id: str, error: str) -> bool:
    engine, session_maker = create_session_maker()
    try:
        return await fail_abandoned_run(session_maker, run_id, error)
    finally:
        await engine.dispose()


class WorkflowRunTask(Task):
    """Fails the run's execution once Celery stops retrying it."""

    def on_failure(self, exc, task_id, args, kwargs, einfo) -> None:
        run_id = kwargs.get("run_id", task_id)
        logger.error(
            "workflow_job_failed",
            run_id=run_id,
            workflow_id=kwargs.get("workflow_id"),
            error_type=type(exc).__name__,
        )
        asyncio.run(abandon_run(run_id, f"Execution aborted after repeated failures: {exc}"))


@celery_app.task(
    name=EXECUTE_WORKFLOW_TASK,
    bind=True,
    base=WorkflowRunTask,
    acks_late=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    max_retries=settings.job_max_tries - 1,
)
def execute_workflow(
    self,
    workflow_id: str,
    run_id: str,
    trigger_node_id: str | None = None,
    initial_context: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    """Run one queued workflow run.

    Exceptions escaping here (e.g. database outages) make Celery retry the
    task; the step log keeps the retry from redoing committed steps.
    """
    log = logger.bind(workflow_id=workflow_id, run_id=run_id, retries=self.request.retries)
    log.info("workflow_job_started")

    result = asyncio.run(run_workflow(workflow_id, run_id, trigger_node_id, initial_context))

    if result is None:
        log.warning("workflow_job_skipped")
    else:
        log.info("workflow_job_finished", **result)
    return result


async def check_schedules(
    session_maker: sessionmaker,
    queue: WorkflowQueue,
    now: datetime | None = None,
) -> int:
    """Enqueue runs for every schedule trigger that is due.

    Returns:
        Number of runs enqueued
    """
    now = now or datetime.now(timezone.utc)
    triggered = 0

    async with session_maker() as session:
        result = await session.execute(select(Node).where(Node.type == NodeType.SCHEDULE_TRIGGER))
        for node in result.scalars().all():
            data = dict(node.data or {})
            if not should_trigger(data, now):
                continue

            await queue.enqueue_run(
                new_run_id(),
                node.workflow_id,
                trigger_node_id=node.id,
                initial_context={
                    "schedule": {
                        "nodeId": node.id,
                        "mode": data.get("scheduleMode"),
                        "triggeredAt": now.isoformat(),
                    }
                },
            )
            triggered += 1

            if data.get("scheduleMode") in STATEFUL_MODES:
                node.data = {**data, "lastExecution": now.isoformat()}

        await session.commit()

    if triggered:
        logger.info("schedules_triggered", count=triggered)
    return triggered


async def _check_schedules_once() -> int:
    engine, session_maker = create_session_maker()
    try:
        return await check_schedules(session_maker, CeleryWorkflowQueue(celery_app))
    finally:
        await engine.dispose()


@celery_app.task(name=CHECK_SCHEDULES_TASK)
def check_schedules_task() -> int:
    return asyncio.run(_check_schedules_once())
