"""Durable, idempotent workflow steps.

Every unit of work inside a run (a status publish, a node's API call, a
database write) is a step with a deterministic key. A step's result is
committed to the step log once it succeeds; when the queue retries the
whole run, committed steps return their stored result instead of running
again, so side effects are at-least-once per step and never repeated after
commit.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from chainly.models.execution import StepRecord, StepStatus, as_utc

logger = structlog.get_logger()

T = TypeVar("T")


class NonRetriableStepError(Exception):
    """Step failure that retrying cannot fix (bad configuration, invalid input)."""

    pass


class DuplicateStepKeyError(Exception):
    """The same step key was used twice within one run invocation."""

    pass


class StepRunner(Protocol):
    """Capability handed to executors for running durable steps."""

    async def run(self, step_key: str, fn: Callable[[], Awaitable[T]]) -> T: ...

    async def sleep(self, step_key: str, seconds: float) -> None: ...


def step_key(purpose: str, node_id: str) -> str:
    """Build a deterministic step key, e.g. ``publish-loading-<node_id>``."""
    return f"{purpose}-{node_id}"


def to_json_value(value: Any) -> Any:
    """Normalize a step result to what the step log stores and replays."""
    return json.loads(json.dumps(value, default=str))


class DurableStepRunner:
    """Step runner backed by the StepRecord table.

    Each step is attempted up to ``max_attempts`` times with exponential
    backoff. NonRetriableStepError is raised on the first occurrence.
    Results must be JSON-serializable; the normalized value is returned on
    first execution and on replay alike.

    Example usage:
        steps = DurableStepRunner(session_maker, run_id="run-123")
        response = await steps.run("http-request-node1", call_api)
    """

    def __init__(
        self,
        session_maker: sessionmaker,
        run_id: str,
        max_attempts: int = 4,
        retry_delay: float = 0.5,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session_maker = session_maker
        self.run_id = run_id
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._used_keys: set[str] = set()

    def _claim(self, key: str) -> None:
        if key in self._used_keys:
            raise DuplicateStepKeyError(f"Step key '{key}' used twice in run '{self.run_id}'")
        self._used_keys.add(key)

    async def _load(self, session: AsyncSession, key: str) -> StepRecord | None:
        query = select(StepRecord).where(
            StepRecord.run_id == self.run_id,
            StepRecord.step_key == key,
        )
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def run(self, step_key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` as a durable step, or replay its committed result."""
        self._claim(step_key)

        async with self._session_maker() as session:
            record = await self._load(session, step_key)
            if record is not None and record.status == StepStatus.COMPLETED:
                logger.debug("step_replayed", run_id=self.run_id, step_key=step_key)
                return record.result

        attempt = 1
        while True:
            try:
                result = await fn()
                break
            except NonRetriableStepError:
                raise
            except Exception as e:
                if attempt >= self._max_attempts:
                    logger.warning(
                        "step_failed",
                        run_id=self.run_id,
                        step_key=step_key,
                        attempts=attempt,
                        error_type=type(e).__name__,
                    )
                    raise
                delay = self._retry_delay * (2 ** (attempt - 1))
                logger.info(
                    "step_retrying",
                    run_id=self.run_id,
                    step_key=step_key,
                    attempt=attempt,
                    delay=delay,
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(delay)
                attempt += 1

        value = to_json_value(result)
        return await self._commit(step_key, value, attempt)

    async def _commit(self, key: str, value: Any, attempts: int) -> Any:
        async with self._session_maker() as session:
            session.add(
                StepRecord(
                    run_id=self.run_id,
                    step_key=key,
                    status=StepStatus.COMPLETED,
                    result=value,
                    attempts=attempts,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent attempt of the same run committed first; its result wins
                await session.rollback()
                existing = await self._load(session, key)
                if existing is None:
                    raise
                logger.info("step_commit_conflict", run_id=self.run_id, step_key=key)
                return existing.result

        logger.debug("step_committed", run_id=self.run_id, step_key=key, attempts=attempts)
        return value

    async def sleep(self, step_key: str, seconds: float) -> None:
        """Pause the run durably.

        The wake-up time is recorded on first entry, so a retried run only
        waits for whatever is left.
        """
        self._claim(step_key)
        now = datetime.now(timezone.utc)

        async with self._session_maker() as session:
            record = await self._load(session, step_key)
            if record is not None and record.status == StepStatus.COMPLETED:
                return

            if record is None:
                record = StepRecord(
                    run_id=self.run_id,
                    step_key=step_key,
                    status=StepStatus.SLEEPING,
                    wake_at=now + timedelta(seconds=max(0.0, seconds)),
                )
                session.add(record)
                await session.commit()
                await session.refresh(record)

            wake_at = as_utc(record.wake_at) if record.wake_at else now
            remaining = (wake_at - now).total_seconds()
            if remaining > 0:
                logger.debug(
                    "step_sleeping",
                    run_id=self.run_id,
                    step_key=step_key,
                    seconds=remaining,
                )
                await asyncio.sleep(remaining)

            record.status = StepStatus.COMPLETED
            await session.commit()
