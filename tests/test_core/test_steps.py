"""Tests for the durable step runner."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from chainly.core.steps import (
    DuplicateStepKeyError,
    DurableStepRunner,
    NonRetriableStepError,
    step_key,
)
from chainly.models.execution import StepRecord, StepStatus


def make_runner(session_maker, run_id: str = "run-1", **kwargs) -> DurableStepRunner:
    return DurableStepRunner(session_maker, run_id, retry_delay=0, **kwargs)


class Counter:
    def __init__(self, failures: int = 0, error: type[Exception] = RuntimeError) -> None:
        self.calls = 0
        self.failures = failures
        self.error = error

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"failure {self.calls}")
        return {"calls": self.calls}


def test_step_key_format():
    assert step_key("publish-loading", "node-1") == "publish-loading-node-1"


class TestDurableStepRunner:
    @pytest.mark.asyncio
    async def test_result_is_committed(self, session_maker):
        runner = make_runner(session_maker)

        assert await runner.run("fetch", Counter()) == {"calls": 1}

        async with session_maker() as session:
            record = (await session.execute(select(StepRecord))).scalar_one()
        assert record.step_key == "fetch"
        assert record.status == StepStatus.COMPLETED
        assert record.result == {"calls": 1}

    @pytest.mark.asyncio
    async def test_committed_step_is_replayed_on_retry(self, session_maker):
        """A retried run (new runner, same run id) does not repeat the work."""
        fn = Counter()
        await make_runner(session_maker).run("fetch", fn)

        result = await make_runner(session_maker).run("fetch", fn)

        assert result == {"calls": 1}
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_other_runs_do_not_share_results(self, session_maker):
        fn = Counter()
        await make_runner(session_maker, "run-1").run("fetch", fn)

        assert await make_runner(session_maker, "run-2").run("fetch", fn) == {"calls": 2}

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, session_maker):
        fn = Counter(failures=2)

        result = await make_runner(session_maker, max_attempts=3).run("fetch", fn)

        assert result == {"calls": 3}
        async with session_maker() as session:
            record = (await session.execute(select(StepRecord))).scalar_one()
        assert record.attempts == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, session_maker):
        fn = Counter(failures=10)

        with pytest.raises(RuntimeError, match="failure 2"):
            await make_runner(session_maker, max_attempts=2).run("fetch", fn)

        assert fn.calls == 2
        async with session_maker() as session:
            assert (await session.execute(select(StepRecord))).first() is None

    @pytest.mark.asyncio
    async def test_non_retriable_error_is_raised_immediately(self, session_maker):
        fn = Counter(failures=1, error=NonRetriableStepError)

        with pytest.raises(NonRetriableStepError):
            await make_runner(session_maker, max_attempts=5).run("fetch", fn)

        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_duplicate_key_in_one_invocation(self, session_maker):
        runner = make_runner(session_maker)
        await runner.run("fetch", Counter())

        with pytest.raises(DuplicateStepKeyError):
            await runner.run("fetch", Counter())

    @pytest.mark.asyncio
    async def test_results_are_json_normalized(self, session_maker):
        moment = datetime(2024, 1, 2, tzinfo=timezone.utc)

        async def fn():
            return {"at": moment, "items": (1, 2)}

        result = await make_runner(session_maker).run("fetch", fn)

        assert result == {"at": str(moment), "items": [1, 2]}

    @pytest.mark.asyncio
    async def test_sleep_records_wake_time(self, session_maker):
        await make_runner(session_maker).sleep("wait-node", 0)

        async with session_maker() as session:
            record = (await session.execute(select(StepRecord))).scalar_one()
        assert record.status == StepStatus.COMPLETED
        assert record.wake_at is not None

    @pytest.mark.asyncio
    async def test_retried_sleep_does_not_wait_again(self, session_maker, monkeypatch):
        """A sleep whose wake time has passed completes without sleeping."""
        async with session_maker() as session:
            session.add(
                StepRecord(
                    run_id="run-1",
                    step_key="wait-node",
                    status=StepStatus.SLEEPING,
                    wake_at=datetime.now(timezone.utc) - timedelta(minutes=5),
                )
            )
            await session.commit()

        slept = []

        async def fake_sleep(seconds):
            slept.append(seconds)

        monkeypatch.setattr("chainly.core.steps.asyncio.sleep", fake_sleep)

        await make_runner(session_maker).sleep("wait-node", 3600)

        assert slept == []
