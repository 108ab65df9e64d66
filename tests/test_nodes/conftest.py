"""Fixtures for node executor tests."""

from typing import Any

import pytest

from chainly.models.node import NodeType
from chainly.nodes.base import NodeExecutorParams


class InlineStepRunner:
    """Runs steps directly, remembering their keys."""

    def __init__(self) -> None:
        self.keys: list[str] = []
        self.sleeps: list[tuple[str, float]] = []

    async def run(self, key, fn):
        self.keys.append(key)
        return await fn()

    async def sleep(self, key, seconds):
        self.keys.append(key)
        self.sleeps.append((key, seconds))


class StaticCredentials:
    def __init__(self, secret: str = "sk-test", access_token: str = "ya29.token") -> None:
        self.secret = secret
        self.access_token = access_token
        self.requested: list[tuple[str, str]] = []

    async def get_secret(self, credential_id: str, user_id: str) -> str:
        self.requested.append((credential_id, user_id))
        return self.secret

    async def get_access_token(self, credential_id: str, user_id: str) -> str:
        self.requested.append((credential_id, user_id))
        return self.access_token


@pytest.fixture
def step_runner() -> InlineStepRunner:
    return InlineStepRunner()


@pytest.fixture
def credentials() -> StaticCredentials:
    return StaticCredentials()


@pytest.fixture
def make_params(step_runner, publisher, credentials):
    def _make(
        node_type: NodeType,
        data: dict[str, Any],
        context: dict[str, Any] | None = None,
        node_id: str = "node-1",
        with_credentials: bool = True,
    ) -> NodeExecutorParams:
        return NodeExecutorParams(
            node_id=node_id,
            node_type=node_type,
            data=data,
            context=context or {},
            step=step_runner,
            publish=publisher.publish,
            workflow_id="wf-1",
            execution_id="exec-1",
            user_id="user-1" if with_credentials else None,
            credentials=credentials if with_credentials else None,
        )

    return _make
