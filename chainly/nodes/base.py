"""Base node executor interface.

Defines the abstract base class for all workflow node executors and the
uniform status contract every executor follows: publish ``loading``, do the
work inside a durable step, then publish ``success`` or ``error``.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

import structlog

from chainly.core.realtime import NodeStatus, NodeStatusEvent
from chainly.core.steps import NonRetriableStepError, StepRunner, step_key
from chainly.models.node import NodeType

logger = structlog.get_logger()

InputT = TypeVar("InputT")

WorkflowContext = dict[str, Any]
PublishFn = Callable[[NodeStatusEvent], Awaitable[None]]


class NodeExecutionError(Exception):
    """Error during node execution."""

    def __init__(
        self,
        message: str,
        node_id: str,
        node_type: NodeType | str,
        error_code: str = "EXECUTION_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.node_type = node_type
        self.error_code = error_code
        self.details = details or {}


class NodeValidationError(NonRetriableStepError):
    """Error validating node configuration.

    Never retried: the same configuration fails the same way.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class CredentialProvider(Protocol):
    """Per-user access to decrypted credentials during a run."""

    async def get_secret(self, credential_id: str, user_id: str) -> str: ...

    async def get_access_token(self, credential_id: str, user_id: str) -> str: ...


@dataclass
class NodeExecutorParams:
    """Everything an executor receives for one node of one run."""

    node_id: str
    node_type: NodeType
    data: dict[str, Any]
    context: WorkflowContext
    step: StepRunner
    publish: PublishFn
    workflow_id: str
    execution_id: str | None = None
    user_id: str | None = None
    credentials: CredentialProvider | None = None


class BaseNodeExecutor(ABC, Generic[InputT]):
    """Abstract base class for node executors.

    Subclasses set ``node_type``, ``channel`` and ``step_name`` and implement
    execute(). Everything execute() returns must be JSON-serializable since
    it is committed to the step log.

    Example implementation:
        class EchoExecutor(BaseNodeExecutor[dict]):
            node_type = NodeType.SET
            channel = "echo-execution"
            step_name = "echo"

            async def execute(self, input_data, params):
                return {**params.context, "echo": input_data}
    """

    node_type: NodeType
    channel: str
    step_name: str

    def validate_input(self, data: dict[str, Any]) -> InputT:
        """Validate and transform node configuration.

        Override this method to implement custom validation.

        Raises:
            NodeValidationError: If validation fails
        """
        return data  # type: ignore[return-value]

    @abstractmethod
    async def execute(
        self,
        input_data: InputT,
        params: NodeExecutorParams,
    ) -> WorkflowContext:
        """Do the node's work and return the new workflow context.

        Runs inside the node's durable work step. Raise
        NonRetriableStepError for failures a retry cannot fix.
        """
        pass

    async def perform(
        self,
        input_data: InputT,
        params: NodeExecutorParams,
    ) -> WorkflowContext:
        """Run execute() as the node's durable work step.

        Executors whose work is not a single step (e.g. durable sleeps)
        override this.
        """
        return await params.step.run(
            step_key(self.step_name, params.node_id),
            lambda: self.execute(input_data, params),
        )

    async def _publish_status(
        self,
        params: NodeExecutorParams,
        status: NodeStatus,
    ) -> None:
        async def publish() -> None:
            await params.publish(
                NodeStatusEvent(
                    channel=self.channel,
                    workflow_id=params.workflow_id,
                    execution_id=params.execution_id,
                    node_id=params.node_id,
                    status=status,
                )
            )

        await params.step.run(step_key(f"publish-{status.value}", params.node_id), publish)

    async def run(self, params: NodeExecutorParams) -> WorkflowContext:
        """Run the node with the full status lifecycle.

        Returns:
            New workflow context

        Raises:
            NodeExecutionError: If validation or execution fails
        """
        await self._publish_status(params, NodeStatus.LOADING)

        try:
            validated = self.validate_input(params.data)
            result = await self.perform(validated, params)
        except NodeExecutionError:
            await self._publish_status(params, NodeStatus.ERROR)
            raise
        except NodeValidationError as e:
            await self._publish_status(params, NodeStatus.ERROR)
            raise NodeExecutionError(
                message=str(e),
                node_id=params.node_id,
                node_type=self.node_type,
                error_code="VALIDATION_ERROR",
                details={"field": e.field},
            ) from e
        except NonRetriableStepError as e:
            await self._publish_status(params, NodeStatus.ERROR)
            raise NodeExecutionError(
                message=str(e),
                node_id=params.node_id,
                node_type=self.node_type,
                error_code="NON_RETRIABLE",
            ) from e
        except Exception as e:
            logger.warning(
                "node_execution_failed",
                node_id=params.node_id,
                node_type=self.node_type.value,
                execution_id=params.execution_id,
                error_type=type(e).__name__,
            )
            await self._publish_status(params, NodeStatus.ERROR)
            raise NodeExecutionError(
                message=str(e),
                node_id=params.node_id,
                node_type=self.node_type,
            ) from e

        await self._publish_status(params, NodeStatus.SUCCESS)
        return result


def require_variable_name(data: dict[str, Any], label: str) -> str:
    """Validate the ``variableName`` a node stores its output under."""
    variable_name = data.get("variableName")
    if not variable_name or not isinstance(variable_name, str):
        raise NodeValidationError(f"{label}: Variable name is required", field="variableName")
    if not variable_name.isidentifier():
        raise NodeValidationError(
            f"{label}: Variable name must start with a letter or underscore "
            "and contain only letters, numbers and underscores",
            field="variableName",
        )
    return variable_name


def require_credential_access(
    params: NodeExecutorParams,
    label: str,
) -> tuple[CredentialProvider, str]:
    """Credential provider and owner for a node that needs a credential."""
    if params.credentials is None or params.user_id is None:
        raise NonRetriableStepError(f"{label}: Credentials are not available in this run")
    return params.credentials, params.user_id
