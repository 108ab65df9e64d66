"""Service layer - Business operations with database access."""

from chainly.services.credential_service import CredentialService
from chainly.services.execution_service import CeleryWorkflowQueue, ExecutionService, WorkflowQueue
from chainly.services.oauth_service import OAuthService
from chainly.services.token_refresh import TokenRefresher
from chainly.services.workflow_service import WorkflowService

__all__ = [
    "CeleryWorkflowQueue",
    "CredentialService",
    "ExecutionService",
    "OAuthService",
    "TokenRefresher",
    "WorkflowQueue",
    "WorkflowService",
]
