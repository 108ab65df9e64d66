"""Core layer - Pure business logic and algorithms."""

from chainly.core.encryption import CredentialEncryption
from chainly.core.graph import GraphValidationError, resolve_execution_order
from chainly.core.rate_limit import RateLimiter, RateLimitResult
from chainly.core.steps import DurableStepRunner, NonRetriableStepError, StepRunner
from chainly.core.webhook_security import SignedStateCodec

__all__ = [
    "CredentialEncryption",
    "DurableStepRunner",
    "GraphValidationError",
    "NonRetriableStepError",
    "RateLimitResult",
    "RateLimiter",
    "SignedStateCodec",
    "StepRunner",
    "resolve_execution_order",
]
