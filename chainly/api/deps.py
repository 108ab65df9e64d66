"""API dependencies for FastAPI dependency injection.

Provides database sessions, user context, and service instances.
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated, AsyncGenerator

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from chainly.config import settings
from chainly.core.encryption import CredentialEncryption
from chainly.core.rate_limit import RateLimiter
from chainly.core.realtime import StatusPublisher
from chainly.core.webhook_security import SignedStateCodec
from chainly.models.user import TokenPayload, User
from chainly.services.credential_service import CredentialService
from chainly.services.execution_service import ExecutionService, WorkflowQueue
from chainly.services.oauth_service import OAuthService
from chainly.services.workflow_service import WorkflowService

logger = structlog.get_logger()

# Database engine and session
_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    pool_timeout=settings.database_pool_timeout,
)

_async_session_maker = sessionmaker(
    _engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Security
_bearer_scheme = HTTPBearer(auto_error=False)


async def init_db() -> None:
    """Initialize database tables.

    Only call during development; production schemas are managed outside
    the application.
    """
    async with _engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("database_initialized")


async def dispose_db() -> None:
    await _engine.dispose()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session.

    Yields:
        AsyncSession that will be closed after use
    """
    async with _async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


# Type alias for dependency injection
DBSession = Annotated[AsyncSession, Depends(get_db_session)]


def create_access_token(user_id: str, expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token.

    Sessions are issued by the external auth layer; this helper exists for
    operators and tests.

    Args:
        user_id: User ID to encode in token
        expires_delta: Token lifetime (defaults to the configured expiry)

    Returns:
        Encoded JWT token
    """
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    )

    return jwt.encode(
        {"sub": user_id, "exp": expire},
        settings.jwt_secret_key.get_secret_value(),
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str) -> TokenPayload:
    """Decode and validate a JWT access token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key.get_secret_value(),
            algorithms=[settings.jwt_algorithm],
        )
        return TokenPayload(**payload)
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    session: DBSession,
) -> User:
    """Get the current authenticated user.

    Raises:
        HTTPException: If not authenticated or user not found
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_data = decode_access_token(credentials.credentials)

    result = await session.execute(select(User).where(User.id == token_data.sub))
    user = result.scalar_one_or_none()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is disabled",
        )

    return user


# Type alias for authenticated user dependency
CurrentUser = Annotated[User, Depends(get_current_user)]


# Application-scoped resources (created in the lifespan, stored on app.state)
def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_status_publisher(request: Request) -> StatusPublisher:
    return request.app.state.status_publisher


def get_workflow_queue(request: Request) -> WorkflowQueue | None:
    return getattr(request.app.state, "workflow_queue", None)


def get_encryption() -> CredentialEncryption:
    return CredentialEncryption(settings.encryption_key.get_secret_value())


def get_state_codec() -> SignedStateCodec:
    return SignedStateCodec(settings.encryption_key.get_secret_value())


def get_oauth_service() -> OAuthService:
    return OAuthService()


RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter)]
StatusPublisherDep = Annotated[StatusPublisher, Depends(get_status_publisher)]
StateCodecDep = Annotated[SignedStateCodec, Depends(get_state_codec)]
OAuthServiceDep = Annotated[OAuthService, Depends(get_oauth_service)]


# Service dependencies
def get_credential_service(
    session: DBSession,
    encryption: Annotated[CredentialEncryption, Depends(get_encryption)],
) -> CredentialService:
    """Get credential service instance."""
    return CredentialService(session, encryption)


def get_workflow_service(session: DBSession) -> WorkflowService:
    """Get workflow service instance."""
    return WorkflowService(session)


def get_execution_service(
    session: DBSession,
    queue: Annotated[WorkflowQueue | None, Depends(get_workflow_queue)],
) -> ExecutionService:
    """Get execution service instance."""
    return ExecutionService(session, queue)


# Type aliases for service dependencies
CredentialServiceDep = Annotated[CredentialService, Depends(get_credential_service)]
WorkflowServiceDep = Annotated[WorkflowService, Depends(get_workflow_service)]
ExecutionServiceDep = Annotated[ExecutionService, Depends(get_execution_service)]


def client_ip(request: Request) -> str:
    """Best-effort client address for rate limit keys."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "anonymous"
