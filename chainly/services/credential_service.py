"""Credential service.

Handles storage and retrieval of user credentials with encryption.
Access values and refresh tokens are AES-256-GCM encrypted at rest.
"""

from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chainly.config import settings
from chainly.core.encryption import CredentialEncryption, DecryptionError
from chainly.models.credential import (
    Credential,
    CredentialCreate,
    CredentialRead,
    CredentialType,
    utc_now,
)

logger = structlog.get_logger()


class CredentialServiceError(Exception):
    """Error in credential service operations."""

    pass


class CredentialNotFoundError(CredentialServiceError):
    """Credential not found."""

    pass


class CredentialAccessDeniedError(CredentialServiceError):
    """User doesn't have access to credential."""

    pass


class CredentialService:
    """Service for managing user credentials.

    Handles:
    - Creating credentials with encryption
    - Reading credentials (metadata or decrypted value)
    - Rotating OAuth tokens after a refresh
    - User-scoped access control

    Example usage:
        service = CredentialService(session)

        cred = await service.create(
            user_id="user-123",
            data=CredentialCreate(name="OpenAI", type=CredentialType.OPENAI, value="sk-..."),
        )

        api_key = await service.get_decrypted_value(cred.id, "user-123")
    """

    def __init__(
        self,
        session: AsyncSession,
        encryption: CredentialEncryption | None = None,
    ) -> None:
        """Initialize credential service.

        Args:
            session: Async database session
            encryption: Vault to use; defaults to one keyed by ENCRYPTION_KEY
        """
        self._session = session
        self._encryption = encryption or CredentialEncryption(
            settings.encryption_key.get_secret_value()
        )

    async def create(
        self,
        user_id: str,
        data: CredentialCreate,
    ) -> CredentialRead:
        """Create a new credential.

        Args:
            user_id: Owner user ID
            data: Credential creation data (plaintext values)

        Returns:
            Created credential (without secret values)
        """
        credential = Credential(
            user_id=user_id,
            name=data.name,
            type=data.type,
            value=self._encryption.encrypt(data.value),
            refresh_token=(
                self._encryption.encrypt(data.refresh_token) if data.refresh_token else None
            ),
            expires_at=data.expires_at,
        )

        self._session.add(credential)
        await self._session.commit()
        await self._session.refresh(credential)

        logger.info(
            "credential_created",
            credential_id=credential.id,
            user_id=user_id,
            credential_type=data.type.value,
        )

        return CredentialRead.model_validate(credential)

    async def get(
        self,
        credential_id: str,
        user_id: str,
    ) -> CredentialRead:
        """Get a credential (without secret values).

        Raises:
            CredentialNotFoundError: If credential doesn't exist
            CredentialAccessDeniedError: If user doesn't own credential
        """
        credential = await self.get_entity(credential_id, user_id)
        return CredentialRead.model_validate(credential)

    async def list_all(
        self,
        user_id: str,
        credential_type: CredentialType | None = None,
    ) -> list[CredentialRead]:
        """List user's credentials, optionally filtered by type."""
        query = select(Credential).where(Credential.user_id == user_id)
        if credential_type:
            query = query.where(Credential.type == credential_type)

        result = await self._session.execute(query)
        return [CredentialRead.model_validate(c) for c in result.scalars().all()]

    async def get_decrypted_value(
        self,
        credential_id: str,
        user_id: str,
    ) -> str:
        """Get the decrypted access value.

        SECURITY: Only call when the value is actually needed.
        Never log the returned value.

        Raises:
            CredentialNotFoundError: If credential doesn't exist
            CredentialAccessDeniedError: If user doesn't own credential
            CredentialServiceError: If decryption fails
        """
        credential = await self.get_entity(credential_id, user_id)
        return self.decrypt(credential, credential.value)

    def decrypt(self, credential: Credential, envelope: str) -> str:
        """Decrypt one of a credential's envelopes."""
        try:
            return self._encryption.decrypt(envelope)
        except DecryptionError as e:
            logger.error(
                "credential_decryption_failed",
                credential_id=credential.id,
                user_id=credential.user_id,
            )
            raise CredentialServiceError("Failed to decrypt credential") from e

    async def update_tokens(
        self,
        credential_id: str,
        user_id: str,
        access_token: str,
        expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> CredentialRead:
        """Store a new access token (and optionally a rotated refresh token).

        Raises:
            CredentialNotFoundError: If credential doesn't exist
            CredentialAccessDeniedError: If user doesn't own credential
        """
        credential = await self.get_entity(credential_id, user_id)

        credential.value = self._encryption.encrypt(access_token)
        if refresh_token:
            credential.refresh_token = self._encryption.encrypt(refresh_token)
        credential.expires_at = expires_at
        credential.updated_at = utc_now()

        await self._session.commit()
        await self._session.refresh(credential)

        logger.info(
            "credential_tokens_updated",
            credential_id=credential_id,
            user_id=user_id,
        )

        return CredentialRead.model_validate(credential)

    async def get_entity(
        self,
        credential_id: str,
        user_id: str,
    ) -> Credential:
        """Get credential and verify ownership.

        Raises:
            CredentialNotFoundError: If not found
            CredentialAccessDeniedError: If wrong owner
        """
        query = select(Credential).where(Credential.id == credential_id)
        result = await self._session.execute(query)
        credential = result.scalar_one_or_none()

        if credential is None:
            raise CredentialNotFoundError(f"Credential '{credential_id}' not found")

        if credential.user_id != user_id:
            logger.warning(
                "credential_access_denied",
                credential_id=credential_id,
                requested_by=user_id,
            )
            raise CredentialAccessDeniedError("Access denied to credential")

        return credential
