"""OAuth access token refresh.

Hands out a usable access token for an OAuth credential, refreshing it
(and persisting the re-encrypted result) when it is close to expiry.
"""

from datetime import datetime, timedelta, timezone

import structlog

from chainly.services.credential_service import CredentialService
from chainly.services.oauth_service import OAuthError, OAuthService, OAuthUnavailableError

logger = structlog.get_logger()

REFRESH_MARGIN = timedelta(minutes=5)


class TokenRefreshError(Exception):
    """Access token could not be made valid; the user must reconnect."""

    pass


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def needs_refresh(expires_at: datetime | None, now: datetime | None = None) -> bool:
    """True when the token expires within REFRESH_MARGIN. No expiry means never."""
    if expires_at is None:
        return False
    current = now or datetime.now(timezone.utc)
    return _as_utc(expires_at) - REFRESH_MARGIN <= current


class TokenRefresher:
    """Returns valid access tokens for OAuth credentials.

    Example usage:
        refresher = TokenRefresher(CredentialService(session), OAuthService())
        token = await refresher.get_valid_access_token(credential_id, user_id)
    """

    def __init__(self, credentials: CredentialService, oauth: OAuthService) -> None:
        self._credentials = credentials
        self._oauth = oauth

    async def get_valid_access_token(self, credential_id: str, user_id: str) -> str:
        """Get a valid access token, refreshing it if needed.

        Raises:
            CredentialNotFoundError: If credential doesn't exist
            CredentialAccessDeniedError: If user doesn't own credential
            TokenRefreshError: If the token is expired and cannot be refreshed
            OAuthUnavailableError: If the token endpoint failed transiently
        """
        credential = await self._credentials.get_entity(credential_id, user_id)
        access_token = self._credentials.decrypt(credential, credential.value)

        if not needs_refresh(credential.expires_at):
            return access_token

        if not credential.refresh_token:
            raise TokenRefreshError(
                "Access token expired and no refresh token available. "
                "Please reconnect your account."
            )

        refresh_token = self._credentials.decrypt(credential, credential.refresh_token)
        try:
            provider = self._oauth.provider_for_credential(credential.type)
            tokens = await self._oauth.refresh_access_token(provider.value, refresh_token)
        except OAuthUnavailableError:
            raise
        except OAuthError as e:
            logger.warning(
                "credential_refresh_failed",
                credential_id=credential_id,
                user_id=user_id,
                error_type=type(e).__name__,
            )
            raise TokenRefreshError(
                f"Failed to refresh access token: {e}. Please reconnect your account."
            ) from e

        await self._credentials.update_tokens(
            credential_id,
            user_id,
            access_token=tokens.access_token,
            expires_at=tokens.expires_at,
            refresh_token=tokens.refresh_token,
        )

        logger.info("credential_refreshed", credential_id=credential_id, user_id=user_id)
        return tokens.access_token
