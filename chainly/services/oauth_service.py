"""OAuth service.

Handles OAuth flows for Google integrations (Calendar and Gmail).
Provides authorization URL generation, token exchange and token refresh.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog

from chainly.config import settings
from chainly.models.credential import CredentialType

logger = structlog.get_logger()

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


class OAuthProvider(str, Enum):
    """Supported OAuth providers."""

    GOOGLE_CALENDAR = "google-calendar"
    GMAIL = "gmail"


class OAuthError(Exception):
    """Base OAuth error."""

    pass


class OAuthProviderNotConfiguredError(OAuthError):
    """OAuth provider is not configured (missing client_id/secret)."""

    pass


class OAuthCodeExchangeError(OAuthError):
    """Failed to exchange authorization code for tokens."""

    pass


class OAuthRefreshError(OAuthError):
    """Failed to refresh an access token."""

    pass


class OAuthProviderNotFoundError(OAuthError):
    """Unknown OAuth provider."""

    pass


class OAuthUnavailableError(OAuthError):
    """Token endpoint unreachable, rate limited or failing (HTTP 5xx)."""

    pass


@dataclass
class OAuthTokens:
    """OAuth tokens returned from token exchange or refresh."""

    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "OAuthTokens":
        expires_in = data.get("expires_in")
        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
            if expires_in
            else None
        )
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type", "Bearer"),
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
            scope=data.get("scope"),
        )


@dataclass
class OAuthProviderConfig:
    """Configuration for an OAuth provider."""

    provider: OAuthProvider
    client_id: str | None
    client_secret: str | None
    redirect_uri: str
    scopes: list[str]
    credential_type: CredentialType
    display_name: str
    authorize_url: str = GOOGLE_AUTHORIZE_URL
    token_url: str = GOOGLE_TOKEN_URL


def callback_url(provider: OAuthProvider) -> str:
    """Redirect URI registered with the provider."""
    return f"{settings.app_url.rstrip('/')}/api/oauth/{provider.value}/callback"


class OAuthService:
    """Service for handling OAuth flows.

    Example usage:
        service = OAuthService()

        auth_url = service.get_authorization_url("google-calendar", state=signed_state)

        # After the user authorizes, exchange the code for tokens
        tokens = await service.exchange_code("google-calendar", code)

        # Later, when the access token is about to expire
        tokens = await service.refresh_access_token("google-calendar", refresh_token)
    """

    def __init__(self, http_timeout: float | None = None) -> None:
        """Initialize OAuth service with provider configurations."""
        self._providers = self._load_provider_configs()
        self._timeout = http_timeout if http_timeout is not None else settings.executor_http_timeout

    def _load_provider_configs(self) -> dict[OAuthProvider, OAuthProviderConfig]:
        """Load provider configurations from settings."""
        client_secret = (
            settings.google_client_secret.get_secret_value()
            if settings.google_client_secret
            else None
        )

        return {
            OAuthProvider.GOOGLE_CALENDAR: OAuthProviderConfig(
                provider=OAuthProvider.GOOGLE_CALENDAR,
                client_id=settings.google_client_id,
                client_secret=client_secret,
                redirect_uri=callback_url(OAuthProvider.GOOGLE_CALENDAR),
                scopes=["https://www.googleapis.com/auth/calendar.readonly"],
                credential_type=CredentialType.GOOGLE_CALENDAR,
                display_name="Google Calendar",
            ),
            OAuthProvider.GMAIL: OAuthProviderConfig(
                provider=OAuthProvider.GMAIL,
                client_id=settings.google_client_id,
                client_secret=client_secret,
                redirect_uri=callback_url(OAuthProvider.GMAIL),
                scopes=["https://www.googleapis.com/auth/gmail.readonly"],
                credential_type=CredentialType.GMAIL,
                display_name="Gmail",
            ),
        }

    def get_provider_config(self, provider: str) -> OAuthProviderConfig:
        """Get configuration for a provider.

        Raises:
            OAuthProviderNotFoundError: If provider is unknown
            OAuthProviderNotConfiguredError: If provider is not configured
        """
        try:
            oauth_provider = OAuthProvider(provider.lower())
        except ValueError as e:
            raise OAuthProviderNotFoundError(f"Unknown OAuth provider: {provider}") from e

        config = self._providers[oauth_provider]
        if not config.client_id or not config.client_secret:
            raise OAuthProviderNotConfiguredError(
                f"OAuth provider {provider} is not configured. "
                "Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET environment variables."
            )

        return config

    def provider_for_credential(self, credential_type: CredentialType) -> OAuthProvider:
        """OAuth provider that issued tokens for a credential type.

        Raises:
            OAuthProviderNotFoundError: If the type is not OAuth based
        """
        for config in self._providers.values():
            if config.credential_type == credential_type:
                return config.provider
        raise OAuthProviderNotFoundError(
            f"Credential type {credential_type.value} does not use OAuth"
        )

    def get_authorization_url(self, provider: str, state: str) -> str:
        """Generate OAuth authorization URL.

        Requests offline access with forced consent so Google always
        returns a refresh token.

        Args:
            provider: OAuth provider name
            state: Signed state parameter

        Returns:
            Authorization URL to redirect user to
        """
        config = self.get_provider_config(provider)

        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(config.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }

        logger.info(
            "oauth_authorization_url_generated",
            provider=config.provider.value,
            redirect_uri=config.redirect_uri,
        )

        return f"{config.authorize_url}?{urlencode(params)}"

    async def _token_request(
        self,
        config: OAuthProviderConfig,
        form: dict[str, str],
    ) -> dict[str, Any]:
        """POST to the token endpoint.

        Raises:
            OAuthUnavailableError: On network errors, HTTP 429 or 5xx
            OAuthError: If the provider rejects the request
        """
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    config.token_url,
                    data={
                        "client_id": config.client_id,
                        "client_secret": config.client_secret,
                        **form,
                    },
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise OAuthUnavailableError(f"Token endpoint unreachable: {type(e).__name__}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise OAuthUnavailableError(f"Token endpoint returned HTTP {response.status_code}")

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if response.status_code != 200 or "access_token" not in data:
            error = data.get("error_description") or data.get("error") or f"HTTP {response.status_code}"
            raise OAuthError(str(error))
        return data

    async def exchange_code(self, provider: str, code: str) -> OAuthTokens:
        """Exchange authorization code for access tokens.

        Raises:
            OAuthProviderNotFoundError: If provider is unknown
            OAuthProviderNotConfiguredError: If provider is not configured
            OAuthCodeExchangeError: If token exchange fails
        """
        config = self.get_provider_config(provider)

        try:
            data = await self._token_request(
                config,
                {
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": config.redirect_uri,
                },
            )
        except OAuthError as e:
            logger.warning("oauth_code_exchange_failed", provider=config.provider.value)
            raise OAuthCodeExchangeError(f"Token exchange failed: {e}") from e

        logger.info("oauth_code_exchanged", provider=config.provider.value)
        return OAuthTokens.from_response(data)

    async def refresh_access_token(self, provider: str, refresh_token: str) -> OAuthTokens:
        """Obtain a new access token with a refresh token.

        Raises:
            OAuthUnavailableError: If the failure is transient
            OAuthRefreshError: If the provider rejects the refresh
        """
        config = self.get_provider_config(provider)

        try:
            data = await self._token_request(
                config,
                {
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except OAuthUnavailableError:
            logger.warning("oauth_token_refresh_unavailable", provider=config.provider.value)
            raise
        except OAuthError as e:
            logger.warning("oauth_token_refresh_failed", provider=config.provider.value)
            raise OAuthRefreshError(str(e)) from e

        logger.info("oauth_token_refreshed", provider=config.provider.value)
        return OAuthTokens.from_response(data)
