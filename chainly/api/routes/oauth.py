"""OAuth routes.

Connects Google accounts (Calendar, Gmail) as credentials. The state
parameter is a signed token carrying the initiating user and, when
reconnecting, the credential to update; nothing is stored server-side
between the redirect and the callback.
"""

from urllib.parse import quote

import structlog
from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import RedirectResponse

from chainly.api.deps import CredentialServiceDep, CurrentUser, OAuthServiceDep, StateCodecDep
from chainly.config import settings
from chainly.core.webhook_security import SignedStateError
from chainly.models.credential import CredentialCreate
from chainly.services.credential_service import CredentialServiceError
from chainly.services.oauth_service import (
    OAuthCodeExchangeError,
    OAuthProviderNotConfiguredError,
    OAuthProviderNotFoundError,
)

logger = structlog.get_logger()

router = APIRouter()


def _redirect(path: str, **params: str) -> RedirectResponse:
    query = "&".join(f"{key}={quote(value, safe='')}" for key, value in params.items())
    url = f"{settings.frontend_url.rstrip('/')}{path}"
    if query:
        url = f"{url}?{query}"
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


def _error_redirect(message: str) -> RedirectResponse:
    return _redirect("/credentials", error=message)


@router.get("/{provider}")
async def get_authorization_url(
    provider: str,
    user: CurrentUser,
    oauth: OAuthServiceDep,
    codec: StateCodecDep,
    credential_id: str | None = Query(default=None, alias="credentialId"),
) -> dict[str, str]:
    """Generate the provider authorization URL.

    Args:
        provider: OAuth provider (google-calendar, gmail)
        user: Current authenticated user
        oauth: OAuth service
        codec: Signed state codec
        credential_id: Existing credential to reconnect, if any

    Returns:
        Dict with ``authUrl``

    Raises:
        HTTPException 404: If provider is unknown
        HTTPException 400: If provider is not configured
    """
    state = codec.create(
        {"userId": user.id, "credentialId": credential_id, "provider": provider},
        ttl=settings.oauth_state_ttl,
    )

    try:
        auth_url = oauth.get_authorization_url(provider, state)
    except OAuthProviderNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e
    except OAuthProviderNotConfiguredError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e

    logger.info(
        "oauth_authorization_initiated",
        provider=provider,
        user_id=user.id,
        reconnect=credential_id is not None,
    )

    return {"authUrl": auth_url}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    oauth: OAuthServiceDep,
    codec: StateCodecDep,
    credential_service: CredentialServiceDep,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> RedirectResponse:
    """Handle the provider redirect.

    Verifies the signed state, exchanges the code and stores the tokens
    encrypted, then redirects to the frontend with a success or error
    message.
    """
    if error:
        logger.warning("oauth_callback_error_from_provider", provider=provider, error=error)
        return _error_redirect("OAuth authorization was denied")

    if not code:
        return _error_redirect("No authorization code received")

    try:
        payload = codec.load(state)
    except SignedStateError as e:
        logger.warning("oauth_callback_invalid_state", provider=provider, reason=str(e))
        return _error_redirect(str(e))

    user_id = payload.get("userId")
    if not isinstance(user_id, str) or not user_id or payload.get("provider") != provider:
        logger.warning("oauth_callback_invalid_state", provider=provider, reason="payload")
        return _error_redirect("Invalid state parameter")

    credential_id = payload.get("credentialId")

    try:
        config = oauth.get_provider_config(provider)
        tokens = await oauth.exchange_code(provider, code)
    except (OAuthProviderNotFoundError, OAuthProviderNotConfiguredError) as e:
        logger.error("oauth_callback_provider_unavailable", provider=provider, error=str(e))
        return _error_redirect("OAuth provider is not available")
    except OAuthCodeExchangeError:
        return _error_redirect("Failed to complete OAuth flow")

    try:
        if credential_id:
            credential = await credential_service.update_tokens(
                credential_id,
                user_id,
                access_token=tokens.access_token,
                expires_at=tokens.expires_at,
                refresh_token=tokens.refresh_token,
            )
            message = f"{config.display_name} connection updated successfully"
        else:
            credential = await credential_service.create(
                user_id,
                CredentialCreate(
                    name=config.display_name,
                    type=config.credential_type,
                    value=tokens.access_token,
                    refresh_token=tokens.refresh_token,
                    expires_at=tokens.expires_at,
                ),
            )
            message = f"{config.display_name} connected successfully"
    except CredentialServiceError as e:
        logger.warning(
            "oauth_callback_credential_failed",
            provider=provider,
            user_id=user_id,
            error_type=type(e).__name__,
        )
        return _error_redirect("Failed to complete OAuth flow")

    logger.info(
        "oauth_credential_stored",
        provider=provider,
        user_id=user_id,
        credential_id=credential.id,
    )

    return _redirect(f"/credentials/{credential.id}", success=message)
