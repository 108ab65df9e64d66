"""Credential access for running workflows.

Gives node executors decrypted secrets and fresh OAuth tokens, opening a
short-lived database session per lookup.
"""

from sqlalchemy.orm import sessionmaker

from chainly.core.encryption import CredentialEncryption
from chainly.core.steps import NonRetriableStepError
from chainly.services.credential_service import CredentialService, CredentialServiceError
from chainly.services.oauth_service import OAuthService
from chainly.services.token_refresh import TokenRefresher, TokenRefreshError


class SessionCredentialProvider:
    """Credential provider backed by the credential table.

    Missing, foreign or undecryptable credentials and rejected refreshes are
    surfaced as NonRetriableStepError. Transient token endpoint failures
    (OAuthUnavailableError) propagate so the step is retried.
    """

    def __init__(
        self,
        session_maker: sessionmaker,
        encryption: CredentialEncryption,
        oauth: OAuthService | None = None,
    ) -> None:
        self._session_maker = session_maker
        self._encryption = encryption
        self._oauth = oauth or OAuthService()

    async def get_secret(self, credential_id: str, user_id: str) -> str:
        async with self._session_maker() as session:
            service = CredentialService(session, self._encryption)
            try:
                return await service.get_decrypted_value(credential_id, user_id)
            except CredentialServiceError as e:
                raise NonRetriableStepError(str(e)) from e

    async def get_access_token(self, credential_id: str, user_id: str) -> str:
        async with self._session_maker() as session:
            refresher = TokenRefresher(CredentialService(session, self._encryption), self._oauth)
            try:
                return await refresher.get_valid_access_token(credential_id, user_id)
            except (CredentialServiceError, TokenRefreshError) as e:
                raise NonRetriableStepError(str(e)) from e
