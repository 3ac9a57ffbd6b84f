from __future__ import annotations

from abc import ABC, abstractmethod

from gcli_gateway.core.domain.credentials import CredentialRecord, RefreshedToken


class ITokenRefresher(ABC):
    @abstractmethod
    async def refresh(self, credential: CredentialRecord) -> RefreshedToken:
        """Exchange the credential's refresh token for a new access token.

        Raises:
            CredentialAuthError: The refresh was rejected
            UpstreamUnavailableError: The token endpoint could not be reached
        """
