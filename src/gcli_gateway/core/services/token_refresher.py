"""
OAuth refresh-token exchange against Google's token endpoint.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from gcli_gateway.core.common.exceptions import (
    CredentialAuthError,
    UpstreamUnavailableError,
)
from gcli_gateway.core.common.logging_utils import register_secrets
from gcli_gateway.core.domain.credentials import CredentialRecord, RefreshedToken
from gcli_gateway.core.interfaces.token_refresher_interface import ITokenRefresher

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_EXPIRES_IN = 3600


class GoogleTokenRefresher(ITokenRefresher):
    """Refreshes access tokens with the ``refresh_token`` grant."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_url: str = GOOGLE_TOKEN_URL,
        *,
        timeout: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.client = client
        self.token_url = token_url
        self.timeout = timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def refresh(self, credential: CredentialRecord) -> RefreshedToken:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "client_id": credential.client_id,
            "client_secret": credential.client_secret,
        }
        try:
            response = await self.client.post(
                self.token_url, data=data, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            if logger.isEnabledFor(logging.WARNING):
                logger.warning(
                    "Timeout refreshing token for credential %s: %s",
                    credential.credential_id,
                    e,
                )
            raise UpstreamUnavailableError(
                message=f"Timeout contacting token endpoint ({e})",
                details={"credential_id": credential.credential_id},
            ) from e
        except httpx.RequestError as e:
            if logger.isEnabledFor(logging.WARNING):
                logger.warning(
                    "Request error refreshing token for credential %s: %s",
                    credential.credential_id,
                    e,
                )
            raise UpstreamUnavailableError(
                message=f"Could not connect to token endpoint ({e})",
                details={"credential_id": credential.credential_id},
            ) from e

        if response.status_code >= 500:
            raise UpstreamUnavailableError(
                message=f"Token endpoint returned {response.status_code}",
                details={"credential_id": credential.credential_id},
            )
        if response.status_code >= 400:
            raise CredentialAuthError(
                message=f"Token refresh rejected with status {response.status_code}",
                details={
                    "credential_id": credential.credential_id,
                    "error": _error_code(response),
                },
            )

        try:
            body: dict[str, Any] = response.json()
        except ValueError as e:
            raise UpstreamUnavailableError(
                message="Token endpoint returned a non-JSON body",
                details={"credential_id": credential.credential_id},
            ) from e

        access_token = body.get("access_token")
        if not access_token:
            raise CredentialAuthError(
                message="Token endpoint response has no access_token",
                details={"credential_id": credential.credential_id},
            )
        register_secrets([access_token])

        try:
            expires_in = int(body.get("expires_in", DEFAULT_EXPIRES_IN))
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN

        logger.info("Refreshed access token for credential %s", credential.credential_id)
        return RefreshedToken(
            access_token=access_token,
            expiry=self._clock() + timedelta(seconds=expires_in),
            extra={k: v for k, v in body.items() if k in ("scope", "token_type")},
        )


def _error_code(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body)
    return str(body)
