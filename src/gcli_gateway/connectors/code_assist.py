"""
Google Code Assist connector.

Issues ``v1internal:generateContent`` and
``v1internal:streamGenerateContent?alt=sse`` calls with a single credential and
classifies every failure:

- 401/403: ``CredentialAuthError``
- 429: ``RateLimitedError``
- 408, 5xx, timeouts and transport errors: ``UpstreamUnavailableError``
- any other 4xx, and malformed bodies: ``TranslationError``

It also runs the one-time ``loadCodeAssist`` / ``onboardUser`` handshake
that a project needs before it can serve requests.
"""

from __future__ import annotations

import asyncio
import json
import logging
import platform
import uuid
from collections.abc import AsyncIterator
from typing import Any

import httpx

from gcli_gateway.core.common.exceptions import (
    CredentialAuthError,
    GatewayError,
    RateLimitedError,
    TranslationError,
    UpstreamUnavailableError,
)
from gcli_gateway.core.domain.credentials import CredentialRecord
from gcli_gateway.core.domain.gemini import UpstreamRequest, UpstreamResponse
from gcli_gateway.core.interfaces.upstream_caller_interface import (
    IUpstreamCaller,
    IUpstreamStream,
)
from gcli_gateway.core.services.translation_service import TranslationService

logger = logging.getLogger(__name__)

CODE_ASSIST_ENDPOINT = "https://codeassist-pa.clients6.google.com"
CODE_ASSIST_API_VERSION = "v1internal"
GEMINI_CLI_VERSION = "0.1.5"

LEGACY_TIER = {
    "name": "",
    "description": "",
    "id": "legacy-tier",
    "userDefinedCloudaicompanionProject": True,
}

_PLATFORMS = {
    ("darwin", "arm64"): "DARWIN_ARM64",
    ("darwin", "aarch64"): "DARWIN_ARM64",
    ("linux", "arm64"): "LINUX_ARM64",
    ("linux", "aarch64"): "LINUX_ARM64",
}


def get_user_agent() -> str:
    return f"GeminiCLI/{GEMINI_CLI_VERSION} ({platform.system().lower()}; {platform.machine().lower()})"


def get_platform_string() -> str:
    system = platform.system().lower()
    machine = platform.machine().lower()
    if (system, machine) in _PLATFORMS:
        return _PLATFORMS[(system, machine)]
    if system == "darwin":
        return "DARWIN_AMD64"
    if system == "linux":
        return "LINUX_AMD64"
    if system == "windows":
        return "WINDOWS_AMD64"
    return "PLATFORM_UNSPECIFIED"


def get_client_metadata(project_id: str) -> dict[str, str]:
    return {
        "ideType": "IDE_UNSPECIFIED",
        "platform": get_platform_string(),
        "pluginType": "GEMINI",
        "duetProject": project_id,
    }


def _body_excerpt(text: str, limit: int = 500) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def classify_status(status_code: int, body_text: str, context: str) -> GatewayError:
    """Map an upstream HTTP error status to a classified gateway error."""
    details = {"upstream_status": status_code, "body": _body_excerpt(body_text)}
    message = f"{context} failed with status {status_code}"
    if status_code in (401, 403):
        return CredentialAuthError(message, details)
    if status_code == 429:
        return RateLimitedError(message, details)
    if status_code == 408 or status_code >= 500:
        return UpstreamUnavailableError(message, details)
    return TranslationError(message, details, status_code=status_code)


class CodeAssistStream(IUpstreamStream):
    """Server-sent events from ``streamGenerateContent``, parsed lazily."""

    def __init__(self, response: httpx.Response, translator: TranslationService) -> None:
        self._response = response
        self._translator = translator
        self._closed = False

    def __aiter__(self) -> AsyncIterator[UpstreamResponse]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[UpstreamResponse]:
        pending: list[str] = []
        try:
            async for line in self._response.aiter_lines():
                line = line.strip()
                if not line:
                    # Blank line ends an event that spans several data lines
                    if pending:
                        yield self._parse("".join(pending))
                        pending = []
                    continue
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == "[DONE]":
                    pending = []
                    break
                pending.append(data)
                if _is_complete_json(pending):
                    yield self._parse("".join(pending))
                    pending = []
            if pending:
                yield self._parse("".join(pending))
        except httpx.TimeoutException as e:
            raise UpstreamUnavailableError(
                message=f"Timeout while reading Code Assist stream ({e})"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(
                message=f"Code Assist stream interrupted ({e})"
            ) from e
        finally:
            await self.aclose()

    def _parse(self, data: str) -> UpstreamResponse:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            raise TranslationError(
                "Code Assist stream contained invalid JSON", status_code=502
            ) from e
        return self._translator.parse_upstream(payload)

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            await self._response.aclose()


def _is_complete_json(pending: list[str]) -> bool:
    try:
        json.loads("".join(pending))
    except json.JSONDecodeError:
        return False
    return True


class CodeAssistConnector(IUpstreamCaller):
    """Upstream caller for the Code Assist API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: str = CODE_ASSIST_ENDPOINT,
        timeout: float = 300.0,
        *,
        translator: TranslationService | None = None,
        onboard_poll_interval: float = 5.0,
        onboard_max_polls: int = 60,
    ) -> None:
        self.client = client
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.translator = translator or TranslationService()
        self.onboard_poll_interval = onboard_poll_interval
        self.onboard_max_polls = onboard_max_polls

    def _url(self, method: str) -> str:
        return f"{self.endpoint}/{CODE_ASSIST_API_VERSION}:{method}"

    @staticmethod
    def _headers(credential: CredentialRecord) -> dict[str, str]:
        if not credential.access_token:
            raise CredentialAuthError(
                "Credential has no access token",
                details={"credential_id": credential.credential_id},
            )
        return {
            "Authorization": f"Bearer {credential.access_token}",
            "Content-Type": "application/json",
            "User-Agent": get_user_agent(),
        }

    @staticmethod
    def build_payload(
        credential: CredentialRecord, request: UpstreamRequest, model: str
    ) -> dict[str, Any]:
        return {
            "model": model,
            "project": credential.project_id,
            "user_prompt_id": uuid.uuid4().hex,
            "request": request.to_wire(),
        }

    async def _post(
        self, url: str, credential: CredentialRecord, body: dict[str, Any], context: str
    ) -> Any:
        headers = self._headers(credential)
        try:
            response = await self.client.post(
                url, json=body, headers=headers, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            if logger.isEnabledFor(logging.WARNING):
                logger.warning("Timeout during %s: %s", context, e)
            raise UpstreamUnavailableError(
                message=f"Timeout connecting to Code Assist ({e})"
            ) from e
        except httpx.RequestError as e:
            if logger.isEnabledFor(logging.WARNING):
                logger.warning("Request error during %s: %s", context, e)
            raise UpstreamUnavailableError(
                message=f"Could not connect to Code Assist ({e})"
            ) from e

        if response.status_code >= 400:
            error = classify_status(response.status_code, response.text, context)
            if logger.isEnabledFor(logging.WARNING):
                logger.warning(
                    "%s with credential %s: %s",
                    context,
                    credential.credential_id,
                    error.message,
                )
            raise error

        try:
            return response.json()
        except ValueError as e:
            raise TranslationError(
                f"{context} returned a non-JSON body", status_code=502
            ) from e

    async def generate(
        self, credential: CredentialRecord, request: UpstreamRequest, model: str
    ) -> UpstreamResponse:
        """Non-streaming ``generateContent`` call."""
        payload = self.build_payload(credential, request, model)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "generateContent model=%s credential=%s", model, credential.credential_id
            )
        data = await self._post(
            self._url("generateContent"), credential, payload, "generateContent"
        )
        return self.translator.parse_upstream(data)

    async def open_stream(
        self, credential: CredentialRecord, request: UpstreamRequest, model: str
    ) -> CodeAssistStream:
        """Open a ``streamGenerateContent`` call.

        Status errors are raised here, before any increment is produced, so
        the caller can still retry with another credential.
        """
        payload = self.build_payload(credential, request, model)
        http_request = self.client.build_request(
            "POST",
            self._url("streamGenerateContent"),
            params={"alt": "sse"},
            json=payload,
            headers=self._headers(credential),
            timeout=self.timeout,
        )
        try:
            response = await self.client.send(http_request, stream=True)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailableError(
                message=f"Timeout connecting to Code Assist ({e})"
            ) from e
        except httpx.RequestError as e:
            raise UpstreamUnavailableError(
                message=f"Could not connect to Code Assist ({e})"
            ) from e

        if response.status_code >= 400:
            try:
                body_text = (await response.aread()).decode("utf-8", errors="ignore")
            except httpx.HTTPError:
                body_text = ""
            finally:
                await response.aclose()
            error = classify_status(
                response.status_code, body_text, "streamGenerateContent"
            )
            if logger.isEnabledFor(logging.WARNING):
                logger.warning(
                    "streamGenerateContent with credential %s: %s",
                    credential.credential_id,
                    error.message,
                )
            raise error

        return CodeAssistStream(response, self.translator)

    async def onboard(self, credential: CredentialRecord) -> None:
        """Make sure the credential's project is onboarded to Code Assist.

        Does nothing when ``loadCodeAssist`` reports a current tier. Otherwise
        calls ``onboardUser`` with the default tier and polls the long-running
        operation until it is done.
        """
        project_id = credential.project_id
        metadata = get_client_metadata(project_id)
        load_data = await self._post(
            self._url("loadCodeAssist"),
            credential,
            {"cloudaicompanionProject": project_id, "metadata": metadata},
            "loadCodeAssist",
        )
        if isinstance(load_data, dict) and load_data.get("currentTier"):
            logger.debug("Credential %s already onboarded", credential.credential_id)
            return

        tier = LEGACY_TIER
        allowed = load_data.get("allowedTiers") if isinstance(load_data, dict) else None
        if isinstance(allowed, list):
            tier = next(
                (t for t in allowed if isinstance(t, dict) and t.get("isDefault")),
                LEGACY_TIER,
            )

        body = {
            "tierId": tier.get("id"),
            "cloudaicompanionProject": project_id,
            "metadata": metadata,
        }
        for _ in range(self.onboard_max_polls):
            operation = await self._post(
                self._url("onboardUser"), credential, body, "onboardUser"
            )
            if isinstance(operation, dict) and operation.get("done"):
                logger.info(
                    "Onboarded credential %s to project %s",
                    credential.credential_id,
                    project_id,
                )
                return
            await asyncio.sleep(self.onboard_poll_interval)

        raise UpstreamUnavailableError(
            "Onboarding did not complete",
            details={"credential_id": credential.credential_id},
        )
