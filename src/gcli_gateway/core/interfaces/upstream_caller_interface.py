from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from gcli_gateway.core.domain.credentials import CredentialRecord
from gcli_gateway.core.domain.gemini import UpstreamRequest, UpstreamResponse


class IUpstreamStream(ABC):
    """Lazy, finite, non-restartable sequence of upstream increments.

    Iteration raises a classified ``GatewayError`` on failure. ``aclose``
    releases the upstream connection and is safe to call more than once.
    """

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[UpstreamResponse]:
        pass

    @abstractmethod
    async def aclose(self) -> None:
        pass


class IUpstreamCaller(ABC):
    """Issues one upstream call with a given credential.

    Failures are raised as ``CredentialAuthError``, ``RateLimitedError``,
    ``UpstreamUnavailableError`` or ``TranslationError``.
    """

    @abstractmethod
    async def generate(
        self, credential: CredentialRecord, request: UpstreamRequest, model: str
    ) -> UpstreamResponse:
        pass

    @abstractmethod
    async def open_stream(
        self, credential: CredentialRecord, request: UpstreamRequest, model: str
    ) -> IUpstreamStream:
        pass

    @abstractmethod
    async def onboard(self, credential: CredentialRecord) -> None:
        pass
