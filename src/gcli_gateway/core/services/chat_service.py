"""
Retry orchestration for chat completions.

``ChatService.chat_completion`` serves one client request end to end:
acquire a credential, make sure it is fresh, call the upstream, and on a
credential-at-fault failure record it and try the next credential, up to
``max_retries`` attempts.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from gcli_gateway.core.common.exceptions import (
    GatewayError,
    NoAvailableCredentialError,
    UpstreamExhaustedError,
)
from gcli_gateway.core.common.logging_utils import get_logger
from gcli_gateway.core.config.app_config import FakeStreamConfig
from gcli_gateway.core.domain.chat import ChatRequest, ChatResponse
from gcli_gateway.core.domain.credentials import CredentialRecord
from gcli_gateway.core.domain.model_utils import DecodedModel, decode_model
from gcli_gateway.core.interfaces.model_bases import InternalDTO
from gcli_gateway.core.interfaces.upstream_caller_interface import (
    IUpstreamCaller,
    IUpstreamStream,
)
from gcli_gateway.core.services.credential_manager import CredentialManager
from gcli_gateway.core.services.streaming import (
    ChatStream,
    heartbeat_stream,
    passthrough,
)
from gcli_gateway.core.services.translation_service import TranslationService

logger = get_logger(__name__)

T = TypeVar("T")


def _is_credential_fault(error: GatewayError) -> bool:
    return error.kind is not None and error.kind.is_credential_fault


@dataclass
class RetryContext(InternalDTO):
    """Per-request retry state; never shared between requests."""

    attempt: int = 0
    tried: set[str] = field(default_factory=set)
    used: list[str] = field(default_factory=list)
    last_error: GatewayError | None = None

    def mark_tried(self, credential_id: str) -> None:
        if credential_id not in self.tried:
            self.tried.add(credential_id)
            self.used.append(credential_id)


class ChatService:
    """Serves chat completions over the credential pool."""

    def __init__(
        self,
        credential_manager: CredentialManager,
        upstream: IUpstreamCaller,
        translator: TranslationService,
        *,
        max_retries: int = 3,
        fake_stream_config: FakeStreamConfig | None = None,
        onboard_credentials: bool = True,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._manager = credential_manager
        self._upstream = upstream
        self._translator = translator
        self.max_retries = max_retries
        self.fake_stream_config = fake_stream_config or FakeStreamConfig()
        self.onboard_credentials = onboard_credentials

    def decode(self, model: str) -> DecodedModel:
        return decode_model(model, self.fake_stream_config.suffix)

    async def chat_completion(
        self, request: ChatRequest, context: RetryContext | None = None
    ) -> ChatResponse | ChatStream:
        """Serve one chat completion request.

        Returns a ``ChatResponse`` for ``stream=false`` and a ``ChatStream``
        otherwise. Non-streaming requests never open an upstream stream.
        A synthesized stream is returned at once; its upstream call runs while
        the stream is consumed and a failure there ends it with a
        ``StreamError``.

        Raises:
            TranslationError: The request (or the upstream payload) is malformed
            NoAvailableCredentialError: The pool had no eligible credential
            UpstreamExhaustedError: Every attempt failed
        """
        ctx = context if context is not None else RetryContext()
        request = self._translator.normalize_request(request)
        decoded = self.decode(request.model)
        upstream_request = self._translator.to_upstream(request, decoded)
        model = decoded.upstream_model

        if request.stream and not decoded.is_synthesized:
            stream: IUpstreamStream = await self._call_with_retries(
                lambda credential: self._upstream.open_stream(
                    credential, upstream_request, model
                ),
                ctx,
                model=request.model,
            )
            return passthrough(stream, self._translator, model=request.model)

        async def answer() -> ChatResponse:
            response = await self._call_with_retries(
                lambda credential: self._upstream.generate(
                    credential, upstream_request, model
                ),
                ctx,
                model=request.model,
            )
            return self._translator.from_upstream(response, request.model, request)

        if not request.stream:
            return await answer()

        config = self.fake_stream_config
        return ChatStream(
            heartbeat_stream(
                answer,
                model=request.model,
                max_fragment_length=config.max_fragment_length,
                pacing_delay=config.pacing_delay,
                keepalive_interval=config.keepalive_interval,
            )
        )

    async def _call_with_retries(
        self,
        call: Callable[[CredentialRecord], Awaitable[T]],
        ctx: RetryContext,
        *,
        model: str,
    ) -> T:
        while True:
            try:
                credential = self._manager.acquire(ctx.tried)
            except NoAvailableCredentialError as e:
                if ctx.attempt == 0:
                    logger.warning("No credential available", model=model)
                    raise
                raise self._exhausted(ctx, model) from e

            credential_id = credential.credential_id
            ctx.mark_tried(credential_id)

            try:
                credential = await self._manager.ensure_fresh(credential_id)
            except GatewayError as e:
                if not _is_credential_fault(e):
                    raise
                # ensure_fresh has already recorded the failure
                self._note_failure(ctx, credential_id, e, model)
                if ctx.attempt >= self.max_retries:
                    raise self._exhausted(ctx, model) from e
                continue

            try:
                if self.onboard_credentials and not credential.onboarded:
                    await self._upstream.onboard(credential)
                    self._manager.mark_onboarded(credential_id)
                result = await call(credential)
            except GatewayError as e:
                if not _is_credential_fault(e):
                    raise
                assert e.kind is not None
                self._manager.record_error(credential_id, e.kind)
                self._note_failure(ctx, credential_id, e, model)
                if ctx.attempt >= self.max_retries:
                    raise self._exhausted(ctx, model) from e
                continue

            self._manager.record_success(credential_id)
            logger.debug(
                "Upstream call succeeded",
                model=model,
                credential_id=credential_id,
                attempt=ctx.attempt + 1,
            )
            return result

    @staticmethod
    def _note_failure(
        ctx: RetryContext, credential_id: str, error: GatewayError, model: str
    ) -> None:
        ctx.attempt += 1
        ctx.last_error = error
        logger.warning(
            "Upstream attempt failed",
            model=model,
            credential_id=credential_id,
            attempt=ctx.attempt,
            kind=error.kind.value if error.kind else None,
            error=error.message,
        )

    def _exhausted(self, ctx: RetryContext, model: str) -> UpstreamExhaustedError:
        last = ctx.last_error
        logger.error(
            "Upstream exhausted",
            model=model,
            attempts=ctx.attempt,
            tried=ctx.used,
        )
        return UpstreamExhaustedError(
            details={
                "attempts": ctx.attempt,
                "tried": list(ctx.used),
                "last_error": (
                    {"kind": last.kind.value if last.kind else None, "message": last.message}
                    if last is not None
                    else None
                ),
            },
            last_error=last,
        )
