"""
Streaming helpers.

The native relay (``passthrough``) and the synthesized stream
(``heartbeat_stream`` over ``fake_stream``) are lazy, finite and not
restartable. Both are handed out as a ``ChatStream`` whose ``aclose()``
releases the upstream even when iteration never started.
``sse_event_stream`` frames them as server-sent events.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable

from gcli_gateway.core.common.exceptions import GatewayError
from gcli_gateway.core.domain.chat import (
    ChatResponse,
    ChatUsage,
    StreamChoice,
    StreamChunk,
    StreamDelta,
    StreamError,
    StreamKeepAlive,
    new_completion_id,
)
from gcli_gateway.core.interfaces.upstream_caller_interface import IUpstreamStream
from gcli_gateway.core.services.translation_service import TranslationService

logger = logging.getLogger(__name__)

StreamItem = StreamChunk | StreamError | StreamKeepAlive

SSE_DONE = b"data: [DONE]\n\n"
SSE_KEEPALIVE = b": keep-alive\n\n"


class ChatStream:
    """Stream of chunks handed to the transport.

    ``aclose()`` closes the item generator and then ``upstream``; it may be
    called before, during or after iteration, any number of times.
    """

    def __init__(
        self,
        items: AsyncGenerator[StreamItem, None],
        upstream: IUpstreamStream | None = None,
    ) -> None:
        self._items = items
        self._upstream = upstream
        self.closed = False

    def __aiter__(self) -> ChatStream:
        return self

    async def __anext__(self) -> StreamItem:
        if self.closed:
            raise StopAsyncIteration
        return await self._items.__anext__()

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._items.aclose()
        finally:
            if self._upstream is not None:
                await self._upstream.aclose()


def fragment_text(text: str, max_len: int) -> list[str]:
    """Cut ``text`` into consecutive slices of at most ``max_len`` characters.

    >>> fragment_text("Hello world", 5)
    ['Hello', ' worl', 'd']
    """
    if max_len < 1:
        raise ValueError("max_len must be at least 1")
    return [text[i : i + max_len] for i in range(0, len(text), max_len)]


def _chunk(
    completion_id: str,
    created: int,
    model: str,
    delta: StreamDelta,
    finish_reason: str | None = None,
    usage: ChatUsage | None = None,
) -> StreamChunk:
    return StreamChunk(
        id=completion_id,
        created=created,
        model=model,
        choices=[StreamChoice(index=0, delta=delta, finish_reason=finish_reason)],
        usage=usage,
    )


async def fake_stream(
    full_text: str,
    *,
    model: str,
    max_fragment_length: int = 20,
    pacing_delay: float = 0.05,
    completion_id: str | None = None,
    reasoning_text: str | None = None,
    usage: ChatUsage | None = None,
    include_role: bool = True,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AsyncGenerator[StreamChunk, None]:
    """Emit a complete answer as a synthesized chunk sequence.

    The first chunk carries the assistant role (unless ``include_role`` is
    false) with the first fragment and the reasoning text, if any. Later
    chunks carry content only, and a final empty delta carries
    ``finish_reason="stop"`` and the optional usage.
    """
    completion_id = completion_id or new_completion_id()
    created = int(time.time())
    fragments = fragment_text(full_text, max_fragment_length) or [""]

    for i, fragment in enumerate(fragments):
        if i == 0:
            delta = StreamDelta(
                role="assistant" if include_role else None,
                content=fragment,
                reasoning_content=reasoning_text or None,
            )
        else:
            await sleep(pacing_delay)
            delta = StreamDelta(content=fragment)
        yield _chunk(completion_id, created, model, delta)

    await sleep(pacing_delay)
    yield _chunk(completion_id, created, model, StreamDelta(), "stop", usage)


async def heartbeat_stream(
    answer: Callable[[], Awaitable[ChatResponse]],
    *,
    model: str,
    max_fragment_length: int = 20,
    pacing_delay: float = 0.05,
    keepalive_interval: float = 15.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AsyncGenerator[StreamItem, None]:
    """Synthesized stream for an answer that is produced in one piece.

    An empty assistant chunk goes out before ``answer()`` is awaited, then a
    ``StreamKeepAlive`` every ``keepalive_interval`` seconds until it
    completes. The answer is then emitted through ``fake_stream``. A
    ``GatewayError`` from ``answer()`` ends the sequence with a
    ``StreamError``; closing the sequence early cancels the pending answer.
    """
    completion_id = new_completion_id()
    created = int(time.time())
    yield _chunk(completion_id, created, model, StreamDelta(role="assistant", content=""))

    task = asyncio.ensure_future(answer())
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=keepalive_interval)
            if done:
                break
            yield StreamKeepAlive()
        response = task.result()
    except GatewayError as e:
        logger.warning("Synthesized stream failed before the answer: %s", e.message)
        yield StreamError(message=e.message, type=e.error_type, code=e.status_code)
        return
    finally:
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    message = response.choices[0].message
    async for chunk in fake_stream(
        message.content or "",
        model=model,
        max_fragment_length=max_fragment_length,
        pacing_delay=pacing_delay,
        completion_id=completion_id,
        reasoning_text=message.reasoning_content,
        usage=response.usage,
        include_role=False,
        sleep=sleep,
    ):
        yield chunk


async def _relay(
    upstream: IUpstreamStream,
    translator: TranslationService,
    model: str,
    completion_id: str,
) -> AsyncGenerator[StreamItem, None]:
    created = int(time.time())
    first = True
    finished = False
    try:
        async for increment in upstream:
            chunk = translator.to_stream_chunk(
                increment,
                model,
                completion_id,
                include_role=first,
                created=created,
            )
            if chunk is None:
                continue
            first = False
            if chunk.finish_reason is not None:
                finished = True
            yield chunk
        if not finished:
            yield _chunk(completion_id, created, model, StreamDelta(), "stop")
    except GatewayError as e:
        logger.warning("Upstream stream failed after it started: %s", e.message)
        yield StreamError(message=e.message, type=e.error_type, code=e.status_code)
    finally:
        await upstream.aclose()


def passthrough(
    upstream: IUpstreamStream,
    translator: TranslationService,
    *,
    model: str,
    completion_id: str | None = None,
) -> ChatStream:
    """Relay upstream increments as chunks, in arrival order.

    A failure after the stream started ends the sequence with a
    ``StreamError``. The upstream stream is closed however the sequence ends,
    including when the consumer stops early or never starts.
    """
    return ChatStream(
        _relay(upstream, translator, model, completion_id or new_completion_id()),
        upstream,
    )


def encode_sse(item: StreamItem) -> bytes:
    """Frame one chunk or error event as ``data: <json>\\n\\n``.

    Keep-alive markers become an SSE comment line.
    """
    if isinstance(item, StreamKeepAlive):
        return SSE_KEEPALIVE
    payload = item.to_payload()
    return f"data: {json.dumps(payload, ensure_ascii=False, separators=(',', ':'))}\n\n".encode()


async def sse_event_stream(items: AsyncIterator[StreamItem]) -> AsyncGenerator[bytes, None]:
    """Frame a chunk sequence as server-sent events, ending with ``[DONE]``."""
    try:
        async for item in items:
            yield encode_sse(item)
        yield SSE_DONE
    finally:
        aclose = getattr(items, "aclose", None)
        if aclose is not None:
            await aclose()
