from __future__ import annotations

import asyncio
import json

import pytest

from gcli_gateway.core.common.exceptions import RateLimitedError, UpstreamExhaustedError
from gcli_gateway.core.domain.chat import (
    ChatResponse,
    ChatUsage,
    StreamChunk,
    StreamError,
    StreamKeepAlive,
)
from gcli_gateway.core.services.streaming import (
    SSE_DONE,
    SSE_KEEPALIVE,
    ChatStream,
    encode_sse,
    fake_stream,
    fragment_text,
    heartbeat_stream,
    passthrough,
    sse_event_stream,
)
from gcli_gateway.core.services.translation_service import TranslationService
from tests.unit.fakes import FakeStream, upstream_text


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestFragmentText:
    def test_fixed_width_slices(self) -> None:
        assert fragment_text("Hello world", 5) == ["Hello", " worl", "d"]

    def test_empty_text(self) -> None:
        assert fragment_text("", 5) == []

    def test_multibyte_text_is_split_by_character(self) -> None:
        assert fragment_text("你好世界", 3) == ["你好世", "界"]

    def test_invalid_length(self) -> None:
        with pytest.raises(ValueError):
            fragment_text("abc", 0)


class TestFakeStream:
    @pytest.mark.asyncio
    async def test_hello_world_fragments(self) -> None:
        sleep = RecordingSleep()
        chunks = [
            c
            async for c in fake_stream(
                "Hello world", model="m", max_fragment_length=5, pacing_delay=0.01, sleep=sleep
            )
        ]

        assert [c.content for c in chunks] == ["Hello", " worl", "d", ""]
        assert chunks[0].choices[0].delta.role == "assistant"
        assert all(c.choices[0].delta.role is None for c in chunks[1:])
        assert [c.finish_reason for c in chunks] == [None, None, None, "stop"]
        assert len({c.id for c in chunks}) == 1
        assert sleep.delays == [0.01, 0.01, 0.01]

    @pytest.mark.asyncio
    async def test_is_deterministic(self) -> None:
        text = "The quick brown fox jumps over the lazy dog. " * 5
        runs = []
        for _ in range(2):
            runs.append(
                [
                    c.content
                    async for c in fake_stream(text, model="m", max_fragment_length=7, pacing_delay=0)
                ]
            )
        assert runs[0] == runs[1]
        assert "".join(runs[0]) == text

    @pytest.mark.asyncio
    async def test_empty_text_still_terminates(self) -> None:
        chunks = [c async for c in fake_stream("", model="m", pacing_delay=0)]
        assert len(chunks) == 2
        assert chunks[0].choices[0].delta.role == "assistant"
        assert chunks[-1].finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_reasoning_and_usage(self) -> None:
        usage = ChatUsage(prompt_tokens=3, completion_tokens=2, total_tokens=5)
        chunks = [
            c
            async for c in fake_stream(
                "answer",
                model="m",
                pacing_delay=0,
                reasoning_text="thinking",
                usage=usage,
                completion_id="chatcmpl-fixed",
            )
        ]
        assert chunks[0].choices[0].delta.reasoning_content == "thinking"
        assert chunks[-1].usage == usage
        assert {c.id for c in chunks} == {"chatcmpl-fixed"}

    @pytest.mark.asyncio
    async def test_early_close_stops_the_generator(self) -> None:
        stream = fake_stream("a" * 100, model="m", max_fragment_length=1, pacing_delay=0)
        first = await stream.__anext__()
        await stream.aclose()
        assert first.content == "a"
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()


class TestPassthrough:
    @pytest.mark.asyncio
    async def test_relays_in_order_and_closes(self) -> None:
        upstream = FakeStream(
            [
                upstream_text("one ", finish_reason=None),
                upstream_text("two ", finish_reason=None),
                upstream_text("three", finish_reason="STOP"),
            ]
        )
        items = [i async for i in passthrough(upstream, TranslationService(), model="m")]

        assert [i.content for i in items] == ["one ", "two ", "three"]
        assert items[-1].finish_reason == "stop"
        assert upstream.closed

    @pytest.mark.asyncio
    async def test_adds_stop_when_upstream_sends_none(self) -> None:
        upstream = FakeStream([upstream_text("text", finish_reason=None)])
        items = [i async for i in passthrough(upstream, TranslationService(), model="m")]
        assert items[-1].finish_reason == "stop"
        assert items[-1].content == ""

    @pytest.mark.asyncio
    async def test_mid_stream_error_becomes_terminal_event(self) -> None:
        upstream = FakeStream(
            [upstream_text("partial", finish_reason=None)], error=RateLimitedError("quota")
        )
        items = [i async for i in passthrough(upstream, TranslationService(), model="m")]

        assert isinstance(items[0], StreamChunk)
        assert isinstance(items[-1], StreamError)
        assert items[-1].message == "quota"
        assert items[-1].code == 429
        assert upstream.closed

    @pytest.mark.asyncio
    async def test_consumer_disconnect_closes_upstream(self) -> None:
        upstream = FakeStream([upstream_text(str(i), finish_reason=None) for i in range(10)])
        relay = passthrough(upstream, TranslationService(), model="m")

        await relay.__anext__()
        await relay.aclose()

        assert upstream.closed
        assert upstream.yielded == 1

    @pytest.mark.asyncio
    async def test_close_before_iteration_closes_upstream(self) -> None:
        upstream = FakeStream([upstream_text("unread")])
        relay = passthrough(upstream, TranslationService(), model="m")

        await relay.aclose()
        await relay.aclose()

        assert upstream.closed
        assert upstream.yielded == 0
        assert [i async for i in relay] == []


class TestChatStream:
    @pytest.mark.asyncio
    async def test_without_upstream(self) -> None:
        stream = ChatStream(fake_stream("hi", model="m", pacing_delay=0))
        items = [i async for i in stream]
        await stream.aclose()
        assert [i.content for i in items] == ["hi", ""]
        assert stream.closed


async def answered(text: str) -> ChatResponse:
    return TranslationService().from_upstream(upstream_text(text), "m", None)


class TestHeartbeatStream:
    @pytest.mark.asyncio
    async def test_heartbeat_then_fragments(self) -> None:
        items = [
            i
            async for i in heartbeat_stream(
                lambda: answered("Hello world"),
                model="m",
                max_fragment_length=5,
                pacing_delay=0,
            )
        ]

        assert items[0].choices[0].delta.role == "assistant"
        assert [i.content for i in items] == ["", "Hello", " worl", "d", ""]
        assert all(i.choices[0].delta.role is None for i in items[1:])
        assert items[-1].finish_reason == "stop"
        assert len({i.id for i in items}) == 1

    @pytest.mark.asyncio
    async def test_keepalive_until_answer_arrives(self) -> None:
        release = asyncio.Event()

        async def slow_answer() -> ChatResponse:
            await release.wait()
            return await answered("late")

        stream = heartbeat_stream(
            slow_answer, model="m", pacing_delay=0, keepalive_interval=0.01
        )
        await stream.__anext__()
        assert isinstance(await stream.__anext__(), StreamKeepAlive)
        assert isinstance(await stream.__anext__(), StreamKeepAlive)

        release.set()
        rest = [i async for i in stream if not isinstance(i, StreamKeepAlive)]
        assert "".join(i.content for i in rest) == "late"

    @pytest.mark.asyncio
    async def test_failure_becomes_error_event(self) -> None:
        async def failing() -> ChatResponse:
            raise UpstreamExhaustedError(details={"tried": ["a"]})

        items = [i async for i in heartbeat_stream(failing, model="m")]

        assert len(items) == 2
        assert isinstance(items[1], StreamError)
        assert items[1].code == 502

    @pytest.mark.asyncio
    async def test_close_cancels_pending_answer(self) -> None:
        cancelled = asyncio.Event()

        async def never() -> ChatResponse:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.set()
                raise
            raise AssertionError("unreachable")

        stream = heartbeat_stream(never, model="m", keepalive_interval=0.01)
        await stream.__anext__()
        await stream.__anext__()
        await stream.aclose()

        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_answer_is_not_requested_before_iteration(self) -> None:
        calls = []

        async def answer() -> ChatResponse:
            calls.append(1)
            return await answered("x")

        stream = ChatStream(heartbeat_stream(answer, model="m"))
        await stream.aclose()
        assert calls == []


class TestSse:
    def test_encode_chunk(self) -> None:
        chunk = StreamChunk.model_validate(
            {
                "id": "chatcmpl-1",
                "created": 1,
                "model": "m",
                "choices": [{"index": 0, "delta": {"content": "hi"}}],
            }
        )
        encoded = encode_sse(chunk)
        assert encoded.startswith(b"data: ")
        assert encoded.endswith(b"\n\n")
        payload = json.loads(encoded[len(b"data: ") :])
        assert payload["object"] == "chat.completion.chunk"
        assert payload["choices"][0] == {
            "index": 0,
            "delta": {"content": "hi"},
            "finish_reason": None,
        }

    def test_encode_keepalive(self) -> None:
        assert encode_sse(StreamKeepAlive()) == SSE_KEEPALIVE == b": keep-alive\n\n"

    def test_encode_error(self) -> None:
        encoded = encode_sse(StreamError(message="boom", code=503))
        payload = json.loads(encoded[len(b"data: ") :])
        assert payload == {"error": {"message": "boom", "type": "upstream_error", "code": 503}}

    @pytest.mark.asyncio
    async def test_event_stream_ends_with_done(self) -> None:
        frames = [
            f
            async for f in sse_event_stream(
                fake_stream("Hello", model="m", max_fragment_length=5, pacing_delay=0)
            )
        ]
        assert frames[-1] == SSE_DONE
        assert len(frames) == 3
