from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from gcli_gateway.core.app.application_factory import build_app
from gcli_gateway.core.common.exceptions import RateLimitedError
from gcli_gateway.core.config.app_config import AppConfig
from gcli_gateway.core.services.state_store import InMemoryStateStore
from tests.unit.fakes import FakeClock, FakeRefresher, FakeStream, FakeUpstream, make_seed, upstream_text

PASSWORD = "test-password"
AUTH = {"Authorization": f"Bearer {PASSWORD}"}
FAR_FUTURE = datetime(2100, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig(
        password=PASSWORD,
        credentials_dir=str(tmp_path),
        usage_estimator="chars",
        fake_stream={"max_fragment_length": 4, "pacing_delay": 0},
        models=["gemini-2.5-pro", "gemini-2.5-flash"],
        max_retries=2,
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream(default=upstream_text("Hello world"))


@pytest.fixture
def make_client(config, upstream, state_store: InMemoryStateStore):
    def _make(ids=("a", "b")) -> TestClient:
        app = build_app(
            config,
            credentials=[make_seed(i, expiry=FAR_FUTURE) for i in ids],
            state_store=state_store,
            refresher=FakeRefresher(FakeClock()),
            upstream=upstream,
        )
        return TestClient(app)

    return _make


@pytest.fixture
def client(make_client):
    with make_client() as c:
        yield c


def chat_body(model: str = "gemini-2.5-pro", stream: bool = False) -> dict:
    return {
        "model": model,
        "messages": [{"role": "user", "content": "Hi"}],
        "stream": stream,
    }


def sse_payloads(text: str) -> list:
    return [line[len("data: ") :] for line in text.splitlines() if line.startswith("data: ")]


class TestAuth:
    def test_health_needs_no_password(self, client) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": "Bearer wrong"}, {"Authorization": PASSWORD}],
    )
    def test_rejected(self, client, headers) -> None:
        response = client.get("/v1/models", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["type"] == "authentication_error"

    def test_rejected_chat(self, client, upstream) -> None:
        response = client.post("/v1/chat/completions", json=chat_body())
        assert response.status_code == 403
        assert upstream.calls == []

    def test_rejected_token_is_logged_redacted(self, client, caplog) -> None:
        with caplog.at_level("WARNING", logger="gcli_gateway.core.security.middleware"):
            client.get("/v1/models", headers={"Authorization": "Bearer wrong-password-123"})
        messages = [r.getMessage() for r in caplog.records]
        assert any("wr***23" in m for m in messages)
        assert not any("wrong-password-123" in m for m in messages)


class TestModels:
    def test_list_models(self, client) -> None:
        response = client.get("/v1/models", headers=AUTH)
        assert response.status_code == 200
        data = response.json()
        assert data["object"] == "list"
        assert [m["id"] for m in data["data"]] == [
            "gemini-2.5-pro",
            "gemini-2.5-pro-假流式",
            "gemini-2.5-flash",
            "gemini-2.5-flash-假流式",
        ]
        assert all(m["object"] == "model" for m in data["data"])


class TestChatCompletions:
    def test_non_streaming(self, client) -> None:
        response = client.post("/v1/chat/completions", json=chat_body(), headers=AUTH)
        assert response.status_code == 200
        data = response.json()
        assert data["object"] == "chat.completion"
        assert data["model"] == "gemini-2.5-pro"
        assert data["choices"][0]["message"] == {"role": "assistant", "content": "Hello world"}
        assert data["choices"][0]["finish_reason"] == "stop"
        assert data["usage"]["total_tokens"] > 0

    def test_synthesized_stream(self, client, upstream) -> None:
        response = client.post(
            "/v1/chat/completions",
            json=chat_body("gemini-2.5-pro-假流式", stream=True),
            headers=AUTH,
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        payloads = sse_payloads(response.text)
        assert payloads[-1] == "[DONE]"
        chunks = [json.loads(p) for p in payloads[:-1]]
        assert chunks[0]["choices"][0]["delta"] == {"role": "assistant", "content": ""}
        text = "".join(c["choices"][0]["delta"].get("content", "") for c in chunks)
        assert text == "Hello world"
        assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
        assert [method for method, _, _ in upstream.calls] == ["generate"]

    def test_native_stream(self, client, upstream) -> None:
        upstream.outcomes["a"] = [
            FakeStream(
                [upstream_text("Hi ", finish_reason=None), upstream_text("there")]
            )
        ]
        response = client.post(
            "/v1/chat/completions", json=chat_body(stream=True), headers=AUTH
        )
        payloads = sse_payloads(response.text)
        assert payloads[-1] == "[DONE]"
        chunks = [json.loads(p) for p in payloads[:-1]]
        assert chunks[0]["choices"][0]["delta"]["role"] == "assistant"
        assert "".join(c["choices"][0]["delta"].get("content", "") for c in chunks) == "Hi there"

    def test_mid_stream_error_event(self, client, upstream) -> None:
        upstream.outcomes["a"] = [
            FakeStream([upstream_text("Hi", finish_reason=None)], error=RateLimitedError("quota"))
        ]
        response = client.post(
            "/v1/chat/completions", json=chat_body(stream=True), headers=AUTH
        )
        payloads = sse_payloads(response.text)
        assert payloads[-1] == "[DONE]"
        assert json.loads(payloads[-2])["error"]["code"] == 429

    def test_upstream_exhausted(self, client, upstream) -> None:
        upstream.outcomes = {"a": [RateLimitedError()], "b": [RateLimitedError()]}
        response = client.post("/v1/chat/completions", json=chat_body(), headers=AUTH)
        assert response.status_code == 502
        error = response.json()["error"]
        assert error["type"] == "upstream_exhausted"
        assert error["details"]["tried"] == ["a", "b"]

    def test_no_credentials(self, make_client) -> None:
        with make_client(ids=()) as client:
            response = client.post("/v1/chat/completions", json=chat_body(), headers=AUTH)
        assert response.status_code == 503
        assert response.json()["error"]["type"] == "no_available_credential"

    def test_invalid_body(self, client) -> None:
        response = client.post(
            "/v1/chat/completions", json={"model": "gemini-2.5-pro"}, headers=AUTH
        )
        assert response.status_code == 422
        assert response.json()["error"]["type"] == "invalid_request_error"

    def test_empty_messages_are_rejected(self, client, upstream) -> None:
        body = chat_body()
        body["messages"] = [{"role": "user", "content": ""}]
        response = client.post("/v1/chat/completions", json=body, headers=AUTH)
        assert response.status_code == 400
        assert response.json()["error"]["type"] == "invalid_request_error"
        assert upstream.calls == []


class TestCredentialStatus:
    def test_status_report(self, client) -> None:
        client.post("/v1/chat/completions", json=chat_body(), headers=AUTH)
        response = client.get("/v1/credentials/status", headers=AUTH)
        assert response.status_code == 200
        report = response.json()
        assert report["pool_size"] == 2
        assert report["credentials"][0]["success_count"] == 1
        assert "ya29" not in response.text

    def test_shutdown_flushes_state(self, make_client, state_store) -> None:
        with make_client() as client:
            client.post("/v1/chat/completions", json=chat_body(), headers=AUTH)
        assert state_store.load()["a"].success_count == 1
