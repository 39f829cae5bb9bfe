"""Tests for the OpenAI-compatible HTTP adapter."""

import json
from typing import (
    Any,
    Dict,
    Iterator,
    List,
)

import pytest
from fastapi.testclient import TestClient

from modelrelay.agent.engine import Engine
from modelrelay.api.app import (
    app,
    get_engine,
)
from modelrelay.core.signals import ToolInvocation
from tests.helpers import (
    FakeBackend,
    ScriptedToolBackend,
)

WEATHER_TOOL = {
    "type": "function",
    "function": {
        "name": "get_weather",
        "description": "Current weather",
        "parameters": {"type": "object", "properties": {"city": {"type": "string"}}},
    },
}


@pytest.fixture
def client_for() -> Iterator[Any]:
    def _make(*backends) -> TestClient:
        engine = Engine(list(backends))
        app.dependency_overrides[get_engine] = lambda: engine
        return TestClient(app)

    yield _make
    app.dependency_overrides.clear()


def _body(**overrides) -> Dict[str, Any]:
    body: Dict[str, Any] = {"model": "fake/model", "messages": [{"role": "user", "content": "hi"}]}
    body.update(overrides)
    return body


def _events(text: str) -> List[str]:
    return [line[len("data: ") :] for line in text.splitlines() if line.startswith("data: ")]


def test_health(client_for) -> None:
    """Health lists every backend with its availability."""

    client = client_for(FakeBackend("up"), FakeBackend("down", available=False))

    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "backends": {"up": True, "down": False}}


def test_models(client_for) -> None:
    """Only available backends contribute models."""

    client = client_for(
        FakeBackend("a", models=["m1", "m2"]), FakeBackend("b", available=False, models=["m3"])
    )

    data = client.get("/v1/models").json()

    assert data["object"] == "list"
    assert [(m["id"], m["owned_by"]) for m in data["data"]] == [("m1", "a"), ("m2", "a")]


def test_completion(client_for) -> None:
    """A non-streaming request returns one assistant message."""

    client = client_for(FakeBackend(deltas=["Hel", "lo"]))

    resp = client.post("/v1/chat/completions", json=_body())

    assert resp.status_code == 200
    data = resp.json()
    assert data["id"].startswith("chatcmpl-")
    assert data["object"] == "chat.completion"
    assert data["model"] == "fake/model"
    choice = data["choices"][0]
    assert choice["message"] == {"role": "assistant", "content": "Hello"}
    assert choice["finish_reason"] == "stop"
    assert data["usage"]["total_tokens"] == data["usage"]["prompt_tokens"] + data["usage"]["completion_tokens"]


def test_completion_with_tool_call(client_for) -> None:
    """A tool call is returned as tool_calls with finish_reason tool_calls."""

    invocation = ToolInvocation(tool_name="get_weather", arguments_json='{"city": "SF"}')
    client = client_for(ScriptedToolBackend([[invocation]]))

    resp = client.post("/v1/chat/completions", json=_body(tools=[WEATHER_TOOL]))

    choice = resp.json()["choices"][0]
    assert choice["finish_reason"] == "tool_calls"
    call = choice["message"]["tool_calls"][0]
    assert call["id"].startswith("call_")
    assert call["function"] == {"name": "get_weather", "arguments": '{"city": "SF"}'}


def test_streaming(client_for) -> None:
    """SSE stream: role chunk, content chunks, final chunk, then [DONE]."""

    client = client_for(FakeBackend(deltas=["a", "b", "c"]))

    resp = client.post("/v1/chat/completions", json=_body(stream=True))

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = _events(resp.text)
    assert events[-1] == "[DONE]"
    chunks = [json.loads(e) for e in events[:-1]]
    assert chunks[0]["choices"][0]["delta"]["role"] == "assistant"
    assert "".join(c["choices"][0]["delta"].get("content", "") for c in chunks) == "abc"
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    assert len({c["id"] for c in chunks}) == 1


def test_streaming_tool_call(client_for) -> None:
    """A streamed tool call is one tool_calls chunk followed by finish_reason tool_calls."""

    invocation = ToolInvocation(
        tool_name="get_weather", arguments_json='{"city": "SF"}', tool_call_id="call_abc"
    )
    client = client_for(ScriptedToolBackend([["Let me check. ", invocation, "ignored"]]))

    resp = client.post("/v1/chat/completions", json=_body(stream=True, tools=[WEATHER_TOOL]))

    chunks = [json.loads(e) for e in _events(resp.text)[:-1]]
    deltas = [c["choices"][0]["delta"] for c in chunks]
    assert deltas[1]["content"] == "Let me check. "
    assert deltas[2]["tool_calls"][0]["id"] == "call_abc"
    assert deltas[2]["tool_calls"][0]["function"]["name"] == "get_weather"
    assert chunks[-1]["choices"][0]["finish_reason"] == "tool_calls"
    assert not any("ignored" == d.get("content") for d in deltas)


@pytest.mark.parametrize("stream", [False, True])
def test_unknown_model_is_404(client_for, stream) -> None:
    """Routing failures are reported before any streaming starts."""

    client = client_for(FakeBackend(default=False, models=["x"]))

    resp = client.post("/v1/chat/completions", json=_body(model="missing", stream=stream))

    assert resp.status_code == 404
    assert "missing" in resp.json()["detail"]


def test_invalid_tool_choice_is_400(client_for) -> None:
    """A tool_choice that names no function is a client error."""

    client = client_for(FakeBackend())

    resp = client.post(
        "/v1/chat/completions",
        json=_body(tools=[WEATHER_TOOL], tool_choice={"type": "function"}),
    )

    assert resp.status_code == 400


def test_content_parts_are_flattened(client_for) -> None:
    """List-of-parts content is joined into text; inline images are decoded."""

    backend = FakeBackend()
    client = client_for(backend)
    content = [
        {"type": "text", "text": "look"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,aGVsbG8="}},
    ]

    client.post("/v1/chat/completions", json=_body(messages=[{"role": "user", "content": content}]))

    message = backend.requests[0].messages[-1]
    assert message.content == "look"
    assert message.images == [b"hello"]
