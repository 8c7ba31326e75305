from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from ragstream.errors import StreamUpstreamFailure
from ragstream.generation import ChatMessage, GenerationSettings, OllamaChatClient, with_system_prompt
from ragstream.prompts import DEFAULT_SYSTEM_PROMPT

GENERATE_URL = "http://ollama.test/v1/chat/completions"


def _client(handler) -> OllamaChatClient:
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return OllamaChatClient(GENERATE_URL, "deepseek-r1:7b", GenerationSettings(temperature=0.2), client=http)


def test_stream_chat_yields_upstream_bytes_and_sends_options() -> None:
    requests: List[dict] = []
    body = [b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n', b"data: [DONE]\n\n"]

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(200, content=iter(body))

    chunks = list(_client(handler).stream_chat([ChatMessage(role="user", content="hello")]))

    assert b"".join(chunks) == b"".join(body)
    sent = requests[0]
    assert sent["model"] == "deepseek-r1:7b"
    assert sent["stream"] is True
    assert sent["options"]["temperature"] == 0.2
    assert sent["messages"][0] == {"role": "system", "content": DEFAULT_SYSTEM_PROMPT}
    assert sent["messages"][1] == {"role": "user", "content": "hello"}


def test_stream_chat_is_lazy() -> None:
    calls: List[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(200, content=b"data: [DONE]\n\n")

    stream = _client(handler).stream_chat([ChatMessage(role="user", content="hello")])
    assert calls == []
    list(stream)
    assert calls == [1]


@pytest.mark.parametrize(("status", "fragment"), [(404, "not found"), (400, "Invalid parameters"), (500, "server error")])
def test_stream_chat_raises_upstream_failure_on_error_status(status: int, fragment: str) -> None:
    client = _client(lambda request: httpx.Response(status, text="boom"))

    with pytest.raises(StreamUpstreamFailure, match=fragment) as excinfo:
        list(client.stream_chat([ChatMessage(role="user", content="hello")]))
    assert excinfo.value.status_code == status


def test_stream_chat_wraps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(StreamUpstreamFailure):
        list(_client(handler).stream_chat([ChatMessage(role="user", content="hello")]))


def test_with_system_prompt_keeps_existing_system_message() -> None:
    messages = [ChatMessage(role="system", content="custom"), ChatMessage(role="user", content="q")]
    assert with_system_prompt(messages) == messages


def test_stream_chat_reports_timeouts_as_gateway_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("no response", request=request)

    with pytest.raises(StreamUpstreamFailure, match="timed out") as excinfo:
        list(_client(handler).stream_chat([ChatMessage(role="user", content="hello")]))

    assert excinfo.value.status_code == 504
