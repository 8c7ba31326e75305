from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from ragstream.embeddings import OllamaEmbeddingClient
from ragstream.errors import EmbeddingServiceError

EMBED_URL = "http://ollama.test/api/embeddings"


def _client(handler, dimension: int = 0) -> OllamaEmbeddingClient:
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return OllamaEmbeddingClient(EMBED_URL, "bge-m3", dimension=dimension, client=http)


def test_embed_posts_model_and_prompt() -> None:
    seen: List[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"embedding": [0.1, 0.2, 3]})

    vector = _client(handler).embed("hello world")

    assert vector == [0.1, 0.2, 3.0]
    assert seen == [{"model": "bge-m3", "prompt": "hello world"}]


def test_embed_raises_on_error_status() -> None:
    client = _client(lambda request: httpx.Response(500, text="model crashed"))
    with pytest.raises(EmbeddingServiceError, match="HTTP 500"):
        client.embed("text")


@pytest.mark.parametrize(
    "body",
    [b"not json", b'{"embeddings": [1.0]}', b'{"embedding": []}', b'{"embedding": ["a", "b"]}', b"[1, 2]"],
)
def test_embed_raises_on_malformed_body(body: bytes) -> None:
    client = _client(lambda request: httpx.Response(200, content=body))
    with pytest.raises(EmbeddingServiceError):
        client.embed("text")


def test_embed_raises_on_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(EmbeddingServiceError, match="failed"):
        _client(handler).embed("text")


def test_embed_enforces_configured_dimension() -> None:
    client = _client(lambda request: httpx.Response(200, json={"embedding": [1.0, 2.0]}), dimension=3)
    with pytest.raises(EmbeddingServiceError, match="dimension"):
        client.embed("text")
