"""Streaming client for an OpenAI-compatible chat completion endpoint."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Literal, Optional, TypedDict

import httpx

from .errors import StreamUpstreamFailure
from .prompts import DEFAULT_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

# Reported for upstream timeouts, which carry no HTTP status of their own.
GATEWAY_TIMEOUT = 504


class ChatMessage(TypedDict):
    role: Literal["system", "user", "assistant"]
    content: str


@dataclass
class GenerationSettings:
    """Sampling options forwarded to the model."""

    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    max_tokens: int = 2048
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0

    def to_options(self) -> Dict[str, float]:
        return {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "num_predict": self.max_tokens,
            "presence_penalty": self.presence_penalty,
            "frequency_penalty": self.frequency_penalty,
        }


def with_system_prompt(messages: List[ChatMessage]) -> List[ChatMessage]:
    """Prepend the default system message unless one is already present."""
    if any(message["role"] == "system" for message in messages):
        return list(messages)
    return [ChatMessage(role="system", content=DEFAULT_SYSTEM_PROMPT), *messages]


def _describe_failure(status_code: int, model: str, body: str) -> str:
    if status_code == 404:
        return f"Model '{model}' was not found; make sure it is installed"
    if status_code == 400:
        return f"Invalid parameters for model '{model}': {body}"
    if status_code >= 500:
        return f"Generation server error, model '{model}' may have failed to load: {body}"
    return f"Generation request failed (HTTP {status_code}): {body}"


class OllamaChatClient:
    """Opens a streaming chat completion and yields the raw response bytes."""

    def __init__(
        self,
        generate_url: str,
        model_name: str,
        settings: Optional[GenerationSettings] = None,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.generate_url = generate_url
        self.model_name = model_name
        self.settings = settings or GenerationSettings()
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds))

    def stream_chat(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        settings: Optional[GenerationSettings] = None,
    ) -> Iterator[bytes]:
        """Yield the upstream byte stream chunk by chunk.

        The request is sent lazily, on the first ``next()``. Closing the
        generator closes the upstream response.

        Raises:
            StreamUpstreamFailure: On transport errors or a non-success status.
        """
        selected_model = model or self.model_name
        payload = {
            "model": selected_model,
            "messages": with_system_prompt(messages),
            "stream": True,
            "options": (settings or self.settings).to_options(),
        }
        logger.debug("Opening generation stream to %s (model=%s)", self.generate_url, selected_model)
        try:
            with self._client.stream(
                "POST",
                self.generate_url,
                json=payload,
                headers={"Cache-Control": "no-cache, no-store"},
            ) as response:
                if response.status_code >= 400:
                    body = response.read().decode("utf-8", errors="replace")[:500]
                    logger.error("Generation service returned %d: %s", response.status_code, body)
                    raise StreamUpstreamFailure(
                        _describe_failure(response.status_code, selected_model, body),
                        status_code=response.status_code,
                    )
                for chunk in response.iter_bytes():
                    if chunk:
                        yield chunk
        except httpx.TimeoutException as exc:
            raise StreamUpstreamFailure(
                f"Request to model '{selected_model}' timed out: {exc}", status_code=GATEWAY_TIMEOUT
            ) from exc
        except httpx.HTTPError as exc:
            raise StreamUpstreamFailure(f"Generation request to {self.generate_url} failed: {exc}") from exc

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
