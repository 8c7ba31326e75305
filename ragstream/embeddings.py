"""HTTP client for the external embedding service."""
from __future__ import annotations

import logging
from typing import Any, List, Optional

import httpx

from .errors import EmbeddingServiceError

logger = logging.getLogger(__name__)


class OllamaEmbeddingClient:
    """Embeds one text per request via ``POST {embed_url}`` with ``{model, prompt}``.

    The underlying ``httpx.Client`` is thread-safe, so a single instance can
    serve the ingestion worker pool.
    """

    def __init__(
        self,
        embed_url: str,
        model_name: str,
        timeout_seconds: float = 30.0,
        dimension: int = 0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.embed_url = embed_url
        self.model_name = model_name
        self.dimension = dimension
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds))

    def embed(self, text: str) -> List[float]:
        """Return the embedding vector for ``text``.

        Raises:
            EmbeddingServiceError: On transport failure, non-success status,
                or a body without a numeric ``embedding`` list.
        """
        try:
            response = self._client.post(
                self.embed_url,
                json={"model": self.model_name, "prompt": text},
            )
        except httpx.HTTPError as exc:
            raise EmbeddingServiceError(f"Embedding request to {self.embed_url} failed: {exc}") from exc

        if response.status_code >= 400:
            raise EmbeddingServiceError(
                f"Embedding service returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            body: Any = response.json()
        except ValueError as exc:
            raise EmbeddingServiceError("Embedding service returned a non-JSON body") from exc

        vector = body.get("embedding") if isinstance(body, dict) else None
        if not isinstance(vector, list) or not vector:
            raise EmbeddingServiceError("Embedding service response is missing 'embedding'")
        if not all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in vector):
            raise EmbeddingServiceError("Embedding vector contains non-numeric values")
        if self.dimension and len(vector) != self.dimension:
            raise EmbeddingServiceError(
                f"Embedding dimension {len(vector)} does not match configured dimension {self.dimension}"
            )
        return [float(x) for x in vector]

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
            logger.debug("Embedding client closed")
