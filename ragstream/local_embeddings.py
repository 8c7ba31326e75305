"""In-process embeddings with sentence-transformers (``EMBEDDING_BACKEND=local``)."""
from __future__ import annotations

import logging
import threading
from typing import List

from sentence_transformers import SentenceTransformer

from .errors import EmbeddingServiceError

logger = logging.getLogger(__name__)


class LocalEmbeddingModel:
    """Same ``embed`` contract as the HTTP client, without a server.

    Ingestion calls ``embed`` from a worker pool; encoding is serialized
    because a loaded model is not safe to share across threads.
    """

    def __init__(self, model_name: str, dimension: int = 0) -> None:
        logger.info("Loading sentence-transformers model %s", model_name)
        self.model = SentenceTransformer(model_name)
        self.model_name = model_name
        self.dimension = dimension
        self._lock = threading.Lock()

    def embed(self, text: str) -> List[float]:
        with self._lock:
            try:
                encoded = self.model.encode(
                    [text],
                    convert_to_numpy=True,
                    normalize_embeddings=True,
                    show_progress_bar=False,
                )
            except (RuntimeError, ValueError) as exc:
                raise EmbeddingServiceError(f"Local model {self.model_name} failed: {exc}") from exc
        vector = [float(value) for value in encoded[0].tolist()]
        if not vector:
            raise EmbeddingServiceError(f"Local model {self.model_name} returned an empty embedding")
        if self.dimension and len(vector) != self.dimension:
            raise EmbeddingServiceError(
                f"Embedding dimension mismatch: expected {self.dimension}, got {len(vector)}"
            )
        return vector

    def close(self) -> None:
        """Nothing to release; present for parity with the HTTP client."""
