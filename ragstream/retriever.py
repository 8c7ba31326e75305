"""Retrieval helpers."""
from __future__ import annotations

import logging
from typing import List, Optional

from .types import EmbeddingModel, RetrievedPassage, ScopeFilter
from .vector_store import ChromaVectorStore

logger = logging.getLogger(__name__)


def scope_for(library_id: Optional[str]) -> Optional[ScopeFilter]:
    """Build a scope filter for a library id, or ``None`` for the whole index."""
    return ScopeFilter(libraryId=library_id) if library_id else None


def retrieve_top_k(
    query: str,
    embedding_model: EmbeddingModel,
    vector_store: ChromaVectorStore,
    k: int = 4,
    scope: Optional[ScopeFilter] = None,
) -> List[RetrievedPassage]:
    """Embed a query and fetch the top-k nearest passages.

    Raises:
        EmbeddingServiceError: If the query cannot be embedded.
    """
    query_embedding = embedding_model.embed(query)
    passages = vector_store.query(query_embedding, top_k=k, scope=scope)
    logger.info("Retrieved %d passages (k=%d, scope=%s)", len(passages), k, scope or "all")
    return passages
