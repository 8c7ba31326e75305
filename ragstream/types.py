"""Shared type declarations for chunks, index entries, and retrieval results."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, TypedDict, Union

MetadataValue = Union[str, int, float, bool]


class ChunkMetadata(TypedDict, total=False):
    """Positional metadata stored next to every chunk."""

    source: str
    fileName: str
    chunkIndex: int
    fileType: str
    timestamp: str
    libraryId: str


@dataclass(frozen=True)
class Chunk:
    """A bounded passage of source text with its metadata."""

    id: str
    text: str
    metadata: ChunkMetadata


@dataclass
class EmbeddedChunk:
    """A chunk paired with its embedding vector, ready for the index."""

    chunk: Chunk
    vector: List[float]


@dataclass
class IndexEntry:
    """Persisted form of a chunk inside the vector index."""

    id: str
    vector: List[float]
    document: str
    metadata: Dict[str, MetadataValue] = field(default_factory=dict)

    @classmethod
    def from_embedded(cls, embedded: EmbeddedChunk) -> "IndexEntry":
        return cls(
            id=embedded.chunk.id,
            vector=embedded.vector,
            document=embedded.chunk.text,
            metadata=dict(embedded.chunk.metadata),
        )


class RetrievedPassage(TypedDict):
    """Single passage returned by a vector index query.

    ``score`` is a raw distance: lower means more similar.
    """

    id: str
    page_content: str
    metadata: Dict[str, MetadataValue]
    score: Optional[float]


class ScopeFilter(TypedDict, total=False):
    """Metadata equality predicate restricting retrieval to one library."""

    libraryId: str


class SourceSummary(TypedDict):
    """Reduced passage sent to the caller in the sources frame."""

    fileName: str
    chunkIndex: int
    score: Optional[float]
    content: str


class EmbeddingModel(Protocol):
    def embed(self, text: str) -> List[float]:
        ...
