"""Chroma-backed vector index with upsert, scoped query, and clear."""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import chromadb
from chromadb.config import Settings as ChromaSettings

from .errors import IndexUnavailable, IndexWriteError
from .types import IndexEntry, RetrievedPassage, ScopeFilter

logger = logging.getLogger(__name__)

# Upper bound on entries per upsert call; the client may report a lower one.
DEFAULT_MAX_BATCH = 1000

# Chroma clients opened on one path share process-wide state; opening them
# and creating collections concurrently fails, even across store instances.
_OPEN_LOCK = threading.Lock()


class ChromaVectorStore:
    """Stores and queries chunk embeddings in a named Chroma collection.

    Connects to a Chroma server when ``host`` is given, otherwise to an
    embedded persistent store under ``persist_dir``. Nothing is opened until
    :meth:`initialize` is called.
    """

    def __init__(
        self,
        collection_name: str,
        persist_dir: Optional[Path] = None,
        host: str = "",
        port: int = 8000,
        distance_space: str = "cosine",
        client: Any = None,
    ) -> None:
        self.collection_name = collection_name
        self.persist_dir = persist_dir
        self.host = host
        self.port = port
        self.distance_space = distance_space

        # Chroma types are not stable across versions; keep them as Any.
        self.client: Any = client
        self.collection: Any = None

    def _connect(self) -> Any:
        telemetry_off = ChromaSettings(anonymized_telemetry=False)
        if self.host:
            return chromadb.HttpClient(host=self.host, port=self.port, settings=telemetry_off)
        if self.persist_dir is None:
            raise IndexUnavailable("No Chroma host or persist directory configured")
        self.persist_dir.mkdir(parents=True, exist_ok=True)
        return chromadb.PersistentClient(path=str(self.persist_dir), settings=telemetry_off)

    def initialize(self) -> "ChromaVectorStore":
        """Connect to the collection, creating it if absent. Idempotent."""
        with _OPEN_LOCK:
            if self.collection is not None:
                return self
            try:
                if self.client is None:
                    self.client = self._connect()
                # get_or_create resolves concurrent creators to one collection.
                self.collection = self.client.get_or_create_collection(
                    name=self.collection_name,
                    metadata={"hnsw:space": self.distance_space},
                )
            except IndexUnavailable:
                raise
            except Exception as exc:
                raise IndexUnavailable(f"Cannot open collection '{self.collection_name}': {exc}") from exc
            logger.info("Connected to collection %s (%s distance)", self.collection_name, self.distance_space)
        return self

    def _require_collection(self) -> Any:
        if self.collection is None:
            raise IndexUnavailable("Vector store is not initialized; call initialize() first")
        return self.collection

    def _max_batch_size(self) -> int:
        getter = getattr(self.client, "get_max_batch_size", None)
        if callable(getter):
            try:
                return max(1, min(DEFAULT_MAX_BATCH, int(getter())))
            except Exception:
                logger.debug("Could not read max batch size from client", exc_info=True)
        return DEFAULT_MAX_BATCH

    @staticmethod
    def _as_float(value: object) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None

    def add(self, entries: List[IndexEntry]) -> int:
        """Upsert entries by id and return how many were written.

        Entries are written in batches. A rejected batch does not stop the
        remaining ones; after all batches, an :class:`IndexWriteError` names
        every id that was not written.
        """
        collection = self._require_collection()
        if not entries:
            return 0

        # Last write wins for duplicate ids inside one call.
        unique: Dict[str, IndexEntry] = {}
        for entry in entries:
            unique[entry.id] = entry
        pending = list(unique.values())

        batch_size = self._max_batch_size()
        written = 0
        failed_ids: List[str] = []
        last_error: Optional[BaseException] = None
        for start in range(0, len(pending), batch_size):
            batch = pending[start : start + batch_size]
            try:
                collection.upsert(
                    ids=[entry.id for entry in batch],
                    embeddings=[entry.vector for entry in batch],
                    documents=[entry.document for entry in batch],
                    metadatas=[entry.metadata for entry in batch],
                )
                written += len(batch)
            except Exception as exc:
                logger.error("Upsert of %d entries failed: %s", len(batch), exc)
                failed_ids.extend(entry.id for entry in batch)
                last_error = exc

        if failed_ids:
            raise IndexWriteError(failed_ids, written, last_error)
        return written

    def prune_source(self, file_name: str, keep_ids: Iterable[str], library_id: Optional[str] = None) -> int:
        """Delete a file's entries that are not in ``keep_ids``.

        Only entries of the same library (or with no library, when
        ``library_id`` is None) are considered. Returns how many were deleted.
        """
        collection = self._require_collection()
        keep = set(keep_ids)
        found: Dict[str, Any] = collection.get(where={"fileName": file_name}, include=["metadatas"])
        ids = found.get("ids") or []
        metadatas = found.get("metadatas") or [None] * len(ids)

        stale: List[str] = []
        for item_id, metadata in zip(ids, metadatas):
            owner = metadata.get("libraryId") if isinstance(metadata, dict) else None
            if (owner or None) == (library_id or None) and item_id not in keep:
                stale.append(item_id)

        if stale:
            collection.delete(ids=stale)
            logger.info("Removed %d stale entries for %s", len(stale), file_name)
        return len(stale)

    def query(
        self,
        vector: List[float],
        top_k: int = 4,
        scope: Optional[ScopeFilter] = None,
    ) -> List[RetrievedPassage]:
        """Return up to ``top_k`` passages ordered by ascending distance."""
        collection = self._require_collection()
        if top_k <= 0:
            return []

        total_items = collection.count()
        if total_items == 0:
            return []

        where: Optional[Dict[str, Any]] = None
        if scope:
            where = {key: value for key, value in scope.items() if value is not None}
            if len(where) > 1:
                where = {"$and": [{key: value} for key, value in where.items()]}
            where = where or None

        raw_results: Dict[str, Any] = collection.query(
            query_embeddings=[vector],
            n_results=min(top_k, total_items),
            where=where,
            include=["documents", "metadatas", "distances"],
        )

        def _first(key: str) -> List[Any]:
            value = raw_results.get(key) or [[]]
            return list(value[0]) if isinstance(value, list) and value and value[0] is not None else []

        ids = _first("ids")
        documents = _first("documents")
        metadatas = _first("metadatas")
        distances = _first("distances")

        passages: List[RetrievedPassage] = []
        for index, item_id in enumerate(ids):
            metadata = metadatas[index] if index < len(metadatas) else None
            passages.append(
                RetrievedPassage(
                    id=str(item_id),
                    page_content=str(documents[index] or "") if index < len(documents) else "",
                    metadata=dict(metadata) if isinstance(metadata, dict) else {},
                    score=self._as_float(distances[index]) if index < len(distances) else None,
                )
            )

        passages.sort(key=lambda p: p["score"] if p["score"] is not None else float("inf"))
        return passages[:top_k]

    def count(self) -> int:
        """Return number of stored entries."""
        return int(self._require_collection().count())

    def list_sources(self, limit: int = 50) -> List[str]:
        """List unique file names currently indexed."""
        if limit <= 0:
            return []

        all_items: Dict[str, Any] = self._require_collection().get(include=["metadatas"])
        raw_metadatas = all_items.get("metadatas") or []

        sources: List[str] = []
        for metadata in raw_metadatas:
            if isinstance(metadata, dict):
                name = metadata.get("fileName")
                if isinstance(name, str) and name.strip():
                    sources.append(name.strip())

        return sorted(set(sources))[:limit]

    def clear(self) -> None:
        """Delete the whole collection and recreate it empty. Irreversible."""
        self.initialize()
        with _OPEN_LOCK:
            try:
                self.client.delete_collection(name=self.collection_name)
            except Exception as exc:
                raise IndexUnavailable(f"Cannot delete collection '{self.collection_name}': {exc}") from exc
            self.collection = None
        logger.warning("Collection %s deleted", self.collection_name)
        self.initialize()
