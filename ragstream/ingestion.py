"""Document loading, chunk construction, and corpus ingestion."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pdfplumber

from .chunking import iter_chunks
from .errors import EmbeddingServiceError, IndexUnavailable, IndexWriteError, UnsupportedFileType
from .types import Chunk, ChunkMetadata, EmbeddedChunk, EmbeddingModel, IndexEntry
from .vector_store import ChromaVectorStore

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {".txt", ".md", ".json"}
SUPPORTED_EXTENSIONS = TEXT_EXTENSIONS | {".pdf"}


def extract_text_from_pdf(file_path: Path) -> str:
    """Extract plain text from a PDF file page-by-page."""
    page_text_parts: List[str] = []
    with pdfplumber.open(file_path) as pdf:
        for page in pdf.pages:
            page_text = page.extract_text() or ""
            if page_text.strip():
                page_text_parts.append(page_text.strip())
    return "\n".join(page_text_parts).strip()


def extract_text(file_path: Path) -> str:
    """Extract raw text from supported file types."""
    suffix = file_path.suffix.lower()
    if suffix == ".pdf":
        return extract_text_from_pdf(file_path)
    if suffix in TEXT_EXTENSIONS:
        return file_path.read_text(encoding="utf-8")
    raise UnsupportedFileType(str(file_path), suffix)


def chunk_id(file_name: str, chunk_index: int, library_id: Optional[str] = None) -> str:
    """Deterministic id so re-ingesting a file overwrites its previous chunks."""
    base = f"{file_name}_chunk_{chunk_index}"
    return f"{library_id}/{base}" if library_id else base


def build_chunks(
    text: str,
    file_path: Path,
    chunk_size: int = 512,
    chunk_overlap: int = 64,
    library_id: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> List[Chunk]:
    """Chunk ``text`` and attach positional metadata for ``file_path``."""
    file_name = file_path.name
    stamp = timestamp or datetime.now(timezone.utc).isoformat()
    chunks: List[Chunk] = []
    for index, chunk_text in enumerate(iter_chunks(text, chunk_size=chunk_size, chunk_overlap=chunk_overlap)):
        metadata = ChunkMetadata(
            source=str(file_path),
            fileName=file_name,
            chunkIndex=index,
            fileType=file_path.suffix.lower(),
            timestamp=stamp,
        )
        if library_id:
            metadata["libraryId"] = library_id
        chunks.append(Chunk(id=chunk_id(file_name, index, library_id), text=chunk_text, metadata=metadata))
    return chunks


@dataclass
class IngestionReport:
    """Aggregate outcome of one ingestion run."""

    total_chunks: int = 0
    processed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary(self) -> str:
        return (
            f"{self.total_chunks} chunks from {len(self.processed)} files "
            f"({len(self.skipped)} skipped, {len(self.failed)} failed)"
        )


class IngestionPipeline:
    """Reads documents, chunks and embeds them, and writes them to the index.

    Embedding calls for one file run on a bounded thread pool; their results
    are joined before a single ``add`` call per file. A failing file is
    recorded in the report and the run continues with the next one.
    """

    def __init__(
        self,
        embedding_model: EmbeddingModel,
        vector_store: ChromaVectorStore,
        chunk_size: int = 512,
        chunk_overlap: int = 64,
        max_workers: int = 4,
    ) -> None:
        self.embedding_model = embedding_model
        self.vector_store = vector_store
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.max_workers = max(1, max_workers)

    def ingest_directory(self, docs_dir: Path, library_id: Optional[str] = None) -> IngestionReport:
        """Ingest every regular file directly under ``docs_dir``."""
        if not docs_dir.is_dir():
            raise NotADirectoryError(f"Not a directory: {docs_dir}")
        files = sorted(path for path in docs_dir.iterdir() if path.is_file())
        logger.info("Found %d files in %s", len(files), docs_dir)
        return self.ingest_files(files, library_id=library_id)

    def ingest_files(self, file_paths: Iterable[Path], library_id: Optional[str] = None) -> IngestionReport:
        """Ingest an explicit list of files, e.g. right after an upload."""
        paths = [Path(path) for path in file_paths]
        report = IngestionReport()
        if not paths:
            return report

        # IndexUnavailable propagates: nothing can be written without a collection.
        self.vector_store.initialize()

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="embed") as executor:
            for path in paths:
                self._ingest_one(path, library_id, executor, report)

        logger.info("Ingestion finished: %s", report.summary())
        return report

    def _ingest_one(
        self,
        path: Path,
        library_id: Optional[str],
        executor: ThreadPoolExecutor,
        report: IngestionReport,
    ) -> None:
        name = str(path)
        try:
            if path.suffix.lower() not in SUPPORTED_EXTENSIONS:
                raise UnsupportedFileType(name, path.suffix.lower())
            text = extract_text(path)
            chunks = build_chunks(
                text,
                path,
                chunk_size=self.chunk_size,
                chunk_overlap=self.chunk_overlap,
                library_id=library_id,
            )
            if not chunks:
                logger.info("No chunks produced for %s", path.name)
                self.vector_store.prune_source(path.name, [], library_id=library_id)
                report.processed.append(name)
                return

            vectors = list(executor.map(self.embedding_model.embed, [chunk.text for chunk in chunks]))
            entries = [
                IndexEntry.from_embedded(EmbeddedChunk(chunk=chunk, vector=vector))
                for chunk, vector in zip(chunks, vectors)
            ]
            written = self.vector_store.add(entries)
            # A shorter re-ingested file must not leave its old tail chunks behind.
            self.vector_store.prune_source(path.name, [entry.id for entry in entries], library_id=library_id)
        except UnsupportedFileType as exc:
            logger.warning("Skipping %s", exc)
            report.skipped.append(name)
            return
        except IndexUnavailable:
            raise
        except (OSError, UnicodeDecodeError, EmbeddingServiceError, IndexWriteError) as exc:
            logger.error("Failed to ingest %s: %s", name, exc)
            report.failed[name] = str(exc)
            return
        except Exception as exc:
            # Parser errors from pdfplumber/pdfminer have no common base class.
            logger.exception("Unexpected error while ingesting %s", name)
            report.failed[name] = str(exc)
            return

        report.total_chunks += written
        report.processed.append(name)
        logger.info("Ingested %s: %d chunks", path.name, written)
