from __future__ import annotations

import threading
import uuid
from pathlib import Path
from typing import Dict, List

import pytest

from ragstream.errors import EmbeddingServiceError, IndexUnavailable, UnsupportedFileType
from ragstream.ingestion import IngestionPipeline, build_chunks, chunk_id, extract_text
from ragstream.types import IndexEntry
from ragstream.vector_store import ChromaVectorStore

DOC_TEXT = (
    "The vacation policy grants twenty days per year. Unused days roll over once. "
    "Requests must be filed two weeks ahead. Managers approve requests within three days."
)


class FakeEmbeddingModel:
    def __init__(self, fail_on: str = "") -> None:
        self.fail_on = fail_on
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def embed(self, text: str) -> List[float]:
        with self._lock:
            self.calls.append(text)
        if self.fail_on and self.fail_on in text:
            raise EmbeddingServiceError("embedding service returned HTTP 500")
        return [1.0, float(len(text) % 7)]


class FakeVectorStore:
    def __init__(self) -> None:
        self.entries: Dict[str, IndexEntry] = {}
        self.add_calls: List[List[str]] = []
        self.initialized = 0

    def initialize(self) -> "FakeVectorStore":
        self.initialized += 1
        return self

    def add(self, entries: List[IndexEntry]) -> int:
        self.add_calls.append([entry.id for entry in entries])
        for entry in entries:
            self.entries[entry.id] = entry
        return len(entries)

    def prune_source(self, file_name: str, keep_ids, library_id=None) -> int:
        keep = set(keep_ids)
        stale = [
            entry_id
            for entry_id, entry in self.entries.items()
            if entry.metadata.get("fileName") == file_name
            and entry.metadata.get("libraryId") == library_id
            and entry_id not in keep
        ]
        for entry_id in stale:
            del self.entries[entry_id]
        return len(stale)


class UnavailableVectorStore(FakeVectorStore):
    def initialize(self) -> "FakeVectorStore":
        raise IndexUnavailable("connection refused")


def _write_docs(directory: Path, count: int) -> List[Path]:
    paths = []
    for index in range(count):
        path = directory / f"doc{index + 1}.txt"
        path.write_text(f"Document number {index + 1}. {DOC_TEXT}", encoding="utf-8")
        paths.append(path)
    return paths


def test_build_chunks_assigns_deterministic_ids_and_metadata(tmp_path: Path) -> None:
    path = tmp_path / "policy.md"
    chunks = build_chunks(DOC_TEXT, path, chunk_size=60, chunk_overlap=20, timestamp="2024-01-01T00:00:00+00:00")

    assert len(chunks) >= 2
    for index, chunk in enumerate(chunks):
        assert chunk.id == f"policy.md_chunk_{index}"
        assert chunk.metadata["fileName"] == "policy.md"
        assert chunk.metadata["chunkIndex"] == index
        assert chunk.metadata["fileType"] == ".md"
        assert chunk.metadata["source"] == str(path)
        assert "libraryId" not in chunk.metadata

    again = build_chunks(DOC_TEXT, path, chunk_size=60, chunk_overlap=20)
    assert [chunk.id for chunk in again] == [chunk.id for chunk in chunks]
    assert [chunk.text for chunk in again] == [chunk.text for chunk in chunks]


def test_build_chunks_library_scope(tmp_path: Path) -> None:
    chunks = build_chunks(DOC_TEXT, tmp_path / "a.txt", chunk_size=60, chunk_overlap=20, library_id="hr")

    assert chunks[0].id == "hr/a.txt_chunk_0"
    assert all(chunk.metadata["libraryId"] == "hr" for chunk in chunks)
    assert chunk_id("a.txt", 3) == "a.txt_chunk_3"


def test_extract_text_rejects_unsupported_extension(tmp_path: Path) -> None:
    path = tmp_path / "image.png"
    path.write_bytes(b"\x89PNG")
    with pytest.raises(UnsupportedFileType):
        extract_text(path)


def test_extract_text_reads_json_as_text(tmp_path: Path) -> None:
    path = tmp_path / "data.json"
    path.write_text('{"content": "Hello there. General Kenobi."}', encoding="utf-8")
    assert "General Kenobi" in extract_text(path)


def test_ingest_files_continues_after_unreadable_file(tmp_path: Path) -> None:
    paths = _write_docs(tmp_path, 5)
    paths[2].unlink()
    store = FakeVectorStore()
    pipeline = IngestionPipeline(FakeEmbeddingModel(), store, chunk_size=80, chunk_overlap=20, max_workers=3)

    report = pipeline.ingest_files(paths)

    assert len(report.processed) == 4
    assert list(report.failed) == [str(paths[2])]
    assert not report.ok
    assert report.total_chunks == len(store.entries)
    assert not any(entry_id.startswith("doc3.txt") for entry_id in store.entries)
    # One index write per successful file.
    assert len(store.add_calls) == 4


def test_ingest_files_skips_unsupported_types(tmp_path: Path) -> None:
    good = _write_docs(tmp_path, 1)[0]
    bad = tmp_path / "slides.pptx"
    bad.write_bytes(b"binary")
    store = FakeVectorStore()

    report = IngestionPipeline(FakeEmbeddingModel(), store, chunk_size=80, chunk_overlap=20).ingest_files([bad, good])

    assert report.skipped == [str(bad)]
    assert report.processed == [str(good)]
    assert report.ok
    assert report.total_chunks > 0


def test_ingest_files_records_embedding_failure_per_file(tmp_path: Path) -> None:
    paths = _write_docs(tmp_path, 3)
    paths[1].write_text("Poison pill sentence BOOM here. " + DOC_TEXT, encoding="utf-8")
    store = FakeVectorStore()

    report = IngestionPipeline(
        FakeEmbeddingModel(fail_on="BOOM"), store, chunk_size=80, chunk_overlap=20
    ).ingest_files(paths)

    assert set(report.failed) == {str(paths[1])}
    assert "HTTP 500" in report.failed[str(paths[1])]
    assert len(report.processed) == 2
    assert not any(entry_id.startswith("doc2.txt") for entry_id in store.entries)


def test_ingest_files_embeds_in_chunk_order(tmp_path: Path) -> None:
    path = _write_docs(tmp_path, 1)[0]
    store = FakeVectorStore()
    embedder = FakeEmbeddingModel()

    IngestionPipeline(embedder, store, chunk_size=60, chunk_overlap=20, max_workers=4).ingest_files([path])

    for entry_id, entry in store.entries.items():
        assert entry.vector == [1.0, float(len(entry.document) % 7)]
        assert entry.metadata["chunkIndex"] == int(entry_id.rsplit("_", 1)[1])


def test_ingest_files_propagates_index_unavailable(tmp_path: Path) -> None:
    paths = _write_docs(tmp_path, 1)
    pipeline = IngestionPipeline(FakeEmbeddingModel(), UnavailableVectorStore())

    with pytest.raises(IndexUnavailable):
        pipeline.ingest_files(paths)


def test_ingest_files_empty_list_is_noop() -> None:
    store = FakeVectorStore()
    report = IngestionPipeline(FakeEmbeddingModel(), store).ingest_files([])

    assert report.total_chunks == 0
    assert store.initialized == 0


def test_ingest_directory_only_reads_top_level_files(tmp_path: Path) -> None:
    _write_docs(tmp_path, 2)
    nested = tmp_path / "library-a"
    nested.mkdir()
    (nested / "inner.txt").write_text(DOC_TEXT, encoding="utf-8")
    store = FakeVectorStore()

    report = IngestionPipeline(FakeEmbeddingModel(), store, chunk_size=80, chunk_overlap=20).ingest_directory(tmp_path)

    assert sorted(Path(p).name for p in report.processed) == ["doc1.txt", "doc2.txt"]
    assert not any(entry_id.startswith("inner.txt") for entry_id in store.entries)


def test_ingest_directory_requires_directory(tmp_path: Path) -> None:
    with pytest.raises(NotADirectoryError):
        IngestionPipeline(FakeEmbeddingModel(), FakeVectorStore()).ingest_directory(tmp_path / "missing")


def test_reingesting_same_files_does_not_duplicate_entries(tmp_path: Path) -> None:
    docs = tmp_path / "docs"
    docs.mkdir()
    paths = _write_docs(docs, 2)
    store = ChromaVectorStore(f"test_{uuid.uuid4().hex}", persist_dir=tmp_path / "chroma")
    pipeline = IngestionPipeline(FakeEmbeddingModel(), store, chunk_size=80, chunk_overlap=20)

    first = pipeline.ingest_files(paths)
    count_after_first = store.count()
    second = pipeline.ingest_files(paths)

    assert first.total_chunks == second.total_chunks == count_after_first
    assert store.count() == count_after_first


def test_reingesting_shorter_file_drops_old_tail_chunks(tmp_path: Path) -> None:
    doc = tmp_path / "policy.txt"
    doc.write_text(DOC_TEXT * 3, encoding="utf-8")
    store = ChromaVectorStore(f"test_{uuid.uuid4().hex}", persist_dir=tmp_path / "chroma")
    pipeline = IngestionPipeline(FakeEmbeddingModel(), store, chunk_size=80, chunk_overlap=20)

    first = pipeline.ingest_files([doc])
    doc.write_text("The vacation policy grants twenty days per year.", encoding="utf-8")
    second = pipeline.ingest_files([doc])

    assert first.total_chunks > second.total_chunks == 1
    assert store.count() == 1
    assert store.query([1.0, 0.0], top_k=4)[0]["id"] == "policy.txt_chunk_0"


def test_reingest_prunes_only_the_same_library(tmp_path: Path) -> None:
    doc = tmp_path / "policy.txt"
    doc.write_text(DOC_TEXT, encoding="utf-8")
    store = FakeVectorStore()
    for entry_id, metadata in (
        ("policy.txt_chunk_9", {"fileName": "policy.txt"}),
        ("hr/policy.txt_chunk_9", {"fileName": "policy.txt", "libraryId": "hr"}),
    ):
        store.entries[entry_id] = IndexEntry(id=entry_id, vector=[1.0, 0.0], document="old", metadata=metadata)

    IngestionPipeline(FakeEmbeddingModel(), store, chunk_size=80, chunk_overlap=20).ingest_files([doc], library_id="hr")

    assert "hr/policy.txt_chunk_9" not in store.entries
    assert "policy.txt_chunk_9" in store.entries
    assert "hr/policy.txt_chunk_0" in store.entries
