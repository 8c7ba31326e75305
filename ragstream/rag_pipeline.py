"""End-to-end RAG pipeline orchestration."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from .config import Settings
from .embeddings import OllamaEmbeddingClient
from .errors import StreamUpstreamFailure
from .generation import ChatMessage, GenerationSettings, OllamaChatClient
from .ingestion import IngestionPipeline, IngestionReport
from .prompts import NO_RELEVANT_INFO_MESSAGE, build_grounded_prompt, build_tagging_prompt
from .retriever import retrieve_top_k, scope_for
from .stream_parser import ParserState, StreamParser, StreamUpdate, consume_stream
from .streaming import AnswerStream, static_answer_frames, summarize_sources
from .types import EmbeddingModel, RetrievedPassage
from .vector_store import ChromaVectorStore

logger = logging.getLogger(__name__)


class AnswerGenerator(Protocol):
    def stream_chat(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        settings: Optional[GenerationSettings] = None,
    ) -> Iterable[bytes]:
        ...


class RAGPipeline:
    """Coordinates ingestion, retrieval, and streamed answer generation.

    All collaborators are injected; build one instance per process and call
    :meth:`initialize` before serving queries.
    """

    def __init__(
        self,
        settings: Settings,
        embedding_model: EmbeddingModel,
        vector_store: ChromaVectorStore,
        answer_generator: Optional[AnswerGenerator] = None,
    ) -> None:
        self.settings = settings
        self.embedding_model = embedding_model
        self.vector_store = vector_store
        self.answer_generator = answer_generator
        self.ingestion = IngestionPipeline(
            embedding_model,
            vector_store,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            max_workers=settings.embed_workers,
        )

    def initialize(self) -> "RAGPipeline":
        self.vector_store.initialize()
        return self

    def close(self) -> None:
        for resource in (self.embedding_model, self.answer_generator):
            closer = getattr(resource, "close", None)
            if callable(closer):
                closer()

    def ingest_files(self, file_paths: Iterable[Path], library_id: Optional[str] = None) -> IngestionReport:
        return self.ingestion.ingest_files(file_paths, library_id=library_id)

    def ingest_directory(self, docs_dir: Optional[Path] = None) -> IngestionReport:
        return self.ingestion.ingest_directory(docs_dir or self.settings.docs_dir)

    def retrieve(
        self,
        query: str,
        top_k: Optional[int] = None,
        library_id: Optional[str] = None,
    ) -> List[RetrievedPassage]:
        """Retrieve the most relevant passages for a query."""
        self.vector_store.initialize()
        k = top_k or self.settings.top_k
        return retrieve_top_k(query, self.embedding_model, self.vector_store, k=k, scope=scope_for(library_id))

    def stream_answer(
        self,
        question: str,
        top_k: Optional[int] = None,
        library_id: Optional[str] = None,
    ) -> AnswerStream:
        """Retrieve context and return the outbound answer stream.

        Retrieval runs eagerly, so embedding and index errors raise here,
        before any frame is produced. Generation errors surface inside the
        stream as an error frame.
        """
        passages = self.retrieve(question, top_k=top_k, library_id=library_id)
        if not passages:
            logger.info("No passages found; answering without generation")
            return AnswerStream([], static_answer_frames(NO_RELEVANT_INFO_MESSAGE))

        if self.answer_generator is None:
            raise RuntimeError("Answer generator is not configured.")

        prompt = build_grounded_prompt(question, passages)
        upstream = self.answer_generator.stream_chat([ChatMessage(role="user", content=prompt)])
        sources = summarize_sources(passages, preview_chars=self.settings.source_preview_chars)
        return AnswerStream(sources, upstream)

    def answer_question(
        self,
        question: str,
        top_k: Optional[int] = None,
        library_id: Optional[str] = None,
        on_update: Optional[Callable[[StreamUpdate], None]] = None,
    ) -> ParserState:
        """Run the full round trip in-process and return the scanned answer."""
        parser = StreamParser(on_update=on_update)
        stream = self.stream_answer(question, top_k=top_k, library_id=library_id)
        try:
            return consume_stream(stream, parser)
        except KeyboardInterrupt:
            stream.close()
            parser.cancel()
            return parser.state

    def stream_chat(self, messages: List[ChatMessage], model: Optional[str] = None) -> AnswerStream:
        """Stream a multi-turn conversation straight to the model, without retrieval.

        The upstream request is opened before returning, so a rejected
        request raises :class:`StreamUpstreamFailure` here rather than
        inside the stream.
        """
        if self.answer_generator is None:
            raise RuntimeError("Answer generator is not configured.")
        upstream = self.answer_generator.stream_chat(list(messages), model=model)
        return AnswerStream(None, upstream).prime()

    def chat(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        on_update: Optional[Callable[[StreamUpdate], None]] = None,
    ) -> ParserState:
        """Run one chat turn in-process and return the scanned reply."""
        parser = StreamParser(on_update=on_update)
        try:
            stream = self.stream_chat(messages, model=model)
        except StreamUpstreamFailure as exc:
            parser.fail(str(exc))
            return parser.state
        try:
            return consume_stream(stream, parser)
        except KeyboardInterrupt:
            stream.close()
            parser.cancel()
            return parser.state

    def tag_document(self, document: Dict[str, Any]) -> Tuple[Dict[str, Any], List[StreamUpdate]]:
        """Ask the model to add a ``tags`` list to a JSON document.

        The reply is only parsed once the stream ends. When generation fails
        or the reply is not a JSON object, the input document is returned
        with an ``error`` field instead.
        """
        if self.answer_generator is None:
            raise RuntimeError("Answer generator is not configured.")
        updates: List[StreamUpdate] = []
        parser = StreamParser(mode="json", on_update=updates.append)
        prompt = build_tagging_prompt(document)
        try:
            state = consume_stream(self.answer_generator.stream_chat([ChatMessage(role="user", content=prompt)]), parser)
        except StreamUpstreamFailure as exc:
            parser.fail(str(exc))
            state = parser.state

        parsed = state.json_result or {}
        if state.role == "error" or "raw" in parsed:
            result = dict(document)
            result["error"] = state.error or str(parsed.get("error", "Generation failed."))
            return result, updates
        return parsed, updates


def build_embedding_model(settings: Settings) -> EmbeddingModel:
    if settings.embedding_backend == "local":
        from .local_embeddings import LocalEmbeddingModel

        return LocalEmbeddingModel(settings.embedding_model_name, dimension=settings.embedding_dimension)
    return OllamaEmbeddingClient(
        embed_url=settings.embed_url,
        model_name=settings.embedding_model_name,
        timeout_seconds=settings.request_timeout_seconds,
        dimension=settings.embedding_dimension,
    )


def build_pipeline(settings: Settings, with_generator: bool = True) -> RAGPipeline:
    """Wire the default HTTP clients and Chroma store from settings."""
    vector_store = ChromaVectorStore(
        collection_name=settings.collection_name,
        persist_dir=settings.chroma_dir,
        host=settings.chroma_host,
        port=settings.chroma_port,
        distance_space=settings.distance_space,
    )
    answer_generator = None
    if with_generator:
        answer_generator = OllamaChatClient(
            generate_url=settings.generate_url,
            model_name=settings.generation_model_name,
            settings=GenerationSettings(
                temperature=settings.temperature,
                top_p=settings.top_p,
                top_k=settings.top_k_sampling,
                max_tokens=settings.max_tokens,
            ),
            timeout_seconds=settings.request_timeout_seconds,
        )
    return RAGPipeline(
        settings=settings,
        embedding_model=build_embedding_model(settings),
        vector_store=vector_store,
        answer_generator=answer_generator,
    )
