"""HTTP surface for the streamed RAG answer.

Routes:
- POST /api/rag - stream a grounded answer (sources frame, then generation frames)
- GET /api/rag - report whether the vector index is reachable
- POST /api/chat - stream a plain multi-turn chat reply (no retrieval, no sources frame)
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Literal, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ragstream.config import Settings
from ragstream.errors import EmbeddingServiceError, IndexUnavailable, StreamUpstreamFailure
from ragstream.generation import ChatMessage
from ragstream.rag_pipeline import RAGPipeline, build_pipeline
from ragstream.streaming import MEDIA_TYPE, AnswerStream

logger = logging.getLogger(__name__)


class RagRequest(BaseModel):
    query: str = ""
    library_id: Optional[str] = Field(default=None, alias="libraryId")
    top_k: Optional[int] = Field(default=None, alias="topK", ge=1, le=50)


class ChatTurn(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    messages: List[ChatTurn] = Field(default_factory=list)
    model: Optional[str] = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    load_dotenv()
    settings = Settings()
    logging.basicConfig(level=settings.log_level)
    pipeline = build_pipeline(settings)
    app.state.pipeline = pipeline
    try:
        yield
    finally:
        pipeline.close()


def get_pipeline(request: Request) -> RAGPipeline:
    return request.app.state.pipeline


def _error_response(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse({"error": error, "detail": detail}, status_code=status_code)


def _upstream_status(exc: StreamUpstreamFailure) -> int:
    # Missing model, bad parameters and timeouts keep their meaning; the rest is a 500.
    if exc.status_code in (400, 404, 504):
        return exc.status_code
    return 500


def _event_stream(stream: AnswerStream) -> StreamingResponse:
    return StreamingResponse(
        iter(stream),
        media_type=MEDIA_TYPE,
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


def create_app() -> FastAPI:
    app = FastAPI(title="ragstream", lifespan=lifespan)

    @app.post("/api/rag")
    def rag_answer(body: RagRequest, pipeline: RAGPipeline = Depends(get_pipeline)):
        """Stream an answer grounded in the indexed documents."""
        query = body.query.strip()
        if not query:
            return _error_response(400, "Query must not be empty", "query is required")

        logger.info("Received query (library=%s): %s", body.library_id or "all", query)
        try:
            stream = pipeline.stream_answer(query, top_k=body.top_k, library_id=body.library_id)
        except IndexUnavailable as exc:
            logger.error("Vector index unavailable: %s", exc)
            return _error_response(503, "Vector index unavailable", str(exc))
        except EmbeddingServiceError as exc:
            logger.error("Query embedding failed: %s", exc)
            return _error_response(502, "Embedding service error", str(exc))

        return _event_stream(stream)

    @app.post("/api/chat")
    def chat_answer(body: ChatRequest, pipeline: RAGPipeline = Depends(get_pipeline)):
        """Stream a reply to the whole conversation, without retrieval."""
        if not body.messages:
            return _error_response(400, "Missing request payload", "messages must not be empty")

        messages = [ChatMessage(role=turn.role, content=turn.content) for turn in body.messages]
        logger.info("Received chat with %d messages (model=%s)", len(messages), body.model or "default")
        try:
            stream = pipeline.stream_chat(messages, model=body.model)
        except StreamUpstreamFailure as exc:
            logger.error("Chat stream failed to open: %s", exc)
            return JSONResponse(
                {"error": "Stream error", "detail": str(exc), "model": body.model},
                status_code=_upstream_status(exc),
            )
        return _event_stream(stream)

    @app.get("/api/rag")
    def rag_status(pipeline: RAGPipeline = Depends(get_pipeline)):
        """Initialize the index and report its state."""
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            pipeline.initialize()
            count = pipeline.vector_store.count()
        except IndexUnavailable as exc:
            logger.error("Vector index status check failed: %s", exc)
            return JSONResponse(
                {"status": "error", "error": "Vector index unavailable", "details": str(exc), "timestamp": timestamp},
                status_code=500,
            )
        return {"status": "ready", "entries": count, "timestamp": timestamp}

    return app


app = create_app()
