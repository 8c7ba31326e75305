"""Server side of the answer stream: a sources frame, then the upstream bytes.

Wire format is line-oriented SSE. For a grounded answer the first record is
always ``data: {"sources": [...]}``; plain chat streams omit it. Every
following byte is copied from the generation service unchanged, up to and
including its own ``data: [DONE]``.
"""
from __future__ import annotations

import enum
import json
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .errors import StreamUpstreamFailure
from .types import RetrievedPassage, SourceSummary

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
DONE_FRAME = b"data: [DONE]\n\n"
MEDIA_TYPE = "text/event-stream"


def encode_frame(payload: Any) -> bytes:
    """Serialize one JSON record as an SSE data line."""
    return f"{DATA_PREFIX} {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def completion_chunk(content: str = "", finish_reason: Optional[str] = None) -> Dict[str, Any]:
    """Build a record shaped like an OpenAI-compatible streaming chunk."""
    return {
        "object": "chat.completion.chunk",
        "choices": [
            {
                "index": 0,
                "delta": {"content": content} if content else {},
                "finish_reason": finish_reason,
            }
        ],
    }


def static_answer_frames(text: str) -> Iterator[bytes]:
    """Frames for a fixed answer that needs no generation call."""
    yield encode_frame(completion_chunk(text))
    yield encode_frame(completion_chunk(finish_reason="stop"))
    yield DONE_FRAME


def summarize_sources(passages: List[RetrievedPassage], preview_chars: int = 200) -> List[SourceSummary]:
    """Reduce passages to what the caller needs to cite them."""
    summaries: List[SourceSummary] = []
    for passage in passages:
        metadata = passage["metadata"]
        content = passage["page_content"]
        if len(content) > preview_chars:
            content = content[:preview_chars] + "..."
        chunk_index = metadata.get("chunkIndex", 0)
        summaries.append(
            SourceSummary(
                fileName=str(metadata.get("fileName") or "unknown"),
                chunkIndex=int(chunk_index) if isinstance(chunk_index, (int, float)) else 0,
                score=passage["score"],
                content=content,
            )
        )
    return summaries


class StreamState(enum.Enum):
    EMIT_SOURCES = "emit_sources"
    FORWARD_TOKENS = "forward_tokens"
    CLOSED = "closed"


class AnswerStream:
    """Single-use byte iterator multiplexing sources and generation output.

    The sources frame is yielded before the upstream iterator is advanced,
    so it always precedes the first upstream byte. Plain chat streams pass
    ``sources=None`` and carry no sources frame. The stream closes when
    the upstream is exhausted, fails, or the consumer stops iterating; in
    every case the upstream iterator is closed.
    """

    def __init__(self, sources: Optional[List[SourceSummary]], upstream: Iterable[bytes]) -> None:
        self.sources = sources
        self.state = StreamState.EMIT_SOURCES
        self._upstream: Iterator[bytes] = iter(upstream)
        self._at_line_start = True
        self._started = False
        self._primed = False
        self._pending = b""

    def prime(self) -> "AnswerStream":
        """Open the upstream now, so request failures raise before any frame.

        Raises:
            StreamUpstreamFailure: If the generation request is rejected.
        """
        if self._primed or self._started:
            return self
        self._primed = True
        try:
            self._pending = next(self._upstream, b"")
        except StreamUpstreamFailure:
            self.close()
            raise
        return self

    def __iter__(self) -> Iterator[bytes]:
        if self._started or self.state is StreamState.CLOSED:
            raise RuntimeError("AnswerStream can only be consumed once")
        self._started = True
        return self._frames()

    def _upstream_chunks(self) -> Iterator[bytes]:
        if self._pending:
            pending, self._pending = self._pending, b""
            yield pending
        yield from self._upstream

    def _frames(self) -> Iterator[bytes]:
        try:
            if self.sources is not None:
                yield encode_frame({"sources": self.sources})
            self.state = StreamState.FORWARD_TOKENS
            for chunk in self._upstream_chunks():
                if not chunk:
                    continue
                self._at_line_start = chunk.endswith(b"\n")
                yield chunk
        except StreamUpstreamFailure as exc:
            logger.error("Upstream generation failed: %s", exc)
            # Terminate a half-forwarded line so the error record parses on its own.
            prefix = b"" if self._at_line_start else b"\n"
            yield prefix + encode_frame({"error": str(exc), "status": exc.status_code})
        finally:
            self.close()

    def close(self) -> None:
        """Release the upstream connection. Safe to call more than once."""
        if self.state is StreamState.CLOSED:
            return
        self.state = StreamState.CLOSED
        closer = getattr(self._upstream, "close", None)
        if callable(closer):
            closer()
        logger.debug("Answer stream closed")
