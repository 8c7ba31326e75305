"""Exception types raised across ingestion, retrieval, and streaming."""
from __future__ import annotations

from typing import List, Optional


class RagStreamError(Exception):
    """Base class for all ragstream errors."""


class UnsupportedFileType(RagStreamError):
    """Raised when a document has an extension the loader cannot read."""

    def __init__(self, path: str, suffix: str) -> None:
        super().__init__(f"Unsupported file type: {suffix or '(none)'} ({path})")
        self.path = path
        self.suffix = suffix


class EmbeddingServiceError(RagStreamError):
    """Raised when the embedding endpoint fails or returns a malformed body."""


class IndexUnavailable(RagStreamError):
    """Raised when the vector index collection cannot be reached or created."""


class IndexWriteError(RagStreamError):
    """Raised when some entries of an add() call were rejected by the index."""

    def __init__(self, failed_ids: List[str], written: int, cause: Optional[BaseException] = None) -> None:
        preview = ", ".join(failed_ids[:5])
        if len(failed_ids) > 5:
            preview += f", ... (+{len(failed_ids) - 5} more)"
        message = f"Index rejected {len(failed_ids)} entries ({written} written): {preview}"
        if cause is not None:
            message += f" [{cause}]"
        super().__init__(message)
        self.failed_ids = failed_ids
        self.written = written


class MalformedStreamFrame(RagStreamError):
    """Raised when a single stream line cannot be decoded."""

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"Malformed stream frame ({reason}): {line[:120]!r}")
        self.line = line
        self.reason = reason


class StreamUpstreamFailure(RagStreamError):
    """Raised when the generation service fails before or during streaming."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
