"""Configuration values for the ragstream application."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_str(name: str, default: str) -> str:
    """Read a string environment variable with a non-empty fallback."""
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value or default


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable with safe fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    """Read a float environment variable with safe fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    value = _env_str(name, default).lower()
    return value if value in choices else default


@dataclass
class Settings:
    """Runtime settings loaded from environment variables."""

    # Use default_factory so values are read when Settings() is instantiated,
    # not at module import time. This ensures load_dotenv() values are honored.
    embedding_backend: str = field(
        default_factory=lambda: _env_choice("EMBEDDING_BACKEND", "ollama", ("ollama", "local"))
    )
    embed_url: str = field(default_factory=lambda: _env_str("EMBED_URL", "http://localhost:11434/api/embeddings"))
    embedding_model_name: str = field(default_factory=lambda: _env_str("EMBEDDING_MODEL_NAME", "bge-m3"))
    embedding_dimension: int = field(default_factory=lambda: _env_int("EMBEDDING_DIMENSION", 0))
    embed_workers: int = field(default_factory=lambda: _env_int("EMBED_WORKERS", 4))

    generate_url: str = field(
        default_factory=lambda: _env_str("GENERATE_URL", "http://localhost:11434/v1/chat/completions")
    )
    generation_model_name: str = field(default_factory=lambda: _env_str("GENERATION_MODEL", "deepseek-r1:7b"))
    temperature: float = field(default_factory=lambda: _env_float("GENERATION_TEMPERATURE", 0.7))
    top_p: float = field(default_factory=lambda: _env_float("GENERATION_TOP_P", 0.9))
    top_k_sampling: int = field(default_factory=lambda: _env_int("GENERATION_TOP_K", 40))
    max_tokens: int = field(default_factory=lambda: _env_int("GENERATION_MAX_TOKENS", 2048))
    request_timeout_seconds: float = field(default_factory=lambda: _env_float("REQUEST_TIMEOUT_SECONDS", 30.0))

    chunk_size: int = field(default_factory=lambda: _env_int("CHUNK_SIZE", 512))
    chunk_overlap: int = field(default_factory=lambda: _env_int("CHUNK_OVERLAP", 64))
    top_k: int = field(default_factory=lambda: _env_int("TOP_K", 4))

    chroma_dir: Path = field(default_factory=lambda: Path(_env_str("CHROMA_DIR", "data/chroma")))
    chroma_host: str = field(default_factory=lambda: os.getenv("CHROMA_HOST", "").strip())
    chroma_port: int = field(default_factory=lambda: _env_int("CHROMA_PORT", 8000))
    collection_name: str = field(default_factory=lambda: _env_str("CHROMA_COLLECTION", "rag_collection"))
    # Scores returned by the index are raw distances in this space.
    distance_space: str = field(default_factory=lambda: _env_choice("CHROMA_DISTANCE", "cosine", ("cosine", "l2", "ip")))

    docs_dir: Path = field(default_factory=lambda: Path(_env_str("DOCS_DIR", "docs")))
    source_preview_chars: int = field(default_factory=lambda: _env_int("SOURCE_PREVIEW_CHARS", 200))
    log_level: str = field(default_factory=lambda: _env_str("LOG_LEVEL", "INFO").upper())
