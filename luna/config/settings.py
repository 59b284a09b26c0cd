"""
Luna - Centralized Configuration
=================================
Uses ``pydantic-settings`` (``BaseSettings``) to load *all* configuration
from environment variables and the project-level ``.env`` file.

Security
--------
- ``GOOGLE_API_KEY`` is typed as ``SecretStr`` and has **no default value**.
  If the key is missing at startup, Pydantic raises a ``ValidationError``.
  The raw value is never exposed in repr, logs, or tracebacks.
- ``MONGO_URI`` is also ``SecretStr``: connection strings contain
  credentials and must never leak into logs.

Paths
-----
All filesystem paths are ``Path.resolve()``-d at class level so they
work identically on Windows, WSL, and Linux.

Ingestion throttles
-------------------
``EMBED_BATCH_SIZE`` / ``INDEX_BATCH_SIZE`` bound peak memory while the
corpus is embedded and inserted; ``INDEX_BATCH_PAUSE_SECONDS`` is the pause
between index batches.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings.

    Every field is loaded from environment variables (or ``.env``).
    Fields *without* a default are **required**.

    Attributes
    ----------
    GOOGLE_API_KEY : SecretStr
        API key for Google AI Studio (Gemini).  **Required.**
    MONGO_URI : SecretStr
        MongoDB connection string.  **Required.**
    MONGO_DB_NAME : str
        Database holding the ``chats`` and ``users`` collections.
    ENV : Literal["dev", "prod"]
        Environment mode controlling logging verbosity.
    CHUNK_SIZE : int
        Soft character target per chunk.
    EMBEDDING_MODEL : str
        sentence-transformers model id (mean pooling, 384 dims by default).
    EMBED_BATCH_SIZE : int
        Chunks per embedding batch.
    INDEX_BATCH_SIZE : int
        Pairs per incremental index insertion.
    INDEX_BATCH_PAUSE_SECONDS : float
        Pause between index insertion batches.
    INDEX_SAVE_RETRIES : int
        Attempts at persisting a fully built index before giving up.
    ANN_MIN_ROWS : int
        Row count from which an IVF-PQ index is built (flat scan below).
    MAX_WORKERS : int
        Thread pool size for parallel embedding batches.
    RETRIEVAL_K : int
        Chunks retrieved per turn.
    LLM_MODEL : str
        Gemini model used for replies, titles and summaries.
    GENERATION_TIMEOUT_SECONDS : float
        Maximum wait for the next streamed fragment.
    PARTIAL_REPLY_POLICY : Literal["discard", "persist_partial"]
        What happens to accumulated text when the caller cancels a stream.
    """

    # ── Resolved Absolute Paths ────────────────────────────────────────
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    DATA_RAW_DIR: Path = BASE_DIR / "data" / "raw"
    DATA_PROCESSED_DIR: Path = BASE_DIR / "data" / "processed"
    EMBEDDINGS_PATH: Path = BASE_DIR / "data" / "processed" / "embeddings.json"
    INDEX_PATH: Path = BASE_DIR / "data" / "index"

    # ── Environment Mode ───────────────────────────────────────────────
    ENV: Literal["dev", "prod"] = "dev"
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None

    # ── API Keys (REQUIRED, no default) ───────────────────────────────
    GOOGLE_API_KEY: SecretStr

    # ── MongoDB (REQUIRED, no default) ────────────────────────────────
    MONGO_URI: SecretStr
    MONGO_DB_NAME: str = "luna"

    # ── Ingestion Parameters ───────────────────────────────────────────
    CHUNK_SIZE: int = 500
    EMBED_BATCH_SIZE: int = 16
    INDEX_BATCH_SIZE: int = 50
    INDEX_BATCH_PAUSE_SECONDS: float = 0.5
    INDEX_SAVE_RETRIES: int = 3
    ANN_MIN_ROWS: int = 5000

    # ── Embedding Model ────────────────────────────────────────────────
    EMBEDDING_MODEL: str = "sentence-transformers/all-MiniLM-L6-v2"
    EMBEDDING_DEVICE: str | None = None

    # ── LanceDB ────────────────────────────────────────────────────────
    LANCEDB_TABLE_NAME: str = "luna_chunks"

    # ── Retrieval / Generation ─────────────────────────────────────────
    RETRIEVAL_K: int = 5
    LLM_MODEL: str = "gemini-2.0-flash"
    LLM_TEMPERATURE: float = 0.3
    GENERATION_TIMEOUT_SECONDS: float = 60.0
    PARTIAL_REPLY_POLICY: Literal["discard", "persist_partial"] = "discard"
    DEFAULT_TITLE: str = "Health Query"

    # ── Concurrency ────────────────────────────────────────────────────
    MAX_WORKERS: int = 4

    # ── Validators ─────────────────────────────────────────────────────

    @field_validator("CHUNK_SIZE")
    @classmethod
    def _chunk_size_positive(cls, v: int) -> int:
        if v < 50:
            raise ValueError(f"CHUNK_SIZE must be ≥ 50, got {v}")
        return v


    @field_validator("MAX_WORKERS")
    @classmethod
    def _workers_range(cls, v: int) -> int:
        if not 1 <= v <= 16:
            raise ValueError(f"MAX_WORKERS must be 1–16, got {v}")
        return v


    @field_validator("EMBED_BATCH_SIZE", "INDEX_BATCH_SIZE", "INDEX_SAVE_RETRIES", "RETRIEVAL_K")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"value must be ≥ 1, got {v}")
        return v

    # ── Pydantic Settings Configuration ────────────────────────────────
    model_config = SettingsConfigDict(env_file=Path(__file__).resolve().parent.parent / ".env", env_file_encoding="utf-8", extra="ignore")


# ── Singleton Instance ─────────────────────────────────────────────────
# Import this throughout the project:
#     from luna.config.settings import settings
settings = Settings()
