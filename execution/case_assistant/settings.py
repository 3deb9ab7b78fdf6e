"""
Runtime configuration for the case assistant.

All values come from the environment (a local .env is loaded by the entry
points via python-dotenv). Timeouts are in seconds.

The vector-readiness of the database is deliberately not read from the
environment: it is probed once when services are constructed and passed
down explicitly as ``storage_mode``.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


# Ingest job statuses the batch driver will pick up
RETRYABLE_JOB_STATUSES = ("queued", "uploaded", "ready_to_index", "error")

VALID_RETRIEVAL_MODES = frozenset({"chunks", "file_search"})
VALID_EMBEDDING_PROVIDERS = frozenset({"openai", "voyage"})


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


@dataclass
class TimeoutConfig:
    """Per-operation timeouts for network calls in the hot path."""
    blob_fetch: float = 20.0
    provider_file: float = 45.0
    ocr: float = 45.0
    memory_extraction: float = 45.0
    synthesis: float = 45.0
    chunk_search: float = 20.0
    file_search: float = 30.0
    embedding: float = 30.0


@dataclass
class AssistantSettings:
    """Process-wide settings for ingestion, memory and chat."""
    database_url: Optional[str] = None
    openai_api_key: Optional[str] = None

    # Models
    chat_model: str = "gpt-5.2-pro"
    vision_model: str = "gpt-4o-mini"
    embedding_provider: str = "openai"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536

    # Chunking
    chunk_size: int = 1000
    chunk_overlap: int = 150

    # Ingest batching
    ingest_concurrency: int = 12
    ingest_max_jobs: int = 50

    # Case memory
    memory_batch_size: int = 20
    memory_max_output_tokens: int = 1200

    # Chat
    synthesis_max_output_tokens: int = 2500
    retrieval_mode: str = "chunks"

    # Byte store
    blob_storage_dir: str = "./blob_storage"
    blob_public_base_url: Optional[str] = None

    # Static credential pair for the HTTP API (auth disabled when unset)
    app_username: Optional[str] = None
    app_password: Optional[str] = None

    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)

    @classmethod
    def from_env(cls) -> "AssistantSettings":
        """
        Build settings from environment variables.

        Returns:
            AssistantSettings with env overrides applied to the defaults
        """
        defaults = cls()
        timeouts = TimeoutConfig(
            blob_fetch=_env_float("BLOB_FETCH_TIMEOUT", TimeoutConfig.blob_fetch),
            provider_file=_env_float("PROVIDER_FILE_TIMEOUT", TimeoutConfig.provider_file),
            ocr=_env_float("OCR_TIMEOUT", TimeoutConfig.ocr),
            memory_extraction=_env_float("MEMORY_EXTRACTION_TIMEOUT", TimeoutConfig.memory_extraction),
            synthesis=_env_float("SYNTHESIS_TIMEOUT", TimeoutConfig.synthesis),
            chunk_search=_env_float("CHUNK_SEARCH_TIMEOUT", TimeoutConfig.chunk_search),
            file_search=_env_float("FILE_SEARCH_TIMEOUT", TimeoutConfig.file_search),
            embedding=_env_float("EMBEDDING_TIMEOUT", TimeoutConfig.embedding),
        )
        settings = cls(
            database_url=os.getenv("DATABASE_URL"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            chat_model=os.getenv("CHAT_MODEL", defaults.chat_model),
            vision_model=os.getenv("VISION_MODEL", defaults.vision_model),
            embedding_provider=os.getenv("EMBEDDING_PROVIDER", defaults.embedding_provider),
            embedding_model=os.getenv("EMBEDDING_MODEL", defaults.embedding_model),
            embedding_dimensions=_env_int("EMBEDDING_DIMENSIONS", defaults.embedding_dimensions),
            chunk_size=_env_int("CHUNK_SIZE", defaults.chunk_size),
            chunk_overlap=_env_int("CHUNK_OVERLAP", defaults.chunk_overlap),
            ingest_concurrency=_env_int("INGEST_CONCURRENCY", defaults.ingest_concurrency),
            ingest_max_jobs=_env_int("INGEST_MAX_JOBS", defaults.ingest_max_jobs),
            memory_batch_size=_env_int("MEMORY_BATCH_SIZE", defaults.memory_batch_size),
            retrieval_mode=os.getenv("RETRIEVAL_MODE", defaults.retrieval_mode),
            blob_storage_dir=os.getenv("BLOB_STORAGE_DIR", defaults.blob_storage_dir),
            blob_public_base_url=os.getenv("BLOB_PUBLIC_BASE_URL"),
            app_username=os.getenv("APP_USERNAME"),
            app_password=os.getenv("APP_PASSWORD"),
            timeouts=timeouts,
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Reject settings combinations the pipeline cannot run with."""
        if self.retrieval_mode not in VALID_RETRIEVAL_MODES:
            raise ValueError(
                f"RETRIEVAL_MODE must be one of {sorted(VALID_RETRIEVAL_MODES)}, "
                f"got {self.retrieval_mode!r}"
            )
        if self.embedding_provider not in VALID_EMBEDDING_PROVIDERS:
            raise ValueError(
                f"EMBEDDING_PROVIDER must be one of {sorted(VALID_EMBEDDING_PROVIDERS)}, "
                f"got {self.embedding_provider!r}"
            )
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("CHUNK_OVERLAP must be smaller than CHUNK_SIZE")
        if self.ingest_concurrency < 1:
            raise ValueError("INGEST_CONCURRENCY must be at least 1")

    @property
    def auth_enabled(self) -> bool:
        return bool(self.app_username and self.app_password)
