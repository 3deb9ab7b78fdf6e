"""
Embedding Service for Case Documents

Provides chunk and query embeddings via OpenAI (text-embedding-3-small,
the default) or Voyage AI. Supports batching and in-memory/file caching.

Architecture:
    BaseEmbeddingService  -- shared caching, batching, embed_documents, embed_query
        OpenAIEmbeddingService    -- OpenAI embeddings endpoint
        VoyageEmbeddingService    -- Voyage AI provider
"""

import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from openai import APITimeoutError, OpenAI

from .errors import StageTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingConfig:
    """Configuration for embedding service."""
    provider: str = "openai"  # "openai" or "voyage"
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 128
    max_tokens_per_batch: int = 100000
    chars_per_token: float = 4.0
    timeout: float = 30.0
    cache_dir: Optional[str] = None
    use_cache: bool = True


class BaseEmbeddingService:
    """
    Base class for API-based embedding services.

    Provides shared functionality:
    - Batched embedding with progress logging
    - Memory and file-based caching
    - Document vs query input type distinction

    Subclasses implement:
    - _init_client(): build the provider client (unless one was injected)
    - _request_embeddings(texts, input_type): one provider call
    """

    _provider_name: str = "Base"
    _env_var_name: str = ""
    _doc_input_type: str = "document"
    _query_input_type: str = "query"

    def __init__(self, config: Optional[EmbeddingConfig] = None, client: Any = None):
        """
        Initialize embedding service.

        Args:
            config: Optional configuration. Uses defaults if not provided.
            client: Pre-built provider client; skips _init_client when given.
        """
        self.config = config or EmbeddingConfig()
        self._client = client
        self._cache = {}

        if self.config.cache_dir:
            self._cache_path = Path(self.config.cache_dir)
            self._cache_path.mkdir(parents=True, exist_ok=True)
        else:
            self._cache_path = None

        if self._client is None:
            self._init_client()

    def _init_client(self):
        raise NotImplementedError("Subclasses must implement _init_client()")

    def _request_embeddings(self, texts: list[str], input_type: str) -> list[list[float]]:
        raise NotImplementedError("Subclasses must implement _request_embeddings()")

    def _create_batches(self, texts: list[str]) -> list[list[str]]:
        """Split texts into batches respecting both item count and token limits."""
        batches = []
        current_batch = []
        current_tokens = 0
        cpt = self.config.chars_per_token

        for text in texts:
            est_tokens = len(text) / cpt
            if current_batch and (
                len(current_batch) >= self.config.batch_size
                or current_tokens + est_tokens > self.config.max_tokens_per_batch
            ):
                batches.append(current_batch)
                current_batch = []
                current_tokens = 0
            current_batch.append(text)
            current_tokens += est_tokens

        if current_batch:
            batches.append(current_batch)

        return batches

    def _require_client(self):
        if not self._client:
            raise RuntimeError(
                f"{self._provider_name} client not initialized. "
                f"Check {self._env_var_name}."
            )

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for document chunks.

        Args:
            texts: List of text strings to embed

        Returns:
            List of embedding vectors, in input order
        """
        if not texts:
            return []
        self._require_client()

        batches = self._create_batches(texts)
        logger.info(
            f"Embedding {len(texts)} chunks in {len(batches)} batches"
            f" with {self._provider_name}"
        )

        embeddings = []
        for batch_idx, batch in enumerate(batches):
            embeddings.extend(self._embed_batch(batch, input_type=self._doc_input_type))
            if (batch_idx + 1) % 10 == 0:
                logger.info(f"Processed batch {batch_idx + 1}/{len(batches)}")

        return embeddings

    def embed_query(self, query: str) -> list[float]:
        """Generate the embedding for a search query."""
        self._require_client()

        cache_key = self._get_cache_key(query, "query")
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached

        result = self._embed_batch([query], input_type=self._query_input_type)
        if result:
            self._set_cached(cache_key, result[0])
            return result[0]
        return []

    def _embed_batch(self, texts: list[str], input_type: str = "document") -> list[list[float]]:
        """Embed a batch, serving what it can from cache."""
        results = []
        uncached_texts = []
        uncached_indices = []

        for i, text in enumerate(texts):
            cached = self._get_cached(self._get_cache_key(text, input_type))
            if cached is not None:
                results.append((i, cached))
            else:
                uncached_texts.append(text)
                uncached_indices.append(i)

        if uncached_texts:
            try:
                vectors = self._request_embeddings(uncached_texts, input_type)
            except StageTimeoutError:
                raise
            except Exception as e:
                logger.error(f"{self._provider_name} embedding failed: {e}")
                raise

            for idx, embedding in zip(uncached_indices, vectors):
                self._set_cached(self._get_cache_key(texts[idx], input_type), embedding)
                results.append((idx, embedding))

        results.sort(key=lambda x: x[0])
        return [emb for _, emb in results]

    def _get_cache_key(self, text: str, input_type: str) -> str:
        content = f"{self.config.model}:{input_type}:{text}"
        return hashlib.sha256(content.encode()).hexdigest()[:32]

    def _get_cached(self, key: str) -> Optional[list[float]]:
        if not self.config.use_cache:
            return None

        if key in self._cache:
            return self._cache[key]

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            if cache_file.exists():
                try:
                    with open(cache_file) as f:
                        embedding = json.load(f)
                        self._cache[key] = embedding
                        return embedding
                except (OSError, ValueError) as e:
                    logger.debug(f"Failed to read embedding cache file {cache_file}: {e}")

        return None

    def _set_cached(self, key: str, embedding: list[float]) -> None:
        if not self.config.use_cache:
            return

        self._cache[key] = embedding

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            try:
                with open(cache_file, "w") as f:
                    json.dump(embedding, f)
            except OSError as e:
                logger.warning(f"Failed to cache embedding: {e}")

    @property
    def dimensions(self) -> int:
        return self.config.dimensions


class OpenAIEmbeddingService(BaseEmbeddingService):
    """Embeddings from the OpenAI embeddings endpoint (1536 dims by default)."""

    _provider_name = "OpenAI"
    _env_var_name = "OPENAI_API_KEY"

    def _init_client(self):
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            logger.warning("OPENAI_API_KEY not found. Embeddings will fail.")
            return

        self._client = OpenAI(api_key=api_key)
        logger.info(f"OpenAI embedding client initialized with model {self.config.model}")

    def _request_embeddings(self, texts: list[str], input_type: str) -> list[list[float]]:
        try:
            response = self._client.with_options(timeout=self.config.timeout).embeddings.create(
                model=self.config.model,
                input=texts,
            )
        except APITimeoutError as e:
            raise StageTimeoutError("embedding") from e
        ordered = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in ordered]


class VoyageEmbeddingService(BaseEmbeddingService):
    """
    Embedding service using Voyage AI.

    Requires EMBEDDING_DIMENSIONS to match the Voyage model (1024 for
    voyage-law-2) since the vector column is sized from it.
    """

    _provider_name = "Voyage AI"
    _env_var_name = "VOYAGE_API_KEY"
    _doc_input_type = "document"
    _query_input_type = "query"

    def _init_client(self):
        api_key = os.getenv("VOYAGE_API_KEY")
        if not api_key:
            logger.warning(
                "VOYAGE_API_KEY not found. Embeddings will fail. "
                "Get your API key at https://dash.voyageai.com/"
            )
            return

        import voyageai
        self._client = voyageai.Client(api_key=api_key, timeout=self.config.timeout)
        logger.info(f"Voyage AI client initialized with model {self.config.model}")

    def _request_embeddings(self, texts: list[str], input_type: str) -> list[list[float]]:
        response = self._client.embed(
            texts=texts,
            model=self.config.model,
            input_type=input_type,
        )
        return response.embeddings


def get_embedding_service(settings=None, openai_client: Any = None) -> BaseEmbeddingService:
    """
    Factory returning the configured embedding service.

    Args:
        settings: AssistantSettings; defaults apply when omitted
        openai_client: Shared openai.OpenAI instance for the OpenAI provider

    Returns:
        Configured embedding service
    """
    provider = getattr(settings, "embedding_provider", "openai")
    timeout = settings.timeouts.embedding if settings is not None else 30.0

    if provider == "voyage":
        config = EmbeddingConfig(
            provider="voyage",
            model=getattr(settings, "embedding_model", None) or "voyage-law-2",
            dimensions=getattr(settings, "embedding_dimensions", 1024),
            chars_per_token=2.0,
            timeout=timeout,
        )
        return VoyageEmbeddingService(config)

    config = EmbeddingConfig(
        provider="openai",
        model=getattr(settings, "embedding_model", None) or "text-embedding-3-small",
        dimensions=getattr(settings, "embedding_dimensions", 1536),
        timeout=timeout,
    )
    return OpenAIEmbeddingService(config, client=openai_client)
