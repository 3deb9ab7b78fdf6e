"""
Embedding/Indexing Service

Two independent indexes are maintained per document:

1. The chunk index in Postgres: each chunk is stored with its embedding as
   JSON and, when the store is vector-capable, in the native vector column.
2. The provider file index: the full extracted text is uploaded as one file
   and attached to the case's provider vector store, which backs tool-based
   retrieval.

The storage mode ("vector" or "json") is resolved once by the caller and
passed in; this service never probes the database itself.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .case_store import CaseStore
from .chunker import ChunkRecord
from .embeddings import BaseEmbeddingService
from .llm import LLMClient

logger = logging.getLogger(__name__)

STORAGE_MODES = ("vector", "json")


@dataclass
class MirrorResult:
    """Handles produced by mirroring a document into the provider index."""
    file_id: str
    vector_store_id: str


class IndexingService:
    """
    Writes chunks and their embeddings, and mirrors text to the provider index.

    Args:
        store: Relational store
        embedder: Embedding service for chunk texts
        llm: Provider client used for vector store and file operations
        storage_mode: "vector" when pgvector is available, else "json"
        provider_timeout: Seconds allowed per provider file operation
    """

    def __init__(
        self,
        store: CaseStore,
        embedder: BaseEmbeddingService,
        llm: LLMClient,
        storage_mode: str = "json",
        provider_timeout: float = 45.0,
    ):
        if storage_mode not in STORAGE_MODES:
            raise ValueError(f"storage_mode must be one of {STORAGE_MODES}, got {storage_mode!r}")
        self.store = store
        self.embedder = embedder
        self.llm = llm
        self.storage_mode = storage_mode
        self.provider_timeout = provider_timeout

    @property
    def vector_enabled(self) -> bool:
        return self.storage_mode == "vector"

    def index_chunks(self, case_id: str, document_id: str, chunks: list[ChunkRecord]) -> int:
        """
        Embed and persist chunks for a document.

        The caller deletes the document's previous chunks first; this method
        only inserts.

        Returns:
            Number of chunks written
        """
        if not chunks:
            logger.info(f"No chunks to index for document {document_id}")
            return 0

        embeddings = self.embedder.embed_documents([c.text for c in chunks])
        if len(embeddings) != len(chunks):
            raise RuntimeError(
                f"Embedding provider returned {len(embeddings)} vectors for {len(chunks)} chunks"
            )

        return self.store.insert_chunks(
            case_id=case_id,
            document_id=document_id,
            chunks=[c.to_dict() for c in chunks],
            embeddings=embeddings,
            vector_enabled=self.vector_enabled,
        )

    def ensure_vector_store(self, case_id: str) -> str:
        """Return the case's provider vector store id, creating and persisting it if absent."""
        case = self.store.get_case(case_id)
        if case is None:
            raise ValueError(f"Case not found: {case_id}")
        if case.get("vector_store_id"):
            return case["vector_store_id"]

        vector_store_id = self.llm.create_vector_store(f"case-{case_id}", timeout=self.provider_timeout)
        self.store.set_case_vector_store(case_id, vector_store_id)
        return vector_store_id

    def mirror_document(
        self,
        case_id: str,
        filename: str,
        text: str,
        vector_store_id: Optional[str] = None,
    ) -> MirrorResult:
        """
        Upload the full extracted text as ``{filename}.txt`` and attach it
        to the case's vector store.
        """
        vector_store_id = vector_store_id or self.ensure_vector_store(case_id)
        file_id = self.llm.upload_file(f"{filename}.txt", text, timeout=self.provider_timeout)
        self.llm.attach_file(vector_store_id, file_id, timeout=self.provider_timeout)
        logger.info(f"Mirrored {filename} to vector store {vector_store_id} as {file_id}")
        return MirrorResult(file_id=file_id, vector_store_id=vector_store_id)
