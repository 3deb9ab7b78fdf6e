"""
Retrieval Engine for Case Documents

Two interchangeable implementations of ``search(case_id, query)``:

- CaseRetriever: lexical substring search plus (when the store is
  vector-capable) nearest-neighbour search over the chunk table. Vector
  hits lead; duplicates keep their first position.
- FileSearchRetriever: one forced file_search tool turn against the case's
  provider vector store.

Exactly one is used per answer cycle, chosen by RETRIEVAL_MODE. Both apply
the same relevance filters afterwards:
- agreement-focused queries narrow to separation-agreement chunks when any
  are present (never to an empty list)
- parenting-focused queries drop chunks from financial/property sections
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .case_patterns import get_prompt, is_agreement_document, is_irrelevant_parenting_section, matches
from .case_store import CaseStore
from .embeddings import BaseEmbeddingService
from .errors import StageTimeoutError
from .llm import LLMClient

logger = logging.getLogger(__name__)


@dataclass
class ChunkHit:
    """A retrieved passage."""
    id: str
    document_id: Optional[str]
    page_number: Optional[int]
    chunk_index: int
    text: str
    document_title: Optional[str] = None
    filename: Optional[str] = None
    source: str = "keyword"  # "keyword", "vector", or "file_search"
    score: float = 0.0
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict, source: str) -> "ChunkHit":
        return cls(
            id=row["id"],
            document_id=row.get("document_id"),
            page_number=row.get("page_number"),
            chunk_index=row.get("chunk_index", 0),
            text=row.get("text") or "",
            document_title=row.get("document_title"),
            filename=row.get("filename"),
            source=source,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "page_number": self.page_number,
            "chunk_index": self.chunk_index,
            "text": self.text,
            "document_title": self.document_title,
            "filename": self.filename,
            "source": self.source,
            "score": self.score,
        }


def merge_hits(*groups: list[ChunkHit], limit: int = 8) -> list[ChunkHit]:
    """Concatenate hit lists, keeping the first occurrence of each id."""
    merged: dict[str, ChunkHit] = {}
    for group in groups:
        for hit in group:
            if hit.id not in merged:
                merged[hit.id] = hit
    return list(merged.values())[:limit]


def apply_relevance_filters(query: str, hits: list[ChunkHit]) -> list[ChunkHit]:
    """Domain filters applied after retrieval."""
    if matches("agreement_focus", query):
        agreement_hits = [
            h for h in hits
            if is_agreement_document(h.document_title or "") or is_agreement_document(h.filename or "")
        ]
        if agreement_hits:
            hits = agreement_hits

    if matches("parenting_focus", query):
        hits = [h for h in hits if not is_irrelevant_parenting_section(h.text)]

    return hits


class CaseRetriever:
    """
    Chunk-table retrieval.

    Args:
        store: Relational store
        embedder: Query embedder (used only in vector mode)
        storage_mode: "vector" or "json", resolved once at startup
        keyword_limit: Max lexical hits
        vector_limit: Max vector hits
        max_results: Cap after merging
        timeout: Seconds allowed per search query
    """

    def __init__(
        self,
        store: CaseStore,
        embedder: Optional[BaseEmbeddingService] = None,
        storage_mode: str = "json",
        keyword_limit: int = 6,
        vector_limit: int = 6,
        max_results: int = 8,
        timeout: float = 20.0,
    ):
        self.store = store
        self.embedder = embedder
        self.storage_mode = storage_mode
        self.keyword_limit = keyword_limit
        self.vector_limit = vector_limit
        self.max_results = max_results
        self.timeout = timeout

    def search(self, case_id: str, query: str) -> list[ChunkHit]:
        """
        Retrieve passages for a query.

        Raises:
            StageTimeoutError("chunk_search"): a search query or the query
                embedding ran past its timeout
        """
        timeout_ms = int(self.timeout * 1000)
        keyword_rows = self.store.keyword_search(
            case_id, query, limit=self.keyword_limit, timeout_ms=timeout_ms,
        )

        vector_rows = []
        if self.storage_mode == "vector" and self.embedder is not None:
            try:
                embedding = self.embedder.embed_query(query)
            except StageTimeoutError as e:
                raise StageTimeoutError("chunk_search") from e
            if embedding:
                vector_rows = self.store.vector_search(
                    case_id, embedding, limit=self.vector_limit, timeout_ms=timeout_ms,
                )

        hits = merge_hits(
            [ChunkHit.from_row(r, "vector") for r in vector_rows],
            [ChunkHit.from_row(r, "keyword") for r in keyword_rows],
            limit=self.max_results,
        )
        filtered = apply_relevance_filters(query, hits)
        logger.info(
            f"Chunk search for case {case_id}: {len(vector_rows)} vector, "
            f"{len(keyword_rows)} keyword, {len(filtered)} after filters"
        )
        return filtered


class FileSearchRetriever:
    """
    Retrieval through the provider's file_search tool.

    Hits are mapped back to Documents by provider file id; passages from
    files with no matching Document cannot be cited and are dropped.
    """

    def __init__(
        self,
        store: CaseStore,
        llm: LLMClient,
        model: Optional[str] = None,
        max_results: int = 8,
        timeout: float = 30.0,
    ):
        self.store = store
        self.llm = llm
        self.model = model
        self.max_results = max_results
        self.timeout = timeout

    def search(self, case_id: str, query: str) -> list[ChunkHit]:
        case = self.store.get_case(case_id)
        vector_store_id = (case or {}).get("vector_store_id")
        if not vector_store_id:
            logger.info(f"Case {case_id} has no provider vector store; file search skipped")
            return []

        generation = self.llm.generate(
            instructions=get_prompt("file_search_system"),
            input=query,
            tools=[{
                "type": "file_search",
                "vector_store_ids": [vector_store_id],
                "max_num_results": self.max_results,
            }],
            tool_choice={"type": "file_search"},
            include=["file_search_call.results"],
            model=self.model,
            timeout=self.timeout,
            label="file_search",
        )

        documents = {
            doc["provider_file_id"]: doc
            for doc in self.store.list_documents(case_id)
            if doc.get("provider_file_id")
        }

        hits = []
        for index, result in enumerate(generation.tool_results):
            document = documents.get(result.file_id)
            if document is None:
                logger.debug(f"file_search hit from unknown file {result.file_id}")
                continue
            page = result.attributes.get("page") if result.attributes else None
            hits.append(ChunkHit(
                id=f"{result.file_id}:{index}",
                document_id=document["id"],
                page_number=page if isinstance(page, int) else None,
                chunk_index=index,
                text=result.text,
                document_title=document["title"],
                filename=result.filename,
                source="file_search",
                score=result.score,
            ))

        filtered = apply_relevance_filters(query, hits[:self.max_results])
        logger.info(f"File search for case {case_id}: {len(generation.tool_results)} hits, {len(filtered)} kept")
        return filtered


def build_retriever(
    mode: str,
    store: CaseStore,
    llm: LLMClient,
    embedder: Optional[BaseEmbeddingService] = None,
    storage_mode: str = "json",
    chunk_timeout: float = 20.0,
    file_search_timeout: float = 30.0,
    model: Optional[str] = None,
):
    """Construct the retriever for RETRIEVAL_MODE ("chunks" or "file_search")."""
    if mode == "file_search":
        return FileSearchRetriever(store, llm, model=model, timeout=file_search_timeout)
    if mode == "chunks":
        return CaseRetriever(store, embedder=embedder, storage_mode=storage_mode, timeout=chunk_timeout)
    raise ValueError(f"Unknown retrieval mode: {mode}")
