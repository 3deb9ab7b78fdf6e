"""
Case Memory Extractor

Derives structured memory (entities, facts, timeline events, obligations)
from a document's chunks. Chunks are sent to the LLM in fixed-size batches;
each batch's output must validate against MemoryExtraction or that batch is
dropped (logged and counted) while the rest of the document still commits.

Memory is replaced per document, never merged: the previous rows for
(case_id, document_id) are swapped for the new extraction in one
transaction.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Iterator, Optional

from .case_patterns import get_prompt
from .case_store import CaseStore
from .errors import StageTimeoutError
from .llm import LLMClient
from .metrics import MetricsCollector, get_metrics_collector
from .schemas import MemoryExtraction, parse_model_output

logger = logging.getLogger(__name__)


@dataclass
class MemoryRebuildSummary:
    """Outcome of one rebuild_case_memory() call."""
    documents: int = 0
    skipped_documents: int = 0
    batches: int = 0
    dropped_batches: int = 0
    document_types: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "documents": self.documents,
            "skipped_documents": self.skipped_documents,
            "batches": self.batches,
            "dropped_batches": self.dropped_batches,
            "document_types": self.document_types,
        }


def batched(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def build_chunk_context(chunks: list[dict]) -> str:
    """Render chunks as "[Page N] text" blocks separated by blank lines."""
    parts = []
    for chunk in chunks:
        page = chunk.get("page_number")
        label = f"Page {page}" if page else "Page n/a"
        parts.append(f"[{label}] {chunk['text']}")
    return "\n\n".join(parts)


def coerce_date(value: Optional[str]) -> Optional[str]:
    """ISO date prefix of a model-supplied date string, or None if unparseable."""
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip()[:10]).isoformat()
    except ValueError:
        return None


@contextmanager
def memory_rebuild_lock(store: CaseStore, case_id: str) -> Iterator[bool]:
    """
    Try to take the case's rebuild lock without blocking.

    Yields True when this caller holds the lock. The lock is released on
    every exit path when it was acquired.

    Usage:
        with memory_rebuild_lock(store, case_id) as acquired:
            if acquired:
                extractor.rebuild_case_memory(case_id)
    """
    acquired = store.acquire_memory_rebuild_lock(case_id)
    if not acquired:
        logger.info(f"Memory rebuild already in progress for case {case_id}")
    try:
        yield acquired
    finally:
        if acquired:
            store.release_memory_rebuild_lock(case_id)


class CaseMemoryExtractor:
    """
    Rebuilds case memory from indexed chunks.

    Args:
        store: Relational store
        llm: Provider client
        batch_size: Chunks per extraction call
        max_output_tokens: Output cap per call
        timeout: Seconds per call; a timeout drops only that batch
        model: Generation model override
        metrics: Collector for dropped-batch counts
    """

    def __init__(
        self,
        store: CaseStore,
        llm: LLMClient,
        batch_size: int = 20,
        max_output_tokens: int = 1200,
        timeout: float = 45.0,
        model: Optional[str] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.llm = llm
        self.batch_size = batch_size
        self.max_output_tokens = max_output_tokens
        self.timeout = timeout
        self.model = model
        self.metrics = metrics or get_metrics_collector()

    def rebuild_case_memory(
        self,
        case_id: str,
        document_ids: Optional[list[str]] = None,
    ) -> MemoryRebuildSummary:
        """
        Re-extract memory for every case document, or only ``document_ids``.

        Documents are visited oldest first; documents without chunks are
        skipped and keep whatever memory they had.
        """
        summary = MemoryRebuildSummary()
        documents = self.store.list_documents(case_id, document_ids=document_ids)
        logger.info(f"Rebuilding memory for case {case_id}: {len(documents)} document(s)")

        for document in documents:
            chunks = self.store.get_document_chunks(document["id"])
            if not chunks:
                summary.skipped_documents += 1
                continue
            self._rebuild_document(case_id, document, chunks, summary)
            summary.documents += 1

        logger.info(
            f"Memory rebuild for case {case_id} finished: {summary.documents} documents, "
            f"{summary.batches} batches, {summary.dropped_batches} dropped"
        )
        return summary

    def _rebuild_document(
        self,
        case_id: str,
        document: dict,
        chunks: list[dict],
        summary: MemoryRebuildSummary,
    ) -> None:
        entities, facts, timeline, obligations = [], [], [], []
        document_type = None

        for batch_index, batch in enumerate(batched(chunks, self.batch_size)):
            summary.batches += 1
            extraction = self._extract_batch(case_id, document, batch, batch_index)
            if extraction is None:
                summary.dropped_batches += 1
                continue

            if not document_type and extraction.document_type:
                document_type = extraction.document_type

            for entity in extraction.entities:
                entities.append({
                    "type": entity.type,
                    "name": entity.name,
                    "attributes": entity.attributes or {},
                    "citations": [c.model_dump(mode="json") for c in entity.citations],
                    "confidence": entity.confidence,
                })
            for fact in extraction.facts:
                facts.append({
                    "type": fact.type,
                    "key": fact.key,
                    "value": fact.value,
                    "citations": [c.model_dump(mode="json") for c in fact.citations],
                    "confidence": fact.confidence,
                })
            for event in extraction.timeline:
                citations = [c.model_dump(mode="json") for c in event.citations]
                event_date = coerce_date(event.event_date)
                timeline.append({
                    "event_date": event_date,
                    "precision": "exact" if event_date else "unknown",
                    "title": event.title,
                    "summary": event.description,
                    "category": "legal",
                    "people": [],
                    "source_ref": citations[0] if citations else {},
                    "citations": citations,
                    "confidence": event.confidence,
                })
            for obligation in extraction.obligations:
                obligations.append({
                    "obligation_type": obligation.obligation_type,
                    "due_date": coerce_date(obligation.due_date),
                    "recurrence": obligation.recurrence,
                    "description": obligation.description,
                    "citations": [c.model_dump(mode="json") for c in obligation.citations],
                    "confidence": obligation.confidence,
                })

        self.store.replace_document_memory(
            case_id=case_id,
            document_id=document["id"],
            entities=entities,
            facts=facts,
            timeline=timeline,
            obligations=obligations,
            document_type=document_type,
        )
        if document_type:
            summary.document_types[document["id"]] = document_type

    def _extract_batch(
        self,
        case_id: str,
        document: dict,
        batch: list[dict],
        batch_index: int,
    ) -> Optional[MemoryExtraction]:
        prompt_input = "\n\n".join([
            f"Document ID: {document['id']}",
            f"Document title: {document['title']}",
            "Document excerpts with page markers:",
            build_chunk_context(batch),
        ])

        try:
            generation = self.llm.generate(
                instructions=get_prompt("memory_extraction"),
                input=prompt_input,
                max_output_tokens=self.max_output_tokens,
                model=self.model,
                timeout=self.timeout,
                label="memory_extraction",
            )
        except StageTimeoutError:
            self.metrics.record_timeout("memory_extraction")
            self._drop(case_id, document["id"], batch_index, "timeout")
            return None

        result = parse_model_output(generation.text, MemoryExtraction)
        if not result.ok:
            self._drop(case_id, document["id"], batch_index, "invalid_output", detail=result.error)
            return None

        self.metrics.record_memory_batch()
        return result.value

    def _drop(
        self,
        case_id: str,
        document_id: str,
        batch_index: int,
        reason: str,
        detail: Optional[str] = None,
    ) -> None:
        logger.warning(
            f"Dropped memory batch {batch_index} for document {document_id}: {reason}",
            extra={
                "case_id": case_id,
                "document_id": document_id,
                "batch_index": batch_index,
                "reason": reason,
                "detail": detail,
            },
        )
        self.metrics.record_memory_batch(dropped=True, reason=reason)
