"""
Ingest Job State Machine

Drives one uploaded artifact through

    queued/uploaded -> extracting -> ready_to_index -> indexing -> done

with ``error`` reachable from any non-terminal state. Archives (.zip) fan out
into one new Document + queued job per entry and are never indexed
themselves.

Progress is durable: after each completed step the job records
``last_completed_step`` (extracted, indexed, mirrored). A job that re-enters
from error/ready_to_index/indexing resumes after that step, reading its
extracted pages back from the byte store. A job explicitly re-run while
``done`` starts over. Format errors happen before any step is recorded, so
retrying them reproduces the same error.

Usage:
    pipeline = IngestPipeline(store, blobs, extractor, chunker, indexer, memory)
    pipeline.process_batch(case_id)            # all retry-eligible jobs
    pipeline.process_batch(case_id, [job_id])  # explicit retry
"""

import io
import json
import logging
import mimetypes
import time
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional

from .blob_store import BlobStore
from .case_store import CaseStore
from .chunker import WindowChunker
from .errors import FormatError, StageTimeoutError
from .extractors import ExtractedDocument, FormatExtractor, PageText, file_extension
from .indexing import IndexingService
from .memory import CaseMemoryExtractor, memory_rebuild_lock
from .metrics import MetricsCollector, get_metrics_collector
from .settings import RETRYABLE_JOB_STATUSES

logger = logging.getLogger(__name__)

# Ordered steps recorded in document_ingest_jobs.last_completed_step
JOB_STEPS = ("extracted", "indexed", "mirrored")

# Statuses from which a job continues after its last completed step
RESUMABLE_STATUSES = ("error", "ready_to_index", "indexing")


def resume_step(job: dict) -> Optional[str]:
    """
    The step a job can continue after, or None to start from extraction.

    Resuming past extraction needs the persisted pages, so a job without
    ``extracted_pages_url`` always restarts.
    """
    step = job.get("last_completed_step")
    if job.get("status") not in RESUMABLE_STATUSES or step not in JOB_STEPS:
        return None
    if not job.get("extracted_pages_url") or not job.get("extracted_text_url"):
        return None
    return step


class IngestPipeline:
    """
    Processes ingest jobs end to end.

    Args:
        store: Relational store
        blobs: Byte store holding uploads and extracted text
        extractor: Format extractor
        chunker: Page-preserving chunker
        indexer: Chunk index + provider mirror
        memory: Case memory extractor run after each completed job
        concurrency: Jobs processed at once
        max_jobs: Jobs selected per process_batch() call
    """

    def __init__(
        self,
        store: CaseStore,
        blobs: BlobStore,
        extractor: FormatExtractor,
        chunker: WindowChunker,
        indexer: IndexingService,
        memory: Optional[CaseMemoryExtractor] = None,
        concurrency: int = 12,
        max_jobs: int = 50,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.blobs = blobs
        self.extractor = extractor
        self.chunker = chunker
        self.indexer = indexer
        self.memory = memory
        self.concurrency = max(1, concurrency)
        self.max_jobs = max_jobs
        self.metrics = metrics or get_metrics_collector()

    # =========================================================================
    # Batch driver
    # =========================================================================

    def process_batch(self, case_id: Optional[str] = None, job_ids: Optional[list[str]] = None) -> dict:
        """
        Process a case's retry-eligible jobs, or an explicit subset.

        Jobs are taken oldest first, at most ``max_jobs``, and run in groups
        of ``concurrency``. A failing job never affects its siblings.

        Returns:
            {"case_id": ..., "processed": <number of jobs selected>}
        """
        case = self.store.get_or_create_case(case_id)
        jobs = self.store.select_ingest_jobs(
            case["id"],
            job_ids=job_ids,
            statuses=RETRYABLE_JOB_STATUSES,
            limit=self.max_jobs,
        )
        logger.info(f"Processing {len(jobs)} ingest job(s) for case {case['id']}")

        for start in range(0, len(jobs), self.concurrency):
            group = jobs[start:start + self.concurrency]
            with ThreadPoolExecutor(max_workers=len(group)) as executor:
                futures = {executor.submit(self.process_job, job["id"]): job["id"] for job in group}
                for future in as_completed(futures):
                    # process_job records its own failures; anything raised here
                    # means even the error write failed
                    try:
                        future.result()
                    except Exception as e:
                        logger.error(f"Job {futures[future]} could not be recorded: {e}")

        return {"case_id": case["id"], "processed": len(jobs)}

    # =========================================================================
    # Single job
    # =========================================================================

    def process_job(self, job_id: str) -> Optional[dict]:
        """
        Run one job to ``done`` or ``error``.

        Returns:
            The job row after processing, or None if the job does not exist
        """
        job = self.store.get_ingest_job(job_id)
        if job is None:
            logger.warning(f"Ingest job {job_id} not found")
            return None

        start = time.time()
        chunks_written = 0
        try:
            document = self._resolve_document(job)
            step = resume_step(job)

            if step is None:
                self._update(job_id, status="extracting", error=None, last_completed_step=None)
                data = self.blobs.fetch(job["blob_url"])

                if file_extension(job["filename"]) == "zip":
                    created = self.expand_zip(job["case_id"], data, parent_job_id=job_id)
                    logger.info(f"Job {job_id}: expanded {job['filename']} into {created} job(s)")
                    result = self._update(job_id, status="done")
                    self.metrics.record_job(job_id, 0, (time.time() - start) * 1000)
                    return result

                extracted = self.extractor.extract(
                    data,
                    job["filename"],
                    mime_type=job.get("mime_type"),
                    source_url=job["blob_url"],
                )
                self._persist_extraction(job, extracted)
                step = "extracted"
            else:
                logger.info(f"Job {job_id}: resuming after step '{step}'")
                self._update(job_id, status="indexing", error=None)
                extracted = self._load_extraction(job)

            if step == "extracted":
                self._update(job_id, status="indexing")
                self.store.delete_document_chunks(document["id"])
                chunks = self.chunker.chunk(extracted.pages)
                chunks_written = self.indexer.index_chunks(job["case_id"], document["id"], chunks)
                self._update(job_id, last_completed_step="indexed")
                step = "indexed"

            if step == "indexed":
                mirror = self.indexer.mirror_document(job["case_id"], job["filename"], extracted.text)
                self.store.update_document_index_handles(
                    document["id"], mirror.file_id, mirror.vector_store_id,
                )
                self._update(job_id, provider_file_id=mirror.file_id, last_completed_step="mirrored")

            result = self._update(job_id, status="done", document_id=document["id"])
            self._rebuild_memory(job["case_id"], document["id"])
            self.metrics.record_job(job_id, chunks_written, (time.time() - start) * 1000)
            return result

        except Exception as e:
            if isinstance(e, FormatError):
                logger.warning(f"Job {job_id} ({job['filename']}) rejected: {e}")
            else:
                logger.error(f"Job {job_id} ({job['filename']}) failed: {e}")
            if isinstance(e, StageTimeoutError):
                self.metrics.record_timeout(e.label)
            self.metrics.record_job(job_id, chunks_written, (time.time() - start) * 1000, failed=True)
            return self._update(job_id, status="error", error=str(e))

    def _resolve_document(self, job: dict) -> dict:
        """Reuse the job's linked Document, or create one and link it."""
        if job.get("document_id"):
            document = self.store.get_document(job["document_id"])
            if document is not None:
                return document

        document = self.store.create_document(
            case_id=job["case_id"],
            title=job["filename"],
            blob_url=job["blob_url"],
            mime_type=job.get("mime_type"),
            size_bytes=job.get("size_bytes"),
        )
        self._update(job["id"], document_id=document["id"])
        return document

    def _persist_extraction(self, job: dict, extracted: ExtractedDocument) -> None:
        case_id = job["case_id"]
        text_ref = self.blobs.put(
            f"cases/{case_id}/extracted/{job['id']}.txt",
            extracted.text.encode("utf-8"),
            content_type="text/plain",
        )
        pages_ref = self.blobs.put(
            f"cases/{case_id}/extracted/{job['id']}.pages.json",
            json.dumps([p.to_dict() for p in extracted.pages]).encode("utf-8"),
            content_type="application/json",
        )
        self._update(
            job["id"],
            status="ready_to_index",
            extracted_text_url=text_ref.url,
            extracted_pages_url=pages_ref.url,
            last_completed_step="extracted",
        )

    def _load_extraction(self, job: dict) -> ExtractedDocument:
        text = self.blobs.fetch(job["extracted_text_url"]).decode("utf-8")
        pages = json.loads(self.blobs.fetch(job["extracted_pages_url"]).decode("utf-8"))
        return ExtractedDocument(text=text, pages=[PageText.from_dict(p) for p in pages])

    def _rebuild_memory(self, case_id: str, document_id: str) -> None:
        if self.memory is None:
            return
        with memory_rebuild_lock(self.store, case_id) as acquired:
            if acquired:
                self.memory.rebuild_case_memory(case_id, document_ids=[document_id])

    def _update(self, job_id: str, **fields) -> dict:
        row = self.store.update_ingest_job(job_id, **fields)
        if "status" in fields:
            logger.info(f"Job {job_id} -> {fields['status']}")
        return row

    # =========================================================================
    # Archive fan-out
    # =========================================================================

    def expand_zip(self, case_id: str, data: bytes, parent_job_id: Optional[str] = None) -> int:
        """
        Store each file in the archive and queue it as its own job.

        Nested archives are queued like any other entry and expand when
        their own job runs. Entries already queued by an earlier run of
        the same parent job are skipped, so an archive job that failed
        midway can be retried without duplicating its children.

        Returns:
            Number of jobs created
        """
        queued = set()
        if parent_job_id:
            queued = {child["filename"] for child in self.store.list_child_jobs(parent_job_id)}

        created = 0
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                entry_name = info.filename
                if entry_name in queued:
                    logger.info(f"Job {parent_job_id}: {entry_name} already queued, skipping")
                    continue
                entry_bytes = archive.read(info)
                content_type = mimetypes.guess_type(entry_name)[0] or "application/octet-stream"

                blob = self.blobs.put(
                    f"cases/{case_id}/uploads/{entry_name}",
                    entry_bytes,
                    content_type=content_type,
                )
                # Job first: a child left without a document gets one when it runs
                job = self.store.create_ingest_job(
                    case_id=case_id,
                    filename=entry_name,
                    blob_url=blob.url,
                    mime_type=content_type,
                    size_bytes=len(entry_bytes),
                    status="queued",
                    parent_job_id=parent_job_id,
                )
                document = self.store.create_document(
                    case_id=case_id,
                    title=entry_name,
                    blob_url=blob.url,
                    mime_type=content_type,
                    size_bytes=len(entry_bytes),
                )
                self.store.update_ingest_job(job["id"], document_id=document["id"])
                created += 1
        return created
