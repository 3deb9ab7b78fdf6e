"""
FastAPI Backend for the Case Assistant

REST endpoints for uploads, ingest processing, case memory, chat threads,
timeline extraction and insights. Every route is scoped to a case; the path
segment ``default`` resolves to the default case.

Run with: uvicorn execution.case_assistant.api:app --host 0.0.0.0 --port 8000
"""

import os
import uuid
import logging
import secrets
import mimetypes
from typing import Optional

from fastapi import FastAPI, HTTPException, UploadFile, File, Depends
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from dotenv import load_dotenv

from . import __version__
from .api_models import (
    ChatRequest, ProcessRequest, ProcessResponse,
    ThreadCreateRequest, ThreadInfo, MessageInfo,
    IngestJobInfo, DocumentInfo, UploadResponse,
    TimelineRequest, InsightsRequest,
    HealthResponse,
)
from .blob_store import BlobStore
from .case_store import CaseStore, CaseStoreConfig
from .chunker import ChunkConfig, WindowChunker
from .embeddings import get_embedding_service
from .errors import SchemaValidationError
from .extractors import FormatExtractor
from .indexing import IndexingService
from .ingest import IngestPipeline
from .insights import InsightsGenerator, TimelineExtractor
from .llm import LLMClient
from .memory import CaseMemoryExtractor, memory_rebuild_lock
from .metrics import get_metrics_collector
from .retriever import build_retriever
from .settings import AssistantSettings
from .synthesis import AnswerSynthesizer

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Case Assistant API",
    description="Per-case document ingestion, case memory and citation-grounded chat",
    version=__version__,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Service Container - builds every service once per process
# =============================================================================

class ServiceContainer:
    """
    Lazily constructs the store, provider clients and pipeline services.

    Components passed to the constructor are used as-is (tests inject fakes).
    The vector capability of the database is probed once, on first use, and
    handed to the indexer and retriever as their storage mode.
    """

    def __init__(
        self,
        settings: Optional[AssistantSettings] = None,
        store=None,
        llm=None,
        embedder=None,
        blobs=None,
        storage_mode: Optional[str] = None,
    ):
        self._settings = settings
        self._store = store
        self._llm = llm
        self._embedder = embedder
        self._blobs = blobs
        self._storage_mode = storage_mode
        self._services = None

    @property
    def settings(self) -> AssistantSettings:
        if self._settings is None:
            self._settings = AssistantSettings.from_env()
        return self._settings

    def get_store(self):
        if self._store is None:
            store = CaseStore(CaseStoreConfig(
                connection_string=self.settings.database_url,
                embedding_dimensions=self.settings.embedding_dimensions,
            ))
            store.connect()
            store.initialize_schema()
            self._store = store
        return self._store

    @property
    def storage_mode(self) -> str:
        if self._storage_mode is None:
            store = self.get_store()
            if store.probe_vector_support():
                store.enable_vector_column()
                self._storage_mode = "vector"
            else:
                self._storage_mode = "json"
            logger.info(f"Chunk storage mode: {self._storage_mode}")
        return self._storage_mode

    def get_services(self) -> dict:
        """Get or create the pipeline services."""
        if self._services is None:
            settings = self.settings
            timeouts = settings.timeouts
            store = self.get_store()
            storage_mode = self.storage_mode

            llm = self._llm or LLMClient(api_key=settings.openai_api_key, model=settings.chat_model)
            embedder = self._embedder or get_embedding_service(settings)
            blobs = self._blobs or BlobStore(
                root_dir=settings.blob_storage_dir,
                public_base_url=settings.blob_public_base_url,
                fetch_timeout=timeouts.blob_fetch,
            )
            metrics = get_metrics_collector()

            indexer = IndexingService(
                store, embedder, llm,
                storage_mode=storage_mode,
                provider_timeout=timeouts.provider_file,
            )
            memory = CaseMemoryExtractor(
                store, llm,
                batch_size=settings.memory_batch_size,
                max_output_tokens=settings.memory_max_output_tokens,
                timeout=timeouts.memory_extraction,
                metrics=metrics,
            )
            pipeline = IngestPipeline(
                store,
                blobs,
                FormatExtractor(llm, vision_model=settings.vision_model, ocr_timeout=timeouts.ocr),
                WindowChunker(ChunkConfig(chunk_size=settings.chunk_size, overlap=settings.chunk_overlap)),
                indexer,
                memory=memory,
                concurrency=settings.ingest_concurrency,
                max_jobs=settings.ingest_max_jobs,
                metrics=metrics,
            )
            retriever = build_retriever(
                settings.retrieval_mode,
                store,
                llm,
                embedder=embedder,
                storage_mode=storage_mode,
                chunk_timeout=timeouts.chunk_search,
                file_search_timeout=timeouts.file_search,
            )
            synthesizer = AnswerSynthesizer(
                store, retriever, llm,
                max_output_tokens=settings.synthesis_max_output_tokens,
                timeout=timeouts.synthesis,
                metrics=metrics,
            )

            self._services = {
                "blobs": blobs,
                "pipeline": pipeline,
                "memory": memory,
                "synthesizer": synthesizer,
                "timeline": TimelineExtractor(store, llm, timeout=timeouts.synthesis),
                "insights": InsightsGenerator(store, llm, timeout=timeouts.synthesis),
            }
        return self._services


_container = ServiceContainer()


def get_container() -> ServiceContainer:
    return _container


# =============================================================================
# Authentication dependency
# =============================================================================

_basic = HTTPBasic(auto_error=False)


def require_credentials(
    credentials: Optional[HTTPBasicCredentials] = Depends(_basic),
    container: ServiceContainer = Depends(get_container),
) -> Optional[str]:
    """Check HTTP Basic credentials against the configured pair; open when none is set."""
    settings = container.settings
    if not settings.auth_enabled:
        return None

    valid = credentials is not None and (
        secrets.compare_digest(credentials.username.encode(), settings.app_username.encode())
        & secrets.compare_digest(credentials.password.encode(), settings.app_password.encode())
    )
    if not valid:
        raise HTTPException(
            status_code=401,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


# =============================================================================
# Helpers
# =============================================================================

def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (ValueError, TypeError):
        return False
    return True


def _resolve_case(store, case_id: str) -> dict:
    if case_id == "default":
        return store.get_or_create_case(None)
    case = store.get_case(case_id) if _is_uuid(case_id) else None
    if case is None:
        raise HTTPException(status_code=404, detail="Case not found")
    return case


def _resolve_thread(store, case_id: str, thread_id: str) -> dict:
    thread = store.get_thread(thread_id) if _is_uuid(thread_id) else None
    if thread is None or thread["case_id"] != case_id:
        raise HTTPException(status_code=404, detail="Invalid thread")
    return thread


def _store_upload(blobs, case_id: str, upload: UploadFile):
    filename = upload.filename or "upload.bin"
    data = upload.file.read()
    content_type = upload.content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
    blob = blobs.put(f"cases/{case_id}/uploads/{filename}", data, content_type=content_type)
    return filename, content_type, blob


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
def health_check(container: ServiceContainer = Depends(get_container)):
    """Health check endpoint."""
    storage_mode = None
    try:
        container.get_store()
        storage_mode = container.storage_mode
        db_status = "connected"
    except Exception as e:
        logger.warning(f"Health check: database disconnected: {e}")
        db_status = "disconnected"

    return HealthResponse(
        status="ok",
        version=__version__,
        database=db_status,
        storage_mode=storage_mode,
        retrieval_mode=container.settings.retrieval_mode,
    )


@app.get("/api/v1/metrics", dependencies=[Depends(require_credentials)])
def get_metrics():
    """In-process counters for jobs, chat answer paths, timeouts and dropped batches."""
    return get_metrics_collector().get_metrics_dict()


@app.get(
    "/api/v1/cases/{case_id}/documents",
    response_model=list[DocumentInfo],
    dependencies=[Depends(require_credentials)],
)
def list_documents(case_id: str, container: ServiceContainer = Depends(get_container)):
    """List a case's documents with their ingest status."""
    store = container.get_store()
    case = _resolve_case(store, case_id)
    return [
        DocumentInfo(
            id=d["id"],
            title=d["title"],
            mime_type=d.get("mime_type"),
            size_bytes=d.get("size_bytes"),
            created_at=d.get("created_at"),
            job_id=d.get("job_id"),
            job_status=d.get("job_status"),
            job_error=d.get("job_error"),
        )
        for d in store.list_documents(case["id"])
    ]


@app.post(
    "/api/v1/cases/{case_id}/documents",
    response_model=UploadResponse,
    dependencies=[Depends(require_credentials)],
)
def upload_document(
    case_id: str,
    file: UploadFile = File(...),
    container: ServiceContainer = Depends(get_container),
):
    """Store one upload as a Document with an ingest job in ``uploaded``."""
    store = container.get_store()
    case = _resolve_case(store, case_id)
    blobs = container.get_services()["blobs"]

    filename, content_type, blob = _store_upload(blobs, case["id"], file)
    document = store.create_document(
        case_id=case["id"],
        title=filename,
        blob_url=blob.url,
        mime_type=content_type,
        size_bytes=blob.size,
    )
    job = store.create_ingest_job(
        case_id=case["id"],
        filename=filename,
        blob_url=blob.url,
        mime_type=content_type,
        size_bytes=blob.size,
        status="uploaded",
        document_id=document["id"],
    )
    logger.info(f"Uploaded {filename} to case {case['id']} as job {job['id']}")
    return UploadResponse(
        job_id=job["id"],
        document_id=document["id"],
        filename=filename,
        status=job["status"],
        blob_url=blob.url,
    )


@app.post(
    "/api/v1/cases/{case_id}/uploads",
    response_model=list[UploadResponse],
    dependencies=[Depends(require_credentials)],
)
def upload_batch(
    case_id: str,
    files: list[UploadFile] = File(...),
    container: ServiceContainer = Depends(get_container),
):
    """Queue a batch of uploads; Documents are created when each job runs."""
    store = container.get_store()
    case = _resolve_case(store, case_id)
    blobs = container.get_services()["blobs"]

    responses = []
    for upload in files:
        filename, content_type, blob = _store_upload(blobs, case["id"], upload)
        job = store.create_ingest_job(
            case_id=case["id"],
            filename=filename,
            blob_url=blob.url,
            mime_type=content_type,
            size_bytes=blob.size,
            status="queued",
        )
        responses.append(UploadResponse(
            job_id=job["id"],
            filename=filename,
            status=job["status"],
            blob_url=blob.url,
        ))
    logger.info(f"Queued {len(responses)} upload(s) for case {case['id']}")
    return responses


@app.get(
    "/api/v1/cases/{case_id}/ingest/jobs",
    response_model=list[IngestJobInfo],
    dependencies=[Depends(require_credentials)],
)
def list_ingest_jobs(case_id: str, container: ServiceContainer = Depends(get_container)):
    """Ingest jobs for a case, newest first."""
    store = container.get_store()
    case = _resolve_case(store, case_id)
    return [
        IngestJobInfo(
            id=j["id"],
            filename=j["filename"],
            status=j["status"],
            document_id=j.get("document_id"),
            error=j.get("error"),
            last_completed_step=j.get("last_completed_step"),
            mime_type=j.get("mime_type"),
            size_bytes=j.get("size_bytes"),
            created_at=j.get("created_at"),
            updated_at=j.get("updated_at"),
        )
        for j in store.list_ingest_jobs(case["id"])
    ]


@app.post(
    "/api/v1/cases/{case_id}/ingest/process",
    response_model=ProcessResponse,
    dependencies=[Depends(require_credentials)],
)
def process_ingest_jobs(
    case_id: str,
    request: Optional[ProcessRequest] = None,
    container: ServiceContainer = Depends(get_container),
):
    """Process the case's pending jobs now, or only the listed ones."""
    store = container.get_store()
    case = _resolve_case(store, case_id)
    job_ids = request.job_ids if request else None
    if job_ids and not all(_is_uuid(j) for j in job_ids):
        raise HTTPException(status_code=400, detail="Invalid job id")

    result = container.get_services()["pipeline"].process_batch(case["id"], job_ids=job_ids or None)
    return ProcessResponse(**result)


@app.post("/api/v1/cases/{case_id}/memory/rebuild", dependencies=[Depends(require_credentials)])
def rebuild_memory(case_id: str, container: ServiceContainer = Depends(get_container)):
    """Rebuild case memory from every document; 202 while another rebuild holds the lock."""
    store = container.get_store()
    case = _resolve_case(store, case_id)
    memory = container.get_services()["memory"]

    with memory_rebuild_lock(store, case["id"]) as acquired:
        if not acquired:
            return JSONResponse(status_code=202, content={"status": "in_progress"})
        summary = memory.rebuild_case_memory(case["id"])

    return {"status": "completed", "summary": summary.to_dict()}


@app.post("/api/v1/cases/{case_id}/chat", dependencies=[Depends(require_credentials)])
def chat(
    case_id: str,
    request: ChatRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Answer a question in a thread (the case's default thread when none is given)."""
    question = request.question.strip()
    if not question:
        raise HTTPException(status_code=400, detail="Missing question")

    store = container.get_store()
    case = _resolve_case(store, case_id)
    if request.thread_id:
        thread = _resolve_thread(store, case["id"], request.thread_id)
    else:
        thread = store.get_or_create_default_thread(case["id"])

    answer = container.get_services()["synthesizer"].answer(case["id"], thread["id"], question)
    return {"thread_id": thread["id"], "response": answer.model_dump(mode="json")}


@app.get(
    "/api/v1/cases/{case_id}/threads",
    response_model=list[ThreadInfo],
    dependencies=[Depends(require_credentials)],
)
def list_threads(case_id: str, container: ServiceContainer = Depends(get_container)):
    store = container.get_store()
    case = _resolve_case(store, case_id)
    return [ThreadInfo(**t) for t in store.list_threads(case["id"])]


@app.post(
    "/api/v1/cases/{case_id}/threads",
    response_model=ThreadInfo,
    dependencies=[Depends(require_credentials)],
)
def create_thread(
    case_id: str,
    request: Optional[ThreadCreateRequest] = None,
    container: ServiceContainer = Depends(get_container),
):
    store = container.get_store()
    case = _resolve_case(store, case_id)
    title = request.title if request else "New thread"
    return ThreadInfo(**store.create_thread(case["id"], title=title))


@app.delete("/api/v1/cases/{case_id}/threads/{thread_id}", dependencies=[Depends(require_credentials)])
def delete_thread(case_id: str, thread_id: str, container: ServiceContainer = Depends(get_container)):
    """Delete a thread and its messages."""
    store = container.get_store()
    case = _resolve_case(store, case_id)
    thread = _resolve_thread(store, case["id"], thread_id)
    store.delete_thread(case["id"], thread["id"])
    return {"status": "deleted", "thread_id": thread["id"]}


@app.get(
    "/api/v1/cases/{case_id}/threads/{thread_id}/messages",
    response_model=list[MessageInfo],
    dependencies=[Depends(require_credentials)],
)
def list_messages(case_id: str, thread_id: str, container: ServiceContainer = Depends(get_container)):
    """Message history for a thread, oldest first."""
    store = container.get_store()
    case = _resolve_case(store, case_id)
    thread = _resolve_thread(store, case["id"], thread_id)
    return [
        MessageInfo(
            id=m["id"],
            thread_id=m["thread_id"],
            role=m["role"],
            content=m["content"],
            created_at=m.get("created_at"),
        )
        for m in store.get_messages(thread["id"])
    ]


@app.post("/api/v1/cases/{case_id}/timeline", dependencies=[Depends(require_credentials)])
def extract_timeline(
    case_id: str,
    request: TimelineRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Extract timeline events from source text and store them."""
    store = container.get_store()
    case = _resolve_case(store, case_id)
    extractor = container.get_services()["timeline"]
    try:
        events = extractor.extract(case["id"], request.source_text, document_id=request.document_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SchemaValidationError as e:
        return JSONResponse(status_code=422, content={"error": str(e), "issues": e.issues})
    return {"events": events}


@app.post("/api/v1/cases/{case_id}/insights", dependencies=[Depends(require_credentials)])
def generate_insights(
    case_id: str,
    request: InsightsRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Generate an insights report from evidence snippets and store it."""
    store = container.get_store()
    case = _resolve_case(store, case_id)
    generator = container.get_services()["insights"]
    window = request.window.model_dump() if request.window else None
    try:
        result = generator.generate(case["id"], request.evidence, window=window)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SchemaValidationError as e:
        return JSONResponse(status_code=422, content={"error": str(e), "issues": e.issues})
    return result
