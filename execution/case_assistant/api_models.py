"""
Pydantic models for the case assistant FastAPI backend.
"""

from typing import Any, Optional
from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    """Request body for the chat endpoint."""
    question: str = Field(default="", max_length=4000)
    thread_id: Optional[str] = None


class ProcessRequest(BaseModel):
    """Request body for processing ingest jobs now."""
    job_ids: Optional[list[str]] = None


class ProcessResponse(BaseModel):
    case_id: str
    processed: int


class ThreadCreateRequest(BaseModel):
    title: str = Field(default="New thread", min_length=1, max_length=200)


class ThreadInfo(BaseModel):
    """A chat thread."""
    id: str
    case_id: str
    title: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class MessageInfo(BaseModel):
    """A stored chat message; assistant content is a StructuredAnswer dict."""
    id: str
    thread_id: str
    role: str
    content: Any
    created_at: Optional[str] = None


class IngestJobInfo(BaseModel):
    """Status of one ingest job."""
    id: str
    filename: str
    status: str
    document_id: Optional[str] = None
    error: Optional[str] = None
    last_completed_step: Optional[str] = None
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class DocumentInfo(BaseModel):
    """A document with the status of the job that ingests it."""
    id: str
    title: str
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = None
    created_at: Optional[str] = None
    job_id: Optional[str] = None
    job_status: Optional[str] = None
    job_error: Optional[str] = None


class UploadResponse(BaseModel):
    """Response body for a stored upload."""
    job_id: str
    document_id: Optional[str] = None
    filename: str
    status: str
    blob_url: str


class TimelineRequest(BaseModel):
    source_text: str = ""
    document_id: Optional[str] = None


class InsightWindowRequest(BaseModel):
    start: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    end: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}-\d{2}$")


class InsightsRequest(BaseModel):
    evidence: list[str] = []
    window: Optional[InsightWindowRequest] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str
    storage_mode: Optional[str] = None
    retrieval_mode: Optional[str] = None
