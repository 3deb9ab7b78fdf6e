"""
Case Assistant - document ingestion and grounded chat for a single legal case

This package provides:
- An ingest job state machine turning uploads into page-aware chunks
- Format extraction for PDF, DOCX, email, HTML, text and images (OCR)
- Chunk embeddings in Postgres plus a mirrored provider file index
- Case memory (entities, facts, timeline, obligations) rebuilt per document
- A chat synthesizer whose answers always cite the case's documents

Entry points:
- execution.case_assistant.api:app (FastAPI)
- process_jobs.py (operator CLI)
"""

from .case_store import CaseStore
from .extractors import FormatExtractor
from .chunker import WindowChunker
from .indexing import IndexingService
from .ingest import IngestPipeline
from .memory import CaseMemoryExtractor
from .retriever import CaseRetriever, FileSearchRetriever
from .synthesis import AnswerSynthesizer

__all__ = [
    "CaseStore",
    "FormatExtractor",
    "WindowChunker",
    "IndexingService",
    "IngestPipeline",
    "CaseMemoryExtractor",
    "CaseRetriever",
    "FileSearchRetriever",
    "AnswerSynthesizer",
]

__version__ = "0.1.0"
