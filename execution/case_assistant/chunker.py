"""
Page-Preserving Window Chunker

Splits extracted pages into overlapping fixed-size character windows.
Windows never cross a page boundary, and chunk_index runs globally across
the document so (document_id, chunk_index) gives reading order.

Chunking is deterministic: identical pages always yield identical chunks,
which is what lets reprocessing delete and recreate a document's chunks.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .extractors import PageText

logger = logging.getLogger(__name__)


@dataclass
class ChunkRecord:
    """One retrieval unit cut from a single page."""
    chunk_index: int
    page_number: Optional[int]
    text: str

    def to_dict(self) -> dict:
        return {
            "chunk_index": self.chunk_index,
            "page_number": self.page_number,
            "text": self.text,
        }


@dataclass
class ChunkConfig:
    """Configuration for chunking parameters (characters, not tokens)."""
    chunk_size: int = 1000
    overlap: int = 150

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= self.overlap < self.chunk_size:
            raise ValueError("overlap must be in [0, chunk_size)")


def window_text(text: str, chunk_size: int, overlap: int) -> list[str]:
    """
    Slide a window of chunk_size characters over text.

    Each window starts overlap characters before the previous one ended.
    Windows are whitespace-trimmed; empty windows are dropped.
    """
    windows = []
    if not text:
        return windows

    start = 0
    length = len(text)
    while start < length:
        end = min(start + chunk_size, length)
        piece = text[start:end].strip()
        if piece:
            windows.append(piece)
        if end == length:
            break
        start = max(0, end - overlap)
    return windows


class WindowChunker:
    """Cuts extracted pages into ChunkRecords."""

    def __init__(self, config: Optional[ChunkConfig] = None):
        self.config = config or ChunkConfig()

    def chunk(self, pages: list[PageText]) -> list[ChunkRecord]:
        """
        Chunk pages in order.

        Args:
            pages: Ordered page segments from the extractor

        Returns:
            ChunkRecords with chunk_index starting at 0
        """
        records = []
        chunk_index = 0
        for page in pages:
            for text in window_text(page.text, self.config.chunk_size, self.config.overlap):
                records.append(ChunkRecord(
                    chunk_index=chunk_index,
                    page_number=page.page_number,
                    text=text,
                ))
                chunk_index += 1

        logger.debug(f"Chunked {len(pages)} page(s) into {len(records)} chunks")
        return records
