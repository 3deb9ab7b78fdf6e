"""
Citation building and coverage checks for chat answers.

Retrieved chunks become RetrievedSources: a document id, a human-findable
locator (title, page, section hint, short quote) and a cleaned excerpt for
the model's context. Every SourceRef the fast paths emit is built from one
of these.

Coverage policy decides whether a parsed answer is grounded enough to
return or must be regenerated once.
"""

import re
import logging
from dataclasses import dataclass
from typing import Optional

from .case_patterns import matches, section_hint
from .schemas import DocumentSourceRef, StructuredAnswer, document_ref

logger = logging.getLogger(__name__)

EXCERPT_MAX_CHARS = 450
QUOTE_MAX_CHARS = 320

_WHITESPACE_RE = re.compile(r"\s+")
_ALPHA_RE = re.compile(r"[A-Za-z]")


def truncate_text(text: Optional[str], max_length: int) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return f"{text[:max_length].strip()}…"


def clean_excerpt(text: Optional[str], max_length: int) -> str:
    """
    Make raw chunk text presentable as an excerpt.

    Drops blank lines and OCR noise (lines with fewer than 3 letters unless
    very short), keeps at most two copies of any repeated line, collapses
    whitespace and truncates to ``max_length``.
    """
    if not text:
        return ""
    lines = [line.strip() for line in text.splitlines()]
    lines = [
        line for line in lines
        if line and (len(_ALPHA_RE.findall(line)) >= 3 or len(line) < 10)
    ]
    seen: dict[str, int] = {}
    kept = []
    for line in lines:
        seen[line] = seen.get(line, 0) + 1
        if seen[line] <= 2:
            kept.append(line)
    return truncate_text(_WHITESPACE_RE.sub(" ", " ".join(kept)).strip(), max_length)


@dataclass
class RetrievedSource:
    """A retrieved passage as presented to the model and cited back."""
    document_id: str
    label: str
    page_number: Optional[int]
    section: Optional[str]
    quote: str
    excerpt: str

    def to_dict(self) -> dict:
        return {
            "document_version_id": self.document_id,
            "label": self.label,
            "locator": {
                "label": self.label,
                "page_start": self.page_number,
                "page_end": self.page_number,
                "section": self.section,
                "quote": self.quote or None,
            },
            "excerpt": self.excerpt,
        }

    def source_ref(self, case_id: str, confidence: str = "medium") -> DocumentSourceRef:
        return document_ref(
            case_id=case_id,
            document_id=self.document_id,
            label=self.label,
            page=self.page_number,
            section=self.section,
            quote=self.quote or None,
            confidence=confidence,
        )


class CitationExtractor:
    """Turns retrieval hits into RetrievedSources."""

    def __init__(self, excerpt_chars: int = EXCERPT_MAX_CHARS, quote_chars: int = QUOTE_MAX_CHARS):
        self.excerpt_chars = excerpt_chars
        self.quote_chars = quote_chars

    def extract(self, hits: list) -> list[RetrievedSource]:
        """
        Build one RetrievedSource per hit, in order.

        Hits not tied to a document (no document_id) cannot be cited and are
        skipped.
        """
        sources = []
        for hit in hits:
            if not hit.document_id:
                continue
            raw = hit.text or ""
            sources.append(RetrievedSource(
                document_id=hit.document_id,
                label=hit.document_title or hit.filename or "Document",
                page_number=hit.page_number,
                section=section_hint(raw),
                quote=clean_excerpt(raw, self.quote_chars),
                excerpt=clean_excerpt(raw, self.excerpt_chars),
            ))
        return sources


def coverage_problems(
    answer: StructuredAnswer,
    question: str,
    has_indexed_content: bool,
) -> list[str]:
    """
    Reasons an answer is insufficiently cited; empty when it passes.

    Checked after a successful parse of a synthesized answer (retrieval has
    always happened by then).
    """
    problems = []
    if not answer.meta.used_retrieval:
        problems.append("used_retrieval_false")
    if not answer.evidence:
        problems.append("no_evidence")
    if any(not item.source_refs for item in answer.what_helps):
        problems.append("uncited_what_helps")
    if any(not item.source_refs for item in answer.what_hurts):
        problems.append("uncited_what_hurts")
    if matches("document_content", question) and not answer.evidence:
        problems.append("document_question_without_evidence")
    if has_indexed_content and matches("contested_topic", question) and not answer.what_hurts:
        problems.append("contested_topic_without_what_hurts")
    return problems
