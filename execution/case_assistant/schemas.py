"""
Structured payloads exchanged with the language model.

SourceRef is a discriminated union on ``ref_type``: each variant carries
exactly one non-null identifier field (none for user notes), so a payload
that names a document id under ``ref_type="email"`` fails validation.

LLM output is never threaded through the pipeline as raw dicts. Callers use
``parse_model_output`` which returns a ``ParseResult`` holding either the
validated model or the error text.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Annotated, Any, Generic, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, Field, ValidationError, field_validator


Confidence = Literal["high", "medium", "low"]
Priority = Literal["high", "medium", "low"]

MAX_QUOTE_CHARS = 320
MAX_QUOTE_SENTENCES = 2

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def clamp_quote(quote: Optional[str]) -> Optional[str]:
    """Cut a quote down to at most two sentences and MAX_QUOTE_CHARS."""
    if quote is None:
        return None
    text = " ".join(quote.split())
    if not text:
        return None
    sentences = _SENTENCE_END.split(text)
    text = " ".join(sentences[:MAX_QUOTE_SENTENCES])
    if len(text) > MAX_QUOTE_CHARS:
        text = text[: MAX_QUOTE_CHARS - 1].rstrip() + "…"
    return text


# =============================================================================
# Source references
# =============================================================================

class Locator(BaseModel):
    """Human-findable position inside a source."""
    label: str
    page_start: Optional[int] = None
    page_end: Optional[int] = None
    section: Optional[str] = None
    quote: Optional[str] = None
    timestamp: Optional[str] = None

    @field_validator("quote")
    @classmethod
    def _short_quote(cls, value: Optional[str]) -> Optional[str]:
        return clamp_quote(value)


class _SourceRefBase(BaseModel):
    case_id: str
    locator: Locator
    confidence: Confidence


class DocumentSourceRef(_SourceRefBase):
    ref_type: Literal["document"] = "document"
    document_version_id: str = Field(..., min_length=1)
    transcript_message_ids: None = None
    email_id: None = None
    timeline_event_id: None = None
    lawyer_note_id: None = None


class TranscriptSourceRef(_SourceRefBase):
    ref_type: Literal["transcript_message"] = "transcript_message"
    document_version_id: None = None
    transcript_message_ids: list[str] = Field(..., min_length=1)
    email_id: None = None
    timeline_event_id: None = None
    lawyer_note_id: None = None


class EmailSourceRef(_SourceRefBase):
    ref_type: Literal["email"] = "email"
    document_version_id: None = None
    transcript_message_ids: None = None
    email_id: str = Field(..., min_length=1)
    timeline_event_id: None = None
    lawyer_note_id: None = None


class TimelineSourceRef(_SourceRefBase):
    ref_type: Literal["timeline_event"] = "timeline_event"
    document_version_id: None = None
    transcript_message_ids: None = None
    email_id: None = None
    timeline_event_id: str = Field(..., min_length=1)
    lawyer_note_id: None = None


class LawyerNoteSourceRef(_SourceRefBase):
    ref_type: Literal["lawyer_note"] = "lawyer_note"
    document_version_id: None = None
    transcript_message_ids: None = None
    email_id: None = None
    timeline_event_id: None = None
    lawyer_note_id: str = Field(..., min_length=1)


class UserNoteSourceRef(_SourceRefBase):
    ref_type: Literal["user_note"] = "user_note"
    document_version_id: None = None
    transcript_message_ids: None = None
    email_id: None = None
    timeline_event_id: None = None
    lawyer_note_id: None = None


SourceRef = Annotated[
    Union[
        DocumentSourceRef,
        TranscriptSourceRef,
        EmailSourceRef,
        TimelineSourceRef,
        LawyerNoteSourceRef,
        UserNoteSourceRef,
    ],
    Field(discriminator="ref_type"),
]


# =============================================================================
# Chat answer
# =============================================================================

class Uncertainty(BaseModel):
    topic: str
    why: str
    needed_sources: list[str]


class AnswerBody(BaseModel):
    summary: str
    direct_answer: str
    confidence: Confidence
    uncertainties: list[Uncertainty]


class EvidenceItem(BaseModel):
    claim: str
    source_refs: list[SourceRef]
    type: Literal["fact", "quote", "comparison"]


class HelpItem(BaseModel):
    point: str
    source_refs: list[SourceRef]
    strength: Literal["strong", "moderate", "weak"]


class HurtItem(BaseModel):
    point: str
    source_refs: list[SourceRef]
    risk_level: Priority


class NextStep(BaseModel):
    action: str
    owner: Literal["user", "lawyer", "both"]
    priority: Priority


class LawyerQuestion(BaseModel):
    question: str
    why_it_matters: str
    source_refs: list[SourceRef]


class MissingDocument(BaseModel):
    doc_name: str
    why: str
    priority: Priority


class AnswerMeta(BaseModel):
    used_retrieval: bool
    retrieval_notes: str
    safety_note: str


class StructuredAnswer(BaseModel):
    """The one shape every chat response takes, success or failure."""
    answer: AnswerBody
    evidence: list[EvidenceItem]
    what_helps: list[HelpItem]
    what_hurts: list[HurtItem]
    next_steps: list[NextStep]
    questions_for_lawyer: list[LawyerQuestion]
    missing_or_requested_docs: list[MissingDocument]
    meta: AnswerMeta


# =============================================================================
# Case memory extraction
# =============================================================================

EntityType = Literal["person", "child", "attorney", "judge", "org", "address"]
FactType = Literal[
    "parenting_rule",
    "custody",
    "support",
    "restriction",
    "definition",
    "asset",
    "debt",
    "schedule",
    "education",
    "medical",
    "travel",
    "communication",
    "other",
]
ObligationType = Literal["payment", "exchange", "notice", "filing", "other"]


class ExtractedEntity(BaseModel):
    type: EntityType
    name: str
    attributes: Optional[dict[str, Any]] = None
    citations: list[SourceRef]
    confidence: Confidence


class ExtractedFact(BaseModel):
    type: FactType
    key: str
    value: dict[str, Any]
    citations: list[SourceRef]
    confidence: Confidence


class ExtractedTimelineEvent(BaseModel):
    event_date: Optional[str]
    title: str
    description: str
    citations: list[SourceRef]
    confidence: Confidence


class ExtractedObligation(BaseModel):
    obligation_type: ObligationType
    due_date: Optional[str]
    recurrence: Optional[str] = None
    description: str
    citations: list[SourceRef]
    confidence: Confidence


class MemoryExtraction(BaseModel):
    document_type: str
    entities: list[ExtractedEntity]
    facts: list[ExtractedFact]
    timeline: list[ExtractedTimelineEvent]
    obligations: list[ExtractedObligation]


# =============================================================================
# Timeline and insights jobs
# =============================================================================

DateString = Annotated[str, Field(pattern=r"^\d{4}-\d{2}-\d{2}$")]


class TimelineEventDraft(BaseModel):
    occurred_at: Optional[DateString]
    precision: Literal["exact", "approx", "unknown"]
    title: str
    summary: str
    category: Literal[
        "custody", "support", "communication", "schedule",
        "school", "medical", "legal", "other",
    ]
    people: list[str]
    source_ref: SourceRef


class TimelineExtraction(BaseModel):
    events: list[TimelineEventDraft]


class SummaryBullet(BaseModel):
    bullet: str
    source_refs: list[SourceRef]
    confidence: Confidence


class PatternExample(BaseModel):
    example: str
    source_refs: list[SourceRef]


class ObservedPattern(BaseModel):
    pattern: str
    description: str
    evidence: list[PatternExample]
    pattern_strength: Literal["strong", "moderate", "weak"]


class RiskToMe(BaseModel):
    risk: str
    why_it_matters: str
    source_refs: list[SourceRef]
    risk_level: Priority


class OtherPartyIssue(BaseModel):
    issue: str
    why_it_matters: str
    source_refs: list[SourceRef]
    confidence: Confidence


class UnknownItem(BaseModel):
    item: str
    why: str
    priority: Priority


class InsightWindow(BaseModel):
    start: Optional[DateString]
    end: Optional[DateString]


class InsightsMeta(BaseModel):
    window: InsightWindow
    safety_note: str


class InsightsReport(BaseModel):
    executive_summary: list[SummaryBullet]
    observed_patterns: list[ObservedPattern]
    risks_to_me: list[RiskToMe]
    potential_issues_other_party: list[OtherPartyIssue]
    unknowns_and_what_to_collect: list[UnknownItem]
    questions_for_attorney: list[LawyerQuestion]
    meta: InsightsMeta


# =============================================================================
# Parsing
# =============================================================================

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class ParseResult(Generic[ModelT]):
    """Either a validated model or the reason parsing failed."""
    value: Optional[ModelT] = None
    error: Optional[str] = None
    issues: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and self.value is not None


def extract_json(text: str) -> str:
    """
    Return the span from the first '{' to the last '}' in model output.

    Raises:
        ValueError: If the text holds no JSON object.
    """
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last == -1 or last <= first:
        raise ValueError("No JSON object found in model output.")
    return text[first:last + 1]


def parse_model_output(text: str, model: type[ModelT]) -> ParseResult[ModelT]:
    """Extract the JSON object from ``text`` and validate it as ``model``."""
    try:
        payload = json.loads(extract_json(text or ""))
    except ValueError as e:
        return ParseResult(error=str(e))
    try:
        return ParseResult(value=model.model_validate(payload))
    except ValidationError as e:
        return ParseResult(
            error=f"{model.__name__} failed validation: {e.error_count()} error(s): {e}",
            issues=json.loads(e.json(include_url=False)),
        )


def document_ref(
    case_id: str,
    document_id: str,
    label: str,
    page: Optional[int] = None,
    section: Optional[str] = None,
    quote: Optional[str] = None,
    confidence: str = "medium",
) -> DocumentSourceRef:
    """Build a document citation; the single constructor used by fast paths."""
    return DocumentSourceRef(
        case_id=case_id,
        document_version_id=document_id,
        locator=Locator(
            label=label,
            page_start=page,
            page_end=page,
            section=section,
            quote=quote,
        ),
        confidence=confidence,
    )
