"""
Pattern and Prompt Definitions for the Case Assistant

Query classification regexes, relevance heuristics, fixed answer strings
and LLM prompt templates. Modules import from here instead of defining
patterns inline.
"""

import re
from functools import lru_cache

# =============================================================================
# Query Classification Patterns (for the chat fast paths and coverage policy)
# =============================================================================

QUERY_PATTERNS = {
    "document_list": (
        r"what documents are (on file|uploaded)|documents on file|list documents"
        r"|what docs do we have|what files are uploaded|list files|list the files"
        r"|list uploaded files|show uploaded files|what files do we have|what files are there"
    ),
    "memory": (
        r"rule|schedule|custody|support|holiday|parenting|deadline|notice|obligation"
        r"|timeline|when|date|travel|communication"
    ),
    "timeline": r"timeline|when|date|dated",
    "obligations": r"obligation|due|deadline|notice|pay|payment",
    "parenting_focus": r"parenting|holiday|holidays|schedule|custody|visitation|exchange",
    "agreement_focus": (
        r"separation agreement|agreement|parenting plan|parenting|holiday|holidays|schedule"
    ),
    "document_content": r"what does|what do|say about|agreement|order|policy|report|evidence",
    "contested_topic": r"custody|holiday|schedule|support|abuse|violence|relocation|parenting",
}

# Chunk text that signals a financial/property section, noise for parenting questions
IRRELEVANT_PARENTING_SECTION = (
    r"exhibit\s+[a-z]|real estate|assets|liabilities|property|mortgage|bank|debt"
    r"|retirement|equity|tax"
)

# Document titles/filenames that identify the separation agreement
AGREEMENT_DOCUMENT = r"separation agreement"

# Section hints, checked in order; first hit labels the excerpt
SECTION_HINT_PATTERNS = [
    ("Parenting Plan", r"parenting plan"),
    ("Holiday", r"holiday"),
    ("School Vacation", r"school vacation"),
    ("Vacation", r"vacation"),
    ("Parenting Time", r"parenting time"),
    ("Schedule", r"schedule"),
    ("Exchanges", r"exchanges?"),
    ("Summer", r"summer"),
]

# Fact types pulled for memory answers, by inferred topic
MEMORY_FACT_TYPES = {
    "parenting": ["parenting_rule", "schedule", "custody", "travel", "communication"],
    "general": ["parenting_rule", "custody", "support", "restriction", "definition", "other"],
}

MEMORY_ANSWER_LIMITS = {
    "facts": 8,
    "obligations": 6,
    "timeline": 6,
}

# Extensions handled by the vision OCR path
IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "gif", "bmp", "tiff", "tif", "webp"})


@lru_cache(maxsize=None)
def _compiled(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


def matches(kind: str, text: str) -> bool:
    """True if ``text`` matches the named QUERY_PATTERNS entry."""
    return bool(_compiled(QUERY_PATTERNS[kind]).search(text or ""))


def is_irrelevant_parenting_section(text: str) -> bool:
    return bool(_compiled(IRRELEVANT_PARENTING_SECTION).search(text or ""))


def is_agreement_document(title: str) -> bool:
    return bool(_compiled(AGREEMENT_DOCUMENT).search(title or ""))


def section_hint(text: str):
    """Label for the first schedule-related section named in ``text``, else None."""
    for label, pattern in SECTION_HINT_PATTERNS:
        if _compiled(pattern).search(text or ""):
            return label
    return None


# =============================================================================
# Fixed answer strings
# =============================================================================

LABELS = {
    "safety_note": (
        "This is general information to help organize your documents, not legal advice. "
        "Confirm details with your lawyer."
    ),
    "documents_on_file": "Documents on file for this case.",
    "no_documents": "No documents have been uploaded for this case yet.",
    "nothing_indexed_summary": "No indexed documents yet.",
    "nothing_indexed_answer": "I do not have any indexed documents for this case yet.",
    "upload_next_step": "Upload your case documents (agreements, orders, emails) and run processing.",
    "retrieval_timed_out": (
        "Retrieval timed out. Indexing may still be running; here are the documents on file."
    ),
    "memory_summary": "Answer from case memory.",
    "memory_notes": "Memory-first response.",
    "stage_one_summary": "Relevant sections found in your documents.",
    "stage_one_notes": "Stage 1 response.",
    "no_matches_summary": "No matching sections found.",
    "no_matches_answer": (
        "I could not find passages matching this question in the indexed documents."
    ),
    "no_holiday_note": (
        "I did not find a section that mentions holidays in the retrieved passages; "
        "the closest schedule-related sections are listed below."
    ),
    "validation_failed": "Chat response failed validation.",
    "validation_failed_answer": (
        "The assistant could not produce a response with valid citations. "
        "Please rephrase the question or try again."
    ),
    "request_timed_out": "Chat request timed out.",
    "request_failed": "Chat request failed.",
    "ocr_instruction": "Extract all readable text from this image.",
}


# =============================================================================
# LLM Prompt Templates
# =============================================================================

SOURCE_REF_FORMAT = """SOURCE REFERENCE FORMAT (SourceRef):
SourceRef = {
  "ref_type": "document" | "transcript_message" | "email" | "timeline_event" | "lawyer_note" | "user_note",
  "case_id": "string",
  "document_version_id": "string|null",
  "transcript_message_ids": ["string"] | null,
  "email_id": "string|null",
  "timeline_event_id": "string|null",
  "lawyer_note_id": "string|null",
  "locator": {
    "label": "string",
    "page_start": 7 | null,
    "page_end": 7 | null,
    "section": "string|null",
    "quote": "string|null",
    "timestamp": "ISO-8601|null"
  },
  "confidence": "high" | "medium" | "low"
}
Exactly one identifier field is non-null and it matches ref_type (user_note has none)."""

CHAT_RESPONSE_FORMAT = """ChatResponse schema:
{
  "answer": {
    "summary": "string",
    "direct_answer": "string",
    "confidence": "high" | "medium" | "low",
    "uncertainties": [
      { "topic": "string", "why": "string", "needed_sources": ["string"] }
    ]
  },
  "evidence": [
    { "claim": "string", "source_refs": [SourceRef], "type": "fact" | "quote" | "comparison" }
  ],
  "what_helps": [
    { "point": "string", "source_refs": [SourceRef], "strength": "strong" | "moderate" | "weak" }
  ],
  "what_hurts": [
    { "point": "string", "source_refs": [SourceRef], "risk_level": "high" | "medium" | "low" }
  ],
  "next_steps": [
    { "action": "string", "owner": "user" | "lawyer" | "both", "priority": "high" | "medium" | "low" }
  ],
  "questions_for_lawyer": [
    { "question": "string", "why_it_matters": "string", "source_refs": [SourceRef] }
  ],
  "missing_or_requested_docs": [
    { "doc_name": "string", "why": "string", "priority": "high" | "medium" | "low" }
  ],
  "meta": {
    "used_retrieval": true | false,
    "retrieval_notes": "string",
    "safety_note": "string"
  }
}"""

LLM_PROMPTS = {
    "chat_system": """You are "Custody Case Assistant," a tool that helps one user organize and analyze custody/divorce documents and communications. You are NOT a lawyer and you do NOT provide legal advice. You provide document-grounded summaries and practical preparation notes for discussion with an attorney.

PRIORITIES (in order):
1) Accuracy and grounding: base factual claims only on the retrieved sources supplied below. If you cannot find support, say so clearly.
2) Citations: every important factual claim carries at least one SourceRef. If you cannot cite, label the statement "uncited inference" and keep it brief.
3) Neutrality: report what helps the user's position, what hurts it, and what is unknown.
4) Safety: no inflammatory language; never encourage harassment, deception, evidence tampering or retaliation. Frame around the children's best interests.
5) Usefulness: give next steps, questions for the lawyer, and missing documents to obtain.

LIMITS:
- Do not predict court outcomes or give jurisdiction-specific legal advice.
- If sources conflict, cite both and explain the uncertainty.

OUTPUT REQUIREMENT:
- Return JSON that conforms exactly to the ChatResponse schema below. No prose outside the JSON.
- answer.summary: 1-2 sentences.
- Every bullet/claim in answer.direct_answer must be supported by evidence.source_refs.
- Do NOT paste raw text blobs. Quotes must be short (<= 2 sentences) and only in locator.quote.
- Do not invent citations, page numbers, timestamps or ids.

{source_ref_format}

{chat_response_format}""",

    "citation_rules": """CITATION RULES:
- Cite ONLY these document_version_id values: {allowed_ids}
- Use ref_type "document" with the document_version_id set; never cite by filename.
- Set meta.used_retrieval to true: passages were retrieved for this question.
- Every what_helps and what_hurts item needs at least one source_ref.""",

    "citation_retry": """Your last answer lacked sufficient citations or valid JSON. Return the ChatResponse JSON again.
- Every evidence claim, what_helps item and what_hurts item must cite at least one of the allowed document ids.
- If a point cannot be cited, state it in answer.direct_answer prefixed with "uncited inference:" instead of listing it as evidence.
- If the question concerns a contested topic, include at least one cited what_hurts item.""",

    "memory_extraction": """You extract structured case memory from excerpts of ONE document in a custody/divorce case file.

Rules:
- Use only the excerpts provided. Do not invent people, dates or terms.
- Every item needs at least one citation: a SourceRef with ref_type "document", document_version_id set to the Document ID given in the input, and locator.page_start/page_end taken from the [Page N] markers (null for "Page n/a").
- locator.quote is optional and at most 2 sentences.
- document_type: a short label for the document (e.g. "separation agreement", "court order", "email", "report").
- entities.type: person | child | attorney | judge | org | address.
- facts.type: parenting_rule | custody | support | restriction | definition | asset | debt | schedule | education | medical | travel | communication | other. facts.value is an object; include a "summary" string.
- timeline: event_date as YYYY-MM-DD or null when no date is stated.
- obligations.obligation_type: payment | exchange | notice | filing | other; due_date YYYY-MM-DD or null; recurrence such as "monthly" or null.
- confidence: high | medium | low.
- Return ONLY JSON of the form:
{{
  "document_type": "string",
  "entities": [{{"type": "...", "name": "string", "attributes": {{}}, "citations": [SourceRef], "confidence": "..."}}],
  "facts": [{{"type": "...", "key": "string", "value": {{"summary": "string"}}, "citations": [SourceRef], "confidence": "..."}}],
  "timeline": [{{"event_date": "YYYY-MM-DD|null", "title": "string", "description": "string", "citations": [SourceRef], "confidence": "..."}}],
  "obligations": [{{"obligation_type": "...", "due_date": "YYYY-MM-DD|null", "recurrence": "string|null", "description": "string", "citations": [SourceRef], "confidence": "..."}}]
}}

{source_ref_format}""",

    "timeline_extraction": """You are extracting timeline events from the provided source text for a custody/divorce case file.

Rules:
- Extract events that matter for custody, support, schedule, school/medical, legal actions, conflicts, agreements, violations, or meaningful communication.
- Each event MUST be grounded in the provided text. Do not invent.
- If the date is explicit, use it.
- If only approximate, set precision="approx" and explain in summary what it was relative to.
- If no date can be inferred, occurred_at=null and precision="unknown".
- Include people involved if mentioned.
- Include a locator that helps a human find it (page, section heading, quoted phrase or transcript timestamp).
- Output MUST be valid JSON matching the TimelineExtractResponse schema below.

{source_ref_format}

TimelineExtractResponse = {{
  "events": [
    {{
      "occurred_at": "YYYY-MM-DD" | null,
      "precision": "exact" | "approx" | "unknown",
      "title": "string",
      "summary": "string",
      "category": "custody" | "support" | "communication" | "schedule" | "school" | "medical" | "legal" | "other",
      "people": ["string"],
      "source_ref": SourceRef
    }}
  ]
}}""",

    "insights": """You are generating a neutral "Patterns & Risks" report based ONLY on the provided evidence snippets.

Hard rules:
- Not legal advice.
- Every pattern claim must cite at least 2 separate examples unless labeled "single-example (weak)".
- Separate observations (cited) from hypotheses (uncited inference).
- Include both potential strengths and risks/weaknesses for the user.
- Avoid inflammatory language. Focus on concrete behaviors: scheduling reliability, cooperation, communication tone, gatekeeping, compliance, child-centered decisions.
- Output MUST be valid JSON matching the InsightsResponse schema below.

{source_ref_format}

InsightsResponse = {{
  "executive_summary": [{{"bullet": "string", "source_refs": [SourceRef], "confidence": "high" | "medium" | "low"}}],
  "observed_patterns": [{{"pattern": "string", "description": "string", "evidence": [{{"example": "string", "source_refs": [SourceRef]}}], "pattern_strength": "strong" | "moderate" | "weak"}}],
  "risks_to_me": [{{"risk": "string", "why_it_matters": "string", "source_refs": [SourceRef], "risk_level": "high" | "medium" | "low"}}],
  "potential_issues_other_party": [{{"issue": "string", "why_it_matters": "string", "source_refs": [SourceRef], "confidence": "high" | "medium" | "low"}}],
  "unknowns_and_what_to_collect": [{{"item": "string", "why": "string", "priority": "high" | "medium" | "low"}}],
  "questions_for_attorney": [{{"question": "string", "why_it_matters": "string", "source_refs": [SourceRef]}}],
  "meta": {{"window": {{"start": "YYYY-MM-DD|null", "end": "YYYY-MM-DD|null"}}, "safety_note": "string"}}
}}""",

    "file_search_system": """Search the case files for passages that answer the question. Call the file_search tool once and return the passages it finds; do not answer the question yourself.""",
}


def get_prompt(name: str, **kwargs) -> str:
    """Render a prompt template with the shared schema blocks filled in."""
    template = LLM_PROMPTS[name]
    kwargs.setdefault("source_ref_format", SOURCE_REF_FORMAT)
    kwargs.setdefault("chat_response_format", CHAT_RESPONSE_FORMAT)
    return template.format(**kwargs)
