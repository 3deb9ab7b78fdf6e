"""
Answer Synthesizer

Turns a user question into a StructuredAnswer. The pipeline, in order:

1. Persist the user's message.
2. Fast paths that skip the LLM:
   - document-list questions, answered from the documents table
   - memory questions, answered from stored facts/obligations/timeline
     (falls through when nothing matches)
   - cases with no indexed chunks
3. Retrieval. No hits -> a "no matching sections" answer.
4. Synthesis under citation rules, strict parse, coverage check, and at
   most one regeneration. A second parse failure yields a fixed
   low-confidence answer.
5. Persist the assistant answer, whatever its shape.

Any failure is converted into a StructuredAnswer at this boundary. A
chunk-search timeout degrades to the list of known documents with their
ingest status; a timeout on either synthesis call degrades to the
stage-one answer built from the retrieved passages.
"""

import json
import logging
import uuid
from typing import Any, Optional

from pydantic import TypeAdapter

from .case_patterns import LABELS, MEMORY_ANSWER_LIMITS, MEMORY_FACT_TYPES, get_prompt, matches
from .case_store import CaseStore
from .citation import CitationExtractor, RetrievedSource, coverage_problems
from .errors import StageTimeoutError
from .llm import LLMClient
from .metrics import MetricsCollector, get_metrics_collector
from .schemas import (
    AnswerBody,
    AnswerMeta,
    EvidenceItem,
    MissingDocument,
    NextStep,
    SourceRef,
    StructuredAnswer,
    Uncertainty,
    document_ref,
    parse_model_output,
)

logger = logging.getLogger(__name__)

_source_refs = TypeAdapter(list[SourceRef])


# =============================================================================
# Fixed answer shapes
# =============================================================================

def _answer(
    summary: str,
    direct_answer: str,
    confidence: str,
    used_retrieval: bool,
    retrieval_notes: str,
    evidence: Optional[list[EvidenceItem]] = None,
    uncertainties: Optional[list[Uncertainty]] = None,
    next_steps: Optional[list[NextStep]] = None,
    missing: Optional[list[MissingDocument]] = None,
) -> StructuredAnswer:
    return StructuredAnswer(
        answer=AnswerBody(
            summary=summary,
            direct_answer=direct_answer,
            confidence=confidence,
            uncertainties=uncertainties or [],
        ),
        evidence=evidence or [],
        what_helps=[],
        what_hurts=[],
        next_steps=next_steps or [],
        questions_for_lawyer=[],
        missing_or_requested_docs=missing or [],
        meta=AnswerMeta(
            used_retrieval=used_retrieval,
            retrieval_notes=retrieval_notes,
            safety_note=LABELS["safety_note"],
        ),
    )


def _retry_step() -> NextStep:
    return NextStep(action="Retry the question.", owner="user", priority="medium")


def document_list_answer(
    case_id: str,
    documents: list[dict],
    default_status: Optional[str] = None,
) -> StructuredAnswer:
    """
    One cited evidence line per document, newest first.

    A document's ingest status is shown unless it is ``done``.
    """
    lines = []
    evidence = []
    for doc in documents:
        status = doc.get("job_status") or default_status
        status_note = f", status: {status}" if status and status != "done" else ""
        lines.append(f"- {doc['title']} (ID: {doc['id']}{status_note})")
        evidence.append(EvidenceItem(
            claim=f"Document on file: {doc['title']}" + (f" (status: {status})" if status_note else ""),
            source_refs=[document_ref(case_id, doc["id"], doc["title"], confidence="high")],
            type="fact",
        ))

    if documents:
        direct = "\n".join(["Documents on file:", *lines])
        next_steps = []
    else:
        direct = LABELS["no_documents"]
        next_steps = [NextStep(action=LABELS["upload_next_step"], owner="user", priority="high")]

    return _answer(
        summary=LABELS["documents_on_file"],
        direct_answer=direct,
        confidence="high",
        used_retrieval=False,
        retrieval_notes="Document list returned from the database.",
        evidence=evidence,
        next_steps=next_steps,
    )


def no_index_answer(case_id: str, documents: list[dict], request_id: str) -> StructuredAnswer:
    listing = document_list_answer(case_id, documents, default_status="uploaded")
    listing.answer.summary = LABELS["nothing_indexed_summary"]
    listing.answer.direct_answer = "\n\n".join([
        LABELS["nothing_indexed_answer"],
        listing.answer.direct_answer,
    ])
    listing.answer.confidence = "low"
    listing.next_steps = [NextStep(action=LABELS["upload_next_step"], owner="user", priority="high")]
    listing.missing_or_requested_docs = [MissingDocument(
        doc_name="Separation agreement, parenting plan or court orders",
        why="Answers are grounded in indexed case documents; none are indexed yet.",
        priority="high",
    )]
    listing.meta.retrieval_notes = f"No indexed docs. request_id={request_id}"
    return listing


def retrieval_timeout_answer(case_id: str, documents: list[dict], request_id: str) -> StructuredAnswer:
    listing = document_list_answer(case_id, documents, default_status="uploaded")
    listing.answer.summary = LABELS["retrieval_timed_out"]
    listing.answer.direct_answer = "\n\n".join([
        "I could not retrieve evidence in time.",
        "If your uploads are still processing, run processing again to finish indexing.",
        listing.answer.direct_answer,
    ])
    listing.answer.confidence = "low"
    listing.meta.retrieval_notes = f"chunk_search timed out. request_id={request_id}"
    return listing


def format_value_summary(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("summary", "rule", "value"):
            if isinstance(value.get(key), str) and value[key]:
                return value[key]
        return json.dumps(value)[:240]
    return "" if value is None else str(value)


def normalize_citations(value: Any) -> list:
    if isinstance(value, list):
        return value
    if isinstance(value, dict) and value:
        return [value]
    return []


def memory_answer(facts: list[dict], obligations: list[dict], timeline: list[dict]) -> StructuredAnswer:
    lines = []
    evidence = []

    def _add(line: str, claim: str, citations: Any):
        lines.append(line)
        evidence.append(EvidenceItem(
            claim=claim,
            source_refs=_source_refs.validate_python(normalize_citations(citations)),
            type="fact",
        ))

    for fact in facts:
        summary = format_value_summary(fact.get("value_json"))
        _add(f"- {fact['key']}: {summary}", f"{fact['key']}: {summary}", fact.get("citations_json"))

    for obligation in obligations:
        due = f" (due {obligation['due_date']})" if obligation.get("due_date") else ""
        recurrence = f" ({obligation['recurrence']})" if obligation.get("recurrence") else ""
        line = f"- {obligation['description']}{due}{recurrence}"
        _add(line, line, obligation.get("citations_json"))

    for event in timeline:
        when = event.get("event_date") or event.get("occurred_at") or "Unknown date"
        line = f"- {when}: {event['title']} - {event['summary']}"
        _add(line, line, event.get("citations_json") or event.get("source_ref"))

    return _answer(
        summary=LABELS["memory_summary"],
        direct_answer="\n".join(lines),
        confidence="medium",
        used_retrieval=False,
        retrieval_notes=LABELS["memory_notes"],
        evidence=evidence,
    )


def stage_one_answer(
    case_id: str,
    question: str,
    sources: list[RetrievedSource],
    request_id: str,
) -> StructuredAnswer:
    """Citation-bearing answer assembled from retrieved passages, no generation."""
    if not sources:
        return _answer(
            summary=LABELS["no_matches_summary"],
            direct_answer=LABELS["no_matches_answer"],
            confidence="low",
            used_retrieval=True,
            retrieval_notes=f"{LABELS['stage_one_notes']} request_id={request_id}",
            uncertainties=[Uncertainty(
                topic="Matching evidence",
                why="Retrieval returned no excerpts.",
                needed_sources=["document"],
            )],
        )

    claims = [(f"Relevant section found in {s.label}.", s) for s in sources[:8]]
    mentions_holiday = any("holiday" in (s.excerpt or "").lower() for s in sources)
    if matches("parenting_focus", question) and not mentions_holiday:
        claims.insert(0, (LABELS["no_holiday_note"], claims[0][1]))

    return _answer(
        summary=LABELS["stage_one_summary"],
        direct_answer="\n".join(f"- {text}" for text, _ in claims),
        confidence="medium",
        used_retrieval=True,
        retrieval_notes=f"{LABELS['stage_one_notes']} request_id={request_id}",
        evidence=[
            EvidenceItem(claim=text, source_refs=[source.source_ref(case_id)], type="quote")
            for text, source in claims
        ],
    )


def validation_failure_answer(used_retrieval: bool) -> StructuredAnswer:
    return _answer(
        summary=LABELS["validation_failed"],
        direct_answer=LABELS["validation_failed_answer"],
        confidence="low",
        used_retrieval=used_retrieval,
        retrieval_notes="Model output invalid; see server logs for raw output.",
        uncertainties=[Uncertainty(
            topic="Response formatting",
            why="The model returned invalid JSON or missing citations.",
            needed_sources=["document"],
        )],
        next_steps=[_retry_step()],
    )


def request_failure_answer(error: Exception, request_id: str) -> StructuredAnswer:
    if isinstance(error, StageTimeoutError):
        summary = LABELS["request_timed_out"]
        direct = f"The assistant timed out during {error.label}. Try again, or ask a more specific question."
    else:
        summary = LABELS["request_failed"]
        direct = "The assistant hit an error while responding. Try again in a moment."
    return _answer(
        summary=summary,
        direct_answer=direct,
        confidence="low",
        used_retrieval=False,
        retrieval_notes=f"Request failed before completing. request_id={request_id}",
        uncertainties=[Uncertainty(topic="Request failure", why=str(error), needed_sources=["document"])],
        next_steps=[_retry_step()],
    )


# =============================================================================
# Synthesizer
# =============================================================================

class AnswerSynthesizer:
    """
    Answers chat questions for a case.

    Args:
        store: Relational store
        retriever: CaseRetriever or FileSearchRetriever
        llm: Provider client
        model: Generation model override
        max_output_tokens: Output cap per synthesis call
        timeout: Seconds per synthesis call
    """

    def __init__(
        self,
        store: CaseStore,
        retriever,
        llm: LLMClient,
        model: Optional[str] = None,
        max_output_tokens: int = 2500,
        timeout: float = 45.0,
        citations: Optional[CitationExtractor] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.retriever = retriever
        self.llm = llm
        self.model = model
        self.max_output_tokens = max_output_tokens
        self.timeout = timeout
        self.citations = citations or CitationExtractor()
        self.metrics = metrics or get_metrics_collector()

    def answer(self, case_id: str, thread_id: str, question: str) -> StructuredAnswer:
        """
        Answer a question and record both turns in the thread.

        Never raises for pipeline failures; the caller always gets a
        StructuredAnswer.
        """
        request_id = uuid.uuid4().hex[:12]
        user_saved = False

        with self.metrics.track_chat(case_id, question) as tracker:
            try:
                self.store.add_chat_message(case_id, thread_id, "user", {"text": question})
                user_saved = True
                response, path, retried = self._run(case_id, question, request_id)
            except StageTimeoutError as e:
                self.metrics.record_timeout(e.label)
                if e.label == "chunk_search" and user_saved:
                    logger.warning(f"[{request_id}] chunk_search timed out; returning document list")
                    response = retrieval_timeout_answer(
                        case_id, self._documents_newest_first(case_id), request_id,
                    )
                    path, retried = "retrieval_timeout", False
                else:
                    logger.error(f"[{request_id}] chat request timed out during {e.label}")
                    response, path, retried = request_failure_answer(e, request_id), "failure", False
            except Exception as e:
                logger.error(f"[{request_id}] chat request failed: {e}")
                self.metrics.record_error(type(e).__name__)
                response, path, retried = request_failure_answer(e, request_id), "failure", False

            tracker.set_path(path, retried=retried)

        if user_saved:
            self.store.add_chat_message(case_id, thread_id, "assistant", response.model_dump(mode="json"))
        logger.info(f"[{request_id}] answered via {path}{' (retried)' if retried else ''}")
        return response

    def _documents_newest_first(self, case_id: str) -> list[dict]:
        return list(reversed(self.store.list_documents(case_id)))

    def _run(self, case_id: str, question: str, request_id: str) -> tuple[StructuredAnswer, str, bool]:
        if matches("document_list", question):
            return document_list_answer(case_id, self._documents_newest_first(case_id)), "document_list", False

        if matches("memory", question):
            response = self._memory_answer(case_id, question)
            if response is not None:
                return response, "memory", False

        if self.store.count_case_chunks(case_id) == 0:
            return no_index_answer(case_id, self._documents_newest_first(case_id), request_id), "no_index", False

        hits = self.retriever.search(case_id, question)
        sources = self.citations.extract(hits)
        stage_one = stage_one_answer(case_id, question, sources, request_id)
        if not sources:
            return stage_one, "stage_one", False

        return self._synthesize(case_id, question, sources, stage_one, request_id)

    def _memory_answer(self, case_id: str, question: str) -> Optional[StructuredAnswer]:
        topic = "parenting" if matches("parenting_focus", question) else "general"
        facts = self.store.list_case_facts(
            case_id, types=MEMORY_FACT_TYPES[topic], limit=MEMORY_ANSWER_LIMITS["facts"],
        )
        obligations = (
            self.store.list_obligations(case_id, limit=MEMORY_ANSWER_LIMITS["obligations"])
            if matches("obligations", question) else []
        )
        timeline = (
            self.store.list_timeline_events(case_id, limit=MEMORY_ANSWER_LIMITS["timeline"])
            if matches("timeline", question) else []
        )
        if not (facts or obligations or timeline):
            return None
        return memory_answer(facts, obligations, timeline)

    def _synthesize(
        self,
        case_id: str,
        question: str,
        sources: list[RetrievedSource],
        stage_one: StructuredAnswer,
        request_id: str,
    ) -> tuple[StructuredAnswer, str, bool]:
        sources_json = json.dumps([s.to_dict() for s in sources], ensure_ascii=False)
        allowed_ids = ", ".join(dict.fromkeys(s.document_id for s in sources)) or "none"
        instructions = "\n\n".join([
            get_prompt("chat_system"),
            get_prompt("citation_rules", allowed_ids=allowed_ids),
        ])
        prompt_input = "\n\n".join([
            f"Case ID: {case_id}",
            f"RetrievedSources: {sources_json}",
            f"User question: {question}",
        ])

        try:
            first = self.llm.generate(
                instructions=instructions,
                input=prompt_input,
                max_output_tokens=self.max_output_tokens,
                model=self.model,
                timeout=self.timeout,
                label="synthesis",
            )
        except StageTimeoutError as e:
            self.metrics.record_timeout(e.label)
            logger.warning(f"[{request_id}] synthesis timed out; returning stage-one answer")
            return stage_one, "stage_one", False

        parsed = parse_model_output(first.text, StructuredAnswer)
        problems = (
            coverage_problems(parsed.value, question, has_indexed_content=True)
            if parsed.ok else [parsed.error]
        )
        if not problems:
            return parsed.value, "synthesized", False

        logger.info(f"[{request_id}] regenerating answer: {problems}")
        try:
            retry = self.llm.generate(
                instructions="\n\n".join([
                    instructions,
                    get_prompt("citation_retry"),
                    f"RetrievedSources: {sources_json}",
                ]),
                input=prompt_input,
                max_output_tokens=self.max_output_tokens,
                model=self.model,
                timeout=self.timeout,
                label="synthesis_retry",
            )
        except StageTimeoutError as e:
            self.metrics.record_timeout(e.label)
            logger.warning(f"[{request_id}] synthesis retry timed out; returning stage-one answer")
            return stage_one, "stage_one", True

        parsed = parse_model_output(retry.text, StructuredAnswer)
        if not parsed.ok:
            logger.warning(f"[{request_id}] answer invalid after retry: {parsed.error}")
            return validation_failure_answer(used_retrieval=True), "validation_failed", True
        return parsed.value, "synthesized", True
