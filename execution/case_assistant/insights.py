"""
Timeline extraction and insights jobs.

Both take caller-supplied text, ask the model for a schema-bound JSON
report, and persist it only if it validates. Schema failures raise
SchemaValidationError carrying the validation issues.
"""

import json
import logging
from typing import Optional

from .case_patterns import get_prompt
from .case_store import CaseStore
from .errors import SchemaValidationError
from .llm import LLMClient
from .schemas import InsightsReport, TimelineExtraction, parse_model_output

logger = logging.getLogger(__name__)


class TimelineExtractor:
    """Extracts dated events from source text into timeline_events."""

    def __init__(
        self,
        store: CaseStore,
        llm: LLMClient,
        model: Optional[str] = None,
        timeout: float = 45.0,
    ):
        self.store = store
        self.llm = llm
        self.model = model
        self.timeout = timeout

    def extract(self, case_id: str, source_text: str, document_id: Optional[str] = None) -> list[dict]:
        """
        Extract and store timeline events.

        Args:
            case_id: Owning case
            source_text: Text to mine for events
            document_id: Document the text came from, passed to the model for citations

        Returns:
            The created timeline_events rows

        Raises:
            ValueError: source_text is empty
            SchemaValidationError: model output failed validation
        """
        if not source_text or not source_text.strip():
            raise ValueError("Missing source text.")

        prompt_input = "\n\n".join([
            f"Case ID: {case_id}",
            f"Document version ID: {document_id or 'unknown'}",
            "Source text:",
            source_text,
        ])
        generation = self.llm.generate(
            instructions=get_prompt("timeline_extraction"),
            input=prompt_input,
            model=self.model,
            timeout=self.timeout,
            label="timeline_extraction",
        )

        result = parse_model_output(generation.text, TimelineExtraction)
        if not result.ok:
            logger.warning(f"Timeline extraction for case {case_id} invalid: {result.error}")
            raise SchemaValidationError("Timeline response failed schema validation.", result.issues)

        events = [
            {
                "occurred_at": event.occurred_at,
                "precision": event.precision,
                "title": event.title,
                "summary": event.summary,
                "category": event.category,
                "people": event.people,
                "source_ref": event.source_ref.model_dump(mode="json"),
            }
            for event in result.value.events
        ]
        created = self.store.insert_timeline_events(case_id, events)
        logger.info(f"Stored {len(created)} timeline event(s) for case {case_id}")
        return created


class InsightsGenerator:
    """Builds a patterns-and-risks report from evidence snippets."""

    def __init__(
        self,
        store: CaseStore,
        llm: LLMClient,
        model: Optional[str] = None,
        timeout: float = 45.0,
    ):
        self.store = store
        self.llm = llm
        self.model = model
        self.timeout = timeout

    def generate(self, case_id: str, evidence: list[str], window: Optional[dict] = None) -> dict:
        """
        Generate and store an insights report.

        Returns:
            {"insight": <stored row>, "content": <validated report>}

        Raises:
            ValueError: no evidence snippets
            SchemaValidationError: model output failed validation
        """
        if not evidence:
            raise ValueError("Missing evidence snippets.")

        prompt_input = "\n\n".join([
            f"Case ID: {case_id}",
            f"Window: {json.dumps(window)}" if window else "Window: null",
            "Evidence snippets:",
            "\n".join(f"{i}. {item}" for i, item in enumerate(evidence, start=1)),
        ])
        generation = self.llm.generate(
            instructions=get_prompt("insights"),
            input=prompt_input,
            model=self.model,
            timeout=self.timeout,
            label="insights",
        )

        result = parse_model_output(generation.text, InsightsReport)
        if not result.ok:
            logger.warning(f"Insights report for case {case_id} invalid: {result.error}")
            raise SchemaValidationError("Insights response failed schema validation.", result.issues)

        content = result.value.model_dump(mode="json")
        stored = self.store.insert_insight(case_id, content)
        return {"insight": stored, "content": content}
