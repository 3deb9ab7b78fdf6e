"""
Tests for execution/case_assistant/memory.py

Covers: batching, per-document replacement, dropped batches (invalid
        output and timeouts), date coercion, and the rebuild lock.
"""

import json
import logging
import threading
import time

import pytest


def _index_document(store, case_id, title, texts):
    """Create a document with one chunk per text."""
    document = store.create_document(case_id=case_id, title=title, blob_url="file:///x")
    store.insert_chunks(
        case_id,
        document["id"],
        [{"chunk_index": i, "page_number": i + 1, "text": t} for i, t in enumerate(texts)],
        [[0.0] for _ in texts],
    )
    return document


def _extraction(case_id, document_id, fact_key="holiday_rule", due_date="2024-01-01"):
    ref = {
        "ref_type": "document",
        "case_id": case_id,
        "document_version_id": document_id,
        "locator": {"label": "Agreement", "page_start": 1, "page_end": 1},
        "confidence": "high",
    }
    return json.dumps({
        "document_type": "separation_agreement",
        "entities": [{"type": "child", "name": "Sam", "citations": [ref], "confidence": "high"}],
        "facts": [{
            "type": "parenting_rule",
            "key": fact_key,
            "value": {"summary": "Thanksgiving alternates annually."},
            "citations": [ref],
            "confidence": "high",
        }],
        "timeline": [{
            "event_date": "2023-06-15T00:00:00Z",
            "title": "Agreement signed",
            "description": "Both parties signed.",
            "citations": [ref],
            "confidence": "medium",
        }],
        "obligations": [{
            "obligation_type": "payment",
            "due_date": due_date,
            "recurrence": "monthly",
            "description": "Pay child support",
            "citations": [ref],
            "confidence": "high",
        }],
    })


@pytest.fixture
def extractor(store, llm, metrics):
    from execution.case_assistant.memory import CaseMemoryExtractor
    return CaseMemoryExtractor(store, llm, batch_size=2, metrics=metrics)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    """Tests for batching, context rendering and date coercion."""

    def test_batched(self):
        from execution.case_assistant.memory import batched
        assert batched([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        assert batched([], 3) == []

    def test_chunk_context_page_markers(self):
        from execution.case_assistant.memory import build_chunk_context
        text = build_chunk_context([
            {"page_number": 3, "text": "Holiday schedule"},
            {"page_number": None, "text": "Email body"},
        ])
        assert text == "[Page 3] Holiday schedule\n\n[Page n/a] Email body"

    def test_coerce_date(self):
        from execution.case_assistant.memory import coerce_date
        assert coerce_date("2024-03-01") == "2024-03-01"
        assert coerce_date("2024-03-01T10:00:00Z") == "2024-03-01"
        assert coerce_date("next Tuesday") is None
        assert coerce_date(None) is None
        assert coerce_date("") is None


# ---------------------------------------------------------------------------
# Rebuild
# ---------------------------------------------------------------------------

class TestRebuildCaseMemory:
    """Tests for CaseMemoryExtractor.rebuild_case_memory()."""

    def test_batches_by_size(self, store, case, llm, extractor):
        _index_document(store, case["id"], "Agreement", ["a", "b", "c", "d", "e"])
        summary = extractor.rebuild_case_memory(case["id"])
        assert summary.batches == 3
        assert summary.documents == 1
        assert len(llm.calls_for("memory_extraction")) == 3

    def test_prompt_carries_document_and_pages(self, store, case, llm, extractor):
        document = _index_document(store, case["id"], "Agreement", ["Holiday schedule"])
        extractor.rebuild_case_memory(case["id"])
        prompt = llm.calls_for("memory_extraction")[0]["input"]
        assert f"Document ID: {document['id']}" in prompt
        assert "Document title: Agreement" in prompt
        assert "[Page 1] Holiday schedule" in prompt

    def test_rows_written(self, store, case, llm, extractor):
        document = _index_document(store, case["id"], "Agreement", ["Thanksgiving alternates."])
        llm.queue("memory_extraction", _extraction(case["id"], document["id"]))

        summary = extractor.rebuild_case_memory(case["id"])

        assert summary.document_types == {document["id"]: "separation_agreement"}
        assert len(store.entities) == 1
        assert store.facts[0]["key"] == "holiday_rule"
        assert store.facts[0]["citations_json"][0]["document_version_id"] == document["id"]
        assert store.timeline[0]["event_date"] == "2023-06-15"
        assert store.timeline[0]["precision"] == "exact"
        assert store.obligations[0]["due_date"] == "2024-01-01"
        assert store.documents[document["id"]]["document_type"] == "separation_agreement"

    def test_unparseable_due_date_stored_as_null(self, store, case, llm, extractor):
        document = _index_document(store, case["id"], "Agreement", ["x"])
        llm.queue("memory_extraction", _extraction(case["id"], document["id"], due_date="first of month"))
        extractor.rebuild_case_memory(case["id"])
        assert store.obligations[0]["due_date"] is None

    def test_rebuild_replaces_not_merges(self, store, case, llm, extractor):
        document = _index_document(store, case["id"], "Agreement", ["x"])
        llm.queue("memory_extraction", _extraction(case["id"], document["id"], fact_key="old_rule"))
        extractor.rebuild_case_memory(case["id"])

        llm.queue("memory_extraction", _extraction(case["id"], document["id"], fact_key="new_rule"))
        extractor.rebuild_case_memory(case["id"])

        assert [f["key"] for f in store.facts] == ["new_rule"]
        assert len(store.obligations) == 1

    def test_document_without_chunks_skipped(self, store, case, llm, extractor):
        store.create_document(case_id=case["id"], title="Pending", blob_url="file:///x")
        summary = extractor.rebuild_case_memory(case["id"])
        assert summary.skipped_documents == 1
        assert summary.documents == 0
        assert llm.calls == []

    def test_only_requested_documents(self, store, case, llm, extractor):
        first = _index_document(store, case["id"], "First", ["x"])
        _index_document(store, case["id"], "Second", ["y"])
        summary = extractor.rebuild_case_memory(case["id"], document_ids=[first["id"]])
        assert summary.documents == 1
        assert store.memory_replacements == [first["id"]]


# ---------------------------------------------------------------------------
# Dropped batches
# ---------------------------------------------------------------------------

class TestDroppedBatches:
    """Tests for batches whose output is unusable."""

    def test_invalid_batch_dropped_rest_committed(self, store, case, llm, extractor, metrics, caplog):
        document = _index_document(store, case["id"], "Agreement", ["a", "b", "c"])
        llm.queue(
            "memory_extraction",
            _extraction(case["id"], document["id"]),
            "I could not find anything useful.",
        )

        with caplog.at_level(logging.WARNING, logger="execution.case_assistant.memory"):
            summary = extractor.rebuild_case_memory(case["id"])

        assert summary.batches == 2
        assert summary.dropped_batches == 1
        assert len(store.facts) == 1
        assert metrics.get_metrics().memory_batches_dropped == 1
        assert metrics.get_metrics().dropped_by_reason["invalid_output"] == 1

        record = next(r for r in caplog.records if "Dropped memory batch" in r.getMessage())
        assert record.document_id == document["id"]
        assert record.batch_index == 1
        assert record.reason == "invalid_output"

    def test_schema_invalid_batch_dropped(self, store, case, llm, extractor):
        _index_document(store, case["id"], "Agreement", ["a"])
        llm.queue("memory_extraction", json.dumps({"document_type": "x", "entities": "none"}))
        summary = extractor.rebuild_case_memory(case["id"])
        assert summary.dropped_batches == 1
        # Document still committed (empty memory)
        assert len(store.memory_replacements) == 1

    def test_timeout_drops_only_that_batch(self, store, case, llm, extractor, metrics):
        from execution.case_assistant.errors import StageTimeoutError

        document = _index_document(store, case["id"], "Agreement", ["a", "b", "c"])
        llm.queue(
            "memory_extraction",
            StageTimeoutError("memory_extraction"),
            _extraction(case["id"], document["id"]),
        )

        summary = extractor.rebuild_case_memory(case["id"])

        assert summary.dropped_batches == 1
        assert len(store.facts) == 1
        assert metrics.get_metrics().timeouts_by_label["memory_extraction"] == 1
        assert metrics.get_metrics().dropped_by_reason["timeout"] == 1


# ---------------------------------------------------------------------------
# Rebuild lock
# ---------------------------------------------------------------------------

class TestMemoryRebuildLock:
    """Tests for memory_rebuild_lock()."""

    def test_second_caller_does_not_acquire(self, store, case):
        from execution.case_assistant.memory import memory_rebuild_lock

        with memory_rebuild_lock(store, case["id"]) as first:
            assert first is True
            with memory_rebuild_lock(store, case["id"]) as second:
                assert second is False
            # Inner non-holder must not release the outer lock
            assert store.get_case(case["id"])["memory_rebuild_in_progress"] is True
        assert store.get_case(case["id"])["memory_rebuild_in_progress"] is False

    def test_released_on_exception(self, store, case):
        from execution.case_assistant.memory import memory_rebuild_lock

        with pytest.raises(RuntimeError):
            with memory_rebuild_lock(store, case["id"]) as acquired:
                assert acquired
                raise RuntimeError("extraction crashed")
        assert store.get_case(case["id"])["memory_rebuild_in_progress"] is False

    def test_concurrent_callers_one_winner(self, store, case):
        from execution.case_assistant.memory import memory_rebuild_lock

        results = []
        barrier = threading.Barrier(5)
        release = threading.Event()

        def _worker():
            barrier.wait()
            with memory_rebuild_lock(store, case["id"]) as acquired:
                results.append(acquired)
                if acquired:
                    release.wait(timeout=2)

        threads = [threading.Thread(target=_worker) for _ in range(5)]
        for t in threads:
            t.start()
        deadline = time.time() + 5
        while len(results) < 5 and time.time() < deadline:
            time.sleep(0.01)
        release.set()
        for t in threads:
            t.join()

        assert results.count(True) == 1
