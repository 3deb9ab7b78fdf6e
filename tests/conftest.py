"""
Shared fixtures and test utilities for the case assistant tests.

Provides an in-memory case store, a scripted LLM client, a deterministic
embedder and PDF builders so that every test runs without API keys, a
database, or network access.
"""

import sys
import json
import math
import uuid
import threading
from pathlib import Path
from datetime import datetime, timedelta

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

# ---------------------------------------------------------------------------
# Sample case text
# ---------------------------------------------------------------------------
SAMPLE_AGREEMENT = """SEPARATION AGREEMENT

Article 4. Parenting Plan
The children shall reside primarily with the Mother. The Father shall have
parenting time every other weekend from Friday at 6:00 PM to Sunday at 6:00 PM.

Article 5. Holiday Schedule
Thanksgiving alternates annually. The Mother has Thanksgiving in odd-numbered
years and the Father in even-numbered years. Winter break is divided equally.

Article 9. Child Support
The Father shall pay child support of $1,200 per month, due on the first day of
each month, commencing January 1, 2024.
"""

EMPTY_MEMORY = json.dumps({
    "document_type": "other",
    "entities": [],
    "facts": [],
    "timeline": [],
    "obligations": [],
})


# ---------------------------------------------------------------------------
# In-memory case store
# ---------------------------------------------------------------------------

_BASE_TIME = datetime(2024, 1, 1)


class FakeCaseStore:
    """In-memory stand-in for CaseStore with the same method surface."""

    def __init__(self):
        self._lock = threading.RLock()
        self._seq = 0
        self.cases = {}
        self.documents = {}
        self.jobs = {}
        self.chunks = {}
        self.entities = []
        self.facts = []
        self.timeline = []
        self.obligations = []
        self.insights = []
        self.threads = {}
        self.messages = []
        self.vector_supported = False
        self.vector_column_enabled = False
        self.memory_replacements = []

    def _now(self) -> str:
        self._seq += 1
        return (_BASE_TIME + timedelta(seconds=self._seq)).isoformat()

    # -- lifecycle ----------------------------------------------------------

    def connect(self):
        pass

    def initialize_schema(self):
        pass

    def probe_vector_support(self):
        return self.vector_supported

    def enable_vector_column(self):
        self.vector_column_enabled = True

    def close(self):
        pass

    # -- cases --------------------------------------------------------------

    def add_case(self, name="Test Case", case_id=None):
        with self._lock:
            case_id = case_id or str(uuid.uuid4())
            now = self._now()
            self.cases[case_id] = {
                "id": case_id,
                "name": name,
                "vector_store_id": None,
                "memory_rebuild_in_progress": False,
                "memory_rebuild_requested_at": None,
                "created_at": now,
                "updated_at": now,
            }
            return dict(self.cases[case_id])

    def get_case(self, case_id):
        with self._lock:
            case = self.cases.get(case_id)
            return dict(case) if case else None

    def get_or_create_case(self, case_id=None):
        if case_id is not None:
            try:
                uuid.UUID(str(case_id))
            except ValueError:
                raise ValueError(f"Invalid case id: {case_id}") from None
        with self._lock:
            if case_id is not None:
                if case_id not in self.cases:
                    raise ValueError(f"Case {case_id} not found")
                return dict(self.cases[case_id])
            if self.cases:
                oldest = min(self.cases.values(), key=lambda c: c["created_at"])
                return dict(oldest)
            return self.add_case(name="Default Case")

    def set_case_vector_store(self, case_id, vector_store_id):
        with self._lock:
            self.cases[case_id]["vector_store_id"] = vector_store_id

    def acquire_memory_rebuild_lock(self, case_id):
        with self._lock:
            case = self.cases.get(case_id)
            if case is None or case["memory_rebuild_in_progress"]:
                return False
            case["memory_rebuild_in_progress"] = True
            case["memory_rebuild_requested_at"] = self._now()
            return True

    def release_memory_rebuild_lock(self, case_id):
        with self._lock:
            if case_id in self.cases:
                self.cases[case_id]["memory_rebuild_in_progress"] = False

    # -- documents ----------------------------------------------------------

    def create_document(self, case_id, title, blob_url, mime_type=None, size_bytes=None):
        with self._lock:
            doc_id = str(uuid.uuid4())
            self.documents[doc_id] = {
                "id": doc_id,
                "case_id": case_id,
                "title": title,
                "blob_url": blob_url,
                "provider_file_id": None,
                "vector_store_id": None,
                "mime_type": mime_type,
                "size_bytes": size_bytes,
                "document_type": None,
                "created_at": self._now(),
            }
            return dict(self.documents[doc_id])

    def get_document(self, document_id):
        with self._lock:
            doc = self.documents.get(document_id)
            return dict(doc) if doc else None

    def _job_for_document(self, document_id):
        for job in self.jobs.values():
            if job.get("document_id") == document_id:
                return job
        return None

    def list_documents(self, case_id, document_ids=None):
        with self._lock:
            rows = []
            for doc in sorted(self.documents.values(), key=lambda d: d["created_at"]):
                if doc["case_id"] != case_id:
                    continue
                if document_ids and doc["id"] not in document_ids:
                    continue
                job = self._job_for_document(doc["id"])
                rows.append({
                    **doc,
                    "job_id": job["id"] if job else None,
                    "job_status": job["status"] if job else None,
                    "job_error": job["error"] if job else None,
                    "filename": job["filename"] if job else None,
                })
            return rows

    def update_document_index_handles(self, document_id, provider_file_id, vector_store_id):
        with self._lock:
            self.documents[document_id]["provider_file_id"] = provider_file_id
            self.documents[document_id]["vector_store_id"] = vector_store_id

    # -- ingest jobs --------------------------------------------------------

    def create_ingest_job(self, case_id, filename, blob_url, mime_type=None, size_bytes=None,
                          status="queued", document_id=None, parent_job_id=None):
        from execution.case_assistant.case_store import INGEST_STATUSES

        if status not in INGEST_STATUSES:
            raise ValueError(f"Invalid ingest status: {status}")
        with self._lock:
            job_id = str(uuid.uuid4())
            now = self._now()
            self.jobs[job_id] = {
                "id": job_id,
                "case_id": case_id,
                "filename": filename,
                "mime_type": mime_type,
                "size_bytes": size_bytes,
                "blob_url": blob_url,
                "status": status,
                "error": None,
                "extracted_text_url": None,
                "extracted_pages_url": None,
                "last_completed_step": None,
                "provider_file_id": None,
                "document_id": document_id,
                "parent_job_id": parent_job_id,
                "created_at": now,
                "updated_at": now,
            }
            return dict(self.jobs[job_id])

    def get_ingest_job(self, job_id):
        with self._lock:
            job = self.jobs.get(job_id)
            return dict(job) if job else None

    def select_ingest_jobs(self, case_id, job_ids=None, statuses=(), limit=50):
        with self._lock:
            jobs = sorted(self.jobs.values(), key=lambda j: j["created_at"])
            jobs = [j for j in jobs if j["case_id"] == case_id]
            if job_ids:
                jobs = [j for j in jobs if j["id"] in job_ids]
            else:
                jobs = [j for j in jobs if j["status"] in statuses]
            return [dict(j) for j in jobs[:limit]]

    def list_ingest_jobs(self, case_id):
        with self._lock:
            jobs = [j for j in self.jobs.values() if j["case_id"] == case_id]
            return [dict(j) for j in sorted(jobs, key=lambda j: j["created_at"], reverse=True)]

    def list_child_jobs(self, parent_job_id):
        with self._lock:
            jobs = [j for j in self.jobs.values() if j.get("parent_job_id") == parent_job_id]
            return [dict(j) for j in sorted(jobs, key=lambda j: j["created_at"])]

    def update_ingest_job(self, job_id, **fields):
        from execution.case_assistant.case_store import INGEST_STATUSES, _JOB_UPDATABLE

        unknown = set(fields) - _JOB_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")
        if "status" in fields and fields["status"] not in INGEST_STATUSES:
            raise ValueError(f"Invalid ingest status: {fields['status']}")
        with self._lock:
            job = self.jobs[job_id]
            if fields.get("document_id") and any(
                j["document_id"] == fields["document_id"] and j["id"] != job_id
                for j in self.jobs.values()
            ):
                raise ValueError("document_id already linked to another job")
            job.update(fields)
            job["updated_at"] = self._now()
            return dict(job)

    # -- chunks -------------------------------------------------------------

    def delete_document_chunks(self, document_id):
        with self._lock:
            doomed = [cid for cid, c in self.chunks.items() if c["document_id"] == document_id]
            for cid in doomed:
                del self.chunks[cid]
            return len(doomed)

    def insert_chunks(self, case_id, document_id, chunks, embeddings, vector_enabled=False):
        with self._lock:
            for chunk, embedding in zip(chunks, embeddings):
                if any(
                    c["document_id"] == document_id and c["chunk_index"] == chunk["chunk_index"]
                    for c in self.chunks.values()
                ):
                    raise ValueError("duplicate (document_id, chunk_index)")
                chunk_id = str(uuid.uuid4())
                self.chunks[chunk_id] = {
                    "id": chunk_id,
                    "case_id": case_id,
                    "document_id": document_id,
                    "page_number": chunk.get("page_number"),
                    "chunk_index": chunk["chunk_index"],
                    "text": chunk["text"],
                    "embedding_json": list(embedding),
                    "embedding": list(embedding) if vector_enabled else None,
                    "created_at": self._now(),
                }
            return len(chunks)

    def count_case_chunks(self, case_id):
        with self._lock:
            return sum(1 for c in self.chunks.values() if c["case_id"] == case_id)

    def get_document_chunks(self, document_id):
        with self._lock:
            rows = [c for c in self.chunks.values() if c["document_id"] == document_id]
            rows.sort(key=lambda c: (c["page_number"] is None, c["page_number"] or 0, c["chunk_index"]))
            return [self._chunk_row(c) for c in rows]

    def _chunk_row(self, chunk):
        doc = self.documents.get(chunk["document_id"]) or {}
        job = self._job_for_document(chunk["document_id"])
        return {
            "id": chunk["id"],
            "case_id": chunk["case_id"],
            "document_id": chunk["document_id"],
            "page_number": chunk["page_number"],
            "chunk_index": chunk["chunk_index"],
            "text": chunk["text"],
            "created_at": chunk["created_at"],
            "document_title": doc.get("title"),
            "filename": job["filename"] if job else None,
        }

    def keyword_search(self, case_id, query, limit=6, timeout_ms=20000):
        with self._lock:
            needle = query.lower()
            rows = [
                c for c in self.chunks.values()
                if c["case_id"] == case_id and needle in c["text"].lower()
            ]
            rows.sort(key=lambda c: c["created_at"], reverse=True)
            return [self._chunk_row(c) for c in rows[:limit]]

    def vector_search(self, case_id, query_embedding, limit=6, timeout_ms=20000):
        with self._lock:
            rows = [
                c for c in self.chunks.values()
                if c["case_id"] == case_id and c["embedding"] is not None
            ]
            rows.sort(key=lambda c: math.dist(c["embedding"], query_embedding))
            return [self._chunk_row(c) for c in rows[:limit]]

    # -- case memory --------------------------------------------------------

    def replace_document_memory(self, case_id, document_id, entities, facts, timeline,
                                obligations, document_type=None):
        with self._lock:
            def _keep(rows):
                return [r for r in rows if not (r["case_id"] == case_id and r["document_id"] == document_id)]

            self.entities = _keep(self.entities)
            self.facts = _keep(self.facts)
            self.timeline = _keep(self.timeline)
            self.obligations = _keep(self.obligations)

            base = {"case_id": case_id, "document_id": document_id}
            for e in entities:
                self.entities.append({
                    **base, "id": str(uuid.uuid4()), "type": e["type"], "name": e["name"],
                    "attributes_json": e.get("attributes") or {}, "citations_json": e["citations"],
                    "confidence": e["confidence"], "created_at": self._now(),
                })
            for f in facts:
                self.facts.append({
                    **base, "id": str(uuid.uuid4()), "type": f["type"], "key": f["key"],
                    "value_json": f["value"], "citations_json": f["citations"],
                    "confidence": f["confidence"], "created_at": self._now(),
                })
            for t in timeline:
                self.timeline.append({
                    **base, "id": str(uuid.uuid4()), "event_date": t["event_date"],
                    "occurred_at": t["event_date"], "precision": t["precision"],
                    "title": t["title"], "summary": t["summary"], "category": t["category"],
                    "people": t.get("people", []), "source_ref": t["source_ref"],
                    "citations_json": t["citations"], "confidence": t["confidence"],
                    "created_at": self._now(),
                })
            for o in obligations:
                self.obligations.append({
                    **base, "id": str(uuid.uuid4()), "obligation_type": o["obligation_type"],
                    "due_date": o["due_date"], "recurrence": o.get("recurrence"),
                    "description": o["description"], "citations_json": o["citations"],
                    "confidence": o["confidence"], "created_at": self._now(),
                })
            if document_type and document_id in self.documents:
                self.documents[document_id]["document_type"] = document_type
            self.memory_replacements.append(document_id)

    def list_case_facts(self, case_id, types=None, limit=8):
        with self._lock:
            rows = [f for f in self.facts if f["case_id"] == case_id and (not types or f["type"] in types)]
            return sorted(rows, key=lambda r: r["created_at"], reverse=True)[:limit]

    def list_obligations(self, case_id, limit=6):
        with self._lock:
            rows = [o for o in self.obligations if o["case_id"] == case_id]
            rows.sort(key=lambda r: (r["due_date"] is None, r["due_date"] or ""))
            return rows[:limit]

    def list_timeline_events(self, case_id, limit=6):
        with self._lock:
            rows = [t for t in self.timeline if t["case_id"] == case_id]
            rows.sort(key=lambda r: r["occurred_at"] or "", reverse=True)
            return rows[:limit]

    def insert_timeline_events(self, case_id, events):
        with self._lock:
            created = []
            for event in events:
                row = {
                    "id": str(uuid.uuid4()),
                    "case_id": case_id,
                    "document_id": event.get("document_id"),
                    "occurred_at": event.get("occurred_at"),
                    "event_date": event.get("occurred_at"),
                    "precision": event["precision"],
                    "title": event["title"],
                    "summary": event["summary"],
                    "category": event["category"],
                    "people": event.get("people", []),
                    "source_ref": event["source_ref"],
                    "citations_json": [event["source_ref"]],
                    "confidence": event["source_ref"].get("confidence"),
                    "created_at": self._now(),
                }
                self.timeline.append(row)
                created.append(dict(row))
            return created

    def insert_insight(self, case_id, content):
        with self._lock:
            row = {"id": str(uuid.uuid4()), "case_id": case_id, "content": content, "created_at": self._now()}
            self.insights.append(row)
            return dict(row)

    # -- chat ---------------------------------------------------------------

    def create_thread(self, case_id, title="New thread"):
        with self._lock:
            thread_id = str(uuid.uuid4())
            now = self._now()
            self.threads[thread_id] = {
                "id": thread_id, "case_id": case_id, "title": title,
                "created_at": now, "updated_at": now,
            }
            return dict(self.threads[thread_id])

    def get_thread(self, thread_id):
        with self._lock:
            thread = self.threads.get(thread_id)
            return dict(thread) if thread else None

    def list_threads(self, case_id):
        with self._lock:
            rows = [t for t in self.threads.values() if t["case_id"] == case_id]
            return [dict(t) for t in sorted(rows, key=lambda t: t["updated_at"], reverse=True)]

    def delete_thread(self, case_id, thread_id):
        with self._lock:
            thread = self.threads.get(thread_id)
            if thread is None or thread["case_id"] != case_id:
                return False
            del self.threads[thread_id]
            self.messages = [m for m in self.messages if m["thread_id"] != thread_id]
            return True

    def get_or_create_default_thread(self, case_id):
        with self._lock:
            rows = [t for t in self.threads.values() if t["case_id"] == case_id]
            if rows:
                return dict(min(rows, key=lambda t: t["created_at"]))
            return self.create_thread(case_id, title="Default thread")

    def add_chat_message(self, case_id, thread_id, role, content):
        with self._lock:
            row = {
                "id": str(uuid.uuid4()),
                "case_id": case_id,
                "thread_id": thread_id,
                "role": role,
                "content": json.loads(json.dumps(content)),
                "created_at": self._now(),
            }
            self.messages.append(row)
            if thread_id in self.threads:
                self.threads[thread_id]["updated_at"] = row["created_at"]
            return dict(row)

    def get_messages(self, thread_id):
        with self._lock:
            return [dict(m) for m in self.messages if m["thread_id"] == thread_id]


# ---------------------------------------------------------------------------
# Scripted LLM client
# ---------------------------------------------------------------------------

class FakeLLM:
    """
    Stand-in for LLMClient.

    ``responses`` maps a call label to a list consumed in order (str output,
    Generation, or an Exception to raise) or to a single value returned on
    every call. Memory extraction defaults to an empty, valid extraction.
    """

    DEFAULTS = {"memory_extraction": EMPTY_MEMORY}

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []
        self.uploaded = []
        self.attached = []
        self.vector_stores = []
        self._lock = threading.Lock()

    def queue(self, label, *items):
        with self._lock:
            current = self.responses.get(label)
            if not isinstance(current, list):
                current = []
            current.extend(items)
            self.responses[label] = current

    def calls_for(self, label):
        return [c for c in self.calls if c["label"] == label]

    def _next(self, label):
        with self._lock:
            value = self.responses.get(label)
            if isinstance(value, list):
                if value:
                    return value.pop(0)
                return self.DEFAULTS.get(label, "")
            if value is None:
                return self.DEFAULTS.get(label, "")
            return value

    def generate(self, instructions, input, label="generation", **kwargs):
        from execution.case_assistant.llm import Generation

        with self._lock:
            self.calls.append({"label": label, "instructions": instructions, "input": input, **kwargs})
        item = self._next(label)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, Generation):
            return item
        return Generation(text=item)

    def describe_image(self, image_url, instruction, model=None, max_output_tokens=1200, timeout=45.0):
        with self._lock:
            self.calls.append({"label": "ocr", "image_url": image_url, "timeout": timeout})
        item = self._next("ocr")
        if isinstance(item, Exception):
            raise item
        return item or "Text read from the image."

    def create_vector_store(self, name, timeout=45.0):
        with self._lock:
            self.vector_stores.append(name)
            return f"vs_{len(self.vector_stores)}"

    def upload_file(self, filename, text, timeout=45.0):
        item = self._next("upload_file")
        if isinstance(item, Exception):
            raise item
        with self._lock:
            self.uploaded.append((filename, text))
            return f"file_{len(self.uploaded)}"

    def attach_file(self, vector_store_id, file_id, timeout=45.0):
        with self._lock:
            self.attached.append((vector_store_id, file_id))


# ---------------------------------------------------------------------------
# Deterministic embedder
# ---------------------------------------------------------------------------

class FakeEmbedder:
    """Letter-frequency vectors: texts sharing words land close together."""

    dimensions = 26

    def __init__(self):
        self.document_calls = 0
        self.query_calls = 0
        self.fail_with = None

    def _embed(self, text):
        counts = [0.0] * 26
        for ch in text.lower():
            if "a" <= ch <= "z":
                counts[ord(ch) - ord("a")] += 1
        norm = math.sqrt(sum(c * c for c in counts)) or 1.0
        return [c / norm for c in counts]

    def embed_documents(self, texts):
        self.document_calls += 1
        if self.fail_with:
            raise self.fail_with
        return [self._embed(t) for t in texts]

    def embed_query(self, query):
        self.query_calls += 1
        if self.fail_with:
            raise self.fail_with
        return self._embed(query)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store():
    return FakeCaseStore()


@pytest.fixture
def case(store):
    return store.add_case()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def blobs(tmp_path):
    from execution.case_assistant.blob_store import BlobStore
    return BlobStore(root_dir=str(tmp_path / "blobs"))


@pytest.fixture
def metrics():
    """The global collector, reset for the test."""
    from execution.case_assistant.metrics import get_metrics_collector
    collector = get_metrics_collector()
    collector.reset()
    yield collector
    collector.reset()


@pytest.fixture
def pipeline_factory(store, blobs, llm, embedder, metrics):
    """Build an IngestPipeline over the in-memory fakes."""
    from execution.case_assistant.chunker import ChunkConfig, WindowChunker
    from execution.case_assistant.extractors import FormatExtractor
    from execution.case_assistant.indexing import IndexingService
    from execution.case_assistant.ingest import IngestPipeline
    from execution.case_assistant.memory import CaseMemoryExtractor

    def _build(storage_mode="json", with_memory=True, concurrency=4, max_jobs=50):
        indexer = IndexingService(store, embedder, llm, storage_mode=storage_mode)
        memory = CaseMemoryExtractor(store, llm, metrics=metrics) if with_memory else None
        return IngestPipeline(
            store,
            blobs,
            FormatExtractor(llm),
            WindowChunker(ChunkConfig(chunk_size=200, overlap=20)),
            indexer,
            memory=memory,
            concurrency=concurrency,
            max_jobs=max_jobs,
            metrics=metrics,
        )

    return _build


@pytest.fixture
def upload(store, blobs):
    """Store bytes and queue an ingest job for them."""

    def _upload(case_id, filename, data, status="queued", mime_type=None, with_document=False):
        blob = blobs.put(f"cases/{case_id}/uploads/{filename}", data, content_type=mime_type)
        document_id = None
        if with_document:
            document_id = store.create_document(
                case_id=case_id, title=filename, blob_url=blob.url,
                mime_type=mime_type, size_bytes=len(data),
            )["id"]
        return store.create_ingest_job(
            case_id=case_id,
            filename=filename,
            blob_url=blob.url,
            mime_type=mime_type,
            size_bytes=len(data),
            status=status,
            document_id=document_id,
        )

    return _upload


# ---------------------------------------------------------------------------
# PDF builders (PyMuPDF)
# ---------------------------------------------------------------------------

def build_pdf(pages):
    """PDF bytes with one page per string."""
    import fitz

    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text, fontsize=11)
    data = doc.tobytes()
    doc.close()
    return data


def build_encrypted_pdf(text="Confidential"):
    import fitz

    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), text, fontsize=11)
    data = doc.tobytes(
        encryption=fitz.PDF_ENCRYPT_AES_256,
        owner_pw="owner-secret",
        user_pw="user-secret",
    )
    doc.close()
    return data


@pytest.fixture
def pdf_bytes():
    return build_pdf


@pytest.fixture
def encrypted_pdf_bytes():
    return build_encrypted_pdf()


# ---------------------------------------------------------------------------
# Model output builders
# ---------------------------------------------------------------------------

def make_source_ref(case_id, document_id, label="Separation Agreement", page=1, quote=None):
    return {
        "ref_type": "document",
        "case_id": case_id,
        "document_version_id": document_id,
        "transcript_message_ids": None,
        "email_id": None,
        "timeline_event_id": None,
        "lawyer_note_id": None,
        "locator": {
            "label": label,
            "page_start": page,
            "page_end": page,
            "section": None,
            "quote": quote,
            "timestamp": None,
        },
        "confidence": "high",
    }


def make_answer(case_id, document_id, cite_helps=True, with_evidence=True, with_hurts=True):
    ref = make_source_ref(case_id, document_id)
    return {
        "answer": {
            "summary": "Holidays alternate by year.",
            "direct_answer": "Thanksgiving alternates annually between the parents.",
            "confidence": "high",
            "uncertainties": [],
        },
        "evidence": [
            {"claim": "Thanksgiving alternates annually.", "source_refs": [ref], "type": "quote"}
        ] if with_evidence else [],
        "what_helps": [
            {"point": "The schedule is written down.", "source_refs": [ref] if cite_helps else [], "strength": "strong"}
        ],
        "what_hurts": [
            {"point": "Winter break split is vague.", "source_refs": [ref], "risk_level": "medium"}
        ] if with_hurts else [],
        "next_steps": [{"action": "Confirm this year's holiday.", "owner": "user", "priority": "medium"}],
        "questions_for_lawyer": [],
        "missing_or_requested_docs": [],
        "meta": {
            "used_retrieval": True,
            "retrieval_notes": "Agreement Article 5.",
            "safety_note": "Not legal advice.",
        },
    }


@pytest.fixture
def source_ref_factory():
    return make_source_ref


@pytest.fixture
def answer_factory():
    return make_answer
