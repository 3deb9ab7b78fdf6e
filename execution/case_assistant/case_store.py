"""
Case Store with PostgreSQL (+ optional pgvector)

Relational source of truth for cases, documents, ingest jobs, chunks, case
memory and chat history. Every table hangs off ``cases`` with ON DELETE
CASCADE.

Vector support is a runtime capability: ``probe_vector_support()`` checks
for the pgvector extension once, and when present ``enable_vector_column()``
adds the native ``embedding`` column. Chunks always carry their embedding as
JSON as well, so a database without pgvector still ingests and answers
(lexical search only).

The memory-rebuild lock is a compare-and-set on ``cases``; it is the only
cross-request mutual exclusion in the system.
"""

import json
import logging
import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable, Optional

import psycopg2
import psycopg2.errors
import psycopg2.extras
import psycopg2.pool

from .errors import StageTimeoutError

logger = logging.getLogger(__name__)


INGEST_STATUSES = (
    "queued",
    "uploaded",
    "extracting",
    "ready_to_index",
    "indexing",
    "done",
    "error",
)

# Columns update_ingest_job() may touch
_JOB_UPDATABLE = frozenset({
    "status",
    "error",
    "extracted_text_url",
    "extracted_pages_url",
    "last_completed_step",
    "provider_file_id",
    "document_id",
})


@dataclass
class CaseStoreConfig:
    """Configuration for the case store."""
    connection_string: Optional[str] = None
    embedding_dimensions: int = 1536
    pool_min_connections: int = 2
    pool_max_connections: int = 20


def _serialize(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _row(row) -> Optional[dict]:
    """RealDictRow -> plain dict with string ids and ISO timestamps."""
    if row is None:
        return None
    return {k: _serialize(v) for k, v in dict(row).items()}


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class CaseStore:
    """
    PostgreSQL store for the case assistant.

    All public methods run through ``_execute_with_retry`` so a stale pooled
    connection is replaced once before the error propagates.
    """

    def __init__(self, config: Optional[CaseStoreConfig] = None):
        self.config = config or CaseStoreConfig()
        self._pool = None
        self._connection_string = (
            self.config.connection_string
            or os.getenv("DATABASE_URL")
            or "postgresql://localhost:5432/case_assistant"
        )

    # =========================================================================
    # Connections
    # =========================================================================

    def connect(self) -> None:
        """Create the connection pool."""
        try:
            if self._pool:
                self._pool.closeall()
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=self.config.pool_min_connections,
                maxconn=self.config.pool_max_connections,
                dsn=self._connection_string,
                cursor_factory=psycopg2.extras.RealDictCursor,
            )
            logger.info(
                f"Connection pool initialized (min={self.config.pool_min_connections}, "
                f"max={self.config.pool_max_connections})"
            )
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _get_connection(self):
        if not self._pool:
            self.connect()
        return self._pool.getconn()

    def _release_connection(self, conn, close: bool = False):
        if self._pool and conn is not None:
            self._pool.putconn(conn, close=close)

    @contextmanager
    def get_connection(self):
        """
        Context manager for a pooled connection.

        Usage:
            with store.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        conn = self._get_connection()
        try:
            yield conn
        finally:
            self._release_connection(conn)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            conn = self._get_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._release_connection(conn, close=True)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    self.connect()
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def close(self) -> None:
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")

    # =========================================================================
    # Schema and capability probe
    # =========================================================================

    def initialize_schema(self) -> None:
        """Create tables, enum and indexes if they don't exist."""
        schema_sql = """
        DO $$ BEGIN
            CREATE TYPE ingest_status AS ENUM (
                'queued', 'uploaded', 'extracting', 'ready_to_index',
                'indexing', 'done', 'error'
            );
        EXCEPTION WHEN duplicate_object THEN NULL;
        END $$;

        CREATE TABLE IF NOT EXISTS cases (
            id UUID PRIMARY KEY,
            name TEXT NOT NULL,
            vector_store_id TEXT,
            memory_rebuild_in_progress BOOLEAN NOT NULL DEFAULT FALSE,
            memory_rebuild_requested_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS documents (
            id UUID PRIMARY KEY,
            case_id UUID NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            blob_url TEXT NOT NULL,
            provider_file_id TEXT,
            vector_store_id TEXT,
            mime_type TEXT,
            size_bytes BIGINT,
            document_type TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_documents_case ON documents(case_id, created_at);

        CREATE TABLE IF NOT EXISTS document_ingest_jobs (
            id UUID PRIMARY KEY,
            case_id UUID NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
            filename TEXT NOT NULL,
            mime_type TEXT,
            size_bytes BIGINT,
            blob_url TEXT NOT NULL,
            status ingest_status NOT NULL DEFAULT 'queued',
            error TEXT,
            extracted_text_url TEXT,
            extracted_pages_url TEXT,
            last_completed_step TEXT,
            provider_file_id TEXT,
            document_id UUID UNIQUE REFERENCES documents(id) ON DELETE SET NULL,
            parent_job_id UUID REFERENCES document_ingest_jobs(id) ON DELETE SET NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_ingest_jobs_case_status
            ON document_ingest_jobs(case_id, status);
        ALTER TABLE document_ingest_jobs ADD COLUMN IF NOT EXISTS parent_job_id UUID
            REFERENCES document_ingest_jobs(id) ON DELETE SET NULL;
        CREATE INDEX IF NOT EXISTS idx_ingest_jobs_parent
            ON document_ingest_jobs(parent_job_id);

        CREATE TABLE IF NOT EXISTS document_chunks (
            id UUID PRIMARY KEY,
            case_id UUID NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
            document_id UUID NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
            page_number INT,
            chunk_index INT NOT NULL,
            text TEXT NOT NULL,
            embedding_json JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            UNIQUE (document_id, chunk_index)
        );
        CREATE INDEX IF NOT EXISTS idx_chunks_case ON document_chunks(case_id);

        CREATE TABLE IF NOT EXISTS case_entities (
            id UUID PRIMARY KEY,
            case_id UUID NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
            document_id UUID REFERENCES documents(id) ON DELETE CASCADE,
            type TEXT NOT NULL,
            name TEXT NOT NULL,
            attributes_json JSONB NOT NULL DEFAULT '{}',
            citations_json JSONB NOT NULL DEFAULT '[]',
            confidence TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS case_facts (
            id UUID PRIMARY KEY,
            case_id UUID NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
            document_id UUID REFERENCES documents(id) ON DELETE CASCADE,
            type TEXT NOT NULL,
            key TEXT NOT NULL,
            value_json JSONB NOT NULL DEFAULT '{}',
            citations_json JSONB NOT NULL DEFAULT '[]',
            confidence TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_case_facts_case_type ON case_facts(case_id, type);

        CREATE TABLE IF NOT EXISTS obligations (
            id UUID PRIMARY KEY,
            case_id UUID NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
            document_id UUID REFERENCES documents(id) ON DELETE CASCADE,
            obligation_type TEXT NOT NULL,
            due_date DATE,
            recurrence TEXT,
            description TEXT NOT NULL,
            citations_json JSONB NOT NULL DEFAULT '[]',
            confidence TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS timeline_events (
            id UUID PRIMARY KEY,
            case_id UUID NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
            document_id UUID REFERENCES documents(id) ON DELETE CASCADE,
            occurred_at DATE,
            event_date DATE,
            precision TEXT NOT NULL DEFAULT 'unknown',
            title TEXT NOT NULL,
            summary TEXT NOT NULL,
            category TEXT NOT NULL DEFAULT 'other',
            people TEXT[] NOT NULL DEFAULT ARRAY[]::TEXT[],
            source_ref JSONB NOT NULL DEFAULT '{}',
            citations_json JSONB NOT NULL DEFAULT '[]',
            confidence TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_timeline_case ON timeline_events(case_id, occurred_at);

        CREATE TABLE IF NOT EXISTS chat_threads (
            id UUID PRIMARY KEY,
            case_id UUID NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS chat_messages (
            id UUID PRIMARY KEY,
            case_id UUID NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
            thread_id UUID NOT NULL REFERENCES chat_threads(id) ON DELETE CASCADE,
            role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
            content JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_chat_messages_thread ON chat_messages(thread_id, created_at);

        CREATE TABLE IF NOT EXISTS insights (
            id UUID PRIMARY KEY,
            case_id UUID NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
            content JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql)
                conn.commit()
            logger.info("Schema initialized successfully")

        self._execute_with_retry(_op, "initialize_schema")

    def probe_vector_support(self) -> bool:
        """
        Check whether pgvector is available, installing it when permitted.

        Called once at startup; the result is handed to the services as
        their storage mode rather than re-probed per request.
        """
        def _op(conn):
            with conn.cursor() as cur:
                try:
                    cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                    conn.commit()
                except psycopg2.Error as e:
                    self._safe_rollback(conn)
                    logger.info(f"pgvector extension not installable: {e}")
                cur.execute("SELECT extname FROM pg_extension WHERE extname = 'vector'")
                found = cur.fetchone() is not None
                conn.commit()
            return found

        available = self._execute_with_retry(_op, "probe_vector_support")
        logger.info(f"Vector storage {'available' if available else 'unavailable'}")
        return available

    def enable_vector_column(self) -> None:
        """Add the native vector column (requires pgvector)."""
        dims = int(self.config.embedding_dimensions)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    f"ALTER TABLE document_chunks ADD COLUMN IF NOT EXISTS embedding VECTOR({dims})"
                )
                conn.commit()

        self._execute_with_retry(_op, "enable_vector_column")

    # =========================================================================
    # Cases
    # =========================================================================

    def get_case(self, case_id: str) -> Optional[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM cases WHERE id = %s::uuid", (case_id,))
                return _row(cur.fetchone())

        return self._execute_with_retry(_op, "get_case")

    def get_or_create_case(self, case_id: Optional[str] = None) -> dict:
        """
        Return the named case, or with no id the oldest case, else a new "Default Case".

        Raises:
            ValueError: case_id is given but is not a UUID or names no case
        """
        if case_id is not None:
            try:
                uuid.UUID(str(case_id))
            except ValueError:
                raise ValueError(f"Invalid case id: {case_id}") from None

        def _op(conn):
            with conn.cursor() as cur:
                if case_id is not None:
                    cur.execute("SELECT * FROM cases WHERE id = %s::uuid", (case_id,))
                    row = cur.fetchone()
                    if row is None:
                        raise ValueError(f"Case {case_id} not found")
                    return _row(row)
                cur.execute("SELECT * FROM cases ORDER BY created_at ASC LIMIT 1")
                row = cur.fetchone()
                if row:
                    return _row(row)
                cur.execute(
                    "INSERT INTO cases (id, name) VALUES (%s::uuid, %s) RETURNING *",
                    (str(uuid.uuid4()), "Default Case"),
                )
                row = cur.fetchone()
                conn.commit()
                logger.info(f"Created default case {row['id']}")
                return _row(row)

        return self._execute_with_retry(_op, "get_or_create_case")

    def set_case_vector_store(self, case_id: str, vector_store_id: str) -> None:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE cases SET vector_store_id = %s, updated_at = NOW() WHERE id = %s::uuid",
                    (vector_store_id, case_id),
                )
                conn.commit()

        self._execute_with_retry(_op, "set_case_vector_store")

    def acquire_memory_rebuild_lock(self, case_id: str) -> bool:
        """
        Atomically take the case's rebuild lock.

        Returns:
            True only for the caller whose UPDATE flipped the flag
        """
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE cases
                    SET memory_rebuild_in_progress = TRUE,
                        memory_rebuild_requested_at = NOW()
                    WHERE id = %s::uuid AND memory_rebuild_in_progress = FALSE
                    """,
                    (case_id,),
                )
                acquired = cur.rowcount > 0
                conn.commit()
            return acquired

        return self._execute_with_retry(_op, "acquire_memory_rebuild_lock")

    def release_memory_rebuild_lock(self, case_id: str) -> None:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE cases SET memory_rebuild_in_progress = FALSE WHERE id = %s::uuid",
                    (case_id,),
                )
                conn.commit()

        self._execute_with_retry(_op, "release_memory_rebuild_lock")

    # =========================================================================
    # Documents
    # =========================================================================

    def create_document(
        self,
        case_id: str,
        title: str,
        blob_url: str,
        mime_type: Optional[str] = None,
        size_bytes: Optional[int] = None,
    ) -> dict:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO documents (id, case_id, title, blob_url, mime_type, size_bytes)
                    VALUES (%s::uuid, %s::uuid, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), case_id, title, blob_url, mime_type, size_bytes),
                )
                row = cur.fetchone()
                conn.commit()
            return _row(row)

        return self._execute_with_retry(_op, "create_document")

    def get_document(self, document_id: str) -> Optional[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM documents WHERE id = %s::uuid", (document_id,))
                return _row(cur.fetchone())

        return self._execute_with_retry(_op, "get_document")

    def list_documents(self, case_id: str, document_ids: Optional[list[str]] = None) -> list[dict]:
        """
        Documents for a case, oldest first, with their ingest job status.

        Rows carry ``job_status``, ``job_error`` and ``filename`` (NULL for
        documents uploaded without a job).
        """
        sql = """
        SELECT d.*, j.id AS job_id, j.status::text AS job_status,
               j.error AS job_error, j.filename AS filename
        FROM documents d
        LEFT JOIN document_ingest_jobs j ON j.document_id = d.id
        WHERE d.case_id = %s::uuid
        """
        params: list = [case_id]
        if document_ids:
            sql += " AND d.id = ANY(%s::uuid[])"
            params.append(list(document_ids))
        sql += " ORDER BY d.created_at ASC"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return [_row(r) for r in cur.fetchall()]

        return self._execute_with_retry(_op, "list_documents")

    def update_document_index_handles(
        self,
        document_id: str,
        provider_file_id: Optional[str],
        vector_store_id: Optional[str],
    ) -> None:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE documents SET provider_file_id = %s, vector_store_id = %s
                    WHERE id = %s::uuid
                    """,
                    (provider_file_id, vector_store_id, document_id),
                )
                conn.commit()

        self._execute_with_retry(_op, "update_document_index_handles")

    # =========================================================================
    # Ingest jobs
    # =========================================================================

    def create_ingest_job(
        self,
        case_id: str,
        filename: str,
        blob_url: str,
        mime_type: Optional[str] = None,
        size_bytes: Optional[int] = None,
        status: str = "queued",
        document_id: Optional[str] = None,
        parent_job_id: Optional[str] = None,
    ) -> dict:
        if status not in INGEST_STATUSES:
            raise ValueError(f"Invalid ingest status: {status}")

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO document_ingest_jobs
                        (id, case_id, filename, blob_url, mime_type, size_bytes, status,
                         document_id, parent_job_id)
                    VALUES (%s::uuid, %s::uuid, %s, %s, %s, %s, %s::ingest_status, %s::uuid, %s::uuid)
                    RETURNING *, status::text AS status
                    """,
                    (str(uuid.uuid4()), case_id, filename, blob_url, mime_type,
                     size_bytes, status, document_id, parent_job_id),
                )
                row = cur.fetchone()
                conn.commit()
            return _row(row)

        return self._execute_with_retry(_op, "create_ingest_job")

    def get_ingest_job(self, job_id: str) -> Optional[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT *, status::text AS status FROM document_ingest_jobs WHERE id = %s::uuid",
                    (job_id,),
                )
                return _row(cur.fetchone())

        return self._execute_with_retry(_op, "get_ingest_job")

    def select_ingest_jobs(
        self,
        case_id: str,
        job_ids: Optional[list[str]] = None,
        statuses: Iterable[str] = (),
        limit: int = 50,
    ) -> list[dict]:
        """
        Jobs to process, oldest first.

        Explicit job ids are honoured regardless of status; otherwise only
        jobs in ``statuses`` are selected.
        """
        if job_ids:
            sql = """
            SELECT *, status::text AS status FROM document_ingest_jobs
            WHERE case_id = %s::uuid AND id = ANY(%s::uuid[])
            ORDER BY created_at ASC LIMIT %s
            """
            params = (case_id, list(job_ids), limit)
        else:
            sql = """
            SELECT *, status::text AS status FROM document_ingest_jobs
            WHERE case_id = %s::uuid AND status::text = ANY(%s)
            ORDER BY created_at ASC LIMIT %s
            """
            params = (case_id, list(statuses), limit)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return [_row(r) for r in cur.fetchall()]

        return self._execute_with_retry(_op, "select_ingest_jobs")

    def list_ingest_jobs(self, case_id: str) -> list[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT *, status::text AS status FROM document_ingest_jobs
                    WHERE case_id = %s::uuid ORDER BY created_at DESC
                    """,
                    (case_id,),
                )
                return [_row(r) for r in cur.fetchall()]

        return self._execute_with_retry(_op, "list_ingest_jobs")

    def list_child_jobs(self, parent_job_id: str) -> list[dict]:
        """Jobs queued by an archive job, oldest first."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT *, status::text AS status FROM document_ingest_jobs
                    WHERE parent_job_id = %s::uuid ORDER BY created_at ASC
                    """,
                    (parent_job_id,),
                )
                return [_row(r) for r in cur.fetchall()]

        return self._execute_with_retry(_op, "list_child_jobs")

    def update_ingest_job(self, job_id: str, **fields) -> dict:
        """Update whitelisted job columns; returns the updated row."""
        unknown = set(fields) - _JOB_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")
        if "status" in fields and fields["status"] not in INGEST_STATUSES:
            raise ValueError(f"Invalid ingest status: {fields['status']}")

        assignments = []
        params = []
        for name, value in fields.items():
            if name == "status":
                assignments.append("status = %s::ingest_status")
            elif name == "document_id":
                assignments.append("document_id = %s::uuid")
            else:
                assignments.append(f"{name} = %s")
            params.append(value)
        assignments.append("updated_at = NOW()")
        params.append(job_id)

        sql = (
            f"UPDATE document_ingest_jobs SET {', '.join(assignments)} "
            "WHERE id = %s::uuid RETURNING *, status::text AS status"
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
                conn.commit()
            return _row(row)

        return self._execute_with_retry(_op, "update_ingest_job")

    # =========================================================================
    # Chunks
    # =========================================================================

    def delete_document_chunks(self, document_id: str) -> int:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("DELETE FROM document_chunks WHERE document_id = %s::uuid", (document_id,))
                deleted = cur.rowcount
                conn.commit()
            return deleted

        deleted = self._execute_with_retry(_op, "delete_document_chunks")
        if deleted:
            logger.info(f"Deleted {deleted} prior chunks for document {document_id}")
        return deleted

    def insert_chunks(
        self,
        case_id: str,
        document_id: str,
        chunks: list[dict],
        embeddings: list[list[float]],
        vector_enabled: bool = False,
    ) -> int:
        """
        Batch insert chunks with their embeddings.

        The JSON embedding is always written; with ``vector_enabled`` the same
        values are copied into the native vector column in the same
        transaction.

        Args:
            chunks: Dicts with chunk_index, page_number, text
            embeddings: One vector per chunk, same order
        """
        if len(chunks) != len(embeddings):
            raise ValueError(
                f"Mismatch: {len(chunks)} chunks, {len(embeddings)} embeddings"
            )
        if not chunks:
            return 0

        from psycopg2.extras import execute_values

        rows = []
        vectors = []
        for chunk, embedding in zip(chunks, embeddings):
            chunk_id = str(uuid.uuid4())
            rows.append((
                chunk_id,
                case_id,
                document_id,
                chunk.get("page_number"),
                chunk["chunk_index"],
                chunk["text"],
                json.dumps(embedding),
            ))
            vectors.append((chunk_id, embedding))

        insert_sql = """
        INSERT INTO document_chunks
            (id, case_id, document_id, page_number, chunk_index, text, embedding_json)
        VALUES %s
        """
        vector_sql = """
        UPDATE document_chunks AS c SET embedding = v.embedding::vector
        FROM (VALUES %s) AS v(id, embedding)
        WHERE c.id = v.id::uuid
        """

        def _op(conn):
            with conn.cursor() as cur:
                execute_values(
                    cur,
                    insert_sql,
                    rows,
                    template="(%s::uuid, %s::uuid, %s::uuid, %s, %s, %s, %s::jsonb)",
                    page_size=500,
                )
                if vector_enabled:
                    execute_values(cur, vector_sql, vectors, template="(%s, %s)", page_size=500)
                conn.commit()
            logger.info(
                f"Inserted {len(rows)} chunks for document {document_id}"
                f" (vector={'yes' if vector_enabled else 'no'})"
            )
            return len(rows)

        return self._execute_with_retry(_op, "insert_chunks")

    def count_case_chunks(self, case_id: str) -> int:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT COUNT(*) AS n FROM document_chunks WHERE case_id = %s::uuid",
                    (case_id,),
                )
                return int(cur.fetchone()["n"])

        return self._execute_with_retry(_op, "count_case_chunks")

    def get_document_chunks(self, document_id: str) -> list[dict]:
        """A document's chunks in (page_number, chunk_index) order."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, case_id, document_id, page_number, chunk_index, text
                    FROM document_chunks WHERE document_id = %s::uuid
                    ORDER BY page_number ASC, chunk_index ASC
                    """,
                    (document_id,),
                )
                return [_row(r) for r in cur.fetchall()]

        return self._execute_with_retry(_op, "get_document_chunks")

    _CHUNK_SELECT = """
        SELECT c.id, c.case_id, c.document_id, c.page_number, c.chunk_index, c.text,
               c.created_at, d.title AS document_title, j.filename AS filename
        FROM document_chunks c
        JOIN documents d ON d.id = c.document_id
        LEFT JOIN document_ingest_jobs j ON j.document_id = c.document_id
    """

    def keyword_search(self, case_id: str, query: str, limit: int = 6, timeout_ms: int = 20000) -> list[dict]:
        """Case-insensitive substring match over chunk text, newest first."""
        sql = self._CHUNK_SELECT + """
        WHERE c.case_id = %s::uuid AND c.text ILIKE %s ESCAPE '\\'
        ORDER BY c.created_at DESC
        LIMIT %s
        """
        pattern = f"%{_escape_like(query)}%"
        return self._timed_search(sql, (case_id, pattern, limit), timeout_ms, "keyword_search")

    def vector_search(
        self,
        case_id: str,
        query_embedding: list[float],
        limit: int = 6,
        timeout_ms: int = 20000,
    ) -> list[dict]:
        """Nearest chunks by L2 distance over chunks that have a vector."""
        sql = self._CHUNK_SELECT + """
        WHERE c.case_id = %s::uuid AND c.embedding IS NOT NULL
        ORDER BY c.embedding <-> %s::vector
        LIMIT %s
        """
        return self._timed_search(sql, (case_id, query_embedding, limit), timeout_ms, "vector_search")

    def _timed_search(self, sql: str, params: tuple, timeout_ms: int, label: str) -> list[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                try:
                    cur.execute("SET LOCAL statement_timeout = %s", (int(timeout_ms),))
                    cur.execute(sql, params)
                    rows = [_row(r) for r in cur.fetchall()]
                except psycopg2.errors.QueryCanceled as e:
                    self._safe_rollback(conn)
                    raise StageTimeoutError("chunk_search") from e
                conn.commit()
            return rows

        return self._execute_with_retry(_op, label)

    # =========================================================================
    # Case memory
    # =========================================================================

    def replace_document_memory(
        self,
        case_id: str,
        document_id: str,
        entities: list[dict],
        facts: list[dict],
        timeline: list[dict],
        obligations: list[dict],
        document_type: Optional[str] = None,
    ) -> None:
        """
        Replace all memory rows derived from one document.

        Delete and insert share one transaction, so readers see either the
        previous extraction or the new one.
        """
        from psycopg2.extras import execute_values

        def _op(conn):
            with conn.cursor() as cur:
                for table in ("case_entities", "case_facts", "timeline_events", "obligations"):
                    cur.execute(
                        f"DELETE FROM {table} WHERE case_id = %s::uuid AND document_id = %s::uuid",
                        (case_id, document_id),
                    )

                if entities:
                    execute_values(
                        cur,
                        """INSERT INTO case_entities
                           (id, case_id, document_id, type, name, attributes_json, citations_json, confidence)
                           VALUES %s""",
                        [(str(uuid.uuid4()), case_id, document_id, e["type"], e["name"],
                          json.dumps(e.get("attributes") or {}), json.dumps(e["citations"]),
                          e["confidence"]) for e in entities],
                        template="(%s::uuid, %s::uuid, %s::uuid, %s, %s, %s::jsonb, %s::jsonb, %s)",
                    )
                if facts:
                    execute_values(
                        cur,
                        """INSERT INTO case_facts
                           (id, case_id, document_id, type, key, value_json, citations_json, confidence)
                           VALUES %s""",
                        [(str(uuid.uuid4()), case_id, document_id, f["type"], f["key"],
                          json.dumps(f["value"]), json.dumps(f["citations"]),
                          f["confidence"]) for f in facts],
                        template="(%s::uuid, %s::uuid, %s::uuid, %s, %s, %s::jsonb, %s::jsonb, %s)",
                    )
                if timeline:
                    execute_values(
                        cur,
                        """INSERT INTO timeline_events
                           (id, case_id, document_id, occurred_at, event_date, precision, title,
                            summary, category, people, source_ref, citations_json, confidence)
                           VALUES %s""",
                        [(str(uuid.uuid4()), case_id, document_id, t["event_date"], t["event_date"],
                          t["precision"], t["title"], t["summary"], t["category"], t.get("people", []),
                          json.dumps(t["source_ref"]), json.dumps(t["citations"]),
                          t["confidence"]) for t in timeline],
                        template=(
                            "(%s::uuid, %s::uuid, %s::uuid, %s::date, %s::date, %s, %s, %s, %s,"
                            " %s::text[], %s::jsonb, %s::jsonb, %s)"
                        ),
                    )
                if obligations:
                    execute_values(
                        cur,
                        """INSERT INTO obligations
                           (id, case_id, document_id, obligation_type, due_date, recurrence,
                            description, citations_json, confidence)
                           VALUES %s""",
                        [(str(uuid.uuid4()), case_id, document_id, o["obligation_type"], o["due_date"],
                          o.get("recurrence"), o["description"], json.dumps(o["citations"]),
                          o["confidence"]) for o in obligations],
                        template="(%s::uuid, %s::uuid, %s::uuid, %s, %s::date, %s, %s, %s::jsonb, %s)",
                    )
                if document_type:
                    cur.execute(
                        "UPDATE documents SET document_type = %s WHERE id = %s::uuid",
                        (document_type, document_id),
                    )
                conn.commit()
            logger.info(
                f"Memory for document {document_id}: {len(entities)} entities, {len(facts)} facts, "
                f"{len(timeline)} timeline events, {len(obligations)} obligations"
            )

        self._execute_with_retry(_op, "replace_document_memory")

    def list_case_facts(self, case_id: str, types: Optional[list[str]] = None, limit: int = 8) -> list[dict]:
        sql = "SELECT * FROM case_facts WHERE case_id = %s::uuid"
        params: list = [case_id]
        if types:
            sql += " AND type = ANY(%s)"
            params.append(list(types))
        sql += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return [_row(r) for r in cur.fetchall()]

        return self._execute_with_retry(_op, "list_case_facts")

    def list_obligations(self, case_id: str, limit: int = 6) -> list[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT * FROM obligations WHERE case_id = %s::uuid
                    ORDER BY due_date ASC NULLS LAST, created_at DESC LIMIT %s
                    """,
                    (case_id, limit),
                )
                return [_row(r) for r in cur.fetchall()]

        return self._execute_with_retry(_op, "list_obligations")

    def list_timeline_events(self, case_id: str, limit: int = 6) -> list[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT * FROM timeline_events WHERE case_id = %s::uuid
                    ORDER BY occurred_at DESC NULLS LAST, created_at DESC LIMIT %s
                    """,
                    (case_id, limit),
                )
                return [_row(r) for r in cur.fetchall()]

        return self._execute_with_retry(_op, "list_timeline_events")

    def insert_timeline_events(self, case_id: str, events: list[dict]) -> list[dict]:
        """Insert standalone timeline events (timeline extraction job)."""
        if not events:
            return []

        def _op(conn):
            created = []
            with conn.cursor() as cur:
                for event in events:
                    cur.execute(
                        """
                        INSERT INTO timeline_events
                            (id, case_id, document_id, occurred_at, event_date, precision, title,
                             summary, category, people, source_ref, citations_json, confidence)
                        VALUES (%s::uuid, %s::uuid, %s::uuid, %s::date, %s::date, %s, %s, %s, %s,
                                %s::text[], %s::jsonb, %s::jsonb, %s)
                        RETURNING *
                        """,
                        (
                            str(uuid.uuid4()), case_id, event.get("document_id"),
                            event.get("occurred_at"), event.get("occurred_at"),
                            event["precision"], event["title"], event["summary"],
                            event["category"], event.get("people", []),
                            json.dumps(event["source_ref"]),
                            json.dumps([event["source_ref"]]),
                            event["source_ref"].get("confidence"),
                        ),
                    )
                    created.append(_row(cur.fetchone()))
                conn.commit()
            return created

        return self._execute_with_retry(_op, "insert_timeline_events")

    def insert_insight(self, case_id: str, content: dict) -> dict:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO insights (id, case_id, content) VALUES (%s::uuid, %s::uuid, %s::jsonb) RETURNING *",
                    (str(uuid.uuid4()), case_id, json.dumps(content)),
                )
                row = cur.fetchone()
                conn.commit()
            return _row(row)

        return self._execute_with_retry(_op, "insert_insight")

    # =========================================================================
    # Chat threads and messages
    # =========================================================================

    def create_thread(self, case_id: str, title: str = "New thread") -> dict:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO chat_threads (id, case_id, title) VALUES (%s::uuid, %s::uuid, %s) RETURNING *",
                    (str(uuid.uuid4()), case_id, title),
                )
                row = cur.fetchone()
                conn.commit()
            return _row(row)

        return self._execute_with_retry(_op, "create_thread")

    def get_thread(self, thread_id: str) -> Optional[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM chat_threads WHERE id = %s::uuid", (thread_id,))
                return _row(cur.fetchone())

        return self._execute_with_retry(_op, "get_thread")

    def list_threads(self, case_id: str) -> list[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM chat_threads WHERE case_id = %s::uuid ORDER BY updated_at DESC",
                    (case_id,),
                )
                return [_row(r) for r in cur.fetchall()]

        return self._execute_with_retry(_op, "list_threads")

    def delete_thread(self, case_id: str, thread_id: str) -> bool:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM chat_threads WHERE id = %s::uuid AND case_id = %s::uuid",
                    (thread_id, case_id),
                )
                deleted = cur.rowcount > 0
                conn.commit()
            return deleted

        return self._execute_with_retry(_op, "delete_thread")

    def get_or_create_default_thread(self, case_id: str) -> dict:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM chat_threads WHERE case_id = %s::uuid ORDER BY created_at ASC LIMIT 1",
                    (case_id,),
                )
                row = cur.fetchone()
                if row:
                    return _row(row)
                cur.execute(
                    "INSERT INTO chat_threads (id, case_id, title) VALUES (%s::uuid, %s::uuid, %s) RETURNING *",
                    (str(uuid.uuid4()), case_id, "Default thread"),
                )
                row = cur.fetchone()
                conn.commit()
            return _row(row)

        return self._execute_with_retry(_op, "get_or_create_default_thread")

    def add_chat_message(self, case_id: str, thread_id: str, role: str, content: Any) -> dict:
        """Append a message; user turns store {"text": ...}, assistant turns the full answer."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO chat_messages (id, case_id, thread_id, role, content)
                    VALUES (%s::uuid, %s::uuid, %s::uuid, %s, %s::jsonb)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), case_id, thread_id, role, json.dumps(content)),
                )
                row = cur.fetchone()
                cur.execute(
                    "UPDATE chat_threads SET updated_at = NOW() WHERE id = %s::uuid",
                    (thread_id,),
                )
                conn.commit()
            return _row(row)

        return self._execute_with_retry(_op, "add_chat_message")

    def get_messages(self, thread_id: str) -> list[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM chat_messages WHERE thread_id = %s::uuid ORDER BY created_at ASC",
                    (thread_id,),
                )
                return [_row(r) for r in cur.fetchall()]

        return self._execute_with_retry(_op, "get_messages")
