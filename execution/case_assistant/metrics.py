"""
Metrics Collection for the Case Assistant

Tracks ingestion, chat answer paths, timeouts and dropped memory batches
for monitoring. In-process only; exposed through GET /api/v1/metrics.
"""

import threading
import time
import logging
from dataclasses import dataclass, field
from collections import defaultdict
from typing import Optional
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

ANSWER_PATHS = (
    "document_list",
    "memory",
    "no_index",
    "retrieval_timeout",
    "stage_one",
    "synthesized",
    "validation_failed",
    "failure",
)


@dataclass
class ChatMetrics:
    """Metrics for a single chat request."""
    case_id: str
    question: str
    start_time: float
    end_time: float = 0
    latency_ms: float = 0
    path: str = "failure"
    retried: bool = False
    error: Optional[str] = None


@dataclass
class SystemMetrics:
    """Aggregated system metrics."""
    # Chat metrics
    total_chats: int = 0
    answers_by_path: dict = field(default_factory=lambda: defaultdict(int))
    synthesis_retries: int = 0

    # Latency tracking (in ms)
    total_latency_ms: float = 0
    min_latency_ms: float = float('inf')
    max_latency_ms: float = 0
    latencies: list = field(default_factory=list)

    # Ingestion metrics
    jobs_processed: int = 0
    jobs_failed: int = 0
    chunks_created: int = 0
    total_ingestion_time_ms: float = 0

    # Memory extraction
    memory_batches_ok: int = 0
    memory_batches_dropped: int = 0
    dropped_by_reason: dict = field(default_factory=lambda: defaultdict(int))

    # Error tracking
    timeouts_by_label: dict = field(default_factory=lambda: defaultdict(int))
    errors_by_type: dict = field(default_factory=lambda: defaultdict(int))

    @property
    def avg_latency_ms(self) -> float:
        """Calculate average chat latency."""
        if self.total_chats == 0:
            return 0
        return self.total_latency_ms / self.total_chats

    @property
    def p95_latency_ms(self) -> float:
        """Calculate 95th percentile latency."""
        if not self.latencies:
            return 0
        sorted_latencies = sorted(self.latencies)
        index = int(len(sorted_latencies) * 0.95)
        return sorted_latencies[min(index, len(sorted_latencies) - 1)]

    @property
    def job_error_rate(self) -> float:
        if self.jobs_processed == 0:
            return 0
        return self.jobs_failed / self.jobs_processed

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "chat": {
                "total": self.total_chats,
                "by_path": dict(self.answers_by_path),
                "synthesis_retries": self.synthesis_retries,
            },
            "latency_ms": {
                "avg": round(self.avg_latency_ms, 2),
                "min": round(self.min_latency_ms, 2) if self.min_latency_ms != float('inf') else 0,
                "max": round(self.max_latency_ms, 2),
                "p95": round(self.p95_latency_ms, 2),
            },
            "ingestion": {
                "jobs": self.jobs_processed,
                "failed": self.jobs_failed,
                "error_rate": f"{self.job_error_rate:.2%}",
                "chunks": self.chunks_created,
                "avg_time_ms": round(
                    self.total_ingestion_time_ms / max(self.jobs_processed, 1), 2
                ),
            },
            "memory": {
                "batches_ok": self.memory_batches_ok,
                "batches_dropped": self.memory_batches_dropped,
                "dropped_by_reason": dict(self.dropped_by_reason),
            },
            "timeouts": dict(self.timeouts_by_label),
            "errors": dict(self.errors_by_type),
        }


class MetricsCollector:
    """
    Collects and aggregates system metrics.

    Usage:
        collector = MetricsCollector()

        with collector.track_chat(case_id, question) as tracker:
            answer = synthesizer.answer(case_id, thread_id, question)
            tracker.set_path("synthesized")

        metrics = collector.get_metrics()
    """

    _instance = None

    def __new__(cls):
        """Singleton pattern for global metrics collection."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.metrics = SystemMetrics()
        self._lock = threading.Lock()
        self._max_history = 1000
        self._start_time = datetime.now()
        self._initialized = True

    def reset(self):
        """Reset all metrics (for testing)."""
        with self._lock:
            self.metrics = SystemMetrics()
            self._start_time = datetime.now()

    class ChatTracker:
        """Context manager for tracking one chat request."""

        def __init__(self, collector: 'MetricsCollector', case_id: str, question: str):
            self.collector = collector
            self.chat = ChatMetrics(
                case_id=case_id,
                question=question[:200],
                start_time=time.time(),
            )

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            self.chat.end_time = time.time()
            self.chat.latency_ms = (self.chat.end_time - self.chat.start_time) * 1000

            if exc_type:
                self.chat.error = str(exc_val)
                self.collector.record_error(exc_type.__name__)

            self.collector._record_chat(self.chat)
            return False  # Don't suppress exceptions

        def set_path(self, path: str, retried: bool = False):
            """Record which answer path produced the response."""
            self.chat.path = path
            self.chat.retried = retried

    def track_chat(self, case_id: str, question: str) -> ChatTracker:
        return self.ChatTracker(self, case_id, question)

    def _record_chat(self, chat: ChatMetrics):
        with self._lock:
            m = self.metrics
            m.total_chats += 1
            m.answers_by_path[chat.path] += 1
            if chat.retried:
                m.synthesis_retries += 1

            m.total_latency_ms += chat.latency_ms
            m.min_latency_ms = min(m.min_latency_ms, chat.latency_ms)
            m.max_latency_ms = max(m.max_latency_ms, chat.latency_ms)
            m.latencies.append(chat.latency_ms)
            if len(m.latencies) > self._max_history:
                m.latencies = m.latencies[-self._max_history:]

    def record_job(self, job_id: str, chunks_count: int, duration_ms: float, failed: bool = False):
        """Record one processed ingest job."""
        with self._lock:
            self.metrics.jobs_processed += 1
            if failed:
                self.metrics.jobs_failed += 1
            self.metrics.chunks_created += chunks_count
            self.metrics.total_ingestion_time_ms += duration_ms

    def record_memory_batch(self, dropped: bool = False, reason: Optional[str] = None):
        """Record a memory extraction batch outcome."""
        with self._lock:
            if dropped:
                self.metrics.memory_batches_dropped += 1
                self.metrics.dropped_by_reason[reason or "unknown"] += 1
            else:
                self.metrics.memory_batches_ok += 1

    def record_timeout(self, label: str):
        with self._lock:
            self.metrics.timeouts_by_label[label] += 1

    def record_error(self, error_type: str):
        """Record an error by type."""
        with self._lock:
            self.metrics.errors_by_type[error_type] += 1

    def get_metrics(self) -> SystemMetrics:
        """Get current metrics."""
        return self.metrics

    def get_metrics_dict(self) -> dict:
        """Get metrics as a dictionary."""
        with self._lock:
            data = self.metrics.to_dict()
        data["uptime_seconds"] = int(self.get_uptime().total_seconds())
        return data

    def get_uptime(self) -> timedelta:
        """Get system uptime."""
        return datetime.now() - self._start_time


# Global metrics collector instance
_collector = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
