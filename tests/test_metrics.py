"""
Tests for execution/case_assistant/metrics.py

Covers: SystemMetrics aggregation properties, the MetricsCollector
        singleton, the ChatTracker context manager, job, memory and
        timeout counters, and the get_metrics_collector factory.
"""

import pytest


# ---------------------------------------------------------------------------
# SystemMetrics aggregation properties
# ---------------------------------------------------------------------------

class TestSystemMetrics:
    """Tests for SystemMetrics computed properties."""

    def test_avg_latency_zero_chats(self):
        from execution.case_assistant.metrics import SystemMetrics
        assert SystemMetrics().avg_latency_ms == 0

    def test_avg_latency(self):
        from execution.case_assistant.metrics import SystemMetrics
        m = SystemMetrics(total_chats=4, total_latency_ms=400.0)
        assert m.avg_latency_ms == 100.0

    def test_p95_latency(self):
        from execution.case_assistant.metrics import SystemMetrics
        assert SystemMetrics().p95_latency_ms == 0
        assert SystemMetrics(latencies=list(range(1, 101))).p95_latency_ms >= 95

    def test_job_error_rate(self):
        from execution.case_assistant.metrics import SystemMetrics
        assert SystemMetrics().job_error_rate == 0
        assert SystemMetrics(jobs_processed=4, jobs_failed=1).job_error_rate == 0.25

    def test_to_dict_sections(self):
        from execution.case_assistant.metrics import SystemMetrics
        data = SystemMetrics().to_dict()
        assert set(data) == {"chat", "latency_ms", "ingestion", "memory", "timeouts", "errors"}
        assert data["latency_ms"]["min"] == 0
        assert data["ingestion"]["error_rate"] == "0.00%"


# ---------------------------------------------------------------------------
# MetricsCollector
# ---------------------------------------------------------------------------

class TestMetricsCollector:
    """Tests for the collector and its trackers."""

    def test_singleton(self):
        from execution.case_assistant.metrics import MetricsCollector, get_metrics_collector
        assert MetricsCollector() is MetricsCollector()
        assert get_metrics_collector() is get_metrics_collector()

    def test_track_chat_records_path(self, metrics):
        with metrics.track_chat("case-1", "list files") as tracker:
            tracker.set_path("document_list")

        m = metrics.get_metrics()
        assert m.total_chats == 1
        assert m.answers_by_path["document_list"] == 1
        assert m.synthesis_retries == 0
        assert len(m.latencies) == 1
        assert m.min_latency_ms <= m.max_latency_ms

    def test_retry_counted(self, metrics):
        with metrics.track_chat("case-1", "q") as tracker:
            tracker.set_path("synthesized", retried=True)
        assert metrics.get_metrics().synthesis_retries == 1

    def test_unset_path_is_failure(self, metrics):
        with metrics.track_chat("case-1", "q"):
            pass
        assert metrics.get_metrics().answers_by_path["failure"] == 1

    def test_exception_recorded_and_propagated(self, metrics):
        with pytest.raises(KeyError):
            with metrics.track_chat("case-1", "q"):
                raise KeyError("missing")
        m = metrics.get_metrics()
        assert m.errors_by_type["KeyError"] == 1
        assert m.total_chats == 1

    def test_record_job(self, metrics):
        metrics.record_job("job-1", 12, 100.0)
        metrics.record_job("job-2", 0, 50.0, failed=True)
        data = metrics.get_metrics_dict()["ingestion"]
        assert data["jobs"] == 2
        assert data["failed"] == 1
        assert data["chunks"] == 12
        assert data["avg_time_ms"] == 75.0

    def test_record_memory_batch(self, metrics):
        metrics.record_memory_batch()
        metrics.record_memory_batch(dropped=True, reason="timeout")
        metrics.record_memory_batch(dropped=True)
        memory = metrics.get_metrics_dict()["memory"]
        assert memory["batches_ok"] == 1
        assert memory["batches_dropped"] == 2
        assert memory["dropped_by_reason"] == {"timeout": 1, "unknown": 1}

    def test_record_timeout(self, metrics):
        metrics.record_timeout("chunk_search")
        metrics.record_timeout("chunk_search")
        assert metrics.get_metrics_dict()["timeouts"] == {"chunk_search": 2}

    def test_latency_history_bounded(self, metrics):
        metrics._max_history = 3
        try:
            for _ in range(5):
                with metrics.track_chat("case-1", "q") as tracker:
                    tracker.set_path("memory")
            assert len(metrics.get_metrics().latencies) == 3
        finally:
            metrics._max_history = 1000

    def test_reset(self, metrics):
        metrics.record_timeout("synthesis")
        metrics.reset()
        assert metrics.get_metrics().timeouts_by_label == {}
        assert metrics.get_metrics_dict()["uptime_seconds"] >= 0
