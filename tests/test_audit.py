"""Tests for audit sinks and the background emitter."""

import json
import logging
import threading

import pytest

from memgate.core.audit import AuditEmitter, AuditSink, InMemoryAuditLog, JsonlAuditSink, create_sink
from memgate.core.types import AuditRecord
from memgate.observability import metrics


def _record(decision="granted", grant_id="g1", **kwargs):
    data = dict(agent_id="travel-agent", user_id="u1", subject="book_business_travel", writer="intent_engine")
    data.update(kwargs)
    return AuditRecord(decision=decision, grant_id=grant_id, **data)


class FlakySink(AuditSink):
    def __init__(self, failures):
        self.failures = failures
        self.attempts = 0
        self.records = []
        self._lock = threading.Lock()

    def emit(self, record):
        with self._lock:
            self.attempts += 1
            if self.attempts <= self.failures:
                raise IOError("disk full")
            self.records.append(record)


@pytest.fixture
def log():
    return InMemoryAuditLog()


class TestInMemoryAuditLog:
    def test_query_filters(self, log):
        log.emit(_record(grant_id="g1"))
        log.emit(_record(grant_id="g2", agent_id="other"))
        log.emit(_record(decision="revoked", grant_id="g1"))
        assert len(log) == 3
        assert [r.decision for r in log.query(grant_id="g1")] == ["granted", "revoked"]
        assert len(log.query(agent_id="other")) == 1
        assert len(log.query(decision="revoked")) == 1
        assert [r.grant_id for r in log.query(limit=1)] == ["g1"]

    def test_record_serializes(self):
        payload = _record(details={"reason": "x"}).to_dict()
        assert payload["decision"] == "granted"
        assert payload["details"] == {"reason": "x"}
        assert isinstance(payload["timestamp"], str)


class TestJsonlSink:
    def test_append_and_read(self, tmp_path):
        path = tmp_path / "audit" / "log.jsonl"
        sink = JsonlAuditSink(str(path))
        sink.emit(_record(grant_id="g1"))
        sink.emit(_record(grant_id="g2"))
        rows = sink.read()
        assert [row["grant_id"] for row in rows] == ["g1", "g2"]
        assert [row["grant_id"] for row in sink.read(limit=1)] == ["g2"]
        lines = path.read_text().splitlines()
        assert json.loads(lines[0])["writer"] == "intent_engine"

    def test_read_missing_file(self, tmp_path):
        assert JsonlAuditSink(str(tmp_path / "none.jsonl")).read() == []

    def test_create_sink(self, tmp_path):
        assert isinstance(create_sink("memory"), InMemoryAuditLog)
        assert isinstance(create_sink("jsonl", str(tmp_path / "a.jsonl")), JsonlAuditSink)
        with pytest.raises(ValueError):
            create_sink("jsonl")
        with pytest.raises(ValueError):
            create_sink("kafka")


class TestAuditEmitter:
    def test_delivers_in_background(self, log):
        emitter = AuditEmitter(log)
        try:
            emitter.emit(_record())
            assert emitter.flush(timeout=5)
            assert len(log) == 1
        finally:
            emitter.close()

    def test_retries_failing_sink(self):
        sink = FlakySink(failures=2)
        emitter = AuditEmitter(sink, max_attempts=3, backoff=0.0)
        try:
            emitter.emit(_record())
            assert emitter.flush(timeout=5)
        finally:
            emitter.close()
        assert sink.attempts == 3
        assert len(sink.records) == 1
        assert emitter.undelivered == []

    def test_undeliverable_records_are_parked(self):
        sink = FlakySink(failures=2)
        emitter = AuditEmitter(sink, max_attempts=2, backoff=0.0, redelivery_interval=60)
        try:
            emitter.emit(_record())
            assert emitter.flush(timeout=5)
            assert len(emitter.undelivered) == 1
            assert metrics.get_summary()["gateway"]["total_audit_failures"] == 1

            assert emitter.redeliver() == 1
            assert emitter.flush(timeout=5)
            assert emitter.undelivered == []
            assert len(sink.records) == 1
        finally:
            emitter.close()

    def test_parked_record_delivered_once_sink_recovers(self):
        sink = FlakySink(failures=3)
        emitter = AuditEmitter(sink, max_attempts=3, backoff=0.0, redelivery_interval=60)
        try:
            emitter.emit(_record(subject="intent"))
            assert emitter.flush(timeout=5)
            assert len(emitter.undelivered) == 1

            emitter.emit(_record(subject="intent2"))
            assert emitter.flush(timeout=5)
        finally:
            emitter.close()
        assert [r.subject for r in sink.records] == ["intent", "intent2"]
        assert emitter.undelivered == []

    def test_parked_record_retried_on_timer(self):
        sink = FlakySink(failures=3)
        emitter = AuditEmitter(sink, max_attempts=3, backoff=0.0, redelivery_interval=0.01)
        try:
            emitter.emit(_record(grant_id="g-late"))
            assert emitter.wait_for_grant("g-late", timeout=5)
        finally:
            emitter.close()
        assert len(sink.records) == 1
        assert emitter.undelivered == []

    def test_close_delivers_parked_records(self):
        sink = FlakySink(failures=2)
        emitter = AuditEmitter(sink, max_attempts=2, backoff=0.0, redelivery_interval=60)
        emitter.emit(_record())
        assert emitter.flush(timeout=5)
        assert len(emitter.undelivered) == 1
        emitter.close()
        assert len(sink.records) == 1
        assert emitter.undelivered == []

    def test_close_logs_records_still_parked(self, caplog):
        emitter = AuditEmitter(FlakySink(failures=100), max_attempts=1, backoff=0.0, redelivery_interval=60)
        emitter.emit(_record())
        assert emitter.flush(timeout=5)
        with caplog.at_level(logging.ERROR, logger="memgate.core.audit"):
            emitter.close()
        assert len(emitter.undelivered) == 1
        assert "closed with 1 undelivered record" in caplog.text

    def test_emit_never_raises(self):
        emitter = AuditEmitter(FlakySink(failures=100), max_attempts=1, backoff=0.0)
        try:
            emitter.emit(_record())
            assert emitter.flush(timeout=5)
        finally:
            emitter.close()

    def test_wait_for_grant(self, log):
        emitter = AuditEmitter(log)
        try:
            assert not emitter.wait_for_grant("g9", timeout=0.01)
            emitter.emit(_record(grant_id="g9"))
            assert emitter.wait_for_grant("g9", timeout=5)
        finally:
            emitter.close()

    def test_emit_after_close_is_synchronous(self, log):
        emitter = AuditEmitter(log)
        emitter.close()
        emitter.emit(_record())
        assert len(log) == 1
