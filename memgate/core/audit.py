"""Audit emission: append-only sinks and a fire-and-forget emitter.

Components never mutate audit state directly. They hand records to the
:class:`AuditEmitter`, which delivers them to the sink on a background
thread with at-least-once semantics. A failing sink is logged and retried;
it never reaches the caller.
"""

from __future__ import annotations

import json
import logging
import os
import queue
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set

from memgate.core.types import AuditRecord
from memgate.observability import metrics

logger = logging.getLogger(__name__)

_STOP = object()


class AuditSink(ABC):
    @abstractmethod
    def emit(self, record: AuditRecord) -> None:
        pass

    def find(
        self,
        *,
        agent_id: Optional[str] = None,
        user_id: Optional[str] = None,
        grant_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Delivered records as dicts, oldest first. Write-only sinks return nothing."""
        logger.info("%s does not support reading audit records", type(self).__name__)
        return []


class InMemoryAuditLog(AuditSink):
    """Append-only in-process log; queryable by agent, user or grant."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: List[AuditRecord] = []

    def emit(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    def query(
        self,
        *,
        agent_id: Optional[str] = None,
        user_id: Optional[str] = None,
        grant_id: Optional[str] = None,
        decision: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AuditRecord]:
        with self._lock:
            records = list(self._records)
        matched = [
            r for r in records
            if (agent_id is None or r.agent_id == agent_id)
            and (user_id is None or r.user_id == user_id)
            and (grant_id is None or r.grant_id == grant_id)
            and (decision is None or r.decision == decision)
        ]
        if limit is not None:
            matched = matched[-limit:]
        return matched

    def find(self, *, agent_id=None, user_id=None, grant_id=None, limit=None) -> List[Dict[str, Any]]:
        records = self.query(agent_id=agent_id, user_id=user_id, grant_id=grant_id, limit=limit)
        return [record.to_dict() for record in records]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class JsonlAuditSink(AuditSink):
    """Appends one JSON object per record to a file."""

    def __init__(self, path: str):
        self.path = path
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._lock = threading.Lock()

    def emit(self, record: AuditRecord) -> None:
        line = json.dumps(record.to_dict(), default=str, sort_keys=True)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def read(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        with self._lock:
            with open(self.path, "r", encoding="utf-8") as handle:
                rows = [json.loads(line) for line in handle if line.strip()]
        return rows[-limit:] if limit else rows

    def find(self, *, agent_id=None, user_id=None, grant_id=None, limit=None) -> List[Dict[str, Any]]:
        rows = [
            row for row in self.read()
            if (agent_id is None or row.get("agent_id") == agent_id)
            and (user_id is None or row.get("user_id") == user_id)
            and (grant_id is None or row.get("grant_id") == grant_id)
        ]
        return rows[-limit:] if limit else rows


class AuditEmitter:
    """Queue plus worker thread in front of an :class:`AuditSink`.

    ``emit`` only enqueues. Records whose delivery fails ``max_attempts``
    times are parked in ``undelivered``. The worker retries parked records,
    oldest first, before every new record and on an idle timer whose
    interval doubles up to ``max_redelivery_interval`` while the sink stays down.
    ``close`` makes a final delivery pass and logs whatever is still parked.
    """

    def __init__(
        self,
        sink: AuditSink,
        *,
        max_attempts: int = 3,
        backoff: float = 0.05,
        redelivery_interval: float = 1.0,
        max_redelivery_interval: float = 30.0,
    ):
        self.sink = sink
        self.max_attempts = max(1, int(max_attempts))
        self.backoff = max(0.0, float(backoff))
        self.redelivery_interval = max(0.001, float(redelivery_interval))
        self.max_redelivery_interval = max(self.redelivery_interval, float(max_redelivery_interval))
        self._next_retry = self.redelivery_interval
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._undelivered: List[AuditRecord] = []
        self._delivered_grants: Set[str] = set()
        self._cond = threading.Condition()
        self._closed = False
        self._worker = threading.Thread(target=self._run, name="memgate-audit", daemon=True)
        self._worker.start()

    def emit(self, record: AuditRecord) -> None:
        if self._closed:
            logger.error("Audit emitter closed; delivering %s synchronously", record.decision)
            self._deliver(record)
            return
        self._queue.put_nowait(record)

    def _run(self) -> None:
        while True:
            with self._cond:
                timeout = self._next_retry if self._undelivered else None
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                self._retry_parked()
                continue
            try:
                if item is _STOP:
                    return
                self._retry_parked()
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _mark_delivered(self, record: AuditRecord) -> None:
        if record.grant_id:
            with self._cond:
                self._delivered_grants.add(record.grant_id)
                self._cond.notify_all()

    def _retry_parked(self) -> None:
        """One delivery attempt per parked record; stops at the first failure."""
        with self._cond:
            parked, self._undelivered = self._undelivered, []
        if not parked:
            return
        for index, record in enumerate(parked):
            try:
                self.sink.emit(record)
            except Exception as exc:
                remaining = parked[index:]
                with self._cond:
                    self._undelivered[:0] = remaining
                    self._next_retry = min(self.max_redelivery_interval, self._next_retry * 2)
                logger.warning(
                    "Audit sink still unavailable, %d record(s) parked; next retry in %.2fs: %s",
                    len(remaining), self._next_retry, exc,
                )
                return
            self._mark_delivered(record)
        with self._cond:
            self._next_retry = self.redelivery_interval
        logger.info("Delivered %d parked audit record(s)", len(parked))

    def _deliver(self, record: AuditRecord) -> bool:
        delay = self.backoff
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.sink.emit(record)
            except Exception as exc:
                logger.warning(
                    "Audit delivery failed (attempt %d/%d) for %s/%s: %s",
                    attempt, self.max_attempts, record.writer, record.decision, exc,
                )
                if attempt < self.max_attempts and delay:
                    time.sleep(delay)
                    delay *= 2
                continue
            self._mark_delivered(record)
            return True

        logger.error(
            "Audit record parked after %d attempts: writer=%s decision=%s subject=%s",
            self.max_attempts, record.writer, record.decision, record.subject,
        )
        metrics.record_audit_failure()
        with self._cond:
            self._undelivered.append(record)
        return False

    @property
    def undelivered(self) -> List[AuditRecord]:
        with self._cond:
            return list(self._undelivered)

    def redeliver(self) -> int:
        """Requeue parked records; returns how many were requeued."""
        with self._cond:
            parked, self._undelivered = self._undelivered, []
        for record in parked:
            self._queue.put_nowait(record)
        return len(parked)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until everything queued so far has been attempted."""
        if timeout is None:
            self._queue.join()
            return True
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.005)
        return True

    def wait_for_grant(self, grant_id: str, timeout: Optional[float] = None) -> bool:
        """Block until a record for *grant_id* has reached the sink."""
        with self._cond:
            return self._cond.wait_for(lambda: grant_id in self._delivered_grants, timeout=timeout)

    def close(self, timeout: float = 5.0) -> None:
        if self._closed:
            return
        self.redeliver()
        self._closed = True
        self._queue.put_nowait(_STOP)
        self._worker.join(timeout=timeout)
        lost = self.undelivered
        if lost:
            logger.error(
                "Audit emitter closed with %d undelivered record(s): %s",
                len(lost), [(r.writer, r.decision, r.subject) for r in lost],
            )


def create_sink(kind: str, path: Optional[str] = None) -> AuditSink:
    if kind == "memory":
        return InMemoryAuditLog()
    if kind == "jsonl":
        if not path:
            raise ValueError("jsonl audit sink requires a path")
        return JsonlAuditSink(path)
    raise ValueError(f"Unsupported audit sink: {kind}")
