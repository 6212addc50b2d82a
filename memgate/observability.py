"""memgate Observability Module.

Provides structured logging and metrics for resolutions, grant decisions
and audit delivery.

Usage:
    from memgate.observability import metrics, logger

    logger.info("Grant issued", grant_id="g1", agent_id="travel-agent")
    with metrics.measure("resolve"):
        ...
    print(metrics.get_summary())
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================================
# Structured Logger
# ============================================================================

class StructuredLogger:
    """JSON-structured logger for memgate operations."""

    def __init__(self, name: str = "memgate", level: int = logging.INFO):
        self._logger = logging.getLogger(name)
        self._logger.setLevel(level)
        self._context: Dict[str, Any] = {}

        if not self._logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(StructuredFormatter())
            self._logger.addHandler(handler)

    def with_context(self, **kwargs) -> "StructuredLogger":
        """Create a new logger with additional context."""
        new_logger = StructuredLogger.__new__(StructuredLogger)
        new_logger._logger = self._logger
        new_logger._context = {**self._context, **kwargs}
        return new_logger

    def _log(self, level: int, message: str, **kwargs):
        extra = {
            "structured_data": {
                **self._context,
                **kwargs,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        }
        self._logger.log(level, message, extra=extra)

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)


class StructuredFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        if hasattr(record, "structured_data"):
            log_data.update(record.structured_data)
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


# ============================================================================
# Metrics Collector
# ============================================================================

@dataclass
class OperationMetrics:
    """Metrics for a single operation type."""
    count: int = 0
    total_latency_ms: float = 0.0
    min_latency_ms: float = float("inf")
    max_latency_ms: float = 0.0
    errors: int = 0
    last_operation: Optional[str] = None

    def record(self, latency_ms: float, error: bool = False):
        self.count += 1
        self.total_latency_ms += latency_ms
        self.min_latency_ms = min(self.min_latency_ms, latency_ms)
        self.max_latency_ms = max(self.max_latency_ms, latency_ms)
        if error:
            self.errors += 1
        self.last_operation = datetime.now(timezone.utc).isoformat()

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.count if self.count > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "min_latency_ms": round(self.min_latency_ms, 2) if self.count > 0 else 0,
            "max_latency_ms": round(self.max_latency_ms, 2),
            "errors": self.errors,
            "error_rate": round(self.errors / self.count, 4) if self.count > 0 else 0,
            "last_operation": self.last_operation,
        }


@dataclass
class GatewayMetrics:
    total_fields_resolved: int = 0
    total_needs_confirmation: int = 0
    total_no_candidate: int = 0
    total_filtered: int = 0
    total_granted: int = 0
    total_pending: int = 0
    total_denied: int = 0
    total_revoked: int = 0
    total_audit_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class MetricsCollector:
    """Collects and exposes memgate metrics."""

    def __init__(self):
        self._lock = threading.Lock()
        self._operations: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self._stage_hits: Dict[str, int] = defaultdict(int)
        self._gateway = GatewayMetrics()
        self._start_time = datetime.now(timezone.utc)

    def record_operation(self, operation: str, latency_ms: float, error: bool = False):
        with self._lock:
            self._operations[operation].record(latency_ms, error)

    def record_match(self, stage: Optional[str], needs_confirmation: bool = False):
        with self._lock:
            self._gateway.total_fields_resolved += 1
            if stage:
                self._stage_hits[stage] += 1
            if needs_confirmation:
                self._gateway.total_needs_confirmation += 1

    def record_no_candidate(self, count: int = 1):
        with self._lock:
            self._gateway.total_no_candidate += max(0, int(count))

    def record_filtered(self, count: int = 1):
        with self._lock:
            self._gateway.total_filtered += max(0, int(count))

    def record_decision(self, status: str):
        status = (status or "").lower()
        with self._lock:
            if status == "granted":
                self._gateway.total_granted += 1
            elif status == "pending":
                self._gateway.total_pending += 1
            else:
                self._gateway.total_denied += 1

    def record_revocation(self, count: int = 1):
        with self._lock:
            self._gateway.total_revoked += max(0, int(count))

    def record_audit_failure(self, count: int = 1):
        with self._lock:
            self._gateway.total_audit_failures += max(0, int(count))

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
            return {
                "uptime_seconds": round(uptime, 2),
                "operations": {op: m.to_dict() for op, m in self._operations.items()},
                "match_stages": dict(self._stage_hits),
                "gateway": self._gateway.to_dict(),
            }

    def get_prometheus_metrics(self) -> str:
        """Export metrics in Prometheus format."""
        lines = []
        summary = self.get_summary()

        for op, data in summary["operations"].items():
            lines.append(f'memgate_operation_count{{operation="{op}"}} {data["count"]}')
            lines.append(f'memgate_operation_latency_avg_ms{{operation="{op}"}} {data["avg_latency_ms"]}')
            lines.append(f'memgate_operation_errors{{operation="{op}"}} {data["errors"]}')

        for stage, hits in summary["match_stages"].items():
            lines.append(f'memgate_match_stage_total{{stage="{stage}"}} {hits}')

        for name, value in summary["gateway"].items():
            lines.append(f"memgate_{name} {value}")

        lines.append(f'memgate_uptime_seconds {summary["uptime_seconds"]}')
        return "\n".join(lines)

    def reset(self) -> None:
        with self._lock:
            self._operations.clear()
            self._stage_hits.clear()
            self._gateway = GatewayMetrics()

    @contextmanager
    def measure(self, operation: str):
        """Context manager to measure operation latency.

        Usage:
            with metrics.measure("resolve"):
                result = gateway.resolve(...)
        """
        start = time.perf_counter()
        error = False
        try:
            yield
        except Exception:
            error = True
            raise
        finally:
            latency_ms = (time.perf_counter() - start) * 1000
            self.record_operation(operation, latency_ms, error=error)


# ============================================================================
# Global Instances
# ============================================================================

logger = StructuredLogger("memgate")

metrics = MetricsCollector()


# ============================================================================
# API Endpoints (for FastAPI integration)
# ============================================================================

def add_metrics_routes(app):
    """Add ``/metrics`` and ``/metrics/json`` to a FastAPI app."""
    from fastapi import Response

    @app.get("/metrics")
    async def prometheus_metrics():
        """Prometheus-compatible metrics endpoint."""
        return Response(
            content=metrics.get_prometheus_metrics(),
            media_type="text/plain"
        )

    @app.get("/metrics/json")
    async def json_metrics():
        """JSON metrics endpoint."""
        return metrics.get_summary()
