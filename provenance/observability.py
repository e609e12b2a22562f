"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request and principal IDs
- Request/response logging middleware
- Metrics collection (commit latency, event counts, conflicts)
- Health check utilities

Configuration:
- PROVENANCE_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- PROVENANCE_LOG_FORMAT: json, text (default: json in production)
- PROVENANCE_PRODUCTION: Enable production mode

Usage:
    from provenance.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Product registered", product_id=product_id)
"""

import json
import logging
import os
import sys
import threading
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
principal_id_var: ContextVar[str] = ContextVar("principal_id", default="")

PRINCIPAL_HEADER = "X-Principal"


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("PROVENANCE_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("PROVENANCE_LOG_LEVEL", "INFO").upper()
    return logging.getLevelName(level_str) if level_str in (
        "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"
    ) else logging.INFO


def _use_json_logging() -> bool:
    format_str = os.environ.get("PROVENANCE_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# LOG FORMATTERS
# ============================================================

# Attributes every LogRecord has; anything else came in through `extra`
_STANDARD_RECORD_FIELDS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


def _request_context() -> Dict[str, str]:
    """The request and principal ids bound to the current context, if any."""
    context = {}
    if request_id_var.get():
        context["request_id"] = request_id_var.get()
    if principal_id_var.get():
        context["principal_id"] = principal_id_var.get()
    return context


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"timestamp": "...", "level": "INFO", "logger": "provenance.core.ledger",
         "message": "Ownership transferred", "request_id": "1f2e3d4c",
         "principal_id": "shop", "product_id": "P-1", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_request_context())
        entry.update(
            (key, _jsonable(value))
            for key, value in vars(record).items()
            if key not in _STANDARD_RECORD_FIELDS and not key.startswith("_")
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class TextFormatter(logging.Formatter):
    """Single-line output for local development."""

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        rid = request_id_var.get()
        tag = f"[{rid[:8]}] " if rid else ""
        line = f"{when} {record.levelname:<8} {tag}{record.name}: {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that moves keyword arguments into structured extra fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Claim processed", product_id="P-1", claim_id=0)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.get("extra") or {})

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """Get a structured logger for the given name (typically __name__)."""
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Configure logging for the application.

    Call this once at application startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_get_log_level())
    handler.setFormatter(StructuredFormatter() if _use_json_logging() else TextFormatter())
    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that sets up request context for logging.

    - Generates a request ID (or reuses X-Request-ID)
    - Records the calling principal from the X-Principal header
    - Logs request/response with timing and feeds request metrics
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_token = request_id_var.set(request_id)
        principal_token = principal_id_var.set(request.headers.get(PRINCIPAL_HEADER, ""))

        logger = get_logger("provenance.request")
        start_time = time.perf_counter()

        logger.debug(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            log_level = logging.INFO if response.status_code < 400 else logging.WARNING
            logger.log(
                log_level,
                f"{request.method} {request.url.path} -> {response.status_code}",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            get_metrics().record_request(duration_ms, success=response.status_code < 500)

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.exception(
                f"{request.method} {request.url.path} -> 500",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e),
            )
            get_metrics().record_request(duration_ms, success=False)
            raise

        finally:
            request_id_var.reset(request_id_token)
            principal_id_var.reset(principal_token)


# ============================================================
# METRICS
# ============================================================

_MAX_SAMPLES = 1000


@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    commits: int = 0
    events_committed: int = 0
    conflicts_retried: int = 0
    conflicts_exhausted: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    # Histograms (simplified as lists)
    commit_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_commit(self, latency_ms: float, event_count: int) -> None:
        with self._lock:
            self.commits += 1
            self.events_committed += event_count
            self.commit_latencies_ms.append(latency_ms)
            del self.commit_latencies_ms[:-_MAX_SAMPLES]

    def record_conflict(self, exhausted: bool) -> None:
        with self._lock:
            if exhausted:
                self.conflicts_exhausted += 1
            else:
                self.conflicts_retried += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self.request_latencies_ms.append(latency_ms)
            del self.request_latencies_ms[:-_MAX_SAMPLES]

    def reset(self) -> None:
        with self._lock:
            self.commits = self.events_committed = 0
            self.conflicts_retried = self.conflicts_exhausted = 0
            self.requests_total = self.requests_failed = 0
            self.commit_latencies_ms.clear()
            self.request_latencies_ms.clear()

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return round(sorted_data[min(idx, len(sorted_data) - 1)], 3)

        with self._lock:
            return {
                "commits": self.commits,
                "events_committed": self.events_committed,
                "conflicts_retried": self.conflicts_retried,
                "conflicts_exhausted": self.conflicts_exhausted,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "commit_latency_p50_ms": percentile(self.commit_latencies_ms, 0.5),
                "commit_latency_p95_ms": percentile(self.commit_latencies_ms, 0.95),
                "request_latency_p50_ms": percentile(self.request_latencies_ms, 0.5),
                "request_latency_p95_ms": percentile(self.request_latencies_ms, 0.95),
            }


# Global metrics instance
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Outcome of check_health: overall flag plus one entry per check."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def _store_check(store) -> Dict[str, Any]:
    head = store.get_head()
    return {
        "status": "healthy",
        "event_count": head.next_sequence,
        "last_hash": f"{head.last_event_hash[:16]}..." if head.last_event_hash else None,
    }


def _chain_check(service) -> Dict[str, Any]:
    valid = service.verify_chain_integrity()
    return {"status": "healthy" if valid else "unhealthy", "valid": valid}


def check_health(service=None, store=None, verify_chain: bool = False) -> HealthStatus:
    """
    Run health checks.

    Args:
        service: ProvenanceService instance (used for chain verification)
        store: StateStore instance
        verify_chain: Re-hash the whole audit log (expensive)
    """
    started = time.perf_counter()
    probes = {}
    if store is not None:
        probes["state_store"] = lambda: _store_check(store)
    if verify_chain and service is not None:
        probes["chain_integrity"] = lambda: _chain_check(service)

    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}
    for name, probe in probes.items():
        try:
            checks[name] = probe()
        except Exception as e:
            checks[name] = {"status": "unhealthy", "error": str(e)}

    return HealthStatus(
        healthy=all(check["status"] == "healthy" for check in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
