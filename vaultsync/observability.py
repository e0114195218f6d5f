"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request / restoration-run IDs
- Request context middleware for the HTTP adapter
- Sync metrics (sync counts and latency, restoration outcomes)
- Health check utilities

Configuration:
- VAULTSYNC_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- VAULTSYNC_LOG_FORMAT: json, text (default: json in production)
- VAULTSYNC_PRODUCTION: Enable production mode

Usage:
    from vaultsync.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Property synced", domain_id="P1", tx_hash=tx_hash)
"""

import json
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .serialization import prepare_for_logging

if TYPE_CHECKING:
    from .core.service import SyncService

# Context variables for correlating log lines
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
run_id_var: ContextVar[str] = ContextVar("run_id", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("VAULTSYNC_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("VAULTSYNC_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("VAULTSYNC_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_STANDARD_RECORD_FIELDS = frozenset((
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
))


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000000+00:00",
        "level": "INFO",
        "logger": "vaultsync.core.restoration",
        "message": "Entity restored",
        "request_id": "abc-123",
        "run_id": "9f1c2e04",
        "domain_id": "P1",
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        run_id = run_id_var.get()
        if run_id:
            log_data["run_id"] = run_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _STANDARD_RECORD_FIELDS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = prepare_for_logging(value)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        run_id = run_id_var.get()
        request_id = request_id_var.get()
        if run_id:
            prefix = f"[run {run_id[:8]}] "
        elif request_id:
            prefix = f"[{request_id[:8]}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        extras = {
            k: v for k, v in record.__dict__.items()
            if k not in _STANDARD_RECORD_FIELDS and not k.startswith("_")
        }
        suffix = ""
        if extras:
            suffix = " " + " ".join(f"{k}={v}" for k, v in extras.items())

        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}{suffix}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that accepts context fields as keyword arguments.

    Usage:
        logger = get_logger(__name__)
        logger.warning("No wallet on file", domain_id="P1", owner="alice@x.com")
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.get("extra") or {})

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Get a structured logger for the given name.

    Args:
        name: Logger name (typically __name__)
    """
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Configure logging for the application.

    Call this once at startup (app factory or CLI entry point).
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_get_log_level())

    if _use_json_logging():
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("pymongo").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Sets a request ID for every HTTP call and logs the call with timing.

    Honors an inbound X-Request-ID header so the caller that submitted the
    ledger transaction can correlate its logs with ours.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        token = request_id_var.set(request_id)

        logger = get_logger("vaultsync.request")
        start_time = time.perf_counter()

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
            raise

        finally:
            request_id_var.reset(token)


# ============================================================
# METRICS
# ============================================================

def _percentile(data: list, p: float) -> Optional[float]:
    if not data:
        return None
    sorted_data = sorted(data)
    idx = int(len(sorted_data) * p)
    return sorted_data[min(idx, len(sorted_data) - 1)]


@dataclass
class SyncMetrics:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    property_syncs: int = 0
    property_sync_failures: int = 0
    document_syncs: int = 0
    document_sync_failures: int = 0
    restoration_runs: int = 0
    restoration_entities: int = 0
    restoration_errors: int = 0

    # Histograms (simplified as bounded lists)
    sync_latencies_ms: list = field(default_factory=list)
    restoration_durations_ms: list = field(default_factory=list)

    MAX_SAMPLES = 1000

    def _sample(self, samples: list, value: float) -> None:
        samples.append(value)
        if len(samples) > self.MAX_SAMPLES:
            del samples[: len(samples) - self.MAX_SAMPLES]

    def record_property_sync(self, latency_ms: float, success: bool) -> None:
        self.property_syncs += 1
        if not success:
            self.property_sync_failures += 1
        self._sample(self.sync_latencies_ms, latency_ms)

    def record_document_sync(self, latency_ms: float, success: bool) -> None:
        self.document_syncs += 1
        if not success:
            self.document_sync_failures += 1
        self._sample(self.sync_latencies_ms, latency_ms)

    def record_restoration(self, entities: int, errors: int, duration_ms: float) -> None:
        self.restoration_runs += 1
        self.restoration_entities += entities
        self.restoration_errors += errors
        self._sample(self.restoration_durations_ms, duration_ms)

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        return {
            "property_syncs": self.property_syncs,
            "property_sync_failures": self.property_sync_failures,
            "document_syncs": self.document_syncs,
            "document_sync_failures": self.document_sync_failures,
            "restoration_runs": self.restoration_runs,
            "restoration_entities": self.restoration_entities,
            "restoration_errors": self.restoration_errors,
            "sync_latency_p50_ms": _percentile(self.sync_latencies_ms, 0.5),
            "sync_latency_p95_ms": _percentile(self.sync_latencies_ms, 0.95),
            "restoration_duration_p50_ms": _percentile(self.restoration_durations_ms, 0.5),
        }


# Process-wide collector; metrics are observational and carry no sync state
_metrics = SyncMetrics()


def get_metrics() -> SyncMetrics:
    """Get the process-wide metrics collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "checks": self.checks,
            "duration_ms": self.duration_ms,
        }


def check_health(service: Optional["SyncService"] = None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        service: SyncService whose store and ledger should be probed
    """
    start = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}
    all_healthy = True

    if service is not None:
        try:
            checks["store"] = {
                "status": "healthy",
                "entity_count": service.store.count(),
                "store_type": type(service.store).__name__,
            }
        except Exception as e:
            checks["store"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

        try:
            checks["ledger"] = {
                "status": "healthy",
                "signer": service.ledger.default_account(),
            }
        except Exception as e:
            checks["ledger"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
