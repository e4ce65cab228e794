from __future__ import annotations

import logging
import os
import time
import uuid
from collections import defaultdict, deque
from datetime import datetime
from threading import Lock
from typing import Callable, Deque

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import TimeoutError as SATimeoutError
from starlette.responses import Response

from backoffice.core.errors import BackofficeError, DependencyError

_APP_START_MONOTONIC = time.monotonic()

_LATENCY_WINDOW = int(os.getenv("LATENCY_METRICS_WINDOW", "200"))
_LATENCY_LOG_EVERY = int(os.getenv("LATENCY_METRICS_LOG_EVERY", "50"))
_LATENCY_LOCK = Lock()
_LATENCY_BUCKETS: dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=_LATENCY_WINDOW))

_SLOW_REQUEST_MS = int(os.getenv("SLOW_REQUEST_MS", "2000"))

# Decision endpoints whose latency percentiles are logged.
_CRITICAL_ENDPOINTS: list[tuple[str, str, str]] = [
    ("POST", "/deals", "deals.create"),
    ("POST", "/screen", "deals.screen"),
    ("POST", "/resolve", "compliance.resolve"),
    ("POST", "/funding/structure", "funding.structure"),
    ("POST", "/verify", "instruments.verify"),
    ("POST", "/funding/settlement", "settlement.build"),
]


def _logger_for(request: Request) -> logging.Logger:
    return getattr(request.app.state, "logger", None) or logging.getLogger("backoffice")


def _critical_label_for(method: str, path: str) -> str | None:
    for m, suffix, label in _CRITICAL_ENDPOINTS:
        if method == m and path.endswith(suffix):
            return label
    return None


def _pool_status() -> str | None:
    try:
        from backoffice.database import engine

        return engine.pool.status()
    except Exception:
        return None


def _percentile(values: list[float], pct: float) -> float:
    if not values:
        return 0.0
    s = sorted(values)
    k = int(round((pct / 100.0) * (len(s) - 1)))
    k = max(0, min(k, len(s) - 1))
    return float(s[k])


def _record_latency(label: str | None, duration_ms: float, logger: logging.Logger | None = None) -> None:
    if not label:
        return
    with _LATENCY_LOCK:
        bucket = _LATENCY_BUCKETS[label]
        bucket.append(float(duration_ms))
        if len(bucket) < _LATENCY_LOG_EVERY:
            return
        if len(bucket) % _LATENCY_LOG_EVERY != 0:
            return
        values = list(bucket)
    if logger:
        logger.info(
            "http_latency",
            extra={
                "endpoint": label,
                "p50_ms": round(_percentile(values, 50), 2),
                "p95_ms": round(_percentile(values, 95), 2),
                "p99_ms": round(_percentile(values, 99), 2),
                "window": len(values),
            },
        )


def uptime_seconds() -> float:
    return max(0.0, time.monotonic() - _APP_START_MONOTONIC)


def utc_now_iso() -> str:
    return datetime.utcnow().isoformat(timespec="seconds") + "Z"


def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id") or str(uuid.uuid4())


async def backoffice_exception_handler(request: Request, exc: BackofficeError) -> JSONResponse:
    """Translate domain errors into ``{"detail": {"code", "message", ...}}`` responses."""

    request_id = _request_id(request)
    extra = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "status_code": exc.status_code,
        "code": exc.code,
    }
    logger = _logger_for(request)
    if isinstance(exc, DependencyError):
        logger.error("dependency_unavailable", extra=extra)
    else:
        logger.info("request_rejected", extra=extra)

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.to_detail()},
        headers={"X-Request-ID": request_id},
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler that returns a structured error response.

    This handler catches all unhandled exceptions and returns a clean
    JSON response without exposing internal details to the client.
    """
    request_id = _request_id(request)

    extra = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "exception_type": type(exc).__name__,
    }

    headers = {"X-Request-ID": request_id}

    _logger_for(request).exception("unhandled_exception", extra=extra)

    # Attach CORS headers when the request Origin is allowed.
    # Browsers otherwise turn real 500s into opaque CORS errors.
    origin = request.headers.get("origin")
    if origin:
        from backoffice.config import settings

        allowed = set(settings.cors_origins or [])
        if origin in allowed or "*" in allowed:
            headers.update(
                {
                    "Access-Control-Allow-Origin": origin,
                    "Access-Control-Allow-Credentials": "true",
                    "Vary": "Origin",
                }
            )

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error. Please retry later.",
            "request_id": request_id,
            "code": "INTERNAL_SERVER_ERROR",
        },
        headers=headers,
    )


async def request_logging_middleware(request: Request, call_next: Callable) -> Response:
    """Request-level logging middleware.

    Adds/propagates X-Request-ID and measures request duration.
    Does not log request/response bodies.
    """

    request_id = _request_id(request)
    request.state.request_id = request_id
    logger = _logger_for(request)

    start = time.perf_counter()
    label = _critical_label_for(request.method, request.url.path)

    try:
        response: Response = await call_next(request)
    except SATimeoutError as exc:
        duration_ms = (time.perf_counter() - start) * 1000.0
        _record_latency(label, duration_ms, logger)
        logger.error(
            "db_pool_timeout",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "duration_ms": round(duration_ms, 2),
                "pool_status": _pool_status(),
                "error": str(exc),
            },
        )
        raise
    except Exception:
        duration_ms = (time.perf_counter() - start) * 1000.0
        _record_latency(label, duration_ms, logger)
        extra = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "duration_ms": round(duration_ms, 2),
        }
        # uvicorn.error too, so tracebacks survive uvicorn's logging config.
        try:
            logger.exception("http_request_failed", extra=extra)
        finally:
            logging.getLogger("uvicorn.error").exception("http_request_failed", extra=extra)
        raise

    duration_ms = (time.perf_counter() - start) * 1000.0
    _record_latency(label, duration_ms, logger)

    if duration_ms >= _SLOW_REQUEST_MS:
        logger.info(
            "slow_request",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "duration_ms": round(duration_ms, 2),
                "pool_status": _pool_status(),
            },
        )

    # Avoid noisy logging for liveness endpoints.
    if not request.url.path.endswith(("/health", "/healthz")):
        logger.info(
            "http_request",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "endpoint": label,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )

    response.headers.setdefault("X-Request-ID", request_id)
    return response
