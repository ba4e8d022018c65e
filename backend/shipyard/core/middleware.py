"""
Shipyard - HTTP Middleware
Request/Response logging, timing, and context management
"""

import time
from typing import Set

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from shipyard.core.logging_config import (
    logger,
    set_request_id,
    set_user_id,
    set_trace_id,
    generate_request_id,
)


# Paths that should skip detailed logging (health checks, docs)
SKIP_LOGGING_PATHS: Set[str] = {
    "/health",
    "/api/v1/health",
    "/",
    "/favicon.ico",
    "/docs",
    "/redoc",
    "/openapi.json",
}

# Paths answered with text/event-stream
STREAMING_PATHS: Set[str] = {
    "/api/v1/message",
}


def should_skip_logging(path: str) -> bool:
    """Check if path should skip detailed logging"""
    return path in SKIP_LOGGING_PATHS


def is_streaming_path(path: str) -> bool:
    """Check if path uses SSE/streaming responses"""
    return any(path.startswith(streaming_path) for streaming_path in STREAMING_PATHS)


class RequestLoggingMiddleware:
    """
    Pure ASGI middleware for request logging.

    - Honours an incoming X-Request-ID or generates one
    - Sets context variables for downstream logging
    - Adds X-Request-ID and X-Response-Time headers
    - Logs status and duration; for streams the duration covers headers only

    Written against raw ASGI instead of BaseHTTPMiddleware so streamed bodies
    and client disconnects reach the endpoint untouched.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        request_id = headers.get(b"x-request-id", b"").decode() or generate_request_id()
        set_request_id(request_id)
        scope.setdefault("state", {})["request_id"] = request_id

        path = scope.get("path", "")
        method = scope.get("method", "")
        skip_logging = should_skip_logging(path)
        is_streaming = is_streaming_path(path)
        start_time = time.perf_counter()

        if not skip_logging:
            client = scope.get("client")
            logger.info(
                f"→ {method} {path}",
                extra={
                    "event_type": "http_request_start",
                    "http_method": method,
                    "http_path": path,
                    "client_ip": client[0] if client else "unknown",
                }
            )

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                duration_ms = (time.perf_counter() - start_time) * 1000
                response_headers = MutableHeaders(scope=message)
                response_headers["X-Request-ID"] = request_id
                response_headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

                if not skip_logging:
                    status_code = message["status"]
                    if status_code >= 500:
                        log_func = logger.error
                    elif status_code >= 400:
                        log_func = logger.warning
                    else:
                        log_func = logger.info
                    log_func(
                        f"← {method} {path} - {status_code} ({duration_ms:.2f}ms)",
                        extra={
                            "event_type": "http_request_complete",
                            "http_method": method,
                            "http_path": path,
                            "http_status": status_code,
                            "duration_ms": duration_ms,
                            "is_streaming": is_streaming,
                        }
                    )
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                f"✗ {method} {path} - Exception ({duration_ms:.2f}ms): {type(exc).__name__}",
                exc_info=True,
                extra={
                    "event_type": "http_request_error",
                    "http_method": method,
                    "http_path": path,
                    "duration_ms": duration_ms,
                    "error_type": type(exc).__name__,
                }
            )
            raise
        finally:
            set_request_id("")
            set_user_id("")
            set_trace_id("")


__all__ = [
    "RequestLoggingMiddleware",
    "should_skip_logging",
    "is_streaming_path",
    "SKIP_LOGGING_PATHS",
    "STREAMING_PATHS",
]
