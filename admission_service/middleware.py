"""
Correlation ID middleware for the job admission limiter.

Every HTTP request gets a correlation ID that is bound into the structlog
context, stored on ``request.state.correlation_id`` for the error
envelope, and returned in the ``X-Correlation-ID`` response header.

A caller may supply its own ID in ``X-Correlation-ID``: producers
submitting jobs and the backend's control plane delivering lifecycle
notifications can then follow one job across both services.  Anything
that does not parse as a UUID is replaced with a fresh UUID v4, so the
header can never be used to inject arbitrary text into the logs.

Routes add their own request-scoped fields (the job ``uuid`` on the
admission and notification routes), so the ``http_request_completed``
record of a job request identifies the job.  Requests from health checks
and metrics scrapers are logged at DEBUG since they arrive every few
seconds.

The middleware is pure ASGI, not ``BaseHTTPMiddleware``, and is also the
catch-all for unhandled exceptions (JSON HTTP 500).  ``BaseHTTPMiddleware``
wraps such exceptions in an ``ExceptionGroup`` and Starlette's
``ServerErrorMiddleware`` re-raises after responding, so neither could
contain the error here.
"""

import json
import time
import uuid

import starlette.types
import structlog
import structlog.contextvars

logger = structlog.get_logger()

CORRELATION_ID_HEADER = b"x-correlation-id"

_POLLING_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


def _correlation_id_from_headers(headers: list[tuple[bytes, bytes]]) -> str:
    """Reuse a caller-supplied UUID correlation ID, or create a new one."""
    for header_name, header_value in headers:
        if header_name.lower() != CORRELATION_ID_HEADER:
            continue
        try:
            return str(uuid.UUID(header_value.decode("latin-1")))
        except ValueError:
            break
    return str(uuid.uuid4())


class CorrelationIdMiddleware:
    def __init__(self, app: starlette.types.ASGIApp) -> None:
        self.app = app

    async def __call__(
        self,
        scope: starlette.types.Scope,
        receive: starlette.types.Receive,
        send: starlette.types.Send,
    ) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        correlation_id = _correlation_id_from_headers(scope.get("headers", []))
        method = scope.get("method", "")
        path = scope.get("path", "")
        log_request = logger.debug if path in _POLLING_PATHS else logger.info
        start_time = time.monotonic()
        response_status = 0

        scope.setdefault("state", {})["correlation_id"] = correlation_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        log_request("http_request_received", method=method, path=path)

        async def send_with_correlation_id(message: starlette.types.Message) -> None:
            nonlocal response_status
            if message["type"] == "http.response.start":
                response_status = message.get("status", 0)
                message["headers"] = [
                    *message.get("headers", []),
                    (CORRELATION_ID_HEADER, correlation_id.encode()),
                ]
            await send(message)

        try:
            await self.app(scope, receive, send_with_correlation_id)
        except Exception:
            response_status = 500
            logger.exception("unexpected_exception", method=method, path=path)
            await send(
                {
                    "type": "http.response.start",
                    "status": 500,
                    "headers": [
                        (b"content-type", b"application/json"),
                        (CORRELATION_ID_HEADER, correlation_id.encode()),
                    ],
                }
            )
            await send(
                {
                    "type": "http.response.body",
                    "body": json.dumps(
                        {
                            "error": {
                                "code": "internal_server_error",
                                "message": "An unexpected internal error occurred.",
                                "correlation_id": correlation_id,
                            }
                        }
                    ).encode(),
                }
            )
        finally:
            log_request(
                "http_request_completed",
                method=method,
                path=path,
                status=response_status,
                duration_milliseconds=round((time.monotonic() - start_time) * 1000, 1),
            )
