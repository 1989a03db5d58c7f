"""
Centralised error-handling registration for the FastAPI application.

Every exception type that can be raised while serving a request is mapped
to an HTTP status code and the ``ErrorResponse`` JSON envelope:

    - Invalid JSON                        →  400 Bad Request
    - Request validation failure          →  400 Bad Request
    - Undefined endpoint                  →  404 Not Found
    - Wrong HTTP method                   →  405 Method Not Allowed
    - Downstream job launch failure       →  502 Bad Gateway
    - Event source not synced             →  503 Service Unavailable
    - Lifecycle event queue full          →  503 Service Unavailable
    - Unexpected internal errors          →  500 Internal Server Error

The 500 catch-all lives in ``CorrelationIdMiddleware``.
"""

import fastapi
import fastapi.exceptions
import fastapi.responses
import fastapi.routing
import starlette.exceptions
import starlette.routing
import structlog

import admission_service.exceptions
import admission_service.models

logger = structlog.get_logger()

_HTTP_STATUS_CODE_TO_ERROR_CODE: dict[int, str] = {
    404: "not_found",
    405: "method_not_allowed",
}

_HTTP_STATUS_CODE_TO_ERROR_MESSAGE: dict[int, str] = {
    404: "The requested endpoint does not exist.",
    405: "The HTTP method is not allowed for this endpoint.",
}


def _get_correlation_id(request: fastapi.Request) -> str:
    return getattr(request.state, "correlation_id", "unknown")


def _discover_allowed_methods_for_path(
    fastapi_application: fastapi.FastAPI,
    request_path: str,
) -> str:
    """
    Collect the HTTP methods registered for ``request_path``.

    HEAD is added wherever GET is present, matching Starlette's routing.
    """
    allowed_methods: set[str] = set()

    for route in fastapi_application.routes:
        if (
            isinstance(route, (fastapi.routing.APIRoute, starlette.routing.Route))
            and route.path == request_path
            and route.methods
        ):
            allowed_methods.update(route.methods)

    if "GET" in allowed_methods:
        allowed_methods.add("HEAD")

    return ", ".join(sorted(allowed_methods))


def _build_error_response(
    status_code: int,
    code: str,
    message: str,
    correlation_id: str,
    details: list | None = None,
    headers: dict[str, str] | None = None,
) -> fastapi.responses.JSONResponse:
    """
    Build a JSON error response.  ``details`` is omitted from the body
    entirely when not supplied.
    """
    error_detail_keyword_arguments: dict = {
        "code": code,
        "message": message,
        "correlation_id": correlation_id,
    }
    if details is not None:
        error_detail_keyword_arguments["details"] = details

    error_response = admission_service.models.ErrorResponse(
        error=admission_service.models.ErrorDetail(**error_detail_keyword_arguments),
    )

    return fastapi.responses.JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(exclude_unset=True),
        headers=headers,
    )


def register_error_handlers(fastapi_application: fastapi.FastAPI) -> None:
    """Register all custom exception handlers on ``fastapi_application``."""

    @fastapi_application.exception_handler(
        fastapi.exceptions.RequestValidationError,
    )
    async def handle_request_validation_error(
        request: fastapi.Request,
        validation_error: fastapi.exceptions.RequestValidationError,
    ) -> fastapi.responses.JSONResponse:
        """
        Return 400 Bad Request for invalid request bodies, distinguishing
        unparsable JSON (``invalid_request_json``) from schema violations
        (``request_validation_failed``).
        """
        errors = validation_error.errors()
        logger.warning("http_validation_failed", errors=errors)

        if any(error.get("type", "").startswith("json") for error in errors):
            return _build_error_response(
                status_code=400,
                code="invalid_request_json",
                message="The request body contains invalid JSON.",
                correlation_id=_get_correlation_id(request),
            )

        # Only location, message and type are exposed; raw pydantic errors
        # carry the offending input values.
        sanitised_validation_error_details = [
            {
                "loc": error.get("loc", []),
                "msg": error.get("msg", ""),
                "type": error.get("type", ""),
            }
            for error in errors
        ]

        return _build_error_response(
            status_code=400,
            code="request_validation_failed",
            message="Request body failed schema validation.",
            correlation_id=_get_correlation_id(request),
            details=sanitised_validation_error_details,
        )

    @fastapi_application.exception_handler(
        admission_service.exceptions.JobLaunchError,
    )
    async def handle_job_launch_error(
        request: fastapi.Request,
        launch_error: admission_service.exceptions.JobLaunchError,
    ) -> fastapi.responses.JSONResponse:
        logger.error("job_launch_failed", detail=launch_error.detail)
        return _build_error_response(
            502,
            "job_launch_failed",
            launch_error.detail,
            _get_correlation_id(request),
        )

    @fastapi_application.exception_handler(
        admission_service.exceptions.EventSourceSyncError,
    )
    async def handle_event_source_not_synced(
        request: fastapi.Request,
        sync_error: admission_service.exceptions.EventSourceSyncError,
    ) -> fastapi.responses.JSONResponse:
        retry_after_not_ready_seconds = getattr(request.app.state, "retry_after_not_ready_seconds", 10)
        return _build_error_response(
            503,
            "service_not_ready",
            sync_error.detail,
            _get_correlation_id(request),
            headers={"Retry-After": str(retry_after_not_ready_seconds)},
        )

    @fastapi_application.exception_handler(
        admission_service.exceptions.EventQueueFullError,
    )
    async def handle_event_queue_full(
        request: fastapi.Request,
        queue_full_error: admission_service.exceptions.EventQueueFullError,
    ) -> fastapi.responses.JSONResponse:
        retry_after_busy_seconds = getattr(request.app.state, "retry_after_busy_seconds", 1)
        return _build_error_response(
            503,
            "event_queue_full",
            queue_full_error.detail,
            _get_correlation_id(request),
            headers={"Retry-After": str(retry_after_busy_seconds)},
        )

    @fastapi_application.exception_handler(
        starlette.exceptions.HTTPException,
    )
    async def handle_framework_http_exception(
        request: fastapi.Request,
        http_exception: starlette.exceptions.HTTPException,
    ) -> fastapi.responses.JSONResponse:
        """
        Return structured JSON for framework-raised errors (404, 405).

        405 responses carry an ``Allow`` header built from the registered
        routes.
        """
        status_code = http_exception.status_code
        if status_code == 404:
            logger.warning("http_not_found", path=request.url.path)
        elif status_code == 405:
            logger.warning("http_method_not_allowed", path=request.url.path, method=request.method)

        headers: dict[str, str] | None = None
        if status_code == 405:
            headers = {
                "Allow": _discover_allowed_methods_for_path(request.app, request.url.path),
            }

        return _build_error_response(
            status_code,
            _HTTP_STATUS_CODE_TO_ERROR_CODE.get(status_code, "unexpected_error"),
            _HTTP_STATUS_CODE_TO_ERROR_MESSAGE.get(status_code, str(http_exception.detail)),
            _get_correlation_id(request),
            headers=headers,
        )
