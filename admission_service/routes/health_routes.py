"""
Route definitions for health, readiness, and metrics endpoints.

- ``GET /health`` — liveness check; HTTP 200 while the process can still
  become ready, HTTP 503 once the replay of existing backend jobs failed.
- ``GET /health/ready`` — readiness check; HTTP 200 once the lifecycle
  event source has replayed existing backend jobs and the job backend is
  reachable, otherwise HTTP 503 with a ``Retry-After`` header.
- ``GET /metrics`` — admission metrics and the limiter's live status.

All three responses carry ``Cache-Control: no-store, no-cache`` and
``Pragma: no-cache``: their values change on every poll.
"""

import typing

import fastapi
import fastapi.responses

import admission_service.admission_control
import admission_service.dependencies

health_router = fastapi.APIRouter(tags=["Health"])

_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS: dict[str, str] = {
    "Cache-Control": "no-store, no-cache",
    "Pragma": "no-cache",
}


@health_router.get(
    "/health",
    summary="Liveness check",
    status_code=200,
    responses={
        200: {
            "description": "The service process is running.",
            "content": {"application/json": {"example": {"status": "healthy"}}},
        },
        503: {
            "description": (
                "The replay of existing backend jobs failed. The limiter "
                "will never admit jobs and the process should be restarted."
            ),
            "content": {"application/json": {"example": {"status": "unhealthy"}}},
        },
    },
)
async def health_check(request: fastapi.Request) -> fastapi.responses.JSONResponse:
    """
    Report whether the process is alive and able to become ready.

    Backend connectivity is left to the readiness endpoint.  The only
    failure reported here is a failed replay, which no amount of waiting
    repairs.
    """
    event_source = getattr(request.app.state, "event_source", None)
    sync_failure = getattr(event_source, "sync_failure", None)
    if sync_failure is not None:
        return fastapi.responses.JSONResponse(
            content={"status": "unhealthy", "detail": sync_failure},
            status_code=503,
            headers=_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS,
        )
    return fastapi.responses.JSONResponse(
        content={"status": "healthy"},
        headers=_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS,
    )


@health_router.get(
    "/health/ready",
    summary="Readiness check",
    description=(
        "Reports ready once existing backend jobs have been replayed into "
        "the in-flight set and the job backend answers its health check. "
        "Returns HTTP 503 with a Retry-After header otherwise."
    ),
    status_code=200,
    responses={
        200: {
            "description": "The limiter has synced and the job backend is reachable.",
            "content": {
                "application/json": {
                    "example": {"status": "ready", "checks": {"event_source": "ok", "job_backend": "ok"}},
                },
            },
        },
        503: {
            "description": (
                "The lifecycle event source is still syncing (``syncing``) or "
                "failed to sync (``failed``), or the job backend is unreachable."
            ),
            "content": {
                "application/json": {
                    "example": {
                        "status": "not_ready",
                        "checks": {"event_source": "syncing", "job_backend": "ok"},
                    },
                },
            },
        },
    },
)
async def readiness_check(request: fastapi.Request) -> fastapi.responses.JSONResponse:
    """
    Check the replay state and the job backend independently.

    The readiness checks:
        - **event_source**: ``ok`` once existing backend jobs have been
          replayed, ``syncing`` before that, ``failed`` when the replay
          gave up.
        - **job_backend**: whether the backend answers ``GET /health``
          with HTTP 200.  Launches would fail with 502 otherwise.
    """
    checks: dict[str, str] = {}

    event_source = getattr(request.app.state, "event_source", None)
    if event_source is None:
        checks["event_source"] = "syncing"
    elif event_source.has_synced:
        checks["event_source"] = "ok"
    elif event_source.sync_failure is not None:
        checks["event_source"] = "failed"
    else:
        checks["event_source"] = "syncing"

    job_backend_service = getattr(request.app.state, "job_backend_service", None)
    if job_backend_service is not None and await job_backend_service.check_health():
        checks["job_backend"] = "ok"
    else:
        checks["job_backend"] = "unavailable"

    is_ready = all(check_status == "ok" for check_status in checks.values())

    response_headers: dict[str, str] = dict(_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS)
    if not is_ready:
        retry_after_not_ready_seconds = getattr(request.app.state, "retry_after_not_ready_seconds", 10)
        response_headers["Retry-After"] = str(retry_after_not_ready_seconds)

    return fastapi.responses.JSONResponse(
        content={
            "status": "ready" if is_ready else "not_ready",
            "checks": checks,
        },
        status_code=200 if is_ready else 503,
        headers=response_headers,
    )


@health_router.get(
    "/metrics",
    summary="Admission metrics",
    description="Returns admission outcome counts, capacity-wait latencies and the limiter status.",
    status_code=200,
)
async def get_metrics(
    request: fastapi.Request,
    limiter: typing.Annotated[
        admission_service.admission_control.MaxInFlightLimiter,
        fastapi.Depends(admission_service.dependencies.get_limiter),
    ],
) -> fastapi.responses.JSONResponse:
    metrics_collector = getattr(request.app.state, "metrics_collector", None)
    if metrics_collector is None:
        content: dict[str, typing.Any] = {"admission_counts": {}, "capacity_waits": {"count": 0}}
    else:
        content = metrics_collector.snapshot()

    limiter_status = await limiter.status()
    content["limiter"] = limiter_status.model_dump()

    return fastapi.responses.JSONResponse(
        content=content,
        headers=_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS,
    )
