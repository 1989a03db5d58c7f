"""
Route definitions for job admission.

``POST /v1/jobs`` asks the limiter to admit a job and forward it to the
job backend.  The request may wait for capacity when the in-flight
ceiling is reached.  If ``admission_wait_timeout_seconds`` is configured,
the wait is abandoned after that long and the response reports the job
as ``cancelled``; the producer is expected to resubmit it later.

The job ``uuid`` is bound into the log context for the rest of the
request, so launch failures and the request log carry it too.

Duplicate submissions of a job that is still in flight are answered with
``duplicate`` and never reach the backend twice.
"""

import asyncio
import typing

import fastapi
import fastapi.responses
import structlog.contextvars

import admission_service.admission_control
import admission_service.dependencies
import admission_service.models

job_router = fastapi.APIRouter(
    prefix="/v1/jobs",
    tags=["Job Admission"],
)


@job_router.post(
    "",
    response_model=admission_service.models.AdmissionResponse,
    summary="Admit a job and launch it on the backend",
    description=(
        "Admits the job under the in-flight ceiling and forwards it to the "
        "job backend. Waits for capacity when the ceiling is reached."
    ),
    status_code=200,
    responses={
        400: {
            "description": (
                "Bad Request — the request body contains invalid JSON "
                "(``invalid_request_json``) or fails schema validation "
                "(``request_validation_failed``)."
            ),
            "model": admission_service.models.ErrorResponse,
        },
        502: {
            "description": "Bad Gateway — the job backend failed to launch the job (``job_launch_failed``).",
            "model": admission_service.models.ErrorResponse,
        },
        503: {
            "description": (
                "Service Unavailable — existing backend jobs have not been "
                "replayed yet (``service_not_ready``)."
            ),
            "model": admission_service.models.ErrorResponse,
        },
    },
)
async def handle_job_admission_request(
    request: fastapi.Request,
    job: admission_service.models.JobDescription,
    limiter: typing.Annotated[
        admission_service.admission_control.MaxInFlightLimiter,
        fastapi.Depends(admission_service.dependencies.get_synced_limiter),
    ],
) -> fastapi.responses.JSONResponse:
    structlog.contextvars.bind_contextvars(uuid=job.uuid)

    cancellation = asyncio.Event()
    admission_wait_timeout_seconds = getattr(request.app.state, "admission_wait_timeout_seconds", 0.0)
    deadline_handle = None
    if admission_wait_timeout_seconds > 0:
        deadline_handle = asyncio.get_running_loop().call_later(
            admission_wait_timeout_seconds,
            cancellation.set,
        )

    try:
        outcome = await limiter.create(job, cancellation=cancellation)
    finally:
        if deadline_handle is not None:
            deadline_handle.cancel()

    response_model = admission_service.models.AdmissionResponse(uuid=job.uuid, outcome=outcome)
    return fastapi.responses.JSONResponse(
        content=response_model.model_dump(mode="json"),
        headers={"Cache-Control": "no-store"},
    )
