"""
Route definitions for backend lifecycle notifications.

``POST /v1/job-events`` is the webhook the job backend's control plane
calls whenever a job it runs is added, modified or deleted.  Accepted
notifications are queued on the lifecycle event source and delivered to
the reconciler in arrival order; the response is sent once the event is
queued, not once it has been reconciled.

The webhook is served from the moment the application starts, including
while existing backend jobs are still being replayed; notifications that
arrive during the replay are delivered after it.  When the delivery
queue is full the notification is refused with HTTP 503 and a
``Retry-After`` header so that the backend sends it again.
"""

import typing

import fastapi
import fastapi.responses
import structlog.contextvars

import admission_service.dependencies
import admission_service.event_source
import admission_service.models

job_event_router = fastapi.APIRouter(
    prefix="/v1/job-events",
    tags=["Job Lifecycle Events"],
)


@job_event_router.post(
    "",
    summary="Publish a job lifecycle notification",
    status_code=202,
    responses={
        202: {
            "description": (
                "The notification was accepted. ``accepted`` is false when "
                "the job does not carry this limiter's labels and was ignored."
            ),
            "content": {
                "application/json": {
                    "example": {"accepted": True},
                },
            },
        },
        400: {
            "description": "Bad Request — the notification failed schema validation.",
            "model": admission_service.models.ErrorResponse,
        },
        503: {
            "description": (
                "Service Unavailable — the lifecycle event queue is full "
                "(``event_queue_full``). Send the notification again after "
                "the ``Retry-After`` delay."
            ),
            "model": admission_service.models.ErrorResponse,
        },
    },
)
async def handle_job_lifecycle_event(
    lifecycle_event: admission_service.models.LifecycleEvent,
    event_source: typing.Annotated[
        admission_service.event_source.LifecycleEventSource,
        fastapi.Depends(admission_service.dependencies.get_event_source),
    ],
) -> fastapi.responses.JSONResponse:
    structlog.contextvars.bind_contextvars(
        uuid=lifecycle_event.object.uuid,
        lifecycle_event_type=lifecycle_event.type.value,
    )
    accepted = event_source.publish(lifecycle_event)
    return fastapi.responses.JSONResponse(
        content={"accepted": accepted},
        status_code=202,
    )
