"""
FastAPI dependency injection providers.

Each function retrieves a shared instance from the FastAPI application
state, keeping route handlers decoupled from construction and making them
straightforward to test with ``dependency_overrides``.
"""

import fastapi

import admission_service.admission_control
import admission_service.event_source
import admission_service.exceptions


def get_limiter(
    request: fastapi.Request,
) -> admission_service.admission_control.MaxInFlightLimiter:
    return request.app.state.limiter  # type: ignore[no-any-return]


def get_event_source(
    request: fastapi.Request,
) -> admission_service.event_source.LifecycleEventSource:
    return request.app.state.event_source  # type: ignore[no-any-return]


def get_synced_limiter(
    request: fastapi.Request,
) -> admission_service.admission_control.MaxInFlightLimiter:
    """
    Retrieve the limiter, refusing admissions until the event source has
    replayed existing backend jobs.

    Admitting before replay would count against an empty in-flight set
    and overshoot the ceiling, so this raises ``EventSourceSyncError``
    (HTTP 503) instead.
    """
    event_source = getattr(request.app.state, "event_source", None)
    if event_source is None or not event_source.has_synced:
        raise admission_service.exceptions.EventSourceSyncError(
            detail="The limiter has not finished replaying existing backend jobs.",
        )
    return request.app.state.limiter  # type: ignore[no-any-return]
