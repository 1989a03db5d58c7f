"""Shared fixtures for route integration tests."""

from unittest.mock import AsyncMock, MagicMock

import fastapi
import httpx
import pytest
import pytest_asyncio

import admission_service.admission_control
import admission_service.error_handling
import admission_service.event_source
import admission_service.label_selectors
import admission_service.metrics
import admission_service.middleware
import admission_service.reconciler
import admission_service.routes.health_routes
import admission_service.routes.job_event_routes
import admission_service.routes.job_routes


@pytest.fixture
def max_in_flight():
    """Ceiling used by the route-level limiter; override per module."""
    return 2


@pytest.fixture
def metrics_collector():
    return admission_service.metrics.AdmissionMetricsCollector()


@pytest.fixture
def limiter(job_scheduler, max_in_flight, metrics_collector):
    return admission_service.admission_control.MaxInFlightLimiter(
        scheduler=job_scheduler,
        max_in_flight=max_in_flight,
        metrics_collector=metrics_collector,
    )


@pytest.fixture
def existing_job_objects():
    """Backend jobs returned by the startup replay."""
    return []


@pytest.fixture
def event_queue_size():
    """Delivery queue capacity of the route-level event source."""
    return admission_service.event_source.DEFAULT_EVENT_QUEUE_SIZE


@pytest.fixture
def event_source(limiter, existing_job_objects, event_queue_size):
    event_source = admission_service.event_source.LifecycleEventSource(
        list_job_objects=AsyncMock(return_value=existing_job_objects),
        label_selector=admission_service.label_selectors.build_job_label_selector(["queue=default"]),
        event_queue_size=event_queue_size,
    )
    event_source.add_event_handler(admission_service.reconciler.JobLifecycleReconciler(limiter.ledger))
    return event_source


@pytest.fixture
def job_backend_service():
    """A job backend whose health check passes."""
    service = MagicMock()
    service.check_health = AsyncMock(return_value=True)
    return service


@pytest.fixture
def test_app(limiter, event_source, metrics_collector, job_backend_service):
    app = fastapi.FastAPI()
    admission_service.error_handling.register_error_handlers(app)

    app.add_middleware(admission_service.middleware.CorrelationIdMiddleware)
    app.include_router(admission_service.routes.job_routes.job_router)
    app.include_router(admission_service.routes.job_event_routes.job_event_router)
    app.include_router(admission_service.routes.health_routes.health_router)

    app.state.limiter = limiter
    app.state.event_source = event_source
    app.state.metrics_collector = metrics_collector
    app.state.admission_wait_timeout_seconds = 0.0
    app.state.retry_after_not_ready_seconds = 10
    app.state.retry_after_busy_seconds = 1
    app.state.job_backend_service = job_backend_service

    return app


@pytest_asyncio.fixture
async def unsynced_client(test_app):
    """Client for an application whose event source has not replayed yet."""
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest_asyncio.fixture
async def client(test_app, event_source):
    await event_source.start()
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    await event_source.stop()
