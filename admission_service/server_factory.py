"""
FastAPI application factory.

The ``create_application`` function constructs a fully configured FastAPI
instance with limiter lifecycle management, error handling, and route
registration.  Using a factory function (rather than a module-level
global) makes the application straightforward to test and re-create.
"""

import asyncio
import collections.abc
import contextlib

import fastapi
import structlog

import admission_service.admission_control
import admission_service.error_handling
import admission_service.event_source
import admission_service.exceptions
import admission_service.label_selectors
import admission_service.logging_config
import admission_service.metrics
import admission_service.middleware
import admission_service.reconciler
import admission_service.routes.health_routes
import admission_service.routes.job_event_routes
import admission_service.routes.job_routes
import admission_service.services.job_backend_service
import configuration

logger = structlog.get_logger()


async def _synchronise_event_source(
    event_source: admission_service.event_source.LifecycleEventSource,
    reconciler: admission_service.reconciler.JobLifecycleReconciler,
    limiter: admission_service.admission_control.MaxInFlightLimiter,
    sync_timeout_seconds: float,
) -> None:
    """
    Replay existing backend jobs into the limiter in the background.

    A failed replay leaves the service not ready for good: admissions keep
    answering 503 and ``GET /health`` reports the failure, so the process
    supervisor restarts it rather than letting it admit against an unknown
    in-flight set.
    """
    try:
        await admission_service.event_source.register_event_handler(
            event_source,
            reconciler,
            sync_timeout_seconds=sync_timeout_seconds,
        )
    except admission_service.exceptions.ServiceError as startup_error:
        event_source.mark_sync_failed(startup_error.detail)
        logger.critical("limiter_startup_failed", error=startup_error.detail)
        return
    except Exception:
        event_source.mark_sync_failed("The replay of existing backend jobs failed unexpectedly.")
        logger.exception("limiter_startup_failed")
        return

    in_flight_at_startup = await limiter.in_flight_count()
    logger.info("limiter_ready", in_flight=in_flight_at_startup)
    if limiter.ledger.is_limited and in_flight_at_startup > limiter.max_in_flight:
        logger.warning(
            "in_flight_exceeds_limit_at_startup",
            in_flight=in_flight_at_startup,
            max_in_flight=limiter.max_in_flight,
        )


def create_application(
    application_configuration: configuration.ApplicationConfiguration | None = None,
) -> fastapi.FastAPI:
    """
    Create and fully configure the FastAPI application.

    This function:
      1. Reads configuration from environment variables (unless given).
      2. Builds the job label selector; malformed tags fail here, before
         anything is started.
      3. Defines a lifespan that wires the backend client, limiter,
         reconciler and event source, then replays existing backend jobs
         in a background task.  The server serves requests during the
         replay; admissions answer 503 until it has finished.
      4. Registers error handlers, middleware and routes.

    Raises:
        LimiterConfigurationError: When the configured job tags cannot be
            turned into a label selector.
    """
    if application_configuration is None:
        application_configuration = configuration.ApplicationConfiguration()
    admission_service.logging_config.configure_logging(
        log_level=application_configuration.log_level,
    )

    job_label_selector = admission_service.label_selectors.build_job_label_selector(
        application_configuration.job_tags,
    )
    metrics_collector = admission_service.metrics.AdmissionMetricsCollector()

    @contextlib.asynccontextmanager
    async def application_lifespan(
        fastapi_application: fastapi.FastAPI,
    ) -> collections.abc.AsyncIterator[None]:
        """
        Wire the limiter on startup and release resources on shutdown.

        Startup does not wait for the replay.  Waiting here would keep the
        server from binding, and a job that finished during the replay
        could then never report its completion.
        """
        job_backend_service_instance = admission_service.services.job_backend_service.JobBackendService(
            job_backend_base_url=application_configuration.job_backend_base_url,
            request_timeout_seconds=application_configuration.timeout_for_job_backend_requests_in_seconds,
            connection_pool_size=application_configuration.job_backend_connection_pool_size,
        )
        limiter_instance = admission_service.admission_control.MaxInFlightLimiter(
            scheduler=job_backend_service_instance,
            max_in_flight=application_configuration.max_in_flight,
            metrics_collector=metrics_collector,
        )
        reconciler_instance = admission_service.reconciler.JobLifecycleReconciler(limiter_instance.ledger)
        event_source_instance = admission_service.event_source.LifecycleEventSource(
            list_job_objects=job_backend_service_instance.list_jobs,
            label_selector=job_label_selector,
            event_queue_size=application_configuration.event_source_queue_size,
        )

        fastapi_application.state.job_backend_service = job_backend_service_instance
        fastapi_application.state.limiter = limiter_instance
        fastapi_application.state.event_source = event_source_instance
        fastapi_application.state.metrics_collector = metrics_collector
        fastapi_application.state.admission_wait_timeout_seconds = (
            application_configuration.admission_wait_timeout_seconds
        )
        fastapi_application.state.retry_after_not_ready_seconds = (
            application_configuration.retry_after_not_ready_seconds
        )
        fastapi_application.state.retry_after_busy_seconds = application_configuration.retry_after_busy_seconds

        logger.info(
            "services_initialised",
            job_backend=application_configuration.job_backend_base_url,
            max_in_flight=application_configuration.max_in_flight,
            label_selector=str(job_label_selector),
        )

        # The replay runs behind the lifespan so the server binds first and
        # the lifecycle webhook can queue completions while it runs.
        synchronisation_task = asyncio.create_task(
            _synchronise_event_source(
                event_source_instance,
                reconciler_instance,
                limiter_instance,
                sync_timeout_seconds=application_configuration.event_source_sync_timeout_seconds,
            ),
        )
        fastapi_application.state.event_source_synchronisation_task = synchronisation_task

        yield

        logger.info(
            "graceful_shutdown_initiated",
            in_flight=await limiter_instance.in_flight_count(),
        )
        synchronisation_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await synchronisation_task
        await event_source_instance.stop()
        await job_backend_service_instance.close()
        logger.info("services_shutdown_complete")

    fastapi_application = fastapi.FastAPI(
        title="Job Admission Limiter",
        description=(
            "Bounds how many jobs may be in flight on a downstream job "
            "backend, reconciling its bookkeeping with the backend's "
            "lifecycle notifications."
        ),
        version=admission_service.logging_config.SERVICE_VERSION,
        lifespan=application_lifespan,
    )

    admission_service.error_handling.register_error_handlers(fastapi_application)

    fastapi_application.add_middleware(admission_service.middleware.CorrelationIdMiddleware)

    fastapi_application.include_router(admission_service.routes.job_routes.job_router)
    fastapi_application.include_router(admission_service.routes.job_event_routes.job_event_router)
    fastapi_application.include_router(admission_service.routes.health_routes.health_router)

    return fastapi_application
