"""
Application configuration module.

Loads all configuration values from environment variables with the prefix
JOB_ADMISSION_. Default values are provided for local development. A .env
file is also supported via pydantic-settings.

The configuration is read once by the server factory and is immutable for
the lifetime of the process: changing the in-flight ceiling or the tag set
requires a restart, since both shape the startup replay.
"""

import pydantic
import pydantic_settings


class ApplicationConfiguration(pydantic_settings.BaseSettings):
    """
    Centralised configuration for the job admission limiter.

    Every field maps to an environment variable prefixed with
    JOB_ADMISSION_.  For example, the field ``max_in_flight`` is populated
    from the environment variable JOB_ADMISSION_MAX_IN_FLIGHT.

    Configuration categories
    ------------------------
    - **Application**: host, port, log level
    - **Admission**: in-flight ceiling, capacity-wait deadline
    - **Job backend**: base URL, timeout, connection pool size
    - **Event source**: job tags, sync timeout, delivery queue size,
      Retry-After values for not-ready and full-queue responses
    """

    model_config = pydantic_settings.SettingsConfigDict(
        env_file=".env",
        env_prefix="JOB_ADMISSION_",
        frozen=True,
    )

    # ── Application settings ─────────────────────────────────────────────

    application_host: str = "127.0.0.1"

    application_port: int = pydantic.Field(default=8000, ge=1, le=65535)

    log_level: str = pydantic.Field(
        default="INFO",
        description=(
            "Minimum log level for structured JSON logging. "
            "Accepted values: DEBUG, INFO, WARNING, ERROR, CRITICAL."
        ),
    )

    # ── Admission settings ───────────────────────────────────────────────

    max_in_flight: int = pydantic.Field(
        default=0,
        ge=0,
        description=(
            "Maximum number of jobs that may be in flight on the backend at "
            "once. Zero means unlimited: jobs are still de-duplicated but "
            "admission never waits."
        ),
    )

    admission_wait_timeout_seconds: float = pydantic.Field(
        default=0.0,
        ge=0.0,
        description=(
            "How long an HTTP admission request may wait for capacity before "
            "the wait is abandoned and the job reported as cancelled. Zero "
            "waits indefinitely."
        ),
    )

    # ── Job backend settings ─────────────────────────────────────────────

    job_backend_base_url: str = pydantic.Field(
        default="http://localhost:8081",
        description="Base URL of the job backend that launches and lists jobs.",
    )

    timeout_for_job_backend_requests_in_seconds: float = pydantic.Field(
        default=30.0,
        gt=0,
        description=(
            "Maximum time in seconds to wait for the job backend. Launches "
            "run while the limiter lock is held, so this also bounds how "
            "long one slow launch can stall other admissions."
        ),
    )

    job_backend_connection_pool_size: int = pydantic.Field(
        default=10,
        ge=1,
        description="Maximum number of connections in the httpx connection pool.",
    )

    # ── Event source settings ────────────────────────────────────────────

    job_tags: list[str] = pydantic.Field(
        default=["queue=default"],
        min_length=1,
        description=(
            "Agent tags (key=value) selecting the backend jobs this limiter "
            "tracks, as a JSON list. Example: '[\"queue=default\"]'."
        ),
    )

    event_source_sync_timeout_seconds: float = pydantic.Field(
        default=60.0,
        gt=0,
        description=(
            "Deadline for replaying existing backend jobs at startup. If the "
            "replay does not finish in time the service stays not ready and "
            "its liveness check fails, so it is restarted."
        ),
    )

    event_source_queue_size: int = pydantic.Field(
        default=1000,
        ge=1,
        description="Maximum number of lifecycle events waiting for delivery.",
    )

    retry_after_not_ready_seconds: int = pydantic.Field(
        default=10,
        ge=0,
        description="Value of the Retry-After header on HTTP 503 readiness responses.",
    )

    retry_after_busy_seconds: int = pydantic.Field(
        default=1,
        ge=0,
        description=(
            "Value of the Retry-After header on HTTP 503 responses to "
            "lifecycle notifications rejected because the delivery queue is "
            "full (error code: event_queue_full)."
        ),
    )
