"""
Custom exception classes for the job admission limiter.

Each exception class maps to a specific category of operational failure.
Configuration failures abort application construction.  A failed replay
leaves the service permanently not ready (admissions and liveness answer
503).  Launch failures and a full event queue are surfaced per call and
mapped to a JSON error response by ``error_handling.py``.

Exception hierarchy
-------------------
::

    Exception (Python built-in)
    └── ServiceError (base class for all service exceptions)
        ├── LimiterConfigurationError  → fatal at startup
        ├── EventSourceSyncError       → HTTP 503 (service_not_ready)
        ├── JobLaunchError             → HTTP 502
        └── EventQueueFullError        → HTTP 503 (event_queue_full)

Duplicate admissions, cancelled capacity waits and terminal notifications
for jobs that were never tracked are not failures and have no exception
class.
"""


class ServiceError(Exception):
    """
    Base exception for all service-level errors.

    Every service exception carries a ``detail`` attribute containing a
    human-readable description of the failure.  Subclasses define a
    ``default_detail`` class attribute used when no explicit detail is
    passed to the constructor.

    Attributes:
        detail: A human-readable description of the error, safe for
            inclusion in API responses.
    """

    default_detail: str = "A service error occurred."

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class LimiterConfigurationError(ServiceError):
    """
    Raised when the limiter cannot be wired from the supplied settings.

    Common causes:
        - A job tag that does not produce a valid label value.
        - An empty tag set, which would select every backend object.
        - Registering an event handler after the event source started.
    """

    default_detail = "The admission limiter configuration is invalid."


class EventSourceSyncError(ServiceError):
    """
    Raised when the lifecycle event source cannot replay existing backend
    state before the configured deadline.

    The in-flight bookkeeping is only trustworthy after replay, so the
    service answers 503 rather than admit jobs against an empty view.
    """

    default_detail = "The lifecycle event source failed to sync."


class JobLaunchError(ServiceError):
    """
    Raised when the downstream backend refuses or fails to launch a job.

    The job UUID is left untracked so that a retry by the producer is
    treated as a first attempt.  The error-handling layer maps this to
    HTTP 502 with the error code ``job_launch_failed``.
    """

    default_detail = "The downstream backend failed to launch the job."


class EventQueueFullError(ServiceError):
    """
    Raised when a lifecycle notification arrives while the delivery queue
    is full.

    The notification is not queued.  The error-handling layer maps this to
    HTTP 503 with the error code ``event_queue_full`` and a
    ``Retry-After`` header, so the backend sends it again later instead of
    holding the connection open.
    """

    default_detail = "The lifecycle event queue is full; retry the notification later."
