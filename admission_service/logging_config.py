"""
Structured logging configuration for the job admission limiter.

Every record is one JSON object on **stdout** carrying ``timestamp`` (ISO
8601 UTC), ``level``, ``event``, ``service_name`` and ``service_version``.
Request-scoped fields are merged in from structlog contextvars:
``correlation_id`` for every HTTP request, plus the job ``uuid`` on the
admission and lifecycle-notification routes, so all records about one job
can be found with a single filter.

Standard library loggers go through the same pipeline.  Two of them are
turned down because the service already covers what they report:

- ``httpx`` logs every backend request at INFO, which would put one
  record per readiness poll into the log.  It is kept at WARNING unless
  the service runs at DEBUG.
- ``uvicorn.access`` duplicates the ``http_request_completed`` records of
  ``CorrelationIdMiddleware``, without the correlation ID.
"""

import logging
import sys

import structlog

SERVICE_NAME = "job-admission-limiter"
SERVICE_VERSION = "1.0.0"

_QUIETED_LOGGER_NAMES = ("httpx", "httpcore", "uvicorn.access")


def _add_service_identity(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    event_dict["service_name"] = SERVICE_NAME
    event_dict["service_version"] = SERVICE_VERSION
    return event_dict


def _uppercase_level(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    if "level" in event_dict:
        event_dict["level"] = event_dict["level"].upper()
    return event_dict


def configure_logging(log_level: str = "INFO") -> None:
    """
    Route structlog and standard library logging to JSON on stdout.

    The limiter logs its per-job bookkeeping (in-flight additions,
    completions, skipped duplicates, dropped completion permits) at
    DEBUG.  Run with ``log_level="DEBUG"`` to trace why an admission is
    waiting; that level also lets the backend client's request logs
    through.

    Call once at startup, before the first record is emitted.  Calling
    it again replaces the previous handler.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _add_service_identity,
        structlog.stdlib.add_log_level,
        _uppercase_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    quieted_level = level if level <= logging.DEBUG else logging.WARNING
    for logger_name in _QUIETED_LOGGER_NAMES:
        logging.getLogger(logger_name).setLevel(quieted_level)
