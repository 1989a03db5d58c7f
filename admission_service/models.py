"""
Pydantic models for jobs, backend job objects, lifecycle events and the
HTTP API contract.

Two views of a job exist side by side:

- ``JobDescription`` is what a producer asks the limiter to launch.  Its
  ``uuid`` is the JobIdentifier used for in-flight tracking.
- ``JobObject`` is the backend's own representation, delivered by the
  lifecycle event source.  Its identifier lives in the ``JOB_UUID_LABEL``
  metadata label and its terminal state is derived from the status
  conditions.

The reconciler depends only on the ``TrackedJobObject`` protocol, so any
backend object variant exposing a ``uuid`` and ``is_finished()`` can be
reconciled.
"""

import enum
import typing

import pydantic

# ──────────────────────────────────────────────────────────────────────────────
#  Label and condition constants
# ──────────────────────────────────────────────────────────────────────────────

JOB_UUID_LABEL = "admission.jobs/uuid"
JOB_TAG_LABEL = "admission.jobs/tag"

JOB_CONDITION_COMPLETE = "Complete"
JOB_CONDITION_FAILED = "Failed"

TERMINAL_JOB_CONDITION_TYPES = frozenset({JOB_CONDITION_COMPLETE, JOB_CONDITION_FAILED})


@typing.runtime_checkable
class TrackedJobObject(typing.Protocol):
    """The capability the reconciler needs from a backend job object."""

    @property
    def uuid(self) -> str | None: ...

    def is_finished(self) -> bool: ...


# ──────────────────────────────────────────────────────────────────────────────
#  Producer-side models
# ──────────────────────────────────────────────────────────────────────────────


class JobDescription(pydantic.BaseModel):
    """
    A job a producer wants launched.

    Request body for ``POST /v1/jobs`` and the payload forwarded unchanged
    to the downstream backend.
    """

    uuid: str = pydantic.Field(
        ...,
        min_length=1,
        pattern=r".*\S.*",
        description="Globally unique job identifier; the in-flight tracking key.",
        examples=["0190b6f4-5c0e-7a52-9d8e-3b1c2f4e6a71"],
    )

    tags: list[str] = pydantic.Field(
        default_factory=list,
        description="Agent tags in key=value form used to route the job.",
        examples=[["queue=default"]],
    )

    payload: dict[str, typing.Any] = pydantic.Field(
        default_factory=dict,
        description="Opaque job specification passed through to the backend.",
    )

    model_config = pydantic.ConfigDict(extra="forbid", frozen=True)


class AdmissionOutcome(enum.StrEnum):
    """Result of a successful call to ``MaxInFlightLimiter.create``."""

    LAUNCHED = "launched"
    DUPLICATE = "duplicate"
    CANCELLED = "cancelled"


class AdmissionResponse(pydantic.BaseModel):
    """Response body for ``POST /v1/jobs``."""

    uuid: str = pydantic.Field(..., description="The UUID of the submitted job.")

    outcome: AdmissionOutcome = pydantic.Field(
        ...,
        description=(
            "``launched`` when the job was forwarded to the backend, "
            "``duplicate`` when it was already in flight, ``cancelled`` "
            "when the capacity wait was abandoned before admission."
        ),
    )


# ──────────────────────────────────────────────────────────────────────────────
#  Backend-side models
# ──────────────────────────────────────────────────────────────────────────────


class JobCondition(pydantic.BaseModel):
    type: str
    status: str = "True"
    reason: str | None = None
    message: str | None = None


class JobObjectStatus(pydantic.BaseModel):
    conditions: list[JobCondition] = pydantic.Field(default_factory=list)


class JobObjectMetadata(pydantic.BaseModel):
    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = pydantic.Field(default_factory=dict)


class JobObject(pydantic.BaseModel):
    """
    A job as reported by the backend control plane.

    Only the fields the limiter reads are modelled; anything else the
    backend sends is ignored.
    """

    metadata: JobObjectMetadata = pydantic.Field(default_factory=JobObjectMetadata)
    status: JobObjectStatus = pydantic.Field(default_factory=JobObjectStatus)

    model_config = pydantic.ConfigDict(extra="ignore")

    @property
    def uuid(self) -> str | None:
        """The job UUID from the metadata labels, or ``None`` when unlabelled."""
        return self.metadata.labels.get(JOB_UUID_LABEL) or None

    def is_finished(self) -> bool:
        """
        Return whether the job has reached a terminal state.

        A job is terminal when any of its status conditions is of type
        ``Complete`` or ``Failed``.  The condition ``status`` field is not
        consulted: the backend only attaches these condition types once
        the job has finished.
        """
        return any(condition.type in TERMINAL_JOB_CONDITION_TYPES for condition in self.status.conditions)


class LifecycleEventType(enum.StrEnum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class LifecycleEvent(pydantic.BaseModel):
    """
    A change notification pushed by the backend control plane.

    Request body for ``POST /v1/job-events``.  ``old_object`` is optional
    for ``MODIFIED`` events; when omitted, the event source supplies the
    last object it saw for the same UUID.
    """

    type: LifecycleEventType
    object: JobObject
    old_object: JobObject | None = None


# ──────────────────────────────────────────────────────────────────────────────
#  Status and error models
# ──────────────────────────────────────────────────────────────────────────────


class LimiterStatus(pydantic.BaseModel):
    """Point-in-time view of the limiter bookkeeping."""

    in_flight: int
    max_in_flight: int
    available_permits: int
    dropped_completion_permits: int


class ErrorDetail(pydantic.BaseModel):
    """Detailed error information nested inside the error response."""

    code: str = pydantic.Field(
        ...,
        description="A machine-readable error code in snake_case format.",
    )

    message: str = pydantic.Field(
        ...,
        description="A human-readable error description.",
    )

    details: str | list | None = pydantic.Field(
        default=None,
        description="Additional context about the error, when available.",
    )

    correlation_id: str = pydantic.Field(
        ...,
        description="Correlation identifier matching the X-Correlation-ID response header.",
    )


class ErrorResponse(pydantic.BaseModel):
    """Standardised error envelope returned for all error conditions."""

    error: ErrorDetail
