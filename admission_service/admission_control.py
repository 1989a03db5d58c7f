"""
Max-in-flight admission control for job launches.

The ``MaxInFlightLimiter`` sits between a job producer and the downstream
scheduler.  It forwards each job to the scheduler at most once while the
job is in flight, and, when ``max_in_flight`` is positive, makes callers
wait for a completion once the in-flight set is full.

Architecture
------------
The limiter owns an ``InFlightLedger``: a set of job UUIDs, one
``asyncio.Lock`` and a pool of completion permits.  The limiter only ever
*adds* to the set.  The ``JobLifecycleReconciler`` (see ``reconciler.py``)
shares the same ledger, removes jobs as the backend reports them finished,
and releases one permit per removal.

Capacity wait
-------------
The capacity check and the wait are deliberately not atomic.  A caller
that finds the set full waits for one completion permit and then
proceeds regardless of the set's size at that moment.  Concurrent callers
can therefore overshoot the ceiling for a short window; over time the
admission rate is throttled to the completion rate.  This is an accepted
approximation, not a hard bound.

Cancellation
------------
``create`` accepts an optional ``asyncio.Event``.  If it is set while the
caller waits for capacity (or before the caller reaches the launch), the
call returns ``AdmissionOutcome.CANCELLED`` without launching anything and
without raising.  The caller decides whether to retry.  Once the launch
has begun it runs to completion.

Usage::

    limiter = MaxInFlightLimiter(scheduler=job_backend_service, max_in_flight=10)
    outcome = await limiter.create(job, cancellation=deadline_event)
"""

import asyncio
import time
import typing

import structlog

import admission_service.in_flight
import admission_service.metrics
import admission_service.models

logger = structlog.get_logger()


class JobScheduler(typing.Protocol):
    """The downstream collaborator that actually launches jobs."""

    async def create(self, job: admission_service.models.JobDescription) -> None:
        """Launch ``job``; raise on failure."""
        ...


class MaxInFlightLimiter:
    """
    Admits jobs to a downstream scheduler under an in-flight ceiling.

    A job UUID already in the in-flight set is never forwarded twice, so
    redelivered admission requests are absorbed.  A failed launch leaves
    the UUID untracked and re-raises the scheduler's exception.
    """

    def __init__(
        self,
        scheduler: JobScheduler,
        max_in_flight: int = 0,
        metrics_collector: admission_service.metrics.AdmissionMetricsCollector | None = None,
    ) -> None:
        """
        Initialise the limiter.

        Args:
            scheduler: The downstream scheduler that launches admitted jobs.
            max_in_flight: The in-flight ceiling.  Zero disables the
                ceiling; jobs are still de-duplicated.
            metrics_collector: Optional collector receiving admission
                outcomes and capacity-wait latencies.
        """
        self._scheduler = scheduler
        self._metrics_collector = metrics_collector
        self.ledger = admission_service.in_flight.InFlightLedger(max_in_flight=max_in_flight)

    @property
    def max_in_flight(self) -> int:
        return self.ledger.max_in_flight

    async def create(
        self,
        job: admission_service.models.JobDescription,
        cancellation: asyncio.Event | None = None,
    ) -> admission_service.models.AdmissionOutcome:
        """
        Admit ``job`` and forward it to the scheduler.

        Returns:
            ``LAUNCHED`` when the scheduler accepted the job,
            ``DUPLICATE`` when the job was already in flight, or
            ``CANCELLED`` when ``cancellation`` fired first.

        Raises:
            Exception: Whatever the scheduler raised when the launch
                failed; the job is not recorded as in flight.
        """
        async with self.ledger.lock:
            in_flight = self.ledger.count_locked()

        if self.ledger.is_limited and in_flight >= self.ledger.max_in_flight:
            logger.debug("max_in_flight_reached", in_flight=in_flight, uuid=job.uuid)
            wait_started_at = time.monotonic()
            acquired = await self.ledger.completion_permits.acquire(cancellation=cancellation)
            if self._metrics_collector is not None:
                self._metrics_collector.record_capacity_wait(
                    duration_milliseconds=(time.monotonic() - wait_started_at) * 1000,
                )
            if not acquired:
                return self._finish(job, admission_service.models.AdmissionOutcome.CANCELLED)
            if cancellation is not None and cancellation.is_set():
                # The permit arrived together with the cancellation; hand it
                # on to the next waiter instead of losing it.
                self.ledger.completion_permits.release()
                return self._finish(job, admission_service.models.AdmissionOutcome.CANCELLED)

        if cancellation is not None and cancellation.is_set():
            return self._finish(job, admission_service.models.AdmissionOutcome.CANCELLED)

        return await self._add(job)

    async def _add(
        self,
        job: admission_service.models.JobDescription,
    ) -> admission_service.models.AdmissionOutcome:
        async with self.ledger.lock:
            if self.ledger.contains_locked(job.uuid):
                logger.debug("skipping_already_queued_job", uuid=job.uuid)
                return self._finish(job, admission_service.models.AdmissionOutcome.DUPLICATE)

            try:
                await self._scheduler.create(job)
            except Exception:
                if self._metrics_collector is not None:
                    self._metrics_collector.record_admission("failed")
                raise

            self.ledger.add_locked(job.uuid)
            return self._finish(job, admission_service.models.AdmissionOutcome.LAUNCHED)

    def _finish(
        self,
        job: admission_service.models.JobDescription,
        outcome: admission_service.models.AdmissionOutcome,
    ) -> admission_service.models.AdmissionOutcome:
        if outcome is admission_service.models.AdmissionOutcome.LAUNCHED:
            logger.info("job_launched", uuid=job.uuid)
        elif outcome is admission_service.models.AdmissionOutcome.CANCELLED:
            logger.info("job_admission_cancelled", uuid=job.uuid)
        if self._metrics_collector is not None:
            self._metrics_collector.record_admission(outcome.value)
        return outcome

    async def in_flight_count(self) -> int:
        async with self.ledger.lock:
            return self.ledger.count_locked()

    async def is_tracking(self, job_uuid: str) -> bool:
        async with self.ledger.lock:
            return self.ledger.contains_locked(job_uuid)

    async def in_flight_uuids(self) -> frozenset[str]:
        async with self.ledger.lock:
            return self.ledger.snapshot_locked()

    async def status(self) -> admission_service.models.LimiterStatus:
        """Return a point-in-time snapshot of the limiter bookkeeping."""
        async with self.ledger.lock:
            return admission_service.models.LimiterStatus(
                in_flight=self.ledger.count_locked(),
                max_in_flight=self.ledger.max_in_flight,
                available_permits=self.ledger.completion_permits.available,
                dropped_completion_permits=self.ledger.completion_permits.dropped_release_count,
            )
