"""
Reconciles the limiter's in-flight set with backend lifecycle events.

The ``JobLifecycleReconciler`` is the event handler registered on the
lifecycle event source.  It shares the limiter's ``InFlightLedger`` and
takes the same lock for every notification, so admissions and
reconciliation never interleave inside a mutation.

Handlers are idempotent and check presence before acting, which makes
redelivered notifications harmless: a job is only removed (and a
completion permit only released) if it is currently tracked.
"""

import structlog

import admission_service.in_flight
import admission_service.models

logger = structlog.get_logger()


class JobLifecycleReconciler:
    def __init__(self, ledger: admission_service.in_flight.InFlightLedger) -> None:
        self._ledger = ledger

    async def on_add(self, job_object: admission_service.models.TrackedJobObject) -> None:
        """
        Track a job reported by the backend.

        Called once per existing job while the event source replays
        backend state at startup, and for new jobs afterwards.  Jobs that
        are already finished are ignored: they never held a slot during
        this process's lifetime.
        """
        job_uuid = self._uuid_of(job_object, "add")
        if job_uuid is None or job_object.is_finished():
            return
        async with self._ledger.lock:
            if self._ledger.add_locked(job_uuid):
                logger.debug(
                    "in_flight_job_added",
                    uuid=job_uuid,
                    in_flight=self._ledger.count_locked(),
                )

    async def on_update(
        self,
        old_job_object: admission_service.models.TrackedJobObject | None,
        job_object: admission_service.models.TrackedJobObject,
    ) -> None:
        """Complete the job if it is now finished, otherwise make sure it is tracked."""
        job_uuid = self._uuid_of(job_object, "update")
        if job_uuid is None:
            return
        async with self._ledger.lock:
            if job_object.is_finished():
                self._complete_locked(job_uuid)
            elif self._ledger.add_locked(job_uuid):
                logger.debug("waiting_for_job_completion", uuid=job_uuid)

    async def on_delete(self, job_object: admission_service.models.TrackedJobObject) -> None:
        # Deleted jobs are finished whatever their last reported status.
        job_uuid = self._uuid_of(job_object, "delete")
        if job_uuid is None:
            return
        async with self._ledger.lock:
            self._complete_locked(job_uuid)

    def _complete_locked(self, job_uuid: str) -> None:
        in_flight_before = self._ledger.count_locked()
        if self._ledger.complete_locked(job_uuid):
            logger.debug("job_complete", uuid=job_uuid, in_flight=in_flight_before)

    @staticmethod
    def _uuid_of(
        job_object: admission_service.models.TrackedJobObject,
        notification: str,
    ) -> str | None:
        job_uuid = job_object.uuid
        if not job_uuid:
            logger.warning("job_object_missing_uuid", notification=notification)
            return None
        return job_uuid
