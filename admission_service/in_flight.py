"""
Shared in-flight bookkeeping for the admission gate and the reconciler.

``InFlightLedger`` owns the set of job UUIDs believed to be running, the
single lock that serialises every read and mutation of that set, and the
completion permits released when a tracked job finishes.  One ledger is
created per limiter and handed to the reconciler explicitly; there is no
module-level state.

All ``*_locked`` methods assume the caller holds ``ledger.lock``.
"""

import asyncio

import admission_service.completion_permits


class InFlightLedger:
    def __init__(self, max_in_flight: int) -> None:
        if max_in_flight < 0:
            raise ValueError(f"max_in_flight must be non-negative, got {max_in_flight}")
        self.max_in_flight = max_in_flight
        self.lock = asyncio.Lock()
        self.completion_permits = admission_service.completion_permits.CompletionPermits(
            capacity=max_in_flight,
        )
        self._job_uuids: set[str] = set()

    @property
    def is_limited(self) -> bool:
        return self.max_in_flight > 0

    def count_locked(self) -> int:
        return len(self._job_uuids)

    def contains_locked(self, job_uuid: str) -> bool:
        return job_uuid in self._job_uuids

    def add_locked(self, job_uuid: str) -> bool:
        """Track ``job_uuid``; returns ``False`` if it was already tracked."""
        if job_uuid in self._job_uuids:
            return False
        self._job_uuids.add(job_uuid)
        return True

    def complete_locked(self, job_uuid: str) -> bool:
        """
        Stop tracking ``job_uuid`` and release one completion permit.

        Untracked UUIDs are ignored so that repeated or foreign terminal
        notifications never release capacity that was not taken.

        Returns:
            ``True`` if the UUID was tracked and has now been removed.
        """
        if job_uuid not in self._job_uuids:
            return False
        self._job_uuids.remove(job_uuid)
        self.completion_permits.release()
        return True

    def snapshot_locked(self) -> frozenset[str]:
        return frozenset(self._job_uuids)
