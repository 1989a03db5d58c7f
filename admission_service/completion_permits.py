"""
Bounded completion permits used to wake blocked admission calls.

Each observed terminal transition of a tracked job releases one permit;
each admission call that finds the limiter full acquires one.  The pool
behaves like a counting semaphore whose releases never block:

- A release first hands the permit to a waiting acquirer.
- With no waiter, the permit is buffered up to the pool capacity.
- Beyond capacity the release is dropped and counted.  This happens when
  startup replay finds more live jobs than ``max_in_flight`` and several
  of them finish before anyone waits.  Buffering those extra permits would
  only let later callers skip the wait and overshoot the ceiling.

A capacity of zero disables the pool entirely (unlimited admission).

Usage::

    permits = CompletionPermits(capacity=4)

    # producer side
    if not await permits.acquire(cancellation=cancellation_event):
        return  # abandoned

    # reconciler side
    permits.release()
"""

import asyncio

import structlog

logger = structlog.get_logger()


class CompletionPermits:
    """
    A pool of at most ``capacity`` buffered completion permits.

    Backed by a bounded ``asyncio.Queue``; waiting acquirers are queue
    getters, so a release with waiters present wakes exactly one of them.
    Which waiter is woken under contention is unspecified.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError(f"capacity must be non-negative, got {capacity}")
        self._capacity = capacity
        self._permits: asyncio.Queue[None] | None = asyncio.Queue(maxsize=capacity) if capacity > 0 else None
        self._dropped_release_count = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def available(self) -> int:
        """Number of buffered permits not yet claimed."""
        return self._permits.qsize() if self._permits is not None else 0

    @property
    def dropped_release_count(self) -> int:
        """Number of releases discarded because the pool was already full."""
        return self._dropped_release_count

    def release(self) -> bool:
        """
        Return one permit to the pool without blocking.

        Returns:
            ``True`` when the permit was buffered or handed to a waiter,
            ``False`` when it was dropped (pool full or disabled).
        """
        if self._permits is None:
            return False
        try:
            self._permits.put_nowait(None)
        except asyncio.QueueFull:
            self._dropped_release_count += 1
            logger.debug(
                "completion_permit_dropped",
                capacity=self._capacity,
                dropped_release_count=self._dropped_release_count,
            )
            return False
        return True

    def try_acquire(self) -> bool:
        """Claim a buffered permit if one is available, without waiting."""
        if self._permits is None:
            return False
        try:
            self._permits.get_nowait()
        except asyncio.QueueEmpty:
            return False
        return True

    async def acquire(self, cancellation: asyncio.Event | None = None) -> bool:
        """
        Wait for one permit, or until ``cancellation`` is set.

        Cancellation set before a permit arrives makes the call return
        ``False`` without consuming anything.  Cancelling the calling task
        propagates ``asyncio.CancelledError`` as usual; a permit received
        in the same loop iteration is put back first.

        Returns:
            ``True`` when a permit was claimed, ``False`` when the wait
            was abandoned through ``cancellation``.

        Raises:
            RuntimeError: When the pool is disabled (capacity zero), since
                such a wait could never be satisfied.
        """
        if self._permits is None:
            raise RuntimeError("cannot acquire from a disabled completion permit pool")

        if cancellation is None:
            await self._permits.get()
            return True

        if cancellation.is_set():
            return False

        permit_task = asyncio.ensure_future(self._permits.get())
        cancellation_task = asyncio.ensure_future(cancellation.wait())
        try:
            await asyncio.wait(
                {permit_task, cancellation_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            if permit_task.done() and not permit_task.cancelled():
                self.release()
            raise
        finally:
            for pending_task in (permit_task, cancellation_task):
                if not pending_task.done():
                    pending_task.cancel()

        return permit_task.done() and not permit_task.cancelled()
