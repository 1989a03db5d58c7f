"""
Lifecycle event source: replay existing backend jobs, then stream changes.

The source follows a list-then-watch pattern:

1. ``start`` lists every backend job matching the label selector and
   delivers an ``on_add`` for each to the registered handlers (replay).
2. Only after replay does the source report itself synced.  Until then
   the limiter's in-flight view is incomplete and must not be trusted.
3. Change notifications pushed through ``publish`` (for example from the
   ``POST /v1/job-events`` webhook) are queued and delivered one at a
   time by a single delivery task, so notifications about the same job
   reach the handlers in the order they were published.  Notifications
   published while the replay is still running wait in the queue and are
   delivered after it, so a job that finishes mid-replay is still
   released.

Events for jobs that do not match the selector are dropped at publish
time.  The source remembers the last object seen per job UUID so that
``MODIFIED`` notifications without an explicit ``old_object`` still carry
the previous state to ``on_update``.
"""

import asyncio
import collections.abc
import contextlib
import typing

import structlog

import admission_service.exceptions
import admission_service.label_selectors
import admission_service.models

logger = structlog.get_logger()

DEFAULT_EVENT_QUEUE_SIZE = 1000

ListJobObjects = collections.abc.Callable[
    [admission_service.label_selectors.LabelSelector],
    collections.abc.Awaitable[list[admission_service.models.JobObject]],
]


class LifecycleEventHandler(typing.Protocol):
    async def on_add(self, job_object: admission_service.models.JobObject) -> None: ...

    async def on_update(
        self,
        old_job_object: admission_service.models.JobObject | None,
        job_object: admission_service.models.JobObject,
    ) -> None: ...

    async def on_delete(self, job_object: admission_service.models.JobObject) -> None: ...


class LifecycleEventSource:
    """
    Delivers backend job lifecycle notifications to registered handlers.

    Handlers must be registered before ``start``; registering later would
    silently miss the replay, so it is rejected.
    """

    def __init__(
        self,
        list_job_objects: ListJobObjects,
        label_selector: admission_service.label_selectors.LabelSelector,
        event_queue_size: int = DEFAULT_EVENT_QUEUE_SIZE,
    ) -> None:
        """
        Initialise the event source.

        Args:
            list_job_objects: Coroutine function returning the backend jobs
                matching a selector; used once for the startup replay.
            label_selector: Selects the backend jobs this limiter tracks.
            event_queue_size: Maximum number of published notifications
                waiting for delivery.  ``publish`` rejects new ones when
                it is full.
        """
        self._list_job_objects = list_job_objects
        self.label_selector = label_selector
        self._handlers: list[LifecycleEventHandler] = []
        self._events: asyncio.Queue[admission_service.models.LifecycleEvent] = asyncio.Queue(
            maxsize=event_queue_size,
        )
        self._known_job_objects: dict[str, admission_service.models.JobObject] = {}
        self._synced = asyncio.Event()
        self._sync_failure: str | None = None
        self._started = False
        self._delivery_task: asyncio.Task[None] | None = None

    @property
    def has_synced(self) -> bool:
        return self._synced.is_set()

    @property
    def sync_failure(self) -> str | None:
        """Why the replay failed, or ``None`` while it has not failed."""
        return self._sync_failure

    def mark_sync_failed(self, detail: str) -> None:
        self._sync_failure = detail

    def add_event_handler(self, handler: LifecycleEventHandler) -> None:
        if self._started:
            raise admission_service.exceptions.LimiterConfigurationError(
                detail="Event handlers must be registered before the event source starts.",
            )
        self._handlers.append(handler)

    async def start(self) -> None:
        """
        Replay existing backend jobs, mark the source synced, and begin
        delivering published notifications.

        Raises:
            EventSourceSyncError: When listing backend jobs fails.
        """
        if self._started:
            raise admission_service.exceptions.LimiterConfigurationError(
                detail="The event source has already been started.",
            )
        self._started = True

        job_objects = await self._list_job_objects(self.label_selector)
        replayed_count = 0
        for job_object in job_objects:
            if not self.label_selector.matches(job_object.metadata.labels):
                continue
            self._remember(job_object)
            for handler in self._handlers:
                await handler.on_add(job_object)
            replayed_count += 1

        self._synced.set()
        logger.info(
            "event_source_synced",
            replayed_job_count=replayed_count,
            label_selector=str(self.label_selector),
        )

        self._delivery_task = asyncio.create_task(self._deliver_events())

    async def wait_for_sync(self, timeout_seconds: float | None = None) -> bool:
        """Wait until replay has finished; ``False`` if the timeout expired first."""
        try:
            async with asyncio.timeout(timeout_seconds):
                await self._synced.wait()
        except TimeoutError:
            return False
        return True

    def publish(self, event: admission_service.models.LifecycleEvent) -> bool:
        """
        Queue a lifecycle notification for delivery without waiting.

        Returns:
            ``False`` when the job does not match the label selector and
            the notification was dropped, ``True`` otherwise.

        Raises:
            EventQueueFullError: When the delivery queue is full; the
                notification was not queued and must be sent again.
        """
        if not self.label_selector.matches(event.object.metadata.labels):
            logger.debug(
                "lifecycle_event_ignored",
                event_type=event.type.value,
                job_name=event.object.metadata.name,
            )
            return False
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull as queue_full_error:
            logger.warning(
                "lifecycle_event_queue_full",
                event_type=event.type.value,
                uuid=event.object.uuid,
                queue_size=self._events.maxsize,
            )
            raise admission_service.exceptions.EventQueueFullError() from queue_full_error
        return True

    async def drain(self) -> None:
        """Wait until every published notification has been delivered."""
        await self._events.join()

    async def stop(self) -> None:
        if self._delivery_task is None:
            return
        self._delivery_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._delivery_task
        self._delivery_task = None

    async def _deliver_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._dispatch(event)
            except Exception:
                logger.exception(
                    "lifecycle_event_delivery_failed",
                    event_type=event.type.value,
                    uuid=event.object.uuid,
                )
            finally:
                self._events.task_done()

    async def _dispatch(self, event: admission_service.models.LifecycleEvent) -> None:
        job_object = event.object

        if event.type is admission_service.models.LifecycleEventType.ADDED:
            self._remember(job_object)
            for handler in self._handlers:
                await handler.on_add(job_object)

        elif event.type is admission_service.models.LifecycleEventType.MODIFIED:
            old_job_object = event.old_object or self._known_job_objects.get(job_object.uuid or "")
            self._remember(job_object)
            for handler in self._handlers:
                await handler.on_update(old_job_object, job_object)

        else:
            if job_object.uuid is not None:
                self._known_job_objects.pop(job_object.uuid, None)
            for handler in self._handlers:
                await handler.on_delete(job_object)

    def _remember(self, job_object: admission_service.models.JobObject) -> None:
        if job_object.uuid is not None:
            self._known_job_objects[job_object.uuid] = job_object


async def register_event_handler(
    event_source: LifecycleEventSource,
    handler: LifecycleEventHandler,
    sync_timeout_seconds: float,
) -> None:
    """
    Register ``handler``, start ``event_source`` and wait for its replay.

    A failed or timed-out replay is recorded on the event source
    (``sync_failure``) before the error is raised, so readiness can report
    it.

    Raises:
        EventSourceSyncError: When the replay fails or does not finish
            within ``sync_timeout_seconds``.
        LimiterConfigurationError: When the source was already started.
    """
    event_source.add_event_handler(handler)
    try:
        async with asyncio.timeout(sync_timeout_seconds):
            await event_source.start()
    except TimeoutError as timeout_error:
        sync_error = admission_service.exceptions.EventSourceSyncError(
            detail=f"The lifecycle event source did not sync within {sync_timeout_seconds} seconds.",
        )
        event_source.mark_sync_failed(sync_error.detail)
        raise sync_error from timeout_error
    except admission_service.exceptions.EventSourceSyncError as sync_error:
        event_source.mark_sync_failed(sync_error.detail)
        raise
