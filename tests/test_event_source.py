"""
Tests for the lifecycle event source and ``register_event_handler``.

These tests verify:
- Startup replay delivers ``on_add`` for every matching backend job and
  only then reports the source synced.
- The in-flight count after replay equals the number of unfinished jobs.
- Published notifications are delivered in order, filtered by selector,
  and carry the previous object on ``MODIFIED``.
- Replay failures and timeouts surface as ``EventSourceSyncError`` and are
  recorded on the source.
- A completion published while the replay is running still frees its slot.
- A full delivery queue refuses notifications instead of waiting.
- Handlers cannot be registered after the source has started.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

import admission_service.admission_control
import admission_service.event_source
import admission_service.exceptions
import admission_service.label_selectors
import admission_service.models
import admission_service.reconciler

LifecycleEvent = admission_service.models.LifecycleEvent
LifecycleEventType = admission_service.models.LifecycleEventType


@pytest.fixture
def job_label_selector():
    return admission_service.label_selectors.build_job_label_selector(["queue=default"])


def _recording_handler():
    handler = AsyncMock()
    handler.on_add = AsyncMock()
    handler.on_update = AsyncMock()
    handler.on_delete = AsyncMock()
    return handler


class TestStartupReplay:
    async def test_replay_delivers_on_add_before_sync(self, job_label_selector, make_job_object) -> None:
        existing_job_objects = [make_job_object("job-a"), make_job_object("job-b")]
        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=AsyncMock(return_value=existing_job_objects),
            label_selector=job_label_selector,
        )
        sync_state_during_replay = []
        handler = _recording_handler()
        handler.on_add.side_effect = lambda job_object: sync_state_during_replay.append(event_source.has_synced)
        event_source.add_event_handler(handler)

        await event_source.start()

        assert handler.on_add.await_count == 2
        assert sync_state_during_replay == [False, False]
        assert event_source.has_synced
        await event_source.stop()

    async def test_replay_lists_with_the_label_selector(self, job_label_selector) -> None:
        list_job_objects = AsyncMock(return_value=[])
        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=list_job_objects,
            label_selector=job_label_selector,
        )

        await event_source.start()

        list_job_objects.assert_awaited_once_with(job_label_selector)
        await event_source.stop()

    async def test_in_flight_count_after_replay_counts_unfinished_jobs(
        self, job_scheduler, job_label_selector, make_job_object
    ) -> None:
        existing_job_objects = [
            make_job_object("job-a"),
            make_job_object("job-b"),
            make_job_object("job-c"),
            make_job_object("job-d", condition="Complete"),
            make_job_object("job-e", condition="Failed"),
        ]
        limiter = admission_service.admission_control.MaxInFlightLimiter(scheduler=job_scheduler, max_in_flight=5)
        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=AsyncMock(return_value=existing_job_objects),
            label_selector=job_label_selector,
        )

        await admission_service.event_source.register_event_handler(
            event_source,
            admission_service.reconciler.JobLifecycleReconciler(limiter.ledger),
            sync_timeout_seconds=5.0,
        )

        assert await limiter.in_flight_count() == 3
        await event_source.stop()

    async def test_replay_skips_jobs_outside_the_selector(
        self, job_label_selector, make_job_object
    ) -> None:
        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=AsyncMock(
                return_value=[make_job_object("job-a"), make_job_object("job-b", tag_label_value="queue_other")]
            ),
            label_selector=job_label_selector,
        )
        handler = _recording_handler()
        event_source.add_event_handler(handler)

        await event_source.start()

        assert handler.on_add.await_count == 1
        await event_source.stop()


class TestSyncFailures:
    async def test_listing_failure_raises_sync_error(self, job_label_selector) -> None:
        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=AsyncMock(side_effect=admission_service.exceptions.EventSourceSyncError()),
            label_selector=job_label_selector,
        )

        with pytest.raises(admission_service.exceptions.EventSourceSyncError):
            await admission_service.event_source.register_event_handler(
                event_source,
                _recording_handler(),
                sync_timeout_seconds=5.0,
            )
        assert not event_source.has_synced

    async def test_slow_replay_times_out(self, job_label_selector) -> None:
        async def never_finishing_listing(label_selector):
            await asyncio.Event().wait()

        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=never_finishing_listing,
            label_selector=job_label_selector,
        )

        with pytest.raises(admission_service.exceptions.EventSourceSyncError):
            await admission_service.event_source.register_event_handler(
                event_source,
                _recording_handler(),
                sync_timeout_seconds=0.01,
            )

    async def test_wait_for_sync_reports_timeout(self, job_label_selector) -> None:
        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=AsyncMock(return_value=[]),
            label_selector=job_label_selector,
        )

        assert await event_source.wait_for_sync(timeout_seconds=0.01) is False

        await event_source.start()
        assert await event_source.wait_for_sync(timeout_seconds=0.01) is True
        await event_source.stop()

    async def test_handler_registration_after_start_is_rejected(self, job_label_selector) -> None:
        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=AsyncMock(return_value=[]),
            label_selector=job_label_selector,
        )
        await event_source.start()

        with pytest.raises(admission_service.exceptions.LimiterConfigurationError):
            event_source.add_event_handler(_recording_handler())
        await event_source.stop()


class TestPublishedEvents:
    @pytest.fixture
    async def started_event_source(self, job_label_selector):
        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=AsyncMock(return_value=[]),
            label_selector=job_label_selector,
        )
        handler = _recording_handler()
        event_source.add_event_handler(handler)
        await event_source.start()
        yield event_source, handler
        await event_source.stop()

    async def test_events_are_dispatched_by_type(self, started_event_source, make_job_object) -> None:
        event_source, handler = started_event_source
        running_job_object = make_job_object("job-a")
        finished_job_object = make_job_object("job-a", condition="Complete")

        event_source.publish(LifecycleEvent(type=LifecycleEventType.ADDED, object=running_job_object))
        event_source.publish(LifecycleEvent(type=LifecycleEventType.MODIFIED, object=finished_job_object))
        event_source.publish(LifecycleEvent(type=LifecycleEventType.DELETED, object=finished_job_object))
        await event_source.drain()

        handler.on_add.assert_awaited_once_with(running_job_object)
        handler.on_update.assert_awaited_once_with(running_job_object, finished_job_object)
        handler.on_delete.assert_awaited_once_with(finished_job_object)

    async def test_explicit_old_object_is_passed_through(self, started_event_source, make_job_object) -> None:
        event_source, handler = started_event_source
        old_job_object = make_job_object("job-a")
        new_job_object = make_job_object("job-a", condition="Failed")

        event_source.publish(
            LifecycleEvent(type=LifecycleEventType.MODIFIED, object=new_job_object, old_object=old_job_object)
        )
        await event_source.drain()

        handler.on_update.assert_awaited_once_with(old_job_object, new_job_object)

    async def test_events_outside_the_selector_are_dropped(self, started_event_source, make_job_object) -> None:
        event_source, handler = started_event_source

        accepted = event_source.publish(
            LifecycleEvent(
                type=LifecycleEventType.ADDED,
                object=make_job_object("job-a", tag_label_value="queue_other"),
            )
        )
        await event_source.drain()

        assert accepted is False
        handler.on_add.assert_not_awaited()

    async def test_handler_failure_does_not_stop_delivery(self, started_event_source, make_job_object) -> None:
        event_source, handler = started_event_source
        handler.on_add.side_effect = [RuntimeError("handler failure"), None]

        event_source.publish(LifecycleEvent(type=LifecycleEventType.ADDED, object=make_job_object("job-a")))
        event_source.publish(LifecycleEvent(type=LifecycleEventType.ADDED, object=make_job_object("job-b")))
        await event_source.drain()

        assert handler.on_add.await_count == 2

    async def test_events_published_before_start_are_delivered_after_replay(
        self, job_label_selector, make_job_object
    ) -> None:
        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=AsyncMock(return_value=[make_job_object("job-a")]),
            label_selector=job_label_selector,
        )
        handler = _recording_handler()
        event_source.add_event_handler(handler)
        event_source.publish(LifecycleEvent(type=LifecycleEventType.DELETED, object=make_job_object("job-a")))

        await event_source.start()
        await event_source.drain()

        handler.on_add.assert_awaited_once()
        handler.on_delete.assert_awaited_once()
        await event_source.stop()


class TestReplayRecordsFailure:
    async def test_listing_failure_is_recorded(self, job_label_selector) -> None:
        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=AsyncMock(
                side_effect=admission_service.exceptions.EventSourceSyncError(detail="backend unreachable"),
            ),
            label_selector=job_label_selector,
        )
        assert event_source.sync_failure is None

        with pytest.raises(admission_service.exceptions.EventSourceSyncError):
            await admission_service.event_source.register_event_handler(
                event_source,
                _recording_handler(),
                sync_timeout_seconds=5.0,
            )

        assert event_source.sync_failure == "backend unreachable"

    async def test_timeout_is_recorded(self, job_label_selector) -> None:
        async def never_finishing_listing(label_selector):
            await asyncio.Event().wait()

        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=never_finishing_listing,
            label_selector=job_label_selector,
        )

        with pytest.raises(admission_service.exceptions.EventSourceSyncError):
            await admission_service.event_source.register_event_handler(
                event_source,
                _recording_handler(),
                sync_timeout_seconds=0.01,
            )

        assert "did not sync within 0.01 seconds" in event_source.sync_failure


class TestCompletionDuringReplay:
    async def test_completion_published_mid_replay_frees_the_slot(
        self, job_scheduler, job_label_selector, make_job, make_job_object, settle
    ) -> None:
        listing_released = asyncio.Event()

        async def slow_listing(label_selector):
            await listing_released.wait()
            return [make_job_object("job-a")]

        limiter = admission_service.admission_control.MaxInFlightLimiter(scheduler=job_scheduler, max_in_flight=1)
        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=slow_listing,
            label_selector=job_label_selector,
        )
        sync_task = asyncio.create_task(
            admission_service.event_source.register_event_handler(
                event_source,
                admission_service.reconciler.JobLifecycleReconciler(limiter.ledger),
                sync_timeout_seconds=5.0,
            )
        )
        await settle()
        assert not event_source.has_synced

        accepted = event_source.publish(
            LifecycleEvent(type=LifecycleEventType.MODIFIED, object=make_job_object("job-a", condition="Complete"))
        )
        listing_released.set()
        await asyncio.wait_for(sync_task, timeout=5.0)
        await event_source.drain()

        assert accepted is True
        assert await limiter.in_flight_count() == 0
        outcome = await asyncio.wait_for(limiter.create(make_job("job-b")), timeout=1.0)
        assert outcome is admission_service.models.AdmissionOutcome.LAUNCHED
        await event_source.stop()


class TestEventQueueLimit:
    async def test_full_queue_rejects_without_waiting(self, job_label_selector, make_job_object) -> None:
        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=AsyncMock(return_value=[]),
            label_selector=job_label_selector,
            event_queue_size=1,
        )
        event_source.publish(LifecycleEvent(type=LifecycleEventType.ADDED, object=make_job_object("job-a")))

        with pytest.raises(admission_service.exceptions.EventQueueFullError):
            event_source.publish(LifecycleEvent(type=LifecycleEventType.ADDED, object=make_job_object("job-b")))

    async def test_ignored_events_do_not_need_queue_space(self, job_label_selector, make_job_object) -> None:
        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=AsyncMock(return_value=[]),
            label_selector=job_label_selector,
            event_queue_size=1,
        )
        event_source.publish(LifecycleEvent(type=LifecycleEventType.ADDED, object=make_job_object("job-a")))

        accepted = event_source.publish(
            LifecycleEvent(
                type=LifecycleEventType.ADDED,
                object=make_job_object("job-b", tag_label_value="queue_other"),
            )
        )

        assert accepted is False

    async def test_queue_accepts_again_once_delivered(self, job_label_selector, make_job_object) -> None:
        event_source = admission_service.event_source.LifecycleEventSource(
            list_job_objects=AsyncMock(return_value=[]),
            label_selector=job_label_selector,
            event_queue_size=1,
        )
        handler = _recording_handler()
        event_source.add_event_handler(handler)
        event_source.publish(LifecycleEvent(type=LifecycleEventType.ADDED, object=make_job_object("job-a")))

        await event_source.start()
        await event_source.drain()

        assert event_source.publish(
            LifecycleEvent(type=LifecycleEventType.ADDED, object=make_job_object("job-b"))
        ) is True
        await event_source.drain()
        assert handler.on_add.await_count == 2
        await event_source.stop()
