"""
In-memory admission metrics for operational monitoring.

Provides a thread-safe collector for admission outcome counts and
capacity-wait latencies, exposed via the ``GET /metrics`` endpoint in
JSON format alongside the limiter's live status.

Snapshots carry two timestamps:

- ``service_started_at``: when the collector was created, which
  coincides with application startup.
- ``collected_at``: when the snapshot was taken.

Capacity-wait latencies are kept in a bounded sliding window so that
memory stays flat under sustained load.
"""

import collections
import datetime
import threading

DEFAULT_MAXIMUM_WAIT_OBSERVATIONS = 10_000

ADMISSION_OUTCOMES = ("launched", "duplicate", "cancelled", "failed")


class AdmissionMetricsCollector:
    """
    Thread-safe collector for admission metrics.

    Thread safety uses a ``threading.Lock`` rather than an ``asyncio.Lock``
    because the collector is also read from synchronous contexts.
    """

    def __init__(
        self,
        maximum_wait_observations: int = DEFAULT_MAXIMUM_WAIT_OBSERVATIONS,
    ) -> None:
        self._lock = threading.Lock()
        self._admission_counts: dict[str, int] = dict.fromkeys(ADMISSION_OUTCOMES, 0)
        self._capacity_wait_milliseconds: collections.deque[float] = collections.deque(
            maxlen=maximum_wait_observations,
        )
        self._service_started_at: str = _format_current_utc_timestamp()

    def record_admission(self, outcome: str) -> None:
        """Count one admission call that ended with ``outcome``."""
        with self._lock:
            self._admission_counts[outcome] = self._admission_counts.get(outcome, 0) + 1

    def record_capacity_wait(self, duration_milliseconds: float) -> None:
        """Record how long an admission call waited for a completion permit."""
        with self._lock:
            self._capacity_wait_milliseconds.append(duration_milliseconds)

    def snapshot(self) -> dict:
        """
        Return a point-in-time snapshot of all collected metrics.

        ``capacity_waits`` is ``{"count": 0}`` until the first wait is
        observed; afterwards it carries count, minimum, maximum, average
        and 95th percentile values in milliseconds.
        """
        with self._lock:
            result: dict = {
                "collected_at": _format_current_utc_timestamp(),
                "service_started_at": self._service_started_at,
                "admission_counts": dict(self._admission_counts),
            }

            observation_count = len(self._capacity_wait_milliseconds)
            if observation_count == 0:
                result["capacity_waits"] = {"count": 0}
                return result

            sorted_observations = sorted(self._capacity_wait_milliseconds)
            percentile_95_index = min(
                int(observation_count * 0.95),
                observation_count - 1,
            )
            result["capacity_waits"] = {
                "count": observation_count,
                "minimum_milliseconds": round(sorted_observations[0], 1),
                "maximum_milliseconds": round(sorted_observations[-1], 1),
                "average_milliseconds": round(sum(sorted_observations) / observation_count, 1),
                "ninety_fifth_percentile_milliseconds": round(sorted_observations[percentile_95_index], 1),
            }
            return result


def _format_current_utc_timestamp() -> str:
    """Current UTC time as ISO 8601 with microseconds, e.g. ``2026-02-23T14:32:10.123456Z``."""
    return datetime.datetime.now(datetime.UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
