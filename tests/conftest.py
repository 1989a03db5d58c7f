"""Root test configuration: shared job and job-object factories."""

import asyncio
from unittest.mock import AsyncMock

import pytest

import admission_service.models


@pytest.fixture
def job_scheduler():
    """A downstream scheduler whose ``create`` always succeeds."""
    scheduler = AsyncMock()
    scheduler.create = AsyncMock(return_value=None)
    return scheduler


@pytest.fixture
def make_job():
    def _make_job(job_uuid: str, tags: list[str] | None = None) -> admission_service.models.JobDescription:
        return admission_service.models.JobDescription(
            uuid=job_uuid,
            tags=tags if tags is not None else ["queue=default"],
            payload={"command": "make test"},
        )

    return _make_job


@pytest.fixture
def make_job_object():
    """
    Build backend job objects labelled for the default ``queue=default``
    tag.  ``condition`` adds one status condition (e.g. ``"Complete"``).
    """

    def _make_job_object(
        job_uuid: str | None,
        condition: str | None = None,
        tag_label_value: str = "queue_default",
    ) -> admission_service.models.JobObject:
        labels = {admission_service.models.JOB_TAG_LABEL: tag_label_value}
        if job_uuid is not None:
            labels[admission_service.models.JOB_UUID_LABEL] = job_uuid
        conditions = [{"type": condition, "status": "True"}] if condition else []
        return admission_service.models.JobObject.model_validate(
            {
                "metadata": {"name": f"job-{job_uuid}", "namespace": "jobs", "labels": labels},
                "status": {"conditions": conditions},
            }
        )

    return _make_job_object


@pytest.fixture
def settle():
    """Let every runnable task advance until it blocks again."""

    async def _settle(iterations: int = 20) -> None:
        for _ in range(iterations):
            await asyncio.sleep(0)

    return _settle
