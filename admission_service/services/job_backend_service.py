"""
Service for communicating with the downstream job backend.

The backend exposes three endpoints the limiter relies on:

- ``POST /v1/jobs`` launches a job from its ``JobDescription`` JSON.  This
  is the downstream scheduler the ``MaxInFlightLimiter`` forwards
  admitted jobs to.
- ``GET /v1/jobs?labelSelector=...`` lists the backend's job objects as
  ``{"items": [...]}``.  The lifecycle event source calls it once at
  startup to replay existing jobs.
- ``GET /health`` answers 200 while the backend accepts work.  The
  readiness route reports it as the ``job_backend`` check.

Every transport failure is mapped to a service exception so that the
error-handling layer never sees raw ``httpx`` errors: launch failures
become ``JobLaunchError`` and listing failures ``EventSourceSyncError``.
"""

import httpx
import structlog

import admission_service.exceptions
import admission_service.label_selectors
import admission_service.models

logger = structlog.get_logger()


class JobBackendService:
    """
    Asynchronous HTTP client for the job backend.

    Holds a persistent ``httpx.AsyncClient``; ``close`` must be called on
    shutdown to release its connections.  The request timeout also bounds
    how long an admission can hold the limiter lock during a launch.
    """

    def __init__(
        self,
        job_backend_base_url: str,
        request_timeout_seconds: float,
        connection_pool_size: int = 10,
    ) -> None:
        self.job_backend_base_url = job_backend_base_url
        self.http_client = httpx.AsyncClient(
            base_url=job_backend_base_url,
            timeout=httpx.Timeout(request_timeout_seconds),
            limits=httpx.Limits(
                max_connections=connection_pool_size,
                max_keepalive_connections=connection_pool_size,
            ),
        )

    async def create(self, job: admission_service.models.JobDescription) -> None:
        """
        Launch ``job`` on the backend.

        Raises:
            JobLaunchError: When the backend cannot be reached, times out,
                or answers with a non-success status code.
        """
        try:
            http_response = await self.http_client.post("/v1/jobs", json=job.model_dump(mode="json"))
            http_response.raise_for_status()
        except httpx.HTTPStatusError as http_status_error:
            logger.error(
                "job_backend_http_error",
                uuid=job.uuid,
                status_code=http_status_error.response.status_code,
            )
            raise admission_service.exceptions.JobLaunchError(
                detail=(
                    f"The job backend returned HTTP status "
                    f"{http_status_error.response.status_code} while launching job {job.uuid}."
                ),
            ) from http_status_error
        except httpx.TimeoutException as timeout_error:
            logger.error("job_backend_timeout", uuid=job.uuid, error=str(timeout_error))
            raise admission_service.exceptions.JobLaunchError(
                detail=f"The request to launch job {job.uuid} timed out.",
            ) from timeout_error
        except httpx.RequestError as request_error:
            logger.error(
                "job_backend_request_failed",
                uuid=job.uuid,
                error_type=type(request_error).__name__,
                error=str(request_error),
            )
            raise admission_service.exceptions.JobLaunchError(
                detail=f"The job backend is not reachable: {type(request_error).__name__}.",
            ) from request_error

    async def list_jobs(
        self,
        label_selector: admission_service.label_selectors.LabelSelector,
    ) -> list[admission_service.models.JobObject]:
        """
        List the backend's jobs matching ``label_selector``.

        Raises:
            EventSourceSyncError: When the request fails or the response
                body is not a job list.
        """
        try:
            http_response = await self.http_client.get(
                "/v1/jobs",
                params={"labelSelector": str(label_selector)},
            )
            http_response.raise_for_status()
        except httpx.HTTPStatusError as http_status_error:
            logger.error(
                "job_backend_list_http_error",
                status_code=http_status_error.response.status_code,
            )
            raise admission_service.exceptions.EventSourceSyncError(
                detail=(
                    f"The job backend returned HTTP status "
                    f"{http_status_error.response.status_code} while listing jobs."
                ),
            ) from http_status_error
        except httpx.RequestError as request_error:
            logger.error(
                "job_backend_list_failed",
                error_type=type(request_error).__name__,
                error=str(request_error),
            )
            raise admission_service.exceptions.EventSourceSyncError(
                detail=f"Listing jobs from the job backend failed: {type(request_error).__name__}.",
            ) from request_error

        try:
            response_body = http_response.json()
            return [admission_service.models.JobObject.model_validate(item) for item in response_body["items"]]
        except (ValueError, KeyError, TypeError) as parsing_error:
            logger.error("job_backend_list_parsing_failed", error=str(parsing_error))
            raise admission_service.exceptions.EventSourceSyncError(
                detail="The job backend returned an unexpected job list structure.",
            ) from parsing_error

    async def check_health(self) -> bool:
        """Return ``True`` when the backend answers ``GET /health`` with 200."""
        try:
            response = await self.http_client.get("/health", timeout=5.0)
        except httpx.HTTPError as health_check_error:
            logger.warning("job_backend_unreachable", error=str(health_check_error))
            return False
        return response.status_code == 200

    async def close(self) -> None:
        await self.http_client.aclose()
