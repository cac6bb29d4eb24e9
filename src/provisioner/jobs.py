"""Asynchronous job tracking.

Some control plane operations return a job reference instead of a result.
The job carries its own status, independent of the resource's attributes,
and is driven to a terminal status by re-polling it.

AMBIGUITY ON TIMEOUT:
When the local wait gives up, the remote job may still complete later. The
PollTimeoutError carries the last known JobHandle so the caller can re-poll
(JobTracker.await_job with the same id) instead of guessing the outcome.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

from .config import PollConfig
from .errors import RemoteOperationFailed
from .models import JobHandle, JobStatus
from .poller import Cancellation, Poller

if TYPE_CHECKING:
    from .api import Operation, Submission
    from .resource_types import ResourceType

logger = logging.getLogger(__name__)


class JobApi(Protocol):
    """Collaborator primitives the tracker delegates to."""

    def invoke(self, resource_type: ResourceType, operation: Operation) -> Submission: ...

    def fetch_job(self, parent_id: int, job_id: str) -> JobHandle: ...


class JobTracker:
    """Submit operations and wait for their jobs to reach a terminal status."""

    def __init__(
        self,
        api: JobApi,
        config: PollConfig,
        *,
        cancellation: Cancellation | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] | None = None,
    ) -> None:
        self._api = api
        self._poller = Poller(config, cancellation=cancellation, clock=clock, sleep=sleep)

    def submit(self, resource_type: ResourceType, operation: Operation) -> Submission:
        """Invoke the remote operation. The result may or may not carry a job."""
        return self._api.invoke(resource_type, operation)

    def poll_status(self, parent_id: int, job_id: str) -> JobHandle:
        """Fetch the current state of a job."""
        return self._api.fetch_job(parent_id, job_id)

    def await_job(self, parent_id: int, job_id: str) -> JobHandle:
        """Poll a job until it completes.

        Returns:
            The completed JobHandle.

        Raises:
            RemoteOperationFailed: The job reached FAILED; its failure reason
                is attached verbatim. No further polls are made.
            PollTimeoutError: The job was still pending/running at timeout.
                last_state is the last JobHandle seen.
            PollCancelled: External cancellation.
        """

        def job_done() -> tuple[bool, JobHandle]:
            job = self.poll_status(parent_id, job_id)
            if job.status == JobStatus.FAILED:
                logger.error(
                    "Job failed",
                    extra={
                        "job_id": job_id,
                        "parent_id": parent_id,
                        "failure_reason": job.failure_reason,
                    },
                )
                raise RemoteOperationFailed(
                    job.failure_reason or "no failure reason reported",
                    job_id=job_id,
                    payload=job.model_dump(mode="json"),
                )
            return job.status == JobStatus.SUCCEEDED, job

        logger.info("Waiting for job", extra={"job_id": job_id, "parent_id": parent_id})
        job = self._poller.wait(job_done, description=f"job {job_id}")
        logger.info(
            "Job completed",
            extra={
                "job_id": job_id,
                "parent_id": parent_id,
                "resource_action": job.resource_action,
            },
        )
        return job
