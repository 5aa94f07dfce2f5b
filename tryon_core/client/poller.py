"""
Client-side job poller.

Waits for a generation job to reach a terminal state by reading the
job-status endpoint on a fixed cadence, without blocking any server thread.

Policy:
- PENDING / PROCESSING / unknown status / 404: wait the fixed interval
- COMPLETED with an image: success
- COMPLETED without an image: JobIntegrityError, no retry
- FAILED: GenerationFailedError with the worker's error, no retry
- CANCELLED: JobCancelledError
- Transport errors: exponential backoff, PollConnectionError after
  ``max_consecutive_errors`` in a row
- Deadline passed: PollTimeoutError, the job keeps running server-side
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from tryon_core.core.errors import (
    GenerationFailedError,
    JobCancelledError,
    JobIntegrityError,
    PollCancelledError,
    PollConnectionError,
    PollTimeoutError,
)
from tryon_core.storage.models import JobStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollResult:
    """Successful end of a poll."""
    job_id: str
    image_url: str
    result: Dict[str, Any]
    attempts: int
    elapsed_seconds: float


class _TransportFailure(Exception):
    """Internal marker for a request that should count against the error budget."""


class JobPoller:
    """Cancellable polling loop over ``GET {base_url}/jobs/{job_id}``."""

    def __init__(
        self,
        base_url: str,
        interval_seconds: float = 2.0,
        deadline_seconds: float = 180.0,
        max_consecutive_errors: int = 5,
        backoff_base_seconds: float = 1.0,
        backoff_cap_seconds: float = 16.0,
        request_timeout_seconds: float = 10.0,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
        wait: Optional[Callable[[float], bool]] = None,
        on_status: Optional[Callable[[str, Dict[str, Any]], None]] = None,
    ):
        """Initialize the poller.

        Args:
            base_url: Root URL of the job API
            interval_seconds: Steady-state delay between status reads
            deadline_seconds: Overall time budget for one ``poll`` call
            max_consecutive_errors: Transport errors in a row before giving up
            backoff_base_seconds: First backoff delay after a transport error
            backoff_cap_seconds: Upper bound for the backoff delay
            request_timeout_seconds: Timeout for each status request
            client: Pre-built HTTP client, mainly for tests
            clock: Monotonic seconds
            wait: Sleep function returning True when the poll was stopped;
                defaults to waiting on the internal stop event
            on_status: Called with each observed status and payload
        """
        self.base_url = base_url.rstrip("/")
        self.interval_seconds = interval_seconds
        self.deadline_seconds = deadline_seconds
        self.max_consecutive_errors = max_consecutive_errors
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_cap_seconds = backoff_cap_seconds
        self._client = client or httpx.Client(timeout=request_timeout_seconds)
        self._owns_client = client is None
        self._clock = clock
        self._stop = threading.Event()
        self._wait = wait or self._stop.wait
        self._on_status = on_status

    def stop(self) -> None:
        """Abort a running ``poll`` from another thread.

        Also applies to a ``poll`` that has not started yet; call ``reset``
        to reuse the poller afterwards.
        """
        self._stop.set()

    def reset(self) -> None:
        """Clear a previous ``stop`` so the poller can be used again."""
        self._stop.clear()

    def close(self) -> None:
        self.stop()
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "JobPoller":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def backoff_delay(self, consecutive_errors: int) -> float:
        """Delay after the n-th consecutive transport error."""
        delay = self.backoff_base_seconds * (2 ** (consecutive_errors - 1))
        return min(delay, self.backoff_cap_seconds)

    def poll(self, job_id: str) -> PollResult:
        """Block until the job is terminal, the deadline passes or ``stop`` is called.

        Returns:
            PollResult for a completed job

        Raises:
            GenerationFailedError: The job ended FAILED
            JobIntegrityError: COMPLETED without a result image
            JobCancelledError: The job was cancelled
            PollConnectionError: Too many consecutive transport errors
            PollTimeoutError: Deadline reached
            PollCancelledError: ``stop`` was called
        """
        started = self._clock()
        deadline = started + self.deadline_seconds
        attempts = 0
        consecutive_errors = 0

        while True:
            if self._stop.is_set():
                raise PollCancelledError(f"Polling of job {job_id} was stopped", job_id=job_id)
            if self._clock() >= deadline:
                raise PollTimeoutError(
                    f"Job {job_id} not finished after {self.deadline_seconds:.0f}s", job_id=job_id
                )

            attempts += 1
            try:
                payload = self._fetch(job_id)
            except _TransportFailure as e:
                consecutive_errors += 1
                logger.warning(
                    "Polling job %s failed (%d/%d): %s",
                    job_id, consecutive_errors, self.max_consecutive_errors, e,
                )
                if consecutive_errors >= self.max_consecutive_errors:
                    raise PollConnectionError(
                        f"Lost connection while polling job {job_id}: {e}", job_id=job_id
                    ) from e
                delay = self.backoff_delay(consecutive_errors)
            else:
                consecutive_errors = 0
                result = self._handle(job_id, payload, attempts, started)
                if result is not None:
                    return result
                delay = self.interval_seconds

            remaining = deadline - self._clock()
            if remaining <= 0:
                continue
            if self._wait(min(delay, remaining)):
                raise PollCancelledError(f"Polling of job {job_id} was stopped", job_id=job_id)

    def _fetch(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Read the job status; None means the job is not visible yet."""
        try:
            response = self._client.get(f"{self.base_url}/jobs/{job_id}")
        except httpx.TransportError as e:
            raise _TransportFailure(f"{type(e).__name__}: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise _TransportFailure(f"HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as e:
            raise _TransportFailure(f"Malformed response body: {e}") from e
        if not isinstance(payload, dict):
            raise _TransportFailure("Malformed response body")
        return payload

    def _handle(
        self,
        job_id: str,
        payload: Optional[Dict[str, Any]],
        attempts: int,
        started: float,
    ) -> Optional[PollResult]:
        if payload is None:
            logger.debug("Job %s not visible yet", job_id)
            return None

        status = payload.get("status")
        if self._on_status is not None:
            self._on_status(status, payload)

        if status == JobStatus.COMPLETED.value:
            result = payload.get("result") or {}
            image_url = result.get("imageUrl") if isinstance(result, dict) else None
            if not image_url:
                raise JobIntegrityError(
                    f"Job {job_id} completed without a result image", job_id=job_id
                )
            return PollResult(
                job_id=job_id,
                image_url=image_url,
                result=result,
                attempts=attempts,
                elapsed_seconds=self._clock() - started,
            )
        if status == JobStatus.FAILED.value:
            raise GenerationFailedError(job_id, payload.get("error"), payload.get("errorDetails"))
        if status == JobStatus.CANCELLED.value:
            raise JobCancelledError(f"Job {job_id} was cancelled", job_id=job_id)

        if status not in (JobStatus.PENDING.value, JobStatus.PROCESSING.value):
            logger.debug("Job %s reported unrecognized status %r", job_id, status)
        return None
