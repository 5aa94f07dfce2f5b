"""
Job dispatch to the external generation worker.

Dispatch is fire-and-forget: two independent best-effort triggers are sent
on a background pool and the caller never waits on them. The recovery sweep
picks up whatever those triggers missed, which together gives an
at-least-once processing attempt for every job.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

import httpx

from tryon_core.storage.models import JobStatus

from .jobs import JobStore
from .ledger import ReservationLedger

logger = logging.getLogger(__name__)

PROCESSING_TIMEOUT_ERROR = "Processing timed out"


class JobDispatcher:
    """Sends worker triggers without blocking the request path."""

    def __init__(
        self,
        process_url: Optional[str],
        sweep_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
        max_workers: int = 4,
        client: Optional[httpx.Client] = None,
    ):
        """Initialize the dispatcher.

        Args:
            process_url: Worker endpoint that processes one job
            sweep_url: Fallback endpoint that sweeps pending jobs
            timeout_seconds: Per-request timeout for each trigger
            max_workers: Size of the background pool
            client: Pre-built HTTP client, mainly for tests
        """
        self.process_url = process_url
        self.sweep_url = sweep_url
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._owns_client = client is None
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="tryon-dispatch"
        )

    def dispatch(self, job_id: str) -> List[Future]:
        """Fire the primary and fallback triggers for a job.

        Returns immediately. The futures are returned for observability
        only; they always resolve to True or False, never raise.
        """
        futures = []
        if self.process_url:
            futures.append(self._executor.submit(self._post, self.process_url, job_id, "process"))
        if self.sweep_url:
            futures.append(self._executor.submit(self._post, self.sweep_url, job_id, "sweep"))
        if not futures:
            logger.warning("No worker endpoints configured; job %s waits for the sweep", job_id)
        return futures

    def _post(self, url: str, job_id: str, label: str) -> bool:
        try:
            response = self._client.post(url, json={"jobId": job_id})
        except httpx.HTTPError as e:
            logger.warning("%s trigger for job %s failed: %s", label, job_id, e)
            return False
        if response.is_error:
            logger.warning(
                "%s trigger for job %s returned HTTP %d", label, job_id, response.status_code
            )
            return False
        logger.debug("%s trigger for job %s accepted", label, job_id)
        return True

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        if self._owns_client:
            self._client.close()


@dataclass
class SweepReport:
    """Jobs touched by one recovery sweep."""
    redispatched: List[str] = field(default_factory=list)
    requeued: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.redispatched) + len(self.requeued) + len(self.failed)


class RecoverySweep:
    """Re-drives jobs the fire-and-forget triggers left behind.

    - PENDING for too long: dispatched again.
    - PROCESSING for too long: counted as a failed attempt, then requeued
      and dispatched, or failed for good with its reservation rolled back.
    """

    def __init__(
        self,
        jobs: JobStore,
        ledger: ReservationLedger,
        dispatcher: JobDispatcher,
        stale_pending_seconds: float = 120.0,
        stale_processing_seconds: float = 600.0,
        batch_size: int = 100,
    ):
        self.jobs = jobs
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.stale_pending = timedelta(seconds=stale_pending_seconds)
        self.stale_processing = timedelta(seconds=stale_processing_seconds)
        self.batch_size = batch_size

    def run_once(self) -> SweepReport:
        report = SweepReport()

        for job in self.jobs.find_stale(JobStatus.PENDING, self.stale_pending, self.batch_size):
            self.dispatcher.dispatch(job.id)
            report.redispatched.append(job.id)

        for job in self.jobs.find_stale(JobStatus.PROCESSING, self.stale_processing, self.batch_size):
            transition = self.jobs.mark_failed_and_maybe_requeue(job.id, PROCESSING_TIMEOUT_ERROR)
            if not transition.applied:
                continue
            if transition.requeued:
                self.dispatcher.dispatch(job.id)
                report.requeued.append(job.id)
            else:
                result = self.ledger.rollback(job.store_id, job.reservation_id)
                if not result.ok:
                    logger.error(
                        "Could not release reservation %s of failed job %s: %s",
                        job.reservation_id, job.id, result.message,
                    )
                report.failed.append(job.id)

        if report.total:
            logger.info(
                "Sweep: %d redispatched, %d requeued, %d failed",
                len(report.redispatched), len(report.requeued), len(report.failed),
            )
        return report
