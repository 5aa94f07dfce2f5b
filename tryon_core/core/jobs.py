"""
Generation job store and state machine.

Transitions:
    PENDING    -> PROCESSING | CANCELLED
    PROCESSING -> COMPLETED | FAILED* | CANCELLED
    FAILED*    -> PENDING while retry_count < max_retries (requeue)

COMPLETED, CANCELLED and FAILED are terminal. Every write is a single-row
compare-and-swap on the current status, so a worker completing a job and a
recovery sweep retrying it cannot both win. Worker reports only apply to a
PROCESSING job, so a late report against a requeued job is ignored.
"""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from tryon_core.storage.db import DEFAULT_DB_PATH, get_connection
from tryon_core.storage.models import (
    ACTIVE_JOB_STATUSES,
    GenerationJob,
    JobResult,
    JobStatus,
)
from tryon_core.storage.repository import row_to_job

from .errors import InvalidJobRequestError, JobNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobTransition:
    """Outcome of a failure report against a job."""
    applied: bool
    job: Optional[GenerationJob]
    requeued: bool = False

    @property
    def terminal(self) -> bool:
        return self.applied and not self.requeued

    @property
    def should_release_credit(self) -> bool:
        """True when the job ended FAILED and its reservation must be rolled back."""
        return self.terminal


class JobStore:
    """Persistence and state machine for generation jobs."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        max_retries: int = 3,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.db_path = db_path
        self.max_retries = max_retries
        self._clock = clock

    def create(
        self,
        store_id: str,
        reservation_id: str,
        person_image_url: str,
        product_ids: List[str],
        options: Optional[Dict[str, Any]] = None,
        customer_id: Optional[str] = None,
        customer_name: Optional[str] = None,
    ) -> str:
        """Persist a new PENDING job bound to an existing reservation.

        Never touches the ledger. If this raises after a successful
        reservation, the caller owns rolling that reservation back.

        Returns:
            The new job id

        Raises:
            InvalidJobRequestError: If a required field is missing
        """
        if not store_id or not store_id.strip():
            raise InvalidJobRequestError("store_id is required")
        if not reservation_id or not reservation_id.strip():
            raise InvalidJobRequestError("reservation_id is required")
        if not person_image_url or not person_image_url.strip():
            raise InvalidJobRequestError("person_image_url is required")
        if not product_ids or not all(isinstance(p, str) and p.strip() for p in product_ids):
            raise InvalidJobRequestError("product_ids must be a non-empty list of ids")

        job_id = uuid.uuid4().hex
        now = self._clock().isoformat()
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO generation_jobs
                (id, store_id, customer_id, customer_name, status, reservation_id,
                 person_image_url, product_ids, options, retry_count, max_retries,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
            """, (
                job_id,
                store_id,
                customer_id,
                customer_name,
                JobStatus.PENDING.value,
                reservation_id,
                person_image_url,
                json.dumps(list(product_ids)),
                json.dumps(options or {}),
                self.max_retries,
                now,
                now,
            ))
        except sqlite3.IntegrityError as e:
            raise InvalidJobRequestError(
                f"Reservation {reservation_id} is already bound to a job"
            ) from e
        finally:
            conn.close()

        logger.info("Created job %s for store %s (reservation %s)", job_id, store_id, reservation_id)
        return job_id

    def get(self, job_id: str) -> Optional[GenerationJob]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM generation_jobs WHERE id = ?", (job_id,)
            ).fetchone()
            return row_to_job(row) if row else None
        finally:
            conn.close()

    def require(self, job_id: str) -> GenerationJob:
        """Like ``get`` but raises JobNotFoundError for unknown ids."""
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def mark_processing(self, job_id: str) -> bool:
        """Claim a PENDING job for the worker."""
        now = self._clock().isoformat()
        return self._swap(
            job_id,
            [JobStatus.PENDING],
            "status = ?, started_at = ?, updated_at = ?",
            (JobStatus.PROCESSING.value, now, now),
        )

    def mark_completed(
        self,
        job_id: str,
        result: JobResult,
        api_cost: Optional[float] = None,
    ) -> bool:
        """Store the worker's result and move the job to COMPLETED.

        Committing the credit is not done here: it happens once the
        customer actually consumes the result.

        Returns:
            False unless the job was PROCESSING

        Raises:
            InvalidJobRequestError: If the result carries no image
        """
        if result is None or not result.image_url:
            raise InvalidJobRequestError("A completed job needs a result image_url")

        now = self._clock().isoformat()
        applied = self._swap(
            job_id,
            [JobStatus.PROCESSING],
            "status = ?, result = ?, api_cost = ?, completed_at = ?, updated_at = ?",
            (JobStatus.COMPLETED.value, json.dumps(result.to_dict()), api_cost, now, now),
        )
        if applied:
            logger.info("Job %s completed: %s", job_id, result.image_url)
        return applied

    def mark_failed_and_maybe_requeue(
        self,
        job_id: str,
        error: str,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> JobTransition:
        """Record a failed attempt.

        With retries left the job goes back to PENDING and ``retry_count``
        is incremented. Otherwise it becomes FAILED for good and the caller
        must roll back the reservation.

        Returns:
            JobTransition describing what happened; ``applied`` is False when
            the job was not PROCESSING or a concurrent transition won
        """
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.PROCESSING:
            return JobTransition(applied=False, job=job)

        now = self._clock().isoformat()
        details = json.dumps(error_details) if error_details is not None else None
        conn = get_connection(self.db_path)
        try:
            if job.can_retry:
                cursor = conn.execute("""
                    UPDATE generation_jobs
                    SET status = ?, retry_count = retry_count + 1, error = ?,
                        error_details = ?, started_at = NULL, updated_at = ?
                    WHERE id = ? AND status = ? AND retry_count = ?
                """, (
                    JobStatus.PENDING.value, error, details, now,
                    job_id, job.status.value, job.retry_count,
                ))
            else:
                cursor = conn.execute("""
                    UPDATE generation_jobs
                    SET status = ?, error = ?, error_details = ?,
                        failed_at = ?, updated_at = ?
                    WHERE id = ? AND status = ? AND retry_count = ?
                """, (
                    JobStatus.FAILED.value, error, details, now, now,
                    job_id, job.status.value, job.retry_count,
                ))
            applied = cursor.rowcount == 1
        finally:
            conn.close()

        updated = self.get(job_id)
        if not applied:
            logger.info("Failure report for job %s lost a race; now %s", job_id, updated.status.value)
            return JobTransition(applied=False, job=updated)

        if job.can_retry:
            logger.warning(
                "Job %s failed (%s); requeued, attempt %d of %d",
                job_id, error, updated.retry_count, updated.max_retries,
            )
            return JobTransition(applied=True, job=updated, requeued=True)

        logger.error("Job %s failed permanently after %d retries: %s", job_id, job.retry_count, error)
        return JobTransition(applied=True, job=updated)

    def cancel(self, job_id: str) -> bool:
        """Move an active job to CANCELLED."""
        now = self._clock().isoformat()
        applied = self._swap(
            job_id,
            ACTIVE_JOB_STATUSES,
            "status = ?, updated_at = ?",
            (JobStatus.CANCELLED.value, now),
        )
        if applied:
            logger.info("Job %s cancelled", job_id)
        return applied

    def mark_viewed(self, job_id: str) -> bool:
        """Stamp the first time the customer saw a completed result."""
        now = self._clock().isoformat()
        return self._swap(
            job_id,
            [JobStatus.COMPLETED],
            "viewed_at = ?, updated_at = ?",
            (now, now),
            extra_condition="viewed_at IS NULL",
        )

    def mark_credit_committed(self, job_id: str) -> bool:
        now = self._clock().isoformat()
        return self._swap(
            job_id,
            [JobStatus.COMPLETED],
            "credit_committed = 1, updated_at = ?",
            (now,),
            extra_condition="credit_committed = 0",
        )

    def find_stale(self, status: JobStatus, older_than: timedelta, limit: int = 100) -> List[GenerationJob]:
        """Jobs sitting in ``status`` without any update for longer than ``older_than``."""
        cutoff = (self._clock() - older_than).isoformat()
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT * FROM generation_jobs
                WHERE status = ? AND updated_at < ?
                ORDER BY updated_at
                LIMIT ?
            """, (status.value, cutoff, limit))
            return [row_to_job(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def _swap(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        assignments: str,
        params: tuple,
        extra_condition: Optional[str] = None,
    ) -> bool:
        """Apply ``assignments`` only if the job is in one of ``expected``."""
        expected = list(expected)
        placeholders = ", ".join("?" for _ in expected)
        query = (
            f"UPDATE generation_jobs SET {assignments} "
            f"WHERE id = ? AND status IN ({placeholders})"
        )
        if extra_condition:
            query += f" AND {extra_condition}"

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                query, (*params, job_id, *(s.value for s in expected))
            )
            return cursor.rowcount == 1
        finally:
            conn.close()
