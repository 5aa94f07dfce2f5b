"""
Generation service.

Ties the ledger, job store, dispatcher and scenario cache together so that a
store pays only for results its customer actually consumed:

    reserve -> create job -> dispatch -> (worker) -> consume -> commit
                                                  -> failed  -> rollback
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from tryon_core.config.loader import AppConfig, default_config
from tryon_core.storage.models import JobResult, JobStatus, ProductRecord
from tryon_core.storage.repository import (
    ProductRepository,
    ScenarioRepository,
    initialize_schema,
)

from .dispatcher import JobDispatcher, RecoverySweep
from .errors import InvalidTransitionError, LedgerErrorCode
from .jobs import JobStore, JobTransition
from .ledger import LedgerResult, ReservationLedger
from .scenarios import ScenarioCache

logger = logging.getLogger(__name__)

ProductLookup = Callable[[List[str]], List[ProductRecord]]


@dataclass(frozen=True)
class GenerationRequest:
    """A store's request to generate one look."""
    store_id: str
    person_image_url: str
    product_ids: List[str]
    options: Dict[str, Any] = field(default_factory=dict)
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None


@dataclass(frozen=True)
class SubmitOutcome:
    """Result of submitting a generation request."""
    ok: bool
    job_id: Optional[str] = None
    reservation_id: Optional[str] = None
    status: Optional[JobStatus] = None
    error: Optional[LedgerErrorCode] = None
    message: str = ""

    @property
    def http_status(self) -> int:
        return 202 if self.ok else self.error.http_status


class GenerationService:
    """Caller-side orchestration of credits and generation jobs."""

    def __init__(
        self,
        ledger: ReservationLedger,
        jobs: JobStore,
        dispatcher: JobDispatcher,
        scenarios: Optional[ScenarioCache] = None,
        product_lookup: Optional[ProductLookup] = None,
    ):
        self.ledger = ledger
        self.jobs = jobs
        self.dispatcher = dispatcher
        self.scenarios = scenarios
        self.product_lookup = product_lookup

    def submit(self, request: GenerationRequest) -> SubmitOutcome:
        """Reserve a credit, persist the job and trigger the worker.

        Returns without waiting for generation. If the job cannot be
        persisted the reservation is rolled back before the error
        propagates.

        Raises:
            InvalidJobRequestError: If the job fields are invalid
            LedgerUnavailableError: If the ledger cannot be reached
        """
        reservation = self.ledger.reserve(request.store_id)
        if not reservation.ok:
            return SubmitOutcome(ok=False, error=reservation.error, message=reservation.message)

        try:
            options = self._with_scenario(request)
            job_id = self.jobs.create(
                store_id=request.store_id,
                reservation_id=reservation.reservation_id,
                person_image_url=request.person_image_url,
                product_ids=request.product_ids,
                options=options,
                customer_id=request.customer_id,
                customer_name=request.customer_name,
            )
        except Exception:
            released = self.ledger.rollback(request.store_id, reservation.reservation_id)
            logger.error(
                "Job creation failed for store %s; reservation %s released=%s",
                request.store_id, reservation.reservation_id, released.ok,
            )
            raise

        self.dispatcher.dispatch(job_id)
        return SubmitOutcome(
            ok=True,
            job_id=job_id,
            reservation_id=reservation.reservation_id,
            status=JobStatus.PENDING,
        )

    def _with_scenario(self, request: GenerationRequest) -> Dict[str, Any]:
        """Attach a matched background scenario unless the caller chose one.

        A failing product lookup or scenario load only costs the scenario;
        the job is still created without one.
        """
        options = dict(request.options or {})
        if "scenario" in options or self.scenarios is None or self.product_lookup is None:
            return options

        try:
            products = self.product_lookup(request.product_ids)
            scenario = self.scenarios.match_products(products) if products else None
        except Exception as e:
            logger.warning(
                "Scenario selection failed for store %s, continuing without one: %s",
                request.store_id, e,
            )
            return options
        if scenario is not None:
            options["scenario"] = {
                "id": scenario.id,
                "imageUrl": scenario.image_url,
                "lightingPrompt": scenario.lighting_prompt,
                "category": scenario.category,
            }
        return options

    def start_processing(self, job_id: str) -> None:
        """Worker claims a job.

        Raises:
            JobNotFoundError: If the job doesn't exist
            InvalidTransitionError: If the job is not PENDING
        """
        job = self.jobs.require(job_id)
        if not self.jobs.mark_processing(job_id):
            raise InvalidTransitionError(job_id, self.jobs.require(job_id).status, JobStatus.PROCESSING.value)
        logger.info("Job %s picked up (attempt %d)", job_id, job.retry_count + 1)

    def record_worker_result(self, job_id: str, result: JobResult, api_cost: Optional[float] = None) -> None:
        """Worker reports success. The credit is committed later, on consume."""
        self.jobs.require(job_id)
        if not self.jobs.mark_completed(job_id, result, api_cost=api_cost):
            raise InvalidTransitionError(job_id, self.jobs.require(job_id).status, JobStatus.COMPLETED.value)

    def record_worker_failure(
        self,
        job_id: str,
        error: str,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> JobTransition:
        """Worker reports a failed attempt.

        Requeued jobs are dispatched again; terminally failed jobs release
        their reservation.
        """
        transition = self.jobs.mark_failed_and_maybe_requeue(job_id, error, error_details)
        if not transition.applied:
            raise InvalidTransitionError(job_id, transition.job.status, JobStatus.FAILED.value)

        if transition.requeued:
            self.dispatcher.dispatch(job_id)
        elif transition.should_release_credit:
            self._release(transition.job.store_id, transition.job.reservation_id, job_id)
        return transition

    def consume(self, job_id: str) -> LedgerResult:
        """Customer viewed the result: debit the reserved credit.

        A second consume hits the ledger's status guard and is refused
        without a second debit.

        Raises:
            JobNotFoundError: If the job doesn't exist
            InvalidTransitionError: If the job has not completed
        """
        job = self.jobs.require(job_id)
        if job.status != JobStatus.COMPLETED:
            raise InvalidTransitionError(job_id, job.status, "consumed")

        self.jobs.mark_viewed(job_id)
        result = self.ledger.commit(job.store_id, job.reservation_id)
        if result.ok:
            self.jobs.mark_credit_committed(job_id)
        else:
            logger.warning(
                "Credit for job %s not committed: %s (%s)",
                job_id, result.error.value, result.message,
            )
        return result

    def cancel(self, job_id: str) -> LedgerResult:
        """Cancel an active job and release its reservation."""
        job = self.jobs.require(job_id)
        if not self.jobs.cancel(job_id):
            raise InvalidTransitionError(job_id, self.jobs.require(job_id).status, JobStatus.CANCELLED.value)
        return self._release(job.store_id, job.reservation_id, job_id)

    def _release(self, store_id: str, reservation_id: str, job_id: str) -> LedgerResult:
        result = self.ledger.rollback(store_id, reservation_id)
        if not result.ok:
            logger.error(
                "Could not release reservation %s of job %s: %s",
                reservation_id, job_id, result.message,
            )
        return result


def build_service(
    config: Optional[AppConfig] = None,
    product_lookup: Optional[ProductLookup] = None,
) -> GenerationService:
    """Wire a GenerationService from configuration.

    Creates the schema if needed so a fresh database is usable immediately.
    Products are looked up in the catalog table unless ``product_lookup``
    is given.
    """
    config = config or default_config()
    db_path = config.database.path
    initialize_schema(db_path)

    dispatcher = JobDispatcher(
        process_url=config.dispatcher.process_url,
        sweep_url=config.dispatcher.sweep_url,
        timeout_seconds=config.dispatcher.timeout_seconds,
        max_workers=config.dispatcher.max_workers,
    )
    return GenerationService(
        ledger=ReservationLedger(db_path, config.ledger),
        jobs=JobStore(db_path, max_retries=config.jobs.max_retries),
        dispatcher=dispatcher,
        scenarios=ScenarioCache(
            ScenarioRepository(db_path), ttl_seconds=config.scenarios.ttl_seconds
        ),
        product_lookup=product_lookup or ProductRepository(db_path),
    )


def build_sweep(service: GenerationService, config: Optional[AppConfig] = None) -> RecoverySweep:
    config = config or default_config()
    return RecoverySweep(
        jobs=service.jobs,
        ledger=service.ledger,
        dispatcher=service.dispatcher,
        stale_pending_seconds=config.dispatcher.stale_pending_seconds,
        stale_processing_seconds=config.dispatcher.stale_processing_seconds,
    )
