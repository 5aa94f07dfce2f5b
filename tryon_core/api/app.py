"""
Job API routes.

Job creation and status for stores, callbacks for the generation worker,
and consumption, which is where the reserved credit is committed.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tryon_core.config.loader import AppConfig
from tryon_core.core.errors import (
    InvalidJobRequestError,
    InvalidTransitionError,
    JobNotFoundError,
    LedgerUnavailableError,
)
from tryon_core.core.ledger import LedgerResult
from tryon_core.core.service import GenerationRequest, GenerationService, build_service
from tryon_core.storage.models import GenerationJob, JobResult

from .schemas import CompleteJobRequest, CreateJobRequest, FailJobRequest

logger = logging.getLogger(__name__)

router = APIRouter()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def job_to_payload(job: GenerationJob) -> Dict[str, Any]:
    """Public shape of a job on the status endpoint."""
    return {
        "jobId": job.id,
        "status": job.status.value,
        "reservationId": job.reservation_id,
        "retryCount": job.retry_count,
        "maxRetries": job.max_retries,
        "createdAt": _iso(job.created_at),
        "startedAt": _iso(job.started_at),
        "completedAt": _iso(job.completed_at),
        "failedAt": _iso(job.failed_at),
        "viewedAt": _iso(job.viewed_at),
        "error": job.error,
        "errorDetails": job.error_details,
        "result": job.result.to_dict() if job.result else None,
        "creditCommitted": job.credit_committed,
    }


def _ledger_payload(result: LedgerResult) -> JSONResponse:
    if result.ok:
        return JSONResponse(status_code=200, content={
            "committed": True,
            "sandbox": result.sandbox,
            "remainingBalance": result.remaining_balance,
        })
    return JSONResponse(status_code=result.http_status, content={
        "error": result.error.value,
        "message": result.message,
    })


def _service(request: Request) -> GenerationService:
    return request.app.state.service


@router.post("/jobs")
def create_job(body: CreateJobRequest, request: Request):
    outcome = _service(request).submit(GenerationRequest(
        store_id=body.store_id,
        person_image_url=body.person_image_url,
        product_ids=body.product_ids,
        options=body.options,
        customer_id=body.customer_id,
        customer_name=body.customer_name,
    ))
    if not outcome.ok:
        return JSONResponse(status_code=outcome.http_status, content={
            "error": outcome.error.value,
            "message": outcome.message,
        })
    return JSONResponse(status_code=202, content={
        "jobId": outcome.job_id,
        "reservationId": outcome.reservation_id,
        "status": outcome.status.value,
    })


@router.get("/jobs/{job_id}")
def get_job(job_id: str, request: Request):
    job = _service(request).jobs.require(job_id)
    return job_to_payload(job)


@router.post("/jobs/{job_id}/processing")
def start_job(job_id: str, request: Request):
    service = _service(request)
    service.start_processing(job_id)
    return job_to_payload(service.jobs.require(job_id))


@router.post("/jobs/{job_id}/complete")
def complete_job(job_id: str, body: CompleteJobRequest, request: Request):
    service = _service(request)
    service.record_worker_result(
        job_id,
        JobResult(
            image_url=body.image_url,
            composition_id=body.composition_id,
            scene_image_urls=tuple(body.scene_image_urls),
            total_cost=body.total_cost,
            processing_time=body.processing_time,
        ),
        api_cost=body.api_cost,
    )
    return job_to_payload(service.jobs.require(job_id))


@router.post("/jobs/{job_id}/fail")
def fail_job(job_id: str, body: FailJobRequest, request: Request):
    transition = _service(request).record_worker_failure(job_id, body.error, body.error_details)
    payload = job_to_payload(transition.job)
    payload["requeued"] = transition.requeued
    return payload


@router.post("/jobs/{job_id}/consume")
def consume_job(job_id: str, request: Request):
    return _ledger_payload(_service(request).consume(job_id))


@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, request: Request):
    service = _service(request)
    service.cancel(job_id)
    return job_to_payload(service.jobs.require(job_id))


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code, "message": message})


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field_path = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        return _error(400, "invalid_request", f"{field_path}: {first.get('msg', 'invalid input')}")

    @app.exception_handler(InvalidJobRequestError)
    async def invalid_job(request: Request, exc: InvalidJobRequestError):
        return _error(400, "invalid_request", str(exc))

    @app.exception_handler(JobNotFoundError)
    async def job_not_found(request: Request, exc: JobNotFoundError):
        return _error(404, "job_not_found", str(exc))

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition(request: Request, exc: InvalidTransitionError):
        return _error(409, "invalid_transition", str(exc))

    @app.exception_handler(LedgerUnavailableError)
    async def ledger_unavailable(request: Request, exc: LedgerUnavailableError):
        logger.error("Ledger unavailable: %s", exc)
        return _error(503, "ledger_unavailable", "Credit ledger is unavailable, try again shortly")


def create_app(
    service: Optional[GenerationService] = None,
    config: Optional[AppConfig] = None,
) -> FastAPI:
    """Build the job API.

    Args:
        service: Pre-built service; built from ``config`` when omitted
        config: Configuration used to build the service

    Returns:
        FastAPI application with the job routes mounted
    """
    service = service or build_service(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        service.dispatcher.shutdown(wait=False)

    app = FastAPI(title="Try-On Core", lifespan=lifespan)
    app.state.service = service
    app.include_router(router)
    _register_error_handlers(app)
    return app
