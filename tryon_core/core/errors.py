"""
Error taxonomy for the credit and job subsystem.

Expected business outcomes of the ledger are reported as ``LedgerErrorCode``
values inside results. Exceptions are reserved for infrastructure failures,
invalid input and the client-side polling outcomes.
"""

from enum import Enum
from typing import Any, Dict, Optional


class LedgerErrorCode(Enum):
    """Business-level reasons a ledger operation can be refused."""
    INSUFFICIENT_FUNDS = "insufficient_funds"
    BILLING_FROZEN = "billing_frozen"
    INVALID_REQUEST = "invalid_request"
    STORE_NOT_CONFIGURED = "store_not_configured"
    RESERVATION_NOT_FOUND = "reservation_not_found"
    RESERVATION_EXPIRED = "reservation_expired"
    RESERVATION_ALREADY_CONFIRMED = "reservation_already_confirmed"
    RESERVATION_CANCELLED = "reservation_cancelled"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    LedgerErrorCode.INSUFFICIENT_FUNDS: 402,
    LedgerErrorCode.BILLING_FROZEN: 403,
    LedgerErrorCode.INVALID_REQUEST: 400,
    LedgerErrorCode.STORE_NOT_CONFIGURED: 403,
    LedgerErrorCode.RESERVATION_NOT_FOUND: 404,
    LedgerErrorCode.RESERVATION_EXPIRED: 409,
    LedgerErrorCode.RESERVATION_ALREADY_CONFIRMED: 409,
    LedgerErrorCode.RESERVATION_CANCELLED: 409,
}


class TryOnError(Exception):
    """Base class for all errors raised by tryon_core."""


class LedgerUnavailableError(TryOnError):
    """The transaction engine could not be reached or failed mid-transaction."""


class InvalidJobRequestError(TryOnError):
    """A job request or worker report is malformed."""


class JobNotFoundError(TryOnError):
    """No job with the given id is visible."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(TryOnError):
    """The job state machine refused a transition."""

    def __init__(self, job_id: str, current: Any, requested: str):
        super().__init__(
            f"Job {job_id} cannot move to {requested} from {getattr(current, 'value', current)}"
        )
        self.job_id = job_id
        self.current = current
        self.requested = requested


class PollError(TryOnError):
    """Base class for client poller outcomes other than success."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id


class PollTimeoutError(PollError):
    """The deadline passed before the job reached a terminal state."""


class PollConnectionError(PollError):
    """Too many consecutive transport errors while polling."""


class PollCancelledError(PollError):
    """The poller was stopped by its owner."""


class GenerationFailedError(PollError):
    """The job ended FAILED; carries the error recorded by the worker."""

    def __init__(self, job_id: str, error: Optional[str], details: Optional[Dict[str, Any]] = None):
        super().__init__(error or "Generation failed", job_id=job_id)
        self.error = error
        self.details = details


class JobIntegrityError(PollError):
    """The job reported COMPLETED without a result image."""


class JobCancelledError(PollError):
    """The job was cancelled before it produced a result."""
