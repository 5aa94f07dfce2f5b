"""
Credit reservation ledger.

Implements reserve / commit / rollback over per-store credit balances.

Lifecycle:
1. reserve  - checks the store can pay and records a provisional hold.
              The balance is NOT touched.
2. commit   - debits the balance once the result was actually delivered.
3. rollback - releases the hold when no value will be delivered.

Every operation runs in a ``BEGIN IMMEDIATE`` transaction scoped to one
store, so concurrent commits can never overdraw past ``overdraft_limit``
and a reservation is debited at most once.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from tryon_core.config.loader import LedgerConfig
from tryon_core.storage.db import DEFAULT_DB_PATH, get_connection, immediate_transaction
from tryon_core.storage.models import (
    RESERVATION_AMOUNT,
    SANDBOX_PREFIX,
    BillingStatus,
    Reservation,
    ReservationStatus,
    StoreFinancials,
    is_sandbox_reservation_id,
)
from tryon_core.storage.repository import row_to_financials, row_to_reservation

from .errors import LedgerErrorCode, LedgerUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a ledger operation.

    Business refusals (no funds, frozen billing, terminal reservation) are
    carried in ``error`` rather than raised.
    """
    ok: bool
    reservation: Optional[Reservation] = None
    error: Optional[LedgerErrorCode] = None
    message: str = ""
    remaining_balance: Optional[int] = None
    sandbox: bool = False

    @property
    def reservation_id(self) -> Optional[str]:
        return self.reservation.id if self.reservation else None

    @property
    def http_status(self) -> int:
        return self.error.http_status if self.error else 200

    @classmethod
    def success(cls, reservation: Optional[Reservation] = None, **kwargs) -> "LedgerResult":
        return cls(ok=True, reservation=reservation, **kwargs)

    @classmethod
    def failure(cls, error: LedgerErrorCode, message: str, **kwargs) -> "LedgerResult":
        return cls(ok=False, error=error, message=message, **kwargs)


class ReservationLedger:
    """Transactional reserve / commit / rollback over store balances."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        config: Optional[LedgerConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the ledger.

        Args:
            db_path: Path to SQLite database file
            config: Ledger settings (sandbox toggle, reservation TTL)
            clock: Source of "now", injectable for expiry tests
        """
        self.db_path = db_path
        self.config = config or LedgerConfig()
        self._clock = clock

    @property
    def reservation_ttl(self) -> timedelta:
        return timedelta(hours=self.config.reservation_ttl_hours)

    def reserve(self, store_id: str) -> LedgerResult:
        """Place a one-credit hold for a store.

        Stores in sandbox mode always pass. Stores that were never
        provisioned, or lack financial fields, pass as sandbox only while
        ``sandbox_passthrough`` is enabled.

        Args:
            store_id: Store requesting the credit

        Returns:
            LedgerResult with the new reservation, or the refusal reason

        Raises:
            LedgerUnavailableError: If the database cannot be used
        """
        if not store_id or not store_id.strip():
            return LedgerResult.failure(
                LedgerErrorCode.INVALID_REQUEST, "store_id is required"
            )

        now = self._clock()
        conn = self._connect()
        try:
            with immediate_transaction(conn):
                financials = self._load_financials(conn, store_id)

                if financials is not None and financials.sandbox_mode:
                    return self._sandbox_reservation(store_id, now, financials, "sandbox mode")

                if financials is None or not financials.is_configured:
                    reason = "store not found" if financials is None else "billing not configured"
                    if not self.config.sandbox_passthrough:
                        logger.error("Refusing reservation for %s: %s", store_id, reason)
                        return LedgerResult.failure(
                            LedgerErrorCode.STORE_NOT_CONFIGURED,
                            f"Billing is not configured for store {store_id}",
                        )
                    return self._sandbox_reservation(store_id, now, financials, reason)

                if financials.billing_status == BillingStatus.FROZEN:
                    logger.info("Reservation refused for %s: billing frozen", store_id)
                    return LedgerResult.failure(
                        LedgerErrorCode.BILLING_FROZEN,
                        "Account is frozen. Settle billing to resume generating.",
                    )

                if financials.available_balance <= 0:
                    logger.info(
                        "Reservation refused for %s: balance %s, overdraft %s",
                        store_id, financials.credits_balance, financials.overdraft_limit,
                    )
                    return LedgerResult.failure(
                        LedgerErrorCode.INSUFFICIENT_FUNDS,
                        "Insufficient credits. Top up the wallet to keep generating.",
                        remaining_balance=financials.credits_balance,
                    )

                reservation = Reservation(
                    id=uuid.uuid4().hex,
                    store_id=store_id,
                    status=ReservationStatus.RESERVED,
                    amount=RESERVATION_AMOUNT,
                    created_at=now,
                    expires_at=now + self.reservation_ttl,
                )
                conn.execute("""
                    INSERT INTO credit_reservations
                    (id, store_id, status, amount, created_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    reservation.id,
                    reservation.store_id,
                    reservation.status.value,
                    reservation.amount,
                    reservation.created_at.isoformat(),
                    reservation.expires_at.isoformat(),
                ))
        except sqlite3.OperationalError as e:
            raise LedgerUnavailableError(f"Reserve failed for store {store_id}: {e}") from e
        finally:
            conn.close()

        logger.info("Reserved credit %s for store %s", reservation.id, store_id)
        return LedgerResult.success(
            reservation, remaining_balance=financials.credits_balance
        )

    def commit(self, store_id: str, reservation_id: str) -> LedgerResult:
        """Debit a reserved credit.

        The balance is re-checked here: other commits may have drained it
        since the reservation was granted, in which case the commit fails
        even though the work was already done.

        Args:
            store_id: Store owning the reservation
            reservation_id: Reservation to confirm

        Returns:
            LedgerResult carrying the remaining balance, or the refusal reason

        Raises:
            LedgerUnavailableError: If the database cannot be used
        """
        if is_sandbox_reservation_id(reservation_id):
            return LedgerResult.success(sandbox=True, message="sandbox reservation")

        now = self._clock()
        conn = self._connect()
        try:
            with immediate_transaction(conn):
                reservation = self._load_reservation(conn, store_id, reservation_id)
                refusal = self._check_open(reservation, reservation_id)
                if refusal is not None:
                    return refusal

                if reservation.is_expired(now):
                    return LedgerResult.failure(
                        LedgerErrorCode.RESERVATION_EXPIRED,
                        f"Reservation {reservation_id} expired at {reservation.expires_at.isoformat()}",
                        reservation=reservation,
                    )

                financials = self._load_financials(conn, store_id)
                if financials is None or not financials.is_configured:
                    return LedgerResult.failure(
                        LedgerErrorCode.STORE_NOT_CONFIGURED,
                        f"Billing is not configured for store {store_id}",
                        reservation=reservation,
                    )

                if financials.available_balance < reservation.amount:
                    logger.warning(
                        "Commit of %s refused for %s: balance drained to %s",
                        reservation_id, store_id, financials.credits_balance,
                    )
                    return LedgerResult.failure(
                        LedgerErrorCode.INSUFFICIENT_FUNDS,
                        "Insufficient credits to confirm this reservation.",
                        reservation=reservation,
                        remaining_balance=financials.credits_balance,
                    )

                remaining = financials.credits_balance - reservation.amount
                conn.execute(
                    "UPDATE store_financials SET credits_balance = ? WHERE store_id = ?",
                    (remaining, store_id),
                )
                conn.execute("""
                    UPDATE credit_reservations
                    SET status = ?, confirmed_at = ?
                    WHERE id = ? AND status = ?
                """, (
                    ReservationStatus.CONFIRMED.value,
                    now.isoformat(),
                    reservation_id,
                    ReservationStatus.RESERVED.value,
                ))
        except sqlite3.OperationalError as e:
            raise LedgerUnavailableError(f"Commit failed for reservation {reservation_id}: {e}") from e
        finally:
            conn.close()

        logger.info("Committed %s for store %s, balance now %s", reservation_id, store_id, remaining)
        return LedgerResult.success(
            replace(reservation, status=ReservationStatus.CONFIRMED, confirmed_at=now),
            remaining_balance=remaining,
        )

    def rollback(self, store_id: str, reservation_id: str) -> LedgerResult:
        """Release a reservation without touching the balance.

        Rolling back an already cancelled reservation succeeds; rolling back
        a confirmed one is refused.

        Args:
            store_id: Store owning the reservation
            reservation_id: Reservation to cancel

        Returns:
            LedgerResult describing the outcome

        Raises:
            LedgerUnavailableError: If the database cannot be used
        """
        if is_sandbox_reservation_id(reservation_id):
            return LedgerResult.success(sandbox=True, message="sandbox reservation")

        now = self._clock()
        conn = self._connect()
        try:
            with immediate_transaction(conn):
                reservation = self._load_reservation(conn, store_id, reservation_id)
                if reservation is None:
                    return LedgerResult.failure(
                        LedgerErrorCode.RESERVATION_NOT_FOUND,
                        f"Reservation {reservation_id} not found",
                    )
                if reservation.status == ReservationStatus.CONFIRMED:
                    return LedgerResult.failure(
                        LedgerErrorCode.RESERVATION_ALREADY_CONFIRMED,
                        f"Reservation {reservation_id} was already debited",
                        reservation=reservation,
                    )
                if reservation.status == ReservationStatus.CANCELLED:
                    return LedgerResult.success(reservation, message="already cancelled")

                conn.execute("""
                    UPDATE credit_reservations
                    SET status = ?, cancelled_at = ?
                    WHERE id = ? AND status = ?
                """, (
                    ReservationStatus.CANCELLED.value,
                    now.isoformat(),
                    reservation_id,
                    ReservationStatus.RESERVED.value,
                ))
        except sqlite3.OperationalError as e:
            raise LedgerUnavailableError(f"Rollback failed for reservation {reservation_id}: {e}") from e
        finally:
            conn.close()

        logger.info("Rolled back %s for store %s", reservation_id, store_id)
        return LedgerResult.success(replace(reservation, status=ReservationStatus.CANCELLED, cancelled_at=now))

    def get_balance(self, store_id: str) -> Optional[StoreFinancials]:
        """Read a store's financial record without locking."""
        conn = self._connect()
        try:
            return self._load_financials(conn, store_id)
        finally:
            conn.close()

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM credit_reservations WHERE id = ?", (reservation_id,)
            ).fetchone()
            return row_to_reservation(row) if row else None
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        try:
            return get_connection(self.db_path)
        except sqlite3.Error as e:
            raise LedgerUnavailableError(f"Cannot open ledger database {self.db_path}: {e}") from e

    def _sandbox_reservation(
        self,
        store_id: str,
        now: datetime,
        financials: Optional[StoreFinancials],
        reason: str,
    ) -> LedgerResult:
        logger.warning("Sandbox passthrough for store %s (%s)", store_id, reason)
        reservation = Reservation(
            id=f"{SANDBOX_PREFIX}{uuid.uuid4().hex}",
            store_id=store_id,
            status=ReservationStatus.RESERVED,
            amount=RESERVATION_AMOUNT,
            created_at=now,
            expires_at=now + self.reservation_ttl,
        )
        return LedgerResult.success(
            reservation,
            sandbox=True,
            message=reason,
            remaining_balance=financials.credits_balance if financials else None,
        )

    @staticmethod
    def _load_financials(conn: sqlite3.Connection, store_id: str) -> Optional[StoreFinancials]:
        row = conn.execute(
            "SELECT * FROM store_financials WHERE store_id = ?", (store_id,)
        ).fetchone()
        return row_to_financials(row) if row else None

    @staticmethod
    def _load_reservation(
        conn: sqlite3.Connection, store_id: str, reservation_id: str
    ) -> Optional[Reservation]:
        row = conn.execute(
            "SELECT * FROM credit_reservations WHERE id = ? AND store_id = ?",
            (reservation_id, store_id),
        ).fetchone()
        return row_to_reservation(row) if row else None

    @staticmethod
    def _check_open(reservation: Optional[Reservation], reservation_id: str) -> Optional[LedgerResult]:
        """Refuse anything that is not a live ``reserved`` hold."""
        if reservation is None:
            return LedgerResult.failure(
                LedgerErrorCode.RESERVATION_NOT_FOUND,
                f"Reservation {reservation_id} not found",
            )
        if reservation.status == ReservationStatus.CONFIRMED:
            return LedgerResult.failure(
                LedgerErrorCode.RESERVATION_ALREADY_CONFIRMED,
                f"Reservation {reservation_id} was already debited",
                reservation=reservation,
            )
        if reservation.status == ReservationStatus.CANCELLED:
            return LedgerResult.failure(
                LedgerErrorCode.RESERVATION_CANCELLED,
                f"Reservation {reservation_id} was cancelled",
                reservation=reservation,
            )
        return None

