"""Quota ledger: the only gate through which metered work is admitted."""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import logging
from typing import Literal
from uuid import uuid4

from lectern.core.logging_safety import safe_log_identifier
from lectern.domain.errors import DenialReason
from lectern.repositories.base import QuotaRecord, QuotaStore, ReservationRecord, ReserveOutcome
from lectern.schemas.quota import QuotaBalance

logger = logging.getLogger(__name__)

QuotaPolicy = Literal["commit_on_success", "decrement_on_admission"]


@dataclass(frozen=True, slots=True)
class Granted:
    reservation: ReservationRecord


@dataclass(frozen=True, slots=True)
class Denied:
    reason: DenialReason


Admission = Granted | Denied


def to_balance(record: QuotaRecord) -> QuotaBalance:
    return QuotaBalance(
        remaining_units=record.remaining_units,
        reserved_units=record.reserved_units,
        available_units=record.available_units,
        unlimited=record.unlimited,
    )


class QuotaLedger:
    """Atomic admission control over per-account unit counters.

    ``commit_on_success`` holds a pending charge until the job resolves and only
    spends the unit on success. ``decrement_on_admission`` spends at admission
    and gives the unit back on failure only when ``refund_on_failure`` is set.
    One policy applies to the whole deployment.
    """

    def __init__(
        self,
        store: QuotaStore,
        *,
        policy: QuotaPolicy = "commit_on_success",
        refund_on_failure: bool = False,
    ) -> None:
        self._store = store
        self.policy = policy
        self.refund_on_failure = refund_on_failure

    def try_consume(self, account_id: str, *, job_id: str | None = None) -> Admission:
        reservation = ReservationRecord(
            reservation_id=f"rsv-{uuid4()}",
            account_id=account_id,
            job_id=job_id,
            created_at=datetime.now(UTC),
        )
        if self.policy == "commit_on_success":
            outcome = self._store.reserve(reservation)
        else:
            outcome = self._store.consume(account_id)
            reservation.charged = True

        safe_account_id = safe_log_identifier(account_id, prefix="acc")
        if outcome is ReserveOutcome.UNLIMITED:
            reservation.unlimited = True
            reservation.charged = False
            logger.info("quota.granted account_id=%s unlimited=true", safe_account_id)
            return Granted(reservation)
        if outcome is ReserveOutcome.RESERVED:
            logger.info(
                "quota.granted account_id=%s reservation_id=%s policy=%s",
                safe_account_id,
                reservation.reservation_id,
                self.policy,
            )
            return Granted(reservation)

        reason: DenialReason = (
            "account_not_found" if outcome is ReserveOutcome.ACCOUNT_NOT_FOUND else "no_remaining_units"
        )
        logger.info("quota.denied account_id=%s reason=%s", safe_account_id, reason)
        return Denied(reason)

    def commit(self, reservation: ReservationRecord) -> bool:
        """Spend the reserved unit. Repeated calls are no-ops."""
        if reservation.settled:
            return False
        reservation.settled = True
        if reservation.unlimited or reservation.charged:
            return True
        committed = self._store.commit_reservation(reservation.reservation_id)
        logger.info(
            "quota.committed reservation_id=%s applied=%s",
            reservation.reservation_id,
            committed,
        )
        return committed

    def release(self, reservation: ReservationRecord) -> bool:
        """Return the reserved unit after an unsuccessful job. Repeated calls are no-ops."""
        if reservation.settled:
            return False
        reservation.settled = True
        if reservation.unlimited:
            return True
        if reservation.charged:
            if not self.refund_on_failure:
                return False
            self.refund(reservation.account_id)
            return True
        released = self._store.release_reservation(reservation.reservation_id)
        logger.info(
            "quota.released reservation_id=%s applied=%s",
            reservation.reservation_id,
            released,
        )
        return released

    def refund(self, account_id: str, units: int = 1) -> QuotaBalance | None:
        updated = self._store.credit(account_id, units, limited_only=True)
        if updated is None:
            return None
        logger.info(
            "quota.refunded account_id=%s units=%s unlimited=%s",
            safe_log_identifier(account_id, prefix="acc"),
            units,
            updated.unlimited,
        )
        return to_balance(updated)

    def grant_units(self, account_id: str, units: int) -> QuotaBalance | None:
        updated = self._store.credit(account_id, units)
        return to_balance(updated) if updated is not None else None

    def mark_unlimited(self, account_id: str) -> QuotaBalance | None:
        updated = self._store.set_unlimited(account_id, True)
        return to_balance(updated) if updated is not None else None

    def mark_limited(self, account_id: str) -> QuotaBalance | None:
        updated = self._store.set_unlimited(account_id, False)
        return to_balance(updated) if updated is not None else None

    def open_account(self, account_id: str, *, remaining_units: int, unlimited: bool = False) -> QuotaBalance:
        return to_balance(
            self._store.open_account(account_id, remaining_units=remaining_units, unlimited=unlimited)
        )

    def ensure_account(self, account_id: str, *, free_units: int) -> QuotaBalance:
        return to_balance(self._store.ensure_account(account_id, remaining_units=free_units))

    def get_balance(self, account_id: str) -> QuotaBalance | None:
        record = self._store.get_account(account_id)
        return to_balance(record) if record is not None else None

    def release_stale(self, *, older_than: timedelta, live_job_ids: Collection[str] = ()) -> int:
        """Release pending charges left behind by a process that died mid-job."""
        cutoff = datetime.now(UTC) - older_than
        released = 0
        for reservation in self._store.list_reservations(created_before=cutoff):
            if reservation.job_id is not None and reservation.job_id in live_job_ids:
                continue
            if self._store.release_reservation(reservation.reservation_id):
                released += 1
                logger.warning(
                    "quota.stale_released reservation_id=%s account_id=%s",
                    reservation.reservation_id,
                    safe_log_identifier(reservation.account_id, prefix="acc"),
                )
        return released


__all__ = ["Admission", "Denied", "Granted", "QuotaLedger", "QuotaPolicy", "to_balance"]
