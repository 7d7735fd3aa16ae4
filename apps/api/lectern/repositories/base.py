"""Quota store interface shared by the in-memory and SQL backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class AccountExistsError(Exception):
    """Raised when opening an account that already has a quota record."""


class ReserveOutcome(str, Enum):
    RESERVED = "reserved"
    UNLIMITED = "unlimited"
    NO_REMAINING_UNITS = "no_remaining_units"
    ACCOUNT_NOT_FOUND = "account_not_found"


@dataclass(slots=True)
class QuotaRecord:
    account_id: str
    remaining_units: int
    reserved_units: int
    unlimited: bool
    version: int
    updated_at: datetime

    @property
    def available_units(self) -> int:
        return max(0, self.remaining_units - self.reserved_units)


@dataclass(slots=True)
class ReservationRecord:
    """One unit tentatively spoken for on behalf of a job.

    ``charged`` marks reservations whose unit was already taken from
    ``remaining_units`` at admission; those are never persisted as rows.
    """

    reservation_id: str
    account_id: str
    created_at: datetime
    job_id: str | None = None
    unlimited: bool = False
    charged: bool = False
    settled: bool = False


class QuotaStore(ABC):
    """Durable account -> quota mapping.

    Every mutating method is one indivisible operation against the backend;
    callers never read a record and write it back.
    """

    @abstractmethod
    def open_account(self, account_id: str, *, remaining_units: int, unlimited: bool) -> QuotaRecord:
        """Create a quota record or raise ``AccountExistsError``."""

    @abstractmethod
    def ensure_account(self, account_id: str, *, remaining_units: int) -> QuotaRecord:
        """Return the existing record, creating a limited one when missing."""

    @abstractmethod
    def get_account(self, account_id: str) -> QuotaRecord | None:
        """Snapshot of the account's record."""

    @abstractmethod
    def reserve(self, reservation: ReservationRecord) -> ReserveOutcome:
        """Add a pending charge iff ``remaining - reserved > 0`` on a limited account."""

    @abstractmethod
    def consume(self, account_id: str) -> ReserveOutcome:
        """Decrement ``remaining_units`` iff ``remaining - reserved > 0`` on a limited account."""

    @abstractmethod
    def commit_reservation(self, reservation_id: str) -> bool:
        """Turn a pending charge into a spent unit. False when already settled."""

    @abstractmethod
    def release_reservation(self, reservation_id: str) -> bool:
        """Drop a pending charge without spending. False when already settled."""

    @abstractmethod
    def credit(self, account_id: str, units: int, *, limited_only: bool = False) -> QuotaRecord | None:
        """Add units to ``remaining_units``; None when the account is missing.

        With ``limited_only`` an unlimited account is returned unchanged, decided
        in the same atomic step as the write.
        """

    @abstractmethod
    def set_unlimited(self, account_id: str, unlimited: bool) -> QuotaRecord | None:
        """Flip the unlimited flag; None when the account is missing."""

    @abstractmethod
    def list_reservations(self, *, created_before: datetime) -> list[ReservationRecord]:
        """Pending charges older than the cutoff."""


__all__ = [
    "AccountExistsError",
    "QuotaRecord",
    "QuotaStore",
    "ReservationRecord",
    "ReserveOutcome",
]
