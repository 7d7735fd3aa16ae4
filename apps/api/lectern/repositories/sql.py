"""SQLAlchemy-backed quota store.

Admission is a single conditional ``UPDATE`` evaluated by the database:
``reserved_units + 1 WHERE unlimited = false AND remaining_units - reserved_units > 0``.
The affected row count decides the outcome, so concurrent requests for one
account can never both pass the check.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from lectern.repositories.base import (
    AccountExistsError,
    QuotaRecord,
    QuotaStore,
    ReservationRecord,
    ReserveOutcome,
)


class Base(DeclarativeBase):
    pass


class QuotaAccountRow(Base):
    __tablename__ = "quota_accounts"
    __table_args__ = (
        CheckConstraint("remaining_units >= 0", name="ck_quota_accounts_remaining_non_negative"),
        CheckConstraint("reserved_units >= 0", name="ck_quota_accounts_reserved_non_negative"),
    )

    account_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    remaining_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unlimited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class QuotaReservationRow(Base):
    """Pending charge: one unit held for a job until it resolves."""

    __tablename__ = "quota_reservations"

    reservation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("quota_accounts.account_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round trip; every stored timestamp is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def build_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(database_url, pool_pre_ping=True)
    if url.database in (None, "", ":memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, connect_args={"check_same_thread": False, "timeout": 30})


class SqlQuotaStore(QuotaStore):
    def __init__(self, engine: Engine, *, create_schema: bool = True) -> None:
        self._engine = engine
        if create_schema:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str) -> SqlQuotaStore:
        return cls(build_engine(database_url))

    def dispose(self) -> None:
        self._engine.dispose()

    @staticmethod
    def _to_record(row) -> QuotaRecord:
        return QuotaRecord(
            account_id=row.account_id,
            remaining_units=row.remaining_units,
            reserved_units=row.reserved_units,
            unlimited=row.unlimited,
            version=row.version,
            updated_at=_as_utc(row.updated_at),
        )

    @staticmethod
    def _fetch(conn: Connection, account_id: str):
        return conn.execute(
            select(QuotaAccountRow.__table__).where(QuotaAccountRow.account_id == account_id)
        ).one_or_none()

    def open_account(self, account_id: str, *, remaining_units: int, unlimited: bool) -> QuotaRecord:
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    insert(QuotaAccountRow).values(
                        account_id=account_id,
                        remaining_units=remaining_units,
                        reserved_units=0,
                        unlimited=unlimited,
                        version=1,
                        updated_at=datetime.now(UTC),
                    )
                )
                return self._to_record(self._fetch(conn, account_id))
        except IntegrityError as exc:
            raise AccountExistsError(account_id) from exc

    def ensure_account(self, account_id: str, *, remaining_units: int) -> QuotaRecord:
        try:
            return self.open_account(account_id, remaining_units=remaining_units, unlimited=False)
        except AccountExistsError:
            record = self.get_account(account_id)
            if record is None:  # pragma: no cover - deleted between statements
                raise
            return record

    def get_account(self, account_id: str) -> QuotaRecord | None:
        with self._engine.connect() as conn:
            row = self._fetch(conn, account_id)
        return self._to_record(row) if row is not None else None

    def _admit(self, conn: Connection, account_id: str, values: dict) -> ReserveOutcome:
        result = conn.execute(
            update(QuotaAccountRow)
            .where(
                QuotaAccountRow.account_id == account_id,
                QuotaAccountRow.unlimited.is_(False),
                QuotaAccountRow.remaining_units - QuotaAccountRow.reserved_units > 0,
            )
            .values(
                version=QuotaAccountRow.version + 1,
                updated_at=datetime.now(UTC),
                **values,
            )
        )
        if result.rowcount == 1:
            return ReserveOutcome.RESERVED

        row = self._fetch(conn, account_id)
        if row is None:
            return ReserveOutcome.ACCOUNT_NOT_FOUND
        if row.unlimited:
            return ReserveOutcome.UNLIMITED
        return ReserveOutcome.NO_REMAINING_UNITS

    def reserve(self, reservation: ReservationRecord) -> ReserveOutcome:
        with self._engine.begin() as conn:
            outcome = self._admit(
                conn,
                reservation.account_id,
                {"reserved_units": QuotaAccountRow.reserved_units + 1},
            )
            if outcome is ReserveOutcome.RESERVED:
                conn.execute(
                    insert(QuotaReservationRow).values(
                        reservation_id=reservation.reservation_id,
                        account_id=reservation.account_id,
                        job_id=reservation.job_id,
                        created_at=reservation.created_at,
                    )
                )
            return outcome

    def consume(self, account_id: str) -> ReserveOutcome:
        with self._engine.begin() as conn:
            return self._admit(
                conn,
                account_id,
                {"remaining_units": QuotaAccountRow.remaining_units - 1},
            )

    def commit_reservation(self, reservation_id: str) -> bool:
        return self._settle(reservation_id, spend=True)

    def release_reservation(self, reservation_id: str) -> bool:
        return self._settle(reservation_id, spend=False)

    def _settle(self, reservation_id: str, *, spend: bool) -> bool:
        with self._engine.begin() as conn:
            account_id = conn.execute(
                delete(QuotaReservationRow)
                .where(QuotaReservationRow.reservation_id == reservation_id)
                .returning(QuotaReservationRow.account_id)
            ).scalar_one_or_none()
            if account_id is None:
                return False

            now = datetime.now(UTC)
            spent = 0
            if spend:
                spent = conn.execute(
                    update(QuotaAccountRow)
                    .where(
                        QuotaAccountRow.account_id == account_id,
                        QuotaAccountRow.unlimited.is_(False),
                        QuotaAccountRow.reserved_units > 0,
                        QuotaAccountRow.remaining_units > 0,
                    )
                    .values(
                        remaining_units=QuotaAccountRow.remaining_units - 1,
                        reserved_units=QuotaAccountRow.reserved_units - 1,
                        version=QuotaAccountRow.version + 1,
                        updated_at=now,
                    )
                ).rowcount
            if not spent:
                conn.execute(
                    update(QuotaAccountRow)
                    .where(
                        QuotaAccountRow.account_id == account_id,
                        QuotaAccountRow.reserved_units > 0,
                    )
                    .values(
                        reserved_units=QuotaAccountRow.reserved_units - 1,
                        version=QuotaAccountRow.version + 1,
                        updated_at=now,
                    )
                )
            return True

    def credit(self, account_id: str, units: int, *, limited_only: bool = False) -> QuotaRecord | None:
        conditions = [QuotaAccountRow.unlimited.is_(False)] if limited_only else []
        return self._update_and_fetch(
            account_id,
            conditions=conditions,
            remaining_units=QuotaAccountRow.remaining_units + units,
        )

    def set_unlimited(self, account_id: str, unlimited: bool) -> QuotaRecord | None:
        return self._update_and_fetch(account_id, unlimited=unlimited)

    def _update_and_fetch(self, account_id: str, *, conditions=(), **values) -> QuotaRecord | None:
        with self._engine.begin() as conn:
            conn.execute(
                update(QuotaAccountRow)
                .where(QuotaAccountRow.account_id == account_id, *conditions)
                .values(version=QuotaAccountRow.version + 1, updated_at=datetime.now(UTC), **values)
            )
            row = self._fetch(conn, account_id)
            return self._to_record(row) if row is not None else None

    def list_reservations(self, *, created_before: datetime) -> list[ReservationRecord]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                select(QuotaReservationRow.__table__)
                .where(QuotaReservationRow.created_at < created_before)
                .order_by(QuotaReservationRow.created_at)
            ).all()
        return [
            ReservationRecord(
                reservation_id=row.reservation_id,
                account_id=row.account_id,
                job_id=row.job_id,
                created_at=_as_utc(row.created_at),
            )
            for row in rows
        ]


__all__ = ["Base", "QuotaAccountRow", "QuotaReservationRow", "SqlQuotaStore", "build_engine"]
