"""
Relational credit account storage (SQLAlchemy 2.x).

Each account transaction locks the counter row with SELECT ... FOR UPDATE
and runs inside a single session transaction, so record and counter
changes commit together. Deductions use a conditional UPDATE whose
affected-row count is the success signal.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterator, Optional
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Mapped, Session, mapped_column, sessionmaker

from .database import Base, create_session_factory
from .exceptions import PersistenceError
from .locks import KeyedLock
from .models import Category, PackageRecord, PackageStatus
from .storage import Account

logger = logging.getLogger(__name__)


class PackageRecordRow(Base):
    __tablename__ = "package_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[str] = mapped_column(String(16), nullable=False)
    package_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    classes_included: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PackageStatus.ACTIVE.value)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    renewal_months_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    renewals_applied: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_renewal_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_package_records_account", "user_id", "category", "status"),
        CheckConstraint("category IN ('group', 'private')", name="ck_package_records_category"),
        CheckConstraint(
            "status IN ('active', 'expired', 'cancelled')", name="ck_package_records_status"
        ),
        CheckConstraint("renewal_months_remaining >= 0", name="ck_package_records_renewal_months"),
    )


class CreditCounterRow(Base):
    __tablename__ = "credit_counters"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    category: Mapped[str] = mapped_column(String(16), primary_key=True)
    counter: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class AdminSettingRow(Base):
    __tablename__ = "admin_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)


def _to_model(row: PackageRecordRow) -> PackageRecord:
    return PackageRecord.model_validate(row)


def _row_values(record: PackageRecord) -> dict:
    values = record.model_dump()
    values["id"] = str(record.id)
    values["category"] = record.category.value
    values["status"] = record.status.value
    return values


def _newest_first(stmt):
    return stmt.order_by(PackageRecordRow.start_date.desc(), PackageRecordRow.created_at.desc())


class SqlAccount(Account):
    def __init__(self, session: Session, user_id: str, category: Category):
        self.user_id = user_id
        self.category = category
        self._session = session
        self._row = self._lock_counter_row()

    def _counter_filter(self):
        return (
            CreditCounterRow.user_id == self.user_id,
            CreditCounterRow.category == self.category.value,
        )

    def _lock_counter_row(self) -> CreditCounterRow:
        row = self._session.execute(
            select(CreditCounterRow).where(*self._counter_filter()).with_for_update()
        ).scalar_one_or_none()
        if row is None:
            row = CreditCounterRow(user_id=self.user_id, category=self.category.value, counter=0)
            self._session.add(row)
            self._session.flush()
        return row

    @property
    def counter(self) -> int:
        return self._row.counter

    def set_counter(self, value: int) -> None:
        self._row.counter = value

    def decrement(self, minimum: int = 0) -> bool:
        self._session.flush()
        result = self._session.execute(
            update(CreditCounterRow)
            .where(*self._counter_filter(), CreditCounterRow.counter > minimum)
            .values(counter=CreditCounterRow.counter - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self._session.refresh(self._row)
        return True

    def increment(self, amount: int = 1) -> int:
        self._session.flush()
        self._session.execute(
            update(CreditCounterRow)
            .where(*self._counter_filter())
            .values(counter=CreditCounterRow.counter + amount)
            .execution_options(synchronize_session=False)
        )
        self._session.refresh(self._row)
        return self._row.counter

    def records(self, status: Optional[PackageStatus] = None) -> list[PackageRecord]:
        stmt = select(PackageRecordRow).where(
            PackageRecordRow.user_id == self.user_id,
            PackageRecordRow.category == self.category.value,
        )
        if status is not None:
            stmt = stmt.where(PackageRecordRow.status == status.value)
        return [_to_model(r) for r in self._session.scalars(_newest_first(stmt))]

    def get_record(self, record_id: UUID) -> Optional[PackageRecord]:
        row = self._session.get(PackageRecordRow, str(record_id))
        if row is None or row.user_id != self.user_id or row.category != self.category.value:
            return None
        return _to_model(row)

    def save_record(self, record: PackageRecord) -> None:
        self._check_owner(record)
        values = _row_values(record)
        row = self._session.get(PackageRecordRow, values["id"])
        if row is None:
            self._session.add(PackageRecordRow(**values))
            return
        for key, value in values.items():
            setattr(row, key, value)


class SqlStorage:
    def __init__(self, engine: Engine, session_factory: Optional[sessionmaker[Session]] = None):
        self.engine = engine
        self._session_factory = session_factory or create_session_factory(engine)
        self._locks = KeyedLock()

    def create_tables(self) -> None:
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not create ledger tables: {e}") from e

    @contextmanager
    def account(self, user_id: str, category: Category) -> Iterator[SqlAccount]:
        with self._locks.hold((user_id, category)):
            session = self._session_factory()
            try:
                with session.begin():
                    yield SqlAccount(session, user_id, category)
            except SQLAlchemyError as e:
                logger.error(
                    f"Account transaction for ({user_id}, {category.value}) rolled back: {e}",
                    exc_info=True,
                )
                raise PersistenceError(
                    f"Storage failure on account ({user_id}, {category.value})",
                    details={"user_id": user_id, "category": category.value},
                ) from e
            finally:
                session.close()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            logger.error(f"Ledger storage read/write failed: {e}", exc_info=True)
            raise PersistenceError(f"Storage failure: {e}") from e
        finally:
            session.close()

    def get_record(self, record_id: UUID) -> Optional[PackageRecord]:
        with self._session() as session:
            row = session.get(PackageRecordRow, str(record_id))
            return _to_model(row) if row else None

    def list_records(
        self,
        user_id: Optional[str] = None,
        category: Optional[Category] = None,
        status: Optional[PackageStatus] = None,
    ) -> list[PackageRecord]:
        stmt = select(PackageRecordRow)
        if user_id is not None:
            stmt = stmt.where(PackageRecordRow.user_id == user_id)
        if category is not None:
            stmt = stmt.where(PackageRecordRow.category == category.value)
        if status is not None:
            stmt = stmt.where(PackageRecordRow.status == status.value)
        with self._session() as session:
            return [_to_model(r) for r in session.scalars(_newest_first(stmt))]

    def get_counter(self, user_id: str, category: Category) -> int:
        with self._session() as session:
            value = session.scalar(
                select(CreditCounterRow.counter).where(
                    CreditCounterRow.user_id == user_id,
                    CreditCounterRow.category == category.value,
                )
            )
            return value or 0

    def list_counters(self) -> list[tuple[str, Category, int]]:
        with self._session() as session:
            rows = session.execute(
                select(CreditCounterRow.user_id, CreditCounterRow.category, CreditCounterRow.counter)
            ).all()
        return [(u, Category(c), n) for u, c, n in rows]

    def list_accounts(self) -> list[tuple[str, Category]]:
        with self._session() as session:
            keys = {tuple(r) for r in session.execute(
                select(CreditCounterRow.user_id, CreditCounterRow.category)
            )}
            keys.update(tuple(r) for r in session.execute(
                select(PackageRecordRow.user_id, PackageRecordRow.category).distinct()
            ))
        return sorted(((u, Category(c)) for u, c in keys), key=lambda k: (k[0], k[1].value))

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._session() as session:
            row = session.get(AdminSettingRow, key)
            return row.value if row else default

    def set_setting(self, key: str, value: str) -> None:
        with self._session() as session:
            with session.begin():
                session.merge(AdminSettingRow(key=key, value=value))
