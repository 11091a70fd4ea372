"""Typed repositories over the ledger, aggregate, obligation and forecast stores.

Repositories never commit. A unit of work (``unit_of_work``) owns the session
and its transaction and translates SQLAlchemy failures into the engine's error
taxonomy, so a retry always starts from a fresh read.
"""

from __future__ import annotations

from collections import defaultdict
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Iterator, Optional

from sqlalchemy import delete, select, union, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from database import session_scope
from errors import ConflictError, NotFoundError, StoreError
from models import (
    AggregateEntry,
    Category,
    ForecastEntry,
    LedgerEntry,
    ObligationStatus,
    RecurringObligation,
)
from periods import month_end, month_of

ZERO = Decimal("0")


@contextmanager
def store_errors() -> Iterator[None]:
    try:
        yield
    except IntegrityError as exc:
        raise ConflictError(f"Natural key conflict: {exc.orig}") from exc
    except StaleDataError as exc:
        raise ConflictError(f"Concurrent update detected: {exc}") from exc
    except SQLAlchemyError as exc:
        raise StoreError(f"Store operation failed: {exc}") from exc


@contextmanager
def unit_of_work(factory: sessionmaker) -> Iterator[Session]:
    with store_errors():
        with session_scope(factory) as session:
            yield session


def get_owned_category(session: Session, category_id: int, user_id: int) -> Category:
    category = session.get(Category, category_id)
    if not category or category.user_id != user_id:
        raise NotFoundError("Category")
    return category


class LedgerRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, entry_id: int, user_id: int) -> LedgerEntry:
        entry = self.session.get(LedgerEntry, entry_id)
        if not entry or entry.user_id != user_id:
            raise NotFoundError("Ledger entry")
        return entry

    def add(self, entry: LedgerEntry) -> LedgerEntry:
        self.session.add(entry)
        self.session.flush()
        return entry

    def list_for_month(self, user_id: int, month: date) -> list[LedgerEntry]:
        start = month_of(month)
        stmt = (
            select(LedgerEntry)
            .where(
                LedgerEntry.user_id == user_id,
                LedgerEntry.date.between(start, month_end(start)),
            )
            .order_by(LedgerEntry.date, LedgerEntry.id)
        )
        return list(self.session.scalars(stmt).all())

    def sum_by_category_month(self, user_id: int) -> dict[tuple[int, date], Decimal]:
        """Sum every ledger amount of a user per ``(category_id, month)``."""
        stmt = select(
            LedgerEntry.category_id, LedgerEntry.date, LedgerEntry.amount
        ).where(LedgerEntry.user_id == user_id)
        totals: dict[tuple[int, date], Decimal] = defaultdict(lambda: ZERO)
        for category_id, entry_date, amount in self.session.execute(stmt):
            key = (category_id, month_of(entry_date))
            totals[key] = totals[key] + Decimal(amount)
        return dict(totals)

    def sum_for_key(
        self, user_id: int, category_id: int, month: date
    ) -> Optional[Decimal]:
        """Sum of one group, or ``None`` when the group has no ledger rows."""
        start = month_of(month)
        stmt = select(LedgerEntry.amount).where(
            LedgerEntry.user_id == user_id,
            LedgerEntry.category_id == category_id,
            LedgerEntry.date.between(start, month_end(start)),
        )
        amounts = self.session.scalars(stmt).all()
        if not amounts:
            return None
        return sum((Decimal(a) for a in amounts), ZERO)

    def exists_for_occurrence(self, obligation_id: int, occurrence_date: date) -> bool:
        stmt = (
            select(LedgerEntry.id)
            .where(
                LedgerEntry.obligation_id == obligation_id,
                LedgerEntry.occurrence_date == occurrence_date,
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def exists_for_month(self, obligation_id: int, month: date) -> bool:
        start = month_of(month)
        stmt = (
            select(LedgerEntry.id)
            .where(
                LedgerEntry.obligation_id == obligation_id,
                LedgerEntry.date.between(start, month_end(start)),
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None


class AggregateRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int, category_id: int, month: date) -> Optional[AggregateEntry]:
        stmt = select(AggregateEntry).where(
            AggregateEntry.user_id == user_id,
            AggregateEntry.category_id == category_id,
            AggregateEntry.month == month_of(month),
        )
        return self.session.scalar(stmt)

    def list_for_user(self, user_id: int) -> list[AggregateEntry]:
        stmt = (
            select(AggregateEntry)
            .where(AggregateEntry.user_id == user_id)
            .order_by(AggregateEntry.month, AggregateEntry.category_id)
        )
        return list(self.session.scalars(stmt).all())

    def list_for_month(self, user_id: int, month: date) -> list[AggregateEntry]:
        stmt = (
            select(AggregateEntry)
            .where(
                AggregateEntry.user_id == user_id,
                AggregateEntry.month == month_of(month),
            )
            .order_by(AggregateEntry.category_id)
        )
        return list(self.session.scalars(stmt).all())

    def create(
        self,
        user_id: int,
        category_id: int,
        month: date,
        *,
        spent: Decimal = ZERO,
        allocated: Decimal = ZERO,
    ) -> AggregateEntry:
        entry = AggregateEntry(
            user_id=user_id,
            category_id=category_id,
            month=month_of(month),
            allocated=allocated,
            spent=spent,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def set_spent(self, entry: AggregateEntry, spent: Decimal) -> AggregateEntry:
        entry.spent = spent
        self.session.flush()
        return entry

    def set_allocated(self, entry: AggregateEntry, allocated: Decimal) -> AggregateEntry:
        entry.allocated = allocated
        self.session.flush()
        return entry


class ObligationRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, obligation_id: int) -> RecurringObligation:
        obligation = self.session.get(RecurringObligation, obligation_id)
        if not obligation:
            raise NotFoundError("Obligation")
        return obligation

    def get_for_user(self, obligation_id: int, user_id: int) -> RecurringObligation:
        obligation = self.session.get(RecurringObligation, obligation_id)
        if not obligation or obligation.user_id != user_id:
            raise NotFoundError("Obligation")
        return obligation

    def list_for_user(
        self, user_id: int, *, statuses: Optional[Iterable[ObligationStatus]] = None
    ) -> list[RecurringObligation]:
        stmt = (
            select(RecurringObligation)
            .where(RecurringObligation.user_id == user_id)
            .order_by(RecurringObligation.next_date, RecurringObligation.id)
        )
        if statuses is not None:
            stmt = stmt.where(RecurringObligation.status.in_(list(statuses)))
        return list(self.session.scalars(stmt).all())

    def due_ids(self, user_id: int, as_of: date) -> list[int]:
        stmt = (
            select(RecurringObligation.id)
            .where(
                RecurringObligation.user_id == user_id,
                RecurringObligation.status == ObligationStatus.active,
                RecurringObligation.next_date <= as_of,
            )
            .order_by(RecurringObligation.next_date, RecurringObligation.id)
        )
        return list(self.session.scalars(stmt).all())

    def compare_and_set_next_date(
        self, obligation_id: int, expected: date, new_date: date
    ) -> None:
        """Advance ``next_date`` only if the stored value still equals ``expected``."""
        stmt = (
            update(RecurringObligation)
            .where(
                RecurringObligation.id == obligation_id,
                RecurringObligation.next_date == expected,
            )
            .values(next_date=new_date, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            raise ConflictError(
                f"Obligation {obligation_id} next_date changed since it was read"
            )


class ForecastRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_for_source(self, source_id: int, user_id: int) -> list[ForecastEntry]:
        stmt = (
            select(ForecastEntry)
            .where(ForecastEntry.source_id == source_id, ForecastEntry.user_id == user_id)
            .order_by(ForecastEntry.month)
        )
        return list(self.session.scalars(stmt).all())

    def upsert(
        self, source_id: int, user_id: int, month: date, amount: Decimal
    ) -> tuple[ForecastEntry, bool]:
        """Insert or update the row for ``(source_id, month, user_id)``.

        Returns the row and whether anything was written.
        """
        month = month_of(month)
        stmt = select(ForecastEntry).where(
            ForecastEntry.source_id == source_id,
            ForecastEntry.user_id == user_id,
            ForecastEntry.month == month,
        )
        existing = self.session.scalar(stmt)
        if existing:
            if Decimal(existing.amount) == Decimal(amount):
                return existing, False
            existing.amount = amount
            self.session.flush()
            return existing, True

        entry = ForecastEntry(
            source_id=source_id, user_id=user_id, month=month, amount=amount
        )
        self.session.add(entry)
        self.session.flush()
        return entry, True

    def delete_outside(self, source_id: int, user_id: int, months: Iterable[date]) -> int:
        keep = [month_of(m) for m in months]
        stmt = delete(ForecastEntry).where(
            ForecastEntry.source_id == source_id,
            ForecastEntry.user_id == user_id,
            ForecastEntry.month.not_in(keep),
        )
        return self.session.execute(stmt).rowcount or 0

    def delete_for_source(self, source_id: int, user_id: int) -> int:
        stmt = delete(ForecastEntry).where(
            ForecastEntry.source_id == source_id, ForecastEntry.user_id == user_id
        )
        return self.session.execute(stmt).rowcount or 0


def active_user_ids(session: Session) -> list[int]:
    stmt = union(
        select(LedgerEntry.user_id),
        select(AggregateEntry.user_id),
        select(RecurringObligation.user_id),
    )
    return sorted(session.scalars(stmt).all())
