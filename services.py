from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from allocation import AllocationBreakdown, AllocationResult
from engine import BudgetEngine
from models import (
    AggregateEntry,
    Category,
    LedgerEntry,
    ObligationKind,
    ObligationStatus,
    RecurringObligation,
)
from periods import add_months, month_of
from recurrence import monthly_equivalent
from repositories import (
    ZERO,
    AggregateRepository,
    LedgerRepository,
    ObligationRepository,
    get_owned_category,
    unit_of_work,
)
from schemas import AllocationIn, CategoryIn, LedgerEntryIn, ObligationIn, ObligationUpdate

logger = logging.getLogger(__name__)


class CategoryService:
    def __init__(self, engine: BudgetEngine, user_id: int) -> None:
        self.engine = engine
        self.user_id = user_id

    def list_all(self, include_archived: bool = False) -> list[Category]:
        stmt = select(Category).where(Category.user_id == self.user_id)
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        with unit_of_work(self.engine.session_factory) as session:
            return list(session.scalars(stmt.order_by(Category.name)).all())

    def create(self, data: CategoryIn) -> Category:
        with unit_of_work(self.engine.session_factory) as session:
            category = Category(user_id=self.user_id, name=data.name.strip())
            session.add(category)
            session.flush()
            return category


class LedgerService:
    def __init__(self, engine: BudgetEngine, user_id: int) -> None:
        self.engine = engine
        self.user_id = user_id

    def record(self, data: LedgerEntryIn) -> LedgerEntry:
        """Add a ledger entry and reconcile the ``(category, month)`` it lands in."""
        entry = self.engine.retry_policy.call(self._insert, data)
        self._reconcile(entry.category_id, month_of(entry.date))
        return entry

    def correct(self, entry_id: int, data: LedgerEntryIn) -> LedgerEntry:
        """Explicitly edit an entry; both the old and the new group are reconciled."""
        entry, old_key = self.engine.retry_policy.call(self._update, entry_id, data)
        new_key = (entry.category_id, month_of(entry.date))
        self._reconcile(*old_key)
        if new_key != old_key:
            self._reconcile(*new_key)
        return entry

    def list_for_month(self, month: date) -> list[LedgerEntry]:
        with unit_of_work(self.engine.session_factory) as session:
            return LedgerRepository(session).list_for_month(self.user_id, month)

    def _insert(self, data: LedgerEntryIn) -> LedgerEntry:
        with unit_of_work(self.engine.session_factory) as session:
            get_owned_category(session, data.category_id, self.user_id)
            return LedgerRepository(session).add(
                LedgerEntry(
                    user_id=self.user_id,
                    category_id=data.category_id,
                    amount=data.amount,
                    date=data.date,
                    description=data.description,
                    source_transaction_id=data.source_transaction_id,
                )
            )

    def _update(
        self, entry_id: int, data: LedgerEntryIn
    ) -> tuple[LedgerEntry, tuple[int, date]]:
        with unit_of_work(self.engine.session_factory) as session:
            entry = LedgerRepository(session).get(entry_id, self.user_id)
            if data.category_id != entry.category_id:
                get_owned_category(session, data.category_id, self.user_id)
            old_key = (entry.category_id, month_of(entry.date))
            entry.category_id = data.category_id
            entry.amount = data.amount
            entry.date = data.date
            entry.description = data.description
            entry.source_transaction_id = data.source_transaction_id
            session.flush()
            if (entry.category_id, month_of(entry.date)) != old_key:
                self._clear_emptied_group(session, *old_key)
            return entry, old_key

    def _clear_emptied_group(self, session: Session, category_id: int, month: date) -> None:
        """Zero the aggregate of a group this correction moved its last entry out of."""
        if LedgerRepository(session).sum_for_key(self.user_id, category_id, month) is not None:
            return
        aggregates = AggregateRepository(session)
        existing = aggregates.get(self.user_id, category_id, month)
        if existing is not None and existing.spent != 0:
            aggregates.set_spent(existing, ZERO)
            logger.info(
                f"ledger_group_emptied: user_id={self.user_id} "
                f"category_id={category_id} month={month}"
            )

    def _reconcile(self, category_id: int, month: date) -> None:
        report = self.engine.reconcile_key(
            self.user_id, category_id, month, after_write=True
        )
        if report.errors:
            # the entry is committed; the periodic reconcile repairs the aggregate
            logger.warning(
                f"ledger_reconcile_deferred: user_id={self.user_id} "
                f"category_id={category_id} month={month} "
                f"error={report.errors[0].error}"
            )


@dataclass(frozen=True)
class CategoryBudget:
    category_id: int
    name: str
    allocated: Decimal
    spent: Decimal
    remaining: Decimal
    percent_used: float


@dataclass(frozen=True)
class MonthlySummary:
    month: date
    total_allocated: Decimal
    total_spent: Decimal
    remaining: Decimal
    categories: list[CategoryBudget]


class BudgetService:
    def __init__(self, engine: BudgetEngine, user_id: int) -> None:
        self.engine = engine
        self.user_id = user_id

    def set_allocation(self, data: AllocationIn) -> AggregateEntry:
        """Set the budgeted amount of a ``(category, month)``; ``spent`` is left alone."""
        return self.engine.retry_policy.call(self._set_allocation, data)

    def copy_allocations(
        self, target_month: date, source_month: Optional[date] = None
    ) -> int:
        """Copy allocations into ``target_month`` for categories not yet budgeted there."""
        target = month_of(target_month)
        source = month_of(source_month) if source_month else add_months(target, -1)
        copied = self.engine.retry_policy.call(self._copy_allocations, source, target)
        logger.info(
            f"allocations_copied: user_id={self.user_id} source={source} "
            f"target={target} copied={copied}"
        )
        return copied

    def monthly_summary(self, month: date) -> MonthlySummary:
        """Allocated versus spent per category.

        Outflows are negative in the ledger, so the amount used is ``-spent``.
        """
        month = month_of(month)
        with unit_of_work(self.engine.session_factory) as session:
            categories = session.scalars(
                select(Category)
                .where(Category.user_id == self.user_id, Category.archived_at.is_(None))
                .order_by(Category.name)
            ).all()
            entries = {
                entry.category_id: entry
                for entry in AggregateRepository(session).list_for_month(
                    self.user_id, month
                )
            }

        rows = []
        for category in categories:
            entry = entries.get(category.id)
            allocated = Decimal(entry.allocated) if entry else ZERO
            spent = Decimal(entry.spent) if entry else ZERO
            used = -spent
            rows.append(
                CategoryBudget(
                    category_id=category.id,
                    name=category.name,
                    allocated=allocated,
                    spent=spent,
                    remaining=allocated - used,
                    percent_used=float(used / allocated * 100) if allocated > 0 else 0.0,
                )
            )
        total_allocated = sum((r.allocated for r in rows), ZERO)
        total_spent = sum((r.spent for r in rows), ZERO)
        return MonthlySummary(
            month=month,
            total_allocated=total_allocated,
            total_spent=total_spent,
            remaining=total_allocated + total_spent,
            categories=rows,
        )

    def allocation_breakdown(
        self, month: date, income: Optional[Decimal] = None
    ) -> AllocationBreakdown:
        month = month_of(month)
        with unit_of_work(self.engine.session_factory) as session:
            variable = sum(
                (
                    Decimal(entry.allocated)
                    for entry in AggregateRepository(session).list_for_month(
                        self.user_id, month
                    )
                ),
                ZERO,
            )
            obligations = ObligationRepository(session).list_for_user(
                self.user_id, statuses=[ObligationStatus.active]
            )

        by_kind = {kind: ZERO for kind in ObligationKind}
        for obligation in obligations:
            by_kind[obligation.kind] += abs(
                monthly_equivalent(obligation.amount, obligation.frequency)
            )
        return AllocationBreakdown(
            income=Decimal(income) if income is not None else by_kind[ObligationKind.income],
            fixed=by_kind[ObligationKind.fixed],
            subscriptions=by_kind[ObligationKind.subscription],
            variable=variable,
            debt_payments=by_kind[ObligationKind.debt],
            goal_contributions=by_kind[ObligationKind.goal],
        ).rounded()

    def month_status(
        self, month: date, income: Optional[Decimal] = None
    ) -> tuple[AllocationBreakdown, AllocationResult]:
        breakdown = self.allocation_breakdown(month, income)
        return breakdown, breakdown.classify(self.engine.settings.epsilon)

    def _set_allocation(self, data: AllocationIn) -> AggregateEntry:
        month = month_of(data.month)
        with unit_of_work(self.engine.session_factory) as session:
            get_owned_category(session, data.category_id, self.user_id)
            aggregates = AggregateRepository(session)
            existing = aggregates.get(self.user_id, data.category_id, month)
            if existing:
                return aggregates.set_allocated(existing, data.allocated)
            spent = LedgerRepository(session).sum_for_key(
                self.user_id, data.category_id, month
            )
            return aggregates.create(
                self.user_id,
                data.category_id,
                month,
                allocated=data.allocated,
                spent=spent or ZERO,
            )

    def _copy_allocations(self, source: date, target: date) -> int:
        with unit_of_work(self.engine.session_factory) as session:
            aggregates = AggregateRepository(session)
            ledger = LedgerRepository(session)
            existing = {
                entry.category_id
                for entry in aggregates.list_for_month(self.user_id, target)
            }
            copied = 0
            for entry in aggregates.list_for_month(self.user_id, source):
                if entry.category_id in existing:
                    continue
                spent = ledger.sum_for_key(self.user_id, entry.category_id, target)
                aggregates.create(
                    self.user_id,
                    entry.category_id,
                    target,
                    allocated=Decimal(entry.allocated),
                    spent=spent or ZERO,
                )
                copied += 1
            return copied


class ObligationService:
    def __init__(self, engine: BudgetEngine, user_id: int) -> None:
        self.engine = engine
        self.user_id = user_id

    def get(self, obligation_id: int) -> RecurringObligation:
        with unit_of_work(self.engine.session_factory) as session:
            return ObligationRepository(session).get_for_user(obligation_id, self.user_id)

    def list_all(self) -> list[RecurringObligation]:
        with unit_of_work(self.engine.session_factory) as session:
            return ObligationRepository(session).list_for_user(self.user_id)

    def create(self, data: ObligationIn) -> RecurringObligation:
        with unit_of_work(self.engine.session_factory) as session:
            get_owned_category(session, data.category_id, self.user_id)
            obligation = RecurringObligation(user_id=self.user_id, **data.model_dump())
            session.add(obligation)
            session.flush()
        self._refresh_forecast(obligation.id)
        return obligation

    def update(self, obligation_id: int, data: ObligationUpdate) -> RecurringObligation:
        """Edit user-owned fields; ``next_date`` and ``status`` are not touched here."""
        with unit_of_work(self.engine.session_factory) as session:
            obligation = ObligationRepository(session).get_for_user(
                obligation_id, self.user_id
            )
            if data.category_id != obligation.category_id:
                get_owned_category(session, data.category_id, self.user_id)
            for field_name, value in data.model_dump().items():
                setattr(obligation, field_name, value)
            session.flush()
        self._refresh_forecast(obligation_id)
        return self.get(obligation_id)

    def set_status(self, obligation_id: int, status: ObligationStatus) -> RecurringObligation:
        with unit_of_work(self.engine.session_factory) as session:
            obligation = ObligationRepository(session).get_for_user(
                obligation_id, self.user_id
            )
            previous = obligation.status
            obligation.status = status
        if previous == ObligationStatus.paused and status == ObligationStatus.active:
            # skipped periods are not charged on resume
            self.engine.scheduler.fast_forward(obligation_id, self.engine.today())
        self._refresh_forecast(obligation_id)
        logger.info(
            f"obligation_status: obligation_id={obligation_id} "
            f"from={previous.value} to={status.value}"
        )
        return self.get(obligation_id)

    def _refresh_forecast(self, obligation_id: int) -> None:
        self.engine.generate_forecast(
            obligation_id, self.engine.settings.default_forecast_horizon
        )
