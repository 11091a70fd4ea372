"""Recompute per-category monthly aggregates from the ledger and correct drift."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import sessionmaker

from errors import EngineError
from periods import month_of
from repositories import AggregateRepository, LedgerRepository, unit_of_work
from retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Discrepancy:
    category_id: int
    month: date
    old: Decimal
    new: Decimal
    diff: Decimal


@dataclass(frozen=True)
class MissingLedger:
    category_id: int
    month: date
    spent: Decimal


@dataclass(frozen=True)
class GroupFailure:
    category_id: Optional[int]
    month: Optional[date]
    error: str


@dataclass
class ReconcileReport:
    user_id: int
    updated: int = 0
    created: int = 0
    discrepancies: list[Discrepancy] = field(default_factory=list)
    missing: list[MissingLedger] = field(default_factory=list)
    errors: list[GroupFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class _GroupResult:
    action: str  # "created", "updated" or "unchanged"
    discrepancy: Optional[Discrepancy] = None


class Reconciler:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        retry_policy: RetryPolicy,
        epsilon: Decimal = Decimal("0.01"),
        max_workers: int = 1,
    ) -> None:
        self.session_factory = session_factory
        self.retry_policy = retry_policy
        self.epsilon = epsilon
        self.max_workers = max(1, max_workers)

    def reconcile(self, user_id: int) -> ReconcileReport:
        report = ReconcileReport(user_id=user_id)
        try:
            sums = self.retry_policy.call(self._ledger_sums, user_id)
        except EngineError as exc:
            logger.exception(f"reconcile_ledger_fetch_failed: user_id={user_id}")
            report.errors.append(GroupFailure(None, None, str(exc)))
            return report

        groups = sorted(sums.items(), key=lambda item: (item[0][1], item[0][0]))
        outcomes = self._run_groups(user_id, groups)
        for ((category_id, month), _total), outcome in zip(groups, outcomes):
            self._record(report, category_id, month, outcome)

        try:
            aggregates = self.retry_policy.call(self._aggregate_snapshot, user_id)
        except EngineError as exc:
            logger.exception(f"reconcile_aggregate_fetch_failed: user_id={user_id}")
            report.errors.append(GroupFailure(None, None, str(exc)))
        else:
            for category_id, month, spent in aggregates:
                if (category_id, month) in sums or spent == 0:
                    continue
                self._flag_missing(report, category_id, month, spent)

        self._log_report(report)
        return report

    def reconcile_key(
        self, user_id: int, category_id: int, month: date, *, after_write: bool = False
    ) -> ReconcileReport:
        """Reconcile a single ``(category, month)`` group.

        With ``after_write`` the caller has just changed the ledger, so a
        changed total is the expected recompute and not recorded as drift.
        """
        month = month_of(month)
        report = ReconcileReport(user_id=user_id)
        try:
            outcome = self.retry_policy.call(
                self._reconcile_key, user_id, category_id, month
            )
        except EngineError as exc:
            logger.exception(
                f"reconcile_group_failed: user_id={user_id} "
                f"category_id={category_id} month={month}"
            )
            report.errors.append(GroupFailure(category_id, month, str(exc)))
            return report

        if isinstance(outcome, MissingLedger):
            self._flag_missing(report, category_id, month, outcome.spent)
        elif outcome is not None:
            self._record(report, category_id, month, outcome, after_write=after_write)
        self._log_report(report)
        return report

    def _run_groups(self, user_id: int, groups: list[tuple[tuple[int, date], Decimal]]):
        def run(item: tuple[tuple[int, date], Decimal]):
            (category_id, month), total = item
            try:
                return self.retry_policy.call(
                    self._reconcile_group, user_id, category_id, month, total
                )
            except EngineError as exc:
                logger.exception(
                    f"reconcile_group_failed: user_id={user_id} "
                    f"category_id={category_id} month={month}"
                )
                return GroupFailure(category_id, month, str(exc))

        if self.max_workers == 1 or len(groups) < 2:
            return [run(item) for item in groups]
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            return list(pool.map(run, groups))

    def _record(
        self,
        report: ReconcileReport,
        category_id: int,
        month: date,
        outcome,
        *,
        after_write: bool = False,
    ) -> None:
        if isinstance(outcome, GroupFailure):
            report.errors.append(outcome)
            return
        if outcome.action == "created":
            report.created += 1
        elif outcome.action == "updated":
            report.updated += 1
            if after_write:
                logger.info(
                    f"reconcile_applied: user_id={report.user_id} "
                    f"category_id={category_id} month={month} "
                    f"spent={outcome.discrepancy.new}"
                )
                return
            report.discrepancies.append(outcome.discrepancy)
            logger.warning(
                f"reconcile_discrepancy: user_id={report.user_id} "
                f"category_id={category_id} month={month} "
                f"old={outcome.discrepancy.old} new={outcome.discrepancy.new}"
            )

    def _flag_missing(
        self, report: ReconcileReport, category_id: int, month: date, spent: Decimal
    ) -> None:
        report.missing.append(MissingLedger(category_id, month, spent))
        logger.warning(
            f"reconcile_missing_ledger: user_id={report.user_id} "
            f"category_id={category_id} month={month} spent={spent}"
        )

    def _log_report(self, report: ReconcileReport) -> None:
        logger.info(
            f"reconcile_run: user_id={report.user_id} created={report.created} "
            f"updated={report.updated} discrepancies={len(report.discrepancies)} "
            f"missing={len(report.missing)} errors={len(report.errors)}"
        )

    def _ledger_sums(self, user_id: int) -> dict[tuple[int, date], Decimal]:
        with unit_of_work(self.session_factory) as session:
            return LedgerRepository(session).sum_by_category_month(user_id)

    def _aggregate_snapshot(self, user_id: int) -> list[tuple[int, date, Decimal]]:
        with unit_of_work(self.session_factory) as session:
            return [
                (entry.category_id, entry.month, Decimal(entry.spent))
                for entry in AggregateRepository(session).list_for_user(user_id)
            ]

    def _reconcile_group(
        self, user_id: int, category_id: int, month: date, total: Decimal
    ) -> _GroupResult:
        with unit_of_work(self.session_factory) as session:
            return self._apply_total(
                AggregateRepository(session), user_id, category_id, month, total
            )

    def _apply_total(
        self,
        aggregates: AggregateRepository,
        user_id: int,
        category_id: int,
        month: date,
        total: Decimal,
    ) -> _GroupResult:
        existing = aggregates.get(user_id, category_id, month)
        if existing is None:
            aggregates.create(user_id, category_id, month, spent=total)
            return _GroupResult("created")

        old = Decimal(existing.spent)
        if abs(old - total) > self.epsilon:
            aggregates.set_spent(existing, total)
            return _GroupResult(
                "updated", Discrepancy(category_id, month, old, total, old - total)
            )
        return _GroupResult("unchanged")

    def _reconcile_key(self, user_id: int, category_id: int, month: date):
        with unit_of_work(self.session_factory) as session:
            aggregates = AggregateRepository(session)
            total = LedgerRepository(session).sum_for_key(user_id, category_id, month)
            if total is None:
                existing = aggregates.get(user_id, category_id, month)
                if existing is not None and existing.spent != 0:
                    return MissingLedger(category_id, month, Decimal(existing.spent))
                return None
            return self._apply_total(aggregates, user_id, category_id, month, total)
