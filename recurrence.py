import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import sessionmaker

from config import Settings
from errors import EngineError, ValidationError
from models import (
    ForecastEntry,
    Frequency,
    LedgerEntry,
    ObligationStatus,
    RecurringObligation,
)
from periods import add_months, days_in_month, iter_months, month_of
from repositories import (
    ForecastRepository,
    LedgerRepository,
    ObligationRepository,
    unit_of_work,
)
from retry import RetryPolicy

logger = logging.getLogger(__name__)

# Obligations at least this coarse post at most once per calendar month.
MONTHLY_OR_COARSER = {Frequency.monthly, Frequency.quarterly, Frequency.yearly}


def local_today(timezone: str = "UTC") -> date:
    return datetime.now(ZoneInfo(timezone)).date()


def next_occurrence(current: date, frequency: Frequency) -> date:
    if frequency == Frequency.daily:
        return current + timedelta(days=1)
    if frequency == Frequency.weekly:
        return current + timedelta(weeks=1)
    if frequency == Frequency.biweekly:
        return current + timedelta(weeks=2)
    if frequency == Frequency.monthly:
        return add_months(current, 1)
    if frequency == Frequency.quarterly:
        return add_months(current, 3)
    if frequency == Frequency.yearly:
        return add_months(current, 12)
    raise ValidationError(f"Unsupported frequency: {frequency}")


def catch_up(
    current: date, frequency: Frequency, as_of: date, *, max_steps: int = 400
) -> date:
    """Step ``current`` forward one period at a time until it is on or after ``as_of``."""
    steps = 0
    while current < as_of and steps < max_steps:
        current = next_occurrence(current, frequency)
        steps += 1
    return current


def monthly_equivalent(amount: Decimal, frequency: Frequency) -> Decimal:
    # (multiplier, divisor); multiply first so whole amounts stay exact
    factors = {
        Frequency.daily: (30, 1),
        Frequency.weekly: (52, 12),
        Frequency.biweekly: (26, 12),
        Frequency.monthly: (1, 1),
        Frequency.quarterly: (1, 3),
        Frequency.yearly: (1, 12),
    }
    multiplier, divisor = factors[frequency]
    return Decimal(amount) * multiplier / divisor


@dataclass(frozen=True)
class _Step:
    read_date: date
    next_date: date
    posted: bool
    advanced: bool


@dataclass(frozen=True)
class AdvanceResult:
    obligation_id: int
    previous_date: date
    next_date: date
    posted: int


@dataclass(frozen=True)
class ObligationFailure:
    obligation_id: Optional[int]
    error: str


@dataclass
class AdvanceReport:
    user_id: int
    advanced: int = 0
    posted: int = 0
    skipped: int = 0
    errors: list[ObligationFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class ObligationScheduler:
    """Materializes due obligations and projects them into future months.

    Every (post, advance) pair runs in one store transaction. The advance is a
    compare-and-swap on ``next_date``; when it loses a race the transaction,
    posting included, rolls back and the step is retried against a fresh read.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        retry_policy: RetryPolicy,
        settings: Settings,
    ) -> None:
        self.session_factory = session_factory
        self.retry_policy = retry_policy
        self.settings = settings

    def today(self) -> date:
        return local_today(self.settings.timezone)

    def advance(self, obligation_id: int, as_of: Optional[date] = None) -> date:
        return self._advance(obligation_id, as_of or self.today()).next_date

    def advance_due(self, user_id: int, as_of: Optional[date] = None) -> AdvanceReport:
        as_of = as_of or self.today()
        report = AdvanceReport(user_id=user_id)
        try:
            due_ids = self.retry_policy.call(self._due_ids, user_id, as_of)
        except EngineError as exc:
            logger.exception(f"advance_list_failed: user_id={user_id} as_of={as_of}")
            report.errors.append(ObligationFailure(None, str(exc)))
            return report
        for obligation_id in due_ids:
            try:
                result = self._advance(obligation_id, as_of)
            except EngineError as exc:
                logger.exception(
                    f"advance_failed: user_id={user_id} obligation_id={obligation_id}"
                )
                report.errors.append(ObligationFailure(obligation_id, str(exc)))
                continue
            if result.next_date != result.previous_date:
                report.advanced += 1
            else:
                report.skipped += 1
            report.posted += result.posted
        logger.info(
            f"advance_run: user_id={user_id} as_of={as_of} due={len(due_ids)} "
            f"advanced={report.advanced} posted={report.posted} skipped={report.skipped} "
            f"errors={len(report.errors)}"
        )
        return report

    def fast_forward(self, obligation_id: int, as_of: Optional[date] = None) -> date:
        """Move ``next_date`` to the first occurrence on or after ``as_of`` without posting."""
        return self.retry_policy.call(
            self._fast_forward, obligation_id, as_of or self.today()
        )

    def generate_forecast(
        self, source_id: int, horizon_months: int
    ) -> list[ForecastEntry]:
        self._check_horizon(horizon_months)
        return self.retry_policy.call(self._generate_forecast, source_id, horizon_months)

    def materialize_forecast(self, source_id: int, month: date) -> Optional[LedgerEntry]:
        return self.retry_policy.call(self._materialize_forecast, source_id, month_of(month))

    def extend_forecasts(self, user_id: int, horizon_months: Optional[int] = None) -> int:
        horizon = (
            self.settings.default_forecast_horizon
            if horizon_months is None
            else horizon_months
        )
        self._check_horizon(horizon)
        try:
            obligation_ids = self.retry_policy.call(self._obligation_ids, user_id)
        except EngineError:
            logger.exception(f"forecast_list_failed: user_id={user_id}")
            return 0
        refreshed = 0
        for obligation_id in obligation_ids:
            try:
                self.generate_forecast(obligation_id, horizon)
            except EngineError:
                logger.exception(
                    f"forecast_failed: user_id={user_id} obligation_id={obligation_id}"
                )
                continue
            refreshed += 1
        logger.info(
            f"forecast_run: user_id={user_id} horizon={horizon} "
            f"refreshed={refreshed} total={len(obligation_ids)}"
        )
        return refreshed

    def _check_horizon(self, horizon_months: int) -> None:
        if isinstance(horizon_months, bool) or not isinstance(horizon_months, int):
            raise ValidationError("Forecast horizon must be an integer number of months")
        if horizon_months < 1:
            raise ValidationError("Forecast horizon must be at least one month")
        if horizon_months > self.settings.max_forecast_horizon:
            raise ValidationError(
                f"Forecast horizon cannot exceed {self.settings.max_forecast_horizon} months"
            )

    def _advance(self, obligation_id: int, as_of: date) -> AdvanceResult:
        previous: Optional[date] = None
        posted = 0
        steps = 0
        max_steps = self.settings.max_catch_up_steps
        while True:
            step = self.retry_policy.call(self._advance_step, obligation_id, as_of)
            if previous is None:
                previous = step.read_date
            posted += int(step.posted)
            if not step.advanced:
                break
            steps += 1
            if steps >= max_steps:
                logger.warning(
                    f"advance_step_limit: obligation_id={obligation_id} "
                    f"steps={steps} next_date={step.next_date}"
                )
                break
        return AdvanceResult(obligation_id, previous, step.next_date, posted)

    def _advance_step(self, obligation_id: int, as_of: date) -> _Step:
        with unit_of_work(self.session_factory) as session:
            obligations = ObligationRepository(session)
            obligation = obligations.get(obligation_id)
            current = obligation.next_date
            if obligation.status != ObligationStatus.active or current > as_of:
                return _Step(current, current, posted=False, advanced=False)

            ledger = LedgerRepository(session)
            posted = False
            if not self._already_posted(ledger, obligation, current):
                ledger.add(self._posting(obligation, current))
                posted = True
            following = next_occurrence(current, obligation.frequency)
            obligations.compare_and_set_next_date(obligation.id, current, following)
        logger.debug(
            f"advance_step: obligation_id={obligation_id} occurrence={current} "
            f"next_date={following} posted={posted}"
        )
        return _Step(current, following, posted=posted, advanced=True)

    def _fast_forward(self, obligation_id: int, as_of: date) -> date:
        with unit_of_work(self.session_factory) as session:
            obligations = ObligationRepository(session)
            obligation = obligations.get(obligation_id)
            current = obligation.next_date
            target = catch_up(
                current,
                obligation.frequency,
                as_of,
                max_steps=self.settings.max_catch_up_steps,
            )
            if target != current:
                obligations.compare_and_set_next_date(obligation.id, current, target)
            return target

    def _generate_forecast(self, source_id: int, horizon_months: int) -> list[ForecastEntry]:
        with unit_of_work(self.session_factory) as session:
            obligation = ObligationRepository(session).get(source_id)
            forecasts = ForecastRepository(session)
            if obligation.status != ObligationStatus.active:
                removed = forecasts.delete_for_source(obligation.id, obligation.user_id)
                logger.info(
                    f"forecast_cleared: source_id={source_id} "
                    f"status={obligation.status.value} removed={removed}"
                )
                return []

            months = list(iter_months(obligation.next_date, horizon_months))
            rows = []
            written = 0
            for month in months:
                row, changed = forecasts.upsert(
                    obligation.id, obligation.user_id, month, obligation.amount
                )
                rows.append(row)
                written += int(changed)
            removed = forecasts.delete_outside(obligation.id, obligation.user_id, months)
        logger.info(
            f"forecast_generated: source_id={source_id} horizon={horizon_months} "
            f"written={written} removed={removed}"
        )
        return rows

    def _materialize_forecast(self, source_id: int, month: date) -> Optional[LedgerEntry]:
        with unit_of_work(self.session_factory) as session:
            obligation = ObligationRepository(session).get(source_id)
            if obligation.status != ObligationStatus.active:
                logger.info(
                    f"materialize_skipped: source_id={source_id} month={month} "
                    f"status={obligation.status.value}"
                )
                return None
            if obligation.frequency not in MONTHLY_OR_COARSER:
                # a single monthly posting cannot stand in for several occurrences
                logger.info(
                    f"materialize_skipped: source_id={source_id} month={month} "
                    f"frequency={obligation.frequency.value}"
                )
                return None
            ledger = LedgerRepository(session)
            if ledger.exists_for_month(obligation.id, month):
                logger.info(
                    f"materialize_skipped: source_id={source_id} month={month} "
                    "reason=already_posted"
                )
                return None
            day = min(obligation.next_date.day, days_in_month(month.year, month.month))
            return ledger.add(self._posting(obligation, month.replace(day=day)))

    def _due_ids(self, user_id: int, as_of: date) -> list[int]:
        with unit_of_work(self.session_factory) as session:
            return ObligationRepository(session).due_ids(user_id, as_of)

    def _obligation_ids(self, user_id: int) -> list[int]:
        with unit_of_work(self.session_factory) as session:
            return [o.id for o in ObligationRepository(session).list_for_user(user_id)]

    @staticmethod
    def _already_posted(
        ledger: LedgerRepository, obligation: RecurringObligation, occurrence: date
    ) -> bool:
        if obligation.frequency in MONTHLY_OR_COARSER:
            return ledger.exists_for_month(obligation.id, occurrence)
        return ledger.exists_for_occurrence(obligation.id, occurrence)

    @staticmethod
    def _posting(obligation: RecurringObligation, occurrence: date) -> LedgerEntry:
        return LedgerEntry(
            user_id=obligation.user_id,
            category_id=obligation.category_id,
            amount=obligation.amount,
            date=occurrence,
            description=obligation.name,
            obligation_id=obligation.id,
            occurrence_date=occurrence,
        )
