import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy.orm import sessionmaker

from allocation import AllocationResult, Number, classify
from config import Settings, get_settings
from database import create_db_engine, make_session_factory
from models import ForecastEntry, LedgerEntry
from reconciliation import ReconcileReport, Reconciler
from recurrence import AdvanceReport, ObligationScheduler, local_today
from repositories import active_user_ids, unit_of_work
from retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserRunSummary:
    user_id: int
    advance: AdvanceReport
    forecasts_refreshed: int
    reconcile: ReconcileReport


class BudgetEngine:
    """Entry point for the reconciliation, scheduling and allocation operations.

    The engine owns no global state: the session factory, settings and retry
    policy are injected once at startup and shared by every operation.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.reconciler = Reconciler(
            session_factory,
            retry_policy=self.retry_policy,
            epsilon=self.settings.epsilon,
            max_workers=self.settings.reconcile_workers,
        )
        self.scheduler = ObligationScheduler(
            session_factory, retry_policy=self.retry_policy, settings=self.settings
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "BudgetEngine":
        settings = settings or get_settings()
        return cls(make_session_factory(create_db_engine(settings)), settings)

    def today(self) -> date:
        return local_today(self.settings.timezone)

    def reconcile(self, user_id: int) -> ReconcileReport:
        return self.reconciler.reconcile(user_id)

    def reconcile_key(
        self, user_id: int, category_id: int, month: date, *, after_write: bool = False
    ) -> ReconcileReport:
        return self.reconciler.reconcile_key(
            user_id, category_id, month, after_write=after_write
        )

    def advance(self, obligation_id: int, as_of: Optional[date] = None) -> date:
        return self.scheduler.advance(obligation_id, as_of or self.today())

    def advance_due(self, user_id: int, as_of: Optional[date] = None) -> AdvanceReport:
        return self.scheduler.advance_due(user_id, as_of or self.today())

    def generate_forecast(self, source_id: int, horizon_months: int) -> list[ForecastEntry]:
        return self.scheduler.generate_forecast(source_id, horizon_months)

    def materialize_forecast(self, source_id: int, month: date) -> Optional[LedgerEntry]:
        return self.scheduler.materialize_forecast(source_id, month)

    def extend_forecasts(self, user_id: int, horizon_months: Optional[int] = None) -> int:
        return self.scheduler.extend_forecasts(user_id, horizon_months)

    def classify(
        self,
        income: Number,
        fixed: Number,
        subscriptions: Number,
        variable: Number,
        debt_payments: Number,
        goal_contributions: Number,
    ) -> AllocationResult:
        return classify(
            income,
            fixed,
            subscriptions,
            variable,
            debt_payments,
            goal_contributions,
            epsilon=self.settings.epsilon,
        )

    def user_ids(self) -> list[int]:
        def load() -> list[int]:
            with unit_of_work(self.session_factory) as session:
                return active_user_ids(session)

        return self.retry_policy.call(load)

    def run_for_user(self, user_id: int, as_of: Optional[date] = None) -> UserRunSummary:
        """Advance due obligations, refresh forecasts, then reconcile aggregates."""
        as_of = as_of or self.today()
        advance = self.advance_due(user_id, as_of)
        refreshed = self.extend_forecasts(user_id)
        reconcile = self.reconcile(user_id)
        return UserRunSummary(user_id, advance, refreshed, reconcile)
