from datetime import date
from decimal import Decimal

from sqlalchemy import select

from config import Settings
from database import session_scope
from engine import BudgetEngine
from errors import StoreError
from models import AggregateEntry
from reconciliation import Reconciler
from repositories import AggregateRepository, LedgerRepository


def _spent(engine, category_id, month) -> Decimal:
    with session_scope(engine.session_factory) as session:
        return AggregateRepository(session).get(1, category_id, month).spent


def test_reconcile_creates_missing_aggregates(budget_engine, add_category, add_ledger):
    groceries = add_category(budget_engine, "Groceries")
    add_ledger(budget_engine, groceries, "-40.00", date(2024, 6, 3))
    add_ledger(budget_engine, groceries, "-12.50", date(2024, 6, 28))
    add_ledger(budget_engine, groceries, "-7.00", date(2024, 7, 1))

    report = budget_engine.reconcile(1)

    assert report.ok
    assert report.created == 2
    assert report.updated == 0
    assert _spent(budget_engine, groceries, date(2024, 6, 1)) == Decimal("-52.50")
    assert _spent(budget_engine, groceries, date(2024, 7, 1)) == Decimal("-7.00")


def test_reconcile_fixes_drift_and_reports_discrepancy(
    budget_engine, add_category, add_ledger, add_aggregate
):
    rent = add_category(budget_engine, "Rent")
    add_aggregate(budget_engine, rent, date(2024, 6, 1), spent="150")
    add_ledger(budget_engine, rent, "120", date(2024, 6, 5))
    add_ledger(budget_engine, rent, "80", date(2024, 6, 20))

    report = budget_engine.reconcile(1)

    assert report.updated == 1
    [discrepancy] = report.discrepancies
    assert discrepancy.category_id == rent
    assert discrepancy.month == date(2024, 6, 1)
    assert discrepancy.old == Decimal("150")
    assert discrepancy.new == Decimal("200")
    assert discrepancy.diff == Decimal("-50")
    assert _spent(budget_engine, rent, date(2024, 6, 1)) == Decimal("200")


def test_reconcile_is_idempotent(budget_engine, add_category, add_ledger, add_aggregate):
    rent = add_category(budget_engine, "Rent")
    add_aggregate(budget_engine, rent, date(2024, 6, 1), spent="999")
    add_ledger(budget_engine, rent, "-500", date(2024, 6, 1))

    first = budget_engine.reconcile(1)
    second = budget_engine.reconcile(1)

    assert first.updated == 1
    assert second.created == 0
    assert second.updated == 0
    assert second.discrepancies == []


def test_reconcile_keeps_spent_equal_to_ledger_sums(
    budget_engine, add_category, add_ledger, add_aggregate
):
    a = add_category(budget_engine, "A")
    b = add_category(budget_engine, "B")
    add_aggregate(budget_engine, a, date(2024, 5, 1), spent="1")
    add_ledger(budget_engine, a, "-10.10", date(2024, 5, 2))
    add_ledger(budget_engine, a, "-0.20", date(2024, 5, 30))
    add_ledger(budget_engine, b, "-3.00", date(2024, 5, 2))
    add_ledger(budget_engine, b, "25.00", date(2024, 6, 2))

    budget_engine.reconcile(1)

    with session_scope(budget_engine.session_factory) as session:
        sums = LedgerRepository(session).sum_by_category_month(1)
        for entry in AggregateRepository(session).list_for_user(1):
            assert entry.spent == sums[(entry.category_id, entry.month)]
    assert len(sums) == 3


def test_reconcile_reports_aggregates_without_ledger(
    budget_engine, add_category, add_aggregate
):
    travel = add_category(budget_engine, "Travel")
    add_aggregate(budget_engine, travel, date(2024, 3, 1), spent="-50")
    add_aggregate(budget_engine, travel, date(2024, 4, 1), spent="0", allocated="100")

    report = budget_engine.reconcile(1)

    [missing] = report.missing
    assert missing.month == date(2024, 3, 1)
    assert missing.spent == Decimal("-50")
    assert _spent(budget_engine, travel, date(2024, 3, 1)) == Decimal("-50")


def test_reconcile_ignores_other_users(budget_engine, add_category, add_ledger):
    mine = add_category(budget_engine, "Food", user_id=1)
    theirs = add_category(budget_engine, "Food", user_id=2)
    add_ledger(budget_engine, mine, "-10", date(2024, 6, 1), user_id=1)
    add_ledger(budget_engine, theirs, "-99", date(2024, 6, 1), user_id=2)

    report = budget_engine.reconcile(1)

    assert report.created == 1
    with session_scope(budget_engine.session_factory) as session:
        assert AggregateRepository(session).list_for_user(2) == []


def test_failed_group_does_not_abort_the_run(
    budget_engine, add_category, add_ledger, monkeypatch
):
    good = add_category(budget_engine, "Good")
    bad = add_category(budget_engine, "Bad")
    add_ledger(budget_engine, good, "-10", date(2024, 6, 1))
    add_ledger(budget_engine, bad, "-20", date(2024, 6, 1))

    original = Reconciler._reconcile_group
    attempts = []

    def failing(self, user_id, category_id, month, total):
        if category_id == bad:
            attempts.append(category_id)
            raise StoreError("disk I/O error")
        return original(self, user_id, category_id, month, total)

    monkeypatch.setattr(Reconciler, "_reconcile_group", failing)

    report = budget_engine.reconcile(1)

    assert not report.ok
    assert [(e.category_id, e.month) for e in report.errors] == [(bad, date(2024, 6, 1))]
    assert report.created == 1
    assert len(attempts) == budget_engine.settings.store_max_attempts
    assert _spent(budget_engine, good, date(2024, 6, 1)) == Decimal("-10")


def test_reconcile_key_only_touches_one_group(
    budget_engine, add_category, add_ledger, add_aggregate
):
    rent = add_category(budget_engine, "Rent")
    add_aggregate(budget_engine, rent, date(2024, 6, 1), spent="0")
    add_aggregate(budget_engine, rent, date(2024, 7, 1), spent="5")
    add_ledger(budget_engine, rent, "-900", date(2024, 6, 1))
    add_ledger(budget_engine, rent, "-900", date(2024, 7, 1))

    report = budget_engine.reconcile_key(1, rent, date(2024, 6, 15))

    assert report.updated == 1
    assert _spent(budget_engine, rent, date(2024, 6, 1)) == Decimal("-900")
    assert _spent(budget_engine, rent, date(2024, 7, 1)) == Decimal("5")


def test_concurrent_aggregate_update_is_retried(
    file_engine, add_category, add_ledger, add_aggregate, monkeypatch
):
    rent = add_category(file_engine, "Rent")
    add_aggregate(file_engine, rent, date(2024, 6, 1), spent="1")
    add_ledger(file_engine, rent, "-700", date(2024, 6, 3))

    original = AggregateRepository.set_spent
    raced = []

    def racing_set_spent(self, entry, spent):
        if not raced:
            raced.append(True)
            with session_scope(file_engine.session_factory) as other:
                row = other.scalar(select(AggregateEntry).where(AggregateEntry.id == entry.id))
                row.spent = Decimal("42")
        return original(self, entry, spent)

    monkeypatch.setattr(AggregateRepository, "set_spent", racing_set_spent)

    report = file_engine.reconcile(1)

    assert raced
    assert report.ok
    [discrepancy] = report.discrepancies
    assert discrepancy.old == Decimal("42")
    assert _spent(file_engine, rent, date(2024, 6, 1)) == Decimal("-700")
    with session_scope(file_engine.session_factory) as session:
        assert AggregateRepository(session).get(1, rent, date(2024, 6, 1)).version == 3


def test_reconcile_with_worker_threads(file_engine, add_category, add_ledger):
    categories = [add_category(file_engine, name) for name in ("A", "B", "C", "D")]
    for category_id in categories:
        add_ledger(file_engine, category_id, "-10", date(2024, 5, 4))
        add_ledger(file_engine, category_id, "-2.5", date(2024, 6, 4))
    settings = Settings(
        database_url=file_engine.settings.database_url,
        reconcile_workers=2,
        backoff_min_secs=0,
        backoff_max_secs=0,
    )
    threaded = BudgetEngine(file_engine.session_factory, settings)
    assert threaded.reconciler.max_workers == 2

    report = threaded.reconcile(1)

    assert report.ok
    assert report.created == 8
    for category_id in categories:
        assert _spent(file_engine, category_id, date(2024, 5, 1)) == Decimal("-10")
        assert _spent(file_engine, category_id, date(2024, 6, 1)) == Decimal("-2.5")
    assert threaded.reconcile(1).created == 0


def test_concurrent_aggregate_creation_is_retried(
    file_engine, add_category, add_ledger, monkeypatch
):
    rent = add_category(file_engine, "Rent")
    add_ledger(file_engine, rent, "-700", date(2024, 6, 3))

    original = AggregateRepository.create
    raced = []

    def racing_create(self, user_id, category_id, month, **kwargs):
        if not raced:
            raced.append(True)
            with session_scope(file_engine.session_factory) as other:
                original(
                    AggregateRepository(other), user_id, category_id, month, spent=Decimal("-1")
                )
        return original(self, user_id, category_id, month, **kwargs)

    monkeypatch.setattr(AggregateRepository, "create", racing_create)

    report = file_engine.reconcile(1)

    assert raced
    assert report.ok
    assert report.created == 0
    assert report.updated == 1
    assert report.discrepancies[0].old == Decimal("-1")
    assert _spent(file_engine, rent, date(2024, 6, 1)) == Decimal("-700")
    with session_scope(file_engine.session_factory) as session:
        assert len(AggregateRepository(session).list_for_user(1)) == 1
