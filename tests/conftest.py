from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from config import Settings
from database import Base, create_db_engine, make_session_factory, session_scope
from engine import BudgetEngine
from models import (
    AggregateEntry,
    Category,
    Frequency,
    LedgerEntry,
    ObligationKind,
    ObligationStatus,
    RecurringObligation,
)


def _settings(database_url: str) -> Settings:
    return Settings(database_url=database_url, backoff_max_secs=0, backoff_min_secs=0)


@pytest.fixture
def budget_engine() -> BudgetEngine:
    db = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(db)
    yield BudgetEngine(make_session_factory(db), _settings("sqlite://"))
    db.dispose()


@pytest.fixture
def file_engine(tmp_path) -> BudgetEngine:
    """Engine over a real SQLite file so separate sessions use separate connections."""
    settings = _settings(f"sqlite:///{tmp_path / 'budget.db'}")
    db = create_db_engine(settings)
    Base.metadata.create_all(db)
    yield BudgetEngine(make_session_factory(db), settings)
    db.dispose()


@pytest.fixture
def add_category():
    def factory(engine: BudgetEngine, name: str = "Rent", user_id: int = 1) -> int:
        with session_scope(engine.session_factory) as session:
            category = Category(user_id=user_id, name=name)
            session.add(category)
            session.flush()
            return category.id

    return factory


@pytest.fixture
def add_obligation():
    def factory(
        engine: BudgetEngine,
        category_id: int,
        *,
        next_date: date,
        frequency: Frequency = Frequency.monthly,
        amount: str = "-100.00",
        user_id: int = 1,
        status: ObligationStatus = ObligationStatus.active,
        kind: ObligationKind = ObligationKind.fixed,
        obligation_id=None,
        name: str = "Rent",
    ) -> int:
        with session_scope(engine.session_factory) as session:
            obligation = RecurringObligation(
                id=obligation_id,
                user_id=user_id,
                name=name,
                amount=Decimal(amount),
                category_id=category_id,
                kind=kind,
                frequency=frequency,
                next_date=next_date,
                status=status,
            )
            session.add(obligation)
            session.flush()
            return obligation.id

    return factory


@pytest.fixture
def add_ledger():
    def factory(
        engine: BudgetEngine,
        category_id: int,
        amount: str,
        entry_date: date,
        *,
        user_id: int = 1,
        obligation_id=None,
    ) -> int:
        with session_scope(engine.session_factory) as session:
            entry = LedgerEntry(
                user_id=user_id,
                category_id=category_id,
                amount=Decimal(amount),
                date=entry_date,
                obligation_id=obligation_id,
                occurrence_date=entry_date if obligation_id else None,
            )
            session.add(entry)
            session.flush()
            return entry.id

    return factory


@pytest.fixture
def add_aggregate():
    def factory(
        engine: BudgetEngine,
        category_id: int,
        month: date,
        spent: str = "0",
        allocated: str = "0",
        user_id: int = 1,
    ) -> int:
        with session_scope(engine.session_factory) as session:
            entry = AggregateEntry(
                user_id=user_id,
                category_id=category_id,
                month=month,
                spent=Decimal(spent),
                allocated=Decimal(allocated),
            )
            session.add(entry)
            session.flush()
            return entry.id

    return factory
