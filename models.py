import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base

MONEY = Numeric(14, 2)


class Frequency(str, Enum):
    daily = "Daily"
    weekly = "Weekly"
    biweekly = "Biweekly"
    monthly = "Monthly"
    quarterly = "Quarterly"
    yearly = "Yearly"


FREQUENCY_ENUM = SAEnum(
    Frequency,
    name="frequency",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class ObligationStatus(str, Enum):
    active = "active"
    paused = "paused"
    cancelled = "cancelled"


class ObligationKind(str, Enum):
    income = "income"
    fixed = "fixed"
    subscription = "subscription"
    debt = "debt"
    goal = "goal"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )


class LedgerEntry(Base, TimestampMixin):
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    source_transaction_id: Mapped[Optional[str]] = mapped_column(String(64))
    obligation_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_obligations.id")
    )
    occurrence_date: Mapped[Optional[dt.date]] = mapped_column(Date)

    category: Mapped["Category"] = relationship("Category")
    obligation: Mapped[Optional["RecurringObligation"]] = relationship(
        "RecurringObligation", back_populates="postings"
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "obligation_id",
            "occurrence_date",
            name="uq_ledger_obligation_occurrence",
        ),
        Index("ix_ledger_user_date", "user_id", "date"),
        Index("ix_ledger_user_category_date", "user_id", "category_id", "date"),
        Index("ix_ledger_obligation_date", "obligation_id", "date"),
    )


class AggregateEntry(Base, TimestampMixin):
    __tablename__ = "budget_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    month: Mapped[date] = mapped_column(Date, nullable=False)
    allocated: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=0)
    spent: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint(
            "user_id", "category_id", "month", name="uq_budget_entry_user_cat_month"
        ),
        Index("ix_budget_entry_user_month", "user_id", "month"),
    )


class RecurringObligation(Base, TimestampMixin):
    __tablename__ = "recurring_obligations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    kind: Mapped[ObligationKind] = mapped_column(
        SAEnum(ObligationKind), nullable=False, default=ObligationKind.fixed
    )
    frequency: Mapped[Frequency] = mapped_column(FREQUENCY_ENUM, nullable=False)
    next_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[ObligationStatus] = mapped_column(
        SAEnum(ObligationStatus), nullable=False, default=ObligationStatus.active
    )
    linked_source_id: Mapped[Optional[int]] = mapped_column(Integer)

    category: Mapped["Category"] = relationship("Category")
    postings: Mapped[list["LedgerEntry"]] = relationship(
        "LedgerEntry", back_populates="obligation"
    )

    __table_args__ = (
        Index("ix_obligation_user_status_next", "user_id", "status", "next_date"),
    )


class ForecastEntry(Base, TimestampMixin):
    __tablename__ = "obligation_forecasts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_id: Mapped[int] = mapped_column(
        ForeignKey("recurring_obligations.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "source_id", "month", "user_id", name="uq_forecast_source_month_user"
        ),
        Index("ix_forecast_user_month", "user_id", "month"),
    )
