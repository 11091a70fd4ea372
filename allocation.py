"""Zero-based budget classification for a single month."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Union

from errors import ValidationError

Number = Union[int, float, Decimal, str]

EPSILON = Decimal("0.01")
CENT = Decimal("0.01")


class AllocationStatus(str, Enum):
    balanced = "Balanced"
    over_allocated = "OverAllocated"
    under_allocated = "UnderAllocated"


@dataclass(frozen=True)
class AllocationResult:
    remaining: Decimal
    status: AllocationStatus


def _to_decimal(name: str, value: Number) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    try:
        # str() keeps floats at their shortest repr instead of the binary expansion
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be a number") from exc
    if not result.is_finite():
        raise ValidationError(f"{name} must be a finite number")
    return result


def classify(
    income: Number,
    fixed: Number,
    subscriptions: Number,
    variable: Number,
    debt_payments: Number,
    goal_contributions: Number,
    *,
    epsilon: Decimal = EPSILON,
) -> AllocationResult:
    """Classify a month's zero-based budget state.

    ``remaining`` is income minus every allocation bucket. The month is
    ``Balanced`` when ``|remaining| < epsilon``, ``OverAllocated`` when
    ``remaining < -epsilon`` and ``UnderAllocated`` otherwise.
    """
    values = {
        "income": income,
        "fixed": fixed,
        "subscriptions": subscriptions,
        "variable": variable,
        "debt_payments": debt_payments,
        "goal_contributions": goal_contributions,
    }
    amounts = {name: _to_decimal(name, value) for name, value in values.items()}
    allocated = sum(
        (amount for name, amount in amounts.items() if name != "income"), Decimal(0)
    )
    remaining = amounts["income"] - allocated

    if abs(remaining) < epsilon:
        status = AllocationStatus.balanced
    elif remaining < -epsilon:
        status = AllocationStatus.over_allocated
    else:
        status = AllocationStatus.under_allocated
    return AllocationResult(remaining=remaining, status=status)


@dataclass(frozen=True)
class AllocationBreakdown:
    income: Decimal
    fixed: Decimal
    subscriptions: Decimal
    variable: Decimal
    debt_payments: Decimal
    goal_contributions: Decimal

    @property
    def total_allocated(self) -> Decimal:
        return (
            self.fixed
            + self.subscriptions
            + self.variable
            + self.debt_payments
            + self.goal_contributions
        )

    def rounded(self) -> "AllocationBreakdown":
        def q(value: Decimal) -> Decimal:
            return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)

        return AllocationBreakdown(
            income=q(self.income),
            fixed=q(self.fixed),
            subscriptions=q(self.subscriptions),
            variable=q(self.variable),
            debt_payments=q(self.debt_payments),
            goal_contributions=q(self.goal_contributions),
        )

    def classify(self, epsilon: Decimal = EPSILON) -> AllocationResult:
        return classify(
            self.income,
            self.fixed,
            self.subscriptions,
            self.variable,
            self.debt_payments,
            self.goal_contributions,
            epsilon=epsilon,
        )
