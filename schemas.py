from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import Frequency, ObligationKind, ObligationStatus


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class LedgerEntryIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category_id: int
    amount: Decimal = Field(..., max_digits=14, decimal_places=2)
    date: date
    description: Optional[str] = Field(default=None, max_length=200)
    source_transaction_id: Optional[str] = Field(default=None, max_length=64)


class AllocationIn(BaseModel):
    category_id: int
    month: date
    allocated: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)


class ObligationIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount: Decimal = Field(..., max_digits=14, decimal_places=2)
    category_id: int
    kind: ObligationKind = ObligationKind.fixed
    frequency: Frequency
    next_date: date
    status: ObligationStatus = ObligationStatus.active
    linked_source_id: Optional[int] = None


class ObligationUpdate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount: Decimal = Field(..., max_digits=14, decimal_places=2)
    category_id: int
    kind: ObligationKind = ObligationKind.fixed
    frequency: Frequency
    linked_source_id: Optional[int] = None
