from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import AccountType, RecurringInterval, TransactionStatus, TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: AccountType = AccountType.current
    opening_balance: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    is_default: bool = False


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance: Decimal
    is_default: bool


class AccountAuditOut(BaseModel):
    account_id: int
    balance: Decimal
    computed_balance: Decimal
    in_sync: bool


class TransactionIn(BaseModel):
    account_id: int
    type: TransactionType
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=500)
    date: datetime
    category: str = Field(..., min_length=1, max_length=100)
    receipt_url: Optional[str] = None
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None
    status: TransactionStatus = TransactionStatus.completed
    # Version the client last read; updates against a newer row are refused.
    version: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _check_recurrence(self) -> "TransactionIn":
        if self.is_recurring and self.recurring_interval is None:
            raise ValueError("Recurring interval is required for recurring transactions")
        if not self.is_recurring:
            self.recurring_interval = None
        return self


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    type: TransactionType
    amount: Decimal
    description: Optional[str]
    date: datetime
    category: str
    receipt_url: Optional[str]
    is_recurring: bool
    recurring_interval: Optional[RecurringInterval]
    next_recurring_date: Optional[datetime]
    last_processed: Optional[datetime]
    status: TransactionStatus
    version: int


class BulkDeleteIn(BaseModel):
    ids: list[int] = Field(..., min_length=1)


class BudgetIn(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: Decimal
    last_alert_sent: Optional[datetime]


class BudgetStatusOut(BaseModel):
    budget: Optional[BudgetOut]
    current_expenses: Decimal
    account_id: Optional[int]


class ReceiptDraft(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal = Field(..., ge=0)
    date: datetime
    description: str
    merchant_name: str = Field(..., alias="merchantName")
    category: str


class MonthlyStats(BaseModel):
    total_income: Decimal = Decimal("0")
    total_expenses: Decimal = Decimal("0")
    by_category: dict[str, Decimal] = Field(default_factory=dict)
    transaction_count: int = 0

    @property
    def net(self) -> Decimal:
        return self.total_income - self.total_expenses
