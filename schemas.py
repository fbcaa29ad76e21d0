from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from errors import MalformedData
from installments import MAX_INSTALLMENTS
from models import Direction, Recurrence, TransactionStatus, TransactionType


class TransactionMetadata(BaseModel):
    """Typed view of the free-form JSON blob importers attach to transactions."""

    model_config = ConfigDict(extra="ignore")

    credit_card_id: Optional[int] = None
    installment: Optional[int] = Field(default=None, ge=1)
    installments: Optional[int] = Field(default=None, ge=1)
    merchant: Optional[str] = None
    category: Optional[str] = None
    recurring_day: Optional[int] = Field(default=None, ge=1, le=31)
    note: Optional[str] = None

    @classmethod
    def from_raw(cls, record_id: object, raw: Optional[str]) -> "TransactionMetadata":
        if raw is None or not raw.strip():
            return cls()
        try:
            return cls.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise MalformedData(
                record_id, f"unparseable metadata ({exc.error_count()} errors)"
            ) from exc

    def to_raw(self) -> Optional[str]:
        payload = self.model_dump_json(exclude_none=True)
        return None if payload == "{}" else payload


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    initial_balance_cents: int = Field(default=0, ge=0)


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    name: str
    balance_cents: int
    reconciled_on: Optional[date]
    reconciled_at: Optional[datetime]


class TransactionIn(BaseModel):
    account_id: Optional[int] = None
    credit_card_id: Optional[int] = None
    type: TransactionType
    direction: Optional[Direction] = None
    amount_cents: int = Field(..., ge=0)
    date: date
    status: TransactionStatus = TransactionStatus.completed
    purchase_date: Optional[date] = None
    installment: Optional[int] = Field(default=None, ge=1)
    installments: Optional[int] = Field(default=None, ge=1)
    recurrence: Optional[Recurrence] = None
    description: Optional[str] = Field(default=None, max_length=200)
    metadata: Optional[TransactionMetadata] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    account_id: Optional[int]
    credit_card_id: Optional[int]
    type: TransactionType
    direction: Optional[Direction]
    amount_cents: int
    date: date
    status: TransactionStatus
    purchase_date: Optional[date]
    installment: Optional[int]
    installments: Optional[int]
    recurrence: Optional[Recurrence]
    origin_transaction_id: Optional[int]
    occurrence_date: Optional[date]
    description: Optional[str]


class TransferIn(BaseModel):
    from_account_id: int
    to_account_id: int
    amount_cents: int = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=200)
    created_at: Optional[datetime] = None


class TransferOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    from_account_id: int
    to_account_id: int
    amount_cents: int
    status: TransactionStatus
    created_at: datetime


class CreditCardIn(BaseModel):
    account_id: int
    name: str = Field(..., min_length=1, max_length=120)
    closing_day: int = Field(..., ge=1, le=31)
    due_day: int = Field(..., ge=1, le=31)
    credit_limit_cents: int = Field(default=0, ge=0)


class CreditCardOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    name: str
    closing_day: int
    due_day: int
    credit_limit_cents: int
    used_limit_cents: int


class CardPurchaseIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    purchase_date: date
    installments: int = Field(default=1, ge=1, le=MAX_INSTALLMENTS)
    description: Optional[str] = Field(default=None, max_length=180)
    merchant: Optional[str] = Field(default=None, max_length=120)
    category: Optional[str] = Field(default=None, max_length=100)


class SubscriptionIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    recurring_day: int = Field(..., ge=1, le=31)
    start_date: date
    description: Optional[str] = Field(default=None, max_length=180)
    merchant: Optional[str] = Field(default=None, max_length=120)
    category: Optional[str] = Field(default=None, max_length=100)


class BillPaymentIn(BaseModel):
    account_id: int
    amount_cents: int = Field(..., gt=0)
    payment_date: date
    bill_due_date: Optional[date] = None
    description: Optional[str] = Field(default=None, max_length=200)


class BillSummaryOut(BaseModel):
    cycle_year: int
    cycle_month: int
    closing_date: date
    due_date: date
    label: str
    total_cents: int
    transaction_count: int


class InstallmentPreviewIn(BaseModel):
    total_cents: int
    count: int = Field(..., le=MAX_INSTALLMENTS)
    purchase_date: date
    closing_day: int
    due_day: Optional[int] = None


class InstallmentOut(BaseModel):
    number: int
    count: int
    label: str
    amount_cents: int
    date: date
    cycle_year: int
    cycle_month: int
    due_date: Optional[date]
    bill_label: Optional[str]


class RecomputeOut(BaseModel):
    account_id: int
    balance_cents: int


class RecomputeReportOut(BaseModel):
    user_id: int
    succeeded: int
    failed: int
    balances: dict[int, int]
    failures: dict[int, str]


class ProcessDueOut(BaseModel):
    user_id: int
    accounts_updated: int


class RecurringOut(BaseModel):
    user_id: int
    posted: int
