from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    salary = "salary"
    transfer = "transfer"


class TransactionStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


# Statuses whose money never moved.
INACTIVE_STATUSES = (TransactionStatus.failed, TransactionStatus.cancelled)


class Recurrence(str, Enum):
    monthly = "monthly"


class Direction(str, Enum):
    inbound = "in"
    outbound = "out"


DIRECTION_ENUM = SAEnum(
    Direction,
    name="direction",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reconciled_on: Mapped[Optional[date]] = mapped_column(Date)
    reconciled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    credit_cards: Mapped[list["CreditCard"]] = relationship(
        "CreditCard", back_populates="account"
    )

    __table_args__ = (Index("ix_accounts_user", "user_id"),)


class CreditCard(Base, TimestampMixin):
    __tablename__ = "credit_cards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    closing_day: Mapped[int] = mapped_column(Integer, nullable=False)
    due_day: Mapped[int] = mapped_column(Integer, nullable=False)
    credit_limit_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    used_limit_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    account: Mapped["Account"] = relationship("Account", back_populates="credit_cards")

    __table_args__ = (
        CheckConstraint("closing_day BETWEEN 1 AND 31", name="ck_card_closing_day"),
        CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_card_due_day"),
        CheckConstraint("credit_limit_cents >= 0", name="ck_card_limit_positive"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    credit_card_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("credit_cards.id")
    )
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    direction: Mapped[Optional[Direction]] = mapped_column(DIRECTION_ENUM)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    purchase_date: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), nullable=False, default=TransactionStatus.pending
    )
    installment: Mapped[Optional[int]] = mapped_column(Integer)
    installments: Mapped[Optional[int]] = mapped_column(Integer)
    recurrence: Mapped[Optional[Recurrence]] = mapped_column(
        SAEnum(Recurrence, name="recurrence")
    )
    origin_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    occurrence_date: Mapped[Optional[date]] = mapped_column(Date)
    description: Mapped[Optional[str]] = mapped_column(Text)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_card_date", "credit_card_id", "date"),
        Index(
            "ux_transactions_origin_occurrence",
            "origin_transaction_id",
            "occurrence_date",
            unique=True,
        ),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "account_id IS NOT NULL OR credit_card_id IS NOT NULL",
            name="ck_transactions_has_ledger",
        ),
        CheckConstraint(
            "installment IS NULL OR (installment >= 1 AND installment <= installments)",
            name="ck_transactions_installment_range",
        ),
    )


class Transfer(Base):
    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    from_account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    to_account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), nullable=False, default=TransactionStatus.completed
    )
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_transfers_from_created", "from_account_id", "created_at"),
        Index("ix_transfers_to_created", "to_account_id", "created_at"),
        CheckConstraint("amount_cents > 0", name="ck_transfers_amount_positive"),
        CheckConstraint(
            "from_account_id <> to_account_id", name="ck_transfers_distinct_accounts"
        ),
    )
