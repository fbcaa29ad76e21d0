from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing import BillingCycle, assign_bill, validate_day_of_month
from database import session_scope
from dates import add_months, clamped_date
from errors import (
    AccountNotFound,
    CreditCardNotFound,
    MalformedData,
    TransactionNotFound,
    TransferNotFound,
    ValidationError,
)
from installments import split_installments
from models import (
    Account,
    CreditCard,
    INACTIVE_STATUSES,
    Recurrence,
    Transaction,
    TransactionStatus,
    TransactionType,
    Transfer,
)
from reconciler import BalanceReconciler, direction_sign
from recurrence import RecurringEngine
from schemas import (
    AccountIn,
    BillPaymentIn,
    CardPurchaseIn,
    CreditCardIn,
    SubscriptionIn,
    TransactionIn,
    TransactionMetadata,
    TransferIn,
)
from stores import AccountStore

logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


def _present(ids: Iterable[Optional[int]]) -> list[int]:
    return sorted({value for value in ids if value is not None})


@dataclass
class BillSummary:
    cycle: BillingCycle
    closing_date: date
    due_date: date
    label: str
    total_cents: int = 0
    transaction_count: int = 0


class AccountService:
    def __init__(
        self,
        session: Session,
        reconciler: BalanceReconciler,
        user_id: Optional[int] = None,
    ) -> None:
        self.session = session
        self.reconciler = reconciler
        self.user_id = user_id or get_current_user_id()

    def get(self, account_id: int) -> Account:
        # Balances are written by the reconciler's own sessions.
        account = self.session.get(Account, account_id, populate_existing=True)
        if not account or account.user_id != self.user_id:
            raise AccountNotFound(account_id)
        return account

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name, Account.id)
            .execution_options(populate_existing=True)
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: AccountIn) -> Account:
        account = Account(user_id=self.user_id, name=data.name.strip(), balance_cents=0)
        self.session.add(account)
        self.session.flush()
        if data.initial_balance_cents > 0:
            self.session.add(
                Transaction(
                    user_id=self.user_id,
                    account_id=account.id,
                    type=TransactionType.income,
                    amount_cents=data.initial_balance_cents,
                    date=self.reconciler.clock.today(),
                    status=TransactionStatus.completed,
                    description="Initial balance",
                    metadata_json=TransactionMetadata(category="balance").to_raw(),
                )
            )
        self.session.commit()
        self.reconciler.recompute(account.id)
        return self.get(account.id)


class TransactionService:
    def __init__(
        self,
        session: Session,
        reconciler: BalanceReconciler,
        user_id: Optional[int] = None,
    ) -> None:
        self.session = session
        self.reconciler = reconciler
        self.user_id = user_id or get_current_user_id()

    def get(self, transaction_id: int) -> Transaction:
        stmt = select(Transaction).where(
            Transaction.user_id == self.user_id, Transaction.id == transaction_id
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise TransactionNotFound(transaction_id)
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        account_id, card_id, metadata_json = self._resolve(data)
        txn = Transaction(
            user_id=self.user_id,
            account_id=account_id,
            credit_card_id=card_id,
            metadata_json=metadata_json,
        )
        self._apply(txn, data)
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        self.refresh_ledgers([txn.account_id], [txn.credit_card_id])
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        previous_account, previous_card = txn.account_id, txn.credit_card_id
        account_id, card_id, metadata_json = self._resolve(data)
        txn.account_id = account_id
        txn.credit_card_id = card_id
        txn.metadata_json = metadata_json
        self._apply(txn, data)
        self.session.commit()
        self.session.refresh(txn)
        self.refresh_ledgers(
            [previous_account, txn.account_id], [previous_card, txn.credit_card_id]
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        account_id, card_id = txn.account_id, txn.credit_card_id
        self.session.delete(txn)
        self.session.commit()
        self.refresh_ledgers([account_id], [card_id])

    def _resolve(
        self, data: TransactionIn
    ) -> tuple[Optional[int], Optional[int], Optional[str]]:
        metadata = data.metadata or TransactionMetadata()
        card_id = data.credit_card_id
        if metadata.credit_card_id is not None:
            if card_id is not None and card_id != metadata.credit_card_id:
                raise ValidationError(
                    f"Conflicting credit card references: {card_id} and {metadata.credit_card_id}"
                )
            card_id = metadata.credit_card_id
            metadata = metadata.model_copy(update={"credit_card_id": None})

        if data.account_id is None and card_id is None:
            raise ValidationError("Transaction needs an account or a credit card")
        if data.account_id is not None:
            AccountService(self.session, self.reconciler, self.user_id).get(
                data.account_id
            )
        if card_id is not None:
            CreditCardService(self.session, self.reconciler, self.user_id).get(card_id)
        if data.type == TransactionType.transfer and data.direction is None:
            raise ValidationError("Transfer transactions need a direction")
        if data.installment is not None and (
            data.installments is None or data.installment > data.installments
        ):
            raise ValidationError("Installment number exceeds installment count")
        return data.account_id, card_id, metadata.to_raw()

    @staticmethod
    def _apply(txn: Transaction, data: TransactionIn) -> None:
        txn.type = data.type
        txn.direction = data.direction if data.type == TransactionType.transfer else None
        txn.amount_cents = data.amount_cents
        txn.date = data.date
        txn.status = data.status
        txn.purchase_date = data.purchase_date
        txn.installment = data.installment
        txn.installments = data.installments
        txn.recurrence = data.recurrence
        txn.description = data.description

    def refresh_ledgers(
        self, account_ids: Iterable[Optional[int]], card_ids: Iterable[Optional[int]]
    ) -> None:
        cards = CreditCardService(self.session, self.reconciler, self.user_id)
        for card_id in _present(card_ids):
            cards.sync_used_limit(card_id)
        for account_id in _present(account_ids):
            self.reconciler.recompute(account_id)


class TransferService:
    def __init__(
        self,
        session: Session,
        reconciler: BalanceReconciler,
        user_id: Optional[int] = None,
    ) -> None:
        self.session = session
        self.reconciler = reconciler
        self.user_id = user_id or get_current_user_id()

    def get(self, transfer_id: int) -> Transfer:
        transfer = self.session.get(Transfer, transfer_id)
        if not transfer or transfer.user_id != self.user_id:
            raise TransferNotFound(transfer_id)
        return transfer

    def create(self, data: TransferIn) -> Transfer:
        if data.from_account_id == data.to_account_id:
            raise ValidationError("Cannot transfer to the same account")
        accounts = AccountService(self.session, self.reconciler, self.user_id)
        accounts.get(data.from_account_id)
        accounts.get(data.to_account_id)

        available = self.reconciler.recompute(data.from_account_id)
        if available < data.amount_cents:
            raise ValidationError(
                f"Insufficient balance in account {data.from_account_id}: "
                f"{available} < {data.amount_cents}"
            )

        transfer = Transfer(
            user_id=self.user_id,
            from_account_id=data.from_account_id,
            to_account_id=data.to_account_id,
            amount_cents=data.amount_cents,
            status=TransactionStatus.completed,
            description=data.description,
            created_at=self._created_at(data),
        )
        self.session.add(transfer)
        self.session.commit()
        self.session.refresh(transfer)
        self._recompute_sides(transfer)
        return transfer

    def cancel(self, transfer_id: int) -> Transfer:
        transfer = self.get(transfer_id)
        if transfer.status == TransactionStatus.cancelled:
            return transfer
        transfer.status = TransactionStatus.cancelled
        self.session.commit()
        self.session.refresh(transfer)
        self._recompute_sides(transfer)
        return transfer

    def _created_at(self, data: TransferIn) -> datetime:
        clock = self.reconciler.clock
        if data.created_at is None:
            return clock.now()
        return clock.localize(data.created_at)

    def _recompute_sides(self, transfer: Transfer) -> None:
        self.reconciler.recompute(transfer.from_account_id)
        self.reconciler.recompute(transfer.to_account_id)


class CreditCardService:
    def __init__(
        self,
        session: Session,
        reconciler: BalanceReconciler,
        user_id: Optional[int] = None,
    ) -> None:
        self.session = session
        self.reconciler = reconciler
        self.user_id = user_id or get_current_user_id()

    def get(self, card_id: int) -> CreditCard:
        stmt = (
            select(CreditCard)
            .join(Account, CreditCard.account_id == Account.id)
            .where(CreditCard.id == card_id, Account.user_id == self.user_id)
        )
        card = self.session.scalar(stmt)
        if not card:
            raise CreditCardNotFound(card_id)
        return card

    def create(self, data: CreditCardIn) -> CreditCard:
        validate_day_of_month(data.closing_day, "closing_day")
        validate_day_of_month(data.due_day, "due_day")
        AccountService(self.session, self.reconciler, self.user_id).get(data.account_id)
        card = CreditCard(
            account_id=data.account_id,
            name=data.name.strip(),
            closing_day=data.closing_day,
            due_day=data.due_day,
            credit_limit_cents=data.credit_limit_cents,
            used_limit_cents=0,
        )
        self.session.add(card)
        self.session.commit()
        self.session.refresh(card)
        return card

    def record_purchase(self, card_id: int, data: CardPurchaseIn) -> list[Transaction]:
        card = self.get(card_id)
        metadata_json = TransactionMetadata(
            merchant=data.merchant, category=data.category
        ).to_raw()

        if data.installments == 1:
            txns = [
                Transaction(
                    user_id=self.user_id,
                    credit_card_id=card.id,
                    type=TransactionType.expense,
                    amount_cents=data.amount_cents,
                    date=data.purchase_date,
                    purchase_date=data.purchase_date,
                    status=TransactionStatus.completed,
                    description=data.description,
                    metadata_json=metadata_json,
                )
            ]
        else:
            plan = split_installments(
                data.amount_cents,
                data.installments,
                data.purchase_date,
                card.closing_day,
                due_day=card.due_day,
            )
            txns = [
                Transaction(
                    user_id=self.user_id,
                    credit_card_id=card.id,
                    type=TransactionType.expense,
                    amount_cents=item.amount_cents,
                    date=item.date,
                    purchase_date=data.purchase_date,
                    status=TransactionStatus.completed,
                    installment=item.number,
                    installments=item.count,
                    description=(
                        f"{data.description} ({item.label})"
                        if data.description
                        else f"Installment {item.label}"
                    ),
                    metadata_json=metadata_json,
                )
                for item in plan
            ]

        self.session.add_all(txns)
        self.session.commit()
        for txn in txns:
            self.session.refresh(txn)
        used = self.sync_used_limit(card.id)
        logger.info(
            f"card_purchase: credit_card_id={card.id} amount_cents={data.amount_cents} "
            f"installments={data.installments} used_limit_cents={used}"
        )
        return txns

    def create_subscription(self, card_id: int, data: SubscriptionIn) -> Transaction:
        """First charge of a monthly card subscription on ``recurring_day``.

        The charge lands on the first ``recurring_day`` on or after
        ``start_date``; later months are posted by the recurring job.
        """
        card = self.get(card_id)
        start = data.start_date
        first_charge = clamped_date(start.year, start.month, data.recurring_day)
        if first_charge < start:
            first_charge = add_months(first_charge, 1, desired_day=data.recurring_day)
        template = TransactionIn(
            credit_card_id=card.id,
            type=TransactionType.expense,
            amount_cents=data.amount_cents,
            date=first_charge,
            purchase_date=start,
            status=TransactionStatus.pending,
            recurrence=Recurrence.monthly,
            description=data.description or "Recurring subscription",
            metadata=TransactionMetadata(
                merchant=data.merchant,
                category=data.category,
                recurring_day=data.recurring_day,
            ),
        )
        txn = TransactionService(self.session, self.reconciler, self.user_id).create(
            template
        )
        logger.info(
            f"subscription_created: credit_card_id={card.id} transaction_id={txn.id} "
            f"recurring_day={data.recurring_day} first_charge={first_charge}"
        )
        return txn

    def _active_transactions(self, card_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.credit_card_id == card_id,
                Transaction.status.not_in(INACTIVE_STATUSES),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def sync_used_limit(self, card_id: int) -> int:
        card = self.get(card_id)
        used = 0
        for txn in self._active_transactions(card.id):
            try:
                used -= direction_sign(txn) * txn.amount_cents
            except MalformedData as exc:
                logger.warning(
                    f"used_limit_skip: transaction_id={txn.id} credit_card_id={card.id} reason={exc.reason}"
                )
        card.used_limit_cents = max(0, used)
        self.session.commit()
        return card.used_limit_cents

    def available_limit(self, card_id: int) -> int:
        card = self.get(card_id)
        return card.credit_limit_cents - card.used_limit_cents

    def bills(self, card_id: int) -> list[BillSummary]:
        card = self.get(card_id)
        grouped: dict[date, BillSummary] = {}
        for txn in self._active_transactions(card.id):
            try:
                charge = -direction_sign(txn) * txn.amount_cents
            except MalformedData as exc:
                logger.warning(
                    f"bill_skip: transaction_id={txn.id} credit_card_id={card.id} reason={exc.reason}"
                )
                continue
            assignment = assign_bill(txn.date, card.closing_day, card.due_day)
            summary = grouped.get(assignment.due_date)
            if summary is None:
                summary = BillSummary(
                    cycle=assignment.cycle,
                    closing_date=assignment.closing_date,
                    due_date=assignment.due_date,
                    label=assignment.label,
                )
                grouped[assignment.due_date] = summary
            summary.total_cents += charge
            summary.transaction_count += 1
        return [grouped[due] for due in sorted(grouped)]

    def pay_bill(self, card_id: int, data: BillPaymentIn) -> Transaction:
        card = self.get(card_id)
        description = data.description
        if not description:
            description = f"{card.name} bill payment"
            if data.bill_due_date is not None:
                month = calendar.month_name[data.bill_due_date.month]
                description += f" - {month} {data.bill_due_date.year}"
        payment = TransactionIn(
            account_id=data.account_id,
            type=TransactionType.expense,
            amount_cents=data.amount_cents,
            date=data.payment_date,
            status=TransactionStatus.completed,
            description=description,
            metadata=TransactionMetadata(category="credit_card_bill", merchant=card.name),
        )
        txn = TransactionService(self.session, self.reconciler, self.user_id).create(
            payment
        )
        logger.info(
            f"bill_paid: credit_card_id={card.id} account_id={data.account_id} "
            f"amount_cents={data.amount_cents} transaction_id={txn.id}"
        )
        return txn


class RecurringService:
    def __init__(
        self,
        session: Session,
        reconciler: BalanceReconciler,
        user_id: Optional[int] = None,
    ) -> None:
        self.session = session
        self.reconciler = reconciler
        self.user_id = user_id or get_current_user_id()

    def list(self) -> list[Transaction]:
        return RecurringEngine(self.session, self.reconciler.clock).templates(
            self.user_id
        )

    def post_due(self) -> int:
        report = RecurringEngine(self.session, self.reconciler.clock).post_due(
            self.user_id
        )
        self.session.commit()
        TransactionService(self.session, self.reconciler, self.user_id).refresh_ledgers(
            report.account_ids, report.card_ids
        )
        logger.info(
            f"recurring_run: user_id={self.user_id} posted={len(report.posted)} "
            f"accounts={report.account_ids} cards={report.card_ids}"
        )
        return len(report.posted)

    def catch_up_all(self) -> int:
        total = 0
        for user_id in AccountStore(self.session).user_ids():
            total += RecurringService(self.session, self.reconciler, user_id).post_due()
        return total


def post_recurring_all(reconciler: BalanceReconciler) -> int:
    with session_scope(reconciler.session_factory) as session:
        return RecurringService(session, reconciler).catch_up_all()
