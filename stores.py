from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable, Iterator, Optional

from sqlalchemy import exists, or_, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from errors import AccountNotFound, HistoryTooLarge, MalformedData, StoreUnavailable
from models import (
    Account,
    Direction,
    INACTIVE_STATUSES,
    Transaction,
    TransactionStatus,
    Transfer,
)
from schemas import TransactionMetadata


@dataclass
class Page:
    items: list
    offset: int
    has_more: bool


@dataclass(frozen=True)
class TransactionQuery:
    account_id: Optional[int] = None
    user_id: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None


@contextmanager
def store_errors(what: str) -> Iterator[None]:
    try:
        yield
    except (OperationalError, TimeoutError) as exc:
        raise StoreUnavailable(f"{what} failed: {exc}") from exc


def card_reference(txn: Transaction) -> Optional[int]:
    if txn.credit_card_id is not None:
        return txn.credit_card_id
    return TransactionMetadata.from_raw(txn.id, txn.metadata_json).credit_card_id


def _day_start(d: date) -> datetime:
    return datetime.combine(d, time.min)


def _page(session: Session, stmt, offset: int, limit: int) -> Page:
    rows = list(session.scalars(stmt.offset(offset).limit(limit + 1)).all())
    return Page(items=rows[:limit], offset=offset, has_more=len(rows) > limit)


def collect_pages(
    fetch_page: Callable[[int, int], Page],
    *,
    page_size: int,
    max_pages: int,
    what: str,
) -> list:
    items: list = []
    offset = 0
    for _ in range(max_pages):
        page = fetch_page(offset, page_size)
        items.extend(page.items)
        if not page.has_more:
            return items
        offset += len(page.items)
    raise HistoryTooLarge(what, max_pages, page_size)


class TransactionStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self, query: TransactionQuery, *, offset: int = 0, limit: int = 100) -> Page:
        if query.account_id is None and query.user_id is None:
            raise ValueError("Transaction query needs an account_id or a user_id")
        stmt = select(Transaction).order_by(Transaction.date, Transaction.id)
        if query.account_id is not None:
            stmt = stmt.where(Transaction.account_id == query.account_id)
        if query.user_id is not None:
            stmt = stmt.where(Transaction.user_id == query.user_id)
        if query.start is not None:
            stmt = stmt.where(Transaction.date >= query.start)
        if query.end is not None:
            stmt = stmt.where(Transaction.date <= query.end)
        with store_errors(f"listing transactions {query}"):
            return _page(self.session, stmt, offset, limit)

    def has_due(self, account_id: int, *, after: Optional[date], through: date) -> bool:
        """Whether the account holds cash rows dated in ``(after, through]``.

        Card ids kept only in metadata are checked row by row; a row whose
        metadata cannot be read counts as due.
        """
        conditions = [
            Transaction.account_id == account_id,
            Transaction.credit_card_id.is_(None),
            Transaction.status.not_in(INACTIVE_STATUSES),
            Transaction.date <= through,
        ]
        if after is not None:
            conditions.append(Transaction.date > after)
        stmt = select(Transaction).where(*conditions).order_by(Transaction.date, Transaction.id)
        with store_errors(f"checking due transactions for account {account_id}"):
            for txn in self.session.scalars(stmt):
                try:
                    if card_reference(txn) is None:
                        return True
                except MalformedData:
                    return True
        return False


class TransferLog:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(
        self,
        account_id: int,
        direction: Direction,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
        status: TransactionStatus = TransactionStatus.completed,
        offset: int = 0,
        limit: int = 100,
    ) -> Page:
        side = (
            Transfer.from_account_id
            if direction == Direction.outbound
            else Transfer.to_account_id
        )
        stmt = (
            select(Transfer)
            .where(side == account_id, Transfer.status == status)
            .order_by(Transfer.created_at, Transfer.id)
        )
        if start is not None:
            stmt = stmt.where(Transfer.created_at >= _day_start(start))
        if end is not None:
            stmt = stmt.where(Transfer.created_at < _day_start(end + timedelta(days=1)))
        with store_errors(f"listing {direction.value} transfers for account {account_id}"):
            return _page(self.session, stmt, offset, limit)

    def has_due(self, account_id: int, *, after: Optional[date], through: date) -> bool:
        conditions = [
            or_(
                Transfer.from_account_id == account_id,
                Transfer.to_account_id == account_id,
            ),
            Transfer.status == TransactionStatus.completed,
            Transfer.created_at < _day_start(through + timedelta(days=1)),
        ]
        if after is not None:
            conditions.append(Transfer.created_at >= _day_start(after + timedelta(days=1)))
        with store_errors(f"checking due transfers for account {account_id}"):
            return bool(self.session.scalar(select(exists().where(*conditions))))


class AccountStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, account_id: int) -> Account:
        with store_errors(f"loading account {account_id}"):
            account = self.session.get(Account, account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def list_for_user(self, user_id: int) -> list[Account]:
        stmt = select(Account).where(Account.user_id == user_id).order_by(Account.id)
        with store_errors(f"listing accounts for user {user_id}"):
            return list(self.session.scalars(stmt).all())

    def user_ids(self) -> list[int]:
        stmt = select(Account.user_id).distinct().order_by(Account.user_id)
        with store_errors("listing account owners"):
            return list(self.session.scalars(stmt).all())

    def update_balance(
        self,
        account_id: int,
        balance_cents: int,
        *,
        reconciled_on: date,
        reconciled_at: datetime,
    ) -> None:
        stmt = (
            update(Account)
            .where(Account.id == account_id)
            .values(
                balance_cents=balance_cents,
                reconciled_on=reconciled_on,
                reconciled_at=reconciled_at,
                updated_at=datetime.utcnow(),
            )
        )
        with store_errors(f"updating balance of account {account_id}"):
            result = self.session.execute(stmt)
        if result.rowcount == 0:
            raise AccountNotFound(account_id)
