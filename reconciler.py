"""Account balance reconciliation.

An account's cash balance is never patched in place. Every recompute reads
the account's whole eligible history and folds it from zero, so running it
again over unchanged data always writes the same number. The price is
O(history) work per mutation; pagination is bounded so a runaway history
fails loudly instead of exhausting memory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Iterable, Optional, TypeVar, assert_never

from sqlalchemy.orm import Session, sessionmaker
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import Settings, get_settings
from database import SessionLocal, session_scope
from dates import Clock
from errors import MalformedData, StoreUnavailable
from locks import AccountRecomputeQueue
from models import (
    Direction,
    INACTIVE_STATUSES,
    Transaction,
    TransactionType,
    Transfer,
)
from stores import (
    AccountStore,
    card_reference,
    Page,
    TransactionQuery,
    TransactionStore,
    TransferLog,
    collect_pages,
    store_errors,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def direction_sign(txn: Transaction) -> int:
    """+1 when the transaction brings money into its ledger, -1 when it takes money out."""
    kind = txn.type
    if kind is TransactionType.income or kind is TransactionType.salary:
        return 1
    elif kind is TransactionType.expense:
        return -1
    elif kind is TransactionType.transfer:
        if txn.direction is Direction.inbound:
            return 1
        if txn.direction is Direction.outbound:
            return -1
        raise MalformedData(txn.id, "transfer transaction without direction")
    else:
        assert_never(kind)


def signed_amount(txn: Transaction, today: date) -> int:
    """Contribution of one transaction to its account's cash balance."""
    if txn.status in INACTIVE_STATUSES:
        return 0
    if txn.date > today:
        return 0
    if card_reference(txn) is not None:
        return 0
    return direction_sign(txn) * txn.amount_cents


def fold_balance(
    transactions: Iterable[Transaction],
    transfers_in: Iterable[Transfer],
    transfers_out: Iterable[Transfer],
    *,
    today: date,
) -> int:
    balance = 0
    for txn in transactions:
        try:
            balance += signed_amount(txn, today)
        except MalformedData as exc:
            logger.warning(
                f"recompute_skip: transaction_id={txn.id} account_id={txn.account_id} reason={exc.reason}"
            )
    for transfer in transfers_in:
        if transfer.created_at.date() <= today:
            balance += transfer.amount_cents
    for transfer in transfers_out:
        if transfer.created_at.date() <= today:
            balance -= transfer.amount_cents
    return balance


@dataclass
class RecomputeReport:
    user_id: int
    balances: dict[int, int] = field(default_factory=dict)
    failures: dict[int, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return len(self.balances)

    @property
    def failed(self) -> int:
        return len(self.failures)


class BalanceReconciler:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        queue: Optional[AccountRecomputeQueue] = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.settings = settings or get_settings()
        self.clock = clock or Clock(self.settings.timezone)
        self.queue = queue or AccountRecomputeQueue()
        backoff = self.settings.fetch_retry_backoff_secs
        self._retrying = Retrying(
            stop=stop_after_attempt(max(1, self.settings.fetch_retry_attempts)),
            wait=wait_exponential(multiplier=backoff, max=backoff * 8),
            retry=retry_if_exception_type(StoreUnavailable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def recompute(self, account_id: int) -> int:
        return self.queue.run(account_id, lambda: self._recompute(account_id))

    def recompute_all(self, user_id: int) -> RecomputeReport:
        with session_scope(self.session_factory) as session:
            accounts = self._read(
                session, AccountStore(session).list_for_user, user_id
            )
            account_ids = [account.id for account in accounts]

        report = RecomputeReport(user_id=user_id)
        for account_id in account_ids:
            try:
                report.balances[account_id] = self.recompute(account_id)
            except Exception as exc:
                logger.exception(
                    f"recompute_all: user_id={user_id} account_id={account_id} failed"
                )
                report.failures[account_id] = str(exc)
        logger.info(
            f"recompute_all: user_id={user_id} succeeded={report.succeeded} failed={report.failed}"
        )
        return report

    def _recompute(self, account_id: int) -> int:
        today = self.clock.today()
        with store_errors(f"recomputing account {account_id}"):
            with session_scope(self.session_factory) as session:
                accounts = AccountStore(session)
                self._read(session, accounts.get, account_id)

                transactions = TransactionStore(session)
                query = TransactionQuery(account_id=account_id, end=today)
                history = self._collect(
                    session,
                    lambda offset, limit: transactions.list(
                        query, offset=offset, limit=limit
                    ),
                    what=f"transactions of account {account_id}",
                )

                transfers = TransferLog(session)
                transfers_in = self._collect(
                    session,
                    lambda offset, limit: transfers.list(
                        account_id, Direction.inbound, end=today, offset=offset, limit=limit
                    ),
                    what=f"incoming transfers of account {account_id}",
                )
                transfers_out = self._collect(
                    session,
                    lambda offset, limit: transfers.list(
                        account_id, Direction.outbound, end=today, offset=offset, limit=limit
                    ),
                    what=f"outgoing transfers of account {account_id}",
                )

                balance = fold_balance(
                    history, transfers_in, transfers_out, today=today
                )
                accounts.update_balance(
                    account_id,
                    balance,
                    reconciled_on=today,
                    reconciled_at=self.clock.now(),
                )
        logger.info(
            f"recompute: account_id={account_id} balance_cents={balance} "
            f"transactions={len(history)} transfers_in={len(transfers_in)} "
            f"transfers_out={len(transfers_out)} today={today}"
        )
        return balance

    def _collect(
        self,
        session: Session,
        fetch_page: Callable[[int, int], Page],
        *,
        what: str,
    ) -> list:
        return collect_pages(
            lambda offset, limit: self._read(session, fetch_page, offset, limit),
            page_size=self.settings.page_size,
            max_pages=self.settings.max_pages,
            what=what,
        )

    def _read(self, session: Session, fn: Callable[..., T], *args) -> T:
        def attempt() -> T:
            try:
                return fn(*args)
            except StoreUnavailable:
                session.rollback()
                raise

        return self._retrying.copy()(attempt)
