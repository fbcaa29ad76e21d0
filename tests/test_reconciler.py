import logging
from datetime import date, datetime
from typing import Optional

import pytest

from config import Settings
from database import Base, build_engine, build_session_factory, session_scope
from dates import FixedClock
from errors import AccountNotFound, HistoryTooLarge, StoreUnavailable
from models import (
    Account,
    CreditCard,
    Direction,
    Transaction,
    TransactionStatus,
    TransactionType,
    Transfer,
)
from reconciler import BalanceReconciler
from stores import TransactionStore


def make_reconciler(today: date = date(2024, 1, 8), **overrides):
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    factory = build_session_factory(engine)
    values = dict(database_url="sqlite://", timezone="UTC", fetch_retry_backoff_secs=0)
    values.update(overrides)
    reconciler = BalanceReconciler(
        factory, settings=Settings(**values), clock=FixedClock(today)
    )
    return factory, reconciler


def add_account(factory, name: str = "Checking", user_id: int = 1, balance: int = 0) -> int:
    with session_scope(factory) as session:
        account = Account(user_id=user_id, name=name, balance_cents=balance)
        session.add(account)
        session.flush()
        return account.id


def add_txn(
    factory,
    account_id: Optional[int],
    kind: TransactionType,
    amount: int,
    on: date,
    *,
    status: TransactionStatus = TransactionStatus.completed,
    **fields,
) -> int:
    with session_scope(factory) as session:
        txn = Transaction(
            user_id=1,
            account_id=account_id,
            type=kind,
            amount_cents=amount,
            date=on,
            status=status,
            **fields,
        )
        session.add(txn)
        session.flush()
        return txn.id


def add_transfer(
    factory,
    from_id: int,
    to_id: int,
    amount: int,
    created_at: datetime,
    status: TransactionStatus = TransactionStatus.completed,
) -> None:
    with session_scope(factory) as session:
        session.add(
            Transfer(
                user_id=1,
                from_account_id=from_id,
                to_account_id=to_id,
                amount_cents=amount,
                status=status,
                created_at=created_at,
            )
        )


def stored_balance(factory, account_id: int) -> int:
    with session_scope(factory) as session:
        return session.get(Account, account_id).balance_cents


def test_recompute_sums_income_and_salary_minus_expense():
    factory, reconciler = make_reconciler()
    account_id = add_account(factory)
    add_txn(factory, account_id, TransactionType.income, 100_000, date(2024, 1, 1))
    add_txn(factory, account_id, TransactionType.salary, 50_000, date(2024, 1, 2))
    add_txn(factory, account_id, TransactionType.expense, 20_000, date(2024, 1, 5))

    assert reconciler.recompute(account_id) == 130_000
    with session_scope(factory) as session:
        account = session.get(Account, account_id)
        assert account.balance_cents == 130_000
        assert account.reconciled_on == date(2024, 1, 8)
        assert account.reconciled_at == datetime(2024, 1, 8, 12, 0)


def test_recompute_is_idempotent():
    factory, reconciler = make_reconciler()
    account_id = add_account(factory)
    add_txn(factory, account_id, TransactionType.income, 100_000, date(2024, 1, 8))
    add_txn(factory, account_id, TransactionType.expense, 20_000, date(2024, 1, 5))

    first = reconciler.recompute(account_id)
    second = reconciler.recompute(account_id)
    assert first == second == 80_000
    assert stored_balance(factory, account_id) == 80_000


def test_future_dated_transactions_are_excluded():
    factory, reconciler = make_reconciler()
    account_id = add_account(factory)
    add_txn(factory, account_id, TransactionType.income, 100_000, date(2024, 1, 8))
    add_txn(factory, account_id, TransactionType.expense, 20_000, date(2024, 1, 5))
    add_txn(factory, account_id, TransactionType.income, 5_000, date(2024, 1, 10))

    assert reconciler.recompute(account_id) == 80_000


def test_inactive_statuses_are_excluded_and_pending_counts():
    factory, reconciler = make_reconciler()
    account_id = add_account(factory)
    add_txn(factory, account_id, TransactionType.income, 10_000, date(2024, 1, 1))
    add_txn(
        factory,
        account_id,
        TransactionType.expense,
        3_000,
        date(2024, 1, 2),
        status=TransactionStatus.failed,
    )
    add_txn(
        factory,
        account_id,
        TransactionType.expense,
        4_000,
        date(2024, 1, 2),
        status=TransactionStatus.cancelled,
    )
    add_txn(
        factory,
        account_id,
        TransactionType.expense,
        1_000,
        date(2024, 1, 3),
        status=TransactionStatus.pending,
    )

    assert reconciler.recompute(account_id) == 9_000


def test_card_linked_transactions_never_affect_balance():
    factory, reconciler = make_reconciler()
    account_id = add_account(factory)
    with session_scope(factory) as session:
        card = CreditCard(
            account_id=account_id, name="Visa", closing_day=30, due_day=10
        )
        session.add(card)
        session.flush()
        card_id = card.id
    add_txn(factory, account_id, TransactionType.income, 10_000, date(2024, 1, 1))
    add_txn(
        factory,
        account_id,
        TransactionType.expense,
        7_000,
        date(2024, 1, 2),
        credit_card_id=card_id,
    )
    add_txn(
        factory,
        account_id,
        TransactionType.expense,
        2_000,
        date(2024, 1, 3),
        metadata_json='{"credit_card_id": 99, "merchant": "Store"}',
    )

    assert reconciler.recompute(account_id) == 10_000


def test_transfer_rows_use_their_direction():
    factory, reconciler = make_reconciler()
    account_id = add_account(factory)
    add_txn(
        factory,
        account_id,
        TransactionType.transfer,
        5_000,
        date(2024, 1, 1),
        direction=Direction.inbound,
    )
    add_txn(
        factory,
        account_id,
        TransactionType.transfer,
        2_000,
        date(2024, 1, 2),
        direction=Direction.outbound,
    )

    assert reconciler.recompute(account_id) == 3_000


def test_malformed_records_are_skipped_with_warning(caplog):
    factory, reconciler = make_reconciler()
    account_id = add_account(factory)
    add_txn(factory, account_id, TransactionType.income, 10_000, date(2024, 1, 1))
    bad_metadata = add_txn(
        factory,
        account_id,
        TransactionType.expense,
        3_000,
        date(2024, 1, 2),
        metadata_json="{not json",
    )
    no_direction = add_txn(
        factory, account_id, TransactionType.transfer, 4_000, date(2024, 1, 3)
    )

    with caplog.at_level(logging.WARNING, logger="reconciler"):
        assert reconciler.recompute(account_id) == 10_000

    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert any(f"transaction_id={bad_metadata}" in message for message in warnings)
    assert any(f"transaction_id={no_direction}" in message for message in warnings)


def test_completed_transfers_move_money_between_accounts():
    factory, reconciler = make_reconciler()
    source = add_account(factory, "Checking")
    target = add_account(factory, "Savings")
    add_txn(factory, source, TransactionType.income, 50_000, date(2024, 1, 1))
    add_transfer(factory, source, target, 20_000, datetime(2024, 1, 3, 9, 30))
    add_transfer(
        factory,
        source,
        target,
        7_000,
        datetime(2024, 1, 4, 9, 30),
        status=TransactionStatus.cancelled,
    )
    add_transfer(factory, source, target, 1_000, datetime(2024, 1, 9, 9, 30))

    assert reconciler.recompute(source) == 30_000
    assert reconciler.recompute(target) == 20_000


def test_transfer_created_late_today_counts():
    factory, reconciler = make_reconciler()
    source = add_account(factory, "Checking")
    target = add_account(factory, "Savings")
    add_transfer(factory, source, target, 1_500, datetime(2024, 1, 8, 23, 59))

    assert reconciler.recompute(target) == 1_500


def test_missing_account_raises_without_writing():
    factory, reconciler = make_reconciler()
    other = add_account(factory, balance=4_200)

    with pytest.raises(AccountNotFound):
        reconciler.recompute(other + 100)
    assert stored_balance(factory, other) == 4_200


def test_transient_store_failures_are_retried(monkeypatch):
    factory, reconciler = make_reconciler(fetch_retry_attempts=3)
    account_id = add_account(factory)
    add_txn(factory, account_id, TransactionType.income, 10_000, date(2024, 1, 1))

    original = TransactionStore.list
    failures = {"left": 2}

    def flaky(self, query, *, offset=0, limit=100):
        if failures["left"]:
            failures["left"] -= 1
            raise StoreUnavailable("connection reset")
        return original(self, query, offset=offset, limit=limit)

    monkeypatch.setattr(TransactionStore, "list", flaky)

    assert reconciler.recompute(account_id) == 10_000
    assert failures["left"] == 0


def test_exhausted_retries_leave_balance_untouched(monkeypatch):
    factory, reconciler = make_reconciler(fetch_retry_attempts=2)
    account_id = add_account(factory, balance=12_345)
    add_txn(factory, account_id, TransactionType.income, 10_000, date(2024, 1, 1))
    calls = []

    def broken(self, query, *, offset=0, limit=100):
        calls.append(offset)
        raise StoreUnavailable("timeout")

    monkeypatch.setattr(TransactionStore, "list", broken)

    with pytest.raises(StoreUnavailable):
        reconciler.recompute(account_id)
    assert len(calls) == 2
    assert stored_balance(factory, account_id) == 12_345


def test_history_is_paginated():
    factory, reconciler = make_reconciler(page_size=2, max_pages=10)
    account_id = add_account(factory)
    for day in range(1, 6):
        add_txn(factory, account_id, TransactionType.income, 1_000, date(2024, 1, day))

    assert reconciler.recompute(account_id) == 5_000


def test_history_beyond_page_cap_fails_without_writing():
    factory, reconciler = make_reconciler(page_size=2, max_pages=2)
    account_id = add_account(factory, balance=777)
    for day in range(1, 6):
        add_txn(factory, account_id, TransactionType.income, 1_000, date(2024, 1, day))

    with pytest.raises(HistoryTooLarge):
        reconciler.recompute(account_id)
    assert stored_balance(factory, account_id) == 777


def test_recompute_all_continues_past_failures(monkeypatch):
    factory, reconciler = make_reconciler(fetch_retry_attempts=1)
    healthy = add_account(factory, "Checking")
    broken = add_account(factory, "Savings", balance=999)
    add_account(factory, "Other user", user_id=2)
    add_txn(factory, healthy, TransactionType.income, 10_000, date(2024, 1, 1))
    add_txn(factory, broken, TransactionType.income, 20_000, date(2024, 1, 1))

    original = TransactionStore.list

    def selective(self, query, *, offset=0, limit=100):
        if query.account_id == broken:
            raise StoreUnavailable("disk I/O error")
        return original(self, query, offset=offset, limit=limit)

    monkeypatch.setattr(TransactionStore, "list", selective)

    report = reconciler.recompute_all(1)
    assert report.succeeded == 1
    assert report.failed == 1
    assert report.balances == {healthy: 10_000}
    assert broken in report.failures
    assert stored_balance(factory, broken) == 999
