import logging
from typing import Optional

from sqlalchemy.orm import sessionmaker

from database import session_scope
from dates import Clock
from reconciler import BalanceReconciler
from stores import AccountStore, TransactionStore, TransferLog

logger = logging.getLogger(__name__)


class DueTransactionSweeper:
    """Promotes future-dated rows into balances once their date arrives.

    An account is due when it holds cash transactions or completed transfers
    dated after the day of its last reconciliation and no later than today.
    Recomputing moves ``reconciled_on`` to today, so a second sweep on the
    same day finds nothing.
    """

    def __init__(
        self,
        reconciler: BalanceReconciler,
        *,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.reconciler = reconciler
        self.session_factory = session_factory or reconciler.session_factory
        self.clock = clock or reconciler.clock

    def due_account_ids(self, user_id: int) -> list[int]:
        today = self.clock.today()
        due: list[int] = []
        with session_scope(self.session_factory) as session:
            transactions = TransactionStore(session)
            transfers = TransferLog(session)
            for account in AccountStore(session).list_for_user(user_id):
                after = account.reconciled_on
                if transactions.has_due(
                    account.id, after=after, through=today
                ) or transfers.has_due(account.id, after=after, through=today):
                    due.append(account.id)
        return due

    def process_due(self, user_id: int) -> int:
        account_ids = self.due_account_ids(user_id)
        if not account_ids:
            logger.info(f"sweep: user_id={user_id} accounts_due=0")
            return 0

        updated = 0
        for account_id in account_ids:
            try:
                self.reconciler.recompute(account_id)
            except Exception:
                logger.exception(
                    f"sweep: user_id={user_id} account_id={account_id} recompute failed"
                )
                continue
            updated += 1
        logger.info(
            f"sweep: user_id={user_id} accounts_due={len(account_ids)} accounts_updated={updated}"
        )
        return updated

    def process_due_all(self) -> int:
        with session_scope(self.session_factory) as session:
            user_ids = AccountStore(session).user_ids()
        return sum(self.process_due(user_id) for user_id in user_ids)
