"""Monthly recurring transactions.

A template is any active transaction marked ``recurrence=monthly`` that is
not itself an occurrence. Each later month gets one copy dated on the
template's day of month (clamped to the month's end), linked back through
``origin_transaction_id`` and keyed by ``occurrence_date``. Posting is
idempotent: a month that already has its copy is never posted again.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dates import Clock, add_months
from errors import MalformedData
from models import INACTIVE_STATUSES, Recurrence, Transaction, TransactionStatus
from schemas import TransactionMetadata

logger = logging.getLogger(__name__)

MAX_CATCH_UP_MONTHS = 365


def months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + end.month - start.month


def occurrence_dates(
    template_date: date,
    today: date,
    *,
    after: Optional[date] = None,
    day: Optional[int] = None,
):
    """Occurrence dates of a monthly template up to ``today``, skipping through ``after``.

    ``day`` anchors the day of month when the template itself was clamped,
    e.g. a charge on the 31st that started in February.
    """
    day = day or template_date.day
    step = 1 if after is None else max(1, months_between(template_date, after) + 1)
    for _ in range(MAX_CATCH_UP_MONTHS):
        occurrence = add_months(template_date, step, desired_day=day)
        if occurrence > today:
            return
        yield occurrence
        step += 1


@dataclass
class RecurringReport:
    posted: list[Transaction] = field(default_factory=list)

    @property
    def account_ids(self) -> list[int]:
        return sorted({t.account_id for t in self.posted if t.account_id is not None})

    @property
    def card_ids(self) -> list[int]:
        return sorted(
            {t.credit_card_id for t in self.posted if t.credit_card_id is not None}
        )


class RecurringEngine:
    def __init__(self, session: Session, clock: Optional[Clock] = None) -> None:
        self.session = session
        self.clock = clock or Clock()

    def templates(self, user_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.recurrence == Recurrence.monthly,
                Transaction.origin_transaction_id.is_(None),
                Transaction.status.not_in(INACTIVE_STATUSES),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def catch_up(self, template: Transaction, today: Optional[date] = None) -> list[Transaction]:
        today = today or self.clock.today()
        latest = self.session.scalar(
            select(func.max(Transaction.occurrence_date)).where(
                Transaction.origin_transaction_id == template.id
            )
        )
        anchor = TransactionMetadata.from_raw(template.id, template.metadata_json)
        posted = []
        for occurrence in occurrence_dates(
            template.date, today, after=latest, day=anchor.recurring_day
        ):
            txn = self._post_occurrence(template, occurrence)
            if txn is not None:
                posted.append(txn)
        return posted

    def post_due(self, user_id: int, today: Optional[date] = None) -> RecurringReport:
        today = today or self.clock.today()
        report = RecurringReport()
        for template in self.templates(user_id):
            if template.date >= today:
                continue
            try:
                posted = self.catch_up(template, today)
            except MalformedData as exc:
                logger.warning(
                    f"recurring_skip: template_id={template.id} reason={exc.reason}"
                )
                continue
            if posted:
                logger.info(
                    f"recurring: template_id={template.id} posted={len(posted)} "
                    f"through={posted[-1].occurrence_date}"
                )
            report.posted.extend(posted)
        return report

    def _post_occurrence(
        self, template: Transaction, occurrence_date: date
    ) -> Optional[Transaction]:
        exists_stmt = (
            select(Transaction.id)
            .where(
                Transaction.origin_transaction_id == template.id,
                Transaction.occurrence_date == occurrence_date,
            )
            .limit(1)
        )
        if self.session.execute(exists_stmt).scalar_one_or_none():
            return None

        txn = Transaction(
            user_id=template.user_id,
            account_id=template.account_id,
            credit_card_id=template.credit_card_id,
            type=template.type,
            direction=template.direction,
            amount_cents=template.amount_cents,
            date=occurrence_date,
            purchase_date=occurrence_date if template.credit_card_id else None,
            status=TransactionStatus.completed,
            description=template.description,
            metadata_json=template.metadata_json,
            origin_transaction_id=template.id,
            occurrence_date=occurrence_date,
        )
        self.session.add(txn)
        self.session.flush()
        return txn
