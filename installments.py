import calendar
from dataclasses import dataclass
from datetime import date
from typing import Optional

from billing import BillingCycle, assign_cycle, due_date_for, validate_day_of_month
from dates import add_months
from errors import ValidationError

MAX_INSTALLMENTS = 72


@dataclass(frozen=True)
class Installment:
    number: int
    count: int
    amount_cents: int
    date: date
    cycle: BillingCycle
    due_date: Optional[date] = None

    @property
    def label(self) -> str:
        return f"{self.number}/{self.count}"

    @property
    def bill_label(self) -> Optional[str]:
        if self.due_date is None:
            return None
        return f"{calendar.month_name[self.due_date.month]} {self.due_date.year}"


def split_amount(total_cents: int, count: int) -> list[int]:
    """Split ``total_cents`` into ``count`` parts that sum back exactly.

    Every part but the first is ``total / count`` truncated to the cent; the
    first absorbs the remainder.
    """
    regular = total_cents // count
    first = total_cents - regular * (count - 1)
    return [first] + [regular] * (count - 1)


def split_installments(
    total_cents: int,
    count: int,
    purchase_date: date,
    closing_day: int,
    *,
    due_day: Optional[int] = None,
) -> list[Installment]:
    if count < 2:
        raise ValidationError(f"Installments must be at least 2, got {count}")
    if count > MAX_INSTALLMENTS:
        raise ValidationError(
            f"Installments must be at most {MAX_INSTALLMENTS}, got {count}"
        )
    if total_cents <= 0:
        raise ValidationError(f"Total amount must be positive, got {total_cents}")
    validate_day_of_month(closing_day, "closing_day")
    if due_day is not None:
        validate_day_of_month(due_day, "due_day")

    plan: list[Installment] = []
    for index, amount in enumerate(split_amount(total_cents, count)):
        # Anchor on the purchase day each time so Jan 31 -> Feb 28 -> Mar 31.
        anchored = add_months(purchase_date, index, desired_day=purchase_date.day)
        cycle = assign_cycle(anchored, closing_day)
        plan.append(
            Installment(
                number=index + 1,
                count=count,
                amount_cents=amount,
                date=anchored,
                cycle=cycle,
                due_date=due_date_for(cycle, due_day) if due_day is not None else None,
            )
        )
    return plan
