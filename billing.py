"""Credit-card billing cycles.

A purchase made before the card's closing day belongs to the cycle that
closes this month; from the closing day on it rolls into the cycle that
closes next month. The bill is named after the month its payment is due,
which is always the month after the cycle closes:

    >>> assign_cycle(date(2025, 10, 29), closing_day=30)
    BillingCycle(year=2025, month=10)
    >>> assign_bill(date(2025, 10, 29), closing_day=30, due_day=10).label
    'November 2025'
"""

import calendar
from dataclasses import dataclass
from datetime import date

from dates import clamped_date, shift_month
from errors import ValidationError


@dataclass(frozen=True, order=True)
class BillingCycle:
    year: int
    month: int

    def closing_date(self, closing_day: int) -> date:
        return clamped_date(self.year, self.month, closing_day)

    def shifted(self, months: int) -> "BillingCycle":
        year, month = shift_month(self.year, self.month, months)
        return BillingCycle(year, month)


@dataclass(frozen=True)
class BillAssignment:
    cycle: BillingCycle
    closing_date: date
    due_date: date

    @property
    def label(self) -> str:
        return f"{calendar.month_name[self.due_date.month]} {self.due_date.year}"


def validate_day_of_month(value: int, field: str) -> None:
    if not 1 <= value <= 31:
        raise ValidationError(f"{field} must be between 1 and 31, got {value}")


def assign_cycle(on: date, closing_day: int) -> BillingCycle:
    validate_day_of_month(closing_day, "closing_day")
    cycle = BillingCycle(on.year, on.month)
    if on.day < closing_day:
        return cycle
    return cycle.shifted(1)


def due_date_for(cycle: BillingCycle, due_day: int) -> date:
    validate_day_of_month(due_day, "due_day")
    year, month = shift_month(cycle.year, cycle.month, 1)
    return clamped_date(year, month, due_day)


def assign_bill(on: date, closing_day: int, due_day: int) -> BillAssignment:
    cycle = assign_cycle(on, closing_day)
    return BillAssignment(
        cycle=cycle,
        closing_date=cycle.closing_date(closing_day),
        due_date=due_date_for(cycle, due_day),
    )
