from dataclasses import dataclass
from datetime import date
from typing import Iterator


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def months_between(start: date, end: date) -> int:
    """Number of calendar months from the month of ``start`` to that of ``end``."""
    return (end.year - start.year) * 12 + (end.month - start.month)


def period_start(d: date, months: int) -> date:
    """First day of the ``months``-wide calendar bucket containing ``d``.

    Buckets are aligned to January: 1 = month, 3 = quarter, 6 = half-year,
    12 = year.
    """
    first_month = ((d.month - 1) // months) * months + 1
    return date(d.year, first_month, 1)


def shift_period(start: date, months: int, count: int) -> date:
    return add_months(period_start(start, months), months * count)


def previous_period(start: date, months: int) -> date:
    return shift_period(start, months, -1)


def year_ago_period(start: date) -> date:
    """Same bucket one calendar year earlier, for every granularity."""
    return add_months(start, -12)


@dataclass(frozen=True, order=True)
class BudgetPeriodKey:
    year: int
    month: int

    @classmethod
    def from_date(cls, d: date) -> "BudgetPeriodKey":
        return cls(d.year, d.month)

    @classmethod
    def parse(cls, value: str) -> "BudgetPeriodKey":
        year_str, sep, month_str = value.strip().partition("-")
        if not sep:
            raise ValueError(f"Invalid period {value!r}, expected YYYY-MM")
        key = cls(int(year_str), int(month_str))
        key.validate()
        return key

    @property
    def start_date(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end_date(self) -> date:
        return date(self.year, self.month, days_in_month(self.year, self.month))

    def add_months(self, months: int) -> "BudgetPeriodKey":
        return BudgetPeriodKey.from_date(add_months(self.start_date, months))

    def validate(self) -> None:
        if self.month < 1 or self.month > 12:
            raise ValueError("Month must be between 1 and 12")

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


def iter_period_keys(
    start: BudgetPeriodKey, end: BudgetPeriodKey
) -> Iterator[BudgetPeriodKey]:
    current = start
    while current <= end:
        yield current
        current = current.add_months(1)
