from datetime import date

import pytest

from periods import (
    BudgetPeriodKey,
    add_months,
    iter_period_keys,
    period_start,
    previous_period,
    shift_period,
    year_ago_period,
)


def test_period_start_aligns_buckets_to_january():
    assert period_start(date(2025, 8, 19), 1) == date(2025, 8, 1)
    assert period_start(date(2025, 8, 19), 3) == date(2025, 7, 1)
    assert period_start(date(2025, 8, 19), 6) == date(2025, 7, 1)
    assert period_start(date(2025, 8, 19), 12) == date(2025, 1, 1)


def test_shift_period_crosses_year_boundaries():
    assert shift_period(date(2025, 2, 10), 3, -1) == date(2024, 10, 1)
    assert shift_period(date(2025, 2, 10), 1, -14) == date(2023, 12, 1)
    assert add_months(date(2024, 12, 31), 2) == date(2025, 2, 1)


def test_budget_period_key_ordering_and_arithmetic():
    key = BudgetPeriodKey.parse("2025-11")
    assert str(key.add_months(3)) == "2026-02"
    assert BudgetPeriodKey(2025, 12) < BudgetPeriodKey(2026, 1)
    assert key.end_date == date(2025, 11, 30)
    assert [str(k) for k in iter_period_keys(key, BudgetPeriodKey(2026, 1))] == [
        "2025-11",
        "2025-12",
        "2026-01",
    ]
    with pytest.raises(ValueError):
        BudgetPeriodKey.parse("2025-00")


def test_comparison_periods_match_granularity():
    assert previous_period(date(2025, 1, 1), 3) == date(2024, 10, 1)
    assert previous_period(date(2025, 7, 1), 6) == date(2025, 1, 1)
    assert year_ago_period(date(2025, 7, 1)) == date(2024, 7, 1)
