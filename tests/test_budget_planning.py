from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from budget import BudgetPlanningService, BudgetService, ConsistencyError, due_periods
from database import Base
from models import BudgetIntervalType, BudgetOverride, BudgetRule, BudgetSourceType
from periods import BudgetPeriodKey
from schemas import BudgetOverrideIn, BudgetPurposeIn, BudgetRuleIn


def _purpose(budgets: BudgetService, name: str = "Rent"):
    return budgets.create_purpose(
        BudgetPurposeIn(name=name, source_type=BudgetSourceType.contact, source_id=1)
    )


def _rule(purpose_id: int, amount: int, interval: BudgetIntervalType, start: date, **kw):
    return BudgetRuleIn(
        budget_purpose_id=purpose_id,
        amount_cents=amount,
        interval=interval,
        start_date=start,
        **kw,
    )


def test_monthly_rule_plans_every_month():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, user_id=1)
        purpose = _purpose(budgets)
        budgets.create_rule(
            _rule(purpose.id, 50, BudgetIntervalType.monthly, date(2026, 1, 1))
        )

        result = BudgetPlanningService(session).calculate_planned_values(
            1, [purpose.id], BudgetPeriodKey(2025, 12), BudgetPeriodKey(2026, 3)
        )

        assert result.get(purpose.id, BudgetPeriodKey(2025, 12)) == 0
        assert result.get(purpose.id, BudgetPeriodKey(2026, 1)) == 50
        assert result.get(purpose.id, BudgetPeriodKey(2026, 3)) == 50
        assert len(result.values) == 4


def test_yearly_rule_recurs_in_its_start_month():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, user_id=1)
        purpose = _purpose(budgets, "Insurance")
        budgets.create_rule(
            _rule(purpose.id, 600, BudgetIntervalType.yearly, date(2026, 5, 1))
        )

        result = BudgetPlanningService(session).calculate_planned_values(
            1, [purpose.id], BudgetPeriodKey(2026, 1), BudgetPeriodKey(2027, 12)
        )

        assert result.get(purpose.id, BudgetPeriodKey(2026, 4)) == 0
        assert result.get(purpose.id, BudgetPeriodKey(2026, 5)) == 600
        assert result.get(purpose.id, BudgetPeriodKey(2026, 6)) == 0
        assert result.get(purpose.id, BudgetPeriodKey(2027, 5)) == 600
        assert sum(v.amount_cents for v in result.values) == 1200


def test_override_replaces_rule_amount_for_its_month():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, user_id=1)
        purpose = _purpose(budgets)
        budgets.create_rule(
            _rule(purpose.id, 350, BudgetIntervalType.monthly, date(2026, 1, 1))
        )
        budgets.upsert_override(
            BudgetOverrideIn(
                budget_purpose_id=purpose.id, year=2026, month=3, amount_cents=500
            )
        )

        result = BudgetPlanningService(session).calculate_planned_values(
            1, [purpose.id], BudgetPeriodKey(2026, 2), BudgetPeriodKey(2026, 4)
        )

        assert result.get(purpose.id, BudgetPeriodKey(2026, 2)) == 350
        assert result.get(purpose.id, BudgetPeriodKey(2026, 3)) == 500
        assert result.get(purpose.id, BudgetPeriodKey(2026, 4)) == 350


def test_upsert_override_updates_existing_row():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, user_id=1)
        purpose = _purpose(budgets)
        first = budgets.upsert_override(
            BudgetOverrideIn(
                budget_purpose_id=purpose.id, year=2026, month=3, amount_cents=500
            )
        )
        second = budgets.upsert_override(
            BudgetOverrideIn(
                budget_purpose_id=purpose.id, year=2026, month=3, amount_cents=0
            )
        )

        assert first.id == second.id
        assert session.scalar(select(func.count(BudgetOverride.id))) == 1
        result = BudgetPlanningService(session).calculate_planned_values(
            1, None, BudgetPeriodKey(2026, 3), BudgetPeriodKey(2026, 3)
        )
        assert result.get(purpose.id, BudgetPeriodKey(2026, 3)) == 0


def test_overlapping_rules_add_up():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, user_id=1)
        purpose = _purpose(budgets)
        budgets.create_rule(
            _rule(
                purpose.id,
                100,
                BudgetIntervalType.monthly,
                date(2026, 1, 1),
                end_date=date(2026, 6, 30),
            )
        )
        budgets.create_rule(
            _rule(purpose.id, 40, BudgetIntervalType.quarterly, date(2026, 2, 1))
        )

        result = BudgetPlanningService(session).calculate_planned_values(
            1, [purpose.id], BudgetPeriodKey(2026, 1), BudgetPeriodKey(2026, 8)
        )

        planned = [v.amount_cents for v in result.for_purpose(purpose.id)]
        assert planned == [100, 140, 100, 100, 140, 100, 0, 40]


def test_custom_interval_counts_from_rule_start_month():
    rule = BudgetRule(
        owner_user_id=1,
        budget_purpose_id=1,
        amount_cents=10,
        interval=BudgetIntervalType.custom_months,
        custom_interval_months=5,
        start_date=date(2025, 11, 1),
    )

    periods = list(
        due_periods(rule, BudgetPeriodKey(2026, 1), BudgetPeriodKey(2026, 12))
    )

    assert periods == [BudgetPeriodKey(2026, 4), BudgetPeriodKey(2026, 9)]


def test_rule_end_date_is_inclusive():
    rule = BudgetRule(
        owner_user_id=1,
        budget_purpose_id=1,
        amount_cents=10,
        interval=BudgetIntervalType.monthly,
        start_date=date(2026, 1, 1),
        end_date=date(2026, 3, 1),
    )

    periods = list(
        due_periods(rule, BudgetPeriodKey(2025, 1), BudgetPeriodKey(2026, 12))
    )

    assert periods == [
        BudgetPeriodKey(2026, 1),
        BudgetPeriodKey(2026, 2),
        BudgetPeriodKey(2026, 3),
    ]


def test_reversed_range_yields_empty_result():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, user_id=1)
        purpose = _purpose(budgets)
        budgets.create_rule(
            _rule(purpose.id, 50, BudgetIntervalType.monthly, date(2026, 1, 1))
        )

        result = BudgetPlanningService(session).calculate_planned_values(
            1, [purpose.id], BudgetPeriodKey(2026, 5), BudgetPeriodKey(2026, 1)
        )

        assert result.values == []
        assert result.get(purpose.id, BudgetPeriodKey(2026, 3)) == 0


def test_foreign_purposes_are_ignored():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        other = _purpose(BudgetService(session, user_id=2))
        BudgetService(session, user_id=2).create_rule(
            _rule(other.id, 50, BudgetIntervalType.monthly, date(2026, 1, 1))
        )

        result = BudgetPlanningService(session).calculate_planned_values(
            1, [other.id], BudgetPeriodKey(2026, 1), BudgetPeriodKey(2026, 2)
        )

        assert result.values == []
        with pytest.raises(ValueError, match="Purpose not found"):
            BudgetService(session, user_id=1).create_rule(
                _rule(other.id, 50, BudgetIntervalType.monthly, date(2026, 1, 1))
            )


def test_category_rules_are_planned_per_category():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, user_id=1)
        category = budgets.create_category("Household")
        budgets.create_rule(
            BudgetRuleIn(
                budget_category_id=category.id,
                amount_cents=-300,
                interval=BudgetIntervalType.quarterly,
                start_date=date(2026, 1, 1),
            )
        )

        result = BudgetPlanningService(session).calculate_category_planned_values(
            1, None, BudgetPeriodKey(2026, 1), BudgetPeriodKey(2026, 6)
        )

        assert [v.amount_cents for v in result.values] == [-300, 0, 0, -300, 0, 0]


def test_invalid_rule_and_override_arguments_are_rejected():
    with pytest.raises(ValueError, match="between 1 and 120"):
        BudgetRule(
            owner_user_id=1,
            budget_purpose_id=1,
            amount_cents=1,
            interval=BudgetIntervalType.custom_months,
            custom_interval_months=121,
            start_date=date(2026, 1, 1),
        )
    with pytest.raises(ValueError, match="earlier than start"):
        BudgetRule(
            owner_user_id=1,
            budget_purpose_id=1,
            amount_cents=1,
            interval=BudgetIntervalType.monthly,
            start_date=date(2026, 2, 1),
            end_date=date(2026, 1, 31),
        )
    with pytest.raises(ValueError, match="exactly one"):
        BudgetRule(
            owner_user_id=1,
            amount_cents=1,
            interval=BudgetIntervalType.monthly,
            start_date=date(2026, 2, 1),
        )
    with pytest.raises(ValueError, match="Month must be between 1 and 12"):
        BudgetOverride(
            owner_user_id=1,
            budget_purpose_id=1,
            period=BudgetPeriodKey(2026, 13),
            amount_cents=1,
        )
    with pytest.raises(ValidationError):
        BudgetRuleIn(
            budget_purpose_id=1,
            amount_cents=1,
            interval=BudgetIntervalType.custom_months,
            start_date=date(2026, 1, 1),
        )
    with pytest.raises(ValidationError):
        BudgetOverrideIn(budget_purpose_id=1, year=2026, month=0, amount_cents=1)


def test_planning_rejects_invalid_arguments():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        planner = BudgetPlanningService(session)
        with pytest.raises(ValueError):
            planner.calculate_planned_values(
                0, None, BudgetPeriodKey(2026, 1), BudgetPeriodKey(2026, 2)
            )
        with pytest.raises(ValueError):
            planner.calculate_planned_values(
                1, None, BudgetPeriodKey(2026, 0), BudgetPeriodKey(2026, 2)
            )
        with pytest.raises(ValueError):
            BudgetPeriodKey.parse("2026/01")


def test_override_insert_collision_updates_existing_row(monkeypatch):
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, user_id=1)
        purpose = _purpose(budgets)
        existing = budgets.upsert_override(
            BudgetOverrideIn(
                budget_purpose_id=purpose.id, year=2026, month=7, amount_cents=500
            )
        )

        real_find = budgets._find_override
        lookups = []

        def stale_first_lookup(purpose_id, period):
            lookups.append(period)
            return None if len(lookups) == 1 else real_find(purpose_id, period)

        monkeypatch.setattr(budgets, "_find_override", stale_first_lookup)
        result = budgets.upsert_override(
            BudgetOverrideIn(
                budget_purpose_id=purpose.id, year=2026, month=7, amount_cents=700
            )
        )

        assert len(lookups) == 2
        assert result.id == existing.id
        assert result.amount_cents == 700
        assert session.scalar(select(func.count(BudgetOverride.id))) == 1


def test_override_collision_without_visible_row_raises(monkeypatch):
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, user_id=1)
        purpose = _purpose(budgets)
        budgets.upsert_override(
            BudgetOverrideIn(
                budget_purpose_id=purpose.id, year=2026, month=7, amount_cents=500
            )
        )
        monkeypatch.setattr(budgets, "_find_override", lambda purpose_id, period: None)

        with pytest.raises(ConsistencyError):
            budgets.upsert_override(
                BudgetOverrideIn(
                    budget_purpose_id=purpose.id, year=2026, month=7, amount_cents=700
                )
            )


def test_custom_months_rejected_for_fixed_intervals():
    with pytest.raises(ValueError, match="only apply to custom_months"):
        BudgetRule(
            owner_user_id=1,
            budget_purpose_id=1,
            amount_cents=1,
            interval=BudgetIntervalType.quarterly,
            custom_interval_months=4,
            start_date=date(2026, 1, 1),
        )
    with pytest.raises(ValidationError):
        BudgetRuleIn(
            budget_purpose_id=1,
            amount_cents=1,
            interval=BudgetIntervalType.monthly,
            custom_interval_months=2,
            start_date=date(2026, 1, 1),
        )
