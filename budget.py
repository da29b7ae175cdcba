from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Collection, Iterable, Iterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aggregates import ConsistencyError
from models import BudgetCategory, BudgetOverride, BudgetPurpose, BudgetRule
from periods import BudgetPeriodKey, iter_period_keys, months_between
from schemas import BudgetOverrideIn, BudgetPurposeIn, BudgetRuleIn

logger = logging.getLogger(__name__)


def due_periods(
    rule: BudgetRule, start: BudgetPeriodKey, end: BudgetPeriodKey
) -> Iterator[BudgetPeriodKey]:
    """Periods in ``[start, end]`` in which ``rule`` fires.

    A rule fires in its start month and then every ``step_months`` months,
    for as long as its end month has not passed.
    """
    first = BudgetPeriodKey.from_date(rule.start_date)
    last = BudgetPeriodKey.from_date(rule.end_date) if rule.end_date else end
    effective_from = max(first, start)
    effective_to = min(last, end)
    if effective_from > effective_to:
        return

    step = max(rule.step_months, 1)
    remainder = months_between(first.start_date, effective_from.start_date) % step
    current = effective_from if remainder == 0 else effective_from.add_months(step - remainder)
    while current <= effective_to:
        yield current
        current = current.add_months(step)


@dataclass(frozen=True)
class PlannedValue:
    purpose_id: int
    period: BudgetPeriodKey
    amount_cents: int


class BudgetPlannedValues:
    def __init__(
        self,
        start: BudgetPeriodKey,
        end: BudgetPeriodKey,
        values: list[PlannedValue],
    ) -> None:
        self.start = start
        self.end = end
        self.values = values
        self._lookup = {(v.purpose_id, v.period): v.amount_cents for v in values}

    def get(self, purpose_id: int, period: BudgetPeriodKey) -> int:
        return self._lookup.get((purpose_id, period), 0)

    def for_purpose(self, purpose_id: int) -> list[PlannedValue]:
        return [v for v in self.values if v.purpose_id == purpose_id]


def _accumulate(
    rules: Iterable[BudgetRule],
    scope_of,
    start: BudgetPeriodKey,
    end: BudgetPeriodKey,
) -> dict[tuple[int, BudgetPeriodKey], int]:
    planned: dict[tuple[int, BudgetPeriodKey], int] = {}
    for rule in rules:
        scope_id = scope_of(rule)
        for period in due_periods(rule, start, end):
            key = (scope_id, period)
            planned[key] = planned.get(key, 0) + rule.amount_cents
    return planned


def _period_index(year_col, month_col):
    return year_col * 12 + month_col


class BudgetPlanningService:
    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def _check_arguments(
        owner_user_id: int, start: BudgetPeriodKey, end: BudgetPeriodKey
    ) -> None:
        if not owner_user_id:
            raise ValueError("owner_user_id must not be empty")
        start.validate()
        end.validate()

    def _rules_overlapping(self, owner_user_id: int, start, end, *criteria):
        return self.session.scalars(
            select(BudgetRule)
            .where(
                BudgetRule.owner_user_id == owner_user_id,
                BudgetRule.start_date <= end.end_date,
                BudgetRule.end_date.is_(None) | (BudgetRule.end_date >= start.start_date),
                *criteria,
            )
            .order_by(BudgetRule.id)
        ).all()

    def calculate_planned_values(
        self,
        owner_user_id: int,
        purpose_ids: Optional[Collection[int]],
        start: BudgetPeriodKey,
        end: BudgetPeriodKey,
    ) -> BudgetPlannedValues:
        """Planned amount per purpose and month in ``[start, end]``.

        Firing rules of a purpose add up; an override for a purpose and
        month replaces that sum. ``purpose_ids=None`` means every purpose of
        the owner. Purposes not owned by ``owner_user_id`` are ignored.
        """
        self._check_arguments(owner_user_id, start, end)
        logger.info(
            f"budget_planned_values: owner={owner_user_id} from={start} to={end}"
        )
        if end < start:
            return BudgetPlannedValues(start, end, [])

        stmt = select(BudgetPurpose.id).where(
            BudgetPurpose.owner_user_id == owner_user_id
        )
        if purpose_ids is not None:
            stmt = stmt.where(BudgetPurpose.id.in_(list(purpose_ids)))
        ids = list(self.session.scalars(stmt.order_by(BudgetPurpose.id)).all())
        if not ids:
            return BudgetPlannedValues(start, end, [])

        rules = self._rules_overlapping(
            owner_user_id, start, end, BudgetRule.budget_purpose_id.in_(ids)
        )
        planned = _accumulate(rules, lambda r: r.budget_purpose_id, start, end)

        period_index = _period_index(
            BudgetOverride.period_year, BudgetOverride.period_month
        )
        overrides = self.session.scalars(
            select(BudgetOverride).where(
                BudgetOverride.owner_user_id == owner_user_id,
                BudgetOverride.budget_purpose_id.in_(ids),
                period_index >= start.year * 12 + start.month,
                period_index <= end.year * 12 + end.month,
            )
        ).all()
        for override in overrides:
            planned[(override.budget_purpose_id, override.period)] = override.amount_cents

        values = [
            PlannedValue(pid, period, planned.get((pid, period), 0))
            for pid in ids
            for period in iter_period_keys(start, end)
        ]
        return BudgetPlannedValues(start, end, values)

    def calculate_category_planned_values(
        self,
        owner_user_id: int,
        category_ids: Optional[Collection[int]],
        start: BudgetPeriodKey,
        end: BudgetPeriodKey,
    ) -> BudgetPlannedValues:
        """Planned amounts of rules scoped directly to budget categories.

        The returned values are keyed by category id.
        """
        self._check_arguments(owner_user_id, start, end)
        if end < start:
            return BudgetPlannedValues(start, end, [])

        stmt = select(BudgetCategory.id).where(
            BudgetCategory.owner_user_id == owner_user_id
        )
        if category_ids is not None:
            stmt = stmt.where(BudgetCategory.id.in_(list(category_ids)))
        ids = list(self.session.scalars(stmt.order_by(BudgetCategory.id)).all())
        if not ids:
            return BudgetPlannedValues(start, end, [])

        rules = self._rules_overlapping(
            owner_user_id, start, end, BudgetRule.budget_category_id.in_(ids)
        )
        planned = _accumulate(rules, lambda r: r.budget_category_id, start, end)
        values = [
            PlannedValue(cid, period, planned.get((cid, period), 0))
            for cid in ids
            for period in iter_period_keys(start, end)
        ]
        return BudgetPlannedValues(start, end, values)


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _purpose(self, purpose_id: int) -> BudgetPurpose:
        purpose = self.session.get(BudgetPurpose, purpose_id)
        if not purpose or purpose.owner_user_id != self.user_id:
            raise ValueError("Purpose not found")
        return purpose

    def _category(self, category_id: int) -> BudgetCategory:
        category = self.session.get(BudgetCategory, category_id)
        if not category or category.owner_user_id != self.user_id:
            raise ValueError("Budget category not found")
        return category

    def create_category(self, name: str) -> BudgetCategory:
        name = (name or "").strip()
        if not name:
            raise ValueError("Category name must not be empty")
        category = BudgetCategory(owner_user_id=self.user_id, name=name)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def list_purposes(self) -> list[BudgetPurpose]:
        stmt = (
            select(BudgetPurpose)
            .where(BudgetPurpose.owner_user_id == self.user_id)
            .order_by(BudgetPurpose.name.asc(), BudgetPurpose.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def create_purpose(self, data: BudgetPurposeIn) -> BudgetPurpose:
        if data.budget_category_id is not None:
            self._category(data.budget_category_id)
        purpose = BudgetPurpose(
            owner_user_id=self.user_id,
            name=data.name.strip(),
            description=(data.description or "").strip() or None,
            source_type=data.source_type,
            source_id=data.source_id,
            budget_category_id=data.budget_category_id,
        )
        self.session.add(purpose)
        self.session.commit()
        self.session.refresh(purpose)
        return purpose

    def update_purpose(self, purpose_id: int, data: BudgetPurposeIn) -> BudgetPurpose:
        purpose = self._purpose(purpose_id)
        if data.budget_category_id is not None:
            self._category(data.budget_category_id)
        purpose.name = data.name.strip()
        purpose.description = (data.description or "").strip() or None
        purpose.source_type = data.source_type
        purpose.source_id = data.source_id
        purpose.budget_category_id = data.budget_category_id
        self.session.commit()
        self.session.refresh(purpose)
        return purpose

    def delete_purpose(self, purpose_id: int) -> None:
        purpose = self._purpose(purpose_id)
        self.session.delete(purpose)
        self.session.commit()

    def list_rules(self, purpose_id: int) -> list[BudgetRule]:
        self._purpose(purpose_id)
        stmt = (
            select(BudgetRule)
            .where(BudgetRule.budget_purpose_id == purpose_id)
            .order_by(BudgetRule.start_date.desc(), BudgetRule.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def create_rule(self, data: BudgetRuleIn) -> BudgetRule:
        if data.budget_purpose_id is not None:
            self._purpose(data.budget_purpose_id)
        else:
            self._category(data.budget_category_id)
        rule = BudgetRule(
            owner_user_id=self.user_id,
            budget_purpose_id=data.budget_purpose_id,
            budget_category_id=data.budget_category_id,
            amount_cents=data.amount_cents,
            interval=data.interval,
            start_date=data.start_date,
            end_date=data.end_date,
            custom_interval_months=data.custom_interval_months,
        )
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def update_rule(self, rule_id: int, data: BudgetRuleIn) -> BudgetRule:
        rule = self.session.get(BudgetRule, rule_id)
        if not rule or rule.owner_user_id != self.user_id:
            raise ValueError("Rule not found")
        if data.budget_purpose_id is not None:
            self._purpose(data.budget_purpose_id)
        else:
            self._category(data.budget_category_id)
        rule.set_schedule(
            data.interval, data.start_date, data.end_date, data.custom_interval_months
        )
        rule.budget_purpose_id = data.budget_purpose_id
        rule.budget_category_id = data.budget_category_id
        rule.amount_cents = data.amount_cents
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def delete_rule(self, rule_id: int) -> None:
        rule = self.session.get(BudgetRule, rule_id)
        if not rule or rule.owner_user_id != self.user_id:
            raise ValueError("Rule not found")
        self.session.delete(rule)
        self.session.commit()

    def _find_override(
        self, purpose_id: int, period: BudgetPeriodKey
    ) -> Optional[BudgetOverride]:
        return self.session.scalar(
            select(BudgetOverride).where(
                BudgetOverride.budget_purpose_id == purpose_id,
                BudgetOverride.period_year == period.year,
                BudgetOverride.period_month == period.month,
            )
        )

    def upsert_override(self, data: BudgetOverrideIn) -> BudgetOverride:
        self._purpose(data.budget_purpose_id)
        period = BudgetPeriodKey(data.year, data.month)
        period.validate()

        existing = self._find_override(data.budget_purpose_id, period)
        if existing is None:
            override = BudgetOverride(
                owner_user_id=self.user_id,
                budget_purpose_id=data.budget_purpose_id,
                period=period,
                amount_cents=data.amount_cents,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(override)
            except IntegrityError:
                logger.info(
                    f"budget_override_race: purpose={data.budget_purpose_id} period={period}"
                )
                existing = self._find_override(data.budget_purpose_id, period)
                if existing is None:
                    raise ConsistencyError(
                        f"Override for purpose {data.budget_purpose_id} {period} "
                        "could not be written"
                    )
            else:
                self.session.commit()
                self.session.refresh(override)
                return override

        existing.amount_cents = data.amount_cents
        self.session.commit()
        self.session.refresh(existing)
        return existing

    def delete_override(self, override_id: int) -> None:
        override = self.session.get(BudgetOverride, override_id)
        if not override or override.owner_user_id != self.user_id:
            raise ValueError("Override not found")
        self.session.delete(override)
        self.session.commit()
