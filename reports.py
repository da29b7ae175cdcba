from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from aggregates import scan_aggregates
from models import (
    KIND_REFERENCE_FIELD,
    PERIOD_MONTHS,
    REPORT_SOURCE_PERIOD,
    Account,
    AggregateDateKind,
    Contact,
    ContactCategory,
    PostingKind,
    ReportInterval,
    SavingsPlan,
    SavingsPlanCategory,
    Security,
    SecurityCategory,
)
from periods import (
    add_months,
    period_start,
    previous_period,
    shift_period,
    year_ago_period,
)
from schemas import ReportFilters, ReportQueryIn

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"

# All-history reports collapse every group into one point at this date.
ALL_HISTORY_ANCHOR = date(2000, 1, 1)

_KIND_ENTITIES = {
    PostingKind.bank: (Account, "Account", None),
    PostingKind.contact: (Contact, "Contact", ContactCategory),
    PostingKind.savings_plan: (SavingsPlan, "SavingsPlan", SavingsPlanCategory),
    PostingKind.security: (Security, "Security", SecurityCategory),
}

_TYPE_GROUPS = {
    PostingKind.bank: ("Type:Bank", "Accounts"),
    PostingKind.contact: ("Type:Contact", "Contacts"),
    PostingKind.savings_plan: ("Type:SavingsPlan", "SavingsPlans"),
    PostingKind.security: ("Type:Security", "Securities"),
}

# (entity id filter, category id filter) per kind
_FILTER_FIELDS = {
    PostingKind.bank: ("account_ids", None),
    PostingKind.contact: ("contact_ids", "contact_category_ids"),
    PostingKind.savings_plan: ("savings_plan_ids", "savings_plan_category_ids"),
    PostingKind.security: ("security_ids", "security_category_ids"),
}


@dataclass
class ReportPoint:
    period_start: date
    group_key: str
    group_name: str
    category_name: Optional[str]
    amount_cents: int
    parent_group_key: Optional[str] = None
    previous_amount_cents: Optional[int] = None
    year_ago_amount_cents: Optional[int] = None

    @property
    def is_category(self) -> bool:
        return self.group_key.startswith("Category:")

    @property
    def is_type(self) -> bool:
        return self.group_key.startswith("Type:")

    @property
    def rank(self) -> int:
        if self.is_type:
            return 0
        return 1 if self.is_category else 2

    def carries_information(self) -> bool:
        return any(
            value
            for value in (
                self.amount_cents,
                self.previous_amount_cents,
                self.year_ago_amount_cents,
            )
        )


@dataclass
class _Group:
    key: str
    name: str
    category_id: Optional[int] = None
    category_key: Optional[str] = None
    category_name: Optional[str] = None


@dataclass(frozen=True)
class _Window:
    periods: list[date]
    # Bucket length in months used for comparisons; None disables them.
    months: Optional[int]
    scan_start: Optional[date]
    scan_end: date


def category_key(kind: PostingKind, category_id: Optional[int]) -> str:
    label = _KIND_ENTITIES[kind][1]
    return f"Category:{label}:{category_id if category_id is not None else '_none'}"


def type_key(kind: PostingKind) -> str:
    return _TYPE_GROUPS[kind][0]


def _sum_optional(values: list[Optional[int]]) -> Optional[int]:
    present = [v for v in values if v is not None]
    return sum(present) if present else None


def _year_to_date(amounts: dict[date, int], cutoff_month: int) -> dict[date, int]:
    totals: dict[date, int] = defaultdict(int)
    for start, amount in amounts.items():
        if start.month <= cutoff_month:
            totals[date(start.year, 1, 1)] += amount
    return dict(totals)


def report_window(query: ReportQueryIn) -> _Window:
    """Periods a report emits and the month range it has to read."""
    analysis_month = period_start(query.analysis_date, 1)
    if query.interval == ReportInterval.all_history:
        return _Window([ALL_HISTORY_ANCHOR], None, None, analysis_month)
    if query.interval == ReportInterval.ytd:
        months = 12
    else:
        months = PERIOD_MONTHS[REPORT_SOURCE_PERIOD[query.interval]]
    latest = period_start(query.analysis_date, months)
    first = shift_period(latest, months, -(query.take - 1))
    periods = [shift_period(first, months, i) for i in range(query.take)]
    scan_end = analysis_month if query.interval == ReportInterval.ytd else latest
    return _Window(periods, months, add_months(first, -max(months, 12)), scan_end)


class ReportAggregationService:
    """Time-bucketed report points read from the aggregate store."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _groups(self, kind: PostingKind, include_category: bool) -> dict[int, _Group]:
        model, label, category_model = _KIND_ENTITIES[kind]
        entities = self.session.scalars(
            select(model).where(model.owner_user_id == self.user_id)
        ).all()

        category_names: dict[int, str] = {}
        if include_category and category_model is not None:
            category_ids = {e.category_id for e in entities if e.category_id is not None}
            if category_ids:
                category_names = dict(
                    self.session.execute(
                        select(category_model.id, category_model.name).where(
                            category_model.id.in_(category_ids)
                        )
                    ).all()
                )

        groups: dict[int, _Group] = {}
        for entity in entities:
            group = _Group(key=f"{label}:{entity.id}", name=entity.name)
            if category_model is not None:
                group.category_id = entity.category_id
            if include_category and category_model is not None:
                group.category_key = category_key(kind, entity.category_id)
                group.category_name = (
                    category_names.get(entity.category_id, UNCATEGORIZED)
                    if entity.category_id is not None
                    else UNCATEGORIZED
                )
            groups[entity.id] = group
        return groups

    @staticmethod
    def _filter_groups(
        kind: PostingKind,
        groups: dict[int, _Group],
        filters: Optional[ReportFilters],
        include_category: bool,
    ) -> dict[int, _Group]:
        if filters is None:
            return groups
        entity_field, category_field = _FILTER_FIELDS[kind]
        category_ids = getattr(filters, category_field) if category_field else None
        if include_category and category_ids:
            wanted = set(category_ids)
            return {i: g for i, g in groups.items() if g.category_id in wanted}
        entity_ids = getattr(filters, entity_field)
        if entity_ids:
            wanted = set(entity_ids)
            return {i: g for i, g in groups.items() if i in wanted}
        return groups

    def _series(
        self,
        kind: PostingKind,
        groups: dict[int, _Group],
        query: ReportQueryIn,
        window: _Window,
    ) -> dict[str, dict[date, int]]:
        filters = query.filters
        sub_types = (
            set(filters.security_sub_types)
            if filters and filters.security_sub_types and kind == PostingKind.security
            else None
        )
        rows = scan_aggregates(
            self.session,
            kind=kind,
            period=REPORT_SOURCE_PERIOD[query.interval],
            date_kind=(
                AggregateDateKind.valuta
                if query.use_valuta_date
                else AggregateDateKind.booking
            ),
            start=window.scan_start,
            end=window.scan_end,
            entity_ids=list(groups),
        )
        reference = KIND_REFERENCE_FIELD[kind]
        series: dict[str, dict[date, int]] = defaultdict(dict)
        for row in rows:
            if sub_types is not None and row.security_sub_type not in sub_types:
                continue
            amounts = series[groups[getattr(row, reference)].key]
            amounts[row.period_start] = (
                amounts.get(row.period_start, 0) + row.amount_cents
            )

        if query.interval == ReportInterval.ytd:
            cutoff = query.analysis_date.month
            return {key: _year_to_date(a, cutoff) for key, a in series.items()}
        if query.interval == ReportInterval.all_history:
            return {
                key: {ALL_HISTORY_ANCHOR: sum(a.values())} for key, a in series.items()
            }
        return series

    def _leaves(
        self, kind: PostingKind, query: ReportQueryIn, window: _Window, multi: bool
    ) -> list[ReportPoint]:
        groups = self._filter_groups(
            kind,
            self._groups(kind, query.include_category),
            query.filters,
            query.include_category,
        )
        if not groups:
            return []
        series = self._series(kind, groups, query, window)

        leaves: list[ReportPoint] = []
        for group in sorted(groups.values(), key=lambda g: g.key):
            amounts = series.get(group.key)
            if not amounts or not any(p in amounts for p in window.periods):
                continue
            parent = group.category_key or (type_key(kind) if multi else None)
            # Every window period is emitted once the group has data in the window.
            for start in window.periods:
                previous = year_ago = None
                if window.months is not None and query.compare_previous:
                    previous = amounts.get(previous_period(start, window.months))
                if window.months is not None and query.compare_year:
                    year_ago = amounts.get(year_ago_period(start))
                leaves.append(
                    ReportPoint(
                        period_start=start,
                        group_key=group.key,
                        group_name=group.name,
                        category_name=group.category_name,
                        amount_cents=amounts.get(start, 0),
                        parent_group_key=parent,
                        previous_amount_cents=previous,
                        year_ago_amount_cents=year_ago,
                    )
                )
        return leaves

    def query(self, query: ReportQueryIn) -> list[ReportPoint]:
        kinds = query.requested_kinds()
        multi = len(kinds) > 1
        window = report_window(query)

        points: list[ReportPoint] = []
        for kind in kinds:
            leaves = self._leaves(kind, query, window, multi)
            if not leaves:
                continue
            categories: dict[str, list[ReportPoint]] = defaultdict(list)
            for leaf in leaves:
                parent = leaf.parent_group_key
                if parent is not None and parent.startswith("Category:"):
                    categories[parent].append(leaf)
            for key, members in categories.items():
                name = members[0].category_name or UNCATEGORIZED
                points.extend(
                    _rollup(
                        key,
                        name,
                        members,
                        category_name=name,
                        parent=type_key(kind) if multi else None,
                    )
                )
            if multi or query.interval == ReportInterval.all_history:
                key, name = _TYPE_GROUPS[kind]
                points.extend(_rollup(key, name, leaves))
            points.extend(_prune(leaves))

        points.sort(key=lambda p: (p.period_start, p.rank, p.group_name, p.group_key))
        logger.debug(
            f"report_query: user={self.user_id} "
            f"kinds={','.join(k.value for k in kinds)} interval={query.interval.value} "
            f"periods={len(window.periods)} points={len(points)}"
        )
        return points


def _rollup(
    key: str,
    name: str,
    members: list[ReportPoint],
    *,
    category_name: Optional[str] = None,
    parent: Optional[str] = None,
) -> list[ReportPoint]:
    """Sum member points per period into one parent group."""
    by_period: dict[date, list[ReportPoint]] = defaultdict(list)
    for member in members:
        by_period[member.period_start].append(member)
    return [
        ReportPoint(
            period_start=start,
            group_key=key,
            group_name=name,
            category_name=category_name,
            amount_cents=sum(m.amount_cents for m in items),
            parent_group_key=parent,
            previous_amount_cents=_sum_optional(
                [m.previous_amount_cents for m in items]
            ),
            year_ago_amount_cents=_sum_optional(
                [m.year_ago_amount_cents for m in items]
            ),
        )
        for start, items in by_period.items()
    ]


def _prune(leaves: list[ReportPoint]) -> list[ReportPoint]:
    informative = {leaf.group_key for leaf in leaves if leaf.carries_information()}
    return [leaf for leaf in leaves if leaf.group_key in informative]
