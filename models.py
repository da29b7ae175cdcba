from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    literal_column,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from periods import BudgetPeriodKey


class PostingKind(str, Enum):
    bank = "bank"
    contact = "contact"
    savings_plan = "savings_plan"
    security = "security"


class SecurityPostingSubType(str, Enum):
    buy = "buy"
    sell = "sell"
    dividend = "dividend"
    fee = "fee"
    tax = "tax"


class AggregatePeriod(str, Enum):
    month = "month"
    quarter = "quarter"
    half_year = "half_year"
    year = "year"


PERIOD_MONTHS: dict[AggregatePeriod, int] = {
    AggregatePeriod.month: 1,
    AggregatePeriod.quarter: 3,
    AggregatePeriod.half_year: 6,
    AggregatePeriod.year: 12,
}


class ReportInterval(str, Enum):
    month = "month"
    quarter = "quarter"
    half_year = "half_year"
    year = "year"
    ytd = "ytd"
    all_history = "all_history"


# Stored granularity each report interval is read from.
REPORT_SOURCE_PERIOD: dict[ReportInterval, AggregatePeriod] = {
    ReportInterval.month: AggregatePeriod.month,
    ReportInterval.quarter: AggregatePeriod.quarter,
    ReportInterval.half_year: AggregatePeriod.half_year,
    ReportInterval.year: AggregatePeriod.year,
    ReportInterval.ytd: AggregatePeriod.month,
    ReportInterval.all_history: AggregatePeriod.month,
}


class AggregateDateKind(str, Enum):
    booking = "booking"
    valuta = "valuta"


class BudgetIntervalType(str, Enum):
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"
    custom_months = "custom_months"


class BudgetSourceType(str, Enum):
    contact = "contact"
    contact_group = "contact_group"
    savings_plan = "savings_plan"


def _enum(enum_cls: type[Enum], name: str) -> SAEnum:
    # Stored as VARCHAR so the aggregate key index can COALESCE nullable members.
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda cls: [member.value for member in cls],
    )


POSTING_KIND_ENUM = _enum(PostingKind, "postingkind")
SECURITY_SUB_TYPE_ENUM = _enum(SecurityPostingSubType, "securitypostingsubtype")
AGGREGATE_PERIOD_ENUM = _enum(AggregatePeriod, "aggregateperiod")
AGGREGATE_DATE_KIND_ENUM = _enum(AggregateDateKind, "aggregatedatekind")
BUDGET_INTERVAL_ENUM = _enum(BudgetIntervalType, "budgetintervaltype")
BUDGET_SOURCE_ENUM = _enum(BudgetSourceType, "budgetsourcetype")

# The single entity reference a posting of each kind is grouped by.
KIND_REFERENCE_FIELD: dict[PostingKind, str] = {
    PostingKind.bank: "account_id",
    PostingKind.contact: "contact_id",
    PostingKind.savings_plan: "savings_plan_id",
    PostingKind.security: "security_id",
}

REFERENCE_FIELDS = ("account_id", "contact_id", "savings_plan_id", "security_id")

CUSTOM_INTERVAL_MIN_MONTHS = 1
CUSTOM_INTERVAL_MAX_MONTHS = 120


def validate_posting_references(
    kind: PostingKind,
    references: dict[str, Optional[int]],
    *,
    security_sub_type: Optional[SecurityPostingSubType] = None,
    quantity: Optional[Decimal] = None,
) -> None:
    """Reject references that do not belong to ``kind``.

    The reference relevant to the kind may still be missing; such postings
    are booked but never contribute to an aggregate.
    """
    kind = PostingKind(kind)
    relevant = KIND_REFERENCE_FIELD[kind]
    for field in REFERENCE_FIELDS:
        if field != relevant and references.get(field) is not None:
            raise ValueError(f"{field} must not be set on {kind.value} postings")
    if kind != PostingKind.security:
        if security_sub_type is not None:
            raise ValueError("security_sub_type is only valid on security postings")
        if quantity is not None:
            raise ValueError("quantity is only valid on security postings")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    iban: Mapped[Optional[str]] = mapped_column(String(34))
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    __table_args__ = (Index("ix_accounts_owner", "owner_user_id"),)


class ContactCategory(Base, TimestampMixin):
    __tablename__ = "contact_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)


class Contact(Base, TimestampMixin):
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("contact_categories.id")
    )

    category: Mapped[Optional["ContactCategory"]] = relationship("ContactCategory")

    __table_args__ = (Index("ix_contacts_owner", "owner_user_id"),)


class SavingsPlanCategory(Base, TimestampMixin):
    __tablename__ = "savings_plan_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)


class SavingsPlan(Base, TimestampMixin):
    __tablename__ = "savings_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("savings_plan_categories.id")
    )

    category: Mapped[Optional["SavingsPlanCategory"]] = relationship(
        "SavingsPlanCategory"
    )

    __table_args__ = (Index("ix_savings_plans_owner", "owner_user_id"),)


class SecurityCategory(Base, TimestampMixin):
    __tablename__ = "security_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)


class Security(Base, TimestampMixin):
    __tablename__ = "securities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    identifier: Mapped[Optional[str]] = mapped_column(String(50))
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("security_categories.id")
    )

    category: Mapped[Optional["SecurityCategory"]] = relationship("SecurityCategory")

    __table_args__ = (Index("ix_securities_owner", "owner_user_id"),)


class Posting(Base, TimestampMixin):
    __tablename__ = "postings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[PostingKind] = mapped_column(POSTING_KIND_ENUM, nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    contact_id: Mapped[Optional[int]] = mapped_column(ForeignKey("contacts.id"))
    savings_plan_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("savings_plans.id")
    )
    security_id: Mapped[Optional[int]] = mapped_column(ForeignKey("securities.id"))
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    valuta_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    security_sub_type: Mapped[Optional[SecurityPostingSubType]] = mapped_column(
        SECURITY_SUB_TYPE_ENUM
    )
    quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 6))
    subject: Mapped[Optional[str]] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_postings_account_booking", "account_id", "booking_date"),
        Index("ix_postings_contact_booking", "contact_id", "booking_date"),
        Index("ix_postings_savings_plan_booking", "savings_plan_id", "booking_date"),
        Index("ix_postings_security_booking", "security_id", "booking_date"),
    )

    def __init__(self, **kwargs) -> None:
        kwargs["kind"] = PostingKind(kwargs["kind"])
        if kwargs.get("valuta_date") is None:
            kwargs["valuta_date"] = kwargs.get("booking_date")
        validate_posting_references(
            kwargs["kind"],
            {field: kwargs.get(field) for field in REFERENCE_FIELDS},
            security_sub_type=kwargs.get("security_sub_type"),
            quantity=kwargs.get("quantity"),
        )
        super().__init__(**kwargs)

    @property
    def entity_id(self) -> Optional[int]:
        return getattr(self, KIND_REFERENCE_FIELD[self.kind])


class PostingAggregate(Base, TimestampMixin):
    __tablename__ = "posting_aggregates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[PostingKind] = mapped_column(POSTING_KIND_ENUM, nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(Integer)
    contact_id: Mapped[Optional[int]] = mapped_column(Integer)
    savings_plan_id: Mapped[Optional[int]] = mapped_column(Integer)
    security_id: Mapped[Optional[int]] = mapped_column(Integer)
    security_sub_type: Mapped[Optional[SecurityPostingSubType]] = mapped_column(
        SECURITY_SUB_TYPE_ENUM
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period: Mapped[AggregatePeriod] = mapped_column(
        AGGREGATE_PERIOD_ENUM, nullable=False
    )
    date_kind: Mapped[AggregateDateKind] = mapped_column(
        AGGREGATE_DATE_KIND_ENUM, nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index(
            "ix_posting_aggregates_scan",
            "kind",
            "period",
            "date_kind",
            "period_start",
        ),
    )


# Uniqueness over the full grouping key; NULL references compare equal via COALESCE.
Index(
    "uq_posting_aggregate_key",
    PostingAggregate.kind,
    func.coalesce(PostingAggregate.account_id, -1),
    func.coalesce(PostingAggregate.contact_id, -1),
    func.coalesce(PostingAggregate.savings_plan_id, -1),
    func.coalesce(PostingAggregate.security_id, -1),
    func.coalesce(PostingAggregate.security_sub_type, literal_column("''")),
    PostingAggregate.period_start,
    PostingAggregate.period,
    PostingAggregate.date_kind,
    unique=True,
)


class BudgetCategory(Base, TimestampMixin):
    __tablename__ = "budget_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(150), nullable=False)


class BudgetPurpose(Base, TimestampMixin):
    __tablename__ = "budget_purposes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    source_type: Mapped[BudgetSourceType] = mapped_column(
        BUDGET_SOURCE_ENUM, nullable=False
    )
    source_id: Mapped[int] = mapped_column(Integer, nullable=False)
    budget_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_categories.id")
    )

    category: Mapped[Optional["BudgetCategory"]] = relationship("BudgetCategory")
    rules: Mapped[list["BudgetRule"]] = relationship(
        "BudgetRule", back_populates="purpose", cascade="all, delete-orphan"
    )
    overrides: Mapped[list["BudgetOverride"]] = relationship(
        "BudgetOverride", back_populates="purpose", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_budget_purposes_owner", "owner_user_id"),)


class BudgetRule(Base, TimestampMixin):
    __tablename__ = "budget_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    budget_purpose_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_purposes.id")
    )
    budget_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_categories.id")
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    interval: Mapped[BudgetIntervalType] = mapped_column(
        BUDGET_INTERVAL_ENUM, nullable=False
    )
    custom_interval_months: Mapped[Optional[int]] = mapped_column(Integer)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)

    purpose: Mapped[Optional["BudgetPurpose"]] = relationship(
        "BudgetPurpose", back_populates="rules"
    )

    __table_args__ = (
        CheckConstraint(
            "(budget_purpose_id IS NULL) <> (budget_category_id IS NULL)",
            name="ck_budget_rule_single_scope",
        ),
        CheckConstraint(
            "custom_interval_months IS NULL OR "
            "(custom_interval_months >= 1 AND custom_interval_months <= 120)",
            name="ck_budget_rule_custom_interval_range",
        ),
        Index("ix_budget_rules_purpose", "budget_purpose_id"),
        Index("ix_budget_rules_category", "budget_category_id"),
    )

    def __init__(
        self,
        *,
        interval: BudgetIntervalType,
        start_date: date,
        end_date: Optional[date] = None,
        custom_interval_months: Optional[int] = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        has_purpose = self.budget_purpose_id is not None or self.purpose is not None
        if has_purpose == (self.budget_category_id is not None):
            raise ValueError("A rule belongs to exactly one purpose or one category")
        self.set_schedule(interval, start_date, end_date, custom_interval_months)

    def set_schedule(
        self,
        interval: BudgetIntervalType,
        start_date: date,
        end_date: Optional[date],
        custom_interval_months: Optional[int],
    ) -> None:
        interval = BudgetIntervalType(interval)
        steps: Optional[int] = None
        if interval == BudgetIntervalType.custom_months:
            if custom_interval_months is None:
                raise ValueError("Custom interval months required for custom_months")
            if not (
                CUSTOM_INTERVAL_MIN_MONTHS
                <= custom_interval_months
                <= CUSTOM_INTERVAL_MAX_MONTHS
            ):
                raise ValueError("Custom interval months must be between 1 and 120")
            steps = custom_interval_months
        elif custom_interval_months is not None:
            raise ValueError("Custom interval months only apply to custom_months")
        if end_date is not None and end_date < start_date:
            raise ValueError("End date must not be earlier than start date")
        self.interval = interval
        self.custom_interval_months = steps
        self.start_date = start_date
        self.end_date = end_date

    @property
    def step_months(self) -> int:
        if self.interval == BudgetIntervalType.quarterly:
            return 3
        if self.interval == BudgetIntervalType.yearly:
            return 12
        if self.interval == BudgetIntervalType.custom_months:
            return self.custom_interval_months or 1
        return 1


class BudgetOverride(Base, TimestampMixin):
    __tablename__ = "budget_overrides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    budget_purpose_id: Mapped[int] = mapped_column(
        ForeignKey("budget_purposes.id"), nullable=False
    )
    period_year: Mapped[int] = mapped_column(Integer, nullable=False)
    period_month: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    purpose: Mapped["BudgetPurpose"] = relationship(
        "BudgetPurpose", back_populates="overrides"
    )

    __table_args__ = (
        UniqueConstraint(
            "budget_purpose_id",
            "period_year",
            "period_month",
            name="uq_budget_override_purpose_period",
        ),
        CheckConstraint(
            "period_month >= 1 AND period_month <= 12",
            name="ck_budget_override_month_range",
        ),
        Index("ix_budget_override_owner_period", "owner_user_id", "period_year"),
    )

    def __init__(self, *, period: BudgetPeriodKey, **kwargs) -> None:
        super().__init__(**kwargs)
        self.set_period(period)

    @property
    def period(self) -> BudgetPeriodKey:
        return BudgetPeriodKey(self.period_year, self.period_month)

    def set_period(self, period: BudgetPeriodKey) -> None:
        period.validate()
        self.period_year = period.year
        self.period_month = period.month
