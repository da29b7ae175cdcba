from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import (
    CUSTOM_INTERVAL_MAX_MONTHS,
    CUSTOM_INTERVAL_MIN_MONTHS,
    BudgetIntervalType,
    BudgetSourceType,
    PostingKind,
    ReportInterval,
    SecurityPostingSubType,
    validate_posting_references,
)


class PostingIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: PostingKind
    account_id: Optional[int] = None
    contact_id: Optional[int] = None
    savings_plan_id: Optional[int] = None
    security_id: Optional[int] = None
    booking_date: date
    valuta_date: Optional[date] = None
    amount_cents: int
    security_sub_type: Optional[SecurityPostingSubType] = None
    quantity: Optional[Decimal] = None
    subject: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = None

    @model_validator(mode="after")
    def _check_references(self) -> "PostingIn":
        validate_posting_references(
            self.kind,
            {
                "account_id": self.account_id,
                "contact_id": self.contact_id,
                "savings_plan_id": self.savings_plan_id,
                "security_id": self.security_id,
            },
            security_sub_type=self.security_sub_type,
            quantity=self.quantity,
        )
        return self


class BudgetPurposeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    description: Optional[str] = None
    source_type: BudgetSourceType
    source_id: int
    budget_category_id: Optional[int] = None


class BudgetRuleIn(BaseModel):
    budget_purpose_id: Optional[int] = None
    budget_category_id: Optional[int] = None
    amount_cents: int
    interval: BudgetIntervalType
    custom_interval_months: Optional[int] = Field(
        default=None, ge=CUSTOM_INTERVAL_MIN_MONTHS, le=CUSTOM_INTERVAL_MAX_MONTHS
    )
    start_date: date
    end_date: Optional[date] = None

    @model_validator(mode="after")
    def _check_schedule(self) -> "BudgetRuleIn":
        if (self.budget_purpose_id is None) == (self.budget_category_id is None):
            raise ValueError("Set exactly one of budget_purpose_id or budget_category_id")
        if (
            self.interval == BudgetIntervalType.custom_months
            and self.custom_interval_months is None
        ):
            raise ValueError("custom_interval_months is required for custom_months")
        if (
            self.interval != BudgetIntervalType.custom_months
            and self.custom_interval_months is not None
        ):
            raise ValueError("custom_interval_months only applies to custom_months")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be earlier than start_date")
        return self


class BudgetOverrideIn(BaseModel):
    budget_purpose_id: int
    year: int = Field(..., ge=1900, le=3000)
    month: int = Field(..., ge=1, le=12)
    amount_cents: int


class ReportFilters(BaseModel):
    account_ids: Optional[list[int]] = None
    contact_ids: Optional[list[int]] = None
    savings_plan_ids: Optional[list[int]] = None
    security_ids: Optional[list[int]] = None
    # Category filters are honoured only together with include_category and
    # then take precedence over the entity filter of the same kind.
    contact_category_ids: Optional[list[int]] = None
    savings_plan_category_ids: Optional[list[int]] = None
    security_category_ids: Optional[list[int]] = None
    security_sub_types: Optional[list[SecurityPostingSubType]] = None


class ReportQueryIn(BaseModel):
    kind: Optional[PostingKind] = None
    kinds: Optional[list[PostingKind]] = None
    interval: ReportInterval = ReportInterval.month
    take: int = Field(default=12, ge=1, le=240)
    include_category: bool = False
    compare_previous: bool = False
    compare_year: bool = False
    analysis_date: date
    use_valuta_date: bool = False
    filters: Optional[ReportFilters] = None

    @model_validator(mode="after")
    def _check_kinds(self) -> "ReportQueryIn":
        if self.kind is None and not self.kinds:
            raise ValueError("Set kind or kinds")
        return self

    def requested_kinds(self) -> list[PostingKind]:
        if self.kinds:
            return list(dict.fromkeys(self.kinds))
        return [self.kind]


class ReportPointOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period_start: date
    group_key: str
    group_name: str
    category_name: Optional[str]
    amount_cents: int
    parent_group_key: Optional[str]
    previous_amount_cents: Optional[int]
    year_ago_amount_cents: Optional[int]


class PlannedValueOut(BaseModel):
    purpose_id: int
    period: str
    amount_cents: int


class TaskInfoOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: int
    status: str
    processed: int
    total: int
    error: Optional[str] = None
