"""initial schema: entities, postings, aggregates, budgets

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _category_table(name: str) -> None:
    op.create_table(
        name,
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        *_timestamps(),
    )


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=150), nullable=False),
        sa.Column("iban", sa.String(length=34), nullable=True),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        *_timestamps(),
    )
    op.create_index("ix_accounts_owner", "accounts", ["owner_user_id"])

    _category_table("contact_categories")
    _category_table("savings_plan_categories")
    _category_table("security_categories")

    op.create_table(
        "contacts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("contact_categories.id"),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index("ix_contacts_owner", "contacts", ["owner_user_id"])

    op.create_table(
        "savings_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=150), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("savings_plan_categories.id"),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index("ix_savings_plans_owner", "savings_plans", ["owner_user_id"])

    op.create_table(
        "securities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=150), nullable=False),
        sa.Column("identifier", sa.String(length=50), nullable=True),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("security_categories.id"),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index("ix_securities_owner", "securities", ["owner_user_id"])

    op.create_table(
        "postings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=True
        ),
        sa.Column(
            "contact_id", sa.Integer(), sa.ForeignKey("contacts.id"), nullable=True
        ),
        sa.Column(
            "savings_plan_id",
            sa.Integer(),
            sa.ForeignKey("savings_plans.id"),
            nullable=True,
        ),
        sa.Column(
            "security_id", sa.Integer(), sa.ForeignKey("securities.id"), nullable=True
        ),
        sa.Column("booking_date", sa.Date(), nullable=False),
        sa.Column("valuta_date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("security_sub_type", sa.String(length=20), nullable=True),
        sa.Column("quantity", sa.Numeric(18, 6), nullable=True),
        sa.Column("subject", sa.String(length=200), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_postings_account_booking", "postings", ["account_id", "booking_date"]
    )
    op.create_index(
        "ix_postings_contact_booking", "postings", ["contact_id", "booking_date"]
    )
    op.create_index(
        "ix_postings_savings_plan_booking",
        "postings",
        ["savings_plan_id", "booking_date"],
    )
    op.create_index(
        "ix_postings_security_booking", "postings", ["security_id", "booking_date"]
    )

    op.create_table(
        "posting_aggregates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=True),
        sa.Column("contact_id", sa.Integer(), nullable=True),
        sa.Column("savings_plan_id", sa.Integer(), nullable=True),
        sa.Column("security_id", sa.Integer(), nullable=True),
        sa.Column("security_sub_type", sa.String(length=20), nullable=True),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period", sa.String(length=20), nullable=False),
        sa.Column("date_kind", sa.String(length=20), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index(
        "ix_posting_aggregates_scan",
        "posting_aggregates",
        ["kind", "period", "date_kind", "period_start"],
    )
    # NULL references must collide, so the key is unique over COALESCEd values.
    op.execute(
        "CREATE UNIQUE INDEX uq_posting_aggregate_key ON posting_aggregates("
        "kind, coalesce(account_id, -1), coalesce(contact_id, -1), "
        "coalesce(savings_plan_id, -1), coalesce(security_id, -1), "
        "coalesce(security_sub_type, ''), period_start, period, date_kind)"
    )

    op.create_table(
        "budget_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=150), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "budget_purposes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=150), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("source_type", sa.String(length=20), nullable=False),
        sa.Column("source_id", sa.Integer(), nullable=False),
        sa.Column(
            "budget_category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id"),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index("ix_budget_purposes_owner", "budget_purposes", ["owner_user_id"])

    op.create_table(
        "budget_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_user_id", sa.Integer(), nullable=False),
        sa.Column(
            "budget_purpose_id",
            sa.Integer(),
            sa.ForeignKey("budget_purposes.id"),
            nullable=True,
        ),
        sa.Column(
            "budget_category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id"),
            nullable=True,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("interval", sa.String(length=20), nullable=False),
        sa.Column("custom_interval_months", sa.Integer(), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "(budget_purpose_id IS NULL) <> (budget_category_id IS NULL)",
            name="ck_budget_rule_single_scope",
        ),
        sa.CheckConstraint(
            "custom_interval_months IS NULL OR "
            "(custom_interval_months >= 1 AND custom_interval_months <= 120)",
            name="ck_budget_rule_custom_interval_range",
        ),
    )
    op.create_index("ix_budget_rules_purpose", "budget_rules", ["budget_purpose_id"])
    op.create_index(
        "ix_budget_rules_category", "budget_rules", ["budget_category_id"]
    )

    op.create_table(
        "budget_overrides",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_user_id", sa.Integer(), nullable=False),
        sa.Column(
            "budget_purpose_id",
            sa.Integer(),
            sa.ForeignKey("budget_purposes.id"),
            nullable=False,
        ),
        sa.Column("period_year", sa.Integer(), nullable=False),
        sa.Column("period_month", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "budget_purpose_id",
            "period_year",
            "period_month",
            name="uq_budget_override_purpose_period",
        ),
        sa.CheckConstraint(
            "period_month >= 1 AND period_month <= 12",
            name="ck_budget_override_month_range",
        ),
    )
    op.create_index(
        "ix_budget_override_owner_period",
        "budget_overrides",
        ["owner_user_id", "period_year"],
    )


def downgrade() -> None:
    op.drop_index("ix_budget_override_owner_period", table_name="budget_overrides")
    op.drop_table("budget_overrides")
    op.drop_index("ix_budget_rules_category", table_name="budget_rules")
    op.drop_index("ix_budget_rules_purpose", table_name="budget_rules")
    op.drop_table("budget_rules")
    op.drop_index("ix_budget_purposes_owner", table_name="budget_purposes")
    op.drop_table("budget_purposes")
    op.drop_table("budget_categories")
    op.drop_index("uq_posting_aggregate_key", table_name="posting_aggregates")
    op.drop_index("ix_posting_aggregates_scan", table_name="posting_aggregates")
    op.drop_table("posting_aggregates")
    for name in (
        "ix_postings_security_booking",
        "ix_postings_savings_plan_booking",
        "ix_postings_contact_booking",
        "ix_postings_account_booking",
    ):
        op.drop_index(name, table_name="postings")
    op.drop_table("postings")
    op.drop_index("ix_securities_owner", table_name="securities")
    op.drop_table("securities")
    op.drop_index("ix_savings_plans_owner", table_name="savings_plans")
    op.drop_table("savings_plans")
    op.drop_index("ix_contacts_owner", table_name="contacts")
    op.drop_table("contacts")
    for name in (
        "security_categories",
        "savings_plan_categories",
        "contact_categories",
    ):
        op.drop_table(name)
    op.drop_index("ix_accounts_owner", table_name="accounts")
    op.drop_table("accounts")
