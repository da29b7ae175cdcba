from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import Account, Posting, PostingAggregate, PostingKind, Security
from postings import PostingService
from schemas import PostingIn


def test_book_defaults_valuta_to_booking_date():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        security = Security(owner_user_id=1, name="ACME", identifier="US0000000001")
        session.add(security)
        session.commit()

        posting = PostingService(session, 1).book(
            PostingIn(
                kind=PostingKind.security,
                security_id=security.id,
                booking_date=date(2025, 6, 30),
                amount_cents=-12_345,
                security_sub_type="buy",
                quantity=Decimal("1.5"),
            )
        )

        assert posting.id is not None
        assert posting.valuta_date == date(2025, 6, 30)
        assert posting.entity_id == security.id
        assert posting.quantity == Decimal("1.5")


def test_book_rejects_entities_of_other_users():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account = Account(owner_user_id=2, name="Not mine")
        session.add(account)
        session.commit()

        with pytest.raises(ValueError, match="Account not found"):
            PostingService(session, 1).book(
                PostingIn(
                    kind=PostingKind.bank,
                    account_id=account.id,
                    booking_date=date(2025, 1, 1),
                    amount_cents=10,
                )
            )

        assert session.scalar(select(func.count(Posting.id))) == 0
        assert session.scalar(select(func.count(PostingAggregate.id))) == 0


def test_postings_reject_references_foreign_to_their_kind():
    with pytest.raises(ValidationError):
        PostingIn(
            kind=PostingKind.bank,
            account_id=1,
            contact_id=2,
            booking_date=date(2025, 1, 1),
            amount_cents=10,
        )
    with pytest.raises(ValidationError):
        PostingIn(
            kind=PostingKind.contact,
            contact_id=1,
            security_sub_type="dividend",
            booking_date=date(2025, 1, 1),
            amount_cents=10,
        )
    with pytest.raises(ValueError, match="security_id must not be set"):
        Posting(
            kind=PostingKind.savings_plan,
            savings_plan_id=1,
            security_id=3,
            booking_date=date(2025, 1, 1),
            amount_cents=10,
        )
