from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from aggregates import PostingAggregateService
from models import (
    KIND_REFERENCE_FIELD,
    Account,
    Contact,
    Posting,
    PostingKind,
    SavingsPlan,
    Security,
)
from scheduler import user_lock
from schemas import PostingIn

logger = logging.getLogger(__name__)

_REFERENCE_MODELS = {
    PostingKind.bank: (Account, "Account"),
    PostingKind.contact: (Contact, "Contact"),
    PostingKind.savings_plan: (SavingsPlan, "Savings plan"),
    PostingKind.security: (Security, "Security"),
}


class PostingService:
    """Booking boundary: persists postings and keeps their aggregates current."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _referenced_entity(self, data: PostingIn):
        entity_id = getattr(data, KIND_REFERENCE_FIELD[data.kind])
        if entity_id is None:
            return None
        model, label = _REFERENCE_MODELS[data.kind]
        entity = self.session.get(model, entity_id)
        if not entity or entity.owner_user_id != self.user_id:
            raise ValueError(f"{label} not found")
        return entity

    def book(self, data: PostingIn) -> Posting:
        entity = self._referenced_entity(data)
        with user_lock(self.user_id):
            posting = Posting(**data.model_dump())
            self.session.add(posting)
            self.session.flush()
            if posting.kind == PostingKind.bank and entity is not None:
                entity.current_balance_cents += posting.amount_cents
            PostingAggregateService(self.session).upsert_for_posting(posting)
            self.session.commit()
        self.session.refresh(posting)
        logger.info(
            f"posting_booked: user={self.user_id} posting={posting.id} "
            f"kind={posting.kind.value} amount_cents={posting.amount_cents}"
        )
        return posting
