from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Callable, Collection, Optional, Protocol

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    KIND_REFERENCE_FIELD,
    PERIOD_MONTHS,
    REFERENCE_FIELDS,
    Account,
    AggregateDateKind,
    AggregatePeriod,
    Contact,
    Posting,
    PostingAggregate,
    PostingKind,
    SavingsPlan,
    Security,
    SecurityPostingSubType,
)
from periods import period_start

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class CancelSignal(Protocol):
    def is_set(self) -> bool: ...


class ConsistencyError(RuntimeError):
    """A uniqueness race could not be resolved within the retry budget."""


class AggregateConsistencyError(ConsistencyError):
    """Concurrent writers kept colliding on one aggregate key; safe to retry."""


@dataclass(frozen=True)
class AggregateKey:
    kind: PostingKind
    account_id: Optional[int]
    contact_id: Optional[int]
    savings_plan_id: Optional[int]
    security_id: Optional[int]
    security_sub_type: Optional[SecurityPostingSubType]
    period_start: date
    period: AggregatePeriod
    date_kind: AggregateDateKind

    def criteria(self) -> list:
        clauses = []
        for field, value in asdict(self).items():
            column = getattr(PostingAggregate, field)
            clauses.append(column.is_(None) if value is None else column == value)
        return clauses

    def sort_key(self) -> tuple:
        return (
            self.kind.value,
            self.account_id or 0,
            self.contact_id or 0,
            self.savings_plan_id or 0,
            self.security_id or 0,
            self.security_sub_type.value if self.security_sub_type else "",
            self.period_start,
            self.period.value,
            self.date_kind.value,
        )


@dataclass(frozen=True)
class RebuildSummary:
    user_id: int
    postings: int
    processed: int
    total: int
    cancelled: bool = False


def posting_dimensions(posting) -> Optional[dict[str, object]]:
    """Grouping references for a posting, or None when it cannot be grouped.

    Accepts a ``Posting`` or any row exposing the same attribute names.
    """
    kind = PostingKind(posting.kind)
    relevant = KIND_REFERENCE_FIELD[kind]
    if getattr(posting, relevant) is None:
        return None
    dims: dict[str, object] = {field: None for field in REFERENCE_FIELDS}
    dims[relevant] = getattr(posting, relevant)
    dims["security_sub_type"] = (
        posting.security_sub_type if kind == PostingKind.security else None
    )
    return dims


def _keys_for(
    kind: PostingKind,
    dims: dict[str, object],
    booking_date: date,
    valuta_date: date,
    periods: Collection[AggregatePeriod],
) -> list[AggregateKey]:
    keys: list[AggregateKey] = []
    for period in periods:
        months = PERIOD_MONTHS[period]
        for date_kind, placed_on in (
            (AggregateDateKind.booking, booking_date),
            (AggregateDateKind.valuta, valuta_date),
        ):
            keys.append(
                AggregateKey(
                    kind=kind,
                    period_start=period_start(placed_on, months),
                    period=period,
                    date_kind=date_kind,
                    **dims,
                )
            )
    return keys


def get_aggregate(session: Session, key: AggregateKey) -> Optional[PostingAggregate]:
    return session.scalar(select(PostingAggregate).where(*key.criteria()))


def scan_aggregates(
    session: Session,
    *,
    kind: PostingKind,
    period: AggregatePeriod,
    date_kind: AggregateDateKind,
    start: Optional[date] = None,
    end: Optional[date] = None,
    entity_ids: Optional[Collection[int]] = None,
) -> list[PostingAggregate]:
    stmt = select(PostingAggregate).where(
        PostingAggregate.kind == kind,
        PostingAggregate.period == period,
        PostingAggregate.date_kind == date_kind,
    )
    if start is not None:
        stmt = stmt.where(PostingAggregate.period_start >= start)
    if end is not None:
        stmt = stmt.where(PostingAggregate.period_start <= end)
    if entity_ids is not None:
        column = getattr(PostingAggregate, KIND_REFERENCE_FIELD[kind])
        stmt = stmt.where(column.in_(list(entity_ids)))
    stmt = stmt.order_by(PostingAggregate.period_start, PostingAggregate.id)
    return list(session.scalars(stmt).all())


def add_to_aggregate(
    session: Session,
    key: AggregateKey,
    delta: int,
    *,
    attempts: Optional[int] = None,
) -> None:
    """Atomically add ``delta`` to the row for ``key``, creating it if absent."""
    attempts = attempts or get_settings().aggregate_retry_attempts
    for attempt in range(1, attempts + 1):
        result = session.execute(
            update(PostingAggregate)
            .where(*key.criteria())
            .values(
                amount_cents=PostingAggregate.amount_cents + delta,
                updated_at=datetime.utcnow(),
            )
        )
        if result.rowcount:
            return
        try:
            with session.begin_nested():
                session.execute(
                    insert(PostingAggregate).values(**asdict(key), amount_cents=delta)
                )
        except IntegrityError:
            logger.info(
                f"aggregate_insert_race: key={key} attempt={attempt}/{attempts}"
            )
            continue
        return
    raise AggregateConsistencyError(
        f"Could not apply delta to aggregate {key} after {attempts} attempts"
    )


class PostingAggregateService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def upsert_for_posting(self, posting: Posting) -> list[AggregateKey]:
        """Add a freshly booked posting to its month aggregates.

        Only month granularity is maintained here, once per date kind.
        Callers invoke this at most once per posting inside the booking
        transaction; no deduplication happens at this level.
        """
        dims = posting_dimensions(posting)
        if dims is None:
            logger.debug(
                f"aggregate_upsert_skipped: posting={posting.id} kind={posting.kind.value}"
            )
            return []
        keys = _keys_for(
            PostingKind(posting.kind),
            dims,
            posting.booking_date,
            posting.valuta_date or posting.booking_date,
            (AggregatePeriod.month,),
        )
        for key in keys:
            add_to_aggregate(self.session, key, posting.amount_cents)
        return keys

    def _owned_entity_ids(self, user_id: int) -> dict[str, list[int]]:
        owned: dict[str, list[int]] = {}
        for field, model in (
            ("account_id", Account),
            ("contact_id", Contact),
            ("savings_plan_id", SavingsPlan),
            ("security_id", Security),
        ):
            owned[field] = list(
                self.session.scalars(
                    select(model.id).where(model.owner_user_id == user_id)
                ).all()
            )
        return owned

    @staticmethod
    def _scope(model, owned: dict[str, list[int]]):
        clauses = [
            getattr(model, field).in_(ids) for field, ids in owned.items() if ids
        ]
        return or_(*clauses) if clauses else None

    def rebuild_for_user(
        self,
        user_id: int,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelSignal] = None,
    ) -> RebuildSummary:
        """Recompute every aggregate row of ``user_id`` from its postings.

        Month, quarter, half-year and year rows are all derived directly
        from the postings for both date kinds. Rows are written in
        committed batches; ``cancel`` is checked before each batch and a
        cancelled run leaves the already committed batches in place.
        """
        settings = get_settings()
        report = progress or (lambda done, total: None)

        def cancelled() -> bool:
            return cancel is not None and cancel.is_set()

        owned = self._owned_entity_ids(user_id)
        posting_scope = self._scope(Posting, owned)
        aggregate_scope = self._scope(PostingAggregate, owned)
        logger.info(
            f"aggregate_rebuild_started: user={user_id} "
            + " ".join(f"{field}s={len(ids)}" for field, ids in owned.items())
        )

        if cancelled():
            logger.info(f"aggregate_rebuild_cancelled: user={user_id} processed=0")
            return RebuildSummary(user_id, 0, 0, 0, cancelled=True)

        sums: dict[AggregateKey, int] = {}
        postings = 0
        if posting_scope is not None:
            self.session.execute(delete(PostingAggregate).where(aggregate_scope))
            rows = self.session.execute(
                select(
                    Posting.kind,
                    Posting.account_id,
                    Posting.contact_id,
                    Posting.savings_plan_id,
                    Posting.security_id,
                    Posting.security_sub_type,
                    Posting.booking_date,
                    Posting.valuta_date,
                    Posting.amount_cents,
                ).where(posting_scope)
            )
            for row in rows:
                postings += 1
                dims = posting_dimensions(row)
                if dims is None:
                    continue
                for key in _keys_for(
                    row.kind,
                    dims,
                    row.booking_date,
                    row.valuta_date or row.booking_date,
                    tuple(AggregatePeriod),
                ):
                    sums[key] = sums.get(key, 0) + row.amount_cents

        keys = sorted(sums, key=AggregateKey.sort_key)
        total = len(keys)
        processed = 0
        report(0, total)
        batch_size = settings.rebuild_batch_size
        for offset in range(0, total, batch_size):
            if cancelled():
                if processed == 0:
                    self.session.rollback()
                logger.info(
                    f"aggregate_rebuild_cancelled: user={user_id} "
                    f"processed={processed} total={total}"
                )
                return RebuildSummary(
                    user_id, postings, processed, total, cancelled=True
                )
            chunk = keys[offset : offset + batch_size]
            self.session.execute(
                insert(PostingAggregate),
                [dict(asdict(key), amount_cents=sums[key]) for key in chunk],
            )
            self.session.commit()
            processed += len(chunk)
            logger.debug(
                f"aggregate_rebuild_batch: user={user_id} processed={processed} total={total}"
            )
            report(processed, total)

        self._recompute_account_balances(owned["account_id"])
        self.session.commit()
        report(total, total)
        logger.info(
            f"aggregate_rebuild_finished: user={user_id} postings={postings} aggregates={total}"
        )
        return RebuildSummary(user_id, postings, processed, total)

    def _recompute_account_balances(self, account_ids: list[int]) -> None:
        if not account_ids:
            return
        balances = dict(
            self.session.execute(
                select(Posting.account_id, func.sum(Posting.amount_cents))
                .where(
                    Posting.kind == PostingKind.bank,
                    Posting.account_id.in_(account_ids),
                )
                .group_by(Posting.account_id)
            ).all()
        )
        for account in self.session.scalars(
            select(Account).where(Account.id.in_(account_ids))
        ):
            account.current_balance_cents = int(balances.get(account.id) or 0)
