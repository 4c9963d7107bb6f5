"""Manual review of flagged deals."""

from __future__ import annotations

import logging
from typing import Any, Literal

from sqlalchemy import and_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from dispodeals.db.tables import deals, review_flags
from dispodeals.errors import NotFoundError, PersistenceError
from dispodeals.utils.dates import format_date, utcnow

logger = logging.getLogger(__name__)

ReviewAction = Literal["approve", "reject", "fix"]

# approve and fix publish the deal; reject keeps it hidden from ranking.
STATUSES: dict[str, str] = {"approve": "approved", "reject": "rejected", "fix": "fixed"}
DEFAULT_REVIEWER = "admin"


def pending_reviews(engine: Engine, limit: int = 100) -> list[dict[str, Any]]:
    query = (
        select(
            review_flags.c.id,
            review_flags.c.reason,
            review_flags.c.created_at,
            deals.c.id.label("deal_id"),
            deals.c.dispensary_name,
            deals.c.city,
            deals.c.date,
            deals.c.category,
            deals.c.title,
            deals.c.price_text,
            deals.c.confidence,
            deals.c.source_url,
        )
        .select_from(review_flags.join(deals, review_flags.c.deal_id == deals.c.id))
        .where(review_flags.c.status == "pending")
        .order_by(review_flags.c.created_at, review_flags.c.id)
        .limit(limit)
    )
    try:
        with engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Failed to load review flags: {exc}") from exc
    return [
        {
            "id": row["id"],
            "reason": row["reason"],
            "created_at": row["created_at"].isoformat(),
            "deal": {
                "id": row["deal_id"],
                "dispensary_name": row["dispensary_name"],
                "city": row["city"],
                "date": format_date(row["date"]),
                "category": row["category"],
                "title": row["title"],
                "price_text": row["price_text"],
                "confidence": row["confidence"],
                "source_url": row["source_url"],
            },
        }
        for row in rows
    ]


def resolve_review(
    engine: Engine,
    flag_id: int,
    action: ReviewAction,
    *,
    reviewed_by: str | None = None,
    notes: str | None = None,
) -> dict[str, Any]:
    """Close a pending flag; approve and fix clear the deal's review mark."""
    status = STATUSES[action]
    reviewer = reviewed_by or DEFAULT_REVIEWER
    try:
        with engine.begin() as conn:
            deal_id = conn.execute(
                select(review_flags.c.deal_id).where(
                    and_(review_flags.c.id == flag_id, review_flags.c.status == "pending")
                )
            ).scalar_one_or_none()
            if deal_id is None:
                raise NotFoundError(f"Review {flag_id} not found or already processed")
            if action != "reject":
                conn.execute(update(deals).where(deals.c.id == deal_id).values(needs_review=False))
            conn.execute(
                update(review_flags)
                .where(review_flags.c.id == flag_id)
                .values(status=status, notes=notes, reviewed_by=reviewer, reviewed_at=utcnow())
            )
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Failed to update review {flag_id}: {exc}") from exc
    logger.info("Review %s for deal %s %s by %s", flag_id, deal_id, status, reviewer)
    return {"id": flag_id, "deal_id": deal_id, "status": status}
