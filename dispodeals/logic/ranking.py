"""Personalized deal ranking by unit price."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import date

from sqlalchemy import and_, select
from sqlalchemy.engine import Engine

from dispodeals.db.tables import brands, deals, preferences, subscribers
from dispodeals.errors import NotFoundError
from dispodeals.logic.brands import normalize_brand_name
from dispodeals.utils.dates import format_date

logger = logging.getLogger(__name__)

MAX_DEALS = 100

UNIT_PRICE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*/\s*\$\s*(\d+(?:\.\d+)?)")
NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")


def price_score(price_text: str) -> float:
    """Lower is cheaper: "N/$M" scores M/N, else the first number, else infinity."""
    unit = UNIT_PRICE_RE.search(price_text)
    if unit:
        count, total = float(unit.group(1)), float(unit.group(2))
        if count > 0:
            return total / count
    match = NUMBER_RE.search(price_text)
    if match:
        return float(match.group(0))
    return math.inf


@dataclass(slots=True)
class SubscriberPreferences:
    subscriber_id: int
    categories: list[str]
    brands: list[str]
    zip: str | None = None
    radius: int | None = None


def within_radius(deal: dict, prefs: SubscriberPreferences) -> bool:
    # No geocoding: zip and radius are stored but never exclude a deal.
    return True


class RankingService:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def load_preferences(self, email: str) -> SubscriberPreferences | None:
        with self.engine.connect() as conn:
            subscriber_id = conn.execute(
                select(subscribers.c.id).where(subscribers.c.email == email.lower())
            ).scalar_one_or_none()
            if subscriber_id is None:
                raise NotFoundError(f"Unknown subscriber: {email}")
            row = conn.execute(
                select(preferences).where(preferences.c.subscriber_id == subscriber_id)
            ).mappings().first()
        if row is None:
            return None
        return SubscriberPreferences(
            subscriber_id=subscriber_id,
            categories=list(row["categories"] or []),
            brands=list(row["brands"] or []),
            zip=row["zip"],
            radius=row["radius"],
        )

    def rank(self, email: str, as_of: date) -> list[dict]:
        prefs = self.load_preferences(email)
        if prefs is None or not prefs.categories:
            return []

        conditions = [
            deals.c.date == as_of,
            deals.c.category.in_(prefs.categories),
            deals.c.needs_review.is_(False),
        ]
        with self.engine.connect() as conn:
            if prefs.brands:
                wanted = {normalize_brand_name(b) for b in prefs.brands}
                brand_ids = conn.execute(
                    select(brands.c.id).where(brands.c.normalized_name.in_(wanted))
                ).scalars().all()
                if not brand_ids:
                    logger.info("No registry brands match preferences for %s", email)
                    return []
                conditions.append(deals.c.brand_id.in_(brand_ids))
            query = (
                select(deals, brands.c.name.label("brand"))
                .select_from(deals.outerjoin(brands, deals.c.brand_id == brands.c.id))
                .where(and_(*conditions))
                .order_by(deals.c.created_at.desc(), deals.c.id.desc())
                .limit(MAX_DEALS)
            )
            rows = [dict(row) for row in conn.execute(query).mappings()]

        rows = [row for row in rows if within_radius(row, prefs)]
        # Stable sort keeps newest-first order among equal scores.
        rows.sort(key=lambda row: price_score(row["price_text"]))
        return [_serialize(row) for row in rows]


def _serialize(row: dict) -> dict:
    score = price_score(row["price_text"])
    return {
        "id": row["id"],
        "dispensary_name": row["dispensary_name"],
        "city": row["city"],
        "date": format_date(row["date"]),
        "category": row["category"],
        "title": row["title"],
        "brand": row["brand"],
        "product_name": row["product_name"],
        "price_text": row["price_text"],
        "confidence": row["confidence"],
        "source_url": row["source_url"],
        "score": None if math.isinf(score) else round(score, 4),
    }
