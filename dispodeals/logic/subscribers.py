"""Subscriber preference storage."""

from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from dispodeals.db.tables import preferences, subscribers
from dispodeals.errors import PersistenceError, ValidationError
from dispodeals.ingest.models import CATEGORIES
from dispodeals.utils.dates import utcnow


def save_preferences(
    engine: Engine,
    email: str,
    categories: list[str],
    brands: list[str] | None = None,
    zip_code: str | None = None,
    radius: int | None = None,
) -> dict:
    unknown = sorted(set(categories) - set(CATEGORIES))
    if unknown:
        raise ValidationError(f"Unknown categories: {', '.join(unknown)}")
    email = email.lower()
    values = {
        "categories": list(dict.fromkeys(categories)),
        "brands": [b.strip() for b in brands or [] if b.strip()],
        "zip": zip_code,
        "radius": radius,
    }
    try:
        with engine.begin() as conn:
            subscriber_id = conn.execute(
                select(subscribers.c.id).where(subscribers.c.email == email)
            ).scalar_one_or_none()
            if subscriber_id is None:
                result = conn.execute(subscribers.insert().values(email=email, created_at=utcnow()))
                subscriber_id = int(result.inserted_primary_key[0])
            existing = conn.execute(
                select(preferences.c.id).where(preferences.c.subscriber_id == subscriber_id)
            ).scalar_one_or_none()
            if existing is None:
                conn.execute(preferences.insert().values(subscriber_id=subscriber_id, **values))
            else:
                conn.execute(update(preferences).where(preferences.c.id == existing).values(**values))
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Failed to save preferences for {email}: {exc}") from exc
    return {"email": email, **values}
