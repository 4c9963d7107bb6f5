"""Persist gated deals and their review flags."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date
from typing import Sequence

from sqlalchemy import and_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from dispodeals.db.tables import deals, review_flags, source_documents
from dispodeals.errors import PersistenceError
from dispodeals.utils.dates import format_date, utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PreparedDeal:
    dispensary_name: str
    date: date
    category: str
    title: str
    price_text: str
    confidence: float
    deal_hash: str
    source_url: str
    city: str | None = None
    product_name: str | None = None
    brand_id: int | None = None
    brand_name: str | None = None
    review_reason: str | None = None

    @property
    def needs_review(self) -> bool:
        return self.review_reason is not None


@dataclass(slots=True)
class WriteResult:
    inserted: list[dict]
    skipped: int = 0
    flags_written: int = 0


class CatalogWriter:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def write(self, prepared: Sequence[PreparedDeal], *, document_id: int | None = None) -> WriteResult:
        """Insert deals for one source document, then annotate review flags."""
        try:
            inserted, skipped = self._insert(prepared, document_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to insert deals: {exc}") from exc
        flagged = [(deal_id, deal) for deal_id, deal in inserted if deal.needs_review]
        flags_written = self._write_flags(flagged) if flagged else 0
        if inserted:
            logger.info(
                "Inserted %s deals for %s (%s flagged)",
                len(inserted),
                inserted[0][1].dispensary_name,
                len(flagged),
            )
        return WriteResult(
            inserted=[serialize(deal_id, deal) for deal_id, deal in inserted],
            skipped=skipped,
            flags_written=flags_written,
        )

    def _insert(self, prepared: Sequence[PreparedDeal], document_id: int | None):
        inserted: list[tuple[int, PreparedDeal]] = []
        skipped = 0
        now = utcnow()
        with self.engine.begin() as conn:
            for deal in prepared:
                exists = conn.execute(
                    select(deals.c.id).where(
                        and_(
                            deals.c.dispensary_name == deal.dispensary_name,
                            deals.c.date == deal.date,
                            deals.c.deal_hash == deal.deal_hash,
                        )
                    )
                ).first()
                if exists is not None:
                    skipped += 1
                    continue
                result = conn.execute(
                    deals.insert().values(
                        dispensary_name=deal.dispensary_name,
                        city=deal.city,
                        date=deal.date,
                        category=deal.category,
                        title=deal.title,
                        product_name=deal.product_name,
                        price_text=deal.price_text,
                        brand_id=deal.brand_id,
                        confidence=deal.confidence,
                        deal_hash=deal.deal_hash,
                        needs_review=deal.needs_review,
                        source_url=deal.source_url,
                        created_at=now,
                    )
                )
                inserted.append((int(result.inserted_primary_key[0]), deal))
            if document_id is not None:
                conn.execute(
                    update(source_documents)
                    .where(source_documents.c.id == document_id)
                    .values(
                        deals_extracted=source_documents.c.deals_extracted + len(inserted),
                        processed_at=now,
                    )
                )
        return inserted, skipped

    def _write_flags(self, flagged: list[tuple[int, PreparedDeal]]) -> int:
        now = utcnow()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    review_flags.insert(),
                    [
                        {"deal_id": deal_id, "reason": deal.review_reason, "created_at": now}
                        for deal_id, deal in flagged
                    ],
                )
        except SQLAlchemyError as exc:
            logger.error("Failed to write %s review flags: %s", len(flagged), exc)
            return 0
        return len(flagged)


def serialize(deal_id: int, deal: PreparedDeal) -> dict:
    data = asdict(deal)
    data.pop("deal_hash")
    data.pop("brand_id")
    data["id"] = deal_id
    data["date"] = format_date(deal.date)
    data["brand"] = data.pop("brand_name")
    data["needs_review"] = deal.needs_review
    return data
