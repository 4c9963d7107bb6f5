from datetime import date

import pytest
from sqlalchemy import select

from conftest import add_subscriber
from dispodeals.db.tables import deals, review_flags
from dispodeals.errors import NotFoundError
from dispodeals.logic.catalog import CatalogWriter, PreparedDeal
from dispodeals.logic.quality import deal_fingerprint
from dispodeals.logic.ranking import RankingService
from dispodeals.logic.reviews import pending_reviews, resolve_review

AS_OF = date(2024, 6, 1)


def write_flagged(engine, title="Ounces of flower", price_text="$250"):
    deal = PreparedDeal(
        dispensary_name="Greenhouse",
        date=AS_OF,
        category="flower",
        title=title,
        price_text=price_text,
        confidence=0.9,
        deal_hash=deal_fingerprint("Greenhouse", AS_OF, "flower", title, price_text),
        source_url="https://greenhouse.example/flyer.jpg",
        review_reason="unusual_price_high",
    )
    CatalogWriter(engine).write([deal])
    (review,) = pending_reviews(engine)
    return review


def deal_row(engine, deal_id):
    with engine.connect() as conn:
        return conn.execute(select(deals).where(deals.c.id == deal_id)).mappings().one()


def test_approve_publishes_deal(engine):
    add_subscriber(engine, "a@example.com", ["flower"])
    review = write_flagged(engine)
    assert review["reason"] == "unusual_price_high"
    assert RankingService(engine).rank("a@example.com", AS_OF) == []

    result = resolve_review(engine, review["id"], "approve", reviewed_by="ops@example.com")

    assert result == {"id": review["id"], "deal_id": review["deal"]["id"], "status": "approved"}
    assert deal_row(engine, review["deal"]["id"])["needs_review"] is False
    with engine.connect() as conn:
        flag = conn.execute(select(review_flags)).mappings().one()
    assert flag["status"] == "approved"
    assert flag["reviewed_by"] == "ops@example.com"
    assert flag["reviewed_at"] is not None
    assert pending_reviews(engine) == []
    assert [d["title"] for d in RankingService(engine).rank("a@example.com", AS_OF)] == ["Ounces of flower"]


def test_reject_keeps_deal_hidden(engine):
    review = write_flagged(engine)

    result = resolve_review(engine, review["id"], "reject", notes="misread flyer")

    assert result["status"] == "rejected"
    assert deal_row(engine, review["deal"]["id"])["needs_review"] is True
    with engine.connect() as conn:
        flag = conn.execute(select(review_flags)).mappings().one()
    assert flag["reviewed_by"] == "admin"
    assert flag["notes"] == "misread flyer"


def test_resolved_flag_cannot_be_resolved_again(engine):
    review = write_flagged(engine)
    resolve_review(engine, review["id"], "fix")

    with pytest.raises(NotFoundError):
        resolve_review(engine, review["id"], "approve")
    with pytest.raises(NotFoundError):
        resolve_review(engine, 999, "approve")
