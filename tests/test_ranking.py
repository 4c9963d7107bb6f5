import math
from datetime import date

import pytest

from conftest import add_brand, add_deal, add_subscriber
from dispodeals.errors import NotFoundError, ValidationError
from dispodeals.logic.ranking import MAX_DEALS, RankingService, price_score
from dispodeals.logic.subscribers import save_preferences

AS_OF = date(2024, 6, 1)


def test_price_score():
    assert price_score("2/$35") == 17.5
    assert price_score("3 / $ 50") == pytest.approx(16.6667, rel=1e-4)
    assert price_score("$15 eighths") == 15
    assert price_score("30% off") == 30
    assert math.isinf(price_score("BOGO"))


def test_rank_filters_categories_and_sorts_by_price(engine):
    add_subscriber(engine, "a@example.com", ["flower"])
    add_deal(engine, AS_OF, title="Eighths", price_text="$25")
    add_deal(engine, AS_OF, title="Ounces", price_text="2/$35")
    add_deal(engine, AS_OF, title="Carts", category="vapes", price_text="$10")
    add_deal(engine, date(2024, 5, 31), title="Yesterday", price_text="$1")

    ranked = RankingService(engine).rank("A@example.com", AS_OF)

    assert [d["title"] for d in ranked] == ["Ounces", "Eighths"]
    assert ranked[0]["score"] == 17.5
    assert ranked[0]["date"] == "2024-06-01"


def test_rank_keeps_newest_first_on_ties(engine):
    add_subscriber(engine, "a@example.com", ["flower"])
    add_deal(engine, AS_OF, title="Older", price_text="$20", age_minutes=30)
    add_deal(engine, AS_OF, title="Newer", price_text="$20")
    add_deal(engine, AS_OF, title="Promo", price_text="BOGO")

    ranked = RankingService(engine).rank("a@example.com", AS_OF)

    assert [d["title"] for d in ranked] == ["Newer", "Older", "Promo"]
    assert ranked[-1]["score"] is None


def test_rank_excludes_flagged_deals(engine):
    add_subscriber(engine, "a@example.com", ["flower"])
    add_deal(engine, AS_OF, title="Checked", price_text="$20")
    add_deal(engine, AS_OF, title="Suspicious", price_text="$250", needs_review=True)

    assert [d["title"] for d in RankingService(engine).rank("a@example.com", AS_OF)] == ["Checked"]


def test_rank_filters_brands(engine):
    wyld = add_brand(engine, "Wyld")
    camino = add_brand(engine, "Camino")
    add_subscriber(engine, "a@example.com", ["edibles"], ["wyld"])
    add_deal(engine, AS_OF, title="Wyld gummies", category="edibles", brand_id=wyld)
    add_deal(engine, AS_OF, title="Camino gummies", category="edibles", brand_id=camino)

    ranked = RankingService(engine).rank("a@example.com", AS_OF)

    assert [(d["title"], d["brand"]) for d in ranked] == [("Wyld gummies", "Wyld")]


def test_rank_with_unknown_brand_preferences_is_empty(engine):
    add_subscriber(engine, "a@example.com", ["flower"], ["Not A Brand"])
    add_deal(engine, AS_OF)
    assert RankingService(engine).rank("a@example.com", AS_OF) == []


def test_rank_without_preferences_is_empty(engine):
    add_subscriber(engine, "a@example.com", None)
    add_deal(engine, AS_OF)
    assert RankingService(engine).rank("a@example.com", AS_OF) == []


def test_rank_unknown_subscriber(engine):
    with pytest.raises(NotFoundError):
        RankingService(engine).rank("nobody@example.com", AS_OF)


def test_rank_is_capped(engine):
    add_subscriber(engine, "a@example.com", ["flower"])
    for i in range(MAX_DEALS + 5):
        add_deal(engine, AS_OF, title=f"Deal {i}", price_text=f"${i + 1}")
    assert len(RankingService(engine).rank("a@example.com", AS_OF)) == MAX_DEALS


def test_save_preferences_upserts(engine):
    save_preferences(engine, "New@Example.com", ["flower"])
    saved = save_preferences(engine, "new@example.com", ["vapes", "vapes"], [" Wyld ", ""])
    assert saved == {
        "email": "new@example.com",
        "categories": ["vapes"],
        "brands": ["Wyld"],
        "zip": None,
        "radius": None,
    }
    prefs = RankingService(engine).load_preferences("new@example.com")
    assert prefs.categories == ["vapes"]


def test_save_preferences_rejects_unknown_category(engine):
    with pytest.raises(ValidationError):
        save_preferences(engine, "a@example.com", ["seeds"])
