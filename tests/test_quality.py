from datetime import date

import pytest

from conftest import add_deal, candidate
from dispodeals.logic.quality import QualityGate, deal_fingerprint, structural_reasons

AS_OF = date(2024, 6, 1)


def evaluate(gate, deal, existing=frozenset(), seen=None):
    return gate.evaluate(
        deal,
        dispensary_name="Greenhouse",
        as_of=AS_OF,
        existing=set(existing),
        seen=set() if seen is None else seen,
    )


def test_fingerprint_normalizes_case_and_whitespace():
    a = deal_fingerprint("Greenhouse", AS_OF, "vapes", "STIIIZY  1g carts", "2/$35")
    b = deal_fingerprint("greenhouse", AS_OF, "Vapes", " stiiizy 1g   carts ", "2/$35 ")
    c = deal_fingerprint("Greenhouse", AS_OF, "vapes", "STIIIZY 1g carts", "3/$50")
    assert a == b
    assert a != c


def test_low_confidence_is_summarized():
    decision = evaluate(QualityGate(), candidate(confidence=0.3))
    assert decision.action == "summarize"


def test_clean_candidate_is_accepted():
    decision = evaluate(QualityGate(), candidate())
    assert decision.action == "accept"
    assert decision.review_reason is None


@pytest.mark.parametrize(
    "overrides, reason",
    [
        ({"confidence": 0.6}, "low_confidence"),
        ({"title": "Daily Deals", "category": "flower"}, "generic_title"),
        ({"title": "STIIIZY gummies", "category": "vapes"}, "category_mismatch"),
        ({"price_text": "$250"}, "unusual_price_high"),
        ({"price_text": "$0.50"}, "unusual_price_low"),
        ({"price_text": "ask budtender"}, "missing_price_amount"),
    ],
)
def test_heuristics_flag_for_review(overrides, reason):
    decision = evaluate(QualityGate(), candidate(**overrides))
    assert decision.action == "review"
    assert reason in decision.reasons


def test_promotional_price_without_number_is_not_flagged():
    assert "missing_price_amount" not in structural_reasons(candidate(price_text="BOGO"))


def test_review_reasons_are_joined():
    decision = evaluate(QualityGate(), candidate(confidence=0.6, price_text="$250"))
    assert decision.review_reason == "low_confidence, unusual_price_high"


def test_duplicates_in_batch_are_rejected():
    gate = QualityGate()
    seen = set()
    first = evaluate(gate, candidate(), seen=seen)
    second = evaluate(gate, candidate(title="stiiizy 1G carts"), seen=seen)
    assert first.action == "accept"
    assert second.action == "reject"


def test_catalog_duplicate_is_rejected_even_when_flagged(engine):
    deal = candidate(price_text="$250")
    add_deal(engine, AS_OF, category=deal.category, title=deal.title, price_text=deal.price_text)
    with engine.connect() as conn:
        decisions = QualityGate().evaluate_all(conn, [deal], dispensary_name="Greenhouse", as_of=AS_OF)
    assert decisions[0][1].action == "reject"
