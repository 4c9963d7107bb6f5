"""Deal fingerprints and the accept/review/reject gate."""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Literal

from sqlalchemy import and_, select
from sqlalchemy.engine import Connection

from dispodeals.db.tables import deals
from dispodeals.ingest.models import CandidateDeal
from dispodeals.utils.dates import format_date

logger = logging.getLogger(__name__)

Action = Literal["accept", "review", "reject", "summarize"]

NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
PROMO_RE = re.compile(
    r"\b(bogo|b\dg\d|free|half|off|sale|discount|special|deal)\b",
    re.IGNORECASE,
)

GENERIC_WORDS = {
    "all", "and", "any", "daily", "day", "deal", "deals", "discount", "everything",
    "for", "in", "items", "menu", "of", "off", "on", "our", "product", "products",
    "sale", "select", "special", "specials", "store", "storewide", "the", "today",
    "todays", "wide", "week", "weekly",
}

CATEGORY_PATTERNS: dict[str, re.Pattern] = {
    "flower": re.compile(
        r"\b(flower|buds?|eighths?|quarters?|ounces?|oz|grams?|smalls|shake)\b|\d(?:\.\d+)?\s*(?:g|oz)\b",
        re.IGNORECASE,
    ),
    "pre-rolls": re.compile(r"\bpre-?rolls?\b|\bjoints?\b|\bblunts?\b", re.IGNORECASE),
    "vapes": re.compile(r"\bvapes?\b|\bcarts?\b|\bcartridges?\b|\bpens?\b|\bdisposables?\b|\bpods?\b", re.IGNORECASE),
    "concentrates": re.compile(
        r"\bconcentrates?\b|\bwax\b|\bshatter\b|\blive resin\b|\brosin\b|\bdabs?\b|\bbadder\b|\bbudder\b|\bcrumble\b|\bdiamonds\b",
        re.IGNORECASE,
    ),
    "edibles": re.compile(
        r"\bedibles?\b|\bgumm(?:y|ies)\b|\bchocolates?\b|\bcookies?\b|\bbrownies?\b|\bchews?\b|\d+\s*mg\b",
        re.IGNORECASE,
    ),
    "drinks": re.compile(r"\bdrinks?\b|\bbeverages?\b|\bsodas?\b|\btea\b|\bseltzers?\b|\bshots?\b", re.IGNORECASE),
    "topicals": re.compile(r"\btopicals?\b|\bcreams?\b|\blotions?\b|\bbalms?\b|\bsalves?\b", re.IGNORECASE),
    "cbd/thca": re.compile(r"\bcbd\b|\bthca\b|\bhemp\b", re.IGNORECASE),
    "accessories": re.compile(
        r"\baccessor(?:y|ies)\b|\bgrinders?\b|\bpipes?\b|\bbongs?\b|\bvaporizers?\b|\bpapers\b|\blighters?\b|\bbatter(?:y|ies)\b",
        re.IGNORECASE,
    ),
}


def _normalize(value: str) -> str:
    return " ".join(value.lower().split())


def deal_fingerprint(dispensary_name: str, as_of: date, category: str, title: str, price_text: str) -> str:
    parts = [dispensary_name, format_date(as_of), category, title, price_text]
    return hashlib.sha256("|".join(_normalize(p) for p in parts).encode("utf-8")).hexdigest()


def first_number(text: str) -> float | None:
    match = NUMBER_RE.search(text)
    return float(match.group(0)) if match else None


def is_generic_title(title: str) -> bool:
    words = re.findall(r"[a-z]+", title.lower().replace("'", ""))
    return not any(word not in GENERIC_WORDS for word in words)


def has_category_mismatch(category: str, title: str) -> bool:
    pattern = CATEGORY_PATTERNS.get(category)
    if pattern is None:
        return False
    return pattern.search(title) is None


def structural_reasons(candidate: CandidateDeal, *, confidence_threshold: float = 0.7) -> list[str]:
    reasons: list[str] = []
    if candidate.confidence < confidence_threshold:
        reasons.append("low_confidence")
    if is_generic_title(candidate.title):
        reasons.append("generic_title")
    if has_category_mismatch(candidate.category, candidate.title):
        reasons.append("category_mismatch")
    price = first_number(candidate.price_text)
    if price is None:
        if not PROMO_RE.search(candidate.price_text):
            reasons.append("missing_price_amount")
    elif price > 200:
        reasons.append("unusual_price_high")
    elif 0 < price < 1:
        reasons.append("unusual_price_low")
    return reasons


@dataclass(slots=True)
class GateDecision:
    action: Action
    fingerprint: str
    reasons: list[str] = field(default_factory=list)

    @property
    def review_reason(self) -> str | None:
        return ", ".join(self.reasons) if self.reasons else None


class QualityGate:
    def __init__(self, *, review_threshold: float = 0.5, confidence_threshold: float = 0.7) -> None:
        self.review_threshold = review_threshold
        self.confidence_threshold = confidence_threshold

    def evaluate(
        self,
        candidate: CandidateDeal,
        *,
        dispensary_name: str,
        as_of: date,
        existing: set[str],
        seen: set[str],
    ) -> GateDecision:
        """Decide one candidate; ``seen`` is updated with admitted fingerprints."""
        fingerprint = deal_fingerprint(
            dispensary_name, as_of, candidate.category, candidate.title, candidate.price_text
        )
        if candidate.confidence < self.review_threshold:
            return GateDecision("summarize", fingerprint)
        reasons = structural_reasons(candidate, confidence_threshold=self.confidence_threshold)
        if fingerprint in existing or fingerprint in seen:
            return GateDecision("reject", fingerprint, reasons)
        seen.add(fingerprint)
        if reasons:
            return GateDecision("review", fingerprint, reasons)
        return GateDecision("accept", fingerprint)

    def evaluate_all(
        self,
        conn: Connection,
        candidates: Iterable[CandidateDeal],
        *,
        dispensary_name: str,
        as_of: date,
    ) -> list[tuple[CandidateDeal, GateDecision]]:
        existing = existing_fingerprints(conn, dispensary_name, as_of)
        seen: set[str] = set()
        decisions = [
            (
                candidate,
                self.evaluate(
                    candidate,
                    dispensary_name=dispensary_name,
                    as_of=as_of,
                    existing=existing,
                    seen=seen,
                ),
            )
            for candidate in candidates
        ]
        rejected = sum(1 for _, d in decisions if d.action == "reject")
        if rejected:
            logger.info("Rejected %s duplicate deals for %s", rejected, dispensary_name)
        return decisions


def existing_fingerprints(conn: Connection, dispensary_name: str, as_of: date) -> set[str]:
    query = select(deals.c.deal_hash).where(
        and_(deals.c.dispensary_name == dispensary_name, deals.c.date == as_of)
    )
    return set(conn.execute(query).scalars())
