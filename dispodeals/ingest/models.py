"""Ingestion data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

CATEGORIES: tuple[str, ...] = (
    "flower",
    "pre-rolls",
    "vapes",
    "concentrates",
    "edibles",
    "drinks",
    "topicals",
    "cbd/thca",
    "accessories",
)

Category = Literal[
    "flower",
    "pre-rolls",
    "vapes",
    "concentrates",
    "edibles",
    "drinks",
    "topicals",
    "cbd/thca",
    "accessories",
]


class CandidateDeal(BaseModel):
    """One deal as returned by an extraction provider."""

    model_config = ConfigDict(str_strip_whitespace=True)

    category: Category
    title: str = Field(min_length=1)
    price_text: str = Field(min_length=1)
    brand: str | None = None
    product_name: str | None = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    @field_validator("brand", "product_name")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("confidence", mode="before")
    @classmethod
    def _null_confidence(cls, value):
        return 1.0 if value is None else value


class ParseResponse(BaseModel):
    deals: list[CandidateDeal]


@dataclass(slots=True)
class Dispensary:
    name: str
    city: str | None = None
    flyer_url: str | None = None
    website: str | None = None
    active: bool = True
    ingestion_success_rate: float = 1.0


@dataclass(slots=True)
class FetchResult:
    duplicate: bool
    file_path: str | None = None
    hash: str | None = None
    mime_type: str | None = None
    source_url: str | None = None
    document_id: int | None = None
    reason: str | None = None


@dataclass(slots=True)
class OcrResult:
    text: str
    confidence: float
    cached: bool = False


@dataclass(slots=True)
class DealContext:
    """Where a batch of candidates came from."""

    dispensary_name: str
    date: date
    source_url: str
    city: str | None = None
    document_id: int | None = None


@dataclass(slots=True)
class ParseOutcome:
    deals_inserted: int = 0
    deals: list[dict] = field(default_factory=list)
    ai_failed: bool = False
    flagged_for_review: int = 0
    low_confidence_handled: int = 0
    rejected_duplicates: int = 0

    def as_dict(self) -> dict:
        return {
            "deals_inserted": self.deals_inserted,
            "deals": self.deals,
            "ai_failed": self.ai_failed,
            "flagged_for_review": self.flagged_for_review,
            "low_confidence_handled": self.low_confidence_handled,
        }


@dataclass(slots=True)
class BatchSummary:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    deals_inserted: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "deals_inserted": self.deals_inserted,
        }
