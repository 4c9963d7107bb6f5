"""Brand resolution for extracted deals."""

from __future__ import annotations

import logging
import pathlib
import re
from dataclasses import dataclass

import yaml
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from dispodeals.db.tables import brands
from dispodeals.utils.dates import utcnow

logger = logging.getLogger(__name__)

KNOWN_BRANDS_PATH = pathlib.Path(__file__).with_name("known_brands.yml")

SEPARATORS = (" - ", " / ", " | ", " – ", " — ")
MAX_BRAND_PREFIX = 30


@dataclass(slots=True)
class BrandMatch:
    brand_id: int | None
    brand_name: str | None
    product_name: str | None


def normalize_brand_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower().strip())


def load_known_brands(path: pathlib.Path = KNOWN_BRANDS_PATH) -> list[str]:
    return [str(name) for name in yaml.safe_load(path.read_text()) or []]


def _prefix_pattern(brand: str) -> re.Pattern:
    return re.compile(r"^\s*" + re.escape(brand) + r"(?!\w)", re.IGNORECASE)


def strip_brand(title: str, brand: str) -> str:
    """Remove the brand from a title case-insensitively, along with leftover separators."""
    remainder = re.sub(re.escape(brand.strip()), "", title, count=1, flags=re.IGNORECASE)
    return remainder.strip(" -/|–—:").strip() or title.strip()


def split_on_separator(title: str) -> tuple[str, str] | None:
    """Split "BRAND - product" style titles; None when no separator fits."""
    text = title.strip()
    for sep in SEPARATORS:
        if sep not in text:
            continue
        brand, _, product = text.partition(sep)
        brand, product = brand.strip(), product.strip()
        if brand and len(brand) <= MAX_BRAND_PREFIX and len(product) > len(brand):
            return brand, product
    return None


class BrandResolver:
    """Maps titles and extracted brand strings onto the brand registry.

    Registry writes run in their own short transactions so a brand created
    for one deal is visible to the rest of the batch.
    """

    def __init__(self, engine: Engine, known_brands: list[str] | None = None) -> None:
        self.engine = engine
        self.seed_brands = known_brands if known_brands is not None else load_known_brands()

    def match_known(self, title: str) -> str | None:
        """Longest known brand name that starts the title."""
        with self.engine.connect() as conn:
            registry = conn.execute(select(brands.c.name)).scalars().all()
        candidates = {normalize_brand_name(n): n for n in [*self.seed_brands, *registry]}
        for name in sorted(candidates.values(), key=len, reverse=True):
            if _prefix_pattern(name).match(title):
                return name
        return None

    def resolve(self, title: str, *, brand: str | None = None, product_name: str | None = None) -> BrandMatch:
        if brand and normalize_brand_name(brand):
            brand_id, name = self.find_or_create(brand)
            return BrandMatch(brand_id, name, product_name or strip_brand(title, brand))

        name = self.match_known(title)
        if name is not None:
            product = product_name or strip_brand(title, name)
        else:
            split = split_on_separator(title)
            if split is None:
                return BrandMatch(None, None, product_name)
            name, product = split[0], product_name or split[1]
        brand_id, canonical = self.find_or_create(name)
        return BrandMatch(brand_id, canonical, product)

    def find_or_create(self, name: str) -> tuple[int, str]:
        display = name.strip()
        normalized = normalize_brand_name(display)
        existing = self._lookup(normalized)
        if existing is not None:
            return existing
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    brands.insert().values(name=display, normalized_name=normalized, created_at=utcnow())
                )
                brand_id = int(result.inserted_primary_key[0])
        except IntegrityError:
            existing = self._lookup(normalized)
            if existing is None:
                raise
            return existing
        logger.info("Created brand %s", display)
        return brand_id, display

    def _lookup(self, normalized: str) -> tuple[int, str] | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(brands.c.id, brands.c.name).where(brands.c.normalized_name == normalized)
            ).first()
        return (int(row.id), row.name) if row is not None else None

    def list_brands(self) -> list[dict]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(brands.c.id, brands.c.name).order_by(brands.c.name))
            return [{"id": row.id, "name": row.name} for row in rows]
