from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from dispodeals.config import Settings
from dispodeals.context import build_context
from dispodeals.db.migrate import run_migrations
from dispodeals.db.tables import brands, deals, preferences, subscribers
from dispodeals.ingest.models import CandidateDeal
from dispodeals.ingest.storage import LocalStorage
from dispodeals.logic.brands import normalize_brand_name
from dispodeals.logic.quality import deal_fingerprint
from dispodeals.utils.dates import today_in_tz
from dispodeals.utils.rate_limit import MemoryCounter

TZ = "America/Detroit"
SECRET = "cron-secret"


class FakeJsonProvider:
    """Stands in for an AI provider; returns canned JSON or raises."""

    def __init__(self, name, responses):
        self.name = name
        self.responses = list(responses)
        self.calls = []

    async def generate_json(self, system, prompt):
        self.calls.append(prompt)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture()
def today():
    return today_in_tz(TZ)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    run_migrations(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        timezone=TZ,
        gemini_api_key="gemini-key",
        openai_api_key="openai-key",
        trusted_secrets=(SECRET,),
        ingestion_secret=SECRET,
        storage_dir=tmp_path / "flyers",
        ingest_concurrency=1,
    )


@pytest.fixture()
def storage(tmp_path):
    return LocalStorage(tmp_path / "flyers")


@pytest.fixture()
def ctx(settings, engine, storage):
    return build_context(settings, engine=engine, storage=storage, counter=MemoryCounter())


def candidate(**overrides):
    data = {
        "category": "vapes",
        "title": "STIIIZY 1g carts",
        "price_text": "2/$35",
        "confidence": 0.9,
    }
    data.update(overrides)
    return CandidateDeal(**data)


def add_brand(engine, name):
    with engine.begin() as conn:
        result = conn.execute(
            brands.insert().values(
                name=name,
                normalized_name=normalize_brand_name(name),
                created_at=datetime.now(timezone.utc),
            )
        )
        return result.inserted_primary_key[0]


def add_deal(engine, as_of, *, age_minutes=0, **overrides):
    row = {
        "dispensary_name": "Greenhouse",
        "city": "Walled Lake",
        "date": as_of,
        "category": "flower",
        "title": "Eighth of flower",
        "product_name": None,
        "price_text": "$25",
        "brand_id": None,
        "confidence": 0.9,
        "needs_review": False,
        "source_url": "https://greenhouse.example/flyer.jpg",
        "created_at": datetime.now(timezone.utc) - timedelta(minutes=age_minutes),
    }
    row.update(overrides)
    if "deal_hash" not in row:
        row["deal_hash"] = deal_fingerprint(
            row["dispensary_name"], as_of, row["category"], row["title"], row["price_text"]
        )
    with engine.begin() as conn:
        return conn.execute(deals.insert().values(**row)).inserted_primary_key[0]


def add_subscriber(engine, email, categories, brand_names=()):
    with engine.begin() as conn:
        subscriber_id = conn.execute(
            subscribers.insert().values(email=email, created_at=datetime.now(timezone.utc))
        ).inserted_primary_key[0]
        if categories is not None:
            conn.execute(
                preferences.insert().values(
                    subscriber_id=subscriber_id,
                    categories=list(categories),
                    brands=list(brand_names),
                )
            )
        return subscriber_id
