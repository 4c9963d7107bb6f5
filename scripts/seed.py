"""Seed database with dispensaries and a demo subscriber."""

from __future__ import annotations

from sqlalchemy import select

from dispodeals.config import Settings
from dispodeals.db.migrate import run_migrations
from dispodeals.db.session import create_engine_from_settings
from dispodeals.db.tables import dispensaries
from dispodeals.ingest import load_dispensaries
from dispodeals.logic.subscribers import save_preferences

DEMO_SUBSCRIBERS = [
    {"email": "flower@example.com", "categories": ["flower", "pre-rolls"], "brands": []},
    {"email": "vapes@example.com", "categories": ["vapes"], "brands": ["STIIIZY"]},
]


def main() -> None:
    settings = Settings.from_env()
    engine = create_engine_from_settings(settings)
    run_migrations(engine)
    with engine.begin() as conn:
        known = set(conn.execute(select(dispensaries.c.name)).scalars())
        for dispensary in load_dispensaries(settings.dispensaries_path):
            if dispensary.name in known:
                continue
            conn.execute(
                dispensaries.insert().values(
                    name=dispensary.name,
                    city=dispensary.city,
                    flyer_url=dispensary.flyer_url,
                    website=dispensary.website,
                    active=dispensary.active,
                    ingestion_success_rate=dispensary.ingestion_success_rate,
                )
            )
    for subscriber in DEMO_SUBSCRIBERS:
        save_preferences(engine, subscriber["email"], subscriber["categories"], subscriber["brands"])
    print("Seed complete")


if __name__ == "__main__":
    main()
