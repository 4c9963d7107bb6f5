"""Table definitions for the deals catalog."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

dispensaries = Table(
    "dispensaries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", Text, nullable=False, unique=True),
    Column("city", Text),
    Column("flyer_url", Text),
    Column("website", Text),
    Column("active", Boolean, nullable=False, default=True),
    Column("last_ingested_at", DateTime(timezone=True)),
    Column("ingestion_success_rate", Float, nullable=False, default=1.0),
)

source_documents = Table(
    "source_documents",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("dispensary_name", Text, nullable=False),
    Column("date", Date, nullable=False),
    Column("file_path", Text, nullable=False),
    Column("source_url", Text, nullable=False),
    Column("hash", Text, nullable=False),
    Column("mime_type", Text, nullable=False),
    Column("deals_extracted", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("processed_at", DateTime(timezone=True)),
    Column("ocr_text", Text),
    Column("ocr_text_hash", Text),
    Column("ocr_processed_at", DateTime(timezone=True)),
    UniqueConstraint("dispensary_name", "date", "hash", name="uq_source_documents_hash"),
)

brands = Table(
    "brands",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", Text, nullable=False, unique=True),
    Column("normalized_name", Text, nullable=False, unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

deals = Table(
    "deals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("dispensary_name", Text, nullable=False),
    Column("city", Text),
    Column("date", Date, nullable=False, index=True),
    Column("category", Text, nullable=False),
    Column("title", Text, nullable=False),
    Column("product_name", Text),
    Column("price_text", Text, nullable=False),
    Column("brand_id", Integer, ForeignKey("brands.id")),
    Column("confidence", Float, nullable=False),
    Column("deal_hash", Text, nullable=False),
    Column("needs_review", Boolean, nullable=False, default=False),
    Column("source_url", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("dispensary_name", "date", "deal_hash", name="uq_deals_hash"),
)

review_flags = Table(
    "review_flags",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("deal_id", Integer, ForeignKey("deals.id"), nullable=False, index=True),
    Column("reason", Text, nullable=False),
    Column("status", Text, nullable=False, default="pending", index=True),
    Column("notes", Text),
    Column("reviewed_by", Text),
    Column("reviewed_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

subscribers = Table(
    "subscribers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", Text, nullable=False, unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

preferences = Table(
    "preferences",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("subscriber_id", Integer, ForeignKey("subscribers.id"), nullable=False, unique=True),
    Column("categories", JSON, nullable=False, default=list),
    Column("brands", JSON, nullable=False, default=list),
    Column("zip", Text),
    Column("radius", Integer),
)
