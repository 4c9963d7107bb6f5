"""Runtime configuration read from the environment."""

from __future__ import annotations

import logging
import os
import pathlib
from dataclasses import dataclass, field
from typing import Mapping

from dotenv import load_dotenv

DEFAULT_DATABASE_URL = "postgresql://user:pass@db:5432/deals"
DEFAULT_TZ = "America/Detroit"
PACKAGE_DIR = pathlib.Path(__file__).parent


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    value = env.get(key)
    return float(value) if value not in (None, "") else default


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key)
    return int(value) if value not in (None, "") else default


@dataclass(slots=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    timezone: str = DEFAULT_TZ
    log_level: str = "INFO"

    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash"
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    openai_vision_model: str = "gpt-4o"

    trusted_secrets: tuple[str, ...] = ()
    ingestion_secret: str | None = None
    redis_url: str | None = None

    s3_bucket: str | None = None
    s3_endpoint: str | None = None
    aws_region: str = "us-east-1"
    storage_dir: pathlib.Path = field(default_factory=lambda: pathlib.Path("artifacts/flyers"))

    dispensaries_path: pathlib.Path = PACKAGE_DIR / "ingest" / "dispensaries.yml"
    ingest_concurrency: int = 5
    http_timeout: float = 30.0
    website_timeout: float = 10.0
    confidence_threshold: float = 0.7
    review_threshold: float = 0.5

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        if env is None:
            load_dotenv()
            env = os.environ
        ingestion_secret = env.get("INGESTION_CRON_SECRET") or None
        secrets = tuple(
            s for s in (ingestion_secret, env.get("CRON_SECRET")) if s
        )
        return cls(
            database_url=env.get("DATABASE_URL", DEFAULT_DATABASE_URL),
            timezone=env.get("TIMEZONE", DEFAULT_TZ),
            log_level=env.get("LOG_LEVEL", "INFO"),
            gemini_api_key=env.get("GEMINI_API_KEY") or None,
            gemini_model=env.get("GEMINI_MODEL", "gemini-2.5-flash"),
            openai_api_key=env.get("OPENAI_API_KEY") or None,
            openai_model=env.get("OPENAI_MODEL", "gpt-4o-mini"),
            openai_vision_model=env.get("OPENAI_VISION_MODEL", "gpt-4o"),
            trusted_secrets=secrets,
            ingestion_secret=ingestion_secret,
            redis_url=env.get("REDIS_URL") or None,
            s3_bucket=env.get("AWS_S3_BUCKET") or None,
            s3_endpoint=env.get("AWS_S3_ENDPOINT") or None,
            aws_region=env.get("AWS_REGION", "us-east-1"),
            storage_dir=pathlib.Path(env.get("STORAGE_DIR", "artifacts/flyers")),
            dispensaries_path=pathlib.Path(
                env.get("DISPENSARIES_PATH", str(PACKAGE_DIR / "ingest" / "dispensaries.yml"))
            ),
            ingest_concurrency=_int(env, "INGEST_CONCURRENCY", 5),
            http_timeout=_float(env, "HTTP_TIMEOUT", 30.0),
            website_timeout=_float(env, "WEBSITE_TIMEOUT", 10.0),
            confidence_threshold=_float(env, "DEAL_CONFIDENCE_THRESHOLD", 0.7),
            review_threshold=_float(env, "DEAL_REVIEW_THRESHOLD", 0.5),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
