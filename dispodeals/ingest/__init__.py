"""Ingestion helpers."""

from __future__ import annotations

import pathlib

import yaml

from dispodeals.ingest.models import Dispensary

DISPENSARIES_PATH = pathlib.Path(__file__).with_name("dispensaries.yml")


def load_dispensaries(path: pathlib.Path | None = None) -> list[Dispensary]:
    data = yaml.safe_load((path or DISPENSARIES_PATH).read_text()) or []
    return [d for d in (Dispensary(**item) for item in data) if d.active]
