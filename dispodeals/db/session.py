"""Database engine helpers."""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Callable, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from dispodeals.config import Settings

T = TypeVar("T")


def create_engine_from_settings(settings: Settings) -> Engine:
    """Create an engine for the configured DATABASE_URL."""
    return create_engine(settings.database_url, pool_pre_ping=True, future=True)


async def run_sync(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run blocking database work off the event loop."""
    call = functools.partial(func, *args, **kwargs)
    return await asyncio.get_running_loop().run_in_executor(None, call)
