"""Retry helpers for flaky network calls."""

from __future__ import annotations

import asyncio
import functools
import random
from collections.abc import Awaitable, Callable

import httpx

RETRY_EXCEPTIONS = (OSError, asyncio.TimeoutError, httpx.TransportError)


def retry_async(func: Callable[..., Awaitable], *, attempts: int = 3, base_delay: float = 1.0):
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        delay = base_delay
        for attempt in range(attempts):
            try:
                return await func(*args, **kwargs)
            except RETRY_EXCEPTIONS:
                if attempt == attempts - 1:
                    raise
                await asyncio.sleep(delay + random.random() * base_delay)
                delay *= 2
    return wrapper
