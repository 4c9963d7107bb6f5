import httpx
import pytest

from dispodeals.utils.retry import retry_async


@pytest.mark.asyncio
async def test_retries_transport_errors_then_succeeds():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise httpx.ConnectError("connection reset")
        return "ok"

    assert await retry_async(flaky, base_delay=0)() == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_gives_up_after_last_attempt():
    calls = []

    async def down():
        calls.append(1)
        raise httpx.ConnectTimeout("timed out")

    with pytest.raises(httpx.ConnectTimeout):
        await retry_async(down, attempts=2, base_delay=0)()
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_other_errors_are_not_retried():
    calls = []

    async def broken():
        calls.append(1)
        raise ValueError("bad payload")

    with pytest.raises(ValueError):
        await retry_async(broken, base_delay=0)()
    assert len(calls) == 1
