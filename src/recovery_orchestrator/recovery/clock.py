"""Injectable time sources so tests can simulate elapsed time."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[None]]


def utc_now() -> datetime:
    return datetime.now(UTC)


async def asyncio_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)
