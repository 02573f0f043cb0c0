"""Timeout-bounded polling for external readiness checks."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from foundry_host.errors import ReadinessTimeoutError

T = TypeVar("T")


async def poll_until(
    probe: Callable[[], Awaitable[Optional[T]]],
    *,
    interval: float,
    timeout: float,
    description: str = "condition",
) -> T:
    """Await ``probe`` every ``interval`` seconds until it returns a value.

    ``probe`` returns ``None`` to keep waiting and raises to abort.  The whole
    loop is cancelled after ``timeout`` seconds.
    """

    async def _loop():
        attempt = 0
        while True:
            attempt += 1
            result = await probe()
            if result is not None:
                return result
            logging.debug("Waiting for %s (attempt %d)", description, attempt)
            await asyncio.sleep(interval)

    try:
        return await asyncio.wait_for(_loop(), timeout)
    except asyncio.TimeoutError as exc:
        raise ReadinessTimeoutError(
            f"Timed out after {timeout:g}s waiting for {description}"
        ) from exc
