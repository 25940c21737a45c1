"""Deadline-bounded polling for cluster readiness."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

from kina.core.exceptions import KinaTimeoutError

log = logger.bind(component="wait")

T = TypeVar("T")


async def wait_for_ready(
    poll_fn: Callable[[], Awaitable[T | None]],
    ready_check: Callable[[T], bool],
    *,
    timeout: float = 300.0,
    interval: float = 5.0,
    description: str = "resource",
) -> T:
    """Poll until a state passes ``ready_check`` or ``timeout`` seconds elapse.

    ``None`` from ``poll_fn`` means the state is not observable yet. Sleeps
    never overshoot the deadline, and the last observed state is named in
    the ``KinaTimeoutError``.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    last: T | None = None

    while True:
        state = await poll_fn()
        if state is not None:
            if ready_check(state):
                return state
            last = state
            log.debug("Waiting for {what}: {state}", what=description, state=state)

        remaining = deadline - loop.time()
        if remaining <= 0:
            suffix = f" (last state: {last})" if last is not None else ""
            raise KinaTimeoutError(f"Timed out waiting for {description} after {timeout:.0f}s{suffix}")

        await asyncio.sleep(min(interval, remaining))
