"""Utility functions for the AirSync client."""

from __future__ import annotations

import asyncio
import inspect
import sys
import time
from collections.abc import Coroutine
from typing import TypeVar

_T = TypeVar("_T")

# eager_start arrived in Python 3.12
_SUPPORTS_EAGER_START = sys.version_info >= (3, 12) and "eager_start" in inspect.signature(
    asyncio.create_task
).parameters


def create_task(
    coro: Coroutine[None, None, _T],
    *,
    name: str | None = None,
    eager_start: bool = True,
) -> asyncio.Task[_T]:
    """Create an asyncio task that starts executing immediately where supported.

    The calibration session relies on this so that the recorder task has
    already opened its input stream by the time control returns to the caller.
    On Python versions without eager task support the flag is ignored.

    Args:
        coro: The coroutine to run as a task.
        name: Optional name for the task (for debugging).
        eager_start: Whether to start the task eagerly.

    Returns:
        The created asyncio Task.
    """
    kwargs = {"name": name} if name is not None else {}

    if _SUPPORTS_EAGER_START:
        kwargs["eager_start"] = eager_start

    return asyncio.create_task(coro, **kwargs)


def wall_clock_ms() -> float:
    """Return the local wall-clock time in milliseconds since the epoch."""
    return time.time() * 1000.0


def timestamp_ms() -> int:
    """Return the integer millisecond timestamp carried in request payloads."""
    return int(wall_clock_ms())
