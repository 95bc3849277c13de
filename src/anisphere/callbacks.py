"""Helpers for callbacks that may be plain functions or coroutines."""

import asyncio
from typing import Any


async def maybe_await(result: Any) -> Any:
    """Await result if it's a coroutine."""
    if asyncio.iscoroutine(result):
        return await result
    return result
