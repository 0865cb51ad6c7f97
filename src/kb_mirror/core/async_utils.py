"""Thread offloading for the blocking HTTP client and file I/O."""

import asyncio
import logging
from typing import Any, Callable, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Await ``func(*args, **kwargs)`` executed on the default thread pool.

    Example:
        books = await run_sync(client.list_books)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_sync_timeout(
    timeout: float | None, func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Like :func:`run_sync`, raising ``asyncio.TimeoutError`` after *timeout* seconds.

    ``None`` waits forever.  A timed-out thread keeps running in the
    background; only its result is dropped.
    """
    call = asyncio.to_thread(func, *args, **kwargs)
    if timeout is None:
        return await call
    try:
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError:
        name = getattr(func, "__qualname__", repr(func))
        logger.warning("%s did not finish within %.1fs", name, timeout)
        raise
