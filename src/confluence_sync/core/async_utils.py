"""Async utilities for running blocking HTTP and file I/O off the event loop."""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Sequence, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        items = await run_sync(client.list_items, "DEV")
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_sync_limited(
    semaphore: asyncio.Semaphore | None,
    func: Callable[..., T],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Run a synchronous function in a thread pool, bounded by *semaphore*.

    Runs unbounded when *semaphore* is ``None``.

    Args:
        semaphore: Semaphore shared by the calls that must be bounded together
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)
    """
    if semaphore is None:
        return await asyncio.to_thread(func, *args, **kwargs)
    async with semaphore:
        return await asyncio.to_thread(func, *args, **kwargs)


async def gather_limited(
    coros: Sequence[Coroutine[Any, Any, T]],
) -> list[T]:
    """Run coroutines concurrently and return results in input order.

    Each coroutine should use run_sync_limited internally to bound
    concurrency.  Exceptions propagate from the first failure, so callers
    that need per-task isolation must catch inside each coroutine.

    Args:
        coros: Sequence of coroutines to run concurrently.

    Returns:
        List of results in the same order as input coroutines.
    """
    return list(await asyncio.gather(*coros))
