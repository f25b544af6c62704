"""
Async helpers for running CPU-bound analytics work in a thread pool.

Band decoding, index computation and aggregation are numpy/shapely work that
would otherwise block the asyncio event loop; these helpers move it onto a
shared executor so request handling stays responsive.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, TypeVar

from crop_analytics.config.settings import get_settings

logger = logging.getLogger(__name__)

# Global thread pool executor for blocking analytics operations
_executor: ThreadPoolExecutor | None = None

T = TypeVar("T")


def get_executor() -> ThreadPoolExecutor:
    """
    Get or create the global thread pool executor.

    Returns:
        ThreadPoolExecutor: Shared executor for blocking operations
    """
    global _executor
    if _executor is None:
        max_workers = get_settings().max_workers
        _executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="analytics_worker_"
        )
        logger.info(f"Created thread pool executor with {max_workers} workers")
    return _executor


async def run_in_executor(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run a blocking function in the thread pool executor.

    Args:
        func: Blocking function to execute
        *args: Positional arguments for the function
        **kwargs: Keyword arguments for the function

    Returns:
        Result of the blocking function

    Example:
        >>> grid = await run_in_executor(compute_ndvi, capture)
    """
    loop = asyncio.get_running_loop()
    executor = get_executor()

    if kwargs:
        return await loop.run_in_executor(executor, partial(func, *args, **kwargs))
    return await loop.run_in_executor(executor, func, *args)


async def gather_with_limit(
    *coros: Any,
    limit: int | None = None,
    return_exceptions: bool = False
) -> list[Any]:
    """
    Run multiple coroutines concurrently with an optional limit on parallelism.

    Results are returned in the order the coroutines were given.

    Args:
        *coros: Coroutines to execute
        limit: Optional maximum concurrent operations (None = unlimited)
        return_exceptions: If True, exceptions are returned instead of raised

    Returns:
        List of results from all coroutines
    """
    if limit is None or limit >= len(coros):
        return await asyncio.gather(*coros, return_exceptions=return_exceptions)

    semaphore = asyncio.Semaphore(limit)

    async def bounded(coro):
        async with semaphore:
            return await coro

    return await asyncio.gather(
        *(bounded(c) for c in coros), return_exceptions=return_exceptions
    )


def shutdown_executor():
    """
    Shutdown the global thread pool executor.

    Should be called during application shutdown to clean up resources.
    """
    global _executor
    if _executor is not None:
        logger.info("Shutting down thread pool executor")
        _executor.shutdown(wait=True)
        _executor = None
