import asyncio
import concurrent.futures
import functools
import os
from typing import Any, Callable, TypeVar

from utils.loguru_setup import logger, capture_context, restore_context

T = TypeVar('T')

CPU_COUNT = os.cpu_count() or 4

# Blocking client libraries (google-cloud-bigquery) run here; mostly waiting on network
IO_THREAD_POOL = concurrent.futures.ThreadPoolExecutor(
    max_workers=min(32, CPU_COUNT * 10),
    thread_name_prefix="io-worker-"
)


async def run_in_thread(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run a blocking function in the I/O thread pool, preserving trace context.

    Args:
        func: Function to run
        *args: Arguments to pass to the function
        **kwargs: Keyword arguments to pass to the function

    Returns:
        Result of the function
    """
    context = capture_context()

    @functools.wraps(func)
    def context_wrapper():
        restore_context(context)
        try:
            return func(*args, **kwargs)
        except Exception as e:
            logger.error(f"Error in thread function {func.__name__}: {e}")
            raise

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(IO_THREAD_POOL, context_wrapper)


async def shutdown_thread_pools():
    """Shutdown thread pools gracefully."""
    logger.info("Shutting down thread pools")
    IO_THREAD_POOL.shutdown(wait=True)
    logger.info("Thread pools shutdown complete")
