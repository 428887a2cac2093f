"""
Shared thread pool for the blocking SDKs (MSAL, Twilio).
Keeps a slow identity or SMS call from stalling the event loop.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from functools import partial

from config.credentials import get_settings

_executor: ThreadPoolExecutor | None = None


def get_shared_executor() -> ThreadPoolExecutor:
    """Create the pool lazily so SENDER_MAX_WORKERS is read at first use."""
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(
            max_workers=get_settings().SENDER_MAX_WORKERS,
            thread_name_prefix="sender_worker",
        )
    return _executor


async def run_in_shared_executor(func, *args, **kwargs):
    """Run a blocking function in the shared executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(get_shared_executor(), partial(func, *args, **kwargs))


def cleanup_executor():
    """Shutdown the shared executor gracefully (app shutdown hook)."""
    global _executor
    if _executor is not None:
        _executor.shutdown(wait=True)
        _executor = None
