# bulkops/utils/async_helpers.py
"""
Async glue between the long-running capture proxy and the synchronous CLI.

The proxy's DumpMaster runs as a background task on the API server's (or
CLI's) event loop; nothing awaits it until shutdown, so a crash there would
otherwise go unnoticed until the browser stops loading pages.
"""

import asyncio
import logging
from typing import Any, Coroutine, Optional

logger = logging.getLogger(__name__)


def create_safe_task(
    coro: Coroutine[Any, Any, Any],
    name: Optional[str] = None,
    log_errors: bool = True
) -> asyncio.Task:
    """
    Schedule a fire-and-forget coroutine (the capture proxy's master loop)
    and log its failure under the task name instead of dropping it.

    Args:
        coro: coroutine to schedule on the running loop
        name: task name, shown in the crash log (e.g. "capture-proxy")
        log_errors: set False when the caller awaits the task and handles errors itself
    """
    task = asyncio.create_task(coro, name=name)

    def _handle_exception(t: asyncio.Task):
        if t.cancelled():
            return
        exc = t.exception()
        if exc and log_errors:
            task_name = name or t.get_name()
            logger.error(f"[AsyncTask:{task_name}] Unhandled exception: {exc}", exc_info=exc)

    task.add_done_callback(_handle_exception)
    return task


def run_sync(coro: Coroutine[Any, Any, Any]) -> Any:
    """
    Run a coroutine to completion from synchronous code (CLI entry points).

    Raises RuntimeError when called from inside a running loop.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    coro.close()
    raise RuntimeError("run_sync() cannot be used inside a running event loop")
