import asyncio
import logging
from typing import Awaitable, Iterable, List, Optional


logger = logging.getLogger(__name__)


async def cancel_tasks(tasks: Iterable[Optional[asyncio.Task]]) -> None:
    task_list = [t for t in tasks if t is not None]
    for t in task_list:
        if not t.done():
            t.cancel()
    if task_list:
        results = await asyncio.gather(*task_list, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Background task ended with error: %s", result)


async def run_with_timeout(awaitable: Awaitable, timeout: float, label: str) -> bool:
    """Await with a deadline; log and return False instead of raising on timeout."""
    try:
        await asyncio.wait_for(awaitable, timeout=timeout)
        return True
    except asyncio.TimeoutError:
        logger.error("%s did not finish within %.1fs", label, timeout)
        return False
