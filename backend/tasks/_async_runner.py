import asyncio
from typing import Any, Awaitable, Optional

_worker_loop: Optional[asyncio.AbstractEventLoop] = None


def get_worker_loop() -> asyncio.AbstractEventLoop:
    global _worker_loop
    if _worker_loop is None or _worker_loop.is_closed():
        _worker_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_worker_loop)
    return _worker_loop


def run_async(coro: Awaitable[Any]) -> Any:
    """Drive a coroutine to completion from a synchronous Celery task.

    The loop is reused across tasks in the same worker process because the
    httpx and motor clients bind to the loop they were first used on.
    """
    return get_worker_loop().run_until_complete(coro)
