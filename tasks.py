import asyncio
import logging

logger = logging.getLogger("battery-monitor.tasks")

# Strong references to fire-and-forget tasks, dropped when they finish.
_running: set[asyncio.Task] = set()


def spawn(coro, name: str | None = None) -> asyncio.Task:
    """Start a detached task on the running loop. Nobody awaits it."""
    task = asyncio.get_running_loop().create_task(coro, name=name)
    _running.add(task)
    task.add_done_callback(_finished)
    return task


def _finished(task: asyncio.Task) -> None:
    _running.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(f"Background task {task.get_name()} failed: {exc!r}")


async def drain():
    """Wait until every task spawned on this loop (and its children) is done."""
    loop = asyncio.get_running_loop()
    while True:
        pending = [t for t in _running if t.get_loop() is loop]
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)
