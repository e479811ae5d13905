import asyncio
from typing import Awaitable, Callable, Optional

from client.utils.tasks import cancel_task


class MoveWatchdog:
    """Single timer bounding how long we wait for a move-completed push event."""

    def __init__(self, timeout: float, on_expire: Callable[[], Awaitable[None]]):
        self.timeout = timeout
        self._on_expire = on_expire
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        task, self._task = self._task, None
        cancel_task(task)

    async def _run(self) -> None:
        await asyncio.sleep(self.timeout)
        # detach first so on_expire can restart the watchdog
        self._task = None
        await self._on_expire()
